# tests/test_pipeline.py
"""
Unit tests for RequestPipeline and its stages, without a running app.
"""
from unittest.mock import Mock

import pytest
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from apishield.core.exceptions import RateLimitExceededError, RedisServiceError, TokenMismatchError
from apishield.core.rate_limit import Allowed, Rejected
from apishield.core.security import CsrfGuard, OutputSanitizer, PolicyHeaderInjector, SecurityHeaders, TokenStore
from apishield.middleware.security_middleware import (
    RENDERED_HTML_HEADER,
    CsrfStage,
    PipelineStage,
    RateLimitMonitor,
    RateLimitStage,
    RequestPipeline,
    SanitizeStage,
    rendered_html_response,
)


def make_request(method="GET", path="/api/comments", headers=None):
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "query_string": b"",
        "client": ("1.2.3.4", 5555),
    }
    return Request(scope)


class RecordingStage(PipelineStage):
    def __init__(self, name, log, fail_with=None):
        self.name = name
        self.log = log
        self.fail_with = fail_with

    async def process(self, request, call_next):
        self.log.append(f"{self.name}:in")
        if self.fail_with is not None:
            raise self.fail_with
        response = await call_next(request)
        self.log.append(f"{self.name}:out")
        return response


@pytest.fixture
def injector():
    return PolicyHeaderInjector(SecurityHeaders())


def endpoint_returning(response, log=None):
    async def endpoint(request):
        if log is not None:
            log.append("handler")
        return response
    return endpoint


class TestRequestPipeline:
    """Ordering, short-circuiting and headers on every outcome"""

    @pytest.mark.asyncio
    async def test_stages_run_in_order(self, injector):
        log = []
        pipeline = RequestPipeline(
            [RecordingStage("first", log), RecordingStage("second", log)],
            injector
        )

        response = await pipeline.run(make_request(), endpoint_returning(PlainTextResponse("ok"), log))

        assert log == ["first:in", "second:in", "handler", "second:out", "first:out"]
        assert response.status_code == 200
        assert "Content-Security-Policy" in response.headers

    @pytest.mark.asyncio
    async def test_rejection_short_circuits(self, injector):
        log = []
        pipeline = RequestPipeline(
            [
                RecordingStage("first", log),
                RecordingStage("guard", log, fail_with=TokenMismatchError(reason="invalid_token")),
                RecordingStage("last", log),
            ],
            injector
        )

        response = await pipeline.run(make_request("POST"), endpoint_returning(PlainTextResponse("ok"), log))

        assert log == ["first:in", "guard:in"]
        assert response.status_code == 403
        assert response.body == b'{"error":"forbidden","message":"CSRF validation failed"}'
        assert "Content-Security-Policy" in response.headers
        assert response.headers["X-Frame-Options"] == "DENY"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic_500(self, injector):
        async def broken(request):
            raise RuntimeError("database password is hunter2")

        pipeline = RequestPipeline([], injector)

        response = await pipeline.run(make_request(), broken)

        assert response.status_code == 500
        assert b"hunter2" not in response.body
        assert "Content-Security-Policy" in response.headers

    @pytest.mark.asyncio
    async def test_service_error_maps_to_503(self, injector):
        pipeline = RequestPipeline(
            [RecordingStage("limiter", [], fail_with=RedisServiceError("down", operation="admit"))],
            injector
        )

        response = await pipeline.run(make_request(), endpoint_returning(PlainTextResponse("ok")))

        assert response.status_code == 503
        assert "Content-Security-Policy" in response.headers


class TestRateLimitStage:
    @pytest.mark.asyncio
    async def test_allowed_adds_headers(self):
        limiter = Mock()
        limiter.admit.return_value = Allowed(limit=10, remaining=7, reset_after=42.4)
        stage = RateLimitStage(limiter, key_func=lambda request: "ip:1.2.3.4")

        response = await stage.process(make_request(), endpoint_returning(PlainTextResponse("ok")))

        limiter.admit.assert_called_once_with("ip:1.2.3.4", endpoint="GET /api/comments")
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "7"
        assert response.headers["X-RateLimit-Reset"] == "42"

    @pytest.mark.asyncio
    async def test_rejected_raises_and_records(self):
        limiter = Mock()
        limiter.admit.return_value = Rejected(retry_after=49.2, limit=30)
        monitor = RateLimitMonitor()
        log = []
        stage = RateLimitStage(limiter, lambda request: "ip:1.2.3.4", monitor=monitor)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await stage.process(make_request(), endpoint_returning(PlainTextResponse("ok"), log))

        assert exc_info.value.retry_after_seconds == 50
        assert log == []
        assert monitor.get_violation_stats()["total_violations"] == 1

    @pytest.mark.asyncio
    async def test_async_limiter_is_awaited(self):
        class AsyncLimiter:
            async def admit(self, key, now=None, endpoint=None):
                return Allowed(limit=5, remaining=4, reset_after=60.0)

        stage = RateLimitStage(AsyncLimiter(), lambda request: "k")

        response = await stage.process(make_request(), endpoint_returning(PlainTextResponse("ok")))

        assert response.headers["X-RateLimit-Remaining"] == "4"

    @pytest.mark.asyncio
    async def test_exempt_path_skips_limiter(self):
        limiter = Mock()
        stage = RateLimitStage(limiter, lambda request: "k", exempt_paths=["/health"])

        await stage.process(make_request(path="/health"), endpoint_returning(PlainTextResponse("ok")))

        limiter.admit.assert_not_called()


class TestCsrfStage:
    @pytest.mark.asyncio
    async def test_absent_header_never_reaches_store_or_handler(self):
        store = Mock(spec=TokenStore)
        stage = CsrfStage(CsrfGuard(store))
        log = []

        with pytest.raises(TokenMismatchError):
            await stage.process(
                make_request("POST", headers={"Cookie": "session_id=abc"}),
                endpoint_returning(PlainTextResponse("ok"), log)
            )

        store.validate.assert_not_called()
        assert log == []

    @pytest.mark.asyncio
    async def test_valid_request_passes(self):
        store = Mock(spec=TokenStore)
        store.validate.return_value = True
        stage = CsrfStage(CsrfGuard(store))

        response = await stage.process(
            make_request("POST", headers={"Cookie": "session_id=abc", "X-CSRF-Token": "tok"}),
            endpoint_returning(PlainTextResponse("ok"))
        )

        assert response.status_code == 200
        store.validate.assert_called_once_with("abc", "tok")


class TestSanitizeStage:
    @pytest.mark.asyncio
    async def test_marked_fields_sanitized(self):
        stage = SanitizeStage(OutputSanitizer())
        upstream = rendered_html_response(
            {"body_html": '<img src="javascript:alert(1)"><b>hi</b>', "author": "<b>a</b>"},
            ["body_html"],
            status_code=201,
            headers={"X-Request-Id": "r-1"}
        )

        response = await stage.process(make_request(), endpoint_returning(upstream))

        assert response.status_code == 201
        assert RENDERED_HTML_HEADER not in response.headers
        assert response.headers["X-Request-Id"] == "r-1"
        assert response.body == b'{"body_html":"<img><b>hi</b>","author":"<b>a</b>"}'
        assert response.headers["content-length"] == str(len(response.body))

    @pytest.mark.asyncio
    async def test_unmarked_response_untouched(self):
        stage = SanitizeStage(OutputSanitizer())
        upstream = JSONResponse({"body_html": "<script>x</script>"})

        response = await stage.process(make_request(), endpoint_returning(upstream))

        assert response is upstream

    @pytest.mark.asyncio
    async def test_marked_non_json_never_passes_through(self, injector):
        pipeline = RequestPipeline([SanitizeStage(OutputSanitizer())], injector)
        upstream = Response("<script>x</script>", headers={RENDERED_HTML_HEADER: "body"})

        response = await pipeline.run(make_request(), endpoint_returning(upstream))

        assert response.status_code == 500
        assert b"<script>" not in response.body


class TestRateLimitMonitor:
    def test_threshold(self):
        monitor = RateLimitMonitor(violation_threshold=3)

        assert monitor.record_violation("ip:1") is False
        assert monitor.record_violation("ip:1") is False
        assert monitor.record_violation("ip:1") is True
        monitor.record_violation("ip:2")

        stats = monitor.get_violation_stats()
        assert stats["total_violators"] == 2
        assert stats["total_violations"] == 4
        assert stats["top_violators"][0] == ("ip:1", 3)

"""
Security middleware for the API.

Runs every request through a fixed, ordered pipeline:

    RateLimitStage -> CsrfStage -> SanitizeStage -> handler
                                   (sanitizes on the way out)
    PolicyHeaderInjector         -> applied to every response

Stages are plain objects with `process(request, call_next)`; the pipeline
walks the list by index. A stage that rejects a request raises an
ApiShieldError, which ends the chain; the resulting error response still
gets the security headers.
"""

import inspect
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from apishield.core.exceptions import (
    ApiShieldError,
    RateLimitExceededError,
    SanitizationParseError,
    TokenMismatchError,
    error_response,
)
from apishield.core.logging_config import get_security_logger
from apishield.core.rate_limit import Rejected
from apishield.core.rate_limit_config import create_key_func
from apishield.core.security.csrf import CsrfGuard
from apishield.core.security.headers import PolicyHeaderInjector
from apishield.core.security.sanitizer import OutputSanitizer, sanitize_fields

logger = logging.getLogger(__name__)
security_log = get_security_logger()

CallNext = Callable[[Request], Awaitable[Response]]

# Response header naming JSON fields that carry rendered HTML
RENDERED_HTML_HEADER = "X-Rendered-HTML-Fields"


def rendered_html_response(
    content: Any,
    fields: Iterable[str],
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """JSON response whose `fields` get sanitized on the way out"""
    headers = dict(headers or {})
    headers[RENDERED_HTML_HEADER] = ",".join(fields)
    return JSONResponse(content=content, status_code=status_code, headers=headers)


class RateLimitMonitor:
    """Monitor and log rate limit violations"""

    def __init__(self, violation_threshold: int = 10):
        self.violations: Counter = Counter()  # key -> violation count
        self.violation_threshold = violation_threshold
        self._lock = threading.Lock()

    def record_violation(self, key: str) -> bool:
        """
        Record a rate limit violation.

        Returns:
            True once the key has reached the violation threshold
        """
        with self._lock:
            self.violations[key] += 1
            count = self.violations[key]

        security_log.warning(f"🚦 Rate limit violation #{count} from {key}")

        if count >= self.violation_threshold:
            security_log.error(f"🚫 {key} exceeded violation threshold - consider blocking")
            return True
        return False

    def get_violation_stats(self) -> dict:
        """Get statistics about rate limit violations"""
        with self._lock:
            return {
                "total_violators": len(self.violations),
                "total_violations": sum(self.violations.values()),
                "top_violators": self.violations.most_common(10)
            }


class PipelineStage(ABC):
    """One step of the request pipeline"""

    name = "stage"

    @abstractmethod
    async def process(self, request: Request, call_next: CallNext) -> Response:
        """Handle the request, calling `call_next` to continue the chain"""


class RateLimitStage(PipelineStage):
    """Admission check; rejects with 429 before anything else runs"""

    name = "rate_limit"

    def __init__(
        self,
        limiter,
        key_func: Callable[[Request], str],
        exempt_paths: Iterable[str] = (),
        monitor: Optional[RateLimitMonitor] = None
    ):
        self.limiter = limiter
        self.key_func = key_func
        self.exempt_paths = frozenset(exempt_paths)
        self.monitor = monitor

    async def process(self, request: Request, call_next: CallNext) -> Response:
        # Health checks should never be rate-limited
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        key = self.key_func(request)
        endpoint = f"{request.method} {request.url.path}"

        result = self.limiter.admit(key, endpoint=endpoint)
        if inspect.isawaitable(result):
            result = await result

        if isinstance(result, Rejected):
            if self.monitor is not None:
                self.monitor.record_violation(key)
            raise RateLimitExceededError(result.retry_after, limit=result.limit, key=key)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(max(1, round(result.reset_after)))
        return response


class CsrfStage(PipelineStage):
    """Rejects mutating requests without a valid token; others pass untouched"""

    name = "csrf"

    def __init__(self, guard: CsrfGuard):
        self.guard = guard

    async def process(self, request: Request, call_next: CallNext) -> Response:
        self.guard.protect(request)
        return await call_next(request)


class SanitizeStage(PipelineStage):
    """Sanitizes the JSON fields a handler marked as rendered HTML"""

    name = "sanitize"

    def __init__(self, sanitizer: OutputSanitizer):
        self.sanitizer = sanitizer

    async def process(self, request: Request, call_next: CallNext) -> Response:
        response = await call_next(request)

        marker = response.headers.get(RENDERED_HTML_HEADER)
        if marker is None:
            return response

        fields = [f.strip() for f in marker.split(",") if f.strip()]
        body = await self._read_body(response)

        try:
            payload = json.loads(body) if body else None
        except ValueError as e:
            # Marked output that is not JSON is never passed through raw
            raise SanitizationParseError(
                "Rendered-HTML response is not JSON",
                details={'path': request.url.path}
            ) from e

        if isinstance(payload, (dict, list)):
            sanitize_fields(self.sanitizer, payload, fields)

        sanitized = JSONResponse(content=payload, status_code=response.status_code)
        skip = {b"content-length", b"content-type", RENDERED_HTML_HEADER.lower().encode("latin-1")}
        sanitized.raw_headers.extend(
            (name, value) for name, value in response.raw_headers
            if name.lower() not in skip
        )
        sanitized.background = response.background
        return sanitized

    @staticmethod
    async def _read_body(response: Response) -> bytes:
        body_iterator = getattr(response, "body_iterator", None)
        if body_iterator is None:
            return response.body
        chunks = []
        async for chunk in body_iterator:
            chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
        return b"".join(chunks)


class RequestPipeline:
    """Ordered stages plus the header injector that wraps every outcome"""

    def __init__(self, stages: Sequence[PipelineStage], header_injector: PolicyHeaderInjector):
        self.stages = list(stages)
        self.header_injector = header_injector

    async def run(self, request: Request, endpoint: CallNext) -> Response:
        try:
            response = await self._dispatch(0, request, endpoint)
        except ApiShieldError as exc:
            self._log_rejection(request, exc)
            response = error_response(exc)
        except Exception:
            logger.error(
                f"Unhandled error in {request.method} {request.url.path}",
                exc_info=True
            )
            response = JSONResponse(
                status_code=500,
                content={"error": "internal_error", "message": "An unexpected error occurred"}
            )
        return self.header_injector.apply(response)

    async def _dispatch(self, index: int, request: Request, endpoint: CallNext) -> Response:
        if index == len(self.stages):
            return await endpoint(request)

        stage = self.stages[index]

        async def call_next(next_request: Request) -> Response:
            return await self._dispatch(index + 1, next_request, endpoint)

        return await stage.process(request, call_next)

    @staticmethod
    def _log_rejection(request: Request, exc: ApiShieldError) -> None:
        where = f"{request.method} {request.url.path}"
        if isinstance(exc, TokenMismatchError):
            security_log.warning(f"🔒 Forbidden {where}: {exc}")
        elif isinstance(exc, RateLimitExceededError):
            security_log.info(f"🚦 Throttled {where}: retry after {exc.retry_after_seconds}s")
        elif exc.status_code >= 500:
            logger.error(f"❌ {type(exc).__name__} in {where}: {exc}")
        else:
            logger.info(f"{type(exc).__name__} in {where}: {exc}")


class SecurityMiddleware(BaseHTTPMiddleware):
    """Starlette adapter running every request through a RequestPipeline"""

    def __init__(self, app, pipeline: RequestPipeline):
        super().__init__(app)
        self.pipeline = pipeline

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        return await self.pipeline.run(request, call_next)


def build_pipeline(
    config,
    token_store,
    limiter,
    sanitizer: Optional[OutputSanitizer] = None,
    monitor: Optional[RateLimitMonitor] = None
) -> RequestPipeline:
    """Wire the standard stage order from a `SecurityConfig`"""
    rate_config = config.rate_limit
    key_func = create_key_func(
        client_id_header=rate_config.client_id_header,
        trust_proxy_headers=rate_config.trust_proxy_headers,
        trusted_hops=rate_config.trusted_proxy_hops
    )
    stages = [
        RateLimitStage(limiter, key_func, rate_config.exempt_paths, monitor),
        CsrfStage(CsrfGuard.from_config(config.csrf, token_store)),
        SanitizeStage(sanitizer or OutputSanitizer(config.sanitization.to_policy())),
    ]
    return RequestPipeline(stages, PolicyHeaderInjector(config.security_headers()))

# tests/core/test_headers.py
"""
Unit tests for security headers and SameSite enforcement.
"""
import pytest
from starlette.responses import JSONResponse, Response

from apishield.core.exceptions import PolicyConfigError
from apishield.core.security import PolicyHeaderInjector, SameSite, SecurityHeaders, force_same_site


@pytest.fixture
def injector():
    return PolicyHeaderInjector(SecurityHeaders(
        csp_directives=(("default-src", "'self'"), ("img-src", "'self' https:")),
        cookie_same_site=SameSite.STRICT
    ))


class TestCsp:
    def test_directives_joined_in_order(self):
        headers = SecurityHeaders(csp_directives=(
            ("default-src", "'self'"),
            ("object-src", "'none'"),
            ("upgrade-insecure-requests", ""),
        ))

        assert headers.csp_header_value() == "default-src 'self'; object-src 'none'; upgrade-insecure-requests"

    def test_empty_directives_rejected(self):
        with pytest.raises(PolicyConfigError):
            SecurityHeaders(csp_directives=())

    def test_applied_to_response(self, injector):
        response = injector.apply(JSONResponse({"ok": True}))

        assert response.headers["Content-Security-Policy"] == "default-src 'self'; img-src 'self' https:"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_applied_to_error_response(self, injector):
        response = injector.apply(JSONResponse({"error": "forbidden"}, status_code=403))

        assert "Content-Security-Policy" in response.headers

    def test_existing_csp_replaced(self, injector):
        response = Response(headers={"Content-Security-Policy": "default-src *"})

        injector.apply(response)

        assert response.headers.getlist("Content-Security-Policy") == [
            "default-src 'self'; img-src 'self' https:"
        ]

    def test_server_header_removed(self, injector):
        response = Response(headers={"Server": "uvicorn"})

        injector.apply(response)

        assert "server" not in response.headers


class TestSameSite:
    def test_force_replaces_existing_value(self):
        cookie = "sid=abc; Path=/; SameSite=None; HttpOnly"

        assert force_same_site(cookie, SameSite.LAX) == "sid=abc; Path=/; HttpOnly; SameSite=Lax"

    def test_force_adds_missing_value(self):
        assert force_same_site("sid=abc; Path=/", SameSite.STRICT) == "sid=abc; Path=/; SameSite=Strict"

    def test_none_requires_secure(self):
        assert force_same_site("sid=abc", SameSite.NONE) == "sid=abc; SameSite=None; Secure"

    def test_none_keeps_single_secure(self):
        out = force_same_site("sid=abc; Secure; samesite=lax", SameSite.NONE)

        assert out == "sid=abc; Secure; SameSite=None"

    def test_every_cookie_rewritten(self, injector):
        response = Response()
        response.set_cookie("first", "1", samesite="lax")
        response.set_cookie("second", "2", samesite="none", secure=True)
        response.set_cookie("third", "3")

        injector.apply(response)

        cookies = response.headers.getlist("set-cookie")
        assert len(cookies) == 3
        for cookie in cookies:
            assert cookie.count("SameSite=") == 1
            assert "SameSite=Strict" in cookie
            assert "samesite=lax" not in cookie.lower()
            assert "samesite=none" not in cookie.lower()

    def test_other_headers_untouched(self, injector):
        response = Response(headers={"X-Custom": "value"})
        response.set_cookie("a", "b")

        injector.apply(response)

        assert response.headers["x-custom"] == "value"

"""
Security response headers: Content-Security-Policy, fixed hardening headers
and forced SameSite attributes on every cookie a response sets.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from starlette.responses import Response

from apishield.core.exceptions import PolicyConfigError

CSP_HEADER = "Content-Security-Policy"

DEFAULT_CSP_DIRECTIVES: Tuple[Tuple[str, str], ...] = (
    ("default-src", "'self'"),
    ("script-src", "'self'"),
    ("object-src", "'none'"),
    ("base-uri", "'self'"),
    ("frame-ancestors", "'none'"),
)

DEFAULT_EXTRA_HEADERS: Tuple[Tuple[str, str], ...] = (
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "DENY"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
    ("Permissions-Policy", "geolocation=(), microphone=(), camera=()"),
)


class SameSite(str, Enum):
    STRICT = "Strict"
    LAX = "Lax"
    NONE = "None"


@dataclass(frozen=True)
class SecurityHeaders:
    """Header policy applied to every response"""
    csp_directives: Tuple[Tuple[str, str], ...] = DEFAULT_CSP_DIRECTIVES
    cookie_same_site: SameSite = SameSite.LAX
    extra_headers: Tuple[Tuple[str, str], ...] = DEFAULT_EXTRA_HEADERS

    def __post_init__(self):
        if not self.csp_directives:
            raise PolicyConfigError("CSP directive set is empty", component="csp")

    def csp_header_value(self) -> str:
        return "; ".join(
            f"{directive} {value}".strip() for directive, value in self.csp_directives
        )


def force_same_site(cookie: str, same_site: SameSite) -> str:
    """
    Rewrite one Set-Cookie value so it carries exactly `SameSite=<same_site>`.

    `SameSite=None` cookies are also marked `Secure`, which browsers require.
    """
    parts = [part.strip() for part in cookie.split(";") if part.strip()]
    if not parts:
        return cookie

    name_value, attributes = parts[0], parts[1:]
    attributes = [
        attr for attr in attributes
        if attr.split("=", 1)[0].strip().lower() != "samesite"
    ]
    attributes.append(f"SameSite={same_site.value}")

    if same_site is SameSite.NONE and not any(attr.lower() == "secure" for attr in attributes):
        attributes.append("Secure")

    return "; ".join([name_value] + attributes)


class PolicyHeaderInjector:
    """Stateless; applies a SecurityHeaders policy to outgoing responses"""

    def __init__(self, headers: SecurityHeaders):
        self.headers = headers
        self._csp_value = headers.csp_header_value()

    def apply(self, response: Response) -> Response:
        for name, value in self.headers.extra_headers:
            response.headers[name] = value
        response.headers[CSP_HEADER] = self._csp_value

        # Rewrite in place: response.headers is a view over this list
        rewritten = []
        for name, value in response.raw_headers:
            if name.lower() == b"set-cookie":
                value = force_same_site(
                    value.decode("latin-1"), self.headers.cookie_same_site
                ).encode("latin-1")
            rewritten.append((name, value))
        response.raw_headers[:] = rewritten

        if "server" in response.headers:
            del response.headers["server"]

        return response

"""
CSRF guard for state-changing requests.

Check order for mutating methods:
    1. missing token header  ->  reject (no store lookup)
    2. missing session       ->  reject (no store lookup)
    3. TokenStore.validate   ->  reject on False

Every rejection raises the same TokenMismatchError; the failing step is
recorded for logs only, so callers cannot tell "no session" from
"bad token".
"""

import logging
from typing import Iterable, Optional, Tuple

from starlette.requests import Request

from apishield.core.exceptions import TokenMismatchError
from apishield.core.rate_limit_config import split_endpoint
from apishield.core.security.tokens import TokenStore

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

DEFAULT_HEADER_NAME = "X-CSRF-Token"
DEFAULT_SESSION_COOKIE = "session_id"


class CsrfGuard:
    """Rejects mutating requests that lack a valid anti-forgery token"""

    def __init__(
        self,
        token_store: TokenStore,
        header_name: str = DEFAULT_HEADER_NAME,
        session_cookie: str = DEFAULT_SESSION_COOKIE,
        exempt: Iterable[str] = ()
    ):
        self.token_store = token_store
        self.header_name = header_name
        self.session_cookie = session_cookie
        # Exact (method, path) pairs; a None method exempts every method
        self._exempt: Tuple[Tuple[Optional[str], str], ...] = tuple(
            split_endpoint(endpoint) for endpoint in exempt
        )

    @classmethod
    def from_config(cls, config, token_store: TokenStore) -> "CsrfGuard":
        """Build from a `CsrfConfig` section"""
        return cls(
            token_store,
            header_name=config.header_name,
            session_cookie=config.session_cookie,
            exempt=config.exempt_paths
        )

    def requires_check(self, method: str, path: str) -> bool:
        method = method.upper()
        if method not in MUTATING_METHODS:
            return False
        for exempt_method, exempt_path in self._exempt:
            if path == exempt_path and exempt_method in (None, method):
                return False
        return True

    def check(
        self,
        method: str,
        path: str,
        presented_token: Optional[str],
        session_id: Optional[str]
    ) -> None:
        """
        Validate one request.

        Raises:
            TokenMismatchError: On any failure, always with the same public message
        """
        if not self.requires_check(method, path):
            return

        if not presented_token:
            logger.warning(f"🚫 CSRF header missing on {method} {path}")
            raise TokenMismatchError(reason="missing_header")

        if not session_id:
            logger.warning(f"🚫 CSRF check without session on {method} {path}")
            raise TokenMismatchError(reason="missing_session")

        if not self.token_store.validate(session_id, presented_token):
            raise TokenMismatchError(reason="invalid_token")

    def extract_token(self, request: Request) -> Optional[str]:
        value = request.headers.get(self.header_name)
        return value.strip() if value else None

    def extract_session_id(self, request: Request) -> Optional[str]:
        """Session from an upstream auth layer, else from the session cookie"""
        session_id = getattr(request.state, "session_id", None)
        if session_id:
            return session_id
        return request.cookies.get(self.session_cookie) or None

    def protect(self, request: Request) -> None:
        """Run `check` against a Starlette request"""
        method = request.method
        path = request.url.path
        if not self.requires_check(method, path):
            return
        self.check(
            method,
            path,
            self.extract_token(request),
            self.extract_session_id(request)
        )

"""
Rate limiting configuration helpers: client keys, rule parsing and
per-endpoint rule matching.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from fastapi import Request
from limits import parse as parse_limit
from pydantic import BaseModel, ConfigDict, Field, model_validator
from slowapi.util import get_remote_address

DEFAULT_SCOPE = "*"


def get_real_ip(request: Request, trusted_hops: int = 1) -> str:
    """
    Get the client IP address behind `trusted_hops` reverse proxies.

    Proxies append to X-Forwarded-For, so only the rightmost `trusted_hops`
    entries were written by infrastructure we control; anything left of them
    came from the client. Only call this when the app really sits behind
    proxies that set the header.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
        if len(hops) >= trusted_hops:
            return hops[-trusted_hops]
        # Shorter chain than configured: the header did not come from our proxies
        return get_remote_address(request)

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fallback to direct connection IP
    return get_remote_address(request)


def create_key_func(
    client_id_header: Optional[str] = None,
    trust_proxy_headers: bool = False,
    trusted_hops: int = 1
) -> Callable[[Request], str]:
    """
    Create the function that maps a request to its rate-limit key.

    With `client_id_header` set, clients that send that header are limited
    per client id; everyone else falls back to their IP address. Proxy
    headers are ignored unless `trust_proxy_headers` is on, since any client
    can send them.
    """
    def key_func(request: Request) -> str:
        if client_id_header:
            client_id = request.headers.get(client_id_header)
            if client_id:
                return f"client:{client_id.strip()}"

        if trust_proxy_headers:
            ip = get_real_ip(request, trusted_hops)
        else:
            ip = get_remote_address(request)
        return f"ip:{ip}"

    return key_func


class RateRule(BaseModel):
    """
    Limit and period of one rate-limit rule.

    Accepts either an object (`{"limit": 30, "periodSeconds": 60}`) or the
    slowapi-style shorthand (`"30/minute"`, `"100 per hour"`).
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    limit: int = Field(gt=0)
    period_seconds: int = Field(gt=0, alias="periodSeconds")

    @model_validator(mode="before")
    @classmethod
    def _parse_shorthand(cls, value):
        if isinstance(value, str):
            return parse_rate_rule(value)
        return value

    def __str__(self) -> str:
        return f"{self.limit}/{self.period_seconds}s"


def parse_rate_rule(text: str) -> Dict[str, int]:
    """Parse `"30/minute"` style strings with the limits library"""
    try:
        item = parse_limit(text)
    except ValueError as e:
        raise ValueError(f"Invalid rate limit string '{text}': {e}") from e
    return {"limit": item.amount, "period_seconds": item.get_expiry()}


def split_endpoint(endpoint: str) -> Tuple[Optional[str], str]:
    """Split `"POST /api/x"` into `("POST", "/api/x")`; bare paths get no method"""
    endpoint = endpoint.strip()
    if " " in endpoint:
        method, path = endpoint.split(" ", 1)
        return method.upper(), path.strip()
    return None, endpoint


@dataclass(frozen=True)
class EndpointPattern:
    """A path prefix, optionally restricted to one HTTP method"""

    method: Optional[str]
    path: str

    @classmethod
    def parse(cls, endpoint: str) -> "EndpointPattern":
        method, path = split_endpoint(endpoint)
        if not path.startswith("/"):
            raise ValueError(f"Endpoint '{endpoint}' must be a path starting with '/'")
        if method is not None and not method.isalpha():
            raise ValueError(f"Endpoint '{endpoint}' has an invalid method")
        if len(path) > 1:
            path = path.rstrip("/")
        return cls(method=method, path=path)

    def matches(self, method: Optional[str], path: str) -> bool:
        if self.method is not None and self.method != (method or "").upper():
            return False
        if self.path == "/":
            return True
        # Prefix match on segment boundaries: /api matches /api/x, not /apix
        return path == self.path or path.startswith(self.path + "/")

    @property
    def specificity(self) -> Tuple[int, int]:
        return (len(self.path), 1 if self.method else 0)

    def __str__(self) -> str:
        return f"{self.method} {self.path}" if self.method else self.path


class RuleSet:
    """Per-endpoint overrides, matched most-specific first, over a default rule"""

    def __init__(self, default: RateRule, overrides: Optional[Mapping[str, RateRule]] = None):
        self.default = default
        patterns = [
            (EndpointPattern.parse(endpoint), rule)
            for endpoint, rule in (overrides or {}).items()
        ]
        # Longest path first; a method-qualified pattern beats a bare one of equal length
        self._ordered: List[Tuple[EndpointPattern, RateRule]] = sorted(
            patterns, key=lambda item: item[0].specificity, reverse=True
        )

    def match(self, endpoint: Optional[str]) -> Tuple[str, RateRule]:
        """Return `(scope, rule)` for an endpoint like `"POST /api/comments"`"""
        if endpoint:
            method, path = split_endpoint(endpoint)
            for pattern, rule in self._ordered:
                if pattern.matches(method, path):
                    return str(pattern), rule
        return DEFAULT_SCOPE, self.default

    def describe(self) -> Dict[str, str]:
        rules = {DEFAULT_SCOPE: str(self.default)}
        rules.update({str(pattern): str(rule) for pattern, rule in self._ordered})
        return rules


# Limits shipped as defaults, per endpoint class
DEFAULT_RATE_LIMITS = {
    "session_create": "10/minute",    # New sessions per client
    "write": "30/minute",             # State-changing API calls
    "global": "100/minute"            # Overall API calls
}

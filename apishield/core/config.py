# apishield/core/config.py
"""
Application settings and security policy configuration.

Settings come from the environment (or `.env`) via pydantic-settings. The
security policy is a JSON document (see `SecurityConfig`) loaded once at
startup; any problem with it raises PolicyConfigError and the app refuses
to start.
"""

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from apishield.core.exceptions import PolicyConfigError
from apishield.core.rate_limit_config import EndpointPattern, RateRule, DEFAULT_RATE_LIMITS
from apishield.core.security.headers import (
    DEFAULT_CSP_DIRECTIVES,
    DEFAULT_EXTRA_HEADERS,
    SameSite,
    SecurityHeaders,
)
from apishield.core.security.sanitizer import SanitizationPolicy

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Basic application settings"""
    APP_NAME: str = "apishield"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # Security policy document (JSON); built-in defaults when unset
    SECURITY_CONFIG_FILE: Optional[str] = None

    # Rate limit storage
    RATE_LIMIT_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: Optional[str] = Field(default=None)

    # Session cookie transport
    SECURE_COOKIES: bool = True

    # Browser origins allowed to call the API with credentials
    CORS_ORIGINS: List[str] = Field(default_factory=list)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


class _Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)


class CsrfConfig(_Section):
    header_name: str = Field(default="X-CSRF-Token", alias="headerName", min_length=1)
    session_cookie: str = Field(default="session_id", alias="sessionCookie", min_length=1)
    token_ttl_seconds: int = Field(default=3600, alias="tokenTtlSeconds", gt=0)
    session_ttl_seconds: int = Field(default=8 * 3600, alias="sessionTtlSeconds", gt=0)
    max_tokens_per_session: int = Field(default=16, alias="maxTokensPerSession", gt=0)
    exempt_paths: List[str] = Field(default_factory=lambda: ["POST /api/session"], alias="exemptPaths")

    @field_validator("exempt_paths")
    @classmethod
    def _check_exempt(cls, value: List[str]) -> List[str]:
        for endpoint in value:
            EndpointPattern.parse(endpoint)
        return value


class CspConfig(_Section):
    directives: List[Tuple[str, str]] = Field(default_factory=lambda: list(DEFAULT_CSP_DIRECTIVES))

    @field_validator("directives", mode="before")
    @classmethod
    def _split_strings(cls, value):
        # "default-src 'self'" and ["default-src", "'self'"] are both accepted
        if not isinstance(value, list):
            return value
        parsed = []
        for item in value:
            if isinstance(item, str):
                directive, _, rest = item.strip().partition(" ")
                parsed.append((directive, rest.strip()))
            else:
                parsed.append(item)
        return parsed

    @field_validator("directives")
    @classmethod
    def _check_directives(cls, value: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
        if not value:
            raise ValueError("at least one CSP directive is required")
        for directive, source in value:
            if not directive or not all(c.isalnum() or c == "-" for c in directive):
                raise ValueError(f"invalid CSP directive name '{directive}'")
            if any(c in source for c in ";\r\n"):
                raise ValueError(f"CSP value for '{directive}' contains ';' or a line break")
        return value


class CookieConfig(_Section):
    same_site: SameSite = Field(default=SameSite.LAX, alias="sameSite")

    @field_validator("same_site", mode="before")
    @classmethod
    def _normalise(cls, value):
        if isinstance(value, str):
            return value.strip().capitalize()
        return value


class RateLimitSettings(_Section):
    default: RateRule = Field(default_factory=lambda: RateRule.model_validate(DEFAULT_RATE_LIMITS["global"]))
    per_endpoint: Dict[str, RateRule] = Field(
        default_factory=lambda: {
            "POST /api/session": RateRule.model_validate(DEFAULT_RATE_LIMITS["session_create"]),
            "POST /api/comments": RateRule.model_validate(DEFAULT_RATE_LIMITS["write"]),
        },
        alias="perEndpoint"
    )
    retention_factor: float = Field(default=2.0, alias="retentionFactor", ge=1.0)
    sweep_interval_seconds: float = Field(default=30.0, alias="sweepIntervalSeconds", gt=0)
    exempt_paths: List[str] = Field(default_factory=lambda: ["/health"], alias="exemptPaths")
    client_id_header: Optional[str] = Field(default=None, alias="clientIdHeader")
    trust_proxy_headers: bool = Field(default=False, alias="trustProxyHeaders")
    trusted_proxy_hops: int = Field(default=1, alias="trustedProxyHops", ge=1)

    @field_validator("per_endpoint")
    @classmethod
    def _check_endpoints(cls, value: Dict[str, RateRule]) -> Dict[str, RateRule]:
        for endpoint in value:
            EndpointPattern.parse(endpoint)
        return value


class SanitizationConfig(_Section):
    allowed_tags: Set[str] = Field(
        default_factory=lambda: set(SanitizationPolicy.default().allowed_tags),
        alias="allowedTags"
    )
    allowed_attributes: Dict[str, Set[str]] = Field(
        default_factory=lambda: {
            tag: set(names) for tag, names in SanitizationPolicy.default().allowed_attributes.items()
        },
        alias="allowedAttributes"
    )
    allowed_uri_schemes: Set[str] = Field(
        default_factory=lambda: set(SanitizationPolicy.default().allowed_uri_schemes),
        alias="allowedUriSchemes"
    )

    def to_policy(self) -> SanitizationPolicy:
        return SanitizationPolicy(
            allowed_tags=frozenset(self.allowed_tags),
            allowed_attributes={tag: frozenset(names) for tag, names in self.allowed_attributes.items()},
            allowed_uri_schemes=frozenset(self.allowed_uri_schemes),
        )


class HeadersConfig(_Section):
    extra: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_EXTRA_HEADERS))


class SecurityConfig(_Section):
    """
    Security policy document.

    JSON shape (camelCase keys, snake_case also accepted):
        {
          "csrf": {"headerName": "X-CSRF-Token", ...},
          "csp": {"directives": ["default-src 'self'", ...]},
          "cookies": {"sameSite": "Strict"},
          "rateLimit": {"default": "100/minute",
                        "perEndpoint": {"POST /api/comments": {"limit": 30, "periodSeconds": 60}}},
          "sanitization": {"allowedTags": [...], ...},
          "headers": {"extra": {...}}
        }
    """
    csrf: CsrfConfig = Field(default_factory=CsrfConfig)
    csp: CspConfig = Field(default_factory=CspConfig)
    cookies: CookieConfig = Field(default_factory=CookieConfig)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings, alias="rateLimit")
    sanitization: SanitizationConfig = Field(default_factory=SanitizationConfig)
    headers: HeadersConfig = Field(default_factory=HeadersConfig)

    @model_validator(mode="after")
    def _check_policies(self) -> "SecurityConfig":
        # Surface policy-level problems as validation errors too
        try:
            self.sanitization.to_policy()
            self.security_headers()
        except PolicyConfigError as e:
            raise ValueError(e.message) from e
        return self

    def security_headers(self) -> SecurityHeaders:
        return SecurityHeaders(
            csp_directives=tuple(tuple(pair) for pair in self.csp.directives),
            cookie_same_site=self.cookies.same_site,
            extra_headers=tuple(self.headers.extra.items()),
        )


def load_security_config(path: Optional[str] = None) -> SecurityConfig:
    """
    Load and validate the security policy.

    Raises:
        PolicyConfigError: If the file cannot be read or fails validation
    """
    try:
        if path is None:
            config = SecurityConfig()
        else:
            text = Path(path).read_text(encoding="utf-8")
            config = SecurityConfig.model_validate_json(text)
    except OSError as e:
        raise PolicyConfigError(
            f"Cannot read security config '{path}'",
            component="config",
            details={'error': str(e)}
        ) from e
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise PolicyConfigError(
            f"Invalid security config: {'; '.join(problems)}",
            component="config",
            details={'errors': len(problems)}
        ) from e

    logger.info(f"📋 Security policy loaded from {path or 'built-in defaults'}")
    return config



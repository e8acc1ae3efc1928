"""
Security components of the request pipeline.

- CSRF tokens bound to sessions (TokenStore, CsrfGuard)
- Allow-list HTML sanitization (OutputSanitizer)
- Security response headers (PolicyHeaderInjector)

Rate limiting lives in apishield.core.rate_limit.
"""

from .tokens import Token, TokenStore
from .csrf import CsrfGuard, MUTATING_METHODS
from .sanitizer import OutputSanitizer, SanitizationPolicy, sanitize
from .headers import PolicyHeaderInjector, SameSite, SecurityHeaders, force_same_site

__all__ = [
    'Token',
    'TokenStore',
    'CsrfGuard',
    'MUTATING_METHODS',
    'OutputSanitizer',
    'SanitizationPolicy',
    'sanitize',
    'PolicyHeaderInjector',
    'SameSite',
    'SecurityHeaders',
    'force_same_site'
]

# apishield/main.py
"""
FastAPI application with the security pipeline installed.

Ships a small demo API (sessions + comments) so every stage of the
pipeline can be exercised end to end:

    POST   /api/session       open a session, get the first CSRF token
    GET    /api/csrf-token    fresh token for the current session
    DELETE /api/session       end the session (CSRF-protected)
    POST   /api/comments      store a comment (CSRF-protected)
    GET    /api/comments      list comments, body_html sanitized
    GET    /api/security/stats
    GET    /health

All shared state lives on `app.state`; build the app with `create_app()`.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from apishield import __version__
from apishield.core.config import Settings, SecurityConfig, load_security_config
from apishield.core.exceptions import ApiShieldError, SessionInvalidError, error_response
from apishield.core.logging_config import setup_logging
from apishield.core.rate_limit import RateLimiter, RedisRateLimiter
from apishield.core.security import OutputSanitizer, TokenStore
from apishield.middleware.security_middleware import (
    RateLimitMonitor,
    SecurityMiddleware,
    build_pipeline,
    rendered_html_response,
)
from apishield.models.comment import CommentIn, CommentStore, RENDERED_HTML_FIELDS
from apishield.services.redis_service import RedisConfig, RedisService

logger = logging.getLogger(__name__)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_token_store(request: Request) -> TokenStore:
    return request.app.state.token_store


def get_comment_store(request: Request) -> CommentStore:
    return request.app.state.comments


def get_session_id(request: Request) -> Optional[str]:
    """Session from an upstream auth layer, else from the session cookie"""
    session_id = getattr(request.state, "session_id", None)
    if session_id:
        return session_id
    cookie_name = request.app.state.security_config.csrf.session_cookie
    return request.cookies.get(cookie_name) or None


def require_session_id(session_id: Optional[str] = Depends(get_session_id)) -> str:
    if not session_id:
        raise SessionInvalidError("Request carries no session")
    return session_id


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.get("/health", status_code=200)
def health(request: Request):
    """Liveness probe, never rate-limited"""
    return {
        "status": "healthy",
        "version": __version__,
        "rate_limit_backend": request.app.state.settings.RATE_LIMIT_BACKEND,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/api/session")
def open_session(
    request: Request,
    response: Response,
    store: TokenStore = Depends(get_token_store),
    previous_id: Optional[str] = Depends(get_session_id)
):
    """
    Start a session and return its first CSRF token.

    A fresh session id is issued on every call; any session the client
    already had is ended so ids cannot be fixed by an attacker.
    """
    if previous_id:
        store.end_session(previous_id)

    session_id = store.open_session()
    token = store.issue(session_id)

    settings: Settings = request.app.state.settings
    csrf_config = request.app.state.security_config.csrf
    response.set_cookie(
        key=csrf_config.session_cookie,
        value=session_id,
        max_age=csrf_config.session_ttl_seconds,
        httponly=True,
        secure=settings.SECURE_COOKIES,
        samesite=request.app.state.security_config.cookies.same_site.value.lower()
    )
    return {
        "session_id": session_id,
        "csrf_token": token.value,
        "expires_at": token.expires_at.isoformat()
    }


@router.get("/api/csrf-token")
def csrf_token(
    session_id: str = Depends(require_session_id),
    store: TokenStore = Depends(get_token_store)
):
    """Issue another token for the current session (401 without one)"""
    token = store.issue(session_id)
    return {"csrf_token": token.value, "expires_at": token.expires_at.isoformat()}


@router.delete("/api/session")
def end_session(
    request: Request,
    response: Response,
    session_id: str = Depends(require_session_id),
    store: TokenStore = Depends(get_token_store)
):
    store.end_session(session_id)
    response.delete_cookie(
        request.app.state.security_config.csrf.session_cookie,
        httponly=True,
        secure=request.app.state.settings.SECURE_COOKIES
    )
    return {"status": "ended"}


@router.post("/api/comments", status_code=201)
def create_comment(comment_in: CommentIn, comments: CommentStore = Depends(get_comment_store)):
    comment = comments.add(comment_in)
    logger.info(f"💬 Comment {comment.id[:8]} stored")
    return rendered_html_response(
        comment.model_dump(mode="json"),
        RENDERED_HTML_FIELDS,
        status_code=201
    )


@router.get("/api/comments")
def list_comments(comments: CommentStore = Depends(get_comment_store)):
    items = [comment.model_dump(mode="json") for comment in comments.list()]
    return rendered_html_response(
        {"comments": items},
        [f"comments.{field}" for field in RENDERED_HTML_FIELDS]
    )


@router.get("/api/security/stats")
def security_stats(request: Request):
    """Counters for monitoring; contains no token material"""
    state = request.app.state
    return {
        "token_store": state.token_store.get_metrics(),
        "rate_limiter": state.limiter.get_stats(),
        "violations": state.monitor.get_violation_stats(),
        "comments": state.comments.get_stats()
    }


# =============================================================================
# APP FACTORY
# =============================================================================

async def shield_error_handler(request: Request, exc: ApiShieldError):
    """Errors raised inside route handlers"""
    if exc.status_code >= 500:
        logger.error(f"❌ {type(exc).__name__} in {request.url.path}: {exc}")
    else:
        logger.info(f"{type(exc).__name__} in {request.url.path}: {exc}")
    return error_response(exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan event handler for startup/shutdown"""
    state = app.state

    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 {state.settings.APP_NAME} {__version__} starting...")
    logger.info("=" * 60)

    if state.redis_service is not None:
        try:
            await state.redis_service.initialize()
        except ApiShieldError as e:
            logger.error(f"❌ Redis rate limit backend unavailable: {e}")
            logger.error("🔥 Startup failed - check REDIS_URL or use RATE_LIMIT_BACKEND=memory")
            raise

    logger.info("📋 Configuration:")
    logger.info(f"  - Rate limit backend: {state.settings.RATE_LIMIT_BACKEND}")
    for scope, rule in state.limiter.rules.describe().items():
        logger.info(f"  - Rate rule {scope}: {rule}")
    logger.info(f"  - CSRF header: {state.security_config.csrf.header_name}")
    logger.info(f"  - Cookie SameSite: {state.security_config.cookies.same_site.value}")
    logger.info("✅ API Ready!")

    yield

    # Shutdown
    logger.info("🛑 Shutting down...")
    state.token_store.shutdown()
    state.limiter.clear()
    state.comments.clear()
    if state.redis_service is not None:
        await state.redis_service.shutdown()
    logger.info("👋 Goodbye!")


def create_app(
    settings: Optional[Settings] = None,
    security_config: Optional[SecurityConfig] = None
) -> FastAPI:
    """
    Build the application.

    Raises:
        PolicyConfigError: If the security policy is invalid; the app must not start
    """
    settings = settings or Settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)

    if security_config is None:
        security_config = load_security_config(settings.SECURITY_CONFIG_FILE)

    token_store = TokenStore.from_config(security_config.csrf)
    monitor = RateLimitMonitor()
    sanitizer = OutputSanitizer(security_config.sanitization.to_policy())

    redis_service = None
    if settings.RATE_LIMIT_BACKEND == "redis":
        redis_service = RedisService(RedisConfig(url=settings.REDIS_URL) if settings.REDIS_URL else None)
        limiter = RedisRateLimiter.from_config(redis_service, security_config.rate_limit)
    else:
        limiter = RateLimiter.from_config(security_config.rate_limit)

    app = FastAPI(
        title=settings.APP_NAME,
        description="Request-security pipeline: CSRF, output sanitization, security headers, rate limiting",
        version=__version__,
        lifespan=lifespan,
        debug=settings.DEBUG,
        docs_url=None,  # Disable docs to reduce overhead
        redoc_url=None
    )

    app.state.settings = settings
    app.state.security_config = security_config
    app.state.token_store = token_store
    app.state.limiter = limiter
    app.state.monitor = monitor
    app.state.redis_service = redis_service
    app.state.comments = CommentStore()

    app.add_exception_handler(ApiShieldError, shield_error_handler)

    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", security_config.csrf.header_name],
        )

    # Added last so it wraps everything, CORS responses included
    app.add_middleware(
        SecurityMiddleware,
        pipeline=build_pipeline(security_config, token_store, limiter, sanitizer, monitor)
    )

    app.include_router(router)
    return app


# Main entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "apishield.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )

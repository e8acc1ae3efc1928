"""
Anti-forgery token store.

Tokens are bound to a session id and expire with a configurable TTL that
never outlives their session. Validation uses constant-time comparison and
never raises on a mismatch.

Token values are never logged. Session ids appear in logs truncated to
their first 8 characters.
"""

import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from apishield.core.exceptions import SessionInvalidError
from apishield.core.locks import ShardedTable, DEFAULT_SHARD_COUNT

logger = logging.getLogger(__name__)

# 32 random bytes = 256 bits of entropy
TOKEN_BYTES = 32
SESSION_ID_BYTES = 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short(session_id: str) -> str:
    return f"{session_id[:8]}..."


class Token(BaseModel):
    """Anti-forgery token bound to one session"""
    model_config = ConfigDict(frozen=True)

    value: str = Field(default_factory=lambda: secrets.token_urlsafe(TOKEN_BYTES), repr=False)
    issued_at: datetime
    expires_at: datetime
    bound_session_id: str

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def matches(self, presented: str) -> bool:
        """Constant-time comparison against a presented value"""
        return secrets.compare_digest(self.value.encode("utf-8"), presented.encode("utf-8"))


@dataclass
class _SessionRecord:
    session_id: str
    created_at: datetime
    expires_at: datetime
    tokens: List[Token] = field(default_factory=list)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TokenStore:
    """
    Issues and validates CSRF tokens per session.

    Design decisions:
    1. Fail-secure - unknown sessions cannot get tokens, validation
       returns False instead of raising
    2. Sharded locking - one lock per shard of session ids
    3. Automatic cleanup - expired sessions and tokens are swept
       periodically to prevent memory leaks
    """

    def __init__(
        self,
        token_ttl: timedelta = timedelta(hours=1),
        session_ttl: timedelta = timedelta(hours=8),
        max_tokens_per_session: int = 16,
        cleanup_interval: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utcnow,
        shard_count: int = DEFAULT_SHARD_COUNT
    ):
        self.token_ttl = token_ttl
        self.session_ttl = session_ttl
        self.max_tokens_per_session = max_tokens_per_session
        self._clock = clock
        self._sessions: ShardedTable[str, _SessionRecord] = ShardedTable(shard_count)

        # Cleanup configuration
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()
        self._cleanup_lock = threading.Lock()

        # Metrics for monitoring
        self._stats_lock = threading.Lock()
        self._sessions_opened = 0
        self._tokens_issued = 0
        self._validation_failures = 0

    @classmethod
    def from_config(cls, config, **kwargs) -> "TokenStore":
        """Build from a `CsrfConfig` section"""
        return cls(
            token_ttl=timedelta(seconds=config.token_ttl_seconds),
            session_ttl=timedelta(seconds=config.session_ttl_seconds),
            max_tokens_per_session=config.max_tokens_per_session,
            **kwargs
        )

    def open_session(self, session_id: Optional[str] = None) -> str:
        """
        Register a session so tokens can be issued for it.

        Opening an id that is already live keeps its tokens and expiry.

        Returns:
            The session id (newly generated when none was given)
        """
        session_id = session_id or secrets.token_urlsafe(SESSION_ID_BYTES)
        now = self._clock()
        shard = self._sessions.shard(session_id)

        with shard.lock:
            record = shard.items.get(session_id)
            if record is None or record.is_expired(now):
                shard.items[session_id] = _SessionRecord(
                    session_id=session_id,
                    created_at=now,
                    expires_at=now + self.session_ttl
                )
                created = True
            else:
                created = False

        if created:
            with self._stats_lock:
                self._sessions_opened += 1
            logger.info(f"🔐 Opened session {_short(session_id)}")

        self._maybe_cleanup(now)
        return session_id

    def end_session(self, session_id: str) -> None:
        """Forget a session and all of its tokens. Idempotent."""
        shard = self._sessions.shard(session_id)
        with shard.lock:
            record = shard.items.pop(session_id, None)
        if record is not None:
            logger.info(f"🗑️ Ended session {_short(session_id)}")

    def has_session(self, session_id: str) -> bool:
        now = self._clock()
        shard = self._sessions.shard(session_id)
        with shard.lock:
            record = shard.items.get(session_id)
            return record is not None and not record.is_expired(now)

    def issue(self, session_id: str) -> Token:
        """
        Issue a fresh token for a live session.

        Raises:
            SessionInvalidError: If the session is unknown or expired
        """
        if not session_id:
            raise SessionInvalidError("Cannot issue a token without a session")

        now = self._clock()
        shard = self._sessions.shard(session_id)

        with shard.lock:
            record = shard.items.get(session_id)
            if record is None or record.is_expired(now):
                if record is not None:
                    del shard.items[session_id]
                raise SessionInvalidError(session_id=session_id)

            token = Token(
                issued_at=now,
                expires_at=min(now + self.token_ttl, record.expires_at),
                bound_session_id=session_id
            )
            live = [t for t in record.tokens if not t.is_expired(now)]
            live.append(token)
            # Oldest tokens go first once the per-session cap is reached
            record.tokens = live[-self.max_tokens_per_session:]

        with self._stats_lock:
            self._tokens_issued += 1

        logger.debug(f"Issued CSRF token for session {_short(session_id)}")
        return token

    def validate(self, session_id: str, presented_value: str) -> bool:
        """
        Check a presented token against the session's live tokens.

        Returns:
            True iff an unexpired token bound to `session_id` equals
            `presented_value`. Never raises on mismatch.
        """
        if not isinstance(session_id, str) or not isinstance(presented_value, str):
            self._record_failure()
            return False
        if not session_id or not presented_value:
            self._record_failure()
            return False

        now = self._clock()
        shard = self._sessions.shard(session_id)

        with shard.lock:
            record = shard.items.get(session_id)
            if record is None or record.is_expired(now):
                tokens: List[Token] = []
            else:
                tokens = list(record.tokens)

        matched = False
        # Compare against every live token so timing does not reveal position
        for token in tokens:
            if token.bound_session_id != session_id or token.is_expired(now):
                continue
            if token.matches(presented_value):
                matched = True

        if not matched:
            self._record_failure()
            logger.warning(f"🔒 CSRF token rejected for session {_short(session_id)}")
        return matched

    def revoke(self, session_id: str) -> None:
        """Remove every token of a session. Idempotent; the session stays open."""
        shard = self._sessions.shard(session_id)
        with shard.lock:
            record = shard.items.get(session_id)
            if record is not None:
                record.tokens = []
        logger.debug(f"Revoked CSRF tokens for session {_short(session_id)}")

    def _record_failure(self) -> None:
        with self._stats_lock:
            self._validation_failures += 1

    def _maybe_cleanup(self, now: datetime) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return
        if not self._cleanup_lock.acquire(blocking=False):
            return
        try:
            self._last_cleanup = now
            self.cleanup_expired(now)
        finally:
            self._cleanup_lock.release()

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """
        Remove expired sessions and expired tokens.

        Returns:
            Number of sessions removed
        """
        now = now or self._clock()
        removed = 0
        for shard in self._sessions.shards():
            with shard.lock:
                expired_ids = [
                    sid for sid, record in shard.items.items()
                    if record.is_expired(now)
                ]
                for sid in expired_ids:
                    del shard.items[sid]
                removed += len(expired_ids)

                for record in shard.items.values():
                    record.tokens = [t for t in record.tokens if not t.is_expired(now)]

        if removed:
            logger.info(f"🧹 Cleaned up {removed} expired sessions")
        return removed

    def shutdown(self) -> None:
        self._sessions.clear()
        logger.info("🔐 TokenStore cleared")

    def get_metrics(self) -> Dict[str, int]:
        """Store metrics for monitoring (no token material)"""
        sessions = 0
        tokens = 0
        for shard in self._sessions.shards():
            with shard.lock:
                sessions += len(shard.items)
                tokens += sum(len(record.tokens) for record in shard.items.values())

        with self._stats_lock:
            return {
                "active_sessions": sessions,
                "live_tokens": tokens,
                "sessions_opened": self._sessions_opened,
                "tokens_issued": self._tokens_issued,
                "validation_failures": self._validation_failures
            }

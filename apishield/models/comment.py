# apishield/models/comment.py

import threading
from datetime import datetime, timezone
from typing import Dict, List
from uuid import uuid4

from pydantic import BaseModel, Field

# Only fields listed here are treated as rendered HTML
RENDERED_HTML_FIELDS = ("body_html",)


class CommentIn(BaseModel):
    author: str = Field(min_length=1, max_length=80)
    body_html: str = Field(min_length=1, max_length=10_000)


class Comment(CommentIn):
    """
    Stored comment. `body_html` is kept exactly as submitted; it is only
    sanitized on the way out, so policy changes apply to old comments too.
    """
    id: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CommentStore:
    """
    Simple in-memory comment storage for the demo API.
    """
    def __init__(self, max_comments: int = 1000):
        self.max_comments = max_comments
        self._comments: List[Comment] = []
        self._lock = threading.Lock()

    def add(self, comment_in: CommentIn) -> Comment:
        comment = Comment(**comment_in.model_dump())
        with self._lock:
            self._comments.append(comment)
            # Oldest comments are dropped first
            del self._comments[:-self.max_comments]
        return comment

    def list(self) -> List[Comment]:
        with self._lock:
            return list(self._comments)

    def clear(self) -> None:
        with self._lock:
            self._comments.clear()

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {"comments": len(self._comments)}

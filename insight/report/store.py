from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, time as dtime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from insight.planner.intent import Intent
from insight.utils.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

# Bumping the version orphans files written in the previous shape; there is no migration.
SCHEMA_VERSION = 2
STORAGE_KEY = f"posts_v{SCHEMA_VERSION}"

POST_STATUSES = ("analyzing", "querying", "explaining", "done", "error", "deepening")
REPLY_STATUSES = ("analyzing", "querying", "explaining", "done", "error")


def new_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Reply:
    id: str
    prompt: str
    status: str = "analyzing"
    error: Optional[str] = None
    analysis_text: str = ""
    intent: Optional[Intent] = None
    chart_data: List[Dict[str, Any]] = field(default_factory=list)
    chart_keys: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["intent"] = self.intent.to_dict() if self.intent else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reply":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["intent"] = Intent.from_dict(data["intent"]) if data.get("intent") else None
        return cls(**values)


@dataclass(frozen=True)
class Post:
    id: str
    prompt: str
    created_at: int = field(default_factory=now_ms)
    title: str = ""
    status: str = "analyzing"
    error: Optional[str] = None
    analysis_text: str = ""
    short_text: str = ""
    full_text: Optional[str] = None
    is_expanded: bool = False
    intent: Optional[Intent] = None
    chart_data: List[Dict[str, Any]] = field(default_factory=list)
    chart_keys: List[str] = field(default_factory=list)
    summary_stats: Optional[Dict[str, Any]] = None
    replies: List[Reply] = field(default_factory=list)

    def get_reply(self, reply_id: str) -> Optional[Reply]:
        return next((r for r in self.replies if r.id == reply_id), None)

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["intent"] = self.intent.to_dict() if self.intent else None
        data["replies"] = [r.to_dict() for r in self.replies]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Post":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["intent"] = Intent.from_dict(data["intent"]) if data.get("intent") else None
        values["replies"] = [Reply.from_dict(r) for r in data.get("replies") or []]
        return cls(**values)


def json_default(obj: Any):
    # json.dumps default hook for values coming straight from the engine
    if isinstance(obj, (date, datetime, dtime)):
        return obj.isoformat()
    if hasattr(obj, "item"):  # numpy scalars
        return obj.item()
    return str(obj)


def _check_status(changes: Dict[str, Any], allowed: Tuple[str, ...]) -> None:
    if "status" in changes and changes["status"] not in allowed:
        raise ValidationError(f"invalid status {changes['status']!r}")


class PostStore:
    """Single authoritative list of posts, newest first.

    Entities are frozen snapshots replaced by id on every patch, so ``get``
    always returns the latest committed state. Each committed mutation is
    written to ``<state_dir>/posts_v<N>.json``; write failures are logged and
    the in-memory list stays authoritative.
    """

    def __init__(self, state_dir: Optional[str] = None):
        self.path: Optional[Path] = Path(state_dir) / f"{STORAGE_KEY}.json" if state_dir else None
        self._posts: List[Post] = self._load()

    def _load(self) -> List[Post]:
        if self.path is None or not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text())
            return [Post.from_dict(p) for p in raw]
        except Exception as e:
            logger.warning("ignoring unreadable post store %s: %s", self.path, e)
            return []

    def _write(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps([p.to_dict() for p in self._posts], default=json_default)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(payload)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"could not write {self.path}: {e}") from e

    def _commit(self, posts: List[Post]) -> None:
        self._posts = posts
        try:
            self._write()
        except PersistenceError as e:
            logger.warning("%s", e.message)

    def all(self) -> List[Post]:
        return list(self._posts)

    def get(self, post_id: str) -> Optional[Post]:
        return next((p for p in self._posts if p.id == post_id), None)

    def add(self, post: Post) -> Post:
        self._commit([post] + [p for p in self._posts if p.id != post.id])
        return post

    def patch(self, post_id: str, **changes: Any) -> Optional[Post]:
        _check_status(changes, POST_STATUSES)
        current = self.get(post_id)
        if current is None:
            logger.debug("patch for unknown post %s ignored", post_id)
            return None
        updated = replace(current, **changes)
        self._commit([updated if p.id == post_id else p for p in self._posts])
        return updated

    def add_reply(self, post_id: str, reply: Reply) -> Optional[Post]:
        current = self.get(post_id)
        if current is None:
            return None
        return self.patch(post_id, replies=list(current.replies) + [reply])

    def patch_reply(self, post_id: str, reply_id: str, **changes: Any) -> Optional[Reply]:
        _check_status(changes, REPLY_STATUSES)
        current = self.get(post_id)
        reply = current.get_reply(reply_id) if current else None
        if reply is None:
            logger.debug("patch for unknown reply %s/%s ignored", post_id, reply_id)
            return None
        updated = replace(reply, **changes)
        self.patch(post_id, replies=[updated if r.id == reply_id else r for r in current.replies])
        return updated

    def remove(self, post_id: str) -> bool:
        if self.get(post_id) is None:
            return False
        self._commit([p for p in self._posts if p.id != post_id])
        return True

    def clear(self) -> None:
        self._commit([])

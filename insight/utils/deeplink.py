from __future__ import annotations

import base64
import binascii
import json
import zlib
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

from insight.report.store import Post, json_default
from insight.utils.errors import ValidationError


def encode_post(post: Optional[Post]) -> str:
    """Compress a post into a URL-safe string (JSON, zlib, base64url without padding)."""
    if post is None:
        return ""
    raw = json.dumps(post.to_dict(), separators=(",", ":"), default=json_default).encode("utf-8")
    return base64.urlsafe_b64encode(zlib.compress(raw, 9)).rstrip(b"=").decode("ascii")


def decode_post(encoded: Optional[str]) -> Optional[Post]:
    """Inverse of ``encode_post``; None for empty or corrupt input."""
    if not encoded:
        return None
    try:
        padded = encoded + "=" * (-len(encoded) % 4)
        raw = zlib.decompress(base64.urlsafe_b64decode(padded.encode("ascii")))
        return Post.from_dict(json.loads(raw.decode("utf-8")))
    except (binascii.Error, zlib.error, UnicodeError, ValueError, TypeError, KeyError, ValidationError):
        return None


def build_share_url(post: Post, base_url: str) -> str:
    if not post or not post.id:
        raise ValueError("build_share_url: post must have an id")
    return f"{base_url}?{urlencode({'post': post.id, 'd': encode_post(post)})}"


def parse_share_url(url: str) -> Tuple[Optional[str], Optional[Post]]:
    query = parse_qs(urlsplit(url).query)
    post_id = (query.get("post") or [None])[0]
    data = (query.get("d") or [None])[0]
    return post_id, decode_post(data) if data else None

"""
Shareable links for trace results.

A link carries either ``key`` (a cache key that can be loaded directly) or
``params`` (base64 of the percent-encoded JSON query, for re-submission when
the cache entry is gone). Secrets are never written into ``params``.
"""
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError as PydanticValidationError

from flowtrace.models import TraceQuery

logger = logging.getLogger(__name__)

SHARE_FIELDS = (
    "start",
    "rpcUrl",
    "startType",
    "addressType",
    "maxDepth",
    "maxFanout",
    "minAmount",
    "sinceDays",
    "rpcBudget",
)

# encodeURIComponent leaves these unescaped
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class ShareLink:
    key: Optional[str] = None
    query: Optional[TraceQuery] = None


def encode_share_params(query: TraceQuery) -> str:
    payload = query.model_dump(by_alias=True, exclude_none=True)
    shared = {name: payload[name] for name in SHARE_FIELDS if name in payload}
    text = json.dumps(shared, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(quote(text, safe=_URI_COMPONENT_SAFE).encode("ascii")).decode("ascii")


def decode_share_params(blob: str) -> Optional[TraceQuery]:
    """Decode a ``params`` blob; returns None for anything unreadable."""
    try:
        text = unquote(base64.b64decode(blob).decode("ascii"))
        raw = json.loads(text)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.debug("Ignoring malformed share params")
        return None
    if not isinstance(raw, dict):
        return None
    shared: Dict[str, Any] = {name: raw[name] for name in SHARE_FIELDS if name in raw}
    try:
        return TraceQuery.model_validate(shared)
    except PydanticValidationError:
        logger.debug("Ignoring share params that do not form a valid query")
        return None


def _with_query(url: str, updates: Dict[str, str], drop: str) -> str:
    parts = urlsplit(url)
    params = {k: v[-1] for k, v in parse_qs(parts.query, keep_blank_values=True).items()}
    params.pop(drop, None)
    params.update(updates)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))


def build_share_url_for_key(base_url: str, key_hash: str) -> str:
    return _with_query(base_url, {"key": key_hash}, drop="params")


def build_share_url_for_params(base_url: str, query: TraceQuery) -> str:
    return _with_query(base_url, {"params": encode_share_params(query)}, drop="key")


def parse_share_url(url: str) -> ShareLink:
    """Extract a share link; ``key`` takes precedence over ``params``."""
    params = parse_qs(urlsplit(url).query)
    key = (params.get("key") or [None])[-1]
    if key:
        return ShareLink(key=key)
    blob = (params.get("params") or [None])[-1]
    if blob:
        return ShareLink(query=decode_share_params(blob))
    return ShareLink()

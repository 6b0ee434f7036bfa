"""
Cache key derivation for trace queries.

The key is a SHA-256 over an explicitly built canonical object, so it does
not depend on how the caller ordered its fields, and it never contains the
API key itself (only whether one was supplied). The serialization matches
the web client's ``JSON.stringify`` output byte for byte, so both sides
derive the same key for the same query.
"""
import hashlib
import json
from typing import Any, Dict, Mapping, Union

from flowtrace.models import TraceQuery

DEFAULT_START_TYPE = "wallet"
DEFAULT_ADDRESS_TYPE = "owner"
DEFAULT_MAX_DEPTH = 2
DEFAULT_MAX_FANOUT = 12
DEFAULT_MIN_AMOUNT = 10
DEFAULT_SINCE_DAYS = 90
DEFAULT_RPC_BUDGET = 150
DEFAULT_MAX_SIGS_PER_WALLET = 60

HAS_KEY_MARKER = "HAS_KEY"

QueryLike = Union[TraceQuery, Mapping[str, Any]]


def _number(value: Any, default: Union[int, float]) -> Union[int, float]:
    if value is None:
        value = default
    number = float(value)
    # JSON.stringify(10) == "10"; keep integral values free of a ".0" suffix
    if number.is_integer():
        return int(number)
    return number


def _as_query(query: QueryLike) -> TraceQuery:
    if isinstance(query, TraceQuery):
        return query
    return TraceQuery.model_validate(dict(query))


def canonicalize_query(query: QueryLike) -> Dict[str, Any]:
    """Build the canonical, secret-free view of a query in fixed field order."""
    q = _as_query(query)
    canonical: Dict[str, Any] = {
        "start": q.start,
        "startType": q.start_type if q.start_type and q.start_type != "auto" else DEFAULT_START_TYPE,
        "addressType": q.address_type if q.address_type and q.address_type != "auto" else DEFAULT_ADDRESS_TYPE,
        "rpcUrl": q.rpc_url,
        "apiKey": HAS_KEY_MARKER if q.api_key else "",
    }
    if q.nos_mint:
        canonical["nosMint"] = q.nos_mint
    canonical["maxDepth"] = _number(q.max_depth, DEFAULT_MAX_DEPTH)
    canonical["maxFanout"] = _number(q.max_fanout, DEFAULT_MAX_FANOUT)
    canonical["minAmount"] = _number(q.min_amount, DEFAULT_MIN_AMOUNT)
    canonical["sinceDays"] = _number(q.since_days, DEFAULT_SINCE_DAYS)
    canonical["rpcBudget"] = _number(q.rpc_budget, DEFAULT_RPC_BUDGET)
    canonical["maxSigsPerWallet"] = _number(q.max_sigs_per_wallet, DEFAULT_MAX_SIGS_PER_WALLET)
    return canonical


def derive_cache_key(query: QueryLike) -> str:
    """Return the lowercase hex SHA-256 of the canonical query."""
    canonical = canonicalize_query(query)
    serialized = json.dumps(canonical, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

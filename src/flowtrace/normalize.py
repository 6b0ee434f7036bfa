"""
Normalization of trace service payloads.

The service has shipped several shapes over time: plain ``nodes``/``links``
arrays, ``nodesDetailed``/``linksDetailed`` arrays, and an ``edges`` list
using ``destination``/``blockTime``. Everything is folded into the canonical
FlowNode/FlowLink model here.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from flowtrace.models import FlowTraceResponse, FlowNode, FlowLink, TraceMeta, TraceResult

logger = logging.getLogger(__name__)


def _coerce_float(value) -> float:
    try:
        if value is None:
            return 0.0
        if isinstance(value, bool):
            return float(value)
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            return float(value.replace(",", ""))
    except ValueError:
        return 0.0
    return 0.0


def _coerce_time(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            pass
        try:
            return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
        except ValueError:
            return None
    return None


def _map_node(raw: Dict[str, Any]) -> Optional[FlowNode]:
    node_id = raw.get("id")
    if not isinstance(node_id, str) or not node_id:
        return None
    label = raw.get("label")
    return FlowNode(
        id=node_id,
        label=label if isinstance(label, str) else node_id,
        type=raw.get("type") or None,
    )


def _map_link(raw: Dict[str, Any]) -> Optional[FlowLink]:
    source = raw.get("source")
    target = raw.get("target")
    if not isinstance(source, str) or not isinstance(target, str):
        return None
    return FlowLink(
        source=source,
        target=target,
        amount=_coerce_float(raw.get("amount")),
        ts=_coerce_time(raw.get("ts")),
        signature=raw.get("signature") or None,
    )


def _map_edge(raw: Dict[str, Any]) -> Optional[FlowLink]:
    source = raw.get("source")
    destination = raw.get("destination")
    amount = raw.get("amount")
    if not isinstance(source, str) or not isinstance(destination, str):
        return None
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return None
    return FlowLink(
        source=source,
        target=destination,
        amount=float(amount),
        ts=_coerce_time(raw.get("blockTime")),
        signature=raw.get("signature") or None,
    )


def _collect(rows: List[Any], mapper) -> list:
    out = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        mapped = mapper(row)
        if mapped is not None:
            out.append(mapped)
    return out


def _normalize_meta(raw_meta: Optional[Dict[str, Any]]) -> TraceMeta:
    meta = {k: v for k, v in (raw_meta or {}).items() if v is not None}
    completeness = meta.get("completeness")
    if "truncated" not in meta and isinstance(completeness, dict):
        meta["truncated"] = bool(completeness.get("truncated"))
    try:
        return TraceMeta.model_validate(meta)
    except PydanticValidationError:
        logger.warning(f"Unrecognized trace meta, keeping defaults: {meta}")
        return TraceMeta(truncated=bool(meta.get("truncated")))


def normalize_trace_response(raw: Any) -> Optional[TraceResult]:
    """
    Fold any supported response shape into a TraceResult.

    Detailed arrays win over plain ones; ``edges`` is only consulted when
    neither link array has entries. Returns None for an empty payload.
    """
    if raw is None:
        return None
    if not isinstance(raw, FlowTraceResponse):
        raw = FlowTraceResponse.model_validate(raw)

    if raw.nodes_detailed:
        nodes = _collect(raw.nodes_detailed, _map_node)
    elif raw.nodes:
        nodes = _collect(raw.nodes, _map_node)
    else:
        nodes = []

    links: List[FlowLink] = []
    if raw.links_detailed:
        links = _collect(raw.links_detailed, _map_link)
    elif raw.links:
        links = _collect(raw.links, _map_link)
    elif raw.edges:
        links = _collect(raw.edges, _map_edge)
        dropped = len(raw.edges) - len(links)
        if dropped:
            logger.debug(f"Dropped {dropped} malformed edges while normalizing {raw.key_hash}")

    meta = _normalize_meta(raw.meta)

    return TraceResult(
        nodes=nodes,
        links=links,
        cached=bool(raw.cached),
        key_hash=raw.key_hash,
        meta=meta,
        created_at=raw.created_at,
    )

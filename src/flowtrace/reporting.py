from typing import Any, Dict, Optional

from flowtrace.models import GraphData, TraceResult


def compute_trace_stats(result: TraceResult) -> Dict[str, Any]:
    """
    Aggregate figures for the stats panel.
    """
    amounts = [l.amount for l in result.links]
    wallets = {l.source for l in result.links} | {l.target for l in result.links}
    total = sum(amounts)
    return {
        "totalVolume": total,
        "avgTransaction": total / len(amounts) if amounts else 0.0,
        "maxTransaction": max(amounts) if amounts else 0.0,
        "uniqueWallets": len(wallets),
        "nodeCount": len(result.nodes),
        "linkCount": len(result.links),
        "cached": result.cached,
        "rpcUsed": result.meta.rpc_used,
        "depthReached": result.meta.depth_reached,
        "truncated": result.meta.truncated,
    }


def _fmt(amount: float) -> str:
    return f"{amount:,.2f}".rstrip("0").rstrip(".")


def build_summary_text(result: TraceResult, graph: Optional[GraphData] = None) -> str:
    """
    Generate a human-readable summary of a trace.
    """
    stats = compute_trace_stats(result)

    source = "cache" if result.cached else "live trace"
    summary = f"Trace {result.key_hash[:12] or '(no key)'} ({source})\n"
    if result.created_at:
        summary += f"Created: {result.created_at}\n"

    summary += f"\nStats:\n- Wallets: {stats['uniqueWallets']}\n"
    summary += f"- Transfers: {stats['linkCount']}\n"
    summary += f"- Total volume: {_fmt(stats['totalVolume'])}\n"
    summary += f"- Average transfer: {_fmt(stats['avgTransaction'])}\n"
    summary += f"- Largest transfer: {_fmt(stats['maxTransaction'])}\n"
    if stats["rpcUsed"] is not None:
        summary += f"- RPC calls: {stats['rpcUsed']}\n"
    if stats["depthReached"] is not None:
        summary += f"- Depth reached: {stats['depthReached']}\n"

    if stats["truncated"]:
        summary += "\nResult is truncated; continue the trace for more hops.\n"

    if not result.links:
        summary += "\nNo transfers found."
        return summary

    if graph is None:
        return summary

    seeds = [n for n in graph.nodes if n.is_start]
    if seeds:
        summary += "\nSeeds:\n"
        for n in seeds:
            summary += f"- {n.label or n.id}: sent {_fmt(n.total_sent)}, received {_fmt(n.total_received)}\n"

    unreachable = [n for n in graph.nodes if not n.reachable]
    if unreachable:
        summary += f"\nUnreachable from seeds: {len(unreachable)} node(s)\n"

    # Largest net receivers are where funds came to rest
    sinks = sorted((n for n in graph.nodes if n.net_flow > 0), key=lambda n: -n.net_flow)[:5]
    if sinks:
        summary += "\nTop receivers:\n"
        for n in sinks:
            depth = "-" if n.depth is None else n.depth
            summary += f"- {n.label or n.id} (depth {depth}): net +{_fmt(n.net_flow)}\n"

    return summary

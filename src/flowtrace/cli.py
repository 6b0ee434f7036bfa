import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from flowtrace.config import FlowConfig
from flowtrace.errors import FlowTraceError
from flowtrace.flow_http_client import FlowHTTPClient
from flowtrace.graph_builder import build_graph_from_result
from flowtrace.history import RunHistoryStore
from flowtrace.layout import Viewport, compute_layout
from flowtrace.models import TraceQuery, TraceResult
from flowtrace.reporting import build_summary_text
from flowtrace.retrieval import RetrievalCoordinator, is_heavy_query


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="flowtrace", description="Token flow tracer and graph layout")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    t = sub.add_parser("trace", help="Trace flows from a wallet or signature")
    t.add_argument("start", help="Wallet address or transaction signature")
    t.add_argument("--rpc-url", default=FlowConfig.DEFAULT_RPC_URL, help="Solana RPC endpoint")
    t.add_argument("--api-key", help="RPC API key (never stored)")
    t.add_argument("--start-type", choices=["wallet", "signature", "auto"])
    t.add_argument("--address-type", choices=["owner", "token", "auto"])
    t.add_argument("--nos-mint", help="Token mint to follow")
    t.add_argument("--max-depth", type=int)
    t.add_argument("--max-fanout", type=int)
    t.add_argument("--min-amount", type=float)
    t.add_argument("--since-days", type=int)
    t.add_argument("--rpc-budget", type=int)
    t.add_argument("--max-sigs-per-wallet", type=int)
    t.add_argument("--layout", choices=["tree", "column", "force", "sankey"], default="tree")
    t.add_argument("--no-cache", action="store_true", help="Skip the cache and force a fresh trace")
    t.add_argument("--continue", dest="continue_", action="store_true", help="Keep continuing while the result is truncated")
    t.add_argument("--max-continues", type=int, default=3)
    t.add_argument("--out", default="out/trace.json", help="Output JSON file")

    c = sub.add_parser("cache", help="Load a cached trace by key")
    c.add_argument("key")
    c.add_argument("--layout", choices=["tree", "column", "force", "sankey"], default="tree")
    c.add_argument("--out", default="out/trace.json", help="Output JSON file")

    h = sub.add_parser("history", help="Show or clear recent runs")
    h.add_argument("--clear", action="store_true")
    return p


def _query_from_args(args: argparse.Namespace) -> TraceQuery:
    return TraceQuery(
        start=args.start,
        rpc_url=args.rpc_url or "",
        api_key=args.api_key,
        start_type=args.start_type,
        address_type=args.address_type,
        nos_mint=args.nos_mint,
        max_depth=args.max_depth,
        max_fanout=args.max_fanout,
        min_amount=args.min_amount,
        since_days=args.since_days,
        rpc_budget=args.rpc_budget,
        max_sigs_per_wallet=args.max_sigs_per_wallet,
    )


def write_output(result: TraceResult, layout_mode: str, out: str, start_node: Optional[str] = None) -> Path:
    graph = build_graph_from_result(result, start_node)
    layout = compute_layout(graph, layout_mode, Viewport())
    path = Path(out)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "result": result.model_dump(by_alias=True),
        "graph": graph.model_dump(by_alias=True),
        "layout": layout.to_dict(),
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    print(build_summary_text(result, graph))
    return path


async def run_trace(args: argparse.Namespace, history: RunHistoryStore) -> int:
    query = _query_from_args(args)
    if is_heavy_query(query):
        print(f"Heavy query for {query.start}; this may run as a background job...")
    else:
        print(f"Starting trace for {query.start}...")

    client = FlowHTTPClient()
    coordinator = RetrievalCoordinator(client, history)
    try:
        result = await coordinator.retrieve(query, force_fresh=args.no_cache)
        continues = 0
        while args.continue_ and result is not None and result.meta.truncated and continues < args.max_continues:
            continues += 1
            print(f"Result truncated, continuing ({continues}/{args.max_continues})...")
            result = await coordinator.continue_trace()
    except FlowTraceError as e:
        print(f"Trace failed: {e.user_message}", file=sys.stderr)
        return 1
    finally:
        await client.aclose()

    if result is None:
        print("Trace was superseded", file=sys.stderr)
        return 1
    path = write_output(result, args.layout, args.out, query.start)
    print(f"Saved trace {result.key_hash[:12]} to {path}")
    return 0


async def run_cache(args: argparse.Namespace, history: RunHistoryStore) -> int:
    client = FlowHTTPClient()
    coordinator = RetrievalCoordinator(client, history)
    try:
        result = await coordinator.load_from_cache(args.key)
    except FlowTraceError as e:
        print(f"Cache load failed: {e.user_message}", file=sys.stderr)
        return 1
    finally:
        await client.aclose()
    entry = history.find(args.key)
    path = write_output(result, args.layout, args.out, entry.params.start if entry else None)
    print(f"Saved cached trace to {path}")
    return 0


def run_history(args: argparse.Namespace, history: RunHistoryStore) -> int:
    if args.clear:
        history.clear()
        print("Recent runs cleared")
        return 0
    if not len(history):
        print("No recent runs")
        return 0
    for entry in history.entries:
        p = entry.params
        print(f"{entry.key_hash[:12]}  {p.start}  depth={p.max_depth} fanout={p.max_fanout} budget={p.rpc_budget}")
    return 0


def main(argv: Optional[list] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    history = RunHistoryStore(FlowConfig.HISTORY_PATH)
    history.load()

    if args.command == "trace":
        return asyncio.run(run_trace(args, history))
    if args.command == "cache":
        return asyncio.run(run_cache(args, history))
    return run_history(args, history)


if __name__ == "__main__":
    sys.exit(main())

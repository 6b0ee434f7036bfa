from flowtrace.graph_builder import build_graph_from_result
from flowtrace.models import FlowLink, FlowNode, TraceMeta, TraceResult
from flowtrace.reporting import build_summary_text, compute_trace_stats


def _result(truncated=False):
    return TraceResult(
        nodes=[FlowNode(id=i, label=i) for i in "ABC"],
        links=[
            FlowLink(source="A", target="B", amount=100),
            FlowLink(source="B", target="C", amount=40),
            FlowLink(source="C", target="B", amount=10),
        ],
        cached=True,
        key_hash="0123456789abcdef",
        meta=TraceMeta(rpc_used=33, depth_reached=2, truncated=truncated),
    )


def test_stats():
    stats = compute_trace_stats(_result())
    assert stats["totalVolume"] == 150
    assert stats["avgTransaction"] == 50
    assert stats["maxTransaction"] == 100
    assert stats["uniqueWallets"] == 3
    assert (stats["nodeCount"], stats["linkCount"]) == (3, 3)
    assert stats["cached"] is True
    assert stats["rpcUsed"] == 33
    assert stats["depthReached"] == 2
    assert stats["truncated"] is False


def test_stats_for_empty_result():
    stats = compute_trace_stats(TraceResult())
    assert stats["totalVolume"] == 0
    assert stats["avgTransaction"] == 0
    assert stats["maxTransaction"] == 0
    assert stats["uniqueWallets"] == 0


def test_summary_text():
    result = _result(truncated=True)
    summary = build_summary_text(result, build_graph_from_result(result, "A"))
    assert summary.startswith("Trace 0123456789ab (cache)")
    assert "- Total volume: 150" in summary
    assert "- RPC calls: 33" in summary
    assert "continue the trace" in summary
    assert "- A: sent 100, received 0" in summary
    assert "Top receivers:" in summary
    assert "- B (depth 1): net +70" in summary


def test_summary_without_transfers():
    assert build_summary_text(TraceResult()).endswith("No transfers found.")

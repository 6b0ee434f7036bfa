import base64
import json
from urllib.parse import unquote

from flowtrace.models import TraceQuery
from flowtrace.share import (
    build_share_url_for_key,
    build_share_url_for_params,
    decode_share_params,
    encode_share_params,
    parse_share_url,
)


def test_key_link_replaces_params():
    url = build_share_url_for_key("https://app.example/analysis?params=old&lang=en", "abc123")
    assert "key=abc123" in url
    assert "params=" not in url
    assert "lang=en" in url
    assert parse_share_url(url).key == "abc123"


def test_params_link_carries_shareable_fields_only():
    query = TraceQuery(start="Wallet1", rpc_url="https://rpc.example", api_key="secret", max_depth=3, force_fresh=True)
    blob = encode_share_params(query)

    decoded = json.loads(unquote(base64.b64decode(blob).decode("ascii")))
    assert decoded == {"start": "Wallet1", "rpcUrl": "https://rpc.example", "maxDepth": 3}

    link = parse_share_url(build_share_url_for_params("https://app.example/analysis", query))
    assert link.key is None
    assert link.query.start == "Wallet1"
    assert link.query.max_depth == 3
    assert link.query.api_key is None


def test_key_takes_precedence_over_params():
    blob = encode_share_params(TraceQuery(start="W", rpc_url="u"))
    link = parse_share_url(f"https://app.example/?params={blob}&key=k1")
    assert link.key == "k1"
    assert link.query is None


def test_non_ascii_values_survive():
    query = TraceQuery(start="Wället", rpc_url="https://rpc.example")
    assert decode_share_params(encode_share_params(query)).start == "Wället"


def test_malformed_params_are_ignored():
    assert decode_share_params("%%%not-base64") is None
    assert decode_share_params(base64.b64encode(b"[1,2]").decode()) is None
    assert parse_share_url("https://app.example/?params=%%%").query is None
    assert parse_share_url("https://app.example/") == parse_share_url("https://app.example/?other=1")

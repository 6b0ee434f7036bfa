import json

from flowtrace.cache_key import canonicalize_query, derive_cache_key
from flowtrace.models import TraceQuery


def _query(**overrides):
    base = {"start": "Wallet1", "rpcUrl": "https://rpc.example"}
    base.update(overrides)
    return TraceQuery.model_validate(base)


def test_defaults_are_filled_in_fixed_order():
    canonical = canonicalize_query(_query())
    assert list(canonical) == [
        "start", "startType", "addressType", "rpcUrl", "apiKey",
        "maxDepth", "maxFanout", "minAmount", "sinceDays", "rpcBudget", "maxSigsPerWallet",
    ]
    assert canonical["startType"] == "wallet"
    assert canonical["addressType"] == "owner"
    assert canonical["apiKey"] == ""
    assert (canonical["maxDepth"], canonical["maxFanout"], canonical["minAmount"]) == (2, 12, 10)
    assert (canonical["sinceDays"], canonical["rpcBudget"], canonical["maxSigsPerWallet"]) == (90, 150, 60)


def test_auto_types_collapse_to_defaults():
    assert derive_cache_key(_query(startType="auto", addressType="auto")) == derive_cache_key(_query())


def test_explicit_defaults_match_omitted_ones():
    explicit = _query(maxDepth=2, maxFanout=12, minAmount=10.0, sinceDays=90, rpcBudget=150, maxSigsPerWallet=60)
    assert derive_cache_key(explicit) == derive_cache_key(_query())


def test_key_is_idempotent_and_hex():
    key = derive_cache_key(_query(maxDepth=4))
    assert key == derive_cache_key(_query(maxDepth=4))
    assert len(key) == 64
    assert key == key.lower()
    int(key, 16)


def test_api_key_value_never_affects_key():
    assert derive_cache_key(_query(apiKey="secret-1")) == derive_cache_key(_query(apiKey="secret-2"))
    assert derive_cache_key(_query(apiKey="secret-1")) != derive_cache_key(_query())
    assert "secret" not in json.dumps(canonicalize_query(_query(apiKey="secret-1")))


def test_any_canonical_field_change_changes_key():
    base = derive_cache_key(_query(maxDepth=4))
    assert derive_cache_key(_query(maxDepth=5)) != base
    assert derive_cache_key(_query(maxDepth=4, minAmount=10.5)) != base
    assert derive_cache_key(_query(maxDepth=4, nosMint="Mint1")) != base
    assert derive_cache_key(_query(maxDepth=4, start="Wallet2")) != base


def test_transient_flags_are_ignored():
    plain = _query()
    flagged = _query(forceFresh=True, resumeFromKey="abc", ttlHours=6)
    flagged.async_ = True
    assert derive_cache_key(plain) == derive_cache_key(flagged)


def test_mapping_input_is_accepted():
    assert derive_cache_key({"start": "Wallet1", "rpcUrl": "https://rpc.example"}) == derive_cache_key(_query())


def test_integral_floats_serialize_like_integers():
    canonical = canonicalize_query(_query(minAmount=25.0))
    assert json.dumps(canonical["minAmount"]) == "25"

import os


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _api_root() -> str:
    root = (os.getenv("NOS_API_BASE") or "http://localhost:3000").strip()
    return root.rstrip("/")


class FlowConfig:
    """Flow service configuration from environment with defaults."""

    API_BASE = (os.getenv("FLOW_API_BASE") or f"{_api_root()}/v3/flow").rstrip("/")
    API_TIMEOUT = float(os.getenv("FLOW_API_TIMEOUT", "600"))
    POLL_INTERVAL = float(os.getenv("FLOW_POLL_INTERVAL", "10"))
    MAX_POLLS = int(os.getenv("FLOW_MAX_POLLS", "120"))
    PREFER_CACHE = _env_flag("FLOW_PREFER_CACHE", True)
    HISTORY_PATH = os.getenv("FLOW_HISTORY_PATH", ".cache/flow_history.json")
    DEFAULT_RPC_URL = os.getenv("FLOW_DEFAULT_RPC_URL", "https://api.mainnet-beta.solana.com")

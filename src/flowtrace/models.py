from typing import List, Optional, Dict, Any, Literal, Union
from pydantic import BaseModel, Field, ConfigDict, AliasChoices


class FlowNode(BaseModel):
    id: str
    label: str = ""
    type: Optional[str] = None


class FlowLink(BaseModel):
    source: str
    target: str
    amount: float
    ts: Optional[int] = None
    signature: Optional[str] = None


class EnrichedNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    label: str = ""
    type: Optional[str] = None
    depth: Optional[int] = None  # None = unreachable from the seed set
    total_received: float = Field(0.0, alias="totalReceived")
    total_sent: float = Field(0.0, alias="totalSent")
    net_flow: float = Field(0.0, alias="netFlow")
    is_start: bool = Field(False, alias="isStart")
    group: Optional[int] = None

    @property
    def reachable(self) -> bool:
        return self.depth is not None


class GraphData(BaseModel):
    nodes: List[EnrichedNode] = Field(default_factory=list)
    links: List[FlowLink] = Field(default_factory=list)
    seeds: List[str] = Field(default_factory=list)

    def node_map(self) -> Dict[str, EnrichedNode]:
        return {n.id: n for n in self.nodes}


class TraceQuery(BaseModel):
    """Parameters of a flow trace request.

    Serializes with camelCase keys (``model_dump(by_alias=True)``), which is
    what the trace service expects on the wire.
    """
    model_config = ConfigDict(populate_by_name=True)

    start: str = ""
    start_type: Optional[Literal["wallet", "signature", "auto"]] = Field(None, alias="startType")
    address_type: Optional[Literal["owner", "token", "auto"]] = Field(None, alias="addressType")
    rpc_url: str = Field("", alias="rpcUrl")
    api_key: Optional[str] = Field(None, alias="apiKey")
    nos_mint: Optional[str] = Field(None, alias="nosMint")
    max_depth: Optional[int] = Field(None, alias="maxDepth")
    max_fanout: Optional[int] = Field(None, alias="maxFanout")
    min_amount: Optional[float] = Field(None, alias="minAmount")
    since_days: Optional[int] = Field(None, alias="sinceDays")
    rpc_budget: Optional[int] = Field(None, alias="rpcBudget")
    max_sigs_per_wallet: Optional[int] = Field(None, alias="maxSigsPerWallet")
    ttl_hours: Optional[int] = Field(None, alias="ttlHours")

    # Transient flags, never part of the cache key
    force_fresh: Optional[bool] = Field(None, alias="forceFresh")
    async_: Optional[bool] = Field(None, alias="async")
    resume_from_key: Optional[str] = Field(None, alias="resumeFromKey")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def without_transient(self) -> "TraceQuery":
        return self.model_copy(update={"force_fresh": None, "async_": None, "resume_from_key": None})


class TraceMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    rpc_used: Optional[int] = Field(None, alias="rpcUsed")
    depth_reached: Optional[Union[int, str]] = Field(None, alias="depthReached")
    truncated: bool = False


class FlowTraceResponse(BaseModel):
    """Raw payload returned by the trace, cache and submission endpoints."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = False
    cached: bool = False
    key_hash: str = Field("", alias="keyHash")
    accepted: Optional[bool] = None
    message: Optional[str] = None
    nodes: Optional[List[Dict[str, Any]]] = None
    links: Optional[List[Dict[str, Any]]] = None
    edges: Optional[List[Dict[str, Any]]] = None
    nodes_detailed: Optional[List[Dict[str, Any]]] = Field(None, alias="nodesDetailed")
    links_detailed: Optional[List[Dict[str, Any]]] = Field(None, alias="linksDetailed")
    meta: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = Field(None, alias="createdAt")

    def has_graph(self) -> bool:
        """True when the payload carries both node and link data."""
        has_nodes = bool(self.nodes_detailed) or self.nodes is not None
        has_links = bool(self.links_detailed) or self.links is not None or bool(self.edges)
        return has_nodes and has_links


class TraceResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    nodes: List[FlowNode] = Field(default_factory=list)
    links: List[FlowLink] = Field(default_factory=list)
    cached: bool = False
    key_hash: str = Field("", alias="keyHash")
    meta: TraceMeta = Field(default_factory=TraceMeta)
    created_at: Optional[str] = Field(None, alias="createdAt")

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, by_alias=True)


class JobStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = False
    found: bool = False
    status: Literal["not_found", "queued", "running", "pending", "done", "error"] = "not_found"
    key_hash: Optional[str] = Field(None, alias="keyHash")
    cache_ready: Optional[bool] = Field(None, alias="cacheReady")
    meta: Dict[str, Any] = Field(default_factory=dict)


class RunHistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    key_hash: str = Field(..., alias="keyHash", min_length=1)
    params: TraceQuery
    timestamp: int = Field(..., validation_alias=AliasChoices("timestamp", "ts"))

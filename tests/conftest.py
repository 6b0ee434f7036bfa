from typing import Any, Dict, List, Optional, Union

import pytest

from flowtrace.errors import NetworkError
from flowtrace.history import RunHistoryStore
from flowtrace.models import FlowTraceResponse, JobStatus, TraceQuery
from flowtrace.retrieval import RetrievalCoordinator

Reply = Union[Dict[str, Any], Exception]


def graph_payload(key: str = "k", cached: bool = True, truncated: bool = False) -> Dict[str, Any]:
    return {
        "success": True,
        "cached": cached,
        "keyHash": key,
        "nodes": [{"id": "A"}, {"id": "B"}],
        "links": [{"source": "A", "target": "B", "amount": 5}],
        "meta": {"rpcUsed": 12, "depthReached": 1, "truncated": truncated},
    }


class FakeFlowClient:
    """In-memory flow service.

    Each endpoint pops scripted replies in order; when a script runs dry the
    endpoint keeps returning its ``*_default``. Exceptions are raised.
    """

    def __init__(
        self,
        trace: Optional[List[Reply]] = None,
        cache: Optional[List[Reply]] = None,
        job: Optional[List[Reply]] = None,
        cache_default: Optional[Reply] = None,
        job_default: Optional[Reply] = None,
    ):
        self.trace_replies = list(trace or [])
        self.cache_replies = list(cache or [])
        self.job_replies = list(job or [])
        self.cache_default = cache_default if cache_default is not None else {"success": False}
        self.job_default = job_default if job_default is not None else {"success": True, "found": True, "status": "running"}
        self.trace_calls: List[TraceQuery] = []
        self.cache_calls: List[tuple] = []
        self.job_calls: List[str] = []

    @staticmethod
    def _next(script: List[Reply], default: Optional[Reply]) -> Reply:
        reply = script.pop(0) if script else default
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def trace(self, query: TraceQuery) -> FlowTraceResponse:
        self.trace_calls.append(query)
        reply = self._next(self.trace_replies, NetworkError("no scripted trace reply"))
        return FlowTraceResponse.model_validate(reply)

    async def get_cache(self, key: str, stale: bool = False) -> FlowTraceResponse:
        self.cache_calls.append((key, stale))
        return FlowTraceResponse.model_validate(self._next(self.cache_replies, self.cache_default))

    async def get_job(self, key: str) -> JobStatus:
        self.job_calls.append(key)
        return JobStatus.model_validate(self._next(self.job_replies, self.job_default))


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def query():
    return TraceQuery(start="Wallet1", rpc_url="https://rpc.example", max_depth=2, max_fanout=3, rpc_budget=100)


@pytest.fixture
def make_coordinator(sleep):
    def _make(client: FakeFlowClient, **kwargs) -> RetrievalCoordinator:
        kwargs.setdefault("prefer_cache", True)
        kwargs.setdefault("poll_interval", 10)
        kwargs.setdefault("max_polls", 120)
        return RetrievalCoordinator(client, RunHistoryStore(), sleep=sleep, **kwargs)
    return _make

"""
Protocol definition for flow trace service clients.
Lets the HTTP client and in-memory fakes be used interchangeably by the
retrieval coordinator.
"""
from typing import Protocol, runtime_checkable

from flowtrace.models import FlowTraceResponse, JobStatus, TraceQuery


@runtime_checkable
class FlowClientProtocol(Protocol):
    """Protocol for flow trace service implementations."""

    async def trace(self, query: TraceQuery) -> FlowTraceResponse:
        """Submit a trace; returns a result or an acceptance acknowledgement."""
        ...

    async def get_cache(self, key: str, stale: bool = False) -> FlowTraceResponse:
        """Read a cached trace by key."""
        ...

    async def get_job(self, key: str) -> JobStatus:
        """Get background job status for a key."""
        ...

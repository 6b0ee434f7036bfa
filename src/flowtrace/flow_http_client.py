"""
HTTP client for the flow trace service.
Compatible with FlowClientProtocol.
"""
import httpx
from typing import Any, Dict, Optional, Type, TypeVar
import logging

from pydantic import BaseModel, ValidationError as PydanticValidationError

from flowtrace.config import FlowConfig
from flowtrace.errors import NetworkError
from flowtrace.models import FlowTraceResponse, JobStatus, TraceQuery

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(model: Type[ModelT], data: Any, path: str) -> ModelT:
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise NetworkError(f"Malformed {path} response: {e}") from e


class FlowHTTPClient:
    """HTTP client for the /v3/flow endpoints."""

    def __init__(self, api_url: Optional[str] = None, timeout: Optional[float] = None):
        """
        Initialize the flow client.

        Args:
            api_url: Base URL of the flow service (defaults to FLOW_API_BASE)
            timeout: Per-request timeout in seconds (defaults to FLOW_API_TIMEOUT)
        """
        self.api_url = (api_url or FlowConfig.API_BASE).rstrip('/')
        self.client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else FlowConfig.API_TIMEOUT,
            headers={"Content-Type": "application/json"},
        )

    async def _get(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.api_url}{path}"
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"GET {path} failed: {e}") from e

    async def trace(self, query: TraceQuery) -> FlowTraceResponse:
        """
        Submit a trace request.

        POST {api_url}/trace

        Returns:
            Either a complete trace or ``{accepted: true, keyHash}`` for a
            background job
        """
        url = f"{self.api_url}/trace"
        payload = query.to_payload()
        logger.info(
            f"Submitting trace for {query.start} "
            f"(async={bool(query.async_)}, forceFresh={bool(query.force_fresh)}, resume={bool(query.resume_from_key)})"
        )
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"POST /trace failed: {e}") from e
        return _parse(FlowTraceResponse, data, "/trace")

    async def get_cache(self, key: str, stale: bool = False) -> FlowTraceResponse:
        """
        Read a cached trace.

        GET {api_url}/cache?key=...[&stale=1]
        """
        params: Dict[str, Any] = {"key": key}
        if stale:
            params["stale"] = 1
        data = await self._get("/cache", params)
        return _parse(FlowTraceResponse, data, "/cache")

    async def get_job(self, key: str) -> JobStatus:
        """
        Get background job status.

        GET {api_url}/job?key=..., falling back to the older /status route.
        """
        try:
            data = await self._get("/job", {"key": key})
        except NetworkError:
            logger.debug(f"/job unavailable for {key[:12]}, trying /status")
            data = await self._get("/status", {"key": key})
        return _parse(JobStatus, data, "/job")

    async def aclose(self):
        """Close the HTTP client."""
        await self.client.aclose()

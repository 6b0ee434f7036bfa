"""
Retrieval protocol for flow traces.

Cache first, then submit; heavy queries run as background jobs that are
polled through the job-status endpoint, degrading to plain cache polling
when that endpoint misbehaves. Only one retrieval is tracked at a time: a new
submission flags the previous one stale and whatever it eventually fetches
is dropped instead of committed.
"""
import asyncio
import logging
import math
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from flowtrace.cache_key import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_MAX_FANOUT,
    DEFAULT_RPC_BUDGET,
    derive_cache_key,
)
from flowtrace.client_protocol import FlowClientProtocol
from flowtrace.config import FlowConfig
from flowtrace.errors import (
    FlowTraceError,
    JobError,
    NetworkError,
    ProtocolUnsupportedError,
    TraceTimeoutError,
    ValidationError,
)
from flowtrace.history import RunHistoryStore
from flowtrace.models import FlowTraceResponse, TraceQuery, TraceResult
from flowtrace.normalize import normalize_trace_response

logger = logging.getLogger(__name__)

HEAVY_WORK_THRESHOLD = 25
HEAVY_BUDGET_THRESHOLD = 300

CONTINUE_GROWTH = 1.5
CONTINUE_MIN_BUDGET = 400
CONTINUE_MAX_BUDGET = 5000
DEFAULT_PRIOR_BUDGET = 300

SleepFn = Callable[[float], Awaitable[None]]


class RetrievalState(str, Enum):
    IDLE = "idle"
    COMPUTING_KEY = "computing_key"
    CACHE_LOOKUP = "cache_lookup"
    SUBMITTING = "submitting"
    POLLING = "polling"
    FALLBACK_POLLING = "fallback_polling"
    FETCH_CACHE = "fetch_cache"
    DONE = "done"
    FAILED = "failed"


def is_heavy_query(query: TraceQuery) -> bool:
    """Heavy queries are forced onto the background job path."""
    depth = query.max_depth if query.max_depth is not None else DEFAULT_MAX_DEPTH
    fanout = query.max_fanout if query.max_fanout is not None else DEFAULT_MAX_FANOUT
    budget = query.rpc_budget if query.rpc_budget is not None else DEFAULT_RPC_BUDGET
    return depth * fanout >= HEAVY_WORK_THRESHOLD or budget > HEAVY_BUDGET_THRESHOLD


def next_continuation_budget(prior_budget: Optional[int]) -> int:
    prior = prior_budget if prior_budget is not None else DEFAULT_PRIOR_BUDGET
    return min(max(CONTINUE_MIN_BUDGET, math.ceil(prior * CONTINUE_GROWTH)), CONTINUE_MAX_BUDGET)


def clamp_continuation_budget(budget: int) -> int:
    return min(max(CONTINUE_MIN_BUDGET, int(budget)), CONTINUE_MAX_BUDGET)


class _Superseded(Exception):
    """Raised inside a retrieval whose generation is no longer current."""


class RetrievalHandle:
    """Handle to a retrieval started with ``RetrievalCoordinator.submit``.

    ``cancel()`` only flags the retrieval stale; an in-flight request still
    completes but its result is discarded.
    """

    def __init__(self, coordinator: "RetrievalCoordinator", task: "asyncio.Task[Optional[TraceResult]]", generation: int):
        self._coordinator = coordinator
        self._task = task
        self.generation = generation

    @property
    def active(self) -> bool:
        return self._coordinator.generation == self.generation and not self._task.done()

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        if self._coordinator.generation == self.generation:
            self._coordinator.invalidate()

    def __await__(self):
        return self._task.__await__()


class RetrievalCoordinator:
    def __init__(
        self,
        client: FlowClientProtocol,
        history: Optional[RunHistoryStore] = None,
        *,
        prefer_cache: Optional[bool] = None,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.client = client
        self.history = history if history is not None else RunHistoryStore()
        self.prefer_cache = FlowConfig.PREFER_CACHE if prefer_cache is None else prefer_cache
        self.poll_interval = FlowConfig.POLL_INTERVAL if poll_interval is None else poll_interval
        self.max_polls = FlowConfig.MAX_POLLS if max_polls is None else max_polls
        self._sleep = sleep

        self.state = RetrievalState.IDLE
        self.pending_key: Optional[str] = None
        self.last_params: Optional[TraceQuery] = None
        self.last_attempt: Optional[TraceQuery] = None
        self.last_result: Optional[TraceResult] = None
        self.last_error: Optional[FlowTraceError] = None
        self._generation = 0
        self._slot: Optional[RetrievalHandle] = None

    # ---------- generation tracking ----------

    @property
    def generation(self) -> int:
        return self._generation

    def _begin(self) -> int:
        self._generation += 1
        self.pending_key = None
        return self._generation

    def invalidate(self) -> None:
        """Stop tracking the current retrieval; its result will be ignored."""
        if self.pending_key:
            logger.info(f"Dropping pending key {self.pending_key[:12]}")
        self._begin()
        self.state = RetrievalState.IDLE

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _ensure_current(self, generation: int) -> None:
        if not self._is_current(generation):
            raise _Superseded()

    def _transition(self, state: RetrievalState, generation: int) -> None:
        if self._is_current(generation):
            logger.debug(f"Retrieval {generation}: {self.state.value} -> {state.value}")
            self.state = state

    # ---------- public API ----------

    async def retrieve(self, query: TraceQuery, *, force_fresh: bool = False) -> Optional[TraceResult]:
        """
        Run the full retrieval protocol for ``query``.

        Returns the committed result, or None when a newer retrieval
        superseded this one before it finished.
        """
        return await self._run(query, self._begin(), force_fresh)

    def submit(self, query: TraceQuery, *, force_fresh: bool = False) -> RetrievalHandle:
        """Start a retrieval in the background, replacing any tracked one."""
        generation = self._begin()
        task = asyncio.create_task(self._run(query, generation, force_fresh))
        self._slot = RetrievalHandle(self, task, generation)
        return self._slot

    @property
    def active_handle(self) -> Optional[RetrievalHandle]:
        if self._slot is not None and self._slot.active:
            return self._slot
        return None

    async def retry(self) -> Optional[TraceResult]:
        query = self.last_attempt or self.last_params
        if query is None:
            raise ValidationError("Nothing to retry yet")
        return await self.retrieve(query)

    async def refresh(self) -> Optional[TraceResult]:
        """Re-run the last query bypassing the cache."""
        query = self.last_params or self.last_attempt
        if query is None:
            raise ValidationError("Nothing to refresh yet")
        return await self.retrieve(query, force_fresh=True)

    def continuation_query(self, budget: Optional[int] = None) -> TraceQuery:
        """Build the resubmission for a truncated trace."""
        result = self.last_result
        if result is None or not result.meta.truncated:
            raise ValidationError("Only truncated traces can be continued")
        base = self._known_params()
        if base is None or not base.start:
            raise ValidationError("Missing start address. Load parameters from Recent first.")

        next_budget = next_continuation_budget(base.rpc_budget) if budget is None else clamp_continuation_budget(budget)
        update = {"rpc_budget": next_budget, "async_": True, "force_fresh": None, "resume_from_key": None}
        if result.key_hash:
            update["resume_from_key"] = result.key_hash
        else:
            update["force_fresh"] = True
        return base.model_copy(update=update)

    async def continue_trace(self, budget: Optional[int] = None) -> Optional[TraceResult]:
        query = self.continuation_query(budget)
        logger.info(f"Continuing truncated trace with rpcBudget={query.rpc_budget} resumeFrom={query.resume_from_key}")
        return await self.retrieve(query)

    async def load_from_cache(self, key_hash: str) -> TraceResult:
        """Load a cache entry directly, e.g. from a share link or a recent run."""
        try:
            data = await self.client.get_cache(key_hash)
        except NetworkError as e:
            self.last_error = e
            raise
        if not data.success:
            self.last_error = FlowTraceError("Cache fetch failed")
            raise self.last_error
        result = normalize_trace_response(data) or TraceResult(key_hash=key_hash)
        if not result.key_hash:
            result.key_hash = key_hash
        self.last_result = result
        entry = self.history.find(key_hash)
        if entry is not None:
            self.last_params = entry.params
        return result

    # ---------- protocol ----------

    def _known_params(self) -> Optional[TraceQuery]:
        if self.last_params is not None:
            return self.last_params
        if self.last_result is not None and self.last_result.key_hash:
            entry = self.history.find(self.last_result.key_hash)
            if entry is not None:
                return entry.params
        return None

    def _fill_missing(self, query: TraceQuery) -> TraceQuery:
        if query.start and query.rpc_url:
            return query
        fallback = self._known_params()
        if fallback is None:
            return query
        provided = query.model_dump(exclude_none=True, exclude_defaults=True)
        return fallback.model_copy(update=provided)

    async def _run(self, query: TraceQuery, generation: int, force_fresh: bool) -> Optional[TraceResult]:
        try:
            return await self._execute(query, generation, force_fresh)
        except _Superseded:
            logger.info(f"Retrieval {generation} superseded; discarding its result")
            return None
        except FlowTraceError as e:
            if self._is_current(generation):
                self.pending_key = None
                self.last_error = e
                self._transition(RetrievalState.FAILED, generation)
                logger.warning(f"Retrieval failed: {e.user_message}")
            raise

    async def _execute(self, query: TraceQuery, generation: int, force_fresh: bool) -> Optional[TraceResult]:
        self.last_error = None
        query = self._fill_missing(query)
        self.last_attempt = query
        if not query.start or not query.rpc_url:
            raise ValidationError("Missing start or rpcUrl")

        force_fresh = force_fresh or bool(query.force_fresh)
        params = query.without_transient()
        post = query.model_copy()
        if not self.prefer_cache or force_fresh:
            post.force_fresh = True
        if is_heavy_query(query):
            post.async_ = True

        self._transition(RetrievalState.COMPUTING_KEY, generation)
        key = derive_cache_key(params)

        if self.prefer_cache and not force_fresh:
            self._transition(RetrievalState.CACHE_LOOKUP, generation)
            hit = await self._probe_cache(key)
            self._ensure_current(generation)
            if hit is not None:
                logger.info(f"Cache hit for {key[:12]}")
                return self._commit(hit, params, key, generation)

        self._transition(RetrievalState.SUBMITTING, generation)
        try:
            data = await self.client.trace(post)
        except (NetworkError, PydanticValidationError) as e:
            self._ensure_current(generation)
            logger.warning(f"Submission failed ({e}); retrying as a background job")
            data = await self._recover(post, key, generation)
            return self._commit(data, params, key, generation)
        self._ensure_current(generation)

        if data.accepted:
            job_key = data.key_hash or key
            logger.info(f"Trace accepted as background job {job_key[:12]}")
            data = await self._await_job(job_key, generation)
        elif not data.success:
            logger.warning(f"Trace request failed: {data.message or 'no message'}; retrying as a background job")
            data = await self._recover(post, key, generation)

        return self._commit(data, params, key, generation)

    async def _probe_cache(self, key: str) -> Optional[FlowTraceResponse]:
        try:
            cached = await self.client.get_cache(key, stale=True)
        except Exception as e:
            logger.debug(f"Cache probe for {key[:12]} failed: {e}")
            return None
        if cached is not None and cached.success and cached.cached:
            return cached
        return None

    async def _recover(self, query: TraceQuery, key: str, generation: int) -> FlowTraceResponse:
        """Re-kick a failed submission as a background job and wait for it."""
        try:
            kick = await self.client.trace(query.model_copy(update={"async_": True}))
        except Exception as e:
            logger.debug(f"Background re-kick failed: {e}")
            kick = None
        self._ensure_current(generation)

        if kick is not None:
            if kick.accepted and kick.key_hash:
                key = kick.key_hash
            elif kick.success and not kick.accepted:
                return kick
        return await self._await_job(key, generation)

    async def _await_job(self, key: str, generation: int) -> FlowTraceResponse:
        self.pending_key = key
        try:
            result = await self._poll_job_status(key, generation)
        except ProtocolUnsupportedError as e:
            logger.info(f"Job status unavailable ({e}); falling back to cache polling")
            result = await self._poll_cache(key, generation)
        if result is None:
            raise TraceTimeoutError(
                f"Job {key} did not finish within {self.max_polls} polls",
                user_message=TraceTimeoutError.default_message,
            )
        return result

    async def _poll_job_status(self, key: str, generation: int) -> Optional[FlowTraceResponse]:
        self._transition(RetrievalState.POLLING, generation)
        for attempt in range(self.max_polls):
            await self._sleep(self.poll_interval)
            self._ensure_current(generation)
            try:
                job = await self.client.get_job(key)
                self._ensure_current(generation)
                if job.success and job.found and job.status == "error":
                    raise JobError(job.meta.get("error") or JobError.default_message)
                if job.success and ((job.found and job.status == "done") or job.cache_ready is True):
                    self._transition(RetrievalState.FETCH_CACHE, generation)
                    cached = await self.client.get_cache(key)
                    self._ensure_current(generation)
                    if cached.cached and cached.has_graph():
                        return cached
                    self._transition(RetrievalState.POLLING, generation)
                logger.debug(f"Poll {attempt + 1}/{self.max_polls} for {key[:12]}: {job.status}")
            except (JobError, _Superseded):
                raise
            except Exception as e:
                raise ProtocolUnsupportedError(str(e)) from e
        return None

    async def _poll_cache(self, key: str, generation: int) -> Optional[FlowTraceResponse]:
        self._transition(RetrievalState.FALLBACK_POLLING, generation)
        for attempt in range(self.max_polls):
            await self._sleep(self.poll_interval)
            self._ensure_current(generation)
            try:
                cached = await self.client.get_cache(key)
            except Exception as e:
                logger.debug(f"Cache poll {attempt + 1}/{self.max_polls} for {key[:12]} failed: {e}")
                continue
            self._ensure_current(generation)
            if cached.cached and cached.has_graph():
                return cached
        return None

    def _commit(self, data: FlowTraceResponse, params: TraceQuery, key: str, generation: int) -> TraceResult:
        self._ensure_current(generation)
        result = normalize_trace_response(data) or TraceResult()
        if not result.key_hash:
            result.key_hash = data.key_hash or key

        self.pending_key = None
        self.last_result = result
        self.last_params = params
        self.history.record(result.key_hash, params)
        self._transition(RetrievalState.DONE, generation)
        logger.info(
            f"Trace {result.key_hash[:12]} ready: {len(result.nodes)} nodes, {len(result.links)} links"
            f"{' (cached)' if result.cached else ''}{' (truncated)' if result.meta.truncated else ''}"
        )
        return result

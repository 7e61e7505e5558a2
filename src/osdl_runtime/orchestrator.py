from __future__ import annotations

import asyncio
import functools
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Sequence, Tuple

from .data_sources import SourceRouter, validate_source
from .error_channel import ErrorChannel, LoggingErrorChannel
from .errors import ConfigError, FetchError, RuntimeEngineError
from .interpolation import resolve_data_bindings_in_object
from .models.node import DataRequirement

logger = logging.getLogger(__name__)

SettleListener = Callable[[str], None]

_PENDING = "pending"
_RESOLVED = "resolved"
_FAILED = "failed"
_TIMED_OUT = "timed_out"
_INVALID = "invalid"


def make_cache_key(source: Mapping[str, Any]) -> str:
    """Stable identity of a resolved source: ``req_`` + sha256 of its canonical JSON."""
    if source.get("type") == "rql":
        identity = {"type": "rql", "queries": source.get("queries")}
    else:
        identity = {
            "type": source.get("type"),
            "query": source.get("query"),
            "variables": source.get("variables") or {},
            "dataPath": source.get("dataPath"),
        }
    canonical = json.dumps(identity, sort_keys=True, separators=(",", ":"), default=str)
    return "req_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _running_loop() -> asyncio.AbstractEventLoop:
    try:
        return asyncio.get_running_loop()
    except RuntimeError as exc:
        raise RuntimeError("Data requirements are fetched on the running event loop; resolve them from a coroutine") from exc


@dataclass
class CacheEntry:
    value: Any = None
    fetched_at: float | None = None
    ttl_ms: float = 0
    task: asyncio.Task | None = None

    def is_fresh(self, now: float) -> bool:
        return self.fetched_at is not None and (now - self.fetched_at) * 1000 < self.ttl_ms

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()


@dataclass
class _Resolution:
    node_id: str
    key: str
    cache_key: str | None
    source: Mapping[str, Any] | None
    blocking: bool
    default: Any
    ttl_ms: float
    status: str = _PENDING
    value: Any = None
    attempts: int = 0
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.status != _PENDING


@dataclass(frozen=True)
class RequirementResolution:
    values: Dict[str, Any]
    pending: frozenset[str]
    blocked: bool


class DataRequirementOrchestrator:
    """Fetches, caches and gates node data requirements.

    Each (node id, requirement key) pair owns one resolution. Identical
    resolved sources share a cache entry and at most one in-flight task, so
    several nodes asking for the same query trigger one fetch. Settled fetches
    are applied only to resolutions that are still current and mounted;
    subscribers are then told which node to re-evaluate.
    """

    def __init__(
        self,
        *,
        router: SourceRouter | None = None,
        error_channel: ErrorChannel | None = None,
        blocking_timeout_ms: int = 10_000,
        blocking_retry_budget: int = 2,
        retry_delay_ms: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._router = router or SourceRouter()
        self._error_channel = error_channel or LoggingErrorChannel()
        self._blocking_timeout_ms = blocking_timeout_ms
        self._retry_budget = blocking_retry_budget
        self._retry_delay_ms = retry_delay_ms
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._resolutions: Dict[Tuple[str, str], _Resolution] = {}
        self._background: set[asyncio.Task] = set()
        self._listeners: list[SettleListener] = []
        self.is_mounted: Callable[[str], bool] = lambda node_id: True

    # --- subscriptions -----------------------------------------------------

    def subscribe(self, listener: SettleListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, node_id: str) -> None:
        for listener in list(self._listeners):
            listener(node_id)

    # --- resolution --------------------------------------------------------

    def resolve_requirements(
        self,
        node_id: str,
        requirements: Sequence[DataRequirement],
        context: Mapping[str, Any],
    ) -> RequirementResolution:
        """Return the best values known right now and start any fetch still needed.

        Args:
            node_id: Owning node (repeater instances pass their generated id)
            requirements: The node's declared data requirements
            context: Context used to interpolate each requirement's source

        Returns:
            Values keyed by requirement key, the keys still pending, and
            whether any pending key is blocking
        """
        values: Dict[str, Any] = {}
        pending: set[str] = set()
        blocked = False
        for requirement in requirements:
            resolution = self._resolve_one(node_id, requirement, context)
            values[requirement.key] = resolution.value if resolution.settled else requirement.default_value
            if not resolution.settled:
                pending.add(requirement.key)
                blocked = blocked or resolution.blocking
        return RequirementResolution(values=values, pending=frozenset(pending), blocked=blocked)

    def _resolve_one(self, node_id: str, requirement: DataRequirement, context: Mapping[str, Any]) -> _Resolution:
        state_key = (node_id, requirement.key)
        current = self._resolutions.get(state_key)

        try:
            raw = requirement.source.to_schema() if requirement.source is not None else None
            source = validate_source(resolve_data_bindings_in_object(raw, context) if raw is not None else None)
        except ConfigError as error:
            if current is not None and current.status == _INVALID:
                return current
            self._discard(current)
            invalid = _Resolution(
                node_id=node_id,
                key=requirement.key,
                cache_key=None,
                source=None,
                blocking=False,
                default=requirement.default_value,
                ttl_ms=0,
                status=_INVALID,
                value=requirement.default_value,
            )
            self._resolutions[state_key] = invalid
            self._report(error, node_id=node_id, key=requirement.key)
            return invalid

        cache_key = make_cache_key(source)
        if current is not None and current.cache_key == cache_key:
            return current

        entry = self._cache.get(cache_key)
        fresh = entry is not None and entry.is_fresh(self._clock())
        loop = None if fresh else _running_loop()

        resolution = _Resolution(
            node_id=node_id,
            key=requirement.key,
            cache_key=cache_key,
            source=source,
            blocking=requirement.blocking,
            default=requirement.default_value,
            ttl_ms=requirement.cache_duration_ms or 0,
        )
        self._discard(current)
        self._resolutions[state_key] = resolution

        if fresh:
            logger.debug("Data requirement cache hit", extra={"node_id": node_id, "key": requirement.key})
            resolution.status = _RESOLVED
            resolution.value = entry.value
            return resolution

        self._start_fetch(resolution)
        if resolution.blocking and self._blocking_timeout_ms:
            resolution.timeout_handle = loop.call_later(
                self._blocking_timeout_ms / 1000, self._on_timeout, state_key, resolution
            )
        return resolution

    def _start_fetch(self, resolution: _Resolution) -> None:
        assert resolution.cache_key is not None and resolution.source is not None
        resolution.attempts += 1
        self._evict_expired()
        entry = self._cache.setdefault(resolution.cache_key, CacheEntry())
        entry.ttl_ms = max(entry.ttl_ms, resolution.ttl_ms)
        if entry.in_flight:
            logger.debug(
                "Joining in-flight fetch",
                extra={"node_id": resolution.node_id, "key": resolution.key, "cache_key": resolution.cache_key},
            )
        else:
            logger.info(
                "Fetching data requirement",
                extra={
                    "node_id": resolution.node_id,
                    "key": resolution.key,
                    "source_type": resolution.source.get("type"),
                    "attempt": resolution.attempts,
                },
            )
            entry.task = self._spawn(self._fetch(resolution.cache_key, resolution.source))
        entry.task.add_done_callback(functools.partial(self._on_fetch_done, (resolution.node_id, resolution.key), resolution))

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled():
            # Mark the exception retrieved; resolutions handle it in their own callbacks
            task.exception()

    async def _fetch(self, cache_key: str, source: Mapping[str, Any]) -> Any:
        entry = self._cache[cache_key]
        try:
            value = await self._router.fetch(source)
        except BaseException:
            if entry.fetched_at is None:
                self._drop_entry(cache_key, entry)
            raise
        entry.value = value
        entry.fetched_at = self._clock()
        if entry.ttl_ms <= 0:
            # Nothing can reuse an entry that is never fresh
            self._drop_entry(cache_key, entry)
        return value

    def _drop_entry(self, cache_key: str, entry: CacheEntry) -> None:
        if self._cache.get(cache_key) is entry:
            del self._cache[cache_key]

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if not entry.in_flight and not entry.is_fresh(now)]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug("Evicted expired cache entries", extra={"count": len(expired)})

    def _on_fetch_done(self, state_key: Tuple[str, str], resolution: _Resolution, task: asyncio.Task) -> None:
        if self._resolutions.get(state_key) is not resolution:
            logger.debug("Discarding fetch for superseded resolution", extra={"node_id": resolution.node_id})
            return
        if not self.is_mounted(resolution.node_id):
            logger.debug("Discarding fetch for unmounted node", extra={"node_id": resolution.node_id})
            self._discard(self._resolutions.pop(state_key))
            return
        if resolution.status not in (_PENDING, _TIMED_OUT):
            return

        error: RuntimeEngineError | None = None
        if task.cancelled():
            error = FetchError("Fetch was cancelled", cache_key=resolution.cache_key)
        elif task.exception() is not None:
            exc = task.exception()
            error = exc if isinstance(exc, RuntimeEngineError) else FetchError(str(exc), cache_key=resolution.cache_key)

        if error is None:
            resolution.status = _RESOLVED
            resolution.value = task.result()
            self._cancel_timeout(resolution)
            self._notify(resolution.node_id)
            return

        if resolution.status == _TIMED_OUT:
            return
        if resolution.blocking and not isinstance(error, ConfigError) and resolution.attempts <= self._retry_budget:
            logger.warning(
                "Blocking data requirement failed, retrying",
                extra={"node_id": resolution.node_id, "key": resolution.key, "attempt": resolution.attempts},
            )
            self._spawn(self._retry_later(state_key, resolution))
            return

        resolution.status = _FAILED
        resolution.value = resolution.default
        self._cancel_timeout(resolution)
        self._report(error, node_id=resolution.node_id, key=resolution.key)
        self._notify(resolution.node_id)

    async def _retry_later(self, state_key: Tuple[str, str], resolution: _Resolution) -> None:
        if self._retry_delay_ms:
            await asyncio.sleep(self._retry_delay_ms / 1000)
        if self._resolutions.get(state_key) is resolution and resolution.status == _PENDING:
            self._start_fetch(resolution)

    def _on_timeout(self, state_key: Tuple[str, str], resolution: _Resolution) -> None:
        resolution.timeout_handle = None
        if self._resolutions.get(state_key) is not resolution or resolution.status != _PENDING:
            return
        resolution.status = _TIMED_OUT
        resolution.value = resolution.default
        self._report(
            FetchError("Blocking data requirement timed out", timeout_ms=self._blocking_timeout_ms),
            node_id=resolution.node_id,
            key=resolution.key,
        )
        if self.is_mounted(resolution.node_id):
            self._notify(resolution.node_id)

    def _cancel_timeout(self, resolution: _Resolution) -> None:
        if resolution.timeout_handle is not None:
            resolution.timeout_handle.cancel()
            resolution.timeout_handle = None

    def _discard(self, resolution: _Resolution | None) -> None:
        if resolution is not None:
            self._cancel_timeout(resolution)

    def _report(self, error: RuntimeEngineError, *, node_id: str | None, key: str | None) -> None:
        self._error_channel.report(error, node_id=node_id, key=key)

    # --- inspection and lifecycle ------------------------------------------

    def peek(self, node_id: str, requirements: Sequence[DataRequirement]) -> Dict[str, Any]:
        """Values currently known for a node, without fetching anything."""
        values: Dict[str, Any] = {}
        for requirement in requirements:
            resolution = self._resolutions.get((node_id, requirement.key))
            settled = resolution is not None and resolution.settled
            values[requirement.key] = resolution.value if settled else requirement.default_value
        return values

    def release(self, node_id: str) -> None:
        """Forget every resolution owned by an unmounted node; in-flight fetches are left to finish."""
        for state_key in [state_key for state_key in self._resolutions if state_key[0] == node_id]:
            self._discard(self._resolutions.pop(state_key))

    def has_resolutions(self, node_id: str) -> bool:
        return any(state_key[0] == node_id for state_key in self._resolutions)

    def cache_entry(self, cache_key: str) -> CacheEntry | None:
        return self._cache.get(cache_key)

    async def fetch_page_data(self, data_source: Mapping[str, Any], context: Mapping[str, Any]) -> Any:
        """Resolve the page ``dataSource`` once; failures are reported and yield ``None``."""
        resolved = resolve_data_bindings_in_object(dict(data_source), context)
        try:
            return await self._router.fetch_page(resolved)
        except RuntimeEngineError as error:
            self._report(error, node_id=None, key="page")
            return None

    async def aclose(self) -> None:
        """Cancel outstanding fetches and retries, then close the source clients."""
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._router.aclose()

    async def settle(self) -> None:
        """Wait until every in-flight fetch and scheduled retry has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
            await asyncio.sleep(0)


__all__ = [
    "CacheEntry",
    "DataRequirementOrchestrator",
    "RequirementResolution",
    "make_cache_key",
]

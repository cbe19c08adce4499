"""Keyed report cache for a report-viewing session.

One coordinator serves one session and must only be touched from the event
loop that runs it; nothing here is guarded for use from other threads.

Ordering: every request gets a sequence number when it is initiated. A
result is stored or shown only if nothing newer has been stored or shown
already, so an old fetch that resolves late never replaces a fresher one.
"""

import asyncio
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from config import get_settings
from models import PeriodType, ViewScope
from periods import default_selector_id
from reports import Report

logger = logging.getLogger(__name__)

ReportBuilder = Callable[[PeriodType, ViewScope, str, int, bool], Awaitable[Report]]


class LoadState(str, Enum):
    idle = "idle"
    loading = "loading"
    background_loading = "background_loading"


@dataclass(frozen=True)
class CacheKey:
    period_type: PeriodType
    view_scope: ViewScope
    period_selector_id: str

    def __str__(self) -> str:
        return (
            f"{self.period_type.value}|{self.view_scope.value}|{self.period_selector_id}"
        )


@dataclass(frozen=True)
class CacheEntry:
    report: Report
    data_version: int
    seq: int


@dataclass(frozen=True)
class ReportView:
    """What the session currently shows; replaced as a whole, never patched."""

    period_type: PeriodType
    view_scope: ViewScope
    period_selector_id: str
    report: Report
    seq: int


@dataclass(frozen=True)
class _FetchResult:
    report: Report
    ok: bool


class ReportCacheCoordinator:
    def __init__(
        self,
        builder: ReportBuilder,
        *,
        loading_timeout: Optional[float] = None,
        preload: bool = True,
        period_types: Iterable[PeriodType] = tuple(PeriodType),
        selector_for: Callable[[PeriodType], str] = default_selector_id,
    ) -> None:
        if loading_timeout is None:
            loading_timeout = get_settings().report_loading_timeout_secs
        self._builder = builder
        self._loading_timeout = loading_timeout
        self._preload_enabled = preload
        self._period_types = tuple(period_types)
        self._selector_for = selector_for

        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._seq = itertools.count(1)
        self._committed_seq = 0
        self._data_version: Optional[int] = None
        self._preloaded = False

        self._state = LoadState.idle
        self._foreground = 0
        self._background = 0
        self._generation = 0
        self._watchdog: Optional[asyncio.TimerHandle] = None

        self.current: Optional[ReportView] = None

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def data_version(self) -> Optional[int]:
        return self._data_version

    def is_cached(
        self, period_type: PeriodType, view_scope: ViewScope, period_selector_id: str
    ) -> bool:
        return CacheKey(period_type, view_scope, period_selector_id) in self._entries

    # -- invalidation -------------------------------------------------------

    def notify_data_version(self, data_version: int) -> bool:
        """Start a new data epoch when the version advances.

        Returns True when the cache was cleared. Repeating the current version,
        or reporting an older one, changes nothing.
        """
        previous = self._data_version
        if previous is not None and data_version <= previous:
            return False
        self._data_version = data_version
        if previous is None:
            return False

        self._entries.clear()
        # Fetches from the old epoch may still finish, but they can no longer
        # be joined and their results won't be stored.
        self._inflight.clear()
        self._preloaded = False
        for task in list(self._background_tasks):
            task.cancel()
        logger.info(
            f"report_cache_invalidated: from_version={previous} to_version={data_version}"
        )
        return True

    # -- reads --------------------------------------------------------------

    async def get(
        self,
        period_type: PeriodType,
        view_scope: ViewScope,
        period_selector_id: str,
        data_version: int,
        force_refresh: bool = False,
    ) -> Report:
        request_seq = next(self._seq)
        self.notify_data_version(data_version)
        key = CacheKey(period_type, view_scope, period_selector_id)

        if not force_refresh:
            entry = self._entries.get(key)
            if entry is not None:
                self._commit(key, entry.report, request_seq)
                return entry.report

        task = self._inflight.get(key)
        if task is None:
            task = self._spawn(key, data_version, force_refresh, background=False)
        else:
            logger.debug(f"report_cache_join: key={key}")

        result = await self._join(task, key)
        # Committed under this request's own seq, even when joining an older fetch.
        self._commit(key, result.report, request_seq)
        if result.ok:
            self._maybe_preload(view_scope, data_version, exclude=period_type)
        return result.report

    async def switch_period(
        self,
        period_type: PeriodType,
        period_selector_id: str,
        view_scope: ViewScope,
        data_version: int,
    ) -> Report:
        """Switch the shown period, committing type, selector and report at once."""
        self.notify_data_version(data_version)
        key = CacheKey(period_type, view_scope, period_selector_id)
        entry = self._entries.get(key)
        if entry is not None:
            self._commit(key, entry.report, next(self._seq))
            return entry.report
        return await self.get(period_type, view_scope, period_selector_id, data_version)

    async def close(self) -> None:
        tasks = list(self._inflight.values()) + list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._background_tasks.clear()
        self._reset_loading()

    # -- fetching -----------------------------------------------------------

    def _spawn(
        self, key: CacheKey, data_version: int, force_refresh: bool, *, background: bool
    ) -> asyncio.Task:
        seq = next(self._seq)
        generation = self._generation
        self._begin(background)
        task = asyncio.get_running_loop().create_task(
            self._fetch(key, data_version, force_refresh, seq, generation, background)
        )
        self._inflight[key] = task
        logger.debug(
            f"report_cache_fetch: key={key} seq={seq} background={background} "
            f"force_refresh={force_refresh}"
        )
        return task

    async def _fetch(
        self,
        key: CacheKey,
        data_version: int,
        force_refresh: bool,
        seq: int,
        generation: int,
        background: bool,
    ) -> _FetchResult:
        try:
            report = await self._builder(
                key.period_type,
                key.view_scope,
                key.period_selector_id,
                data_version,
                force_refresh,
            )
        except Exception:
            logger.exception(f"report_build_failed: key={key} seq={seq}")
            return _FetchResult(self._fallback(key), ok=False)
        finally:
            self._end(background, generation)
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

        self._store(key, report, data_version, seq)
        return _FetchResult(report, ok=True)

    async def _join(self, task: asyncio.Task, key: CacheKey) -> _FetchResult:
        try:
            # Shielded so one waiter going away doesn't cancel a shared fetch.
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.warning(f"report_fetch_cancelled: key={key}")
            return _FetchResult(self._fallback(key), ok=False)

    def _fallback(self, key: CacheKey) -> Report:
        return Report.empty(key.period_type, key.view_scope, key.period_selector_id)

    def _store(self, key: CacheKey, report: Report, data_version: int, seq: int) -> bool:
        if data_version != self._data_version:
            logger.debug(
                f"report_cache_discard: key={key} seq={seq} reason=version "
                f"computed={data_version} current={self._data_version}"
            )
            return False
        existing = self._entries.get(key)
        if existing is not None and existing.seq > seq:
            logger.debug(f"report_cache_discard: key={key} seq={seq} reason=stale")
            return False
        self._entries[key] = CacheEntry(report=report, data_version=data_version, seq=seq)
        return True

    def _commit(self, key: CacheKey, report: Report, seq: int) -> bool:
        if seq < self._committed_seq:
            logger.debug(
                f"report_view_discard: key={key} seq={seq} committed={self._committed_seq}"
            )
            return False
        self._committed_seq = seq
        self.current = ReportView(
            period_type=key.period_type,
            view_scope=key.view_scope,
            period_selector_id=key.period_selector_id,
            report=report,
            seq=seq,
        )
        return True

    # -- preloading ---------------------------------------------------------

    def _maybe_preload(
        self, view_scope: ViewScope, data_version: int, *, exclude: PeriodType
    ) -> None:
        if not self._preload_enabled or self._preloaded:
            return
        if data_version != self._data_version:
            return
        self._preloaded = True
        for period_type in self._period_types:
            if period_type == exclude:
                continue
            key = CacheKey(period_type, view_scope, self._selector_for(period_type))
            if key in self._entries or key in self._inflight:
                continue
            task = self._spawn(key, data_version, False, background=True)
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    # -- load state ---------------------------------------------------------

    def _begin(self, background: bool) -> None:
        if background:
            self._background += 1
        else:
            self._foreground += 1
        self._refresh_state()

    def _end(self, background: bool, generation: int) -> None:
        if generation != self._generation:
            # Counters were already reset by the liveness guard.
            return
        if background:
            self._background = max(0, self._background - 1)
        else:
            self._foreground = max(0, self._foreground - 1)
        self._refresh_state()

    def _refresh_state(self) -> None:
        if self._foreground:
            new_state = LoadState.loading
        elif self._background:
            new_state = LoadState.background_loading
        else:
            new_state = LoadState.idle
        if new_state == self._state:
            return
        was_idle = self._state == LoadState.idle
        self._state = new_state
        if new_state == LoadState.idle:
            self._disarm_watchdog()
        elif was_idle:
            self._arm_watchdog()

    def _arm_watchdog(self) -> None:
        self._disarm_watchdog()
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(self._loading_timeout, self._on_loading_timeout)

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _on_loading_timeout(self) -> None:
        self._watchdog = None
        if self._state == LoadState.idle:
            return
        logger.warning(
            f"report_cache_loading_timeout: state={self._state.value} "
            f"timeout_secs={self._loading_timeout} inflight={len(self._inflight)}"
        )
        for task in list(self._inflight.values()) + list(self._background_tasks):
            task.cancel()
        self._inflight.clear()
        self._reset_loading()

    def _reset_loading(self) -> None:
        self._generation += 1
        self._foreground = 0
        self._background = 0
        self._disarm_watchdog()
        self._state = LoadState.idle


class ReportCacheRegistry:
    """Per-user coordinators, bounded by ``max_sessions``.

    The least recently used coordinator is closed and dropped once the bound
    is exceeded, so a user who comes back later starts a fresh session.
    """

    def __init__(
        self,
        factory: Callable[[int], ReportCacheCoordinator],
        *,
        max_sessions: Optional[int] = None,
    ) -> None:
        if max_sessions is None:
            max_sessions = get_settings().report_cache_max_sessions
        self._factory = factory
        self._max_sessions = max(1, max_sessions)
        self._sessions: OrderedDict[int, ReportCacheCoordinator] = OrderedDict()

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._sessions

    def get(self, user_id: int) -> Optional[ReportCacheCoordinator]:
        return self._sessions.get(user_id)

    async def acquire(self, user_id: int) -> ReportCacheCoordinator:
        coordinator = self._sessions.get(user_id)
        if coordinator is not None:
            self._sessions.move_to_end(user_id)
            return coordinator

        coordinator = self._factory(user_id)
        self._sessions[user_id] = coordinator
        while len(self._sessions) > self._max_sessions:
            evicted_id, evicted = self._sessions.popitem(last=False)
            logger.info(f"report_cache_evicted: user_id={evicted_id}")
            await evicted.close()
        return coordinator

    async def close(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for coordinator in sessions:
            await coordinator.close()

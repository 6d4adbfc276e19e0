"""Settlement preview/creation workflow.

``SettlementReconciler`` owns one draft at a time together with its page
cache and exclusion ledger. The workflow moves through

    idle -> previewing -> ready -> generating -> created

with a detour through ``failed`` that lands back on ``idle`` (preview
failed, no draft) or ``ready`` (create failed, draft and exclusions kept).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Callable, Iterable

import structlog

from settlements.aggregates import apply_totals, draft_totals, exclusion_event, recompute_aggregate, replace_aggregate
from settlements.client import SettlementBackend
from settlements.config import Settings, load_settings
from settlements.errors import (
    FiltersIncompleteError,
    NoActivePlansError,
    NoDraftError,
    PageFetchError,
    ReconcilerBusyError,
    SettlementError,
    UnknownHandleError,
)
from settlements.exclusions import ExclusionLedger
from settlements.models import (
    AgreementAggregate,
    CreateSettlementRequest,
    ExclusionEvent,
    Notice,
    PageView,
    ProvidedServiceRow,
    ReconcilerState,
    SettlementDraft,
    SettlementFilters,
    SettlementType,
    Totals,
)
from settlements.page_cache import PageCache
from settlements.rules import validate_rule_sets

logger = structlog.get_logger(__name__)

ExclusionListener = Callable[[ExclusionEvent], None]


def check_filters(filters: SettlementFilters) -> None:
    if not filters.insurer_id or not filters.period_start or not filters.period_end:
        raise FiltersIncompleteError("an insurer and a period are required")
    if filters.period_start > filters.period_end:
        raise FiltersIncompleteError("period start must not be after period end")


class SettlementReconciler:
    def __init__(
        self,
        backend: SettlementBackend,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.settings = settings or load_settings()
        self._clock = clock
        self.state = ReconcilerState.IDLE
        self.draft: SettlementDraft | None = None
        self.cache: PageCache | None = None
        self.ledger = ExclusionLedger()
        self.notices: list[Notice] = []
        self.last_error: Exception | None = None
        self.created_settlement_id: int | None = None
        self.indicator_visible = False
        self._listeners: list[ExclusionListener] = []

    # ------------------------------------------------------------------
    # state handling
    # ------------------------------------------------------------------

    def subscribe(self, listener: ExclusionListener) -> None:
        self._listeners.append(listener)

    def _transition(self, state: ReconcilerState) -> None:
        logger.info("reconciler_state", previous=self.state.value, current=state.value)
        self.state = state

    def _notify(self, level: str, code: str, message: str) -> None:
        self.notices.append(Notice(level=level, code=code, message=message))
        if len(self.notices) > self.settings.max_notices:
            del self.notices[: -self.settings.max_notices]

    def _fail(self, exc: Exception, fallback: ReconcilerState) -> None:
        self.last_error = exc
        level = exc.level if isinstance(exc, SettlementError) else "error"
        self._notify(level, exc.__class__.__name__, str(exc))
        if level == "warning":
            logger.warning("reconciler_failed", error=str(exc), fallback=fallback.value)
        else:
            logger.error("reconciler_failed", error=str(exc), fallback=fallback.value, exc_info=exc)
        self._transition(ReconcilerState.FAILED)
        self._transition(fallback)

    async def _hold_indicator(self, started_at: float) -> None:
        remaining = self.settings.min_visible_ms / 1000.0 - (self._clock() - started_at)
        if remaining > 0:
            await asyncio.sleep(remaining)
        self.indicator_visible = False

    def _ensure_idle_for_request(self) -> None:
        if self.state in (ReconcilerState.PREVIEWING, ReconcilerState.GENERATING):
            raise ReconcilerBusyError(f"a request is already in progress ({self.state.value})")

    def _require_ready(self) -> tuple[SettlementDraft, PageCache]:
        if self.state == ReconcilerState.GENERATING:
            raise ReconcilerBusyError("the settlement is being generated")
        if self.state != ReconcilerState.READY or self.draft is None or self.cache is None:
            raise NoDraftError("there is no settlement preview to work on")
        return self.draft, self.cache

    def discard(self) -> None:
        """Drop the current draft with its cache and exclusions."""
        if self.cache is not None:
            self.cache.discard()
        self.cache = None
        self.draft = None
        self.ledger.clear()
        if self.state not in (ReconcilerState.PREVIEWING, ReconcilerState.GENERATING, ReconcilerState.IDLE):
            self._transition(ReconcilerState.IDLE)

    # ------------------------------------------------------------------
    # preview
    # ------------------------------------------------------------------

    async def preview(self, filters: SettlementFilters) -> SettlementDraft:
        self._ensure_idle_for_request()
        try:
            check_filters(filters)
            if filters.type == SettlementType.SPECIAL:
                filters = replace(filters, special_rules=validate_rule_sets(filters.special_rules))
            else:
                filters = replace(filters, special_rules=())
        except SettlementError as exc:
            self._notify(exc.level, exc.__class__.__name__, str(exc))
            raise

        self.discard()
        self._transition(ReconcilerState.PREVIEWING)
        self.indicator_visible = True
        started_at = self._clock()
        try:
            insurer = await self.backend.fetch_insurer(filters.insurer_id)  # type: ignore[arg-type]
            if not insurer.active_plan_ids:
                raise NoActivePlansError(f"insurer {insurer.id} has no active plans")
            payload = await self.backend.preview_settlement(filters)
            draft = payload.to_draft(filters)
        except asyncio.CancelledError:
            self.indicator_visible = False
            self._transition(ReconcilerState.IDLE)
            raise
        except Exception as exc:
            await self._hold_indicator(started_at)
            self._fail(exc, ReconcilerState.IDLE)
            raise

        await self._hold_indicator(started_at)
        self._hydrate(draft)
        self._transition(ReconcilerState.READY)
        if draft.is_empty:
            self._notify("warning", "EmptySettlement", "no provided services were found for this settlement")
        return draft

    def _hydrate(self, draft: SettlementDraft) -> None:
        cache = PageCache(
            self.backend.fetch_page,
            page_counts={a.cache_handle: a.page_count for a in draft.aggregates if a.page_count > 0},
            on_commit=self._on_page_commit,
            initial_pages=self.settings.initial_pages,
            prefetch_ahead=self.settings.prefetch_ahead,
        )
        self.draft = draft
        self.cache = cache
        for aggregate in list(draft.aggregates):
            self._recompute(aggregate.cache_handle)
        apply_totals(draft)
        for aggregate in draft.aggregates:
            cache.warm(aggregate.cache_handle)

    def _on_page_commit(self, handle: str, page_index: int) -> None:
        if self.draft is not None and handle in self.draft.handles:
            self._recompute(handle)

    def _recompute(self, handle: str) -> AgreementAggregate:
        draft = self.draft
        cache = self.cache
        if draft is None or cache is None:
            raise NoDraftError("there is no settlement preview to work on")
        aggregate = draft.aggregate_for(handle)
        if aggregate is None:
            raise UnknownHandleError(f"handle {handle} is not part of the current draft")
        updated = recompute_aggregate(
            aggregate,
            cache.rows(handle),
            self.ledger.excluded_ids(handle),
            fully_cached=cache.is_fully_cached(handle),
        )
        replace_aggregate(draft, updated)
        apply_totals(draft)
        return updated

    # ------------------------------------------------------------------
    # browsing
    # ------------------------------------------------------------------

    def _project(self, handle: str, rows: Iterable[ProvidedServiceRow]) -> tuple[ProvidedServiceRow, ...]:
        return tuple(replace(row, excluded=self.ledger.is_excluded(handle, row.id)) for row in rows)

    async def get_page(self, handle: str, page_index: int) -> PageView:
        """Return one page of an agreement, prefetching the pages after it."""
        draft, cache = self._require_ready()
        aggregate = draft.aggregate_for(handle)
        if aggregate is None:
            raise UnknownHandleError(f"handle {handle} is not part of the current draft")

        pending = cache.fetch(handle, page_index)
        cache.prefetch_window(handle, page_index)
        try:
            rows = await pending
        except PageFetchError as exc:
            logger.warning("page_unavailable", handle=handle, page=page_index, error=exc.message)
            return PageView(handle, page_index, aggregate.page_count, rows=(), failed=True)

        if self.cache is not cache:
            raise UnknownHandleError(f"handle {handle} was discarded while loading")
        return PageView(handle, page_index, aggregate.page_count, rows=self._project(handle, rows))

    async def settle(self) -> None:
        """Wait until every page fetch in flight has landed."""
        if self.cache is not None:
            await self.cache.drain()

    # ------------------------------------------------------------------
    # exclusions
    # ------------------------------------------------------------------

    def _emit(self, handle: str) -> ExclusionEvent:
        aggregate = self._recompute(handle)
        event = exclusion_event(aggregate, self.ledger.excluded_ids(handle))
        for listener in self._listeners:
            listener(event)
        return event

    def exclude(self, handle: str, ids: Iterable[int]) -> ExclusionEvent | None:
        """Exclude rows of ``handle``. Only ids on cached pages are accepted."""
        draft, cache = self._require_ready()
        if handle not in draft.handles:
            logger.info("exclusion_ignored", handle=handle, reason="unknown_handle")
            return None
        requested = {int(i) for i in ids}
        known = cache.row_ids(handle)
        unknown = requested - known
        if unknown:
            logger.info("exclusion_ignored", handle=handle, ids=sorted(unknown), reason="row_not_cached")
        self.ledger.exclude(handle, requested & known)
        return self._emit(handle)

    def reinclude(self, handle: str, row_id: int) -> ExclusionEvent | None:
        draft, _ = self._require_ready()
        if handle not in draft.handles:
            logger.info("exclusion_ignored", handle=handle, reason="unknown_handle")
            return None
        self.ledger.reinclude(handle, int(row_id))
        return self._emit(handle)

    def toggle_exclude(self, handle: str, row_id: int) -> ExclusionEvent | None:
        draft, _ = self._require_ready()
        if handle not in draft.handles:
            return None
        if self.ledger.is_excluded(handle, row_id):
            return self.reinclude(handle, row_id)
        return self.exclude(handle, [row_id])

    def excluded_ids(self) -> list[int]:
        if self.draft is None:
            return []
        return self.ledger.union(self.draft.handles)

    def current_totals(self) -> Totals:
        if self.draft is None:
            return draft_totals([])
        return draft_totals(self.draft.aggregates)

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def build_create_request(self) -> CreateSettlementRequest:
        draft = self.draft
        if draft is None:
            raise NoDraftError("there is no settlement preview to create")
        return CreateSettlementRequest(
            insurer_id=draft.insurer_id,
            period_start=draft.period_start,
            period_end=draft.period_end,
            settlement_type=draft.type,
            excluded_provided_services_ids=tuple(self.excluded_ids()),
            settlement_key=draft.settlement_key,
            special_rules=draft.special_rules if draft.type == SettlementType.SPECIAL else (),
        )

    async def confirm_and_create(self) -> int | None:
        """Persist the draft with its exclusions and return the new settlement id."""
        draft, _ = self._require_ready()
        request = self.build_create_request()

        self._transition(ReconcilerState.GENERATING)
        self.indicator_visible = True
        started_at = self._clock()
        try:
            insurer = await self.backend.fetch_insurer(draft.insurer_id)
            if not insurer.active_plan_ids:
                raise NoActivePlansError(f"insurer {insurer.id} has no active plans")
            created = await self.backend.create_settlement(request)
        except asyncio.CancelledError:
            self.indicator_visible = False
            self._transition(ReconcilerState.READY)
            raise
        except Exception as exc:
            await self._hold_indicator(started_at)
            self._fail(exc, ReconcilerState.READY)
            raise

        await self._hold_indicator(started_at)
        self.created_settlement_id = created.id
        if self.cache is not None:
            self.cache.discard()
        self.cache = None
        self.draft = None
        self.ledger.clear()
        self._transition(ReconcilerState.CREATED)
        self._notify("success", "SettlementCreated", f"settlement {created.id} created")
        return created.id

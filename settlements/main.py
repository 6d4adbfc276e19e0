from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict
from datetime import date
from decimal import Decimal
from typing import Any, Callable

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from settlements.client import HttpSettlementBackend, SettlementBackend
from settlements.config import LOG_LEVEL, Settings, load_settings
from settlements.errors import SettlementError
from settlements.models import (
    ExclusionEvent,
    PageView,
    ProvidedServiceRow,
    ReconcilerState,
    SettlementFilters,
    SettlementSummary,
    SettlementType,
)
from settlements.reconciler import SettlementReconciler
from settlements.schemas import SpecialRulePayload, group_rule_payloads

logger = structlog.get_logger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class PreviewRequest(BaseModel):
    insurer_id: int | None = None
    period_start: date | None = None
    period_end: date | None = None
    type: SettlementType = SettlementType.SIMPLE
    special_rules: list[SpecialRulePayload] = Field(default_factory=list)


class ExcludeRequest(BaseModel):
    ids: list[int]


class InformRequest(BaseModel):
    informed_amount: Decimal
    informed_date: date
    observations: str = ""


class CancelRequest(BaseModel):
    observations: str = ""


def _row_json(row: ProvidedServiceRow) -> dict[str, Any]:
    data = asdict(row)
    data["amount"] = row.amount
    return data


def _page_json(view: PageView) -> dict[str, Any]:
    return {
        "cache_handle": view.cache_handle,
        "page_index": view.page_index,
        "page_count": view.page_count,
        "failed": view.failed,
        "rows": [_row_json(r) for r in view.rows],
    }


def _event_json(event: ExclusionEvent | None, handle: str) -> dict[str, Any]:
    if event is None:
        return {"cache_handle": handle, "ignored": True}
    return {**asdict(event), "ignored": False}


def _summary_json(summary: SettlementSummary) -> dict[str, Any]:
    return asdict(summary)


def _session_json(sid: str, reconciler: SettlementReconciler) -> dict[str, Any]:
    draft = reconciler.draft
    payload: dict[str, Any] = {
        "session_id": sid,
        "state": reconciler.state.value,
        "indicator_visible": reconciler.indicator_visible,
        "created_settlement_id": reconciler.created_settlement_id,
        "notices": [asdict(n) for n in reconciler.notices],
        "draft": None,
    }
    if draft is not None:
        payload["draft"] = {
            "insurer_id": draft.insurer_id,
            "insurer_name": draft.insurer_name,
            "period_start": draft.period_start,
            "period_end": draft.period_end,
            "type": draft.type.value,
            "settlement_key": draft.settlement_key,
            "is_empty": draft.is_empty,
            "total_included_count": draft.total_included_count,
            "total_amount": draft.total_amount,
            "aggregates": [asdict(a) for a in draft.aggregates],
            "excluded_ids": reconciler.excluded_ids(),
        }
    return payload


def create_app(
    backend_factory: Callable[[], SettlementBackend] | None = None,
    settings: Settings | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FastAPI:
    settings = settings or load_settings()
    factory = backend_factory or (lambda: HttpSettlementBackend(settings=settings))
    sessions: dict[str, SettlementReconciler] = {}
    last_seen: dict[str, float] = {}
    backend_holder: list[SettlementBackend] = []

    def backend() -> SettlementBackend:
        if not backend_holder:
            backend_holder.append(factory())
        return backend_holder[0]

    def expire_idle_sessions() -> None:
        now = clock()
        for sid, seen in list(last_seen.items()):
            reconciler = sessions[sid]
            if now - seen < settings.session_ttl:
                continue
            # A request still awaiting the backend keeps its session.
            if reconciler.state in (ReconcilerState.PREVIEWING, ReconcilerState.GENERATING):
                continue
            reconciler.discard()
            del sessions[sid]
            del last_seen[sid]
            logger.info("session_expired", session_id=sid, idle_seconds=round(now - seen, 1))

    def session(sid: str) -> SettlementReconciler:
        expire_idle_sessions()
        reconciler = sessions.get(sid)
        if reconciler is None:
            raise HTTPException(status_code=404, detail="session not found")
        last_seen[sid] = clock()
        return reconciler

    api = FastAPI(title="Coverage Settlement Reconciler", version="0.1.0")
    api.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:8001"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @api.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "level": exc.level})

    @api.on_event("shutdown")
    async def on_shutdown() -> None:
        for reconciler in sessions.values():
            reconciler.discard()
        sessions.clear()
        last_seen.clear()
        for held in backend_holder:
            aclose = getattr(held, "aclose", None)
            if aclose is not None:
                await aclose()

    @api.get("/health")
    def health() -> dict[str, Any]:
        return {"ok": True, "service": "settlement-reconciler", "sessions": len(sessions)}

    # -- sessions -------------------------------------------------------------

    @api.post("/api/v1/sessions", status_code=201)
    async def open_session() -> dict[str, Any]:
        expire_idle_sessions()
        sid = uuid.uuid4().hex
        sessions[sid] = SettlementReconciler(backend(), settings=settings)
        last_seen[sid] = clock()
        logger.info("session_opened", session_id=sid)
        return _session_json(sid, sessions[sid])

    @api.delete("/api/v1/sessions/{sid}")
    async def close_session(sid: str) -> dict[str, Any]:
        reconciler = session(sid)
        reconciler.discard()
        del sessions[sid]
        del last_seen[sid]
        logger.info("session_closed", session_id=sid)
        return {"ok": True}

    @api.post("/api/v1/sessions/{sid}/preview")
    async def preview(sid: str, req: PreviewRequest) -> dict[str, Any]:
        reconciler = session(sid)
        filters = SettlementFilters(
            insurer_id=req.insurer_id,
            period_start=req.period_start,
            period_end=req.period_end,
            type=req.type,
            special_rules=group_rule_payloads(req.special_rules),
        )
        await reconciler.preview(filters)
        return jsonable_encoder(_session_json(sid, reconciler))

    @api.get("/api/v1/sessions/{sid}/draft")
    async def get_draft(sid: str) -> dict[str, Any]:
        return jsonable_encoder(_session_json(sid, session(sid)))

    @api.get("/api/v1/sessions/{sid}/agreements/{handle}/pages/{page}")
    async def get_page(sid: str, handle: str, page: int) -> dict[str, Any]:
        view = await session(sid).get_page(handle, page)
        return jsonable_encoder(_page_json(view))

    @api.post("/api/v1/sessions/{sid}/agreements/{handle}/exclusions")
    async def exclude(sid: str, handle: str, req: ExcludeRequest) -> dict[str, Any]:
        event = session(sid).exclude(handle, req.ids)
        return jsonable_encoder(_event_json(event, handle))

    @api.post("/api/v1/sessions/{sid}/agreements/{handle}/exclusions/{row_id}/toggle")
    async def toggle_exclusion(sid: str, handle: str, row_id: int) -> dict[str, Any]:
        event = session(sid).toggle_exclude(handle, row_id)
        return jsonable_encoder(_event_json(event, handle))

    @api.delete("/api/v1/sessions/{sid}/agreements/{handle}/exclusions/{row_id}")
    async def reinclude(sid: str, handle: str, row_id: int) -> dict[str, Any]:
        event = session(sid).reinclude(handle, row_id)
        return jsonable_encoder(_event_json(event, handle))

    @api.get("/api/v1/sessions/{sid}/totals")
    async def totals(sid: str) -> dict[str, Any]:
        reconciler = session(sid)
        current = reconciler.current_totals()
        return jsonable_encoder(
            {
                "total_included_count": current.total_included_count,
                "total_amount": current.total_amount,
                "excluded_ids": reconciler.excluded_ids(),
            }
        )

    @api.post("/api/v1/sessions/{sid}/confirm")
    async def confirm(sid: str) -> dict[str, Any]:
        reconciler = session(sid)
        settlement_id = await reconciler.confirm_and_create()
        logger.info("settlement_confirmed", session_id=sid, settlement_id=settlement_id)
        return jsonable_encoder({"settlement_id": settlement_id, **_session_json(sid, reconciler)})

    # -- settlements ----------------------------------------------------------

    @api.get("/api/v1/settlements")
    async def list_settlements(
        insurer_id: int | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]:
        rows = await backend().list_settlements(insurer_id=insurer_id, date_from=date_from, date_to=date_to)
        return jsonable_encoder([_summary_json(r) for r in rows])

    @api.put("/api/v1/settlements/{settlement_id}/inform")
    async def inform(settlement_id: int, req: InformRequest) -> dict[str, Any]:
        summary = await backend().inform_settlement(
            settlement_id, req.informed_amount, req.informed_date, req.observations
        )
        return jsonable_encoder(_summary_json(summary))

    @api.put("/api/v1/settlements/{settlement_id}/cancel")
    async def cancel(settlement_id: int, req: CancelRequest) -> dict[str, Any]:
        summary = await backend().cancel_settlement(settlement_id, req.observations)
        return jsonable_encoder(_summary_json(summary))

    return api


configure_logging()
app = create_app()

"""Stand-in for the coverage backend, served over a local demo dataset.

Previews group billable services per plan and agreement and keep each
agreement's service ids under a generated key, split into fixed-size
pages. Creating a settlement rebuilds the candidate set from the preview
key, drops the excluded ids and stores the result in sqlite.
"""

from __future__ import annotations

import csv
import math
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from settlements.config import DATA_DIR, DB_PATH, DEMO_MAX_PREVIEWS, PAGE_SIZE
from settlements.errors import InvalidSpecialRulesError
from settlements.models import PlanRuleSet, SettlementType
from settlements.persistence import (
    cancel_settlement,
    get_settlement,
    inform_settlement,
    init_db,
    list_excluded_ids,
    list_settled_service_ids,
    list_settlements,
    save_settlement,
    settled_service_ids,
)
from settlements.rules import rule_matches
from settlements.schemas import (
    CancelRequestPayload,
    CreateRequestPayload,
    InformRequestPayload,
    PreviewRequestPayload,
    SpecialRulePayload,
    group_rule_payloads,
)

logger = structlog.get_logger(__name__)


@dataclass
class DemoInsurer:
    id: int
    name: str
    acronym: str = ""


@dataclass
class DemoPlan:
    id: int
    insurer_id: int
    name: str
    is_active: bool = True


@dataclass
class DemoAgreement:
    id: int
    plan_id: int
    version_nbu: int
    ub_value: Decimal
    valid_from: date
    valid_to: date | None = None
    coverage_percentage: Decimal = Decimal("100")
    requires_copayment: bool = False


@dataclass
class DemoAnalysis:
    analysis_id: int
    name: str
    covered_amount: Decimal


@dataclass
class DemoService:
    id: int
    agreement_id: int
    service_date: date
    first_name: str
    last_name: str
    dni: str
    origin: str
    status: str
    copayment_amount: Decimal = Decimal("0")
    authorization_number: str | None = None
    analyses: list[DemoAnalysis] = field(default_factory=list)

    @property
    def covered_amount(self) -> Decimal:
        return sum((a.covered_amount for a in self.analyses), Decimal("0"))


@dataclass
class DemoDataset:
    insurers: dict[int, DemoInsurer] = field(default_factory=dict)
    plans: dict[int, DemoPlan] = field(default_factory=dict)
    agreements: dict[int, DemoAgreement] = field(default_factory=dict)
    services: dict[int, DemoService] = field(default_factory=dict)

    def plans_for(self, insurer_id: int) -> list[DemoPlan]:
        return sorted((p for p in self.plans.values() if p.insurer_id == insurer_id), key=lambda p: p.id)

    def agreements_for(self, plan_id: int) -> list[DemoAgreement]:
        return sorted((a for a in self.agreements.values() if a.plan_id == plan_id), key=lambda a: a.valid_from)

    def services_for(self, agreement_id: int) -> list[DemoService]:
        return sorted(
            (s for s in self.services.values() if s.agreement_id == agreement_id),
            key=lambda s: (s.service_date, s.id),
        )


def _read_csv(path: Path) -> list[dict[str, str]]:
    if not path.exists():
        return []
    with path.open(newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "y"}


def load_dataset(data_dir: Path) -> DemoDataset:
    raw = data_dir / "raw"
    dataset = DemoDataset()
    for row in _read_csv(raw / "insurers.csv"):
        insurer = DemoInsurer(id=int(row["insurer_id"]), name=row["name"], acronym=row.get("acronym", ""))
        dataset.insurers[insurer.id] = insurer
    for row in _read_csv(raw / "plans.csv"):
        plan = DemoPlan(
            id=int(row["plan_id"]),
            insurer_id=int(row["insurer_id"]),
            name=row["name"],
            is_active=_parse_bool(row.get("is_active", "true")),
        )
        dataset.plans[plan.id] = plan
    for row in _read_csv(raw / "agreements.csv"):
        agreement = DemoAgreement(
            id=int(row["agreement_id"]),
            plan_id=int(row["plan_id"]),
            version_nbu=int(row.get("version_nbu") or 0),
            ub_value=Decimal(row.get("ub_value") or "0"),
            valid_from=date.fromisoformat(row["valid_from"]),
            valid_to=date.fromisoformat(row["valid_to"]) if row.get("valid_to") else None,
            coverage_percentage=Decimal(row.get("coverage_percentage") or "100"),
            requires_copayment=_parse_bool(row.get("requires_copayment")),
        )
        dataset.agreements[agreement.id] = agreement
    for row in _read_csv(raw / "provided_services.csv"):
        service = DemoService(
            id=int(row["service_id"]),
            agreement_id=int(row["agreement_id"]),
            service_date=date.fromisoformat(row["service_date"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            dni=row["dni"],
            origin=row.get("origin", ""),
            status=row.get("status", "COMPLETED"),
            copayment_amount=Decimal(row.get("copayment_amount") or "0"),
            authorization_number=row.get("authorization_number") or None,
        )
        dataset.services[service.id] = service
    for row in _read_csv(raw / "service_analyses.csv"):
        service = dataset.services.get(int(row["service_id"]))
        if service is None:
            continue
        service.analyses.append(
            DemoAnalysis(
                analysis_id=int(row["analysis_id"]),
                name=row["analysis_name"],
                covered_amount=Decimal(row["covered_amount"]),
            )
        )
    return dataset


@dataclass
class _PreviewEntry:
    key: str
    plan: DemoPlan
    agreement: DemoAgreement
    service_ids: list[int]
    covered: dict[int, Decimal]

    def amount(self, service: DemoService) -> Decimal:
        return self.covered[service.id] - service.copayment_amount


@dataclass
class _Preview:
    settlement_key: str
    insurer: DemoInsurer
    period_start: date
    period_end: date
    type: SettlementType
    entries: list[_PreviewEntry]


class DemoSettlementService:
    def __init__(
        self,
        dataset: DemoDataset,
        db_path: Path,
        page_size: int = PAGE_SIZE,
        max_previews: int = DEMO_MAX_PREVIEWS,
    ) -> None:
        self.dataset = dataset
        self.db_path = db_path
        self.page_size = page_size
        self.max_previews = max_previews
        self.previews: dict[str, _Preview] = {}
        self.pages: dict[str, _PreviewEntry] = {}
        self._db_ready = False

    def db(self) -> Path:
        if not self._db_ready:
            init_db(self.db_path)
            self._db_ready = True
        return self.db_path

    # -- insurers -----------------------------------------------------------

    def insurer_payload(self, insurer_id: int) -> dict[str, Any]:
        insurer = self.dataset.insurers.get(insurer_id)
        if insurer is None:
            raise HTTPException(status_code=404, detail="insurer not found")
        return {
            "id": insurer.id,
            "name": insurer.name,
            "acronym": insurer.acronym,
            "plans": [
                {"id": p.id, "name": p.name, "isActive": p.is_active}
                for p in self.dataset.plans_for(insurer.id)
            ],
        }

    # -- preview ------------------------------------------------------------

    def _covered_for(self, service: DemoService, rules: PlanRuleSet | None) -> Decimal:
        if rules is not None and service.analyses:
            for rule in rules.rules:
                if rule_matches(rule, len(service.analyses)):
                    return Decimal(rule.amount)
        return service.covered_amount

    def build_preview(
        self,
        insurer_id: int,
        period_start: date,
        period_end: date,
        settlement_type: SettlementType,
        special_rules: list[SpecialRulePayload] | None,
    ) -> _Preview:
        insurer = self.dataset.insurers.get(insurer_id)
        if insurer is None:
            raise HTTPException(status_code=404, detail="insurer not found")
        if period_start > period_end:
            raise HTTPException(status_code=400, detail="periodStart must not be after periodEnd")

        rules_by_plan: dict[int, PlanRuleSet] = {}
        if settlement_type == SettlementType.SPECIAL and special_rules:
            try:
                rules_by_plan = {rs.plan_id: rs for rs in group_rule_payloads(special_rules)}
            except InvalidSpecialRulesError as exc:
                raise HTTPException(status_code=400, detail=exc.message) from exc

        already_settled = settled_service_ids(self.db())
        settlement_key = f"settlement:{uuid.uuid4().hex[:12]}"
        entries: list[_PreviewEntry] = []
        for plan in self.dataset.plans_for(insurer.id):
            if not plan.is_active:
                continue
            for agreement in self.dataset.agreements_for(plan.id):
                services = [
                    s
                    for s in self.dataset.services_for(agreement.id)
                    if period_start <= s.service_date <= period_end and s.id not in already_settled
                ]
                if not services:
                    continue
                rules = rules_by_plan.get(plan.id)
                entry = _PreviewEntry(
                    key=f"{settlement_key}:agreement:{agreement.id}",
                    plan=plan,
                    agreement=agreement,
                    service_ids=[s.id for s in services],
                    covered={s.id: self._covered_for(s, rules) for s in services},
                )
                entries.append(entry)
                self.pages[entry.key] = entry

        preview = _Preview(
            settlement_key=settlement_key,
            insurer=insurer,
            period_start=period_start,
            period_end=period_end,
            type=settlement_type,
            entries=entries,
        )
        self.previews[settlement_key] = preview
        logger.info("demo_preview_built", settlement_key=settlement_key, agreements=len(entries))
        while len(self.previews) > self.max_previews:
            self._forget(next(iter(self.previews)))
        return preview

    def _forget(self, settlement_key: str) -> None:
        preview = self.previews.pop(settlement_key, None)
        if preview is None:
            return
        for entry in preview.entries:
            self.pages.pop(entry.key, None)
        logger.info("demo_preview_dropped", settlement_key=settlement_key)

    def _entry_subtotal(self, entry: _PreviewEntry, excluded: set[int] | None = None) -> tuple[int, Decimal]:
        count = 0
        subtotal = Decimal("0")
        for sid in entry.service_ids:
            if excluded and sid in excluded:
                continue
            count += 1
            subtotal += entry.amount(self.dataset.services[sid])
        return count, subtotal

    def complete_payload(
        self,
        preview: _Preview,
        excluded: set[int] | None = None,
        settlement_id: int | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        plans: dict[int, dict[str, Any]] = {}
        total = Decimal("0")
        total_count = 0
        for entry in preview.entries:
            count, subtotal = self._entry_subtotal(entry, excluded)
            total += subtotal
            total_count += count
            plan_block = plans.setdefault(
                entry.plan.id,
                {"plan": {"id": entry.plan.id, "name": entry.plan.name}, "settlementAgreements": [], "planRules": []},
            )
            agreement = entry.agreement
            plan_block["settlementAgreements"].append(
                {
                    "agreement": {
                        "id": agreement.id,
                        "insurerPlanId": entry.plan.id,
                        "insurerPlanName": entry.plan.name,
                        "versionNbu": agreement.version_nbu,
                        "coveragePercentage": str(agreement.coverage_percentage),
                        "ubValue": str(agreement.ub_value),
                        "validFromDate": agreement.valid_from.isoformat(),
                        "validToDate": agreement.valid_to.isoformat() if agreement.valid_to else None,
                        "requiresCopayment": agreement.requires_copayment,
                    },
                    "subtotal": str(subtotal),
                    "providedServicesCount": count,
                    "key": entry.key,
                    "pages": math.ceil(len(entry.service_ids) / self.page_size),
                }
            )
        return {
            "id": settlement_id,
            "status": status,
            "type": preview.type.value,
            "insurer": {"id": preview.insurer.id, "name": preview.insurer.name, "acronym": preview.insurer.acronym},
            "periodStart": preview.period_start.isoformat(),
            "periodEnd": preview.period_end.isoformat(),
            "plansProvidedServices": list(plans.values()),
            "total": str(total),
            "totalProvidedServices": total_count,
            "settlementKey": preview.settlement_key,
        }

    # -- pages --------------------------------------------------------------

    def page_payload(self, key: str, page: int) -> list[dict[str, Any]]:
        entry = self.pages.get(key)
        if entry is None:
            raise HTTPException(status_code=404, detail="unknown or expired key")
        if page < 0:
            raise HTTPException(status_code=400, detail="page must be >= 0")
        chunk = entry.service_ids[page * self.page_size : (page + 1) * self.page_size]
        return [self._service_payload(entry, self.dataset.services[sid]) for sid in chunk]

    def _service_payload(self, entry: _PreviewEntry, service: DemoService) -> dict[str, Any]:
        covered = entry.covered[service.id]
        analyses = []
        for idx, analysis in enumerate(service.analyses):
            if covered == service.covered_amount:
                amount = analysis.covered_amount
            else:
                # special rule amount replaces the whole service coverage
                amount = covered if idx == 0 else Decimal("0")
            analyses.append(
                {
                    "planName": entry.plan.name,
                    "analysisId": analysis.analysis_id,
                    "analysisName": analysis.name,
                    "coveredAmount": str(amount),
                }
            )
        return {
            "id": service.id,
            "patient": {"dni": service.dni, "firstName": service.first_name, "lastName": service.last_name},
            "copaymentAmount": str(service.copayment_amount),
            "configuration": {"description": service.origin},
            "protocol": {"id": service.id, "status": service.status},
            "serviceDate": [service.service_date.year, service.service_date.month, service.service_date.day],
            "authorizationNumber": service.authorization_number,
            "analysisAmounts": analyses,
        }

    # -- create / lifecycle -------------------------------------------------

    def create(self, request: CreateRequestPayload) -> dict[str, Any]:
        preview = self.previews.get(request.settlement_key or "")
        if preview is None:
            preview = self.build_preview(
                request.insurer_id,
                request.period_start,
                request.period_end,
                request.settlement_type,
                request.special_rules,
            )
        candidates = {sid for entry in preview.entries for sid in entry.service_ids}
        excluded = set(request.excluded_provided_services_ids) & candidates
        payload = self.complete_payload(preview, excluded)

        agreements = []
        services = []
        for entry in preview.entries:
            count, subtotal = self._entry_subtotal(entry, excluded)
            agreements.append(
                {
                    "agreement_key": entry.key,
                    "plan_id": entry.plan.id,
                    "plan_name": entry.plan.name,
                    "agreement_id": entry.agreement.id,
                    "provided_services_count": count,
                    "subtotal": subtotal,
                }
            )
            for sid in entry.service_ids:
                if sid not in excluded:
                    services.append({"id": sid, "agreement_key": entry.key, "amount": entry.amount(self.dataset.services[sid])})

        settlement_id = save_settlement(
            self.db(),
            {
                "insurer_id": preview.insurer.id,
                "insurer_name": preview.insurer.name,
                "insurer_acronym": preview.insurer.acronym,
                "type": preview.type.value,
                "period_start": preview.period_start.isoformat(),
                "period_end": preview.period_end.isoformat(),
                "provided_services_count": payload["totalProvidedServices"],
                "total": payload["total"],
                "settlement_key": preview.settlement_key,
            },
            agreements,
            services,
            excluded,
        )
        # The preview has been consumed; its pages are no longer served.
        self._forget(preview.settlement_key)
        logger.info("demo_settlement_created", settlement_id=settlement_id, excluded=len(excluded))
        payload["id"] = settlement_id
        payload["status"] = "PENDING"
        return payload


def settlement_row_payload(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "status": row["status"],
        "type": row["type"],
        "insurerId": row["insurer_id"],
        "insurerName": row["insurer_name"],
        "insurerAcronym": row.get("insurer_acronym") or "",
        "periodStart": row["period_start"],
        "periodEnd": row["period_end"],
        "providedServicesCount": row["provided_services_count"],
        "informedDate": row.get("informed_date"),
        "informedAmount": row.get("informed_amount"),
        "observations": row.get("observations") or "",
        "total": row["total"],
    }


def create_app(
    dataset: DemoDataset | None = None,
    db_path: Path = DB_PATH,
    page_size: int = PAGE_SIZE,
    max_previews: int = DEMO_MAX_PREVIEWS,
) -> FastAPI:
    service = DemoSettlementService(
        dataset if dataset is not None else load_dataset(DATA_DIR), db_path, page_size, max_previews
    )
    demo = FastAPI(title="Coverage Settlement Demo Backend", version="0.1.0")
    demo.state.service = service

    @demo.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"ok": True, "service": "settlement-demo-backend"})

    @demo.get("/api/v1/insurers/{insurer_id}/complete")
    def api_insurer(insurer_id: int) -> JSONResponse:
        return JSONResponse(service.insurer_payload(insurer_id))

    @demo.post("/api/v1/coverages/settlement/preview")
    def api_preview(payload: PreviewRequestPayload) -> JSONResponse:
        preview = service.build_preview(
            payload.insurer_id, payload.period_start, payload.period_end, payload.type, payload.special_rules
        )
        return JSONResponse(service.complete_payload(preview))

    @demo.get("/api/v1/coverages/settlement/page")
    def api_page(key: str, page: int = 0) -> JSONResponse:
        return JSONResponse(service.page_payload(key, page))

    @demo.post("/api/v1/coverages/settlement", status_code=201)
    def api_create(payload: CreateRequestPayload) -> JSONResponse:
        return JSONResponse(service.create(payload), status_code=201)

    @demo.get("/api/v1/coverages/settlement")
    def api_list(insurerId: int | None = None, dateFrom: str | None = None, dateTo: str | None = None) -> JSONResponse:
        rows = list_settlements(service.db(), insurer_id=insurerId, date_from=dateFrom, date_to=dateTo)
        return JSONResponse([settlement_row_payload(r) for r in rows])

    @demo.get("/api/v1/coverages/settlement/{settlement_id}")
    def api_get(settlement_id: int) -> JSONResponse:
        row = get_settlement(service.db(), settlement_id)
        if row is None:
            raise HTTPException(status_code=404, detail="settlement not found")
        payload = settlement_row_payload(row)
        payload["providedServicesIds"] = list_settled_service_ids(service.db(), settlement_id)
        payload["excludedProvidedServicesIds"] = list_excluded_ids(service.db(), settlement_id)
        return JSONResponse(payload)

    @demo.put("/api/v1/coverages/settlement/inform")
    def api_inform(payload: InformRequestPayload) -> JSONResponse:
        row = inform_settlement(
            service.db(),
            payload.id,
            informed_amount=str(payload.informed_amount),
            informed_date=payload.informed_date.isoformat(),
            observations=payload.observations,
        )
        if row is None:
            raise HTTPException(status_code=409, detail="only pending settlements can be informed")
        return JSONResponse(settlement_row_payload(row))

    @demo.put("/api/v1/coverages/settlement/cancel")
    def api_cancel(payload: CancelRequestPayload) -> JSONResponse:
        row = cancel_settlement(service.db(), payload.id, payload.observations)
        if row is None:
            raise HTTPException(status_code=409, detail="settlement cannot be cancelled")
        return JSONResponse(settlement_row_payload(row))

    return demo

"""Wire payloads exchanged with the settlement backend.

The backend speaks camelCase JSON; these models accept either casing and
dump with aliases. Dates can arrive as ISO strings or as ``[y, m, d]``
arrays.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from settlements.errors import InvalidSpecialRulesError
from settlements.models import (
    AgreementAggregate,
    CreateSettlementRequest,
    Insurer,
    InsurerPlan,
    PlanRuleSet,
    ProvidedServiceRow,
    RuleType,
    SettlementDraft,
    SettlementFilters,
    SettlementSummary,
    SettlementType,
    SpecialRule,
)

VERSION_LABELS = {1: "2012_2016", 2: "2016_2024"}


def _coerce_date(value: Any) -> Any:
    if value is None or value == "" or value == "-":
        return None
    if isinstance(value, (list, tuple)):
        if len(value) < 3:
            return None
        return date(int(value[0]), int(value[1]), int(value[2]))
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    return value


WireDate = Annotated[date | None, BeforeValidator(_coerce_date)]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Insurers
# ---------------------------------------------------------------------------

class PlanPayload(WireModel):
    id: int
    name: str = "-"
    is_active: bool | None = True


class InsurerPayload(WireModel):
    id: int
    name: str = ""
    acronym: str | None = ""
    plans: list[PlanPayload] = Field(default_factory=list)

    def to_insurer(self) -> Insurer:
        return Insurer(
            id=self.id,
            name=self.name,
            acronym=self.acronym or "",
            plans=tuple(InsurerPlan(id=p.id, name=p.name, is_active=p.is_active is not False) for p in self.plans),
        )


# ---------------------------------------------------------------------------
# Provided services (page rows)
# ---------------------------------------------------------------------------

class PatientPayload(WireModel):
    id: int | None = None
    dni: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class ProtocolPayload(WireModel):
    id: int | None = None
    status: str = ""


class ConfigurationPayload(WireModel):
    id: int | None = None
    code: str | None = None
    description: str | None = None


class AnalysisAmountPayload(WireModel):
    analysis_id: int | None = None
    analysis_name: str | None = None
    plan_name: str | None = None
    total_amount: Decimal | None = None
    covered_amount: Decimal | None = None
    patient_amount: Decimal | None = None


class ProvidedServicePayload(WireModel):
    id: int
    patient: PatientPayload | None = None
    copayment_amount: Decimal | None = None
    configuration: ConfigurationPayload | None = None
    protocol: ProtocolPayload | None = None
    service_date: WireDate = None
    authorization_number: str | None = None
    analysis_amounts: list[AnalysisAmountPayload] = Field(default_factory=list)

    def to_row(self) -> ProvidedServiceRow:
        covered = sum((a.covered_amount or Decimal("0") for a in self.analysis_amounts), Decimal("0"))
        patient = self.patient
        name = "-"
        if patient is not None:
            name = f"{patient.first_name or ''} {patient.last_name or ''}".strip() or "-"
        return ProvidedServiceRow(
            id=self.id,
            service_date=self.service_date,
            origin_label=(self.configuration.description if self.configuration else None) or "-",
            analysis_count=len(self.analysis_amounts),
            covered_amount=covered,
            copayment_amount=self.copayment_amount or Decimal("0"),
            status=self.protocol.status if self.protocol else "",
            patient_name=name,
            patient_dni=(patient.dni if patient else None) or "-",
            authorization_number=self.authorization_number or "-",
        )


# ---------------------------------------------------------------------------
# Settlement preview / complete response
# ---------------------------------------------------------------------------

class AgreementPayload(WireModel):
    id: int | None = None
    insurer_plan_id: int | None = None
    insurer_plan_name: str | None = None
    version_nbu: int | None = None
    coverage_percentage: Decimal | None = None
    ub_value: Decimal | None = None
    valid_from_date: WireDate = None
    valid_to_date: WireDate = None
    requires_copayment: bool | None = None


class SettlementAgreementPayload(WireModel):
    agreement: AgreementPayload = Field(default_factory=AgreementPayload)
    subtotal: Decimal = Decimal("0")
    provided_services_count: int = 0
    key: str | None = None
    pages: int = 0


class PlanRuleResultPayload(WireModel):
    rule_id: int | None = None
    rule_type: str | None = None
    subtotal: Decimal = Decimal("0")
    provided_services_count: int = 0


class SettlementPlanPayload(WireModel):
    plan: PlanPayload | None = None
    settlement_agreements: list[SettlementAgreementPayload] = Field(default_factory=list)
    plan_rules: list[PlanRuleResultPayload] = Field(default_factory=list)


class SettlementCompletePayload(WireModel):
    id: int | None = None
    status: str | None = None
    type: str | None = None
    insurer: InsurerPayload | None = None
    period_start: WireDate = None
    period_end: WireDate = None
    plans_provided_services: list[SettlementPlanPayload] = Field(default_factory=list)
    informed_date: WireDate = None
    informed_amount: Decimal | None = None
    total: Decimal = Decimal("0")
    total_provided_services: int = 0
    settlement_key: str | None = None
    observations: str | None = None

    def to_aggregates(self) -> list[AgreementAggregate]:
        aggregates: list[AgreementAggregate] = []
        for plan_entry in self.plans_provided_services:
            plan_name = plan_entry.plan.name if plan_entry.plan else "-"
            for entry in plan_entry.settlement_agreements:
                agreement = entry.agreement
                valid_from = agreement.valid_from_date.isoformat() if agreement.valid_from_date else "-"
                valid_to = agreement.valid_to_date.isoformat() if agreement.valid_to_date else "-"
                handle = entry.key or f"unpaged-{len(aggregates)}"
                aggregates.append(
                    AgreementAggregate(
                        plan_name=plan_name,
                        coverage_period_label=f"{valid_from} / {valid_to}",
                        cache_handle=handle,
                        page_count=entry.pages if entry.key else 0,
                        baseline_count=entry.provided_services_count,
                        baseline_subtotal=entry.subtotal,
                        fee=agreement.ub_value or Decimal("0"),
                        version_label=VERSION_LABELS.get(agreement.version_nbu or 0, "-"),
                        included_count=entry.provided_services_count,
                        subtotal=entry.subtotal,
                    )
                )
        return aggregates

    def to_draft(self, filters: SettlementFilters) -> SettlementDraft:
        draft = SettlementDraft(
            insurer_id=filters.insurer_id,  # type: ignore[arg-type]
            period_start=filters.period_start,  # type: ignore[arg-type]
            period_end=filters.period_end,  # type: ignore[arg-type]
            type=filters.type,
            settlement_key=self.settlement_key,
            special_rules=filters.special_rules,
            aggregates=self.to_aggregates(),
            insurer_name=self.insurer.name if self.insurer else "",
            total_included_count=self.total_provided_services,
            total_amount=self.total,
        )
        draft.is_empty = not self.total_provided_services
        return draft


class SettlementResponsePayload(WireModel):
    id: int
    status: str = ""
    type: str = ""
    insurer_id: int | None = None
    insurer_name: str | None = ""
    insurer_acronym: str | None = ""
    period_start: WireDate = None
    period_end: WireDate = None
    provided_services_count: int = 0
    informed_date: WireDate = None
    informed_amount: Decimal | None = None
    observations: str | None = ""
    total: Decimal = Decimal("0")

    def to_summary(self) -> SettlementSummary:
        return SettlementSummary(
            id=self.id,
            status=self.status,
            type=self.type,
            insurer_id=self.insurer_id or 0,
            insurer_name=self.insurer_name or "",
            period_start=self.period_start,
            period_end=self.period_end,
            provided_services_count=self.provided_services_count,
            total=self.total,
            informed_amount=self.informed_amount,
            informed_date=self.informed_date,
            observations=self.observations or "",
        )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class SpecialRulePayload(WireModel):
    plan_id: int | None = None
    type: RuleType
    description: str = ""
    analysis_id: int | None = None
    min_quantity: int | None = None
    max_quantity: int | None = None
    equal_quantity: int | None = None
    amount: Decimal

    def to_rule(self) -> SpecialRule:
        return SpecialRule(
            type=self.type,
            amount=self.amount,
            description=self.description,
            analysis_id=self.analysis_id,
            min_quantity=self.min_quantity,
            max_quantity=self.max_quantity,
            equal_quantity=self.equal_quantity,
        )


def flatten_rule_sets(rule_sets: tuple[PlanRuleSet, ...] | list[PlanRuleSet]) -> list[SpecialRulePayload]:
    payload: list[SpecialRulePayload] = []
    for rule_set in rule_sets:
        for rule in rule_set.rules:
            payload.append(
                SpecialRulePayload(
                    plan_id=rule_set.plan_id,
                    type=rule.type,
                    description=rule.description,
                    analysis_id=rule.analysis_id,
                    min_quantity=rule.min_quantity,
                    max_quantity=rule.max_quantity,
                    equal_quantity=rule.equal_quantity,
                    amount=rule.amount,
                )
            )
    return payload


def group_rule_payloads(payloads: list[SpecialRulePayload]) -> tuple[PlanRuleSet, ...]:
    grouped: dict[int, list[SpecialRule]] = {}
    for item in payloads:
        if item.plan_id is None or item.plan_id <= 0:
            raise InvalidSpecialRulesError("special rules must target a plan", item.plan_id)
        grouped.setdefault(item.plan_id, []).append(item.to_rule())
    return tuple(PlanRuleSet(plan_id=pid, rules=tuple(rules)) for pid, rules in grouped.items())


class PreviewRequestPayload(WireModel):
    insurer_id: int
    period_start: date
    period_end: date
    type: SettlementType = SettlementType.SIMPLE
    special_rules: list[SpecialRulePayload] | None = None

    @classmethod
    def from_filters(cls, filters: SettlementFilters) -> "PreviewRequestPayload":
        special = filters.type == SettlementType.SPECIAL
        return cls(
            insurer_id=filters.insurer_id,  # type: ignore[arg-type]
            period_start=filters.period_start,  # type: ignore[arg-type]
            period_end=filters.period_end,  # type: ignore[arg-type]
            type=filters.type,
            special_rules=flatten_rule_sets(filters.special_rules) if special else None,
        )


class CreateRequestPayload(WireModel):
    insurer_id: int
    period_start: date
    period_end: date
    settlement_type: SettlementType = SettlementType.SIMPLE
    excluded_provided_services_ids: list[int] = Field(default_factory=list)
    excluded_agreements_ids: list[int] = Field(default_factory=list)
    special_rules: list[SpecialRulePayload] = Field(default_factory=list)
    settlement_key: str | None = None

    @classmethod
    def from_request(cls, request: CreateSettlementRequest) -> "CreateRequestPayload":
        special = request.settlement_type == SettlementType.SPECIAL
        return cls(
            insurer_id=request.insurer_id,
            period_start=request.period_start,
            period_end=request.period_end,
            settlement_type=request.settlement_type,
            excluded_provided_services_ids=list(request.excluded_provided_services_ids),
            special_rules=flatten_rule_sets(request.special_rules) if special else [],
            settlement_key=request.settlement_key,
        )


class InformRequestPayload(WireModel):
    id: int
    informed_amount: Decimal
    informed_date: date
    observations: str = ""


class CancelRequestPayload(WireModel):
    id: int
    observations: str = ""

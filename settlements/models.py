from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum


class SettlementType(str, Enum):
    SIMPLE = "SIMPLE"
    SPECIAL = "ESPECIAL"


class SettlementStatus(str, Enum):
    PENDING = "PENDING"
    INFORMED = "INFORMED"
    BILLED = "BILLED"
    CANCEL = "CANCEL"


class RuleType(str, Enum):
    FIXED_AMOUNT = "FIXED_AMOUNT"
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    EQUALS = "EQUALS"
    BETWEEN = "BETWEEN"


class ReconcilerState(str, Enum):
    IDLE = "idle"
    PREVIEWING = "previewing"
    READY = "ready"
    GENERATING = "generating"
    CREATED = "created"
    FAILED = "failed"


@dataclass(frozen=True)
class ProvidedServiceRow:
    """One billable service as fetched from a settlement page.

    Rows are never mutated after a fetch. ``excluded`` is only set on the
    copies handed out by the reconciler, as a projection of the ledger.
    """

    id: int
    service_date: date | None
    origin_label: str
    analysis_count: int
    covered_amount: Decimal
    copayment_amount: Decimal
    status: str
    patient_name: str = "-"
    patient_dni: str = "-"
    authorization_number: str = "-"
    excluded: bool = False

    @property
    def amount(self) -> Decimal:
        return self.covered_amount - self.copayment_amount


@dataclass(frozen=True)
class SpecialRule:
    type: RuleType
    amount: Decimal
    description: str = ""
    analysis_id: int | None = None
    min_quantity: int | None = None
    max_quantity: int | None = None
    equal_quantity: int | None = None


@dataclass(frozen=True)
class PlanRuleSet:
    plan_id: int
    rules: tuple[SpecialRule, ...] = ()


@dataclass(frozen=True)
class SettlementFilters:
    insurer_id: int | None
    period_start: date | None
    period_end: date | None
    type: SettlementType = SettlementType.SIMPLE
    special_rules: tuple[PlanRuleSet, ...] = ()


@dataclass
class AgreementAggregate:
    """Per (plan, agreement) row of a draft.

    ``baseline_*`` come from the preview and never change. ``included_count``
    and ``subtotal`` are derived and get replaced on every recompute.
    """

    plan_name: str
    coverage_period_label: str
    cache_handle: str
    page_count: int
    baseline_count: int
    baseline_subtotal: Decimal
    fee: Decimal = Decimal("0")
    version_label: str = "-"
    included_count: int = 0
    subtotal: Decimal = Decimal("0")
    fetched_count: int = 0
    fetched_included_count: int = 0
    fetched_subtotal: Decimal = Decimal("0")
    excluded_count: int = 0


@dataclass
class SettlementDraft:
    insurer_id: int
    period_start: date
    period_end: date
    type: SettlementType
    settlement_key: str | None
    special_rules: tuple[PlanRuleSet, ...] = ()
    aggregates: list[AgreementAggregate] = field(default_factory=list)
    insurer_name: str = ""
    total_included_count: int = 0
    total_amount: Decimal = Decimal("0")
    is_empty: bool = False

    @property
    def handles(self) -> frozenset[str]:
        return frozenset(a.cache_handle for a in self.aggregates)

    def aggregate_for(self, handle: str) -> AgreementAggregate | None:
        for aggregate in self.aggregates:
            if aggregate.cache_handle == handle:
                return aggregate
        return None


@dataclass(frozen=True)
class Totals:
    total_included_count: int
    total_amount: Decimal


@dataclass(frozen=True)
class ExclusionEvent:
    cache_handle: str
    excluded_ids: tuple[int, ...]
    excluded_count: int
    total_services: int
    subtotal: Decimal
    fetched_included_count: int
    fetched_subtotal: Decimal


@dataclass(frozen=True)
class PageView:
    cache_handle: str
    page_index: int
    page_count: int
    rows: tuple[ProvidedServiceRow, ...]
    failed: bool = False


@dataclass(frozen=True)
class Notice:
    level: str
    code: str
    message: str


@dataclass(frozen=True)
class CreateSettlementRequest:
    insurer_id: int
    period_start: date
    period_end: date
    settlement_type: SettlementType
    excluded_provided_services_ids: tuple[int, ...]
    settlement_key: str | None
    special_rules: tuple[PlanRuleSet, ...] = ()


@dataclass(frozen=True)
class InsurerPlan:
    id: int
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class Insurer:
    id: int
    name: str
    acronym: str = ""
    plans: tuple[InsurerPlan, ...] = ()

    @property
    def active_plan_ids(self) -> list[int]:
        return [p.id for p in self.plans if p.is_active]


@dataclass(frozen=True)
class SettlementSummary:
    id: int
    status: str
    type: str
    insurer_id: int
    insurer_name: str
    period_start: date | None
    period_end: date | None
    provided_services_count: int
    total: Decimal
    informed_amount: Decimal | None = None
    informed_date: date | None = None
    observations: str = ""

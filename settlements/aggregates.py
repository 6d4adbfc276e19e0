"""Recomputation of agreement subtotals from cached pages and exclusions.

Nothing here patches counters in place: every call rebuilds the aggregate
from the preview baseline, the rows fetched so far and the handle's
excluded ids, so toggling in any order always lands on the same numbers.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Iterable

from settlements.models import AgreementAggregate, ExclusionEvent, ProvidedServiceRow, SettlementDraft, Totals


def recompute_aggregate(
    aggregate: AgreementAggregate,
    rows: Iterable[ProvidedServiceRow],
    excluded_ids: frozenset[int] | set[int],
    fully_cached: bool = False,
) -> AgreementAggregate:
    """Return a fresh aggregate for the given cached rows and exclusions.

    Rows that have not been fetched yet are represented by whatever part of
    the preview baseline the fetched rows do not account for. Exclusions on
    unfetched rows cannot exist, so that remainder is taken as fully included.
    Once every page is cached the baseline is ignored entirely.
    """
    fetched = list(rows)
    fetched_total = sum((r.amount for r in fetched), Decimal("0"))
    included = [r for r in fetched if r.id not in excluded_ids]
    fetched_subtotal = sum((r.amount for r in included), Decimal("0"))

    if fully_cached:
        unfetched_count = 0
        unfetched_amount = Decimal("0")
    else:
        unfetched_count = max(aggregate.baseline_count - len(fetched), 0)
        unfetched_amount = aggregate.baseline_subtotal - fetched_total if fetched else aggregate.baseline_subtotal

    return replace(
        aggregate,
        fetched_count=len(fetched),
        fetched_included_count=len(included),
        fetched_subtotal=fetched_subtotal,
        included_count=len(included) + unfetched_count,
        subtotal=fetched_subtotal + unfetched_amount,
        excluded_count=len(excluded_ids),
    )


def draft_totals(aggregates: Iterable[AgreementAggregate]) -> Totals:
    count = 0
    amount = Decimal("0")
    for aggregate in aggregates:
        count += aggregate.included_count
        amount += aggregate.subtotal
    return Totals(total_included_count=count, total_amount=amount)


def apply_totals(draft: SettlementDraft) -> Totals:
    totals = draft_totals(draft.aggregates)
    draft.total_included_count = totals.total_included_count
    draft.total_amount = totals.total_amount
    return totals


def replace_aggregate(draft: SettlementDraft, aggregate: AgreementAggregate) -> None:
    for idx, current in enumerate(draft.aggregates):
        if current.cache_handle == aggregate.cache_handle:
            draft.aggregates[idx] = aggregate
            return


def exclusion_event(aggregate: AgreementAggregate, excluded_ids: Iterable[int]) -> ExclusionEvent:
    ids = tuple(sorted(excluded_ids))
    return ExclusionEvent(
        cache_handle=aggregate.cache_handle,
        excluded_ids=ids,
        excluded_count=len(ids),
        total_services=aggregate.included_count,
        subtotal=aggregate.subtotal,
        fetched_included_count=aggregate.fetched_included_count,
        fetched_subtotal=aggregate.fetched_subtotal,
    )

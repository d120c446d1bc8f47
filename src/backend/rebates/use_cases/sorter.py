"""Order rebates for display.

Two passes, kept separate so ties break the same way every time:
1. most recent Formio `modified` across all stages, newest first
2. stable partition moving rebates that need the applicant's attention to the
   front (FRF sent back for edits, or an accepted stage still waiting for its
   successor form to be started)
"""

from __future__ import annotations

from src.backend.rebates.use_cases.rebate_models import (
    STAGE_ORDER,
    FormType,
    LifecycleState,
    RebateAggregate,
)
from src.backend.rebates.use_cases.status_deriver import derive_state


def most_recent_modified(aggregate: RebateAggregate) -> float:
    """Latest Formio modified time (epoch seconds); absent stages count as -inf."""

    latest = float("-inf")
    for form_type in STAGE_ORDER:
        formio = aggregate.stage(form_type).formio
        if formio is not None:
            latest = max(latest, formio.modified.timestamp())
    return latest


def attention_stage(aggregate: RebateAggregate) -> FormType | None:
    """The stage that puts this rebate at the top of the list, if any."""

    frf_state = derive_state(aggregate.frf)
    if frf_state == LifecycleState.EDITS_REQUESTED:
        return FormType.FRF
    if frf_state == LifecycleState.SELECTED and aggregate.prf.formio is None:
        return FormType.PRF
    if derive_state(aggregate.prf) == LifecycleState.SELECTED and aggregate.crf.formio is None:
        return FormType.CRF
    return None


def needs_attention(aggregate: RebateAggregate) -> bool:
    return attention_stage(aggregate) is not None


def sort_aggregates(aggregates: list[RebateAggregate]) -> list[RebateAggregate]:
    # sorted() stays stable with reverse=True
    by_recency = sorted(aggregates, key=most_recent_modified, reverse=True)

    promoted = [a for a in by_recency if needs_attention(a)]
    rest = [a for a in by_recency if not needs_attention(a)]
    return promoted + rest

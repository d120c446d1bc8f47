"""Decide which action each stage of a rebate currently allows.

Pure with respect to its inputs: takes an aggregate and the submission periods,
performs no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.backend.common.config.app_config import SubmissionPeriods
from src.backend.rebates.use_cases.rebate_models import (
    STAGE_ORDER,
    FormType,
    Gate,
    LifecycleState,
    RebateAggregate,
    predecessor_of,
)
from src.backend.rebates.use_cases.status_deriver import derive_state, status_label

_EDITABLE_STATES = {LifecycleState.DRAFT, LifecycleState.EDITS_REQUESTED}


@dataclass(frozen=True, slots=True)
class StageGate:
    form_type: FormType
    gate: Gate
    state: LifecycleState
    label: str
    # Predecessor was sent back for edits while this stage already exists.
    cascade_pending: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate": self.gate.value,
            "state": self.state.value,
            "label": self.label,
            "cascade_pending": self.cascade_pending,
        }


@dataclass(frozen=True, slots=True)
class ActionSet:
    rebate_key: str
    frf: StageGate
    prf: StageGate
    crf: StageGate

    def for_stage(self, form_type: FormType | str) -> StageGate:
        return getattr(self, FormType(form_type).value)

    @property
    def cascade_targets(self) -> list[FormType]:
        return [ft for ft in STAGE_ORDER if self.for_stage(ft).cascade_pending]

    @property
    def creatable_next(self) -> list[FormType]:
        return [ft for ft in STAGE_ORDER if self.for_stage(ft).gate == Gate.CREATABLE_NEXT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "rebate_key": self.rebate_key,
            "frf": self.frf.to_dict(),
            "prf": self.prf.to_dict(),
            "crf": self.crf.to_dict(),
        }


def derive_states(aggregate: RebateAggregate) -> dict[FormType, LifecycleState]:
    return {ft: derive_state(aggregate.stage(ft)) for ft in STAGE_ORDER}


def _resolve_stage(
    form_type: FormType,
    aggregate: RebateAggregate,
    states: dict[FormType, LifecycleState],
    periods_open: SubmissionPeriods,
) -> StageGate:
    pair = aggregate.stage(form_type)
    state = states[form_type]
    prev = predecessor_of(form_type)
    prev_state = states[prev] if prev is not None else None
    period_open = periods_open.is_open(form_type.value)
    label = status_label(form_type, state, pair.bap.status if pair.bap else None)
    # Any earlier stage sent back for edits locks every later stage.
    earlier_needs_edits = any(
        states[ft] == LifecycleState.EDITS_REQUESTED
        for ft in STAGE_ORDER[: STAGE_ORDER.index(form_type)]
    )

    if pair.formio is None:
        if prev_state == LifecycleState.SELECTED and period_open and not earlier_needs_edits:
            gate = Gate.CREATABLE_NEXT
        else:
            gate = Gate.HIDDEN
        return StageGate(form_type=form_type, gate=gate, state=state, label=label)

    predecessor_needs_edits = prev_state == LifecycleState.EDITS_REQUESTED
    if state in _EDITABLE_STATES and period_open and not earlier_needs_edits:
        gate = Gate.EDITABLE
    else:
        gate = Gate.VIEW_ONLY

    return StageGate(
        form_type=form_type,
        gate=gate,
        state=state,
        label=label,
        cascade_pending=predecessor_needs_edits,
    )


def resolve_gates(aggregate: RebateAggregate, periods_open: SubmissionPeriods) -> ActionSet:
    states = derive_states(aggregate)
    gates = {ft: _resolve_stage(ft, aggregate, states, periods_open) for ft in STAGE_ORDER}
    return ActionSet(
        rebate_key=aggregate.key,
        frf=gates[FormType.FRF],
        prf=gates[FormType.PRF],
        crf=gates[FormType.CRF],
    )

"""Records and derived types for rebate reconciliation.

`FormSubmission` mirrors a Formio submission, `BapStatusRecord` mirrors one row
of the BAP forms table. A `RebateAggregate` pairs them per stage. None of these
are persisted by this backend; they are rebuilt from fresh snapshots on every
request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class FormType(str, Enum):
    FRF = "frf"
    PRF = "prf"
    CRF = "crf"


STAGE_ORDER: tuple[FormType, ...] = (FormType.FRF, FormType.PRF, FormType.CRF)


def predecessor_of(form_type: FormType) -> FormType | None:
    idx = STAGE_ORDER.index(form_type)
    return STAGE_ORDER[idx - 1] if idx > 0 else None


class SubmissionState(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"


class BapStatus(str, Enum):
    """Status strings observed on BAP rebate records."""

    SUBMITTED = "Submitted"
    NEEDS_CLARIFICATION = "Needs Clarification"
    EDITS_REQUESTED = "Edits Requested"
    WITHDRAWN = "Withdrawn"
    ACCEPTED = "Accepted"
    COORDINATOR_DENIED = "Coordinator Denied"
    BRANCH_DIRECTOR_DENIED = "Branch Director Denied"
    BRANCH_DIRECTOR_APPROVED = "Branch Director Approved"
    REIMBURSEMENT_NEEDED = "Reimbursement Needed"


class LifecycleState(str, Enum):
    NOT_YET_CREATED = "not_yet_created"
    DRAFT = "draft"
    SUBMITTED = "submitted"
    NEEDS_CLARIFICATION = "needs_clarification"
    EDITS_REQUESTED = "edits_requested"
    WITHDRAWN = "withdrawn"
    NOT_SELECTED = "not_selected"
    SELECTED = "selected"


class Gate(str, Enum):
    HIDDEN = "hidden"
    VIEW_ONLY = "view_only"
    EDITABLE = "editable"
    CREATABLE_NEXT = "creatable_next"


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class FormSubmission:
    id: str
    state: SubmissionState
    modified: datetime
    entity_combo_key: str | None = None
    rebate_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "modified": _iso(self.modified),
            "entity_combo_key": self.entity_combo_key,
            "rebate_id": self.rebate_id,
            "data": dict(self.data),
        }


@dataclass(frozen=True, slots=True)
class BapStatusRecord:
    rebate_id: str | None
    review_item_id: str | None
    entity_combo_key: str | None
    modified: datetime | None
    status: str | None
    form_id: str | None
    form_type: FormType
    rebate_year: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rebate_id": self.rebate_id,
            "review_item_id": self.review_item_id,
            "entity_combo_key": self.entity_combo_key,
            "modified": _iso(self.modified),
            "status": self.status,
            "form_id": self.form_id,
        }


@dataclass(frozen=True, slots=True)
class StagePair:
    formio: FormSubmission | None = None
    bap: BapStatusRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "formio": self.formio.to_dict() if self.formio else None,
            "bap": self.bap.to_dict() if self.bap else None,
        }


EMPTY_PAIR = StagePair()


@dataclass(frozen=True, slots=True)
class RebateAggregate:
    """One rebate across its three stages.

    `key` is the BAP rebate id once the ETL has assigned one, otherwise
    `"_" + <FRF Formio submission id>`.
    """

    key: str
    rebate_year: str
    frf: StagePair = EMPTY_PAIR
    prf: StagePair = EMPTY_PAIR
    crf: StagePair = EMPTY_PAIR

    @property
    def rebate_id(self) -> str | None:
        return None if self.key.startswith("_") else self.key

    def stage(self, form_type: FormType | str) -> StagePair:
        return getattr(self, FormType(form_type).value)

    def combo_keys(self) -> list[str]:
        keys: set[str] = set()
        for form_type in STAGE_ORDER:
            pair = self.stage(form_type)
            for key in (
                pair.formio.entity_combo_key if pair.formio else None,
                pair.bap.entity_combo_key if pair.bap else None,
            ):
                if key:
                    keys.add(key)
        return sorted(keys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rebate_key": self.key,
            "rebate_id": self.rebate_id,
            "rebate_year": self.rebate_year,
            "frf": self.frf.to_dict(),
            "prf": self.prf.to_dict(),
            "crf": self.crf.to_dict(),
        }

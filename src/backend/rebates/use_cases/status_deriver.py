"""Derive a stage's lifecycle state from its (Formio, BAP) pair.

The BAP snapshot is refreshed by a periodic ETL and can be older than the
Formio submission it describes. Every decision that depends on the BAP status
being current is made through an explicit timestamp comparison.

Rules, evaluated in order:
1. no Formio submission            -> NOT_YET_CREATED
2. no BAP record                   -> DRAFT / SUBMITTED from the Formio state
3. BAP "Withdrawn"                 -> WITHDRAWN
4. BAP "Edits Requested"           -> EDITS_REQUESTED, unless the submission was
                                      resubmitted after the BAP snapshot
                                      (submitted and strictly newer), then SUBMITTED
5. direct status mapping, falling back to the Formio state
"""

from __future__ import annotations

from src.backend.rebates.use_cases.rebate_models import (
    BapStatus,
    BapStatusRecord,
    FormSubmission,
    FormType,
    LifecycleState,
    StagePair,
    SubmissionState,
)

_STATUS_MAP: dict[str, LifecycleState] = {
    BapStatus.NEEDS_CLARIFICATION.value: LifecycleState.NEEDS_CLARIFICATION,
    BapStatus.REIMBURSEMENT_NEEDED.value: LifecycleState.NEEDS_CLARIFICATION,
    BapStatus.COORDINATOR_DENIED.value: LifecycleState.NOT_SELECTED,
    BapStatus.BRANCH_DIRECTOR_DENIED.value: LifecycleState.NOT_SELECTED,
    BapStatus.ACCEPTED.value: LifecycleState.SELECTED,
    BapStatus.BRANCH_DIRECTOR_APPROVED.value: LifecycleState.SELECTED,
}


def _mirror_formio(formio: FormSubmission) -> LifecycleState:
    return LifecycleState.DRAFT if formio.state == SubmissionState.DRAFT else LifecycleState.SUBMITTED


def updated_since_last_etl(formio: FormSubmission, bap: BapStatusRecord | None) -> bool:
    """Whether Formio holds a newer save than the BAP snapshot has seen.

    Equal timestamps count as *not* updated.
    """

    if bap is None or bap.modified is None:
        return False
    return formio.modified > bap.modified


def submission_needs_edits(pair: StagePair) -> bool:
    formio, bap = pair.formio, pair.bap
    if formio is None or bap is None:
        return False
    if bap.status != BapStatus.EDITS_REQUESTED.value:
        return False
    if formio.state == SubmissionState.DRAFT:
        return True
    return not updated_since_last_etl(formio, bap)


def derive_state(pair: StagePair) -> LifecycleState:
    formio, bap = pair.formio, pair.bap

    if formio is None:
        return LifecycleState.NOT_YET_CREATED
    if bap is None:
        return _mirror_formio(formio)

    status = bap.status
    if status == BapStatus.WITHDRAWN.value:
        return LifecycleState.WITHDRAWN
    if status == BapStatus.EDITS_REQUESTED.value:
        if submission_needs_edits(pair):
            return LifecycleState.EDITS_REQUESTED
        # Resubmitted after the snapshot; the next ETL run will confirm.
        return LifecycleState.SUBMITTED

    return _STATUS_MAP.get(status or "", _mirror_formio(formio))


_OUTCOME_LABELS: dict[FormType, dict[LifecycleState, str]] = {
    FormType.FRF: {
        LifecycleState.SELECTED: "Selected",
        LifecycleState.NOT_SELECTED: "Not Selected",
    },
    FormType.PRF: {
        LifecycleState.SELECTED: "Funding Approved",
        LifecycleState.NOT_SELECTED: "Funding Not Approved",
    },
    FormType.CRF: {
        LifecycleState.SELECTED: "Close Out Approved",
        LifecycleState.NOT_SELECTED: "Close Out Not Approved",
    },
}

_DEFAULT_LABELS: dict[LifecycleState, str] = {
    LifecycleState.NOT_YET_CREATED: "",
    LifecycleState.DRAFT: "Draft",
    LifecycleState.SUBMITTED: "Submitted",
    LifecycleState.NEEDS_CLARIFICATION: "Needs Clarification",
    LifecycleState.EDITS_REQUESTED: "Edits Requested",
    LifecycleState.WITHDRAWN: "Withdrawn",
    LifecycleState.NOT_SELECTED: "Not Selected",
    LifecycleState.SELECTED: "Selected",
}


def status_label(form_type: FormType, state: LifecycleState, bap_status: str | None = None) -> str:
    """Display label for a stage, using each form's own wording for outcomes."""

    if state == LifecycleState.NEEDS_CLARIFICATION and bap_status == BapStatus.REIMBURSEMENT_NEEDED.value:
        return "Reimbursement Needed"
    return _OUTCOME_LABELS.get(form_type, {}).get(state) or _DEFAULT_LABELS[state]

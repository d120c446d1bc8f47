from __future__ import annotations

import asyncio

import pytest

from src.backend.common.config.app_config import SubmissionPeriods
from src.backend.rebates.integrations.formio_client import FormioHTTPError
from src.backend.rebates.use_cases.errors import (
    AccessDenied,
    FetchFailure,
    InvalidTransitionAttempted,
    MutationFailure,
    MutationInProgress,
)
from src.backend.rebates.use_cases.form_edits import (
    create_frf_submission,
    fetch_submission,
    save_submission,
)
from src.backend.rebates.use_cases.gate_resolver import resolve_gates
from src.backend.rebates.use_cases.mutation_guard import InFlightGuard
from src.backend.rebates.use_cases.rebate_models import FormType, StagePair
from src.backend.tests.builders import ALL_CLOSED, ALL_OPEN, YEARS, aggregate, bap, formio


class _StubFormio:
    def __init__(self, *, doc: dict | None = None, error: Exception | None = None) -> None:
        self.doc = doc or {}
        self.error = error
        self.updates: list[tuple[str, str, dict]] = []
        self.created: list[tuple[str, dict]] = []

    async def get_submission(self, *, form_path, submission_id):
        if self.error is not None:
            raise self.error
        return {"_id": submission_id, **self.doc}

    async def update_submission(self, *, form_path, submission_id, submission):
        self.updates.append((form_path, submission_id, submission))
        if self.error is not None:
            raise self.error
        return {"_id": submission_id, **submission}

    async def create_submission(self, *, form_path, submission):
        self.created.append((form_path, submission))
        if self.error is not None:
            raise self.error
        return {"_id": "frf-new", **submission}


def _draft_prf_aggregate():
    return aggregate(
        frf=StagePair(
            formio=formio("frf-1"),
            bap=bap(FormType.FRF, form_id="frf-1", status="Accepted"),
        ),
        prf=StagePair(formio=formio("prf-1", state="draft", rebate_id="REB-1")),
    )


def _save(agg, submission, formio_client, *, periods=ALL_OPEN, combo_keys=("COMBO-1",), guard=None):
    return asyncio.run(
        save_submission(
            agg,
            FormType.PRF,
            submission,
            action_set=resolve_gates(agg, periods),
            year_config=YEARS.get("2023"),
            user_combo_keys=list(combo_keys),
            formio_client=formio_client,
            guard=guard or InFlightGuard(),
        )
    )


def _frf(submission, formio_client, *, periods=ALL_OPEN, guard=None):
    return asyncio.run(
        create_frf_submission(
            submission,
            year_config=YEARS.get("2023"),
            periods_open=periods,
            user_combo_keys=["COMBO-1"],
            formio_client=formio_client,
            guard=guard or InFlightGuard(),
        )
    )


_BODY = {"state": "submitted", "data": {"_bap_entity_combo_key": "COMBO-1", "amount": 10}}


def test_saves_editable_stage() -> None:
    formio_client = _StubFormio()

    saved = _save(_draft_prf_aggregate(), _BODY, formio_client)

    assert saved["state"] == "submitted"
    assert formio_client.updates == [("csb-2023-payment-request", "prf-1", _BODY)]


def test_save_rejected_when_period_closed() -> None:
    formio_client = _StubFormio()

    with pytest.raises(InvalidTransitionAttempted):
        _save(_draft_prf_aggregate(), _BODY, formio_client, periods=ALL_CLOSED)

    assert formio_client.updates == []


def test_save_rejected_while_predecessor_needs_edits() -> None:
    agg = aggregate(
        frf=StagePair(
            formio=formio("frf-1", modified=5),
            bap=bap(FormType.FRF, form_id="frf-1", status="Edits Requested", modified=10),
        ),
        prf=StagePair(formio=formio("prf-1", state="draft", rebate_id="REB-1")),
    )

    with pytest.raises(InvalidTransitionAttempted):
        _save(agg, _BODY, _StubFormio())


def test_save_rejected_for_foreign_combo_key() -> None:
    formio_client = _StubFormio()

    with pytest.raises(AccessDenied):
        _save(_draft_prf_aggregate(), _BODY, formio_client, combo_keys=["OTHER"])

    assert formio_client.updates == []


def test_save_rejected_when_combo_key_changes() -> None:
    body = {"data": {"_bap_entity_combo_key": "COMBO-2"}}

    with pytest.raises(AccessDenied):
        _save(_draft_prf_aggregate(), body, _StubFormio(), combo_keys=["COMBO-1", "COMBO-2"])


def test_save_rejects_unknown_state() -> None:
    with pytest.raises(InvalidTransitionAttempted):
        _save(_draft_prf_aggregate(), {**_BODY, "state": "approved"}, _StubFormio())


def test_save_failure_becomes_mutation_failure_and_releases_guard() -> None:
    guard = InFlightGuard()

    with pytest.raises(MutationFailure):
        _save(
            _draft_prf_aggregate(),
            _BODY,
            _StubFormio(error=FormioHTTPError("PUT", "u", 500, "boom")),
            guard=guard,
        )

    assert guard.is_in_flight("REB-1", FormType.PRF) is False


def test_concurrent_save_is_rejected() -> None:
    guard = InFlightGuard()
    formio_client = _StubFormio()

    with guard.hold("REB-1", FormType.PRF):
        with pytest.raises(MutationInProgress):
            _save(_draft_prf_aggregate(), _BODY, formio_client, guard=guard)

    assert formio_client.updates == []


def test_fetch_submission_checks_combo_key() -> None:
    agg = _draft_prf_aggregate()
    formio_client = _StubFormio(doc={"data": {"_bap_entity_combo_key": "COMBO-1"}})

    def fetch(combo_keys):
        return asyncio.run(
            fetch_submission(
                agg,
                FormType.PRF,
                year_config=YEARS.get("2023"),
                user_combo_keys=combo_keys,
                formio_client=formio_client,
            )
        )

    assert fetch(["COMBO-1"])["_id"] == "prf-1"
    with pytest.raises(AccessDenied):
        fetch(["OTHER"])


def test_fetch_submission_failure_is_fetch_failure() -> None:
    with pytest.raises(FetchFailure):
        asyncio.run(
            fetch_submission(
                _draft_prf_aggregate(),
                FormType.PRF,
                year_config=YEARS.get("2023"),
                user_combo_keys=["COMBO-1"],
                formio_client=_StubFormio(error=FormioHTTPError("GET", "u", 503, "down")),
            )
        )


def test_creates_frf_draft_by_default() -> None:
    formio_client = _StubFormio()

    created = _frf({"data": {"_bap_entity_combo_key": "COMBO-1"}}, formio_client)

    assert created["_id"] == "frf-new"
    form_path, submission = formio_client.created[0]
    assert form_path == "csb-2023-funding-request"
    assert submission["state"] == "draft"


def test_frf_create_rejected_when_enrollment_closed() -> None:
    formio_client = _StubFormio()

    with pytest.raises(InvalidTransitionAttempted) as exc:
        _frf(
            {"data": {"_bap_entity_combo_key": "COMBO-1"}},
            formio_client,
            periods=SubmissionPeriods(prf=True, crf=True),
        )

    assert "enrollment period is closed" in exc.value.user_message
    assert formio_client.created == []


def test_frf_create_rejected_for_foreign_combo_key() -> None:
    formio_client = _StubFormio()

    with pytest.raises(AccessDenied):
        _frf({"data": {"_bap_entity_combo_key": "OTHER"}}, formio_client)

    assert formio_client.created == []

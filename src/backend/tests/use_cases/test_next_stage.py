from __future__ import annotations

import asyncio

import pytest

from src.backend.rebates.use_cases.errors import InvalidTransitionAttempted, StaleGuardRejected
from src.backend.rebates.use_cases.gate_resolver import resolve_gates
from src.backend.rebates.use_cases.mutation_guard import InFlightGuard
from src.backend.rebates.use_cases.next_stage import create_next_stage
from src.backend.rebates.use_cases.rebate_models import FormType, StagePair
from src.backend.tests.builders import ALL_CLOSED, ALL_OPEN, YEARS, aggregate, bap, bap_row, formio

_ENTITY = {
    "ENTITY_COMBO_KEY__c": "COMBO-1",
    "ENTITY_STATUS__c": "Active",
    "LEGAL_BUSINESS_NAME__c": "Springfield School District",
    "ELEC_BUS_POC_EMAIL__c": "pat@example.org",
    "ELEC_BUS_POC_NAME__c": "Pat Doe",
    "ELEC_BUS_POC_TITLE__c": "Fleet Manager",
}


class _StubBap:
    def __init__(self, rows, entities=None) -> None:
        self.rows = rows
        self.entities = [_ENTITY] if entities is None else entities

    def get_form_submission_statuses(self, combo_keys):
        return self.rows

    def get_sam_entities(self, email):
        return self.entities


class _StubFormio:
    def __init__(self) -> None:
        self.created: list[tuple[str, dict]] = []

    async def create_submission(self, *, form_path, submission):
        self.created.append((form_path, submission))
        return {"_id": "prf-new", "state": submission["state"], "data": submission["data"]}


def _accepted_frf_aggregate():
    return aggregate(
        frf=StagePair(
            formio=formio("frf-1"),
            bap=bap(FormType.FRF, form_id="frf-1", status="Accepted", review_item_id="CSB-0001"),
        )
    )


def _create(agg, bap_client, formio_client, periods=ALL_OPEN):
    return asyncio.run(
        create_next_stage(
            agg,
            FormType.PRF,
            action_set=resolve_gates(agg, periods),
            year_config=YEARS.get("2023"),
            user_email="pat@example.org",
            formio_client=formio_client,
            bap_client=bap_client,
            guard=InFlightGuard(),
        )
    )


def test_creates_prf_draft_with_hidden_fields() -> None:
    rows = [
        bap_row(
            "CSB Funding Request",
            status="Accepted",
            form_id="frf-1",
            review_item_id="CSB-0001",
            modified="2024-03-01T12:00:00.000Z",
        )
    ]
    formio_client = _StubFormio()

    created = _create(_accepted_frf_aggregate(), _StubBap(rows), formio_client)

    assert created["_id"] == "prf-new"
    form_path, submission = formio_client.created[0]
    assert form_path == "csb-2023-payment-request"
    assert submission["state"] == "draft"
    data = submission["data"]
    assert data["_bap_entity_combo_key"] == "COMBO-1"
    assert data["_bap_rebate_id"] == "REB-1"
    assert data["_user_email"] == "pat@example.org"
    assert data["_user_name"] == "Pat Doe"
    assert data["_user_title"] == "Fleet Manager"
    assert data["_bap_entity_name"] == "Springfield School District"
    assert data["_bap_frf_review_item_id"] == "CSB-0001"
    assert data["_bap_frf_modified"] == "2024-03-01T12:00:00+00:00"


def test_rejects_when_gate_is_not_creatable() -> None:
    formio_client = _StubFormio()

    with pytest.raises(InvalidTransitionAttempted):
        _create(_accepted_frf_aggregate(), _StubBap([]), formio_client, periods=ALL_CLOSED)

    assert formio_client.created == []


def test_rejects_when_live_predecessor_no_longer_accepted() -> None:
    rows = [bap_row("CSB Funding Request", status="Withdrawn", form_id="frf-1")]
    formio_client = _StubFormio()

    with pytest.raises(StaleGuardRejected):
        _create(_accepted_frf_aggregate(), _StubBap(rows), formio_client)

    assert formio_client.created == []


def test_rejects_inactive_entity() -> None:
    rows = [bap_row("CSB Funding Request", status="Accepted", form_id="frf-1")]
    inactive = {**_ENTITY, "ENTITY_STATUS__c": "Inactive"}

    with pytest.raises(InvalidTransitionAttempted):
        _create(_accepted_frf_aggregate(), _StubBap(rows, entities=[inactive]), _StubFormio())


def test_uses_combo_key_from_frf_bap_record() -> None:
    agg = aggregate(
        frf=StagePair(
            formio=formio("frf-1", combo_key="AAA-FORMIO-ONLY"),
            bap=bap(FormType.FRF, form_id="frf-1", status="Accepted"),
        )
    )
    rows = [bap_row("CSB Funding Request", status="Accepted", form_id="frf-1")]
    formio_client = _StubFormio()

    _create(agg, _StubBap(rows), formio_client)

    assert agg.combo_keys() == ["AAA-FORMIO-ONLY", "COMBO-1"]
    assert formio_client.created[0][1]["data"]["_bap_entity_combo_key"] == "COMBO-1"

from __future__ import annotations

import asyncio

import pytest

from src.backend.common.config.app_config import AppConfig, SubmissionPeriods
from src.backend.rebates.integrations.formio_client import FormioHTTPError
from src.backend.rebates.use_cases.errors import FetchFailure, InvalidTransitionAttempted
from src.backend.rebates.use_cases.rebate_models import FormType, Gate
from src.backend.rebates.use_cases.reconciler import RebateReconciler
from src.backend.tests.builders import YEARS, bap_row


class _OpenConfig(AppConfig):
    def submission_periods(self, rebate_year: str) -> SubmissionPeriods:
        return SubmissionPeriods(frf=True, prf=True, crf=True)


class _StubFormio:
    def __init__(self, by_path: dict[str, list[dict]], fail_path: str | None = None) -> None:
        self.by_path = {path: list(docs) for path, docs in by_path.items()}
        self.fail_path = fail_path
        self.list_calls: list[tuple[str, str, list[str]]] = []
        self.deletes: list[tuple[str, str]] = []

    async def list_submissions(self, *, form_path, combo_key_field, combo_keys):
        self.list_calls.append((form_path, combo_key_field, list(combo_keys)))
        if form_path == self.fail_path:
            raise FormioHTTPError("GET", form_path, 503, "unavailable")
        return self.by_path.get(form_path, [])

    async def delete_submission(self, *, form_path, submission_id):
        self.deletes.append((form_path, submission_id))
        docs = self.by_path.get(form_path, [])
        remaining = [d for d in docs if d["_id"] != submission_id]
        self.by_path[form_path] = remaining
        return len(remaining) < len(docs)


class _StubBap:
    def __init__(self, rows: list[dict]) -> None:
        self.rows = rows

    def get_combo_keys(self, email):
        return ["COMBO-1"]

    def get_form_submission_statuses(self, combo_keys):
        return self.rows


def _doc(submission_id: str, modified: str, *, state: str = "submitted", **data) -> dict:
    return {
        "_id": submission_id,
        "state": state,
        "modified": modified,
        "data": {"_bap_entity_combo_key": "COMBO-1", **data},
    }


_FORMIO = {
    "csb-2023-funding-request": [
        _doc("frf-new", "2024-03-05T00:00:00.000Z"),
        _doc("frf-edits", "2024-03-02T00:00:00.000Z"),
        _doc("frf-old", "2024-03-01T00:00:00.000Z"),
    ],
    "csb-2023-payment-request": [
        _doc("prf-1", "2024-03-03T00:00:00.000Z", state="draft", _bap_rebate_id="REB-E"),
    ],
}

_BAP_ROWS = [
    bap_row(
        "CSB Funding Request",
        rebate_id="REB-E",
        form_id="frf-edits",
        status="Edits Requested",
        modified="2024-03-04T00:00:00.000Z",
    ),
    bap_row("CSB Funding Request", rebate_id="REB-O", form_id="frf-old", status="Submitted"),
]


def _reconciler(formio_client, rows=_BAP_ROWS) -> RebateReconciler:
    return RebateReconciler(
        formio_client=formio_client,
        bap_client=_StubBap(rows),
        years=YEARS,
        app_config=_OpenConfig(),
    )


def test_reconcile_fetches_all_stages_and_sorts() -> None:
    formio_client = _StubFormio(_FORMIO)
    reconciler = _reconciler(formio_client)

    aggregates = asyncio.run(reconciler.get_aggregates("2023", ["COMBO-1"]))

    # FRF with edits requested first, then newest-first
    assert [a.key for a in aggregates] == ["REB-E", "_frf-new", "REB-O"]
    assert aggregates[0].prf.formio.id == "prf-1"
    assert sorted(path for path, _, _ in formio_client.list_calls) == [
        "csb-2023-close-out",
        "csb-2023-funding-request",
        "csb-2023-payment-request",
    ]
    assert all(field == "_bap_entity_combo_key" for _, field, _ in formio_client.list_calls)


def test_gates_flag_cascade_on_edits_requested_rebate() -> None:
    reconciler = _reconciler(_StubFormio(_FORMIO))
    aggregate = asyncio.run(reconciler.get_aggregate("2023", ["COMBO-1"], "REB-E"))

    gates = reconciler.get_gates(aggregate)

    assert gates.cascade_targets == [FormType.PRF]
    assert gates.frf.gate == Gate.EDITABLE


def test_any_backend_failure_fails_the_whole_fetch() -> None:
    reconciler = _reconciler(_StubFormio(_FORMIO, fail_path="csb-2023-close-out"))

    with pytest.raises(FetchFailure) as exc:
        asyncio.run(reconciler.get_aggregates("2023", ["COMBO-1"]))

    assert exc.value.retryable is True
    assert exc.value.user_message == "Could not load submissions. Please try again."


def test_unknown_year_is_rejected() -> None:
    with pytest.raises(InvalidTransitionAttempted):
        asyncio.run(_reconciler(_StubFormio(_FORMIO)).get_aggregates("2019", ["COMBO-1"]))


def test_unknown_rebate_key_is_rejected() -> None:
    with pytest.raises(InvalidTransitionAttempted):
        asyncio.run(_reconciler(_StubFormio(_FORMIO)).get_aggregate("2023", ["COMBO-1"], "REB-X"))


def test_cascade_delete_end_to_end() -> None:
    formio_client = _StubFormio(_FORMIO)
    reconciler = _reconciler(formio_client)

    deleted = asyncio.run(
        reconciler.request_cascade_delete("2023", ["COMBO-1"], "REB-E", FormType.PRF)
    )

    assert deleted is True
    assert formio_client.deletes == [("csb-2023-payment-request", "prf-1")]


def test_combo_keys_lookup() -> None:
    assert asyncio.run(_reconciler(_StubFormio(_FORMIO)).combo_keys_for("pat@example.org")) == [
        "COMBO-1"
    ]


def test_retried_cascade_delete_is_success() -> None:
    formio_client = _StubFormio(_FORMIO)
    reconciler = _reconciler(formio_client)

    first = asyncio.run(reconciler.request_cascade_delete("2023", ["COMBO-1"], "REB-E", FormType.PRF))
    second = asyncio.run(reconciler.request_cascade_delete("2023", ["COMBO-1"], "REB-E", FormType.PRF))

    assert first is True
    assert second is False
    assert formio_client.deletes == [("csb-2023-payment-request", "prf-1")]


def test_cascade_delete_of_absent_stage_without_edits_request_is_rejected() -> None:
    reconciler = _reconciler(_StubFormio(_FORMIO))

    with pytest.raises(InvalidTransitionAttempted):
        asyncio.run(reconciler.request_cascade_delete("2023", ["COMBO-1"], "REB-O", FormType.PRF))


@pytest.mark.parametrize(
    "bad_doc",
    [
        _doc("prf-bad", "not-a-date", _bap_rebate_id="REB-O"),
        {**_doc("prf-bad", "2024-03-03T00:00:00.000Z", _bap_rebate_id="REB-O"), "state": None},
        {**_doc("prf-bad", "2024-03-03T00:00:00.000Z", _bap_rebate_id="REB-O"), "_id": ""},
    ],
)
def test_malformed_formio_document_fails_the_fetch(bad_doc) -> None:
    by_path = {**_FORMIO, "csb-2023-payment-request": [bad_doc]}
    reconciler = _reconciler(_StubFormio(by_path))

    with pytest.raises(FetchFailure) as exc:
        asyncio.run(reconciler.get_aggregates("2023", ["COMBO-1"]))

    assert exc.value.retryable is True

"""Helpers for parsing Formio and BAP payloads into engine records.

These functions are intentionally "dumb" and deterministic so they can be
unit-tested without calling either backend.

BAP rows come from the forms table with the parent rebate's per-stage statuses
nested under `Parent_CSB_Rebate__r`. Formio submissions are plain JSON documents
with the hidden fields we inject at creation time under `data`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from src.backend.rebates.config.rebate_years import RebateYearConfig
from src.backend.rebates.use_cases.rebate_models import (
    BapStatusRecord,
    FormSubmission,
    FormType,
    SubmissionState,
)

logger = logging.getLogger(__name__)

# 2022 BAP rows predate the program year field.
DEFAULT_BAP_REBATE_YEAR = "2022"

_RECORD_TYPE_PREFIXES: tuple[tuple[str, FormType], ...] = (
    ("CSB Funding Request", FormType.FRF),
    ("CSB Payment Request", FormType.PRF),
    ("CSB Close Out Request", FormType.CRF),
)

_STATUS_FIELDS: dict[FormType, str] = {
    FormType.FRF: "CSB_Funding_Request_Status__c",
    FormType.PRF: "CSB_Payment_Request_Status__c",
    FormType.CRF: "CSB_Closeout_Request_Status__c",
}


class MalformedSubmission(ValueError):
    """A Formio document is missing a field the engine needs to place it."""


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 string (with `Z`, an offset, or naive) into an aware datetime."""

    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            logger.warning("Unparseable timestamp %r", value)
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def form_type_from_record_type(record_type_name: str | None) -> FormType | None:
    name = (record_type_name or "").strip()
    for prefix, form_type in _RECORD_TYPE_PREFIXES:
        if name.startswith(prefix):
            return form_type
    return None


def parse_bap_status_record(row: dict[str, Any]) -> BapStatusRecord | None:
    """Map one BAP forms-table row to a `BapStatusRecord`.

    Returns None for rows whose record type is not one of the three stages.
    """

    form_type = form_type_from_record_type(row.get("Record_Type_Name__c"))
    if form_type is None:
        return None

    rebate_year = _str_or_none(row.get("Rebate_Program_Year__c")) or DEFAULT_BAP_REBATE_YEAR
    parent = row.get("Parent_CSB_Rebate__r")
    status = _str_or_none(parent.get(_STATUS_FIELDS[form_type])) if isinstance(parent, dict) else None

    return BapStatusRecord(
        rebate_id=_str_or_none(row.get("Parent_Rebate_ID__c")),
        review_item_id=_str_or_none(row.get("CSB_Review_Item_ID__c")),
        entity_combo_key=_str_or_none(row.get("UEI_EFTI_Combo_Key__c")),
        modified=parse_timestamp(row.get("CSB_Modified_Full_String__c")),
        status=status,
        form_id=_str_or_none(row.get("CSB_Form_ID__c")),
        form_type=form_type,
        rebate_year=rebate_year,
    )


def parse_bap_status_records(rows: Iterable[dict[str, Any]]) -> list[BapStatusRecord]:
    out: list[BapStatusRecord] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        record = parse_bap_status_record(row)
        if record is not None:
            out.append(record)
    return out


def parse_formio_submission(
    raw: dict[str, Any],
    *,
    form_type: FormType,
    year_config: RebateYearConfig,
) -> FormSubmission:
    """Map a Formio submission document to a `FormSubmission`.

    Raises `MalformedSubmission` for documents without an `_id`, a parseable
    `modified` or a known `state`. Such a document cannot be paired, ordered
    or gated, and skipping it would make its stage look not yet created.
    """

    submission_id = _str_or_none(raw.get("_id"))
    modified = parse_timestamp(raw.get("modified"))
    label = f"{year_config.rebate_year} {form_type.value.upper()} Formio submission {submission_id!r}"
    if not submission_id:
        raise MalformedSubmission(f"{label} has no _id")
    if modified is None:
        raise MalformedSubmission(f"{label} has no parseable modified timestamp: {raw.get('modified')!r}")
    try:
        state = SubmissionState(raw.get("state"))
    except ValueError:
        raise MalformedSubmission(f"{label} has unknown state {raw.get('state')!r}") from None

    data = raw.get("data") if isinstance(raw.get("data"), dict) else {}

    # FRF submissions only learn their rebate id from the BAP.
    rebate_id = None
    if form_type != FormType.FRF and year_config.rebate_id_field:
        rebate_id = _str_or_none(data.get(year_config.rebate_id_field))

    return FormSubmission(
        id=submission_id,
        state=state,
        modified=modified,
        entity_combo_key=_str_or_none(data.get(year_config.combo_key_field)),
        rebate_id=rebate_id,
        data=dict(data),
    )


def parse_formio_submissions(
    raws: Iterable[dict[str, Any]],
    *,
    form_type: FormType,
    year_config: RebateYearConfig,
) -> list[FormSubmission]:
    out: list[FormSubmission] = []
    for raw in raws:
        if not isinstance(raw, dict):
            raise MalformedSubmission(
                f"{year_config.rebate_year} {form_type.value.upper()} Formio submission is not an object"
            )
        out.append(parse_formio_submission(raw, form_type=form_type, year_config=year_config))
    return out

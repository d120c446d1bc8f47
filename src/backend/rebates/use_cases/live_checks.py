"""Live BAP lookups used to guard mutations.

The page the user acted on was rendered from a snapshot that may be stale by
the time they confirm. Mutations re-read the BAP right before writing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from src.backend.rebates.integrations.records import parse_bap_status_records
from src.backend.rebates.use_cases.errors import FetchFailure
from src.backend.rebates.use_cases.rebate_models import BapStatusRecord, FormType

logger = logging.getLogger(__name__)


async def fetch_live_bap_record(
    bap_client: Any,
    *,
    rebate_year: str,
    rebate_id: str,
    form_type: FormType,
    combo_keys: list[str],
) -> BapStatusRecord | None:
    """Current BAP record for one stage of one rebate, or None if the BAP has none."""

    try:
        rows = await asyncio.to_thread(bap_client.get_form_submission_statuses, combo_keys)
    except Exception as e:
        logger.error("BAP re-check failed for rebate %s: %s", rebate_id, e)
        raise FetchFailure(f"BAP re-check failed for rebate {rebate_id}: {e}") from e

    matches = [
        r
        for r in parse_bap_status_records(rows)
        if r.rebate_year == rebate_year and r.form_type == form_type and r.rebate_id == rebate_id
    ]
    if not matches:
        return None
    return max(matches, key=lambda r: r.modified.timestamp() if r.modified else float("-inf"))

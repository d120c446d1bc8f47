"""Start the next stage of a rebate (PRF after an accepted FRF, CRF after an accepted PRF).

The new Formio submission is created as a draft, pre-populated with the
hidden fields that tie it to the rebate and the entity.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from src.backend.rebates.config.rebate_years import RebateYearConfig
from src.backend.rebates.integrations.bap_client import get_user_info
from src.backend.rebates.integrations.formio_client import FormioHTTPError
from src.backend.rebates.use_cases.errors import (
    FetchFailure,
    InvalidTransitionAttempted,
    MutationFailure,
    StaleGuardRejected,
)
from src.backend.rebates.use_cases.gate_resolver import ActionSet
from src.backend.rebates.use_cases.live_checks import fetch_live_bap_record
from src.backend.rebates.use_cases.mutation_guard import InFlightGuard
from src.backend.rebates.use_cases.rebate_models import (
    BapStatus,
    FormType,
    Gate,
    RebateAggregate,
    SubmissionState,
    predecessor_of,
)

logger = logging.getLogger(__name__)


def build_next_stage_data(
    *,
    year_config: RebateYearConfig,
    predecessor: FormType,
    combo_key: str,
    rebate_id: str,
    user_email: str,
    user_info: dict[str, str | None],
    entity_name: str | None,
    predecessor_review_item_id: str | None,
    predecessor_modified: str | None,
) -> dict[str, Any]:
    return {
        year_config.combo_key_field: combo_key,
        year_config.rebate_id_field: rebate_id,
        "_user_email": user_email,
        "_user_title": user_info.get("title"),
        "_user_name": user_info.get("name"),
        "_bap_entity_name": entity_name,
        f"_bap_{predecessor.value}_review_item_id": predecessor_review_item_id,
        f"_bap_{predecessor.value}_modified": predecessor_modified,
    }


async def create_next_stage(
    aggregate: RebateAggregate,
    stage: FormType,
    *,
    action_set: ActionSet,
    year_config: RebateYearConfig,
    user_email: str,
    formio_client: Any,
    bap_client: Any,
    guard: InFlightGuard,
) -> dict[str, Any]:
    """Create the draft submission for `stage` and return Formio's response."""

    stage = FormType(stage)
    prev = predecessor_of(stage)
    if prev is None or action_set.for_stage(stage).gate != Gate.CREATABLE_NEXT:
        raise InvalidTransitionAttempted(
            f"{stage.value.upper()} of rebate {aggregate.key} cannot be created now"
        )
    if aggregate.rebate_id is None:
        raise InvalidTransitionAttempted(f"Rebate {aggregate.key} has no BAP rebate id yet")

    # The entity the rebate was applied under, as the BAP recorded it.
    combo_key = aggregate.frf.bap.entity_combo_key if aggregate.frf.bap else None
    if combo_key is None:
        raise InvalidTransitionAttempted(f"Rebate {aggregate.key} has no entity combo key")

    with guard.hold(aggregate.key, stage):
        live = await fetch_live_bap_record(
            bap_client,
            rebate_year=aggregate.rebate_year,
            rebate_id=aggregate.rebate_id,
            form_type=prev,
            combo_keys=[combo_key],
        )
        if live is None or live.status != BapStatus.ACCEPTED.value:
            logger.warning(
                "Creating %s for rebate %s rejected: live %s status is %r",
                stage.value.upper(),
                aggregate.key,
                prev.value.upper(),
                live.status if live else None,
            )
            raise StaleGuardRejected(
                f"{prev.value.upper()} of rebate {aggregate.key} is no longer accepted"
            )

        try:
            entities = await asyncio.to_thread(bap_client.get_sam_entities, user_email)
        except Exception as e:
            raise FetchFailure(f"SAM.gov entity lookup failed for {aggregate.key}: {e}") from e

        entity = next(
            (
                ent
                for ent in entities
                if ent.get("ENTITY_COMBO_KEY__c") == combo_key and ent.get("ENTITY_STATUS__c") == "Active"
            ),
            None,
        )
        if entity is None:
            raise InvalidTransitionAttempted(
                f"No active SAM.gov entity {combo_key} for the current user",
                user_message="Your SAM.gov entity is not active. Please contact support.",
            )

        data = build_next_stage_data(
            year_config=year_config,
            predecessor=prev,
            combo_key=combo_key,
            rebate_id=aggregate.rebate_id,
            user_email=user_email,
            user_info=get_user_info(user_email, entity),
            entity_name=entity.get("LEGAL_BUSINESS_NAME__c"),
            predecessor_review_item_id=live.review_item_id,
            predecessor_modified=live.modified.isoformat() if live.modified else None,
        )

        try:
            created = await formio_client.create_submission(
                form_path=year_config.form_path(stage.value),
                submission={"state": SubmissionState.DRAFT.value, "data": data},
            )
        except (FormioHTTPError, httpx.HTTPError) as e:
            logger.error("Error creating %s for rebate %s: %s", stage.value.upper(), aggregate.key, e)
            raise MutationFailure(f"Creating {stage.value.upper()} for {aggregate.key} failed: {e}") from e

    logger.info(
        "Created %s submission %s for rebate %s",
        stage.value.upper(),
        created.get("_id"),
        aggregate.key,
    )
    return created

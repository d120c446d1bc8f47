"""Invalidate a later stage after an earlier stage is sent back for edits.

When the BAP requests edits on stage P while its successor S already has a
Formio submission, S was built from data that is about to change. The user
confirms, and S's Formio submission is deleted, but only if a live BAP
re-check still shows P as "Edits Requested".

A delete that finds the submission already gone counts as success.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.backend.rebates.config.rebate_years import RebateYearsConfig
from src.backend.rebates.integrations.formio_client import FormioHTTPError
from src.backend.rebates.use_cases.errors import (
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
    LifecycleState,
    RebateAggregate,
    predecessor_of,
)

logger = logging.getLogger(__name__)


class CascadeHandler:
    def __init__(
        self,
        *,
        formio_client: Any,
        bap_client: Any,
        years: RebateYearsConfig,
        guard: InFlightGuard | None = None,
    ) -> None:
        self._formio = formio_client
        self._bap = bap_client
        self._years = years
        self._guard = guard or InFlightGuard()

    async def request_cascade_delete(
        self,
        aggregate: RebateAggregate,
        stage: FormType,
        *,
        action_set: ActionSet,
    ) -> bool:
        """Delete `stage`'s submission. Returns False if it was already deleted."""

        stage = FormType(stage)
        predecessor = predecessor_of(stage)
        target = aggregate.stage(stage).formio

        if (
            predecessor is not None
            and target is None
            and action_set.for_stage(predecessor).state == LifecycleState.EDITS_REQUESTED
        ):
            # Retry after an earlier delete went through.
            logger.info(
                "%s submission for rebate %s already deleted",
                stage.value.upper(),
                aggregate.key,
            )
            return False

        if predecessor is None or not action_set.for_stage(stage).cascade_pending or target is None:
            raise InvalidTransitionAttempted(
                f"{stage.value.upper()} of rebate {aggregate.key} is not pending invalidation"
            )
        if aggregate.rebate_id is None:
            raise InvalidTransitionAttempted(f"Rebate {aggregate.key} has no BAP rebate id yet")

        year_config = self._years.get(aggregate.rebate_year)
        if year_config is None:
            raise InvalidTransitionAttempted(f"Unknown rebate year {aggregate.rebate_year}")

        with self._guard.hold(aggregate.key, stage):
            live = await fetch_live_bap_record(
                self._bap,
                rebate_year=aggregate.rebate_year,
                rebate_id=aggregate.rebate_id,
                form_type=predecessor,
                combo_keys=aggregate.combo_keys(),
            )
            if live is None or live.status != BapStatus.EDITS_REQUESTED.value:
                logger.warning(
                    "Cascade delete of %s for rebate %s rejected: live %s status is %r",
                    stage.value.upper(),
                    aggregate.key,
                    predecessor.value.upper(),
                    live.status if live else None,
                )
                raise StaleGuardRejected(
                    f"{predecessor.value.upper()} of rebate {aggregate.key} no longer has edits requested"
                )

            try:
                deleted = await self._formio.delete_submission(
                    form_path=year_config.form_path(stage.value),
                    submission_id=target.id,
                )
            except (FormioHTTPError, httpx.HTTPError) as e:
                logger.error(
                    "Error deleting %s submission %s for rebate %s: %s",
                    stage.value.upper(),
                    target.id,
                    aggregate.key,
                    e,
                )
                raise MutationFailure(
                    f"Deleting {stage.value.upper()} submission {target.id} failed: {e}"
                ) from e

        logger.info(
            "Deleted %s submission %s for rebate %s after %s edits request%s",
            stage.value.upper(),
            target.id,
            aggregate.key,
            predecessor.value.upper(),
            "" if deleted else " (already deleted)",
        )
        return deleted

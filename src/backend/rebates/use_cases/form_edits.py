"""Read, save and start Formio submissions on behalf of the applicant.

Every write re-derives the gate from a fresh reconciliation first, and checks
that the submission's hidden combo key belongs to one of the user's SAM.gov
entities. Writes hold the in-flight guard for their (rebate key, stage).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.backend.common.config.app_config import SubmissionPeriods
from src.backend.rebates.config.rebate_years import RebateYearConfig
from src.backend.rebates.integrations.formio_client import FormioHTTPError
from src.backend.rebates.use_cases.errors import (
    AccessDenied,
    FetchFailure,
    InvalidTransitionAttempted,
    MutationFailure,
)
from src.backend.rebates.use_cases.gate_resolver import ActionSet
from src.backend.rebates.use_cases.mutation_guard import InFlightGuard
from src.backend.rebates.use_cases.rebate_models import (
    FormType,
    Gate,
    RebateAggregate,
    SubmissionState,
)

logger = logging.getLogger(__name__)


def _submission_body(submission: dict[str, Any], *, default_state: str | None) -> dict[str, Any]:
    data = submission.get("data")
    if not isinstance(data, dict):
        raise InvalidTransitionAttempted("Submission body has no data object")

    body = dict(submission)
    state = body.get("state") or default_state
    if state is not None:
        try:
            body["state"] = SubmissionState(state).value
        except ValueError:
            raise InvalidTransitionAttempted(f"Unknown submission state {state!r}") from None
    return body


def _check_combo_key(combo_key: Any, user_combo_keys: list[str], what: str) -> None:
    if not combo_key or combo_key not in user_combo_keys:
        logger.error("User attempted to %s without a matching BAP combo key (%r)", what, combo_key)
        raise AccessDenied(f"Combo key {combo_key!r} is not one of the user's entities ({what})")


async def fetch_submission(
    aggregate: RebateAggregate,
    stage: FormType,
    *,
    year_config: RebateYearConfig,
    user_combo_keys: list[str],
    formio_client: Any,
) -> dict[str, Any]:
    """Return the current Formio document for `stage`."""

    stage = FormType(stage)
    target = aggregate.stage(stage).formio
    if target is None:
        raise InvalidTransitionAttempted(
            f"{stage.value.upper()} of rebate {aggregate.key} has no submission",
            user_message="This form has not been started yet.",
        )

    try:
        doc = await formio_client.get_submission(
            form_path=year_config.form_path(stage.value),
            submission_id=target.id,
        )
    except (FormioHTTPError, httpx.HTTPError) as e:
        logger.error("Error getting %s submission %s: %s", stage.value.upper(), target.id, e)
        raise FetchFailure(f"Getting {stage.value.upper()} submission {target.id} failed: {e}") from e

    data = doc.get("data") if isinstance(doc.get("data"), dict) else {}
    _check_combo_key(
        data.get(year_config.combo_key_field),
        user_combo_keys,
        f"read {stage.value.upper()} submission {target.id}",
    )
    return doc


async def save_submission(
    aggregate: RebateAggregate,
    stage: FormType,
    submission: dict[str, Any],
    *,
    action_set: ActionSet,
    year_config: RebateYearConfig,
    user_combo_keys: list[str],
    formio_client: Any,
    guard: InFlightGuard,
) -> dict[str, Any]:
    """Save (or submit) the existing submission for `stage`.

    Allowed only while the stage's gate is `Editable`. The hidden combo key in
    the body must match the stored submission's and be one of the user's.
    """

    stage = FormType(stage)
    target = aggregate.stage(stage).formio
    if target is None or action_set.for_stage(stage).gate != Gate.EDITABLE:
        raise InvalidTransitionAttempted(
            f"{stage.value.upper()} of rebate {aggregate.key} is not editable",
            user_message="This form can no longer be edited.",
        )

    body = _submission_body(submission, default_state=None)
    combo_key = body["data"].get(year_config.combo_key_field)
    what = f"update {stage.value.upper()} submission {target.id}"
    _check_combo_key(combo_key, user_combo_keys, what)
    if combo_key != target.entity_combo_key:
        logger.error("User attempted to %s with a different combo key (%r)", what, combo_key)
        raise AccessDenied(f"Combo key {combo_key!r} does not match submission {target.id}")

    with guard.hold(aggregate.key, stage):
        try:
            saved = await formio_client.update_submission(
                form_path=year_config.form_path(stage.value),
                submission_id=target.id,
                submission=body,
            )
        except (FormioHTTPError, httpx.HTTPError) as e:
            logger.error("Error updating %s submission %s: %s", stage.value.upper(), target.id, e)
            raise MutationFailure(f"Updating {stage.value.upper()} submission {target.id} failed: {e}") from e

    logger.info(
        "Saved %s submission %s for rebate %s (%s)",
        stage.value.upper(),
        target.id,
        aggregate.key,
        saved.get("state"),
    )
    return saved


async def create_frf_submission(
    submission: dict[str, Any],
    *,
    year_config: RebateYearConfig,
    periods_open: SubmissionPeriods,
    user_combo_keys: list[str],
    formio_client: Any,
    guard: InFlightGuard,
) -> dict[str, Any]:
    """Start a new FRF (application) for one of the user's entities."""

    if not periods_open.frf:
        raise InvalidTransitionAttempted(
            f"{year_config.rebate_year} FRF enrollment period is closed",
            user_message=f"{year_config.rebate_year} CSB Application form enrollment period is closed.",
        )

    body = _submission_body(submission, default_state=SubmissionState.DRAFT.value)
    combo_key = body["data"].get(year_config.combo_key_field)
    _check_combo_key(combo_key, user_combo_keys, f"create a {year_config.rebate_year} FRF submission")

    # No rebate key exists before the FRF does, so new applications are guarded per entity.
    with guard.hold(f"new:{combo_key}", FormType.FRF):
        try:
            created = await formio_client.create_submission(
                form_path=year_config.form_path(FormType.FRF.value),
                submission=body,
            )
        except (FormioHTTPError, httpx.HTTPError) as e:
            logger.error("Error creating %s FRF submission: %s", year_config.rebate_year, e)
            raise MutationFailure(f"Creating {year_config.rebate_year} FRF submission failed: {e}") from e

    logger.info("Created %s FRF submission %s", year_config.rebate_year, created.get("_id"))
    return created

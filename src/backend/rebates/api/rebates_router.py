"""Rebates API.

Read endpoints rebuild the reconciliation from fresh Formio and BAP snapshots on
every call. Mutating endpoints re-check the BAP before writing to Formio.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel

from src.backend.auth.auth_utils import get_authenticated_user_details
from src.backend.common.config.app_config import config
from src.backend.rebates.config.rebate_years import RebateYearsConfig
from src.backend.rebates.integrations.bap_client import BapClient
from src.backend.rebates.integrations.formio_client import FormioClient
from src.backend.rebates.use_cases.errors import (
    AccessDenied,
    FetchFailure,
    InvalidTransitionAttempted,
    MutationFailure,
    MutationInProgress,
    RebateEngineError,
    StaleGuardRejected,
)
from src.backend.rebates.use_cases.rebate_models import FormType
from src.backend.rebates.use_cases.reconciler import RebateReconciler
from src.backend.rebates.use_cases.sorter import attention_stage

logger = logging.getLogger(__name__)

rebates_router = APIRouter(tags=["Rebates"])


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------


class SubmissionRequest(BaseModel):
    data: dict[str, Any]
    state: str | None = None
    metadata: dict[str, Any] | None = None


class SubmissionPeriodsResponse(BaseModel):
    frf: bool
    prf: bool
    crf: bool


class ConfigResponse(BaseModel):
    submission_periods: dict[str, SubmissionPeriodsResponse]


class StageGateResponse(BaseModel):
    gate: str
    state: str
    label: str
    cascade_pending: bool


class ActionSetResponse(BaseModel):
    rebate_key: str
    frf: StageGateResponse
    prf: StageGateResponse
    crf: StageGateResponse


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

_STATUS_CODES: dict[type[RebateEngineError], int] = {
    FetchFailure: 502,
    MutationFailure: 502,
    StaleGuardRejected: 409,
    MutationInProgress: 409,
    InvalidTransitionAttempted: 400,
    AccessDenied: 403,
}


@lru_cache(maxsize=1)
def get_reconciler() -> RebateReconciler:
    try:
        formio_client = FormioClient.from_env()
        bap_client = BapClient.from_env()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Backends not configured: {e}")
    return RebateReconciler(
        formio_client=formio_client,
        bap_client=bap_client,
        years=RebateYearsConfig.load(config.REBATE_YEARS_PATH or None),
    )


def _raise_http(e: RebateEngineError) -> NoReturn:
    status_code = _STATUS_CODES.get(type(e), 500)
    logger.warning("Rebates request failed (%s): %s", type(e).__name__, e.detail)
    raise HTTPException(
        status_code=status_code,
        detail={"message": e.user_message, "retryable": e.retryable},
    ) from e


def _current_user_email(request: Request) -> str:
    user = get_authenticated_user_details(request_headers=request.headers)
    email = user["user_email"]
    if not email:
        raise HTTPException(status_code=401, detail="no user")
    return email


def _submission_payload(body: SubmissionRequest) -> dict[str, Any]:
    return {k: v for k, v in body.model_dump().items() if v is not None}


def _parse_stage(stage: str) -> FormType:
    try:
        return FormType(stage.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown form type {stage!r}")


@rebates_router.get("/config", response_model=ConfigResponse)
async def get_config(reconciler: RebateReconciler = Depends(get_reconciler)) -> dict[str, Any]:
    """Submission periods per rebate year."""
    return {
        "submission_periods": {
            year: reconciler.submission_periods(year).to_dict()
            for year in reconciler.years()
        }
    }


@rebates_router.get("/rebates/{rebate_year}")
async def list_rebates(
    rebate_year: str,
    request: Request,
    reconciler: RebateReconciler = Depends(get_reconciler),
) -> list[dict[str, Any]]:
    email = _current_user_email(request)
    try:
        combo_keys = await reconciler.combo_keys_for(email)
        aggregates = await reconciler.get_aggregates(rebate_year, combo_keys)
    except RebateEngineError as e:
        _raise_http(e)

    out: list[dict[str, Any]] = []
    for aggregate in aggregates:
        stage = attention_stage(aggregate)
        out.append(
            {
                **aggregate.to_dict(),
                "gates": reconciler.get_gates(aggregate).to_dict(),
                "attention_stage": stage.value if stage else None,
            }
        )
    return out


@rebates_router.get("/rebates/{rebate_year}/{rebate_key}/gates", response_model=ActionSetResponse)
async def get_rebate_gates(
    rebate_year: str,
    rebate_key: str,
    request: Request,
    reconciler: RebateReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    email = _current_user_email(request)
    try:
        combo_keys = await reconciler.combo_keys_for(email)
        aggregate = await reconciler.get_aggregate(rebate_year, combo_keys, rebate_key)
    except RebateEngineError as e:
        _raise_http(e)
    return reconciler.get_gates(aggregate).to_dict()


@rebates_router.post("/rebates/{rebate_year}/{rebate_key}/{stage}/cascade-delete", status_code=204)
async def cascade_delete(
    rebate_year: str,
    rebate_key: str,
    stage: str,
    request: Request,
    reconciler: RebateReconciler = Depends(get_reconciler),
) -> Response:
    """Delete a later-stage submission after its predecessor was sent back for edits."""
    email = _current_user_email(request)
    form_type = _parse_stage(stage)
    try:
        combo_keys = await reconciler.combo_keys_for(email)
        await reconciler.request_cascade_delete(rebate_year, combo_keys, rebate_key, form_type)
    except RebateEngineError as e:
        _raise_http(e)
    return Response(status_code=204)


@rebates_router.post("/rebates/{rebate_year}/{rebate_key}/{stage}")
async def create_next_stage(
    rebate_year: str,
    rebate_key: str,
    stage: str,
    request: Request,
    reconciler: RebateReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    email = _current_user_email(request)
    form_type = _parse_stage(stage)
    try:
        combo_keys = await reconciler.combo_keys_for(email)
        return await reconciler.create_next_stage(
            rebate_year, combo_keys, rebate_key, form_type, user_email=email
        )
    except RebateEngineError as e:
        _raise_http(e)


@rebates_router.post("/rebates/{rebate_year}/frf")
async def create_frf(
    rebate_year: str,
    body: SubmissionRequest,
    request: Request,
    reconciler: RebateReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Start a new application (FRF) for one of the user's entities."""
    email = _current_user_email(request)
    try:
        combo_keys = await reconciler.combo_keys_for(email)
        return await reconciler.create_frf_submission(
            rebate_year, combo_keys, _submission_payload(body)
        )
    except RebateEngineError as e:
        _raise_http(e)


@rebates_router.get("/rebates/{rebate_year}/{rebate_key}/{stage}/submission")
async def get_submission(
    rebate_year: str,
    rebate_key: str,
    stage: str,
    request: Request,
    reconciler: RebateReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    email = _current_user_email(request)
    form_type = _parse_stage(stage)
    try:
        combo_keys = await reconciler.combo_keys_for(email)
        return await reconciler.get_submission(rebate_year, combo_keys, rebate_key, form_type)
    except RebateEngineError as e:
        _raise_http(e)


@rebates_router.put("/rebates/{rebate_year}/{rebate_key}/{stage}/submission")
async def save_submission(
    rebate_year: str,
    rebate_key: str,
    stage: str,
    body: SubmissionRequest,
    request: Request,
    reconciler: RebateReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Save or submit an editable stage."""
    email = _current_user_email(request)
    form_type = _parse_stage(stage)
    try:
        combo_keys = await reconciler.combo_keys_for(email)
        return await reconciler.save_submission(
            rebate_year, combo_keys, rebate_key, form_type, _submission_payload(body)
        )
    except RebateEngineError as e:
        _raise_http(e)

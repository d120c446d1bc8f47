"""Rebate reconciliation orchestrator.

Fetches both backends concurrently for one rebate year and the user's combo
keys, then runs the pure engine (matcher, sorter, gate resolver). Every read
starts from fresh snapshots; nothing is cached between requests.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from src.backend.common.config.app_config import AppConfig, SubmissionPeriods
from src.backend.common.config.app_config import config as default_config
from src.backend.rebates.config.rebate_years import RebateYearConfig, RebateYearsConfig
from src.backend.rebates.integrations.records import (
    MalformedSubmission,
    parse_bap_status_records,
    parse_formio_submissions,
)
from src.backend.rebates.use_cases.cascade_handler import CascadeHandler
from src.backend.rebates.use_cases.errors import FetchFailure, InvalidTransitionAttempted
from src.backend.rebates.use_cases.form_edits import (
    create_frf_submission,
    fetch_submission,
    save_submission,
)
from src.backend.rebates.use_cases.gate_resolver import ActionSet, resolve_gates
from src.backend.rebates.use_cases.matcher import AnomalousMatch, match_submissions
from src.backend.rebates.use_cases.mutation_guard import InFlightGuard
from src.backend.rebates.use_cases.next_stage import create_next_stage
from src.backend.rebates.use_cases.rebate_models import (
    BapStatusRecord,
    FormSubmission,
    FormType,
    RebateAggregate,
)
from src.backend.rebates.use_cases.sorter import sort_aggregates

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FetchedRecords:
    frf: list[FormSubmission]
    prf: list[FormSubmission]
    crf: list[FormSubmission]
    bap: list[BapStatusRecord]


@dataclass(frozen=True, slots=True)
class Reconciliation:
    rebate_year: str
    aggregates: list[RebateAggregate]
    anomalies: list[AnomalousMatch]


class RebateReconciler:
    def __init__(
        self,
        *,
        formio_client: Any,
        bap_client: Any,
        years: RebateYearsConfig,
        app_config: AppConfig | None = None,
        guard: InFlightGuard | None = None,
    ) -> None:
        self._formio = formio_client
        self._bap = bap_client
        self._years = years
        self._config = app_config or default_config
        self._guard = guard or InFlightGuard()
        self._cascade = CascadeHandler(
            formio_client=formio_client,
            bap_client=bap_client,
            years=years,
            guard=self._guard,
        )

    def years(self) -> list[str]:
        return self._years.years()

    def year_config(self, rebate_year: str) -> RebateYearConfig:
        year_config = self._years.get(str(rebate_year))
        if year_config is None:
            raise InvalidTransitionAttempted(
                f"Unknown rebate year {rebate_year}",
                user_message=f"Rebate year {rebate_year} is not supported.",
            )
        return year_config

    def submission_periods(self, rebate_year: str) -> SubmissionPeriods:
        return self._config.submission_periods(rebate_year)

    async def combo_keys_for(self, email: str) -> list[str]:
        try:
            return await asyncio.to_thread(self._bap.get_combo_keys, email)
        except Exception as e:
            logger.error("SAM.gov combo key lookup failed: %s", e)
            raise FetchFailure(f"SAM.gov combo key lookup failed: {e}") from e

    async def fetch_records(self, rebate_year: str, combo_keys: list[str]) -> FetchedRecords:
        """Read all three Formio stages and the BAP together.

        If any read fails the whole fetch fails; a partial view would make
        absent stages look "not yet created".
        """

        year_config = self.year_config(rebate_year)

        def formio_list(form_type: FormType):
            return self._formio.list_submissions(
                form_path=year_config.form_path(form_type.value),
                combo_key_field=year_config.combo_key_field,
                combo_keys=combo_keys,
            )

        results = await asyncio.gather(
            formio_list(FormType.FRF),
            formio_list(FormType.PRF),
            formio_list(FormType.CRF),
            asyncio.to_thread(self._bap.get_form_submission_statuses, combo_keys),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            for failure in failures:
                logger.error("Fetch for rebate year %s failed: %s", rebate_year, failure)
            raise FetchFailure(
                f"Fetch for rebate year {rebate_year} failed: {failures[0]}"
            ) from failures[0]

        frf_raw, prf_raw, crf_raw, bap_rows = results
        try:
            return FetchedRecords(
                frf=parse_formio_submissions(frf_raw, form_type=FormType.FRF, year_config=year_config),
                prf=parse_formio_submissions(prf_raw, form_type=FormType.PRF, year_config=year_config),
                crf=parse_formio_submissions(crf_raw, form_type=FormType.CRF, year_config=year_config),
                bap=parse_bap_status_records(bap_rows),
            )
        except MalformedSubmission as e:
            logger.error("Fetch for rebate year %s returned a malformed submission: %s", rebate_year, e)
            raise FetchFailure(f"Fetch for rebate year {rebate_year} failed: {e}") from e

    async def reconcile(self, rebate_year: str, combo_keys: list[str]) -> Reconciliation:
        records = await self.fetch_records(rebate_year, combo_keys)
        result = match_submissions(
            rebate_year=str(rebate_year),
            frf_submissions=records.frf,
            prf_submissions=records.prf,
            crf_submissions=records.crf,
            bap_records=records.bap,
        )
        logger.info(
            "Reconciled %d rebates for year %s (%d anomalies)",
            len(result.aggregates),
            rebate_year,
            len(result.anomalies),
        )
        return Reconciliation(
            rebate_year=str(rebate_year),
            aggregates=sort_aggregates(result.aggregates),
            anomalies=result.anomalies,
        )

    async def get_aggregates(self, rebate_year: str, combo_keys: list[str]) -> list[RebateAggregate]:
        return (await self.reconcile(rebate_year, combo_keys)).aggregates

    async def get_aggregate(
        self, rebate_year: str, combo_keys: list[str], rebate_key: str
    ) -> RebateAggregate:
        for aggregate in await self.get_aggregates(rebate_year, combo_keys):
            if aggregate.key == rebate_key:
                return aggregate
        raise InvalidTransitionAttempted(
            f"Rebate {rebate_key} not found for year {rebate_year}",
            user_message="This rebate could not be found.",
        )

    def get_gates(self, aggregate: RebateAggregate) -> ActionSet:
        return resolve_gates(aggregate, self.submission_periods(aggregate.rebate_year))

    async def request_cascade_delete(
        self,
        rebate_year: str,
        combo_keys: list[str],
        rebate_key: str,
        stage: FormType,
    ) -> bool:
        aggregate = await self.get_aggregate(rebate_year, combo_keys, rebate_key)
        return await self._cascade.request_cascade_delete(
            aggregate, FormType(stage), action_set=self.get_gates(aggregate)
        )

    async def create_next_stage(
        self,
        rebate_year: str,
        combo_keys: list[str],
        rebate_key: str,
        stage: FormType,
        *,
        user_email: str,
    ) -> dict[str, Any]:
        aggregate = await self.get_aggregate(rebate_year, combo_keys, rebate_key)
        return await create_next_stage(
            aggregate,
            FormType(stage),
            action_set=self.get_gates(aggregate),
            year_config=self.year_config(rebate_year),
            user_email=user_email,
            formio_client=self._formio,
            bap_client=self._bap,
            guard=self._guard,
        )

    async def get_submission(
        self,
        rebate_year: str,
        combo_keys: list[str],
        rebate_key: str,
        stage: FormType,
    ) -> dict[str, Any]:
        aggregate = await self.get_aggregate(rebate_year, combo_keys, rebate_key)
        return await fetch_submission(
            aggregate,
            FormType(stage),
            year_config=self.year_config(rebate_year),
            user_combo_keys=combo_keys,
            formio_client=self._formio,
        )

    async def save_submission(
        self,
        rebate_year: str,
        combo_keys: list[str],
        rebate_key: str,
        stage: FormType,
        submission: dict[str, Any],
    ) -> dict[str, Any]:
        aggregate = await self.get_aggregate(rebate_year, combo_keys, rebate_key)
        return await save_submission(
            aggregate,
            FormType(stage),
            submission,
            action_set=self.get_gates(aggregate),
            year_config=self.year_config(rebate_year),
            user_combo_keys=combo_keys,
            formio_client=self._formio,
            guard=self._guard,
        )

    async def create_frf_submission(
        self,
        rebate_year: str,
        combo_keys: list[str],
        submission: dict[str, Any],
    ) -> dict[str, Any]:
        return await create_frf_submission(
            submission,
            year_config=self.year_config(rebate_year),
            periods_open=self.submission_periods(rebate_year),
            user_combo_keys=combo_keys,
            formio_client=self._formio,
            guard=self._guard,
        )

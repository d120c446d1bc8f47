"""Advisory double-submission guard for mutating rebate requests.

At most one create, save or delete per (rebate key, stage) may be in flight in this
process. The real correctness backstop is the live BAP re-check each mutation
performs before touching Formio.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from src.backend.rebates.use_cases.errors import MutationInProgress
from src.backend.rebates.use_cases.rebate_models import FormType

logger = logging.getLogger(__name__)


class InFlightGuard:
    def __init__(self) -> None:
        self._in_flight: set[tuple[str, str]] = set()

    def is_in_flight(self, rebate_key: str, form_type: FormType) -> bool:
        return (rebate_key, FormType(form_type).value) in self._in_flight

    @contextmanager
    def hold(self, rebate_key: str, form_type: FormType) -> Iterator[None]:
        slot = (rebate_key, FormType(form_type).value)
        if slot in self._in_flight:
            logger.warning("Rejected duplicate in-flight request for %s %s", *slot)
            raise MutationInProgress(
                f"A request for {slot[1].upper()} of rebate {rebate_key} is already in progress"
            )
        self._in_flight.add(slot)
        try:
            yield
        finally:
            self._in_flight.discard(slot)

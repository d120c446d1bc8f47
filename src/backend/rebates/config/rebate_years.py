"""Per-year Formio form configuration.

Each rebate year has its own set of Formio forms, and the hidden field names
injected on submission creation changed between years. The mapping lives in
`data/rebate_years.yaml` so new years only need a config change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


def _repo_root_from_this_file() -> Path:
    """rebate_years.py is at: src/backend/rebates/config/rebate_years.py"""
    return Path(__file__).resolve().parents[4]


DEFAULT_REBATE_YEARS_PATH = _repo_root_from_this_file() / "data" / "rebate_years.yaml"


@dataclass(frozen=True, slots=True)
class RebateYearConfig:
    rebate_year: str
    form_paths: dict[str, str]
    combo_key_field: str
    rebate_id_field: str

    def form_path(self, form_type: str) -> str:
        path = self.form_paths.get(form_type)
        if not path:
            raise KeyError(f"No Formio form configured for {self.rebate_year} {form_type.upper()}")
        return path


class RebateYearsConfig:
    def __init__(self, years: dict[str, RebateYearConfig]) -> None:
        self._years = dict(years)

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "RebateYearsConfig":
        raw_years = (doc or {}).get("rebate_years") or {}
        if not isinstance(raw_years, dict):
            raise ValueError("rebate_years must be a mapping of year -> config")

        years: dict[str, RebateYearConfig] = {}
        for year, raw in raw_years.items():
            if not isinstance(raw, dict):
                continue
            form_paths = {str(k): str(v) for k, v in (raw.get("form_paths") or {}).items()}
            years[str(year)] = RebateYearConfig(
                rebate_year=str(year),
                form_paths=form_paths,
                combo_key_field=str(raw.get("combo_key_field") or ""),
                rebate_id_field=str(raw.get("rebate_id_field") or ""),
            )
        return cls(years)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "RebateYearsConfig":
        resolved = Path(path) if path else DEFAULT_REBATE_YEARS_PATH
        if not resolved.is_absolute():
            resolved = (_repo_root_from_this_file() / resolved).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"Rebate years config not found: {resolved}")

        with open(resolved, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f) or {}

        loaded = cls.from_dict(doc)
        logger.info("Loaded rebate year config for %s from %s", loaded.years(), resolved)
        return loaded

    def years(self) -> list[str]:
        return sorted(self._years.keys())

    def get(self, rebate_year: str) -> RebateYearConfig | None:
        return self._years.get(str(rebate_year))

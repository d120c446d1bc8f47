"""Application configuration.

Values come from the process environment (optionally seeded from `.env`).
Everything is read once at import time into the module-level `config` object.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv(override=False)

logger = logging.getLogger(__name__)

FORM_TYPES = ("frf", "prf", "crf")

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(frozen=True, slots=True)
class SubmissionPeriods:
    """Which stage forms currently accept new or edited submissions."""

    frf: bool = False
    prf: bool = False
    crf: bool = False

    def is_open(self, form_type: str) -> bool:
        return bool(getattr(self, form_type, False))

    def to_dict(self) -> dict[str, bool]:
        return {"frf": self.frf, "prf": self.prf, "crf": self.crf}


class AppConfig:
    def __init__(self) -> None:
        self.FORMIO_BASE_URL = os.environ.get("FORMIO_BASE_URL", "http://localhost:3001")
        self.FORMIO_API_KEY = os.environ.get("FORMIO_API_KEY", "")
        self.FORMIO_HTTP_TIMEOUT_SECONDS = float(
            os.environ.get("FORMIO_HTTP_TIMEOUT_SECONDS", "30")
        )

        self.BAP_LOGIN_URL = os.environ.get("BAP_LOGIN_URL", "https://login.salesforce.com")
        self.BAP_CLIENT_ID = os.environ.get("BAP_CLIENT_ID", "")
        self.BAP_CLIENT_SECRET = os.environ.get("BAP_CLIENT_SECRET", "")
        self.BAP_USER = os.environ.get("BAP_USER", "")
        self.BAP_PASSWORD = os.environ.get("BAP_PASSWORD", "")
        self.BAP_API_VERSION = os.environ.get("BAP_API_VERSION", "v58.0")
        self.BAP_FORMS_TABLE = os.environ.get("BAP_FORMS_TABLE", "Order_Request__c")
        self.BAP_SAM_TABLE = os.environ.get("BAP_SAM_TABLE", "Data_Staging__c")
        self.BAP_HTTP_TIMEOUT_SECONDS = int(os.environ.get("BAP_HTTP_TIMEOUT_SECONDS", "30"))

        self.REBATE_YEARS_PATH = os.environ.get("REBATE_YEARS_PATH", "")

        self.BASIC_LOGGING_LEVEL = os.environ.get("BASIC_LOGGING_LEVEL", "INFO")
        self.CLOUD_SPACE = os.environ.get("CLOUD_SPACE", "local")
        self.SERVER_URL = os.environ.get("SERVER_URL", "localhost")
        self.DEV_USER_EMAIL = os.environ.get("DEV_USER_EMAIL", "")

    def submission_periods(self, rebate_year: str) -> SubmissionPeriods:
        """Read `CSB_<YEAR>_<FORM>_OPEN` flags for a rebate year."""
        return SubmissionPeriods(
            **{
                form_type: _env_flag(f"CSB_{rebate_year}_{form_type.upper()}_OPEN")
                for form_type in FORM_TYPES
            }
        )

    def formio_metadata(self) -> dict[str, str]:
        """Metadata stamped on every submission written through this backend."""
        return {
            "csb-app-cloud-space": f"env-{self.CLOUD_SPACE}",
            "csb-app-cloud-origin": self.SERVER_URL,
        }


config = AppConfig()

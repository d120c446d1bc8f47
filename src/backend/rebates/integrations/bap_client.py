"""BAP (case-management system) connector.

Purpose
- Provide a small, testable wrapper for the *read-only* BAP queries this
  backend needs: SAM.gov entities for a user, and form submission statuses
  for a set of entity combo keys.
- Keep OAuth session handling (login / re-login on expiry) in one place.

The BAP is a Salesforce org; queries go through the REST query endpoint.
This module is intentionally independent of FastAPI and the engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from src.backend.common.config.app_config import config

logger = logging.getLogger(__name__)

SAM_POC_EMAIL_FIELDS = (
    "ELEC_BUS_POC_EMAIL__c",
    "ALT_ELEC_BUS_POC_EMAIL__c",
    "GOVT_BUS_POC_EMAIL__c",
    "ALT_GOVT_BUS_POC_EMAIL__c",
)

_SAM_FIELDS = (
    "ENTITY_COMBO_KEY__c",
    "ENTITY_STATUS__c",
    "UNIQUE_ENTITY_ID__c",
    "ENTITY_EFT_INDICATOR__c",
    "LEGAL_BUSINESS_NAME__c",
    "ELEC_BUS_POC_EMAIL__c",
    "ELEC_BUS_POC_NAME__c",
    "ELEC_BUS_POC_TITLE__c",
    "ALT_ELEC_BUS_POC_EMAIL__c",
    "ALT_ELEC_BUS_POC_NAME__c",
    "ALT_ELEC_BUS_POC_TITLE__c",
    "GOVT_BUS_POC_EMAIL__c",
    "GOVT_BUS_POC_NAME__c",
    "GOVT_BUS_POC_TITLE__c",
    "ALT_GOVT_BUS_POC_EMAIL__c",
    "ALT_GOVT_BUS_POC_NAME__c",
    "ALT_GOVT_BUS_POC_TITLE__c",
)

_FORM_SUBMISSION_FIELDS = (
    "UEI_EFTI_Combo_Key__c",
    "CSB_Form_ID__c",
    "CSB_Modified_Full_String__c",
    "CSB_Review_Item_ID__c",
    "Parent_Rebate_ID__c",
    "Record_Type_Name__c",
    "Rebate_Program_Year__c",
    "Parent_CSB_Rebate__r.CSB_Funding_Request_Status__c",
    "Parent_CSB_Rebate__r.CSB_Payment_Request_Status__c",
    "Parent_CSB_Rebate__r.CSB_Closeout_Request_Status__c",
)


class BapHTTPError(RuntimeError):
    def __init__(self, status_code: int, text: str) -> None:
        super().__init__(f"BAP HTTP {status_code}: {text}")
        self.status_code = status_code


@dataclass(slots=True)
class BapSession:
    access_token: str
    instance_url: str


def soql_quote(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class BapClient:
    def __init__(
        self,
        *,
        login_url: str,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        api_version: str = "v58.0",
        forms_table: str = "Order_Request__c",
        sam_table: str = "Data_Staging__c",
        timeout_seconds: int = 30,
    ) -> None:
        self._login_url = login_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._username = username
        self._password = password
        self._api_version = api_version
        self._forms_table = forms_table
        self._sam_table = sam_table
        self._timeout_seconds = timeout_seconds
        self._session: BapSession | None = None

    @classmethod
    def from_env(cls) -> "BapClient":
        if not config.BAP_CLIENT_ID or not config.BAP_CLIENT_SECRET:
            raise ValueError("Missing BAP_CLIENT_ID or BAP_CLIENT_SECRET")
        return cls(
            login_url=config.BAP_LOGIN_URL,
            client_id=config.BAP_CLIENT_ID,
            client_secret=config.BAP_CLIENT_SECRET,
            username=config.BAP_USER,
            password=config.BAP_PASSWORD,
            api_version=config.BAP_API_VERSION,
            forms_table=config.BAP_FORMS_TABLE,
            sam_table=config.BAP_SAM_TABLE,
            timeout_seconds=config.BAP_HTTP_TIMEOUT_SECONDS,
        )

    def login(self) -> BapSession:
        resp = requests.post(
            f"{self._login_url}/services/oauth2/token",
            data={
                "grant_type": "password",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "username": self._username,
                "password": self._password,
            },
            timeout=self._timeout_seconds,
        )
        if resp.status_code >= 400:
            raise BapHTTPError(resp.status_code, resp.text)

        payload = resp.json()
        if not payload.get("access_token") or not payload.get("instance_url"):
            raise RuntimeError("BAP login failed (missing access_token/instance_url)")

        logger.info("Initializing BAP connection.")
        self._session = BapSession(
            access_token=payload["access_token"],
            instance_url=payload["instance_url"].rstrip("/"),
        )
        return self._session

    def _get_session(self) -> BapSession:
        return self._session or self.login()

    def _request_json(self, url: str, *, bearer_token: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        resp = requests.request(
            "GET",
            url,
            headers={
                "Authorization": f"Bearer {bearer_token}",
                "Accept": "application/json",
            },
            params=params,
            timeout=self._timeout_seconds,
        )
        if resp.status_code >= 400:
            raise BapHTTPError(resp.status_code, resp.text)
        return resp.json()

    def _get(self, path_or_url: str, *, params: dict[str, str] | None = None) -> dict[str, Any]:
        session = self._get_session()
        url = path_or_url if path_or_url.startswith("http") else f"{session.instance_url}{path_or_url}"

        try:
            return self._request_json(url, bearer_token=session.access_token, params=params)
        except BapHTTPError as e:
            # Common case: expired session
            if e.status_code == 401 or "INVALID_SESSION_ID" in str(e):
                logger.info("BAP access token expired")
                session = self.login()
                url = path_or_url if path_or_url.startswith("http") else f"{session.instance_url}{path_or_url}"
                return self._request_json(url, bearer_token=session.access_token, params=params)
            raise

    def query(self, soql: str) -> list[dict[str, Any]]:
        """Run a SOQL query, following `nextRecordsUrl` until all records are read."""

        payload = self._get(f"/services/data/{self._api_version}/query", params={"q": soql})
        records: list[dict[str, Any]] = list(payload.get("records") or [])
        while not payload.get("done", True) and payload.get("nextRecordsUrl"):
            payload = self._get(payload["nextRecordsUrl"])
            records.extend(payload.get("records") or [])
        return records

    def get_sam_entities(self, email: str) -> list[dict[str, Any]]:
        """SAM.gov entity records listing `email` as one of their points of contact."""

        if not email:
            return []
        where = " OR ".join(f"{field} = {soql_quote(email)}" for field in SAM_POC_EMAIL_FIELDS)
        soql = f"SELECT {', '.join(_SAM_FIELDS)} FROM {self._sam_table} WHERE {where}"
        return self.query(soql)

    def get_combo_keys(self, email: str) -> list[str]:
        keys = {
            str(entity.get("ENTITY_COMBO_KEY__c"))
            for entity in self.get_sam_entities(email)
            if entity.get("ENTITY_COMBO_KEY__c")
        }
        return sorted(keys)

    def get_form_submission_statuses(self, combo_keys: list[str]) -> list[dict[str, Any]]:
        """Form submission rows (all stages, all years) for the given combo keys."""

        if not combo_keys:
            return []
        keys = ", ".join(soql_quote(k) for k in combo_keys)
        soql = (
            f"SELECT {', '.join(_FORM_SUBMISSION_FIELDS)} "
            f"FROM {self._forms_table} "
            f"WHERE UEI_EFTI_Combo_Key__c IN ({keys}) "
            f"ORDER BY CreatedDate DESC"
        )
        return self.query(soql)


def get_user_info(email: str, entity: dict[str, Any]) -> dict[str, str | None]:
    """Return the title and name of the POC on `entity` whose email matches."""

    prefix = None
    for field in SAM_POC_EMAIL_FIELDS:
        value = entity.get(field)
        # First match wins; a user listed as several POCs has the same name/title.
        if isinstance(value, str) and value.lower() == (email or "").lower():
            prefix = field[: -len("_EMAIL__c")]
            break

    if prefix is None:
        return {"title": None, "name": None}
    return {
        "title": entity.get(f"{prefix}_TITLE__c"),
        "name": entity.get(f"{prefix}_NAME__c"),
    }

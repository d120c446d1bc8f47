import logging
from typing import Mapping

from src.backend.common.config.app_config import config

logger = logging.getLogger(__name__)


def get_authenticated_user_details(request_headers: Mapping[str, str]) -> dict[str, str | None]:
    """Read the user identity forwarded by the upstream auth layer (EasyAuth headers).

    Outside a deployment the headers are absent; `DEV_USER_EMAIL` stands in so
    the app can be run locally.
    """
    headers = {k.lower(): v for k, v in request_headers.items()}

    email = headers.get("x-ms-client-principal-name")
    if not email:
        if config.DEV_USER_EMAIL:
            logger.debug("No principal header, using DEV_USER_EMAIL")
        email = config.DEV_USER_EMAIL or None

    return {
        "user_principal_id": headers.get("x-ms-client-principal-id"),
        "user_email": email,
        "auth_provider": headers.get("x-ms-client-principal-idp"),
    }

"""Todoist API token storage.

The token lives in the system keyring; the ``TODOIST_API_TOKEN``
environment variable takes precedence so that scripts and CI can run
without a keyring backend.
"""

import logging
import os
from typing import Optional

import keyring
from keyring.errors import KeyringError


logger = logging.getLogger(__name__)

SERVICE_NAME = "todo_sync"
TOKEN_KEY = "todoist_api_token"
TOKEN_ENV_VAR = "TODOIST_API_TOKEN"


def get_token() -> Optional[str]:
    """Retrieve the API token.

    Returns:
        Token if found, None otherwise
    """
    env_value = os.getenv(TOKEN_ENV_VAR)
    if env_value:
        logger.debug(f"Using API token from {TOKEN_ENV_VAR}")
        return env_value

    try:
        return keyring.get_password(SERVICE_NAME, TOKEN_KEY)
    except KeyringError as e:
        logger.warning(f"Keyring unavailable ({e}); set {TOKEN_ENV_VAR} instead")
        return None


def store_token(token: str) -> bool:
    """Store the API token in the keyring.

    Returns:
        True if stored successfully, False otherwise
    """
    try:
        keyring.set_password(SERVICE_NAME, TOKEN_KEY, token)
    except KeyringError as e:
        logger.error(f"Failed to store API token: {e}")
        return False
    logger.debug("Stored API token in keyring")
    return True


def delete_token() -> bool:
    try:
        keyring.delete_password(SERVICE_NAME, TOKEN_KEY)
    except KeyringError as e:
        logger.debug(f"No API token removed: {e}")
        return False
    return True

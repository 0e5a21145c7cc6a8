from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from scopeguard.core.types import PrincipalRecord
from scopeguard.directory.store import DirectoryStore
from scopeguard.settings import Settings

logger = logging.getLogger(__name__)


def extract_subject(request: Request, settings: Settings) -> str | None:
    """
    Extract the authentication subject from the bearer header.

    - Input: `Authorization: Bearer <subject>`
    - The host's authentication layer is expected to have validated the
      token already; here the bearer value is the principal's auth subject.
    """

    header_name = settings.authorization_header
    bearer_prefix = settings.bearer_prefix

    raw = request.headers.get(header_name)
    if not raw:
        logger.info("Missing Authorization header path=%s method=%s", request.url.path, request.method)
        return None

    prefix = f"{bearer_prefix} "
    if not raw.startswith(prefix):
        logger.warning("Invalid Authorization header format path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header_name}. Expected '{bearer_prefix} <token>'.",
        )

    subject = raw[len(prefix) :].strip()
    if not subject:
        logger.warning("Empty bearer token path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header_name}. Missing token after '{bearer_prefix}'.",
        )
    return subject


def load_principal(directory: DirectoryStore, subject: str) -> PrincipalRecord:
    principal = directory.principal_by_subject(subject)

    if principal is None or not principal.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or inactive principal")

    return principal

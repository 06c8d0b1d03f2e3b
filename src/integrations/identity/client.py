"""Async httpx client for the public game-profile lookup APIs."""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from src.admin.events import emit
from src.config import settings
from src.models.enums import Edition
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)


class IdentityClient:
    """Asks the edition's public registry whether a handle exists.

    Primary:   GET {primary_url}/{handle}    -> 200 means the profile exists
    Secondary: GET {secondary_url}/{handle}  -> JSON body with "success": true

    Any transport error, timeout or unexpected body counts as "not found":
    an unverifiable handle is never approved.
    """

    def __init__(self) -> None:
        self._primary_url = settings.registry.primary_identity_url.rstrip("/")
        self._secondary_url = settings.registry.secondary_identity_url.rstrip("/")
        self._timeout = httpx.Timeout(settings.registry.http_timeout, connect=5.0)

    async def exists(self, edition: Edition, handle: str) -> bool:
        base = self._primary_url if edition == Edition.PRIMARY else self._secondary_url
        url = f"{base}/{quote(handle, safe='')}"

        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_API_CALL,
            data={"integration": f"identity_{edition.value}", "handle": handle},
            source_module="integrations.identity.client",
        ))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Identity lookup failed for %s (%s): %s", handle, edition.value, exc)
            await emit(SystemEvent(
                event_type=EventType.EXTERNAL_API_RESPONSE,
                data={"integration": f"identity_{edition.value}", "error": type(exc).__name__},
                source_module="integrations.identity.client",
            ))
            return False

        found = self._parse_response(edition, response)

        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_API_RESPONSE,
            data={
                "integration": f"identity_{edition.value}",
                "status": response.status_code,
                "found": found,
            },
            source_module="integrations.identity.client",
        ))
        return found

    def _parse_response(self, edition: Edition, response: httpx.Response) -> bool:
        if edition == Edition.PRIMARY:
            return response.status_code == 200
        try:
            payload = response.json()
        except ValueError:
            logger.debug("Secondary registry returned non-JSON body (status %s)", response.status_code)
            return False
        return isinstance(payload, dict) and payload.get("success") is True


# Module-level singleton
identity_client = IdentityClient()

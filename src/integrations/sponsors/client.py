"""Async httpx client for the citizen registry used to resolve sponsors."""

from __future__ import annotations

import logging
import unicodedata

import httpx

from src.admin.events import emit
from src.config import settings
from src.errors import RegistryUnavailableError
from src.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

_ACTION = "match_joiners_strict"


def normalize_name(name: str) -> str:
    """Registry keys are NFKC-normalized, trimmed names."""
    return unicodedata.normalize("NFKC", name.strip())


class SponsorRegistry:
    """Resolves sponsor names to residents' chat identities.

    Endpoint: POST {sponsor_registry_url}
    Auth:     Authorization: Bearer <token>
    Body:     {"action": "match_joiners_strict", "joiners": [names]}
    Reply:    {"discord_ids": {normalized_name: identity_ref}}

    Transport failures and non-2xx answers raise RegistryUnavailableError;
    names the registry does not know are simply absent from the result.
    """

    def __init__(self) -> None:
        self._url = settings.registry.sponsor_registry_url
        self._token = settings.registry.sponsor_registry_token
        self._timeout = httpx.Timeout(settings.registry.http_timeout, connect=5.0)

    async def match(self, names: list[str]) -> dict[str, str]:
        wanted = [normalize_name(n) for n in names if n and n.strip()]
        if not wanted:
            return {}

        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_API_CALL,
            data={"integration": "sponsor_registry", "names": len(wanted)},
            source_module="integrations.sponsors.client",
        ))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._url,
                    json={"action": _ACTION, "joiners": wanted},
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.HTTPError as exc:
            logger.warning("Sponsor registry unreachable: %s", exc)
            await emit(SystemEvent(
                event_type=EventType.EXTERNAL_API_RESPONSE,
                data={"integration": "sponsor_registry", "error": type(exc).__name__},
                source_module="integrations.sponsors.client",
            ))
            raise RegistryUnavailableError(f"Sponsor registry unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.is_error:
            detail = payload.get("message") if isinstance(payload, dict) else None
            logger.error("Sponsor registry HTTP %s: %s", response.status_code, detail or response.text[:200])
            await emit(SystemEvent(
                event_type=EventType.EXTERNAL_API_RESPONSE,
                data={"integration": "sponsor_registry", "error": f"http_{response.status_code}"},
                source_module="integrations.sponsors.client",
            ))
            raise RegistryUnavailableError(
                detail or f"Sponsor registry error ({response.status_code})",
                status_code=response.status_code,
            )

        matches = self._parse_response(wanted, payload)

        await emit(SystemEvent(
            event_type=EventType.EXTERNAL_API_RESPONSE,
            data={"integration": "sponsor_registry", "requested": len(wanted), "matched": len(matches)},
            source_module="integrations.sponsors.client",
        ))
        return matches

    def _parse_response(self, wanted: list[str], payload: object) -> dict[str, str]:
        ids = payload.get("discord_ids") if isinstance(payload, dict) else None
        if not isinstance(ids, dict):
            return {}
        matches: dict[str, str] = {}
        for name in wanted:
            ref = ids.get(name)
            if ref:
                matches[name] = str(ref)
            else:
                logger.info("Sponsor %r not found in registry", name)
        return matches


# Module-level singleton
sponsor_registry = SponsorRegistry()

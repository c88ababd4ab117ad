from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx

from clinic_recon.core.settings import Settings
from clinic_recon.services.reconcile.errors import NetworkError

logger = logging.getLogger(__name__)

MAX_LOOKUP_WORKERS = 10


class PlatformProfileClient:
    """Read-only lookups against the messaging platform profile endpoint."""

    def __init__(
        self,
        base_url: str,
        access_token: str | None,
        client: httpx.Client | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not access_token:
            raise RuntimeError("PLATFORM_ACCESS_TOKEN is not configured")
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout_seconds)
        self._headers = {"Authorization": f"Bearer {access_token}"}

    @classmethod
    def from_settings(cls, settings: Settings) -> PlatformProfileClient:
        return cls(settings.platform_api_base_url, settings.platform_access_token)

    def __enter__(self) -> PlatformProfileClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def get_profile(self, platform_uid: str) -> dict[str, Any]:
        endpoint = f"/v2/bot/profile/{platform_uid}"
        try:
            resp = self._client.get(endpoint, headers=self._headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Profile lookup failed: {exc}", endpoint=endpoint) from exc
        if not resp.is_success:
            raise NetworkError(
                f"Profile lookup returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                endpoint=endpoint,
            )
        payload = resp.json()
        return {
            "platform_uid": platform_uid,
            "display_name": payload.get("displayName"),
            "picture_url": payload.get("pictureUrl"),
        }


@dataclass
class ProfileLookup:
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {"profiles": self.profiles, "failures": self.failures}


def fetch_profiles(
    client: PlatformProfileClient,
    uids: Iterable[str],
    max_workers: int = 5,
) -> ProfileLookup:
    unique = sorted({uid for uid in uids if uid})
    workers = max(1, min(max_workers, MAX_LOOKUP_WORKERS))
    lookup = ProfileLookup()
    if not unique:
        return lookup
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(client.get_profile, uid): uid for uid in unique}
        for future in as_completed(futures):
            uid = futures[future]
            try:
                lookup.profiles[uid] = future.result()
            except (NetworkError, ValueError) as exc:
                lookup.failures[uid] = str(exc)
                logger.warning("Profile lookup failed", extra={"platform_uid": uid, "error": str(exc)})
    return lookup

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

import httpx

from clinic_recon.core.settings import Settings
from clinic_recon.services.reconcile.errors import NetworkError
from clinic_recon.services.reconcile.source import unwrap_envelope

logger = logging.getLogger(__name__)


@dataclass
class SheetSourceConfig:
    intake_url: str | None
    reservations_url: str | None
    token: str | None
    timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SheetSourceConfig":
        return cls(
            intake_url=settings.source_intake_url,
            reservations_url=settings.source_reservations_url,
            token=settings.source_token,
            timeout_seconds=settings.source_timeout_seconds,
        )

    def require_configured(self) -> None:
        missing = [
            name
            for name, value in {
                "SOURCE_INTAKE_URL": self.intake_url,
                "SOURCE_RESERVATIONS_URL": self.reservations_url,
                "SOURCE_TOKEN": self.token,
            }.items()
            if not value
        ]
        if missing:
            raise RuntimeError("Missing required source settings: " + ", ".join(missing))


class SheetSource:
    """Read-only client for the spreadsheet-backed source.

    Every failure surfaces as ``NetworkError``; there is no retry so an
    operator sees exactly which call failed.
    """

    def __init__(self, config: SheetSourceConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or httpx.Client(timeout=config.timeout_seconds, follow_redirects=True)

    def __enter__(self) -> "SheetSource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def fetch(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
    ) -> list[dict[str, Any]]:
        method = method.upper()
        logger.debug("%s %s", method, endpoint)
        try:
            if method == "GET":
                resp = self._client.get(endpoint, params=params)
            elif method == "POST":
                resp = self._client.post(endpoint, json=params or {})
            else:
                raise ValueError(f"Unsupported source method: {method}")
        except httpx.HTTPError as exc:
            raise NetworkError(f"Source request failed: {exc}", endpoint=endpoint) from exc

        if not resp.is_success:
            logger.error("Source request failed (%s): %s", resp.status_code, resp.text[:500])
            raise NetworkError(
                f"Source returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                endpoint=endpoint,
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise NetworkError("Source returned non-JSON body", endpoint=endpoint) from exc
        rows = unwrap_envelope(payload, endpoint=endpoint)
        logger.info("Fetched %d source rows", len(rows), extra={"endpoint": endpoint})
        return rows

    def list_intake(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]:
        if not self._config.intake_url:
            raise RuntimeError("SOURCE_INTAKE_URL is not configured")
        params: dict[str, Any] = {}
        if date_from:
            params["from"] = date_from.isoformat()
        if date_to:
            params["to"] = date_to.isoformat()
        return self.fetch(self._config.intake_url, params=params or None)

    def list_reservations(self, reserved_date: date | None = None) -> list[dict[str, Any]]:
        if not self._config.reservations_url:
            raise RuntimeError("SOURCE_RESERVATIONS_URL is not configured")
        body: dict[str, Any] = {"token": self._config.token}
        if reserved_date is None:
            body["type"] = "getAllReservations"
        else:
            body["type"] = "list"
            body["date"] = reserved_date.isoformat()
        return self.fetch(self._config.reservations_url, params=body, method="POST")

from __future__ import annotations

import json
from datetime import date
from pathlib import Path
from typing import Any

from clinic_recon.services.reconcile.source import RecordSource, parse_date, unwrap_envelope


class FixtureSource(RecordSource):
    def __init__(self, base_path: Path | None = None) -> None:
        if base_path is None:
            base_path = Path(__file__).resolve().parent / "fixtures"
        self.base_path = base_path

    def list_intake(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]:
        rows = self._load_json("intake.json")
        if not date_from and not date_to:
            return rows
        filtered: list[dict[str, Any]] = []
        for row in rows:
            submitted = parse_date(row.get("timestamp") or row.get("submittedAt"))
            if submitted is None:
                continue
            if date_from and submitted < date_from:
                continue
            if date_to and submitted > date_to:
                continue
            filtered.append(row)
        return filtered

    def list_reservations(self, reserved_date: date | None = None) -> list[dict[str, Any]]:
        rows = self._load_json("reservations.json")
        if reserved_date is None:
            return rows
        return [
            row
            for row in rows
            if parse_date(row.get("reserved_date") or row.get("date")) == reserved_date
        ]

    def close(self) -> None:
        return None

    def _load_json(self, filename: str) -> list[dict[str, Any]]:
        path = self.base_path / filename
        raw = path.read_text(encoding="utf-8")
        data = json.loads(raw)
        if not isinstance(data, (list, dict)):
            raise ValueError(f"{path} must contain a JSON list or envelope.")
        return unwrap_envelope(data, endpoint=str(path))

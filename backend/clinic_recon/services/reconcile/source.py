from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Protocol

from clinic_recon.services.reconcile.errors import NetworkError, ValidationError
from clinic_recon.services.reconcile.phone import normalize_jp_phone
from clinic_recon.services.reconcile.status import normalize_status
from clinic_recon.services.reconcile.types import SourceRecord

logger = logging.getLogger(__name__)


class RecordSource(Protocol):
    def list_intake(
        self,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def list_reservations(self, reserved_date: date | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


def _fold(key: str) -> str:
    return re.sub(r"[\s_\-]+", "", str(key)).lower()


# Canonical field -> every spelling seen across sheet exports, folded.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "patient_id": ("patientid", "pid", "患者id", "患者番号"),
    "reserve_id": ("reserveid", "reservationid", "reserved", "予約id"),
    "platform_uid": ("platformuid", "lineid", "lineuid", "lineuserid", "userid", "line"),
    "phone": ("phone", "tel", "phonenumber", "mobile", "電話番号", "電話"),
    "name": ("name", "patientname", "氏名", "名前"),
    "name_kana": ("namekana", "kana", "カナ", "フリガナ"),
    "sex": ("sex", "gender", "性別"),
    "birthday": ("birthday", "birth", "birthdate", "dateofbirth", "生年月日"),
    "status": ("status", "ステータス", "状態"),
    "timestamp": ("timestamp", "submittedat", "createdat", "updatedat", "タイムスタンプ", "送信日時"),
    "reserved_date": ("reserveddate", "date", "予約日"),
    "reserved_time": ("reservedtime", "time", "予約時間", "予約時刻"),
}

_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d",
    "%Y/%m/%d",
)

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2})?$")


def unwrap_envelope(payload: Any, endpoint: str | None = None) -> list[dict[str, Any]]:
    """Accept ``{ok, rows}``, ``{ok, reservations}`` or a bare array."""
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        if payload.get("ok") is False:
            raise NetworkError(
                f"Source rejected request: {payload.get('error') or 'ok=false'}",
                endpoint=endpoint,
            )
        rows = None
        for key in ("rows", "reservations", "data"):
            if key in payload:
                rows = payload[key]
                break
        if rows is None:
            raise NetworkError("Source response has no rows", endpoint=endpoint)
    else:
        raise NetworkError(f"Unexpected source payload type: {type(payload).__name__}", endpoint=endpoint)
    if not isinstance(rows, list):
        raise NetworkError("Source rows must be a list", endpoint=endpoint)
    return rows


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _pick(folded: Mapping[str, Any], canonical: str) -> Any:
    for alias in (_fold(canonical), *FIELD_ALIASES[canonical]):
        if alias in folded:
            value = folded[alias]
            if _clean(value) is not None:
                return value
    return None


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = _clean(value)
    if text is None:
        return None
    try:
        return _naive_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_date(value: Any) -> date | None:
    parsed = parse_timestamp(value)
    return parsed.date() if parsed else None


def parse_time(value: Any) -> str | None:
    text = _clean(value)
    if text is None:
        return None
    match = _TIME_RE.match(text)
    if match:
        return f"{int(match.group(1)):02d}:{match.group(2)}"
    parsed = parse_timestamp(text)
    if parsed:
        return parsed.strftime("%H:%M")
    return None


def _normalize_birthday(value: Any) -> str | None:
    parsed = parse_date(value)
    if parsed:
        return parsed.isoformat()
    return _clean(value)


def normalize_row(
    raw: Mapping[str, Any],
    origin: str,
    position: int,
    required: Iterable[str] = (),
) -> SourceRecord:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"row {position} is not an object", position=position)
    folded: dict[str, Any] = {}
    for key, value in raw.items():
        folded.setdefault(_fold(key), value)

    record = SourceRecord(
        origin=origin,
        position=position,
        patient_id=_clean(_pick(folded, "patient_id")),
        reserve_id=_clean(_pick(folded, "reserve_id")),
        platform_uid=_clean(_pick(folded, "platform_uid")),
        phone=normalize_jp_phone(_pick(folded, "phone")),
        name=_clean(_pick(folded, "name")),
        name_kana=_clean(_pick(folded, "name_kana")),
        sex=_clean(_pick(folded, "sex")),
        birthday=_normalize_birthday(_pick(folded, "birthday")),
        status=normalize_status(_clean(_pick(folded, "status"))),
        timestamp=parse_timestamp(_pick(folded, "timestamp")),
        reserved_date=parse_date(_pick(folded, "reserved_date")),
        reserved_time=parse_time(_pick(folded, "reserved_time")),
        raw=dict(raw),
    )
    missing = tuple(name for name in required if record.value(name) is None)
    if missing:
        raise ValidationError(
            f"row {position} from {origin} is missing {', '.join(missing)}",
            position=position,
            missing=missing,
        )
    return record


@dataclass
class BatchErrors:
    skipped: int = 0
    items: list[dict[str, object]] = field(default_factory=list)

    def add(self, exc: ValidationError, origin: str) -> None:
        self.skipped += 1
        item = {
            "origin": origin,
            "position": exc.position,
            "missing": list(exc.missing),
            "error": str(exc),
        }
        self.items.append(item)
        logger.warning("Skipping source row", extra=item)


def normalize_rows(
    rows: Iterable[Mapping[str, Any]],
    origin: str,
    required: Iterable[str] = (),
) -> tuple[list[SourceRecord], BatchErrors]:
    required = tuple(required)
    records: list[SourceRecord] = []
    errors = BatchErrors()
    for position, raw in enumerate(rows):
        try:
            records.append(normalize_row(raw, origin, position, required))
        except ValidationError as exc:
            errors.add(exc, origin)
    return records, errors

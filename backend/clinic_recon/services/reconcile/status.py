import re

__all__ = ["LOGICALLY_DELETED_STATUSES", "is_logically_deleted", "normalize_status"]

_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)

_STATUS_ALIASES = {
    "cancelled": "canceled",
    "cancel": "canceled",
    "キャンセル": "canceled",
    "取消": "canceled",
    "voided": "void",
    "無効": "void",
    "予約中": "pending",
    "完了": "completed",
}

LOGICALLY_DELETED_STATUSES = frozenset({"canceled", "void"})


def normalize_status(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", str(value).strip())
    if not cleaned:
        return None
    lowered = cleaned.lower()
    return _STATUS_ALIASES.get(lowered, lowered)


def is_logically_deleted(value: str | None) -> bool:
    return normalize_status(value) in LOGICALLY_DELETED_STATUSES

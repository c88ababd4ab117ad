from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterator

from clinic_recon.services.reconcile.phone import normalize_jp_phone
from clinic_recon.services.reconcile.source import parse_timestamp
from clinic_recon.services.reconcile.store import StoreClient
from clinic_recon.services.reconcile.tables import PATIENTS_TABLE
from clinic_recon.services.reconcile.types import MergeReason

logger = logging.getLogger(__name__)

IGNORED_TABLE = "dedup_ignored"

SCORE_PHONE_EXACT = 95
SCORE_PHONE_NORMALIZED = 90
SCORE_NAME_BIRTHDAY = 80
SCORE_KANA_SEX = 70
MAX_NAME_DISTANCE = 2


def levenshtein_distance(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i] + [0] * len(b)
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
        previous = current
    return previous[-1]


@dataclass
class MatchReason:
    type: str
    description: str
    score: int


def calculate_similarity(a: dict[str, Any], b: dict[str, Any]) -> tuple[int, list[MatchReason]]:
    reasons: list[MatchReason] = []

    phone_a, phone_b = a.get("phone"), b.get("phone")
    if phone_a and phone_b and phone_a == phone_b:
        reasons.append(MatchReason("phone_exact", f"phone matches exactly: {phone_a}", SCORE_PHONE_EXACT))
    elif phone_a and phone_b:
        normalized_a = normalize_jp_phone(phone_a)
        if normalized_a and normalized_a == normalize_jp_phone(phone_b):
            reasons.append(
                MatchReason("phone_normalized", f"phone matches after normalizing: {normalized_a}", SCORE_PHONE_NORMALIZED)
            )

    if a.get("name") and b.get("name") and a.get("birthday") and a.get("birthday") == b.get("birthday"):
        distance = levenshtein_distance(a["name"], b["name"])
        if distance <= MAX_NAME_DISTANCE:
            reasons.append(
                MatchReason(
                    "name_birthday",
                    f"name within distance {distance} and same birthday {a['birthday']}",
                    SCORE_NAME_BIRTHDAY,
                )
            )

    if a.get("name_kana") and a.get("sex") and a.get("name_kana") == b.get("name_kana") and a.get("sex") == b.get("sex"):
        reasons.append(
            MatchReason("name_kana_sex", f"same kana {a['name_kana']} and sex {a['sex']}", SCORE_KANA_SEX)
        )

    similarity = max((reason.score for reason in reasons), default=0)
    return similarity, reasons


def _created(row: dict[str, Any]) -> datetime:
    return parse_timestamp(row.get("created_at")) or datetime.max


def suggest_keep(
    a: dict[str, Any],
    b: dict[str, Any],
    reservations: Counter,
    orders: Counter,
) -> str:
    """Platform-linked first, then more reservations, more orders, older row."""
    id_a, id_b = a["patient_id"], b["patient_id"]
    if bool(a.get("platform_uid")) != bool(b.get("platform_uid")):
        return id_a if a.get("platform_uid") else id_b
    if reservations[id_a] != reservations[id_b]:
        return id_a if reservations[id_a] > reservations[id_b] else id_b
    if orders[id_a] != orders[id_b]:
        return id_a if orders[id_a] > orders[id_b] else id_b
    return id_a if _created(a) <= _created(b) else id_b


@dataclass
class DuplicateCandidate:
    patient_a: dict[str, Any]
    patient_b: dict[str, Any]
    similarity: int
    match_reasons: list[MatchReason] = field(default_factory=list)
    suggested_keep_id: str = ""

    @property
    def suggested_remove_id(self) -> str:
        if self.suggested_keep_id == self.patient_a["patient_id"]:
            return self.patient_b["patient_id"]
        return self.patient_a["patient_id"]

    @property
    def merge_reason(self) -> MergeReason:
        if any(reason.type.startswith("phone") for reason in self.match_reasons):
            return MergeReason.phone_name
        return MergeReason.operator

    def as_dict(self) -> dict[str, object]:
        return {
            "patient_a": self.patient_a,
            "patient_b": self.patient_b,
            "similarity": self.similarity,
            "match_reasons": [asdict(reason) for reason in self.match_reasons],
            "suggested_keep_id": self.suggested_keep_id,
        }


def pair_key(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def load_ignored_pairs(store: StoreClient) -> set[tuple[str, str]]:
    return {pair_key(row["patient_id_a"], row["patient_id_b"]) for row in store.fetch_all(IGNORED_TABLE)}


def _groups(patients: list[dict[str, Any]]) -> Iterator[list[dict[str, Any]]]:
    by_phone: dict[str, list[dict[str, Any]]] = defaultdict(list)
    by_birthday: dict[str, list[dict[str, Any]]] = defaultdict(list)
    by_kana_sex: dict[tuple[str, str], list[dict[str, Any]]] = defaultdict(list)
    for row in patients:
        phone = normalize_jp_phone(row.get("phone"))
        if phone:
            by_phone[phone].append(row)
        if row.get("birthday") and row.get("name"):
            by_birthday[row["birthday"]].append(row)
        if row.get("name_kana") and row.get("sex"):
            by_kana_sex[(row["name_kana"], row["sex"])].append(row)
    for grouping in (by_phone, by_birthday, by_kana_sex):
        for group in grouping.values():
            if len(group) > 1:
                yield group


def find_duplicate_candidates(store: StoreClient, min_score: int = SCORE_KANA_SEX) -> list[DuplicateCandidate]:
    """Score patient pairs that share a phone, a birthday or kana and sex.

    Only pairs inside one of those groups are compared, so the scan stays
    close to linear in the number of patients.
    """
    patients = store.fetch_all(PATIENTS_TABLE, order_by=["created_at"])
    if not patients:
        return []
    reservations = Counter(str(row["patient_id"]) for row in store.fetch_all("reservations"))
    orders = Counter(str(row["patient_id"]) for row in store.fetch_all("orders"))
    ignored = load_ignored_pairs(store)

    candidates: list[DuplicateCandidate] = []
    seen: set[tuple[str, str]] = set()
    for group in _groups(patients):
        for i, a in enumerate(group):
            for b in group[i + 1 :]:
                key = pair_key(a["patient_id"], b["patient_id"])
                if key in seen or key in ignored:
                    continue
                seen.add(key)
                similarity, reasons = calculate_similarity(a, b)
                if similarity < min_score:
                    continue
                candidates.append(
                    DuplicateCandidate(
                        patient_a=_public(a, reservations, orders),
                        patient_b=_public(b, reservations, orders),
                        similarity=similarity,
                        match_reasons=reasons,
                        suggested_keep_id=suggest_keep(a, b, reservations, orders),
                    )
                )
    candidates.sort(key=lambda item: item.similarity, reverse=True)
    logger.info("Duplicate scan finished", extra={"patients": len(patients), "candidates": len(candidates)})
    return candidates


def _public(row: dict[str, Any], reservations: Counter, orders: Counter) -> dict[str, Any]:
    fields = ("patient_id", "name", "name_kana", "sex", "birthday", "phone", "platform_uid", "created_at")
    data = {name: row.get(name) for name in fields}
    if isinstance(data["created_at"], datetime):
        data["created_at"] = data["created_at"].isoformat()
    data["reservation_count"] = reservations[row["patient_id"]]
    data["order_count"] = orders[row["patient_id"]]
    return data


def ignore_pair(store: StoreClient, patient_id_a: str, patient_id_b: str) -> tuple[str, str]:
    if patient_id_a == patient_id_b:
        raise ValueError("cannot ignore a patient paired with itself")
    first, second = pair_key(patient_id_a, patient_id_b)
    store.upsert(
        IGNORED_TABLE,
        [{"patient_id_a": first, "patient_id_b": second}],
        conflict_key=("patient_id_a", "patient_id_b"),
    )
    store.commit()
    logger.info("Ignored duplicate pair", extra={"patient_id_a": first, "patient_id_b": second})
    return first, second

from clinic_recon.models.base import Base
from clinic_recon.models.patient import Patient
from clinic_recon.models.intake import Intake
from clinic_recon.models.reservation import Reservation
from clinic_recon.models.order import Order, Reorder
from clinic_recon.models.messaging import (
    FriendFieldValue,
    MessageLog,
    PatientMark,
    PatientTag,
    VerifyCode,
)
from clinic_recon.models.reconcile import DedupIgnoredPair, ReconcileEvent

__all__ = [
    "Base",
    "DedupIgnoredPair",
    "FriendFieldValue",
    "Intake",
    "MessageLog",
    "Order",
    "Patient",
    "PatientMark",
    "PatientTag",
    "ReconcileEvent",
    "Reorder",
    "Reservation",
    "VerifyCode",
]

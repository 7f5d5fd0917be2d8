from dataclasses import dataclass
from datetime import datetime

from medtrack.medications.schemas import DedupKey


@dataclass(frozen=True)
class DoseDue:
    dedup_key: DedupKey
    user_id: str
    medication_name: str
    dosage_text: str
    scheduled_time: datetime


@dataclass(frozen=True)
class DoseResolved:
    dedup_key: DedupKey
    user_id: str

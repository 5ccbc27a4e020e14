import enum
from typing import Optional


class RoleName(str, enum.Enum):
    ADMIN = "ADMIN"
    TECHNICIAN = "TECHNICIAN"
    CUSTOMER = "CUSTOMER"


class MachineStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"
    RETIRED = "RETIRED"


class DocumentType(str, enum.Enum):
    MANUAL = "MANUAL"
    DRAWING = "DRAWING"
    CERTIFICATE = "CERTIFICATE"
    WARRANTY = "WARRANTY"
    OTHER = "OTHER"


class TransactionType(str, enum.Enum):
    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"


class ReferenceType(str, enum.Enum):
    MANUAL = "MANUAL"
    WORK_ORDER = "WORK_ORDER"
    PURCHASE = "PURCHASE"
    ADJUSTMENT = "ADJUSTMENT"


class FrequencyType(str, enum.Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ScheduleStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


class Priority(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ResultStatus(str, enum.Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    NA = "NA"


class PMPhotoType(str, enum.Enum):
    BEFORE = "BEFORE"
    AFTER = "AFTER"
    EVIDENCE = "EVIDENCE"
    REFERENCE = "REFERENCE"


class RepairStatus(str, enum.Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RepairItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class RepairPhotoType(str, enum.Enum):
    BEFORE = "BEFORE"
    PROGRESS = "PROGRESS"
    AFTER = "AFTER"


TERMINAL_SCHEDULE_STATUSES = {ScheduleStatus.COMPLETED.value, ScheduleStatus.SKIPPED.value, ScheduleStatus.CANCELLED.value}
TERMINAL_REPAIR_STATUSES = {RepairStatus.COMPLETED.value, RepairStatus.CANCELLED.value}
OPEN_REPAIR_STATUSES = (RepairStatus.OPEN.value, RepairStatus.IN_PROGRESS.value)

# Lower-case and legacy spellings accepted on input
_ALIASES = {
    "under repair": "MAINTENANCE",
    "under_repair": "MAINTENANCE",
    "in progress": "IN_PROGRESS",
    "in-progress": "IN_PROGRESS",
    "cancel": "CANCELLED",
    "canceled": "CANCELLED",
}


def normalize_choice(value: Optional[str], enum_cls) -> Optional[str]:
    """Map free-form status strings (``"in_progress"``, ``"Under Repair"``)
    onto the canonical upper-case value of ``enum_cls``, or None."""
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        value = value.value
    raw = str(value).strip()
    if not raw:
        return None
    candidate = _ALIASES.get(raw.lower(), raw.upper().replace(" ", "_").replace("-", "_"))
    try:
        return enum_cls(candidate).value
    except ValueError:
        return None


def empty_str_to_none(v):
    if v is None:
        return None
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


def _plain_value(v):
    if isinstance(v, enum.Enum):
        return v.value
    if isinstance(v, dict):
        return plain(v)
    if isinstance(v, list):
        return [_plain_value(i) for i in v]
    return v


def plain(data: dict) -> dict:
    """Enum members to their values, for handing schema dumps to the ORM."""
    return {k: _plain_value(v) for k, v in data.items()}

"""
Ordered precondition checks for the two completion transitions.

Each check is a ``(reason, predicate)`` pair; ``first_failure`` walks the list
in order and raises ``PreconditionNotMet`` with the reason of the first
predicate that returns False. Nothing is mutated while checking.
"""
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from ..errors import PreconditionNotMet
from ..models.models import PMSchedule, RepairWork
from ..schemas.common import (
    RepairItemStatus,
    RepairPhotoType,
    TERMINAL_REPAIR_STATUSES,
    TERMINAL_SCHEDULE_STATUSES,
)


Check = Tuple[str, Callable[[Any], bool]]


def first_failure(checks: Sequence[Check], subject: Any) -> None:
    for reason, passes in checks:
        if not passes(subject):
            raise PreconditionNotMet(reason)


def failing_reasons(checks: Sequence[Check], subject: Any) -> List[str]:
    return [reason for reason, passes in checks if not passes(subject)]


def _filled(value: Optional[str]) -> bool:
    return bool(value and value.strip())


@dataclass
class PMCompletion:
    schedule: PMSchedule
    signature_url: Optional[str]
    signer_name: Optional[str]


PM_COMPLETION_CHECKS: List[Check] = [
    ("PM schedule is already closed", lambda c: c.schedule.status not in TERMINAL_SCHEDULE_STATUSES),
    ("Customer signature is required", lambda c: _filled(c.signature_url)),
    ("Customer signer name is required", lambda c: _filled(c.signer_name)),
]


def _items_done(rw: RepairWork) -> bool:
    return bool(rw.items) and all(i.status == RepairItemStatus.COMPLETED.value for i in rw.items)


def _items_remarked(rw: RepairWork) -> bool:
    return all(_filled(i.remarks) for i in rw.items)


def _has_photo(rw: RepairWork, *types: str) -> bool:
    return any(p.photo_type in types for p in rw.photos)


REPAIR_COMPLETION_CHECKS: List[Check] = [
    ("Repair work is already closed", lambda rw: rw.status not in TERMINAL_REPAIR_STATUSES),
    ("All repair items must be completed", _items_done),
    ("Every repair item needs remarks", _items_remarked),
    ("At least one BEFORE photo is required", lambda rw: _has_photo(rw, RepairPhotoType.BEFORE.value)),
    (
        "At least one PROGRESS or AFTER photo is required",
        lambda rw: _has_photo(rw, RepairPhotoType.PROGRESS.value, RepairPhotoType.AFTER.value),
    ),
]

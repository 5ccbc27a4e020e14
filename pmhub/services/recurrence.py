import re
from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from ..schemas.common import FrequencyType, normalize_choice


_FIXED_STEPS = {
    FrequencyType.HOURLY.value: timedelta(hours=1),
    FrequencyType.DAILY.value: timedelta(days=1),
    FrequencyType.WEEKLY.value: timedelta(weeks=1),
}


def next_due_date(from_date: datetime, frequency_unit: Optional[str], frequency_multiplier: Optional[int] = 1) -> datetime:
    """Return ``from_date`` advanced by ``frequency_multiplier`` units.

    MONTHLY moves by calendar months and clamps to the last day of a shorter
    month (Jan 31 + 1 month is Feb 29 in 2024). An unrecognised unit falls
    back to one month, and a missing or non-positive multiplier counts as 1.
    """
    unit = normalize_choice(frequency_unit, FrequencyType)
    if unit is None:
        return from_date + relativedelta(months=1)
    try:
        n = int(frequency_multiplier or 1)
    except (TypeError, ValueError):
        n = 1
    if n < 1:
        n = 1
    if unit == FrequencyType.MONTHLY.value:
        return from_date + relativedelta(months=n)
    return from_date + _FIXED_STEPS[unit] * n


def machine_code_token(machine_code: Optional[str], machine_name: Optional[str]) -> str:
    token = re.sub(r"[^A-Z0-9]", "", (machine_code or "").upper())[:10]
    if token:
        return token
    letters = re.sub(r"[^A-Z]", "", (machine_name or "").upper())[:3]
    return letters or "UNK"


def schedule_code(machine_code: Optional[str], machine_name: Optional[str], due: datetime) -> str:
    """``PM-<MACHINE>-YYYYMMDD-HHMM``"""
    return f"PM-{machine_code_token(machine_code, machine_name)}-{due.strftime('%Y%m%d-%H%M')}"

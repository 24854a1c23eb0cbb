import json
import math
import os
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from .schemas import ExpirationBatch, Severity

EXPIRING_SOON_DAYS = int(os.environ.get("EXPIRING_SOON_DAYS", "40").strip() or 40)

_DAY_SECONDS = 86400.0


def severity_for_days(days: float, soon_days: int = EXPIRING_SOON_DAYS) -> Severity:
    """Bucket a day count: negative is expired, up to ``soon_days`` inclusive is expiring soon."""
    if days < 0:
        return Severity.EXPIRED
    if days <= soon_days:
        return Severity.EXPIRING_SOON
    return Severity.NORMAL


def days_until_expiration(expiration: Union[datetime, float, int], now: Union[datetime, float, int]) -> int:
    """Whole days (rounded up) from ``now`` to ``expiration``.

    Accepts datetimes or epoch milliseconds for either side.
    """
    if isinstance(expiration, datetime) or isinstance(now, datetime):
        exp_dt = _as_datetime(expiration)
        now_dt = _as_datetime(now)
        seconds = (exp_dt - now_dt).total_seconds()
    else:
        seconds = (float(expiration) - float(now)) / 1000.0
    return int(math.ceil(seconds / _DAY_SECONDS))


def describe_days(days: int) -> str:
    if days < 0:
        n = abs(days)
        return f"expired {n} day{'s' if n != 1 else ''} ago"
    if days == 0:
        return "expires today"
    return f"expires in {days} day{'s' if days != 1 else ''}"


def classify_batch(date_value: str, now: datetime, quantity: Optional[int] = None) -> Optional[ExpirationBatch]:
    exp = _parse_date(date_value)
    if exp is None:
        return None
    days = days_until_expiration(exp, now)
    return ExpirationBatch(
        date=exp.date().isoformat(),
        days_until_expiration=days,
        severity=severity_for_days(days),
        quantity=quantity,
        label=describe_days(days),
    )


def parse_expiration_metafield(raw: Optional[str], now: Optional[datetime] = None) -> List[ExpirationBatch]:
    """Parse the ``expiration_dates.allocations`` metafield into sorted batches.

    The metafield holds a JSON list of ``{"date": ..., "quantity": ...}`` objects,
    or an object with that list under ``allocations``. Unparseable entries are skipped.
    """
    if not raw:
        return []
    try:
        data: Any = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if isinstance(data, dict):
        data = data.get("allocations") or data.get("batches") or []
    if not isinstance(data, list):
        return []
    now = now or datetime.now(timezone.utc)
    out: List[ExpirationBatch] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        date_value = entry.get("date") or entry.get("expiration_date") or entry.get("expiresAt")
        qty = entry.get("quantity")
        try:
            qty = int(qty) if qty is not None else None
        except (TypeError, ValueError):
            qty = None
        batch = classify_batch(str(date_value or ""), now, qty)
        if batch is not None:
            out.append(batch)
    out.sort(key=lambda b: b.days_until_expiration)
    return out


def _as_datetime(value: Union[datetime, float, int]) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


def _parse_date(s: str) -> Optional[datetime]:
    st = (s or "").strip()
    if not st:
        return None
    if st.endswith("Z"):
        st = st[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(st)
    except ValueError:
        return None
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

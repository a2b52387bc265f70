"""
Value normalizers for vehicle identifiers and loosely typed upstream fields.

The vehicle data provider returns the same field as a string, number or
boolean depending on the service and the day, so every extractor funnels
values through these helpers.
"""

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Optional

from app.core.exceptions import UnsupportedServiceError

# Accepted spellings of the three service names
SERVICE_ALIASES: Dict[str, str] = {
    "rc": "rc",
    "fastag": "fastag",
    "fasttag": "fastag",
    "challan": "challans",
    "challans": "challans",
}

TRUTHY_STRINGS = {"true", "yes", "y", "linked", "active", "1"}
FALSY_STRINGS = {"false", "no", "n", "unlinked", "inactive", "blacklisted", "0", ""}

DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d-%b-%Y",
    "%d %b %Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
)

_VEHICLE_STRIP = re.compile(r"[\s\-]+")


def sanitize_vehicle_number(value: Any) -> str:
    """Uppercase and strip whitespace and hyphens: 'ka 01-ab 1234' -> 'KA01AB1234'"""
    if value is None:
        return ""
    return _VEHICLE_STRIP.sub("", str(value)).upper()


def normalize_service(value: Any) -> str:
    """Map any accepted service spelling to rc / fastag / challans"""
    key = str(value or "").strip().lower()
    if key not in SERVICE_ALIASES:
        raise UnsupportedServiceError(str(value))
    return SERVICE_ALIASES[key]


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def first_non_empty(source: Optional[Dict[str, Any]], keys: Iterable[str]) -> Any:
    """Value of the first alias present and non-blank in source, else None"""
    if not isinstance(source, dict):
        return None
    for key in keys:
        value = source.get(key)
        if not is_blank(value):
            return value
    return None


def to_str(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    return str(value).strip()


def to_int(value: Any) -> Optional[int]:
    """Integer from int, float or numeric string ('2019', '3.0'); None otherwise"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    match = re.search(r"-?\d+(\.\d+)?", text)
    if not match:
        return None
    return int(float(match.group(0)))


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Float from number or currency-ish string ('Rs. 1,250.50')"""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace(",", "")
    match = re.search(r"-?\d+(\.\d+)?", text)
    if not match:
        return default
    return float(match.group(0))


def to_bool(value: Any, default: Optional[bool] = None) -> Optional[bool]:
    """Boolean from bool, number or status word (true/yes/linked/active/1)"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in TRUTHY_STRINGS:
        return True
    if text in FALSY_STRINGS:
        return False
    return default


def to_iso_date(value: Any) -> Optional[str]:
    """
    ISO 'YYYY-MM-DD' from the date spellings the provider uses.

    Unparseable strings are returned unchanged so no information is lost.
    """
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    # ISO timestamps: keep the date part
    candidate = text.split("T")[0] if re.match(r"^\d{4}-\d{2}-\d{2}T", text) else text
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date().isoformat()
        except ValueError:
            continue
    return text


def parse_iso_date(value: Any) -> Optional[date]:
    """date object from an ISO string produced by to_iso_date, else None"""
    iso = to_iso_date(value)
    if not iso:
        return None
    try:
        return date.fromisoformat(iso)
    except ValueError:
        return None


def format_data_age(then: datetime, now: Optional[datetime] = None) -> str:
    """Human age of a cached record: '12 minutes ago', '4 hours ago', '2 days ago'"""
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    if then.tzinfo is not None:
        then = then.astimezone(timezone.utc).replace(tzinfo=None)

    minutes = max(int((now - then).total_seconds() // 60), 0)
    if minutes < 60:
        unit, amount = "minute", minutes
    elif minutes < 60 * 24:
        unit, amount = "hour", minutes // 60
    else:
        unit, amount = "day", minutes // (60 * 24)
    return f"{amount} {unit}{'' if amount == 1 else 's'} ago"


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a trailing Z for naive UTC timestamps"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat() + "Z"

import re
from datetime import datetime, date, timezone
from typing import Optional
from urllib.parse import urlencode, urlsplit

from dateutil import parser as date_parser


LIST_COLORS = (
    '#FF3B30',
    '#007AFF',
    '#34C759',
    '#FFD60A',
    '#AF52DE',
    '#FF2D55',
    '#5856D6',
    '#00C7BE',
    '#FF9500',
)
DEFAULT_COLOR = LIST_COLORS[0]

_EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
_SPECIAL_RE = re.compile(r'[!@#$%^&*()_+\-=\[\]{};\':"\\|,.<>/?]')
_WAIT_RE = re.compile(r'(\d+)\s*seconds?')


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a backend timestamp (ISO string or datetime) into an aware UTC datetime.

    Naive values are assumed to be UTC. Returns None for empty or unparseable
    input.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        try:
            dt = date_parser.isoparse(str(value))
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(_EMAIL_RE.match(email))


def validate_password_strength(password: str) -> Optional[str]:
    """Return an error message when the password is too weak, else None."""
    if len(password) < 8:
        return 'Password must be at least 8 characters long'
    if not re.search(r'[A-Z]', password):
        return 'Password must contain at least one uppercase letter'
    if not re.search(r'[a-z]', password):
        return 'Password must contain at least one lowercase letter'
    if not re.search(r'[0-9]', password):
        return 'Password must contain at least one number'
    if not _SPECIAL_RE.search(password):
        return 'Password must contain at least one special character'
    return None


def parse_wait_seconds(message: str | None) -> Optional[int]:
    """Extract the wait time from a rate-limit message such as
    'For security purposes, you can only request this after 42 seconds.'
    """
    if not message:
        return None
    m = _WAIT_RE.search(message)
    if not m:
        return None
    return int(m.group(1))


def normalize_color(color: str | None) -> str:
    if color and color.upper() in LIST_COLORS:
        return color.upper()
    return DEFAULT_COLOR


def safe_next_path(value: str | None, default: str = '/dashboard') -> str:
    """Only allow same-site relative redirect targets."""
    if not value:
        return default
    parts = urlsplit(value)
    if parts.scheme or parts.netloc or not value.startswith('/') or value.startswith('//'):
        return default
    return value


def append_query(url: str, **params) -> str:
    sep = '&' if '?' in url else '?'
    return f"{url}{sep}{urlencode(params)}"

"""
Identity keys used to link transactions to customers.

A transaction may carry a `customer_id`, but older and imported rows often
only have the dog name plus a phone number or owner name. Both customers
and transactions store the same derived keys so the store can answer
equality queries for them.
"""

import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

_WHITESPACE = re.compile(r"\s+")
_NON_DIGIT = re.compile(r"[^0-9]")


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def normalize_name(value: Optional[str]) -> str:
    """Strip all whitespace so '초 코' and '초코 ' compare equal."""
    if not value:
        return ""
    return _WHITESPACE.sub("", value.strip())


def phone_digits(value: Optional[str]) -> str:
    """Keep only the digits of a phone number."""
    if not value:
        return ""
    return _NON_DIGIT.sub("", value)


def make_phone_key(dog_name: Optional[str], phone: Optional[str]) -> Optional[str]:
    """(dog name, normalized phone) key, or None when either part is missing."""
    name = normalize_name(dog_name)
    digits = phone_digits(phone)
    if not name or not digits:
        return None
    return f"{name}_{digits}"


def make_name_key(dog_name: Optional[str], owner_name: Optional[str]) -> Optional[str]:
    """(dog name, owner name) key, or None when either part is missing."""
    name = normalize_name(dog_name)
    owner = normalize_name(owner_name)
    if not name or not owner:
        return None
    return f"{name}_{owner}"


def read_field(record: Any, name: str) -> Any:
    """Read a field from a typed model or a raw store document."""
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)

"""Room routing: maps a (businessId, visitorId) thread to a room key."""
import re
from typing import Tuple

from .errors import ValidationError

ROOM_SEPARATOR = ":"

# Ids come from the document store (hex object ids) or short slugs;
# the separator can never appear inside one.
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_identifier(value, field: str) -> str:
    """Return ``value`` if it is a well-formed id, else raise ValidationError."""
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(f"Invalid {field}: {value!r}")
    return value


def room_key(business_id: str, visitor_id: str) -> str:
    """Compute the room key for a conversation thread."""
    validate_identifier(business_id, "businessId")
    validate_identifier(visitor_id, "visitorId")
    return f"{business_id}{ROOM_SEPARATOR}{visitor_id}"


def parse_room_key(key: str) -> Tuple[str, str]:
    """Split a room key back into ``(business_id, visitor_id)``."""
    business_id, sep, visitor_id = key.partition(ROOM_SEPARATOR)
    if not sep:
        raise ValidationError(f"Invalid room key: {key!r}")
    return (
        validate_identifier(business_id, "businessId"),
        validate_identifier(visitor_id, "visitorId"),
    )

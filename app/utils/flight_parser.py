import re
from typing import Optional, Tuple

DESIGNATOR_PATTERN = re.compile(r"^([A-Z0-9]{2}|[A-Z]{3})(\d{1,4}[A-Z]?)$")
IATA_AIRPORT_PATTERN = re.compile(r"^[A-Z]{3}$")


def normalize_designator(value: str) -> str:
    """Upper-case and strip whitespace: " aa 123 " -> "AA123" """
    return re.sub(r"\s+", "", value or "").upper()


def split_designator(designator: str) -> Optional[Tuple[str, str]]:
    """
    Split a flight designator into carrier code and number.

    "AA123" -> ("AA", "123"), "BAW2490" -> ("BAW", "2490"). Returns None
    when the value does not look like a designator.
    """
    cleaned = normalize_designator(designator)
    match = DESIGNATOR_PATTERN.match(cleaned)
    if not match:
        return None
    return match.group(1), match.group(2)


def is_airport_code(value: Optional[str]) -> bool:
    return bool(value) and bool(IATA_AIRPORT_PATTERN.match(value.strip().upper()))

from datetime import datetime
import os
import sys


def env_var(
    name: str, allow_null: bool = False, default: str | None = None
) -> str | None:
    """Reads a configuration value from the environment.

    Required values that are missing or empty stop the process during start-up rather
    than failing later on the first device call.
    """
    value = os.environ.get(name)
    if value is None or value == "":
        if default is not None:
            return default
        if allow_null:
            return None
        sys.exit(f"{name} was not set in the environment")
    return value


def hhmm(moment: datetime) -> str:
    """Formats a datetime as a zero-padded 24h "HH:MM" string."""
    return f"{moment.hour:02d}:{moment.minute:02d}"


def parse_hhmm(value: str) -> tuple[int, int]:
    """Splits "HH:MM" into (hours, minutes); missing parts count as zero."""
    parts = str(value).split(":")
    hours = int(parts[0]) if parts and parts[0] else 0
    minutes = int(parts[1]) if len(parts) > 1 and parts[1] else 0
    return hours, minutes


def minute_of_day(value: str) -> int:
    hours, minutes = parse_hhmm(value)
    return hours * 60 + minutes

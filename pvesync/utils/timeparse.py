import re
from typing import Union

_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_time(value: Union[str, int, float]) -> float:
    """
    Parse a duration like '15s', '10m', '1h', '2d' or a bare number of seconds.
    """
    if isinstance(value, bool):
        raise ValueError("Invalid time string format")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError("Duration must not be negative")
        return float(value)
    if not isinstance(value, str):
        raise ValueError("Invalid time string format")

    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*", value)
    if not match:
        raise ValueError(f"Invalid time string format: {value!r}")

    number, unit = match.groups()
    return float(number) * _UNITS[unit or "s"]

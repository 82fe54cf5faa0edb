import re
from datetime import date, datetime

MR_NUMBER_PATTERN = re.compile(r"^MR-(\d{4})-(\d{4})$")


def days_since(moment, today: date = None) -> int:
    """Whole days elapsed between `moment` (a date or datetime) and today."""
    today = today or date.today()
    if isinstance(moment, datetime):
        moment = moment.date()
    return (today - moment).days


def format_mr_number(year: int, sequence: int) -> str:
    return f"MR-{year}-{sequence:04d}"


def parse_mr_number(mr_number: str):
    """Return (year, sequence) for a well-formed MR number, otherwise None."""
    match = MR_NUMBER_PATTERN.match(mr_number or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))

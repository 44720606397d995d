"""
Input checks shared by admin and signing flows.
"""
import re
from typing import Optional

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email.strip()) is not None


def same_email(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive email equality; two missing values are not equal."""
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()

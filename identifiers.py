import secrets
import string
from datetime import date
from typing import Optional

ALPHABET = string.digits + string.ascii_uppercase  # base 36
SUFFIX_LENGTH = 5


def random_code(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def new_booking_id(today: Optional[date] = None) -> str:
    """YYMMDD-XXXXX"""
    today = today or date.today()
    return f"{today:%y%m%d}-{random_code()}"


def new_request_id() -> str:
    return random_code()

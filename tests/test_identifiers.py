import re
from datetime import date

from identifiers import new_booking_id, new_request_id

BOOKING_ID = re.compile(r"^\d{6}-[0-9A-Z]{5}$")
REQUEST_ID = re.compile(r"^[0-9A-Z]{5}$")


def test_booking_id_format():
    code = new_booking_id(date(2026, 11, 2))
    assert BOOKING_ID.match(code)
    assert code.startswith("261102-")



def test_request_id_format():
    for _ in range(50):
        assert REQUEST_ID.match(new_request_id())

import os
from dotenv import load_dotenv

# Values come from the process environment, optionally seeded by a .env file
load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL")

# Room bookings are only allowed inside this daily range, in this timezone
BOOKING_TIMEZONE = os.environ.get("BOOKING_TIMEZONE", "Asia/Jakarta")
BUSINESS_HOURS_START = os.environ.get("BUSINESS_HOURS_START", "07:00")
BUSINESS_HOURS_END = os.environ.get("BUSINESS_HOURS_END", "16:00")

# How many times a colliding booking/request code is regenerated
ID_MAX_ATTEMPTS = int(os.environ.get("ID_MAX_ATTEMPTS", "5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

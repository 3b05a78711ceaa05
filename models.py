from enum import Enum
from typing import List, Optional
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field
from sqlalchemy import JSON, DateTime
from sqlalchemy.types import TypeDecorator

from scheduling import Window, to_utc


class AssetKind(str, Enum):
    ROOM = "room"
    VEHICLE = "vehicle"
    ITEM = "countable-item"


class AllocationKind(str, Enum):
    ROOM = "room"
    VEHICLE = "vehicle"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in both directions, whatever the backend stores."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else to_utc(value)

    def process_result_value(self, value, dialect):
        # SQLite hands back naive values
        return None if value is None else to_utc(value)


class Asset(SQLModel, table=True):
    __tablename__ = "assets"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str
    kind: AssetKind = Field(index=True)
    capacity: int = 0  # only meaningful for countable items
    detail: str = ""


class Driver(SQLModel, table=True):
    __tablename__ = "drivers"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str
    phone: str = ""
    detail: str = ""


class AllocationBase(SQLModel):
    """Columns shared by confirmed bookings and pending requests."""

    kind: AllocationKind = Field(index=True)
    start_at: datetime = Field(index=True, sa_type=UTCDateTime)
    end_at: datetime = Field(index=True, sa_type=UTCDateTime)
    requester_name: str
    asset_code: str = Field(index=True)
    asset_name: str  # snapshot of the catalog name at commit time
    person_in_charge: str
    pic_phone: str
    notes: str = ""

    # room payload
    activity_name: Optional[str] = None
    # [{"asset_code": ..., "asset_name": ..., "quantity": ...}, ...]
    borrowed_items: List[dict] = Field(default_factory=list, sa_type=JSON)

    # vehicle payload
    destination: Optional[str] = None
    driver_id: Optional[int] = Field(
        default=None, foreign_key="drivers.id", index=True, ondelete="SET NULL"
    )
    driver_name: Optional[str] = None

    @property
    def window(self) -> Window:
        return Window(self.start_at, self.end_at)


class Booking(AllocationBase, table=True):
    __tablename__ = "bookings"

    id: Optional[int] = Field(default=None, primary_key=True)
    # YYMMDD-XXXXX, uniqueness enforced by the index
    booking_id: Optional[str] = Field(default=None, index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Request(AllocationBase, table=True):
    __tablename__ = "requests"

    id: Optional[int] = Field(default=None, primary_key=True)
    request_id: Optional[str] = Field(default=None, index=True, unique=True)
    status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)
    letter_file: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    # set once approved
    booking_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class ResourceLock(SQLModel, table=True):
    """One row per asset/driver/item; writers bump `version` to serialize."""

    __tablename__ = "resource_locks"

    key: str = Field(primary_key=True)
    version: int = 0

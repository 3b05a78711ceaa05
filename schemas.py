from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import AllocationKind, AssetKind, RequestStatus
from scheduling import merge_item_lines


class ItemLine(BaseModel):
    asset_code: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class AllocationHeader(BaseModel):
    start_at: datetime
    end_at: datetime
    requester_name: str = Field(min_length=1)
    asset_code: str = Field(min_length=1)
    person_in_charge: str = Field(min_length=1)
    pic_phone: str = Field(min_length=1)
    notes: str = ""


class RoomAllocation(AllocationHeader):
    kind: Literal["room"]
    activity_name: str = ""
    borrowed_items: List[ItemLine] = []

    @field_validator("borrowed_items")
    @classmethod
    def merge_duplicates(cls, lines: List[ItemLine]) -> List[ItemLine]:
        # The engine refuses repeated codes, so they are summed here
        merged = merge_item_lines(line.model_dump() for line in lines)
        return [ItemLine(asset_code=m["asset_code"], quantity=m["quantity"]) for m in merged]


class VehicleAllocation(AllocationHeader):
    kind: Literal["vehicle"]
    destination: str = ""
    driver_id: Optional[int] = None


class RoomRequestCreate(RoomAllocation):
    letter_file: Optional[str] = None


class VehicleRequestCreate(VehicleAllocation):
    letter_file: Optional[str] = None


class ApproveBody(BaseModel):
    approved_by: Optional[str] = None
    driver_id: Optional[int] = None


class RejectBody(BaseModel):
    rejection_reason: str = ""


class AssetCreate(BaseModel):
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    kind: AssetKind
    capacity: int = Field(default=0, ge=0)
    detail: str = ""

    @model_validator(mode="after")
    def items_need_stock(self):
        if self.kind == AssetKind.ITEM and self.capacity < 1:
            raise ValueError("countable items need a capacity of at least 1")
        return self


class AssetUpdate(BaseModel):
    name: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=0)
    detail: Optional[str] = None


class DriverCreate(BaseModel):
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    phone: str = ""
    detail: str = ""


class DriverUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    detail: Optional[str] = None


class BorrowedItemRead(BaseModel):
    asset_code: str
    asset_name: str
    quantity: int


class BookingPublic(BaseModel):
    """Booking as shown to everyone: no names, phone numbers or notes."""

    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    kind: AllocationKind
    start_at: datetime
    end_at: datetime
    asset_code: str
    asset_name: str
    created_at: datetime
    activity_name: Optional[str] = None
    destination: Optional[str] = None
    borrowed_items: List[BorrowedItemRead] = []


class BookingRead(BookingPublic):
    requester_name: str
    person_in_charge: str
    pic_phone: str
    notes: str
    driver_id: Optional[int] = None
    driver_name: Optional[str] = None


class RequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: str
    status: RequestStatus
    kind: AllocationKind
    start_at: datetime
    end_at: datetime
    requester_name: str
    asset_code: str
    asset_name: str
    person_in_charge: str
    pic_phone: str
    notes: str
    activity_name: Optional[str] = None
    borrowed_items: List[BorrowedItemRead] = []
    destination: Optional[str] = None
    driver_id: Optional[int] = None
    driver_name: Optional[str] = None
    letter_file: Optional[str] = None
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    booking_id: Optional[str] = None
    created_at: datetime


class ApprovalResult(BaseModel):
    message: str
    booking: BookingRead
    request: RequestRead


class ItemAvailability(BaseModel):
    asset_code: str
    asset_name: str
    capacity: int
    committed: int
    remaining: int

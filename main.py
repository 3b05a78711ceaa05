import logging
from datetime import datetime
from typing import Annotated, Dict, List, Optional, Union

from fastapi import FastAPI, Body, Depends, HTTPException, Request as HttpRequest, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

import services
from config import LOG_LEVEL
from database import init_db, get_session
from errors import (
    BookingError,
    CapacityError,
    ConflictError,
    NotFoundError,
    RetryableCreationError,
    StateError,
    ValidationError,
)
from models import AllocationKind, Asset, AssetKind, Driver, RequestStatus
from scheduling import Window, to_utc
from schemas import (
    ApprovalResult,
    ApproveBody,
    AssetCreate,
    AssetUpdate,
    BookingPublic,
    BookingRead,
    DriverCreate,
    DriverUpdate,
    ItemAvailability,
    RejectBody,
    RoomAllocation,
    RoomRequestCreate,
    VehicleAllocation,
    VehicleRequestCreate,
    RequestRead,
)

logging.basicConfig(
    level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# Room and vehicle bodies are told apart by their "kind"
Allocation = Annotated[Union[RoomAllocation, VehicleAllocation], Body(discriminator="kind")]
RequestCreate = Annotated[
    Union[RoomRequestCreate, VehicleRequestCreate], Body(discriminator="kind")
]

app = FastAPI(title="Shared Resource Booking System")

# Engine errors -> HTTP status
ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    CapacityError: status.HTTP_409_CONFLICT,
    StateError: status.HTTP_409_CONFLICT,
    RetryableCreationError: status.HTTP_409_CONFLICT,
}


@app.exception_handler(BookingError)
async def booking_error_handler(request: HttpRequest, exc: BookingError):
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    body = {"detail": exc.message, "error": type(exc).__name__}
    headers = None
    if isinstance(exc, CapacityError):
        body["remaining"] = exc.remaining
    if isinstance(exc, RetryableCreationError):
        headers = {"Retry-After": "1"}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.on_event("startup")
async def on_startup():
    await init_db()


def query_window(start: datetime, end: datetime) -> Window:
    return Window(to_utc(start), to_utc(end))


# --- Assets ---

@app.get("/assets", response_model=Dict[str, List[Asset]])
async def list_assets(session: AsyncSession = Depends(get_session)):
    result = await session.execute(select(Asset).order_by(Asset.code))
    grouped = {kind.value: [] for kind in AssetKind}
    for asset in result.scalars().all():
        grouped[asset.kind.value].append(asset)
    return grouped


@app.get("/assets/{code}", response_model=Asset)
async def read_asset(code: str, session: AsyncSession = Depends(get_session)):
    return await services.get_asset(session, code)


@app.post("/assets", response_model=Asset, status_code=status.HTTP_201_CREATED)
async def create_asset(data: AssetCreate, session: AsyncSession = Depends(get_session)):
    asset = Asset(**data.model_dump())
    try:
        session.add(asset)
        await session.commit()
        await session.refresh(asset)
    except IntegrityError:
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f'Asset code "{data.code}" is already in use.',
        )
    logger.info("Asset %s created", asset.code)
    return asset


@app.put("/assets/{code}", response_model=Asset)
async def update_asset(code: str, data: AssetUpdate, session: AsyncSession = Depends(get_session)):
    asset = await services.get_asset(session, code)
    for name, value in data.model_dump(exclude_unset=True).items():
        setattr(asset, name, value)
    if asset.kind == AssetKind.ITEM and asset.capacity < 1:
        raise ValidationError("Countable items need a capacity of at least 1.")
    session.add(asset)
    await session.commit()
    await session.refresh(asset)
    return asset


@app.delete("/assets/{code}")
async def delete_asset(code: str, session: AsyncSession = Depends(get_session)):
    asset = await services.get_asset(session, code)
    await session.delete(asset)
    await session.commit()
    logger.info("Asset %s deleted", code)
    return {"message": "Asset deleted"}


# --- Drivers ---

@app.get("/drivers", response_model=List[Driver])
async def list_drivers(session: AsyncSession = Depends(get_session)):
    result = await session.execute(select(Driver).order_by(Driver.code))
    return result.scalars().all()


@app.post("/drivers", response_model=Driver, status_code=status.HTTP_201_CREATED)
async def create_driver(data: DriverCreate, session: AsyncSession = Depends(get_session)):
    driver = Driver(**data.model_dump())
    try:
        session.add(driver)
        await session.commit()
        await session.refresh(driver)
    except IntegrityError:
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f'Driver code "{data.code}" is already in use.',
        )
    return driver


@app.put("/drivers/{driver_id}", response_model=Driver)
async def update_driver(driver_id: int, data: DriverUpdate, session: AsyncSession = Depends(get_session)):
    driver = await services.get_driver(session, driver_id)
    for name, value in data.model_dump(exclude_unset=True).items():
        setattr(driver, name, value)
    try:
        session.add(driver)
        await session.commit()
        await session.refresh(driver)
    except IntegrityError:
        await session.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f'Driver code "{data.code}" is already in use.',
        )
    return driver


@app.delete("/drivers/{driver_id}")
async def delete_driver(driver_id: int, session: AsyncSession = Depends(get_session)):
    driver = await services.get_driver(session, driver_id)
    await session.delete(driver)
    await session.commit()
    return {"message": "Driver deleted"}


# --- Bookings ---

@app.get("/bookings", response_model=List[BookingPublic])
async def list_bookings(
    kind: Optional[AllocationKind] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    if (start is None) != (end is None):
        raise ValidationError("Filter by window needs both start and end.")
    window = query_window(start, end) if start is not None else None
    return await services.list_bookings(session, kind=kind, window=window)


@app.get("/bookings/{booking_id}", response_model=BookingPublic)
async def read_booking(booking_id: str, session: AsyncSession = Depends(get_session)):
    return await services.get_booking(session, booking_id)


@app.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_booking(allocation: Allocation, session: AsyncSession = Depends(get_session)):
    return await services.check_and_create_booking(session, allocation)


@app.put("/bookings/{booking_id}", response_model=BookingRead)
async def update_booking(
    booking_id: str, allocation: Allocation, session: AsyncSession = Depends(get_session)
):
    return await services.update_booking(session, booking_id, allocation)


@app.delete("/bookings/{booking_id}")
async def delete_booking(booking_id: str, session: AsyncSession = Depends(get_session)):
    await services.delete_booking(session, booking_id)
    return {"message": "Booking deleted"}


# --- Requests ---

@app.get("/requests", response_model=List[RequestRead])
async def list_requests(
    status: Optional[RequestStatus] = None, session: AsyncSession = Depends(get_session)
):
    return await services.list_requests(session, status)


@app.get("/requests/code/{code}", response_model=RequestRead)
async def read_request_by_code(code: str, session: AsyncSession = Depends(get_session)):
    return await services.get_request(session, code)


@app.get("/requests/{request_id}", response_model=RequestRead)
async def read_request(request_id: int, session: AsyncSession = Depends(get_session)):
    return await services.get_request(session, request_id)


@app.post("/requests", response_model=RequestRead, status_code=status.HTTP_201_CREATED)
async def submit_request(submission: RequestCreate, session: AsyncSession = Depends(get_session)):
    return await services.submit_request(session, submission)


@app.post("/requests/{request_id}/approve", response_model=ApprovalResult)
async def approve_request(
    request_id: int, body: ApproveBody, session: AsyncSession = Depends(get_session)
):
    booking = await services.approve_request(
        session, request_id, approved_by=body.approved_by, driver_id=body.driver_id
    )
    request = await services.get_request(session, request_id)
    return ApprovalResult(
        message="Request approved and booking created.",
        booking=BookingRead.model_validate(booking),
        request=RequestRead.model_validate(request),
    )


@app.post("/requests/{request_id}/reject", response_model=RequestRead)
async def reject_request(
    request_id: int, body: RejectBody, session: AsyncSession = Depends(get_session)
):
    return await services.reject_request(session, request_id, body.rejection_reason)


@app.delete("/requests/{request_id}")
async def delete_request(request_id: int, session: AsyncSession = Depends(get_session)):
    await services.delete_request(session, request_id)
    return {"message": "Request deleted"}


# --- Availability ---

@app.get("/availability/items", response_model=List[ItemAvailability])
async def item_availability(start: datetime, end: datetime, session: AsyncSession = Depends(get_session)):
    return await services.compute_item_availability(session, query_window(start, end))


@app.get("/availability/assets", response_model=List[Asset])
async def available_assets(
    kind: AssetKind, start: datetime, end: datetime, session: AsyncSession = Depends(get_session)
):
    return await services.free_assets(session, query_window(start, end), kind)


@app.get("/availability/drivers", response_model=List[Driver])
async def available_drivers(start: datetime, end: datetime, session: AsyncSession = Depends(get_session)):
    return await services.free_drivers(session, query_window(start, end))


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # local front ends only; restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

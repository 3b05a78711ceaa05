"""
Booking and request workflows.

Every write runs as one transaction: validate the proposal, take row locks
on the affected resources, run the conflict and capacity checks against the
confirmed bookings, then insert. Reads are plain selects.
"""
import logging
from contextlib import asynccontextmanager
from typing import Iterable, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from config import (
    BOOKING_TIMEZONE,
    BUSINESS_HOURS_END,
    BUSINESS_HOURS_START,
    ID_MAX_ATTEMPTS,
)
from errors import (
    CapacityError,
    ConflictError,
    ItemUnavailableError,
    NotFoundError,
    RetryableCreationError,
    StateError,
    ValidationError,
)
from identifiers import new_booking_id, new_request_id
from models import (
    AllocationKind,
    Asset,
    AssetKind,
    Booking,
    Driver,
    Request,
    RequestStatus,
    ResourceLock,
    utcnow,
)
from scheduling import (
    BusinessHours,
    Window,
    check_item_capacity,
    find_conflict,
    item_availability,
    to_utc,
    validate_business_hours,
    validate_item_lines,
)

logger = logging.getLogger(__name__)

DEFAULT_HOURS = BusinessHours.from_config(
    BOOKING_TIMEZONE, BUSINESS_HOURS_START, BUSINESS_HOURS_END
)

# Fields copied verbatim from a request into the booking it produces
ALLOCATION_FIELDS = (
    "kind", "start_at", "end_at", "requester_name", "asset_code", "asset_name",
    "person_in_charge", "pic_phone", "notes", "activity_name", "destination",
    "driver_id", "driver_name",
)

RequestKey = Union[int, str]


@asynccontextmanager
async def writing(session: AsyncSession):
    """Commit on success, roll back on any failure."""
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise


# --- Lookups ---

async def get_asset(session: AsyncSession, code: str) -> Asset:
    result = await session.execute(select(Asset).where(Asset.code == code))
    asset = result.scalars().first()
    if asset is None:
        raise NotFoundError(f'Asset "{code}" not found.')
    return asset


async def get_driver(session: AsyncSession, driver_id: int) -> Driver:
    driver = await session.get(Driver, driver_id)
    if driver is None:
        raise NotFoundError(f"Driver {driver_id} not found.")
    return driver


async def items_by_code(session: AsyncSession, codes: Iterable[str]) -> dict:
    codes = list(codes)
    if not codes:
        return {}
    statement = select(Asset).where(Asset.code.in_(codes), Asset.kind == AssetKind.ITEM)
    result = await session.execute(statement)
    return {a.code: a for a in result.scalars().all()}


async def overlapping_bookings(
    session: AsyncSession,
    window: Window,
    exclude: Optional[str] = None,
    kind: Optional[AllocationKind] = None,
) -> List[Booking]:
    """Confirmed bookings whose window overlaps ``window``."""
    statement = select(Booking).where(
        Booking.start_at < window.end, Booking.end_at > window.start
    )
    if exclude is not None:
        statement = statement.where(Booking.booking_id != exclude)
    if kind is not None:
        statement = statement.where(Booking.kind == kind)
    result = await session.execute(statement)
    return list(result.scalars().all())


# --- Write helpers ---

def lock_keys(asset_code: str, driver_id: Optional[int], items: Iterable[dict]) -> List[str]:
    keys = {f"asset:{asset_code}"}
    if driver_id is not None:
        keys.add(f"driver:{driver_id}")
    keys.update(f"item:{line['asset_code']}" for line in items)
    # Sorted so that concurrent writers always lock in the same order
    return sorted(keys)


async def acquire_locks(session: AsyncSession, keys: Iterable[str]) -> None:
    for key in keys:
        bump = (
            update(ResourceLock)
            .where(ResourceLock.key == key)
            .values(version=ResourceLock.version + 1)
        )
        result = await session.execute(bump)
        if not result.rowcount:
            try:
                async with session.begin_nested():
                    session.add(ResourceLock(key=key, version=1))
            except IntegrityError:
                # Created by a concurrent writer in the meantime
                await session.execute(bump)
        logger.debug("Locked %s", key)


async def insert_with_code(session: AsyncSession, entity, field: str, generate) -> None:
    """
    Insert ``entity``, regenerating its code while it collides.

    A code the entity already carries is kept as is; if that one collides
    the insert fails instead of silently picking another.
    """
    for attempt in range(1, ID_MAX_ATTEMPTS + 1):
        generated = not getattr(entity, field)
        if generated:
            setattr(entity, field, generate())
        try:
            async with session.begin_nested():
                session.add(entity)
            return
        except IntegrityError:
            logger.warning(
                "%s %s already taken (attempt %s/%s)",
                field, getattr(entity, field), attempt, ID_MAX_ATTEMPTS,
            )
            if not generated:
                raise RetryableCreationError(
                    f"{field} {getattr(entity, field)} is already in use."
                )
            setattr(entity, field, None)
    raise RetryableCreationError(f"Could not allocate a unique {field}, please retry.")


def booking_code(created_at, hours: BusinessHours = DEFAULT_HOURS) -> str:
    # Dated in the reference timezone, not UTC
    return new_booking_id(hours.local_date(created_at))


async def prepare_allocation(
    session: AsyncSession, allocation, hours: BusinessHours = DEFAULT_HOURS
) -> dict:
    """Validate a room/vehicle proposal and resolve catalog snapshots."""
    window = Window(to_utc(allocation.start_at), to_utc(allocation.end_at))

    asset = await get_asset(session, allocation.asset_code)
    if asset.kind.value != allocation.kind:
        raise ValidationError(
            f'Asset "{asset.code}" is a {asset.kind.value}, not a {allocation.kind}.'
        )

    fields = dict(
        kind=AllocationKind(allocation.kind),
        start_at=window.start,
        end_at=window.end,
        requester_name=allocation.requester_name,
        asset_code=asset.code,
        asset_name=asset.name,
        person_in_charge=allocation.person_in_charge,
        pic_phone=allocation.pic_phone,
        notes=allocation.notes,
    )

    if allocation.kind == AllocationKind.ROOM:
        validate_business_hours(window, hours)
        lines = [line.model_dump() for line in allocation.borrowed_items]
        validate_item_lines(lines)
        catalog = await items_by_code(session, [line["asset_code"] for line in lines])
        for line in lines:
            if line["asset_code"] not in catalog:
                raise ItemUnavailableError(line["asset_code"])
            line["asset_name"] = catalog[line["asset_code"]].name
        fields.update(activity_name=allocation.activity_name, borrowed_items=lines)
    else:
        fields.update(destination=allocation.destination, borrowed_items=[])
        if allocation.driver_id is not None:
            driver = await get_driver(session, allocation.driver_id)
            fields.update(driver_id=driver.id, driver_name=driver.name)

    return fields


async def ensure_bookable(
    session: AsyncSession,
    window: Window,
    kind: AllocationKind,
    asset_code: str,
    driver_id: Optional[int],
    items: List[dict],
    exclude: Optional[str] = None,
) -> None:
    """Raise ConflictError, CapacityError or ItemUnavailableError, else return."""
    bookings = await overlapping_bookings(session, window, exclude)

    conflict = find_conflict(window, kind, asset_code, bookings, driver_id, exclude)
    if conflict is not None:
        raise ConflictError(conflict.message, conflict.resource)

    if kind == AllocationKind.ROOM and items:
        catalog = await items_by_code(session, [line["asset_code"] for line in items])
        check_item_capacity(window, items, bookings, catalog, exclude)


# --- Bookings ---

async def check_and_create_booking(
    session: AsyncSession, allocation, hours: BusinessHours = DEFAULT_HOURS
) -> Booking:
    async with writing(session):
        fields = await prepare_allocation(session, allocation, hours)
        items = fields["borrowed_items"]
        await acquire_locks(
            session, lock_keys(fields["asset_code"], fields.get("driver_id"), items)
        )
        await ensure_bookable(
            session,
            Window(fields["start_at"], fields["end_at"]),
            fields["kind"],
            fields["asset_code"],
            fields.get("driver_id"),
            items,
        )

        booking = Booking(**fields)
        await insert_with_code(
            session, booking, "booking_id", lambda: booking_code(booking.created_at)
        )

    logger.info("Booking %s created for %s", booking.booking_id, booking.asset_code)
    return booking


async def get_booking(session: AsyncSession, booking_id: str) -> Booking:
    code = (booking_id or "").strip().upper()
    if not code:
        raise ValidationError("Booking id must not be empty.")
    statement = select(Booking).where(func.upper(Booking.booking_id) == code)
    result = await session.execute(statement)
    booking = result.scalars().first()
    if booking is None:
        raise NotFoundError(f'Booking "{booking_id}" not found.')
    return booking


async def list_bookings(
    session: AsyncSession,
    kind: Optional[AllocationKind] = None,
    window: Optional[Window] = None,
) -> List[Booking]:
    if window is not None:
        bookings = await overlapping_bookings(session, window, kind=kind)
    else:
        statement = select(Booking)
        if kind is not None:
            statement = statement.where(Booking.kind == kind)
        result = await session.execute(statement)
        bookings = list(result.scalars().all())
    return sorted(bookings, key=lambda b: (b.start_at, b.asset_code))


async def update_booking(
    session: AsyncSession, booking_id: str, allocation, hours: BusinessHours = DEFAULT_HOURS
) -> Booking:
    """Reschedule or edit a booking; it never conflicts with itself."""
    async with writing(session):
        booking = await get_booking(session, booking_id)
        fields = await prepare_allocation(session, allocation, hours)
        items = fields["borrowed_items"]
        await acquire_locks(
            session, lock_keys(fields["asset_code"], fields.get("driver_id"), items)
        )
        await ensure_bookable(
            session,
            Window(fields["start_at"], fields["end_at"]),
            fields["kind"],
            fields["asset_code"],
            fields.get("driver_id"),
            items,
            exclude=booking.booking_id,
        )

        # Switching kind clears the other kind's payload
        fields.setdefault("activity_name", None)
        fields.setdefault("destination", None)
        fields.setdefault("driver_id", None)
        fields.setdefault("driver_name", None)
        for name, value in fields.items():
            setattr(booking, name, value)
        session.add(booking)

    logger.info("Booking %s updated", booking.booking_id)
    return booking


async def delete_booking(session: AsyncSession, booking_id: str) -> None:
    async with writing(session):
        booking = await get_booking(session, booking_id)
        await session.delete(booking)
    logger.info("Booking %s deleted", booking.booking_id)


# --- Requests ---

def _request_filter(key: RequestKey):
    if isinstance(key, int):
        return Request.id == key
    return Request.request_id == key


async def get_request(session: AsyncSession, key: RequestKey, for_update: bool = False) -> Request:
    statement = select(Request).where(_request_filter(key))
    if for_update:
        statement = statement.with_for_update()
    result = await session.execute(statement)
    request = result.scalars().first()
    if request is None:
        raise NotFoundError(f'Request "{key}" not found.')
    return request


async def list_requests(
    session: AsyncSession, status: Optional[RequestStatus] = None
) -> List[Request]:
    statement = select(Request).order_by(Request.created_at.desc(), Request.id.desc())
    if status is not None:
        statement = statement.where(Request.status == status)
    result = await session.execute(statement)
    return list(result.scalars().all())


async def submit_request(
    session: AsyncSession, submission, hours: BusinessHours = DEFAULT_HOURS
) -> Request:
    """Store a pending request; conflicts are only checked on approval."""
    async with writing(session):
        fields = await prepare_allocation(session, submission, hours)
        request = Request(
            **fields,
            status=RequestStatus.PENDING,
            letter_file=getattr(submission, "letter_file", None),
        )
        await insert_with_code(session, request, "request_id", new_request_id)

    logger.info("Request %s submitted for %s", request.request_id, request.asset_code)
    return request


async def approve_request(
    session: AsyncSession,
    key: RequestKey,
    approved_by: Optional[str] = None,
    driver_id: Optional[int] = None,
) -> Booking:
    """
    Turn a pending request into a confirmed booking.

    A vehicle request's driver may be replaced by ``driver_id`` first. If any
    check fails the whole transaction is rolled back and the request stays
    pending.
    """
    try:
        async with writing(session):
            request = await get_request(session, key, for_update=True)
            if request.status != RequestStatus.PENDING:
                raise StateError(
                    f"Request {request.request_id} is {request.status.value}; only pending requests can be approved."
                )

            if request.kind == AllocationKind.VEHICLE and driver_id is not None:
                driver = await get_driver(session, driver_id)
                request.driver_id = driver.id
                request.driver_name = driver.name

            items = list(request.borrowed_items or [])
            await acquire_locks(session, lock_keys(request.asset_code, request.driver_id, items))
            await ensure_bookable(
                session, request.window, request.kind, request.asset_code,
                request.driver_id, items,
            )

            booking = Booking(
                **{name: getattr(request, name) for name in ALLOCATION_FIELDS},
                borrowed_items=[dict(line) for line in items],
            )
            await insert_with_code(
                session, booking, "booking_id", lambda: booking_code(booking.created_at)
            )

            request.status = RequestStatus.APPROVED
            request.approved_by = approved_by or "admin"
            request.approved_at = utcnow()
            request.booking_id = booking.booking_id
            request.updated_at = utcnow()
            session.add(request)
    except (CapacityError, ConflictError, ValidationError) as exc:
        logger.warning("Approval of request %s refused: %s", key, exc.message)
        raise

    logger.info("Request %s approved as booking %s", request.request_id, booking.booking_id)
    return booking


async def reject_request(session: AsyncSession, key: RequestKey, reason: str = "") -> Request:
    async with writing(session):
        request = await get_request(session, key, for_update=True)
        if request.status != RequestStatus.PENDING:
            raise StateError(
                f"Request {request.request_id} is {request.status.value}; only pending requests can be rejected."
            )
        request.status = RequestStatus.REJECTED
        request.rejection_reason = reason or ""
        request.updated_at = utcnow()
        session.add(request)

    logger.info("Request %s rejected", request.request_id)
    return request


async def delete_request(session: AsyncSession, key: RequestKey) -> None:
    async with writing(session):
        request = await get_request(session, key)
        await session.delete(request)
    logger.info("Request %s deleted", request.request_id)


# --- Availability for display ---

async def compute_item_availability(session: AsyncSession, window: Window) -> List[dict]:
    result = await session.execute(
        select(Asset).where(Asset.kind == AssetKind.ITEM).order_by(Asset.code)
    )
    items = result.scalars().all()
    bookings = await overlapping_bookings(session, window, kind=AllocationKind.ROOM)
    return item_availability(window, bookings, items)


async def free_assets(session: AsyncSession, window: Window, kind: AssetKind) -> List[Asset]:
    if kind == AssetKind.ITEM:
        raise ValidationError("Countable items have stock, not a free/busy state.")
    result = await session.execute(
        select(Asset).where(Asset.kind == kind).order_by(Asset.code)
    )
    taken = {b.asset_code for b in await overlapping_bookings(session, window)}
    return [a for a in result.scalars().all() if a.code not in taken]


async def free_drivers(session: AsyncSession, window: Window) -> List[Driver]:
    result = await session.execute(select(Driver).order_by(Driver.code))
    bookings = await overlapping_bookings(session, window, kind=AllocationKind.VEHICLE)
    taken = {b.driver_id for b in bookings if b.driver_id is not None}
    return [d for d in result.scalars().all() if d.id not in taken]

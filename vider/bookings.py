"""Booking requests between companies and their status lifecycle.

Status transitions::

    PENDING  -> ACCEPTED | REJECTED   (provider)
    PENDING  -> CANCELLED             (either party)
    ACCEPTED -> COMPLETED | CANCELLED (either party)

REJECTED, CANCELLED and COMPLETED are terminal. A platform admin may perform
any allowed transition. Accepting flips the booked vehicle or shipment to
BOOKED and leaving ACCEPTED flips it back to AVAILABLE, in the same database
transaction as the booking update.
"""
import math
import logging
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union

from sqlmodel import Session, or_, select

from . import platform_config
from .errors import ForbiddenError, InvalidRequestError, NotFoundError
from .models import (
    Booking,
    BookingStatus,
    PlatformConfig,
    ResourceStatus,
    Role,
    Shipment,
    User,
    Vehicle,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.ACCEPTED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
    ),
    BookingStatus.ACCEPTED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}

# answers to a pending request that only the provider may give
PROVIDER_DECISIONS = frozenset({BookingStatus.ACCEPTED, BookingStatus.REJECTED})

Resource = Union[Vehicle, Shipment]


def _is_admin(user: User) -> bool:
    return user.role == Role.PLATFORM_ADMIN


def _booking_number(now: datetime) -> str:
    return f"BK-{int(now.timestamp() * 1000)}-{secrets.token_hex(3).upper()}"


def _check_window(start: datetime, end: Optional[datetime]) -> None:
    if end is not None and end < start:
        raise InvalidRequestError("INVALID_DATE_RANGE", "end_date must not be before start_date")


def calculate_costs(base_amount: float, config: PlatformConfig) -> Dict:
    """Commission is charged on the provider rate (less any platform fee
    discount); tax is charged on provider rate + commission."""
    if base_amount < 0:
        raise InvalidRequestError("INVALID_AMOUNT", "Amount must not be negative")
    discount = 1 - config.platform_fee_discount_rate / 100
    commission = base_amount * (config.commission_rate / 100) * discount
    taxes = (base_amount + commission) * (config.tax_rate / 100)
    return {
        "provider_rate": round(base_amount, 2),
        "platform_commission": round(commission, 2),
        "platform_commission_rate": config.commission_rate,
        "platform_fee_discount_rate": config.platform_fee_discount_rate,
        "taxes": round(taxes, 2),
        "tax_rate": config.tax_rate,
        "total": round(base_amount + commission + taxes, 2),
        "currency": config.default_currency,
    }


def _load_resource(
    session: Session,
    vehicle_id: Optional[int],
    shipment_id: Optional[int],
    lock: bool = False,
) -> Resource:
    if vehicle_id is not None:
        query = select(Vehicle).where(Vehicle.id == vehicle_id)
        missing = ("VEHICLE_NOT_FOUND", "Vehicle not found")
    else:
        query = select(Shipment).where(Shipment.id == shipment_id)
        missing = ("SHIPMENT_NOT_FOUND", "Shipment not found")
    if lock:
        query = query.with_for_update()
    resource = session.exec(query).one_or_none()
    if resource is None:
        raise NotFoundError(*missing)
    return resource


def _pricing(resource: Resource, start: datetime, end: Optional[datetime]) -> Tuple[Optional[float], Optional[str]]:
    """Amount derived from the resource's rates and the basis it was priced on
    (``"budget"``, ``"daily"`` or ``"hourly"``)."""
    if isinstance(resource, Shipment):
        return resource.budget, "budget"
    span = (end - start) if end is not None else timedelta(days=1)
    if resource.daily_rate is not None:
        days = max(1, math.ceil(span / timedelta(days=1)))
        return resource.daily_rate * days, "daily"
    if resource.hourly_rate is not None:
        if end is None:
            return None, "hourly"
        hours = max(1, math.ceil(span / timedelta(hours=1)))
        return resource.hourly_rate * hours, "hourly"
    return None, None


def _check_hourly_allowed(config: PlatformConfig, basis: Optional[str]) -> None:
    if basis == "hourly" and not config.hourly_bookings:
        raise InvalidRequestError("HOURLY_BOOKINGS_DISABLED", "Hourly bookings are currently disabled")


def create(
    session: Session,
    requester_id: int,
    provider_id: int,
    start_date: datetime,
    end_date: Optional[datetime] = None,
    vehicle_id: Optional[int] = None,
    shipment_id: Optional[int] = None,
    total_amount: Optional[float] = None,
    pickup_region: Optional[str] = None,
    payment_method: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    now = as_utc(now) or utcnow()
    start_date, end_date = as_utc(start_date), as_utc(end_date)

    if (vehicle_id is None) == (shipment_id is None):
        raise InvalidRequestError("RESOURCE_REQUIRED", "Exactly one of vehicle_id or shipment_id is required")
    if requester_id == provider_id:
        raise InvalidRequestError("SELF_BOOKING_NOT_ALLOWED", "Cannot book your own company's resources")
    _check_window(start_date, end_date)

    config = platform_config.get_active(session)
    if config.maintenance_mode:
        raise ForbiddenError("MAINTENANCE_MODE", "The platform is in maintenance mode")

    resource = _load_resource(session, vehicle_id, shipment_id)
    if resource.company_id != provider_id:
        raise InvalidRequestError("PROVIDER_MISMATCH", "Resource does not belong to the provider company")
    if resource.status != ResourceStatus.AVAILABLE:
        raise InvalidRequestError("RESOURCE_UNAVAILABLE", "Resource is already booked")

    region = pickup_region or getattr(resource, "region", None)
    if platform_config.is_region_blocked(session, region):
        raise ForbiddenError("BOOKING_BLOCKED_IN_REGION", f"Bookings are blocked in {region}")

    derived, basis = _pricing(resource, start_date, end_date)
    _check_hourly_allowed(config, basis)
    if total_amount is None:
        total_amount = derived
    if total_amount is None:
        raise InvalidRequestError("AMOUNT_REQUIRED", "total_amount is required for resources without a rate")
    if total_amount < 0:
        raise InvalidRequestError("INVALID_AMOUNT", "Amount must not be negative")
    platform_config.check_payment_method(session, payment_method, total_amount)

    booking = Booking(
        booking_number=_booking_number(now),
        requester_id=requester_id,
        provider_id=provider_id,
        vehicle_id=vehicle_id,
        shipment_id=shipment_id,
        start_date=start_date,
        end_date=end_date,
        total_amount=round(total_amount, 2),
        currency=config.default_currency,
        commission_rate=config.commission_rate,
        tax_rate=config.tax_rate,
        pickup_region=region,
        payment_method=payment_method,
        notes=notes,
        status=BookingStatus.PENDING,
        expires_at=now + timedelta(hours=config.booking_timeout_hours),
        created_at=now,
        updated_at=now,
    )
    session.add(booking)
    session.commit()
    session.refresh(booking)
    logger.info(
        "Booking %s requested by company %s from company %s",
        booking.id, requester_id, provider_id,
    )
    return booking


def list_mine(session: Session, company_id: Optional[int], everything: bool = False) -> List[Booking]:
    query = select(Booking)
    if not everything:
        if company_id is None:
            return []
        query = query.where(or_(Booking.requester_id == company_id, Booking.provider_id == company_id))
    return session.exec(query.order_by(Booking.created_at.desc(), Booking.id.desc())).all()


def _party_check(booking: Booking, actor: User) -> None:
    if _is_admin(actor):
        return
    if actor.company_id not in (booking.requester_id, booking.provider_id):
        raise ForbiddenError("NOT_BOOKING_PARTY", "You are not a party to this booking")


def get(session: Session, booking_id: int, actor: User) -> Booking:
    booking = session.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("BOOKING_NOT_FOUND", "Booking not found")
    _party_check(booking, actor)
    return booking


def _set_resource_status(
    session: Session,
    booking: Booking,
    status: ResourceStatus,
    expected: Optional[ResourceStatus] = None,
) -> Resource:
    # the status check reads the locked row so concurrent accepts serialize here
    resource = _load_resource(session, booking.vehicle_id, booking.shipment_id, lock=True)
    if expected is not None and resource.status != expected:
        raise InvalidRequestError("RESOURCE_UNAVAILABLE", "Resource is already booked")
    resource.status = status
    session.add(resource)
    return resource


def update_status(
    session: Session,
    booking_id: int,
    actor: User,
    new_status: BookingStatus,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> Booking:
    now = as_utc(now) or utcnow()
    new_status = BookingStatus(new_status)

    booking = session.exec(
        select(Booking).where(Booking.id == booking_id).with_for_update()
    ).one_or_none()
    if not booking:
        raise NotFoundError("BOOKING_NOT_FOUND", "Booking not found")
    _party_check(booking, actor)

    previous = BookingStatus(booking.status)
    if new_status not in ALLOWED_TRANSITIONS[previous]:
        raise InvalidRequestError(
            "INVALID_STATUS_TRANSITION",
            f"Cannot change booking status from {previous.value} to {new_status.value}",
        )
    if (
        previous == BookingStatus.PENDING
        and new_status in PROVIDER_DECISIONS
        and not _is_admin(actor)
        and actor.company_id != booking.provider_id
    ):
        raise ForbiddenError("ONLY_PROVIDER_CAN_RESPOND", "Only the provider company can accept or reject")
    if new_status == BookingStatus.ACCEPTED and booking.expires_at is not None and now > booking.expires_at:
        raise InvalidRequestError("BOOKING_EXPIRED", "Booking request has expired")

    try:
        booking.status = new_status
        booking.updated_at = now
        if previous == BookingStatus.PENDING:
            booking.responded_at = now
        if new_status in (BookingStatus.REJECTED, BookingStatus.CANCELLED) and reason:
            booking.status_reason = reason.strip()
        session.add(booking)

        if new_status == BookingStatus.ACCEPTED:
            _set_resource_status(
                session, booking, ResourceStatus.BOOKED, expected=ResourceStatus.AVAILABLE
            )
        elif previous == BookingStatus.ACCEPTED:
            _set_resource_status(session, booking, ResourceStatus.AVAILABLE)

        session.commit()
    except Exception:
        session.rollback()
        raise

    session.refresh(booking)
    logger.info(
        "Booking %s moved %s -> %s by user %s",
        booking.id, previous.value, new_status.value, actor.id,
    )
    return booking


def cancel(session: Session, booking_id: int, actor: User, reason: Optional[str] = None) -> Booking:
    return update_status(session, booking_id, actor, BookingStatus.CANCELLED, reason=reason)


def update_details(session: Session, booking_id: int, actor: User, changes: Dict) -> Booking:
    """Requester edits a booking that the provider has not answered yet.

    ``changes`` may hold ``start_date``, ``end_date``, ``total_amount`` and
    ``notes``. Moving the window without sending an amount re-prices the
    booking from the resource's rates.
    """
    booking = get(session, booking_id, actor)
    if not _is_admin(actor) and actor.company_id != booking.requester_id:
        raise ForbiddenError("ONLY_REQUESTER_CAN_EDIT", "Only the requesting company can edit the booking")
    if booking.status != BookingStatus.PENDING:
        raise InvalidRequestError("INVALID_BOOKING_STATUS", "Only pending bookings can be edited")

    # start_date and total_amount are required columns; null means "keep"
    changes = {
        k: v for k, v in changes.items()
        if not (k in ("start_date", "total_amount") and v is None)
    }
    for key in ("start_date", "end_date"):
        if key in changes:
            changes[key] = as_utc(changes[key])
    start = changes.get("start_date", booking.start_date)
    end = changes.get("end_date", booking.end_date)
    _check_window(start, end)

    window_moved = start != booking.start_date or end != booking.end_date
    if window_moved and "total_amount" not in changes:
        resource = _load_resource(session, booking.vehicle_id, booking.shipment_id)
        derived, basis = _pricing(resource, start, end)
        _check_hourly_allowed(platform_config.get_active(session), basis)
        if derived is not None:
            changes["total_amount"] = round(derived, 2)
    if changes.get("total_amount", 0) < 0:
        raise InvalidRequestError("INVALID_AMOUNT", "Amount must not be negative")
    if "total_amount" in changes:
        platform_config.check_payment_method(session, booking.payment_method, changes["total_amount"])

    for k, v in changes.items():
        setattr(booking, k, v)
    booking.updated_at = utcnow()
    session.add(booking)
    session.commit()
    session.refresh(booking)
    return booking


def expire_stale(session: Session, now: Optional[datetime] = None) -> int:
    """Cancel pending requests the provider did not answer before ``expires_at``."""
    now = as_utc(now) or utcnow()
    stale = session.exec(
        select(Booking).where(
            (Booking.status == BookingStatus.PENDING)
            & (Booking.expires_at != None)  # noqa: E711
            & (Booking.expires_at < now)
        )
    ).all()
    for booking in stale:
        booking.status = BookingStatus.CANCELLED
        booking.status_reason = "Expired without a response from the provider"
        booking.updated_at = now
        session.add(booking)
    session.commit()
    logger.info("Expired %d stale booking request(s)", len(stale))
    return len(stale)

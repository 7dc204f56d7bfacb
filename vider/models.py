from enum import Enum
from typing import Optional
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, JSON
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, UniqueConstraint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC copy of ``value``; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCTimestamp(TypeDecorator):
    """Stored as plain UTC timestamps, always handed back timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    COMPANY_ADMIN = "COMPANY_ADMIN"
    COMPANY_USER = "COMPANY_USER"


class ResourceStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REJECTED}
)


class ChangeType(str, Enum):
    FEATURE_TOGGLE = "FEATURE_TOGGLE"
    FINANCIAL_UPDATE = "FINANCIAL_UPDATE"
    GEOGRAPHIC_RESTRICTION = "GEOGRAPHIC_RESTRICTION"
    PAYMENT_CONFIG = "PAYMENT_CONFIG"
    SYSTEM_SETTING = "SYSTEM_SETTING"
    ROLLBACK = "ROLLBACK"


class RestrictionType(str, Enum):
    BOOKING_BLOCKED = "BOOKING_BLOCKED"
    LISTING_BLOCKED = "LISTING_BLOCKED"


# ------------------------------------------------------------------
# Tenants
# ------------------------------------------------------------------
class Company(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("organization_number"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    organization_number: str
    region: Optional[str] = None
    description: Optional[str] = None
    aggregated_rating: Optional[float] = None
    total_ratings: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class User(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("email"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str
    role: Role = Role.COMPANY_USER
    company_id: Optional[int] = Field(default=None, foreign_key="company.id", index=True)
    phone: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


# ------------------------------------------------------------------
# Bookable resources
# ------------------------------------------------------------------
class Vehicle(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("company_id", "registration_number"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(foreign_key="company.id", index=True)
    make: str
    model: str
    registration_number: str
    vehicle_type: str = "OTHER"
    capacity_pallets: Optional[int] = None
    daily_rate: Optional[float] = None
    hourly_rate: Optional[float] = None
    currency: str = "NOK"
    region: Optional[str] = None
    status: ResourceStatus = Field(default=ResourceStatus.AVAILABLE, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class Shipment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(foreign_key="company.id", index=True)
    title: str
    description: Optional[str] = None
    origin: str
    destination: str
    weight_kg: Optional[float] = None
    budget: Optional[float] = None
    currency: str = "NOK"
    pickup_date: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    status: ResourceStatus = Field(default=ResourceStatus.AVAILABLE, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


# ------------------------------------------------------------------
# Bookings & reviews
# ------------------------------------------------------------------
class Booking(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("booking_number"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_number: str
    requester_id: int = Field(foreign_key="company.id", index=True)
    provider_id: int = Field(foreign_key="company.id", index=True)
    vehicle_id: Optional[int] = Field(default=None, foreign_key="vehicle.id", index=True)
    shipment_id: Optional[int] = Field(default=None, foreign_key="shipment.id", index=True)
    start_date: datetime = Field(sa_type=UTCTimestamp)
    end_date: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    total_amount: float
    currency: str = "NOK"
    commission_rate: float
    tax_rate: float
    pickup_region: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    # why the booking was rejected or cancelled
    status_reason: Optional[str] = None
    status: BookingStatus = Field(default=BookingStatus.PENDING, index=True)
    expires_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    responded_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class Review(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("booking_id", "reviewer_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    booking_id: int = Field(foreign_key="booking.id", index=True)
    reviewer_id: int = Field(foreign_key="company.id", index=True)
    reviewee_id: int = Field(foreign_key="company.id", index=True)
    rating: int
    comment: Optional[str] = None
    response: Optional[str] = None
    responded_at: Optional[datetime] = Field(default=None, sa_type=UTCTimestamp)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


# ------------------------------------------------------------------
# Platform configuration
# ------------------------------------------------------------------
class PlatformConfig(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    version: int = 1
    is_active: bool = Field(default=True, index=True)
    # rates are percentages, e.g. 25.0 == 25 %
    commission_rate: float
    platform_fee_discount_rate: float = 0.0
    tax_rate: float
    booking_timeout_hours: int
    default_currency: str = "NOK"
    instant_booking: bool = False
    hourly_bookings: bool = True
    recurring_bookings: bool = True
    without_driver_listings: bool = True
    auto_approval_enabled: bool = False
    maintenance_mode: bool = False
    activated_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class ConfigurationHistory(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("config_id", "version"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: int = Field(foreign_key="platformconfig.id", index=True)
    version: int
    change_type: ChangeType
    changes: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    snapshot: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    reason: Optional[str] = None
    changed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    rollback_to: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class GeographicRestriction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: int = Field(foreign_key="platformconfig.id", index=True)
    region: str = Field(index=True)
    restriction_type: RestrictionType = RestrictionType.BOOKING_BLOCKED
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)


class PaymentMethodConfig(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("config_id", "method"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: int = Field(foreign_key="platformconfig.id", index=True)
    method: str
    enabled: bool = True
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCTimestamp)

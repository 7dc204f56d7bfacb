from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from .models import BookingStatus, ChangeType, ResourceStatus, RestrictionType, Role


# ------------------------------------------------------------------
# Base class for reading ORM rows
# ------------------------------------------------------------------
class ORMModel(BaseModel):
    model_config = {"from_attributes": True}


# ------------------------------------------------------------------
# Users & companies
# ------------------------------------------------------------------
class UserUpdate(ORMModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class UserRead(ORMModel):
    id: int
    name: str
    email: str
    role: Role
    company_id: Optional[int] = None
    phone: Optional[str] = None


class CompanyCreate(ORMModel):
    name: str = Field(min_length=1)
    organization_number: str = Field(min_length=1)
    region: Optional[str] = None
    description: Optional[str] = None


class CompanyRead(ORMModel):
    id: int
    name: str
    organization_number: str
    region: Optional[str] = None
    description: Optional[str] = None
    aggregated_rating: Optional[float] = None
    total_ratings: int = 0


# ------------------------------------------------------------------
# Vehicles & shipments
# ------------------------------------------------------------------
class VehicleCreate(ORMModel):
    make: str
    model: str
    registration_number: str
    vehicle_type: str = "OTHER"
    capacity_pallets: Optional[int] = None
    daily_rate: Optional[float] = Field(default=None, ge=0)
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    currency: str = "NOK"
    region: Optional[str] = None


class VehicleUpdate(ORMModel):
    make: Optional[str] = None
    model: Optional[str] = None
    registration_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    capacity_pallets: Optional[int] = None
    daily_rate: Optional[float] = Field(default=None, ge=0)
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    region: Optional[str] = None


class VehicleRead(ORMModel):
    id: int
    company_id: int
    make: str
    model: str
    registration_number: str
    vehicle_type: str
    capacity_pallets: Optional[int] = None
    daily_rate: Optional[float] = None
    hourly_rate: Optional[float] = None
    currency: str
    region: Optional[str] = None
    status: ResourceStatus


class ShipmentCreate(ORMModel):
    title: str
    description: Optional[str] = None
    origin: str
    destination: str
    weight_kg: Optional[float] = Field(default=None, ge=0)
    budget: Optional[float] = Field(default=None, ge=0)
    currency: str = "NOK"
    pickup_date: Optional[datetime] = None


class ShipmentRead(ORMModel):
    id: int
    company_id: int
    title: str
    description: Optional[str] = None
    origin: str
    destination: str
    weight_kg: Optional[float] = None
    budget: Optional[float] = None
    currency: str
    pickup_date: Optional[datetime] = None
    status: ResourceStatus


# ------------------------------------------------------------------
# Bookings
# ------------------------------------------------------------------
class BookingCreate(ORMModel):
    provider_id: int
    vehicle_id: Optional[int] = None
    shipment_id: Optional[int] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    total_amount: Optional[float] = None
    pickup_region: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class BookingUpdate(ORMModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    total_amount: Optional[float] = None
    notes: Optional[str] = None


class BookingStatusUpdate(ORMModel):
    status: BookingStatus
    reason: Optional[str] = None


class BookingRead(ORMModel):
    id: int
    booking_number: str
    requester_id: int
    provider_id: int
    vehicle_id: Optional[int] = None
    shipment_id: Optional[int] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    total_amount: float
    currency: str
    commission_rate: float
    tax_rate: float
    pickup_region: Optional[str] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    status: BookingStatus
    status_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    created_at: datetime


class CostRequest(ORMModel):
    amount: float = Field(ge=0)


class CostBreakdown(ORMModel):
    provider_rate: float
    platform_commission: float
    platform_commission_rate: float
    platform_fee_discount_rate: float
    taxes: float
    tax_rate: float
    total: float
    currency: str


class ExpireResult(ORMModel):
    expired: int


# ------------------------------------------------------------------
# Reviews
# ------------------------------------------------------------------
class ReviewCreate(ORMModel):
    booking_id: int
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class ReviewRespond(ORMModel):
    response: str


class ReviewRead(ORMModel):
    id: int
    booking_id: int
    reviewer_id: int
    reviewee_id: int
    rating: int
    comment: Optional[str] = None
    response: Optional[str] = None
    responded_at: Optional[datetime] = None
    created_at: datetime


class RatingSummary(ORMModel):
    average_rating: float
    total_ratings: int
    distribution: Dict[str, int]


class CompanyReviews(ORMModel):
    company_id: int
    summary: RatingSummary
    reviews: List[ReviewRead]


# ------------------------------------------------------------------
# Platform configuration
# ------------------------------------------------------------------
class GeographicRestrictionCreate(ORMModel):
    region: str = Field(min_length=1)
    restriction_type: RestrictionType = RestrictionType.BOOKING_BLOCKED
    reason: Optional[str] = None


class GeographicRestrictionRead(ORMModel):
    id: int
    region: str
    restriction_type: RestrictionType
    reason: Optional[str] = None


class PaymentMethodUpdate(ORMModel):
    enabled: bool
    min_amount: Optional[float] = Field(default=None, ge=0)
    max_amount: Optional[float] = Field(default=None, ge=0)
    reason: Optional[str] = None


class PaymentMethodRead(ORMModel):
    method: str
    enabled: bool
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None


class PlatformConfigUpdate(ORMModel):
    commission_rate: Optional[float] = None
    platform_fee_discount_rate: Optional[float] = None
    tax_rate: Optional[float] = None
    booking_timeout_hours: Optional[int] = None
    default_currency: Optional[str] = None
    instant_booking: Optional[bool] = None
    hourly_bookings: Optional[bool] = None
    recurring_bookings: Optional[bool] = None
    without_driver_listings: Optional[bool] = None
    auto_approval_enabled: Optional[bool] = None
    maintenance_mode: Optional[bool] = None
    reason: Optional[str] = None


class PlatformConfigRead(ORMModel):
    version: int
    commission_rate: float
    platform_fee_discount_rate: float
    tax_rate: float
    booking_timeout_hours: int
    default_currency: str
    instant_booking: bool
    hourly_bookings: bool
    recurring_bookings: bool
    without_driver_listings: bool
    auto_approval_enabled: bool
    maintenance_mode: bool
    updated_at: Optional[datetime] = None
    activated_by: Optional[int] = None
    is_default: bool = False
    geographic_restrictions: List[GeographicRestrictionRead] = []
    payment_methods: List[PaymentMethodRead] = []


class ConfigurationHistoryRead(ORMModel):
    id: int
    version: int
    change_type: ChangeType
    changes: Dict
    snapshot: Dict
    reason: Optional[str] = None
    changed_by: Optional[int] = None
    rollback_to: Optional[int] = None
    created_at: datetime


class RollbackRequest(ORMModel):
    target_version: int = Field(ge=1)
    reason: Optional[str] = None


class ConfigDifference(ORMModel):
    field: str
    old_value: Any = None
    new_value: Any = None
    change_type: ChangeType


class ConfigComparisonSummary(ORMModel):
    total_changes: int
    changes_by_type: Dict[str, int]
    critical_changes: List[ConfigDifference]


class ConfigComparison(ORMModel):
    version1: int
    version2: int
    differences: List[ConfigDifference]
    total_changes: int
    summary: ConfigComparisonSummary


class RollbackPreview(ORMModel):
    current_version: int
    target_version: int
    differences: List[ConfigDifference]
    warnings: List[str]
    blockers: List[str]
    affected_features: List[str]
    is_safe: bool

import logging
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import InvalidRequestError, NotFoundError
from .models import Company, ResourceStatus, Role, Shipment, User, Vehicle

logger = logging.getLogger(__name__)

REQUIRED_VEHICLE_FIELDS = ("make", "model", "registration_number", "vehicle_type")


# ---------------- Companies ----------------
def create_company(session: Session, user: User, data: Dict) -> Company:
    if user.company_id is not None:
        raise InvalidRequestError("ALREADY_IN_COMPANY", "User already belongs to a company")

    company = Company(**data)
    session.add(company)
    try:
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        if "organization_number" in str(exc.orig):
            raise InvalidRequestError("ORGANIZATION_NUMBER_TAKEN", "Organization number already registered")
        raise

    user.company_id = company.id
    if user.role != Role.PLATFORM_ADMIN:
        user.role = Role.COMPANY_ADMIN
    session.add(user)
    session.commit()
    session.refresh(company)
    logger.info("Company %s registered by user %s", company.id, user.id)
    return company


def get_company(session: Session, company_id: int) -> Company:
    company = session.get(Company, company_id)
    if not company:
        raise NotFoundError("COMPANY_NOT_FOUND", "Company not found")
    return company


# ---------------- Vehicles -----------------
def list_available_vehicles(session: Session, region: Optional[str] = None) -> List[Vehicle]:
    query = select(Vehicle).where(Vehicle.status == ResourceStatus.AVAILABLE)
    if region:
        query = query.where(Vehicle.region == region)
    return session.exec(query.order_by(Vehicle.created_at.desc())).all()


def list_fleet(session: Session, company_id: int) -> List[Vehicle]:
    return session.exec(
        select(Vehicle).where(Vehicle.company_id == company_id).order_by(Vehicle.created_at.desc())
    ).all()


def _registration_taken(exc: IntegrityError) -> bool:
    return "registration_number" in str(exc.orig)


def _check_registration_free(session: Session, company_id: int, registration_number: str, vehicle_id: Optional[int] = None) -> None:
    clash = session.exec(
        select(Vehicle).where(
            (Vehicle.company_id == company_id)
            & (Vehicle.registration_number == registration_number)
        )
    ).first()
    if clash is not None and clash.id != vehicle_id:
        raise InvalidRequestError("REGISTRATION_NUMBER_EXISTS", "Registration number already exists")


def _commit_vehicle(session: Session, vehicle: Vehicle) -> Vehicle:
    session.add(vehicle)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        if _registration_taken(exc):
            raise InvalidRequestError("REGISTRATION_NUMBER_EXISTS", "Registration number already exists")
        raise
    session.refresh(vehicle)
    return vehicle


def create_vehicle(session: Session, company_id: int, data: Dict) -> Vehicle:
    _check_registration_free(session, company_id, data["registration_number"])
    return _commit_vehicle(session, Vehicle(company_id=company_id, **data))


def update_vehicle(session: Session, company_id: int, vehicle_id: int, data: Dict) -> Vehicle:
    vehicle = session.get(Vehicle, vehicle_id)
    if not vehicle or vehicle.company_id != company_id:
        raise NotFoundError("VEHICLE_NOT_FOUND", "Vehicle not found or unauthorized")
    # required columns: an explicit null keeps the current value
    data = {k: v for k, v in data.items() if not (k in REQUIRED_VEHICLE_FIELDS and v is None)}
    if "registration_number" in data:
        _check_registration_free(session, company_id, data["registration_number"], vehicle_id)
    for k, v in data.items():
        setattr(vehicle, k, v)
    return _commit_vehicle(session, vehicle)


# ---------------- Shipments ----------------
def list_available_shipments(session: Session) -> List[Shipment]:
    return session.exec(
        select(Shipment)
        .where(Shipment.status == ResourceStatus.AVAILABLE)
        .order_by(Shipment.created_at.desc())
    ).all()


def create_shipment(session: Session, company_id: int, data: Dict) -> Shipment:
    shipment = Shipment(company_id=company_id, **data)
    session.add(shipment)
    session.commit()
    session.refresh(shipment)
    return shipment

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PLATFORM_ADMIN_EMAILS"] = "admin@vider.no,boss@vider.no"
os.environ.setdefault("FIREBASE_PROJECT_ID", "vider-test")

from types import SimpleNamespace

import pytest
from fastapi import HTTPException, Request
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from vider.auth import verify_firebase_token
from vider.database import engine, init_db
from vider.main import app
from vider.models import Company, Role, Shipment, User, Vehicle


def fake_verify(request: Request):
    """Treat the bearer token as the user's email."""
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    token = auth.split(" ", 1)[1]
    if "@" not in token:
        raise HTTPException(status_code=401, detail="Invalid Firebase token")
    return {"email": token, "name": token.split("@")[0].title()}


def bearer(email: str) -> dict:
    return {"Authorization": f"Bearer {email}"}


@pytest.fixture(autouse=True)
def db():
    init_db()
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def client():
    app.dependency_overrides[verify_firebase_token] = fake_verify
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def world(session):
    """Two trading companies, a bystander, their users, a truck and a load."""
    carrier = Company(name="Fjord Transport AS", organization_number="911111111", region="Oslo")
    shipper = Company(name="Bergen Logistikk AS", organization_number="922222222", region="Vestland")
    outsider = Company(name="Nord Frakt AS", organization_number="933333333", region="Troms")
    session.add_all([carrier, shipper, outsider])
    session.commit()

    carrier_user = User(name="Ola", email="ola@fjord.no", role=Role.COMPANY_ADMIN, company_id=carrier.id)
    shipper_user = User(name="Kari", email="kari@bergen.no", role=Role.COMPANY_ADMIN, company_id=shipper.id)
    outsider_user = User(name="Per", email="per@nord.no", role=Role.COMPANY_USER, company_id=outsider.id)
    admin = User(name="Admin", email="admin@vider.no", role=Role.PLATFORM_ADMIN)
    vehicle = Vehicle(
        company_id=carrier.id, make="Volvo", model="FH16", registration_number="EB12345",
        vehicle_type="PALLET_18", daily_rate=2500.0, region="Oslo",
    )
    shipment = Shipment(
        company_id=shipper.id, title="18 pallets to Trondheim", origin="Bergen",
        destination="Trondheim", weight_kg=9000.0, budget=8000.0,
    )
    session.add_all([carrier_user, shipper_user, outsider_user, admin, vehicle, shipment])
    session.commit()
    for obj in (carrier, shipper, outsider, carrier_user, shipper_user, outsider_user, admin, vehicle, shipment):
        session.refresh(obj)

    return SimpleNamespace(
        carrier=carrier,
        shipper=shipper,
        outsider=outsider,
        carrier_id=carrier.id,
        shipper_id=shipper.id,
        outsider_id=outsider.id,
        carrier_user=carrier_user,
        shipper_user=shipper_user,
        outsider_user=outsider_user,
        admin=admin,
        vehicle=vehicle,
        vehicle_id=vehicle.id,
        shipment=shipment,
        shipment_id=shipment.id,
    )

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from vider import bookings
from vider.main import app

from conftest import bearer

OLA = bearer("ola@fjord.no")      # carrier, owns the truck
KARI = bearer("kari@bergen.no")   # shipper
PER = bearer("per@nord.no")       # unrelated company
ADMIN = bearer("admin@vider.no")


def _request_truck(client, world, **extra):
    body = {
        "provider_id": world.carrier_id,
        "vehicle_id": world.vehicle_id,
        "start_date": "2026-11-03T08:00:00",
        "end_date": "2026-11-04T08:00:00",
        **extra,
    }
    return client.post("/api/bookings", json=body, headers=KARI)


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


# ---------------- auth ----------------

def test_missing_token_is_unauthorized(client):
    r = client.get("/api/users/me")
    assert r.status_code == 401
    assert r.json() == {"message": "Missing Authorization header"}


def test_invalid_token_is_unauthorized(client):
    r = client.get("/api/users/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_first_login_provisions_user(client):
    r = client.get("/api/users/me", headers=bearer("lise@ny.no"))
    assert r.status_code == 200
    me = r.json()
    assert me["email"] == "lise@ny.no"
    assert me["role"] == "COMPANY_USER"
    assert me["company_id"] is None


def test_listed_email_becomes_platform_admin(client):
    r = client.get("/api/users/me", headers=bearer("boss@vider.no"))
    assert r.json()["role"] == "PLATFORM_ADMIN"


def test_user_updates_only_own_profile(client, world):
    me = client.get("/api/users/me", headers=KARI).json()
    r = client.patch(f"/api/users/{me['id']}", json={"phone": "+47 400 00 000"}, headers=KARI)
    assert r.status_code == 200
    assert r.json()["phone"] == "+47 400 00 000"

    r = client.patch(f"/api/users/{me['id']}", json={"name": "Hacker"}, headers=OLA)
    assert r.status_code == 403


# ---------------- companies & catalogue ----------------

def test_register_company_makes_user_company_admin(client, world):
    headers = bearer("eva@sor.no")
    r = client.post(
        "/api/companies",
        json={"name": "Sør Transport AS", "organization_number": "944444444", "region": "Agder"},
        headers=headers,
    )
    assert r.status_code == 201
    company = r.json()
    assert company["total_ratings"] == 0

    me = client.get("/api/users/me", headers=headers).json()
    assert me["company_id"] == company["id"]
    assert me["role"] == "COMPANY_ADMIN"

    r = client.post("/api/companies", json={"name": "Again", "organization_number": "955555555"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "ALREADY_IN_COMPANY"


def test_organization_number_is_unique(client, world):
    r = client.post(
        "/api/companies",
        json={"name": "Copycat AS", "organization_number": "911111111"},
        headers=bearer("copy@cat.no"),
    )
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "ORGANIZATION_NUMBER_TAKEN"


def test_unknown_company(client):
    r = client.get("/api/companies/12345")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "COMPANY_NOT_FOUND"


def test_vehicle_registration(client, world):
    body = {"make": "Scania", "model": "R500", "registration_number": "EB99999", "daily_rate": 3000, "region": "Oslo"}
    r = client.post("/api/vehicles", json=body, headers=OLA)
    assert r.status_code == 201
    assert r.json()["status"] == "AVAILABLE"

    r = client.post("/api/vehicles", json=body, headers=OLA)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "REGISTRATION_NUMBER_EXISTS"

    fleet = client.get("/api/vehicles/my-fleet", headers=OLA).json()
    assert {v["registration_number"] for v in fleet} == {"EB12345", "EB99999"}


def test_vehicle_listing_filters_by_region(client, world):
    assert len(client.get("/api/vehicles", params={"region": "Oslo"}).json()) == 1
    assert client.get("/api/vehicles", params={"region": "Troms"}).json() == []


def test_users_without_company_cannot_list_fleet(client):
    r = client.get("/api/vehicles/my-fleet", headers=bearer("solo@driver.no"))
    assert r.status_code == 403


def test_update_foreign_vehicle_is_not_found(client, world):
    r = client.patch(f"/api/vehicles/{world.vehicle_id}", json={"daily_rate": 1}, headers=KARI)
    assert r.status_code == 404


def test_shipments(client, world):
    body = {"title": "Machinery", "origin": "Oslo", "destination": "Tromsø", "budget": 12000}
    r = client.post("/api/shipments", json=body, headers=KARI)
    assert r.status_code == 201
    titles = {s["title"] for s in client.get("/api/shipments").json()}
    assert titles == {"18 pallets to Trondheim", "Machinery"}


# ---------------- bookings ----------------

def test_booking_review_flow(client, world):
    r = _request_truck(client, world)
    assert r.status_code == 201
    booking = r.json()
    assert booking["status"] == "PENDING"
    assert booking["total_amount"] == 2500.0

    assert [b["id"] for b in client.get("/api/bookings/my-bookings", headers=OLA).json()] == [booking["id"]]
    assert client.get("/api/bookings/my-bookings", headers=PER).json() == []

    r = client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "ACCEPTED"}, headers=KARI)
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "ONLY_PROVIDER_CAN_RESPOND"

    r = client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "ACCEPTED"}, headers=OLA)
    assert r.status_code == 200
    assert r.json()["status"] == "ACCEPTED"
    [truck] = client.get("/api/vehicles/my-fleet", headers=OLA).json()
    assert truck["status"] == "BOOKED"
    assert client.get("/api/vehicles").json() == []

    # not finished yet
    r = client.post("/api/reviews", json={"booking_id": booking["id"], "rating": 5}, headers=KARI)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "BOOKING_NOT_TERMINAL"

    r = client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "COMPLETED"}, headers=KARI)
    assert r.status_code == 200
    [truck] = client.get("/api/vehicles/my-fleet", headers=OLA).json()
    assert truck["status"] == "AVAILABLE"

    r = client.post("/api/reviews", json={"booking_id": booking["id"], "rating": 5, "comment": "Great"}, headers=KARI)
    assert r.status_code == 201
    assert r.json()["reviewee_id"] == world.carrier_id
    r = client.post("/api/reviews", json={"booking_id": booking["id"], "rating": 4}, headers=OLA)
    assert r.status_code == 201
    r = client.post("/api/reviews", json={"booking_id": booking["id"], "rating": 1}, headers=KARI)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "REVIEW_ALREADY_EXISTS"

    page = client.get(f"/api/reviews/company/{world.carrier_id}").json()
    assert page["summary"]["average_rating"] == 5.0
    assert page["summary"]["total_ratings"] == 1
    assert client.get(f"/api/companies/{world.carrier_id}").json()["aggregated_rating"] == 5.0

    assert len(client.get(f"/api/reviews/booking/{booking['id']}", headers=OLA).json()) == 2
    assert client.get(f"/api/reviews/booking/{booking['id']}", headers=PER).status_code == 403

    review_id = page["reviews"][0]["id"]
    r = client.post(f"/api/reviews/{review_id}/response", json={"response": "Takk!"}, headers=OLA)
    assert r.status_code == 200
    assert r.json()["response"] == "Takk!"


def test_pending_booking_cannot_be_completed(client, world):
    booking = _request_truck(client, world).json()
    r = client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "COMPLETED"}, headers=OLA)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"


def test_unknown_status_value_is_validation_error(client, world):
    booking = _request_truck(client, world).json()
    r = client.patch(f"/api/bookings/{booking['id']}/status", json={"status": "DONE"}, headers=OLA)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_missing_fields_is_validation_error(client, world):
    r = client.post("/api/bookings", json={"provider_id": world.carrier_id}, headers=KARI)
    assert r.status_code == 400
    body = r.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert any("start_date" in d["loc"] for d in body["error"]["details"])


def test_outsider_cannot_see_booking(client, world):
    booking = _request_truck(client, world).json()
    r = client.get(f"/api/bookings/{booking['id']}", headers=PER)
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "NOT_BOOKING_PARTY"
    assert client.get(f"/api/bookings/{booking['id']}", headers=ADMIN).status_code == 200


def test_unknown_booking(client, world):
    r = client.get("/api/bookings/999", headers=KARI)
    assert r.status_code == 404
    assert r.json()["error"] == {"code": "BOOKING_NOT_FOUND", "message": "Booking not found"}


def test_delete_cancels_instead_of_removing(client, world):
    booking = _request_truck(client, world).json()
    r = client.delete(f"/api/bookings/{booking['id']}", headers=OLA)
    assert r.status_code == 200
    assert r.json()["status"] == "CANCELLED"
    assert client.get(f"/api/bookings/{booking['id']}", headers=KARI).json()["status"] == "CANCELLED"


def test_requester_edits_pending_booking(client, world):
    booking = _request_truck(client, world).json()
    r = client.patch(f"/api/bookings/{booking['id']}", json={"notes": "Gate code 1234"}, headers=KARI)
    assert r.status_code == 200
    assert r.json()["notes"] == "Gate code 1234"
    r = client.patch(f"/api/bookings/{booking['id']}", json={"notes": "mine now"}, headers=OLA)
    assert r.status_code == 403


def test_my_bookings_requires_company(client):
    r = client.get("/api/bookings/my-bookings", headers=bearer("solo@driver.no"))
    assert r.status_code == 403


def test_admin_sees_all_bookings(client, world):
    _request_truck(client, world)
    assert len(client.get("/api/bookings/my-bookings", headers=ADMIN).json()) == 1


def test_calculate_costs_is_public(client):
    r = client.post("/api/bookings/calculate-costs", json={"amount": 1000})
    assert r.status_code == 200
    costs = r.json()
    assert costs["platform_commission"] == 50.0
    assert costs["taxes"] == 262.5
    assert costs["total"] == 1312.5


def test_expire_stale_is_admin_only(client, world):
    assert client.post("/api/bookings/expire-stale", headers=OLA).status_code == 403
    r = client.post("/api/bookings/expire-stale", headers=ADMIN)
    assert r.status_code == 200
    assert r.json() == {"expired": 0}


def test_unexpected_errors_are_hidden(client, world, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("database on fire")

    monkeypatch.setattr(bookings, "list_mine", explode)
    quiet = TestClient(app, raise_server_exceptions=False)
    r = quiet.get("/api/bookings/my-bookings", headers=KARI)
    assert r.status_code == 500
    assert r.json() == {"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}}


# ---------------- platform config ----------------

def test_config_defaults_visible_to_users(client, world):
    r = client.get("/api/platform-config", headers=KARI)
    assert r.status_code == 200
    config = r.json()
    assert config["is_default"] is True
    assert config["version"] == 0
    assert config["commission_rate"] == 5.0
    assert config["geographic_restrictions"] == []


def test_config_requires_login(client):
    assert client.get("/api/platform-config").status_code == 401


def test_only_admins_change_config(client, world):
    r = client.patch("/api/platform-config", json={"commission_rate": 1}, headers=OLA)
    assert r.status_code == 403
    assert client.get("/api/platform-config/history", headers=OLA).status_code == 403


def test_config_versioning_over_http(client, world):
    r = client.patch("/api/platform-config", json={"commission_rate": 7, "reason": "Autumn"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["version"] == 2
    assert r.json()["is_default"] is False

    r = client.patch("/api/platform-config", json={"commission_rate": 7}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "NO_CHANGES"

    r = client.patch("/api/platform-config", json={"tax_rate": 250}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_TAX_RATE"

    history = client.get("/api/platform-config/history", headers=ADMIN).json()
    assert [h["version"] for h in history] == [2, 1]
    assert history[0]["change_type"] == "FINANCIAL_UPDATE"
    assert history[0]["reason"] == "Autumn"

    version = client.get("/api/platform-config/versions/1", headers=ADMIN).json()
    assert version["snapshot"]["commission_rate"] == 5.0
    assert client.get("/api/platform-config/versions/42", headers=ADMIN).status_code == 404

    diff = client.get("/api/platform-config/compare", params={"version1": 1, "version2": 2}, headers=ADMIN).json()
    assert diff["total_changes"] == 1
    assert diff["differences"][0]["field"] == "commission_rate"
    assert diff["summary"]["changes_by_type"]["FINANCIAL_UPDATE"] == 1
    assert diff["summary"]["critical_changes"][0]["field"] == "commission_rate"

    preview = client.get("/api/platform-config/rollback-preview", params={"target_version": 1}, headers=ADMIN)
    assert preview.status_code == 200
    assert preview.json()["warnings"] == ["commission_rate: 7.0 -> 5.0"]
    assert preview.json()["is_safe"] is True
    r = client.get("/api/platform-config/rollback-preview", params={"target_version": 1}, headers=KARI)
    assert r.status_code == 403

    r = client.post("/api/platform-config/rollback", json={"target_version": 1}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["version"] == 3
    assert r.json()["commission_rate"] == 5.0

    r = client.post("/api/platform-config/rollback", json={"target_version": 3}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "ALREADY_AT_VERSION"


def test_geographic_restriction_blocks_bookings(client, world):
    r = client.post(
        "/api/platform-config/geographic-restrictions",
        json={"region": "Oslo", "reason": "Road works"},
        headers=ADMIN,
    )
    assert r.status_code == 201
    restriction = r.json()
    assert restriction["restriction_type"] == "BOOKING_BLOCKED"

    r = _request_truck(client, world)
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "BOOKING_BLOCKED_IN_REGION"

    config = client.get("/api/platform-config", headers=KARI).json()
    assert [g["region"] for g in config["geographic_restrictions"]] == ["Oslo"]

    r = client.delete(f"/api/platform-config/geographic-restrictions/{restriction['id']}", headers=ADMIN)
    assert r.status_code == 204
    assert _request_truck(client, world).status_code == 201


def test_payment_method_toggle(client, world):
    r = client.put("/api/platform-config/payment-methods/invoice", json={"enabled": False}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json() == {"method": "invoice", "enabled": False, "min_amount": None, "max_amount": None}

    r = _request_truck(client, world, payment_method="invoice")
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "PAYMENT_METHOD_NOT_AVAILABLE"
    assert _request_truck(client, world, payment_method="card").status_code == 201


def test_maintenance_mode_over_http(client, world):
    client.patch("/api/platform-config", json={"maintenance_mode": True}, headers=ADMIN)
    r = _request_truck(client, world)
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "MAINTENANCE_MODE"


# ---------------- partial updates ----------------

def test_null_name_keeps_current_name(client, world):
    me = client.get("/api/users/me", headers=KARI).json()
    r = client.patch(f"/api/users/{me['id']}", json={"name": None, "phone": "+47 911 11 111"}, headers=KARI)
    assert r.status_code == 200
    assert r.json()["name"] == "Kari"
    assert r.json()["phone"] == "+47 911 11 111"


def test_null_vehicle_make_keeps_current_make(client, world):
    r = client.patch(f"/api/vehicles/{world.vehicle_id}", json={"make": None, "daily_rate": 2800}, headers=OLA)
    assert r.status_code == 200
    assert r.json()["make"] == "Volvo"
    assert r.json()["daily_rate"] == 2800


def test_vehicle_update_to_taken_registration(client, world):
    body = {"make": "Scania", "model": "R500", "registration_number": "EB99999"}
    other = client.post("/api/vehicles", json=body, headers=OLA).json()
    r = client.patch(f"/api/vehicles/{other['id']}", json={"registration_number": "EB12345"}, headers=OLA)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "REGISTRATION_NUMBER_EXISTS"
    # keeping its own number is fine
    r = client.patch(f"/api/vehicles/{other['id']}", json={"registration_number": "EB99999"}, headers=OLA)
    assert r.status_code == 200


# ---------------- bookings ----------------

def test_offset_dates_come_back_in_utc(client, world):
    r = _request_truck(client, world, start_date="2026-11-03T09:00:00+01:00", end_date="2026-11-04T09:00:00+01:00")
    assert r.status_code == 201
    booking = client.get(f"/api/bookings/{r.json()['id']}", headers=KARI).json()
    start = datetime.fromisoformat(booking["start_date"].replace("Z", "+00:00"))
    assert start == datetime(2026, 11, 3, 8, 0, tzinfo=timezone.utc)
    assert start.utcoffset().total_seconds() == 0


def test_reject_and_cancel_reasons(client, world):
    first = _request_truck(client, world).json()
    r = client.patch(
        f"/api/bookings/{first['id']}/status",
        json={"status": "REJECTED", "reason": "Truck in service"},
        headers=OLA,
    )
    assert r.status_code == 200
    assert r.json()["status_reason"] == "Truck in service"

    second = _request_truck(client, world).json()
    r = client.delete(f"/api/bookings/{second['id']}", params={"reason": "Load postponed"}, headers=KARI)
    assert r.status_code == 200
    assert r.json()["status_reason"] == "Load postponed"


def test_hourly_bookings_toggle_over_http(client, world):
    van = client.post(
        "/api/vehicles",
        json={"make": "Ford", "model": "Transit", "registration_number": "EL55555", "hourly_rate": 400},
        headers=OLA,
    ).json()
    client.patch("/api/platform-config", json={"hourly_bookings": False}, headers=ADMIN)
    r = _request_truck(client, world, vehicle_id=van["id"], end_date="2026-11-03T11:00:00")
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "HOURLY_BOOKINGS_DISABLED"


def test_moving_dates_reprices_over_http(client, world):
    booking = _request_truck(client, world).json()
    assert booking["total_amount"] == 2500.0
    r = client.patch(f"/api/bookings/{booking['id']}", json={"end_date": "2026-11-06T08:00:00"}, headers=KARI)
    assert r.status_code == 200
    assert r.json()["total_amount"] == 7500.0

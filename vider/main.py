# vider/main.py
import os
import logging
from typing import List, Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sqlmodel import Session

from .database import init_db, get_session
from .auth import get_current_user, get_current_company_id, require_platform_admin
from .errors import ServiceError
from . import bookings, catalog, reviews
from . import platform_config as pc
from . import models as m
from . import schemas as s

APP_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def _config_read(session: Session, config: m.PlatformConfig) -> s.PlatformConfigRead:
    return s.PlatformConfigRead(
        **{f: getattr(config, f) for f in pc.CONFIG_FIELDS},
        version=config.version,
        updated_at=config.updated_at if config.id is not None else None,
        activated_by=config.activated_by,
        is_default=config.id is None,
        geographic_restrictions=[
            s.GeographicRestrictionRead.model_validate(r) for r in pc.list_restrictions(session, config)
        ],
        payment_methods=[
            s.PaymentMethodRead.model_validate(p) for p in pc.list_payment_methods(session, config)
        ],
    )


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title="Vider Transport Marketplace API", version=APP_VERSION)

    # CORS
    origins = os.getenv("ALLOWED_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [o.strip() for o in origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def _startup():
        init_db()

    # ---------------- Errors ----------------
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
        return JSONResponse(
            status_code=400,
            content={"error": {"code": "VALIDATION_ERROR", "message": "Validation failed", "details": details}},
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}},
        )

    # ---------------- Health ----------------
    @app.get("/api/health")
    def health():
        return {"status": "ok", "version": APP_VERSION}

    # ---------------- Users -----------------
    @app.get("/api/users/me", response_model=s.UserRead)
    def me(user: m.User = Depends(get_current_user)):
        return s.UserRead.model_validate(user)

    @app.patch("/api/users/{user_id}", response_model=s.UserRead)
    def update_user(
        user_id: int,
        payload: s.UserUpdate,
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        if user.id != user_id:
            raise HTTPException(403, "You can only update your own profile")
        changes = payload.model_dump(exclude_unset=True)
        # name is required; an explicit null keeps the current one
        if "name" in changes and changes["name"] is None:
            del changes["name"]
        for k, v in changes.items():
            setattr(user, k, v)
        user.updated_at = m.utcnow()
        session.add(user)
        session.commit()
        session.refresh(user)
        return s.UserRead.model_validate(user)

    # --------------- Companies --------------
    @app.post("/api/companies", response_model=s.CompanyRead, status_code=201)
    def create_company(
        payload: s.CompanyCreate,
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        company = catalog.create_company(session, user, payload.model_dump())
        return s.CompanyRead.model_validate(company)

    @app.get("/api/companies/{company_id}", response_model=s.CompanyRead)
    def get_company(company_id: int, session: Session = Depends(get_session)):
        return s.CompanyRead.model_validate(catalog.get_company(session, company_id))

    # --------------- Vehicles ---------------
    @app.get("/api/vehicles", response_model=List[s.VehicleRead])
    def list_vehicles(region: Optional[str] = None, session: Session = Depends(get_session)):
        return [s.VehicleRead.model_validate(v) for v in catalog.list_available_vehicles(session, region)]

    @app.get("/api/vehicles/my-fleet", response_model=List[s.VehicleRead])
    def my_fleet(
        company_id: int = Depends(get_current_company_id),
        session: Session = Depends(get_session),
    ):
        return [s.VehicleRead.model_validate(v) for v in catalog.list_fleet(session, company_id)]

    @app.post("/api/vehicles", response_model=s.VehicleRead, status_code=201)
    def create_vehicle(
        payload: s.VehicleCreate,
        company_id: int = Depends(get_current_company_id),
        session: Session = Depends(get_session),
    ):
        v = catalog.create_vehicle(session, company_id, payload.model_dump())
        return s.VehicleRead.model_validate(v)

    @app.patch("/api/vehicles/{vehicle_id}", response_model=s.VehicleRead)
    def update_vehicle(
        vehicle_id: int,
        payload: s.VehicleUpdate,
        company_id: int = Depends(get_current_company_id),
        session: Session = Depends(get_session),
    ):
        v = catalog.update_vehicle(session, company_id, vehicle_id, payload.model_dump(exclude_unset=True))
        return s.VehicleRead.model_validate(v)

    # --------------- Shipments --------------
    @app.get("/api/shipments", response_model=List[s.ShipmentRead])
    def list_shipments(session: Session = Depends(get_session)):
        return [s.ShipmentRead.model_validate(x) for x in catalog.list_available_shipments(session)]

    @app.post("/api/shipments", response_model=s.ShipmentRead, status_code=201)
    def create_shipment(
        payload: s.ShipmentCreate,
        company_id: int = Depends(get_current_company_id),
        session: Session = Depends(get_session),
    ):
        return s.ShipmentRead.model_validate(catalog.create_shipment(session, company_id, payload.model_dump()))

    # --------------- Bookings ---------------
    @app.post("/api/bookings/calculate-costs", response_model=s.CostBreakdown)
    def calculate_costs(payload: s.CostRequest, session: Session = Depends(get_session)):
        config = pc.get_active(session)
        return s.CostBreakdown(**bookings.calculate_costs(payload.amount, config))

    @app.post("/api/bookings/expire-stale", response_model=s.ExpireResult)
    def expire_stale(
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        return s.ExpireResult(expired=bookings.expire_stale(session))

    @app.post("/api/bookings", response_model=s.BookingRead, status_code=201)
    def create_booking(
        payload: s.BookingCreate,
        company_id: int = Depends(get_current_company_id),
        session: Session = Depends(get_session),
    ):
        booking = bookings.create(session, requester_id=company_id, **payload.model_dump())
        return s.BookingRead.model_validate(booking)

    @app.get("/api/bookings/my-bookings", response_model=List[s.BookingRead])
    def my_bookings(
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        is_admin = user.role == m.Role.PLATFORM_ADMIN
        if not is_admin and user.company_id is None:
            raise HTTPException(403, "User not associated with a company")
        rows = bookings.list_mine(session, user.company_id, everything=is_admin)
        return [s.BookingRead.model_validate(b) for b in rows]

    @app.get("/api/bookings/{booking_id}", response_model=s.BookingRead)
    def get_booking(
        booking_id: int,
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        return s.BookingRead.model_validate(bookings.get(session, booking_id, user))

    @app.patch("/api/bookings/{booking_id}/status", response_model=s.BookingRead)
    def update_booking_status(
        booking_id: int,
        payload: s.BookingStatusUpdate,
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        booking = bookings.update_status(session, booking_id, user, payload.status, reason=payload.reason)
        return s.BookingRead.model_validate(booking)

    @app.patch("/api/bookings/{booking_id}", response_model=s.BookingRead)
    def update_booking(
        booking_id: int,
        payload: s.BookingUpdate,
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        booking = bookings.update_details(session, booking_id, user, payload.model_dump(exclude_unset=True))
        return s.BookingRead.model_validate(booking)

    @app.delete("/api/bookings/{booking_id}", response_model=s.BookingRead)
    def cancel_booking(
        booking_id: int,
        reason: Optional[str] = None,
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        # bookings are never deleted, only cancelled
        return s.BookingRead.model_validate(bookings.cancel(session, booking_id, user, reason))

    # ---------------- Reviews ---------------
    @app.post("/api/reviews", response_model=s.ReviewRead, status_code=201)
    def create_review(
        payload: s.ReviewCreate,
        company_id: int = Depends(get_current_company_id),
        session: Session = Depends(get_session),
    ):
        review = reviews.create(session, payload.booking_id, company_id, payload.rating, payload.comment)
        return s.ReviewRead.model_validate(review)

    @app.get("/api/reviews/company/{company_id}", response_model=s.CompanyReviews)
    def company_reviews(company_id: int, session: Session = Depends(get_session)):
        rows = reviews.list_for_company(session, company_id)
        return s.CompanyReviews(
            company_id=company_id,
            summary=s.RatingSummary(**reviews.summarize(rows)),
            reviews=[s.ReviewRead.model_validate(r) for r in rows],
        )

    @app.get("/api/reviews/booking/{booking_id}", response_model=List[s.ReviewRead])
    def booking_reviews(
        booking_id: int,
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        bookings.get(session, booking_id, user)
        return [s.ReviewRead.model_validate(r) for r in reviews.list_for_booking(session, booking_id)]

    @app.post("/api/reviews/{review_id}/response", response_model=s.ReviewRead)
    def respond_to_review(
        review_id: int,
        payload: s.ReviewRespond,
        company_id: int = Depends(get_current_company_id),
        session: Session = Depends(get_session),
    ):
        review = reviews.respond(session, review_id, company_id, payload.response)
        return s.ReviewRead.model_validate(review)

    # ----------- Platform config ------------
    @app.get("/api/platform-config", response_model=s.PlatformConfigRead)
    def get_platform_config(
        user: m.User = Depends(get_current_user),
        session: Session = Depends(get_session),
    ):
        return _config_read(session, pc.get_active(session))

    @app.patch("/api/platform-config", response_model=s.PlatformConfigRead)
    def update_platform_config(
        payload: s.PlatformConfigUpdate,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        changes = payload.model_dump(exclude_unset=True, exclude={"reason"})
        config = pc.update(session, changes, admin, payload.reason)
        return _config_read(session, config)

    @app.get("/api/platform-config/history", response_model=List[s.ConfigurationHistoryRead])
    def platform_config_history(
        limit: int = 50,
        offset: int = 0,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        limit = max(1, min(limit, 200))
        rows = pc.history(session, limit=limit, offset=max(0, offset))
        return [s.ConfigurationHistoryRead.model_validate(h) for h in rows]

    @app.get("/api/platform-config/versions/{version}", response_model=s.ConfigurationHistoryRead)
    def platform_config_version(
        version: int,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        return s.ConfigurationHistoryRead.model_validate(pc.get_version(session, version))

    @app.get("/api/platform-config/compare", response_model=s.ConfigComparison)
    def compare_platform_config(
        version1: int,
        version2: int,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        return s.ConfigComparison(**pc.compare(session, version1, version2))

    @app.get("/api/platform-config/rollback-preview", response_model=s.RollbackPreview)
    def preview_platform_config_rollback(
        target_version: int,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        return s.RollbackPreview(**pc.rollback_preview(session, target_version))

    @app.post("/api/platform-config/rollback", response_model=s.PlatformConfigRead)
    def rollback_platform_config(
        payload: s.RollbackRequest,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        config = pc.rollback(session, payload.target_version, admin, payload.reason)
        return _config_read(session, config)

    @app.post(
        "/api/platform-config/geographic-restrictions",
        response_model=s.GeographicRestrictionRead,
        status_code=201,
    )
    def add_geographic_restriction(
        payload: s.GeographicRestrictionCreate,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        r = pc.add_geographic_restriction(session, payload.region, payload.restriction_type, admin, payload.reason)
        return s.GeographicRestrictionRead.model_validate(r)

    @app.delete("/api/platform-config/geographic-restrictions/{restriction_id}", status_code=204)
    def remove_geographic_restriction(
        restriction_id: int,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        pc.remove_geographic_restriction(session, restriction_id, admin)

    @app.put("/api/platform-config/payment-methods/{method}", response_model=s.PaymentMethodRead)
    def set_payment_method(
        method: str,
        payload: s.PaymentMethodUpdate,
        admin: m.User = Depends(require_platform_admin),
        session: Session = Depends(get_session),
    ):
        p = pc.set_payment_method(
            session, method, payload.enabled, admin,
            min_amount=payload.min_amount,
            max_amount=payload.max_amount,
            reason=payload.reason,
        )
        return s.PaymentMethodRead.model_validate(p)

    return app

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))

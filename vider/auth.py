import os
import logging
from typing import Dict

# load .env first
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, HTTPException, Request
from google.oauth2 import id_token
from google.auth.transport.requests import Request as GoogleRequest
from sqlmodel import Session, select

from .database import get_session
from .models import Role, User

logger = logging.getLogger(__name__)

FIREBASE_PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID")
PLATFORM_ADMIN_EMAILS = {
    e.strip().lower()
    for e in os.environ.get("PLATFORM_ADMIN_EMAILS", "").split(",")
    if e.strip()
}


def verify_firebase_token(request: Request) -> Dict:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not FIREBASE_PROJECT_ID:
        raise HTTPException(status_code=500, detail="FIREBASE_PROJECT_ID not configured")
    token = auth.split(" ", 1)[1]
    try:
        info = id_token.verify_firebase_token(token, GoogleRequest(), audience=FIREBASE_PROJECT_ID)
    except Exception as exc:
        logger.warning("Firebase token rejected: %s", exc)
        raise HTTPException(status_code=401, detail="Invalid Firebase token")
    if not info:
        raise HTTPException(status_code=401, detail="Invalid Firebase token")
    return info


def get_current_user(
    info: Dict = Depends(verify_firebase_token),
    session: Session = Depends(get_session),
) -> User:
    email = (info.get("email") or "").lower()
    if not email:
        raise HTTPException(status_code=401, detail="Token missing email")

    user = session.exec(select(User).where(User.email == email)).first()
    if not user:
        role = Role.PLATFORM_ADMIN if email in PLATFORM_ADMIN_EMAILS else Role.COMPANY_USER
        user = User(name=info.get("name") or "New User", email=email, role=role)
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("Provisioned user %s with role %s", user.id, role.value)
    elif user.role != Role.PLATFORM_ADMIN and email in PLATFORM_ADMIN_EMAILS:
        # promotion happens on the next request after the email is listed
        user.role = Role.PLATFORM_ADMIN
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("Promoted user %s to platform admin", user.id)
    return user


def get_current_company_id(user: User = Depends(get_current_user)) -> int:
    if user.company_id is None:
        raise HTTPException(status_code=403, detail="User not associated with a company")
    return user.company_id


def require_platform_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != Role.PLATFORM_ADMIN:
        raise HTTPException(status_code=403, detail="Platform admin access required")
    return user

import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header
from jose import JWTError, jwt

import storage
from errors import AuthenticationError, ForbiddenError, NotFoundError

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "7"))

ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
ADMIN_ID = "admin"


def admin_identity() -> Dict[str, Any]:
    return {
        "_id": ADMIN_ID,
        "name": "Admin",
        "email": storage.ADMIN_EMAIL,
        "role": "admin",
        "is_active": True,
    }


def user_id_of(user: Dict[str, Any]) -> str:
    return str(user["_id"])


def create_token(user: Dict[str, Any]) -> str:
    payload = {
        "sub": user_id_of(user),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "exp": datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def login(email: str, password: str) -> Dict[str, Any]:
    """Check credentials. The admin account comes from ADMIN_EMAIL/ADMIN_PASSWORD."""
    if email.lower() == storage.ADMIN_EMAIL.lower():
        if not secrets.compare_digest(password.encode(), ADMIN_PASSWORD.encode()):
            raise AuthenticationError("Invalid credentials")
        return admin_identity()
    return storage.authenticate_user(email, password)


def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Invalid Authorization header")
    try:
        payload = jwt.decode(token.strip(), JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("sub")
    if payload.get("role") == "admin" and user_id == ADMIN_ID:
        return admin_identity()
    try:
        user = storage.get_user(user_id or "")
    except NotFoundError:
        raise AuthenticationError("Invalid token user")
    if not user.get("is_active", True):
        raise ForbiddenError("Account is disabled")
    return user


def require_admin(user=Depends(get_current_user)):
    if user.get("role") != "admin":
        raise ForbiddenError("Admin only")
    return user


def require_vendor(user=Depends(get_current_user)):
    if user.get("role") != "vendor":
        raise ForbiddenError("Vendor only")
    return user


def require_customer(user=Depends(get_current_user)):
    # admin is not stored, so it has no cart or orders
    if user.get("role") == "admin":
        raise ForbiddenError("Not available for the admin account")
    return user

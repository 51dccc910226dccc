import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

import config

MANAGEMENT_ROLES = {"admin", "organizer"}
STAFF_ROLES = {"admin", "organizer", "staff"}
KNOWN_ROLES = STAFF_ROLES | {"attendee"}

bearer = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_TOKEN_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def hash_pin(pin: str) -> str:
    """Hex SHA-256 of a staff PIN.

    Unsalted so existing stored hashes stay comparable; PINs only authorize
    actions at a stand terminal, login always goes through the bearer token.
    """
    return hashlib.sha256(pin.encode("utf-8")).hexdigest()


def verify_pin(pin: str, hashed_pin: str) -> bool:
    return secrets.compare_digest(hash_pin(pin).encode("utf-8"), hashed_pin.encode("utf-8"))


def sign_value(raw_value: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_value.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signed_value(raw_value: str, signature: str, secret: str) -> bool:
    return secrets.compare_digest(sign_value(raw_value, secret).encode("utf-8"), signature.encode("utf-8"))


def get_current_actor(credentials: HTTPAuthorizationCredentials | None = Depends(bearer)) -> dict:
    if config.AUTH_DISABLED:
        return {"user_id": "00000000-0000-0000-0000-000000000000", "role": "admin"}
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        payload = jwt.decode(credentials.credentials, config.SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Token expired or invalid") from exc
    user_id: str | None = payload.get("sub")
    role: str | None = payload.get("role")
    if not user_id or role not in KNOWN_ROLES:
        raise HTTPException(status_code=401, detail="Invalid token")
    return {"user_id": user_id, "role": role}


def get_staff_actor(actor: dict = Depends(get_current_actor)) -> dict:
    if actor["role"] not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Staff access required")
    return actor


def get_manager_actor(actor: dict = Depends(get_current_actor)) -> dict:
    if actor["role"] not in MANAGEMENT_ROLES:
        raise HTTPException(status_code=403, detail="Organizer access required")
    return actor


def get_admin_actor(actor: dict = Depends(get_current_actor)) -> dict:
    if actor["role"] != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor

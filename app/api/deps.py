# app/api/deps.py
from __future__ import annotations

import re
from typing import Optional, Generator

from fastapi import Depends, Header, HTTPException
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import create_tenant_session
from app.services.requisition_guard import Caller


# =========================================================
# AUTH HELPERS
# =========================================================
def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _decode_token(raw_token: str) -> dict:
    try:
        return jwt.decode(raw_token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def _sanitize_tenant_code(code: str) -> str:
    c = (code or "").strip().lower()
    if not re.fullmatch(r"[a-z0-9_]{1,32}", c):
        raise HTTPException(status_code=401, detail="Invalid tenant in token")
    return c


def _as_int(v, label: str) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail=f"Invalid {label} in token")


def token_claims(authorization: Optional[str] = Header(None)) -> dict:
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing token")
    return _decode_token(raw)


def create_access_token(*, user_id: int, warehouse_id: Optional[int], tenant_code: str, **extra) -> str:
    """Issued by the identity service; kept here for tooling and tests."""
    claims = {"sub": str(user_id), "wid": warehouse_id, "tcode": tenant_code}
    claims.update(extra)
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


# =========================================================
# TENANT DB (per request)
# =========================================================
def get_db(claims: dict = Depends(token_claims)) -> Generator[Session, None, None]:
    tcode = claims.get("tcode")
    if not tcode:
        raise HTTPException(status_code=401, detail="Missing tenant in token")

    db_uri = settings.make_tenant_db_uri(_sanitize_tenant_code(tcode))

    db = create_tenant_session(db_uri)
    try:
        yield db
    finally:
        db.close()


# =========================================================
# CALLER (identity service supplies user + warehouse)
# =========================================================
def current_caller(claims: dict = Depends(token_claims)) -> Caller:
    user_id = _as_int(claims.get("sub"), "subject")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return Caller(user_id=user_id, warehouse_id=_as_int(claims.get("wid"), "warehouse"))

"""
Authentication utilities

Verifies Supabase-issued access tokens locally and resolves the caller to a
principal: {"id": <sub claim>, "email": <lower-cased email claim>}.
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import os
from typing import Dict, Optional, Set

security = HTTPBearer(auto_error=False)
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"


def jwt_secret() -> str:
    return os.environ.get("SUPABASE_JWT_SECRET", "")


def admin_emails() -> Set[str]:
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def verify_token(token: str) -> Dict[str, Optional[str]]:
    """Decode a bearer token into a principal, raising 401 on any failure."""
    secret = jwt_secret()
    if not secret:
        raise HTTPException(status_code=401, detail="Authentication is not configured")

    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    principal_id = payload.get("sub")
    if not principal_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    email = payload.get("email")
    return {"id": principal_id, "email": email.strip().lower() if email else None}


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Dict[str, Optional[str]]:
    """Verify JWT token and return the calling principal"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return verify_token(credentials.credentials)


async def get_admin_principal(principal: dict = Depends(get_current_principal)):
    """Check if principal is admin"""
    if not principal.get("email") or principal["email"] not in admin_emails():
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal

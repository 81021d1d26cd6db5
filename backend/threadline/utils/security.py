"""
Identity resolution.

Account holders present a bearer token issued by the identity provider;
everyone else is identified by their anonymous session token.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from fastapi import Cookie, Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..schemas.quota import Identity


ANON_COOKIE = "anon_session_id"

# HTTP Bearer for JWT; missing credentials fall through to the anonymous path
security = HTTPBearer(auto_error=False)


def create_access_token(subject: str, plan: str = "free", expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"sub": subject, "plan": plan, "exp": expire, "type": "access"}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Identity:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )
    return Identity.user(str(subject), plan=payload.get("plan") or "free")


async def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_session_id: Optional[str] = Header(default=None),
    anon_session_id: Optional[str] = Cookie(default=None, alias=ANON_COOKIE),
) -> Identity:
    """Resolve who is calling: bearer token first, then the anonymous session."""
    if credentials is not None:
        return decode_token(credentials.credentials)

    session_token = (x_session_id or anon_session_id or "").strip()
    if session_token:
        return Identity.anonymous(session_token[:128])

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Sign in or provide an anonymous session id"
    )

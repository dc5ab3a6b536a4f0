"""
Bearer JWT decoding for the research API. Tokens are issued by the account service
(shared secret); here we only read the user id and role claims.
"""
from datetime import timedelta
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from app.config import get_settings
from app.schemas.auth import TokenPayload
from app.utils.clock import utcnow

settings = get_settings()
security = HTTPBearer(auto_error=False)

ADMIN_ROLE = "ADMIN"


def create_access_token(user_id: str, role: str = "USER") -> str:
    expire = utcnow() + timedelta(
        minutes=settings.access_token_expire_minutes
    )
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> TokenPayload | None:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
        )
        return TokenPayload(
            sub=payload["sub"],
            role=payload.get("role", "USER"),
            exp=payload["exp"],
        )
    except (JWTError, KeyError):
        return None


def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> TokenPayload | None:
    """Anonymous callers are allowed (analytics user_id is nullable); a bad token is not."""
    if not credentials:
        return None
    payload = decode_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


def get_current_user(
    user: TokenPayload | None = Depends(get_optional_user),
) -> TokenPayload:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_current_user_admin(
    user: TokenPayload = Depends(get_current_user),
) -> TokenPayload:
    """User must be logged in and have ADMIN role."""
    if user.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admin can access.",
        )
    return user

# dashcore/security/jwt_utils.py
import jwt
from fastapi import HTTPException, status

from dashcore.config import Settings
from dashcore.models.identity import CurrentUser


def decode_token(token: str, settings: Settings) -> dict:
    """
    Decodes and validates a JWT (for WebSocket or headers).
    Raises 401 when invalid.
    """
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )


def user_from_claims(payload: dict, settings: Settings) -> CurrentUser:
    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token without subject",
        )
    scope = payload.get("scope")
    if scope not in settings.scopes:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown or missing scope",
        )
    return CurrentUser(id=str(payload["sub"]), role=str(payload.get("role", "")), scope=scope)


def get_current_user(authorization_header: str, settings: Settings) -> CurrentUser:
    """
    Takes the header: Authorization: Bearer <token>
    Validates it and returns the caller.
    Raises 401 if missing or invalid.
    """
    if not authorization_header:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )

    if not authorization_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format",
        )

    token = authorization_header.removeprefix("Bearer ").strip()
    return user_from_claims(decode_token(token, settings), settings)


def create_token(user_id: str, role: str, scope: str, settings: Settings) -> str:
    return jwt.encode(
        {"sub": user_id, "role": role, "scope": scope},
        settings.jwt_secret,
        algorithm=settings.jwt_alg,
    )

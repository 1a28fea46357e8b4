"""FastAPI auth dependencies.

Learn: used as Depends() in the notification API routes to resolve the
caller's recipient id from the Authorization header.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from pulse_notify.auth.jwt import TokenClaims, TokenValidator
from pulse_notify.errors import AuthError, ExpiredTokenError


def get_token_validator(request: Request) -> TokenValidator:
    """The validator owned by the running app."""
    return request.app.state.runtime.validator


def get_current_recipient(
    authorization: Optional[str] = Header(None),
    validator: TokenValidator = Depends(get_token_validator),
) -> TokenClaims:
    """Extract the caller identity (required — 401 if missing or bad)."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return validator.validate(authorization[7:])
    except AuthError as e:
        code = "TOKEN_EXPIRED" if isinstance(e, ExpiredTokenError) else "TOKEN_INVALID"
        raise HTTPException(
            status_code=401,
            detail={"message": str(e), "code": code},
            headers={"WWW-Authenticate": "Bearer"},
        )

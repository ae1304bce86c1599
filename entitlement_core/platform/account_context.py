"""
Authenticated account context.

Session issuance lives outside this service. Callers present a bearer JWT
signed with the shared AUTH_JWT_SECRET (HS256); its sub claim is the
account id. The account id is ALWAYS taken from the verified token, never
from the request body or query.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

logger = logging.getLogger(__name__)

AUTH_ALGORITHMS = ["HS256"]

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AccountContext:
    """Immutable account identity extracted from a verified JWT."""
    account_id: str
    email: Optional[str] = None


def decode_account_token(token: str, secret: str) -> AccountContext:
    """
    Verify a bearer token and extract the account.

    Raises:
        InvalidTokenError: Signature, expiry or claims invalid
    """
    claims = jwt.decode(
        token,
        key=secret,
        algorithms=AUTH_ALGORITHMS,
        options={"require": ["sub", "exp"]},
        leeway=60,
    )
    return AccountContext(account_id=str(claims["sub"]), email=claims.get("email"))


def get_account_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AccountContext:
    """
    FastAPI dependency returning the authenticated account.

    Raises 401 when the token is missing or invalid, 503 when no
    verification secret is configured.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    secret = request.app.state.settings.auth_jwt_secret
    if not secret:
        logger.error("AUTH_JWT_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication not configured",
        )

    try:
        return decode_account_token(credentials.credentials, secret)
    except ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except InvalidTokenError as e:
        logger.warning("Invalid bearer token", extra={"path": request.url.path, "error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

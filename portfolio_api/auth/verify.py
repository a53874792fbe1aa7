"""
verify.py
---------
Purpose:
    JWT verification for admin endpoints using the identity provider's JWKS.

Notes:
    - The JWKS client is created on first use, so the app starts without auth config.
    - Provides `auth_dependency` for protected routes.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from portfolio_api.config import settings
from portfolio_api.errors import ConfigurationError

ALLOWED_ALGORITHMS = ["RS256", "ES256"]

_jwk_client: PyJWKClient | None = None
_security = HTTPBearer()


def _get_jwk_client() -> PyJWKClient:
    global _jwk_client
    if _jwk_client is None:
        if not settings.AUTH_JWKS_URL:
            raise ConfigurationError("AUTH_JWKS_URL not configured")
        _jwk_client = PyJWKClient(settings.AUTH_JWKS_URL)
    return _jwk_client


def verify_jwt(token: str) -> dict:
    jwk_client = _get_jwk_client()
    try:
        signing_key = jwk_client.get_signing_key_from_jwt(token)
        decoded = jwt.decode(
            token,
            signing_key.key,
            algorithms=ALLOWED_ALGORITHMS,
            audience=settings.AUTH_AUDIENCE,
            issuer=settings.AUTH_ISSUER,
            options={
                "verify_exp": True,
                "verify_aud": bool(settings.AUTH_AUDIENCE),
                "verify_iss": bool(settings.AUTH_ISSUER),
            },
        )
        return decoded
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)

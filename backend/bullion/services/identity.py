"""Verified identity for cart, checkout and order endpoints.

Shoppers log in either with email/password (we issue an HS256 session token)
or through the federated wallet provider (which issues its own signed token).
Both paths are verified server-side and collapse onto the same account id,
derived from the verified email only.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from bullion.config import settings
from bullion.database import get_db
from bullion.services.account_service import ensure_account
from bullion.services.errors import Unauthenticated
from bullion.utils.logger import logger

PASSWORD_AUTH_TYPE = "email"

_NON_ID_CHARS = re.compile(r"[^a-z0-9]")

bearer_scheme = HTTPBearer(auto_error=False)


def email_to_account_id(email: str) -> str:
    """jane.doe@x.com -> jane_doe_x_com"""
    return _NON_ID_CHARS.sub("_", email.lower())


@dataclass(frozen=True)
class VerifiedIdentity:
    account_id: str
    email: str
    wallet_address: Optional[str] = None
    auth_type: str = PASSWORD_AUTH_TYPE


class PasswordSessionVerifier:
    """Verifies session tokens issued by our own email/password login."""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self.secret = secret or settings.SESSION_JWT_SECRET
        self.algorithm = algorithm or settings.SESSION_JWT_ALGORITHM

    def verify(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as e:
            logger.warning(f"Session token rejected: {e}")
            raise Unauthenticated("Invalid or expired session")


class FederatedTokenVerifier:
    """Verifies tokens minted by the federated (wallet / Google) login provider."""

    def __init__(
        self,
        key: Optional[str] = None,
        algorithm: Optional[str] = None,
        audience: Optional[str] = None,
    ):
        self.key = key or settings.FEDERATED_JWT_KEY
        self.algorithm = algorithm or settings.FEDERATED_JWT_ALGORITHM
        self.audience = audience or settings.FEDERATED_JWT_AUDIENCE

    def verify(self, token: str) -> Dict[str, Any]:
        if not self.key:
            logger.error("FEDERATED_JWT_KEY is not configured; rejecting federated login")
            raise Unauthenticated("Federated login is not available")
        try:
            return jwt.decode(
                token,
                self.key,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"verify_aud": bool(self.audience)},
            )
        except JWTError as e:
            logger.warning(f"Federated token rejected: {e}")
            raise Unauthenticated("Invalid or expired session")


class IdentityResolver:
    def __init__(
        self,
        password_verifier: Optional[PasswordSessionVerifier] = None,
        federated_verifier: Optional[FederatedTokenVerifier] = None,
    ):
        self._password_verifier = password_verifier
        self._federated_verifier = federated_verifier

    def _verifier_for(self, auth_type: Optional[str]):
        if (auth_type or "").lower() == PASSWORD_AUTH_TYPE:
            return self._password_verifier or PasswordSessionVerifier()
        return self._federated_verifier or FederatedTokenVerifier()

    def resolve(
        self,
        auth_type: Optional[str],
        token: Optional[str],
        *,
        claimed_email: Optional[str] = None,
        claimed_account_id: Optional[str] = None,
    ) -> VerifiedIdentity:
        if not token:
            raise Unauthenticated("Authentication required")

        claims = self._verifier_for(auth_type).verify(token)
        email = claims.get("email")
        if not email or not isinstance(email, str):
            raise Unauthenticated("No verified email on session")

        account_id = email_to_account_id(email)

        if claimed_email and claimed_email.lower() != email.lower():
            logger.warning(f"Claimed email does not match session for account {account_id}")
            raise Unauthenticated("Session does not match requested account")
        if claimed_account_id and claimed_account_id != account_id:
            logger.warning(f"Claimed userId does not match session for account {account_id}")
            raise Unauthenticated("Session does not match requested account")

        return VerifiedIdentity(
            account_id=account_id,
            email=email,
            wallet_address=claims.get("wallet_address") or claims.get("walletAddress"),
            auth_type=(auth_type or "federated").lower(),
        )


identity_resolver = IdentityResolver()


def create_session_token(email: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a password-login session token for ``email``."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=7))
    to_encode = {"sub": email_to_account_id(email), "email": email, "exp": expire}
    return jwt.encode(to_encode, settings.SESSION_JWT_SECRET, algorithm=settings.SESSION_JWT_ALGORITHM)


async def _read_body_hints(request: Request) -> Dict[str, Any]:
    if request.method not in ("POST", "PUT", "DELETE", "PATCH"):
        return {}
    if "application/json" not in request.headers.get("content-type", ""):
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def get_verified_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> VerifiedIdentity:
    """FastAPI dependency: bearer token + authType hint -> VerifiedIdentity.

    authType/email/userId may arrive as query params, the JSON body, or (for
    authType) the ``X-Auth-Type`` header.
    """
    body = await _read_body_hints(request)
    params = request.query_params

    auth_type = params.get("authType") or request.headers.get("X-Auth-Type") or body.get("authType")
    claimed_email = params.get("email") or body.get("email")
    claimed_account_id = params.get("userId") or body.get("userId")

    identity = identity_resolver.resolve(
        auth_type,
        credentials.credentials if credentials else None,
        claimed_email=claimed_email if isinstance(claimed_email, str) else None,
        claimed_account_id=claimed_account_id if isinstance(claimed_account_id, str) else None,
    )
    ensure_account(db, identity)
    return identity

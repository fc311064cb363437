"""
JWT authentication for the chat gateway and REST API

Tokens come from the Authorization header (Bearer), the `token` query
parameter, or an `authenticate` WebSocket message. HS256 with a shared
secret by default; RS256 through a JWKS endpoint (e.g. Cognito) when
AUTH_JWKS_URL is set. The `sub` claim is the user id.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import jwt as pyjwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from ..config import settings
from ..errors import AuthenticationError


class TokenVerifier:
    """Validates access tokens and resolves the user id"""

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        jwks_url: Optional[str] = None,
        leeway: int = 10,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway
        self._jwks_client = pyjwt.PyJWKClient(jwks_url) if jwks_url else None

    @classmethod
    def from_settings(cls) -> "TokenVerifier":
        return cls(
            secret=settings.JWT_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            jwks_url=settings.AUTH_JWKS_URL,
        )

    async def _signing_key(self, token: str) -> Any:
        if self._jwks_client is None:
            if not self.secret:
                logger.error("JWT_SECRET is empty, tokens cannot be verified")
                raise AuthenticationError()
            return self.secret
        # PyJWKClient fetches over blocking HTTP
        signing_key = await asyncio.to_thread(self._jwks_client.get_signing_key_from_jwt, token)
        return signing_key.key

    def _algorithms(self) -> List[str]:
        return ["RS256"] if self._jwks_client is not None else [self.algorithm]

    async def verify(self, token: Optional[str]) -> str:
        """
        Verify a token

        Returns:
            The user id (`sub` claim)

        Raises:
            AuthenticationError: missing, expired or invalid token
        """
        if not token:
            raise AuthenticationError("Authentication token required")
        try:
            key = await self._signing_key(token)
            payload: Dict[str, Any] = pyjwt.decode(
                token,
                key,
                algorithms=self._algorithms(),
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["exp", "sub"], "verify_aud": self.audience is not None},
            )
        except pyjwt.ExpiredSignatureError:
            logger.warning("JWT token expired")
            raise AuthenticationError("Authentication token expired")
        except (pyjwt.InvalidTokenError, pyjwt.PyJWKClientError) as e:
            logger.warning(f"JWT token invalid: {e}")
            raise AuthenticationError()

        user_id = str(payload["sub"]).strip()
        if not user_id:
            raise AuthenticationError()
        return user_id


def create_access_token(
    user_id: str,
    secret: Optional[str] = None,
    algorithm: Optional[str] = None,
    expires_minutes: int = 60,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """Issue an HS256 token (local development and tests)"""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": str(user_id), "exp": int(expire.timestamp())}
    payload.update(extra_claims or {})
    return pyjwt.encode(payload, secret or settings.JWT_SECRET, algorithm=algorithm or settings.JWT_ALGORITHM)


def extract_token(headers: Mapping[str, str], query_params: Mapping[str, str]) -> Optional[str]:
    """Bearer token from the Authorization header, else the `token` query parameter"""
    authorization = headers.get("authorization") or ""
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    token = query_params.get("token")
    return token.strip() if token and token.strip() else None


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency: authenticated user id or 401"""
    verifier: TokenVerifier = request.app.state.token_verifier
    try:
        return await verifier.verify(credentials.credentials if credentials else None)
    except AuthenticationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_event(), headers={"WWW-Authenticate": "Bearer"})

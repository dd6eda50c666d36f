"""Authentication module for bearer tokens issued by the identity provider.

This module provides:
1. JWT validation against the identity provider's signing secret
2. Mirroring of authenticated accounts into the ledger's users table
3. FastAPI dependencies for protecting routes
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from ledger.errors import IntegrityError, UnauthenticatedError
from ledger.models import User
from ledger.store import LedgerStore
from rpc.erc20 import normalize_address

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base exception for authentication errors."""
    pass


class TokenExpiredError(AuthError):
    """Raised when a token has expired."""
    pass


class InvalidTokenError(AuthError):
    """Raised when a token is malformed, badly signed or missing claims."""
    pass


class TokenValidator:
    """Validates identity-provider JWTs."""

    def __init__(self, secret: str, algorithm: str = "HS256", audience: Optional[str] = None):
        if not secret:
            raise ValueError("jwt_secret must be configured")
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience or None

    def decode(self, token: str) -> Dict[str, Any]:
        """Decode and verify a token.

        Returns:
            The token claims; ``sub`` is always present

        Raises:
            TokenExpiredError: If the token has expired
            InvalidTokenError: If verification fails
        """
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={'verify_aud': self.audience is not None}
            )
        except ExpiredSignatureError as e:
            raise TokenExpiredError("Token has expired") from e
        except JWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        if not claims.get('sub'):
            raise InvalidTokenError("Token has no subject")
        return claims


class AuthManager:
    """Resolves bearer tokens to ledger users."""

    def __init__(self, store: LedgerStore, validator: TokenValidator):
        self.store = store
        self.validator = validator

    @staticmethod
    def _wallet_claim(claims: Dict[str, Any]) -> Optional[str]:
        """The token's wallet_address claim, normalized, or None if absent or invalid."""
        wallet = claims.get('wallet_address')
        if not wallet:
            return None
        try:
            return normalize_address(wallet)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid wallet_address claim for {claims.get('sub')}: {wallet!r}")
            return None

    async def authenticate(self, token: str) -> User:
        """Validate a token and return the matching user, creating it on first sight.

        Raises:
            AuthError: If the token is not valid
        """
        claims = self.validator.decode(token)
        user_id = str(claims['sub'])

        user = await self.store.get_user(user_id)
        if user is None:
            try:
                user = await self.store.create_user(User(
                    id=user_id,
                    name=claims.get('name'),
                    email=claims.get('email'),
                    wallet_address=self._wallet_claim(claims)
                ))
                logger.info(f"Registered user {user_id} from identity provider")
            except IntegrityError:
                # Another request registered the same user first
                user = await self.store.get_user(user_id)
        return user


# FastAPI security scheme; missing credentials are reported by the dependencies
auth_scheme = HTTPBearer(
    auto_error=False,
    description="Identity provider JWT required"
)


def _manager(request: Request) -> AuthManager:
    return request.app.state.services.auth


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme)
) -> User:
    """FastAPI dependency for getting the authenticated user.

    Raises:
        UnauthenticatedError: If the token is missing or invalid
    """
    if credentials is None:
        raise UnauthenticatedError("Unauthorized")
    try:
        return await _manager(request).authenticate(credentials.credentials)
    except AuthError as e:
        logger.debug(f"Rejected bearer token: {e}")
        raise UnauthenticatedError(str(e)) from e


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme)
) -> Optional[User]:
    """Like get_current_user, but anonymous requests get None."""
    if credentials is None:
        return None
    return await get_current_user(request, credentials)


# Export public interface
__all__ = [
    'AuthManager',
    'TokenValidator',
    'get_current_user',
    'get_optional_user',
    'auth_scheme',
    'AuthError',
    'TokenExpiredError',
    'InvalidTokenError'
]

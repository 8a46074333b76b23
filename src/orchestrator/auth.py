"""Authentication for the response gateway.

Verifies bearer JWTs and turns them into the caller's identity. The
owner id of every aggregate comes from here and is trusted as given.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from shared.logging import get_logger
from shared.models import UserContext

logger = get_logger(__name__)

ALGORITHM = "HS256"


class TokenData(BaseModel):
    """Data extracted from JWT token."""
    user_id: str
    username: str = ""
    email: Optional[str] = None
    roles: list[str] = []
    client_id: Optional[str] = None


class AuthConfig(BaseModel):
    """Authentication configuration."""
    secret_key: str
    token_expire_minutes: int = 60
    trusted_clients: list[str] = ["frontend", "cli"]
    require_auth: bool = True
    default_owner_id: str = "anonymous"


class AuthMiddleware:
    """
    Bearer token authentication.

    When authentication is disabled every request acts as the configured
    default owner.
    """

    def __init__(self, config: AuthConfig) -> None:
        self.config = config

    def create_token(self, user: UserContext, client_id: str = "frontend") -> str:
        """
        Create a JWT token for a user.

        Args:
            user: User context
            client_id: Client identifier (must be trusted)

        Returns:
            JWT token string
        """
        expire = datetime.utcnow() + timedelta(minutes=self.config.token_expire_minutes)

        payload = {
            "sub": user.user_id,
            "username": user.username,
            "email": user.email,
            "roles": user.roles,
            "client_id": client_id,
            "exp": expire,
        }

        return jwt.encode(payload, self.config.secret_key, algorithm=ALGORITHM)

    def verify_token(self, token: str) -> TokenData:
        """
        Verify and decode a JWT token.

        Raises:
            HTTPException: If token is invalid, expired or from an untrusted client
        """
        try:
            payload = jwt.decode(token, self.config.secret_key, algorithms=[ALGORITHM])
        except JWTError as e:
            logger.warning("Token verification failed", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        token_data = TokenData(
            user_id=payload.get("sub") or "",
            username=payload.get("username") or "",
            email=payload.get("email"),
            roles=payload.get("roles") or [],
            client_id=payload.get("client_id"),
        )

        if not token_data.user_id:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has no subject",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if token_data.client_id not in self.config.trusted_clients:
            logger.warning("Untrusted client attempted access", client_id=token_data.client_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Untrusted client"
            )

        return token_data

    def authenticate(
        self,
        credentials: Optional[HTTPAuthorizationCredentials]
    ) -> UserContext:
        """Resolve the caller for a request."""
        if not self.config.require_auth:
            return UserContext(
                user_id=self.config.default_owner_id,
                username=self.config.default_owner_id,
                roles=["user"],
            )

        if not credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        token_data = self.verify_token(credentials.credentials)
        return UserContext(
            user_id=token_data.user_id,
            username=token_data.username,
            email=token_data.email,
            roles=token_data.roles,
        )

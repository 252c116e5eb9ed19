from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from .errors import AuthenticationFailed
from .models import User
from .repo import UsersRepo
from ..utils.logger import setup_logger

logger = setup_logger('chatcore.auth')


class TokenAuthority:
    """Issues and validates the credential tokens presented at handshake.

    Tokens are JWTs signed with the shared secret and carry the user id
    (``sub``), the email and an expiry.
    """

    def __init__(self, secret: str, users: UsersRepo, algorithm: str = "HS256",
                 ttl: timedelta = timedelta(days=1)):
        self.secret = secret
        self.users = users
        self.algorithm = algorithm
        self.ttl = ttl

    def issue(self, user: User, expires_delta: Optional[timedelta] = None) -> str:
        expire = datetime.now(timezone.utc) + (expires_delta if expires_delta is not None else self.ttl)
        claims = {"sub": user.user_id, "email": user.email, "exp": expire}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        """Check signature and expiry.

        Raises:
            AuthenticationFailed: If the token is missing, malformed, badly signed or expired
        """
        if not token:
            raise AuthenticationFailed("No token provided")
        if not isinstance(token, str):
            raise AuthenticationFailed("Invalid token")
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm],
                              options={"require": ["sub", "exp"]})
        except jwt.ExpiredSignatureError:
            raise AuthenticationFailed("Token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"Rejected token: {e}")
            raise AuthenticationFailed("Invalid token")

    async def authenticate(self, token: str) -> User:
        """Resolve a token to an existing user record."""
        claims = self.decode(token)
        user = await self.users.get(claims["sub"])
        if user is None:
            logger.warning(f"Token for unknown user {claims['sub']}")
            raise AuthenticationFailed("User not found")
        return user

"""
Token issuance: checks the configured admin credentials and signs a JWT.
bcrypt is CPU-bound, so verification runs in the default executor.
"""

import asyncio
import hmac
import logging

from core.config import Settings
from core.errors import UnauthorizedError
from core.security import create_access_token, verify_password
from models.schemas import TokenResponse


class AuthService:
    """Stateless: everything it needs comes from Settings."""

    def __init__(self, settings: Settings, logger: logging.Logger):
        self.settings = settings
        self.logger = logger

    async def issue_token(self, username: str, password: str) -> TokenResponse:
        if not self.settings.ADMIN_USERNAME or not self.settings.ADMIN_PASSWORD_HASH:
            self.logger.warning("login_disabled", extra={"username": username})
            raise UnauthorizedError("Invalid credentials")

        loop = asyncio.get_running_loop()
        password_ok = await loop.run_in_executor(
            None, verify_password, password, self.settings.ADMIN_PASSWORD_HASH
        )
        user_ok = hmac.compare_digest(username.encode(), self.settings.ADMIN_USERNAME.encode())
        if not (user_ok and password_ok):
            self.logger.warning("login_failed", extra={"username": username})
            raise UnauthorizedError("Invalid credentials")

        token = create_access_token(username, self.settings)
        self.logger.info("token_issued", extra={"username": username})
        return TokenResponse(
            access_token=token,
            expires_in=self.settings.JWT_ACCESS_EXPIRE_MINUTES * 60,
        )

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from musichub.crosscutting.logging import log_with_fields
from musichub.domain.entities import AuthUser, SignUpResult
from musichub.domain.errors import AuthError, MusicHubError, RateLimited, ValidationError
from musichub.domain.normalization import clean_text
from musichub.domain.ports import IdentityProvider

from .scheduling import Cooldown


logger = logging.getLogger(__name__)

OAUTH_PROVIDERS = ('google', 'github', 'facebook')


class AuthService:
    """Caller-facing auth operations on top of the identity provider.

    Session state itself is never set here: the provider emits session events
    and the SessionGate reacts to them.
    """

    def __init__(self, provider: IdentityProvider, *, signup_cooldown_sec: int = 30,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._provider = provider
        self.signup_cooldown = Cooldown(signup_cooldown_sec, clock=clock)

    def sign_up_retry_in(self) -> int:
        """Seconds left before another sign-up is allowed (0 when allowed)."""
        return self.signup_cooldown.remaining_seconds()

    async def sign_up(self, email: str, password: str, confirm_password: Optional[str] = None,
                      metadata: Optional[Dict[str, Any]] = None) -> SignUpResult:
        remaining = self.sign_up_retry_in()
        if remaining > 0:
            raise RateLimited(retry_after_ms=remaining * 1000,
                              message=f"Please wait {remaining}s before signing up again")

        email = self._validate_credentials(email, password)
        if confirm_password is not None and confirm_password != password:
            raise ValidationError("Passwords do not match")

        try:
            result = await self._provider.sign_up(email, password, metadata)
        except MusicHubError:
            raise
        except Exception as e:
            raise AuthError(f"Sign-up failed: {e}") from e

        self.signup_cooldown.start()
        log_with_fields(logger, 'INFO', 'Sign-up accepted', {
            'session_active': result.session_active,
            'verification_pending': result.user is not None and not result.user.email_verified,
        })
        return result

    async def sign_in(self, email: str, password: str) -> AuthUser:
        email = self._validate_credentials(email, password)
        try:
            user = await self._provider.sign_in_with_password(email, password)
        except MusicHubError:
            raise
        except Exception as e:
            raise AuthError(f"Sign-in failed: {e}") from e
        logger.info("Signed in with password")
        return user

    async def sign_in_with_oauth(self, provider: str) -> str:
        """Return the authorize URL the host should open for provider."""
        provider = clean_text(provider).lower()
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider or '<empty>'}")
        try:
            return await self._provider.sign_in_with_oauth(provider)
        except MusicHubError:
            raise
        except Exception as e:
            raise AuthError(f"OAuth sign-in failed: {e}") from e

    async def sign_out(self) -> None:
        try:
            await self._provider.sign_out()
        except MusicHubError:
            raise
        except Exception as e:
            raise AuthError(f"Sign-out failed: {e}") from e
        logger.info("Signed out")

    @staticmethod
    def _validate_credentials(email: str, password: str) -> str:
        email = clean_text(email)
        if not email:
            raise ValidationError("Email is required")
        if not password:
            raise ValidationError("Password is required")
        return email

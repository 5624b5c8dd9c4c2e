"""Self-service TOTP enrollment, disable, and backup-code rotation."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import structlog

from storefront_auth.config import get_settings
from storefront_auth.core.rate_limit import RateLimiter, get_rate_limiter
from storefront_auth.core.sessions import Clock, utcnow
from storefront_auth.core.totp import (
    build_provisioning_uri,
    generate_backup_codes,
    generate_secret,
    hash_backup_code,
    verify_totp_code,
)
from storefront_auth.core.two_factor import TwoFactorEnrollment, TwoFactorStore, get_two_factor_store
from storefront_auth.errors import InvalidCodeError, RateLimitedError, TwoFactorStateError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    pending_confirmation: bool
    backup_codes_remaining: int


@dataclass(frozen=True)
class EnrollmentStart:
    """Secret material shown to the user exactly once."""

    secret: str
    provisioning_uri: str


class TwoFactorService:
    """Manage a user's enrollment lifecycle: begin, confirm, rotate, disable.

    Every code check here counts against one per-user rate-limit bucket.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        issuer_name: str,
        rate_limiter: RateLimiter,
        backup_code_count: int = 10,
        max_code_attempts: int = 5,
        code_window_seconds: int = 600,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._rate_limiter = rate_limiter
        self._max_code_attempts = max_code_attempts
        self._code_window_ms = code_window_seconds * 1000
        self._issuer_name = issuer_name
        self._backup_code_count = backup_code_count
        self._clock = clock

    async def get_status(self, user_id: str) -> TwoFactorStatus:
        enrollment = await self._store.get(user_id)
        if enrollment is None:
            return TwoFactorStatus(enabled=False, pending_confirmation=False, backup_codes_remaining=0)
        return TwoFactorStatus(
            enabled=enrollment.enabled,
            pending_confirmation=not enrollment.enabled,
            backup_codes_remaining=len(enrollment.backup_code_hashes),
        )

    async def begin_enrollment(self, user_id: str, account_label: str) -> EnrollmentStart:
        """Generate a fresh secret, replacing any unconfirmed one.

        Users who already have 2FA enabled must disable it first.
        """
        existing = await self._store.get(user_id)
        if existing is not None and existing.enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled.")
        secret = generate_secret()
        await self._store.save(TwoFactorEnrollment(user_id=user_id, secret=secret, enabled=False))
        logger.info("two_factor_enrollment_started", user_id=user_id)
        return EnrollmentStart(
            secret=secret,
            provisioning_uri=build_provisioning_uri(secret, account_label, self._issuer_name),
        )

    async def confirm_enrollment(self, user_id: str, code: str) -> list[str]:
        """Enable 2FA once the authenticator proves it holds the secret; returns backup codes."""
        enrollment = await self._store.get(user_id)
        if enrollment is None:
            raise TwoFactorStateError("Start enrollment before confirming it.")
        if enrollment.enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled.")
        await self._check_code(user_id, enrollment.secret, code, action="confirm")
        backup_codes = generate_backup_codes(self._backup_code_count)
        await self._store.save(
            TwoFactorEnrollment(
                user_id=user_id,
                secret=enrollment.secret,
                enabled=True,
                backup_code_hashes=tuple(hash_backup_code(item) for item in backup_codes),
            )
        )
        logger.info("two_factor_enabled", user_id=user_id)
        return backup_codes

    async def disable(self, user_id: str, code: str) -> None:
        """Remove the enrollment after a valid TOTP code."""
        enrollment = await self._require_enabled(user_id)
        await self._check_code(user_id, enrollment.secret, code, action="disable")
        await self._store.delete(user_id)
        logger.info("two_factor_disabled", user_id=user_id)

    async def regenerate_backup_codes(self, user_id: str, code: str) -> list[str]:
        """Replace every backup code; old ones stop working immediately."""
        enrollment = await self._require_enabled(user_id)
        await self._check_code(user_id, enrollment.secret, code, action="backup_codes")
        backup_codes = generate_backup_codes(self._backup_code_count)
        await self._store.save(
            TwoFactorEnrollment(
                user_id=user_id,
                secret=enrollment.secret,
                enabled=True,
                backup_code_hashes=tuple(hash_backup_code(item) for item in backup_codes),
            )
        )
        logger.info("two_factor_backup_codes_rotated", user_id=user_id)
        return backup_codes

    async def _check_code(self, user_id: str, secret: str, code: str, action: str) -> None:
        key = f"2fa-manage:{user_id}"
        if await self._rate_limiter.is_rate_limited(key, self._max_code_attempts, self._code_window_ms):
            logger.warning("two_factor_manage_rate_limited", user_id=user_id, action=action)
            raise RateLimitedError()
        if not verify_totp_code(secret, code, at=self._clock()):
            logger.warning("two_factor_manage_code_failed", user_id=user_id, action=action)
            raise InvalidCodeError()
        await self._rate_limiter.reset(key)

    async def _require_enabled(self, user_id: str) -> TwoFactorEnrollment:
        enrollment = await self._store.get(user_id)
        if enrollment is None or not enrollment.enabled:
            raise TwoFactorStateError("Two-factor authentication is not enabled.")
        return enrollment


@lru_cache
def get_two_factor_service() -> TwoFactorService:
    """Build and cache the enrollment service."""
    settings = get_settings()
    return TwoFactorService(
        store=get_two_factor_store(),
        issuer_name=settings.two_factor.issuer_name,
        rate_limiter=get_rate_limiter(),
        backup_code_count=settings.two_factor.backup_code_count,
        max_code_attempts=settings.two_factor.max_verify_attempts,
        code_window_seconds=settings.two_factor.verify_window_seconds,
    )

"""Login orchestration: credentials, optional TOTP challenge, and session issuance."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Literal

import structlog

from storefront_auth.config import get_settings
from storefront_auth.core.devices import (
    LocationDescriptor,
    LocationRangeEntry,
    detect_device,
    get_location_from_ip,
    parse_location_ranges,
)
from storefront_auth.core.pending import (
    PendingLoginStore,
    build_pending_login,
    get_pending_login_store,
)
from storefront_auth.core.rate_limit import RateLimiter, get_rate_limiter
from storefront_auth.core.sessions import (
    Clock,
    Session,
    SessionMetadata,
    SessionStore,
    get_session_store,
    utcnow,
)
from storefront_auth.core.tokens import TokenService, get_token_service
from storefront_auth.core.totp import hash_backup_code, verify_totp_code
from storefront_auth.core.two_factor import TwoFactorEnrollment, TwoFactorStore, get_two_factor_store
from storefront_auth.errors import (
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidOrExpiredChallengeError,
    InvalidTokenError,
    RateLimitedError,
    SessionNotFoundError,
    StoreUnavailableError,
)
from storefront_auth.middleware.metrics import DEFAULT_METRICS_REGISTRY, MetricsRegistry
from storefront_auth.services.credentials import CredentialVerifier, get_credential_verifier

logger = structlog.get_logger(__name__)


class LoginState(str, Enum):
    """Where a login attempt stands."""

    AWAITING_CREDENTIALS = "awaiting_credentials"
    CREDENTIALS_VERIFIED = "credentials_verified"
    TWO_FACTOR_PENDING = "two_factor_pending"
    SESSION_ACTIVE = "session_active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ClientContext:
    """Caller network identity captured from the request."""

    ip: str
    user_agent: str = ""


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login step that did not fail."""

    status: Literal["active", "2fa_required"]
    token: str
    user_id: str
    expires_in_seconds: int
    session_id: str | None = None
    pending_login_id: str | None = None

    @property
    def state(self) -> LoginState:
        if self.status == "active":
            return LoginState.SESSION_ACTIVE
        return LoginState.TWO_FACTOR_PENDING


@dataclass(frozen=True)
class SessionView:
    """A session as shown to its owner, flagged when it backs the current request."""

    session: Session
    is_current: bool


@dataclass(frozen=True)
class SessionIdentity:
    """Caller resolved from a valid session token backed by a live session."""

    user_id: str
    session_id: str
    role: str


class LoginService:
    """Drive a login from credentials to an active session."""

    def __init__(
        self,
        verifier: CredentialVerifier,
        session_store: SessionStore,
        pending_store: PendingLoginStore,
        two_factor_store: TwoFactorStore,
        rate_limiter: RateLimiter,
        token_service: TokenService,
        session_max_age_seconds: int,
        pending_ttl_seconds: int = 600,
        login_max_attempts: int = 5,
        login_window_seconds: int = 900,
        verify_max_attempts: int = 5,
        verify_window_seconds: int = 600,
        max_sessions_per_user: int | None = None,
        location_ranges: tuple[LocationRangeEntry, ...] = (),
        metrics: MetricsRegistry | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._verifier = verifier
        self._session_store = session_store
        self._pending_store = pending_store
        self._two_factor_store = two_factor_store
        self._rate_limiter = rate_limiter
        self._token_service = token_service
        self._session_max_age_seconds = session_max_age_seconds
        self._pending_ttl_seconds = pending_ttl_seconds
        self._login_max_attempts = login_max_attempts
        self._login_window_ms = login_window_seconds * 1000
        self._verify_max_attempts = verify_max_attempts
        self._verify_window_ms = verify_window_seconds * 1000
        self._max_sessions_per_user = max_sessions_per_user
        self._location_ranges = location_ranges
        self._metrics = metrics or DEFAULT_METRICS_REGISTRY
        self._clock = clock

    async def login(self, email: str, password: str, client: ClientContext) -> LoginResult:
        """Check primary credentials and either open a session or start a TOTP challenge.

        Both rate-limit keys are counted before the verifier is called, so a
        limited caller never reaches the identity system.
        """
        normalized_email = email.strip().lower()
        ip_limited = await self._rate_limiter.is_rate_limited(
            f"login:ip:{client.ip}", self._login_max_attempts, self._login_window_ms
        )
        email_limited = await self._rate_limiter.is_rate_limited(
            f"login:email:{normalized_email}", self._login_max_attempts, self._login_window_ms
        )
        if ip_limited or email_limited:
            logger.warning("login_rate_limited", ip=client.ip, by_ip=ip_limited)
            self._metrics.record_login_outcome("rate_limited")
            raise RateLimitedError()

        try:
            identity = await self._verifier.verify_primary_credentials(normalized_email, password)
        except InvalidCredentialsError:
            logger.warning("login_failed", ip=client.ip, reason="invalid_credentials")
            self._metrics.record_login_outcome("invalid_credentials")
            raise

        enrollment = await self._two_factor_store.get(identity.user_id)
        if enrollment is not None and enrollment.requires_code:
            pending = build_pending_login(
                user_id=identity.user_id,
                email=identity.email,
                role=identity.role,
                credential_proof=identity.credential_proof,
                ttl_seconds=self._pending_ttl_seconds,
                now=self._clock(),
            )
            await self._pending_store.save(pending)
            token = self._token_service.issue_challenge_token(
                user_id=identity.user_id,
                pending_login_id=pending.id,
                expires_in_seconds=self._pending_ttl_seconds,
            )
            logger.info("login_two_factor_required", user_id=identity.user_id)
            self._metrics.record_login_outcome("2fa_required")
            return LoginResult(
                status="2fa_required",
                token=token,
                user_id=identity.user_id,
                expires_in_seconds=self._pending_ttl_seconds,
                pending_login_id=pending.id,
            )

        session = await self._open_session(identity.user_id, client)
        await self._rate_limiter.reset(f"login:email:{normalized_email}")
        logger.info("login_succeeded", user_id=identity.user_id, session_id=session.id)
        self._metrics.record_login_outcome("active")
        return self._active_result(session, identity.role)

    async def verify_two_factor(
        self, challenge_token: str, code: str, client: ClientContext
    ) -> LoginResult:
        """Finish a pending login with a TOTP or backup code.

        A wrong code leaves the pending login in place; a correct one takes it
        atomically, so only one caller can ever turn it into a session.
        """
        try:
            claims = self._token_service.verify_challenge_token(challenge_token)
        except InvalidTokenError as exc:
            self._metrics.record_login_outcome("invalid_challenge")
            raise InvalidOrExpiredChallengeError() from exc

        pending = await self._pending_store.get(claims.pending_login_id)
        if pending is None or pending.user_id != claims.user_id:
            logger.warning("two_factor_challenge_expired", user_id=claims.user_id)
            self._metrics.record_login_outcome("invalid_challenge")
            raise InvalidOrExpiredChallengeError()

        if await self._rate_limiter.is_rate_limited(
            f"2fa:{pending.id}", self._verify_max_attempts, self._verify_window_ms
        ):
            logger.warning("two_factor_rate_limited", user_id=pending.user_id)
            self._metrics.record_login_outcome("rate_limited")
            raise RateLimitedError()

        enrollment = await self._two_factor_store.get(pending.user_id)
        if enrollment is None or not enrollment.requires_code:
            self._metrics.record_login_outcome("invalid_challenge")
            raise InvalidOrExpiredChallengeError()

        if not await self._code_matches(enrollment, code):
            logger.warning("two_factor_failed", user_id=pending.user_id, ip=client.ip)
            self._metrics.record_login_outcome("invalid_code")
            raise InvalidCodeError()

        consumed = await self._pending_store.consume(pending.id)
        if consumed is None:
            self._metrics.record_login_outcome("invalid_challenge")
            raise InvalidOrExpiredChallengeError()

        session = await self._open_session(consumed.user_id, client)
        await self._rate_limiter.reset(f"login:email:{consumed.email.strip().lower()}")
        logger.info("two_factor_verified", user_id=consumed.user_id, session_id=session.id)
        self._metrics.record_login_outcome("2fa_verified")
        return self._active_result(session, consumed.role)

    async def logout(self, session_token: str | None) -> bool:
        """Revoke the token's session if there is one; never fails the caller."""
        if not session_token:
            return False
        try:
            claims = self._token_service.verify_session_token(session_token)
        except InvalidTokenError:
            return False
        try:
            revoked = await self._session_store.revoke_session(claims.user_id, claims.session_id)
        except StoreUnavailableError:
            logger.warning("logout_revoke_failed", user_id=claims.user_id)
            return False
        if revoked:
            logger.info("logout_succeeded", user_id=claims.user_id, session_id=claims.session_id)
        return revoked

    async def get_current_identity(
        self, session_token: str, record_activity: bool = True
    ) -> SessionIdentity | None:
        """Resolve a session token to a caller while its session is still live."""
        try:
            claims = self._token_service.verify_session_token(session_token)
        except InvalidTokenError:
            return None
        session = await self._session_store.get_session(claims.user_id, claims.session_id)
        if session is None:
            return None
        if record_activity:
            await self._session_store.update_session_activity(claims.user_id, claims.session_id)
        return SessionIdentity(
            user_id=claims.user_id, session_id=claims.session_id, role=claims.role
        )

    async def record_activity(self, user_id: str, session_id: str) -> None:
        await self._session_store.update_session_activity(user_id, session_id)

    async def list_sessions(
        self, user_id: str, current_session_id: str | None = None
    ) -> list[SessionView]:
        """Live sessions, most recently active first."""
        sessions = await self._session_store.get_user_sessions(user_id)
        return [SessionView(session=item, is_current=item.id == current_session_id) for item in sessions]

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        """Revoke one session of the user or raise SessionNotFoundError."""
        if not await self._session_store.revoke_session(user_id, session_id):
            raise SessionNotFoundError()
        logger.info("session_revoked", user_id=user_id, session_id=session_id)

    async def revoke_other_sessions(self, user_id: str, current_session_id: str | None) -> int:
        """Sign out every other device of the user."""
        revoked = await self._session_store.revoke_all_sessions(
            user_id, except_session_id=current_session_id
        )
        logger.info("sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    async def _open_session(self, user_id: str, client: ClientContext) -> Session:
        metadata = SessionMetadata(
            device=detect_device(client.user_agent),
            location=get_location_from_ip(client.ip, self._location_ranges),
            ip=client.ip,
            user_agent=client.user_agent,
        )
        return await self._session_store.create_session(
            user_id, metadata, max_sessions=self._max_sessions_per_user
        )

    async def _code_matches(self, enrollment: TwoFactorEnrollment, code: str) -> bool:
        """Accept a current TOTP code, or burn an unused backup code."""
        candidate = code.strip().replace(" ", "")
        if verify_totp_code(enrollment.secret, candidate, at=self._clock()):
            return True
        if not candidate:
            return False
        return await self._two_factor_store.consume_backup_code(
            enrollment.user_id, hash_backup_code(candidate)
        )

    def _active_result(self, session: Session, role: str) -> LoginResult:
        token = self._token_service.issue_session_token(
            user_id=session.user_id,
            session_id=session.id,
            expires_in_seconds=self._session_max_age_seconds,
            role=role,
        )
        return LoginResult(
            status="active",
            token=token,
            user_id=session.user_id,
            expires_in_seconds=self._session_max_age_seconds,
            session_id=session.id,
        )


@lru_cache
def get_login_service() -> LoginService:
    """Build and cache the login service from application settings."""
    settings = get_settings()
    return LoginService(
        verifier=get_credential_verifier(),
        session_store=get_session_store(),
        pending_store=get_pending_login_store(),
        two_factor_store=get_two_factor_store(),
        rate_limiter=get_rate_limiter(),
        token_service=get_token_service(),
        session_max_age_seconds=settings.sessions.max_age_seconds,
        pending_ttl_seconds=settings.two_factor.pending_login_ttl_seconds,
        login_max_attempts=settings.rate_limit.login_max_attempts,
        login_window_seconds=settings.rate_limit.login_window_seconds,
        verify_max_attempts=settings.two_factor.max_verify_attempts,
        verify_window_seconds=settings.two_factor.verify_window_seconds,
        max_sessions_per_user=settings.sessions.max_sessions_per_user,
        location_ranges=parse_location_ranges(
            (
                entry.network,
                LocationDescriptor(city=entry.city, region=entry.region, country=entry.country),
            )
            for entry in settings.location_ranges
        ),
    )

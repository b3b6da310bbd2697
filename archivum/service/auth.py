from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Collection, List, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from archivum.config import Settings
from archivum.logging import get_logger
from archivum.service.email import EmailService
from archivum.service.errors import (
    DuplicateEmailError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTwoFactorCodeError,
    UnauthorizedError,
    UserNotFoundError,
)
from archivum.service.notifications import NotificationDispatcher
from archivum.service.role_cache import RoleCache
from archivum.service.tokens import TokenCodec, TokenKind
from archivum.service.totp import TOTPProvisioner
from archivum.storage.errors import ConstraintViolation
from archivum.storage.models import RefreshToken, Role, User, utcnow

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "invalid email or password"
_INVALID_TOKEN = "invalid or expired token"
_INVALID_CODE = "invalid two-factor code"
_FORBIDDEN = "forbidden"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        *,
        role: Role = Role.VISITOR,
        biography: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user_profile(
        self, user_id: str, *, name: Optional[str] = None, biography: Optional[str] = None
    ) -> Optional[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        biography: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Optional[User]: ...

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None: ...

    def set_two_factor_secret(
        self, user_id: str, secret: str, *, enabled: bool = False
    ) -> User: ...

    def enable_two_factor(self, user_id: str) -> bool: ...

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None: ...

    def find_user_by_reset_token(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def complete_password_reset(
        self, user_id: str, token: str, password_hash: str
    ) -> bool: ...

    def create_refresh_token(self, user_id: str, ttl_days: int = 30) -> RefreshToken: ...

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    kind: TokenKind
    role: Optional[Role] = None


@dataclass
class AuthenticatedSession:
    access_token: str
    refresh_token: str
    user: User


@dataclass
class SetupChallenge:
    temp_token: str
    secret: str
    qr_code: str


@dataclass
class TwoFactorChallenge:
    temp_token: str


LoginOutcome = Union[AuthenticatedSession, SetupChallenge, TwoFactorChallenge]


class AuthService:
    """Login state machine, refresh rotation, password reset and the auth gates.

    A login ends in exactly one of three outcomes: an authenticated session,
    a setup challenge (privileged account without confirmed 2FA) or a
    two-factor challenge (privileged account with 2FA enabled). Only the
    first carries an access token and a refresh token.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        role_cache: RoleCache,
        notifier: NotificationDispatcher,
        email: EmailService,
        codec: Optional[TokenCodec] = None,
        totp: Optional[TOTPProvisioner] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.role_cache = role_cache
        self.notifier = notifier
        self.email = email
        self.codec = codec or TokenCodec(settings)
        self.totp = totp or TOTPProvisioner(
            settings.totp_issuer, valid_window=settings.totp_valid_window
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both branches cost one argon2 run
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # -- passwords -------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: Optional[User], password: str) -> bool:
        stored_hash = user.password_hash if user and user.password_hash else self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHashError, VerificationError):
            matched = False
        if user is None:
            return False
        if not matched:
            self.logger.warning("password_verification_failed", user_id=user.id)
        return matched

    # -- session state machine -------------------------------------------

    def _issue_session(self, user: User) -> AuthenticatedSession:
        self.store.update_last_login(user.id)
        access_token = self.codec.issue_access(user.id, user.role)
        record = self.store.create_refresh_token(
            user.id, ttl_days=self.settings.refresh_token_ttl_days
        )
        self.role_cache.set(user.id, user.role)
        return AuthenticatedSession(
            access_token=access_token,
            refresh_token=record.token,
            user=self.store.get_user(user.id) or user,
        )

    def _begin_setup(self, user: User, *, reuse_secret: bool) -> SetupChallenge:
        existing = user.two_factor_secret if reuse_secret else None
        provisioning = self.totp.provision(user.email, existing)
        if existing is None:
            self.store.set_two_factor_secret(user.id, provisioning.secret, enabled=False)
        self.notifier.dispatch(
            "two_factor_setup",
            self.email.send_two_factor_setup_email,
            user.email,
            provisioning.secret,
            provisioning.qr_code,
        )
        self.logger.info(
            "two_factor_setup_issued", user_id=user.id, resent=existing is not None
        )
        return SetupChallenge(
            temp_token=self.codec.issue_setup(user.id),
            secret=provisioning.secret,
            qr_code=provisioning.qr_code,
        )

    async def login(self, email: str, password: str) -> LoginOutcome:
        user = self.store.get_user_by_email(email)
        if not self._verify_password(user, password):
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)

        if user.role.is_privileged:
            if not user.two_factor_secret:
                return self._begin_setup(user, reuse_secret=False)
            if not user.two_factor_enabled:
                # Resend from the stored secret so an enrolled authenticator keeps working
                return self._begin_setup(user, reuse_secret=True)
            self.logger.info("two_factor_challenge_issued", user_id=user.id)
            return TwoFactorChallenge(temp_token=self.codec.issue_pending(user.id))

        session = self._issue_session(user)
        self.logger.info("login_succeeded", user_id=user.id, role=int(user.role))
        return session

    async def verify_two_factor(self, ctx: AuthContext, code: str) -> AuthenticatedSession:
        if ctx.kind not in (TokenKind.SETUP, TokenKind.PENDING):
            raise ForbiddenError(_FORBIDDEN)
        user = self.store.get_user(ctx.user_id)
        if not user or not user.two_factor_secret:
            raise InvalidTwoFactorCodeError(_INVALID_CODE)
        if ctx.kind is TokenKind.PENDING and not user.two_factor_enabled:
            raise InvalidTwoFactorCodeError(_INVALID_CODE)
        if not self.totp.verify(user.two_factor_secret, code):
            self.logger.warning("two_factor_code_rejected", user_id=user.id, kind=ctx.kind.value)
            raise InvalidTwoFactorCodeError(_INVALID_CODE)

        if ctx.kind is TokenKind.SETUP and not user.two_factor_enabled:
            self.store.enable_two_factor(user.id)
            self.logger.info("two_factor_enabled", user_id=user.id)
        session = self._issue_session(user)
        self.logger.info("two_factor_verified", user_id=user.id, kind=ctx.kind.value)
        return session

    async def refresh(self, refresh_token: Optional[str]) -> AuthenticatedSession:
        if not refresh_token:
            raise InvalidOrExpiredTokenError(_INVALID_TOKEN)
        record = self.store.consume_refresh_token(refresh_token)
        if record is None:
            # Unknown, expired and replayed tokens are indistinguishable to the caller
            self.logger.warning("refresh_token_rejected")
            raise InvalidOrExpiredTokenError(_INVALID_TOKEN)
        user = self.store.get_user(record.user_id)
        if not user:
            raise InvalidOrExpiredTokenError(_INVALID_TOKEN)
        if user.role.is_privileged and not user.two_factor_enabled:
            self.logger.warning("refresh_requires_two_factor", user_id=user.id)
            raise ForbiddenError("two-factor authentication required")

        access_token = self.codec.issue_access(user.id, user.role)
        new_record = self.store.create_refresh_token(
            user.id, ttl_days=self.settings.refresh_token_ttl_days
        )
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return AuthenticatedSession(
            access_token=access_token, refresh_token=new_record.token, user=user
        )

    async def logout(self, refresh_token: Optional[str], *, user_id: Optional[str] = None) -> None:
        removed = bool(refresh_token) and self.store.delete_refresh_token(refresh_token)
        self.logger.info("logout", user_id=user_id, refresh_token_removed=removed)

    async def forgot_password(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email")
            return
        token = secrets.token_hex(32)
        expires_at = utcnow() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_password_reset_token(user.id, token, expires_at)
        self.notifier.dispatch(
            "password_reset", self.email.send_password_reset_email, user.email, token
        )
        self.logger.info("password_reset_requested", user_id=user.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        user = self.store.find_user_by_reset_token(token) if token else None
        if not user:
            raise InvalidOrExpiredTokenError(_INVALID_TOKEN, status_code=400)
        if not self.store.complete_password_reset(user.id, token, self._hash_password(new_password)):
            raise InvalidOrExpiredTokenError(_INVALID_TOKEN, status_code=400)
        self.role_cache.invalidate(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        biography: Optional[str] = None,
    ) -> User:
        try:
            user = self.store.create_user(
                email,
                name,
                self._hash_password(password),
                role=Role.VISITOR,
                biography=biography,
            )
        except ConstraintViolation as exc:
            raise DuplicateEmailError("email already registered") from exc
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def start_two_factor_setup(self, user_id: str) -> SetupChallenge:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError("user not found")
        return self._begin_setup(user, reuse_secret=False)

    # -- profile and administration --------------------------------------

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError("user not found")
        return user

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, biography: Optional[str] = None
    ) -> User:
        user = self.store.update_user_profile(user_id, name=name, biography=biography)
        if not user:
            raise UserNotFoundError("user not found")
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def create_user(
        self,
        actor_id: str,
        email: str,
        password: str,
        name: str,
        role: Role = Role.VISITOR,
        biography: Optional[str] = None,
    ) -> User:
        """Administrative account creation with an explicit role."""
        try:
            user = self.store.create_user(
                email,
                name,
                self._hash_password(password),
                role=Role.parse(role),
                biography=biography,
            )
        except ConstraintViolation as exc:
            raise DuplicateEmailError("email already registered") from exc
        self.logger.info(
            "user_created", actor_id=actor_id, user_id=user.id, role=int(user.role)
        )
        return user

    def update_user(
        self,
        actor_id: str,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        biography: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> User:
        try:
            user = self.store.update_user(
                user_id,
                email=email,
                name=name,
                biography=biography,
                role=Role.parse(role) if role is not None else None,
            )
        except ConstraintViolation as exc:
            raise DuplicateEmailError("email already registered") from exc
        if not user:
            raise UserNotFoundError("user not found")
        if role is not None:
            self.role_cache.invalidate(user_id)
        self.logger.info("user_updated", actor_id=actor_id, user_id=user_id)
        return user

    def set_user_role(self, actor_id: str, user_id: str, role: Role) -> User:
        user = self.store.update_user_role(user_id, Role.parse(role))
        if not user:
            raise UserNotFoundError("user not found")
        self.role_cache.invalidate(user_id)
        self.logger.info(
            "user_role_changed", actor_id=actor_id, user_id=user_id, role=int(user.role)
        )
        return user

    def delete_user(self, actor_id: str, user_id: str) -> None:
        if actor_id == user_id:
            raise ForbiddenError("cannot delete your own account")
        if not self.store.delete_user(user_id):
            raise UserNotFoundError("user not found")
        self.role_cache.invalidate(user_id)
        self.logger.info("user_deleted", actor_id=actor_id, user_id=user_id)

    def purge_expired_refresh_tokens(self) -> int:
        purged = self.store.purge_expired_refresh_tokens()
        if purged:
            self.logger.info("refresh_tokens_purged", count=purged)
        return purged

    # -- gates -----------------------------------------------------------

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(
        self, authorization: Optional[str], accepted: Collection[TokenKind]
    ) -> AuthContext:
        """Resolve the bearer token into an identity or raise ``ForbiddenError``.

        Setup and pending tokens are honoured only where ``accepted`` names
        them (the 2FA verification route); an access token additionally
        requires its subject to still exist.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise ForbiddenError(_FORBIDDEN)
        try:
            claims = self.codec.decode(token)
        except InvalidOrExpiredTokenError:
            raise ForbiddenError(_FORBIDDEN)

        if claims.kind is TokenKind.SETUP or claims.kind is TokenKind.PENDING:
            if claims.kind not in accepted:
                self.logger.warning(
                    "two_factor_token_misused", user_id=claims.user_id, kind=claims.kind.value
                )
                raise ForbiddenError(_FORBIDDEN)
            return AuthContext(user_id=claims.user_id, kind=claims.kind)
        elif claims.kind is TokenKind.ACCESS:
            if TokenKind.ACCESS not in accepted:
                raise ForbiddenError(_FORBIDDEN)
            if self.store.get_user(claims.user_id) is None:
                raise ForbiddenError(_FORBIDDEN)
            return AuthContext(user_id=claims.user_id, kind=claims.kind, role=claims.role)
        raise ForbiddenError(_FORBIDDEN)

    def authorize(
        self, ctx: Optional[AuthContext], allowed_roles: Collection[Role]
    ) -> Role:
        if ctx is None:
            raise UnauthorizedError("authentication required")
        role = self.role_cache.get(ctx.user_id)
        if role is None:
            user = self.store.get_user(ctx.user_id)
            if not user:
                raise ForbiddenError(_FORBIDDEN)
            role = user.role
            self.role_cache.set(ctx.user_id, role)
        if role not in allowed_roles:
            self.logger.warning(
                "role_forbidden", user_id=ctx.user_id, role=int(role)
            )
            raise ForbiddenError(_FORBIDDEN)
        return role

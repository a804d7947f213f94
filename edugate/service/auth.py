from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from edugate.config import Settings
from edugate.logging import get_logger
from edugate.service.errors import (
    AccountNotActiveError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    SessionExpiredError,
    UnauthenticatedError,
    ValidationError,
)
from edugate.service.policy import Role, ScopeKind, evaluate_access
from edugate.service.tokens import AuthClaims, TokenIssuer
from edugate.storage.errors import ConstraintViolation
from edugate.storage.models import Session, User

logger = get_logger(__name__)

_INVALID_CREDENTIALS = "Credencials invàlides"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: str,
        status: str = "ACTIVE",
        centre_id: Optional[str] = None,
        curs_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def touch_last_login(self, user_id: str, when: datetime) -> None: ...

    def delete_user(self, user_id: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> Session: ...

    def find_active_session(
        self, access_token: str, user_id: str, now: datetime
    ) -> Optional[Session]: ...

    def find_session_by_refresh_token(
        self, refresh_token: str, user_id: str, now: datetime
    ) -> Optional[Session]: ...

    def rotate_session(
        self, session_id: str, new_access_token: str
    ) -> Optional[Session]: ...

    def delete_sessions_by_refresh_token(self, refresh_token: str) -> int: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, before: datetime) -> int: ...


@dataclass
class AuthContext:
    """Identity attached to an authenticated request."""

    id: str
    email: str
    role: str
    centre_id: Optional[str] = None
    curs_id: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class LoginResult:
    user: User
    session: Session
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass
class RegistrationRequest:
    email: str
    password: str
    first_name: str
    last_name: str
    role: str
    centre_id: Optional[str] = None
    curs_id: Optional[str] = None


class AuthService:
    """Credential verification, session lifecycle and request authentication."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: Optional[TokenIssuer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.tokens = tokens or TokenIssuer(settings, clock=clock)
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # verified on the unknown-email path so both failures cost the same
        self._dummy_hash = self._pwd_hasher.hash("edugate-timing-equaliser")
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # -- passwords ---------------------------------------------------------

    def hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def _check_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._check_hash(self._dummy_hash, password)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        if not self._check_hash(stored_hash, password):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False
        return True

    async def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = await asyncio.to_thread(self.hash_password, password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- credential verifier -----------------------------------------------

    async def verify_credentials(self, email: str, password: str) -> User:
        """Return the ACTIVE user owning ``email``/``password``.

        Unknown email and wrong password raise the same error with the same
        message so callers cannot enumerate accounts.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            await asyncio.to_thread(self._check_hash, self._dummy_hash, password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if not await asyncio.to_thread(self.verify_password, user.id, password):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", user_id=user.id)
            raise AccountNotActiveError("El compte no està actiu")
        return user

    # -- session lifecycle -------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        user = await self.verify_credentials(email, password)
        access_token = self.tokens.issue_access(user)
        refresh_token = self.tokens.issue_refresh(user)
        now = self._now()
        session = self.store.create_session(
            user.id,
            access_token,
            refresh_token,
            now + self.tokens.refresh_ttl,
        )
        self.store.touch_last_login(user.id, now)
        user.last_login = now
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return LoginResult(
            user=user,
            session=session,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.tokens.access_ttl_seconds,
        )

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[str, int]:
        """Exchange a refresh token for a new access token.

        The session row is the authority: a correctly signed, unexpired token
        whose session was deleted by logout or password change is rejected.
        """
        if not refresh_token:
            raise ValidationError("Refresh token és obligatori")
        claims = self.tokens.verify_refresh(refresh_token)
        now = self._now()
        session = self.store.find_session_by_refresh_token(
            refresh_token, claims.user_id, now
        )
        if not session:
            self.logger.info("refresh_rejected", reason="no_live_session", user_id=claims.user_id)
            raise SessionExpiredError("Sessió expirada")
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            self.logger.info("refresh_rejected", reason="inactive", user_id=claims.user_id)
            raise AccountNotActiveError("El compte no està actiu")
        access_token = self.tokens.issue_access(user)
        # concurrent refreshes on the same row are last-write-wins
        if not self.store.rotate_session(session.id, access_token):
            raise SessionExpiredError("Sessió expirada")
        self.logger.info("session_rotated", user_id=user.id, session_id=session.id)
        return access_token, self.tokens.access_ttl_seconds

    async def logout(self, refresh_token: Optional[str]) -> Optional[str]:
        """Delete sessions bound to ``refresh_token``; always succeeds.

        Returns the owning user id when the token could be attributed, for
        the audit trail.
        """
        if not refresh_token:
            return None
        user_id: Optional[str] = None
        try:
            user_id = self.tokens.verify_refresh(refresh_token).user_id
        except AuthenticationError:
            user_id = None
        removed = self.store.delete_sessions_by_refresh_token(refresh_token)
        self.logger.info("logout", user_id=user_id, sessions_removed=removed)
        return user_id if removed else None

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, count=removed)
        return removed

    def cleanup_expired_sessions(self) -> int:
        return self.store.delete_expired_sessions(self._now())

    # -- authorization guard -----------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthenticatedError("Token d'autenticació requerit")
        return self.authenticate_token(token)

    def authenticate_token(self, token: str) -> AuthContext:
        claims: AuthClaims = self.tokens.verify_access(token)
        user = self.store.get_user(claims.user_id)
        if not user or not user.is_active:
            raise UnauthenticatedError("Usuari no trobat o inactiu")
        session = self.store.find_active_session(token, user.id, self._now())
        if not session:
            raise SessionExpiredError("Sessió expirada")
        return AuthContext(
            id=user.id,
            email=user.email,
            role=user.role,
            centre_id=user.centre_id,
            curs_id=user.curs_id,
            session_id=session.id,
        )

    async def get_active_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise UnauthenticatedError("Usuari no trobat o inactiu")
        return user

    # -- account management ------------------------------------------------

    async def register(
        self, request: RegistrationRequest, *, created_by: AuthContext
    ) -> User:
        """Create a user on behalf of an authenticated admin."""
        if not evaluate_access(
            created_by.role, ScopeKind.ASSIGN_ROLE, request.role
        ).allowed:
            self.logger.warning(
                "register_role_escalation_blocked",
                caller_id=created_by.id,
                caller_role=created_by.role,
                requested_role=request.role,
            )
            raise ForbiddenError("No tens permisos per crear usuaris amb aquest rol")
        centre_id = request.centre_id
        if not centre_id and created_by.role != Role.SUPERADMIN.value:
            centre_id = created_by.centre_id
        if not evaluate_access(
            created_by.role, ScopeKind.CENTRE, centre_id, created_by.centre_id
        ).allowed:
            raise ForbiddenError("No tens accés a aquest centre")
        if self.store.get_user_by_email(request.email):
            raise ConflictError("L'email ja està registrat")
        pwd_hash, algo = await asyncio.to_thread(self.hash_password, request.password)
        try:
            user = self.store.create_user(
                request.email,
                request.first_name,
                request.last_name,
                role=request.role,
                centre_id=centre_id,
                curs_id=request.curs_id,
                created_by=created_by.id,
            )
        except ConstraintViolation as exc:
            raise ConflictError("L'email ja està registrat", detail=exc.detail)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info(
            "user_registered", user_id=user.id, role=user.role, created_by=created_by.id
        )
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and revoke every session of the user.

        Returns the number of sessions removed.
        """
        user = self.store.get_user(user_id)
        if not user:
            raise UnauthenticatedError("Usuari no trobat")
        if not await asyncio.to_thread(self.verify_password, user.id, current_password):
            raise ValidationError("Contrasenya actual incorrecta")
        await self.save_password(user.id, new_password)
        removed = await self.revoke_all_user_sessions(user.id)
        self.logger.info("password_changed", user_id=user.id, sessions_removed=removed)
        return removed

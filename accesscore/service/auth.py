from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from accesscore.config import Settings
from accesscore.logging import get_logger
from accesscore.service.clock import Clock, SystemClock
from accesscore.service.credentials import (
    Argon2PasswordVerifier,
    PasswordVerifier,
    hash_password,
)
from accesscore.service.errors import (
    AccountNotActive,
    ConflictError,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    MfaInvalidCode,
    MfaRequired,
    NotFoundError,
    SessionNotActive,
    TokenReuseDetected,
    ValidationError,
)
from accesscore.service.mfa import MfaGate
from accesscore.service.rbac import RbacResolver
from accesscore.service.refresh import RefreshTokenRotation
from accesscore.service.sessions import SessionCreate, SessionRegistry
from accesscore.service.tokens import AUDIENCE_ACCESS, TokenPair, TokenService
from accesscore.storage.errors import ConstraintViolation
from accesscore.storage.models import Principal, PrincipalStatus, Session

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
LOGOUT_REASON = "Logged out"
REUSE_REVOCATION_REASON = "Refresh token reuse detected"
DEACTIVATION_REASON = "Account deactivated"


class AuthStore(Protocol):
    def create_principal(
        self,
        email: str,
        *,
        tenant_id: Optional[str] = None,
        status: str = PrincipalStatus.PENDING.value,
        principal_id: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def list_principals(
        self, tenant_id: Optional[str] = None, limit: int = 100
    ) -> List[Principal]: ...

    def update_principal_status(
        self, principal_id: str, status: str, *, now=None
    ) -> Optional[Principal]: ...

    def save_password(
        self, principal_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, principal_id: str) -> Optional[Tuple[str, str]]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...


@dataclass
class AuthContext:
    principal_id: str
    email: Optional[str]
    tenant_id: Optional[str]
    role: Optional[str]
    session_id: Optional[str] = None
    mfa_verified: bool = False


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: TokenPair
    session: Optional[Session] = None
    mfa_verified: bool = False


class AuthService:
    """Login, refresh and logout on top of the token, session and MFA components.

    Every credential failure surfaces as the same ``InvalidCredentials``; the
    precise reason is only logged.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: TokenService,
        refresh: RefreshTokenRotation,
        sessions: SessionRegistry,
        mfa: MfaGate,
        rbac: RbacResolver,
        verifier: Optional[PasswordVerifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.refresh_tokens = refresh
        self.sessions = sessions
        self.mfa = mfa
        self.rbac = rbac
        self.verifier = verifier or Argon2PasswordVerifier()
        self.clock = clock or SystemClock()
        self.logger = logger

    # principals
    def register(
        self,
        email: str,
        password: str,
        *,
        tenant_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Principal:
        """Create a pending principal with an argon2id password hash."""
        if not email or "@" not in email:
            raise ValidationError("a valid email is required")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        try:
            principal = self.store.create_principal(email, tenant_id=tenant_id, meta=meta)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("email already registered")
            raise
        pwd_hash, algo = hash_password(self.verifier, password)
        self.store.save_password(principal.id, pwd_hash, algo)
        self.logger.info(
            "principal_registered", principal_id=principal.id, tenant_id=tenant_id
        )
        return principal

    def activate(self, principal_id: str) -> Principal:
        return self.set_status(principal_id, PrincipalStatus.ACTIVE.value)

    def set_status(self, principal_id: str, status: str) -> Principal:
        try:
            normalized = PrincipalStatus(status).value
        except ValueError:
            raise ValidationError("unknown principal status", detail={"status": status})
        updated = self.store.update_principal_status(
            principal_id, normalized, now=self.clock.now()
        )
        if updated is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        if normalized in (PrincipalStatus.SUSPENDED.value, PrincipalStatus.DELETED.value):
            self.sessions.revoke_all(principal_id, DEACTIVATION_REASON)
            self.refresh_tokens.revoke_all(principal_id)
        self.logger.info("principal_status_changed", principal_id=principal_id, status=normalized)
        return updated

    def change_password(self, principal_id: str, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        if self.store.get_principal(principal_id) is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        pwd_hash, algo = hash_password(self.verifier, password)
        self.store.save_password(principal_id, pwd_hash, algo)
        self.refresh_tokens.revoke_all(principal_id)
        self.logger.info("password_changed", principal_id=principal_id)

    def verify_password(self, principal_id: str, password: str) -> bool:
        record = self.store.get_password_record(principal_id)
        if not record:
            self.logger.warning("password_record_missing", principal_id=principal_id)
            return False
        stored_hash, algo = record
        if algo != self.verifier.algo:
            self.logger.warning("password_algo_mismatch", principal_id=principal_id, algo=algo)
            return False
        return self.verifier.verify(stored_hash, password)

    # login / refresh / logout
    async def login(
        self,
        email: str,
        password: str,
        mfa_code: Optional[str] = None,
        *,
        user_agent: str = "",
        ip_address: str = "",
        remember_me: bool = False,
        device_name: Optional[str] = None,
    ) -> LoginResult:
        principal = self.store.get_principal_by_email(email or "")
        if principal is None:
            self.logger.warning("login_failed", reason="unknown_email")
            raise InvalidCredentials()
        if not self.verify_password(principal.id, password or ""):
            self.logger.warning("login_failed", reason="bad_password", principal_id=principal.id)
            raise InvalidCredentials()
        if not principal.is_active:
            self.logger.warning(
                "login_failed",
                reason="account_not_active",
                principal_id=principal.id,
                status=principal.status,
            )
            raise AccountNotActive(detail={"status": principal.status})

        mfa_verified = False
        if self.settings.enable_mfa and principal.mfa_enabled:
            if not mfa_code:
                raise MfaRequired()
            # Raises MfaAttemptsExceeded while the principal is locked out
            if not await self.mfa.verify_for_login(principal, mfa_code):
                raise MfaInvalidCode()
            mfa_verified = True

        device_info = {"user_agent": user_agent or None, "ip_address": ip_address or None}
        issued = self.refresh_tokens.create(principal, device_info)
        session = self.sessions.create(
            SessionCreate(
                principal_id=principal.id,
                user_agent=user_agent,
                ip_address=ip_address,
                remember_me=remember_me,
                device_name=device_name,
                refresh_token_hash=issued.record.token_hash,
                meta={"mfa_verified": mfa_verified},
            )
        )
        if (session.meta or {}).get("mfa_verified") != mfa_verified:
            # Deduplicated onto an existing session; record this login's MFA state
            session = self.sessions.update(
                session.id, {"meta": {**(session.meta or {}), "mfa_verified": mfa_verified}}
            )
        tokens = self.tokens.issue_token_pair(
            self._access_claims(principal, session.id), issued.token
        )
        self.logger.info(
            "login_succeeded",
            principal_id=principal.id,
            session_id=session.id,
            mfa_verified=mfa_verified,
        )
        return LoginResult(
            principal=principal, tokens=tokens, session=session, mfa_verified=mfa_verified
        )

    async def refresh(
        self, refresh_token: str, *, device_info: Optional[Dict[str, Any]] = None
    ) -> LoginResult:
        """Rotate ``refresh_token`` and issue a fresh token pair.

        Presenting an already rotated token raises ``TokenReuseDetected``.
        The successor issued by the winning rotation stays valid unless
        ``revoke_chain_on_reuse`` is enabled.

        The token must still be the current one of a usable session. A token
        whose session is gone, or was re-bound by a later login from the same
        device, is revoked and refused.
        """
        try:
            principal = self.refresh_tokens.validate(refresh_token)
            if not principal.is_active:
                self.logger.warning(
                    "refresh_rejected", reason="account_not_active", principal_id=principal.id
                )
                raise AccountNotActive(detail={"status": principal.status})
            session = self._session_for_refresh(
                principal.id, self.refresh_tokens.hash_token(refresh_token)
            )
            if session is None:
                self.refresh_tokens.revoke_presented(refresh_token)
                self.logger.warning(
                    "refresh_rejected", reason="session_not_active", principal_id=principal.id
                )
                raise InvalidRefreshToken()
            rotated = self.refresh_tokens.rotate(refresh_token, principal, device_info)
        except TokenReuseDetected:
            self._handle_reuse(refresh_token)
            raise

        try:
            session = self.sessions.update(
                session.id, {"refresh_token_hash": rotated.record.token_hash}
            )
            session = self.sessions.touch(session.id)
        except SessionNotActive:
            # Revoked while rotating; the successor must not outlive it
            self.refresh_tokens.revoke(rotated.record.token_id)
            self.logger.warning(
                "refresh_rejected",
                reason="session_revoked_during_rotation",
                principal_id=principal.id,
                session_id=session.id,
            )
            raise InvalidRefreshToken()
        tokens = self.tokens.issue_token_pair(
            self._access_claims(principal, session.id), rotated.token
        )
        mfa_verified = bool((session.meta or {}).get("mfa_verified"))
        return LoginResult(
            principal=principal, tokens=tokens, session=session, mfa_verified=mfa_verified
        )

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer header (or bare access token) to an :class:`AuthContext`."""
        token = TokenService.extract_bearer(authorization) or authorization
        if not token or not TokenService.validate_token_format(token):
            raise InvalidToken()
        claims = self.tokens.verify(token, AUDIENCE_ACCESS)
        principal = self.store.get_principal(claims["sub"])
        if principal is None:
            raise InvalidToken()
        if not principal.is_active:
            raise AccountNotActive(detail={"status": principal.status})
        session_id = claims.get("sid")
        if not session_id:
            # Every access token is issued against a session
            self.logger.info("access_token_without_session", principal_id=principal.id)
            raise InvalidToken()
        session = self.store.get_session(session_id)
        if session is None or not session.is_usable(self.clock.now()):
            self.logger.info("access_token_session_inactive", session_id=session_id)
            raise InvalidToken("session is no longer active")
        if session.principal_id != principal.id:
            raise InvalidToken()
        mfa_verified = bool((session.meta or {}).get("mfa_verified"))
        return AuthContext(
            principal_id=principal.id,
            email=principal.email,
            tenant_id=principal.tenant_id,
            role=claims.get("role"),
            session_id=session_id,
            mfa_verified=mfa_verified,
        )

    async def logout(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session.refresh_token_hash:
            for record in self.refresh_tokens.list_active(session.principal_id):
                if record.token_hash == session.refresh_token_hash:
                    self.refresh_tokens.revoke(record.token_id)
        revoked = self.sessions.revoke(session_id, LOGOUT_REASON)
        self.logger.info("logout", principal_id=session.principal_id, session_id=session_id)
        return revoked

    async def logout_all(self, principal_id: str) -> Dict[str, int]:
        sessions = self.sessions.revoke_all(principal_id, LOGOUT_REASON)
        tokens = self.refresh_tokens.revoke_all(principal_id)
        return {"sessions_revoked": sessions, "refresh_tokens_revoked": tokens}

    def _access_claims(self, principal: Principal, session_id: str) -> Dict[str, Any]:
        highest = self.rbac.get_highest_role(principal.id)
        return {
            "sub": principal.id,
            "email": principal.email,
            "tenantId": principal.tenant_id,
            "role": highest.name if highest else None,
            "sid": session_id,
        }

    def _session_for_refresh(self, principal_id: str, token_hash: str) -> Optional[Session]:
        now = self.clock.now()
        for session in self.sessions.list_by_principal(principal_id):
            if session.refresh_token_hash == token_hash and session.is_usable(now):
                return session
        return None

    def _handle_reuse(self, refresh_token: str) -> None:
        if not self.settings.revoke_chain_on_reuse:
            return
        claims = self.tokens.decode_unsafe(refresh_token) or {}
        principal_id = claims.get("sub")
        if not principal_id:
            return
        self.refresh_tokens.revoke_all(principal_id)
        self.sessions.revoke_all(principal_id, REUSE_REVOCATION_REASON)
        self.logger.warning("refresh_family_revoked", principal_id=principal_id)

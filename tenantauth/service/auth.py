from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service import mfa
from tenantauth.service.audit import AuditEvent, AuditSink, LoggingAuditSink
from tenantauth.service.errors import (
    AccountLocked,
    ForbiddenError,
    InvalidCredentials,
    InvalidMfaToken,
    NotFoundError,
    RateLimitExceeded,
    TenantMismatch,
    TokenError,
    TokenRevoked,
    ValidationError,
)
from tenantauth.service.keys import TenantKeyStore
from tenantauth.service.passwords import PasswordHasher
from tenantauth.service.permissions import Permission, PermissionChecker, Role
from tenantauth.service.rate_limit import LoginRateLimiter
from tenantauth.service.resilience import ResiliencePolicy
from tenantauth.service.revocation import RevocationRegistry
from tenantauth.service.tokens import TokenIssuer
from tenantauth.storage.common import KeyValueCache
from tenantauth.storage.models import EncryptedField, TokenKind, User, UserStatus

logger = get_logger(__name__)

T = TypeVar("T")


class AuthStore(Protocol):
    def create_user(
        self,
        tenant_id: str,
        email: str,
        password_hash: str,
        *,
        role: str = "agent",
        status: UserStatus = UserStatus.ACTIVE,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]: ...

    def record_failed_login(self, user_id: str) -> int: ...

    def record_successful_login(self, user_id: str, at: Optional[datetime] = None) -> None: ...

    def update_password(self, user_id: str, password_hash: str) -> User: ...

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]: ...

    def set_mfa(
        self,
        user_id: str,
        secret: Optional[EncryptedField],
        backup_codes: Optional[EncryptedField],
        *,
        enabled: bool,
    ) -> User: ...


@dataclass
class LoginResult:
    status: str
    user: Optional[User] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"

    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"

    @property
    def authenticated(self) -> bool:
        return self.status == self.AUTHENTICATED

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": self.status}
        if self.user:
            data["user"] = self.user.public_view()
        if self.authenticated:
            data.update(
                access_token=self.access_token,
                refresh_token=self.refresh_token,
                token_type=self.token_type,
                expires_in=self.expires_in,
            )
        return data


@dataclass
class AuthContext:
    user_id: str
    tenant_id: str
    role: str
    token_id: str
    expires_at: int
    claims: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MfaSetup:
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


class AuthService:
    """Login, logout, refresh and validation for tenant-scoped accounts.

    Every store, cache and hashing call goes through ``ResiliencePolicy`` so
    backend trouble surfaces as ``AuthInfrastructureError`` and is never
    mistaken for a credential failure.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: KeyValueCache,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        tokens: Optional[TokenIssuer] = None,
        keys: Optional[TenantKeyStore] = None,
        revocations: Optional[RevocationRegistry] = None,
        rate_limiter: Optional[LoginRateLimiter] = None,
        policy: Optional[ResiliencePolicy] = None,
        totp: Optional[mfa.TotpVerifier] = None,
        permissions: Optional[PermissionChecker] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.tokens = tokens or TokenIssuer.from_settings(settings)
        self.keys = keys or TenantKeyStore(
            cache,
            rotation_interval_seconds=settings.key_rotation_interval_seconds,
            retention_versions=settings.key_retention_versions,
        )
        self.revocations = revocations or RevocationRegistry(cache)
        self.rate_limiter = rate_limiter or LoginRateLimiter(
            cache,
            max_attempts=settings.rate_limit_max_attempts,
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.policy = policy or ResiliencePolicy.from_settings(settings)
        self.totp = totp or mfa.TotpVerifier(skew_steps=settings.mfa_skew_steps)
        self.permissions = permissions or PermissionChecker()
        self.audit: AuditSink = audit or LoggingAuditSink()
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    # helpers
    async def _call(
        self, operation: str, factory: Callable[[], Awaitable[T]], *, retry: bool = True
    ) -> T:
        return await self.policy.run(operation, factory, retry=retry)

    async def _call_sync(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        return await self.policy.run_sync(operation, func, *args)

    def _emit(
        self,
        event: str,
        tenant_id: Optional[str],
        outcome: str,
        *,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.audit.emit(
            AuditEvent(
                event=event, tenant_id=tenant_id, outcome=outcome, user_id=user_id, reason=reason
            )
        )

    async def _burn_hash(self, password: str) -> None:
        """Verify against a throwaway hash so unknown users cost the same time."""
        if self._dummy_hash is None:
            self._dummy_hash = await self._call_sync(
                "password_hash", lambda: self.hasher.hash("Unused#Passw0rd", enforce_policy=False)
            )
        await self._call_sync("password_verify", self.hasher.verify, self._dummy_hash, password)

    async def _fail_login(
        self, tenant_id: str, principal: str, *, user_id: Optional[str], reason: str
    ) -> None:
        await self._call(
            "rate_limit_record", lambda: self.rate_limiter.record_attempt(tenant_id, principal)
        )
        self._emit("login", tenant_id, "failure", user_id=user_id, reason=reason)

    def _issue_pair(self, user: User) -> LoginResult:
        claims = {"userId": user.id, "tenantId": user.tenant_id, "role": user.role}
        return LoginResult(
            status=LoginResult.AUTHENTICATED,
            user=user,
            access_token=self.tokens.issue(TokenKind.ACCESS, claims),
            refresh_token=self.tokens.issue(TokenKind.REFRESH, claims),
            expires_in=self.tokens.ttl_for(TokenKind.ACCESS),
        )

    async def _load_user(self, user_id: str, tenant_id: str) -> User:
        user = await self._call_sync("credential_lookup", self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if user.tenant_id != tenant_id:
            raise TenantMismatch("user does not belong to this tenant")
        return user

    # login
    async def login(
        self,
        email: str,
        password: str,
        tenant_id: str,
        mfa_code: Optional[str] = None,
    ) -> LoginResult:
        if not tenant_id:
            raise ValidationError("tenant id is required", detail={"field": "tenant_id"})
        principal = (email or "").strip().lower()

        limited = await self._call(
            "rate_limit_check", lambda: self.rate_limiter.is_limited(tenant_id, principal)
        )
        if limited:
            retry_after = await self._call(
                "rate_limit_ttl", lambda: self.rate_limiter.retry_after(tenant_id, principal)
            )
            self.logger.warning("login_rate_limited", tenant_id=tenant_id)
            self._emit("login", tenant_id, "failure", reason="rate_limited")
            raise RateLimitExceeded(retry_after=retry_after)

        user = await self._call_sync(
            "credential_lookup", self.store.get_user_by_email, principal, tenant_id
        )
        if user is None or user.tenant_id != tenant_id:
            await self._burn_hash(password or "")
            await self._fail_login(tenant_id, principal, user_id=None, reason="unknown_user")
            raise InvalidCredentials()

        verified = await self._call_sync(
            "password_verify", self.hasher.verify, user.password_hash, password or ""
        )
        if not verified:
            await self._call_sync("record_failed_login", self.store.record_failed_login, user.id)
            await self._fail_login(tenant_id, principal, user_id=user.id, reason="bad_password")
            raise InvalidCredentials()

        if not user.is_active:
            self._emit("login", tenant_id, "failure", user_id=user.id, reason=user.status.value)
            raise AccountLocked(
                "account is not active", detail={"status": user.status.value}
            )

        if user.mfa_enabled:
            if not mfa_code:
                self._emit("login", tenant_id, "mfa_required", user_id=user.id)
                return LoginResult(status=LoginResult.MFA_REQUIRED)
            if not await self._verify_mfa(user, mfa_code):
                await self._call_sync(
                    "record_failed_login", self.store.record_failed_login, user.id
                )
                await self._fail_login(
                    tenant_id, principal, user_id=user.id, reason="invalid_mfa"
                )
                raise InvalidMfaToken()

        if self.hasher.needs_rehash(user.password_hash):
            upgraded = await self._call_sync(
                "password_hash", lambda: self.hasher.hash(password, enforce_policy=False)
            )
            await self._call_sync(
                "password_update", self.store.update_password, user.id, upgraded
            )
            self.logger.info("password_rehashed", user_id=user.id)

        result = self._issue_pair(user)
        await self._call_sync(
            "record_login",
            self.store.record_successful_login,
            user.id,
            datetime.now(timezone.utc),
        )
        await self._call("rate_limit_reset", lambda: self.rate_limiter.reset(tenant_id, principal))
        self._emit("login", tenant_id, "success", user_id=user.id)
        return result

    async def _verify_mfa(self, user: User, code: str) -> bool:
        if not user.mfa_secret:
            self.logger.warning("mfa_secret_missing", user_id=user.id)
            return False
        secret = await self._call(
            "mfa_secret_decrypt",
            lambda: self.keys.decrypt_field(user.mfa_secret, user.tenant_id),
        )
        if self.totp.verify(secret, code):
            return True
        if not user.mfa_backup_codes:
            return False
        raw_codes = await self._call(
            "mfa_backup_decrypt",
            lambda: self.keys.decrypt_field(user.mfa_backup_codes, user.tenant_id),
        )
        matched, remaining = mfa.consume_backup_code(json.loads(raw_codes), code)
        if not matched:
            return False
        claim_key = f"mfa:backup:{user.id}:{mfa.backup_code_digest(code)}"
        claimed = await self._call(
            "mfa_backup_claim",
            lambda: self.cache.set_if_absent(claim_key, "1"),
            retry=False,
        )
        if not claimed:
            self.logger.warning("mfa_backup_code_replayed", user_id=user.id)
            return False
        sealed = await self._call(
            "mfa_backup_encrypt",
            lambda: self.keys.encrypt_field(json.dumps(remaining), user.tenant_id),
        )
        await self._call_sync(
            "mfa_update",
            lambda: self.store.set_mfa(user.id, user.mfa_secret, sealed, enabled=True),
        )
        self.logger.info("mfa_backup_code_used", user_id=user.id, remaining=len(remaining))
        return True

    # logout / refresh
    async def logout(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        try:
            claims = self.tokens.verify(access_token, TokenKind.ACCESS)
        except TokenError as exc:
            self._emit("logout", None, "failure", reason=exc.error_code)
            raise
        tenant_id = claims["tenantId"]
        user_id = claims["userId"]
        await self._call(
            "revoke_access",
            lambda: self.revocations.revoke(
                TokenKind.ACCESS, claims["tokenId"], self.tokens.remaining_ttl(claims)
            ),
        )

        if refresh_token:
            try:
                refresh_claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
            except TokenError as exc:
                # Already unusable; nothing to revoke
                self.logger.info("logout_refresh_ignored", reason=exc.error_code)
                refresh_claims = None
            if refresh_claims and (
                refresh_claims["userId"] != user_id or refresh_claims["tenantId"] != tenant_id
            ):
                self.logger.warning("logout_refresh_owner_mismatch", tenant_id=tenant_id)
                refresh_claims = None
            if refresh_claims:
                await self._call(
                    "revoke_refresh",
                    lambda: self.revocations.revoke(
                        TokenKind.REFRESH,
                        refresh_claims["tokenId"],
                        self.tokens.remaining_ttl(refresh_claims),
                    ),
                )

        self._emit("logout", tenant_id, "success", user_id=user_id)

    async def refresh_token(self, refresh_token: str) -> LoginResult:
        """Exchange a refresh token for a new pair; each refresh token works once."""
        try:
            claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        except TokenError as exc:
            self._emit("refresh", None, "failure", reason=exc.error_code)
            raise
        tenant_id = claims["tenantId"]
        token_id = claims["tokenId"]

        if await self._call(
            "revocation_check", lambda: self.revocations.is_revoked(TokenKind.REFRESH, token_id)
        ):
            self._emit("refresh", tenant_id, "failure", user_id=claims["userId"], reason="revoked")
            raise TokenRevoked("refresh token has been revoked")

        user = await self._call_sync("credential_lookup", self.store.get_user, claims["userId"])
        if not user or user.tenant_id != tenant_id:
            self._emit("refresh", tenant_id, "failure", reason="tenant_mismatch")
            raise TenantMismatch("token does not match an account in this tenant")
        if not user.is_active:
            self._emit("refresh", tenant_id, "failure", user_id=user.id, reason=user.status.value)
            raise AccountLocked("account is not active", detail={"status": user.status.value})

        # Claim the old id before issuing; only one concurrent caller wins
        claimed = await self._call(
            "revoke_refresh",
            lambda: self.revocations.revoke(
                TokenKind.REFRESH, token_id, max(1, self.tokens.remaining_ttl(claims))
            ),
            retry=False,
        )
        if not claimed:
            self._emit("refresh", tenant_id, "failure", user_id=user.id, reason="reused")
            raise TokenRevoked("refresh token has already been used")

        result = self._issue_pair(user)
        self._emit("refresh", tenant_id, "success", user_id=user.id)
        return result

    # validation
    async def validate_token(self, access_token: str) -> bool:
        try:
            claims = self.tokens.verify(access_token, TokenKind.ACCESS)
        except TokenError as exc:
            self._emit("validate", None, "failure", reason=exc.error_code)
            return False
        revoked = await self._call(
            "revocation_check",
            lambda: self.revocations.is_revoked(TokenKind.ACCESS, claims["tokenId"]),
        )
        if revoked:
            self._emit(
                "validate", claims["tenantId"], "failure", user_id=claims["userId"], reason="revoked"
            )
        return not revoked

    async def authenticate(
        self,
        access_token: str,
        *,
        tenant_id: Optional[str] = None,
        required_permission: Optional[Permission | str] = None,
    ) -> AuthContext:
        try:
            claims = self.tokens.verify(access_token, TokenKind.ACCESS)
        except TokenError as exc:
            self._emit("authenticate", tenant_id, "failure", reason=exc.error_code)
            raise
        token_tenant = claims["tenantId"]
        if await self._call(
            "revocation_check",
            lambda: self.revocations.is_revoked(TokenKind.ACCESS, claims["tokenId"]),
        ):
            self._emit(
                "authenticate", token_tenant, "failure", user_id=claims["userId"], reason="revoked"
            )
            raise TokenRevoked("access token has been revoked")
        if tenant_id and tenant_id != token_tenant:
            self._emit(
                "authenticate",
                token_tenant,
                "failure",
                user_id=claims["userId"],
                reason="tenant_mismatch",
            )
            raise TenantMismatch("token was issued for another tenant")
        ctx = AuthContext(
            user_id=claims["userId"],
            tenant_id=claims["tenantId"],
            role=claims.get("role") or Role.VIEWER.value,
            token_id=claims["tokenId"],
            expires_at=int(claims["expiresAt"]),
            claims=claims,
        )
        if required_permission:
            try:
                self.permissions.require(ctx.role, [required_permission])
            except ForbiddenError:
                self._emit(
                    "authenticate", ctx.tenant_id, "failure", user_id=ctx.user_id, reason="forbidden"
                )
                raise
        return ctx

    # account management
    async def register_user(
        self,
        tenant_id: str,
        email: str,
        password: str,
        *,
        role: str = Role.AGENT.value,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        if not tenant_id:
            raise ValidationError("tenant id is required", detail={"field": "tenant_id"})
        if not email or "@" not in email:
            raise ValidationError("a valid email is required", detail={"field": "email"})
        try:
            role = Role(role).value
        except ValueError as exc:
            raise ValidationError("unknown role", detail={"role": role}) from exc
        password_hash = await self._call_sync("password_hash", self.hasher.hash, password)
        user = await self._call_sync(
            "create_user",
            lambda: self.store.create_user(
                tenant_id, email, password_hash, role=role, status=status
            ),
        )
        self._emit("register", tenant_id, "success", user_id=user.id)
        return user

    async def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        if not tenant_id:
            raise ValidationError("tenant id is required", detail={"field": "tenant_id"})
        limit = max(1, min(limit, 500))
        return await self._call_sync("list_users", self.store.list_users, tenant_id, limit)

    async def change_password(
        self, user_id: str, tenant_id: str, current_password: str, new_password: str
    ) -> User:
        user = await self._load_user(user_id, tenant_id)
        verified = await self._call_sync(
            "password_verify", self.hasher.verify, user.password_hash, current_password
        )
        if not verified:
            self._emit("password_change", tenant_id, "failure", user_id=user_id, reason="bad_password")
            raise InvalidCredentials("current password is incorrect")
        password_hash = await self._call_sync("password_hash", self.hasher.hash, new_password)
        updated = await self._call_sync(
            "password_update", self.store.update_password, user_id, password_hash
        )
        self._emit("password_change", tenant_id, "success", user_id=user_id)
        return updated

    async def setup_mfa(self, user_id: str, tenant_id: str) -> MfaSetup:
        user = await self._load_user(user_id, tenant_id)
        secret = mfa.generate_secret()
        backup_codes = mfa.generate_backup_codes()
        sealed_secret = await self._call(
            "mfa_secret_encrypt", lambda: self.keys.encrypt_field(secret, tenant_id)
        )
        sealed_codes = await self._call(
            "mfa_backup_encrypt",
            lambda: self.keys.encrypt_field(json.dumps(backup_codes), tenant_id),
        )
        await self._call_sync(
            "mfa_update",
            lambda: self.store.set_mfa(user.id, sealed_secret, sealed_codes, enabled=True),
        )
        self._emit("mfa_setup", tenant_id, "success", user_id=user_id)
        return MfaSetup(
            secret=secret,
            otpauth_uri=mfa.otpauth_uri(secret, user.email, self.settings.mfa_issuer),
            backup_codes=backup_codes,
        )

    async def disable_mfa(self, user_id: str, tenant_id: str) -> User:
        user = await self._load_user(user_id, tenant_id)
        updated = await self._call_sync(
            "mfa_update", lambda: self.store.set_mfa(user.id, None, None, enabled=False)
        )
        self._emit("mfa_disable", tenant_id, "success", user_id=user_id)
        return updated

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    """Account lifecycle states; transitions are admin actions."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING_ACTIVATION = "pending_activation"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass
class EncryptedField:
    """AES-GCM envelope for a tenant-encrypted value."""

    iv: str
    tag: str
    ciphertext: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iv": self.iv,
            "tag": self.tag,
            "ciphertext": self.ciphertext,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EncryptedField":
        return cls(
            iv=raw["iv"],
            tag=raw["tag"],
            ciphertext=raw["ciphertext"],
            version=int(raw["version"]),
        )


@dataclass
class User:
    id: str
    tenant_id: str
    email: str
    password_hash: str
    role: str = "agent"
    status: UserStatus = UserStatus.ACTIVE
    failed_login_attempts: int = 0
    password_changed_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[EncryptedField] = None
    mfa_backup_codes: Optional[EncryptedField] = None
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        tenant_id: str,
        email: str,
        password_hash: str,
        *,
        role: str = "agent",
        status: UserStatus = UserStatus.ACTIVE,
        meta: Dict | None = None,
    ) -> "User":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            email=email.strip().lower(),
            password_hash=password_hash,
            role=role,
            status=status,
            password_changed_at=now,
            created_at=now,
            meta=meta,
        )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def public_view(self) -> Dict[str, Any]:
        """User fields safe to hand back to a client."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "role": self.role,
            "status": self.status.value,
            "mfa_enabled": self.mfa_enabled,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class TenantKeyRecord:
    tenant_id: str
    key: str  # base64-encoded 256-bit AES key
    version: int
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "key": self.key,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TenantKeyRecord":
        created = datetime.fromisoformat(raw["created_at"])
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return cls(
            tenant_id=raw["tenant_id"],
            key=raw["key"],
            version=int(raw["version"]),
            created_at=created,
        )

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import EncryptedField, User, UserStatus


class MemoryStore:
    """In-memory credential store with optional JSON snapshot persistence.

    Users are keyed by id; email uniqueness is enforced per tenant, so the
    same address may exist once in every tenant.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # (tenant_id, email) -> user_id
        self._email_index: Dict[tuple[str, str], str] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    # users
    def create_user(
        self,
        tenant_id: str,
        email: str,
        password_hash: str,
        *,
        role: str = "agent",
        status: UserStatus = UserStatus.ACTIVE,
        meta: Optional[Dict] = None,
    ) -> User:
        if not tenant_id:
            raise ConstraintViolation("tenant_id is required", {"field": "tenant_id"})
        with self._data_lock:
            key = (tenant_id, self._normalize_email(email))
            if key in self._email_index:
                raise ConstraintViolation(
                    "email already exists", {"field": "email", "tenant_id": tenant_id}
                )
            user = User.new(
                tenant_id, email, password_hash, role=role, status=status, meta=meta
            )
            self.users[user.id] = user
            self._email_index[key] = user.id
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str, tenant_id: str) -> Optional[User]:
        """Tenant-scoped lookup; the same email in another tenant is never returned."""
        with self._data_lock:
            user_id = self._email_index.get((tenant_id, self._normalize_email(email)))
            return self.users.get(user_id) if user_id else None

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [u for u in self.users.values() if u.tenant_id == tenant_id]
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            self._persist_state()
            return user

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def record_failed_login(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0
            user.failed_login_attempts += 1
            self._persist_state()
            return user.failed_login_attempts

    def record_successful_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = 0
            user.last_login_at = at or datetime.now(timezone.utc)
            self._persist_state()

    def update_password(self, user_id: str, password_hash: str) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            user.password_changed_at = datetime.now(timezone.utc)
            user.failed_login_attempts = 0
            self._persist_state()
            return user

    def set_mfa(
        self,
        user_id: str,
        secret: Optional[EncryptedField],
        backup_codes: Optional[EncryptedField],
        *,
        enabled: bool,
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            user.mfa_secret = secret
            user.mfa_backup_codes = backup_codes
            user.mfa_enabled = enabled
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            self._email_index.pop((user.tenant_id, user.email), None)
            self._persist_state()
            return True

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "tenant_id": user.tenant_id,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role,
            "status": user.status.value,
            "failed_login_attempts": user.failed_login_attempts,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "mfa_enabled": user.mfa_enabled,
            "mfa_secret": user.mfa_secret.to_dict() if user.mfa_secret else None,
            "mfa_backup_codes": (
                user.mfa_backup_codes.to_dict() if user.mfa_backup_codes else None
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, raw: dict) -> User:
        return User(
            id=raw["id"],
            tenant_id=raw["tenant_id"],
            email=raw["email"],
            password_hash=raw["password_hash"],
            role=raw.get("role", "agent"),
            status=UserStatus(raw.get("status", UserStatus.ACTIVE.value)),
            failed_login_attempts=int(raw.get("failed_login_attempts", 0)),
            password_changed_at=self._deserialize_datetime(raw.get("password_changed_at")),
            last_login_at=self._deserialize_datetime(raw.get("last_login_at")),
            mfa_enabled=bool(raw.get("mfa_enabled", False)),
            mfa_secret=(
                EncryptedField.from_dict(raw["mfa_secret"]) if raw.get("mfa_secret") else None
            ),
            mfa_backup_codes=(
                EncryptedField.from_dict(raw["mfa_backup_codes"])
                if raw.get("mfa_backup_codes")
                else None
            ),
            created_at=self._deserialize_datetime(raw.get("created_at"))
            or datetime.now(timezone.utc),
            meta=raw.get("meta"),
        )

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        payload = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("credential_state_load_failed", error=str(exc), path=str(path))
            return False
        for raw in data.get("users", []):
            user = self._deserialize_user(raw)
            self.users[user.id] = user
            self._email_index[(user.tenant_id, user.email)] = user.id
        return True

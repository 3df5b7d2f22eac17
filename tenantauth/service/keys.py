from __future__ import annotations

import base64
import binascii
import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantauth.logging import get_logger
from tenantauth.service.errors import DecryptionFailed, UnknownTenantKey
from tenantauth.storage.common import KeyValueCache
from tenantauth.storage.models import EncryptedField, TenantKeyRecord

logger = get_logger(__name__)

KEY_PREFIX = "tenantkey"
_IV_BYTES = 12
_TAG_BYTES = 16


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class TenantKeyStore:
    """Versioned AES-256-GCM keys per tenant, persisted in the shared cache.

    Layout:
        tenantkey:{tenant}:current -> latest version number
        tenantkey:{tenant}:v{n}    -> JSON TenantKeyRecord

    Version records never change once written, so they are memoized in
    process. The ``current`` pointer is always read from the store so every
    instance encrypts with the latest key after a rotation.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        *,
        rotation_interval_seconds: int = 30 * 24 * 3600,
        retention_versions: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.rotation_interval_seconds = rotation_interval_seconds
        self.retention_versions = retention_versions
        self._clock = clock
        self._versions: Dict[Tuple[str, int], TenantKeyRecord] = {}

    @staticmethod
    def _current_key(tenant_id: str) -> str:
        return f"{KEY_PREFIX}:{tenant_id}:current"

    @staticmethod
    def _version_key(tenant_id: str, version: int) -> str:
        return f"{KEY_PREFIX}:{tenant_id}:v{version}"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _new_record(self, tenant_id: str, version: int) -> TenantKeyRecord:
        return TenantKeyRecord(
            tenant_id=tenant_id,
            key=_b64(AESGCM.generate_key(bit_length=256)),
            version=version,
            created_at=self._now(),
        )

    async def _load_version(self, tenant_id: str, version: int) -> Optional[TenantKeyRecord]:
        cached = self._versions.get((tenant_id, version))
        if cached:
            return cached
        raw = await self.cache.get(self._version_key(tenant_id, version))
        if raw is None:
            return None
        try:
            record = TenantKeyRecord.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("tenant_key_corrupt", tenant_id=tenant_id, version=version)
            raise UnknownTenantKey(
                "tenant key record is corrupt",
                detail={"tenant_id": tenant_id, "version": version},
            ) from exc
        self._versions[(tenant_id, version)] = record
        return record

    async def _current_version(self, tenant_id: str) -> Optional[int]:
        raw = await self.cache.get(self._current_key(tenant_id))
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError as exc:
            logger.error("tenant_key_pointer_corrupt", tenant_id=tenant_id)
            raise UnknownTenantKey(
                "tenant key pointer is corrupt", detail={"tenant_id": tenant_id}
            ) from exc

    async def _claim_version(
        self, tenant_id: str, version: int
    ) -> Tuple[TenantKeyRecord, bool]:
        """Write version ``n`` if nobody has; otherwise adopt the winner's record.

        The flag is True only for the caller whose record was stored.
        """
        record = self._new_record(tenant_id, version)
        created = await self.cache.set_if_absent(
            self._version_key(tenant_id, version), json.dumps(record.to_dict())
        )
        if not created:
            existing = await self._load_version(tenant_id, version)
            if existing is None:
                raise UnknownTenantKey(
                    "tenant key version vanished during creation",
                    detail={"tenant_id": tenant_id, "version": version},
                )
            return existing, False
        self._versions[(tenant_id, version)] = record
        return record, True

    async def current_key(self, tenant_id: str) -> Optional[TenantKeyRecord]:
        version = await self._current_version(tenant_id)
        if version is None:
            return None
        return await self._load_version(tenant_id, version)

    async def get_or_create_key(self, tenant_id: str) -> TenantKeyRecord:
        if not tenant_id:
            raise UnknownTenantKey("tenant id is required")
        existing = await self.current_key(tenant_id)
        if existing:
            return existing
        record, _ = await self._claim_version(tenant_id, 1)
        if await self.cache.set_if_absent(self._current_key(tenant_id), "1"):
            logger.info("tenant_key_created", tenant_id=tenant_id, version=record.version)
            return record
        # Another instance created the tenant key first
        current = await self.current_key(tenant_id)
        return current or record

    async def rotate(self, tenant_id: str) -> TenantKeyRecord:
        current = await self.current_key(tenant_id)
        if current is None:
            raise UnknownTenantKey(
                "no key exists for tenant", detail={"tenant_id": tenant_id}
            )
        record, created = await self._claim_version(tenant_id, current.version + 1)
        latest = await self._current_version(tenant_id) or 0
        if record.version > latest:
            await self.cache.set(self._current_key(tenant_id), str(record.version))
        logger.info(
            "tenant_key_rotated" if created else "tenant_key_rotation_adopted",
            tenant_id=tenant_id,
            previous_version=current.version,
            version=record.version,
        )
        await self._prune(tenant_id, record.version)
        return record

    async def _prune(self, tenant_id: str, latest_version: int) -> None:
        if self.retention_versions <= 0:
            return
        oldest_kept = latest_version - self.retention_versions + 1
        for version in range(1, oldest_kept):
            self._versions.pop((tenant_id, version), None)
            if await self.cache.delete(self._version_key(tenant_id, version)):
                logger.info("tenant_key_pruned", tenant_id=tenant_id, version=version)

    async def tenants(self) -> List[str]:
        keys = await self.cache.scan(f"{KEY_PREFIX}:*:current")
        prefix_len = len(KEY_PREFIX) + 1
        return sorted(key[prefix_len : -len(":current")] for key in keys)

    async def rotate_due(self, now: Optional[datetime] = None) -> List[str]:
        """Rotate every tenant whose current key is older than the interval."""
        now = now or self._now()
        rotated: List[str] = []
        for tenant_id in await self.tenants():
            current = await self.current_key(tenant_id)
            if current is None:
                continue
            age = (now - current.created_at).total_seconds()
            if age >= self.rotation_interval_seconds:
                await self.rotate(tenant_id)
                rotated.append(tenant_id)
        return rotated

    async def encrypt_field(self, plaintext: str, tenant_id: str) -> EncryptedField:
        record = await self.get_or_create_key(tenant_id)
        iv = os.urandom(_IV_BYTES)
        sealed = AESGCM(_unb64(record.key)).encrypt(
            iv, plaintext.encode("utf-8"), tenant_id.encode("utf-8")
        )
        return EncryptedField(
            iv=_b64(iv),
            tag=_b64(sealed[-_TAG_BYTES:]),
            ciphertext=_b64(sealed[:-_TAG_BYTES]),
            version=record.version,
        )

    async def decrypt_field(
        self, envelope: Union[EncryptedField, Mapping[str, Any]], tenant_id: str
    ) -> str:
        if not isinstance(envelope, EncryptedField):
            try:
                envelope = EncryptedField.from_dict(dict(envelope))
            except (KeyError, TypeError, ValueError) as exc:
                raise DecryptionFailed("malformed encrypted field") from exc

        if await self._current_version(tenant_id) is None:
            raise UnknownTenantKey("no key exists for tenant", detail={"tenant_id": tenant_id})
        record = await self._load_version(tenant_id, envelope.version)
        if record is None:
            raise UnknownTenantKey(
                "tenant key version not found",
                detail={"tenant_id": tenant_id, "version": envelope.version},
            )

        try:
            iv = _unb64(envelope.iv)
            tag = _unb64(envelope.tag)
            ciphertext = _unb64(envelope.ciphertext)
        except (binascii.Error, ValueError, AttributeError) as exc:
            raise DecryptionFailed("encrypted field is not valid base64") from exc
        if len(iv) != _IV_BYTES or len(tag) != _TAG_BYTES:
            raise DecryptionFailed("encrypted field has invalid iv or tag length")

        try:
            plaintext = AESGCM(_unb64(record.key)).decrypt(
                iv, ciphertext + tag, tenant_id.encode("utf-8")
            )
        except InvalidTag as exc:
            logger.warning(
                "tenant_field_decrypt_failed", tenant_id=tenant_id, version=envelope.version
            )
            raise DecryptionFailed("authentication tag mismatch") from exc
        return plaintext.decode("utf-8")

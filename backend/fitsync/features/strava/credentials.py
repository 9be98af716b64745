"""
Credential store.

Encrypted-at-rest Strava token pairs, one per user. Plaintext tokens
only exist in memory between decrypt_* and the provider call.

Every write is audit-logged on the "fitsync.audit" logger with the user
id and action. Token plaintext and ciphertext never reach a log line.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .crypto import TokenCipher
from .models import StravaCredential
from .repository import CredentialRepository

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("fitsync.audit")


def audit(action: str, user_id: str, **details) -> None:
    """Emit a structured audit line. Callers must never pass token values."""
    extra = " ".join(f"{key}={value}" for key, value in sorted(details.items()))
    audit_logger.info(f"strava.{action} user_id={user_id} {extra}".rstrip())


class CredentialStore:
    """
    Encrypted credential storage.

    Usage:
        store = CredentialStore(db, TokenCipher.from_settings())
        await store.put(user_id, access, refresh, expires_at)
        record = await store.get(user_id)
        access = store.decrypt_access(record)

    put(), mark_revoked() and remove() commit. update_after_refresh() is reserved
    for the token lifecycle manager, which calls it under the refresh lock.
    """

    def __init__(self, db: AsyncSession, cipher: TokenCipher):
        self.db = db
        self.cipher = cipher
        self.repo = CredentialRepository(db)

    async def get(self, user_id: str, fresh: bool = False) -> Optional[StravaCredential]:
        """Return the user's credential record, or None if not found."""
        return await self.repo.get_by_user_id(user_id, fresh=fresh)

    async def put(
        self,
        user_id: str,
        plain_access: str,
        plain_refresh: str,
        expires_at: int,
        *,
        athlete_id: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> StravaCredential:
        """
        Store a freshly authorized token pair.

        Replaces any existing pair for the user and clears the revoked flag.
        """
        encrypted_access, version = self.cipher.encrypt(plain_access)
        encrypted_refresh, _ = self.cipher.encrypt(plain_refresh)

        record = await self.repo.get_by_user_id(user_id)
        if record:
            await self.repo.update(
                record,
                encrypted_access_token=encrypted_access,
                encrypted_refresh_token=encrypted_refresh,
                expires_at=int(expires_at),
                encryption_key_version=version,
                athlete_id=athlete_id or record.athlete_id,
                scope=scope or record.scope,
                revoked=False,
                updated_at=datetime.utcnow(),
            )
            action = "credential_replaced"
        else:
            record = await self.repo.create(
                user_id=user_id,
                encrypted_access_token=encrypted_access,
                encrypted_refresh_token=encrypted_refresh,
                expires_at=int(expires_at),
                encryption_key_version=version,
                athlete_id=athlete_id,
                scope=scope,
                refresh_count=0,
                revoked=False,
            )
            action = "credential_created"

        await self.db.commit()
        audit(action, user_id, key_version=version, expires_at=int(expires_at))
        return record

    def decrypt_access(self, record: StravaCredential) -> str:
        return self.cipher.decrypt(record.encrypted_access_token, record.encryption_key_version)

    def decrypt_refresh(self, record: StravaCredential) -> str:
        return self.cipher.decrypt(record.encrypted_refresh_token, record.encryption_key_version)

    async def update_after_refresh(
        self,
        record: StravaCredential,
        plain_access: str,
        plain_refresh: str,
        expires_at: int,
    ) -> StravaCredential:
        """
        Persist a refreshed pair under the active key.

        Advances expires_at, increments refresh_count and stamps
        last_refresh_at. Commits.
        """
        encrypted_access, version = self.cipher.encrypt(plain_access)
        encrypted_refresh, _ = self.cipher.encrypt(plain_refresh)
        now = datetime.utcnow()

        await self.repo.update(
            record,
            encrypted_access_token=encrypted_access,
            encrypted_refresh_token=encrypted_refresh,
            expires_at=int(expires_at),
            encryption_key_version=version,
            refresh_count=(record.refresh_count or 0) + 1,
            last_refresh_at=now,
            updated_at=now,
        )
        await self.db.commit()
        audit(
            "token_refreshed",
            record.user_id,
            key_version=version,
            refresh_count=record.refresh_count,
            expires_at=int(expires_at),
        )
        return record

    async def mark_revoked(self, user_id: str, reason: str = "unauthorized") -> bool:
        """
        Flag the user's credential as revoked (user must re-authorize).

        Returns:
            True if a record was found
        """
        record = await self.repo.get_by_user_id(user_id, fresh=True)
        if not record:
            return False
        if not record.revoked:
            await self.repo.update(record, revoked=True, updated_at=datetime.utcnow())
            await self.db.commit()
            audit("credential_revoked", user_id, reason=reason)
        return True

    async def remove(self, user_id: str, reason: str = "disconnect") -> bool:
        """
        Delete the user's credential.

        Returns:
            True if a record was deleted
        """
        deleted = await self.repo.delete_where(StravaCredential.user_id == user_id)
        await self.db.commit()
        if deleted:
            audit("credential_removed", user_id, reason=reason)
        return deleted > 0

    async def rotate(self, record: StravaCredential) -> bool:
        """
        Re-encrypt a record under the active key version.

        Returns:
            True if the record was rewritten
        """
        if not self.cipher.needs_rotation(record.encryption_key_version):
            return False

        old_version = record.encryption_key_version
        access = self.decrypt_access(record)
        refresh = self.decrypt_refresh(record)
        encrypted_access, version = self.cipher.encrypt(access)
        encrypted_refresh, _ = self.cipher.encrypt(refresh)

        await self.repo.update(
            record,
            encrypted_access_token=encrypted_access,
            encrypted_refresh_token=encrypted_refresh,
            encryption_key_version=version,
            updated_at=datetime.utcnow(),
        )
        await self.db.commit()
        audit("credential_rotated", record.user_id, from_version=old_version, to_version=version)
        return True

from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from paysentry.logging import get_logger
from paysentry.service.errors import NotFoundError, ValidationError
from paysentry.service.store import SecurityStore
from paysentry.storage.models import Principal

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8


class IdentityProvider(Protocol):
    async def verify(self, identifier: str, secret: str) -> Optional[Principal]: ...


class PasswordIdentityProvider:
    """Email + password verification against argon2id hashes held by the store."""

    def __init__(self, store: SecurityStore, *, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against for unknown identifiers so response time does not
        # reveal whether an account exists
        self._dummy_hash = self._pwd_hasher.hash("paysentry-timing-equalizer")

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def set_password(self, principal_id: str, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                "password too short", detail={"min_length": MIN_PASSWORD_LENGTH}
            )
        if self.store.get_principal(principal_id) is None:
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(principal_id, pwd_hash, algo)

    def _check(self, stored_hash: str, secret: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def verify(self, identifier: str, secret: str) -> Optional[Principal]:
        principal = self.store.get_principal_by_email(identifier)
        if principal is None:
            self._check(self._dummy_hash, secret)
            return None
        record = self.store.get_password_record(principal.id)
        if not record:
            logger.warning("password_record_missing", principal_id=principal.id)
            self._check(self._dummy_hash, secret)
            return None
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", principal_id=principal.id, algo=algo)
            return None
        if not self._check(stored_hash, secret):
            return None
        if not principal.is_active:
            logger.info("inactive_principal_login", principal_id=principal.id)
            return None
        return principal

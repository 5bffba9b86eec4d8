"""
Credential Vault

Sole owner of encrypting/decrypting bank credentials and of connection
status transitions on credential records.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .encryption import TokenEncryption
from .exceptions import BankErrorCode, BankIntegrationError, CredentialDecryptionError
from .schemas import AuthTokenBundle, CredentialRecord, StoredCredentials
from .state import ConnectionPhase, can_transition, ensure_transition, phase_for_status
from .stores import CredentialStore, merge_metadata


logger = logging.getLogger(__name__)

VALID_STATUSES = ("active", "error", "expired", "revoked")

# Shared by every vault in the process; managers are built per request
_KEY_LOCKS: Dict[tuple, threading.Lock] = defaultdict(threading.Lock)
_KEY_LOCKS_GUARD = threading.Lock()


class CredentialVault:
    """
    Encrypted credential storage keyed by (user_id, bank_code).

    Writes for the same key are serialized with a per-key lock shared
    across vault instances. Status changes must follow ALLOWED_TRANSITIONS.
    """

    def __init__(
        self,
        store: CredentialStore,
        encryption: TokenEncryption,
        sync_interval_hours: int = 24
    ):
        self.credential_store = store
        self.encryption = encryption
        self.sync_interval = timedelta(hours=sync_interval_hours)

    @staticmethod
    def _lock_for(user_id: int, bank_code: str) -> threading.Lock:
        with _KEY_LOCKS_GUARD:
            return _KEY_LOCKS[(user_id, bank_code)]

    def store(
        self,
        user_id: int,
        bank_code: str,
        bank_name: str,
        tokens: AuthTokenBundle,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        account_identifier: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> CredentialRecord:
        """
        Encrypt and persist credentials, replacing any existing record.

        The record starts in status 'active' with no error message.
        """
        payload = StoredCredentials(
            bank_code=bank_code,
            user_id=user_id,
            tokens=tokens,
            client_id=client_id,
            client_secret=client_secret
        )
        record = CredentialRecord(
            user_id=user_id,
            bank_code=bank_code,
            bank_name=bank_name,
            account_identifier=account_identifier,
            encrypted_credentials=self.encryption.encrypt(payload.model_dump_json()),
            connection_status="active",
            metadata=metadata or {}
        )

        with self._lock_for(user_id, bank_code):
            saved = self.credential_store.save(record)

        logger.info(f"Stored credentials for user {user_id} at {bank_code}")
        return saved

    def get_record(self, user_id: int, bank_code: str) -> Optional[CredentialRecord]:
        """The stored record without decrypting it."""
        return self.credential_store.get(user_id, bank_code)

    def retrieve(self, user_id: int, bank_code: str) -> Optional[StoredCredentials]:
        """
        Decrypt stored credentials.

        Returns:
            StoredCredentials, or None when nothing is stored

        Raises:
            CredentialDecryptionError: Payload unreadable; record is now 'revoked'
        """
        record = self.credential_store.get(user_id, bank_code)
        if record is None:
            return None
        return self._decrypt(record)

    def _decrypt(self, record: CredentialRecord) -> StoredCredentials:
        try:
            return StoredCredentials.model_validate_json(
                self.encryption.decrypt(record.encrypted_credentials)
            )
        except (CredentialDecryptionError, ValidationError) as e:
            logger.error(
                f"Could not decrypt credentials for user {record.user_id} at {record.bank_code}: {e}"
            )
            if can_transition(phase_for_status(record.connection_status), ConnectionPhase.REVOKED):
                self.credential_store.update(
                    record.user_id,
                    record.bank_code,
                    connection_status="revoked",
                    error_message="Stored credentials could not be decrypted. Please reconnect."
                )
            if isinstance(e, CredentialDecryptionError):
                raise
            raise CredentialDecryptionError("Stored credentials are malformed") from e

    def update_credentials(self, user_id: int, bank_code: str, tokens: AuthTokenBundle) -> CredentialRecord:
        """
        Replace the token bundle of an existing record.

        Raises:
            BankIntegrationError: NO_CREDENTIALS if nothing is stored
            CredentialDecryptionError: Existing payload unreadable
        """
        with self._lock_for(user_id, bank_code):
            record = self.credential_store.get(user_id, bank_code)
            if record is None:
                raise BankIntegrationError(
                    BankErrorCode.NO_CREDENTIALS,
                    f"No credentials stored for {bank_code}"
                )
            payload = self._decrypt(record)
            payload.tokens = tokens
            payload.stored_at = datetime.now(UTC)
            updated = self.credential_store.update(
                user_id,
                bank_code,
                encrypted_credentials=self.encryption.encrypt(payload.model_dump_json())
            )

        logger.info(f"Updated tokens for user {user_id} at {bank_code}")
        return updated

    def update_connection_status(
        self,
        user_id: int,
        bank_code: str,
        status: str,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[CredentialRecord]:
        """
        Set connection status, error message and merged metadata.

        An 'active' status also stamps last_sync and schedules the next sync.

        Raises:
            ValueError: Unknown status
            InvalidTransitionError: The current status cannot move to status
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"Invalid connection status: {status}")

        with self._lock_for(user_id, bank_code):
            record = self.credential_store.get(user_id, bank_code)
            if record is None:
                logger.warning(f"Status update for missing connection {user_id}/{bank_code}")
                return None

            ensure_transition(phase_for_status(record.connection_status), ConnectionPhase(status))

            fields: Dict[str, Any] = {
                "connection_status": status,
                "error_message": error_message,
            }
            if metadata:
                fields["metadata"] = merge_metadata(record.metadata, metadata)
            if status == "active":
                now = datetime.now(UTC)
                fields["last_sync"] = now
                fields["next_sync_scheduled"] = now + self.sync_interval

            return self.credential_store.update(user_id, bank_code, **fields)

    def revoke(self, user_id: int, bank_code: str) -> bool:
        """Delete the record. Deleting a missing record is not an error."""
        with self._lock_for(user_id, bank_code):
            deleted = self.credential_store.delete(user_id, bank_code)
        if deleted:
            logger.info(f"Removed credentials for user {user_id} at {bank_code}")
        return deleted

    def list_connections(self, user_id: int) -> List[CredentialRecord]:
        return self.credential_store.list_for_user(user_id)

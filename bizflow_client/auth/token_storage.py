"""
Secure Token Storage for the BizFlow API client.

This module provides secure storage of the session (access token, refresh
token and active tenant) using the system keyring, or an encrypted file as
fallback when no keyring backend is usable.
"""

import asyncio
import os
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken

from bizflow_shared.exceptions import ErrorCode, TokenStorageError
from bizflow_shared.interfaces import ICredentialStore, ITenantStore

logger = logging.getLogger(__name__)

SESSION_KEY = "session"


class SecureTokenStorage(ICredentialStore, ITenantStore):
    """
    Secure storage for the current session.

    Uses the system keyring when available, falls back to a Fernet-encrypted
    file whose key lives in a separate file next to it.
    """

    def __init__(
        self,
        service_name: str = "bizflow-client",
        storage_path: Optional[str] = None,
        use_keyring: bool = True
    ):
        self.service_name = service_name
        self.keyring_available = use_keyring and self._check_keyring_availability()
        self.storage_path = Path(storage_path) if storage_path else self._get_default_storage_path()
        self.key_path = self.storage_path.with_suffix('.key')

        self._encryption_key: Optional[bytes] = None
        self._lock = asyncio.Lock()

        logger.info(f"Token storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if a working system keyring backend is available."""
        try:
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_default_storage_path(self) -> Path:
        """Get path for encrypted file storage."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        if xdg_config:
            config_dir = Path(xdg_config) / 'bizflow'
        else:
            config_dir = Path.home() / '.config' / 'bizflow'

        return config_dir / 'session.enc'

    def _get_encryption_key(self) -> bytes:
        """Get or create the encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)

        self._encryption_key = key
        return key

    def _encrypt_data(self, data: str) -> bytes:
        return Fernet(self._get_encryption_key()).encrypt(data.encode())

    def _decrypt_data(self, encrypted_data: bytes) -> str:
        return Fernet(self._get_encryption_key()).decrypt(encrypted_data).decode()

    # Session record

    def load_session(self) -> Dict[str, Any]:
        """
        Read the stored session record.

        Returns:
            Session dictionary, empty when nothing (readable) is stored
        """
        try:
            if self.keyring_available:
                value = keyring.get_password(self.service_name, SESSION_KEY)
                return json.loads(value) if value else {}
            return self._load_session_file()
        except Exception as e:
            logger.error(f"Failed to read stored session: {e}")
            return {}

    def _load_session_file(self) -> Dict[str, Any]:
        if not self.storage_path.exists():
            return {}

        try:
            decrypted_data = self._decrypt_data(self.storage_path.read_bytes())
            data = json.loads(decrypted_data)
            return data if isinstance(data, dict) else {}
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Stored session file is unreadable, ignoring it: {e}")
            return {}

    def store_session(self, session: Dict[str, Any]) -> None:
        """
        Replace the stored session record.

        Raises:
            TokenStorageError: If the session could not be written
        """
        session = {k: v for k, v in session.items() if v is not None}
        session['stored_at'] = datetime.now().isoformat()

        try:
            if self.keyring_available:
                keyring.set_password(self.service_name, SESSION_KEY, json.dumps(session))
            else:
                self._store_session_file(session)
        except Exception as e:
            logger.error(f"Failed to store session: {e}")
            raise TokenStorageError(f"Failed to store session: {e}", cause=e)

    def _store_session_file(self, session: Dict[str, Any]) -> None:
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_bytes(self._encrypt_data(json.dumps(session)))
        os.chmod(self.storage_path, 0o600)

    def remove_session(self) -> None:
        """Remove the stored session record entirely."""
        try:
            if self.keyring_available:
                if keyring.get_password(self.service_name, SESSION_KEY) is not None:
                    keyring.delete_password(self.service_name, SESSION_KEY)
            elif self.storage_path.exists():
                self.storage_path.unlink()
        except Exception as e:
            logger.error(f"Failed to remove session: {e}")
            raise TokenStorageError(
                f"Failed to remove session: {e}",
                error_code=ErrorCode.STORAGE_WRITE_FAILED,
                cause=e
            )

    def _update_session(self, **changes: Any) -> None:
        session = self.load_session()
        session.pop('stored_at', None)
        session.update(changes)
        session = {k: v for k, v in session.items() if v is not None}

        if session:
            self.store_session(session)
        else:
            self.remove_session()

    # Keyring and file access block, so they run in a worker thread. The lock
    # keeps read-modify-write updates of the session record atomic.

    async def _read_session(self) -> Dict[str, Any]:
        async with self._lock:
            return await asyncio.to_thread(self.load_session)

    async def _write_session(self, **changes: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update_session, **changes)

    # ICredentialStore

    async def save_tokens(self, access_token: str, refresh_token: str) -> None:
        await self._write_session(access_token=access_token, refresh_token=refresh_token or None)
        logger.debug("Session tokens stored")

    async def get_access_token(self) -> Optional[str]:
        return (await self._read_session()).get('access_token')

    async def get_refresh_token(self) -> Optional[str]:
        return (await self._read_session()).get('refresh_token')

    async def clear_tokens(self) -> None:
        await self._write_session(access_token=None, refresh_token=None)
        logger.info("Session tokens cleared")

    # ITenantStore

    async def get_tenant_id(self) -> Optional[str]:
        return (await self._read_session()).get('tenant_id')

    async def set_tenant_id(self, tenant_id: str) -> None:
        await self._write_session(tenant_id=tenant_id)
        logger.info(f"Active tenant set to {tenant_id}")

    async def clear_tenant_id(self) -> None:
        await self._write_session(tenant_id=None)

    def has_session(self) -> bool:
        """Check whether an access token is stored."""
        return bool(self.load_session().get('access_token'))

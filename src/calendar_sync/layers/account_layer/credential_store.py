"""
資格情報ストア
Fernet(認証付き暗号)でアカウントの資格情報を暗号化して保持
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

from cryptography.fernet import Fernet, InvalidToken

from ...config.enhanced_config import SecurityConfig
from ...core.errors import CredentialStorageError
from ...utils.enhanced_logger import get_logger

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """資格情報ストア契約"""

    async def store(self, account_id: str, credentials: Dict[str, Any]) -> None:
        ...

    async def retrieve(self, account_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def remove(self, account_id: str) -> bool:
        ...


class EncryptedCredentialStore:
    """暗号化資格情報ストア"""

    def __init__(self, encryption_key: Optional[Union[str, bytes]] = None,
                 security: Optional[SecurityConfig] = None,
                 storage_path: Optional[Union[str, Path]] = None):
        self.security = security or SecurityConfig()
        key = encryption_key or self._get_or_create_key()
        if isinstance(key, str):
            key = key.encode()

        try:
            self.cipher = Fernet(key)
        except (ValueError, TypeError) as e:
            raise CredentialStorageError(f"Invalid encryption key: {e}") from e

        self.storage_path = Path(storage_path) if storage_path else None
        self._secrets: Dict[str, bytes] = {}
        if self.storage_path and self.storage_path.exists():
            self._load()

    def _get_or_create_key(self) -> bytes:
        """暗号化キーの取得または生成"""
        key = os.getenv(self.security.encryption_key_env)
        if key:
            return key.encode()

        if not self.security.allow_ephemeral_key:
            raise CredentialStorageError(
                f"Encryption key not configured: set {self.security.encryption_key_env}"
            )

        # 一時キー(プロセス終了で資格情報は復号不能になる)
        logger.warning(
            "Ephemeral encryption key generated. Stored credentials will not survive a restart",
            operation="key_generation",
            key_env=self.security.encryption_key_env,
        )
        return Fernet.generate_key()

    def _load(self):
        try:
            with open(self.storage_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialStorageError(f"Failed to load credential file {self.storage_path}: {e}") from e
        self._secrets = {account_id: token.encode() for account_id, token in data.items()}

    def _flush(self):
        if not self.storage_path:
            return
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.storage_path, 'w', encoding='utf-8') as f:
                json.dump({k: v.decode() for k, v in self._secrets.items()}, f)
            os.chmod(self.storage_path, 0o600)
        except OSError as e:
            raise CredentialStorageError(f"Failed to write credential file {self.storage_path}: {e}") from e

    async def store(self, account_id: str, credentials: Dict[str, Any]) -> None:
        """資格情報の暗号化保存"""
        payload = json.dumps(credentials, default=str).encode()
        self._secrets[account_id] = self.cipher.encrypt(payload)
        self._flush()
        logger.debug("Credentials stored", account_id=account_id)

    async def retrieve(self, account_id: str) -> Optional[Dict[str, Any]]:
        """資格情報の復号取得"""
        token = self._secrets.get(account_id)
        if token is None:
            return None

        try:
            payload = self.cipher.decrypt(token)
        except InvalidToken as e:
            logger.error("Credential decryption failed", account_id=account_id,
                         operation="credential_retrieve")
            raise CredentialStorageError(
                f"Stored credentials for {account_id} failed authentication"
            ) from e
        return json.loads(payload.decode())

    async def remove(self, account_id: str) -> bool:
        removed = self._secrets.pop(account_id, None) is not None
        if removed:
            self._flush()
            logger.debug("Credentials removed", account_id=account_id)
        return removed

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._secrets

    def __len__(self) -> int:
        return len(self._secrets)

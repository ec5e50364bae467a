"""
アカウント層 - アカウント管理と資格情報の暗号化保存
"""

from .account_manager import AccountManager
from .credential_store import CredentialStore, EncryptedCredentialStore

__all__ = ['AccountManager', 'CredentialStore', 'EncryptedCredentialStore']

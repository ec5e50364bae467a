"""
アカウント管理
プロバイダーアカウントの追加・削除・認証更新・カレンダー検出
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ...core.errors import AuthenticationError, DiscoveryError, NotFoundError
from ...core.models import (AuthInfo, CalendarAccount, CalendarInfo, SyncErrorType,
                            SyncSettings, utc_now)
from ...core.notifications import (AccountAdded, AccountError, AccountRemoved,
                                   NotificationBus, SyncNotification)
from ...utils.enhanced_logger import get_logger
from ..provider_layer.adapter import DiscoveredCalendar
from ..provider_layer.registry import ProviderRegistry
from .credential_store import CredentialStore

logger = get_logger(__name__)

# 期限切れ前に更新する猶予
TOKEN_REFRESH_WINDOW = timedelta(minutes=5)


class AccountManager:
    """アカウント・接続管理"""

    def __init__(self, registry: ProviderRegistry,
                 credential_store: CredentialStore,
                 notifications: Optional[NotificationBus] = None,
                 default_sync_settings: Optional[SyncSettings] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.registry = registry
        self.credential_store = credential_store
        self.notifications = notifications
        self.default_sync_settings = default_sync_settings
        self._clock = clock

        self.accounts: Dict[str, CalendarAccount] = {}
        self._lock = asyncio.Lock()

    async def _publish(self, notification: SyncNotification):
        if self.notifications:
            await self.notifications.publish(notification)

    def _require(self, account_id: str) -> CalendarAccount:
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

    # ------------------------------------------------------------------
    # 追加・削除
    # ------------------------------------------------------------------

    async def add_account(self, provider_id: str, credentials: Dict[str, Any],
                          user_id: str) -> CalendarAccount:
        """
        アカウント追加

        認証 → カレンダー検出 → 資格情報保存 → 登録 の順に実行し、
        途中で失敗した場合はアカウントを残さない。
        """
        adapter = self.registry.get_adapter(provider_id)
        op_ctx = logger.log_operation_start("add_account", provider_id=provider_id, user_id=user_id)

        try:
            auth_result = await adapter.authenticate(credentials)
        except AuthenticationError:
            logger.log_operation_end(op_ctx, success=False, stage="authenticate")
            raise
        except Exception as e:
            logger.log_operation_end(op_ctx, success=False, stage="authenticate")
            raise AuthenticationError(f"Authentication with {provider_id} failed: {e}") from e

        if not auth_result.success or auth_result.auth_info is None:
            logger.log_operation_end(op_ctx, success=False, stage="authenticate")
            raise AuthenticationError(
                f"Authentication with {provider_id} failed: {auth_result.error or 'rejected'}"
            )

        auth_info = auth_result.auth_info
        auth_info.is_valid = True
        auth_info.last_auth_time = self._clock()

        try:
            discovered = await adapter.discover_calendars(auth_info)
        except Exception as e:
            logger.log_operation_end(op_ctx, success=False, stage="discover")
            raise DiscoveryError(f"Calendar discovery for {provider_id} failed: {e}") from e

        remote_account_id = auth_result.account_id or "account"
        account_id = f"{provider_id}_{remote_account_id}_{uuid.uuid4().hex[:8]}"
        calendars = [self._new_calendar(c, sync_enabled=c.is_primary and c.is_writable)
                     for c in discovered]

        async with self._lock:
            await self.credential_store.store(account_id, auth_info.to_dict())

            is_default = not any(a.provider_id == provider_id for a in self.accounts.values())
            account = CalendarAccount(
                id=account_id,
                provider_id=provider_id,
                user_id=user_id,
                account_name=auth_result.account_name or remote_account_id,
                auth_info=auth_info,
                calendars=calendars,
                is_default=is_default,
                created_at=self._clock(),
            )
            if self.default_sync_settings is not None:
                account.sync_settings = self.default_sync_settings.copy()
            self.accounts[account_id] = account

        logger.log_operation_end(op_ctx, success=True, account_id=account_id,
                                 calendar_count=len(calendars))
        await self._publish(AccountAdded(account_id=account_id, provider_id=provider_id, user_id=user_id))
        return account

    def _new_calendar(self, discovered: DiscoveredCalendar, sync_enabled: bool) -> CalendarInfo:
        calendar = CalendarInfo(
            id=discovered.id,
            name=discovered.name,
            description=discovered.description,
            is_writable=discovered.is_writable,
            is_primary=discovered.is_primary,
            sync_enabled=sync_enabled,
        )
        if discovered.color:
            calendar.color = discovered.color
        return calendar

    async def remove_account(self, account_id: str):
        """アカウント削除(トークン失効は失敗しても続行)"""
        async with self._lock:
            account = self._require(account_id)
            adapter = self.registry.get_adapter(account.provider_id)

            try:
                await adapter.revoke_tokens(account.auth_info)
            except Exception as e:
                logger.warning("Token revocation failed, continuing with removal",
                               account_id=account_id, error_message=str(e))

            await self.credential_store.remove(account_id)
            del self.accounts[account_id]

            if account.is_default:
                remaining = sorted(
                    (a for a in self.accounts.values() if a.provider_id == account.provider_id),
                    key=lambda a: a.created_at
                )
                if remaining:
                    remaining[0].is_default = True
                    logger.info("Default account reassigned",
                                provider_id=account.provider_id, account_id=remaining[0].id)

        logger.info("Account removed", account_id=account_id, provider_id=account.provider_id)
        await self._publish(AccountRemoved(account_id=account_id, provider_id=account.provider_id))

    # ------------------------------------------------------------------
    # カレンダー
    # ------------------------------------------------------------------

    async def refresh_account_calendars(self, account_id: str) -> List[CalendarInfo]:
        """
        カレンダー再検出

        既存カレンダーは sync_enabled / is_visible を維持し、
        新規カレンダーは同期無効で追加、消えたカレンダーは削除する。
        """
        account = self._require(account_id)
        adapter = self.registry.get_adapter(account.provider_id)

        try:
            discovered = await adapter.discover_calendars(account.auth_info)
        except Exception as e:
            logger.error("Calendar discovery failed", error=e, account_id=account_id,
                         operation="refresh_account_calendars")
            await self._publish(AccountError(account_id=account_id,
                                             error_type=SyncErrorType.API_ERROR,
                                             message=str(e)))
            raise DiscoveryError(f"Calendar discovery for {account_id} failed: {e}") from e

        merged = []
        for found in discovered:
            existing = account.get_calendar(found.id)
            calendar = self._new_calendar(found, sync_enabled=False)
            if existing:
                calendar.sync_enabled = existing.sync_enabled
                calendar.is_visible = existing.is_visible
                calendar.event_count = existing.event_count
                calendar.last_sync_time = existing.last_sync_time
            merged.append(calendar)

        account.calendars = merged
        logger.info("Calendars refreshed", account_id=account_id, calendar_count=len(merged))
        return merged

    def update_calendar_settings(self, account_id: str, calendar_id: str,
                                 sync_enabled: Optional[bool] = None,
                                 is_visible: Optional[bool] = None) -> CalendarInfo:
        account = self._require(account_id)
        calendar = account.get_calendar(calendar_id)
        if calendar is None:
            raise NotFoundError(f"Calendar {calendar_id} not found in account {account_id}")
        if sync_enabled is not None:
            calendar.sync_enabled = sync_enabled
        if is_visible is not None:
            calendar.is_visible = is_visible
        return calendar

    def get_sync_enabled_calendars(self, account_id: str) -> List[CalendarInfo]:
        return self._require(account_id).sync_enabled_calendars

    # ------------------------------------------------------------------
    # 認証
    # ------------------------------------------------------------------

    async def validate_account_auth(self, account_id: str) -> bool:
        """軽量な認証チェック(例外は投げない)"""
        account = self.accounts.get(account_id)
        if account is None:
            return False

        try:
            adapter = self.registry.get_adapter(account.provider_id)
            is_valid = bool(await adapter.validate_auth(account.auth_info))
        except Exception as e:
            logger.warning("Auth validation failed", account_id=account_id, error_message=str(e))
            is_valid = False

        account.auth_info.is_valid = is_valid
        account.auth_info.last_validated_at = self._clock()
        return is_valid

    async def refresh_account_auth(self, account_id: str, force: bool = False) -> bool:
        """
        アクセストークン更新

        期限切れまたは5分以内に切れる場合(force時は常に)更新する。
        更新に失敗した場合は認証を無効化して AuthenticationError を送出。
        """
        account = self._require(account_id)
        auth_info = account.auth_info
        now = self._clock()

        if not force and not auth_info.expires_within(TOKEN_REFRESH_WINDOW, now):
            return auth_info.is_valid

        if not auth_info.supports_refresh:
            if not force and auth_info.token_expiry and auth_info.token_expiry > now:
                # 期限内なので現行トークンをそのまま使用
                return auth_info.is_valid
            await self._fail_auth(account, "Credentials cannot be refreshed")
            raise AuthenticationError(f"Account {account_id} requires re-authentication")

        adapter = self.registry.get_adapter(account.provider_id)
        try:
            new_info = await adapter.refresh_access_token(auth_info)
        except Exception as e:
            await self._fail_auth(account, str(e))
            raise AuthenticationError(f"Token refresh for {account_id} failed: {e}") from e

        if not new_info.refresh_token:
            new_info.refresh_token = auth_info.refresh_token
        new_info.is_valid = True
        new_info.last_auth_time = now
        account.auth_info = new_info
        await self.credential_store.store(account_id, new_info.to_dict())

        logger.info("Access token refreshed", account_id=account_id,
                    token_expiry=new_info.token_expiry.isoformat() if new_info.token_expiry else None)
        return True

    async def _fail_auth(self, account: CalendarAccount, message: str):
        account.auth_info.is_valid = False
        logger.error("Authentication refresh failed", account_id=account.id,
                     error_type=SyncErrorType.AUTHENTICATION_FAILED.value,
                     operation="refresh_account_auth", reason=message)
        await self._publish(AccountError(account_id=account.id,
                                         error_type=SyncErrorType.AUTHENTICATION_FAILED,
                                         message=message))

    async def update_auth_info(self, account_id: str, **changes: Any) -> AuthInfo:
        """認証情報の一部変更(購読URLの差し替えなど)と再保存"""
        account = self._require(account_id)
        unknown = [key for key in changes if not hasattr(account.auth_info, key)]
        if unknown:
            raise ValueError(f"Unknown auth fields: {', '.join(sorted(unknown))}")

        async with self._lock:
            for key, value in changes.items():
                setattr(account.auth_info, key, value)
            await self.credential_store.store(account_id, account.auth_info.to_dict())

        logger.info("Auth info updated", account_id=account_id, fields=sorted(changes))
        return account.auth_info

    async def get_credentials(self, account_id: str) -> Optional[AuthInfo]:
        """保存済み資格情報の復号取得"""
        self._require(account_id)
        data = await self.credential_store.retrieve(account_id)
        return AuthInfo.from_dict(data) if data else None

    # ------------------------------------------------------------------
    # 参照・設定
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[CalendarAccount]:
        return self.accounts.get(account_id)

    def get_accounts(self, user_id: Optional[str] = None,
                     provider_id: Optional[str] = None) -> List[CalendarAccount]:
        return [
            a for a in self.accounts.values()
            if (user_id is None or a.user_id == user_id)
            and (provider_id is None or a.provider_id == provider_id)
        ]

    def get_default_account(self, provider_id: str) -> Optional[CalendarAccount]:
        for account in self.accounts.values():
            if account.provider_id == provider_id and account.is_default:
                return account
        return None

    def set_default_account(self, account_id: str):
        """同一プロバイダー内でデフォルトを切り替え"""
        target = self._require(account_id)
        for account in self.accounts.values():
            if account.provider_id == target.provider_id:
                account.is_default = account.id == account_id

    def update_sync_settings(self, account_id: str, **changes: Any):
        account = self._require(account_id)
        account.sync_settings = account.sync_settings.copy(**changes)
        return account.sync_settings

    def get_account_stats(self) -> Dict[str, Any]:
        by_provider: Dict[str, int] = {}
        for account in self.accounts.values():
            by_provider[account.provider_id] = by_provider.get(account.provider_id, 0) + 1
        return {
            "total_accounts": len(self.accounts),
            "active_accounts": sum(1 for a in self.accounts.values() if a.is_active),
            "invalid_auth": sum(1 for a in self.accounts.values() if not a.auth_info.is_valid),
            "accounts_by_provider": by_provider,
            "total_calendars": sum(len(a.calendars) for a in self.accounts.values()),
            "sync_enabled_calendars": sum(len(a.sync_enabled_calendars) for a in self.accounts.values()),
        }

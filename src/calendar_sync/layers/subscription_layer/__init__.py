"""
購読層 - ICSフィード購読の登録・定期更新・健全性監視
"""

from .subscription_manager import (FeedSubscription, RefreshRecord, RefreshResult,
                                   SubscriptionManager, detect_content_type, is_private_host)

__all__ = [
    'FeedSubscription', 'RefreshRecord', 'RefreshResult',
    'SubscriptionManager',
    'detect_content_type', 'is_private_host'
]

"""
リクエストスケジューラ
プロバイダーへの全リクエストをレート制限に従って送信・キューイング・バッチ処理
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

import aiohttp

from ...core.errors import ProviderError, RateLimitExceeded, SchedulerStoppedError
from ...core.models import SyncErrorType, utc_now
from ...core.notifications import NotificationBus, RateLimitHit
from ..provider_layer.error_handler import extract_retry_after
from ..provider_layer.registry import ProviderRegistry
from .rate_limiter import ProviderRateLimiter

logger = logging.getLogger(__name__)

RequestFn = Callable[[], Awaitable[Any]]


class RequestPriority(Enum):
    """リクエスト優先度"""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass
class RequestOptions:
    priority: RequestPriority = RequestPriority.NORMAL
    allow_queuing: Optional[bool] = None  # None = スケジューラ既定値
    force: bool = False                   # 上限到達時も即時送信(使用量は記録)
    request_type: Optional[str] = None    # None = 全ウィンドウ対象


@dataclass
class QueuedRequest:
    fn: RequestFn
    options: RequestOptions
    future: asyncio.Future
    enqueued_at: datetime = field(default_factory=utc_now)


@dataclass
class BatchItemResult:
    """バッチ内の個別結果"""
    index: int
    success: bool
    result: Any = None
    error: Optional[BaseException] = None


class RequestScheduler:
    """プロバイダー別レート制限付きリクエストスケジューラ"""

    def __init__(self, registry: ProviderRegistry,
                 clock: Callable[[], datetime] = utc_now,
                 tick_interval: float = 5.0,
                 allow_queuing: bool = True,
                 notifications: Optional[NotificationBus] = None):
        self.registry = registry
        self.tick_interval = tick_interval
        self.allow_queuing = allow_queuing
        self.notifications = notifications
        self._clock = clock

        self._limiters: Dict[str, ProviderRateLimiter] = {}
        self._queues: Dict[str, Deque[QueuedRequest]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        # バックグラウンドタスク管理
        self._tick_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self.is_running = False

        # 統計情報
        self.total_requests = 0
        self.failed_requests = 0
        self.queued_requests = 0
        self.rejected_requests = 0
        self.forced_requests = 0
        self.total_latency = 0.0

    def get_limiter(self, provider_id: str) -> ProviderRateLimiter:
        if provider_id not in self._limiters:
            self._limiters[provider_id] = ProviderRateLimiter(
                provider_id, self.registry.get_rate_limits(provider_id), self._clock
            )
        return self._limiters[provider_id]

    def _lock(self, provider_id: str) -> asyncio.Lock:
        """プロバイダーごとの単一ライター"""
        if provider_id not in self._locks:
            self._locks[provider_id] = asyncio.Lock()
        return self._locks[provider_id]

    def is_rate_limited(self, provider_id: str) -> bool:
        return self.get_limiter(provider_id).is_rate_limited()

    def queue_size(self, provider_id: str) -> int:
        return len(self._queues.get(provider_id, ()))

    async def make_request(self, provider_id: str, fn: RequestFn,
                           options: Optional[RequestOptions] = None) -> Any:
        """
        レート制限を考慮したリクエスト実行

        余裕があれば即時送信、なければ優先度順にキューへ積み、
        スケジューラのtickで送信されるまで待機する。
        """
        options = options or RequestOptions()
        limiter = self.get_limiter(provider_id)

        async with self._lock(provider_id):
            queue = self._queues.setdefault(provider_id, deque())
            # 待機中のリクエストは追い越さない(HIGHは先頭扱い)
            has_capacity = limiter.can_make_request(options.request_type) and (
                not queue or options.priority == RequestPriority.HIGH
            )

            if options.force or has_capacity:
                limiter.record_request(options.request_type)
                if options.force and not has_capacity:
                    self.forced_requests += 1
                future = None
            else:
                allow = self.allow_queuing if options.allow_queuing is None else options.allow_queuing
                if not allow:
                    self.rejected_requests += 1
                    reset_time = limiter.get_next_reset_time()
                    raise RateLimitExceeded(
                        f"Rate limit exceeded for {provider_id}",
                        reset_time=reset_time,
                        usage=limiter.get_usage(),
                        provider_id=provider_id,
                    )

                future = asyncio.get_running_loop().create_future()
                item = QueuedRequest(fn=fn, options=options, future=future)
                if options.priority == RequestPriority.HIGH:
                    queue.appendleft(item)
                else:
                    queue.append(item)
                self.queued_requests += 1
                logger.debug(f"Queued {options.priority.value} request for {provider_id} "
                             f"(queue size {len(queue)})")

        if future is None:
            return await self._execute(provider_id, fn)
        return await future

    async def _execute(self, provider_id: str, fn: RequestFn) -> Any:
        start_time = time.monotonic()
        self.total_requests += 1
        try:
            return await fn()
        except Exception as e:
            self.failed_requests += 1
            await self._apply_error_feedback(provider_id, e)
            raise
        finally:
            self.total_latency += time.monotonic() - start_time

    async def _apply_error_feedback(self, provider_id: str, error: Exception):
        """エラー応答のヘッダー・429をレート制限器へ反映"""
        headers: Dict[str, str] = {}
        retry_after = None
        exhausted = False

        if isinstance(error, ProviderError):
            headers = error.headers
            retry_after = error.retry_after
            exhausted = error.error_type == SyncErrorType.RATE_LIMIT_EXCEEDED or error.status == 429
        elif isinstance(error, aiohttp.ClientResponseError):
            headers = {k.lower(): v for k, v in (error.headers or {}).items()}
            retry_after = extract_retry_after(headers)
            exhausted = error.status == 429

        if not headers and not exhausted:
            return

        limiter = self.get_limiter(provider_id)
        async with self._lock(provider_id):
            limiter.update_from_headers(headers)
            if exhausted:
                limiter.handle_rate_limit_exceeded(retry_after)

        if exhausted and self.notifications:
            await self.notifications.publish(
                RateLimitHit(provider_id=provider_id, reset_time=limiter.get_next_reset_time())
            )

    async def update_from_headers(self, provider_id: str, headers: Dict[str, str]):
        """成功応答のレート制限ヘッダーを反映"""
        if not headers:
            return
        limiter = self.get_limiter(provider_id)
        async with self._lock(provider_id):
            limiter.update_from_headers(headers)

    async def process_queues(self) -> int:
        """スケジューラtick: 各プロバイダーのキューを許容量まで送信"""
        dispatched = 0

        for provider_id, queue in list(self._queues.items()):
            limiter = self.get_limiter(provider_id)
            ready: List[QueuedRequest] = []

            async with self._lock(provider_id):
                while queue:
                    item = queue[0]
                    if item.future.done():
                        # 呼び出し側がキャンセル済み
                        queue.popleft()
                        continue
                    if not limiter.can_make_request(item.options.request_type):
                        break
                    queue.popleft()
                    limiter.record_request(item.options.request_type)
                    ready.append(item)

            for item in ready:
                task = asyncio.create_task(self._run_queued(provider_id, item))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            dispatched += len(ready)

        if dispatched:
            logger.debug(f"Scheduler tick dispatched {dispatched} queued requests")
        return dispatched

    async def _run_queued(self, provider_id: str, item: QueuedRequest):
        try:
            result = await self._execute(provider_id, item.fn)
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)

    async def start(self):
        """バックグラウンドtick開始"""
        if self.is_running:
            return
        self.is_running = True
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(f"Request scheduler started (tick every {self.tick_interval}s)")

    async def stop(self):
        """バックグラウンドtick停止。待機中のリクエストは失敗させる"""
        self.is_running = False

        if self._tick_task:
            self._tick_task.cancel()
            await asyncio.gather(self._tick_task, return_exceptions=True)
            self._tick_task = None

        for provider_id, queue in self._queues.items():
            async with self._lock(provider_id):
                while queue:
                    item = queue.popleft()
                    if not item.future.done():
                        item.future.set_exception(SchedulerStoppedError(
                            f"Scheduler stopped before request to {provider_id} was sent"
                        ))

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

        logger.info("Request scheduler stopped")

    async def _tick_loop(self):
        """tickワーカー"""
        while self.is_running:
            try:
                await self.process_queues()
            except Exception as e:
                logger.error(f"Error in scheduler tick: {e}")
            await asyncio.sleep(self.tick_interval)

    async def batch_requests(self, provider_id: str, requests: List[RequestFn],
                             batch_size: int = 10,
                             delay_between_batches: float = 1.0,
                             options: Optional[RequestOptions] = None) -> List[BatchItemResult]:
        """
        独立したリクエスト群をチャンク単位で並行実行

        1件の失敗でバッチ全体は中断しない。
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")

        results: List[BatchItemResult] = []
        for start in range(0, len(requests), batch_size):
            chunk = requests[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self.make_request(provider_id, fn, options) for fn in chunk),
                return_exceptions=True
            )

            for offset, outcome in enumerate(outcomes):
                index = start + offset
                if isinstance(outcome, BaseException):
                    results.append(BatchItemResult(index=index, success=False, error=outcome))
                else:
                    results.append(BatchItemResult(index=index, success=True, result=outcome))

            if start + batch_size < len(requests) and delay_between_batches > 0:
                await asyncio.sleep(delay_between_batches)

        failed = sum(1 for r in results if not r.success)
        logger.info(f"Batch completed for {provider_id}: {len(results) - failed}/{len(results)} succeeded")
        return results

    def get_status(self, provider_id: Optional[str] = None) -> Dict[str, Any]:
        provider_ids = [provider_id] if provider_id else list(self._limiters.keys())
        return {
            pid: {
                "limits": self.get_limiter(pid).get_status(),
                "queue_size": self.queue_size(pid),
                "rate_limited": self.get_limiter(pid).is_rate_limited(),
            }
            for pid in provider_ids
        }

    def get_statistics(self) -> Dict[str, Any]:
        """スケジューラ統計情報"""
        total = self.total_requests
        return {
            "total_requests": total,
            "failed_requests": self.failed_requests,
            "queued_requests": self.queued_requests,
            "rejected_requests": self.rejected_requests,
            "forced_requests": self.forced_requests,
            "pending_requests": sum(len(q) for q in self._queues.values()),
            "average_latency_seconds": (self.total_latency / total) if total > 0 else 0.0,
            "success_rate": ((total - self.failed_requests) / total * 100) if total > 0 else 100.0,
            "background_processing": self.is_running,
        }

"""
非同期セッションプール
- SessionPool と同じ状態遷移を asyncio.Lock で直列化
- バックエンドファクトリはバックエンド、またはそれを返すawaitableを返してよい
"""
import asyncio
import inspect
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from .backend.base import AsyncBackendFactory, AsyncSessionBackend
from .config import PoolConfig
from .exceptions import (
    BackendUnavailableError,
    PoolClosedError,
    PoolExhaustedError,
    SessionCreateError,
    SessionDeleteError,
    SpannerPoolError,
)
from .handle import AsyncSessionHandle
from .pool import Clock
from .records import SessionRegistry

logger = logging.getLogger(__name__)


class AsyncSessionPool:
    """
    非同期リモートセッションプール

    Example:
        async with AsyncSessionPool(config, AsyncRestTransport(config)) as pool:
            async with pool.session() as sess:
                await sess.execute_sql([], "SELECT 1")
    """

    def __init__(
        self,
        config: PoolConfig,
        backend_factory: AsyncBackendFactory,
        clock: Clock = time.monotonic
    ):
        self.config = config.validate()
        self._backend_factory = backend_factory
        self._clock = clock
        self._registry = SessionRegistry(config.capacity, config.idle_timeout)
        self._lock = asyncio.Lock()
        self._closed = False
        self._sweeper: Optional[asyncio.Task] = None
        # 実行中の掃除（停止時にも最後まで待つ）
        self._sweep_in_flight: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def _new_backend(self) -> AsyncSessionBackend:
        try:
            backend = self._backend_factory()
            if inspect.isawaitable(backend):
                backend = await backend
            return backend
        except SpannerPoolError:
            raise
        except Exception as e:
            raise BackendUnavailableError(f"unable to init spanner service: {e}", original=e) from e

    async def _create(self, backend: AsyncSessionBackend, timeout: Optional[float]) -> AsyncSessionHandle:
        target = self.config.connection_target
        try:
            name = await backend.create_session(target, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise SessionCreateError(
                f"unable to init spanner session: {e}",
                connection_target=target,
                original=e
            ) from e
        return AsyncSessionHandle(name, backend)

    async def _delete(self, backend: AsyncSessionBackend, name: str, timeout: Optional[float]) -> None:
        try:
            await backend.delete_session(name, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise SessionDeleteError(
                f"unable to delete spanner session: {e}",
                session_name=name,
                original=e
            ) from e

    async def _discard_remote(self, backend: AsyncSessionBackend, name: str, timeout: Optional[float]) -> None:
        try:
            await self._delete(backend, name, timeout)
        except SpannerPoolError as e:
            logger.warning(f"破棄したセッションの削除に失敗: {e}")

    async def acquire(self, timeout: Optional[float] = None) -> AsyncSessionHandle:
        """
        セッションを取得（SessionPool.acquire と同じ規則）

        Raises:
            PoolExhaustedError: 全セッションが使用中の場合
            PoolClosedError: close() 済みの場合
        """
        if self.config.sweep_interval and self._sweeper is None and not self._closed:
            self.start_sweeper(self.config.sweep_interval)

        async with self._lock:
            if self._closed:
                raise PoolClosedError()

            if self._registry.has_room():
                handle = await self._create(await self._new_backend(), timeout)
                self._registry.add_in_use(handle.name)
                logger.info(
                    f"セッション作成: {handle.name} "
                    f"({self._registry.occupancy()}/{self.config.capacity})"
                )
                return handle

            found = self._registry.first_free()
            if found is None:
                in_use = self._registry.occupancy()
                logger.warning(f"セッションプール枯渇: {in_use}/{self.config.capacity} 使用中")
                raise PoolExhaustedError(in_use=in_use, capacity=self.config.capacity)

            name, record = found
            backend = await self._new_backend()

            if self._registry.is_expired(record, self._clock()):
                handle = await self._create(backend, timeout)
                self._registry.discard(name)
                self._registry.add_in_use(handle.name)
                logger.info(f"期限切れセッションを置き換え: {name} -> {handle.name}")
                if self.config.delete_expired_sessions:
                    await self._discard_remote(backend, name, timeout)
                return handle

            self._registry.mark_in_use(name)
            logger.debug(f"セッション再利用: {name}")
            return AsyncSessionHandle(name, backend)

    async def release(self, handle: AsyncSessionHandle) -> None:
        """セッションを返却（close() 後の削除済みハンドルは無視）"""
        async with self._lock:
            if self._closed and handle.name not in self._registry:
                logger.debug(f"終了済みプールへの返却を無視: {handle.name}")
                return
            self._registry.mark_released(handle.name, self._clock())
        logger.debug(f"セッション返却: {handle.name}")

    async def close(self, timeout: Optional[float] = None) -> None:
        """
        管理中の全セッションを削除（最初の失敗で例外を返す）
        """
        await self.stop_sweeper()

        async with self._lock:
            self._closed = True
            names = self._registry.names()
            if not names:
                return

            backend = await self._new_backend()
            for name in names:
                await self._delete(backend, name, timeout)
                self._registry.discard(name)

        logger.info(f"セッションプール終了: {len(names)}件のセッションを削除")

    @asynccontextmanager
    async def session(self, timeout: Optional[float] = None) -> AsyncIterator[AsyncSessionHandle]:
        """
        セッションの非同期コンテキストマネージャー

        Example:
            async with pool.session() as sess:
                await sess.commit(mutations)
        """
        handle = await self.acquire(timeout)
        try:
            yield handle
        finally:
            await self.release(handle)

    async def stats(self) -> Dict[str, Any]:
        async with self._lock:
            occupancy = self._registry.occupancy()
            in_use = self._registry.in_use_count()
            return {
                "connection_target": self.config.connection_target,
                "capacity": self.config.capacity,
                "occupancy": occupancy,
                "in_use": in_use,
                "free": occupancy - in_use,
                "idle_timeout": self.config.idle_timeout,
                "closed": self._closed,
            }

    async def sweep_expired(self, timeout: Optional[float] = None) -> List[str]:
        """期限切れの未使用セッションをまとめて破棄"""
        async with self._lock:
            if self._closed:
                return []
            expired = self._registry.expired_free(self._clock())
            for name in expired:
                self._registry.discard(name)

        if not expired:
            return []

        logger.info(f"期限切れセッションを掃除: {len(expired)}件")
        try:
            backend = await self._new_backend()
        except SpannerPoolError as e:
            logger.error(f"掃除用バックエンドの初期化に失敗: {e}")
            return expired

        for name in expired:
            await self._discard_remote(backend, name, timeout)
        return expired

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        """掃除タスクを開始（実行中のイベントループが必要）"""
        interval = interval or self.config.sweep_interval
        if not interval:
            raise ValueError("sweep interval is required")
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        """
        掃除タスクを停止

        待機中のループは取り消すが、レコードを外した後の削除は最後まで待つ。
        """
        sweeper = self._sweeper
        self._sweeper = None
        if sweeper is not None and not sweeper.done():
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

        in_flight = self._sweep_in_flight
        self._sweep_in_flight = None
        if in_flight is not None and not in_flight.done():
            try:
                await in_flight
            except Exception as e:
                logger.error(f"Sweeper loop error: {e}")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._sweep_in_flight = asyncio.ensure_future(self.sweep_expired())
            try:
                # ループが取り消されても掃除自体は続ける
                await asyncio.shield(self._sweep_in_flight)
            except Exception as e:
                logger.error(f"Sweeper loop error: {e}")

    async def __aenter__(self) -> "AsyncSessionPool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

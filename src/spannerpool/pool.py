"""
セッションプール管理モジュール
- リモートセッションの再利用（容量まで作成してから使い回す）
- アイドルタイムアウトによる遅延破棄
- 状態変更はすべて1つの排他ロック内で行う

Note:
    期限切れの判定は acquire() で未使用レコードに当たったときだけ行う。
    その後一度も取得されないアイドルセッションは close() まで（または
    sweep_expired() / start_sweeper() を使うまで）リモートに残り続ける。
"""
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from .backend.base import BackendFactory, SessionBackend
from .config import PoolConfig
from .exceptions import (
    BackendUnavailableError,
    PoolClosedError,
    PoolExhaustedError,
    SessionCreateError,
    SessionDeleteError,
    SpannerPoolError,
)
from .handle import SessionHandle
from .records import SessionRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class SessionPool:
    """
    リモートセッションプール（スレッドセーフ）

    Example:
        pool = SessionPool(config, RestTransport(config, token_provider))
        with pool.session() as sess:
            result = sess.execute_sql([], "SELECT 1")
        pool.close()
    """

    def __init__(
        self,
        config: PoolConfig,
        backend_factory: BackendFactory,
        clock: Clock = time.monotonic
    ):
        """
        Args:
            config: プール設定
            backend_factory: 認証済みバックエンドを返す呼び出し可能オブジェクト
            clock: 単調増加する現在時刻（秒）。テストで差し替える
        """
        self.config = config.validate()
        self._backend_factory = backend_factory
        self._clock = clock
        self._registry = SessionRegistry(config.capacity, config.idle_timeout)
        self._lock = threading.Lock()
        self._closed = False

        self._sweeper: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()
        if config.sweep_interval:
            self.start_sweeper(config.sweep_interval)

    @property
    def closed(self) -> bool:
        return self._closed

    def occupancy(self) -> int:
        """管理中のセッション数"""
        with self._lock:
            return self._registry.occupancy()

    # ------------------------------------------------------------------
    # バックエンド呼び出し
    # ------------------------------------------------------------------

    def _new_backend(self) -> SessionBackend:
        try:
            return self._backend_factory()
        except SpannerPoolError:
            raise
        except Exception as e:
            raise BackendUnavailableError(f"unable to init spanner service: {e}", original=e) from e

    def _create(self, backend: SessionBackend, timeout: Optional[float]) -> SessionHandle:
        target = self.config.connection_target
        try:
            name = backend.create_session(target, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise SessionCreateError(
                f"unable to init spanner session: {e}",
                connection_target=target,
                original=e
            ) from e
        return SessionHandle(name, backend)

    def _delete(self, backend: SessionBackend, name: str, timeout: Optional[float]) -> None:
        try:
            backend.delete_session(name, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise SessionDeleteError(
                f"unable to delete spanner session: {e}",
                session_name=name,
                original=e
            ) from e

    def _discard_remote(self, backend: SessionBackend, name: str, timeout: Optional[float]) -> None:
        """プールから外したセッションを削除（失敗はログのみ。サーバー側のアイドル破棄に任せる）"""
        try:
            self._delete(backend, name, timeout)
            logger.debug(f"破棄したセッションを削除: {name}")
        except SpannerPoolError as e:
            logger.warning(f"破棄したセッションの削除に失敗: {e}")

    # ------------------------------------------------------------------
    # Acquire / Release / Close
    # ------------------------------------------------------------------

    def acquire(self, timeout: Optional[float] = None) -> SessionHandle:
        """
        セッションを取得

        容量に空きがあれば新しいセッションを作成する。満杯なら未使用の
        セッションを再利用し、アイドルタイムアウトを超えていれば作り直す。
        使い終わったら必ず release() に渡すこと。

        Args:
            timeout: リモート呼び出し（作成・削除）のタイムアウト（秒）

        Returns:
            SessionHandle

        Raises:
            PoolExhaustedError: 全セッションが使用中の場合
            PoolClosedError: close() 済みの場合
            BackendUnavailableError / SessionCreateError: リモート側の失敗
        """
        with self._lock:
            if self._closed:
                raise PoolClosedError()

            # まず容量まで埋める
            if self._registry.has_room():
                handle = self._create(self._new_backend(), timeout)
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
            backend = self._new_backend()

            # アイドルが長すぎるセッションは捨てて作り直す
            if self._registry.is_expired(record, self._clock()):
                handle = self._create(backend, timeout)
                self._registry.discard(name)
                self._registry.add_in_use(handle.name)
                logger.info(f"期限切れセッションを置き換え: {name} -> {handle.name}")
                if self.config.delete_expired_sessions:
                    self._discard_remote(backend, name, timeout)
                return handle

            self._registry.mark_in_use(name)
            logger.debug(f"セッション再利用: {name}")
            return SessionHandle(name, backend)

    def release(self, handle: SessionHandle) -> None:
        """
        セッションを返却し、再利用可能にする

        close() 後に返却されたハンドルは、既に削除済みなら何もしない。

        Raises:
            UnknownSessionError: このプールが管理していないハンドルの場合
        """
        with self._lock:
            if self._closed and handle.name not in self._registry:
                logger.debug(f"終了済みプールへの返却を無視: {handle.name}")
                return
            self._registry.mark_released(handle.name, self._clock())
        logger.debug(f"セッション返却: {handle.name}")

    def close(self, timeout: Optional[float] = None) -> None:
        """
        管理中の全セッションを削除

        最初の削除失敗でそのまま例外を返す。削除できたセッションは
        管理対象から外れるため、再度 close() を呼べば残りだけを削除する。

        Raises:
            SessionDeleteError: リモート削除に失敗した場合
            BackendUnavailableError: バックエンドを初期化できない場合
        """
        self.stop_sweeper()

        with self._lock:
            self._closed = True
            names = self._registry.names()
            if not names:
                return

            backend = self._new_backend()
            for name in names:
                self._delete(backend, name, timeout)
                self._registry.discard(name)

        logger.info(f"セッションプール終了: {len(names)}件のセッションを削除")

    @contextmanager
    def session(self, timeout: Optional[float] = None) -> Iterator[SessionHandle]:
        """
        セッションのコンテキストマネージャー

        Example:
            with pool.session() as sess:
                sess.commit(mutations)
        """
        handle = self.acquire(timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def stats(self) -> Dict[str, Any]:
        """プールの状態を取得"""
        with self._lock:
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

    # ------------------------------------------------------------------
    # バックグラウンド掃除（任意）
    # ------------------------------------------------------------------

    def sweep_expired(self, timeout: Optional[float] = None) -> List[str]:
        """
        期限切れの未使用セッションをまとめて破棄

        acquire() 時の遅延破棄に加えて、放置されたセッションの課金を止めるために使う。
        リモート削除はロックの外で行い、失敗はログに残す。

        Returns:
            破棄したセッション名のリスト
        """
        with self._lock:
            if self._closed:
                return []
            expired = self._registry.expired_free(self._clock())
            for name in expired:
                self._registry.discard(name)

        if not expired:
            return []

        logger.info(f"期限切れセッションを掃除: {len(expired)}件")
        try:
            backend = self._new_backend()
        except SpannerPoolError as e:
            logger.error(f"掃除用バックエンドの初期化に失敗: {e}")
            return expired

        for name in expired:
            self._discard_remote(backend, name, timeout)
        return expired

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        """掃除スレッドを開始"""
        interval = interval or self.config.sweep_interval
        if not interval:
            raise ValueError("sweep interval is required")
        if self._sweeper is not None and self._sweeper.is_alive():
            return

        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(interval,),
            name="SpannerSessionSweeper",
            daemon=True
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        """掃除スレッドを停止"""
        self._sweeper_stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join()
        self._sweeper = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._sweeper_stop.wait(interval):
            try:
                self.sweep_expired()
            except Exception as e:
                logger.error(f"Sweeper loop error: {e}")

    def __enter__(self) -> "SessionPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

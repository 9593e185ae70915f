"""
データベース別セッションプール管理

1プロセス内で複数のデータベースに対して独立したプールを持つためのレジストリ。
"""
import logging
from dataclasses import replace
from typing import Dict, Optional

from .backend.base import BackendFactory
from .backend.rest import RestTransport, TokenProvider
from .config import PoolConfig
from .exceptions import SpannerPoolError
from .pool import SessionPool

logger = logging.getLogger(__name__)


def create_pool(
    connection_target: str,
    capacity: int = 10,
    token_provider: Optional[TokenProvider] = None,
    backend_factory: Optional[BackendFactory] = None,
    config: Optional[PoolConfig] = None
) -> SessionPool:
    """
    接続先と容量からプールを作成（I/Oは行わない）

    backend_factory を省略した場合は REST トランスポートを使う。

    Args:
        connection_target: projects/{p}/instances/{i}/databases/{d}
        capacity: 最大セッション数
        token_provider: アクセストークンを返す関数
        backend_factory: バックエンドファクトリ（テスト・独自実装用）
        config: ベースとなる設定（connection_target と capacity は上書き）
    """
    base = config or PoolConfig()
    pool_config = replace(base, connection_target=connection_target, capacity=capacity)
    if backend_factory is None:
        backend_factory = RestTransport(pool_config, token_provider)
    return SessionPool(pool_config, backend_factory)


class PoolRegistry:
    """データベース別セッションプール"""

    def __init__(
        self,
        default_config: Optional[PoolConfig] = None,
        token_provider: Optional[TokenProvider] = None
    ):
        self._pools: Dict[str, SessionPool] = {}
        self._default_config = default_config or PoolConfig()
        self._token_provider = token_provider

    def __contains__(self, connection_target: str) -> bool:
        return connection_target in self._pools

    def __len__(self) -> int:
        return len(self._pools)

    def get_pool(
        self,
        connection_target: str,
        config: Optional[PoolConfig] = None,
        backend_factory: Optional[BackendFactory] = None
    ) -> SessionPool:
        """
        データベース用のプールを取得（無ければ作成）

        Args:
            connection_target: データベースのリソース名
            config: プール設定（初回作成時のみ使用）
            backend_factory: バックエンドファクトリ（初回作成時のみ使用）

        Returns:
            SessionPool
        """
        if connection_target not in self._pools:
            base = config or self._default_config
            self._pools[connection_target] = create_pool(
                connection_target,
                capacity=base.capacity,
                token_provider=self._token_provider,
                backend_factory=backend_factory,
                config=base
            )

        return self._pools[connection_target]

    def close_all(self) -> Dict[str, SpannerPoolError]:
        """
        全プールを閉じる

        1つのプールの失敗で他のプールの終了を止めない。

        Returns:
            接続先ごとの失敗（成功したプールは含まない）
        """
        errors: Dict[str, SpannerPoolError] = {}
        for target, pool in list(self._pools.items()):
            try:
                pool.close()
                del self._pools[target]
            except SpannerPoolError as e:
                logger.error(f"プール終了失敗 {target}: {e}")
                errors[target] = e
        return errors


# グローバルレジストリインスタンス
_registry_instance: Optional[PoolRegistry] = None


def get_registry() -> PoolRegistry:
    """グローバルレジストリを取得"""
    global _registry_instance

    if _registry_instance is None:
        _registry_instance = PoolRegistry()

    return _registry_instance


def reset_registry() -> Dict[str, SpannerPoolError]:
    """グローバルレジストリを閉じてリセット"""
    global _registry_instance

    errors: Dict[str, SpannerPoolError] = {}
    if _registry_instance:
        errors = _registry_instance.close_all()

    _registry_instance = None
    return errors

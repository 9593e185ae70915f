"""
プール設定モジュール

config.yaml の spanner セクションと環境変数からプール設定を組み立てる。
"""

import os
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Cloud Spanner REST エンドポイント
DEFAULT_ENDPOINT = "https://spanner.googleapis.com"

# サーバー側は1時間アイドルでセッションを破棄するため、それより短くする
DEFAULT_IDLE_TIMEOUT = 45 * 60.0


def database_path(project: str, instance: str, database: str) -> str:
    """データベースのリソース名を組み立てる"""
    return f"projects/{project}/instances/{instance}/databases/{database}"


def _coerce(convert, value: Any, field: str):
    """設定値を型変換（失敗は ConfigurationError）"""
    try:
        return convert(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"{field} の値が不正です: {value!r}",
            field=field,
            original=e
        ) from e


@dataclass(frozen=True)
class PoolConfig:
    """セッションプール設定（構築後は変更しない）"""
    connection_target: str = ""
    capacity: int = 10
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    # 期限切れセッションを置き換える際にリモート削除も行うか
    delete_expired_sessions: bool = True
    # バックグラウンド掃除の間隔（秒）。Noneなら無効
    sweep_interval: Optional[float] = None

    # トランスポート
    endpoint: str = DEFAULT_ENDPOINT
    request_timeout: float = 30.0
    pool_connections: int = 10
    pool_maxsize: int = 100
    enable_ssl_verification: bool = True

    @classmethod
    def for_database(
        cls,
        project: str,
        instance: str,
        database: str,
        capacity: int = 10,
        **kwargs
    ) -> "PoolConfig":
        """プロジェクト/インスタンス/データベース名から設定を作る"""
        return cls(
            connection_target=database_path(project, instance, database),
            capacity=capacity,
            **kwargs
        )

    @classmethod
    def from_yaml(cls, config_path: Optional[str] = None) -> "PoolConfig":
        """
        config.yaml の spanner セクションから設定を読み込む

        ファイルやセクションが無い項目は環境変数、それも無ければデフォルト値を使う。

        Example:
            spanner:
              project: my-project
              instance: main
              database: orders
              pool:
                capacity: 20
                idle_timeout: 1800
        """
        section: Dict[str, Any] = {}
        path = Path(config_path) if config_path else Path.cwd() / "config.yaml"
        if path.exists():
            with open(path, "r", encoding="utf-8") as f:
                full_config = yaml.safe_load(f) or {}
            if not isinstance(full_config, dict):
                raise ConfigurationError(f"config.yaml の形式が不正です: {path}")
            section = full_config.get("spanner") or {}
            logger.debug(f"設定ファイル読み込み: {path}")
        elif config_path:
            raise ConfigurationError(f"設定ファイルが見つかりません: {path}", field="config_path")

        pool = section.get("pool") or {}
        transport = section.get("transport") or {}

        target = section.get("database_path") or os.environ.get("SPANNER_DATABASE_PATH", "")
        if not target:
            project = section.get("project") or os.environ.get("SPANNER_PROJECT")
            instance = section.get("instance") or os.environ.get("SPANNER_INSTANCE")
            database = section.get("database") or os.environ.get("SPANNER_DATABASE")
            if project and instance and database:
                target = database_path(project, instance, database)

        sweep = pool.get("sweep_interval")

        return cls(
            connection_target=str(target),
            capacity=_coerce(int, pool.get("capacity", os.environ.get("SPANNER_POOL_CAPACITY", 10)),
                             "capacity"),
            idle_timeout=_coerce(float, pool.get("idle_timeout",
                                                 os.environ.get("SPANNER_IDLE_TIMEOUT", DEFAULT_IDLE_TIMEOUT)),
                                 "idle_timeout"),
            delete_expired_sessions=bool(pool.get("delete_expired_sessions", True)),
            sweep_interval=_coerce(float, sweep, "sweep_interval") if sweep is not None else None,
            endpoint=str(transport.get("endpoint",
                                       os.environ.get("SPANNER_ENDPOINT", DEFAULT_ENDPOINT))),
            request_timeout=_coerce(float, transport.get("request_timeout", 30.0), "request_timeout"),
            pool_connections=_coerce(int, transport.get("pool_connections", 10), "pool_connections"),
            pool_maxsize=_coerce(int, transport.get("pool_maxsize", 100), "pool_maxsize"),
            enable_ssl_verification=bool(transport.get("enable_ssl_verification", True)),
        )

    def validate(self) -> "PoolConfig":
        """設定値を検証する"""
        if not self.connection_target:
            raise ConfigurationError("接続先データベースが指定されていません", field="connection_target")
        if self.capacity < 1:
            raise ConfigurationError(f"capacityは1以上が必要です: {self.capacity}", field="capacity")
        if self.idle_timeout < 0:
            raise ConfigurationError(f"idle_timeoutは0以上が必要です: {self.idle_timeout}",
                                     field="idle_timeout")
        if self.sweep_interval is not None and self.sweep_interval <= 0:
            raise ConfigurationError(f"sweep_intervalは正の値が必要です: {self.sweep_interval}",
                                     field="sweep_interval")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

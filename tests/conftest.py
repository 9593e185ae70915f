"""
spannerpool - テスト用共通フィクスチャ

使用方法:
    pytest tests/ -v
"""
import itertools
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

# パス設定
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from spannerpool.backend.base import AsyncSessionBackend, SessionBackend
from spannerpool.config import PoolConfig
from spannerpool.params import MarshaledParams


TARGET = "projects/test-project/instances/test-instance/databases/test-db"


# ============================================================
# テスト用バックエンド
# ============================================================

class FakeBackend(SessionBackend):
    """
    メモリ上でセッションを払い出すバックエンド

    fail_create / fail_delete に例外を入れると、その呼び出しで送出する。
    fail_delete_once の例外は1回だけ送出する（一時的な失敗）。
    """

    def __init__(self):
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.commits: List[tuple] = []
        self.queries: List[tuple] = []
        self.fail_create: Optional[BaseException] = None
        self.fail_delete: Dict[str, BaseException] = {}
        self.fail_delete_once: Dict[str, BaseException] = {}
        self.result: Dict[str, Any] = {
            "metadata": {"rowType": {"fields": [{"name": "n", "type": {"code": "INT64"}}]}},
            "rows": [["1"]],
        }
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def create_session(self, connection_target: str, timeout: Optional[float] = None) -> str:
        if self.fail_create is not None:
            raise self.fail_create
        with self._lock:
            name = f"{connection_target}/sessions/s{next(self._seq)}"
            self.created.append(name)
        return name

    def delete_session(self, session_name: str, timeout: Optional[float] = None) -> None:
        transient = self.fail_delete_once.pop(session_name, None)
        if transient is not None:
            raise transient
        error = self.fail_delete.get(session_name)
        if error is not None:
            raise error
        with self._lock:
            self.deleted.append(session_name)

    def commit(self, session_name, mutations, transaction_options=None, timeout=None):
        self.commits.append((session_name, mutations, transaction_options))
        return {"commitTimestamp": "2024-01-01T00:00:00Z"}

    def execute_sql(self, session_name, sql, params: MarshaledParams, query_mode="NORMAL", timeout=None):
        self.queries.append((session_name, sql, params, query_mode))
        return self.result


class FakeAsyncBackend(AsyncSessionBackend):
    """FakeBackend の非同期版（状態は FakeBackend と共有）"""

    def __init__(self, core: Optional[FakeBackend] = None):
        self.core = core or FakeBackend()

    async def create_session(self, connection_target, timeout=None):
        return self.core.create_session(connection_target, timeout)

    async def delete_session(self, session_name, timeout=None):
        self.core.delete_session(session_name, timeout)

    async def commit(self, session_name, mutations, transaction_options=None, timeout=None):
        return self.core.commit(session_name, mutations, transaction_options, timeout)

    async def execute_sql(self, session_name, sql, params, query_mode="NORMAL", timeout=None):
        return self.core.execute_sql(session_name, sql, params, query_mode, timeout)


class FakeClock:
    """手動で進める単調時計"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================
# 基本フィクスチャ
# ============================================================

@pytest.fixture
def backend():
    """テスト用バックエンド"""
    return FakeBackend()


@pytest.fixture
def factory(backend):
    """呼び出し回数を数えるバックエンドファクトリ"""
    return MagicMock(return_value=backend)


@pytest.fixture
def async_backend(backend):
    return FakeAsyncBackend(backend)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool_config():
    """容量2・アイドル60秒のプール設定"""
    return PoolConfig(connection_target=TARGET, capacity=2, idle_timeout=60.0)


@pytest.fixture
def clean_env(monkeypatch):
    """SPANNER_* 環境変数を消す"""
    for key in (
        "SPANNER_DATABASE_PATH",
        "SPANNER_PROJECT",
        "SPANNER_INSTANCE",
        "SPANNER_DATABASE",
        "SPANNER_POOL_CAPACITY",
        "SPANNER_IDLE_TIMEOUT",
        "SPANNER_ENDPOINT",
        "SPANNER_ACCESS_TOKEN",
    ):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


# ============================================================
# Pytest設定
# ============================================================

def pytest_configure(config):
    """Pytest設定"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "edge_case: marks tests as edge case tests"
    )

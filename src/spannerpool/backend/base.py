"""
リモートセッションバックエンドのインターフェース

プールはこのインターフェースだけを通してセッションを作成・削除する。
commit / execute_sql はハンドル経由で呼び出し側が使う。
"""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..params import MarshaledParams


class SessionBackend(ABC):
    """同期版リモートセッションバックエンド"""

    @abstractmethod
    def create_session(self, connection_target: str, timeout: Optional[float] = None) -> str:
        """セッションを作成し、リモートが割り当てた名前を返す"""

    @abstractmethod
    def delete_session(self, session_name: str, timeout: Optional[float] = None) -> None:
        """セッションを削除する"""

    @abstractmethod
    def commit(
        self,
        session_name: str,
        mutations: List[Dict[str, Any]],
        transaction_options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """ミューテーションをコミットする"""

    @abstractmethod
    def execute_sql(
        self,
        session_name: str,
        sql: str,
        params: MarshaledParams,
        query_mode: str = "NORMAL",
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """SQLを実行し、ResultSetをそのまま返す"""


class AsyncSessionBackend(ABC):
    """非同期版リモートセッションバックエンド"""

    @abstractmethod
    async def create_session(self, connection_target: str, timeout: Optional[float] = None) -> str:
        """セッションを作成し、リモートが割り当てた名前を返す"""

    @abstractmethod
    async def delete_session(self, session_name: str, timeout: Optional[float] = None) -> None:
        """セッションを削除する"""

    @abstractmethod
    async def commit(
        self,
        session_name: str,
        mutations: List[Dict[str, Any]],
        transaction_options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """ミューテーションをコミットする"""

    @abstractmethod
    async def execute_sql(
        self,
        session_name: str,
        sql: str,
        params: MarshaledParams,
        query_mode: str = "NORMAL",
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """SQLを実行し、ResultSetをそのまま返す"""


# ハンドルが使用に入るたびに呼ばれ、認証済みの新しいバックエンドを返す
BackendFactory = Callable[[], SessionBackend]
AsyncBackendFactory = Callable[[], Union[AsyncSessionBackend, Awaitable[AsyncSessionBackend]]]

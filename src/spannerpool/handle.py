"""
セッションハンドル

プールから貸し出されるリモートセッションの識別子と、
それを操作するバックエンドの組。1回の論理操作の間だけ借りて、必ず返却する。
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from .backend.base import AsyncSessionBackend, SessionBackend
from .exceptions import CommitError, QueryExecutionError, SpannerPoolError
from .params import QueryParam, marshal_params

logger = logging.getLogger(__name__)


class _HandleBase:
    """名前で同一性を判定する共通部分"""

    def __init__(self, name: str, backend):
        self._name = name
        self._backend = backend

    @property
    def name(self) -> str:
        """リモートが割り当てたセッション名"""
        return self._name

    @property
    def backend(self):
        return self._backend

    def __eq__(self, other) -> bool:
        if not isinstance(other, _HandleBase):
            return NotImplemented
        return self._name == other._name

    def __hash__(self) -> int:
        return hash(self._name)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self._name!r})"


class SessionHandle(_HandleBase):
    """同期版セッションハンドル"""

    def __init__(self, name: str, backend: SessionBackend):
        super().__init__(name, backend)

    def commit(
        self,
        mutations: List[Dict[str, Any]],
        transaction_options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        ミューテーションを単発トランザクションでコミット

        Args:
            mutations: spanner Mutation のリスト
            transaction_options: TransactionOptions（省略時は readWrite）
            timeout: リモート呼び出しのタイムアウト（秒）

        Returns:
            CommitResponse

        Raises:
            CommitError: リモート呼び出しが失敗した場合
        """
        try:
            return self._backend.commit(self._name, mutations, transaction_options, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise CommitError(
                f"unable to commit: {e}",
                session_name=self._name,
                original=e
            ) from e

    def execute_sql(
        self,
        params: Optional[Iterable[QueryParam]],
        sql: str,
        query_mode: str = "NORMAL",
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        SQLを実行し、全行を1つのResultSetで返す

        パラメータの変換はネットワーク呼び出しの前に行う。

        Raises:
            QueryMarshalError: パラメータをJSONにできない場合
            QueryExecutionError: リモート呼び出しが失敗した場合
        """
        marshaled = marshal_params(params)
        try:
            return self._backend.execute_sql(self._name, sql, marshaled, query_mode, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise QueryExecutionError(
                f"unable to execute query: {e}",
                session_name=self._name,
                original=e
            ) from e


class AsyncSessionHandle(_HandleBase):
    """非同期版セッションハンドル"""

    def __init__(self, name: str, backend: AsyncSessionBackend):
        super().__init__(name, backend)

    async def commit(
        self,
        mutations: List[Dict[str, Any]],
        transaction_options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """ミューテーションを単発トランザクションでコミット"""
        try:
            return await self._backend.commit(self._name, mutations, transaction_options, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise CommitError(
                f"unable to commit: {e}",
                session_name=self._name,
                original=e
            ) from e

    async def execute_sql(
        self,
        params: Optional[Iterable[QueryParam]],
        sql: str,
        query_mode: str = "NORMAL",
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """SQLを実行し、全行を1つのResultSetで返す"""
        marshaled = marshal_params(params)
        try:
            return await self._backend.execute_sql(self._name, sql, marshaled, query_mode, timeout=timeout)
        except SpannerPoolError:
            raise
        except Exception as e:
            raise QueryExecutionError(
                f"unable to execute query: {e}",
                session_name=self._name,
                original=e
            ) from e

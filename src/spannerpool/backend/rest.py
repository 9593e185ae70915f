"""
Cloud Spanner REST バックエンド（同期版）
- requests.Session によるHTTP接続の再利用
- セッション作成/削除、commit、executeSql
"""
import logging
from typing import Any, Callable, Dict, List, Optional

import certifi
import requests
from requests.adapters import HTTPAdapter

from ..config import PoolConfig
from ..exceptions import (
    BackendUnavailableError,
    CommitError,
    QueryExecutionError,
    SessionCreateError,
    SessionDeleteError,
)
from ..params import MarshaledParams
from .base import SessionBackend

logger = logging.getLogger(__name__)

# アクセストークンを返す呼び出し可能オブジェクト（認証情報の管理は行わない）
TokenProvider = Callable[[], Optional[str]]

# トランザクション指定が無い場合は読み書きトランザクションでコミットする
DEFAULT_TRANSACTION_OPTIONS: Dict[str, Any] = {"readWrite": {}}


def status_of(error: BaseException) -> Optional[int]:
    """requests例外からHTTPステータスを取り出す"""
    response = getattr(error, "response", None)
    if response is None:
        return None
    return getattr(response, "status_code", None)


def remote_message(error: BaseException) -> str:
    """Spannerのエラーレスポンスからメッセージを取り出す"""
    response = getattr(error, "response", None)
    if response is not None:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = body["error"].get("message")
            if message:
                return str(message)
    return str(error)


class RestTransport:
    """
    HTTPセッションとトークン取得をまとめたトランスポート

    HTTP接続は1つの requests.Session で共有し、
    new_backend() のたびにトークンを取り直したバックエンドを返す。
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        token_provider: Optional[TokenProvider] = None,
        session: Optional[requests.Session] = None
    ):
        self.config = config or PoolConfig()
        self.token_provider = token_provider
        self._session = session

    @property
    def endpoint(self) -> str:
        return self.config.endpoint.rstrip("/")

    def verify(self):
        """requests の verify 引数"""
        if self.config.enable_ssl_verification:
            return certifi.where()
        # 検証無効（開発用のみ）
        return False

    def get_session(self) -> requests.Session:
        """
        同期HTTPセッションを取得（シングルトン）

        Returns:
            requests.Session
        """
        if self._session is None:
            adapter = HTTPAdapter(
                pool_connections=self.config.pool_connections,
                pool_maxsize=self.config.pool_maxsize,
            )

            session = requests.Session()
            session.mount('http://', adapter)
            session.mount('https://', adapter)

            self._session = session

        return self._session

    def new_backend(self) -> "RestSessionBackend":
        """
        認証済みのバックエンドを作成

        Raises:
            BackendUnavailableError: トークン取得やHTTPセッション生成に失敗した場合
        """
        token = None
        if self.token_provider is not None:
            try:
                token = self.token_provider()
            except Exception as e:
                raise BackendUnavailableError(
                    f"unable to init spanner service: {e}",
                    endpoint=self.endpoint,
                    original=e
                ) from e
        return RestSessionBackend(self, token)

    def __call__(self) -> "RestSessionBackend":
        # プールの backend_factory としてそのまま渡せるようにする
        return self.new_backend()

    def close(self):
        """HTTPセッションを閉じる"""
        if self._session:
            self._session.close()
            self._session = None


class RestSessionBackend(SessionBackend):
    """Spanner REST v1 を呼び出すバックエンド"""

    def __init__(self, transport: RestTransport, token: Optional[str] = None):
        self._transport = transport
        self._token = token

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _call(
        self,
        method: str,
        resource: str,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """REST呼び出しを行い、JSONボディを返す（失敗時は requests の例外）"""
        url = f"{self._transport.endpoint}/v1/{resource}"
        response = self._transport.get_session().request(
            method,
            url,
            json=body,
            headers=self._headers(),
            timeout=timeout or self._transport.config.request_timeout,
            verify=self._transport.verify(),
        )
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    def create_session(self, connection_target: str, timeout: Optional[float] = None) -> str:
        try:
            data = self._call("POST", f"{connection_target}/sessions", {}, timeout)
        except (requests.RequestException, ValueError) as e:
            raise SessionCreateError(
                f"unable to init spanner session: {remote_message(e)}",
                connection_target=connection_target,
                status_code=status_of(e),
                original=e
            ) from e

        name = data.get("name")
        if not name:
            raise SessionCreateError(
                "unable to init spanner session: response has no session name",
                connection_target=connection_target
            )
        return name

    def delete_session(self, session_name: str, timeout: Optional[float] = None) -> None:
        try:
            self._call("DELETE", session_name, None, timeout)
        except (requests.RequestException, ValueError) as e:
            raise SessionDeleteError(
                f"unable to delete spanner session: {remote_message(e)}",
                session_name=session_name,
                status_code=status_of(e),
                original=e
            ) from e

    def commit(
        self,
        session_name: str,
        mutations: List[Dict[str, Any]],
        transaction_options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        body = {
            "mutations": list(mutations),
            "singleUseTransaction": transaction_options or DEFAULT_TRANSACTION_OPTIONS,
        }
        try:
            return self._call("POST", f"{session_name}:commit", body, timeout)
        except (requests.RequestException, ValueError) as e:
            raise CommitError(
                f"unable to commit: {remote_message(e)}",
                session_name=session_name,
                status_code=status_of(e),
                original=e
            ) from e

    def execute_sql(
        self,
        session_name: str,
        sql: str,
        params: MarshaledParams,
        query_mode: str = "NORMAL",
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"sql": sql, "queryMode": query_mode}
        if params.params:
            body["params"] = params.params
            body["paramTypes"] = params.param_types
        try:
            return self._call("POST", f"{session_name}:executeSql", body, timeout)
        except (requests.RequestException, ValueError) as e:
            raise QueryExecutionError(
                f"unable to execute query: {remote_message(e)}",
                session_name=session_name,
                status_code=status_of(e),
                original=e
            ) from e

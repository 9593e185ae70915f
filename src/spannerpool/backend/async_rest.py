"""
Cloud Spanner REST バックエンド（非同期版）
- aiohttp.ClientSession を1つ共有
- asyncio.Lock でセッション生成を排他制御
"""
import asyncio
import inspect
import logging
import ssl
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiohttp
import certifi

from ..config import PoolConfig
from ..exceptions import (
    BackendUnavailableError,
    CommitError,
    QueryExecutionError,
    SessionCreateError,
    SessionDeleteError,
)
from ..params import MarshaledParams
from .base import AsyncSessionBackend
from .rest import DEFAULT_TRANSACTION_OPTIONS

logger = logging.getLogger(__name__)

AsyncTokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]

# aiohttp 呼び出しで発生しうる例外
_CALL_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError)


class RemoteStatusError(aiohttp.ClientResponseError):
    """4xx/5xx 応答（本文のエラーメッセージ付き）"""


def _status_of(error: BaseException) -> Optional[int]:
    return getattr(error, "status", None)


class AsyncRestTransport:
    """非同期HTTPセッションとトークン取得をまとめたトランスポート"""

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        token_provider: Optional[AsyncTokenProvider] = None
    ):
        self.config = config or PoolConfig()
        self.token_provider = token_provider
        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None
        self._lock = asyncio.Lock()

    @property
    def endpoint(self) -> str:
        return self.config.endpoint.rstrip("/")

    def _get_ssl_context(self):
        """SSLコンテキストを取得"""
        if self.config.enable_ssl_verification:
            return ssl.create_default_context(cafile=certifi.where())
        else:
            # 検証無効（開発用のみ）
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            return context

    async def get_session(self) -> aiohttp.ClientSession:
        """
        非同期HTTPセッションを取得（シングルトン、asyncio.Lockで排他制御）

        Returns:
            aiohttp.ClientSession
        """
        async with self._lock:
            if self._session is None or self._session.closed:
                self._connector = aiohttp.TCPConnector(
                    limit=self.config.pool_maxsize,
                    limit_per_host=self.config.pool_connections,
                    ssl=self._get_ssl_context()
                )

                timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)

                self._session = aiohttp.ClientSession(
                    connector=self._connector,
                    timeout=timeout
                )

            return self._session

    async def new_backend(self) -> "AsyncRestSessionBackend":
        """
        認証済みのバックエンドを作成

        Raises:
            BackendUnavailableError: トークン取得に失敗した場合
        """
        token = None
        if self.token_provider is not None:
            try:
                token = self.token_provider()
                if inspect.isawaitable(token):
                    token = await token
            except Exception as e:
                raise BackendUnavailableError(
                    f"unable to init spanner service: {e}",
                    endpoint=self.endpoint,
                    original=e
                ) from e
        return AsyncRestSessionBackend(self, token)

    def __call__(self) -> Awaitable["AsyncRestSessionBackend"]:
        return self.new_backend()

    async def close(self):
        """非同期HTTPセッションを閉じる"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

        if self._connector:
            await self._connector.close()
            self._connector = None


class AsyncRestSessionBackend(AsyncSessionBackend):
    """Spanner REST v1 を呼び出す非同期バックエンド"""

    def __init__(self, transport: AsyncRestTransport, token: Optional[str] = None):
        self._transport = transport
        self._token = token

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _call(
        self,
        method: str,
        resource: str,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        session = await self._transport.get_session()
        url = f"{self._transport.endpoint}/v1/{resource}"
        kwargs: Dict[str, Any] = {"headers": self._headers()}
        if body is not None:
            kwargs["json"] = body
        if timeout:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)

        async with session.request(method, url, **kwargs) as response:
            if response.status >= 400:
                message = await self._error_message(response)
                raise RemoteStatusError(
                    response.request_info,
                    response.history,
                    status=response.status,
                    message=message,
                )
            text = await response.text()
            if not text:
                return {}
            return await response.json(content_type=None)

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.json(content_type=None)
        except (aiohttp.ClientError, ValueError):
            return response.reason or f"HTTP {response.status}"
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return str(body["error"].get("message") or response.reason)
        return response.reason or f"HTTP {response.status}"

    async def create_session(self, connection_target: str, timeout: Optional[float] = None) -> str:
        try:
            data = await self._call("POST", f"{connection_target}/sessions", {}, timeout)
        except _CALL_ERRORS as e:
            raise SessionCreateError(
                f"unable to init spanner session: {getattr(e, 'message', e)}",
                connection_target=connection_target,
                status_code=_status_of(e),
                original=e
            ) from e

        name = data.get("name")
        if not name:
            raise SessionCreateError(
                "unable to init spanner session: response has no session name",
                connection_target=connection_target
            )
        return name

    async def delete_session(self, session_name: str, timeout: Optional[float] = None) -> None:
        try:
            await self._call("DELETE", session_name, None, timeout)
        except _CALL_ERRORS as e:
            raise SessionDeleteError(
                f"unable to delete spanner session: {getattr(e, 'message', e)}",
                session_name=session_name,
                status_code=_status_of(e),
                original=e
            ) from e

    async def commit(
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
            return await self._call("POST", f"{session_name}:commit", body, timeout)
        except _CALL_ERRORS as e:
            raise CommitError(
                f"unable to commit: {getattr(e, 'message', e)}",
                session_name=session_name,
                status_code=_status_of(e),
                original=e
            ) from e

    async def execute_sql(
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
            return await self._call("POST", f"{session_name}:executeSql", body, timeout)
        except _CALL_ERRORS as e:
            raise QueryExecutionError(
                f"unable to execute query: {getattr(e, 'message', e)}",
                session_name=session_name,
                status_code=_status_of(e),
                original=e
            ) from e

"""
spannerpool - 例外クラスモジュール

セッションプールとリモートバックエンドの失敗をフェーズごとに区別し、
呼び出し側がリトライ/容量調整/即停止を判断できるようにします。
ライブラリ自身はリトライしません。
"""

from typing import Optional, Dict, Any


class SpannerPoolError(Exception):
    """
    spannerpoolの基底例外クラス

    すべてのカスタム例外はこのクラスを継承します。
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
        original: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "SPANNER_POOL_ERROR"
        self.details = details or {}
        self.retryable = retryable
        self.original = original

    def __str__(self) -> str:
        base_msg = f"[{self.error_code}] {self.message}"
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            base_msg += f" ({details_str})"
        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """エラーを辞書形式で返す（ログ・CLI出力用）"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
            "type": self.__class__.__name__
        }


class ConfigurationError(SpannerPoolError):
    """
    設定エラー

    容量が0以下、接続先が未指定など
    """

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"field": field})
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details=details,
            retryable=False,
            **kwargs
        )
        self.field = field


class BackendUnavailableError(SpannerPoolError):
    """
    バックエンド利用不可エラー

    認証済みチャネル（トークン取得・HTTPセッション生成）を確立できない場合。
    即座に呼び出し側へ返す。
    """

    def __init__(self, message: str, endpoint: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"endpoint": endpoint})
        super().__init__(
            message=message,
            error_code="BACKEND_UNAVAILABLE",
            details=details,
            retryable=False,
            **kwargs
        )
        self.endpoint = endpoint


class SessionCreateError(SpannerPoolError):
    """
    セッション作成エラー

    リモートのセッション作成呼び出しが失敗した場合
    """

    def __init__(
        self,
        message: str,
        connection_target: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "connection_target": connection_target,
            "status_code": status_code
        })
        # 5xx・通信失敗は呼び出し側の判断で再試行できる
        retryable = status_code is None or status_code >= 500
        super().__init__(
            message=message,
            error_code="SESSION_CREATE_FAILED",
            details=details,
            retryable=retryable,
            **kwargs
        )
        self.connection_target = connection_target
        self.status_code = status_code


class SessionDeleteError(SpannerPoolError):
    """
    セッション削除エラー

    リモートのセッション削除呼び出しが失敗した場合
    """

    def __init__(
        self,
        message: str,
        session_name: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "session_name": session_name,
            "status_code": status_code
        })
        retryable = status_code is None or status_code >= 500
        super().__init__(
            message=message,
            error_code="SESSION_DELETE_FAILED",
            details=details,
            retryable=retryable,
            **kwargs
        )
        self.session_name = session_name
        self.status_code = status_code


class PoolExhaustedError(SpannerPoolError):
    """
    プール枯渇エラー

    capacity個のセッションがすべて使用中の場合。
    時間をおいて再試行するか、プールサイズを増やす必要がある。
    """

    def __init__(self, in_use: int, capacity: Optional[int] = None, **kwargs):
        message = kwargs.pop(
            "message",
            f"all {in_use} sessions are in use. you may need to increase your session pool size."
        )
        details = kwargs.pop("details", {})
        details.update({
            "in_use": in_use,
            "capacity": capacity
        })
        super().__init__(
            message=message,
            error_code="POOL_EXHAUSTED",
            details=details,
            retryable=True,  # 解放待ちで再試行可能
            **kwargs
        )
        self.in_use = in_use
        self.capacity = capacity


class QueryMarshalError(SpannerPoolError):
    """
    クエリパラメータ変換エラー

    パラメータ値をJSONにできない場合。ネットワーク呼び出し前に発生する。
    """

    def __init__(self, message: str, param_name: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"param_name": param_name})
        super().__init__(
            message=message,
            error_code="QUERY_MARSHAL_FAILED",
            details=details,
            retryable=False,
            **kwargs
        )
        self.param_name = param_name


class QueryExecutionError(SpannerPoolError):
    """
    クエリ実行エラー

    executeSqlがエラーを返した場合。元の例外はoriginal / __cause__に保持する。
    """

    def __init__(
        self,
        message: str,
        session_name: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "session_name": session_name,
            "status_code": status_code
        })
        retryable = status_code is None or status_code >= 500
        super().__init__(
            message=message,
            error_code="QUERY_EXECUTION_FAILED",
            details=details,
            retryable=retryable,
            **kwargs
        )
        self.session_name = session_name
        self.status_code = status_code


class CommitError(SpannerPoolError):
    """
    コミットエラー

    commitがエラーを返した場合
    """

    def __init__(
        self,
        message: str,
        session_name: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "session_name": session_name,
            "status_code": status_code
        })
        # コミットは冪等でないため自動判定ではリトライ可能にしない
        super().__init__(
            message=message,
            error_code="COMMIT_FAILED",
            details=details,
            retryable=False,
            **kwargs
        )
        self.session_name = session_name
        self.status_code = status_code


class UnknownSessionError(SpannerPoolError):
    """
    未登録セッションエラー

    プールが管理していないハンドルを返却しようとした場合（プログラミングエラー）
    """

    def __init__(self, session_name: str, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"session_name": session_name})
        super().__init__(
            message=kwargs.pop("message", "session is not tracked by this pool"),
            error_code="UNKNOWN_SESSION",
            details=details,
            retryable=False,
            **kwargs
        )
        self.session_name = session_name


class PoolClosedError(SpannerPoolError):
    """
    プール終了済みエラー

    close()の後にacquire()が呼ばれた場合
    """

    def __init__(self, message: str = "session pool is closed", **kwargs):
        super().__init__(
            message=message,
            error_code="POOL_CLOSED",
            retryable=False,
            **kwargs
        )


# エラータイプ判定用ヘルパー関数
def is_retryable_error(error: Exception) -> bool:
    """
    呼び出し側がリトライしてよいエラーか判定

    Args:
        error: 判定する例外

    Returns:
        リトライ可能な場合True
    """
    if isinstance(error, SpannerPoolError):
        return error.retryable

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    return False


def get_error_severity(error: Exception) -> str:
    """
    エラーの重大度を取得

    Args:
        error: 判定する例外

    Returns:
        "critical", "high", "medium", "low" のいずれか
    """
    if isinstance(error, (BackendUnavailableError, ConfigurationError)):
        return "critical"
    elif isinstance(error, UnknownSessionError):
        return "critical"
    elif isinstance(error, (SessionDeleteError, CommitError)):
        return "high"
    elif isinstance(error, (SessionCreateError, QueryExecutionError)):
        if error.status_code and error.status_code >= 500:
            return "high"
        return "medium"
    elif isinstance(error, PoolExhaustedError):
        return "medium"
    elif isinstance(error, (QueryMarshalError, PoolClosedError)):
        return "low"

    return "high"  # 未知のエラーは高重大度

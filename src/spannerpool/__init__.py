"""
spannerpool - Cloud Spanner REST セッションプール
"""
from .async_pool import AsyncSessionPool
from .backend import (
    AsyncRestSessionBackend,
    AsyncRestTransport,
    AsyncSessionBackend,
    RestSessionBackend,
    RestTransport,
    SessionBackend,
)
from .config import PoolConfig, database_path
from .exceptions import (
    SpannerPoolError,
    ConfigurationError,
    BackendUnavailableError,
    SessionCreateError,
    SessionDeleteError,
    PoolExhaustedError,
    QueryMarshalError,
    QueryExecutionError,
    CommitError,
    UnknownSessionError,
    PoolClosedError,
    is_retryable_error,
    get_error_severity
)
from .handle import AsyncSessionHandle, SessionHandle
from .params import MarshaledParams, QueryParam, marshal_params, param_type
from .pool import SessionPool
from .registry import PoolRegistry, create_pool, get_registry, reset_registry

__version__ = "0.1.0"

__all__ = [
    'SessionPool',
    'AsyncSessionPool',
    'SessionHandle',
    'AsyncSessionHandle',
    'PoolConfig',
    'database_path',
    'QueryParam',
    'MarshaledParams',
    'marshal_params',
    'param_type',
    'SessionBackend',
    'AsyncSessionBackend',
    'RestTransport',
    'RestSessionBackend',
    'AsyncRestTransport',
    'AsyncRestSessionBackend',
    'PoolRegistry',
    'create_pool',
    'get_registry',
    'reset_registry',
    'SpannerPoolError',
    'ConfigurationError',
    'BackendUnavailableError',
    'SessionCreateError',
    'SessionDeleteError',
    'PoolExhaustedError',
    'QueryMarshalError',
    'QueryExecutionError',
    'CommitError',
    'UnknownSessionError',
    'PoolClosedError',
    'is_retryable_error',
    'get_error_severity',
]

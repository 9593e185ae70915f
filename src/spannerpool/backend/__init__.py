"""
リモートセッションバックエンドモジュール
"""
from .base import (
    SessionBackend,
    AsyncSessionBackend,
    BackendFactory,
    AsyncBackendFactory
)
from .rest import RestTransport, RestSessionBackend
from .async_rest import AsyncRestTransport, AsyncRestSessionBackend

__all__ = [
    'SessionBackend',
    'AsyncSessionBackend',
    'BackendFactory',
    'AsyncBackendFactory',
    'RestTransport',
    'RestSessionBackend',
    'AsyncRestTransport',
    'AsyncRestSessionBackend'
]

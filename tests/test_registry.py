"""
PoolRegistry / create_pool テスト
"""
import pytest

from conftest import TARGET, FakeBackend
from spannerpool.backend.rest import RestTransport
from spannerpool.config import PoolConfig
from spannerpool.exceptions import SessionDeleteError
from spannerpool.pool import SessionPool
from spannerpool.registry import PoolRegistry, create_pool, get_registry, reset_registry

OTHER = "projects/test-project/instances/test-instance/databases/other-db"


class TestCreatePool:
    """プール作成テスト"""

    def test_defaults_to_rest_transport(self):
        pool = create_pool(TARGET, capacity=3, token_provider=lambda: "tok")
        assert isinstance(pool, SessionPool)
        assert isinstance(pool._backend_factory, RestTransport)
        assert pool.config.capacity == 3
        assert pool.config.connection_target == TARGET

    def test_custom_factory(self, backend):
        pool = create_pool(TARGET, capacity=1, backend_factory=lambda: backend)
        handle = pool.acquire()
        assert handle.name in backend.created

    def test_base_config_kept(self, backend):
        base = PoolConfig(idle_timeout=5.0, delete_expired_sessions=False)
        pool = create_pool(TARGET, capacity=2, backend_factory=lambda: backend, config=base)
        assert pool.config.idle_timeout == 5.0
        assert pool.config.delete_expired_sessions is False


class TestPoolRegistry:
    """データベース別レジストリテスト"""

    def test_get_pool_reuses_instance(self, backend):
        registry = PoolRegistry()
        p1 = registry.get_pool(TARGET, backend_factory=lambda: backend)
        p2 = registry.get_pool(TARGET)
        assert p1 is p2
        assert TARGET in registry
        assert len(registry) == 1

    def test_pools_are_independent(self):
        registry = PoolRegistry(default_config=PoolConfig(capacity=1))
        b1, b2 = FakeBackend(), FakeBackend()
        p1 = registry.get_pool(TARGET, backend_factory=lambda: b1)
        p2 = registry.get_pool(OTHER, backend_factory=lambda: b2)
        p1.acquire()
        p2.acquire()
        assert len(b1.created) == 1
        assert len(b2.created) == 1

    def test_close_all_collects_errors(self):
        registry = PoolRegistry()
        good, bad = FakeBackend(), FakeBackend()
        registry.get_pool(TARGET, backend_factory=lambda: good).acquire()
        handle = registry.get_pool(OTHER, backend_factory=lambda: bad).acquire()
        bad.fail_delete[handle.name] = RuntimeError("unavailable")

        errors = registry.close_all()

        assert list(errors) == [OTHER]
        assert isinstance(errors[OTHER], SessionDeleteError)
        assert len(good.deleted) == 1
        assert OTHER in registry
        assert TARGET not in registry


class TestGlobalRegistry:

    def test_singleton_and_reset(self):
        reset_registry()
        r1 = get_registry()
        assert get_registry() is r1
        assert reset_registry() == {}
        assert get_registry() is not r1
        reset_registry()

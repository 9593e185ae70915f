"""
Tests for CLI commands
"""
import json
import logging
from unittest.mock import patch

import click
import pytest
from click.testing import CliRunner

from conftest import TARGET, FakeBackend
from spannerpool.cli import _abandon, cli, parse_param, render_result_set
from spannerpool.config import PoolConfig
from spannerpool.exceptions import SpannerPoolError
from spannerpool.handle import SessionHandle
from spannerpool.pool import SessionPool


runner = CliRunner()

DB_ARGS = ['--project', 'p', '--instance', 'i', '--database', 'd']


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def mock_transport(fake_backend):
    """RestTransport を差し替え、呼び出すと FakeBackend を返す"""
    with patch('spannerpool.cli.RestTransport') as transport_class:
        transport_class.return_value.return_value = fake_backend
        yield transport_class


class TestParseParam:
    """Tests for --param parsing"""

    def test_scalar(self):
        param = parse_param("id=42:INT64")
        assert (param.name, param.value, param.type) == ("id", 42, "INT64")

    def test_plain_string(self):
        param = parse_param("name=alice:string")
        assert param.value == "alice"
        assert param.type == "STRING"

    def test_value_with_colon(self):
        param = parse_param("ts=2024-01-01T00:00:00Z:TIMESTAMP")
        assert param.value == "2024-01-01T00:00:00Z"
        assert param.type == "TIMESTAMP"

    def test_array(self):
        param = parse_param('ids=["1","2"]:ARRAY<INT64>')
        assert param.value == ["1", "2"]
        assert param.type == "ARRAY"
        assert param.array_element_type == "INT64"

    def test_invalid(self):
        with pytest.raises(click.BadParameter):
            parse_param("nonsense")


class TestRenderResultSet:

    def test_columns_and_nulls(self):
        table = render_result_set({
            "metadata": {"rowType": {"fields": [{"name": "id"}, {"name": "name"}]}},
            "rows": [["1", None]],
        })
        assert [c.header for c in table.columns] == ["id", "name"]
        assert table.row_count == 1


class TestConfigCommand:
    """Tests for config command"""

    def test_config_help(self):
        result = runner.invoke(cli, ['config', '--help'])
        assert result.exit_code == 0
        assert '--json-output' in result.output

    def test_config_json(self, clean_env):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['config', '--json-output', '--capacity', '4'] + DB_ARGS)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data['connection_target'] == 'projects/p/instances/i/databases/d'
        assert data['capacity'] == 4

    def test_config_missing_file(self, clean_env):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['config', '--config', 'missing.yaml'])
        assert result.exit_code == 1
        assert 'CONFIGURATION_ERROR' in result.output

    def test_config_invalid_number(self, clean_env):
        clean_env.setenv("SPANNER_POOL_CAPACITY", "ten")
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['config'] + DB_ARGS)
        assert result.exit_code == 1
        assert 'CONFIGURATION_ERROR' in result.output
        assert 'capacity' in result.output


class TestQueryCommand:
    """Tests for query command"""

    def test_query_json(self, clean_env, mock_transport, fake_backend):
        with runner.isolated_filesystem():
            result = runner.invoke(
                cli,
                ['query', 'SELECT @id', '--param', 'id=1:INT64', '--json-output',
                 '--token', 'tok'] + DB_ARGS
            )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == fake_backend.result

        session_name, sql, params, mode = fake_backend.queries[0]
        assert sql == 'SELECT @id'
        assert params.params == {'id': 1}
        assert mode == 'NORMAL'
        # 終了時にセッションを削除する
        assert fake_backend.deleted == [session_name]
        mock_transport.return_value.close.assert_called_once()

    def test_query_table(self, clean_env, mock_transport):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['query', 'SELECT 1'] + DB_ARGS)
        assert result.exit_code == 0
        assert 'Rows (1)' in result.output

    def test_query_without_database(self, clean_env, mock_transport):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['query', 'SELECT 1'])
        assert result.exit_code == 1
        assert 'CONFIGURATION_ERROR' in result.output

    def test_query_create_failure(self, clean_env, mock_transport, fake_backend):
        fake_backend.fail_create = RuntimeError("permission denied")
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['query', 'SELECT 1'] + DB_ARGS)
        assert result.exit_code == 1
        assert 'SESSION_CREATE_FAILED' in result.output


class TestSessionsCommand:
    """Tests for sessions command"""

    def test_sessions(self, clean_env, mock_transport, fake_backend):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['sessions', '--count', '2'] + DB_ARGS)
        assert result.exit_code == 0, result.output
        assert len(fake_backend.created) == 2
        assert sorted(fake_backend.deleted) == sorted(fake_backend.created)
        assert '2/10 sessions opened and closed' in result.output

    def test_sessions_exhausted(self, clean_env, mock_transport):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['sessions', '--count', '3', '--capacity', '2'] + DB_ARGS)
        assert result.exit_code == 1
        assert 'POOL_EXHAUSTED' in result.output

    def test_sessions_failure_cleans_up(self, clean_env, mock_transport, fake_backend):
        with runner.isolated_filesystem():
            runner.invoke(cli, ['sessions', '--count', '3', '--capacity', '2'] + DB_ARGS)
        assert len(fake_backend.created) == 2
        assert sorted(fake_backend.deleted) == sorted(fake_backend.created)

    def test_sessions_exhausted_shows_retry_hint(self, clean_env, mock_transport):
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['sessions', '--count', '2', '--capacity', '1'] + DB_ARGS)
        assert result.exit_code == 1
        assert '時間をおいて再実行' in result.output

    def test_sessions_close_retried_after_partial_failure(self, clean_env, mock_transport, fake_backend):
        second = 'projects/p/instances/i/databases/d/sessions/s2'
        fake_backend.fail_delete_once[second] = RuntimeError("unavailable")
        with runner.isolated_filesystem():
            result = runner.invoke(cli, ['sessions', '--count', '3', '--capacity', '3'] + DB_ARGS)
        assert result.exit_code == 1
        assert 'SESSION_DELETE_FAILED' in result.output
        # 1回目の close で s1、後始末の close で残りを削除
        assert fake_backend.deleted == fake_backend.created


class TestAbandon:
    """Tests for failure cleanup"""

    def _pool(self, backend, capacity=3):
        config = PoolConfig(connection_target=TARGET, capacity=capacity)
        return SessionPool(config, lambda: backend)

    def test_retries_close_after_partial_failure(self):
        backend = FakeBackend()
        pool = self._pool(backend)
        handles = [pool.acquire() for _ in range(3)]
        for handle in handles:
            pool.release(handle)
        backend.fail_delete_once[handles[1].name] = RuntimeError("unavailable")
        with pytest.raises(SpannerPoolError):
            pool.close()

        _abandon(pool, handles)

        assert pool.occupancy() == 0
        assert backend.deleted == [h.name for h in handles]

    def test_untracked_handle_does_not_stop_close(self):
        backend = FakeBackend()
        pool = self._pool(backend)
        held = pool.acquire()
        stranger = SessionHandle(f"{TARGET}/sessions/unknown", backend)

        _abandon(pool, [stranger, held])

        assert pool.occupancy() == 0
        assert backend.deleted == [held.name]

    def test_close_failure_is_logged(self, caplog):
        backend = FakeBackend()
        pool = self._pool(backend)
        held = pool.acquire()
        backend.fail_delete[held.name] = RuntimeError("unavailable")

        with caplog.at_level(logging.WARNING, logger="spannerpool.cli"):
            _abandon(pool, [held])

        assert pool.occupancy() == 1
        assert any("SESSION_DELETE_FAILED" in r.getMessage() for r in caplog.records)

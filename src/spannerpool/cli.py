"""
spannerpool CLI

Usage:
    spannerpool config
    spannerpool query "SELECT id, name FROM users WHERE id = @id" --param id=1:INT64
    spannerpool sessions --count 3
"""
import json
import logging
from dataclasses import replace
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .backend.rest import RestTransport
from .config import PoolConfig, database_path
from .exceptions import SpannerPoolError, UnknownSessionError, get_error_severity, is_retryable_error
from .params import QueryParam
from .pool import SessionPool


logger = logging.getLogger(__name__)

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """ログ設定"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_param(raw: str) -> QueryParam:
    """
    name=value:TYPE 形式のパラメータを解析

    TYPE が ARRAY<ELEM> の場合は要素型も設定する。値はJSONとして読めればJSON、
    読めなければ文字列として扱う。
    """
    if "=" not in raw or ":" not in raw:
        raise click.BadParameter(f"expected name=value:TYPE, got {raw!r}")
    name, rest = raw.split("=", 1)
    value_text, type_text = rest.rsplit(":", 1)
    type_text = type_text.strip().upper()

    element_type = ""
    if type_text.startswith("ARRAY<") and type_text.endswith(">"):
        element_type = type_text[len("ARRAY<"):-1]
        type_text = "ARRAY"

    try:
        value = json.loads(value_text)
    except ValueError:
        value = value_text

    return QueryParam(name=name.strip(), value=value, type=type_text, array_element_type=element_type)


def build_config(
    config_path: Optional[str],
    project: Optional[str],
    instance: Optional[str],
    database: Optional[str],
    capacity: Optional[int]
) -> PoolConfig:
    """config.yaml / 環境変数 / コマンドライン引数の順に設定を重ねる"""
    config = PoolConfig.from_yaml(config_path)
    if project and instance and database:
        config = replace(config, connection_target=database_path(project, instance, database))
    if capacity:
        config = replace(config, capacity=capacity)
    return config


def render_result_set(result: dict) -> Table:
    """ResultSet をテーブル表示用に変換（値は加工しない）"""
    fields = result.get("metadata", {}).get("rowType", {}).get("fields", [])
    rows = result.get("rows", [])

    table = Table(title=f"Rows ({len(rows)})")
    for f in fields:
        table.add_column(f.get("name") or "?", style="cyan")
    if not fields and rows:
        for i in range(len(rows[0])):
            table.add_column(f"col{i}")

    for row in rows:
        table.add_row(*["NULL" if cell is None else str(cell) for cell in row])
    return table


def _token_provider(token: Optional[str]):
    if not token:
        return None
    return lambda: token


def _abandon(pool: SessionPool, handles) -> None:
    """失敗時に借りたセッションを返却して削除する（失敗はログのみ）"""
    for handle in handles:
        try:
            pool.release(handle)
        except UnknownSessionError:
            # 先の close() で削除済み
            logger.debug(f"返却不要（削除済み）: {handle.name}")

    try:
        pool.close()
    except SpannerPoolError as e:
        logger.warning(f"セッション後始末に失敗: {e}")


# 重大度ごとの表示スタイル
_SEVERITY_STYLES = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "cyan",
}


def _fail(error: SpannerPoolError) -> None:
    style = _SEVERITY_STYLES.get(get_error_severity(error), "red")
    console.print(f"[{style}]{escape(str(error))}[/]")
    if is_retryable_error(error):
        console.print("[dim]時間をおいて再実行すると成功する可能性があります[/dim]")
    raise SystemExit(1)


connection_options = [
    click.option('--config', 'config_path', type=click.Path(), default=None,
                 help='設定ファイルパス（デフォルト: ./config.yaml）'),
    click.option('--project', envvar='SPANNER_PROJECT', help='GCP project ID'),
    click.option('--instance', envvar='SPANNER_INSTANCE', help='Spanner instance ID'),
    click.option('--database', envvar='SPANNER_DATABASE', help='Spanner database ID'),
    click.option('--capacity', type=int, default=None, help='Session pool capacity'),
    click.option('--token', envvar='SPANNER_ACCESS_TOKEN', default=None,
                 help='OAuth2 access token (never minted by this tool)'),
]


def with_connection_options(func):
    for option in reversed(connection_options):
        func = option(func)
    return func


@click.group()
@click.version_option(version="0.1.0")
@click.option('-v', '--verbose', is_flag=True, help='詳細ログを表示')
def cli(verbose: bool):
    """spannerpool - Cloud Spanner REST session pool"""
    setup_logging(verbose=verbose)


@cli.command()
@with_connection_options
@click.option('--json-output', '-j', is_flag=True, help='Output as JSON')
def config(config_path: Optional[str], project: Optional[str], instance: Optional[str],
           database: Optional[str], capacity: Optional[int], token: Optional[str],
           json_output: bool):
    """Show the resolved pool configuration"""
    try:
        resolved = build_config(config_path, project, instance, database, capacity)
    except SpannerPoolError as e:
        _fail(e)
        return

    if json_output:
        click.echo(json.dumps(resolved.to_dict(), indent=2, ensure_ascii=False))
        return

    table = Table(title="Pool configuration")
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    for key, value in resolved.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@cli.command()
@click.argument('sql')
@with_connection_options
@click.option('--param', '-p', 'params', multiple=True, help='name=value:TYPE (repeatable)')
@click.option('--mode', 'query_mode', default='NORMAL',
              type=click.Choice(['NORMAL', 'PLAN', 'PROFILE']), help='Query mode')
@click.option('--json-output', '-j', is_flag=True, help='Output raw ResultSet as JSON')
def query(sql: str, config_path: Optional[str], project: Optional[str], instance: Optional[str],
          database: Optional[str], capacity: Optional[int], token: Optional[str],
          params: Tuple[str, ...], query_mode: str, json_output: bool):
    """Run a SQL query on a pooled session"""
    query_params = [parse_param(p) for p in params]

    try:
        resolved = build_config(config_path, project, instance, database, capacity)
        transport = RestTransport(resolved, _token_provider(token))
        pool = SessionPool(resolved, transport)
    except SpannerPoolError as e:
        _fail(e)
        return

    try:
        with pool.session() as sess:
            result = sess.execute_sql(query_params, sql, query_mode)
        pool.close()
    except SpannerPoolError as e:
        _abandon(pool, [])
        _fail(e)
        return
    finally:
        transport.close()

    if json_output:
        click.echo(json.dumps(result, indent=2, ensure_ascii=False))
        return
    console.print(render_result_set(result))


@cli.command()
@with_connection_options
@click.option('--count', '-n', default=1, help='Number of sessions to open')
def sessions(config_path: Optional[str], project: Optional[str], instance: Optional[str],
             database: Optional[str], capacity: Optional[int], token: Optional[str],
             count: int):
    """Open sessions, print pool stats, then close them"""
    try:
        resolved = build_config(config_path, project, instance, database, capacity)
        transport = RestTransport(resolved, _token_provider(token))
        pool = SessionPool(resolved, transport)
    except SpannerPoolError as e:
        _fail(e)
        return

    handles = []
    try:
        for _ in range(count):
            handles.append(pool.acquire())
        stats = pool.stats()
        for handle in handles:
            pool.release(handle)
        pool.close()
    except SpannerPoolError as e:
        _abandon(pool, handles)
        _fail(e)
        return
    finally:
        transport.close()

    table = Table(title="Session pool")
    table.add_column("Session", style="cyan")
    for handle in handles:
        table.add_row(handle.name)
    console.print(table)
    console.print(
        f"[green]{stats['occupancy']}/{stats['capacity']} sessions opened and closed[/green]"
    )


def main():
    cli()


if __name__ == "__main__":
    main()

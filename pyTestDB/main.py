import argparse
import logging
import sys
from typing import Optional

from tqdm import tqdm

from .adapters import DriverAdapter
from .boot import BootTest
from .builder import DatabaseBuilder
from .config import load_build_configurations, settings, validate_settings
from .dto import BuildConfiguration, human_size, render_table
from .exceptions import PyTestDBError
from .hasher import ScenarioHasher
from .metrics import metrics
from .purger import FirstTestFlag, StalePurger
from .snapshots import SnapshotStore

logger = logging.getLogger()
logger.setLevel(logging.INFO)
stream_hander = logging.StreamHandler()

formatter = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(funcName)s - %(message)s"
)
stream_hander.setFormatter(formatter)
logger.addHandler(stream_hander)


def init_file_logger(log_path: str):
    file_hander = logging.FileHandler(log_path, encoding="utf-8")
    file_hander.setFormatter(formatter)
    logger.addHandler(file_hander)


def start_metrics_server(port: int, host: str):
    """在 port 起的若干端口中找一个可用端口启动 Prometheus 指标服务"""
    for candidate in range(port, port + 101):
        try:
            metrics.start_http_server(candidate, host)
            logger.info(f"Metrics listening on {host}:{candidate}")
            return candidate
        except OSError:
            continue
    logger.warning("Metrics server start failed on all candidate ports")
    return None


def load_configurations(connections: Optional[list[str]]) -> list[BuildConfiguration]:
    configs = load_build_configurations(settings)
    if connections:
        configs = [c for c in configs if c.connection in connections]
    if not configs:
        logger.error("没有找到需要处理的连接，请检查 CONNECTIONS 配置")
        sys.exit(1)
    return configs


def command_build(args) -> dict[str, Optional[str]]:
    boot = BootTest(purge=not args.no_purge)
    for config in load_configurations(args.connection):
        boot.add_builder(config)
    boot.run_build_steps()

    mapping = boot.build_connection_dbs_list()
    print(render_table({f"{k}:": v or "?" for k, v in mapping.items()}))
    return mapping


def command_list(args) -> None:
    configs = load_configurations(args.connection)
    hasher = ScenarioHasher()
    snapshot_hashes = set()
    seen_servers = set()

    rows = []
    for config in tqdm(configs, desc="扫描连接", unit="conn"):
        hashes = hasher.compute_hashes(config)
        snapshot_hashes.add(hashes.snapshot_hash)
        if config.remote_build_url and not config.remote_build_fallback_local:
            continue
        adapter = DriverAdapter(config)
        if adapter.server_key in seen_servers:
            continue
        seen_servers.add(adapter.server_key)
        for meta in adapter.find_databases(None, hashes.build_hash):
            rows.append(
                f"[{'valid' if meta.is_valid else 'stale'}] {meta.connection}: {meta.readable()}"
            )

    stores = {(c.storage_dir, c.snapshot_prefix): SnapshotStore(c) for c in configs}
    total = 0
    for store in stores.values():
        for snapshot in store.list_snapshots(valid_hashes=snapshot_hashes):
            total += snapshot.size() or 0
            rows.append(f"[{'valid' if snapshot.is_valid else 'stale'}] {snapshot.readable()}")

    for row in rows:
        print(row)
    print(f"{len(rows)} item(s), snapshots use {human_size(total)}")


def command_purge(args) -> None:
    configs = load_configurations(args.connection)
    builders = [DatabaseBuilder(config) for config in configs]
    report = StalePurger(FirstTestFlag()).run(builders)
    if report is None:
        print("Nothing to purge")
        return
    print(
        f"Removed {report.databases_removed} database(s), "
        f"{report.snapshots_removed} snapshot(s), "
        f"{report.resolved_removed} settings file(s); "
        f"freed {human_size(report.bytes_freed)}"
    )


def main():
    parser = argparse.ArgumentParser(
        description="pyTestDB - Build, reuse and purge test databases"
    )
    parser.add_argument(
        "--log-path",
        type=str,
        dest="log_path",
        help="Also write the log to this file",
        default=None,
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging", default=False
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        dest="metrics_port",
        help="Prometheus metrics port (0 to disable)",
        default=0,
    )
    parser.add_argument(
        "--metrics-host",
        type=str,
        dest="metrics_host",
        help="Prometheus metrics host",
        default="0.0.0.0",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.required = True

    # Build 子命令
    build_parser = subparsers.add_parser("build", help="Build (or reuse) the test databases")
    build_parser.add_argument(
        "--connection", action="append", help="Only build this connection (repeatable)"
    )
    build_parser.add_argument(
        "--no-purge",
        action="store_true",
        dest="no_purge",
        help="Do not remove stale databases and snapshots first",
        default=False,
    )

    # List 子命令
    list_parser = subparsers.add_parser("list", help="List test databases and snapshots")
    list_parser.add_argument(
        "--connection", action="append", help="Only list this connection (repeatable)"
    )

    # Purge 子命令
    purge_parser = subparsers.add_parser("purge", help="Remove stale databases and snapshots")
    purge_parser.add_argument(
        "--connection", action="append", help="Only consider this connection (repeatable)"
    )

    # Serve 子命令
    serve_parser = subparsers.add_parser("serve", help="Start the remote build server")
    serve_parser.add_argument(
        "--port",
        type=int,
        help="Web server port (default: 8000)",
        default=8000,
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        help="Web server host (default: 0.0.0.0)",
        default="0.0.0.0",
    )

    args = parser.parse_args()

    if args.log_path:
        init_file_logger(args.log_path)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    for warning in validate_settings(settings):
        logger.warning(warning)

    if args.metrics_port and args.metrics_port > 0:
        start_metrics_server(args.metrics_port, args.metrics_host)

    try:
        if args.command == "build":
            command_build(args)
        elif args.command == "list":
            command_list(args)
        elif args.command == "purge":
            command_purge(args)
        elif args.command == "serve":
            from .web_server import start_web_server

            start_web_server(args.host, args.port)
    except PyTestDBError as e:
        logger.error(f"{args.command} 失败: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()

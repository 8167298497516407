import argparse
import asyncio
import sys
from typing import Iterable, List, Optional

from .config.sync_config import BookingSyncConfig, ConfigManager
from .core.models import BookingIntent
from .layers.remote_layer import ApiEndpoints, HttpBookingApiClient, HttpConnectivityProbe
from .layers.storage_layer import InMemoryKeyValueStore, IntentStore, KeyValueStore, SQLiteKeyValueStore
from .layers.sync_layer import SyncCoordinator
from .utils.sync_logger import setup_logging


def build_backend(config: BookingSyncConfig) -> KeyValueStore:
    if config.storage.backend == "memory":
        return InMemoryKeyValueStore()
    return SQLiteKeyValueStore(config.storage.database_path)


def format_intents(intents: List[BookingIntent]) -> str:
    if not intents:
        return "キューに予約はありません"

    lines = []
    for intent in intents:
        line = (f"{intent.id}  {intent.status.value:<9}  {intent.resource_id}  "
                f"{intent.check_in.date()} - {intent.check_out.date()}  "
                f"{intent.guests}名  {intent.total_amount:.2f} {intent.currency}")
        if intent.retry_count:
            line += f"  retry={intent.retry_count}"
        if intent.last_error:
            line += f"  error={intent.last_error}"
        lines.append(line)
    return "\n".join(lines)


async def show_status(config: BookingSyncConfig) -> int:
    store = IntentStore(build_backend(config), config.storage.storage_key)
    await store.initialize()
    print(format_intents(await store.list()))
    return 0


async def run_sync(config: BookingSyncConfig, auth_token: Optional[str]) -> int:
    store = IntentStore(build_backend(config), config.storage.storage_key)
    await store.initialize()

    endpoints = ApiEndpoints(**{k: v for k, v in config.remote.endpoints.items()
                                if k in ApiEndpoints.__dataclass_fields__})
    connectivity = HttpConnectivityProbe(
        f"{config.remote.base_url.rstrip('/')}{config.remote.health_path}",
        interval_seconds=config.sync.probe_interval_seconds,
        timeout_seconds=config.remote.timeout_seconds,
    )

    async with HttpBookingApiClient(config.remote.base_url, endpoints,
                                    config.remote.timeout_seconds, auth_token) as api:
        if not await connectivity.probe():
            print("サーバーに接続できません。予約はキューに残ります", file=sys.stderr)
            return 1

        coordinator = SyncCoordinator.from_config(config, store, api, connectivity)
        # 1回だけ実行して終了するため定期同期・確定表示の猶予は不要
        coordinator.sync_on_start = False
        coordinator.periodic_interval_seconds = 0
        coordinator.confirmed_grace_seconds = 0
        await coordinator.start()
        try:
            result = await coordinator.trigger_sync()
            await coordinator.wait_for_background()
        finally:
            await coordinator.stop()

    if result is not None:
        print(result.summary())
    print(format_intents(await store.list()))
    return 0


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Offline booking sync engine")
    parser.add_argument("--config-dir", default="config", help="設定ディレクトリ（main.yaml等）")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="キュー内の予約を表示")
    subparsers.add_parser("sync", help="同期パスを1回実行")
    subparsers.add_parser("init-config", help="設定ファイルのテンプレートを作成")
    args = parser.parse_args(list(argv) if argv is not None else None)

    manager = ConfigManager(args.config_dir)

    if args.command == "init-config":
        manager.save_config_template()
        print(f"設定テンプレートを作成しました: {manager.config_dir}")
        return 0

    config = manager.load_config()
    setup_logging({
        'level': config.logging.level,
        'file_path': config.logging.file_path,
        'metrics_enabled': config.logging.metrics_enabled,
    })

    if args.command == "status":
        return asyncio.run(show_status(config))

    secrets = manager.load_secrets()
    return asyncio.run(run_sync(config, secrets.get('BOOKING_SYNC_API_TOKEN')))


if __name__ == "__main__":
    sys.exit(main())

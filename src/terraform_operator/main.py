"""Main entry point for the Terraform operator.

One controller is started per entry in the watches file. Each controller
gets its own reconciler and manager factory, so resource types never share
override values or templates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from .config import Config, ConfigurationError
from .controller import Controller
from .kube_store import KubernetesStore, load_kube_config
from .manager_factory import TerraformManagerFactory
from .reconciler import Reconciler
from .store import LoggingEventRecorder, ResourceStore
from .terraform import TerraformCLI
from .watches import Watch, WatchLoadError, load

_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format records as one JSON object per line.

    Fields passed through `extra=` (namespace, resource_name, kind,
    controller, ...) become top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Install the JSON handler on the root logger at `level`.

    Calling it again replaces the handler installed by a previous call.
    """
    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_controllers(
    config: Config,
    watches: list[Watch],
    store: ResourceStore,
    terraform: TerraformCLI | None = None,
) -> list[Controller]:
    """Wire a reconciler, manager factory and controller for each watch."""
    terraform = terraform or TerraformCLI(
        binary=config.terraform_binary,
        timeout_seconds=config.terraform_timeout_seconds,
    )
    base_dir = config.watches_file.parent

    controllers: list[Controller] = []
    for watch in watches:
        name = f"{watch.kind.lower()}-controller"
        template_dir = Path(watch.template_dir)
        if not template_dir.is_absolute():
            template_dir = base_dir / template_dir

        factory = TerraformManagerFactory(
            template_dir=template_dir,
            work_dir=config.work_dir / watch.kind.lower(),
            terraform=terraform,
        )
        reconciler = Reconciler(
            store=store,
            watch=watch,
            manager_factory=factory,
            recorder=LoggingEventRecorder(name),
            reconcile_period_seconds=config.reconcile_period_seconds,
            deletion_wait_timeout_seconds=config.deletion_wait_timeout_seconds,
        )
        controllers.append(
            Controller(
                name=name,
                store=store,
                reconciler=reconciler,
                namespace=config.watch_namespace,
                max_concurrent_reconciles=config.max_concurrent_reconciles,
            )
        )
    return controllers


async def run_controllers(controllers: list[Controller]) -> None:
    """Run controllers until SIGTERM/SIGINT."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        for controller in controllers:
            controller.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    await asyncio.gather(*(controller.run() for controller in controllers))


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_level)

    try:
        watches = load(config.watches_file)
    except WatchLoadError as e:
        logger.error(
            "Failed to load watches",
            extra={"error": str(e), "watches_file": str(config.watches_file)},
        )
        return 1

    if not watches:
        logger.error("No watches configured", extra={"watches_file": str(config.watches_file)})
        return 1

    logger.info(
        "Starting Terraform operator",
        extra={
            "watches": len(watches),
            "namespace": config.watch_namespace or "<all>",
            "reconcile_period_seconds": config.reconcile_period_seconds,
        },
    )

    try:
        load_kube_config()
        store = KubernetesStore()
        controllers = build_controllers(config, watches, store)
    except Exception as e:
        logger.error(
            "Failed to initialize controllers",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    try:
        await run_controllers(controllers)
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()

import argparse
import asyncio
import logging
import signal
import sys
from typing import Awaitable, Dict, List, Optional

from sidekiq_autoscaler.cluster.deployments import (
    ClusterStoreReader,
    DeploymentWatcher,
    SnapshotStore,
    load_kube_config,
)
from sidekiq_autoscaler.common.logger import setup_logging
from sidekiq_autoscaler.config import Config, Settings, load_config, load_settings
from sidekiq_autoscaler.control_loop import ControlLoop
from sidekiq_autoscaler.errors import AutoscalerError, ConfigError
from sidekiq_autoscaler.queue_metrics.sidekiq import SidekiqQueueFetcher

EXIT_OK = 0
EXIT_TASK_FAILED = 1
EXIT_BAD_CONFIG = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='sidekiq-autoscaler',
        description='Scale Sidekiq worker deployments on Kubernetes by queue length.'
    )
    parser.add_argument('--application',
                        help='The application short name to autoscale (env: APPLICATION)')
    parser.add_argument('--namespace', help='Kubernetes namespace of the application (env: KUBE_NAMESPACE)')
    parser.add_argument('--config', dest='config_path',
                        help='Path to the scaling configuration file (env: AUTOSCALER_CONFIG)')
    parser.add_argument('--redis-url', help='Redis URL used by Sidekiq (env: REDIS_URL)')
    parser.add_argument('--redis-namespace', help='redis-namespace prefix of Sidekiq keys (env: REDIS_NAMESPACE)')
    parser.add_argument('--log-level', help='Log level (env: LOG_LEVEL)')
    return parser.parse_args(argv)


async def _supervise(name: str, task: Awaitable[None], cancel: asyncio.Event) -> bool:
    """Run task to completion; on failure log it and cancel the other tasks."""
    try:
        await task
    except Exception as e:
        logging.error(f"Error in {name}: {e}", exc_info=True)
        cancel.set()
        return False
    return True


async def run_service(settings: Settings, config: Config) -> int:
    """
    Run the deployment watch and the control loop until interrupted.

    Args:
        settings: Runtime settings
        config: Scaling configuration

    Returns:
        int: Process exit status, non-zero if any task failed
    """
    cancel = asyncio.Event()
    load_kube_config()
    store = SnapshotStore()
    watcher = DeploymentWatcher(settings.application, settings.namespace, store,
                                watch_timeout=settings.watch_timeout)
    queue_fetcher = SidekiqQueueFetcher.from_url(settings.redis_url, settings.redis_namespace)
    control_loop = ControlLoop(
        config,
        ClusterStoreReader(store.as_reader()),
        queue_fetcher,
        tick_interval=settings.tick_interval,
        retry_interval=settings.retry_interval,
        queue_fetch_timeout=settings.queue_fetch_timeout
    )

    logging.info(f"Autoscaling background workers of {settings.application} in namespace {settings.namespace}")
    tasks: Dict[str, Awaitable[None]] = {
        'cluster state fetching': watcher.start(cancel),
        'control loop': control_loop.run(cancel),
    }
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, cancel.set)
    try:
        results = await asyncio.gather(*(_supervise(name, task, cancel) for name, task in tasks.items()))
    finally:
        await queue_fetcher.close()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)

    if not all(results):
        logging.error("Shut down after a task failed")
        return EXIT_TASK_FAILED

    logging.info("Gracefully shut down")
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        settings = load_settings(vars(args))
        config = load_config(settings.config_path)
    except ConfigError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(EXIT_BAD_CONFIG)

    try:
        status = asyncio.run(run_service(settings, config))
    except AutoscalerError as e:
        logging.error(f"Failed to start: {e}", exc_info=True)
        status = EXIT_TASK_FAILED

    sys.exit(status)

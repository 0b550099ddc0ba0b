import abc
import asyncio
import contextlib
import logging
from typing import Dict, Mapping, Optional

from sidekiq_autoscaler.config import Config
from sidekiq_autoscaler.errors import ClusterFetchError, QueueFetchError
from sidekiq_autoscaler.scaler import replicas

TICK_INTERVAL = 3.0
RETRY_INTERVAL = 1.0


class ClusterStateFetcher(abc.ABC):
    """Source of the current replica count per worker deployment."""

    @abc.abstractmethod
    def get_current_state(self) -> Dict[str, int]:
        """Return replicas per deployment name, possibly empty while the cache syncs."""


class QueueStateFetcher(abc.ABC):
    """Source of the current pending job count per queue."""

    @abc.abstractmethod
    async def get_current_state(self) -> Dict[str, int]:
        """Return pending jobs per queue name."""


class Actuator(abc.ABC):
    """Receives the desired replica counts computed on each tick."""

    @abc.abstractmethod
    def apply(self, desired: Mapping[str, int], current: Mapping[str, int]) -> None:
        """Act on the desired replica counts for this tick."""


class LoggingActuator(Actuator):
    """Reports desired replica counts without changing the cluster."""

    def apply(self, desired: Mapping[str, int], current: Mapping[str, int]) -> None:
        if not desired:
            logging.info("No deployments serve the observed queues, nothing to scale")
            return

        for name, count in sorted(desired.items()):
            current_count = current.get(name)
            if current_count is None:
                logging.warning(f"Deployment {name} wants {count} replicas but was not found in the cluster")
            elif count > current_count:
                logging.info(f"Deployment {name} should scale up from {current_count} to {count} replicas")
            elif count < current_count:
                logging.info(f"Deployment {name} should scale down from {current_count} to {count} replicas")
            else:
                logging.info(f"Deployment {name} is at the desired {count} replicas")


class ControlLoop:
    """
    Periodically fetches cluster and queue state and decides replica counts.

    Each tick reads the cluster snapshot, then queue lengths, then hands the
    decision to the actuator, strictly in that order. While the cluster
    snapshot is empty the queue fetch is skipped and the loop retries after
    retry_interval; otherwise it waits tick_interval. Every wait and the
    broker fetch race against the cancellation event.
    """

    def __init__(self, config: Config, cluster_fetcher: ClusterStateFetcher,
                 queue_fetcher: QueueStateFetcher, actuator: Actuator = None,
                 tick_interval: float = TICK_INTERVAL, retry_interval: float = RETRY_INTERVAL,
                 queue_fetch_timeout: Optional[float] = None):
        self.config = config
        self.cluster_fetcher = cluster_fetcher
        self.queue_fetcher = queue_fetcher
        self.actuator = actuator or LoggingActuator()
        self.tick_interval = tick_interval
        self.retry_interval = retry_interval
        self.queue_fetch_timeout = queue_fetch_timeout

    async def run(self, cancel: asyncio.Event) -> None:
        """
        Run ticks until cancel is set.

        Raises:
            ClusterFetchError: If the cluster snapshot cannot be read
            QueueFetchError: If the broker cannot be queried
        """
        logging.info(f"Control loop started (tick every {self.tick_interval}s, "
                     f"retry every {self.retry_interval}s)")
        while not cancel.is_set():
            interval = await self.tick(cancel)
            if interval is None:
                break

            logging.debug(f"Sleeping for {interval}s")
            if await self.wait(cancel, interval):
                break
            logging.debug("Waking")

        logging.info("Control loop cancelled")

    async def tick(self, cancel: asyncio.Event) -> Optional[float]:
        """
        Run one fetch and decide pass.

        Returns:
            float: Seconds to wait before the next tick, or None if cancel was
                   set while queue lengths were being fetched
        """
        cluster_state = self._fetch_cluster_state()
        if not cluster_state:
            logging.warning("The cluster state is empty, so the deployment watch has not synced yet "
                            "or there are no background workers for the selected application")
            return self.retry_interval

        logging.debug(f"Current cluster state: {cluster_state}")

        queue_lengths = await self._fetch_queue_lengths(cancel)
        if queue_lengths is None:
            return None

        logging.info(f"Current queue lengths: {queue_lengths}")

        desired = replicas(self.config, queue_lengths)
        logging.info(f"Desired replicas: {desired}")
        self.actuator.apply(desired, cluster_state)

        return self.tick_interval

    @staticmethod
    async def wait(cancel: asyncio.Event, interval: float) -> bool:
        """Wait up to interval seconds; return True if cancel was set meanwhile."""
        try:
            await asyncio.wait_for(cancel.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    def _fetch_cluster_state(self) -> Dict[str, int]:
        try:
            return self.cluster_fetcher.get_current_state()
        except ClusterFetchError:
            raise
        except Exception as e:
            raise ClusterFetchError(f"reading cluster state: {e}") from e

    async def _fetch_queue_lengths(self, cancel: asyncio.Event) -> Optional[Dict[str, int]]:
        fetch = asyncio.ensure_future(self.queue_fetcher.get_current_state())
        cancelled = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({fetch, cancelled}, timeout=self.queue_fetch_timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            for future in (fetch, cancelled):
                if not future.done():
                    future.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await future

        if fetch in done:
            try:
                return fetch.result()
            except QueueFetchError:
                raise
            except Exception as e:
                raise QueueFetchError(f"fetching queue lengths: {e}") from e

        if cancelled in done:
            logging.debug("Cancelled while fetching queue lengths")
            return None

        raise QueueFetchError(f"fetching queue lengths timed out after {self.queue_fetch_timeout}s")

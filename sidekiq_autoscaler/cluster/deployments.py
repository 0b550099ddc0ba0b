import asyncio
import contextlib
import logging
import threading
from types import MappingProxyType
from typing import Dict, Mapping, NamedTuple, Optional

from kubernetes import client, config as k8s_config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from retry import retry
from urllib3.exceptions import HTTPError

from sidekiq_autoscaler.control_loop import ClusterStateFetcher
from sidekiq_autoscaler.errors import ClusterFetchError

RETRIES_NUMBER = 3
HTTP_STATUS_GONE = 410
# Client-side read timeout beyond the server-side watch window
REQUEST_TIMEOUT_MARGIN = 5

INSTANCE_LABEL = 'app.kubernetes.io/instance'
COMPONENT_LABEL = 'app.kubernetes.io/component'
WORKER_COMPONENT_PREFIX = 'background-worker'


class DeploymentObject(NamedTuple):
    """The parts of a Deployment the autoscaler cares about."""
    name: str
    labels: Mapping[str, str]
    replicas: Optional[int]

    @classmethod
    def from_api(cls, deployment) -> 'DeploymentObject':
        metadata = deployment.metadata
        spec = deployment.spec
        return cls(
            name=metadata.name,
            labels=MappingProxyType(dict(metadata.labels or {})),
            replicas=spec.replicas if spec is not None else None
        )

    def is_background_worker(self) -> bool:
        return self.labels.get(COMPONENT_LABEL, '').startswith(WORKER_COMPONENT_PREFIX)


class SnapshotReader:
    """Read-only view of a SnapshotStore."""

    def __init__(self, store: 'SnapshotStore'):
        self._store = store

    def state(self) -> Mapping[str, DeploymentObject]:
        return self._store.state()

    @property
    def ready(self) -> bool:
        return self._store.ready


class SnapshotStore:
    """
    Latest known Deployments, keyed by name.

    The store has a single writer, the DeploymentWatcher, which replaces the
    whole snapshot on every update. Readers get an immutable mapping and never
    see a partially applied update.
    """

    def __init__(self):
        self._snapshot: Mapping[str, DeploymentObject] = MappingProxyType({})
        self._synced = threading.Event()

    def publish(self, objects: Mapping[str, DeploymentObject]) -> None:
        self._snapshot = MappingProxyType(dict(objects))
        self._synced.set()

    def state(self) -> Mapping[str, DeploymentObject]:
        return self._snapshot

    @property
    def ready(self) -> bool:
        """Whether at least one full listing has been published."""
        return self._synced.is_set()

    def as_reader(self) -> SnapshotReader:
        return SnapshotReader(self)


def load_kube_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        k8s_config.load_incluster_config()
        logging.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        try:
            k8s_config.load_kube_config()
        except (ConfigException, OSError) as e:
            raise ClusterFetchError(f"no usable Kubernetes configuration: {e}") from e
        logging.info("Loaded local kubeconfig")


class DeploymentWatcher:
    """
    Mirrors an application's Deployments into a SnapshotStore.

    The watcher lists the Deployments labelled with the application instance,
    then follows the watch stream from that resource version. The blocking
    stream runs in a worker thread; start() bridges it to asyncio.
    """

    def __init__(self, application: str, namespace: str, store: SnapshotStore,
                 apps_api: client.AppsV1Api = None, watch_timeout: int = 10):
        self.application = application
        self.namespace = namespace
        self.watch_timeout = watch_timeout
        self._store = store
        self._apps_api = apps_api or client.AppsV1Api()
        self._objects: Dict[str, DeploymentObject] = {}

    @property
    def request_timeout(self) -> int:
        return self.watch_timeout + REQUEST_TIMEOUT_MARGIN

    @property
    def label_selector(self) -> str:
        return f"{INSTANCE_LABEL}={self.application}"

    async def start(self, cancel: asyncio.Event) -> None:
        """
        Watch Deployments until cancel is set.

        Raises:
            ClusterFetchError: If listing or watching Deployments fails
        """
        stop = threading.Event()
        loop = asyncio.get_running_loop()
        worker = loop.run_in_executor(None, self.watch, stop)
        cancelled = asyncio.ensure_future(cancel.wait())

        logging.debug("Deployment reflection started")
        try:
            await asyncio.wait({worker, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.set()
            if not cancelled.done():
                cancelled.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await cancelled

        # The stream checks the stop flag at least once per watch window
        await worker
        logging.debug("Deployment reflection stopped")

    def watch(self, stop: threading.Event) -> None:
        resource_version = None
        while not stop.is_set():
            if resource_version is None:
                resource_version = self.resync()

            try:
                resource_version = self._stream(stop, resource_version)
            except ApiException as e:
                if e.status != HTTP_STATUS_GONE:
                    raise ClusterFetchError(f"watching deployments: {e}") from e
                logging.info("Deployment watch expired, relisting")
                resource_version = None
            except HTTPError as e:
                if stop.is_set():
                    break
                # A stalled stream is resumed from the last seen version
                logging.warning(f"Deployment watch connection failed, resuming: {e}")

    def resync(self) -> str:
        """Replace the snapshot with a fresh listing and return its resource version."""
        try:
            response = self._list_deployments()
        except (ApiException, HTTPError) as e:
            raise ClusterFetchError(f"listing deployments for {self.application}: {e}") from e

        self._objects = {}
        for item in response.items:
            deployment = DeploymentObject.from_api(item)
            self._objects[deployment.name] = deployment
        self._store.publish(self._objects)

        logging.info(f"Listed {len(self._objects)} deployments for {self.application} in {self.namespace}")
        return response.metadata.resource_version

    def apply_event(self, event: Dict) -> Optional[str]:
        """Apply one watch event to the snapshot and return its resource version."""
        event_type = event['type']
        obj = event['object']
        resource_version = obj.metadata.resource_version
        if event_type == 'BOOKMARK':
            return resource_version

        deployment = DeploymentObject.from_api(obj)
        if event_type == 'DELETED':
            self._objects.pop(deployment.name, None)
        else:
            self._objects[deployment.name] = deployment
        self._store.publish(self._objects)

        logging.debug(f"Deployment {deployment.name} {event_type.lower()}, replicas {deployment.replicas}")
        return resource_version

    @retry(exceptions=ApiException, tries=RETRIES_NUMBER, delay=3)
    def _list_deployments(self):
        return self._apps_api.list_namespaced_deployment(self.namespace, label_selector=self.label_selector,
                                                      _request_timeout=self.request_timeout)

    def _stream(self, stop: threading.Event, resource_version: str) -> str:
        w = watch.Watch()
        try:
            for event in w.stream(self._apps_api.list_namespaced_deployment, self.namespace,
                                  label_selector=self.label_selector,
                                  resource_version=resource_version,
                                  timeout_seconds=self.watch_timeout,
                                  _request_timeout=self.request_timeout):
                resource_version = self.apply_event(event) or resource_version
                if stop.is_set():
                    break
        finally:
            w.stop()
        return resource_version


class ClusterStoreReader(ClusterStateFetcher):
    """Reports replica counts of the background-worker Deployments in a snapshot."""

    def __init__(self, reader: SnapshotReader):
        self._reader = reader

    def get_current_state(self) -> Dict[str, int]:
        state = {}
        for deployment in self._reader.state().values():
            if not deployment.is_background_worker():
                continue
            if deployment.replicas is None:
                raise ClusterFetchError(f"deployment {deployment.name} has no replica count")
            state[deployment.name] = deployment.replicas
        return state

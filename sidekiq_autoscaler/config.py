import os
import logging
from types import MappingProxyType
from typing import Dict, Any, Optional, NamedTuple, FrozenSet, Mapping, Tuple, List

import yaml

from sidekiq_autoscaler.errors import ConfigError

DEFAULT_CONFIG_PATH = '/etc/sidekiq-autoscaler/config.yaml'
DEFAULT_REDIS_URL = 'redis://127.0.0.1/'
DEFAULT_NAMESPACE = 'default'


class DeploymentSpec(NamedTuple):
    """A worker deployment and the queues it drains."""
    name: str
    queues: FrozenSet[str]
    min_replicas: int
    max_replicas: int

    def serves(self, queue: str) -> bool:
        return queue in self.queues


class AutoscalingConfig(NamedTuple):
    """Per-queue job counts at which serving deployments run at their maximum."""
    thresholds: Mapping[str, int]

    def threshold_for(self, queue: str) -> Optional[int]:
        return self.thresholds.get(queue)


class Config(NamedTuple):
    """Scaling policy, loaded once at startup and never mutated."""
    deployments: Tuple[DeploymentSpec, ...]
    autoscaling: AutoscalingConfig

    def deployments_for(self, queue: str) -> List[DeploymentSpec]:
        return [d for d in self.deployments if d.serves(queue)]


class Settings(NamedTuple):
    """Runtime settings for the autoscaler process."""
    # Kubernetes configuration
    application: str
    namespace: str
    watch_timeout: int

    # Scaling policy file
    config_path: str

    # Broker configuration
    redis_url: str
    redis_namespace: Optional[str]
    queue_fetch_timeout: float

    # Control loop cadence
    tick_interval: float
    retry_interval: float


def _require_int(value: Any, what: str, minimum: int) -> int:
    # YAML booleans load as bool, an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{what} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{what} must be >= {minimum}, got {value}")
    return value


def _deployment_from_dict(entry: Dict[str, Any]) -> DeploymentSpec:
    if not isinstance(entry, dict):
        raise ConfigError(f"deployment entry must be a mapping, got {entry!r}")

    name = entry.get('name')
    if not isinstance(name, str) or not name:
        raise ConfigError(f"deployment name must be a non-empty string, got {name!r}")

    queues = entry.get('queues', [])
    if not isinstance(queues, list) or not all(isinstance(q, str) and q for q in queues):
        raise ConfigError(f"queues of deployment '{name}' must be a list of queue names")

    min_replicas = _require_int(entry.get('min_replicas', 0), f"min_replicas of deployment '{name}'", 0)
    max_replicas = _require_int(entry.get('max_replicas'), f"max_replicas of deployment '{name}'", 0)
    if min_replicas > max_replicas:
        raise ConfigError(
            f"deployment '{name}' has min_replicas ({min_replicas}) greater than max_replicas ({max_replicas})")

    return DeploymentSpec(
        name=name,
        queues=frozenset(queues),
        min_replicas=min_replicas,
        max_replicas=max_replicas
    )


def _normalize_chart_values(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert the Helm chart values layout into the canonical layout.

    The chart describes workers as::

        sidekiqAwareAutoscaling:
          maxJobs:
            high: 100
        sidekiqs:
          important:
            sidekiqAwareAutoscaling:
              min: 0
              max: 5
            queues:
              - high
    """
    sidekiqs = data.get('sidekiqs') or {}
    if not isinstance(sidekiqs, dict):
        raise ConfigError("'sidekiqs' must be a mapping of deployment name to worker settings")

    deployments = []
    for name, worker in sidekiqs.items():
        worker = worker or {}
        if not isinstance(worker, dict):
            raise ConfigError(f"settings for sidekiq '{name}' must be a mapping")
        bounds = worker.get('sidekiqAwareAutoscaling') or {}
        if not isinstance(bounds, dict):
            raise ConfigError(f"sidekiqAwareAutoscaling of sidekiq '{name}' must be a mapping with min and max")
        deployments.append({
            'name': name,
            'queues': worker.get('queues', []),
            'min_replicas': bounds.get('min', 0),
            'max_replicas': bounds.get('max'),
        })

    autoscaling = data.get('sidekiqAwareAutoscaling') or {}
    if not isinstance(autoscaling, dict):
        raise ConfigError("'sidekiqAwareAutoscaling' must be a mapping with a maxJobs section")
    return {
        'deployments': deployments,
        'autoscaling': autoscaling.get('maxJobs') or {},
    }


def config_from_dict(data: Dict[str, Any]) -> Config:
    """
    Build and validate a Config from parsed configuration data.

    Args:
        data: Parsed configuration, either in the canonical layout
              (``deployments`` + ``autoscaling``) or the Helm chart layout
              (``sidekiqs`` + ``sidekiqAwareAutoscaling``)

    Returns:
        Config: Validated, immutable scaling configuration

    Raises:
        ConfigError: If any deployment or threshold is invalid
    """
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")

    if 'sidekiqs' in data:
        data = _normalize_chart_values(data)

    raw_deployments = data.get('deployments') or []
    if not isinstance(raw_deployments, list):
        raise ConfigError("'deployments' must be a list")

    deployments = []
    seen = set()
    for entry in raw_deployments:
        deployment = _deployment_from_dict(entry)
        if deployment.name in seen:
            raise ConfigError(f"deployment '{deployment.name}' is configured more than once")
        seen.add(deployment.name)
        deployments.append(deployment)

    raw_thresholds = data.get('autoscaling') or {}
    if isinstance(raw_thresholds, dict) and 'max_jobs' in raw_thresholds:
        raw_thresholds = raw_thresholds['max_jobs'] or {}
    if not isinstance(raw_thresholds, dict):
        raise ConfigError("'autoscaling' must be a mapping of queue name to threshold")

    thresholds = {
        str(queue): _require_int(threshold, f"threshold for queue '{queue}'", 1)
        for queue, threshold in raw_thresholds.items()
    }

    for deployment in deployments:
        unconfigured = sorted(q for q in deployment.queues if q not in thresholds)
        if unconfigured:
            logging.warning(f"Deployment {deployment.name} serves queues without a threshold: "
                            f"{', '.join(unconfigured)}. They will scale to the minimum (at least 1) when busy")

    return Config(
        deployments=tuple(deployments),
        autoscaling=AutoscalingConfig(thresholds=MappingProxyType(thresholds))
    )


def load_config(path: str) -> Config:
    """
    Load the scaling configuration from a YAML (or JSON) file.

    Args:
        path: Path to the configuration file

    Returns:
        Config: Validated scaling configuration

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    try:
        with open(path, 'r', encoding='utf-8') as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise ConfigError(f"cannot read configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse configuration file {path}: {e}") from e

    config = config_from_dict(data or {})
    logging.info(f"Loaded configuration for {len(config.deployments)} deployments "
                 f"and {len(config.autoscaling.thresholds)} queue thresholds from {path}")
    return config


def _positive_float(value: str, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {number}")
    return number


def load_settings(overrides: Dict[str, Any] = None) -> Settings:
    """
    Load runtime settings from environment variables and optional overrides.

    Override values (typically command line flags) take precedence over
    environment variables when present.

    Args:
        overrides: Optional mapping of setting name to value

    Returns:
        Settings: Runtime settings for the autoscaler process

    Raises:
        ConfigError: If the application is missing or a number is invalid
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    # Kubernetes configuration
    application = overrides.get('application') or os.environ.get('APPLICATION')
    if not application:
        raise ConfigError("the application to autoscale must be given with --application or APPLICATION")
    namespace = overrides.get('namespace') or os.environ.get('KUBE_NAMESPACE', DEFAULT_NAMESPACE)
    watch_timeout = int(_positive_float(overrides.get('watch_timeout') or
                                        os.environ.get('WATCH_TIMEOUT', '10'), 'WATCH_TIMEOUT'))

    config_path = overrides.get('config_path') or os.environ.get('AUTOSCALER_CONFIG', DEFAULT_CONFIG_PATH)

    # Broker configuration
    redis_url = overrides.get('redis_url') or os.environ.get('REDIS_URL', DEFAULT_REDIS_URL)
    redis_namespace = overrides.get('redis_namespace') or os.environ.get('REDIS_NAMESPACE') or None
    queue_fetch_timeout = _positive_float(overrides.get('queue_fetch_timeout') or
                                          os.environ.get('QUEUE_FETCH_TIMEOUT', '10.0'), 'QUEUE_FETCH_TIMEOUT')

    # Control loop cadence
    tick_interval = _positive_float(overrides.get('tick_interval') or
                                    os.environ.get('TICK_INTERVAL', '3.0'), 'TICK_INTERVAL')
    retry_interval = _positive_float(overrides.get('retry_interval') or
                                     os.environ.get('RETRY_INTERVAL', '1.0'), 'RETRY_INTERVAL')

    return Settings(
        application=application,
        namespace=namespace,
        watch_timeout=watch_timeout,
        config_path=config_path,
        redis_url=redis_url,
        redis_namespace=redis_namespace,
        queue_fetch_timeout=queue_fetch_timeout,
        tick_interval=tick_interval,
        retry_interval=retry_interval
    )

class AutoscalerError(Exception):
    """Base class for all autoscaler errors."""


class ConfigError(AutoscalerError):
    """The scaling configuration or runtime settings are invalid."""


class ClusterFetchError(AutoscalerError):
    """The cluster snapshot could not be obtained."""


class QueueFetchError(AutoscalerError):
    """The broker could not be queried or returned malformed data."""

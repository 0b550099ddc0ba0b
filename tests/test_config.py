import os
import tempfile
import unittest
from unittest import mock

from sidekiq_autoscaler.config import (
    DEFAULT_REDIS_URL,
    config_from_dict,
    load_config,
    load_settings,
)
from sidekiq_autoscaler.errors import ConfigError

CANONICAL = {
    'deployments': [
        {'name': 'general', 'queues': ['medium', 'low'], 'min_replicas': 0, 'max_replicas': 10},
        {'name': 'important', 'queues': ['high'], 'min_replicas': 1, 'max_replicas': 5},
    ],
    'autoscaling': {'high': 100, 'medium': 1000, 'low': 1000},
}

CHART_VALUES = """
sidekiqAwareAutoscaling:
  maxJobs:
    high: 100
    medium: 1000
    low: 1000
sidekiqs:
  general:
    sidekiqAwareAutoscaling:
      min: 0
      max: 10
    queues:
      - medium
      - low
  important:
    sidekiqAwareAutoscaling:
      min: 0
      max: 5
    queues:
      - high
"""


class TestConfigFromDict(unittest.TestCase):
    """Tests for building and validating the scaling configuration."""

    def test_canonical_layout(self):
        config = config_from_dict(CANONICAL)

        self.assertEqual([d.name for d in config.deployments], ['general', 'important'])
        general = config.deployments[0]
        self.assertEqual(general.queues, frozenset({'medium', 'low'}))
        self.assertEqual((general.min_replicas, general.max_replicas), (0, 10))
        self.assertEqual(config.autoscaling.threshold_for('high'), 100)
        self.assertIsNone(config.autoscaling.threshold_for('unknown'))
        self.assertEqual([d.name for d in config.deployments_for('high')], ['important'])

    def test_max_jobs_section(self):
        data = dict(CANONICAL, autoscaling={'max_jobs': {'high': 10}})

        self.assertEqual(config_from_dict(data).autoscaling.thresholds, {'high': 10})

    def test_thresholds_are_read_only(self):
        config = config_from_dict(CANONICAL)

        with self.assertRaises(TypeError):
            config.autoscaling.thresholds['high'] = 1

    def test_min_greater_than_max(self):
        data = {'deployments': [{'name': 'd', 'queues': ['q'], 'min_replicas': 5, 'max_replicas': 2}]}

        with self.assertRaisesRegex(ConfigError, 'greater than max_replicas'):
            config_from_dict(data)

    def test_non_positive_threshold(self):
        for threshold in [0, -5, 'many', True, 1.5]:
            with self.subTest(threshold=threshold):
                with self.assertRaises(ConfigError):
                    config_from_dict(dict(CANONICAL, autoscaling={'high': threshold}))

    def test_negative_replicas(self):
        data = {'deployments': [{'name': 'd', 'queues': ['q'], 'min_replicas': -1, 'max_replicas': 2}]}

        with self.assertRaises(ConfigError):
            config_from_dict(data)

    def test_missing_max_replicas(self):
        with self.assertRaises(ConfigError):
            config_from_dict({'deployments': [{'name': 'd', 'queues': ['q']}]})

    def test_duplicate_deployment(self):
        data = {'deployments': [CANONICAL['deployments'][0], CANONICAL['deployments'][0]]}

        with self.assertRaisesRegex(ConfigError, 'more than once'):
            config_from_dict(data)

    def test_invalid_queues(self):
        data = {'deployments': [{'name': 'd', 'queues': 'high', 'max_replicas': 2}]}

        with self.assertRaises(ConfigError):
            config_from_dict(data)

    def test_chart_worker_bounds_not_a_mapping(self):
        data = {'sidekiqs': {'general': {'sidekiqAwareAutoscaling': [0, 10], 'queues': ['low']}}}

        with self.assertRaisesRegex(ConfigError, "sidekiq 'general'"):
            config_from_dict(data)

    def test_chart_max_jobs_section_not_a_mapping(self):
        with self.assertRaisesRegex(ConfigError, 'maxJobs'):
            config_from_dict({'sidekiqs': {}, 'sidekiqAwareAutoscaling': ['maxJobs']})

    def test_not_a_mapping(self):
        with self.assertRaises(ConfigError):
            config_from_dict(['deployments'])

    def test_unconfigured_queue_is_a_warning(self):
        data = {'deployments': [{'name': 'd', 'queues': ['q'], 'max_replicas': 2}]}

        with self.assertLogs(level='WARNING') as logs:
            config = config_from_dict(data)

        self.assertEqual(len(config.deployments), 1)
        self.assertIn('without a threshold', logs.output[0])


class TestLoadConfig(unittest.TestCase):
    """Tests for loading the configuration file."""

    def write(self, content):
        fd, path = tempfile.mkstemp(suffix='.yaml')
        with os.fdopen(fd, 'w') as fh:
            fh.write(content)
        self.addCleanup(os.remove, path)
        return path

    def test_chart_values(self):
        config = load_config(self.write(CHART_VALUES))

        names = {d.name: d for d in config.deployments}
        self.assertEqual(set(names), {'general', 'important'})
        self.assertEqual(names['important'].max_replicas, 5)
        self.assertEqual(names['general'].queues, frozenset({'medium', 'low'}))
        self.assertEqual(config.autoscaling.threshold_for('medium'), 1000)

    def test_json_file(self):
        path = self.write('{"deployments": [{"name": "d", "queues": ["q"], "max_replicas": 3}], '
                          '"autoscaling": {"q": 10}}')

        config = load_config(path)

        self.assertEqual(config.deployments[0].max_replicas, 3)

    def test_missing_file(self):
        with self.assertRaisesRegex(ConfigError, 'cannot read'):
            load_config('/nonexistent/sidekiq-autoscaler.yaml')

    def test_unparseable_file(self):
        with self.assertRaisesRegex(ConfigError, 'cannot parse'):
            load_config(self.write('deployments: [unclosed'))


class TestLoadSettings(unittest.TestCase):
    """Tests for runtime settings from environment and overrides."""

    @mock.patch.dict(os.environ, {'APPLICATION': 'shop'}, clear=True)
    def test_defaults(self):
        settings = load_settings()

        self.assertEqual(settings.application, 'shop')
        self.assertEqual(settings.namespace, 'default')
        self.assertEqual(settings.redis_url, DEFAULT_REDIS_URL)
        self.assertIsNone(settings.redis_namespace)
        self.assertEqual(settings.tick_interval, 3.0)
        self.assertEqual(settings.retry_interval, 1.0)
        self.assertEqual(settings.watch_timeout, 10)

    @mock.patch.dict(os.environ, {'APPLICATION': 'shop', 'KUBE_NAMESPACE': 'prod',
                                  'REDIS_URL': 'redis://redis:6379/1'}, clear=True)
    def test_overrides_win_over_environment(self):
        settings = load_settings({'namespace': 'staging', 'redis_url': None, 'redis_namespace': 'shop'})

        self.assertEqual(settings.namespace, 'staging')
        self.assertEqual(settings.redis_url, 'redis://redis:6379/1')
        self.assertEqual(settings.redis_namespace, 'shop')

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_application_required(self):
        with self.assertRaisesRegex(ConfigError, 'application'):
            load_settings()

    @mock.patch.dict(os.environ, {'APPLICATION': 'shop', 'TICK_INTERVAL': 'soon'}, clear=True)
    def test_invalid_interval(self):
        with self.assertRaises(ConfigError):
            load_settings()

    @mock.patch.dict(os.environ, {'APPLICATION': 'shop', 'RETRY_INTERVAL': '-1'}, clear=True)
    def test_non_positive_interval(self):
        with self.assertRaises(ConfigError):
            load_settings()


if __name__ == '__main__':
    unittest.main()

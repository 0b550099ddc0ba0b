import json
import logging
import os
import unittest
from unittest import mock

from sidekiq_autoscaler.common.logger import JsonFormatter, setup_logging


class TestJsonFormatter(unittest.TestCase):

    def test_format(self):
        record = logging.LogRecord('root', logging.WARNING, '/app/loop.py', 42, 'cluster state is %s', ('empty',),
                                   None)
        record.deployment = 'general'

        data = json.loads(JsonFormatter().format(record))

        self.assertEqual(data['level'], 'WARNING')
        self.assertEqual(data['message'], 'cluster state is empty')
        self.assertEqual(data['line'], 42)
        self.assertEqual(data['deployment'], 'general')
        self.assertNotIn('msg', data)


class TestSetupLogging(unittest.TestCase):

    @mock.patch('sidekiq_autoscaler.common.logger.logging.basicConfig')
    @mock.patch.dict(os.environ, {'LOG_LEVEL': 'debug'}, clear=True)
    def test_level_from_environment(self, basic_config):
        setup_logging()

        self.assertEqual(basic_config.call_args.kwargs['level'], logging.DEBUG)

    @mock.patch('sidekiq_autoscaler.common.logger.logging.basicConfig')
    @mock.patch.dict(os.environ, {'LOG_LEVEL': 'debug'}, clear=True)
    def test_explicit_level(self, basic_config):
        setup_logging('warning')

        self.assertEqual(basic_config.call_args.kwargs['level'], logging.WARNING)


if __name__ == '__main__':
    unittest.main()

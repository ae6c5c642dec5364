import logging
import os
import unittest
from unittest import mock

from timeengine.config import (
    get_log_level,
    get_notification_dedupe_hours,
    get_system_default_currency,
)
from timeengine.logging_setup import configure_logging, get_logger


class ConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            self.assertEqual(get_system_default_currency(), "RON")
            self.assertEqual(get_notification_dedupe_hours(), 24)
            self.assertEqual(get_log_level(), "INFO")

    def test_invalid_values_fall_back(self) -> None:
        env = {
            "DEFAULT_CURRENCY": "euro",
            "NOTIFICATION_DEDUPE_HOURS": "soon",
            "TIME_ENGINE_LOG_LEVEL": "chatty",
        }
        with mock.patch.dict(os.environ, env):
            self.assertEqual(get_system_default_currency(), "RON")
            self.assertEqual(get_notification_dedupe_hours(), 24)
            self.assertEqual(get_log_level(), "INFO")

    def test_log_level_is_case_insensitive(self) -> None:
        with mock.patch.dict(os.environ, {"TIME_ENGINE_LOG_LEVEL": " debug "}):
            self.assertEqual(get_log_level(), "DEBUG")


class LoggingSetupTests(unittest.TestCase):
    def test_configure_logging_attaches_one_stream_handler(self) -> None:
        package_logger = logging.getLogger("timeengine")
        saved = (list(package_logger.handlers), package_logger.level, package_logger.propagate)
        package_logger.handlers = []
        try:
            get_logger("timeengine.pipeline")
            configure_logging()
            configure_logging()

            self.assertEqual(
                [type(handler) for handler in package_logger.handlers],
                [logging.StreamHandler],
            )
        finally:
            package_logger.handlers, package_logger.level, package_logger.propagate = saved


if __name__ == "__main__":
    unittest.main()

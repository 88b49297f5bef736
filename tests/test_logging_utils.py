import io
import unittest

import logging_utils
from logging_utils import configure_logging, get_log_level, log_event, set_log_level


class TestLogEvent(unittest.TestCase):
    def setUp(self):
        self.stream = io.StringIO()
        configure_logging("INFO", stream=self.stream)
        self.addCleanup(set_log_level, "INFO")

    def test_format_with_fields(self):
        log_event("INFO", "Audio", "File loaded", duration=1.5, sample_rate=44100)
        self.assertEqual(self.stream.getvalue().strip(),
                         "[INFO][Audio] File loaded | duration=1.5000 sample_rate=44100")

    def test_disabled_level_is_skipped(self):
        log_event("DEBUG", "Beat", "Beat", raw_bass=0.9)
        self.assertEqual(self.stream.getvalue(), "")

    def test_warn_alias_and_level_roundtrip(self):
        set_log_level("WARN")
        self.assertEqual(get_log_level(), "WARNING")
        log_event("INFO", "Audio", "hidden")
        log_event("WARN", "Audio", "shown")
        self.assertEqual(self.stream.getvalue().strip(), "[WARNING][Audio] shown")

    def test_unknown_level_falls_back_to_info(self):
        self.assertEqual(logging_utils._level_value("chatty"), logging_utils.logging.INFO)


if __name__ == "__main__":
    unittest.main()

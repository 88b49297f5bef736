import unittest
import json
import tempfile
from unittest import mock
from pathlib import Path

from audio_engine import AudioEngine
from config import Config


def _raw(bass, mid=0.0, high=0.0, overall=0.0):
    return {"bass": bass, "mid": mid, "high": high, "overall": overall}


class TestAudioEngineSessionSummary(unittest.TestCase):
    def test_session_summary_logs_ranges(self):
        engine = AudioEngine(Config(), backend=mock.Mock())
        engine._reset_session_stats()
        engine._session_source_kind = "file"
        engine._update_session_stats(_raw(0.10, mid=0.20, overall=0.50), is_beat=False)
        engine._update_session_stats(_raw(0.40, mid=0.30, overall=0.70), is_beat=True)

        with mock.patch("audio_engine.log_event") as log_event_mock:
            engine._log_session_summary()

        self.assertTrue(log_event_mock.called)
        _, kwargs = log_event_mock.call_args
        self.assertEqual(kwargs["source"], "file")
        self.assertEqual(kwargs["frames"], 2)
        self.assertEqual(kwargs["beats"], 1)
        self.assertEqual(kwargs["bass_raw_mean"], "0.2500")
        self.assertEqual(kwargs["bass_raw_span"], "0.3000")
        self.assertEqual(kwargs["mid_raw_mean"], "0.2500")
        self.assertEqual(kwargs["high_raw_mean"], "0.0000")
        self.assertEqual(kwargs["overall_raw_mean"], "0.6000")

    def test_session_summary_no_frames_no_log(self):
        engine = AudioEngine(Config(), backend=mock.Mock())
        engine._reset_session_stats()

        with mock.patch("audio_engine.log_event") as log_event_mock:
            engine._log_session_summary()

        log_event_mock.assert_not_called()

    def test_session_summary_writes_audio_report_files(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            report_dir = Path(tmpdir)
            engine = AudioEngine(Config(), backend=mock.Mock(), report_dir=report_dir)
            engine._reset_session_stats()
            engine._session_started_at = 10.0
            engine._session_source_kind = "mic"

            engine._update_session_stats(_raw(0.10), is_beat=False)
            engine._update_session_stats(_raw(0.20), is_beat=False)
            engine._update_session_stats(_raw(0.90), is_beat=True)
            engine._update_session_stats(_raw(0.30), is_beat=False)

            with mock.patch("audio_engine.time.time", return_value=10.5):
                engine._log_session_summary()

            json_path = report_dir / "audio_session_report.json"
            csv_path = report_dir / "audio_session_report.csv"
            self.assertTrue(json_path.exists())
            self.assertTrue(csv_path.exists())

            with open(json_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
            latest = payload["latest"]

            self.assertEqual(payload["session_count"], 1)
            self.assertEqual(latest["source"], "mic")
            self.assertEqual(latest["frames"], 4)
            self.assertEqual(latest["beats"], 1)
            self.assertAlmostEqual(latest["seconds"], 0.5)
            self.assertAlmostEqual(latest["bass_raw_low"], 0.10)
            self.assertAlmostEqual(latest["bass_raw_high"], 0.90)
            self.assertAlmostEqual(latest["bass_raw_mean"], 0.375)

            with open(csv_path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
            self.assertEqual(len(lines), 2)
            self.assertTrue(lines[0].startswith("session_started_at,session_ended_at,seconds,source"))

    def test_reports_disabled_by_config(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg = Config()
            cfg.report_generation_enabled = False
            engine = AudioEngine(cfg, backend=mock.Mock(), report_dir=Path(tmpdir))
            engine._update_session_stats(_raw(0.5), is_beat=False)

            with mock.patch("audio_engine.log_event"):
                engine._log_session_summary()

            self.assertFalse((Path(tmpdir) / "audio_session_report.json").exists())


if __name__ == "__main__":
    unittest.main()

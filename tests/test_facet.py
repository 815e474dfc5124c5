import unittest
from nowplaying.config import settings
from nowplaying.facet import build_now_playing, format_duration_text, format_time
from nowplaying.models import PlaybackSession, TrackSnapshot

class TestFormatting(unittest.TestCase):
    def test_format_time(self):
        self.assertEqual(format_time(0), "0:00")
        self.assertEqual(format_time(59999), "0:59")
        self.assertEqual(format_time(61000), "1:01")
        self.assertEqual(format_time(3_725_000), "62:05")
        self.assertEqual(format_time(-500), "0:00")

    def test_duration_text(self):
        self.assertEqual(format_duration_text(61000, 240000, "elapsed"), "1:01")
        self.assertEqual(format_duration_text(61000, 240000, "remaining"), "-2:59")
        self.assertEqual(format_duration_text(61000, 240000, "both"), "1:01/4:00")
        self.assertEqual(format_duration_text(300000, 240000, "remaining"), "-0:00")

    def test_duration_text_unknown_duration(self):
        self.assertEqual(format_duration_text(61000, None, "both"), "1:01")
        self.assertEqual(format_duration_text(61000, None, "remaining"), "--:--")

    def test_unknown_format(self):
        with self.assertRaises(ValueError):
            format_duration_text(0, None, "backwards")

class TestBuildNowPlaying(unittest.TestCase):
    def setUp(self):
        settings.FALLBACK_DURATION_MS = 180000
        self.track = TrackSnapshot(name="Song A", artist_name="Artist X", is_now_playing=True)

    def test_not_live(self):
        np = build_now_playing(self.track, PlaybackSession(), 50000)
        self.assertFalse(np.is_live)
        self.assertEqual(np.progress_ms, 0)
        self.assertEqual(np.percent, 0)
        self.assertEqual(np.track, self.track)

    def test_no_track_yet(self):
        np = build_now_playing(None, PlaybackSession(), 50000)
        self.assertIsNone(np.track)
        self.assertEqual(np.duration_text, "0:00")

    def test_percent_clamped(self):
        session = PlaybackSession(current_identity=self.track.identity, is_live=True,
                                  started_at_ms=0, duration_ms=100000)
        self.assertEqual(build_now_playing(self.track, session, 150000).percent, 100.0)

    def test_estimated_offset(self):
        session = PlaybackSession(current_identity=self.track.identity, is_live=True, started_at_ms=0,
                                  estimated_start_offset_ms=45000, offset_estimated=True)
        np = build_now_playing(self.track, session, 9000)
        self.assertTrue(np.is_position_estimated)
        self.assertEqual(np.progress_ms, 54000)
        self.assertAlmostEqual(np.percent, 30.0)

    def test_zero_offset_is_not_estimated(self):
        session = PlaybackSession(current_identity=self.track.identity, is_live=True, started_at_ms=0,
                                  offset_estimated=True)
        self.assertFalse(build_now_playing(self.track, session, 9000).is_position_estimated)

if __name__ == '__main__':
    unittest.main()

import httpx
import unittest
from fastapi.testclient import TestClient
from nowplaying import server
from nowplaying.clients.lastfm_client import LastFMClient, sign
from nowplaying.config import settings
from nowplaying.engine import NowPlayingEngine
from nowplaying.models import PlaybackSession, TrackSnapshot
from nowplaying.server import TTLCache

RECENT = {
    "recenttracks": {
        "track": [{
            "name": "Song A",
            "artist": {"#text": "Artist X"},
            "album": {"#text": "Album Y"},
            "image": [],
            "@attr": {"nowplaying": "true"}
        }]
    }
}

class FakeClock:
    def __init__(self, now=100000.0):
        self.now = now
    def __call__(self):
        return self.now

class TestProxyEndpoints(unittest.TestCase):
    def setUp(self):
        self.requests = []
        self.status = 200
        self.payload = RECENT

        def handler(request):
            self.requests.append(request)
            return httpx.Response(self.status, json=self.payload)

        server.lastfm = LastFMClient(api_key="key", shared_secret="s3cret", base_url="https://lfm.test/2.0/",
                                     transport=httpx.MockTransport(handler))
        server.recent_cache.entries.clear()
        server.track_info_cache.entries.clear()
        self.client = TestClient(server.app)

    def tearDown(self):
        server.lastfm = None

    def test_recent_miss_then_hit(self):
        r = self.client.get("/api/lastfm/recent", params={"user": "someone"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.headers["X-Cache"], "MISS")
        self.assertIn("max-age=3", r.headers["Cache-Control"])
        self.assertEqual(r.json(), RECENT)

        r = self.client.get("/api/lastfm/recent", params={"user": "someone"})
        self.assertEqual(r.headers["X-Cache"], "HIT")
        self.assertEqual(len(self.requests), 1)

    def test_recent_cache_separates_auth_and_public(self):
        self.client.get("/api/lastfm/recent", params={"user": "someone"})
        self.client.get("/api/lastfm/recent", params={"user": "someone", "sk": "sk1"})
        self.assertEqual(len(self.requests), 2)
        self.assertIn("api_sig", self.requests[1].url.params)

    def test_recent_requires_user(self):
        r = self.client.get("/api/lastfm/recent")
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json(), {"error": "Missing user"})

    def test_upstream_error_not_cached(self):
        self.status = 403
        self.payload = {"error": 17, "message": "Login: User required to be logged in"}
        r = self.client.get("/api/lastfm/recent", params={"user": "private"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"], 17)
        self.client.get("/api/lastfm/recent", params={"user": "private"})
        self.assertEqual(len(self.requests), 2)

    def test_track_info_cached_regardless_of_session_key(self):
        self.payload = {"track": {"name": "Song A", "duration": "240000"}}
        r = self.client.get("/api/lastfm/trackInfo", params={"artist": "Artist X", "track": "Song A"})
        self.assertEqual(r.status_code, 200)
        self.assertIn("immutable", r.headers["Cache-Control"])
        r = self.client.get("/api/lastfm/trackInfo", params={"artist": "Artist X", "track": "Song A", "sk": "sk1"})
        self.assertEqual(r.headers["X-Cache"], "HIT")
        self.assertEqual(len(self.requests), 1)

    def test_track_info_requires_both_params(self):
        r = self.client.get("/api/lastfm/trackInfo", params={"artist": "Artist X"})
        self.assertEqual(r.status_code, 400)

class TestSessionEndpoint(unittest.TestCase):
    def setUp(self):
        self.requests = []
        self.status = 200
        self.payload = {"session": {"name": "someone", "key": "sk-123", "subscriber": 0}}
        self.secret = "s3cret"
        self.client = TestClient(server.app)

    def tearDown(self):
        server.lastfm = None

    def use_lastfm(self):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(self.status, json=self.payload)

        server.lastfm = LastFMClient(api_key="key", shared_secret=self.secret, base_url="https://lfm.test/2.0/",
                                     transport=httpx.MockTransport(handler))

    def test_exchanges_token_for_session_key(self):
        self.use_lastfm()
        r = self.client.post("/api/lastfm/session", json={"token": "tok"})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"key": "sk-123", "name": "someone"})
        self.assertIn("s-maxage=10", r.headers["Cache-Control"])

        params = dict(self.requests[0].url.params)
        self.assertEqual(params["method"], "auth.getSession")
        self.assertEqual(params["format"], "json")
        self.assertNotIn("sk", params)
        expected = sign({"api_key": "key", "method": "auth.getSession", "token": "tok"}, "s3cret")
        self.assertEqual(params["api_sig"], expected)

    def test_missing_token(self):
        self.use_lastfm()
        self.assertEqual(self.client.post("/api/lastfm/session", json={}).status_code, 400)
        r = self.client.post("/api/lastfm/session")
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json(), {"error": "Missing token"})
        self.assertEqual(self.requests, [])

    def test_rejected_token(self):
        self.status = 403
        self.payload = {"error": 4, "message": "Invalid authentication token supplied"}
        self.use_lastfm()
        r = self.client.post("/api/lastfm/session", json={"token": "expired"})
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json(), {"error": "Invalid authentication token supplied"})

    def test_missing_shared_secret(self):
        self.secret = ""
        self.use_lastfm()
        r = self.client.post("/api/lastfm/session", json={"token": "tok"})
        self.assertEqual(r.status_code, 500)
        self.assertEqual(self.requests, [])

    def test_only_post(self):
        self.use_lastfm()
        self.assertEqual(self.client.get("/api/lastfm/session").status_code, 405)

class TestTTLCache(unittest.TestCase):
    def test_expiry_and_pruning(self):
        cache = TTLCache(ttl_s=3, max_entries=2)
        cache.set("a", 1, now=0)
        self.assertEqual(cache.get("a", now=2), 1)
        self.assertIsNone(cache.get("a", now=3))

        cache.set("b", 2, now=10)
        cache.set("c", 3, now=10)
        # "a" expired and the cache is over its limit
        self.assertNotIn("a", cache.entries)
        self.assertEqual(set(cache.entries), {"b", "c"})

class TestEngineEndpoints(unittest.TestCase):
    def setUp(self):
        settings.HTTP_SERVER_TOKEN = None
        self.clock = FakeClock()
        self.engine = NowPlayingEngine("someone", None, None, clock=self.clock)
        self.engine.track = TrackSnapshot(name="Song A", artist_name="Artist X", is_now_playing=True)
        self.engine.session = PlaybackSession(
            current_identity="Song A—Artist X", is_live=True, started_at_ms=40000, duration_ms=200000
        )
        self.engine.progress_clock.tick()
        server.engine = self.engine
        self.client = TestClient(server.app)

    def tearDown(self):
        server.engine = None

    def test_now_playing_facet(self):
        r = self.client.get("/nowplaying")
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertTrue(body["isLive"])
        self.assertFalse(body["isPaused"])
        self.assertEqual(body["progressMs"], 60000)
        self.assertEqual(body["durationMs"], 200000)
        self.assertAlmostEqual(body["percent"], 30.0)
        self.assertFalse(body["isPositionEstimated"])
        self.assertEqual(body["durationText"], "1:00/3:20")
        self.assertEqual(body["track"]["artistName"], "Artist X")

    def test_now_playing_remaining_format(self):
        r = self.client.get("/nowplaying", params={"format": "remaining"})
        self.assertEqual(r.json()["durationText"], "-2:20")
        r = self.client.get("/nowplaying", params={"format": "sideways"})
        self.assertEqual(r.status_code, 400)

    def test_activity_signal(self):
        r = self.client.post("/activity/pointer")
        self.assertEqual(r.status_code, 204)
        self.assertEqual(self.engine.scheduler_state.last_user_activity_ms, 100000)

        r = self.client.post("/activity/telepathy")
        self.assertEqual(r.status_code, 400)

    def test_now_playing_can_count_as_activity(self):
        self.client.get("/nowplaying", params={"activity": "true"})
        self.assertEqual(self.engine.scheduler_state.last_user_activity_ms, 100000)

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "starting"})
        self.engine.scheduler_state.last_success_ms = 95000
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.engine.scheduler_state.last_success_ms = -1_000_000
        self.assertEqual(self.client.get("/healthz").json()["status"], "lagging")

    def test_status_token(self):
        settings.HTTP_SERVER_TOKEN = "secret"
        try:
            self.assertEqual(self.client.get("/status").status_code, 401)
            r = self.client.get("/status", headers={"X-Token": "secret"})
            self.assertEqual(r.json()["mode"], "direct")
            self.assertEqual(r.json()["track"], "Song A—Artist X")
        finally:
            settings.HTTP_SERVER_TOKEN = None

    def test_metrics(self):
        text = self.client.get("/metrics").text
        self.assertIn("nowplaying_live 1", text)
        self.assertIn("nowplaying_progress_ms 60000", text)

if __name__ == '__main__':
    unittest.main()

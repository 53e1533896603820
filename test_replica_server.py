"""
Tests for the HTTP surface in replica_server.
"""

import unittest
from unittest.mock import patch

from page_replica import Fetcher, MemAssetStore, Replicator, Settings
from replica_server import create_app
from test_page_replica import PNG_B64, FakeSession, html_response, png_response


class TestReplicaServer(unittest.TestCase):
    def setUp(self):
        self.session = FakeSession(
            {
                "https://example.com/": html_response('<html><body><img src="/a.png"></body></html>'),
                "https://example.com/a.png": png_response(),
            }
        )
        settings = Settings()
        self.replicator = Replicator(
            settings, fetcher=Fetcher(settings, session=self.session), store=MemAssetStore()
        )
        self.app = create_app(replicator=self.replicator, start_sweeper=False)
        self.client = self.app.test_client()

    def test_replicate_success(self):
        resp = self.client.post("/replicate", json={"url": "https://example.com/"})
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertTrue(data["success"])
        self.assertIn(f"data:image/png;base64,{PNG_B64}", data["html"])
        self.assertEqual(data["stats"]["images"], 1)
        self.assertEqual(data["stats"]["totalImages"], 1)

    def test_replicate_missing_url(self):
        resp = self.client.post("/replicate", json={})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json(), {"success": False, "error": "URL is required"})

    def test_replicate_non_json_body(self):
        resp = self.client.post("/replicate", data="url=https://example.com/")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "URL is required")

    def test_replicate_invalid_url(self):
        resp = self.client.post("/replicate", json={"url": "nope"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "Invalid URL format")
        self.assertEqual(self.session.calls, [])

    def test_replicate_page_not_found(self):
        resp = self.client.post("/replicate", json={"url": "https://example.com/missing"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json(), {"success": False, "error": "Page not found (404)"})

    def test_stats(self):
        self.client.post("/replicate", json={"url": "https://example.com/"})
        resp = self.client.get("/stats")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), {"sessions": 0, "totalAssets": 0})

    def test_unhandled_error_is_json(self):
        with patch("replica_server.handle_replicate", side_effect=RuntimeError("boom")):
            with self.assertLogs(level="ERROR"):
                resp = self.client.post("/replicate", json={"url": "https://example.com/"})
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json(), {"success": False, "error": "Internal server error"})

    def test_unknown_route_keeps_http_status(self):
        resp = self.client.get("/nowhere")
        self.assertEqual(resp.status_code, 404)

    def test_sweeper_lifecycle(self):
        app = create_app(replicator=self.replicator, start_sweeper=True)
        sweeper = app.extensions["page_replica_sweeper"]
        self.assertTrue(sweeper.running)
        sweeper.stop(timeout=2)
        self.assertFalse(sweeper.running)


if __name__ == "__main__":
    unittest.main()

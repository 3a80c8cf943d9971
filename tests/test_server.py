import copy
import os
import sys
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from pulsarr import server
from pulsarr.errors import StorageError
from pulsarr.storage import Database
from tests.support import BASE_CONFIG

TOKEN = "s3cret"
AUTH = {"X-Webhook-Token": TOKEN}


def webhook_payload(title="Akira", genres=("Anime",), user_id=1, user_name="alice", key="akira"):
    return {
        "item": {"title": title, "guids": [f"tmdb:{key}"], "genres": list(genres)},
        "context": {"contentType": "movie", "userId": user_id, "userName": user_name,
                    "itemKey": f"movie:{key}"},
    }


class TestServer(unittest.TestCase):
    def setUp(self):
        cfg = copy.deepcopy(BASE_CONFIG)
        cfg["WEBHOOK"] = {"TOKEN": TOKEN}
        with patch("logging.info"):
            server.configure(cfg, Database("sqlite://"))
        self.client = server.app.test_client()

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), {"ok": True})

    @patch("logging.warning")
    def test_webhook_requires_token(self, mock_warning):
        resp = self.client.post("/webhook", json=webhook_payload())
        self.assertEqual(resp.status_code, 401)
        resp = self.client.post("/webhook", json=webhook_payload(), headers={"X-Webhook-Token": "wrong"})
        self.assertEqual(resp.status_code, 401)

    def test_token_in_payload_headers(self):
        payload = webhook_payload()
        payload["headers"] = {"X-Webhook-Token": TOKEN}
        self.assertEqual(self.client.post("/webhook", json=payload).status_code, 200)

    @patch("logging.error")
    def test_webhook_rejects_bad_payload(self, mock_error):
        self.assertEqual(self.client.post("/webhook", data="not json", headers=AUTH).status_code, 400)
        payload = webhook_payload()
        payload["context"]["contentType"] = "music"
        self.assertEqual(self.client.post("/webhook", json=payload, headers=AUTH).status_code, 400)

    def test_webhook_routes_by_rule(self):
        resp = self.client.post("/webhook", json=webhook_payload(), headers=AUTH)
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["outcome"]["status"], "routed")
        self.assertEqual(body["decisions"][0]["routing"]["instanceId"], 2)
        self.assertEqual(body["decisions"][0]["routing"]["ruleId"], 1)
        self.assertTrue(body["correlationId"])

    def test_approval_flow(self):
        resp = self.client.post("/webhook", json=webhook_payload(user_id=2, user_name="bob"), headers=AUTH)
        body = resp.get_json()
        self.assertEqual(body["outcome"]["status"], "pending")
        request_id = body["outcome"]["approvalRequest"]["id"]

        pending = self.client.get("/api/approvals", headers=AUTH).get_json()["approvals"]
        self.assertEqual([r["id"] for r in pending], [request_id])

        resp = self.client.post(f"/api/approvals/{request_id}/approve", json={"approvedBy": 1}, headers=AUTH)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["status"], "approved")
        self.assertTrue(resp.get_json()["executed"])

        again = self.client.post(f"/api/approvals/{request_id}/approve", json={}, headers=AUTH).get_json()
        self.assertFalse(again["changed"])

        stats = self.client.get("/api/approvals/stats", headers=AUTH).get_json()["stats"]
        self.assertEqual(stats["approved"], 1)
        user_stats = self.client.get("/api/approvals/stats?userId=2", headers=AUTH).get_json()["stats"]
        self.assertEqual(user_stats["total"], 1)

        history = self.client.get("/api/approvals/history?status=approved&userId=2", headers=AUTH).get_json()
        self.assertEqual(len(history["approvals"]), 1)

    def test_reject_and_delete(self):
        body = self.client.post("/webhook", json=webhook_payload(user_id=2, user_name="bob"),
                                headers=AUTH).get_json()
        request_id = body["outcome"]["approvalRequest"]["id"]
        resp = self.client.post(f"/api/approvals/{request_id}/reject", json={"reason": "no"}, headers=AUTH)
        self.assertEqual(resp.get_json()["status"], "rejected")

        self.assertEqual(self.client.delete(f"/api/approvals/{request_id}", headers=AUTH).status_code, 200)
        self.assertEqual(self.client.delete(f"/api/approvals/{request_id}", headers=AUTH).status_code, 404)
        self.assertEqual(self.client.post("/api/approvals/999/approve", headers=AUTH).status_code, 404)

    @patch("logging.error")
    def test_action_body_must_be_an_object(self, mock_error):
        body = self.client.post("/webhook", json=webhook_payload(user_id=2, user_name="bob"),
                                headers=AUTH).get_json()
        request_id = body["outcome"]["approvalRequest"]["id"]
        for action in ("approve", "reject"):
            with self.subTest(action=action):
                resp = self.client.post(f"/api/approvals/{request_id}/{action}", json=[1, 2], headers=AUTH)
                self.assertEqual(resp.status_code, 400)
        pending = self.client.get("/api/approvals", headers=AUTH).get_json()["approvals"]
        self.assertEqual([r["id"] for r in pending], [request_id])

    def test_history_rejects_unknown_status(self):
        resp = self.client.get("/api/approvals/history?status=maybe", headers=AUTH)
        self.assertEqual(resp.status_code, 400)

    @patch("logging.warning")
    def test_api_requires_token(self, mock_warning):
        self.assertEqual(self.client.get("/api/approvals").status_code, 401)

    def test_quota_endpoint(self):
        self.client.post("/webhook", json=webhook_payload(), headers=AUTH)
        body = self.client.get("/api/quota/1/movie", headers=AUTH).get_json()
        self.assertEqual(body["status"]["currentUsage"], 1)
        self.assertEqual(body["status"]["quotaLimit"], 3)
        self.assertEqual(self.client.get("/api/quota/1/music", headers=AUTH).status_code, 400)
        self.assertIsNone(self.client.get("/api/quota/2/show", headers=AUTH).get_json()["status"])

    def test_evaluators_endpoint(self):
        body = self.client.get("/api/evaluators", headers=AUTH).get_json()
        self.assertEqual(len(body["evaluators"]), 7)
        self.assertEqual(body["loaded"][0], "Conditional Router")
        self.assertEqual(len(body["loaded"]), 7)

    @patch("logging.error")
    def test_storage_failure_is_503(self, mock_error):
        with patch.object(server.resolver, "store") as store:
            store.get_router_rules.side_effect = StorageError("db is down")
            resp = self.client.post("/webhook", json=webhook_payload(), headers=AUTH)
        self.assertEqual(resp.status_code, 503)

    def test_run_maintenance(self):
        result = server.run_maintenance()
        self.assertEqual(result, {"expired": 0, "approvalsRemoved": 0, "usageRemoved": 0})


class TestServerWithoutToken(unittest.TestCase):
    def setUp(self):
        with patch("logging.info"):
            server.configure(copy.deepcopy(BASE_CONFIG), Database("sqlite://"))
        self.client = server.app.test_client()

    def test_open_when_no_token_configured(self):
        self.assertEqual(self.client.post("/webhook", json=webhook_payload()).status_code, 200)
        self.assertEqual(self.client.get("/api/approvals").status_code, 200)

    def test_sync_event_is_not_gated(self):
        payload = webhook_payload(user_id=2, user_name="bob")
        payload["context"]["syncing"] = True
        body = self.client.post("/webhook", json=payload).get_json()
        self.assertEqual(body["outcome"]["status"], "routed")


if __name__ == "__main__":
    unittest.main()

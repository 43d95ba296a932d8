"""
Unit tests for the account service client — response mapping and
best-effort failure handling. HTTP is mocked.
"""
import unittest
from unittest.mock import MagicMock, patch

import httpx

from account_client import AccountServiceClient


def _response(status_code=200, payload=None, json_error=False):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = str(payload)
    if json_error:
        resp.json.side_effect = ValueError("no JSON")
    else:
        resp.json.return_value = payload
    return resp


class TestAccountServiceClient(unittest.TestCase):

    def setUp(self):
        self.http = MagicMock()
        self.client = AccountServiceClient(base_url="https://accounts.test", http_client=self.http)

    def test_get_user_maps_uuid_to_user_id(self):
        self.http.request.return_value = _response(payload={
            "username": "strat_queen", "uuid": "u-42", "email": "q@example.com",
        })
        user = self.client.get_user("tok")
        self.assertEqual(user["username"], "strat_queen")
        self.assertEqual(user["user_id"], "u-42")
        self.assertEqual(user["email"], "q@example.com")
        self.assertIsNone(user["subscription"])

    def test_numeric_user_id_becomes_string(self):
        self.http.request.return_value = _response(payload={"username": "strat_queen", "user_id": 42})
        self.assertEqual(self.client.get_user("tok")["user_id"], "42")

    def test_bearer_token_sent(self):
        self.http.request.return_value = _response(payload={"username": "a"})
        self.client.get_user("tok-123")
        headers = self.http.request.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer tok-123")

    def test_get_user_without_username_is_none(self):
        self.http.request.return_value = _response(payload={"email": "x@example.com"})
        self.assertIsNone(self.client.get_user("tok"))

    def test_http_error_status_is_none(self):
        self.http.request.return_value = _response(status_code=401, payload={"error": "Unauthorized"})
        self.assertIsNone(self.client.get_user("bad"))

    def test_bad_json_is_none(self):
        self.http.request.return_value = _response(json_error=True)
        self.assertIsNone(self.client.get_quota("tok"))

    def test_transport_error_is_none(self):
        self.http.request.side_effect = httpx.ConnectError("refused")
        self.assertIsNone(self.client.get_quota("tok"))

    @patch("account_client.time.sleep")
    def test_timeouts_retry_then_give_up(self, mock_sleep):
        self.http.request.side_effect = httpx.ReadTimeout("slow")
        self.assertIsNone(self.client.get_user("tok"))
        self.assertEqual(self.http.request.call_count, 3)

    @patch("account_client.time.sleep")
    def test_rate_limit_then_success(self, mock_sleep):
        self.http.request.side_effect = [
            _response(status_code=429),
            _response(payload={"used": 1200, "limit": 100000}),
        ]
        self.assertEqual(self.client.get_quota("tok"), {"used": 1200, "limit": 100000})
        mock_sleep.assert_called_once()

    def test_quota_keeps_only_numeric_fields(self):
        self.http.request.return_value = _response(payload={
            "used": 0, "limit": "lots", "storage_used": 2048.0, "storage_limit": True,
        })
        self.assertEqual(self.client.get_quota("tok"), {"used": 0, "storage_used": 2048})

    def test_no_base_url_skips_requests(self):
        client = AccountServiceClient(base_url="", http_client=self.http)
        self.assertFalse(client.available)
        self.assertIsNone(client.get_user("tok"))
        self.http.request.assert_not_called()


if __name__ == "__main__":
    unittest.main()

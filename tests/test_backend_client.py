import asyncio
import json
import unittest

import httpx

from august_relay.backend_client import BackendClient
from august_relay.collaborators import StaticTokenProvider
from august_relay.errors import TransportError


class BackendClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.requests: list[httpx.Request] = []

    def _call(self, responder, method: str, *args, token: str | None = "tok", **kwargs):
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return responder(request)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                backend = BackendClient("http://backend.test/", auth=StaticTokenProvider(token), client=client)
                return await getattr(backend, method)(*args, **kwargs)

        return asyncio.run(scenario())

    def test_send_message_posts_non_streaming_body(self) -> None:
        result = self._call(
            lambda r: httpx.Response(200, json={"content": "Hi"}),
            "send_message",
            "c1",
            [{"role": "user", "content": "hello"}],
            enabled_tools=["github"],
        )

        request = self.requests[0]
        self.assertEqual({"content": "Hi"}, result)
        self.assertEqual("POST", request.method)
        self.assertEqual("/api/chats/c1/messages", request.url.path)
        self.assertEqual("Bearer tok", request.headers["authorization"])
        body = json.loads(request.content)
        self.assertFalse(body["stream"])
        self.assertEqual(["github"], body["enabledTools"])
        self.assertEqual({}, body["authStatus"])

    def test_missing_token_sends_unauthenticated(self) -> None:
        self._call(lambda r: httpx.Response(200, json={}), "send_message", "c1", [], token=None)

        self.assertNotIn("authorization", self.requests[0].headers)

    def test_send_message_http_error_raises_transport_error(self) -> None:
        with self.assertRaises(TransportError) as ctx:
            self._call(lambda r: httpx.Response(401), "send_message", "c1", [])

        self.assertEqual(401, ctx.exception.status_code)

    def test_test_connection_success(self) -> None:
        result = self._call(lambda r: httpx.Response(200, json={"message": "ok"}), "test_connection")

        self.assertEqual({"success": True, "data": {"message": "ok"}}, result)
        self.assertEqual("/api/test", self.requests[0].url.path)

    def test_test_connection_failure(self) -> None:
        result = self._call(lambda r: httpx.Response(500), "test_connection")

        self.assertFalse(result["success"])
        self.assertIn("500", result["error"]["message"])

    def test_test_connection_network_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadError("reset", request=request)

        result = self._call(refuse, "test_connection")

        self.assertFalse(result["success"])
        self.assertEqual("reset", result["error"]["message"])

    def test_init_auth_returns_redirect(self) -> None:
        result = self._call(
            lambda r: httpx.Response(200, json={"redirectUrl": "https://auth.test/github"}), "init_auth", "github"
        )

        self.assertEqual("https://auth.test/github", result["redirectUrl"])
        self.assertEqual("/api/composio/auth/github", self.requests[0].url.path)

    def test_init_auth_without_redirect_raises(self) -> None:
        with self.assertRaises(TransportError):
            self._call(lambda r: httpx.Response(200, json={}), "init_auth", "github")

    def test_check_auth_status(self) -> None:
        result = self._call(lambda r: httpx.Response(200, json={"authenticated": True}), "check_auth_status", "slack")

        self.assertEqual({"authenticated": True}, result)
        self.assertEqual("/api/composio/auth/slack/status", self.requests[0].url.path)

    def test_check_auth_status_error_means_not_authenticated(self) -> None:
        result = self._call(lambda r: httpx.Response(503), "check_auth_status", "slack")

        self.assertEqual({"authenticated": False}, result)


if __name__ == "__main__":
    unittest.main()

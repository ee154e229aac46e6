import json
import unittest
from urllib.parse import parse_qs, unquote, urlsplit

from august_relay.transport.endpoints import (
    SocketEndpoint,
    SseEndpoint,
    build_stream_url,
    encode_query_value,
    messages_url,
)

PAYLOAD = {
    "messages": [{"role": "user", "content": "hello & goodbye"}],
    "enabledTools": ["github"],
    "useTools": True,
    "authStatus": {"github": True},
    "contextData": {},
}


class EncodeQueryValueTests(unittest.TestCase):
    def test_compact_json_is_percent_encoded(self) -> None:
        self.assertEqual("%7B%22a%22%3A%5B1%2C2%5D%7D", encode_query_value({"a": [1, 2]}))

    def test_uri_component_safe_characters_are_kept(self) -> None:
        self.assertEqual("%22it's_ok!(~*)-.%22", encode_query_value("it's_ok!(~*)-."))

    def test_non_ascii_is_utf8_encoded(self) -> None:
        self.assertEqual("%22%C3%A9%22", encode_query_value("é"))


class StreamUrlTests(unittest.TestCase):
    def test_stream_url_carries_all_fields(self) -> None:
        url = build_stream_url("http://backend.test/", "c1", PAYLOAD)

        parts = urlsplit(url)
        self.assertEqual("/api/chats/c1/messages/stream", parts.path)
        query = parse_qs(parts.query)
        self.assertEqual(["messages", "enabledTools", "authStatus", "contextData"], list(query))
        self.assertEqual(PAYLOAD["messages"], json.loads(query["messages"][0]))
        self.assertEqual({"github": True}, json.loads(query["authStatus"][0]))

    def test_chat_id_is_escaped(self) -> None:
        self.assertEqual("http://b/api/chats/a%2Fb/messages", messages_url("http://b", "a/b"))

    def test_sse_get_endpoint(self) -> None:
        url, request = SseEndpoint("http://backend.test").target("c1", PAYLOAD, {"Authorization": "Bearer t"})

        self.assertIn("/messages/stream?", url)
        self.assertEqual("GET", request.method)
        self.assertIsNone(request.body)
        self.assertEqual({"Authorization": "Bearer t"}, request.headers)
        self.assertEqual(PAYLOAD["enabledTools"], json.loads(unquote(url.split("enabledTools=")[1].split("&")[0])))

    def test_sse_post_endpoint(self) -> None:
        url, request = SseEndpoint("http://backend.test", method="post").target("c1", PAYLOAD, {})

        self.assertEqual("http://backend.test/api/chats/c1/messages", url)
        self.assertEqual("POST", request.method)
        self.assertTrue(request.body["stream"])
        self.assertEqual(PAYLOAD["messages"], request.body["messages"])

    def test_socket_endpoint_adds_chat_id(self) -> None:
        url, request = SocketEndpoint("ws://backend.test/ws").target("c1", PAYLOAD, {})

        self.assertEqual("ws://backend.test/ws", url)
        self.assertEqual("send_message", request.send_event)
        self.assertEqual("c1", request.body["chatId"])
        self.assertTrue(request.body["useTools"])


if __name__ == "__main__":
    unittest.main()

import json
import unittest

from august_relay.errors import ProtocolError
from august_relay.models import StreamEventKind
from august_relay.protocol import decode_done, decode_message, extract_auth_requests, strip_partial_auth_request


class ExtractAuthRequestsTests(unittest.TestCase):
    def test_plain_text_is_untouched(self) -> None:
        self.assertEqual(("Hello there", []), extract_auth_requests("Hello there"))

    def test_tokens_are_stripped_and_lowercased(self) -> None:
        clean, services = extract_auth_requests("I need access. [AUTH_REQUEST:GITHUB]")

        self.assertEqual("I need access.", clean)
        self.assertEqual(["github"], services)

    def test_duplicate_services_are_reported_once(self) -> None:
        _, services = extract_auth_requests("[AUTH_REQUEST:gmail] x [AUTH_REQUEST:GMAIL] [AUTH_REQUEST:slack]")

        self.assertEqual(["gmail", "slack"], services)


class StripPartialAuthRequestTests(unittest.TestCase):
    def test_cut_off_token_is_hidden(self) -> None:
        self.assertEqual("Connect", strip_partial_auth_request("Connect [AUTH_REQ"))
        self.assertEqual("Connect", strip_partial_auth_request("Connect ["))
        self.assertEqual("Connect", strip_partial_auth_request("Connect [AUTH_REQUEST:GIT"))

    def test_other_brackets_are_kept(self) -> None:
        self.assertEqual("see [1", strip_partial_auth_request("see [1"))
        self.assertEqual("a [b] c", strip_partial_auth_request("a [b] c"))
        self.assertEqual("[AUTH_REQUEST:git hub", strip_partial_auth_request("[AUTH_REQUEST:git hub"))

    def test_cumulative_fragments_never_render_markup(self) -> None:
        rendered = []
        for text in ("Connect", "Connect [AUTH_REQ", "Connect [AUTH_REQUEST:GITHUB]"):
            events = decode_message("message", json.dumps({"content": text}))
            rendered.append(events[0].payload)

        self.assertEqual(["Connect", "Connect", "Connect"], rendered)
        self.assertEqual(StreamEventKind.TOOL_AUTH_REQUIRED, events[1].kind)


class DecodeMessageTests(unittest.TestCase):
    def test_content_object_becomes_fragment(self) -> None:
        events = decode_message("message", json.dumps({"content": "Hello"}))

        self.assertEqual(1, len(events))
        self.assertEqual(StreamEventKind.FRAGMENT, events[0].kind)
        self.assertEqual("Hello", events[0].payload)

    def test_bare_string_is_rendered_as_sent(self) -> None:
        events = decode_message("message", "42")

        self.assertEqual("42", events[0].payload)

    def test_socket_chunk_payload_is_already_decoded(self) -> None:
        events = decode_message("message_chunk", {"content": "He"})

        self.assertEqual(StreamEventKind.FRAGMENT, events[0].kind)
        self.assertEqual("He", events[0].payload)

    def test_inline_auth_token_raises_typed_interrupt(self) -> None:
        events = decode_message("message", json.dumps({"content": "Let me check. [AUTH_REQUEST:GitHub]"}))

        self.assertEqual([StreamEventKind.FRAGMENT, StreamEventKind.TOOL_AUTH_REQUIRED], [e.kind for e in events])
        self.assertEqual("Let me check.", events[0].payload)
        self.assertEqual("github", events[1].payload["service"])

    def test_typed_auth_frame(self) -> None:
        events = decode_message("message", json.dumps({"type": "auth_required", "service": "Slack"}))

        self.assertEqual(StreamEventKind.TOOL_AUTH_REQUIRED, events[0].kind)
        self.assertEqual("slack", events[0].payload["service"])

    def test_named_auth_event(self) -> None:
        events = decode_message("auth_required", {"service": "gmail"})

        self.assertEqual("gmail", events[0].payload["service"])

    def test_auth_frame_without_service_is_protocol_error(self) -> None:
        with self.assertRaises(ProtocolError):
            decode_message("message", json.dumps({"type": "auth_required"}))

    def test_confirmation_frame(self) -> None:
        events = decode_message(
            "message",
            json.dumps(
                {
                    "type": "confirmation_required",
                    "action": "send_email",
                    "service": "Gmail",
                    "details": {"to": "a@example.com"},
                }
            ),
        )

        self.assertEqual(StreamEventKind.CONFIRMATION_REQUIRED, events[0].kind)
        self.assertEqual(
            {"action": "send_email", "service": "gmail", "details": {"to": "a@example.com"}},
            events[0].payload,
        )

    def test_confirmation_without_action_is_protocol_error(self) -> None:
        with self.assertRaises(ProtocolError):
            decode_message("confirmation_required", {"service": "gmail"})

    def test_confirmation_with_non_object_details_is_protocol_error(self) -> None:
        with self.assertRaises(ProtocolError):
            decode_message("confirmation_required", {"action": "x", "details": "nope"})

    def test_non_string_content_is_protocol_error(self) -> None:
        with self.assertRaises(ProtocolError):
            decode_message("message", json.dumps({"content": 5}))

    def test_error_payload(self) -> None:
        events = decode_message("message", json.dumps({"error": {"message": "quota exceeded"}}))

        self.assertEqual(StreamEventKind.ERROR, events[0].kind)
        self.assertEqual("quota exceeded", events[0].payload)

    def test_unknown_event_is_ignored(self) -> None:
        self.assertEqual([], decode_message("heartbeat", "{}"))

    def test_object_without_content_is_ignored(self) -> None:
        self.assertEqual([], decode_message("message", json.dumps({"usage": {"tokens": 3}})))


class DecodeDoneTests(unittest.TestCase):
    def test_done_marker_has_no_content(self) -> None:
        event = decode_done("[DONE]")

        self.assertEqual(StreamEventKind.DONE, event.kind)
        self.assertIsNone(event.payload)

    def test_done_with_final_content(self) -> None:
        self.assertEqual("Hello", decode_done(json.dumps({"content": "Hello"})).payload)

    def test_done_content_is_cleaned_of_auth_markup(self) -> None:
        self.assertEqual("Done.", decode_done({"content": "Done. [AUTH_REQUEST:SLACK]"}).payload)


if __name__ == "__main__":
    unittest.main()

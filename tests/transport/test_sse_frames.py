import unittest

from august_relay.transport.frames import SseFrame, SseFrameParser


class SseFrameParserTests(unittest.TestCase):
    def test_blank_line_dispatches_named_frame(self) -> None:
        parser = SseFrameParser()

        frames = parser.feed(b'event: message\ndata: {"content": "Hi"}\n\n')

        self.assertEqual([SseFrame(event="message", data='{"content": "Hi"}')], frames)

    def test_event_defaults_to_message(self) -> None:
        frames = SseFrameParser().feed("data: hello\n\n")

        self.assertEqual("message", frames[0].event)
        self.assertEqual("hello", frames[0].data)

    def test_partial_line_is_carried_to_next_chunk(self) -> None:
        parser = SseFrameParser()

        self.assertEqual([], parser.feed(b"data: Hel"))
        self.assertEqual("data: Hel", parser.pending)
        frames = parser.feed(b"lo\n\n")

        self.assertEqual(["Hello"], [f.data for f in frames])
        self.assertEqual("", parser.pending)

    def test_frame_split_across_many_chunks(self) -> None:
        parser = SseFrameParser()
        payload = b"event: done\ndata: [DONE]\n\n"

        frames = []
        for i in range(len(payload)):
            frames.extend(parser.feed(payload[i : i + 1]))

        self.assertEqual([SseFrame(event="done", data="[DONE]")], frames)

    def test_multibyte_character_split_across_chunks(self) -> None:
        parser = SseFrameParser()
        encoded = "data: café\n\n".encode()
        cut = encoded.index(b"\xc3") + 1

        frames = parser.feed(encoded[:cut]) + parser.feed(encoded[cut:])

        self.assertEqual("café", frames[0].data)

    def test_multiple_data_lines_are_joined(self) -> None:
        frames = SseFrameParser().feed("data: one\ndata: two\n\n")

        self.assertEqual("one\ntwo", frames[0].data)

    def test_crlf_line_endings(self) -> None:
        frames = SseFrameParser().feed("event: error\r\ndata: boom\r\n\r\n")

        self.assertEqual(SseFrame(event="error", data="boom"), frames[0])

    def test_comments_are_ignored(self) -> None:
        frames = SseFrameParser().feed(": keep-alive\n\ndata: x\n\n")

        self.assertEqual(["x"], [f.data for f in frames])

    def test_id_field_is_tracked(self) -> None:
        parser = SseFrameParser()

        frames = parser.feed("id: 7\ndata: x\n\n")

        self.assertEqual("7", parser.last_event_id)
        self.assertEqual("7", frames[0].id)

    def test_flush_emits_unterminated_tail(self) -> None:
        parser = SseFrameParser()
        self.assertEqual([], parser.feed("event: message\ndata: tail"))

        frames = parser.flush()

        self.assertEqual([SseFrame(event="message", data="tail")], frames)
        self.assertEqual([], parser.flush())

    def test_several_frames_in_one_chunk_keep_order(self) -> None:
        frames = SseFrameParser().feed("data: H\n\ndata: He\n\ndata: Hello\n\n")

        self.assertEqual(["H", "He", "Hello"], [f.data for f in frames])


if __name__ == "__main__":
    unittest.main()

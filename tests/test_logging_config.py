import unittest

from august_relay.logging_config import DEFAULT_LOG_PATH, FileSink, StderrSink, build_sinks


class BuildSinksTests(unittest.TestCase):
    def test_default_is_file_only(self) -> None:
        sinks, rejected = build_sinks("INFO", None)

        self.assertEqual([FileSink(level="INFO", path=DEFAULT_LOG_PATH)], sinks)
        self.assertEqual([], rejected)

    def test_entries_carry_their_own_level_and_options(self) -> None:
        sinks, _ = build_sinks(
            "INFO",
            [
                {"type": "console", "level": "debug"},
                {"type": "file", "path": "logs/relay.jsonl", "serialize": True, "retention": 2},
            ],
        )

        self.assertEqual(StderrSink(level="DEBUG"), sinks[0])
        self.assertEqual(FileSink(level="INFO", path="logs/relay.jsonl", retention=2, serialize=True), sinks[1])
        self.assertIn("json lines", str(sinks[1]))

    def test_bad_entries_are_reported(self) -> None:
        sinks, rejected = build_sinks("INFO", [{"type": "syslog"}, {"type": "console", "colour": True}])

        self.assertEqual([], sinks)
        self.assertEqual(2, len(rejected))
        self.assertIn("syslog", rejected[0])


if __name__ == "__main__":
    unittest.main()

import sqlite3
import unittest

from august_relay.chat_state import ChatState
from august_relay.errors import ConversationNotFoundError
from august_relay.models import Role
from august_relay.persistence import ChatStore


class _BrokenStore(ChatStore):
    def create_chat(self, title="New Chat", *, chat_id=None, metadata=None):
        raise sqlite3.OperationalError("disk I/O error")


class ChatStateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = ChatStore(":memory:")
        self.state = ChatState(self.store, default_tools=["github"])

    def tearDown(self) -> None:
        self.store.close()

    def test_created_conversation_is_stored(self) -> None:
        conversation = self.state.create_conversation("Plans")

        self.assertFalse(conversation.ephemeral)
        self.assertEqual("Plans", self.store.get_chat_by_id(conversation.id)["title"])
        self.assertEqual(["github"], conversation.enabled_tools)

    def test_store_failure_falls_back_to_ephemeral(self) -> None:
        store = _BrokenStore(":memory:")
        self.addCleanup(store.close)

        conversation = ChatState(store).create_conversation("Plans")

        self.assertTrue(conversation.ephemeral)
        self.assertRegex(conversation.id, r"^mock-chat-\d{6}$")

    def test_open_conversation_loads_history(self) -> None:
        chat = self.store.create_chat("Saved")
        self.store.create_message(chat["id"], "user", "hi")
        self.store.create_message(chat["id"], "assistant", "oops", is_error=True)

        conversation = ChatState(self.store).open_conversation(chat["id"])

        self.assertEqual([Role.USER, Role.ASSISTANT], [m.role for m in conversation.messages])
        self.assertTrue(conversation.messages[1].is_error)
        self.assertEqual([{"role": "user", "content": "hi"}], conversation.wire_history())

    def test_open_unknown_conversation_raises(self) -> None:
        with self.assertRaises(ConversationNotFoundError):
            self.state.open_conversation("missing")

    def test_unknown_conversation_without_store_raises(self) -> None:
        with self.assertRaises(ConversationNotFoundError) as ctx:
            ChatState(None).get("c1")

        self.assertEqual("c1", ctx.exception.conversation_id)

    def test_machine_is_created_once_per_conversation(self) -> None:
        conversation = self.state.create_conversation()

        self.assertIs(self.state.machine_for(conversation.id), self.state.machine_for(conversation.id))

    def test_rename_persists(self) -> None:
        conversation = self.state.create_conversation()

        self.state.rename(conversation.id, "Renamed")

        self.assertEqual("Renamed", self.store.get_chat_by_id(conversation.id)["title"])
        with self.assertRaises(ValueError):
            self.state.rename(conversation.id, "  ")

    def test_delete(self) -> None:
        conversation = self.state.create_conversation()

        self.assertTrue(self.state.delete(conversation.id))
        self.assertIsNone(self.store.get_chat_by_id(conversation.id))
        with self.assertRaises(ConversationNotFoundError):
            self.state.get(conversation.id)

    def test_delete_stored_chat_that_was_never_opened(self) -> None:
        chat = self.store.create_chat("Old")

        self.assertTrue(self.state.delete(chat["id"]))
        self.assertFalse(self.state.delete(chat["id"]))

    def test_delete_offline_conversation(self) -> None:
        state = ChatState(None)
        conversation = state.create_conversation()

        self.assertTrue(state.delete(conversation.id))
        self.assertFalse(state.delete("missing"))
        self.assertEqual([], state.conversations())

    def test_auth_status_is_persisted_and_reloaded(self) -> None:
        self.state.update_auth_status("GitHub", True)

        reloaded = ChatState(self.store)
        reloaded.load()

        self.assertEqual({"github": True}, reloaded.auth_status)

    def test_send_options_snapshot(self) -> None:
        conversation = self.state.create_conversation()
        self.state.update_auth_status("slack", False)
        self.state.set_enabled_tools(conversation.id, ["Slack", " ", "gmail"])

        options = self.state.send_options(conversation.id)
        options.enabled_tools.append("mutated")

        self.assertEqual(["slack", "gmail"], conversation.enabled_tools)
        self.assertEqual({"slack": False}, options.auth_status)

    def test_offline_state_has_no_saved_chats(self) -> None:
        state = ChatState(None)

        self.assertEqual([], state.load())
        self.assertTrue(state.create_conversation().ephemeral)


if __name__ == "__main__":
    unittest.main()

import asyncio
import contextlib
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from august_relay.app_config import load_json_config, parse_app_config, resolve_runtime_env
from august_relay.bootstrap import AppRuntime, bootstrap_runtime
from august_relay.commands.router import CommandRouter
from august_relay.errors import ConcurrentSendError, ConversationNotFoundError, ProtocolError
from august_relay.models import Conversation, InterruptKind, InterruptRequest, Message
from august_relay.services.chat_controller import ChatController

LINE_PREFIX = "assistant> "
HELP_LINES = [
    "/new [title]            start a new chat",
    "/chats                  list saved chats",
    "/open <id>              switch to a saved chat",
    "/rename <title>         rename the current chat",
    "/delete [id]            delete a chat (the current one by default)",
    "/tools [on|off|a,b,c]   show, toggle or set the enabled tools",
    "/auth <service>         connect a tool account",
    "/test                   check that the backend is reachable",
    "Ctrl+C while a reply streams cancels it; 'exit' quits",
]


class StreamPrinter:
    """Prints cumulative snapshots as they grow."""

    def __init__(self) -> None:
        self._printed = ""

    def reset(self) -> None:
        self._printed = ""

    def __call__(self, message: Message) -> None:
        content = message.content
        if content.startswith(self._printed):
            sys.stdout.write(content[len(self._printed):])
        else:
            sys.stdout.write("\n" + LINE_PREFIX + content)
        sys.stdout.flush()
        self._printed = content


class Repl:
    def __init__(self, runtime: AppRuntime) -> None:
        self._runtime = runtime
        self._controller = ChatController(line_prefix=LINE_PREFIX)
        self._printer = StreamPrinter()
        self._conversation: Conversation | None = None
        self._unsubscribe: list = []
        self._router = CommandRouter(
            on_help=self._help,
            on_new=self._new,
            on_chats=self._chats,
            on_open=self._open,
            on_rename=self._rename,
            on_delete=self._delete,
            on_tools=self._tools,
            on_auth=self._auth,
            on_test=self._test,
            on_unknown=lambda cmd: print(f"{LINE_PREFIX}Unknown command: {cmd} (try /help)"),
        )

    @property
    def conversation(self) -> Conversation:
        if self._conversation is None:
            self._activate(self._runtime.state.create_conversation())
        return self._conversation

    def _activate(self, conversation: Conversation) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._conversation = conversation
        machine = self._runtime.state.machine_for(conversation.id)
        self._unsubscribe = [
            self._runtime.relay.subscribe(conversation.id, self._printer),
            self._runtime.poller.watch(machine),
            machine.subscribe_interrupts(self._on_interrupt),
        ]
        print(self._controller.format_conversation_header(conversation))

    async def run(self) -> None:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue
            if await self._router.try_handle(trimmed):
                continue
            await self._send(trimmed)

    async def _send(self, text: str) -> None:
        conversation_id = self.conversation.id
        loop = asyncio.get_running_loop()
        self._printer.reset()
        sys.stdout.write(LINE_PREFIX)
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, self._runtime.relay.cancel, conversation_id)
        try:
            message = await self._runtime.relay.send(conversation_id, text)
            print()
            note = self._controller.format_final(message)
            if note:
                print(note)
        except (ConcurrentSendError, ProtocolError) as ex:
            print(f"\n{LINE_PREFIX}Error: {ex}")
        except Exception as ex:
            logger.error(f"Unhandled error: {ex}")
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
        print()

    def _on_interrupt(self, request: InterruptRequest) -> None:
        asyncio.get_running_loop().create_task(self._handle_interrupt(request))

    async def _handle_interrupt(self, request: InterruptRequest) -> None:
        machine = self._runtime.state.machine_for(self.conversation.id)
        print()
        if request.kind == InterruptKind.AUTH:
            try:
                result = await self._runtime.backend.init_auth(request.service)
            except Exception as ex:
                print(f"{LINE_PREFIX}Could not start sign-in for {request.service}: {ex}")
                machine.cancel(request.resume_token)
                return
            print(f"{LINE_PREFIX}Sign in to {request.service} to continue: {result['redirectUrl']}")
            print(f"{LINE_PREFIX}Waiting for the connection to complete (Ctrl+C cancels)...")
            return

        answer = await asyncio.to_thread(input, self._controller.format_interrupt_prompt(request))
        if answer.strip().lower() in {"y", "yes"}:
            machine.confirm(request.resume_token)
        else:
            machine.cancel(request.resume_token)

    async def _help(self) -> None:
        for line in HELP_LINES:
            print(f"{LINE_PREFIX}{line}")

    async def _new(self, command: str) -> None:
        _, _, title = command.partition(" ")
        self._activate(self._runtime.state.create_conversation(title.strip() or "New Chat"))

    async def _chats(self, command: str) -> None:
        chats = self._runtime.state.load()
        if not chats:
            print(f"{LINE_PREFIX}No saved chats.")
            return
        active = self._conversation.id if self._conversation else None
        for chat in chats:
            print(self._controller.format_chat_list_entry(chat, active_chat_id=active))

    async def _open(self, command: str) -> None:
        parts = command.split(maxsplit=1)
        if len(parts) < 2:
            print(f"{LINE_PREFIX}Usage: /open <id>")
            return
        try:
            conversation = self._runtime.state.open_conversation(parts[1].strip())
        except ConversationNotFoundError as ex:
            print(f"{LINE_PREFIX}{ex}")
            return
        self._activate(conversation)
        for line in self._controller.format_history_lines(conversation):
            print(line)

    async def _rename(self, command: str) -> None:
        _, _, title = command.partition(" ")
        try:
            conversation = self._runtime.state.rename(self.conversation.id, title)
        except ValueError as ex:
            print(f"{LINE_PREFIX}{ex}")
            return
        print(f"{LINE_PREFIX}Renamed to {conversation.title}")

    async def _delete(self, command: str) -> None:
        parts = command.split(maxsplit=1)
        active = self._conversation.id if self._conversation else None
        target = parts[1].strip() if len(parts) > 1 else active
        if not target:
            print(f"{LINE_PREFIX}Usage: /delete <id>")
            return
        if self._runtime.relay.in_flight(target):
            print(f"{LINE_PREFIX}A reply is still streaming in that chat.")
            return
        if not self._runtime.state.delete(target):
            print(f"{LINE_PREFIX}Chat not found: {target}")
            return
        if target == active:
            for unsubscribe in self._unsubscribe:
                unsubscribe()
            self._unsubscribe = []
            self._conversation = None
        print(f"{LINE_PREFIX}Deleted chat {self._controller.short_id(target)}")

    async def _tools(self, command: str) -> None:
        _, _, arg = command.partition(" ")
        arg = arg.strip().lower()
        conversation = self.conversation
        if arg in {"on", "off"}:
            self._runtime.state.toggle_tools(conversation.id, arg == "on")
        elif arg:
            self._runtime.state.set_enabled_tools(conversation.id, arg.split(","))
        state = "on" if conversation.use_tools else "off"
        tools = ", ".join(conversation.enabled_tools) or "none"
        auth = ", ".join(f"{s}={'yes' if ok else 'no'}" for s, ok in sorted(self._runtime.state.auth_status.items()))
        print(f"{LINE_PREFIX}Tools {state}: {tools}")
        if auth:
            print(f"{LINE_PREFIX}Connected: {auth}")

    async def _auth(self, command: str) -> None:
        parts = command.split(maxsplit=1)
        if len(parts) < 2:
            print(f"{LINE_PREFIX}Usage: /auth <service>")
            return
        service = parts[1].strip().lower()
        status = await self._runtime.backend.check_auth_status(service)
        if status.get("authenticated"):
            self._runtime.state.update_auth_status(service, True)
            print(f"{LINE_PREFIX}{service} is already connected.")
            return
        try:
            result = await self._runtime.backend.init_auth(service)
        except Exception as ex:
            print(f"{LINE_PREFIX}Could not start sign-in for {service}: {ex}")
            return
        print(f"{LINE_PREFIX}Sign in to {service}: {result['redirectUrl']}")

    async def _test(self) -> None:
        result = await self._runtime.backend.test_connection()
        if result["success"]:
            print(f"{LINE_PREFIX}Backend reachable: {result['data']}")
        else:
            print(f"{LINE_PREFIX}Backend unreachable: {result['error']['message']}")


async def main() -> None:
    load_dotenv()

    env = resolve_runtime_env()
    try:
        app = parse_app_config(load_json_config(), env)
    except ValueError as ex:
        logger.error(f"Invalid config.json: {ex}")
        sys.exit(1)

    runtime = await bootstrap_runtime(app, env)

    print("august-relay (type 'exit' to quit, '/help' for commands)")
    print(f"Backend: {app.backend_url} via {runtime.transport_name}")
    if not env.auth_token:
        print("AUGUST_AUTH_TOKEN is not set; requests are sent unauthenticated.")
    if runtime.chat_store is None:
        print("Chat history: offline (not saved)")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        await Repl(runtime).run()
    finally:
        await runtime.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()

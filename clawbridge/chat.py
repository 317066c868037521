"""Interactive chat mode - talk to the gateway agent from a terminal.

Messages typed at the prompt go through the shared BridgeClient; each reply is
rendered page by page.
"""

import asyncio
import threading
from typing import Callable, Optional

from .bridge import BridgeClient
from .protocol import Response
from .term_ui import console, print_error, print_info, print_response, print_success, print_warning


class BridgeChat:
    """Interactive chat session on top of a BridgeClient."""

    def __init__(self, client: BridgeClient, speaker: str = "Agent"):
        self.client = client
        self.speaker = speaker
        self.last_response: Optional[Response] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def _on_connectivity(self, connected: bool) -> None:
        if connected:
            print_success("Gateway connected")
        else:
            print_warning("Gateway unreachable - replies unavailable until reconnected")

    async def _read_line(self) -> Optional[str]:
        """Prompt on a daemon thread so the loop keeps dispatching frames."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def deliver(line: Optional[str]) -> None:
            if not future.done():
                future.set_result(line)

        def prompt() -> None:
            try:
                line = console.input("[bright_green]You:[/bright_green] ")
            except (EOFError, KeyboardInterrupt):
                line = None
            loop.call_soon_threadsafe(deliver, line)

        threading.Thread(target=prompt, name="clawbridge-input", daemon=True).start()
        line = await future
        return line.strip() if line is not None else None

    def _show_status(self) -> None:
        print()
        print_info(f"State: {self.client.state.value}")
        print_info(f"Pending requests: {self.client.pending_count}")
        print_info(f"Reconnect attempts: {self.client.reconnect_attempts}")
        if self.last_response and self.last_response.message_id:
            print_info(f"Last message id: {self.last_response.message_id}")
        print()

    async def run(self) -> None:
        """Run the chat loop until the user quits."""
        self._unsubscribe = self.client.connectivity.subscribe(self._on_connectivity)

        console.print()
        console.rule("[bright_magenta]ClawBridge chat[/bright_magenta]", style="cyan")
        console.print("[dim]  Type your message and press Enter. Type 'quit' to exit.[/dim]")
        console.print("[dim]  '/status' shows the connection, '/reconnect' forces a new connection.[/dim]")
        console.print()

        try:
            while True:
                user_input = await self._read_line()
                if user_input is None:
                    break
                if not user_input:
                    continue

                command = user_input.lower()
                if command in ("quit", "exit", "/quit", "/exit"):
                    break
                if command == "/status":
                    self._show_status()
                    continue
                if command == "/reconnect":
                    await self.client.disconnect()
                    if not await self.client.connect():
                        print_error("Reconnect failed")
                    continue

                with console.status(f"[dim]{self.speaker} is thinking...[/dim]"):
                    response = await self.client.send_message(user_input)

                if response is None:
                    print_error("No answer (not connected, gateway error or timeout)")
                    continue

                self.last_response = response
                print_response(response, speaker=self.speaker)
                console.print()
        finally:
            if self._unsubscribe:
                self._unsubscribe()
                self._unsubscribe = None

        print()
        print_info("Chat ended.")


async def run_chat(client: BridgeClient) -> None:
    """Run the interactive chat mode against an already constructed client."""
    chat = BridgeChat(client)
    await chat.run()

from __future__ import annotations
import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape

from .bootstrap import build_app
from parley.core import sse
from parley.core.chat_service import ChatResult, ChatService, Outcome, StreamSession
from parley.core.errors import ChatError, ValidationError

app = typer.Typer(add_completion=False)
console = Console()

DEFAULT_CONFIG = Path("config/default.yaml")
HELP_TEXT = "Commands: /help, /id, /regen, /exit, /quit"


def _say(text: str, **kwargs) -> None:
    # Model output is plain text, never rich markup.
    console.print(text, markup=False, highlight=False, soft_wrap=True, **kwargs)


class ChatRepl:
    """
    Interactive session over ChatService. Everything runs on one event loop
    so the store and stream registry see a single loop for the whole session.
    Ctrl+C during a stream issues the same stop operation the HTTP API uses.
    """

    def __init__(self, service: ChatService, model_id: str, stream: bool):
        self.service = service
        self.model_id = model_id
        self.stream = stream
        self.loop = asyncio.new_event_loop()
        self.conversation_id: Optional[str] = None
        self.last_message_id: Optional[str] = None

    def close(self) -> None:
        self.loop.close()

    def _run(self, aw):
        return self.loop.run_until_complete(aw)

    def send(self, text: str) -> None:
        outcome = self._run(
            self.service.start(self.model_id, [text], conversation_id=self.conversation_id, stream=self.stream)
        )
        self._show(outcome)

    def regenerate(self) -> None:
        if not self.last_message_id:
            console.print("[yellow]Nothing to regenerate yet.[/yellow]")
            return
        self._show(self._run(self.service.regenerate(self.last_message_id, stream=self.stream)))

    def _show(self, outcome: Outcome) -> None:
        self.conversation_id = outcome.conversation_id
        self.last_message_id = outcome.message_id
        if isinstance(outcome, ChatResult):
            _say(outcome.content)
            return
        self._follow(outcome)

    async def _consume(self, session: StreamSession) -> None:
        async for raw in session.events:
            for event in sse.decode(raw):
                if sse.is_done(event):
                    continue
                payload = json.loads(event.data) if event.data else {}
                if event.event == "message":
                    _say(payload.get("delta", ""), end="")
                elif event.event == "stopped":
                    console.print(f"\n[yellow]{escape('[stream interrupted]')}[/yellow]", end="")
                elif event.event == "error":
                    console.print(f"\n[red]error:[/red] {escape(str(payload.get('error', '')))}", end="")
        console.print("")

    async def _stop(self, message_id: str) -> None:
        try:
            await self.service.stop(message_id)
        except ValidationError as e:
            # The stream finished before the stop arrived.
            logger.debug("stop ignored: {}", e)
        except ChatError as e:
            # Runs as a signal-handler task with nobody awaiting it.
            logger.warning("stop failed for {}: {}", message_id, e)
            console.print(f"\n[red]stop failed:[/red] {escape(str(e))}")

    def _follow(self, session: StreamSession) -> None:
        task = self.loop.create_task(self._consume(session))
        try:
            self.loop.add_signal_handler(
                signal.SIGINT, lambda: self.loop.create_task(self._stop(session.message_id))
            )
            handler = True
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support here (Windows, or not the main thread).
            handler = False
        try:
            self._run(task)
        finally:
            if handler:
                self.loop.remove_signal_handler(signal.SIGINT)


@app.command()
def chat(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to the YAML config."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id from the config's models list."),
):
    """Interactive chat in the terminal."""
    ctx = build_app(config)
    cfg = ctx["cfg"]
    model_id = model or ctx["default_model"]
    use_stream = bool((cfg.get("runtime") or {}).get("stream", False))

    for w in ctx["warnings"]:
        console.print(f"[yellow]policy:[/yellow] {escape(str(w.get('message')))}")

    repl = ChatRepl(ctx["service"], model_id, use_stream)
    console.print(f"parley chat ({model_id}). Type /help for commands. Ctrl+C to quit.")
    try:
        while True:
            try:
                user_input = console.input("parley> ").strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\nBye.")
                return

            if not user_input:
                continue
            if user_input in ("/exit", "/quit"):
                console.print("Bye.")
                return
            if user_input == "/help":
                console.print(HELP_TEXT)
                continue
            if user_input == "/id":
                console.print(repl.conversation_id or "(no conversation yet)")
                continue

            try:
                if user_input == "/regen":
                    repl.regenerate()
                else:
                    repl.send(user_input)
            except ChatError as e:
                console.print(f"[red]error:[/red] {escape(str(e))}")
    finally:
        repl.close()


@app.command()
def serve(
    config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c", help="Path to the YAML config."),
    host: Optional[str] = typer.Option(None, help="Bind host (default: server.host)."),
    port: Optional[int] = typer.Option(None, help="Bind port (default: server.port)."),
):
    """Run the HTTP API."""
    from .web.app import run

    run(config=config, host=host, port=port)


if __name__ == "__main__":
    app()

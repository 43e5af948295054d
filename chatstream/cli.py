"""
chatstream terminal client.

Registered as the ``chatstream`` console script via pyproject.toml.
"""
import asyncio
import logging
from typing import Optional

import click

from chatstream.api_client import ChatAPI
from chatstream.chat_client import ChatClient
from chatstream.config import settings
from chatstream.exceptions import ChatStreamError
from chatstream.session_state import SessionState
from chatstream.stream_controller import GenerationSession
from chatstream.transport import PushChannel


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")


class DeltaPrinter:
    """Echoes the newly arrived part of each buffer to the terminal."""

    def __init__(self):
        self._reasoning_shown = 0
        self._content_shown = 0

    def reset(self) -> None:
        self._reasoning_shown = 0
        self._content_shown = 0

    def __call__(self, session: GenerationSession) -> None:
        reasoning = session.reasoning_buffer[self._reasoning_shown:]
        if reasoning and not session.reasoning_collapsed:
            if self._reasoning_shown == 0:
                click.secho("[thinking] ", fg="bright_black", nl=False)
            click.secho(reasoning, fg="bright_black", nl=False)
            self._reasoning_shown = len(session.reasoning_buffer)

        content = session.content_buffer[self._content_shown:]
        if content:
            if self._content_shown == 0 and self._reasoning_shown:
                click.echo()
            click.echo(content, nl=False)
            self._content_shown = len(session.content_buffer)


@click.group()
@click.option("--base-url", default=None, help="API base URL (default: CHATSTREAM_BASE_URL).")
@click.option("--log-level", default=None, help="Logging level (default: CHATSTREAM_LOG_LEVEL).")
@click.pass_context
def cli(ctx: click.Context, base_url: Optional[str], log_level: Optional[str]) -> None:
    """Streamed AI chat from the terminal."""
    _configure_logging(log_level or settings.log_level)
    ctx.obj = {"base_url": base_url or settings.base_url}


async def _chat(
    base_url: str,
    email: Optional[str],
    password: Optional[str],
    conversation_id: Optional[int],
    thinking: bool,
) -> None:
    state = SessionState()
    async with PushChannel(base_url) as channel, ChatAPI(state, base_url) as api:
        client = ChatClient(api, channel, state=state)
        if settings.token:
            client.state.login(settings.token)
        elif email:
            user = await client.login(email, password or "")
            click.secho(f"Logged in as {user.username}", fg="green")
        else:
            raise click.UsageError("Provide --email or set CHATSTREAM_TOKEN")

        if conversation_id is not None:
            await client.open_conversation(conversation_id)
            for message in client.transcript:
                label = "you" if message.type == "user" else "assistant"
                click.secho(f"{label}> ", fg="cyan", nl=False)
                click.echo(message.content)

        printer = DeltaPrinter()
        client.controller.add_update_listener(printer)

        while True:
            try:
                prompt = await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ")
            except (EOFError, click.Abort):
                click.echo()
                break
            if prompt.strip() in ("/quit", "/exit"):
                break
            if prompt.strip() == "/new":
                client.new_chat()
                click.secho("Started a new chat.", fg="green")
                continue

            printer.reset()
            click.secho("assistant> ", fg="cyan", nl=False)
            session = await client.send_message(prompt, thinking=thinking)
            if session is not None:
                await client.wait_for_reply()
            click.echo()
            if client.status:
                click.secho(client.status, fg="red", err=True)


@cli.command()
@click.option("--email", default=None, help="Log in with this email.")
@click.option("--password", default=None, help="Password for --email.")
@click.option("--conversation", "conversation_id", type=int, default=None, help="Continue an existing conversation.")
@click.option("--thinking/--no-thinking", default=None, help="Ask the model to stream its reasoning.")
@click.pass_context
def chat(
    ctx: click.Context,
    email: Optional[str],
    password: Optional[str],
    conversation_id: Optional[int],
    thinking: Optional[bool],
) -> None:
    """Interactive chat; /new starts a new conversation, /quit exits."""
    try:
        asyncio.run(_chat(
            ctx.obj["base_url"],
            email,
            password,
            conversation_id,
            settings.thinking if thinking is None else thinking,
        ))
    except ChatStreamError as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
def serve(host: str, port: int) -> None:
    """Run the development backend."""
    import uvicorn

    from chatstream.devserver import app

    uvicorn.run(app, host=host, port=port)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

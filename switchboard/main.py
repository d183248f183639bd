"""Console entry point for switchboard.

Runs a Bot against stdin/stdout so commands, events and plugins can be
exercised locally without a chat platform. Lines are text triggers;
lines starting with ``/`` are interactive triggers whose ``key=value``
tokens become options.

Key functions:
    main: Async entry point -- sets up logging, config, bot, and
        signal handlers, then reads triggers until EOF or a signal.
    run: Synchronous wrapper that calls asyncio.run(main()).
"""

import asyncio
import getpass
import signal
import sys
from typing import Any, List, Set

import structlog

from . import __version__
from .logging_config import setup_logging
from .triggers import (
    Actor,
    InteractiveTrigger,
    Option,
    OptionType,
    Origin,
    Responder,
    TextTrigger,
)

CONSOLE_CHANNEL = "console"
CONSOLE_GUILD = "console"


class ConsoleResponder(Responder):
    """Writes replies to stdout."""

    def __init__(self, label: str = "bot"):
        self.label = label

    async def reply(self, content: Any, **options: Any) -> None:
        print(f"[{self.label}] {content}", flush=True)

    async def send(self, content: Any, **options: Any) -> None:
        print(f"[{self.label}] {content}", flush=True)


def _option(token: str) -> Option:
    key, _, raw = token.partition("=")
    for cast, option_type in ((int, OptionType.INTEGER), (float, OptionType.NUMBER)):
        try:
            return Option(name=key, type=option_type, value=cast(raw))
        except ValueError:
            continue
    if raw.lower() in ("true", "false"):
        return Option(name=key, type=OptionType.BOOLEAN, value=raw.lower() == "true")
    return Option(name=key, type=OptionType.STRING, value=raw)


def parse_line(line: str, actor: Actor, origin: Origin, responder: Responder):
    """Turn one console line into a trigger (None for blank lines)."""
    line = line.strip()
    if not line:
        return None
    if line.startswith("/") and len(line) > 1:
        parts = line[1:].split()
        options: List[Option] = [_option(t) for t in parts[1:] if "=" in t]
        return InteractiveTrigger(
            actor=actor,
            origin=origin,
            command_name=parts[0],
            responder=responder,
            options=options,
        )
    return TextTrigger(actor=actor, origin=origin, content=line, responder=responder)


async def main():
    """Main async entry point."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("switchboard")

    logger.info("switchboard_starting", version=__version__)

    # Import here to ensure logging is configured first
    from .bot import Bot
    from .config import get_config
    from .store import JsonFileStore

    config = get_config()
    config.validate()

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    responder = ConsoleResponder()

    async def send_message(channel_id: str, content: Any) -> None:
        print(f"[{channel_id}] {content}", flush=True)

    bot = Bot(config=config, store=JsonFileStore(config.store_file), send_message=send_message)
    owner = config.owner_ids[0] if config.owner_ids else getpass.getuser()
    actor = Actor(
        id=owner,
        name=getpass.getuser(),
        permissions=frozenset(config.settings.get("console_permissions", [])),
    )
    origin = Origin(channel_id=CONSOLE_CHANNEL, guild_id=CONSOLE_GUILD)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: handle_shutdown(signal.SIGINT),
                )

    pending: Set[asyncio.Task] = set()

    async def read_loop():
        while not shutdown_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                shutdown_event.set()
                break
            trigger = parse_line(line, actor, origin, responder)
            if trigger is None:
                continue
            # One task per trigger so collectors can receive later lines
            task = asyncio.create_task(bot.handle(trigger))
            pending.add(task)
            task.add_done_callback(pending.discard)

    try:
        await bot.start()
        reader = asyncio.create_task(read_loop())
        await shutdown_event.wait()
        reader.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    except Exception as e:
        logger.error("bot_error", error=str(e))
        raise
    finally:
        await bot.stop()
        logger.info("switchboard_stopped")


def run():
    """Synchronous entry point for the ``switchboard`` console script."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()

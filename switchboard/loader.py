"""Command and event source loader.

Commands: every ``*.py`` under ``commands_dir`` (recursively) that
defines a module-level ``command``, either a Command or a dict with at
least ``name`` and ``run``/``handler``.

Events: every ``*.py`` under ``events_dir`` that defines ``handle``.
The file stem is the event name; a ``once_`` prefix subscribes once and
a sub-directory becomes the event group (``guild/member_join.py`` ->
``guild/member_join``).

Hot reload is a full teardown followed by a fresh walk.
"""

import importlib.util
import sys
from pathlib import Path
from types import ModuleType
from typing import List, Optional

import structlog

from .commands.base import Command, CommandRegistry
from .events import EventRouter, Subscription
from .exceptions import RegistrationError

logger = structlog.get_logger("switchboard.dispatch")

ONCE_PREFIX = "once_"


def _import_file(path: Path, namespace: str, root: Path) -> ModuleType:
    """Execute a source file as a fresh module."""
    relative = path.relative_to(root).with_suffix("")
    module_name = ".".join([namespace, *relative.parts])
    spec = importlib.util.spec_from_file_location(module_name, path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception:
        sys.modules.pop(module_name, None)
        raise
    return module


def _source_files(root: Path, recursive: bool) -> List[Path]:
    pattern = "**/*.py" if recursive else "*.py"
    return sorted(p for p in root.glob(pattern) if p.is_file() and not p.name.startswith("_"))


class CommandLoader:
    """Loads host commands and events from directories.

    Args:
        registry: Command registry to fill.
        router: Event router to subscribe on.
        commands_dir: Command source directory (None disables).
        events_dir: Event source directory (None disables).
    """

    def __init__(
        self,
        registry: CommandRegistry,
        router: EventRouter,
        commands_dir: Optional[Path] = None,
        events_dir: Optional[Path] = None,
    ):
        self.registry = registry
        self.router = router
        self.commands_dir = Path(commands_dir) if commands_dir else None
        self.events_dir = Path(events_dir) if events_dir else None

    def load_commands(self) -> List[Command]:
        """Register every valid command file. Invalid files are skipped with a warning."""
        if self.commands_dir is None or not self.commands_dir.is_dir():
            return []

        loaded: List[Command] = []
        for path in _source_files(self.commands_dir, recursive=True):
            try:
                module = _import_file(path, "switchboard_commands", self.commands_dir)
            except Exception as e:
                logger.warning("command_file_import_failed", file=path.name, error=str(e))
                continue

            definition = getattr(module, "command", None)
            if isinstance(definition, dict):
                if not definition.get("name") or not (definition.get("run") or definition.get("handler")):
                    logger.warning("command_file_invalid", file=path.name)
                    continue
                definition = Command.from_dict(definition)
            if not isinstance(definition, Command):
                logger.warning("command_file_invalid", file=path.name)
                continue

            try:
                self.registry.register(definition)
            except RegistrationError as e:
                logger.warning("command_file_rejected", file=path.name, error=e.message)
                continue
            loaded.append(definition)
            logger.info(
                "command_loaded",
                command=definition.name,
                kind="slash" if definition.is_slash else "message",
            )
        return loaded

    def load_events(self) -> List[Subscription]:
        """Subscribe every event file's ``handle`` function."""
        if self.events_dir is None or not self.events_dir.is_dir():
            return []

        subscriptions: List[Subscription] = []
        for path in _source_files(self.events_dir, recursive=True):
            try:
                module = _import_file(path, "switchboard_events", self.events_dir)
            except Exception as e:
                logger.warning("event_file_import_failed", file=path.name, error=str(e))
                continue

            handler = getattr(module, "handle", None)
            if not callable(handler):
                logger.warning("event_file_invalid", file=path.name)
                continue

            stem = path.stem
            once = stem.startswith(ONCE_PREFIX)
            if once:
                stem = stem[len(ONCE_PREFIX):]
            parts = list(path.relative_to(self.events_dir).parent.parts) + [stem]
            event_name = "/".join(parts)
            subscriptions.append(self.router.subscribe(event_name, handler, once=once))
            logger.info("event_loaded", event_name=event_name, once=once)
        return subscriptions

    def reload_commands(self, include_plugins: bool = False) -> List[Command]:
        """Drop every host command, then walk commands_dir again.

        By default this is narrower than an unregister-all: plugin-owned
        commands are kept, since their plugins stay loaded and would
        otherwise be left registered with nothing. Pass
        ``include_plugins=True`` for a full unregister-all; reload the
        plugins afterwards to restore their commands.
        """
        if include_plugins:
            self.registry.clear()
        else:
            self.registry.clear(plugin=None)
        return self.load_commands()

    def reload_events(self) -> List[Subscription]:
        """Drop every subscription, then walk events_dir again.

        This also removes subscriptions made outside the loader,
        including plugin-owned ones; reload plugins afterwards to
        restore theirs.
        """
        self.router.unsubscribe_all()
        return self.load_events()

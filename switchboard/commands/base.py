"""Command definitions and the command registry.

A Command is a handler plus the metadata the dispatcher's guard stages
read. The CommandRegistry maps names to commands and aliases to names,
and guarantees that removing a command removes every alias pointing at
it, which is what plugin teardown relies on.

Key classes:
    Command: One registered command.
    OverloadPattern: (matcher, handler) pair of an overloaded command.
    CommandGroup: ABC for classes that contribute several commands.
    CommandRegistry: Name and alias lookup with collision checks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Union,
)

import structlog

from ..cooldown import parse_duration
from ..exceptions import RegistrationError
from ..triggers import ContextMenuType

logger = structlog.get_logger("switchboard.dispatch")

# Handler signature: (ctx) -> Optional[awaitable]
CommandHandler = Callable[..., Union[Awaitable[Any], Any]]


@dataclass
class OverloadPattern:
    """One alternative of an overloaded command.

    Attributes:
        match: Predicate over the argument list.
        handler: Called as ``handler(ctx, args)`` when ``match`` accepts.
        description: Human-readable shape, e.g. "<user> <amount>".
    """
    match: Callable[[List[Any]], bool]
    handler: CommandHandler
    description: str = ""


@dataclass
class Command:
    """A registered command and the metadata its guards read.

    Attributes:
        name: Unique, case-sensitive key.
        handler: Called with the Context. Unused for overloads.
        aliases: Alternate names resolving to ``name``.
        cooldown: Seconds (number) or a duration string ("5s", "2m").
        permissions: Capability tags the actor must hold.
        guild_only: Reject direct conversations.
        direct_only: Reject guild channels.
        restricted_only: Only in age-restricted (NSFW) channels.
        owner_only: Only for configured bot owners.
        is_slash: Registered as an interactive slash command.
        slash_only: Refuse text invocations of a slash command.
        is_context_menu: Registered as a context-menu command.
        overload: Dispatch through ``overload_patterns`` instead of ``handler``.
        before / after / on_error: Per-command hooks.
        plugin: Owning plugin tag, None for host commands.
        options: Declared interactive options (name/type/required dicts).
    """
    name: str
    handler: Optional[CommandHandler] = None
    aliases: List[str] = field(default_factory=list)
    description: str = "No description"
    usage: str = ""
    cooldown: Union[int, float, str, None] = None
    permissions: List[str] = field(default_factory=list)
    guild_only: bool = False
    direct_only: bool = False
    restricted_only: bool = False
    owner_only: bool = False
    is_slash: bool = False
    slash_only: bool = False
    is_context_menu: bool = False
    context_menu_type: Optional[ContextMenuType] = None
    overload: bool = False
    overload_patterns: List[OverloadPattern] = field(default_factory=list)
    before: Optional[CommandHandler] = None
    after: Optional[CommandHandler] = None
    on_error: Optional[Callable[..., Any]] = None
    plugin: Optional[str] = None
    options: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def cooldown_seconds(self) -> float:
        return parse_duration(self.cooldown)

    def tagged(self, plugin: Optional[str]) -> "Command":
        """Copy of this command owned by ``plugin``."""
        return replace(self, plugin=plugin)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Command":
        """Build a Command from a loose definition dict.

        Accepts ``run`` as a synonym for ``handler`` and ``slash`` /
        ``nsfw_only`` / ``dev_only`` as synonyms for the flag names.
        """
        data = dict(data)
        if "run" in data:
            data.setdefault("handler", data.pop("run"))
        synonyms = {
            "slash": "is_slash",
            "nsfw_only": "restricted_only",
            "dev_only": "owner_only",
            "patterns": "overload_patterns",
            "args": "options",
        }
        for old, new in synonyms.items():
            if old in data:
                data.setdefault(new, data.pop(old))
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("command_unknown_fields", command=data.get("name"), fields=unknown)
        return cls(**{k: v for k, v in data.items() if k in known})


class CommandGroup(ABC):
    """Abstract base class for classes that contribute several commands.

    Subclasses implement get_commands(); the registry registers each
    returned Command.
    """

    @abstractmethod
    def get_commands(self) -> List[Command]:
        """Return the commands this group contributes."""
        ...


def _validate(
    command: Command,
    commands: Dict[str, Command],
    aliases: Dict[str, str],
) -> None:
    """Raise RegistrationError if ``command`` cannot join the given maps."""
    name = command.name
    if not name or not isinstance(name, str):
        raise RegistrationError("Command name must be a non-empty string", command=name)
    if command.overload:
        if not command.overload_patterns:
            raise RegistrationError(
                f"Overloaded command {name!r} declares no patterns", command=name
            )
    elif command.handler is None:
        raise RegistrationError(f"Command {name!r} has no handler", command=name)
    if name in commands:
        raise RegistrationError(f"Command {name!r} is already registered", command=name)
    if name in aliases:
        raise RegistrationError(
            f"Command name {name!r} collides with an alias of {aliases[name]!r}",
            command=name,
        )
    for alias in command.aliases:
        if alias == name:
            continue
        if alias in commands:
            raise RegistrationError(
                f"Alias {alias!r} collides with command {alias!r}", command=name
            )
        if alias in aliases:
            raise RegistrationError(
                f"Alias {alias!r} already points to {aliases[alias]!r}", command=name
            )


def _insert(command: Command, commands: Dict[str, Command], aliases: Dict[str, str]) -> None:
    commands[command.name] = command
    for alias in command.aliases:
        if alias != command.name:
            aliases[alias] = command.name


def _remove(name: str, commands: Dict[str, Command], aliases: Dict[str, str]) -> Optional[Command]:
    command = commands.pop(name, None)
    if command is None:
        return None
    for alias in [a for a, target in aliases.items() if target == name]:
        del aliases[alias]
    return command


class CommandRegistry:
    """Maps command names and aliases to Command objects.

    Every alias resolves to a command present in the registry; removing
    a command prunes its aliases in the same step.
    """

    def __init__(self):
        self._commands: Dict[str, Command] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, command: Command) -> Command:
        """Add a command.

        Raises:
            RegistrationError: Name or alias collision, or an overload
                without patterns. The registry is left unchanged.
        """
        _validate(command, self._commands, self._aliases)
        _insert(command, self._commands, self._aliases)
        logger.debug(
            "command_registered",
            command=command.name,
            aliases=list(command.aliases),
            plugin=command.plugin,
        )
        return command

    def register_group(self, group: CommandGroup) -> List[Command]:
        """Register every command of a CommandGroup, all or nothing."""
        commands = group.get_commands()
        self.swap([], commands)
        return commands

    def unregister(self, name: str) -> Optional[Command]:
        """Remove a command and every alias pointing at it.

        Returns:
            The removed Command, or None if ``name`` was not registered.
        """
        command = _remove(name, self._commands, self._aliases)
        if command is not None:
            logger.debug("command_unregistered", command=name, plugin=command.plugin)
        return command

    def swap(self, remove: Iterable[str], add: Iterable[Command]) -> None:
        """Remove and add commands as one synchronous step.

        Every addition is validated against the registry as it would
        look after the removals. On any conflict nothing changes.

        Raises:
            RegistrationError: First conflict found.
        """
        commands = dict(self._commands)
        aliases = dict(self._aliases)
        for name in remove:
            _remove(name, commands, aliases)
        for command in add:
            _validate(command, commands, aliases)
            _insert(command, commands, aliases)
        self._commands = commands
        self._aliases = aliases

    def resolve(self, name_or_alias: str) -> Optional[Command]:
        """Look up by name first, then by alias. No fuzzy matching."""
        command = self._commands.get(name_or_alias)
        if command is not None:
            return command
        target = self._aliases.get(name_or_alias)
        if target is None:
            return None
        return self._commands.get(target)

    def get(self, name: str) -> Optional[Command]:
        """Look up by canonical name only."""
        return self._commands.get(name)

    def aliases_of(self, name: str) -> List[str]:
        return [alias for alias, target in self._aliases.items() if target == name]

    def by_plugin(self, plugin: Optional[str]) -> List[Command]:
        """Commands tagged with ``plugin`` (None selects host commands)."""
        return [c for c in self._commands.values() if c.plugin == plugin]

    def clear(self, plugin: Any = ...) -> None:
        """Remove every command, or only those tagged with ``plugin``."""
        if plugin is ...:
            self._commands.clear()
            self._aliases.clear()
            return
        for command in self.by_plugin(plugin):
            _remove(command.name, self._commands, self._aliases)

    @property
    def names(self) -> frozenset:
        """All registered command names."""
        return frozenset(self._commands.keys())

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) is not None

    def __iter__(self) -> Iterator[Command]:
        return iter(list(self._commands.values()))

    def __len__(self) -> int:
        return len(self._commands)

"""Inbound trigger types.

A trigger is one inbound occurrence handed over by the platform
gateway: either a typed message (TextTrigger) or an interactive
invocation such as a slash or context-menu command (InteractiveTrigger).
Both variants carry an explicit ``kind`` tag so the normalizer can
match on it instead of probing for attributes.

The gateway also supplies a Responder per trigger: the outbound half
that actually talks to the platform.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, List, Optional, Union


class TriggerKind(str, Enum):
    """Discriminator for the Trigger union."""
    TEXT = "text"
    INTERACTIVE = "interactive"


class OptionType(str, Enum):
    """Value types an interactive option can carry."""
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    USER = "user"
    CHANNEL = "channel"
    ROLE = "role"


class ContextMenuType(str, Enum):
    """Target kinds for context-menu commands."""
    USER = "user"
    MESSAGE = "message"


@dataclass(frozen=True)
class Actor:
    """The user who produced a trigger.

    Attributes:
        id: Platform user id.
        name: Display name.
        is_bot: True for bot accounts (text triggers from bots are ignored).
        permissions: Capability tags held in the origin guild. Empty in DMs.
    """
    id: str
    name: str = ""
    is_bot: bool = False
    permissions: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Origin:
    """Where a trigger happened.

    Attributes:
        channel_id: Channel (or DM channel) id.
        guild_id: Guild id, or None for a direct conversation.
        nsfw: Whether the channel is age-restricted.
    """
    channel_id: Optional[str] = None
    guild_id: Optional[str] = None
    nsfw: bool = False

    @property
    def is_direct(self) -> bool:
        return self.guild_id is None


@dataclass(frozen=True)
class Option:
    """One supplied interactive option.

    Attributes:
        name: Option name as declared by the command.
        type: Value type.
        value: Raw value (ids for user/channel/role options).
        resolved: Platform object resolved for user/channel/role options.
    """
    name: str
    type: OptionType
    value: Any
    resolved: Any = None


class Responder(ABC):
    """Outbound reply collaborator supplied by the gateway for each trigger."""

    @abstractmethod
    async def reply(self, content: Any, **options: Any) -> Any:
        """Direct reply to the trigger."""
        ...

    @abstractmethod
    async def send(self, content: Any, **options: Any) -> Any:
        """Plain send to the origin channel."""
        ...

    async def follow_up(self, content: Any, **options: Any) -> Any:
        """Follow-up message after a deferred interactive reply."""
        return await self.send(content, **options)

    async def defer(self) -> None:
        """Acknowledge an interactive trigger without replying yet."""

    async def react(self, emoji: str) -> None:
        """Add a reaction to the triggering message."""


@dataclass
class TextTrigger:
    """A typed message.

    Attributes:
        actor: Author.
        origin: Where it was posted.
        content: Raw message text.
        responder: Outbound collaborator.
        message_id: Platform message id.
        raw: Untouched platform object, for handlers that need it.
    """
    actor: Actor
    origin: Origin
    content: str
    responder: Responder
    message_id: Optional[str] = None
    raw: Any = None
    kind: TriggerKind = field(default=TriggerKind.TEXT, init=False)


@dataclass
class InteractiveTrigger:
    """An interactive invocation (slash command or context menu).

    ``deferred`` is flipped by Context.defer() and decides whether
    replies become follow-ups.
    """
    actor: Actor
    origin: Origin
    command_name: str
    responder: Responder
    options: List[Option] = field(default_factory=list)
    target: Any = None
    deferred: bool = False
    raw: Any = None
    kind: TriggerKind = field(default=TriggerKind.INTERACTIVE, init=False)


Trigger = Union[TextTrigger, InteractiveTrigger]

"""Unified invocation context and the trigger normalizer.

normalize() turns either trigger variant into a Context. Handlers talk
only to the Context: reply/defer/permission checks behave correctly for
both trigger kinds, so handler code never branches on is_interactive.
"""

import inspect
import re
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence

from .triggers import Option, OptionType, Trigger, TriggerKind

if TYPE_CHECKING:
    from .events import EventRouter

_USER_MENTION = re.compile(r"^<@!?(\d+)>$")
_CHANNEL_MENTION = re.compile(r"^<#(\d+)>$")

DEFAULT_WAIT_TIMEOUT = 30.0
DIALOG_TIMEOUT_NOTICE = "⏳ Dialog timed out."


class Context:
    """Trigger-agnostic view handed to every command and event handler.

    Built by normalize(); carries no state across invocations.

    Attributes:
        trigger: The originating trigger.
        actor: Who produced the trigger.
        origin: Where it happened.
        args: Positional text tokens, or ordered option values.
        command_name: Invoked command name, if any.
        content: Raw text for text triggers, else None.
        mentioned_user: Id of the first user mention in a text trigger.
        mentioned_channel: Id of the first channel mention in a text trigger.
        replies_sent: Number of messages sent through reply().
    """

    def __init__(
        self,
        trigger: Trigger,
        args: List[Any],
        command_name: Optional[str] = None,
        mentioned_user: Optional[str] = None,
        mentioned_channel: Optional[str] = None,
        router: Optional["EventRouter"] = None,
        bot: Any = None,
    ):
        self.trigger = trigger
        self.actor = trigger.actor
        self.origin = trigger.origin
        self.args = args
        self.command_name = command_name
        self.mentioned_user = mentioned_user
        self.mentioned_channel = mentioned_channel
        self.bot = bot
        self.replies_sent = 0
        self._router = router
        self._options: List[Option] = (
            list(trigger.options) if trigger.kind == TriggerKind.INTERACTIVE else []
        )

    def __repr__(self) -> str:
        return (
            f"Context(kind={self.trigger.kind.value!r}, actor={self.actor.id!r}, "
            f"command={self.command_name!r}, args={self.args!r})"
        )

    # --- Derived state ---

    @property
    def raw(self) -> Any:
        return self.trigger.raw

    @property
    def is_interactive(self) -> bool:
        return self.trigger.kind == TriggerKind.INTERACTIVE

    @property
    def is_direct(self) -> bool:
        return self.origin.is_direct

    @property
    def is_guild(self) -> bool:
        return not self.origin.is_direct

    @property
    def guild_id(self) -> Optional[str]:
        return self.origin.guild_id

    @property
    def channel_id(self) -> Optional[str]:
        return self.origin.channel_id

    @property
    def content(self) -> Optional[str]:
        if self.trigger.kind == TriggerKind.TEXT:
            return self.trigger.content
        return None

    @property
    def deferred(self) -> bool:
        return self.is_interactive and self.trigger.deferred

    # --- Option lookups (interactive triggers only) ---

    def _find_option(self, name: str, *types: OptionType) -> Optional[Option]:
        for option in self._options:
            if option.name == name and (not types or option.type in types):
                return option
        return None

    def get_option(self, name: str) -> Any:
        """Value of the named option, or None (always None for text triggers)."""
        option = self._find_option(name)
        return option.value if option else None

    def _resolved(self, name: str, option_type: OptionType) -> Any:
        option = self._find_option(name, option_type)
        if option is None:
            return None
        return option.resolved if option.resolved is not None else option.value

    def get_user(self, name: str) -> Any:
        return self._resolved(name, OptionType.USER)

    def get_channel(self, name: str) -> Any:
        return self._resolved(name, OptionType.CHANNEL)

    def get_role(self, name: str) -> Any:
        return self._resolved(name, OptionType.ROLE)

    def get_number(self, name: str) -> Optional[float]:
        option = self._find_option(name, OptionType.NUMBER, OptionType.INTEGER)
        return option.value if option else None

    def get_string(self, name: str) -> Optional[str]:
        option = self._find_option(name, OptionType.STRING)
        return option.value if option else None

    # --- Outbound ---

    async def reply(self, content: Any, **options: Any) -> Any:
        """Reply to the trigger.

        Interactive triggers that were deferred get a follow-up instead
        of a direct reply; text triggers always get a direct reply.
        """
        responder = self.trigger.responder
        self.replies_sent += 1
        if self.deferred:
            return await responder.follow_up(content, **options)
        return await responder.reply(content, **options)

    async def send(self, content: Any, **options: Any) -> Any:
        """Plain send to the origin channel (not threaded to the trigger)."""
        return await self.trigger.responder.send(content, **options)

    async def defer(self) -> None:
        """Acknowledge an interactive trigger. No-op for text triggers."""
        if not self.is_interactive or self.trigger.deferred:
            return
        await self.trigger.responder.defer()
        self.trigger.deferred = True

    async def follow_up(self, content: Any, **options: Any) -> Any:
        """Follow-up message for interactive triggers. No-op for text triggers."""
        if not self.is_interactive:
            return None
        return await self.trigger.responder.follow_up(content, **options)

    async def react(self, emoji: str) -> None:
        """React to the triggering message. No-op for interactive triggers."""
        if self.is_interactive:
            return
        await self.trigger.responder.react(emoji)

    def has_perms(self, perms: Sequence[str]) -> bool:
        """Whether the actor holds every listed capability in this guild.

        Always False in direct conversations.
        """
        if self.is_direct:
            return False
        return set(perms).issubset(self.actor.permissions)

    # --- Collectors ---

    async def wait_for(
        self,
        event_name: str,
        check: Optional[Callable[..., Any]] = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> Optional["Context"]:
        """Wait for the next routed ``event_name`` accepted by ``check``.

        Returns the event's Context, or None on timeout.
        """
        if self._router is None:
            raise RuntimeError("Context has no event router; collectors unavailable")
        return await self._router.wait_for(event_name, check, timeout)

    async def await_message(
        self,
        check: Optional[Callable[["Context"], Any]] = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> Optional["Context"]:
        """Wait for the actor's next message in this channel.

        A custom ``check`` replaces the same-actor/same-channel filter.
        """
        if check is None:
            def check(other: "Context") -> bool:
                return (
                    other.actor.id == self.actor.id
                    and other.channel_id == self.channel_id
                )
        return await self.wait_for("message", check, timeout)

    async def dialog(
        self, prompts: Sequence[str], timeout: float = DEFAULT_WAIT_TIMEOUT
    ) -> List[str]:
        """Ask each prompt in turn and collect the actor's answers.

        Stops at the first unanswered prompt with a timeout notice.
        """
        answers: List[str] = []
        for prompt in prompts:
            await self.reply(prompt)
            answer = await self.await_message(timeout=timeout)
            if answer is None:
                await self.reply(DIALOG_TIMEOUT_NOTICE)
                break
            answers.append(answer.content or "")
        return answers


class EventContext:
    """Context for routed events whose payload is not a trigger.

    Carries the host handle and the raw payload. There is no actor, so
    nothing can be replied to.

    Attributes:
        event_name: Name the event was routed under.
        args: Raw payload, in emit order.
        bot: Host object, if any.
    """

    def __init__(
        self,
        event_name: str,
        raw_args: Sequence[Any] = (),
        router: Optional["EventRouter"] = None,
        bot: Any = None,
    ):
        self.event_name = event_name
        self.args = list(raw_args)
        self.bot = bot
        self._router = router

    def __repr__(self) -> str:
        return f"EventContext(event={self.event_name!r}, args={self.args!r})"

    @property
    def raw(self) -> Any:
        """The single payload, a tuple of several, or None when empty."""
        if not self.args:
            return None
        return self.args[0] if len(self.args) == 1 else tuple(self.args)

    async def wait_for(
        self,
        event_name: str,
        check: Optional[Callable[..., Any]] = None,
        timeout: float = DEFAULT_WAIT_TIMEOUT,
    ) -> Any:
        if self._router is None:
            raise RuntimeError("EventContext has no event router; collectors unavailable")
        return await self._router.wait_for(event_name, check, timeout)


def _text_args(content: str, prefix: str) -> List[str]:
    body = content.strip()
    if prefix and body.startswith(prefix):
        body = body[len(prefix):].strip()
    return body.split()


def _first_match(pattern: "re.Pattern", tokens: Sequence[str]) -> Optional[str]:
    for token in tokens:
        match = pattern.match(token)
        if match:
            return match.group(1)
    return None


def normalize(
    trigger: Trigger,
    prefix: str = "",
    *,
    args_override: Optional[List[Any]] = None,
    router: Optional["EventRouter"] = None,
    bot: Any = None,
) -> Context:
    """Build a Context from a trigger.

    Text: the content is stripped of ``prefix`` and split on whitespace;
    the first token is the command name and the rest are ``args``.
    Mention tokens stay in ``args`` and are also exposed as
    ``mentioned_user`` / ``mentioned_channel``.

    Interactive: ``args`` are the option values in the order supplied.

    Args:
        trigger: Text or interactive trigger.
        prefix: Command prefix to strip from text triggers.
        args_override: Use these args instead of deriving them.
        router: Event router backing the Context's collectors.
        bot: Host object exposed as ``ctx.bot``.
    """
    if trigger.kind == TriggerKind.TEXT:
        tokens = _text_args(trigger.content, prefix)
        command_name = tokens[0] if tokens else None
        args = list(args_override) if args_override is not None else tokens[1:]
        return Context(
            trigger,
            args,
            command_name=command_name,
            mentioned_user=_first_match(_USER_MENTION, args),
            mentioned_channel=_first_match(_CHANNEL_MENTION, args),
            router=router,
            bot=bot,
        )
    if trigger.kind == TriggerKind.INTERACTIVE:
        args = (
            list(args_override) if args_override is not None
            else [option.value for option in trigger.options]
        )
        return Context(
            trigger, args, command_name=trigger.command_name, router=router, bot=bot,
        )
    raise TypeError(f"Unknown trigger kind: {trigger.kind!r}")


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if it is awaitable, else return it unchanged.

    Hooks, inhibitors and handlers may be plain functions or coroutines.
    """
    if inspect.isawaitable(value):
        return await value
    return value

"""Bot facade for switchboard.

Wires the inbound trigger feed to the command and event machinery.
Text triggers are matched against the guild's prefix, resolved through
the registry, and run through the dispatcher pipeline; every message
is also routed as the ``message`` event so collectors see it.
Interactive triggers resolve by command name and dispatch directly.

Key classes:
    Bot: Owns one instance of every state object -- registry, router,
        cooldown ledger, override table, dispatcher, plugin manager,
        store -- and exposes the host-facing registration API.
"""

import time
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Union

import structlog

from .commands.base import Command, CommandRegistry, OverloadPattern
from .commands.dispatcher import CommandDispatcher, DispatchResult, Notices
from .commands.overrides import GuildOverrideTable
from .config import Config
from .context import Context, EventContext, maybe_await, normalize
from .cooldown import CooldownLedger
from .diagnostics import ChannelSink, Diagnostic, WebhookSink
from .events import EventHandler, EventRouter, Subscription
from .loader import CommandLoader
from .plugin_loader import PluginLoader
from .plugin_manager import PluginManager
from .store import KeyValueStore, MemoryStore, Scope
from .triggers import ContextMenuType, InteractiveTrigger, TextTrigger, TriggerKind

logger = structlog.get_logger("switchboard.bot")

PREFIX_KEY = "prefix"
MESSAGE_EVENT = "message"
INTERACTION_EVENT = "interaction"

PatternSpec = Union[OverloadPattern, tuple]


class Bot:
    """Command/event host.

    Args:
        config: Settings; an empty Config by default.
        store: Persistence collaborator; memory-only by default.
        send_message: Host transport, ``send(channel_id, content)``.
            Used by plugins and the channel diagnostic sink.
        clock: Monotonic time source for cooldowns.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[KeyValueStore] = None,
        send_message: Optional[Callable[[str, Any], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or Config(settings={})
        self.store = store or MemoryStore()
        self.send_message = send_message
        self.default_prefix = self.config.prefix
        self.diagnostics: List[Diagnostic] = []

        self.registry = CommandRegistry()
        self.router = EventRouter(
            context_factory=self._event_context,
            is_owner_enabled=lambda owner: self.plugins.is_enabled(owner),
            on_diagnostic=self._record_diagnostic,
        )
        self.ledger = CooldownLedger(clock=clock)
        self.overrides = GuildOverrideTable(self.store)
        self.diagnostic_sink = self._build_sink()
        self.dispatcher = CommandDispatcher(
            ledger=self.ledger,
            overrides=self.overrides,
            owner_ids=self.config.owner_ids,
            notices=Notices.from_overrides(self.config.notices),
            diagnostic_sink=self.diagnostic_sink,
            is_plugin_enabled=lambda name: self.plugins.is_enabled(name),
            on_diagnostic=self._record_diagnostic,
        )
        self.plugins = PluginManager(
            registry=self.registry,
            router=self.router,
            store=self.store,
            plugin_settings=self.config.plugin_settings,
            send_message=send_message,
            bot=self,
        )
        self.loader = CommandLoader(
            self.registry,
            self.router,
            commands_dir=self.config.commands_dir,
            events_dir=self.config.events_dir,
        )
        self.plugin_loader = PluginLoader(
            plugins_dir=self.config.plugins_dir,
            allowlist=self.config.plugin_allowlist,
            plugin_settings=self.config.plugin_settings,
        )

        self._before_command: Optional[Callable[..., Any]] = None
        self._after_command: Optional[Callable[..., Any]] = None
        self.running = False

    def _build_sink(self):
        if self.config.diagnostic_webhook_url:
            return WebhookSink(self.config.diagnostic_webhook_url)
        if self.config.diagnostic_channel_id and self.send_message is not None:
            return ChannelSink(self.send_message, self.config.diagnostic_channel_id)
        return None

    def _record_diagnostic(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def _event_context(self, event_name: str, raw_args: tuple) -> Union[Context, EventContext]:
        """Context for a routed event.

        Events whose first payload is a trigger get a full Context;
        anything else gets an EventContext carrying the bot and payload.
        """
        if raw_args and isinstance(raw_args[0], (TextTrigger, InteractiveTrigger)):
            return normalize(raw_args[0], router=self.router, bot=self)
        return EventContext(event_name, raw_args, router=self.router, bot=self)

    # --- Registration ---

    def command(
        self,
        name: str,
        handler: Callable[..., Any],
        description_or_options: Union[str, dict] = "No description",
        **options: Any,
    ) -> Command:
        """Register an inline command.

        ``slash=True`` registers an interactive command that also
        refuses text invocations (unless ``slash_only=False``).
        """
        if isinstance(description_or_options, dict):
            options = {**description_or_options, **options}
        else:
            options.setdefault("description", description_or_options)
        if options.get("slash") or options.get("is_slash"):
            options.setdefault("slash_only", True)
        return self.registry.register(
            Command.from_dict({"name": name, "handler": handler, **options})
        )

    def overload(
        self,
        name: str,
        patterns: Iterable[PatternSpec],
        description: str = "No description",
        **options: Any,
    ) -> Command:
        """Register a command dispatched by argument shape.

        ``patterns`` are OverloadPatterns or ``(match, handler)`` tuples;
        the first one whose ``match(args)`` is truthy runs.
        """
        built = [p if isinstance(p, OverloadPattern) else OverloadPattern(*p) for p in patterns]
        return self.registry.register(
            Command.from_dict(
                {
                    "name": name,
                    "description": description,
                    "overload": True,
                    "overload_patterns": built,
                    **options,
                }
            )
        )

    def context_menu(
        self,
        name: str,
        menu_type: ContextMenuType,
        handler: Callable[..., Any],
        description: str = "No description",
    ) -> Command:
        return self.registry.register(
            Command(
                name=name,
                handler=handler,
                description=description,
                is_context_menu=True,
                context_menu_type=ContextMenuType(menu_type),
            )
        )

    def on(self, event_name: str, handler: EventHandler, once: bool = False) -> Subscription:
        return self.router.subscribe(event_name, handler, once=once)

    def on_any(self, fn: EventHandler) -> None:
        self.router.on_any(fn)

    def before_event(self, fn: EventHandler) -> None:
        """Event middleware; returning False vetoes the event."""
        self.router.before_event(fn)

    def add_inhibitor(self, fn: Callable[..., Any]) -> None:
        self.dispatcher.add_inhibitor(fn)

    def on_command_run(self, fn: Callable[..., Any]) -> None:
        self.dispatcher.on_command_run(fn)

    def on_command_error(self, fn: Callable[..., Any]) -> None:
        self.dispatcher.on_command_error(fn)

    def on_error(self, fn: Callable[..., Any]) -> None:
        """Generic error hook, ``fn(error, source, ctx)``.

        ``source`` is the failing Command for command errors and the
        event name for event handler errors.
        """
        self.dispatcher.on_error(fn)
        self.router.on_error(fn)

    def before_command(self, fn: Callable[..., Any]) -> None:
        """Called as ``fn(cmd, ctx)`` before every dispatch, for both trigger kinds."""
        self._before_command = fn

    def after_command(self, fn: Callable[..., Any]) -> None:
        self._after_command = fn

    # --- Per-guild state ---

    async def set_command_enabled(self, guild_id: str, command: str, enabled: bool) -> None:
        await self.overrides.set_enabled(guild_id, command, enabled)

    def is_command_enabled(self, guild_id: str, command: str) -> bool:
        return self.overrides.is_enabled(guild_id, command)

    async def get_prefix(self, guild_id: Optional[str]) -> str:
        if guild_id is None:
            return self.default_prefix
        prefix = await self.store.get(Scope.for_guild(guild_id), PREFIX_KEY)
        return prefix or self.default_prefix

    async def set_prefix(self, guild_id: str, prefix: str) -> None:
        """Change a guild's prefix at runtime and persist it."""
        await self.store.set(Scope.for_guild(guild_id), PREFIX_KEY, prefix)
        logger.info("prefix_changed", guild=guild_id, prefix=prefix)

    # --- Plugins ---

    async def use(self, plugin_cls: type):
        """Load a plugin class."""
        return await self.plugins.load(plugin_cls)

    # --- Inbound ---

    async def _run_command_hook(self, stage: str, fn: Optional[Callable[..., Any]], cmd: Command, ctx: Context) -> None:
        if fn is None:
            return
        try:
            await maybe_await(fn(cmd, ctx))
        except Exception as e:
            logger.warning("command_hook_failed", stage=stage, command=cmd.name, error=str(e))
            self._record_diagnostic(Diagnostic(stage=stage, source=cmd.name, error=e))

    async def _dispatch(self, cmd: Command, ctx: Context) -> DispatchResult:
        await self.overrides.ensure_loaded(ctx.guild_id)
        await self._run_command_hook("before_command", self._before_command, cmd, ctx)
        result = await self.dispatcher.dispatch(cmd, ctx)
        await self._run_command_hook("after_command", self._after_command, cmd, ctx)
        return result

    async def handle_message(self, trigger: TextTrigger) -> Optional[DispatchResult]:
        """Process one text trigger.

        Returns:
            The DispatchResult when a command ran through the pipeline,
            otherwise None (bot author, no prefix, unknown command, or a
            command of a disabled plugin).
        """
        if trigger.actor.is_bot:
            return None

        prefix = await self.get_prefix(trigger.origin.guild_id)
        ctx = normalize(trigger, prefix, router=self.router, bot=self)
        await self.router.emit(MESSAGE_EVENT, trigger, ctx=ctx)

        if not trigger.content.strip().startswith(prefix) or not ctx.command_name:
            return None
        # Exact token first, so mixed-case registrations stay reachable
        cmd = self.registry.resolve(ctx.command_name) or self.registry.resolve(
            ctx.command_name.lower()
        )
        if cmd is None:
            return None
        if cmd.plugin and not self.plugins.is_enabled(cmd.plugin):
            return None
        ctx.command_name = cmd.name
        return await self._dispatch(cmd, ctx)

    async def handle_interaction(self, trigger: InteractiveTrigger) -> Optional[DispatchResult]:
        """Process one interactive trigger. Returns None for unknown commands."""
        ctx = normalize(trigger, router=self.router, bot=self)
        await self.router.emit(INTERACTION_EVENT, trigger, ctx=ctx)
        cmd = self.registry.get(trigger.command_name)
        if cmd is None:
            logger.debug("interaction_unknown_command", command=trigger.command_name)
            return None
        return await self._dispatch(cmd, ctx)

    async def handle(self, trigger: Union[TextTrigger, InteractiveTrigger]) -> Optional[DispatchResult]:
        if trigger.kind == TriggerKind.INTERACTIVE:
            return await self.handle_interaction(trigger)
        return await self.handle_message(trigger)

    async def emit(self, event_name: str, *raw_args: Any) -> int:
        """Route any other platform event."""
        return await self.router.emit(event_name, *raw_args)

    # --- Hot reload ---

    def reload_commands(self, include_plugins: bool = False) -> List[Command]:
        commands = self.loader.reload_commands(include_plugins=include_plugins)
        logger.info("commands_reloaded", count=len(commands))
        return commands

    def reload_events(self) -> List[Subscription]:
        subscriptions = self.loader.reload_events()
        logger.info("events_reloaded", count=len(subscriptions))
        return subscriptions

    # --- Lifecycle ---

    async def start(self) -> None:
        """Load command and event sources, then directory plugins."""
        commands = self.loader.load_commands()
        subscriptions = self.loader.load_events()
        loaded = await self.plugins.load_all(self.plugin_loader.discover())
        self.running = True
        logger.info(
            "bot_started",
            commands=len(self.registry),
            loaded_from_disk=len(commands),
            events=len(subscriptions),
            plugins=loaded,
        )

    async def stop(self) -> None:
        """Unload plugins in reverse order and release resources."""
        self.running = False
        await self.plugins.unload_all()
        if isinstance(self.diagnostic_sink, WebhookSink):
            await self.diagnostic_sink.close()
        logger.info("bot_stopped")

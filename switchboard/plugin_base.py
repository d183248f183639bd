"""Plugin base class and the registrar plugins talk to."""

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from .commands.base import Command, CommandRegistry, OverloadPattern
from .context import maybe_await
from .events import EventHandler, EventRouter, Subscription
from .exceptions import PluginError
from .store import GLOBAL, KeyValueStore, Scope

if TYPE_CHECKING:
    from .plugin_manager import PluginManager


class PluginStorage:
    """Key/value view scoped to one plugin.

    Keys are namespaced as ``plugins.<name>.<key>`` inside the shared
    store, optionally under a guild.
    """

    def __init__(self, store: KeyValueStore, plugin_name: str):
        self._store = store
        self.plugin_name = plugin_name

    def _key(self, key: str) -> str:
        return f"plugins.{self.plugin_name}.{key}"

    async def get(self, key: str, default: Any = None) -> Any:
        return await self._store.get(GLOBAL, self._key(key), default)

    async def set(self, key: str, value: Any) -> None:
        await self._store.set(GLOBAL, self._key(key), value)

    async def delete(self, key: str) -> None:
        await self._store.delete(GLOBAL, self._key(key))

    async def has(self, key: str) -> bool:
        missing = object()
        return await self.get(key, missing) is not missing

    async def get_guild(self, guild_id: str, key: str, default: Any = None) -> Any:
        return await self._store.get(Scope.for_guild(guild_id), self._key(key), default)

    async def set_guild(self, guild_id: str, key: str, value: Any) -> None:
        await self._store.set(Scope.for_guild(guild_id), self._key(key), value)


class PluginContext:
    """Interface exposed to plugins for interacting with the bot.

    Plugins receive this as ``self.ctx``. Every command and event added
    through it is tagged with the plugin's name, so unload removes
    exactly what the plugin added.

    While the manager is loading the plugin, registrations are staged
    and only reach the registry and router when ``on_load`` succeeds.
    Afterwards they go live immediately.
    """

    def __init__(
        self,
        plugin_name: str,
        registry: CommandRegistry,
        router: EventRouter,
        manager: "PluginManager",
        store: KeyValueStore,
        settings: Optional[dict] = None,
        send_message: Optional[Callable[[str, Any], Awaitable[Any]]] = None,
        bot: Any = None,
    ):
        self.plugin_name = plugin_name
        self.bot = bot
        self._registry = registry
        self._router = router
        self._manager = manager
        self._store = store
        self._send_message = send_message
        # Only the plugin's own section, not the full settings
        self._settings = dict(settings or {})
        self.logger = structlog.get_logger("switchboard.plugins").bind(plugin=plugin_name)

        self._staging = False
        self._staged_commands: List[Command] = []
        self._staged_events: List[Subscription] = []
        self._hooks: Dict[str, Callable[..., Any]] = {}
        self._intervals: List["asyncio.Task"] = []

    # --- Staging (driven by the manager) ---

    def begin_staging(self) -> None:
        self._staging = True
        self._staged_commands = []
        self._staged_events = []

    def end_staging(self) -> Tuple[List[Command], List[Subscription]]:
        """Stop staging and hand back everything staged."""
        staged = (self._staged_commands, self._staged_events)
        self._staging = False
        self._staged_commands = []
        self._staged_events = []
        return staged

    @property
    def staging(self) -> bool:
        return self._staging

    # --- Registration ---

    def add_command(
        self,
        name_or_command: Any,
        handler: Optional[Callable[..., Any]] = None,
        **options: Any,
    ) -> Command:
        """Register a command owned by this plugin.

        Accepts a Command, a definition dict, or a name plus handler and
        Command field keywords.
        """
        if isinstance(name_or_command, Command):
            command = name_or_command
        elif isinstance(name_or_command, dict):
            command = Command.from_dict(name_or_command)
        else:
            command = Command.from_dict({"name": name_or_command, "handler": handler, **options})
        command = command.tagged(self.plugin_name)
        if self._staging:
            self._staged_commands.append(command)
        else:
            self._registry.register(command)
        return command

    def add_overload(self, name: str, patterns: List[OverloadPattern], **options: Any) -> Command:
        """Register an overloaded command; the first matching pattern wins."""
        return self.add_command(
            Command.from_dict(
                {"name": name, "overload": True, "overload_patterns": list(patterns), **options}
            )
        )

    def add_event(self, event_name: str, handler: EventHandler, once: bool = False) -> Subscription:
        """Subscribe ``handler`` to ``event_name`` on behalf of this plugin."""
        subscription = Subscription(event_name, handler, once=once, owner=self.plugin_name)
        if self._staging:
            self._staged_events.append(subscription)
        else:
            self._router.add(subscription)
        return subscription

    # --- Hooks ---

    def add_hook(self, name: str, fn: Callable[..., Any]) -> Callable[..., Any]:
        """Expose ``fn`` to other plugins under ``name``."""
        self._hooks[name] = fn
        return fn

    def get_hook(self, name: str) -> Optional[Callable[..., Any]]:
        return self._hooks.get(name)

    async def call_hook(self, plugin_name: str, hook_name: str, *args: Any) -> Any:
        """Call a hook another plugin registered.

        Raises:
            PluginError: Plugin not loaded or hook not found.
        """
        other = self._manager.context(plugin_name)
        if other is None:
            raise PluginError(f"Plugin {plugin_name} not found", plugin=plugin_name)
        hook = other.get_hook(hook_name)
        if hook is None:
            raise PluginError(
                f"Hook {hook_name} not found in plugin {plugin_name}",
                plugin=plugin_name,
                hook=hook_name,
            )
        return await maybe_await(hook(*args))

    # --- Scheduling ---

    def add_interval(self, callback: Callable[[], Any], seconds: float) -> "asyncio.Task":
        """Run ``callback`` every ``seconds`` until the plugin is torn down.

        Callback errors are logged and the schedule continues.
        """

        async def _loop() -> None:
            while True:
                await asyncio.sleep(seconds)
                try:
                    await maybe_await(callback())
                except Exception as e:
                    self.logger.error("plugin_interval_failed", error=str(e))

        task = asyncio.get_running_loop().create_task(_loop())
        self._intervals.append(task)
        return task

    @property
    def intervals(self) -> List["asyncio.Task"]:
        return [t for t in self._intervals if not t.done()]

    # --- Configuration and storage ---

    def get_config(self, key: str, default: Any = None) -> Any:
        """Read a config value.

        The persisted blob wins over ``plugins.<name>.<key>`` in
        settings.yaml.
        """
        record = self._manager.record(self.plugin_name)
        if key in record.settings:
            return record.settings[key]
        return self._settings.get(key, default)

    async def set_config(self, key: str, value: Any) -> None:
        """Persist a config value for this plugin."""
        record = self._manager.record(self.plugin_name)
        record.settings[key] = value
        await self._manager.save_record(self.plugin_name)

    def storage(self) -> PluginStorage:
        return PluginStorage(self._store, self.plugin_name)

    async def send_message(self, channel_id: str, content: Any) -> Any:
        """Send a message to a channel through the host transport."""
        if self._send_message is None:
            raise PluginError("No transport available for send_message", plugin=self.plugin_name)
        return await self._send_message(channel_id, content)

    # --- Teardown ---

    async def close(self) -> None:
        """Cancel intervals and drop hooks. Registrations are removed by the manager."""
        tasks = [t for t in self._intervals if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._intervals.clear()
        self._hooks.clear()
        self._staged_commands = []
        self._staged_events = []
        self._staging = False


class SwitchboardPlugin:
    """Base class for all switchboard plugins.

    Subclass this, set the metadata, and register commands and events
    from on_load() through ``self.ctx``. Place directory plugins in
    plugins/<name>/plugin.py.
    """

    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    author: str = "Unknown"
    dependencies: List[str] = []

    def __init__(self, ctx: Optional[PluginContext] = None):
        self.ctx = ctx

    async def on_load(self) -> None:
        """Called while loading. Register commands, events and hooks here."""
        pass

    async def on_unload(self) -> None:
        """Called before the plugin's registrations are removed."""
        pass

    async def on_enable(self) -> None:
        pass

    async def on_disable(self) -> None:
        pass

    @property
    def logger(self):
        return self.ctx.logger if self.ctx else structlog.get_logger("switchboard.plugins")

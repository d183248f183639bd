"""Plugin lifecycle management.

The manager owns the plugin map and drives every transition:

    load     UNLOADED -> LOADING -> LOADED (enabled unless persisted otherwise)
    unload   LOADED -> UNLOADING -> removed from the map
    reload   new instance staged while the old one keeps serving, then swapped
    enable / disable   flag on a LOADED plugin; commands stay registered

Registrations made during ``on_load`` are staged on the PluginContext
and committed to the registry and router in one synchronous step after
``on_load`` returns, so a failed load or reload leaves nothing behind.
Lifecycle errors are raised to the caller.
"""

import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import structlog

from .commands.base import CommandRegistry
from .events import EventRouter
from .exceptions import (
    PluginDependencyError,
    PluginError,
    PluginLoadError,
    PluginStateError,
    RegistrationError,
)
from .models import PluginInfo, PluginRecord, PluginState
from .plugin_base import PluginContext, SwitchboardPlugin
from .store import GLOBAL, KeyValueStore, MemoryStore

logger = structlog.get_logger("switchboard.plugins")

PluginSource = Union[SwitchboardPlugin, type]


@dataclass
class _Entry:
    plugin: SwitchboardPlugin
    ctx: PluginContext
    state: PluginState = PluginState.UNLOADED
    enabled: bool = True


def plugin_name_of(source: PluginSource) -> str:
    """Name a plugin class or instance declares, falling back to the class name."""
    cls = source if isinstance(source, type) else type(source)
    name = getattr(source, "name", "") or cls.__name__
    return str(name)


def _record_key(name: str) -> str:
    return f"plugin:{name}"


class PluginManager:
    """Loads, unloads, enables and reloads plugins.

    Args:
        registry: Command registry plugins register into.
        router: Event router plugins subscribe to.
        store: Persistence collaborator for plugin records.
        plugin_settings: Static ``plugins.<name>`` sections from settings.
        send_message: Host transport handed to every PluginContext.
        bot: Host object exposed to plugins as ``ctx.bot``.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        router: EventRouter,
        store: Optional[KeyValueStore] = None,
        plugin_settings: Optional[Dict[str, dict]] = None,
        send_message: Optional[Callable[..., Any]] = None,
        bot: Any = None,
    ):
        self.registry = registry
        self.router = router
        self.store = store or MemoryStore()
        self._plugin_settings = dict(plugin_settings or {})
        self._send_message = send_message
        self._bot = bot
        self._plugins: Dict[str, _Entry] = {}
        self._records: Dict[str, PluginRecord] = {}

    # --- Queries ---

    def get(self, name: str) -> Optional[SwitchboardPlugin]:
        entry = self._plugins.get(name)
        return entry.plugin if entry else None

    def context(self, name: str) -> Optional[PluginContext]:
        entry = self._plugins.get(name)
        return entry.ctx if entry else None

    def state(self, name: str) -> PluginState:
        entry = self._plugins.get(name)
        return entry.state if entry else PluginState.UNLOADED

    def is_loaded(self, name: str) -> bool:
        return self.state(name) == PluginState.LOADED

    def is_enabled(self, name: str) -> bool:
        """True only for a LOADED plugin whose enabled flag is set."""
        entry = self._plugins.get(name)
        return entry is not None and entry.state == PluginState.LOADED and entry.enabled

    def list(self) -> List[PluginInfo]:
        """Name, version and enablement of every known plugin."""
        return [
            PluginInfo(
                name=name,
                version=str(entry.plugin.version),
                enabled=entry.enabled,
                description=entry.plugin.description or "",
                state=entry.state,
            )
            for name, entry in self._plugins.items()
        ]

    def dependents_of(self, name: str) -> List[str]:
        """Loaded plugins that declare ``name`` as a dependency."""
        return [
            other
            for other, entry in self._plugins.items()
            if other != name
            and entry.state == PluginState.LOADED
            and name in (entry.plugin.dependencies or [])
        ]

    # --- Records ---

    def record(self, name: str) -> PluginRecord:
        """Cached persisted record of ``name`` (created on first access)."""
        record = self._records.get(name)
        if record is None:
            record = PluginRecord()
            self._records[name] = record
        return record

    async def load_record(self, name: str) -> PluginRecord:
        data = await self.store.get(GLOBAL, _record_key(name))
        record = PluginRecord.model_validate(data) if data else PluginRecord()
        self._records[name] = record
        return record

    async def save_record(self, name: str) -> None:
        await self.store.set(GLOBAL, _record_key(name), self.record(name).model_dump(mode="json"))

    # --- Construction ---

    def _new_context(self, name: str) -> PluginContext:
        return PluginContext(
            plugin_name=name,
            registry=self.registry,
            router=self.router,
            manager=self,
            store=self.store,
            settings=self._plugin_settings.get(name, {}),
            send_message=self._send_message,
            bot=self._bot,
        )

    def _instantiate(self, source: PluginSource, name: str) -> SwitchboardPlugin:
        ctx = self._new_context(name)
        if isinstance(source, type):
            if not issubclass(source, SwitchboardPlugin):
                raise PluginLoadError(
                    f"{source.__name__} is not a SwitchboardPlugin subclass", plugin=name
                )
            plugin = source(ctx)
        else:
            plugin = source
        plugin.ctx = ctx
        if not plugin.version:
            raise PluginLoadError(f"Plugin {name} is missing a version", plugin=name)
        return plugin

    async def _stage(self, name: str, plugin: SwitchboardPlugin):
        """Run ``on_load`` with registrations staged. Returns (commands, subscriptions)."""
        ctx = plugin.ctx
        ctx.begin_staging()
        try:
            await plugin.on_load()
        except Exception as e:
            await ctx.close()
            logger.error("plugin_on_load_failed", plugin=name, error=str(e), error_type=type(e).__name__)
            raise PluginLoadError(f"Plugin {name} failed to load: {e}", plugin=name) from e
        return ctx.end_staging()

    # --- Transitions ---

    async def load(self, source: PluginSource) -> SwitchboardPlugin:
        """Load a plugin class (or instance).

        Raises:
            PluginStateError: A plugin with this name is already known.
            PluginDependencyError: A declared dependency is not loaded.
                Nothing is registered.
            PluginLoadError: ``on_load`` raised or a staged command
                collided with the registry. Nothing is registered.
            StorageError: The plugin record could not be persisted.
                Nothing is registered.
        """
        name = plugin_name_of(source)
        if name in self._plugins:
            raise PluginStateError(
                f"Plugin {name} is already {self._plugins[name].state.value}", plugin=name
            )
        dependencies = list(getattr(source, "dependencies", None) or [])
        missing = [dep for dep in dependencies if not self.is_loaded(dep)]
        if missing:
            logger.error("plugin_dependency_missing", plugin=name, missing=missing)
            raise PluginDependencyError(
                f"Plugin {name} requires {', '.join(missing)} which is not loaded",
                plugin=name,
                missing=missing,
            )

        plugin = self._instantiate(source, name)
        record = await self.load_record(name)
        entry = _Entry(plugin=plugin, ctx=plugin.ctx, state=PluginState.LOADING, enabled=record.enabled)
        self._plugins[name] = entry
        try:
            commands, subscriptions = await self._stage(name, plugin)
            # Persist before committing so a store failure leaves nothing registered
            record.loaded_at = datetime.now()
            await self.save_record(name)
            try:
                self.registry.swap([], commands)
            except RegistrationError as e:
                raise PluginLoadError(
                    f"Plugin {name} failed to register: {e.message}", plugin=name
                ) from e
            self.router.swap_owner(name, subscriptions)
        except BaseException:
            # Also covers cancellation while on_load is pending
            await entry.ctx.close()
            del self._plugins[name]
            raise

        entry.state = PluginState.LOADED
        logger.info(
            "plugin_loaded",
            plugin=name,
            version=plugin.version,
            enabled=entry.enabled,
            commands=[c.name for c in commands],
            events=[s.event for s in subscriptions],
        )
        return plugin

    async def _teardown(self, name: str, entry: _Entry) -> None:
        self.registry.clear(plugin=name)
        self.router.unsubscribe_owner(name)
        await entry.ctx.close()

    async def unload(self, name: str, force: bool = False) -> None:
        """Unload a plugin and remove everything it registered.

        Args:
            force: Skip the loaded-dependents check.

        Raises:
            PluginStateError: The plugin is not loaded.
            PluginDependencyError: Loaded plugins depend on it.
            PluginLoadError: ``on_unload`` raised. Teardown still completed.
            StorageError: The plugin record could not be persisted.
                Teardown still completed.
        """
        entry = self._plugins.get(name)
        if entry is None or entry.state != PluginState.LOADED:
            raise PluginStateError(f"Plugin {name} is not loaded", plugin=name)
        dependents = self.dependents_of(name)
        if dependents and not force:
            raise PluginDependencyError(
                f"Cannot unload {name}: {', '.join(dependents)} depends on it",
                plugin=name,
                dependents=dependents,
            )

        entry.state = PluginState.UNLOADING
        error: Optional[Exception] = None
        try:
            await entry.plugin.on_unload()
        except Exception as e:
            error = e
            logger.error("plugin_on_unload_failed", plugin=name, error=str(e))
        finally:
            await self._teardown(name, entry)
            entry.state = PluginState.UNLOADED
            del self._plugins[name]

        self.record(name).unloaded_at = datetime.now()
        await self.save_record(name)
        logger.info("plugin_unloaded", plugin=name, forced=bool(force and dependents))
        if error is not None:
            raise PluginLoadError(f"Plugin {name} failed to unload cleanly: {error}", plugin=name) from error

    async def reload(self, name: str) -> SwitchboardPlugin:
        """Replace a loaded plugin with a fresh instance of its class.

        The new instance loads into a staging area while the old one
        keeps serving. Only when ``on_load`` succeeds are the old
        registrations swapped for the new ones, in one step. An
        ``on_unload`` failure of the old instance is logged; the swap
        has already happened by then.

        Raises:
            PluginStateError: The plugin is not loaded.
            PluginDependencyError: A dependency is no longer loaded.
            PluginLoadError: The new instance failed; the old one is
                untouched and still serving.
            StorageError: The plugin record could not be persisted; the
                old instance is still serving.
        """
        old = self._plugins.get(name)
        if old is None or old.state != PluginState.LOADED:
            raise PluginStateError(f"Plugin {name} is not loaded", plugin=name)
        plugin_cls = type(old.plugin)
        missing = [dep for dep in (plugin_cls.dependencies or []) if not self.is_loaded(dep)]
        if missing:
            raise PluginDependencyError(
                f"Plugin {name} requires {', '.join(missing)} which is not loaded",
                plugin=name,
                missing=missing,
            )

        plugin = self._instantiate(plugin_cls, name)
        try:
            commands, subscriptions = await self._stage(name, plugin)
            self.record(name).loaded_at = datetime.now()
            await self.save_record(name)
            old_commands = [c.name for c in self.registry.by_plugin(name)]
            try:
                self.registry.swap(old_commands, commands)
            except RegistrationError as e:
                raise PluginLoadError(
                    f"Plugin {name} failed to register: {e.message}", plugin=name
                ) from e
        except BaseException:
            await plugin.ctx.close()
            raise
        self.router.swap_owner(name, subscriptions)
        self._plugins[name] = _Entry(
            plugin=plugin, ctx=plugin.ctx, state=PluginState.LOADED, enabled=old.enabled
        )

        try:
            await old.plugin.on_unload()
        except Exception as e:
            logger.error("plugin_reload_old_unload_failed", plugin=name, error=str(e))
        await old.ctx.close()

        logger.info("plugin_reloaded", plugin=name, version=plugin.version)
        return plugin

    async def enable(self, name: str) -> None:
        """Re-activate a disabled plugin's commands and events.

        Raises:
            PluginStateError: The plugin is not loaded.
            PluginError: ``on_enable`` raised; the plugin stays disabled.
        """
        await self._set_enabled(name, True)

    async def disable(self, name: str) -> None:
        """Make a plugin's commands and events behave as if unregistered.

        Raises:
            PluginStateError: The plugin is not loaded.
            PluginError: ``on_disable`` raised; the plugin stays enabled.
        """
        await self._set_enabled(name, False)

    async def _set_enabled(self, name: str, enabled: bool) -> None:
        entry = self._plugins.get(name)
        if entry is None or entry.state != PluginState.LOADED:
            raise PluginStateError(f"Plugin {name} is not loaded", plugin=name)
        if entry.enabled == enabled:
            return
        hook = entry.plugin.on_enable if enabled else entry.plugin.on_disable
        try:
            await hook()
        except Exception as e:
            action = "enable" if enabled else "disable"
            logger.error("plugin_toggle_failed", plugin=name, action=action, error=str(e))
            raise PluginError(f"Plugin {name} failed to {action}: {e}", plugin=name) from e
        record = self.record(name)
        record.enabled = enabled
        try:
            await self.save_record(name)
        except Exception:
            record.enabled = entry.enabled
            raise
        entry.enabled = enabled
        logger.info("plugin_enabled" if enabled else "plugin_disabled", plugin=name)

    # --- Bulk operations ---

    def resolve_order(self, sources: Iterable[PluginSource]) -> List[PluginSource]:
        """Order plugins so each comes after its dependencies.

        Dependencies may be satisfied by already-loaded plugins.

        Raises:
            PluginDependencyError: Missing dependency or dependency cycle.
        """
        by_name: Dict[str, PluginSource] = {}
        for source in sources:
            by_name[plugin_name_of(source)] = source

        ordered: List[PluginSource] = []
        visiting: List[str] = []
        done = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name):] + [name]
                raise PluginDependencyError(
                    f"Dependency cycle: {' -> '.join(cycle)}", plugin=name
                )
            visiting.append(name)
            for dep in getattr(by_name[name], "dependencies", None) or []:
                if dep in by_name:
                    visit(dep)
                elif not self.is_loaded(dep):
                    raise PluginDependencyError(
                        f"Plugin {name} requires {dep} which is not available",
                        plugin=name,
                        missing=[dep],
                    )
            visiting.pop()
            done.add(name)
            ordered.append(by_name[name])

        for name in by_name:
            visit(name)
        return ordered

    async def load_all(self, sources: Iterable[PluginSource]) -> List[str]:
        """Load plugins in dependency order.

        Individual load failures are logged and skipped; plugins that
        depend on a failed one then fail their own dependency check.

        Returns:
            Names of the plugins that loaded.

        Raises:
            PluginDependencyError: The set as a whole cannot be ordered.
        """
        loaded: List[str] = []
        for source in self.resolve_order(sources):
            name = plugin_name_of(source)
            try:
                await self.load(source)
                loaded.append(name)
            except PluginError as e:
                logger.error("plugin_load_all_skipped", plugin=name, error=str(e))
        logger.info("plugins_loaded", count=len(loaded), plugins=loaded)
        return loaded

    async def unload_all(self) -> None:
        """Unload every plugin in reverse load order, logging failures."""
        for name in reversed(list(self._plugins)):
            if not self.is_loaded(name):
                continue
            try:
                await self.unload(name, force=True)
            except PluginError as e:
                logger.error("plugin_stop_failed", plugin=name, error=str(e))


def is_plugin_class(obj: Any) -> bool:
    """True for concrete SwitchboardPlugin subclasses."""
    return (
        inspect.isclass(obj)
        and issubclass(obj, SwitchboardPlugin)
        and obj is not SwitchboardPlugin
    )

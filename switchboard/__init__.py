"""switchboard: command and event dispatch for chat bots.

Turns text and interactive triggers into a unified Context, runs
commands through a guard pipeline (enablement, inhibitors, overloads,
origin/permission guards, cooldowns), routes named events, and manages
plugins with an atomic load/unload/reload lifecycle.
"""

__version__ = "1.0.0"

from .bot import Bot
from .commands import (
    Command,
    CommandDispatcher,
    CommandGroup,
    CommandRegistry,
    DispatchResult,
    GuildOverrideTable,
    Notices,
    OverloadPattern,
    Outcome,
)
from .config import Config
from .context import Context, EventContext, normalize
from .diagnostics import Diagnostic
from .cooldown import CooldownLedger, parse_duration
from .events import EventRouter, Subscription
from .exceptions import (
    PluginDependencyError,
    PluginError,
    PluginLoadError,
    PluginStateError,
    RegistrationError,
    SwitchboardError,
)
from .models import PluginInfo, PluginRecord, PluginState
from .plugin_base import PluginContext, SwitchboardPlugin
from .plugin_manager import PluginManager
from .store import JsonFileStore, KeyValueStore, MemoryStore, Scope
from .triggers import (
    Actor,
    ContextMenuType,
    InteractiveTrigger,
    Option,
    OptionType,
    Origin,
    Responder,
    TextTrigger,
    TriggerKind,
)

__all__ = [
    "Actor",
    "Bot",
    "Command",
    "CommandDispatcher",
    "CommandGroup",
    "CommandRegistry",
    "Config",
    "Context",
    "ContextMenuType",
    "CooldownLedger",
    "Diagnostic",
    "DispatchResult",
    "EventContext",
    "EventRouter",
    "GuildOverrideTable",
    "InteractiveTrigger",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "Notices",
    "Option",
    "OptionType",
    "Origin",
    "Outcome",
    "OverloadPattern",
    "PluginContext",
    "PluginDependencyError",
    "PluginError",
    "PluginInfo",
    "PluginLoadError",
    "PluginManager",
    "PluginRecord",
    "PluginState",
    "PluginStateError",
    "RegistrationError",
    "Responder",
    "Scope",
    "Subscription",
    "SwitchboardError",
    "SwitchboardPlugin",
    "TextTrigger",
    "TriggerKind",
    "normalize",
    "parse_duration",
]

"""Command framework for switchboard.

Provides the Command definition, the CommandRegistry for name and alias
lookup, the per-guild override table, and the CommandDispatcher guard
pipeline.
"""

from .base import Command, CommandGroup, CommandRegistry, OverloadPattern
from .dispatcher import CommandDispatcher, DispatchResult, Notices, Outcome
from .overrides import GuildOverrideTable

__all__ = [
    "Command",
    "CommandDispatcher",
    "CommandGroup",
    "CommandRegistry",
    "DispatchResult",
    "GuildOverrideTable",
    "Notices",
    "OverloadPattern",
    "Outcome",
]

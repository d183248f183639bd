"""Pydantic models for plugin bookkeeping.

Domain models:
    PluginRecord (persisted per plugin), PluginInfo (list() view)

Enums:
    PluginState
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PluginState(str, Enum):
    """Lifecycle state of a plugin.

    Flow: UNLOADED -> LOADING -> LOADED -> UNLOADING -> UNLOADED.
    A failed load goes LOADING -> UNLOADED. Enablement is a separate
    flag on a LOADED plugin.
    """
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    UNLOADING = "unloading"


class PluginRecord(BaseModel):
    """Persisted configuration blob of one plugin.

    Stored through the persistence collaborator under the global scope,
    keyed by plugin name. ``settings`` holds the plugin's own keys.
    """
    enabled: bool = True
    loaded_at: Optional[datetime] = None
    unloaded_at: Optional[datetime] = None
    settings: Dict[str, Any] = Field(default_factory=dict)


class PluginInfo(BaseModel):
    """Public view of a known plugin. Exposes no registration sets."""
    name: str = Field(..., description="Unique plugin name")
    version: str = Field(default="0.0.0")
    enabled: bool = True
    description: str = ""
    state: PluginState = PluginState.UNLOADED

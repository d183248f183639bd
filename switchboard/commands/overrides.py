"""Per-guild command enable/disable table.

guild id → command name → enabled flag. A missing entry means enabled.
Reads are synchronous against an in-memory cache so the dispatcher's
enablement stage never suspends; writes go through to the store.
"""

from typing import Dict, Optional, Set

import structlog

from ..store import KeyValueStore, Scope

logger = structlog.get_logger("switchboard.dispatch")

STORE_KEY = "command_overrides"


class GuildOverrideTable:
    """Per-guild command enablement, default-allow.

    Args:
        store: Persistence collaborator. When None the table is
            memory-only.
    """

    def __init__(self, store: Optional[KeyValueStore] = None):
        self._store = store
        self._table: Dict[str, Dict[str, bool]] = {}
        self._loaded: Set[str] = set()

    async def load(self, guild_id: str) -> Dict[str, bool]:
        """Warm the cache for a guild from the store."""
        if self._store is None:
            return dict(self._table.get(guild_id, {}))
        stored = await self._store.get(Scope.for_guild(guild_id), STORE_KEY, {}) or {}
        entries = {str(k): bool(v) for k, v in stored.items()}
        self._table[guild_id] = entries
        self._loaded.add(guild_id)
        return dict(entries)

    async def set_enabled(self, guild_id: str, command: str, enabled: bool) -> None:
        """Enable or disable ``command`` in ``guild_id`` and persist it."""
        await self.ensure_loaded(guild_id)
        entries = self._table.setdefault(guild_id, {})
        entries[command] = bool(enabled)
        if self._store is not None:
            await self._store.set(Scope.for_guild(guild_id), STORE_KEY, dict(entries))
        logger.info(
            "command_override_set", guild=guild_id, command=command, enabled=bool(enabled)
        )

    def is_enabled(self, guild_id: Optional[str], command: str) -> bool:
        """False only when the guild explicitly disabled the command."""
        if guild_id is None:
            return True
        return self._table.get(guild_id, {}).get(command) is not False

    def overrides(self, guild_id: str) -> Dict[str, bool]:
        return dict(self._table.get(guild_id, {}))

    async def ensure_loaded(self, guild_id: Optional[str]) -> None:
        """Load a guild's overrides from the store once."""
        if guild_id is None or self._store is None or guild_id in self._loaded:
            return
        await self.load(guild_id)

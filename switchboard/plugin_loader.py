"""Plugin discovery and installation for directory plugins.

A directory plugin lives in ``<plugins_dir>/<name>/plugin.py`` and
defines one SwitchboardPlugin subclass. Discovery only imports; loading
is the PluginManager's job.
"""

import importlib.util
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

import structlog

from .exceptions import PluginError, PluginLoadError
from .plugin_manager import is_plugin_class

if TYPE_CHECKING:
    from .plugin_manager import PluginManager

logger = structlog.get_logger("switchboard.plugins")

PLUGIN_FILE = "plugin.py"


class PluginLoader:
    """Discovers plugin classes on disk and manages plugin directories.

    Args:
        plugins_dir: Directory holding one sub-directory per plugin.
        allowlist: If set, only these plugin directories are imported.
        plugin_settings: Static ``plugins.<name>`` sections; a section
            with ``enabled: false`` skips the plugin.
    """

    def __init__(
        self,
        plugins_dir: Path,
        allowlist: Optional[List[str]] = None,
        plugin_settings: Optional[Dict[str, dict]] = None,
    ):
        self.plugins_dir = Path(plugins_dir)
        self.allowlist = allowlist
        self._plugin_settings = plugin_settings or {}

    def available(self) -> List[str]:
        """Names of plugin directories containing a plugin.py."""
        if not self.plugins_dir.is_dir():
            return []
        return sorted(
            d.name
            for d in self.plugins_dir.iterdir()
            if d.is_dir() and (d / PLUGIN_FILE).is_file()
        )

    def discover(self) -> List[type]:
        """Import every allowed plugin directory and return its plugin class.

        Directories that fail to import or define no plugin class are
        logged and skipped.
        """
        if not self.plugins_dir.is_dir():
            logger.info("plugin_loader_no_dir", path=str(self.plugins_dir))
            return []

        found: List[type] = []
        for plugin_name in self.available():
            if self.allowlist is not None and plugin_name not in self.allowlist:
                logger.warning(
                    "plugin_blocked_not_in_allowlist",
                    plugin=plugin_name,
                    allowlist=self.allowlist,
                )
                continue
            section = self._plugin_settings.get(plugin_name, {})
            if section.get("enabled") is False:
                logger.info("plugin_skipped_disabled", plugin=plugin_name)
                continue
            try:
                found.append(self.import_plugin(plugin_name))
            except PluginLoadError as e:
                logger.error(
                    "plugin_import_failed",
                    plugin=plugin_name,
                    error=str(e),
                    error_type=type(e.__cause__ or e).__name__,
                )

        logger.info("plugin_discovery_complete", plugins=[cls.__name__ for cls in found])
        return found

    def import_plugin(self, plugin_name: str) -> type:
        """Import ``<plugins_dir>/<plugin_name>/plugin.py`` and return its plugin class.

        Each call re-executes the file, so edits on disk are picked up.

        Raises:
            PluginLoadError: Missing file, import failure, or no plugin class.
        """
        plugin_file = self.plugins_dir / plugin_name / PLUGIN_FILE
        if not plugin_file.is_file():
            raise PluginLoadError(
                f"Plugin {plugin_name} does not have a {PLUGIN_FILE} file", plugin=plugin_name
            )

        module_name = f"switchboard_plugins.{plugin_name}"
        spec = importlib.util.spec_from_file_location(module_name, plugin_file)
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginLoadError(
                f"Plugin {plugin_name} failed to import: {e}", plugin=plugin_name
            ) from e

        for attr in module.__dict__.values():
            # Only classes defined in this file, not imported bases
            if is_plugin_class(attr) and attr.__module__ == module_name:
                return attr
        raise PluginLoadError(f"Plugin {plugin_name} defines no plugin class", plugin=plugin_name)

    def install(self, source: Path, plugin_name: str) -> Path:
        """Copy a plugin directory into plugins_dir.

        Raises:
            PluginError: Target exists or source is missing.
        """
        source = Path(source)
        target = self.plugins_dir / plugin_name
        if target.exists():
            raise PluginError(f"Plugin {plugin_name} already exists", plugin=plugin_name)
        if not source.is_dir():
            raise PluginError(f"Source {source} does not exist", plugin=plugin_name)
        self.plugins_dir.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, target)
        logger.info("plugin_installed", plugin=plugin_name, source=str(source))
        return target

    async def uninstall(self, plugin_name: str, manager: Optional["PluginManager"] = None) -> None:
        """Unload (if a manager has it loaded) and delete a plugin directory.

        Raises:
            PluginError: The plugin is not installed, or unloading failed.
        """
        target = self.plugins_dir / plugin_name
        if not target.is_dir():
            raise PluginError(f"Plugin {plugin_name} is not installed", plugin=plugin_name)
        if manager is not None:
            loaded_name = self._loaded_name(plugin_name, manager)
            if loaded_name is not None:
                await manager.unload(loaded_name)
        shutil.rmtree(target)
        sys.modules.pop(f"switchboard_plugins.{plugin_name}", None)
        logger.info("plugin_uninstalled", plugin=plugin_name)

    @staticmethod
    def _loaded_name(directory: str, manager: "PluginManager") -> Optional[str]:
        """Manager name of the plugin imported from ``directory``, if loaded."""
        module_name = f"switchboard_plugins.{directory}"
        for info in manager.list():
            plugin = manager.get(info.name)
            if plugin is not None and type(plugin).__module__ == module_name:
                return info.name
        return None

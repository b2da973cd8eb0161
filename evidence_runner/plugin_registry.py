# evidence_runner/plugin_registry.py
"""
Plugin Registry

Auto-discovers and registers:
- Executors from executors/
- Failure analyzers from failure_analyzers/
- Technical debt detectors from debt_detectors/
- Validators from validators/
- Reporters from reporters/

Built-in plugins ship as subpackages of evidence_runner; extra plugin roots
(config `plugin_dirs` or --plugin-dir) hold the same sub-directories. Files
starting with "_" are private and never loaded. A plugin that fails to
import or to satisfy its interface is logged and skipped; registry
construction itself always completes.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import inspect
import logging
import sys
from collections import OrderedDict
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, Union

from evidence_runner.plugins import (
    BaseExecutor,
    BaseFailureAnalyzer,
    BaseReporter,
    BaseTechnicalDebtDetector,
    BaseValidator,
    missing_members,
)
from evidence_runner.types import PluginLoadError

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parent

# kind directory -> base class
PLUGIN_KINDS: "OrderedDict[str, Type]" = OrderedDict([
    ("executors", BaseExecutor),
    ("failure_analyzers", BaseFailureAnalyzer),
    ("debt_detectors", BaseTechnicalDebtDetector),
    ("validators", BaseValidator),
    ("reporters", BaseReporter),
])

# Directory spellings accepted in external plugin roots
_KIND_ALIASES = {
    "executors": ("executors",),
    "failure_analyzers": ("failure_analyzers", "failure-analyzers"),
    "debt_detectors": ("debt_detectors", "technical-debt-detectors", "technical_debt_detectors"),
    "validators": ("validators",),
    "reporters": ("reporters",),
}


def _by_priority(plugins: Iterable[Any]) -> List[Any]:
    """Descending priority; registration order breaks ties"""
    return sorted(plugins, key=lambda p: -float(getattr(p, "priority", 0)))


class PluginRegistry:
    """Discovers, validates and indexes plugins"""

    def __init__(self, plugin_dirs: Optional[Sequence[Union[str, Path]]] = None, include_builtin: bool = True):
        self.plugin_dirs = [Path(p) for p in (plugin_dirs or [])]
        self.include_builtin = include_builtin

        self._executors: "OrderedDict[str, List[BaseExecutor]]" = OrderedDict()
        self._executor_instances: List[BaseExecutor] = []
        self._failure_analyzers: List[BaseFailureAnalyzer] = []
        self._debt_detectors: List[BaseTechnicalDebtDetector] = []
        self._validators: "OrderedDict[str, BaseValidator]" = OrderedDict()
        self._reporters: List[BaseReporter] = []
        self.load_errors: List[PluginLoadError] = []

    # ==================== Discovery ====================

    def load_all(self) -> "PluginRegistry":
        logger.info("🔌 Loading plugins...")

        for kind, base in PLUGIN_KINDS.items():
            if self.include_builtin:
                for path in self._plugin_files(PACKAGE_ROOT / kind):
                    self._load_file(path, kind, base, module_name=f"evidence_runner.{kind}.{path.stem}")

            for root in self.plugin_dirs:
                for kind_dir in self._external_dirs(root, kind):
                    for path in self._plugin_files(kind_dir):
                        self._load_file(path, kind, base, module_name=None)

        counts = self.counts()
        logger.info(
            f"✅ Loaded {counts['executors']} executors, {counts['failure_analyzers']} failure analyzers, "
            f"{counts['debt_detectors']} debt detectors, {counts['validators']} validators, "
            f"{counts['reporters']} reporters"
        )
        if self.load_errors:
            logger.warning(f"⚠️ {len(self.load_errors)} plugin(s) skipped")
        return self

    @staticmethod
    def _plugin_files(directory: Path) -> List[Path]:
        if not directory.is_dir():
            return []
        return sorted(
            p for p in directory.iterdir()
            if p.suffix == ".py" and p.is_file() and not p.name.startswith("_")
        )

    @staticmethod
    def _external_dirs(root: Path, kind: str) -> List[Path]:
        if not root.is_dir():
            logger.warning(f"⚠️ Plugin directory not found: {root}")
            return []
        return [root / alias for alias in _KIND_ALIASES[kind] if (root / alias).is_dir()]

    def _load_file(self, path: Path, kind: str, base: Type, module_name: Optional[str]) -> None:
        try:
            module = self._import(path, kind, module_name)
            classes = self._plugin_classes(module, base)
            if not classes:
                raise PluginLoadError(str(path), f"no {base.__name__} subclass defined")
            for cls in classes:
                instance = cls()
                problems = missing_members(instance, base)
                if problems:
                    raise PluginLoadError(str(path), f"{cls.__name__} missing {', '.join(problems)}")
                self.register(instance)
                logger.debug(f"  📦 Loaded {kind[:-1].replace('_', ' ')}: {getattr(instance, 'name', cls.__name__)} ({path.name})")
        except PluginLoadError as e:
            self._record_error(e)
        except Exception as e:
            # Arbitrary plugin code: anything it raises only disqualifies that plugin
            self._record_error(PluginLoadError(str(path), f"{type(e).__name__}: {e}"))

    def _record_error(self, error: PluginLoadError) -> None:
        self.load_errors.append(error)
        logger.warning(f"  ❌ Failed to load plugin {error}")

    @staticmethod
    def _import(path: Path, kind: str, module_name: Optional[str]) -> ModuleType:
        if module_name is not None:
            return importlib.import_module(module_name)

        digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:10]
        unique_name = f"evidence_runner_plugins.{kind}.{path.stem}_{digest}"
        spec = importlib.util.spec_from_file_location(unique_name, path)
        if spec is None or spec.loader is None:
            raise PluginLoadError(str(path), "cannot create import spec")
        module = importlib.util.module_from_spec(spec)
        sys.modules[unique_name] = module
        try:
            spec.loader.exec_module(module)
        except BaseException:
            sys.modules.pop(unique_name, None)
            raise
        return module

    @staticmethod
    def _plugin_classes(module: ModuleType, base: Type) -> List[Type]:
        """Concrete subclasses of `base` defined in (not imported into) the module"""
        return [
            obj for _, obj in inspect.getmembers(module, inspect.isclass)
            if issubclass(obj, base)
            and obj is not base
            and obj.__module__ == module.__name__
            and not inspect.isabstract(obj)
        ]

    # ==================== Registration ====================

    def register(self, plugin: Any) -> None:
        """Typed registration; used by discovery and directly by embedders/tests"""
        if isinstance(plugin, BaseExecutor):
            self.register_executor(plugin)
        elif isinstance(plugin, BaseFailureAnalyzer):
            self._failure_analyzers.append(plugin)
        elif isinstance(plugin, BaseTechnicalDebtDetector):
            self._debt_detectors.append(plugin)
        elif isinstance(plugin, BaseValidator):
            if plugin.name in self._validators:
                logger.warning(f"⚠️ Validator '{plugin.name}' already registered; keeping the first")
                return
            self._validators[plugin.name] = plugin
        elif isinstance(plugin, BaseReporter):
            self._reporters.append(plugin)
        else:
            raise TypeError(f"{type(plugin).__name__} is not a recognised plugin type")

    def register_executor(self, executor: BaseExecutor) -> None:
        action_types = list(executor.action_types())
        if not action_types:
            raise PluginLoadError(executor.name, "declares no action types")
        self._executor_instances.append(executor)
        for action_type in action_types:
            self._executors.setdefault(action_type, []).append(executor)

    # ==================== Lookup ====================

    def executors_for(self, action_type: str) -> List[BaseExecutor]:
        """All executors for the type, in registration order"""
        return list(self._executors.get(action_type, []))

    def all_executors(self) -> List[BaseExecutor]:
        return list(self._executor_instances)

    def failure_analyzers(self) -> List[BaseFailureAnalyzer]:
        return _by_priority(self._failure_analyzers)

    def debt_detectors(self) -> List[BaseTechnicalDebtDetector]:
        return _by_priority(self._debt_detectors)

    def validators(self) -> List[BaseValidator]:
        return list(self._validators.values())

    def validator(self, name: str) -> Optional[BaseValidator]:
        return self._validators.get(name)

    def reporters(self) -> List[BaseReporter]:
        return list(self._reporters)

    def counts(self) -> Dict[str, int]:
        return {
            "executors": len(self._executor_instances),
            "failure_analyzers": len(self._failure_analyzers),
            "debt_detectors": len(self._debt_detectors),
            "validators": len(self._validators),
            "reporters": len(self._reporters),
        }

    def list_all(self) -> Dict[str, Any]:
        return {
            "executors": {t: [e.name for e in execs] for t, execs in self._executors.items()},
            "failure_analyzers": [f"{a.name} (priority {a.priority})" for a in self.failure_analyzers()],
            "debt_detectors": [f"{d.name} (priority {d.priority})" for d in self.debt_detectors()],
            "validators": list(self._validators),
            "reporters": [f"{r.name} ({r.format})" for r in self._reporters],
        }

    # ==================== Cleanup ====================

    async def cleanup_all(self) -> None:
        for executor in self._executor_instances:
            try:
                await executor.cleanup()
            except Exception as e:
                logger.error(f"⚠️ Cleanup error for executor {executor.name}: {e}")

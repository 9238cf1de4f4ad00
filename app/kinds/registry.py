"""Job kind registry with auto-discovery."""

import importlib
import inspect
import logging
import pkgutil
from typing import Dict, List, Optional

from app.jobs.errors import JobValidationError
from app.kinds.base import JobKind, KindSpec

logger = logging.getLogger(__name__)


class KindRegistry:
    """Discovers and serves job kinds.

    - Auto-discovers JobKind subclasses in app/kinds/
    - Kinds can also be registered explicitly (tests, plugins)
    """

    def __init__(self):
        self._kinds: Dict[str, JobKind] = {}

    def discover(self) -> None:
        """Scan the app.kinds package for JobKind subclasses and register them."""
        import app.kinds as kinds_pkg

        for importer, modname, ispkg in pkgutil.walk_packages(
            kinds_pkg.__path__, prefix="app.kinds."
        ):
            if ispkg:
                continue
            if modname in ("app.kinds.base", "app.kinds.registry"):
                continue
            mod = importlib.import_module(modname)

            for name, obj in inspect.getmembers(mod, inspect.isclass):
                if (
                    issubclass(obj, JobKind)
                    and obj is not JobKind
                    and not inspect.isabstract(obj)
                    and obj.__module__ == mod.__name__
                ):
                    self.register(obj())

    def register(self, kind: JobKind) -> None:
        name = kind.spec().name
        self._kinds[name] = kind
        logger.info("Registered job kind: %s (%s)", name, kind.spec().resource)

    def list_kinds(self) -> List[KindSpec]:
        return [k.spec() for k in self._kinds.values()]

    def get(self, name: str) -> Optional[JobKind]:
        return self._kinds.get(name)

    def require(self, name: str) -> JobKind:
        kind = self._kinds.get(name)
        if kind is None:
            raise JobValidationError(f"Unknown job kind '{name}'")
        return kind


# Global registry instance
registry = KindRegistry()

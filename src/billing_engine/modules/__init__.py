"""Feature modules with auto-discovery."""

from importlib import import_module
from pathlib import Path

import structlog
from fastapi import APIRouter


logger = structlog.get_logger()


def discover_modules() -> list[APIRouter]:
    """Auto-discover and return routers from all modules.

    Scans the modules directory for packages that expose a ``router``
    attribute in their ``__init__.py``. Packages without one, such as
    the tenant directory, are skipped.

    Returns:
        List of FastAPI routers from discovered modules.
    """
    modules_dir = Path(__file__).parent
    routers: list[APIRouter] = []

    for path in sorted(modules_dir.iterdir()):
        if path.is_dir() and not path.name.startswith("_"):
            module = import_module(f"billing_engine.modules.{path.name}")
            if hasattr(module, "router"):
                routers.append(module.router)
                logger.debug("module_loaded", module=path.name)

    return routers

"""FastAPI integration: request-scoped database resolution and error responses."""

from andesite.api.dependencies import (
    DatabaseResolver,
    ResolutionMode,
    get_registry,
    get_settings,
    registry_lifespan,
)
from andesite.api.errors import install_error_handlers, problem_response, status_for_error

__all__ = [
    "DatabaseResolver",
    "ResolutionMode",
    "get_registry",
    "get_settings",
    "install_error_handlers",
    "problem_response",
    "registry_lifespan",
    "status_for_error",
]

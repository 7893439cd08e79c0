"""HTTP API for the cognitive workflow engine."""

from .endpoints import router, init_dependencies

__all__ = ["router", "init_dependencies"]

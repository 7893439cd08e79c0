"""Registry of deterministic transforms that nodes can delegate to."""

import importlib
import inspect
import threading
from typing import Callable, Dict, Optional

from .exceptions import ConflictError, NotFoundError
from .logging import get_logger

logger = get_logger(__name__)


class TransformRegistry:
    """Named Python callables used by ``transform`` node capabilities.

    A transform is called as ``function(data, **parameters)`` where ``data`` is
    the node's validated input; it returns a dict (sync or async).
    """

    def __init__(self):
        self._transforms: Dict[str, Callable] = {}
        self._descriptions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def register_transform(self, name: str, function: Callable, description: str = "", replace: bool = False) -> None:
        """Register a Python function as a transform.

        Args:
            name: Unique identifier for the transform
            function: Callable taking the node input as first argument
            description: Optional description of the transform's purpose
            replace: Overwrite an existing transform with the same name

        Raises:
            ConflictError: If the name is taken and ``replace`` is false
            ValueError: If the name is empty or the function is not callable
        """
        if not name or not name.strip():
            raise ValueError("Transform name cannot be empty")

        name = name.strip()

        if not callable(function):
            raise ValueError(f"Transform '{name}' must be callable")

        try:
            sig = inspect.signature(function)
            if len(sig.parameters) == 0:
                raise ValueError(f"Transform '{name}' must accept the node input as its first argument")
        except TypeError as e:
            raise ValueError(f"Cannot inspect function signature for transform '{name}': {e}")

        with self._lock:
            if name in self._transforms and not replace:
                raise ConflictError(f"Transform '{name}' is already registered", instance_id=name)
            self._transforms[name] = function
            self._descriptions[name] = description.strip() if description else (inspect.getdoc(function) or "").split("\n")[0]

        logger.info(f"Registered transform '{name}' from {function.__module__}.{getattr(function, '__name__', repr(function))}")

    def register_path(self, name: str, path: str, description: str = "", replace: bool = False) -> None:
        """Register a transform given as ``package.module:function``."""
        module_name, _, function_name = path.partition(":")
        if not module_name or not function_name:
            raise ValueError(f"Transform path '{path}' must look like 'package.module:function'")
        try:
            module = importlib.import_module(module_name)
            function = getattr(module, function_name)
        except ImportError as e:
            raise NotFoundError(f"Cannot import module for transform '{name}': {e}", instance_id=name)
        except AttributeError as e:
            raise NotFoundError(f"Function not found in module for transform '{name}': {e}", instance_id=name)
        self.register_transform(name, function, description, replace=replace)

    def get_transform(self, name: str) -> Callable:
        """Retrieve a registered transform.

        Raises:
            NotFoundError: If the transform is not registered
        """
        function = self._transforms.get(name.strip() if name else name)
        if function is None:
            raise NotFoundError(f"Transform '{name}' is not registered", instance_id=name)
        return function

    def unregister_transform(self, name: str) -> bool:
        with self._lock:
            removed = self._transforms.pop(name, None) is not None
            self._descriptions.pop(name, None)
        if removed:
            logger.info(f"Unregistered transform '{name}'")
        return removed

    def transform_exists(self, name: str) -> bool:
        return bool(name) and name.strip() in self._transforms

    def list_transforms(self) -> Dict[str, str]:
        """Map of transform names to their descriptions."""
        return dict(self._descriptions)

    def get_transform_info(self, name: str) -> Dict[str, Optional[str]]:
        function = self.get_transform(name)
        return {
            "name": name,
            "description": self._descriptions.get(name),
            "module": getattr(function, "__module__", None),
            "function": getattr(function, "__name__", None),
            "is_async": inspect.iscoroutinefunction(function),
        }

    def __len__(self) -> int:
        return len(self._transforms)


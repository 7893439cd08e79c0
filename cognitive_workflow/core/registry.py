"""Versioned instance registries for nodes and workflows.

Locking discipline:

* Published state is an immutable snapshot (``id -> _Entry``). Readers take a
  reference to the current snapshot and never lock.
* A write holds the exclusive lock of the id it touches while it computes the
  new entry, so writes to unrelated ids proceed independently. Publishing the
  new snapshot is a short copy under ``_publish_lock``.
* Every successful write notifies ``wait_for`` callers.

Bare-id resolution returns the version pinned with ``activate`` while it is
enabled, otherwise the highest enabled version. Registering a newer version
therefore supersedes the old one unless the id is pinned.
"""

import asyncio
import threading
import time
from types import MappingProxyType
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Mapping, NamedTuple, Optional, TypeVar

from ..models.core import InstanceDefinition, InstanceKind, NodeInstance, WorkflowInstance, version_key
from .exceptions import ConflictError, NotFoundError
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=InstanceDefinition)


class _Entry(NamedTuple):
    versions: Mapping[str, InstanceDefinition]
    pinned: Optional[str]

    @property
    def active(self) -> Optional[str]:
        if self.pinned is not None and self.versions[self.pinned].enabled:
            return self.pinned
        enabled = [v for v, definition in self.versions.items() if definition.enabled]
        return max(enabled, key=version_key) if enabled else None


class RegistryView(Generic[T]):
    """Lazy, restartable view over a registry.

    Every ``iter()`` walks the snapshot that is current when iteration starts.
    """

    def __init__(self, registry: "InstancesRegistry[T]", predicate: Callable[[T], bool]):
        self._registry = registry
        self._predicate = predicate

    def __iter__(self) -> Iterator[T]:
        snapshot = self._registry._entries
        for instance_id in snapshot:
            entry = snapshot[instance_id]
            for version in sorted(entry.versions, key=version_key):
                definition = entry.versions[version]
                if self._predicate(definition):
                    yield definition


class InstancesRegistry(Generic[T]):
    """Thread-safe catalog of versioned, runnable instances keyed by (id, version)."""

    kind: Optional[InstanceKind] = None

    def __init__(self, definitions: Optional[Iterable[T]] = None):
        self._entries: Mapping[str, _Entry] = MappingProxyType({})
        self._publish_lock = threading.Lock()
        self._id_locks: Dict[str, threading.RLock] = {}
        self._id_lock_manager = threading.Lock()
        self._changed = threading.Condition()

        if definitions:
            self.load(definitions)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def register(self, definition: T, replace: bool = False, activate: bool = False) -> T:
        """Register a definition.

        Args:
            definition: Instance to register
            replace: Overwrite an existing (id, version) pair instead of failing
            activate: Pin this version as the one bare-id resolution returns,
                even after newer versions are registered

        Raises:
            ConflictError: If (id, version) already exists and ``replace`` is false
        """
        self._check_kind(definition)

        with self._lock_for(definition.id):
            entry = self._entries.get(definition.id)
            versions = dict(entry.versions) if entry else {}
            pinned = entry.pinned if entry else None

            if definition.version in versions and not replace:
                raise ConflictError(
                    f"{self._label()} '{definition.id}' version {definition.version} is already registered",
                    instance_id=definition.id,
                    version=definition.version,
                )

            versions[definition.version] = definition
            if activate and definition.enabled:
                pinned = definition.version
            elif not definition.enabled and pinned == definition.version:
                pinned = None

            self._publish(definition.id, _Entry(MappingProxyType(versions), pinned))

        self._notify()
        logger.info(f"Registered {self._label()} '{definition.id}' version {definition.version}")
        return definition

    def update(self, definition: T) -> T:
        """Replace an existing (id, version) pair."""
        self._check_kind(definition)
        with self._lock_for(definition.id):
            entry = self._entries.get(definition.id)
            if entry is None or definition.version not in entry.versions:
                raise NotFoundError(
                    f"{self._label()} '{definition.id}' version {definition.version} is not registered",
                    instance_id=definition.id,
                    version=definition.version,
                )
            return self.register(definition, replace=True)

    def activate(self, instance_id: str, version: str) -> T:
        """Pin ``version`` as the one returned by bare-id resolution."""
        with self._lock_for(instance_id):
            definition = self.resolve(instance_id, version)
            if not definition.enabled:
                raise ConflictError(
                    f"Cannot activate disabled {self._label()} '{instance_id}' version {version}",
                    instance_id=instance_id,
                    version=version,
                )
            entry = self._entries[instance_id]
            self._publish(instance_id, _Entry(entry.versions, version))

        self._notify()
        logger.info(f"Activated {self._label()} '{instance_id}' version {version}")
        return definition

    def deprecate(self, instance_id: str, version: str) -> T:
        """Disable a version; bare-id resolution stops returning it."""
        with self._lock_for(instance_id):
            definition = self.resolve(instance_id, version)
            deprecated = definition.model_copy(update={"enabled": False})
            entry = self._entries[instance_id]
            versions = dict(entry.versions)
            versions[version] = deprecated
            pinned = None if entry.pinned == version else entry.pinned
            self._publish(instance_id, _Entry(MappingProxyType(versions), pinned))

        self._notify()
        logger.info(f"Deprecated {self._label()} '{instance_id}' version {version}")
        return deprecated

    def remove(self, instance_id: str, version: Optional[str] = None) -> bool:
        """Remove one version, or every version when ``version`` is None.

        Returns:
            True if something was removed, False if nothing matched
        """
        with self._lock_for(instance_id):
            entry = self._entries.get(instance_id)
            if entry is None:
                return False

            if version is None:
                self._publish(instance_id, None)
            else:
                if version not in entry.versions:
                    return False
                versions = dict(entry.versions)
                del versions[version]
                pinned = None if entry.pinned == version else entry.pinned
                self._publish(instance_id, _Entry(MappingProxyType(versions), pinned) if versions else None)

        self._notify()
        logger.info(f"Removed {self._label()} '{instance_id}'" + (f" version {version}" if version else ""))
        return True

    def load(self, definitions: Iterable[T], replace: bool = True) -> int:
        """Bulk-register definitions, typically from the external catalog."""
        count = 0
        for definition in definitions:
            self.register(definition, replace=replace)
            count += 1
        logger.info(f"Loaded {count} {self._label()} definitions")
        return count

    def replace_all(self, definitions: Iterable[T], pins: Optional[Mapping[str, str]] = None) -> int:
        """Swap the whole registry for ``definitions`` in one publish.

        Readers see either the old contents or the new ones, never an empty
        or half-loaded registry. ``pins`` maps ids to their pinned version;
        a pin naming a missing or disabled version is dropped.
        """
        grouped: Dict[str, Dict[str, T]] = {}
        for definition in definitions:
            self._check_kind(definition)
            grouped.setdefault(definition.id, {})[definition.version] = definition

        pins = pins or {}
        entries = {}
        for instance_id, versions in grouped.items():
            pinned = pins.get(instance_id)
            if pinned not in versions or not versions[pinned].enabled:
                pinned = None
            entries[instance_id] = _Entry(MappingProxyType(versions), pinned)

        with self._publish_lock:
            self._entries = MappingProxyType(entries)
        self._notify()

        count = sum(len(versions) for versions in grouped.values())
        logger.info(f"Replaced {self._label()} registry contents with {count} definitions")
        return count

    def clear(self) -> None:
        self.replace_all([])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def resolve(self, instance_id: str, version: Optional[str] = None) -> T:
        """Resolve an instance.

        An explicit version returns that version. Without one the pinned
        version is returned, or the highest enabled version when nothing
        enabled is pinned.

        Raises:
            NotFoundError: If nothing matches
        """
        entry = self._entries.get(instance_id)
        if entry is None:
            raise NotFoundError(
                f"{self._label()} '{instance_id}' is not registered",
                instance_id=instance_id,
                version=version,
            )

        if version is not None:
            definition = entry.versions.get(version)
            if definition is None:
                raise NotFoundError(
                    f"{self._label()} '{instance_id}' version {version} is not registered",
                    instance_id=instance_id,
                    version=version,
                )
            return definition

        active = entry.active
        if active is None:
            raise NotFoundError(
                f"{self._label()} '{instance_id}' has no enabled version",
                instance_id=instance_id,
            )
        return entry.versions[active]

    def wait_for(self, instance_id: str, version: Optional[str] = None, timeout: Optional[float] = None) -> T:
        """Block until the instance resolves or ``timeout`` seconds pass.

        Raises:
            NotFoundError: If the instance is still unresolvable at the deadline
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while True:
                try:
                    return self.resolve(instance_id, version)
                except NotFoundError:
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        raise
                    self._changed.wait(remaining)

    async def wait_for_async(self, instance_id: str, version: Optional[str] = None,
                             timeout: Optional[float] = None) -> T:
        return await asyncio.to_thread(self.wait_for, instance_id, version, timeout)

    def list(self, kind_filter: Optional[InstanceKind] = None, enabled_only: bool = False) -> RegistryView[T]:
        """Lazy, restartable sequence of registered definitions."""
        def predicate(definition: T) -> bool:
            if kind_filter is not None and definition.kind != kind_filter:
                return False
            if enabled_only and not definition.enabled:
                return False
            return True

        return RegistryView(self, predicate)

    def versions(self, instance_id: str) -> List[str]:
        entry = self._entries.get(instance_id)
        if entry is None:
            return []
        return sorted(entry.versions, key=version_key)

    def active_version(self, instance_id: str) -> Optional[str]:
        """Version bare-id resolution currently returns, if any."""
        entry = self._entries.get(instance_id)
        return entry.active if entry else None

    def pinned_version(self, instance_id: str) -> Optional[str]:
        entry = self._entries.get(instance_id)
        return entry.pinned if entry else None

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._entries

    def __len__(self) -> int:
        return sum(len(entry.versions) for entry in self._entries.values())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, instance_id: str) -> threading.RLock:
        with self._id_lock_manager:
            if instance_id not in self._id_locks:
                self._id_locks[instance_id] = threading.RLock()
            return self._id_locks[instance_id]

    def _publish(self, instance_id: str, entry: Optional[_Entry]) -> None:
        with self._publish_lock:
            entries = dict(self._entries)
            if entry is None:
                entries.pop(instance_id, None)
            else:
                entries[instance_id] = entry
            self._entries = MappingProxyType(entries)

    def _notify(self) -> None:
        with self._changed:
            self._changed.notify_all()

    def _check_kind(self, definition: InstanceDefinition) -> None:
        if self.kind is not None and definition.kind != self.kind:
            raise TypeError(
                f"{type(self).__name__} only accepts {self.kind.value} instances, got {definition.kind.value}"
            )

    def _label(self) -> str:
        return self.kind.value if self.kind else "instance"


class NodesRegistry(InstancesRegistry[NodeInstance]):
    """Registry for node instances."""
    kind = InstanceKind.NODE


class WorkflowsRegistry(InstancesRegistry[WorkflowInstance]):
    """Registry for workflow instances."""
    kind = InstanceKind.WORKFLOW

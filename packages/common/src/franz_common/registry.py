"""Named items reachable by key or alias.

Example:
    ```python
    from franz_common.registry import Registry

    class WorkflowRegistry(Registry[Workflow]):
        def __init__(self):
            super().__init__("workflows")

    registry = WorkflowRegistry()
    registry.register(workflow.id, workflow, aliases=[workflow.short_name])
    registry.resolve("poem")  # by alias
    registry.get("poem-generation")  # by key only
    ```
"""

import threading
from typing import Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from franz_common.exceptions import NotFoundError, OperationError

T = TypeVar("T")


class Registry(Generic[T]):
    """Thread-safe map of unique keys to items, with optional aliases.

    An alias points at a key. Keys and aliases share one namespace, so a
    name can never mean two items.

    Args:
        name: Registry name, used in error messages
    """

    def __init__(self, name: str):
        self._name = name
        self._items: Dict[str, T] = {}
        self._aliases: Dict[str, str] = {}
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        return self._name

    def _not_found(self, key: str) -> NotFoundError:
        return NotFoundError(
            f"Item not found in {self._name}: {key}",
            context={"key": key, "registry": self._name, "available_keys": list(self._items)},
        )

    def register(
        self,
        key: str,
        item: T,
        aliases: Iterable[Optional[str]] = (),
        allow_overwrite: bool = False,
    ) -> None:
        """Add ``item`` under ``key``; empty aliases are ignored.

        Overwriting an item also replaces its aliases.

        Raises:
            OperationError: The key exists and ``allow_overwrite`` is False,
                or a name is already taken by another item
        """
        names = [a for a in aliases if a and a != key]
        with self._lock:
            if key in self._items and not allow_overwrite:
                raise OperationError(
                    f"Item '{key}' already registered in {self._name}",
                    context={"key": key, "registry": self._name},
                )
            if key in self._aliases:
                raise OperationError(
                    f"'{key}' is already an alias in {self._name}",
                    context={"key": key, "target": self._aliases[key], "registry": self._name},
                )
            for alias in names:
                owner = self._aliases.get(alias, alias if alias in self._items else None)
                if owner is not None and owner != key:
                    raise OperationError(
                        f"Alias '{alias}' is already used by '{owner}' in {self._name}",
                        context={"alias": alias, "key": key, "owner": owner, "registry": self._name},
                    )
            self._drop_aliases(key)
            self._items[key] = item
            self._aliases.update((alias, key) for alias in names)

    def _drop_aliases(self, key: str) -> None:
        for alias in [a for a, target in self._aliases.items() if target == key]:
            del self._aliases[alias]

    def unregister(self, key: str) -> T:
        """Remove and return the item under ``key`` along with its aliases.

        Raises:
            NotFoundError: If no item has this key
        """
        with self._lock:
            if key not in self._items:
                raise self._not_found(key)
            self._drop_aliases(key)
            return self._items.pop(key)

    def get(self, key: str) -> T:
        """Look up by key only.

        Raises:
            NotFoundError: If no item has this key
        """
        with self._lock:
            if key not in self._items:
                raise self._not_found(key)
            return self._items[key]

    def resolve(self, name: str) -> T:
        """Look up by key, then by alias.

        Raises:
            NotFoundError: If the name is neither
        """
        with self._lock:
            return self.get(self._aliases.get(name, name))

    def aliases_of(self, key: str) -> List[str]:
        with self._lock:
            return sorted(a for a, target in self._aliases.items() if target == key)

    def find(self, predicate: Callable[[T], bool]) -> Optional[T]:
        """First item, in registration order, matching ``predicate``."""
        with self._lock:
            return next((item for item in self._items.values() if predicate(item)), None)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._items

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def values(self) -> List[T]:
        with self._lock:
            return list(self._items.values())

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __repr__(self) -> str:
        return f"Registry(name={self._name!r}, items={len(self)})"

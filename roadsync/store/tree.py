"""Hierarchical event store interface and local implementations.

The store mirrors the subset of the Realtime Database surface the pipeline
needs: read a whole subtree, merge-update a node, and subscribe to
``child_added`` / ``child_changed`` notifications below a path.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from roadsync.common.constants import CHILD_ADDED, CHILD_CHANGED
from roadsync.common.errors import ConfigError
from roadsync.common.fs import read_json, write_json_atomic


def normalize_path(path: str | None) -> str:
    if not path:
        return ""
    return "/".join(part for part in str(path).split("/") if part)


def join_path(*parts: str) -> str:
    return normalize_path("/".join(p for p in parts if p))


def split_path(path: str) -> list[str]:
    normalized = normalize_path(path)
    return normalized.split("/") if normalized else []


@dataclass(frozen=True)
class ChildEvent:
    kind: str
    parent_path: str
    key: str
    value: Any

    @property
    def path(self) -> str:
        return join_path(self.parent_path, self.key)


ChildCallback = Callable[[ChildEvent], None]


class Subscription:
    def __init__(self, path: str, callback: ChildCallback, on_close: Callable[["Subscription"], None]) -> None:
        self.path = path
        self.callback = callback
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._on_close(self)


class TreeStore(ABC):
    @abstractmethod
    def get(self, path: str) -> Any:
        """Return a deep copy of the subtree at ``path`` (``None`` when absent)."""

    @abstractmethod
    def update(self, path: str, values: Mapping[str, Any]) -> None:
        """Merge ``values`` into the node at ``path`` without touching other children."""

    @abstractmethod
    def set(self, path: str, value: Any) -> None:
        """Replace the node at ``path``."""

    @abstractmethod
    def subscribe(self, path: str, callback: ChildCallback) -> Subscription:
        """Deliver child notifications for the direct children of ``path``."""

    def close(self) -> None:
        return None


def _as_children(node: Any) -> dict[str, Any]:
    if isinstance(node, dict):
        return node
    if isinstance(node, list):
        return {str(idx): value for idx, value in enumerate(node) if value is not None}
    return {}


def _covers(written: str, sub_path: str) -> bool:
    return sub_path == written or sub_path.startswith(written + "/")


class MemoryTreeStore(TreeStore):
    """Thread-safe in-process tree.

    Notifications run on the writing thread unless an ``executor`` is given,
    in which case each callback is submitted to it.
    """

    def __init__(self, data: Mapping[str, Any] | None = None, *, executor: Executor | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(dict(data or {}))
        self._lock = threading.RLock()
        self._subscriptions: list[Subscription] = []
        self._executor = executor
        self.write_count = 0

    def _node(self, parts: list[str]) -> Any:
        node: Any = self._data
        for part in parts:
            children = _as_children(node)
            if part not in children:
                return None
            node = children[part]
        return node

    def _container(self, parts: list[str]) -> dict[str, Any]:
        node = self._data
        for part in parts:
            child = node.get(part)
            if isinstance(child, list):
                child = _as_children(child)
                node[part] = child
            elif not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        return node

    def get(self, path: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._node(split_path(path)))

    def set(self, path: str, value: Any) -> None:
        parts = split_path(path)
        if not parts:
            raise ValueError("Cannot replace the store root")
        with self._lock:
            before = self._snapshot_children()
            parent = self._container(parts[:-1])
            if value is None:
                parent.pop(parts[-1], None)
            else:
                parent[parts[-1]] = copy.deepcopy(value)
            self.write_count += 1
            pending = self._collect_notifications(parts[:-1], [parts[-1]], before)
        self._dispatch(pending)

    def update(self, path: str, values: Mapping[str, Any]) -> None:
        parts = split_path(path)
        with self._lock:
            before = self._snapshot_children()
            node = self._container(parts)
            for key, value in values.items():
                key_parts = split_path(key)
                target = self._container(parts + key_parts[:-1]) if len(key_parts) > 1 else node
                if value is None:
                    target.pop(key_parts[-1], None)
                else:
                    target[key_parts[-1]] = copy.deepcopy(value)
            self.write_count += 1
            touched = sorted({split_path(key)[0] for key in values})
            pending = self._collect_notifications(parts, touched, before)
        self._dispatch(pending)

    def _snapshot_children(self) -> dict[str, set[str]]:
        return {
            sub.path: set(_as_children(self._node(split_path(sub.path))))
            for sub in self._subscriptions
            if not sub.closed
        }

    def _collect_notifications(
        self, parent_parts: list[str], touched: list[str], before: dict[str, set[str]]
    ) -> list[tuple[Subscription, ChildEvent]]:
        write_parent = "/".join(parent_parts)
        pending = []
        for sub in list(self._subscriptions):
            if sub.closed:
                continue
            if sub.path == write_parent:
                keys = touched
            elif write_parent.startswith(sub.path + "/") or (sub.path == "" and write_parent):
                relative = write_parent[len(sub.path) :].lstrip("/")
                keys = [relative.split("/")[0]]
            elif any(_covers(join_path(write_parent, key), sub.path) for key in touched):
                keys = sorted(_as_children(self._node(split_path(sub.path))))
            else:
                continue
            children = _as_children(self._node(split_path(sub.path)))
            known = before.get(sub.path, set())
            for key in keys:
                if key not in children:
                    continue
                kind = CHILD_CHANGED if key in known else CHILD_ADDED
                event = ChildEvent(kind, sub.path, key, copy.deepcopy(children[key]))
                pending.append((sub, event))
        return pending

    def _dispatch(self, pending: list[tuple[Subscription, ChildEvent]]) -> None:
        for sub, event in pending:
            if sub.closed:
                continue
            if self._executor is not None:
                self._executor.submit(sub.callback, event)
            else:
                sub.callback(event)

    def subscribe(self, path: str, callback: ChildCallback) -> Subscription:
        normalized = normalize_path(path)
        with self._lock:
            sub = Subscription(normalized, callback, self._unsubscribe)
            self._subscriptions.append(sub)
            existing = [
                (sub, ChildEvent(CHILD_ADDED, normalized, key, copy.deepcopy(value)))
                for key, value in _as_children(self._node(split_path(normalized))).items()
            ]
        self._dispatch(existing)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def subscription_paths(self) -> list[str]:
        with self._lock:
            return [sub.path for sub in self._subscriptions if not sub.closed]


class JsonFileTreeStore(MemoryTreeStore):
    """Memory tree persisted to a JSON document after every write."""

    def __init__(self, path: Path, *, executor: Executor | None = None) -> None:
        self.file_path = path
        data = read_json(path) if path.exists() else {}
        super().__init__(data if isinstance(data, dict) else {}, executor=executor)

    def _persist(self) -> None:
        with self._lock:
            write_json_atomic(self.file_path, self._data)

    def set(self, path: str, value: Any) -> None:
        super().set(path, value)
        self._persist()

    def update(self, path: str, values: Mapping[str, Any]) -> None:
        super().update(path, values)
        self._persist()


def build_tree_store(url: str, *, auth: str | None = None) -> TreeStore:
    if url.startswith("memory://"):
        return MemoryTreeStore()
    if url.startswith("file://"):
        return JsonFileTreeStore(Path(url[len("file://") :]))
    if url.startswith(("http://", "https://")):
        from roadsync.store.rest import RestTreeStore

        return RestTreeStore(url, auth=auth)
    raise ConfigError(f"Unsupported store url: {url}")

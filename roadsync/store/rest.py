"""Realtime Database REST store.

Reads and writes go through ``{base}/{path}.json``; subscriptions open one
server-sent-event stream per watched path and translate ``put``/``patch``
frames into child notifications against a local mirror of that path.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Any, Mapping

import requests

from roadsync.common.constants import CHILD_ADDED, CHILD_CHANGED
from roadsync.common.errors import StorageFailure
from roadsync.common.http import HttpClient, HttpRequestError
from roadsync.store.tree import ChildCallback, ChildEvent, Subscription, TreeStore, _as_children, normalize_path, split_path

logger = logging.getLogger(__name__)


def _set_in(node: dict[str, Any], parts: list[str], value: Any) -> None:
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = _as_children(child) if isinstance(child, list) else {}
            node[part] = child
        node = child
    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = value


class _StreamListener:
    def __init__(
        self,
        store: "RestTreeStore",
        path: str,
        callback: ChildCallback,
        *,
        reconnect_initial: float,
        reconnect_max: float,
    ) -> None:
        self.store = store
        self.path = path
        self.callback = callback
        self.mirror: dict[str, Any] = {}
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self._stop = threading.Event()
        self.thread = threading.Thread(target=self._run, name=f"roadsync-stream:{path or '/'}", daemon=True)

    def start(self) -> None:
        self.thread.start()

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        delay = self.reconnect_initial
        while not self._stop.is_set():
            try:
                for event, data in self.store.client.stream_events(self.store.url_for(self.path)):
                    if self._stop.is_set():
                        return
                    self.handle(event, data)
                    delay = self.reconnect_initial
            except (requests.RequestException, HttpRequestError, StorageFailure) as exc:
                logger.warning("stream for %s dropped: %s", self.path or "/", exc)
            except Exception:
                logger.exception("stream for %s failed, reconnecting", self.path or "/")
            if self._stop.wait(delay):
                return
            delay = min(delay * 2, self.reconnect_max)

    def handle(self, event: str, data: str) -> None:
        if event == "keep-alive":
            return
        if event in ("cancel", "auth_revoked"):
            raise StorageFailure(f"stream {event} for {self.path or '/'}")
        if event not in ("put", "patch"):
            return

        try:
            parts, writes = self._parse_frame(event, data)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("skipping malformed %s frame for %s: %s", event, self.path or "/", exc)
            return

        previous = set(self.mirror)
        if writes is None:
            incoming = _as_children(parts)
            changed = [k for k, v in incoming.items() if self.mirror.get(k) != v]
            self.mirror = copy.deepcopy(incoming)
            self._emit(changed, previous)
            return

        touched = []
        for rel_path, rel_value in writes.items():
            rel_parts = split_path(rel_path)
            if not rel_parts:
                continue
            _set_in(self.mirror, rel_parts, copy.deepcopy(rel_value))
            if rel_parts[0] not in touched:
                touched.append(rel_parts[0])
        self._emit(touched, previous)

    def _parse_frame(self, event: str, data: str) -> tuple[Any, dict[str, Any] | None]:
        """Return ``(root_value, None)`` for a root put, else ``(path_parts, writes)``."""
        frame = json.loads(data) if data else {}
        if not isinstance(frame, dict):
            raise ValueError(f"frame is not an object: {frame!r}")
        parts = split_path(frame.get("path") or "/")
        value = frame.get("data")

        if event == "put":
            if not parts:
                return value, None
            return parts, {"/".join(parts): value}
        if value is None:
            return parts, {}
        if not isinstance(value, dict):
            raise ValueError(f"patch data is not an object: {value!r}")
        return parts, {"/".join(parts + split_path(k)): v for k, v in value.items()}

    def _emit(self, keys: list[str], previous: set[str]) -> None:
        for key in keys:
            if key not in self.mirror:
                continue
            kind = CHILD_CHANGED if key in previous else CHILD_ADDED
            self.callback(ChildEvent(kind, self.path, key, copy.deepcopy(self.mirror[key])))


class RestTreeStore(TreeStore):
    def __init__(
        self,
        base_url: str,
        *,
        auth: str | None = None,
        client: HttpClient | None = None,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or HttpClient(auth=auth)
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max
        self._listeners: dict[int, _StreamListener] = {}
        self._lock = threading.Lock()

    def url_for(self, path: str) -> str:
        normalized = normalize_path(path)
        return f"{self.base_url}/{normalized}.json" if normalized else f"{self.base_url}/.json"

    def get(self, path: str) -> Any:
        return self.client.get_json(self.url_for(path))

    def update(self, path: str, values: Mapping[str, Any]) -> None:
        self.client.patch_json(self.url_for(path), dict(values))

    def set(self, path: str, value: Any) -> None:
        self.client.put_json(self.url_for(path), value)

    def subscribe(self, path: str, callback: ChildCallback) -> Subscription:
        normalized = normalize_path(path)
        listener = _StreamListener(
            self,
            normalized,
            callback,
            reconnect_initial=self.reconnect_initial,
            reconnect_max=self.reconnect_max,
        )
        sub = Subscription(normalized, callback, self._unsubscribe)
        with self._lock:
            self._listeners[id(sub)] = listener
        listener.start()
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            listener = self._listeners.pop(id(sub), None)
        if listener is not None:
            listener.stop()

    def close(self) -> None:
        with self._lock:
            listeners = list(self._listeners.values())
            self._listeners.clear()
        for listener in listeners:
            listener.stop()
        self.client.close()

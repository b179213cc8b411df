"""Discovery of reading leaves in an irregularly nested tree."""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterator, Mapping

from roadsync.common.models import LeafRecord
from roadsync.pipeline.normalize import COORDINATE_KEYS, FLAG_KEYS, has_any_key
from roadsync.store.tree import join_path

READING_KEYS = FLAG_KEYS | COORDINATE_KEYS


class NodeKind(str, Enum):
    READING = "reading"
    CONTAINER = "container"
    UNRECOGNIZED = "unrecognized"


def classify_node(node: Any) -> NodeKind:
    if isinstance(node, Mapping):
        if has_any_key(node, READING_KEYS):
            return NodeKind.READING
        return NodeKind.CONTAINER
    if isinstance(node, list):
        return NodeKind.CONTAINER
    return NodeKind.UNRECOGNIZED


def iter_children(node: Any) -> Iterator[tuple[str, Any]]:
    if isinstance(node, Mapping):
        for key, value in node.items():
            yield str(key), value
    elif isinstance(node, list):
        for idx, value in enumerate(node):
            if value is not None:
                yield str(idx), value


def flatten_tree(root: Any, base_path: str = "") -> list[LeafRecord]:
    """Return every reading below ``root`` with its full store path.

    A node that looks like a reading is a leaf: its own nested fields are
    never walked. A reading at ``root`` itself is keyed by the last segment of
    ``base_path``.
    """
    out: list[LeafRecord] = []

    def walk(node: Any, path: str, key: str) -> None:
        kind = classify_node(node)
        if kind is NodeKind.READING:
            out.append(LeafRecord(path=path, key=key, payload=dict(node)))
        elif kind is NodeKind.CONTAINER:
            for child_key, child in iter_children(node):
                walk(child, join_path(path, child_key), child_key)

    walk(root, base_path, base_path.rsplit("/", 1)[-1] if base_path else "")
    return out

"""
JSON-shaped map with dotted path access.

Used for the parameter and property maps carried by requests and actions.
Values are plain JSON types (None, bool, int, float, str, list, dict).
"""

from __future__ import annotations

import copy
import json
from typing import Any

_MISSING = object()


def _split(path: str | list[str]) -> list[str]:
    parts = path if isinstance(path, list) else path.split(".")
    parts = [p.strip() for p in parts]
    if not parts or any(not p for p in parts):
        raise ValueError(f"Invalid path: {path!r}")
    return parts


class MapWrapper:
    """Mutable JSON object with ``a.b.c`` style paths.

    Tracks whether it has been modified since the last import/reset so that
    owning entities can fold it into their dirty flag.
    """

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = copy.deepcopy(data) if data else {}
        self._modified = False

    def __repr__(self) -> str:
        return f"MapWrapper({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MapWrapper):
            return self._data == other._data
        if isinstance(other, dict):
            return self._data == other
        return NotImplemented

    def is_empty(self) -> bool:
        return not self._data

    def is_modified(self) -> bool:
        return self._modified

    def reset(self) -> None:
        self._data = {}
        self._modified = False

    def has(self, path: str | list[str]) -> bool:
        return self.get(path, _MISSING) is not _MISSING

    def get(self, path: str | list[str], default: Any = None) -> Any:
        node: Any = self._data
        for key in _split(path):
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def set(self, path: str | list[str], value: Any) -> MapWrapper:
        """Set ``value`` at ``path``, creating intermediate objects.

        Raises:
            ValueError: If an intermediate path element is not an object
        """
        keys = _split(path)
        node = self._data
        for key in keys[:-1]:
            child = node.get(key)
            if child is None:
                child = {}
                node[key] = child
            elif not isinstance(child, dict):
                raise ValueError(f"Path element [{key}] is not an object")
            node = child
        node[keys[-1]] = value
        self._modified = True
        return self

    def delete(self, path: str | list[str]) -> bool:
        keys = _split(path)
        node: Any = self._data
        for key in keys[:-1]:
            if not isinstance(node, dict) or key not in node:
                return False
            node = node[key]
        if not isinstance(node, dict) or keys[-1] not in node:
            return False
        del node[keys[-1]]
        self._modified = True
        return True

    def update(self, other: MapWrapper | dict[str, Any]) -> MapWrapper:
        """Shallow merge of another map's top level keys."""
        data = other.to_dict() if isinstance(other, MapWrapper) else other
        for key, value in data.items():
            self._data[key] = copy.deepcopy(value)
            self._modified = True
        return self

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def import_json(self, text: str | None) -> None:
        """Replace contents with a JSON object document.

        Raises:
            ValueError: If the document is not a JSON object
        """
        self._data = {}
        self._modified = False
        if not text:
            return
        value = json.loads(text)
        if not isinstance(value, dict):
            raise ValueError("Expected a JSON object")
        self._data = value

    def export_json(self) -> str:
        return json.dumps(self._data, separators=(",", ":"), sort_keys=True)

    def mark_clean(self) -> None:
        self._modified = False

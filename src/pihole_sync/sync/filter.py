"""Hierarchical JSON path filter.

Paths address object fields with ``.`` and array elements with
``[index]``, e.g. ``dns.upstreams`` or ``dns.hosts[0]``.

Matching rules:

* A path without any ``[index]`` matches a node whatever array indices
  lie on the way to it: ``dns.hosts`` matches ``dns.hosts[3]`` and
  ``misc.items.name`` matches ``misc.items[1].name``.
* A path with an ``[index]`` matches only at that exact position.
* Matching is hierarchical: a path covers its whole subtree.

``EXCLUDE`` removes every covered subtree and passes everything else
through unchanged. ``INCLUDE`` keeps covered subtrees whole, descends into
ancestors of a configured path and drops everything else; containers that
end up empty while descending are dropped too. An empty include set yields
``{}``.

Array decisions use the original indices; output arrays are compacted.
"""

from __future__ import annotations

import copy
import re
from typing import Any

from ..config_schema import ConfigSyncMode as FilterMode

Token = str | int
Path = tuple[Token, ...]

_SEGMENT = re.compile(r"([^.\[\]]+)((?:\[\d+\])*)")
_INDEX = re.compile(r"\[(\d+)\]")

_DROP = object()


def parse_path(path: str) -> Path:
    """Split ``a.b[2].c`` into ``("a", "b", 2, "c")``.

    Raises:
        ValueError: If *path* is not a valid filter path.
    """
    tokens: list[Token] = []
    for part in path.split("."):
        match = _SEGMENT.fullmatch(part)
        if not match:
            raise ValueError(f"Invalid filter path: {path!r}")
        tokens.append(match.group(1))
        tokens.extend(int(i) for i in _INDEX.findall(match.group(2)))
    return tuple(tokens)


def _strip_indices(path: Path) -> Path:
    return tuple(t for t in path if isinstance(t, str))


def _is_prefix(prefix: Path, path: Path) -> bool:
    return len(prefix) <= len(path) and path[: len(prefix)] == prefix


class _Rule:
    __slots__ = ("tokens", "index_free")

    def __init__(self, tokens: Path):
        self.tokens = tokens
        self.index_free = all(isinstance(t, str) for t in tokens)

    def _view(self, node: Path) -> Path:
        return _strip_indices(node) if self.index_free else node

    def covers(self, node: Path) -> bool:
        return _is_prefix(self.tokens, self._view(node))

    def below(self, node: Path) -> bool:
        """True if *node* is a proper ancestor of this rule."""
        view = self._view(node)
        return len(view) < len(self.tokens) and _is_prefix(view, self.tokens)


class PathFilter:
    """Filter arbitrary JSON by a set of paths.

    Args:
        paths: Filter paths (see module docstring).
        mode: ``FilterMode.INCLUDE`` or ``FilterMode.EXCLUDE``.

    Raises:
        ValueError: If a path is malformed.
    """

    def __init__(self, paths: list[str], mode: FilterMode):
        self.paths = list(paths)
        self.mode = FilterMode(mode)
        self._rules = [_Rule(parse_path(p)) for p in self.paths]

    def __repr__(self) -> str:
        return f"PathFilter(mode={self.mode.value}, paths={self.paths!r})"

    def apply(self, value: Any) -> Any:
        """Return the filtered copy of *value*; the input is not modified."""
        if self.mode == FilterMode.INCLUDE:
            if not self._rules:
                return {}
            result = self._include(value, ())
            return {} if result is _DROP else result

        if not self._rules:
            return copy.deepcopy(value)
        result = self._exclude(value, ())
        return {} if result is _DROP else result

    def _covered(self, path: Path) -> bool:
        return any(rule.covers(path) for rule in self._rules)

    def _ancestor(self, path: Path) -> bool:
        return any(rule.below(path) for rule in self._rules)

    def _exclude(self, node: Any, path: Path) -> Any:
        if path and self._covered(path):
            return _DROP
        if isinstance(node, dict):
            out = {}
            for key, child in node.items():
                kept = self._exclude(child, path + (key,))
                if kept is not _DROP:
                    out[key] = kept
            return out
        if isinstance(node, list):
            out_list = []
            for index, child in enumerate(node):
                kept = self._exclude(child, path + (index,))
                if kept is not _DROP:
                    out_list.append(kept)
            return out_list
        return node

    def _include(self, node: Any, path: Path) -> Any:
        if path and self._covered(path):
            return copy.deepcopy(node)
        if path and not self._ancestor(path):
            return _DROP

        if isinstance(node, dict):
            out = {}
            for key, child in node.items():
                kept = self._include(child, path + (key,))
                if kept is not _DROP:
                    out[key] = kept
            return out if out or not path else _DROP
        if isinstance(node, list):
            out_list = []
            for index, child in enumerate(node):
                kept = self._include(child, path + (index,))
                if kept is not _DROP:
                    out_list.append(kept)
            return out_list if out_list else _DROP
        # A scalar cannot contain the configured path below it
        return _DROP

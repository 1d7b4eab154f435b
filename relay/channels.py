#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Channel resolution: map a working directory to a logical channel name.

The registry is a static JSON object of path → channel pairs:

    {
      "/home/me/work/api": "api",
      "/home/me/work/api/docs": "api-docs"
    }

(or the same object nested under a "channels" key). A path resolves to the
channel of the longest registered path that equals it or contains it;
anything else falls back to the default channel.
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

try:
    from relay.debug_logger import get_logger
    from relay.models import DEFAULT_CHANNEL, RegistryError
except ImportError:
    from debug_logger import get_logger
    from models import DEFAULT_CHANNEL, RegistryError


PathLike = Union[str, Path]


class _Pairs(list):
    """Key/value pairs of one JSON object, in file order (keeps duplicates)."""


def normalize_path(path: PathLike) -> str:
    """Normalise a registry or lookup path: expand ~, collapse .., drop trailing /."""
    text = os.path.expanduser(str(path))
    if not text:
        return ""
    return os.path.normpath(text)


def _is_registry_path(key: str) -> bool:
    return key.startswith("/") or key.startswith("~")


def _path_matches(path: str, prefix: str) -> bool:
    if path == prefix:
        return True
    if prefix == "/":
        return path.startswith("/")
    return path.startswith(prefix + "/")


def _build_entries(pairs: List[Tuple[str, str]]) -> Dict[str, str]:
    """Normalise registry pairs, rejecting paths that collide with different channels."""
    entries: Dict[str, str] = {}
    origin: Dict[str, str] = {}
    for raw_path, channel in pairs:
        if not _is_registry_path(raw_path):
            continue
        if not isinstance(channel, str) or not channel.strip():
            raise RegistryError(f"Channel for {raw_path!r} must be a non-empty string")
        path = normalize_path(raw_path)
        channel = channel.strip()
        existing = entries.get(path)
        if existing is not None and existing != channel:
            raise RegistryError(
                f"Ambiguous registry: {origin[path]!r} → {existing!r} and "
                f"{raw_path!r} → {channel!r} name the same path"
            )
        entries[path] = channel
        origin.setdefault(path, raw_path)
    return entries


def resolve_channel(
    path: PathLike,
    registry: Mapping[str, str],
    default: str = DEFAULT_CHANNEL,
) -> str:
    """
    Return the channel whose registered path is the longest prefix of path.

    Args:
        path: Directory to resolve (usually the working directory)
        registry: path → channel mapping (need not be normalised)
        default: Channel used when nothing matches

    Raises:
        RegistryError: if two registry entries name the same path with
            different channels
    """
    if isinstance(registry, ChannelRegistry):
        return registry.resolve(path, default=default)
    return ChannelRegistry(list(registry.items())).resolve(path, default=default)


class ChannelRegistry:
    """
    Read-only, validated path → channel registry.

    Construction fails with RegistryError when two entries would compete for
    the same path, so resolution never depends on iteration order.
    """

    def __init__(self, pairs: Optional[List[Tuple[str, str]]] = None, default: str = DEFAULT_CHANNEL):
        self.default = default
        self._entries = _build_entries(pairs or [])
        # Longest first; equal lengths cannot both match one path
        self._ordered = sorted(self._entries.items(), key=lambda item: len(item[0]), reverse=True)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str], default: str = DEFAULT_CHANNEL) -> "ChannelRegistry":
        return cls(list(mapping.items()), default=default)

    @classmethod
    def load(cls, registry_path: PathLike, default: str = DEFAULT_CHANNEL) -> "ChannelRegistry":
        """
        Load a registry file. A missing file is an empty registry.

        Duplicate keys in the JSON object are detected (json.load would
        silently keep the last one).
        """
        registry_path = Path(registry_path)
        try:
            text = registry_path.read_text()
        except FileNotFoundError:
            return cls([], default=default)

        try:
            data = json.loads(text, object_pairs_hook=_Pairs)
        except json.JSONDecodeError as e:
            raise RegistryError(f"Invalid channel registry {registry_path}: {e}")

        if not isinstance(data, _Pairs):
            raise RegistryError(f"Channel registry {registry_path} must be a JSON object")

        pairs = data
        for key, value in data:
            if key == "channels" and isinstance(value, _Pairs):
                pairs = value
                break

        string_pairs = [(k, v) for k, v in pairs if isinstance(k, str) and _is_registry_path(k)]
        registry = cls(string_pairs, default=default)
        get_logger().mutation("registry_load", str(registry_path), {"entries": len(registry)})
        return registry

    def __len__(self) -> int:
        return len(self._entries)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._ordered)

    def resolve(self, path: PathLike, default: Optional[str] = None) -> str:
        fallback = self.default if default is None else default
        target = normalize_path(path)
        if not target:
            return fallback
        for prefix, channel in self._ordered:
            if _path_matches(target, prefix):
                return channel
        return fallback


def get_channel(
    cwd: Optional[PathLike] = None,
    registry_path: Optional[PathLike] = None,
) -> str:
    """Resolve the channel for cwd (default: the process working directory)."""
    if registry_path is None:
        try:
            from relay.config import load_config
        except ImportError:
            from config import load_config
        registry_path = load_config().registry_path
    registry = ChannelRegistry.load(registry_path)
    return registry.resolve(cwd if cwd is not None else os.getcwd())

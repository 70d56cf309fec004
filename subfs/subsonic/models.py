"""
Data structures returned by the Subsonic REST API and their JSON decoding.

Subsonic's JSON responses are a mechanical translation of its XML responses, which
leads to a couple of quirks that the decoder smooths over:

* Keys are camelCase, fields here are snake_case.
* Lists with a single element are sometimes sent as a bare object.
* Older servers send numeric IDs, newer ones send strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
import re
import typing
from typing import Any, Dict, List, Optional


@dataclass
class Artist:
    """Artist entry of an index, which is the root directory of its albums."""

    id: str
    name: str = ""


@dataclass
class Index:
    """Group of artists, typically sharing the same first letter."""

    name: str = ""
    artist: List[Artist] = field(default_factory=list)


@dataclass
class Child:
    """Entry of a music directory: a sub-directory, an audio track, or a video."""

    id: str
    parent: Optional[str] = None
    title: str = ""
    is_dir: bool = False
    is_video: bool = False
    artist: str = ""
    album: str = ""
    track: int = 0
    cover_art: Optional[str] = None
    size: int = 0
    suffix: str = ""
    transcoded_suffix: str = ""
    duration: int = 0
    created: Optional[str] = None


@dataclass
class MusicDirectory:
    """Contents of a directory as returned by getMusicDirectory."""

    id: str
    name: str = ""
    child: List[Child] = field(default_factory=list)

    @property
    def directories(self) -> List[Child]:
        """Return the sub-directories."""
        return [c for c in self.child if c.is_dir]

    @property
    def audio(self) -> List[Child]:
        """Return the audio tracks."""
        return [c for c in self.child if not c.is_dir and not c.is_video]

    @property
    def videos(self) -> List[Child]:
        """Return the videos."""
        return [c for c in self.child if not c.is_dir and c.is_video]


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case(name: str) -> str:
    """Convert a camelCase JSON key to a snake_case field name."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def decode(cls: type, obj: Any) -> Any:
    """
    Reconstruct a dataclass from its JSON representation based on type annotations.

    Unknown keys are ignored and missing keys fall back to the field defaults, which
    makes the decoder tolerant of the differences between Subsonic API versions.
    """
    if not isinstance(obj, dict):
        raise TypeError(f"expected object for {cls.__qualname__}, got {obj!r}")

    hints = typing.get_type_hints(cls)
    names = {f.name for f in fields(cls)}

    values: Dict[str, Any] = {}

    for key, value in obj.items():
        name = _snake_case(key)

        if name in names:
            values[name] = _decode_value(hints[name], value)

    try:
        return cls(**values)
    except TypeError as e:
        raise TypeError(f"failed to decode {cls.__qualname__}: {e}")


def _decode_value(hint: Any, value: Any) -> Any:
    """Convert a JSON value to the type described by a field annotation."""
    origin = getattr(hint, "__origin__", None)

    if origin is typing.Union:
        # Optional[T]
        if value is None:
            return None

        inner = [t for t in hint.__args__ if t is not type(None)]
        return _decode_value(inner[0], value)
    elif origin in (list, List):
        (item_hint,) = hint.__args__
        return [_decode_value(item_hint, v) for v in as_list(value)]
    elif is_dataclass(hint):
        return decode(hint, value)
    elif hint is str:
        return str(value)
    elif hint is int:
        return int(value)
    elif hint is bool:
        if isinstance(value, str):
            return value.lower() == "true"
        return bool(value)
    else:
        return value


def as_list(value: Any) -> List[Any]:
    """Normalize a value that may be missing, a single object, or a list to a list."""
    if value is None:
        return []
    elif isinstance(value, list):
        return value
    else:
        return [value]

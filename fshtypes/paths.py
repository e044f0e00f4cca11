"""
Parsed element paths for author rules.

Author paths are parsed once, when a rule is built, into an ordered list of
segments. The ElementTree only ever looks elements up by the parsed form.

Supported forms:
1. Plain element names: ``identifier``, ``code.coding``
2. Slices: ``component[systolic]`` or ``component:systolic``
3. Extensions by name or URL: ``extension[race]``, ``extension[http://x.org/ext]``
4. Choice elements: ``value[x]`` ([x] stays part of the name)
5. Indices (instances only): ``name[0].given[1]``
"""

from typing import List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

CHOICE_MARKER = "[x]"


class PathSegment(BaseModel):
    """One dot-separated step of a path."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Element name, including [x] for choices")
    slice_name: Optional[str] = Field(default=None, description="Slice selected under this element")
    index: Optional[int] = Field(default=None, ge=0, description="Array index (instance paths)")

    @property
    def is_choice(self) -> bool:
        return self.name.endswith(CHOICE_MARKER)

    def without_index(self) -> "PathSegment":
        if self.index is None:
            return self
        return PathSegment(name=self.name, slice_name=self.slice_name)

    def __str__(self) -> str:
        text = self.name
        if self.slice_name is not None:
            text += f"[{self.slice_name}]"
        if self.index is not None:
            text += f"[{self.index}]"
        return text


class FshPath(BaseModel):
    """
    A structured path. The empty path addresses the definition root
    (used by caret rules such as ``* ^status = #active``).
    """
    model_config = ConfigDict(frozen=True)

    segments: Tuple[PathSegment, ...] = Field(default_factory=tuple)

    @classmethod
    def parse(cls, text: Optional[str]) -> "FshPath":
        text = (text or "").strip()
        if text in ("", "."):
            return cls()
        return cls(segments=tuple(_parse_segment(raw) for raw in _split_segments(text)))

    @property
    def is_root(self) -> bool:
        return not self.segments

    @property
    def last(self) -> Optional[PathSegment]:
        return self.segments[-1] if self.segments else None

    def prefix(self, length: int) -> "FshPath":
        return FshPath(segments=self.segments[:length])

    def without_indices(self) -> "FshPath":
        return FshPath(segments=tuple(s.without_index() for s in self.segments))

    def __str__(self) -> str:
        return ".".join(str(s) for s in self.segments)


def _split_segments(text: str) -> List[str]:
    """Split on dots that are not inside brackets (slice names may be URLs)."""
    parts = []
    depth = 0
    current = ""
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced ']' in path '{text}'")
        if char == "." and depth == 0:
            if not current:
                raise ValueError(f"Empty segment in path '{text}'")
            parts.append(current)
            current = ""
        else:
            current += char
    if depth != 0:
        raise ValueError(f"Unbalanced '[' in path '{text}'")
    if not current:
        raise ValueError(f"Path '{text}' ends with a dot")
    parts.append(current)
    return parts


def _parse_segment(raw: str) -> PathSegment:
    name = raw
    brackets: List[str] = []
    if "[" in raw:
        name = raw[:raw.index("[")]
        rest = raw[len(name):]
        while rest:
            if not rest.startswith("[") or "]" not in rest:
                raise ValueError(f"Malformed path segment '{raw}'")
            close = _matching_bracket(rest)
            brackets.append(rest[1:close])
            rest = rest[close + 1:]
    elif ":" in raw:
        name, slice_name = raw.split(":", 1)
        brackets.append(slice_name)

    slice_name = None
    index = None
    for content in brackets:
        if content == "x" and slice_name is None and index is None:
            name += CHOICE_MARKER
        elif content.isdigit():
            index = int(content)
        elif slice_name is None:
            slice_name = content
        else:
            # Re-slices are addressed as a/b in the element id
            slice_name = f"{slice_name}/{content}"

    if not name:
        raise ValueError(f"Path segment '{raw}' has no element name")
    return PathSegment(name=name, slice_name=slice_name, index=index)


def _matching_bracket(text: str) -> int:
    depth = 0
    for position, char in enumerate(text):
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return position
    raise ValueError(f"Unbalanced brackets in '{text}'")

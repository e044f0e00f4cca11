"""
Element trees and StructureDefinitions.

An ElementTree is the ordered element list of a StructureDefinition. Order is
significant: a parent comes before its children, and slices follow the whole
child block of the element they slice. Every insertion (new slices, unfolded
children, replayed differentials) goes through one placement rule so that a
differential re-applied to its parent snapshot rebuilds the child exactly.
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import Field

from fshtypes import CHOICE_MARKER, FshPath
from exporter.errors import DuplicateSliceError
from .elements import ElementDefinition, ElementType, FhirModel, upper_first

logger = logging.getLogger(__name__)


class DefinitionType(str, Enum):
    """What a definition can be referenced as."""
    RESOURCE = "Resource"
    TYPE = "Type"
    PROFILE = "Profile"
    EXTENSION = "Extension"
    VALUE_SET = "ValueSet"
    CODE_SYSTEM = "CodeSystem"
    INSTANCE = "Instance"


STRUCTURE_TYPES = frozenset({
    DefinitionType.RESOURCE,
    DefinitionType.TYPE,
    DefinitionType.PROFILE,
    DefinitionType.EXTENSION,
})


class ElementTree:
    """
    Path-addressable view over an element list.
    Wraps the list it is given (no copy), so a tree built over a
    StructureDefinition's snapshot edits that snapshot in place.
    """

    def __init__(self, elements: Optional[List[ElementDefinition]] = None):
        self.elements: List[ElementDefinition] = elements if elements is not None else []

    def __iter__(self) -> Iterator[ElementDefinition]:
        return iter(self.elements)

    def __len__(self) -> int:
        return len(self.elements)

    @property
    def root(self) -> Optional[ElementDefinition]:
        return self.elements[0] if self.elements else None

    def clone(self) -> "ElementTree":
        return ElementTree([e.model_copy(deep=True) for e in self.elements])

    # --- Lookup ---

    def index_of(self, element_id: str) -> int:
        for position, element in enumerate(self.elements):
            if element.id == element_id:
                return position
        return -1

    def get(self, element_id: str) -> Optional[ElementDefinition]:
        position = self.index_of(element_id)
        return self.elements[position] if position >= 0 else None

    def children(self, element: ElementDefinition) -> List[ElementDefinition]:
        """Direct children, excluding slices of those children."""
        prefix = element.id + "."
        return [
            e for e in self.elements
            if e.id.startswith(prefix) and "." not in e.id[len(prefix):] and ":" not in e.id[len(prefix):]
        ]

    def slices(self, element: ElementDefinition) -> List[ElementDefinition]:
        prefix = element.id + (("/" if element.is_slice else ":"))
        return [
            e for e in self.elements
            if e.id.startswith(prefix) and not any(c in e.id[len(prefix):] for c in "./:")
        ]

    def slice_base(self, element: ElementDefinition) -> Optional[ElementDefinition]:
        """The element a slice was cut from (the sliced element for a re-slice)."""
        if not element.is_slice:
            return None
        return self.get(_anchor_of(element.id))

    def find_by_path(self, path: FshPath, library=None) -> Optional[ElementDefinition]:
        """
        Resolve a parsed path to an element. When a library is given, children
        of complex elements are unfolded on demand; slices are never created.
        """
        current = self.root
        if current is None:
            return None
        for segment in path.segments:
            child = self._find_child(current, segment.name, library)
            if child is None:
                return None
            if segment.slice_name is not None:
                child = self._find_slice(child, segment.slice_name)
                if child is None:
                    return None
            current = child
        return current

    def _find_child(self, parent: ElementDefinition, name: str, library) -> Optional[ElementDefinition]:
        child_id = f"{parent.id}.{name}"
        element = self.get(child_id)
        if element is not None:
            return element

        if library is not None and self.unfold(parent, library):
            element = self.get(child_id)
            if element is not None:
                return element

        # Choice shortcut: valueQuantity -> value[x] when Quantity is allowed
        for child in self.children(parent):
            if choice_type(child, name) is not None:
                return child
        return None

    def _find_slice(self, element: ElementDefinition, slice_name: str) -> Optional[ElementDefinition]:
        separator = "/" if element.is_slice else ":"
        found = self.get(f"{element.id}{separator}{slice_name}")
        if found is not None:
            return found
        # Extensions may also be addressed by their canonical URL
        for candidate in self.slices(element):
            if any(slice_name in t.profile for t in candidate.types):
                return candidate
        return None

    # --- Mutation ---

    def insert(self, element: ElementDefinition) -> None:
        """Place an element where the ordering invariant says it belongs."""
        anchor = _anchor_of(element.id)
        if self.index_of(anchor) < 0:
            raise ValueError(f"Cannot place {element.id}: {anchor} is not in the tree")
        if _is_slice_id(element.id):
            position = self._subtree_end(anchor)
        else:
            position = self._children_end(anchor)
        self.elements.insert(position, element)

    def _children_end(self, anchor_id: str) -> int:
        position = self.index_of(anchor_id) + 1
        while position < len(self.elements) and self.elements[position].id.startswith(anchor_id + "."):
            position += 1
        return position

    def _subtree_end(self, anchor_id: str) -> int:
        position = self.index_of(anchor_id) + 1
        prefixes = (anchor_id + ".", anchor_id + ":", anchor_id + "/")
        while position < len(self.elements) and self.elements[position].id.startswith(prefixes):
            position += 1
        return position

    def unfold(self, element: ElementDefinition, library) -> bool:
        """
        Materialise the children of an element that has none yet.
        A profiled type wins; otherwise slices copy their base element's
        children and other elements copy their single type's definition.
        """
        if self.children(element):
            return False

        source: List[ElementDefinition] = []
        source_id = source_path = ""

        definition = _type_definition(element, library, profiles_only=True)
        base = self.slice_base(element)
        if definition is None and base is not None:
            if library is not None and not self.children(base):
                self.unfold(base, library)
            source_id, source_path = base.id, base.path
            source = [e for e in self.elements if e.id.startswith(base.id + ".")]

        if not source:
            if definition is None:
                definition = _type_definition(element, library)
            if definition is None or len(definition.snapshot) < 2:
                return False
            source_id, source_path = definition.snapshot[0].id, definition.snapshot[0].path
            source = definition.snapshot[1:]

        for original in source:
            copy = original.model_copy(deep=True)
            copy.id = element.id + original.id[len(source_id):]
            copy.path = element.path + original.path[len(source_path):]
            self.insert(copy)
        logger.debug(f"Unfolded {len(source)} children under {element.id}")
        return True

    def create_slice(
        self,
        base: ElementDefinition,
        slice_name: str,
        types: Optional[List[ElementType]] = None
    ) -> ElementDefinition:
        """
        Add a named slice of ``base``, after any slices it already has.
        The slice starts as a copy of the base element with min 0 and no slicing.
        """
        if base.is_slice:
            slice_id = f"{base.id}/{slice_name}"
            full_name = f"{base.slice_name}/{slice_name}"
        else:
            slice_id = f"{base.id}:{slice_name}"
            full_name = slice_name

        if self.get(slice_id) is not None:
            raise DuplicateSliceError(
                f"Slice {slice_name} already exists on {base.id}",
                details={"element": base.id, "slice": slice_name},
            )

        new_slice = base.model_copy(deep=True)
        new_slice.id = slice_id
        new_slice.slice_name = full_name
        new_slice.slicing = None
        new_slice.min = 0
        if types is not None:
            new_slice.types = [t.model_copy(deep=True) for t in types]
        self.insert(new_slice)
        return new_slice

    def narrow_choice(self, element: ElementDefinition, allowed: List[ElementType]) -> None:
        """
        Restrict an element's types. A choice narrowed to one type keeps its
        ``[x]`` id; the type-specific name stays addressable through lookup.
        """
        element.types = [t.model_copy(deep=True) for t in allowed]

    # --- Differentials ---

    def diff(self, parent: "ElementTree", library=None) -> List[ElementDefinition]:
        """
        Elements that are new or differ from the parent. With a library,
        children this tree unfolded are compared against the same children
        unfolded in a copy of the parent, so only real changes are kept.
        The copy replays every emitted element the way apply_differential does.
        """
        base = parent.clone()
        changed: List[ElementDefinition] = []
        for element in self.elements:
            original = base.get(element.id)
            if original is None:
                original = base._materialize(element.id, library)
            if original is not None and original == element:
                continue
            base._put(element.model_copy(deep=True))
            changed.append(element.model_copy(deep=True))
        return changed

    def apply_differential(self, differential: List[ElementDefinition], library=None) -> "ElementTree":
        result = self.clone()
        for element in differential:
            if result.get(element.id) is None:
                result._materialize(element.id, library)
            result._put(element.model_copy(deep=True))
        return result

    def _put(self, element: ElementDefinition) -> None:
        position = self.index_of(element.id)
        if position >= 0:
            self.elements[position] = element
        else:
            self.insert(element)

    def _materialize(self, element_id: str, library) -> Optional[ElementDefinition]:
        """Unfold ancestors until ``element_id`` exists. Slices are never created."""
        if library is None or _is_slice_id(element_id):
            return None
        anchor_id = _anchor_of(element_id)
        if anchor_id == element_id:
            return None
        anchor = self.get(anchor_id)
        if anchor is None:
            anchor = self._materialize(anchor_id, library)
        if anchor is None:
            return None
        self.unfold(anchor, library)
        return self.get(element_id)


class StructureMapping(FhirModel):
    identity: str
    uri: Optional[str] = None
    name: Optional[str] = None
    comment: Optional[str] = None


class StructureDefinition(FhirModel):
    """
    A base or derived definition. Derived definitions carry a differential
    computed against their direct parent's snapshot.
    """
    id: str
    url: str
    name: str
    version: Optional[str] = None
    title: Optional[str] = None
    status: str = "draft"
    experimental: Optional[bool] = None
    date: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = None
    purpose: Optional[str] = None
    copyright: Optional[str] = None
    jurisdiction: List[Any] = Field(default_factory=list)
    fhir_version: Optional[str] = Field(default=None, alias="fhirVersion")
    mapping: List[StructureMapping] = Field(default_factory=list)
    kind: str = Field(default="resource", description="primitive-type | complex-type | resource | logical")
    abstract: bool = False
    context: List[Dict[str, str]] = Field(default_factory=list)
    type: str
    base_definition: Optional[str] = Field(default=None, alias="baseDefinition")
    derivation: Optional[str] = Field(default=None, description="specialization | constraint")
    snapshot: List[ElementDefinition] = Field(default_factory=list)
    differential: List[ElementDefinition] = Field(default_factory=list)

    @property
    def tree(self) -> ElementTree:
        return ElementTree(self.snapshot)

    @property
    def definition_type(self) -> DefinitionType:
        if self.derivation == "constraint":
            return DefinitionType.EXTENSION if self.type == "Extension" else DefinitionType.PROFILE
        if self.kind == "resource":
            return DefinitionType.RESOURCE
        return DefinitionType.TYPE

    @classmethod
    def from_fhir(cls, raw: Dict[str, Any]) -> "StructureDefinition":
        data = {k: v for k, v in raw.items() if k not in ("snapshot", "differential", "resourceType")}
        data["snapshot"] = [
            ElementDefinition.from_fhir(e) for e in raw.get("snapshot", {}).get("element", [])
        ]
        data["differential"] = [
            ElementDefinition.from_fhir(e) for e in raw.get("differential", {}).get("element", [])
        ]
        return cls.model_validate(data)

    def to_fhir(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"resourceType": "StructureDefinition"}
        data.update(self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"snapshot", "differential"},
        ))
        data = {k: v for k, v in data.items() if v != []}
        if self.snapshot:
            data["snapshot"] = {"element": [e.to_fhir() for e in self.snapshot]}
        if self.differential:
            data["differential"] = {"element": [e.to_fhir() for e in self.differential]}
        return data


def choice_type(element: ElementDefinition, name: str) -> Optional[str]:
    """
    The type a type-specific name selects on a choice element
    (``valueQuantity`` on ``value[x]`` -> ``Quantity``). None when ``name``
    is the choice name itself or does not name one of the element's types.
    """
    if not element.is_choice or name == element.name:
        return None
    stem = element.name[:-len(CHOICE_MARKER)]
    if not name.startswith(stem):
        return None
    suffix = name[len(stem):]
    for code in element.type_codes:
        if upper_first(code) == suffix:
            return code
    return None


def _is_slice_id(element_id: str) -> bool:
    return ":" in element_id.rsplit(".", 1)[-1]


def _anchor_of(element_id: str) -> str:
    """The element a new element is placed relative to."""
    last = element_id.rsplit(".", 1)[-1]
    if ":" in last:
        separator = "/" if "/" in last else ":"
        return element_id[:element_id.rindex(separator)]
    return element_id.rsplit(".", 1)[0]


def _type_definition(
    element: ElementDefinition,
    library,
    profiles_only: bool = False
) -> Optional[StructureDefinition]:
    if library is None or len(element.types) != 1:
        return None
    element_type = element.types[0]
    for profile in element_type.profile:
        definition = library.lookup(profile, STRUCTURE_TYPES)
        if isinstance(definition, StructureDefinition):
            return definition
    if profiles_only:
        return None
    definition = library.lookup(element_type.code, STRUCTURE_TYPES)
    return definition if isinstance(definition, StructureDefinition) else None

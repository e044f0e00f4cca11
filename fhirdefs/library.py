"""
The Definition Library: base-specification definitions loaded before
compilation starts. Read-only once constructed.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import Field

from .elements import ElementConstraint, FhirModel
from .structure import DefinitionType, StructureDefinition

logger = logging.getLogger(__name__)


class TerminologyDefinition(FhirModel):
    """A ValueSet or CodeSystem known only by identity (and codes, for systems)."""
    resource_type: str = Field(alias="resourceType")
    id: str
    url: str
    name: Optional[str] = None
    version: Optional[str] = None
    codes: List[str] = Field(default_factory=list)

    @property
    def definition_type(self) -> DefinitionType:
        if self.resource_type == "CodeSystem":
            return DefinitionType.CODE_SYSTEM
        return DefinitionType.VALUE_SET

    @classmethod
    def from_fhir(cls, raw: Dict[str, Any]) -> "TerminologyDefinition":
        data = dict(raw)
        data["codes"] = [c["code"] for c in _walk_concepts(raw.get("concept", []))]
        return cls.model_validate(data)


BaseDefinition = Union[StructureDefinition, TerminologyDefinition]


class DefinitionLibrary:
    """
    Index of base definitions by id, name and canonical URL.
    Lookups try each key in that order and may be restricted to kinds.
    """

    def __init__(self, definitions: Iterable[BaseDefinition] = ()):
        self._definitions: List[BaseDefinition] = []
        self._by_id: Dict[str, List[BaseDefinition]] = {}
        self._by_name: Dict[str, List[BaseDefinition]] = {}
        self._by_url: Dict[str, List[BaseDefinition]] = {}
        self._invariants: Dict[str, ElementConstraint] = {}

        for definition in definitions:
            self._index(definition)
        logger.info(f"Definition library loaded: {len(self._definitions)} definitions, "
                    f"{len(self._invariants)} invariants")

    def _index(self, definition: BaseDefinition) -> None:
        self._definitions.append(definition)
        self._by_id.setdefault(definition.id, []).append(definition)
        if definition.name:
            self._by_name.setdefault(definition.name, []).append(definition)
        self._by_url.setdefault(definition.url, []).append(definition)
        if isinstance(definition, StructureDefinition):
            for element in definition.snapshot:
                for constraint in element.constraints:
                    self._invariants.setdefault(constraint.key, constraint)

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self):
        return iter(self._definitions)

    def lookup(self, key: str, kinds: Optional[Iterable[DefinitionType]] = None) -> Optional[BaseDefinition]:
        if not key:
            return None
        allowed = set(kinds) if kinds is not None else None
        base_key = key.split("|", 1)[0]
        for index in (self._by_id, self._by_name, self._by_url):
            for definition in index.get(base_key, []):
                if allowed is None or definition.definition_type in allowed:
                    return definition
        return None

    def invariant(self, key: str) -> Optional[ElementConstraint]:
        constraint = self._invariants.get(key)
        return constraint.model_copy(deep=True) if constraint else None


def _walk_concepts(concepts: List[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    for concept in concepts:
        yield concept
        yield from _walk_concepts(concept.get("concept", []))

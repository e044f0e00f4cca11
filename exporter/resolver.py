"""
Name resolution across the two-tier namespace.

References are matched in a fixed order:
1. Local entity by id
2. Local entity by name
3. Local entity by canonical URL (after alias expansion)
4. Definition Library by id, name, then URL

A local entity therefore shadows a base definition with the same name.
Two local entities matching at the same step is an error, never a guess.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set

from fhirdefs import (
    BaseDefinition,
    DefinitionLibrary,
    DefinitionType,
    STRUCTURE_TYPES,
    StructureDefinition,
)
from fshtypes import Configuration, EntityKind, FshEntity
from .errors import AmbiguousReferenceError, UnresolvedReferenceError
from .tank import Tank

logger = logging.getLogger(__name__)

ENTITY_DEFINITION_TYPES = {
    EntityKind.PROFILE: DefinitionType.PROFILE,
    EntityKind.EXTENSION: DefinitionType.EXTENSION,
    EntityKind.VALUE_SET: DefinitionType.VALUE_SET,
    EntityKind.CODE_SYSTEM: DefinitionType.CODE_SYSTEM,
    EntityKind.INSTANCE: DefinitionType.INSTANCE,
}

RESOURCE_TYPE_PATHS = {
    EntityKind.PROFILE: "StructureDefinition",
    EntityKind.EXTENSION: "StructureDefinition",
    EntityKind.VALUE_SET: "ValueSet",
    EntityKind.CODE_SYSTEM: "CodeSystem",
}


def looks_like_url(reference: str) -> bool:
    return "://" in reference or reference.startswith("urn:")


@dataclass
class ResolvedTarget:
    """What a reference resolved to: a local entity or a library definition."""
    reference: str
    url: Optional[str]
    entity: Optional[FshEntity] = None
    definition: Optional[BaseDefinition] = None

    @property
    def is_local(self) -> bool:
        return self.entity is not None

    @property
    def name(self) -> str:
        if self.entity is not None:
            return self.entity.name
        return self.definition.name or self.definition.id


class NameResolver:
    """
    Resolves references for one compilation run.
    ``export_hook`` is installed by the structure exporter so that resolving a
    local parent can export it on demand.
    """

    def __init__(self, tank: Tank, library: DefinitionLibrary, config: Configuration):
        self.tank = tank
        self.library = library
        self.config = config
        self.export_hook: Optional[Callable[[FshEntity], Optional[StructureDefinition]]] = None

    def canonical_url(self, entity: FshEntity) -> Optional[str]:
        resource_type = RESOURCE_TYPE_PATHS.get(entity.entity_kind)
        if resource_type is None:
            return None
        return self.config.canonical_url(resource_type, entity.id)

    def resolve_local(self, reference: str, expected: Iterable[DefinitionType]) -> Optional[FshEntity]:
        """Steps 1-3 only. Raises AmbiguousReferenceError on a tie."""
        expected = set(expected)
        reference = reference.strip()
        expanded = self.tank.expand_alias(reference)
        candidates = [e for e in self.tank if ENTITY_DEFINITION_TYPES.get(e.entity_kind) in expected]

        steps = (
            ("id", lambda e: e.id in (reference, expanded)),
            ("name", lambda e: e.name in (reference, expanded)),
            ("url", lambda e: self.canonical_url(e) == expanded.split("|", 1)[0]),
        )
        for step, matches in steps:
            found = [e for e in candidates if matches(e)]
            if len(found) > 1:
                raise AmbiguousReferenceError(
                    f"Reference '{reference}' matches {len(found)} local entities by {step}: "
                    f"{', '.join(f'{e.kind} {e.name}' for e in found)}",
                    details={"reference": reference, "matches": [e.name for e in found]},
                )
            if found:
                return found[0]
        return None

    def shadowed_definition(self, entity: FshEntity) -> Optional[BaseDefinition]:
        """Base definition of the same family that ``entity``'s id or name hides, if any."""
        own = ENTITY_DEFINITION_TYPES.get(entity.entity_kind)
        if own is None or own == DefinitionType.INSTANCE:
            return None
        family = STRUCTURE_TYPES if own in STRUCTURE_TYPES else {own}
        for key in (entity.id, entity.name):
            definition = self.library.lookup(key, family)
            if definition is not None:
                return definition
        return None

    def resolve(self, reference: str, expected: Iterable[DefinitionType]) -> ResolvedTarget:
        expected = set(expected)
        reference = reference.strip()
        expanded = self.tank.expand_alias(reference)

        entity = self.resolve_local(reference, expected)
        if entity is not None:
            shadowed = self.library.lookup(expanded, expected)
            if shadowed is not None:
                logger.info(f"Local {entity.kind} {entity.name} shadows base definition {shadowed.url}")
            return ResolvedTarget(reference=reference, url=self.canonical_url(entity), entity=entity)

        definition = self.library.lookup(expanded, expected)
        if definition is not None:
            return ResolvedTarget(reference=reference, url=definition.url, definition=definition)

        kinds = ", ".join(sorted(k.value for k in expected))
        raise UnresolvedReferenceError(
            f"Cannot resolve '{reference}' as {kinds}",
            details={"reference": reference, "expected": sorted(k.value for k in expected)},
        )

    def resolve_url(self, reference: str, expected: Iterable[DefinitionType]) -> str:
        """Canonical URL for a reference; absolute URLs pass through unchanged."""
        expanded = self.tank.expand_alias(reference.strip())
        if looks_like_url(expanded):
            entity = self.resolve_local(expanded, expected)
            return self.canonical_url(entity) if entity is not None else expanded
        target = self.resolve(reference, expected)
        if target.url is None:
            raise UnresolvedReferenceError(f"'{reference}' has no canonical URL")
        return target.url

    def resolve_structure(
        self,
        reference: str,
        expected: Iterable[DefinitionType] = STRUCTURE_TYPES
    ) -> StructureDefinition:
        """
        Resolve to an exported StructureDefinition. A local target is exported
        on demand through ``export_hook`` if it is not done yet.
        """
        target = self.resolve(reference, expected)
        if target.is_local:
            if self.export_hook is None:
                raise UnresolvedReferenceError(f"'{reference}' is local but no exporter is attached")
            definition = self.export_hook(target.entity)
            if definition is None:
                raise UnresolvedReferenceError(
                    f"'{reference}' resolved to {target.entity.kind} {target.entity.name}, "
                    f"which could not be exported",
                    details={"reference": reference, "entity": target.entity.name},
                )
            return definition
        if not isinstance(target.definition, StructureDefinition):
            raise UnresolvedReferenceError(f"'{reference}' is not a structure definition")
        return target.definition

    def parent_reference(self, entity: FshEntity) -> Optional[str]:
        """Declared parent, or the configured default for the entity's kind."""
        parent = getattr(entity, "parent", None)
        if parent:
            return parent
        return self.config.default_parents.get(entity.entity_kind)

    def base_type_of(self, target: ResolvedTarget) -> Optional[str]:
        """
        The FHIR type a target ultimately constrains, found without exporting
        anything: local parents are followed by reference until the library.
        """
        seen: Set[int] = set()
        while target.is_local:
            if id(target.entity) in seen:
                return None
            seen.add(id(target.entity))
            parent = self.parent_reference(target.entity)
            if not parent:
                return None
            try:
                target = self.resolve(parent, STRUCTURE_TYPES)
            except UnresolvedReferenceError:
                return None
        definition = target.definition
        return definition.type if isinstance(definition, StructureDefinition) else None

"""
The Output Package: everything one compilation pass produced.

Structure definitions are kept as StructureDefinition models (snapshot and
differential); value sets, code systems and instances are FHIR JSON dicts.
Ids are unique per resource type; a second registration is rejected.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from fhirdefs import DefinitionLibrary, DefinitionType, StructureDefinition
from .errors import DuplicateIdError
from .state import Diagnostic

logger = logging.getLogger(__name__)


class Package:
    def __init__(self):
        self.profiles: List[StructureDefinition] = []
        self.extensions: List[StructureDefinition] = []
        self.value_sets: List[Dict[str, Any]] = []
        self.code_systems: List[Dict[str, Any]] = []
        self.instances: List[Dict[str, Any]] = []
        self.diagnostics: List[Diagnostic] = []

    # --- Registration ---

    def add_structure(self, definition: StructureDefinition) -> None:
        if self._find_structure(definition.id) is not None:
            raise DuplicateIdError(
                f"StructureDefinition/{definition.id} is already in the package",
                details={"id": definition.id},
            )
        if definition.definition_type == DefinitionType.EXTENSION:
            self.extensions.append(definition)
        else:
            self.profiles.append(definition)
        logger.debug(f"Registered StructureDefinition/{definition.id}")

    def add_resource(self, resource: Dict[str, Any]) -> None:
        """Register a ValueSet, CodeSystem or instance as FHIR JSON."""
        resource_type = resource["resourceType"]
        if self._find_resource(resource_type, resource["id"]) is not None:
            raise DuplicateIdError(
                f"{resource_type}/{resource['id']} is already in the package",
                details={"resourceType": resource_type, "id": resource["id"]},
            )
        if resource_type == "ValueSet":
            self.value_sets.append(resource)
        elif resource_type == "CodeSystem":
            self.code_systems.append(resource)
        else:
            self.instances.append(resource)
        logger.debug(f"Registered {resource_type}/{resource['id']}")

    # --- Access ---

    def all(self) -> List[Any]:
        """Every exported resource in registration order, structures first."""
        return [*self.profiles, *self.extensions, *self.value_sets, *self.code_systems, *self.instances]

    def get(self, resource_id: str) -> Optional[Any]:
        definition = self._find_structure(resource_id)
        if definition is not None:
            return definition
        for resource in [*self.value_sets, *self.code_systems, *self.instances]:
            if resource["id"] == resource_id:
                return resource
        return None

    def lookup(self, key: str, kinds: Optional[Iterable[DefinitionType]] = None) -> Optional[StructureDefinition]:
        """Same contract as DefinitionLibrary.lookup, over exported structures."""
        allowed = set(kinds) if kinds is not None else None
        key = key.split("|", 1)[0]
        for definition in [*self.profiles, *self.extensions]:
            if key in (definition.id, definition.name, definition.url):
                if allowed is None or definition.definition_type in allowed:
                    return definition
        return None

    def to_json(self) -> List[Dict[str, Any]]:
        resources: List[Dict[str, Any]] = [d.to_fhir() for d in [*self.profiles, *self.extensions]]
        resources.extend(self.value_sets)
        resources.extend(self.code_systems)
        resources.extend(self.instances)
        return resources

    def __len__(self) -> int:
        return len(self.all())

    def _find_structure(self, resource_id: str) -> Optional[StructureDefinition]:
        for definition in [*self.profiles, *self.extensions]:
            if definition.id == resource_id:
                return definition
        return None

    def _find_resource(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        for resource in [*self.value_sets, *self.code_systems, *self.instances]:
            if resource["resourceType"] == resource_type and resource["id"] == resource_id:
                return resource
        return None


class DefinitionFisher:
    """
    Looks structure definitions up in the package being built, then in the
    library, so local profiles and extensions can be unfolded like base ones.
    """

    def __init__(self, package: Package, library: DefinitionLibrary):
        self.package = package
        self.library = library

    def lookup(self, key: str, kinds: Optional[Iterable[DefinitionType]] = None):
        found = self.package.lookup(key, kinds)
        if found is not None:
            return found
        return self.library.lookup(key, kinds)

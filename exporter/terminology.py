"""
ValueSet and CodeSystem export.

Terminology entities have no element tree: their rules build the FHIR JSON
directly. Caret rules may only address the resource root.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from fhirdefs import DefinitionType, TerminologyDefinition
from fshtypes import (
    CaretValueRule,
    CodeSystem,
    ConceptRule,
    Configuration,
    FshCode,
    FshEntity,
    ValueSet,
    ValueSetComponentRule,
)
from fshtypes.values import to_fhir, to_primitive
from .errors import FshError, InvalidRuleError
from .resolver import NameResolver
from .state import ExportState

logger = logging.getLogger(__name__)

# caret path -> expected python type, on ValueSet and CodeSystem roots
RESOURCE_CARET_FIELDS = {
    "status": str,
    "title": str,
    "name": str,
    "description": str,
    "publisher": str,
    "purpose": str,
    "experimental": bool,
    "version": str,
    "copyright": str,
    "date": str,
    "immutable": bool,
}

CODE_SYSTEM_CARET_FIELDS = {
    "caseSensitive": bool,
    "content": str,
    "hierarchyMeaning": str,
    "versionNeeded": bool,
}

PUBLICATION_STATUSES = ("draft", "active", "retired", "unknown")


def resource_metadata(entity: FshEntity, resource_type: str, url: str, config: Configuration) -> Dict[str, Any]:
    """Common header every exported terminology resource starts from."""
    resource: Dict[str, Any] = {
        "resourceType": resource_type,
        "id": entity.id,
        "url": url,
        "name": entity.name,
        "title": entity.title,
        "status": config.status,
        "version": config.version,
        "publisher": config.publisher,
        "description": entity.description,
    }
    return {k: v for k, v in resource.items() if v is not None}


def set_resource_meta(
    resource: Dict[str, Any],
    rule: CaretValueRule,
    extra_fields: Optional[Dict[str, type]] = None
) -> None:
    if not rule.path.is_root:
        raise InvalidRuleError(
            f"Caret rules on {resource['resourceType']} must address the resource itself, not '{rule.path}'"
        )
    if rule.caret_path == "jurisdiction":
        if not isinstance(rule.value, FshCode):
            raise InvalidRuleError("jurisdiction must be a code")
        resource.setdefault("jurisdiction", []).append(to_fhir(rule.value, "CodeableConcept"))
        return

    fields = dict(RESOURCE_CARET_FIELDS)
    fields.update(extra_fields or {})
    expected = fields.get(rule.caret_path)
    if expected is None:
        raise InvalidRuleError(
            f"'{rule.caret_path}' is not a recognized {resource['resourceType']} field",
            details={"caret_path": rule.caret_path},
        )
    primitive = to_primitive(rule.value)
    if not isinstance(primitive, expected):
        raise InvalidRuleError(f"^{rule.caret_path} expects a {expected.__name__}, got {rule.value!r}")
    if rule.caret_path == "status" and primitive not in PUBLICATION_STATUSES:
        raise InvalidRuleError(f"'{primitive}' is not a publication status")
    resource[rule.caret_path] = primitive


class ValueSetExporter:
    def __init__(self, resolver: NameResolver, config: Configuration):
        self.resolver = resolver
        self.config = config

    def export(self, value_set: ValueSet, state: ExportState) -> Dict[str, Any]:
        resource = resource_metadata(value_set, "ValueSet", self.resolver.canonical_url(value_set), self.config)
        compose: Dict[str, List[Dict[str, Any]]] = {"include": [], "exclude": []}

        for index, rule in enumerate(value_set.rules):
            try:
                if isinstance(rule, CaretValueRule):
                    set_resource_meta(resource, rule)
                    continue
                key = "include" if rule.inclusion else "exclude"
                for component in self._components(rule):
                    _merge_component(compose[key], component)
            except FshError as e:
                state.record_failure(value_set, e, rule_index=index, source=rule.source_info)

        compose = {k: v for k, v in compose.items() if v}
        if compose:
            resource["compose"] = compose
        logger.info(f"Exported ValueSet {value_set.name} ({len(compose.get('include', []))} includes)")
        return resource

    def _components(self, rule: ValueSetComponentRule) -> List[Dict[str, Any]]:
        value_sets = [self.resolver.resolve_url(v, {DefinitionType.VALUE_SET}) for v in rule.from_value_sets]
        system = self._system_url(rule.from_system) if rule.from_system else None

        if not rule.concepts:
            component: Dict[str, Any] = {}
            if system:
                component["system"] = system
            if value_sets:
                component["valueSet"] = value_sets
            return [component]

        # One component per system, concepts in declaration order
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for concept in rule.concepts:
            concept_system = self._system_url(concept.system) if concept.system else system
            self._check_code(concept_system, concept)
            entry = {"code": concept.code}
            if concept.display:
                entry["display"] = concept.display
            grouped.setdefault(concept_system, []).append(entry)

        components = []
        for concept_system, concepts in grouped.items():
            component = {"system": concept_system, "concept": concepts}
            if value_sets:
                component["valueSet"] = value_sets
            components.append(component)
        return components

    def _system_url(self, system: str) -> str:
        return self.resolver.resolve_url(system, {DefinitionType.CODE_SYSTEM})

    def _check_code(self, system_url: str, concept: FshCode) -> None:
        """Codes from a known code system must exist in it."""
        known, codes = self._known_codes(system_url)
        if known and concept.code not in codes:
            raise InvalidRuleError(
                f"Code {concept.code} is not defined in code system {system_url}",
                details={"system": system_url, "code": concept.code},
            )

    def _known_codes(self, system_url: str) -> Tuple[bool, List[str]]:
        entity = self.resolver.resolve_local(system_url, {DefinitionType.CODE_SYSTEM})
        if isinstance(entity, CodeSystem):
            return True, [r.code for r in entity.rules if isinstance(r, ConceptRule)]
        definition = self.resolver.library.lookup(system_url, {DefinitionType.CODE_SYSTEM})
        if isinstance(definition, TerminologyDefinition) and definition.codes:
            return True, definition.codes
        return False, []


class CodeSystemExporter:
    def __init__(self, resolver: NameResolver, config: Configuration):
        self.resolver = resolver
        self.config = config

    def export(self, code_system: CodeSystem, state: ExportState) -> Dict[str, Any]:
        resource = resource_metadata(code_system, "CodeSystem", self.resolver.canonical_url(code_system), self.config)
        resource["content"] = "complete"
        concepts: List[Dict[str, Any]] = []

        for index, rule in enumerate(code_system.rules):
            try:
                if isinstance(rule, CaretValueRule):
                    set_resource_meta(resource, rule, CODE_SYSTEM_CARET_FIELDS)
                else:
                    concepts.append(self._concept(rule, concepts))
            except FshError as e:
                state.record_failure(code_system, e, rule_index=index, source=rule.source_info)

        if concepts:
            resource["count"] = len(concepts)
            resource["concept"] = concepts
        logger.info(f"Exported CodeSystem {code_system.name} ({len(concepts)} concepts)")
        return resource

    def _concept(self, rule: ConceptRule, existing: List[Dict[str, Any]]) -> Dict[str, Any]:
        if any(c["code"] == rule.code for c in existing):
            raise InvalidRuleError(f"Code {rule.code} is defined more than once", details={"code": rule.code})
        concept = {"code": rule.code}
        if rule.display:
            concept["display"] = rule.display
        if rule.definition:
            concept["definition"] = rule.definition
        return concept


def _merge_component(components: List[Dict[str, Any]], component: Dict[str, Any]) -> None:
    """Fold concepts into an existing component for the same system and value sets."""
    for existing in components:
        same_source = (
            existing.get("system") == component.get("system")
            and existing.get("valueSet") == component.get("valueSet")
        )
        if same_source and "concept" in existing and "concept" in component:
            known = {c["code"] for c in existing["concept"]}
            existing["concept"].extend(c for c in component["concept"] if c["code"] not in known)
            return
        if same_source and "concept" not in existing and "concept" not in component:
            return
    components.append(component)

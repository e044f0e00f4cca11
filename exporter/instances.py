"""
Instance export.

An instance is FHIR JSON conforming to a profile, extension or resource.
Each assignment path is checked against (a working copy of) the target's
snapshot, so the element decides the JSON key for choices, whether the
value sits in a list, and which FHIR type the value is rendered as.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from fhirdefs import ElementDefinition, ElementTree, STRUCTURE_TYPES, StructureDefinition, upper_first
from fshtypes import AssignmentRule, Instance, InstanceUsage, PathSegment
from fshtypes.values import to_fhir
from .applier import RuleApplier, named_type
from .errors import FshError, IllegalNarrowingError, InvalidRuleError, PathNotFoundError
from .resolver import NameResolver
from .state import ExportState

logger = logging.getLogger(__name__)


class InstanceExporter:
    def __init__(self, resolver: NameResolver, applier: RuleApplier):
        self.resolver = resolver
        self.applier = applier

    def export(self, instance: Instance, state: ExportState) -> Dict[str, Any]:
        """
        Build the instance JSON. Raises if ``instance_of`` cannot be resolved;
        rule problems are recorded and the rule skipped.
        """
        definition = self.resolver.resolve_structure(instance.instance_of, STRUCTURE_TYPES)
        tree = definition.tree.clone()

        resource: Dict[str, Any] = {"resourceType": definition.type, "id": instance.id}
        if definition.derivation == "constraint":
            resource["meta"] = {"profile": [definition.url]}
        self._assign_required_values(tree, resource)

        writer = _JsonWriter(resource)
        for index, rule in enumerate(instance.rules):
            try:
                if not isinstance(rule, AssignmentRule):
                    raise InvalidRuleError(
                        f"Instances only accept assignment rules, got a {rule.kind} rule",
                        details={"kind": rule.kind},
                    )
                self._assign(definition, tree, writer, rule)
            except FshError as e:
                state.record_failure(instance, e, rule_index=index, source=rule.source_info)

        logger.info(f"Exported {definition.type} instance {instance.name} ({instance.usage.value})")
        return resource

    def is_exported(self, instance: Instance) -> bool:
        """Inline instances are only ever embedded in other resources."""
        return instance.usage != InstanceUsage.INLINE

    def _assign_required_values(self, tree: ElementTree, resource: Dict[str, Any]) -> None:
        """Required top-level elements with a fixed value get it without an explicit rule."""
        root = tree.root
        if root is None:
            return
        for element in tree.children(root):
            if element.min < 1 or element.fixed is None or element.is_choice:
                continue
            value = element.fixed
            resource[element.name] = [value] if element.is_array else value

    def _assign(
        self,
        definition: StructureDefinition,
        tree: ElementTree,
        writer: "_JsonWriter",
        rule: AssignmentRule
    ) -> None:
        if rule.path.is_root:
            raise InvalidRuleError("An assignment needs an element path")

        elements: List[ElementDefinition] = []
        for length in range(1, len(rule.path.segments) + 1):
            prefix = rule.path.prefix(length).without_indices()
            element = tree.find_by_path(prefix, self.applier.fisher)
            if element is None:
                raise PathNotFoundError(
                    f"No element found at path '{prefix}' in {definition.name}",
                    details={"path": str(rule.path), "definition": definition.name},
                )
            elements.append(element)

        leaf = elements[-1]
        value = self.applier.resolve_value(rule.value)
        type_code = self.applier.assignable_type(leaf, value, named_type(leaf, rule.path))
        rendered = to_fhir(value, type_code)
        if leaf.fixed is not None and leaf.fixed != rendered:
            raise IllegalNarrowingError(
                f"{leaf.id} is fixed to {leaf.fixed!r}; cannot assign {value}",
                details={"element": leaf.id},
            )

        steps = []
        for segment, element in zip(rule.path.segments, elements):
            steps.append((_json_key(segment, element, type_code if element is leaf else None), segment, element))
        writer.write(steps, rendered)


class _JsonWriter:
    """
    Writes values into nested JSON, keeping track of which list entry each
    (slice, index) pair was given so later paths land in the same entry.
    """

    def __init__(self, resource: Dict[str, Any]):
        self.resource = resource
        self._markers: Dict[int, List[Tuple[str, int]]] = {}

    def write(self, steps: List[Tuple[str, PathSegment, ElementDefinition]], value: Any) -> None:
        current: Dict[str, Any] = self.resource
        for position, (key, segment, element) in enumerate(steps):
            is_leaf = position == len(steps) - 1
            if not element.is_array:
                if is_leaf:
                    current[key] = value
                    return
                current = current.setdefault(key, {})
                if not isinstance(current, dict):
                    raise InvalidRuleError(f"'{key}' already holds a primitive value")
                continue

            items = current.setdefault(key, [])
            slot = self._slot(segment, items, element)
            if is_leaf:
                items[slot] = value
                return
            current = items[slot]
            if not isinstance(current, dict):
                raise InvalidRuleError(f"'{key}[{slot}]' already holds a primitive value")

    def _slot(self, segment: PathSegment, items: List[Any], element: ElementDefinition) -> int:
        """Position of the entry for this (slice, index), inserted in index order on first use."""
        markers = self._markers.setdefault(id(items), [])
        marker = (segment.slice_name or "", segment.index or 0)
        if marker in markers:
            return markers.index(marker)

        position = len(items)
        same_slice = [i for i, (name, _) in enumerate(markers) if name == marker[0]]
        if same_slice:
            position = same_slice[-1] + 1
            for i in same_slice:
                if markers[i][1] > marker[1]:
                    position = i
                    break

        entry: Dict[str, Any] = {}
        if element.is_extension():
            url = _extension_url(element, segment)
            if url:
                entry["url"] = url
        items.insert(position, entry)
        markers.insert(position, marker)
        return position


def _json_key(segment: PathSegment, element: ElementDefinition, leaf_type: Optional[str] = None) -> str:
    if not segment.is_choice:
        return segment.name
    stem = segment.name[:-len("[x]")]
    if leaf_type is not None:
        return stem + upper_first(leaf_type)
    if len(element.types) != 1:
        raise InvalidRuleError(
            f"{element.id} allows {', '.join(element.type_codes)}; name the type (e.g. {stem}Quantity)"
        )
    return stem + upper_first(element.types[0].code)


def _extension_url(element: ElementDefinition, segment: PathSegment) -> str:
    for element_type in element.types:
        if element_type.profile:
            return element_type.profile[0]
    return segment.slice_name or ""

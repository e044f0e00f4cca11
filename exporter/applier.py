"""
Rule Application Logic.

This module answers one question per rule: "May this rule change this
element, and if so, how?" Every handler locates its target, checks the
rule's legality against the element's *current* state, and either mutates
the tree or raises a FshError leaving the tree untouched.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from fhirdefs import (
    DefinitionType,
    Discriminator,
    ElementBinding,
    ElementConstraint,
    ElementDefinition,
    ElementSlicing,
    ElementType,
    STRUCTURE_TYPES,
    StructureDefinition,
    choice_type,
)
from fshtypes import (
    AssignableValue,
    AssignmentRule,
    BindingRule,
    BindingStrength,
    CardinalityRule,
    CaretValueRule,
    ContainsItem,
    ContainsRule,
    FlagRule,
    FshCanonical,
    FshCode,
    FshPath,
    FshReference,
    ObeysRule,
    OnlyRule,
    RuleKind,
    STRUCTURE_RULE_KINDS,
)
from fshtypes.values import check_range, compatible_types, to_fhir, to_primitive
from .errors import (
    FshError,
    IllegalNarrowingError,
    InvalidRuleError,
    PathNotFoundError,
    UnresolvedReferenceError,
)
from .resolver import NameResolver, looks_like_url

logger = logging.getLogger(__name__)

BASE_RESOURCE_URL = "http://hl7.org/fhir/StructureDefinition/Resource"

# Rule kind -> handler method. Must cover every structure rule kind.
_DISPATCH: Dict[RuleKind, str] = {
    RuleKind.CARDINALITY: "_apply_cardinality",
    RuleKind.FLAG: "_apply_flag",
    RuleKind.BINDING: "_apply_binding",
    RuleKind.ASSIGNMENT: "_apply_assignment",
    RuleKind.CONTAINS: "_apply_contains",
    RuleKind.OBEYS: "_apply_obeys",
    RuleKind.CARET_VALUE: "_apply_caret_value",
    RuleKind.ONLY: "_apply_only",
}

if set(_DISPATCH) != STRUCTURE_RULE_KINDS:
    raise RuntimeError(f"Rule applier does not handle: {sorted(STRUCTURE_RULE_KINDS - set(_DISPATCH))}")

# caret path -> (attribute, expected python type)
ELEMENT_CARET_FIELDS = {
    "short": ("short", str),
    "definition": ("definition", str),
    "comment": ("comment", str),
    "requirements": ("requirements", str),
    "label": ("label", str),
    "meaningWhenMissing": ("meaning_when_missing", str),
    "isModifierReason": ("is_modifier_reason", str),
    "maxLength": ("max_length", int),
    "mustSupport": ("must_support", bool),
    "isSummary": ("is_summary", bool),
}

ROOT_CARET_FIELDS = {
    "status": ("status", str),
    "title": ("title", str),
    "description": ("description", str),
    "publisher": ("publisher", str),
    "purpose": ("purpose", str),
    "experimental": ("experimental", bool),
    "version": ("version", str),
    "abstract": ("abstract", bool),
    "copyright": ("copyright", str),
    "date": ("date", str),
}

PUBLICATION_STATUSES = ("draft", "active", "retired", "unknown")
SLICING_RULES = ("open", "closed", "openAtEnd")


class RuleApplier:
    """
    Applies structure rules to a definition being exported.
    ``fisher`` looks definitions up for unfolding (exported local ones
    first, then the library).
    """

    def __init__(self, resolver: NameResolver, fisher):
        self.resolver = resolver
        self.fisher = fisher

    def apply(self, definition: StructureDefinition, rule) -> None:
        """Apply one rule. Raises a FshError if the rule is skipped."""
        try:
            method_name = _DISPATCH[RuleKind(rule.kind)]
        except (KeyError, ValueError):
            raise InvalidRuleError(f"{rule.kind} rules cannot be applied to a {definition.type} definition")
        handler: Callable[[StructureDefinition, Any], None] = getattr(self, method_name)
        handler(definition, rule)

    def find_element(self, definition: StructureDefinition, path: FshPath) -> ElementDefinition:
        element = definition.tree.find_by_path(path, self.fisher)
        if element is None:
            raise PathNotFoundError(
                f"No element found at path '{path}' in {definition.name}",
                details={"path": str(path), "definition": definition.name},
            )
        return element

    # --- Cardinality ---

    def _apply_cardinality(self, definition: StructureDefinition, rule: CardinalityRule) -> None:
        element = self.find_element(definition, rule.path)
        new_min = rule.min if rule.min is not None else element.min
        new_max = rule.max if rule.max is not None else element.max
        new_max_value = _max_value(new_max)
        details = {
            "element": element.id,
            "current": f"{element.min}..{element.max}",
            "requested": f"{new_min}..{new_max}",
        }

        if new_min < element.min or new_max_value > element.max_value:
            raise IllegalNarrowingError(
                f"Cannot change cardinality of {element.id} from {element.min}..{element.max} "
                f"to {new_min}..{new_max}; cardinality may only narrow",
                details=details,
            )
        if new_min > new_max_value:
            raise IllegalNarrowingError(
                f"Cardinality {new_min}..{new_max} on {element.id} has min above max",
                details=details,
            )

        tree = definition.tree
        slice_mins = sum(s.min for s in tree.slices(element))
        if slice_mins > new_max_value:
            raise IllegalNarrowingError(
                f"Max {new_max} on {element.id} is below the {slice_mins} its slices require",
                details=details,
            )

        element.min = new_min
        element.max = new_max

    # --- Flags ---

    def _apply_flag(self, definition: StructureDefinition, rule: FlagRule) -> None:
        element = self.find_element(definition, rule.path)
        statuses = [
            status for flag, status in (
                (rule.trial_use, "trial-use"),
                (rule.normative, "normative"),
                (rule.draft, "draft"),
            ) if flag
        ]
        if len(statuses) > 1:
            raise InvalidRuleError(f"Conflicting standards status flags on {element.id}: {', '.join(statuses)}")
        if rule.must_support is False and element.must_support:
            raise IllegalNarrowingError(
                f"{element.id} is already must-support and cannot be relaxed",
                details={"element": element.id},
            )

        if rule.must_support is not None:
            element.must_support = rule.must_support
        if rule.summary is not None:
            element.is_summary = rule.summary
        if rule.modifier is not None:
            element.is_modifier = rule.modifier
        if statuses:
            element.standards_status = statuses[0]

    # --- Binding ---

    def _apply_binding(self, definition: StructureDefinition, rule: BindingRule) -> None:
        element = self.find_element(definition, rule.path)
        if not element.has_binding_slot():
            raise InvalidRuleError(
                f"{element.id} ({', '.join(element.type_codes) or 'no type'}) cannot be bound to a value set",
                details={"element": element.id},
            )
        value_set = self.resolver.resolve_url(rule.value_set, {DefinitionType.VALUE_SET})
        strength = BindingStrength(rule.strength)
        current = element.binding

        if current is not None and strength.rank < BindingStrength(current.strength).rank:
            raise IllegalNarrowingError(
                f"Cannot weaken binding on {element.id} from {BindingStrength(current.strength).value} "
                f"to {strength.value}",
                details={"element": element.id, "current": current.strength, "requested": strength.value},
            )

        element.binding = ElementBinding(
            strength=strength,
            value_set=value_set,
            description=current.description if current else None,
        )

    # --- Assignment ---

    def _apply_assignment(self, definition: StructureDefinition, rule: AssignmentRule) -> None:
        element = self.find_element(definition, rule.path)
        value = self.resolve_value(rule.value)
        type_code = self.assignable_type(element, value, named_type(element, rule.path))
        rendered = to_fhir(value, type_code)

        existing = element.assigned_value()
        if existing is not None:
            existing_type = element.fixed_type if element.fixed is not None else element.pattern_type
            if existing != rendered or existing_type != type_code:
                raise IllegalNarrowingError(
                    f"{element.id} already has an assigned value; cannot assign {value}",
                    details={"element": element.id, "current": existing},
                )
            if rule.exactly and element.fixed is None:
                element.fixed, element.fixed_type = rendered, type_code
                element.pattern = element.pattern_type = None
            return

        if rule.exactly:
            element.fixed, element.fixed_type = rendered, type_code
        else:
            element.pattern, element.pattern_type = rendered, type_code

    def assignable_type(
        self,
        element: ElementDefinition,
        value: AssignableValue,
        named_type: Optional[str] = None
    ) -> str:
        """
        First of the element's types that can hold the value. A path that
        names a choice type (``valueQuantity``) allows that type only.
        """
        allowed = compatible_types(value)
        offered = [named_type] if named_type else element.type_codes
        candidates = [code for code in offered if code in allowed]
        if not candidates:
            raise IllegalNarrowingError(
                f"Cannot assign {value} to {element.id}: value is not compatible with "
                f"{', '.join(offered) or 'an untyped element'}",
                details={"element": element.id, "types": offered},
            )
        reason = check_range(value, candidates[0])
        if reason:
            raise IllegalNarrowingError(f"Cannot assign to {element.id}: {reason}")
        return candidates[0]

    def resolve_value(self, value: AssignableValue) -> AssignableValue:
        """Expand aliases and local names inside a value."""
        if isinstance(value, FshCode) and value.system:
            system = self.resolver.tank.expand_alias(value.system)
            if not looks_like_url(system):
                system = self.resolver.resolve_url(system, {DefinitionType.CODE_SYSTEM})
            return value.model_copy(update={"system": system})
        if isinstance(value, FshCanonical):
            url = self.resolver.resolve_url(value.entity, set(DefinitionType))
            return value.model_copy(update={"entity": url})
        if isinstance(value, FshReference):
            return value.model_copy(update={"reference": self.reference_string(value.reference)})
        return value

    def reference_string(self, reference: str) -> str:
        """``Type/id`` for a local instance name; anything else is kept literally."""
        if "/" in reference or looks_like_url(reference):
            return reference
        instance = self.resolver.resolve_local(reference, {DefinitionType.INSTANCE})
        if instance is None:
            return reference
        target = self.resolver.resolve(instance.instance_of, STRUCTURE_TYPES)
        resource_type = self.resolver.base_type_of(target)
        if resource_type is None:
            raise UnresolvedReferenceError(f"Cannot determine the resource type of instance {instance.name}")
        return f"{resource_type}/{instance.id}"

    # --- Contains ---

    def _apply_contains(self, definition: StructureDefinition, rule: ContainsRule) -> None:
        element = self.find_element(definition, rule.path)
        if element.slicing is None and not element.is_extension():
            raise InvalidRuleError(
                f"{element.id} is not sliced; define slicing before adding slices",
                details={"element": element.id},
            )

        tree = definition.tree
        failures: List[FshError] = []
        for item in rule.items:
            try:
                tree.create_slice(element, item.name, self._slice_types(element, item))
            except FshError as e:
                failures.append(e)
                continue
            if element.slicing is None:
                element.slicing = ElementSlicing(
                    discriminator=[Discriminator(type="value", path="url")],
                    rules="open",
                )

        if len(failures) == 1:
            raise failures[0]
        if failures:
            raise type(failures[0])(
                "; ".join(f.message for f in failures),
                details={"element": element.id, "failures": [f.message for f in failures]},
            )

    def _slice_types(self, element: ElementDefinition, item: ContainsItem) -> Optional[List[ElementType]]:
        if element.is_extension():
            reference = item.type or item.name
            try:
                url = self.resolver.resolve_url(reference, {DefinitionType.EXTENSION})
            except UnresolvedReferenceError:
                if item.type is not None:
                    raise
                # Inline extension: the slice keeps the plain Extension type
                return None
            return [ElementType(code="Extension", profile=[url])]

        if item.type is None:
            return None
        if item.type in element.type_codes:
            return [ElementType(code=item.type)]
        target = self.resolver.resolve(item.type, STRUCTURE_TYPES)
        base_type = self.resolver.base_type_of(target)
        if base_type not in element.type_codes:
            raise IllegalNarrowingError(
                f"Slice {item.name} type {item.type} ({base_type}) is not allowed on {element.id}",
                details={"element": element.id, "types": element.type_codes},
            )
        return [ElementType(code=base_type, profile=[target.url])]

    # --- Obeys ---

    def _apply_obeys(self, definition: StructureDefinition, rule: ObeysRule) -> None:
        element = self.find_element(definition, rule.path)
        if any(c.key == rule.invariant for c in element.constraints):
            return

        invariant = self.resolver.tank.invariant(rule.invariant)
        if invariant is not None:
            constraint = ElementConstraint(
                key=invariant.key,
                severity=invariant.severity.value,
                human=invariant.description,
                expression=invariant.expression,
                xpath=invariant.xpath,
                source=definition.url,
            )
        else:
            constraint = self.resolver.library.invariant(rule.invariant)
        if constraint is None:
            raise UnresolvedReferenceError(
                f"Invariant {rule.invariant} is not defined",
                details={"invariant": rule.invariant},
            )
        element.constraints.append(constraint)

    # --- Caret values ---

    def _apply_caret_value(self, definition: StructureDefinition, rule: CaretValueRule) -> None:
        value = self.resolve_value(rule.value)
        if rule.path.is_root:
            set_root_meta(definition, rule.caret_path, value)
        else:
            element = self.find_element(definition, rule.path)
            set_element_meta(element, rule.caret_path, value)

    # --- Only ---

    def _apply_only(self, definition: StructureDefinition, rule: OnlyRule) -> None:
        element = self.find_element(definition, rule.path)
        if not element.types:
            raise InvalidRuleError(f"{element.id} has no types to narrow", details={"element": element.id})

        narrowed: List[ElementType] = []
        reference_targets: List[str] = []
        for item in rule.types:
            if item.is_reference:
                reference_targets.append(self._reference_target(element, item.type))
            else:
                narrowed.append(self._only_type(element, item.type))

        if reference_targets:
            narrowed.append(ElementType(code="Reference", target_profile=reference_targets))

        definition.tree.narrow_choice(element, _merge_types(narrowed))

    def _only_type(self, element: ElementDefinition, type_name: str) -> ElementType:
        for current in element.types:
            if current.code == type_name:
                return current.model_copy(deep=True)

        target = self.resolver.resolve(type_name, STRUCTURE_TYPES)
        base_type = self.resolver.base_type_of(target)
        if base_type not in element.type_codes:
            raise IllegalNarrowingError(
                f"{type_name} is not among the allowed types of {element.id} "
                f"({', '.join(element.type_codes)})",
                details={"element": element.id, "requested": type_name, "allowed": element.type_codes},
            )
        if target.definition is not None and target.definition.definition_type in (
            DefinitionType.RESOURCE, DefinitionType.TYPE
        ):
            return ElementType(code=base_type)
        return ElementType(code=base_type, profile=[target.url])

    def _reference_target(self, element: ElementDefinition, target_name: str) -> str:
        reference_type = next((t for t in element.types if t.code == "Reference"), None)
        if reference_type is None:
            raise IllegalNarrowingError(
                f"{element.id} does not allow Reference types",
                details={"element": element.id, "allowed": element.type_codes},
            )
        target = self.resolver.resolve(target_name, STRUCTURE_TYPES)
        allowed = set(reference_type.target_profile)
        if not allowed or target.url in allowed or BASE_RESOURCE_URL in allowed:
            return target.url

        base_type = self.resolver.base_type_of(target)
        base = self.resolver.library.lookup(base_type, {DefinitionType.RESOURCE}) if base_type else None
        if base is None or base.url not in allowed:
            raise IllegalNarrowingError(
                f"Reference({target_name}) is not among the allowed targets of {element.id}",
                details={"element": element.id, "allowed": sorted(allowed)},
            )
        return target.url


def set_element_meta(element: ElementDefinition, caret_path: str, value: AssignableValue) -> None:
    """Set a metadata field on an element (``* path ^short = "..."``)."""
    if caret_path in ELEMENT_CARET_FIELDS:
        attribute, expected = ELEMENT_CARET_FIELDS[caret_path]
        setattr(element, attribute, _expect(caret_path, value, expected))
        return
    if caret_path == "alias":
        element.alias.append(_expect(caret_path, value, str))
        return
    if caret_path == "binding.description":
        if element.binding is None:
            raise InvalidRuleError(f"{element.id} has no binding to describe")
        element.binding.description = _expect(caret_path, value, str)
        return
    if caret_path.startswith("slicing."):
        _set_slicing_meta(element, caret_path[len("slicing."):], caret_path, value)
        return
    raise InvalidRuleError(
        f"'{caret_path}' is not a recognized element metadata field",
        details={"element": element.id, "caret_path": caret_path},
    )


def set_root_meta(definition: StructureDefinition, caret_path: str, value: AssignableValue) -> None:
    """Set a metadata field on the definition itself (``* ^status = #active``)."""
    if caret_path == "jurisdiction":
        if not isinstance(value, FshCode):
            raise InvalidRuleError("jurisdiction must be a code")
        definition.jurisdiction.append(to_fhir(value, "CodeableConcept"))
        return
    if caret_path not in ROOT_CARET_FIELDS:
        raise InvalidRuleError(
            f"'{caret_path}' is not a recognized metadata field of {definition.name}",
            details={"definition": definition.name, "caret_path": caret_path},
        )
    attribute, expected = ROOT_CARET_FIELDS[caret_path]
    primitive = _expect(caret_path, value, expected)
    if caret_path == "status" and primitive not in PUBLICATION_STATUSES:
        raise InvalidRuleError(f"'{primitive}' is not a publication status")
    setattr(definition, attribute, primitive)


def _set_slicing_meta(element: ElementDefinition, field_path: str, caret_path: str, value: AssignableValue) -> None:
    slicing = element.slicing or ElementSlicing()

    if field_path == "rules":
        rules = _expect(caret_path, value, str)
        if rules not in SLICING_RULES:
            raise InvalidRuleError(f"'{rules}' is not a slicing rule ({', '.join(SLICING_RULES)})")
        slicing.rules = rules
    elif field_path == "ordered":
        slicing.ordered = _expect(caret_path, value, bool)
    elif field_path == "description":
        slicing.description = _expect(caret_path, value, str)
    elif field_path.startswith("discriminator"):
        index, _, attribute = _split_indexed(field_path[len("discriminator"):])
        if attribute not in ("type", "path"):
            raise InvalidRuleError(f"'{caret_path}' is not a recognized slicing field")
        while len(slicing.discriminator) <= index:
            slicing.discriminator.append(Discriminator())
        setattr(slicing.discriminator[index], attribute, _expect(caret_path, value, str))
    else:
        raise InvalidRuleError(f"'{caret_path}' is not a recognized slicing field")

    element.slicing = slicing


def _split_indexed(text: str):
    """``[1].type`` -> (1, '.', 'type'); ``.type`` -> (0, '.', 'type')."""
    index = 0
    if text.startswith("["):
        close = text.find("]")
        if close < 0 or not text[1:close].isdigit():
            raise InvalidRuleError(f"Malformed index in '{text}'")
        index = int(text[1:close])
        text = text[close + 1:]
    if not text.startswith("."):
        raise InvalidRuleError(f"Expected a field after the index in '{text}'")
    return index, ".", text[1:]


def _expect(caret_path: str, value: AssignableValue, expected: type):
    primitive = to_primitive(value)
    if expected is int and isinstance(primitive, bool):
        ok = False
    else:
        ok = isinstance(primitive, expected)
    if not ok:
        raise InvalidRuleError(
            f"^{caret_path} expects a {expected.__name__}, got {value!r}",
            details={"caret_path": caret_path},
        )
    return primitive


def named_type(element: ElementDefinition, path: FshPath) -> Optional[str]:
    """Type code the last path segment selects on a choice element, if any."""
    if path.last is None:
        return None
    return choice_type(element, path.last.name)


def _max_value(max_text: str) -> float:
    return float("inf") if max_text == "*" else int(max_text)


def _merge_types(types: List[ElementType]) -> List[ElementType]:
    """One ElementType per code, with profiles and targets combined."""
    merged: Dict[str, ElementType] = {}
    for element_type in types:
        existing = merged.get(element_type.code)
        if existing is None:
            merged[element_type.code] = element_type.model_copy(deep=True)
            continue
        for profile in element_type.profile:
            if profile not in existing.profile:
                existing.profile.append(profile)
        for target in element_type.target_profile:
            if target not in existing.target_profile:
                existing.target_profile.append(target)
    return list(merged.values())

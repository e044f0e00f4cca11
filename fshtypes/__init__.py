"""
Author-facing types for the FSH compiler.

This package exports what the front end hands to the export engine:
1. Entities (Profile, Extension, ValueSet, CodeSystem, Instance, Mapping, Invariant)
2. Rules (the closed union the rule applier dispatches on)
3. Paths and assignable values
4. The compilation Configuration
"""

from .paths import (
    FshPath,
    PathSegment,
    CHOICE_MARKER
)

from .values import (
    AssignableValue,
    FshCanonical,
    FshCode,
    FshQuantity,
    FshReference
)

from .rules import (
    AssignmentRule,
    BindingRule,
    BindingStrength,
    CardinalityRule,
    CaretValueRule,
    ConceptRule,
    ContainsItem,
    ContainsRule,
    FlagRule,
    MappingRule,
    ObeysRule,
    OnlyRule,
    OnlyRuleType,
    Rule,
    RuleKind,
    SourceInfo,
    StructureRule,
    ValueSetComponentRule,
    STRUCTURE_RULE_KINDS
)

from .entities import (
    CodeSystem,
    Entity,
    EntityKind,
    Extension,
    FshEntity,
    Instance,
    InstanceUsage,
    Invariant,
    InvariantSeverity,
    Mapping,
    Profile,
    StructureEntity,
    ValueSet
)

from .config import (
    Configuration,
    DEFAULT_FHIR_VERSION
)

__all__ = [
    # --- Paths & Values ---
    "FshPath",
    "PathSegment",
    "CHOICE_MARKER",
    "AssignableValue",
    "FshCanonical",
    "FshCode",
    "FshQuantity",
    "FshReference",

    # --- Rules ---
    "AssignmentRule",
    "BindingRule",
    "BindingStrength",
    "CardinalityRule",
    "CaretValueRule",
    "ConceptRule",
    "ContainsItem",
    "ContainsRule",
    "FlagRule",
    "MappingRule",
    "ObeysRule",
    "OnlyRule",
    "OnlyRuleType",
    "Rule",
    "RuleKind",
    "SourceInfo",
    "StructureRule",
    "ValueSetComponentRule",
    "STRUCTURE_RULE_KINDS",

    # --- Entities ---
    "CodeSystem",
    "Entity",
    "EntityKind",
    "Extension",
    "FshEntity",
    "Instance",
    "InstanceUsage",
    "Invariant",
    "InvariantSeverity",
    "Mapping",
    "Profile",
    "StructureEntity",
    "ValueSet",

    # --- Configuration ---
    "Configuration",
    "DEFAULT_FHIR_VERSION",
]

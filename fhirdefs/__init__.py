"""
Structured-definition models for the FSH compiler.

This package exports the base-specification side of compilation:
1. Elements (ElementDefinition and its parts)
2. Trees (ElementTree, StructureDefinition)
3. The read-only DefinitionLibrary
"""

from .elements import (
    BINDABLE_TYPES,
    Discriminator,
    ElementBase,
    ElementBinding,
    ElementConstraint,
    ElementDefinition,
    ElementMapping,
    ElementSlicing,
    ElementType,
    upper_first
)

from .structure import (
    DefinitionType,
    choice_type,
    ElementTree,
    StructureDefinition,
    StructureMapping,
    STRUCTURE_TYPES
)

from .library import (
    BaseDefinition,
    DefinitionLibrary,
    TerminologyDefinition
)

__all__ = [
    # --- Elements ---
    "BINDABLE_TYPES",
    "Discriminator",
    "ElementBase",
    "ElementBinding",
    "ElementConstraint",
    "ElementDefinition",
    "ElementMapping",
    "ElementSlicing",
    "ElementType",
    "upper_first",

    # --- Trees ---
    "DefinitionType",
    "choice_type",
    "ElementTree",
    "StructureDefinition",
    "StructureMapping",
    "STRUCTURE_TYPES",

    # --- Library ---
    "BaseDefinition",
    "DefinitionLibrary",
    "TerminologyDefinition",
]

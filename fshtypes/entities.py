"""
Author entity models.

This module defines everything an author can declare:
1. Structure entities (Profile, Extension) that derive StructureDefinitions
2. Terminology entities (ValueSet, CodeSystem)
3. Instances, Mappings and Invariants
"""

from enum import Enum
from typing import Annotated, ClassVar, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .rules import (
    ConceptRule,
    MappingRule,
    Rule,
    SourceInfo,
    StructureRule,
    ValueSetComponentRule,
    CaretValueRule,
)


class EntityKind(str, Enum):
    PROFILE = "Profile"
    EXTENSION = "Extension"
    VALUE_SET = "ValueSet"
    CODE_SYSTEM = "CodeSystem"
    INSTANCE = "Instance"
    MAPPING = "Mapping"
    INVARIANT = "Invariant"


class InstanceUsage(str, Enum):
    EXAMPLE = "Example"
    DEFINITION = "Definition"
    INLINE = "Inline"


class FshEntity(BaseModel):
    """
    Base for anything authorable locally.
    The id defaults to the name when the author does not give one.
    """
    # Entities sharing a family must have distinct ids and names.
    family: ClassVar[str] = "Entity"

    name: str = Field(min_length=1, description="Author-facing name")
    id: str = Field(default="", description="Resource id; defaults to name")
    title: Optional[str] = None
    description: Optional[str] = None
    source_info: SourceInfo = Field(default_factory=SourceInfo)

    @model_validator(mode="after")
    def default_id_to_name(self):
        if not self.id:
            self.id = self.name
        return self

    @property
    def entity_kind(self) -> EntityKind:
        return EntityKind(self.kind)

    def __hash__(self) -> int:
        return hash((self.family, self.id, self.name))

    def __eq__(self, other) -> bool:
        return self is other


class Profile(FshEntity):
    """
    Constrains a parent resource, type or profile.
    An absent parent falls back to the configured root for profiles.
    """
    family: ClassVar[str] = "StructureDefinition"

    kind: Literal["Profile"] = "Profile"
    parent: Optional[str] = Field(default=None, description="Parent name, id, alias or URL")
    rules: List[StructureRule] = Field(default_factory=list)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "kind": "Profile",
            "name": "BloodPressureObservation",
            "parent": "Observation",
            "rules": [
                {"kind": "cardinality", "path": "subject", "min": 1, "max": "1"},
                {"kind": "flag", "path": "subject", "must_support": True},
            ]
        }
    })


class Extension(FshEntity):
    family: ClassVar[str] = "StructureDefinition"

    kind: Literal["Extension"] = "Extension"
    parent: Optional[str] = None
    contexts: List[str] = Field(
        default_factory=list,
        description="Element paths or type names where the extension may be used"
    )
    rules: List[StructureRule] = Field(default_factory=list)


class ValueSet(FshEntity):
    family: ClassVar[str] = "ValueSet"

    kind: Literal["ValueSet"] = "ValueSet"
    rules: List[Annotated[
        Union[ValueSetComponentRule, CaretValueRule],
        Field(discriminator="kind"),
    ]] = Field(default_factory=list)


class CodeSystem(FshEntity):
    family: ClassVar[str] = "CodeSystem"

    kind: Literal["CodeSystem"] = "CodeSystem"
    rules: List[Annotated[
        Union[ConceptRule, CaretValueRule],
        Field(discriminator="kind"),
    ]] = Field(default_factory=list)


class Instance(FshEntity):
    """An example or definitional resource conforming to ``instance_of``."""
    family: ClassVar[str] = "Instance"

    kind: Literal["Instance"] = "Instance"
    instance_of: str = Field(min_length=1, description="Profile, extension or resource the instance conforms to")
    usage: InstanceUsage = Field(default=InstanceUsage.EXAMPLE)
    rules: List[Rule] = Field(default_factory=list)


class Mapping(FshEntity):
    """Maps elements of a local profile to an external specification."""
    family: ClassVar[str] = "Mapping"

    kind: Literal["Mapping"] = "Mapping"
    source: str = Field(min_length=1, description="Local profile or extension being mapped")
    target: Optional[str] = Field(default=None, description="URI of the target specification")
    rules: List[MappingRule] = Field(default_factory=list)


class InvariantSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class Invariant(FshEntity):
    """A constraint that ObeysRules attach to elements by key (the name)."""
    family: ClassVar[str] = "Invariant"

    kind: Literal["Invariant"] = "Invariant"
    description: str = Field(min_length=1, description="Human-readable statement")
    expression: Optional[str] = Field(default=None, description="FHIRPath expression")
    xpath: Optional[str] = None
    severity: InvariantSeverity = Field(default=InvariantSeverity.ERROR)

    @property
    def key(self) -> str:
        return self.name


Entity = Annotated[
    Union[Profile, Extension, ValueSet, CodeSystem, Instance, Mapping, Invariant],
    Field(discriminator="kind"),
]

StructureEntity = Union[Profile, Extension]

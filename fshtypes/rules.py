"""
Rule models for author entities.

Rules form a closed, tagged union: every rule carries a ``kind`` literal and
the applier dispatches on it. Declaration order inside an entity is the
application order.
"""

import re
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator

from .paths import FshPath
from .values import AssignableValue, FshCode


class RuleKind(str, Enum):
    """Every mutation an author can declare."""
    CARDINALITY = "cardinality"
    FLAG = "flag"
    BINDING = "binding"
    ASSIGNMENT = "assignment"
    CONTAINS = "contains"
    OBEYS = "obeys"
    CARET_VALUE = "caret_value"
    ONLY = "only"
    VALUESET_COMPONENT = "valueset_component"
    CONCEPT = "concept"
    MAPPING = "mapping"


class BindingStrength(str, Enum):
    """Ordered from weakest to strongest."""
    EXAMPLE = "example"
    PREFERRED = "preferred"
    EXTENSIBLE = "extensible"
    REQUIRED = "required"

    @property
    def rank(self) -> int:
        return _STRENGTH_ORDER.index(self)


_STRENGTH_ORDER = [
    BindingStrength.EXAMPLE,
    BindingStrength.PREFERRED,
    BindingStrength.EXTENSIBLE,
    BindingStrength.REQUIRED,
]

_MAX_PATTERN = re.compile(r"^(\*|\d+)$")
_SLICE_NAME_PATTERN = re.compile(r"^[^./:\[\]\s]+$")


class SourceInfo(BaseModel):
    """Where a rule or entity was declared in the author's source."""
    file: Optional[str] = None
    start_line: Optional[int] = Field(default=None, ge=1)
    end_line: Optional[int] = Field(default=None, ge=1)

    def __str__(self) -> str:
        if not self.file:
            return "<unknown>"
        if self.start_line is None:
            return self.file
        if self.end_line and self.end_line != self.start_line:
            return f"{self.file}:{self.start_line}-{self.end_line}"
        return f"{self.file}:{self.start_line}"


class PathRule(BaseModel):
    """Common fields: the parsed target path and the source location."""
    path: FshPath = Field(default_factory=FshPath, description="Target element (empty = definition root)")
    source_info: SourceInfo = Field(default_factory=SourceInfo)

    @field_validator("path", mode="before")
    @classmethod
    def parse_path(cls, v):
        if v is None or isinstance(v, str):
            return FshPath.parse(v)
        return v


class CardinalityRule(PathRule):
    kind: Literal["cardinality"] = "cardinality"
    min: Optional[int] = Field(default=None, ge=0)
    max: Optional[str] = Field(default=None, description="Upper bound, digits or '*'")

    @field_validator("max", mode="before")
    @classmethod
    def validate_max(cls, v):
        if v is None:
            return v
        v = str(v).strip()
        if not _MAX_PATTERN.match(v):
            raise ValueError(f"Cardinality max must be a number or '*', got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_range(self):
        if self.min is None and self.max is None:
            raise ValueError("Cardinality rule needs at least one of min or max")
        if self.min is not None and self.max not in (None, "*") and self.min > int(self.max):
            raise ValueError(f"Cardinality min {self.min} exceeds max {self.max}")
        return self


class FlagRule(PathRule):
    kind: Literal["flag"] = "flag"
    must_support: Optional[bool] = None
    summary: Optional[bool] = None
    modifier: Optional[bool] = None
    trial_use: Optional[bool] = None
    normative: Optional[bool] = None
    draft: Optional[bool] = None


class BindingRule(PathRule):
    kind: Literal["binding"] = "binding"
    value_set: str = Field(min_length=1, description="Value set name, id, alias or URL")
    strength: BindingStrength = Field(default=BindingStrength.REQUIRED)


class AssignmentRule(PathRule):
    kind: Literal["assignment"] = "assignment"
    value: AssignableValue
    exactly: bool = Field(default=False, description="True assigns fixed[x], otherwise pattern[x]")


class ContainsItem(BaseModel):
    name: str = Field(description="Slice name")
    type: Optional[str] = Field(default=None, description="Extension or profile the slice conforms to")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not _SLICE_NAME_PATTERN.match(v):
            raise ValueError(f"'{v}' is not a valid slice name")
        return v


class ContainsRule(PathRule):
    kind: Literal["contains"] = "contains"
    items: List[ContainsItem] = Field(min_length=1)


class ObeysRule(PathRule):
    kind: Literal["obeys"] = "obeys"
    invariant: str = Field(min_length=1, description="Invariant key")


class CaretValueRule(PathRule):
    kind: Literal["caret_value"] = "caret_value"
    caret_path: str = Field(min_length=1, description="Metadata field, e.g. 'short' or 'slicing.rules'")
    value: AssignableValue


class OnlyRuleType(BaseModel):
    type: str = Field(min_length=1, description="Type code, profile, or reference target")
    is_reference: bool = False


class OnlyRule(PathRule):
    kind: Literal["only"] = "only"
    types: List[OnlyRuleType] = Field(min_length=1)


class ValueSetComponentRule(BaseModel):
    """Include or exclude codes in a value set."""
    kind: Literal["valueset_component"] = "valueset_component"
    source_info: SourceInfo = Field(default_factory=SourceInfo)
    inclusion: bool = True
    from_system: Optional[str] = None
    from_value_sets: List[str] = Field(default_factory=list)
    concepts: List[FshCode] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_component(self):
        if not (self.from_system or self.from_value_sets or self.concepts):
            raise ValueError("Value set component needs a system, value sets, or concepts")
        if self.concepts and not self.from_system:
            missing = [str(c) for c in self.concepts if not c.system]
            if missing:
                raise ValueError(f"Concepts without a system: {', '.join(missing)}")
        return self


class ConceptRule(BaseModel):
    kind: Literal["concept"] = "concept"
    source_info: SourceInfo = Field(default_factory=SourceInfo)
    code: str = Field(min_length=1)
    display: Optional[str] = None
    definition: Optional[str] = None


class MappingRule(PathRule):
    kind: Literal["mapping"] = "mapping"
    map: str = Field(min_length=1, description="Target expression")
    comment: Optional[str] = None
    language: Optional[str] = None


StructureRule = Annotated[
    Union[
        CardinalityRule,
        FlagRule,
        BindingRule,
        AssignmentRule,
        ContainsRule,
        ObeysRule,
        CaretValueRule,
        OnlyRule,
    ],
    Field(discriminator="kind"),
]

Rule = Annotated[
    Union[
        CardinalityRule,
        FlagRule,
        BindingRule,
        AssignmentRule,
        ContainsRule,
        ObeysRule,
        CaretValueRule,
        OnlyRule,
        ValueSetComponentRule,
        ConceptRule,
        MappingRule,
    ],
    Field(discriminator="kind"),
]

STRUCTURE_RULE_KINDS = frozenset({
    RuleKind.CARDINALITY,
    RuleKind.FLAG,
    RuleKind.BINDING,
    RuleKind.ASSIGNMENT,
    RuleKind.CONTAINS,
    RuleKind.OBEYS,
    RuleKind.CARET_VALUE,
    RuleKind.ONLY,
})

"""
ElementDefinition data models.

One ElementDefinition is a node in a StructureDefinition's element list.
The models mirror FHIR's JSON shape through aliases so definitions load from
and serialise to the base specification's own format.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from fshtypes import BindingStrength, CHOICE_MARKER

FIXED_PREFIX = "fixed"
PATTERN_PREFIX = "pattern"

EXTENSION_ELEMENT_NAMES = ("extension", "modifierExtension")

# Types whose elements carry a binding slot.
BINDABLE_TYPES = {
    "code", "Coding", "CodeableConcept", "CodeableReference",
    "Quantity", "string", "uri", "canonical",
}


class FhirModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ElementType(FhirModel):
    code: str
    profile: List[str] = Field(default_factory=list)
    target_profile: List[str] = Field(default_factory=list, alias="targetProfile")


class ElementBinding(FhirModel):
    strength: BindingStrength
    value_set: Optional[str] = Field(default=None, alias="valueSet")
    description: Optional[str] = None


class Discriminator(FhirModel):
    type: str = Field(default="value", description="value | exists | pattern | type | profile")
    path: str = "$this"


class ElementBase(FhirModel):
    """Where an element was first defined, with its original cardinality."""
    path: str
    min: int = 0
    max: str = "*"


class ElementSlicing(FhirModel):
    discriminator: List[Discriminator] = Field(default_factory=list)
    rules: str = Field(default="open", description="open | closed | openAtEnd")
    ordered: Optional[bool] = None
    description: Optional[str] = None


class ElementConstraint(FhirModel):
    key: str
    severity: str = "error"
    human: str = ""
    expression: Optional[str] = None
    xpath: Optional[str] = None
    source: Optional[str] = None


class ElementMapping(FhirModel):
    identity: str
    map: str
    comment: Optional[str] = None
    language: Optional[str] = None


class ElementDefinition(FhirModel):
    """
    A single element. ``id`` is the slice-qualified address
    (``Observation.component:systolic.code``); ``path`` drops slice names.
    """
    id: str
    path: str
    slice_name: Optional[str] = Field(default=None, alias="sliceName")
    short: Optional[str] = None
    definition: Optional[str] = None
    comment: Optional[str] = None
    requirements: Optional[str] = None
    label: Optional[str] = None
    alias: List[str] = Field(default_factory=list)
    min: int = Field(default=0, ge=0)
    max: str = Field(default="*")
    base: Optional[ElementBase] = None
    types: List[ElementType] = Field(default_factory=list, alias="type")
    meaning_when_missing: Optional[str] = Field(default=None, alias="meaningWhenMissing")
    max_length: Optional[int] = Field(default=None, alias="maxLength")
    condition: List[str] = Field(default_factory=list)
    constraints: List[ElementConstraint] = Field(default_factory=list, alias="constraint")
    must_support: Optional[bool] = Field(default=None, alias="mustSupport")
    is_modifier: Optional[bool] = Field(default=None, alias="isModifier")
    is_modifier_reason: Optional[str] = Field(default=None, alias="isModifierReason")
    is_summary: Optional[bool] = Field(default=None, alias="isSummary")
    binding: Optional[ElementBinding] = None
    slicing: Optional[ElementSlicing] = None
    mappings: List[ElementMapping] = Field(default_factory=list, alias="mapping")
    standards_status: Optional[str] = Field(default=None, alias="standardsStatus")

    # fixed[x] / pattern[x] keep the FHIR type the value was rendered for
    fixed: Optional[Any] = None
    fixed_type: Optional[str] = None
    pattern: Optional[Any] = None
    pattern_type: Optional[str] = None

    @property
    def name(self) -> str:
        """Last path segment, e.g. ``value[x]``."""
        return self.path.rsplit(".", 1)[-1]

    @property
    def is_choice(self) -> bool:
        return self.path.endswith(CHOICE_MARKER)

    @property
    def is_slice(self) -> bool:
        return ":" in self.id.rsplit(".", 1)[-1]

    @property
    def type_codes(self) -> List[str]:
        return [t.code for t in self.types]

    @property
    def is_array(self) -> bool:
        """Whether instance JSON holds this element as a list."""
        max_text = self.base.max if self.base is not None else self.max
        return max_text != "1" or self.is_slice

    @property
    def max_value(self) -> float:
        return float("inf") if self.max == "*" else int(self.max)

    def is_extension(self) -> bool:
        return self.name in EXTENSION_ELEMENT_NAMES

    def has_binding_slot(self) -> bool:
        return any(code in BINDABLE_TYPES for code in self.type_codes)

    def assigned_value(self) -> Optional[Any]:
        return self.fixed if self.fixed is not None else self.pattern

    @classmethod
    def from_fhir(cls, raw: Dict[str, Any]) -> "ElementDefinition":
        data = dict(raw)
        data.setdefault("id", raw.get("path"))
        if "max" in data:
            data["max"] = str(data["max"])
        for key, value in raw.items():
            if key.startswith(FIXED_PREFIX) and key != FIXED_PREFIX:
                data["fixed"] = value
                data["fixed_type"] = _type_from_key(key, FIXED_PREFIX)
            elif key.startswith(PATTERN_PREFIX) and key != PATTERN_PREFIX:
                data["pattern"] = value
                data["pattern_type"] = _type_from_key(key, PATTERN_PREFIX)
        for extension in raw.get("extension", []):
            if extension.get("url", "").endswith("structuredefinition-standards-status"):
                data["standardsStatus"] = extension.get("valueCode")
        return cls.model_validate(data)

    def to_fhir(self) -> Dict[str, Any]:
        data = self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"fixed", "fixed_type", "pattern", "pattern_type", "standards_status"},
        )
        data = {k: v for k, v in data.items() if v != []}
        if self.fixed is not None and self.fixed_type:
            data[FIXED_PREFIX + upper_first(self.fixed_type)] = self.fixed
        if self.pattern is not None and self.pattern_type:
            data[PATTERN_PREFIX + upper_first(self.pattern_type)] = self.pattern
        if self.standards_status:
            data["extension"] = [{
                "url": "http://hl7.org/fhir/StructureDefinition/structuredefinition-standards-status",
                "valueCode": self.standards_status,
            }]
        for item in data.get("type", []):
            for key in ("profile", "targetProfile"):
                if item.get(key) == []:
                    del item[key]
        return data


def upper_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def _type_from_key(key: str, prefix: str) -> str:
    suffix = key[len(prefix):]
    # Complex types keep their capital; primitive codes start lower-case.
    if suffix in ("Coding", "CodeableConcept", "CodeableReference", "Quantity", "Reference",
                  "Identifier", "Period", "Range", "Ratio", "HumanName", "Address",
                  "ContactPoint", "Attachment", "Money", "Age", "Duration", "Count",
                  "Distance", "SimpleQuantity", "Annotation", "Timing", "Signature",
                  "SampledData", "Meta", "Dosage", "Expression", "UsageContext"):
        return suffix
    return suffix[:1].lower() + suffix[1:]

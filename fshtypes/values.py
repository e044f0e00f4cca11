"""
Assignable values used by AssignmentRule and CaretValueRule.

Primitive values (bool, int, float, str) are carried as-is; coded values,
quantities, references and canonicals get a small typed model each so the
rule applier can check them against an element's declared types.
"""

from typing import Any, Dict, Literal, Optional, Set, Union
from pydantic import BaseModel, Field

UCUM_SYSTEM = "http://unitsofmeasure.org"

BOOLEAN_TYPES = {"boolean"}
INTEGER_TYPES = {"integer", "integer64", "positiveInt", "unsignedInt", "decimal"}
DECIMAL_TYPES = {"decimal"}
STRING_TYPES = {
    "string", "markdown", "id", "uri", "url", "uuid", "oid", "base64Binary",
    "date", "dateTime", "instant", "time", "xhtml",
}
CODE_TYPES = {"code", "Coding", "CodeableConcept", "CodeableReference"}
QUANTITY_TYPES = {"Quantity", "SimpleQuantity", "MoneyQuantity", "Age", "Count", "Distance", "Duration"}
REFERENCE_TYPES = {"Reference"}
CANONICAL_TYPES = {"canonical", "uri"}


class FshCode(BaseModel):
    """A code, written ``#code`` or ``system#code "display"``."""
    kind: Literal["code"] = "code"
    code: str = Field(min_length=1)
    system: Optional[str] = None
    display: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.system or ''}#{self.code}"


class FshQuantity(BaseModel):
    kind: Literal["quantity"] = "quantity"
    value: float
    unit: Optional[str] = Field(default=None, description="UCUM unit code")
    display: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.value} '{self.unit}'" if self.unit else str(self.value)


class FshReference(BaseModel):
    kind: Literal["reference"] = "reference"
    reference: str = Field(min_length=1, description="Instance name or literal reference")
    display: Optional[str] = None

    def __str__(self) -> str:
        return f"Reference({self.reference})"


class FshCanonical(BaseModel):
    """``Canonical(EntityName)``; the applier replaces the name with its URL."""
    kind: Literal["canonical"] = "canonical"
    entity: str = Field(min_length=1)
    version: Optional[str] = None

    def __str__(self) -> str:
        return f"Canonical({self.entity})"


AssignableValue = Union[bool, int, float, str, FshCode, FshQuantity, FshReference, FshCanonical]


def compatible_types(value: AssignableValue) -> Set[str]:
    """FHIR type codes a value may be assigned to."""
    if isinstance(value, bool):
        return BOOLEAN_TYPES
    if isinstance(value, int):
        return INTEGER_TYPES
    if isinstance(value, float):
        return DECIMAL_TYPES
    if isinstance(value, str):
        return STRING_TYPES
    if isinstance(value, FshCode):
        return CODE_TYPES
    if isinstance(value, FshQuantity):
        return QUANTITY_TYPES
    if isinstance(value, FshReference):
        return REFERENCE_TYPES
    if isinstance(value, FshCanonical):
        return CANONICAL_TYPES
    return set()


def check_range(value: AssignableValue, type_code: str) -> Optional[str]:
    """Returns a reason string if an integer falls outside its FHIR subtype."""
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if type_code == "positiveInt" and value < 1:
        return f"{value} is not a positiveInt"
    if type_code == "unsignedInt" and value < 0:
        return f"{value} is not an unsignedInt"
    return None


def to_fhir(value: AssignableValue, type_code: str) -> Any:
    """Render a value as FHIR JSON for an element of the given type."""
    if isinstance(value, FshCode):
        if type_code == "code":
            return value.code
        coding: Dict[str, Any] = {}
        if value.system:
            coding["system"] = value.system
        coding["code"] = value.code
        if value.display:
            coding["display"] = value.display
        if type_code == "Coding":
            return coding
        if type_code == "CodeableReference":
            return {"concept": {"coding": [coding]}}
        return {"coding": [coding]}
    if isinstance(value, FshQuantity):
        quantity: Dict[str, Any] = {"value": value.value}
        if value.unit:
            quantity["unit"] = value.display or value.unit
            quantity["system"] = UCUM_SYSTEM
            quantity["code"] = value.unit
        return quantity
    if isinstance(value, FshReference):
        reference: Dict[str, Any] = {"reference": value.reference}
        if value.display:
            reference["display"] = value.display
        return reference
    if isinstance(value, FshCanonical):
        return f"{value.entity}|{value.version}" if value.version else value.entity
    return value


def to_primitive(value: AssignableValue) -> Any:
    """Flatten a value for a primitive metadata field (caret rules)."""
    if isinstance(value, FshCode):
        return value.code
    if isinstance(value, (FshQuantity, FshReference)):
        return to_fhir(value, "Quantity" if isinstance(value, FshQuantity) else "Reference")
    if isinstance(value, FshCanonical):
        return to_fhir(value, "canonical")
    return value

"""
Compilation configuration.

Holds the project-level settings every exported resource inherits
(canonical base, FHIR version, status) and the per-kind default parents.
"""

from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .entities import EntityKind

DEFAULT_FHIR_VERSION = "4.0.1"

DEFAULT_PARENTS: Dict[EntityKind, str] = {
    EntityKind.PROFILE: "DomainResource",
    EntityKind.EXTENSION: "Extension",
}


class Configuration(BaseModel):
    """Settings for one compilation run."""

    canonical: str = Field(description="Canonical base URL of the project")
    id: Optional[str] = Field(default=None, description="Package id")
    name: Optional[str] = None
    version: Optional[str] = None
    fhir_version: str = Field(default=DEFAULT_FHIR_VERSION, min_length=1)
    status: str = Field(default="draft")
    publisher: Optional[str] = None
    default_parents: Dict[EntityKind, str] = Field(
        default_factory=lambda: dict(DEFAULT_PARENTS),
        description="Parent used when an entity does not declare one"
    )

    @field_validator("canonical")
    @classmethod
    def validate_canonical(cls, v):
        v = v.strip().rstrip("/")
        if "://" not in v and not v.startswith("urn:"):
            raise ValueError(f"Canonical '{v}' must be an absolute URL")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v not in ("draft", "active", "retired", "unknown"):
            raise ValueError(f"Unknown publication status '{v}'")
        return v

    @field_validator("default_parents")
    @classmethod
    def merge_default_parents(cls, v):
        merged = dict(DEFAULT_PARENTS)
        merged.update(v)
        return merged

    def canonical_url(self, resource_type: str, resource_id: str) -> str:
        return f"{self.canonical}/{resource_type}/{resource_id}"

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "canonical": "http://example.org/fhir/bp",
            "id": "example.fhir.bp",
            "name": "BloodPressureIG",
            "version": "0.1.0",
            "fhir_version": "4.0.1",
            "status": "draft"
        }
    })

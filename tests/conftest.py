"""
Shared fixtures: a small synthetic base library and compile helpers.

The library mimics the shape of the FHIR R4 core definitions closely enough
to exercise parents, unfolding, choices, bindings and extensions.
"""

from typing import Any, Dict, List, Optional

import pytest

from exporter.applier import RuleApplier
from exporter.engine import FshCompiler
from exporter.package import DefinitionFisher, Package
from exporter.resolver import NameResolver
from exporter.state import ExportState
from exporter.structures import StructureExporter
from exporter.tank import Tank
from fshtypes import Configuration, EntityKind
from loaders.definitions import load_definitions

FHIR = "http://hl7.org/fhir"
CANONICAL = "http://example.org/fhir"


def element(path: str, min: int = 0, max: str = "1", types=(), **extra) -> Dict[str, Any]:
    raw: Dict[str, Any] = {
        "id": path,
        "path": path,
        "min": min,
        "max": max,
        "base": {"path": path, "min": min, "max": max},
    }
    if types:
        raw["type"] = [t if isinstance(t, dict) else {"code": t} for t in types]
    raw.update(extra)
    return raw


def structure(
    name: str,
    elements: List[Dict[str, Any]],
    kind: str = "resource",
    base: Optional[str] = None,
    abstract: bool = False
) -> Dict[str, Any]:
    raw = {
        "resourceType": "StructureDefinition",
        "id": name,
        "url": f"{FHIR}/StructureDefinition/{name}",
        "name": name,
        "status": "active",
        "fhirVersion": "4.0.1",
        "kind": kind,
        "abstract": abstract,
        "type": name,
        "derivation": "specialization",
        "snapshot": {"element": elements},
    }
    if base:
        raw["baseDefinition"] = f"{FHIR}/StructureDefinition/{base}"
    return raw


def binding(strength: str, value_set: str) -> Dict[str, Any]:
    return {"binding": {"strength": strength, "valueSet": value_set}}


def reference_to(*targets: str) -> Dict[str, Any]:
    return {"code": "Reference", "targetProfile": [f"{FHIR}/StructureDefinition/{t}" for t in targets]}


def base_resources() -> List[Dict[str, Any]]:
    observation_status = f"{FHIR}/ValueSet/observation-status"
    return [
        structure("Resource", [
            element("Resource", max="*"),
            element("Resource.id", types=["id"]),
        ], abstract=True),
        structure("DomainResource", [
            element("DomainResource", max="*"),
            element("DomainResource.id", types=["id"]),
            element("DomainResource.extension", max="*", types=["Extension"]),
            element("DomainResource.modifierExtension", max="*", types=["Extension"]),
        ], base="Resource", abstract=True),
        structure("Observation", [
            element("Observation", max="*", constraint=[{
                "key": "obs-6",
                "severity": "error",
                "human": "dataAbsentReason SHALL only be present if Observation.value[x] is not present",
                "expression": "dataAbsentReason.empty() or value.empty()",
            }]),
            element("Observation.id", types=["id"]),
            element("Observation.extension", max="*", types=["Extension"]),
            element("Observation.modifierExtension", max="*", types=["Extension"]),
            element("Observation.identifier", max="*", types=["Identifier"]),
            element("Observation.status", min=1, types=["code"], **binding("required", observation_status)),
            element("Observation.category", max="*", types=["CodeableConcept"],
                    **binding("preferred", f"{FHIR}/ValueSet/observation-category")),
            element("Observation.code", min=1, types=["CodeableConcept"],
                    **binding("example", f"{FHIR}/ValueSet/observation-codes")),
            element("Observation.subject", types=[reference_to("Patient", "Group")]),
            element("Observation.value[x]", types=["Quantity", "CodeableConcept", "string", "boolean", "integer"]),
            element("Observation.interpretation", max="*", types=["CodeableConcept"],
                    **binding("extensible", f"{FHIR}/ValueSet/observation-interpretation")),
            element("Observation.component", max="*", types=["BackboneElement"]),
            element("Observation.component.code", min=1, types=["CodeableConcept"]),
            element("Observation.component.value[x]", types=["Quantity", "CodeableConcept", "string"]),
        ], base="DomainResource"),
        structure("Patient", [
            element("Patient", max="*"),
            element("Patient.id", types=["id"]),
            element("Patient.extension", max="*", types=["Extension"]),
            element("Patient.identifier", max="*", types=["Identifier"]),
            element("Patient.active", types=["boolean"]),
            element("Patient.gender", types=["code"],
                    **binding("required", f"{FHIR}/ValueSet/administrative-gender")),
            element("Patient.birthDate", types=["date"]),
            element("Patient.generalPractitioner", max="*", types=[reference_to("Organization", "Practitioner")]),
        ], base="DomainResource"),
        structure("Extension", [
            element("Extension", max="*"),
            element("Extension.id", types=["string"]),
            element("Extension.extension", max="*", types=["Extension"]),
            element("Extension.url", min=1, types=["uri"]),
            element("Extension.value[x]", types=["string", "boolean", "integer", "code", "Quantity",
                                                 "CodeableConcept", "Reference"]),
        ], kind="complex-type"),
        structure("Identifier", [
            element("Identifier", max="*"),
            element("Identifier.system", types=["uri"]),
            element("Identifier.value", types=["string"]),
        ], kind="complex-type"),
        structure("CodeableConcept", [
            element("CodeableConcept", max="*"),
            element("CodeableConcept.coding", max="*", types=["Coding"]),
            element("CodeableConcept.text", types=["string"]),
        ], kind="complex-type"),
        structure("Coding", [
            element("Coding", max="*"),
            element("Coding.system", types=["uri"]),
            element("Coding.code", types=["code"]),
            element("Coding.display", types=["string"]),
        ], kind="complex-type"),
        structure("Quantity", [
            element("Quantity", max="*"),
            element("Quantity.value", types=["decimal"]),
            element("Quantity.unit", types=["string"]),
            element("Quantity.system", types=["uri"]),
            element("Quantity.code", types=["code"]),
        ], kind="complex-type"),
        structure("Reference", [
            element("Reference", max="*"),
            element("Reference.reference", types=["string"]),
            element("Reference.display", types=["string"]),
        ], kind="complex-type"),
        {
            "resourceType": "ValueSet",
            "id": "observation-status",
            "url": observation_status,
            "name": "ObservationStatus",
            "status": "active",
        },
        {
            "resourceType": "CodeSystem",
            "id": "observation-category",
            "url": "http://terminology.hl7.org/CodeSystem/observation-category",
            "name": "ObservationCategoryCodes",
            "status": "active",
            "concept": [{"code": "vital-signs"}, {"code": "laboratory"}],
        },
    ]


@pytest.fixture
def library():
    return load_definitions(base_resources())


@pytest.fixture
def config():
    return Configuration(canonical=CANONICAL, version="0.1.0", status="draft")


@pytest.fixture
def observation_config():
    """Profiles without a parent derive from Observation."""
    return Configuration(canonical=CANONICAL, default_parents={EntityKind.PROFILE: "Observation"})


@pytest.fixture
def compile_entities(library, config):
    """Run a full compilation pass. Returns (package, state)."""
    def _compile(entities, aliases=None, configuration=None):
        compiler = FshCompiler(Tank(entities, aliases=aliases), library, configuration or config)
        package = compiler.run()
        return package, compiler.state
    return _compile


@pytest.fixture
def make_exporter(library, config):
    """StructureExporter wired by hand, for tests that bypass the orderer."""
    def _make(entities, aliases=None):
        tank = Tank(entities, aliases=aliases)
        state = ExportState()
        package = Package()
        resolver = NameResolver(tank, library, config)
        applier = RuleApplier(resolver, DefinitionFisher(package, library))
        exporter = StructureExporter(resolver, applier, state, package, config)
        return exporter, state, package
    return _make


def error_types(state) -> List[str]:
    return [d.error_type for d in state.diagnostics]

"""
Loads base-specification definitions into a DefinitionLibrary.

Reads every ``*.json`` under a directory (recursively). Files may hold a
single StructureDefinition, ValueSet or CodeSystem, or a Bundle of them.
Anything else is skipped with a warning; nothing here is fatal.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

from pydantic import ValidationError

from fhirdefs import BaseDefinition, DefinitionLibrary, StructureDefinition, TerminologyDefinition

logger = logging.getLogger(__name__)

TERMINOLOGY_TYPES = ("ValueSet", "CodeSystem")


def definition_from_fhir(resource: Dict[str, Any]) -> BaseDefinition:
    """Build the library model for one FHIR resource dict."""
    resource_type = resource.get("resourceType")
    if resource_type == "StructureDefinition":
        return StructureDefinition.from_fhir(resource)
    if resource_type in TERMINOLOGY_TYPES:
        return TerminologyDefinition.from_fhir(resource)
    raise ValueError(f"Unsupported resourceType '{resource_type}'")


def unpack_resources(data: Any) -> List[Dict[str, Any]]:
    """A resource, or the resources inside a Bundle."""
    if not isinstance(data, dict) or "resourceType" not in data:
        return []
    if data["resourceType"] == "Bundle":
        return [entry["resource"] for entry in data.get("entry", []) if isinstance(entry.get("resource"), dict)]
    return [data]


def load_definitions(resources: Iterable[Dict[str, Any]]) -> DefinitionLibrary:
    """Build a library from resource dicts already in memory."""
    definitions: List[BaseDefinition] = []
    for resource in resources:
        for item in unpack_resources(resource):
            try:
                definitions.append(definition_from_fhir(item))
            except (ValidationError, ValueError) as e:
                logger.warning(f"Skipping {item.get('resourceType')}/{item.get('id')}: {e}")
    return DefinitionLibrary(definitions)


def load_definitions_dir(directory: Union[str, Path]) -> DefinitionLibrary:
    """Load every definition under ``directory``."""
    directory = Path(directory)
    logger.info(f"Loading definitions from {directory}")
    if not directory.is_dir():
        raise FileNotFoundError(f"Definitions directory {directory} does not exist")

    resources: List[Dict[str, Any]] = []
    for json_file in sorted(directory.glob("**/*.json")):
        try:
            with open(json_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Could not load {json_file} as JSON: {e}")
            continue

        found = unpack_resources(data)
        if not found:
            logger.debug(f"Ignoring {json_file}: not a FHIR resource")
        resources.extend(found)

    return load_definitions(resources)

"""
Loads a compilation project from JSON.

A project document has three sections:
1. ``config``   - the Configuration (canonical, version, status, default parents)
2. ``aliases``  - alias -> URL
3. ``entities`` - author entities, each tagged by ``kind``

Entities that fail validation are reported and left out; the rest still load.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from pydantic import TypeAdapter, ValidationError

from fshtypes import Configuration, Entity, FshEntity
from exporter.tank import Tank

logger = logging.getLogger(__name__)

_ENTITY_ADAPTER = TypeAdapter(Entity)


class ProjectError(Exception):
    """The project document itself is unusable (bad JSON or bad config)."""

    pass


def parse_entities(raw_entities: List[Dict[str, Any]]) -> Tuple[List[FshEntity], List[str]]:
    """Validate entity dicts. Returns the entities plus one message per rejected dict."""
    entities: List[FshEntity] = []
    problems: List[str] = []
    for position, raw in enumerate(raw_entities):
        try:
            entities.append(_ENTITY_ADAPTER.validate_python(raw))
        except ValidationError as e:
            label = raw.get("name", f"#{position}") if isinstance(raw, dict) else f"#{position}"
            message = f"Entity {label} is invalid: {e.error_count()} error(s); {e.errors()[0]['msg']}"
            logger.warning(message)
            problems.append(message)
    return entities, problems


def load_project(data: Dict[str, Any]) -> Tuple[Configuration, Tank, List[str]]:
    """Build the Configuration and Tank for a parsed project document."""
    try:
        config = Configuration.model_validate(data.get("config", {}))
    except ValidationError as e:
        raise ProjectError(f"Invalid project configuration: {e}") from e

    entities, problems = parse_entities(data.get("entities", []))
    tank = Tank(entities, aliases=data.get("aliases", {}))
    logger.info(f"Project loaded: {len(tank)} entities, {len(tank.aliases)} aliases, "
                f"{len(problems)} rejected")
    return config, tank, problems


def load_project_file(path: Union[str, Path]) -> Tuple[Configuration, Tank, List[str]]:
    path = Path(path)
    logger.info(f"Loading project from {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ProjectError(f"Project file {path} not found") from e
    except json.JSONDecodeError as e:
        raise ProjectError(f"Project file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProjectError(f"Project file {path} must hold a JSON object")
    return load_project(data)

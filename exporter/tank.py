"""
The Tank: author-defined entities for one compilation unit.

Ids and names are unique within a resource family (Profile and Extension
share the StructureDefinition family). A duplicate is rejected and kept
aside so the exporter can report it; the first registration wins.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple, Type

from fshtypes import FshEntity, Invariant
from .errors import DuplicateIdError

logger = logging.getLogger(__name__)


class Tank:
    def __init__(
        self,
        entities: Iterable[FshEntity] = (),
        aliases: Optional[Dict[str, str]] = None
    ):
        self.entities: List[FshEntity] = []
        self.aliases: Dict[str, str] = dict(aliases or {})
        self.rejected: List[Tuple[FshEntity, DuplicateIdError]] = []
        for entity in entities:
            self.add(entity)

    def add(self, entity: FshEntity) -> bool:
        """Register an entity. Returns False (and records why) for a duplicate."""
        for existing in self.entities:
            if existing.family != entity.family:
                continue
            clash = None
            if existing.id == entity.id:
                clash = f"id '{entity.id}'"
            elif existing.name == entity.name:
                clash = f"name '{entity.name}'"
            if clash:
                error = DuplicateIdError(
                    f"{entity.kind} {entity.name} reuses the {clash} of {existing.kind} {existing.name}",
                    details={"family": entity.family, "first": existing.name, "duplicate": entity.name},
                )
                logger.warning(error.message)
                self.rejected.append((entity, error))
                return False
        self.entities.append(entity)
        return True

    def __len__(self) -> int:
        return len(self.entities)

    def __iter__(self):
        return iter(self.entities)

    def of_type(self, entity_type: Type[FshEntity]) -> List[FshEntity]:
        return [e for e in self.entities if isinstance(e, entity_type)]

    def expand_alias(self, reference: str) -> str:
        return self.aliases.get(reference, reference)

    def invariant(self, key: str) -> Optional[Invariant]:
        for entity in self.of_type(Invariant):
            if entity.key == key:
                return entity
        return None

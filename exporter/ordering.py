"""
Dependency ordering of local entities.

Edges run from an entity to the local entity it cannot be exported without:
profiles and extensions to their parent, instances to ``instance_of``,
mappings to their source. Contains and only rules add ordering-only edges
to the local structures they name. The traversal is iterative with three-colour
marks, so malformed cyclic input always terminates.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from fhirdefs import STRUCTURE_TYPES
from fshtypes import ContainsRule, Extension, FshEntity, Instance, Mapping, OnlyRule, Profile
from .errors import CyclicDependencyError, FshError
from .resolver import NameResolver

logger = logging.getLogger(__name__)


class Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


@dataclass
class DependencyOrder:
    """Evaluation order plus the cycles that were cut out of it."""
    order: List[FshEntity] = field(default_factory=list)
    cycles: List[List[FshEntity]] = field(default_factory=list)

    def cycle_errors(self) -> List[CyclicDependencyError]:
        return [
            CyclicDependencyError(
                [e.name for e in cycle] + [cycle[0].name],
                details={"chain": [e.name for e in cycle]},
            )
            for cycle in self.cycles
        ]


class DependencyOrderer:
    def __init__(self, resolver: NameResolver):
        self.resolver = resolver

    def dependency_reference(self, entity: FshEntity) -> Optional[str]:
        if isinstance(entity, (Profile, Extension)):
            return entity.parent
        if isinstance(entity, Instance):
            return entity.instance_of
        if isinstance(entity, Mapping):
            return entity.source
        return None

    def dependencies(self, entity: FshEntity) -> List[FshEntity]:
        return [target for target, _ in self.edges(entity)]

    def edges(self, entity: FshEntity) -> List[Tuple[FshEntity, bool]]:
        """
        Local dependencies of ``entity`` as (target, hard) pairs. Hard edges
        come from the parent-like reference; a cycle through them fails the
        entities on it. Edges from contains and only rules only order, and
        are dropped when they would close a cycle.
        """
        references = []
        reference = self.dependency_reference(entity)
        if reference:
            references.append((reference, True))
        references.extend((r, False) for r in self.rule_references(entity))

        edges: List[Tuple[FshEntity, bool]] = []
        seen = set()
        for reference, hard in references:
            try:
                target = self.resolver.resolve_local(reference, STRUCTURE_TYPES)
            except FshError:
                # Reported when the entity itself is exported
                continue
            if target is None or id(target) in seen or (target is entity and not hard):
                continue
            seen.add(id(target))
            edges.append((target, hard))
        return edges

    def rule_references(self, entity: FshEntity) -> List[str]:
        """Structures named by contains and only rules, whose exported shape the rules read."""
        if not isinstance(entity, (Profile, Extension)):
            return []
        references: List[str] = []
        for rule in entity.rules:
            if isinstance(rule, ContainsRule):
                for item in rule.items:
                    references.append(item.type or item.name)
            elif isinstance(rule, OnlyRule):
                references.extend(t.type for t in rule.types if not t.is_reference)
        return references

    def order(self) -> DependencyOrder:
        result = DependencyOrder()
        marks: Dict[FshEntity, Mark] = {e: Mark.UNVISITED for e in self.resolver.tank}
        in_cycle = set()

        for start in self.resolver.tank:
            if marks[start] != Mark.UNVISITED:
                continue
            # Explicit stack of (entity, remaining edges); hard[i] tells how path[i] was reached
            path: List[FshEntity] = [start]
            hard: List[bool] = [True]
            pending: List[List[Tuple[FshEntity, bool]]] = [self.edges(start)]
            marks[start] = Mark.IN_PROGRESS

            while path:
                if pending[-1]:
                    nxt, is_hard = pending[-1].pop(0)
                    mark = marks.get(nxt, Mark.DONE)
                    if mark == Mark.UNVISITED:
                        marks[nxt] = Mark.IN_PROGRESS
                        path.append(nxt)
                        hard.append(is_hard)
                        pending.append(self.edges(nxt))
                    elif mark == Mark.IN_PROGRESS:
                        start_at = path.index(nxt)
                        if not (is_hard and all(hard[start_at + 1:])):
                            logger.debug(f"Ignoring ordering edge {path[-1].name} -> {nxt.name}")
                            continue
                        cycle = path[start_at:]
                        logger.error(f"Cycle detected: {' -> '.join(e.name for e in cycle + [nxt])}")
                        result.cycles.append(list(cycle))
                        in_cycle.update(cycle)
                    continue

                done = path.pop()
                hard.pop()
                pending.pop()
                marks[done] = Mark.DONE
                if done not in in_cycle:
                    result.order.append(done)

        logger.debug(f"Evaluation order: {[e.name for e in result.order]}")
        return result

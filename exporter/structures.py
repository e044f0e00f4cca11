"""
The Structure Exporter.

Turns each Profile and Extension into a StructureDefinition in four steps:
1. Resolve the parent (exporting a local parent on demand)
2. Clone the parent's snapshot and stamp the new identity on it
3. Apply the entity's rules in declaration order, best-effort
4. Diff the snapshot against the parent's and register the result

Every entity moves through explicit ExportStatus values. Finding an entity
already in progress while resolving a parent means the parents loop, and
the whole loop fails with a CyclicDependency diagnostic.
"""

import logging
from typing import Dict, List, Optional

from fhirdefs import (
    DefinitionType,
    ElementMapping,
    STRUCTURE_TYPES,
    StructureDefinition,
    StructureMapping,
)
from fshtypes import Configuration, Extension, FshEntity, Mapping
from .applier import RuleApplier
from .errors import (
    CyclicDependencyError,
    FshError,
    InvalidRuleError,
    UnresolvedReferenceError,
)
from .package import Package
from .resolver import NameResolver, looks_like_url
from .state import ExportState, ExportStatus

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION_CONTEXT = {"type": "element", "expression": "Element"}


class StructureExporter:
    """
    Exports Profiles and Extensions into the package.
    Installs itself as the resolver's export hook so that resolving a local
    parent exports it first.
    """

    def __init__(
        self,
        resolver: NameResolver,
        applier: RuleApplier,
        state: ExportState,
        package: Package,
        config: Configuration
    ):
        self.resolver = resolver
        self.applier = applier
        self.state = state
        self.package = package
        self.config = config

        self.exported: Dict[FshEntity, StructureDefinition] = {}
        # Parent snapshot each definition was diffed against, by definition id
        self.parents: Dict[str, StructureDefinition] = {}
        self._export_stack: List[FshEntity] = []

        self.resolver.export_hook = self.export

    def export(self, entity: FshEntity) -> Optional[StructureDefinition]:
        """
        Export one entity, or return its earlier result.
        Returns None if the entity failed (now or before).
        """
        status = self.state.get_status(entity)
        if status == ExportStatus.DONE:
            return self.exported.get(entity)
        if status == ExportStatus.FAILED:
            return None
        if status.in_progress:
            self._fail_cycle(entity)
            return None

        self._export_stack.append(entity)
        try:
            return self._export(entity)
        finally:
            self._export_stack.pop()

    def _fail_cycle(self, entity: FshEntity) -> None:
        chain = self._export_stack[self._export_stack.index(entity):]
        error = CyclicDependencyError([e.name for e in chain] + [entity.name])
        for member in chain:
            if self.state.get_status(member) != ExportStatus.FAILED:
                self.state.fail(member, error)

    def _export(self, entity: FshEntity) -> Optional[StructureDefinition]:
        logger.info(f"Exporting {entity.kind} {entity.name}")

        # 1. Resolve parent
        self.state.set_status(entity, ExportStatus.RESOLVING_PARENT)
        try:
            parent = self._resolve_parent(entity)
        except FshError as e:
            # A cycle member has already been failed with the cycle's diagnostic
            if self.state.get_status(entity) != ExportStatus.FAILED:
                self.state.fail(entity, e)
            return None
        if self.state.get_status(entity) == ExportStatus.FAILED:
            return None

        # 2. Derive
        definition = self._derive(entity, parent)

        # 3. Rules
        self.state.set_status(entity, ExportStatus.APPLYING_RULES)
        for index, rule in enumerate(entity.rules):
            try:
                self.applier.apply(definition, rule)
            except FshError as e:
                self.state.record_failure(entity, e, rule_index=index, source=rule.source_info)

        # 4. Differential and registration
        self.state.set_status(entity, ExportStatus.DIFFING)
        definition.differential = definition.tree.diff(parent.tree, self.applier.fisher)
        try:
            self.package.add_structure(definition)
        except FshError as e:
            self.state.fail(entity, e)
            return None

        self.parents[definition.id] = parent
        self.exported[entity] = definition
        self.state.set_status(entity, ExportStatus.DONE)
        logger.info(
            f"Exported {entity.name}: {len(definition.snapshot)} elements, "
            f"{len(definition.differential)} in differential"
        )
        return definition

    def _resolve_parent(self, entity: FshEntity) -> StructureDefinition:
        reference = self.resolver.parent_reference(entity)
        if not reference:
            raise UnresolvedReferenceError(
                f"{entity.kind} {entity.name} has no parent and no default parent is configured"
            )
        expected = STRUCTURE_TYPES
        if isinstance(entity, Extension):
            expected = {DefinitionType.EXTENSION, DefinitionType.TYPE}
        return self.resolver.resolve_structure(reference, expected)

    def _derive(self, entity: FshEntity, parent: StructureDefinition) -> StructureDefinition:
        definition = parent.model_copy(deep=True)
        definition.id = entity.id
        definition.url = self.resolver.canonical_url(entity)
        definition.name = entity.name
        definition.title = entity.title
        definition.description = entity.description
        definition.version = self.config.version
        definition.status = self.config.status
        definition.publisher = self.config.publisher
        definition.fhir_version = self.config.fhir_version
        definition.derivation = "constraint"
        definition.base_definition = parent.url
        definition.abstract = False
        definition.experimental = None
        definition.date = None
        definition.purpose = None
        definition.copyright = None
        definition.jurisdiction = []
        definition.differential = []

        if isinstance(entity, Extension):
            self._stamp_extension(entity, definition)
        return definition

    def _stamp_extension(self, extension: Extension, definition: StructureDefinition) -> None:
        """Fix Extension.url to the canonical and record where the extension may be used."""
        root = definition.tree.root
        url_element = definition.tree.get(f"{root.id}.url") if root is not None else None
        if url_element is not None:
            url_element.fixed = definition.url
            url_element.fixed_type = "uri"
            url_element.pattern = url_element.pattern_type = None

        if extension.contexts:
            definition.context = [self._context_entry(c) for c in extension.contexts]
        elif not definition.context:
            definition.context = [dict(DEFAULT_EXTENSION_CONTEXT)]

    def _context_entry(self, context: str) -> Dict[str, str]:
        if looks_like_url(context):
            return {"type": "extension", "expression": context}
        if "." not in context:
            try:
                url = self.resolver.resolve_url(context, {DefinitionType.EXTENSION})
                return {"type": "extension", "expression": url}
            except UnresolvedReferenceError:
                pass
        return {"type": "element", "expression": context}

    # --- Mappings ---

    def apply_mapping(self, mapping: Mapping) -> None:
        """
        Attach a Mapping to the local definition it maps, then refresh that
        definition's differential.
        """
        self.state.set_status(mapping, ExportStatus.APPLYING_RULES)
        try:
            target = self.resolver.resolve(mapping.source, {DefinitionType.PROFILE, DefinitionType.EXTENSION})
            if not target.is_local:
                raise InvalidRuleError(
                    f"Mapping {mapping.name} targets {mapping.source}, which is not a local profile or extension"
                )
            definition = self.resolver.resolve_structure(mapping.source, {DefinitionType.PROFILE, DefinitionType.EXTENSION})
        except FshError as e:
            self.state.fail(mapping, e)
            return

        if not any(m.identity == mapping.id for m in definition.mapping):
            definition.mapping.append(StructureMapping(
                identity=mapping.id,
                uri=mapping.target,
                name=mapping.title or mapping.name,
                comment=mapping.description,
            ))

        for index, rule in enumerate(mapping.rules):
            try:
                element = self.applier.find_element(definition, rule.path)
                element.mappings.append(ElementMapping(
                    identity=mapping.id,
                    map=rule.map,
                    comment=rule.comment,
                    language=rule.language,
                ))
            except FshError as e:
                self.state.record_failure(mapping, e, rule_index=index, source=rule.source_info)

        parent = self.parents.get(definition.id)
        if parent is not None:
            definition.differential = definition.tree.diff(parent.tree, self.applier.fisher)
        self.state.set_status(mapping, ExportStatus.DONE)
        logger.info(f"Applied mapping {mapping.name} to {definition.name} ({len(mapping.rules)} rules)")

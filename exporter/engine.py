"""
The FSH Export Engine.

This module drives one compilation pass over a Tank:
1. Dependency Ordering - every entity is exported after its local dependencies.
2. Kind Dispatch - structures, terminology, instances and mappings each go to their exporter.
3. Accumulated Diagnostics - no error stops the pass; everything is reported at the end.
"""

import logging
from typing import Optional

from fhirdefs import DefinitionLibrary
from fshtypes import (
    CodeSystem,
    Configuration,
    Extension,
    FshEntity,
    Instance,
    Invariant,
    Mapping,
    Profile,
    ValueSet,
)
from .applier import RuleApplier
from .errors import FshError, ShadowedDefinitionError
from .instances import InstanceExporter
from .ordering import DependencyOrderer
from .package import DefinitionFisher, Package
from .resolver import NameResolver
from .state import ExportState, ExportStatus, Severity
from .structures import StructureExporter
from .tank import Tank
from .terminology import CodeSystemExporter, ValueSetExporter

logger = logging.getLogger(__name__)


class FshCompiler:
    """
    Main export engine.
    Ingests the Tank (local entities) and the Definition Library, outputs a Package.
    Each call to run() uses fresh state, so one compiler can be run repeatedly.
    """

    def __init__(self, tank: Tank, library: DefinitionLibrary, config: Configuration):
        self.tank = tank
        self.library = library
        self.config = config
        self.state = ExportState()

    def run(self) -> Package:
        """
        Execute the export pipeline.
        """
        logger.info(f"Starting export of {len(self.tank)} entities against {len(self.library)} base definitions...")

        self.state = ExportState()
        package = Package()
        resolver = NameResolver(self.tank, self.library, self.config)
        applier = RuleApplier(resolver, DefinitionFisher(package, self.library))
        structures = StructureExporter(resolver, applier, self.state, package, self.config)
        value_sets = ValueSetExporter(resolver, self.config)
        code_systems = CodeSystemExporter(resolver, self.config)
        instances = InstanceExporter(resolver, applier)

        # 1. Entities the Tank turned away
        for entity, error in self.tank.rejected:
            self.state.record_failure(entity, error)
        # Local names hiding base definitions
        for entity in self.tank:
            shadowed = resolver.shadowed_definition(entity)
            if shadowed is not None:
                self.state.record_failure(
                    entity,
                    ShadowedDefinitionError(
                        f"{entity.kind} {entity.name} hides base definition {shadowed.url}",
                        details={"url": shadowed.url},
                    ),
                    severity=Severity.WARNING,
                )

        # 2. Order, cutting cycles out
        ordering = DependencyOrderer(resolver).order()
        for cycle, error in zip(ordering.cycles, ordering.cycle_errors()):
            for member in cycle:
                if self.state.get_status(member) != ExportStatus.FAILED:
                    self.state.fail(member, error)

        # 3. Export in order
        for entity in ordering.order:
            if isinstance(entity, (Profile, Extension)):
                structures.export(entity)
            elif isinstance(entity, ValueSet):
                self._export_resource(entity, package, value_sets.export)
            elif isinstance(entity, CodeSystem):
                self._export_resource(entity, package, code_systems.export)
            elif isinstance(entity, Instance):
                self._export_resource(
                    entity, package, instances.export,
                    register=instances.is_exported(entity),
                )
            elif isinstance(entity, Mapping):
                structures.apply_mapping(entity)
            elif isinstance(entity, Invariant):
                # Consumed by ObeysRules, never exported on its own
                continue
            else:
                raise TypeError(f"No exporter for entity kind {type(entity).__name__}")

        package.diagnostics = list(self.state.diagnostics)

        stats = self.state.get_statistics()
        logger.info(
            f"Export finished: {len(package)} resources, {stats['failed']} failed entities, "
            f"{stats['errors']} errors, {stats['warnings']} warnings"
        )
        return package

    def _export_resource(self, entity: FshEntity, package: Package, export, register: bool = True) -> Optional[dict]:
        """Run a JSON-producing exporter and register its result."""
        self.state.set_status(entity, ExportStatus.APPLYING_RULES)
        try:
            resource = export(entity, self.state)
            if register:
                package.add_resource(resource)
        except FshError as e:
            self.state.fail(entity, e)
            return None
        self.state.set_status(entity, ExportStatus.DONE)
        return resource

"""
Export State Management.

This module acts as the 'Memory' of a compilation pass. It tracks:
1. The export status of every entity (for on-demand export and cycle checks).
2. Entities that finished with rule-level errors.
3. Every diagnostic raised along the way, for the final report.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from fshtypes import FshEntity, SourceInfo
from .errors import FshError

logger = logging.getLogger(__name__)


class ExportStatus(str, Enum):
    PENDING = "Pending"
    RESOLVING_PARENT = "ResolvingParent"
    APPLYING_RULES = "ApplyingRules"
    DIFFING = "Diffing"
    DONE = "Done"
    FAILED = "Failed"

    @property
    def in_progress(self) -> bool:
        return self in (ExportStatus.RESOLVING_PARENT, ExportStatus.APPLYING_RULES, ExportStatus.DIFFING)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class SourceLocation:
    """Entity plus, for rule-level problems, the rule's position and source span."""
    entity: Optional[str] = None
    rule_index: Optional[int] = None
    source: SourceInfo = field(default_factory=SourceInfo)

    def __str__(self) -> str:
        where = str(self.source)
        if self.entity is None:
            return where
        if self.rule_index is None:
            return f"{where} ({self.entity})"
        return f"{where} ({self.entity}, rule {self.rule_index + 1})"


@dataclass
class Diagnostic:
    """Detailed reason a rule or entity did not fully export."""
    severity: Severity
    error_type: str  # e.g. "PathNotFound", "IllegalNarrowing", "CyclicDependency"
    message: str
    location: SourceLocation
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.error_type}: {self.message} @ {self.location}"


class ExportState:
    """
    Mutable state of one compilation pass.
    Entities are keyed by identity, so two entities sharing a name never collide here.
    """

    def __init__(self):
        self.statuses: Dict[FshEntity, ExportStatus] = {}
        self.degraded: Dict[FshEntity, int] = defaultdict(int)
        self.diagnostics: List[Diagnostic] = []

    # --- Status ---

    def get_status(self, entity: FshEntity) -> ExportStatus:
        return self.statuses.get(entity, ExportStatus.PENDING)

    def set_status(self, entity: FshEntity, status: ExportStatus) -> None:
        logger.debug(f"{entity.name}: {self.get_status(entity).value} -> {status.value}")
        self.statuses[entity] = status

    def is_degraded(self, entity: FshEntity) -> bool:
        return self.degraded.get(entity, 0) > 0

    # --- Diagnostics ---

    def record_failure(
        self,
        entity: Optional[FshEntity],
        error: FshError,
        rule_index: Optional[int] = None,
        source: Optional[SourceInfo] = None,
        severity: Severity = Severity.ERROR
    ) -> Diagnostic:
        """
        Log a failed rule or entity.
        Rule-level failures mark the entity as exported-with-errors.
        """
        location = SourceLocation(
            entity=entity.name if entity is not None else None,
            rule_index=rule_index,
            source=source or (entity.source_info if entity is not None else SourceInfo()),
        )
        diagnostic = Diagnostic(
            severity=severity,
            error_type=error.error_type,
            message=error.message,
            location=location,
            details=dict(error.details),
        )
        self.diagnostics.append(diagnostic)
        if entity is not None and rule_index is not None:
            self.degraded[entity] += 1

        if severity == Severity.ERROR:
            logger.error(str(diagnostic))
        else:
            logger.warning(str(diagnostic))
        return diagnostic

    def fail(self, entity: FshEntity, error: FshError) -> Diagnostic:
        """Entity-level failure: the entity is left out of the output."""
        self.set_status(entity, ExportStatus.FAILED)
        return self.record_failure(entity, error)

    # --- Reporting ---

    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.ERROR]

    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

    def get_statistics(self) -> Dict[str, Any]:
        """Summary counts for the final report."""
        status_counts: Dict[str, int] = defaultdict(int)
        for status in self.statuses.values():
            status_counts[status.value] += 1

        type_counts: Dict[str, int] = defaultdict(int)
        for diagnostic in self.diagnostics:
            type_counts[diagnostic.error_type] += 1

        return {
            "entities": len(self.statuses),
            "exported": status_counts.get(ExportStatus.DONE.value, 0),
            "failed": status_counts.get(ExportStatus.FAILED.value, 0),
            "exported_with_errors": sum(
                1 for entity, count in self.degraded.items()
                if count and self.get_status(entity) == ExportStatus.DONE
            ),
            "errors": len(self.errors()),
            "warnings": len(self.warnings()),
            "diagnostics_by_type": dict(type_counts),
        }

    def get_failure_report(self) -> List[Dict[str, Any]]:
        """
        One entry per entity with diagnostics, failed entities first.
        Useful for the author-facing summary printed at the end of a run.
        """
        grouped: Dict[str, List[Diagnostic]] = defaultdict(list)
        for diagnostic in self.diagnostics:
            grouped[diagnostic.location.entity or "<project>"].append(diagnostic)

        status_by_name = {entity.name: status for entity, status in self.statuses.items()}
        report = []
        for name, diagnostics in grouped.items():
            breakdown: Dict[str, int] = defaultdict(int)
            for d in diagnostics:
                breakdown[d.error_type] += 1
            status = status_by_name.get(name)
            report.append({
                "entity": name,
                "status": status.value if status else None,
                "failed": status == ExportStatus.FAILED,
                "diagnostic_count": len(diagnostics),
                "breakdown": dict(breakdown),
                "messages": [str(d) for d in diagnostics],
            })

        report.sort(key=lambda x: (not x["failed"], x["entity"]))
        return report

"""
Baseline analysis of source and destination before a differential run.

The analyzer compares row counts per entity type, checks that every source
column still has a destination counterpart, and rolls the findings up into a
report with an overall health status and recommendations.

Example:
    >>> analyzer = BaselineAnalyzer(source, destination, runs)
    >>> report = await analyzer.generate_baseline_report(["offices", "doctors"])
    >>> report.overall_status
    <BaselineStatus.HEALTHY: 'healthy'>
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from diffmigrate.entities import EntityMapping, get_entity_mapping
from diffmigrate.fingerprint import SYSTEM_FIELDS
from diffmigrate.models import new_id
from diffmigrate.observability import (
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_TYPE,
    ATTR_RECORD_COUNT,
    Tracer,
    create_tracer,
)
from diffmigrate.repositories import RunRepository
from diffmigrate.stores.base import DestinationStore, SourceStore

logger = logging.getLogger(__name__)

LEGACY_PREFIX = "legacy_"

SIGNIFICANT_GAP_PERCENTAGE = 5.0
HIGH_GAP_PERCENTAGE = 10.0
CRITICAL_GAP_PERCENTAGE = 15.0
CRITICAL_MISSING_MAPPINGS = 5
"""More missing columns than this in one entity is a critical issue."""

LARGE_OVERALL_GAP = 100_000

_STANDARD_DESTINATION_COLUMNS = frozenset({"id", "created_at", "updated_at"})


class BaselineStatus(Enum):
    """Overall health of a baseline report."""

    HEALTHY = "healthy"
    GAPS_DETECTED = "gaps_detected"
    CRITICAL_ISSUES = "critical_issues"


@dataclass(frozen=True)
class EntityAnalysis:
    """
    Record counts of one entity type on both sides.

    Attributes:
        entity_type: Entity analyzed.
        source_count: Rows in the source table.
        destination_count: Rows in the destination table.
        last_migration_at: When the entity last completed a run, if known.
        analyzed_at: When the counts were taken.
    """

    entity_type: str
    source_count: int
    destination_count: int
    last_migration_at: datetime | None
    analyzed_at: datetime

    @property
    def record_gap(self) -> int:
        return self.source_count - self.destination_count

    @property
    def gap_percentage(self) -> float:
        if self.source_count == 0:
            return 0.0
        return round(self.record_gap / self.source_count * 100, 2)

    @property
    def has_data(self) -> bool:
        return self.source_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "source_count": self.source_count,
            "destination_count": self.destination_count,
            "record_gap": self.record_gap,
            "gap_percentage": self.gap_percentage,
            "has_data": self.has_data,
            "last_migration_at": (
                self.last_migration_at.isoformat() if self.last_migration_at else None
            ),
            "analyzed_at": self.analyzed_at.isoformat(),
        }


@dataclass(frozen=True)
class SchemaChange:
    """A column whose type differs between source and destination."""

    field: str
    change_type: str
    details: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "change_type": self.change_type, "details": self.details}


@dataclass(frozen=True)
class MappingValidation:
    """
    Column-level comparison of one entity's tables.

    A mapping is valid when every source column exists in the destination,
    either under the same name or prefixed with ``legacy_``. Orphaned
    destination columns and type changes are reported but do not invalidate
    the mapping.
    """

    entity_type: str
    missing_mappings: tuple[str, ...]
    orphaned_mappings: tuple[str, ...]
    schema_changes: tuple[SchemaChange, ...]

    @property
    def is_valid(self) -> bool:
        return not self.missing_mappings

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "is_valid": self.is_valid,
            "missing_mappings": list(self.missing_mappings),
            "orphaned_mappings": list(self.orphaned_mappings),
            "schema_changes": [change.to_dict() for change in self.schema_changes],
        }


@dataclass(frozen=True)
class BaselineReport:
    """
    Aggregated baseline analysis over several entity types.

    Attributes:
        analysis_id: Unique id of this analysis.
        entity_types: Entity types requested.
        overall_status: Health rolled up from gaps and mapping issues.
        entity_results: Counts for every entity that could be analyzed.
        mapping_validation: Column checks for every entity that could be read.
        recommendations: Operator guidance, never empty.
        duration_ms: Wall-clock time of the analysis.
        queries_executed: Store and repository queries issued.
        generated_at: When the report was produced.
    """

    analysis_id: str
    entity_types: tuple[str, ...]
    overall_status: BaselineStatus
    entity_results: tuple[EntityAnalysis, ...]
    mapping_validation: tuple[MappingValidation, ...]
    recommendations: tuple[str, ...]
    duration_ms: float
    queries_executed: int
    generated_at: datetime

    @property
    def total_source_records(self) -> int:
        return sum(r.source_count for r in self.entity_results)

    @property
    def total_destination_records(self) -> int:
        return sum(r.destination_count for r in self.entity_results)

    @property
    def overall_gap(self) -> int:
        return self.total_source_records - self.total_destination_records

    @property
    def average_gap_percentage(self) -> float:
        return average_gap_percentage(self.entity_results)

    @property
    def entities_with_gaps(self) -> int:
        return sum(1 for r in self.entity_results if r.record_gap > 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "total_entities": len(self.entity_types),
            "entities_analyzed": [r.entity_type for r in self.entity_results],
            "overall_status": self.overall_status.value,
            "entity_results": [r.to_dict() for r in self.entity_results],
            "mapping_validation": [v.to_dict() for v in self.mapping_validation],
            "recommendations": list(self.recommendations),
            "summary": {
                "total_source_records": self.total_source_records,
                "total_destination_records": self.total_destination_records,
                "overall_gap": self.overall_gap,
                "average_gap_percentage": self.average_gap_percentage,
                "entities_with_gaps": self.entities_with_gaps,
            },
            "performance": {
                "duration_ms": self.duration_ms,
                "queries_executed": self.queries_executed,
                "average_query_time_ms": (
                    round(self.duration_ms / self.queries_executed, 2)
                    if self.queries_executed
                    else 0.0
                ),
            },
            "generated_at": self.generated_at.isoformat(),
        }


def average_gap_percentage(results: Sequence[EntityAnalysis]) -> float:
    if not results:
        return 0.0
    return round(sum(r.gap_percentage for r in results) / len(results), 2)


def overall_status(
    results: Sequence[EntityAnalysis],
    validations: Sequence[MappingValidation],
) -> BaselineStatus:
    """
    Roll entity gaps and mapping issues up into one status.

    Critical when the average gap exceeds 15% or an entity misses more than
    five column mappings; gaps detected when entities with gaps average over
    5%, or when any mapping is invalid.
    """
    average = average_gap_percentage(results)
    if average > CRITICAL_GAP_PERCENTAGE or any(
        len(v.missing_mappings) > CRITICAL_MISSING_MAPPINGS for v in validations
    ):
        return BaselineStatus.CRITICAL_ISSUES
    with_gaps = any(r.record_gap > 0 for r in results)
    if (with_gaps and average > SIGNIFICANT_GAP_PERCENTAGE) or any(
        not v.is_valid for v in validations
    ):
        return BaselineStatus.GAPS_DETECTED
    return BaselineStatus.HEALTHY


def recommendations(
    results: Sequence[EntityAnalysis],
    validations: Sequence[MappingValidation],
) -> list[str]:
    advice: list[str] = []
    with_gaps = sum(1 for r in results if r.record_gap > 0)
    if with_gaps:
        advice.append(f"{with_gaps} entities have record gaps - investigate missing data")
    invalid = sum(1 for v in validations if not v.is_valid)
    if invalid:
        advice.append(
            f"{invalid} entities have mapping validation issues - review schema changes"
        )
    if average_gap_percentage(results) > HIGH_GAP_PERCENTAGE:
        advice.append(
            "High average gap percentage - consider full re-sync for affected entities"
        )
    overall_gap = sum(r.source_count for r in results) - sum(
        r.destination_count for r in results
    )
    if overall_gap > LARGE_OVERALL_GAP:
        advice.append("Large overall gap detected - verify migration completeness")
    if not advice:
        advice.append("All entities appear healthy - ready for differential migration")
    return advice


def compare_columns(
    entity_type: str,
    source_columns: Mapping[str, str],
    destination_columns: Mapping[str, str],
) -> MappingValidation:
    """Compare column listings of an entity's source and destination tables."""
    missing: list[str] = []
    changes: list[SchemaChange] = []
    for name, source_type in source_columns.items():
        destination_type = destination_columns.get(
            name, destination_columns.get(f"{LEGACY_PREFIX}{name}")
        )
        if destination_type is None:
            missing.append(name)
        elif destination_type != source_type:
            changes.append(
                SchemaChange(
                    field=name,
                    change_type="modified",
                    details=f"Type changed from {source_type} to {destination_type}",
                )
            )
    orphaned = [
        name
        for name in destination_columns
        if not name.startswith(LEGACY_PREFIX)
        and name not in _STANDARD_DESTINATION_COLUMNS
        and name not in source_columns
    ]
    return MappingValidation(
        entity_type=entity_type,
        missing_mappings=tuple(missing),
        orphaned_mappings=tuple(orphaned),
        schema_changes=tuple(changes),
    )


class BaselineAnalyzer:
    """
    Compares source and destination before differential migration.

    Args:
        source: Source store.
        destination: Destination store.
        runs: Run repository, for the last completed migration per entity.
        mappings: Entity registry override.
        tracer: Optional custom Tracer.
        enable_tracing: Whether to create an OpenTelemetry tracer.
        clock: Current time for analysis timestamps.
    """

    def __init__(
        self,
        source: SourceStore,
        destination: DestinationStore,
        runs: RunRepository | None = None,
        mappings: Mapping[str, EntityMapping] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._source = source
        self._destination = destination
        self._runs = runs
        self._mappings = mappings
        self._clock = clock or (lambda: datetime.now(UTC))
        self._queries = 0

    async def analyze_entity(self, entity_type: str) -> EntityAnalysis:
        """
        Count the rows of one entity type on both sides.

        Raises:
            UnknownEntityError: If the entity type is not registered.
        """
        mapping = get_entity_mapping(entity_type, self._mappings)
        with self._tracer.span(
            "diffmigrate.baseline.analyze_entity",
            {ATTR_ENTITY_TYPE: entity_type},
        ) as span:
            source_count = await self._source.count_rows(mapping)
            destination_count = await self._destination.count_rows(mapping)
            self._queries += 2
            last_migration_at = None
            if self._runs is not None:
                last_migration_at = await self._runs.last_completed_at(entity_type)
                self._queries += 1
            result = EntityAnalysis(
                entity_type=entity_type,
                source_count=source_count,
                destination_count=destination_count,
                last_migration_at=last_migration_at,
                analyzed_at=self._clock(),
            )
            if span:
                span.set_attribute(ATTR_RECORD_COUNT, source_count)
            logger.info(
                "Analyzed %s: %d source, %d destination, gap %d (%.2f%%)",
                entity_type,
                source_count,
                destination_count,
                result.record_gap,
                result.gap_percentage,
                extra={"entity_type": entity_type},
            )
            return result

    async def validate_mappings(self, entity_type: str) -> MappingValidation:
        """
        Compare the columns of an entity's source and destination tables.

        Raises:
            UnknownEntityError: If the entity type is not registered.
        """
        mapping = get_entity_mapping(entity_type, self._mappings)
        with self._tracer.span(
            "diffmigrate.baseline.validate_mappings",
            {ATTR_ENTITY_TYPE: entity_type},
        ):
            source_columns = await self._source.describe_columns(mapping)
            destination_columns = await self._destination.describe_columns(mapping)
            self._queries += 2
            validation = compare_columns(entity_type, source_columns, destination_columns)
            log = logger.info if validation.is_valid else logger.warning
            log(
                "Mapping validation for %s: %d missing, %d orphaned, %d type changes",
                entity_type,
                len(validation.missing_mappings),
                len(validation.orphaned_mappings),
                len(validation.schema_changes),
                extra={"entity_type": entity_type},
            )
            return validation

    async def analyze_all_entities(self, entity_types: Sequence[str]) -> list[EntityAnalysis]:
        """Analyze each entity type; failures are logged and skipped."""
        results: list[EntityAnalysis] = []
        for entity_type in entity_types:
            try:
                results.append(await self.analyze_entity(entity_type))
            except Exception:
                logger.exception(
                    "Failed to analyze %s",
                    entity_type,
                    extra={"entity_type": entity_type},
                )
        return results

    async def _validate_all(self, entity_types: Sequence[str]) -> list[MappingValidation]:
        validations: list[MappingValidation] = []
        for entity_type in entity_types:
            try:
                validations.append(await self.validate_mappings(entity_type))
            except Exception:
                logger.exception(
                    "Failed to validate mappings for %s",
                    entity_type,
                    extra={"entity_type": entity_type},
                )
        return validations

    async def generate_baseline_report(self, entity_types: Sequence[str]) -> BaselineReport:
        """
        Analyze and validate every entity type and summarize the result.

        Entities that cannot be read are left out of the report rather than
        failing it.
        """
        analysis_id = new_id()
        started = time.perf_counter()
        self._queries = 0
        with self._tracer.span(
            "diffmigrate.baseline.generate_report",
            {ATTR_ENTITY_COUNT: len(entity_types)},
        ):
            logger.info(
                "Starting baseline analysis %s for %d entities",
                analysis_id,
                len(entity_types),
            )
            results = await self.analyze_all_entities(entity_types)
            validations = await self._validate_all(entity_types)
            report = BaselineReport(
                analysis_id=analysis_id,
                entity_types=tuple(entity_types),
                overall_status=overall_status(results, validations),
                entity_results=tuple(results),
                mapping_validation=tuple(validations),
                recommendations=tuple(recommendations(results, validations)),
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                queries_executed=self._queries,
                generated_at=self._clock(),
            )
            logger.info(
                "Baseline analysis %s completed: %s (overall gap %d)",
                analysis_id,
                report.overall_status.value,
                report.overall_gap,
            )
            return report


__all__ = [
    "BaselineAnalyzer",
    "BaselineReport",
    "BaselineStatus",
    "EntityAnalysis",
    "MappingValidation",
    "SchemaChange",
    "compare_columns",
    "overall_status",
    "recommendations",
]

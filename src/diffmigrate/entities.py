"""
Entity type registry.

Maps each logical entity type to its source table, destination table and the
``legacy_<singular>_id`` column that joins destination rows back to source
ids, and declares the default foreign-key dependencies between entity types.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, replace

from diffmigrate.exceptions import UnknownEntityError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_identifier(name: str) -> str:
    """
    Reject anything that is not a plain SQL identifier.

    Table and column names are interpolated into SQL text, so they must
    never come from untrusted input unchecked.

    Raises:
        ValueError: If ``name`` is not a valid identifier.
    """
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _singular(entity_type: str) -> str:
    if entity_type.endswith("ies"):
        return entity_type[:-3] + "y"
    if entity_type.endswith("s"):
        return entity_type[:-1]
    return entity_type


@dataclass(frozen=True)
class EntityMapping:
    """
    Table mapping for one entity type.

    Attributes:
        entity_type: Logical entity type (e.g. "orders").
        source_table: Table in the legacy schema.
        destination_table: Table in the target schema.
        id_field: Primary key column of the source table.
        timestamp_field: Last-modified column in both schemas.
        legacy_id_field: Destination column holding the source id. Derived
            as ``legacy_<singular>_id`` when not given.
    """

    entity_type: str
    source_table: str
    destination_table: str
    id_field: str = "id"
    timestamp_field: str = "updated_at"
    legacy_id_field: str = ""

    def __post_init__(self) -> None:
        if not self.legacy_id_field:
            object.__setattr__(
                self, "legacy_id_field", f"legacy_{_singular(self.entity_type)}_id"
            )
        for name in (
            self.source_table,
            self.destination_table,
            self.id_field,
            self.timestamp_field,
            self.legacy_id_field,
        ):
            validate_identifier(name)

    @property
    def legacy_id_column(self) -> str:
        """Alias of ``legacy_id_field``."""
        return self.legacy_id_field

    def with_timestamp_field(self, timestamp_field: str) -> EntityMapping:
        return replace(self, timestamp_field=timestamp_field)


def _mapping(entity_type: str, source_table: str, **overrides: str) -> EntityMapping:
    return EntityMapping(
        entity_type=entity_type,
        source_table=source_table,
        destination_table=entity_type,
        **overrides,
    )


ENTITY_TABLE_MAPPING: Mapping[str, EntityMapping] = {
    m.entity_type: m
    for m in (
        _mapping("offices", "dispatch_office"),
        _mapping("doctors", "dispatch_doctor"),
        _mapping("doctor_offices", "dispatch_doctor_office"),
        _mapping("patients", "dispatch_patient"),
        _mapping("orders", "dispatch_order"),
        _mapping("cases", "dispatch_case"),
        _mapping("files", "dispatch_file"),
        _mapping("case_files", "dispatch_case_file"),
        _mapping("messages", "dispatch_message"),
        _mapping("message_files", "dispatch_message_file"),
        _mapping("jaw", "dispatch_jaw", legacy_id_field="legacy_jaw_id"),
        _mapping("dispatch_records", "dispatch_record", legacy_id_field="legacy_record_id"),
        _mapping("system_messages", "dispatch_system_message"),
        _mapping("message_attachments", "dispatch_message_attachment"),
        _mapping("technician_roles", "dispatch_technician_role"),
        _mapping("order_cases", "dispatch_order_case"),
        _mapping("purchases", "dispatch_purchase"),
        _mapping("treatment_discussions", "dispatch_treatment_discussion"),
        _mapping("template_view_groups", "dispatch_template_view_group"),
        _mapping("template_view_roles", "dispatch_template_view_role"),
    )
}
"""Registered entity types of the legacy dispatch schema."""


ENTITY_DEPENDENCIES: Mapping[str, tuple[str, ...]] = {
    "offices": (),
    "doctors": ("offices",),
    "doctor_offices": ("doctors", "offices"),
    "patients": ("doctors",),
    "orders": ("patients",),
    "cases": ("orders",),
    "files": (),
    "case_files": ("cases", "files"),
    "messages": ("cases",),
    "message_files": ("messages", "files"),
    "jaw": ("patients",),
    "dispatch_records": (),
    "system_messages": (),
    "message_attachments": ("messages",),
    "technician_roles": ("doctors",),
    "order_cases": ("orders", "cases"),
    "purchases": ("orders",),
    "treatment_discussions": ("cases",),
    "template_view_groups": (),
    "template_view_roles": ("template_view_groups",),
}
"""Default foreign-key dependencies; task dependencies override these."""


def get_entity_mapping(
    entity_type: str,
    mappings: Mapping[str, EntityMapping] | None = None,
) -> EntityMapping:
    """
    Look up the table mapping for an entity type.

    Args:
        entity_type: Entity type to look up.
        mappings: Registry to search (defaults to ENTITY_TABLE_MAPPING).

    Raises:
        UnknownEntityError: If the entity type is not registered.
    """
    registry = ENTITY_TABLE_MAPPING if mappings is None else mappings
    try:
        return registry[entity_type]
    except KeyError:
        raise UnknownEntityError(entity_type, list(registry)) from None


__all__ = [
    "EntityMapping",
    "ENTITY_TABLE_MAPPING",
    "ENTITY_DEPENDENCIES",
    "get_entity_mapping",
    "validate_identifier",
]

"""
Unit tests for the entity registry.

Tests cover:
- Derived legacy id columns
- Identifier validation
- Lookup of registered and unknown entity types
- Default dependency graph consistency
"""

import pytest

from diffmigrate.entities import (
    ENTITY_DEPENDENCIES,
    ENTITY_TABLE_MAPPING,
    EntityMapping,
    get_entity_mapping,
    validate_identifier,
)
from diffmigrate.exceptions import UnknownEntityError


class TestEntityMapping:
    """Tests for EntityMapping."""

    @pytest.mark.parametrize(
        "entity_type,legacy_id",
        [
            ("offices", "legacy_office_id"),
            ("doctors", "legacy_doctor_id"),
            ("case_files", "legacy_case_file_id"),
            ("treatment_discussions", "legacy_treatment_discussion_id"),
            ("jaw", "legacy_jaw_id"),
        ],
    )
    def test_legacy_id_field(self, entity_type: str, legacy_id: str) -> None:
        assert get_entity_mapping(entity_type).legacy_id_field == legacy_id

    def test_singular_of_ies(self) -> None:
        mapping = EntityMapping("categories", "dispatch_category", "categories")

        assert mapping.legacy_id_field == "legacy_category_id"
        assert mapping.legacy_id_column == "legacy_category_id"

    def test_explicit_legacy_id(self) -> None:
        mapping = get_entity_mapping("dispatch_records")

        assert mapping.legacy_id_field == "legacy_record_id"

    def test_rejects_unsafe_identifier(self) -> None:
        with pytest.raises(ValueError):
            EntityMapping("offices", "dispatch_office; DROP TABLE x", "offices")

    def test_with_timestamp_field(self) -> None:
        mapping = get_entity_mapping("offices").with_timestamp_field("modified_at")

        assert mapping.timestamp_field == "modified_at"
        assert mapping.source_table == "dispatch_office"


class TestRegistry:
    """Tests for the registry lookups and defaults."""

    def test_get_known(self) -> None:
        mapping = get_entity_mapping("orders")

        assert mapping.source_table == "dispatch_order"
        assert mapping.destination_table == "orders"

    def test_get_unknown(self) -> None:
        with pytest.raises(UnknownEntityError) as exc_info:
            get_entity_mapping("widgets")

        assert exc_info.value.entity_type == "widgets"
        assert "offices" in exc_info.value.known

    def test_custom_registry(self) -> None:
        custom = {"widgets": EntityMapping("widgets", "legacy_widget", "widgets")}

        assert get_entity_mapping("widgets", custom).source_table == "legacy_widget"
        with pytest.raises(UnknownEntityError):
            get_entity_mapping("offices", custom)

    def test_dependencies_reference_registered_types(self) -> None:
        assert set(ENTITY_DEPENDENCIES) == set(ENTITY_TABLE_MAPPING)
        for dependencies in ENTITY_DEPENDENCIES.values():
            assert set(dependencies) <= set(ENTITY_TABLE_MAPPING)

    def test_core_chain(self) -> None:
        assert ENTITY_DEPENDENCIES["doctors"] == ("offices",)
        assert ENTITY_DEPENDENCIES["patients"] == ("doctors",)
        assert ENTITY_DEPENDENCIES["orders"] == ("patients",)
        assert ENTITY_DEPENDENCIES["case_files"] == ("cases", "files")


class TestValidateIdentifier:
    """Tests for validate_identifier."""

    @pytest.mark.parametrize("name", ["orders", "_private", "legacy_order_id", "T1"])
    def test_valid(self, name: str) -> None:
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["", "1abc", "a-b", "a b", "x;--"])
    def test_invalid(self, name: str) -> None:
        with pytest.raises(ValueError):
            validate_identifier(name)

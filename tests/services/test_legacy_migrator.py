"""Tests for LegacyMigrator: legacy template ids to compositions."""

import pytest
from structlog.testing import capture_logs

from phasegate.domain.composition import DEFAULT_LEGACY_MAPPINGS, is_composition_id

pytestmark = pytest.mark.unit


def test_fullstack_expo_splits_into_web_and_mobile(migrator):
    composition = migrator.migrate_template_id("nextjs_fullstack_expo")

    assert composition.base == "nextjs_app_router"
    assert composition.mobile == "expo_integration"
    assert composition.backend == "integrated"
    assert composition.data == "neon_postgres"
    assert composition.architecture == "monolith"
    assert composition.has_mobile


def test_every_legacy_id_maps_to_a_composition(migrator):
    ids = migrator.get_all_legacy_template_ids()

    assert len(ids) == 13
    assert set(ids) == set(DEFAULT_LEGACY_MAPPINGS)
    for template_id in ids:
        composition = migrator.migrate_template_id(template_id)
        assert composition is not None
        assert is_composition_id(composition.to_id())
        assert migrator.get_migration_reason(template_id)


def test_unknown_id_returns_none_and_counts(migrator, metrics):
    assert migrator.migrate_template_id("unknown_template") is None
    assert migrator.migrate_template_id("cobol_mainframe") is None
    assert migrator.is_legacy_template("cobol_mainframe") is False
    assert migrator.get_migration_reason("cobol_mainframe") is None
    assert metrics.count("legacy.unmapped") == 2


def test_unknown_id_logs_structured_warning(migrator):
    with capture_logs() as logs:
        migrator.migrate_template_id("cobol_mainframe")

    assert logs == [
        {"event": "legacy_template_unmapped", "log_level": "warning", "template_id": "cobol_mainframe"}
    ]


def test_known_id_logs_nothing(migrator):
    with capture_logs() as logs:
        migrator.migrate_template_id("nextjs_fullstack_expo")

    assert logs == []


def test_migrate_multiple(migrator):
    result = migrator.migrate_multiple(["nextjs_fullstack_expo", "unknown"])

    assert list(result) == ["nextjs_fullstack_expo", "unknown"]
    assert result["nextjs_fullstack_expo"] is not None
    assert result["unknown"] is None


def test_resolve_stack_id_converts_legacy_ids(migrator):
    assert migrator.resolve_stack_id("nextjs_fullstack_expo") == (
        "nextjs_app_router+expo_integration+integrated+neon_postgres+monolith"
    )


def test_resolve_stack_id_normalizes_compositions(migrator):
    assert migrator.resolve_stack_id(" react_spa+none+express_api+postgresql+monolith ") == (
        "react_spa+none+express_api+postgresql+monolith"
    )


@pytest.mark.parametrize("stack_id", ["cobol_mainframe", "a+b", "a++c+d+e"])
def test_resolve_stack_id_rejects_unknown(migrator, stack_id):
    with pytest.raises(ValueError):
        migrator.resolve_stack_id(stack_id)

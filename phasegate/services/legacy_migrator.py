"""LegacyMigrator: old flat stack template ids to five-layer compositions.

Pure lookup over an injected table. Unknown ids never raise: they are logged
and returned as None so callers can treat them as already compositional or
unknown.
"""

from collections.abc import Iterable, Mapping

import structlog

from phasegate.core.metrics import MetricsSink, NullMetrics
from phasegate.core.orchestrator_spec import OrchestratorSpec
from phasegate.domain.composition import (
    LegacyTemplateMapping,
    StackComposition,
    is_composition_id,
    parse_composition_id,
)

logger = structlog.get_logger(__name__)


class LegacyMigrator:
    def __init__(self, mappings: Mapping[str, LegacyTemplateMapping], metrics: MetricsSink | None = None):
        self._mappings = dict(mappings)
        self.metrics = metrics or NullMetrics()

    @classmethod
    def from_spec(cls, spec: OrchestratorSpec, metrics: MetricsSink | None = None) -> "LegacyMigrator":
        return cls(spec.legacy_template_migration, metrics)

    def migrate_template_id(self, template_id: str) -> StackComposition | None:
        """Composition for a legacy id, or None (logged) if the id is not in the table."""
        mapping = self._mappings.get(template_id)
        if mapping is None:
            logger.warning("legacy_template_unmapped", template_id=template_id)
            self.metrics.increment("legacy.unmapped")
            return None
        return mapping.composition

    def is_legacy_template(self, template_id: str) -> bool:
        return template_id in self._mappings

    def get_migration_reason(self, template_id: str) -> str | None:
        mapping = self._mappings.get(template_id)
        return mapping.reason if mapping else None

    def get_all_legacy_template_ids(self) -> list[str]:
        return list(self._mappings)

    def migrate_multiple(self, template_ids: Iterable[str]) -> dict[str, StackComposition | None]:
        """Apply migrate_template_id to each id; unknown ids map to None."""
        return {template_id: self.migrate_template_id(template_id) for template_id in template_ids}

    def resolve_stack_id(self, stack_id: str) -> str:
        """Normalize a stack id to its composition id.

        Legacy ids are converted through the table; composition ids are parsed
        and re-serialized.

        Raises:
            ValueError: If the id is neither a known legacy id nor a valid composition id
        """
        stack_id = stack_id.strip()
        if self.is_legacy_template(stack_id):
            return self._mappings[stack_id].composition.to_id()
        if is_composition_id(stack_id):
            return parse_composition_id(stack_id).to_id()
        raise ValueError(f"Unknown stack id: {stack_id!r}")

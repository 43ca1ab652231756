"""Inline validation of phase artifacts.

Each phase owns an ordered list of validators. A validator inspects the
candidate artifact map (filename -> content) and returns findings classified
as errors (block the transition) or warnings (flag for human review).

Pure functions, no I/O. Identical input always yields the same findings in
the same order: validators run in a fixed order and iterate artifacts sorted
by filename.
"""

import json
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum

from phasegate.core.orchestrator_spec import OrchestratorSpec, PhaseDefinition
from phasegate.domain.phases import PHASE_ORDER, Phase


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class PhaseOutcome(StrEnum):
    """Three-way summary of a validation run."""

    ALL_PASS = "all_pass"
    WARNINGS_ONLY = "warnings_only"
    FAILURES_DETECTED = "failures_detected"


@dataclass(frozen=True)
class ValidationIssue:
    """A single finding against one artifact."""

    severity: Severity
    message: str
    phase: Phase
    artifact_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "message": self.message,
            "phase": self.phase.value,
            "artifact_id": self.artifact_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "ValidationIssue":
        return cls(
            severity=Severity(data["severity"]),
            message=data["message"],
            phase=Phase(data["phase"]),
            artifact_id=data.get("artifact_id"),
        )


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating one phase's artifacts.

    ``passed`` is true iff there are no errors. ``can_proceed`` mirrors it:
    it answers "may the workflow advance on content grounds"; approval gates
    are reported separately by the transition result.
    """

    phase: Phase
    passed: bool
    can_proceed: bool
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    accumulated_warnings: tuple[ValidationIssue, ...] = ()
    total_warnings: int = 0

    @property
    def outcome(self) -> PhaseOutcome:
        return classify_outcome(self)

    @property
    def error_summary(self) -> str:
        return "; ".join(issue.message for issue in self.errors)


Validator = Callable[[Mapping[str, str], Phase], list[ValidationIssue]]


def _is_blank(content: str | None) -> bool:
    return content is None or not content.strip()


def presence_validator(required: Iterable[str]) -> Validator:
    """Each required filename that is missing or blank yields one error."""
    required = tuple(required)

    def validate(artifacts: Mapping[str, str], phase: Phase) -> list[ValidationIssue]:
        return [
            ValidationIssue(
                severity=Severity.ERROR,
                message=f"Missing required artifact: {artifact_id}",
                phase=phase,
                artifact_id=artifact_id,
            )
            for artifact_id in required
            if _is_blank(artifacts.get(artifact_id))
        ]

    return validate


# Leading "---" line, body, closing "---" line
FRONTMATTER_PATTERN = re.compile(r"\A---[ \t]*\r?\n.*?\r?\n---[ \t]*(\r?\n|\Z)", re.DOTALL)


def frontmatter_validator(artifacts: Mapping[str, str], phase: Phase) -> list[ValidationIssue]:
    """Markdown artifacts without a frontmatter block yield a warning."""
    issues = []
    for artifact_id in sorted(artifacts):
        content = artifacts[artifact_id]
        if not artifact_id.endswith(".md") or _is_blank(content):
            continue
        if not FRONTMATTER_PATTERN.match(content):
            issues.append(
                ValidationIssue(
                    severity=Severity.WARNING,
                    message=f"Missing frontmatter in {artifact_id}",
                    phase=phase,
                    artifact_id=artifact_id,
                )
            )
    return issues


def clarification_validator(marker: str = "CLARIFICATION NEEDED") -> Validator:
    """Every ``[<marker>: ...]`` occurrence yields one warning."""
    pattern = re.compile(r"\[" + re.escape(marker) + r":?([^\]]*)\]", re.IGNORECASE)

    def validate(artifacts: Mapping[str, str], phase: Phase) -> list[ValidationIssue]:
        issues = []
        for artifact_id in sorted(artifacts):
            for match in pattern.finditer(artifacts[artifact_id] or ""):
                detail = match.group(1).strip()
                message = f"Unresolved clarification in {artifact_id}"
                if detail:
                    message = f"{message}: {detail}"
                issues.append(
                    ValidationIssue(
                        severity=Severity.WARNING,
                        message=message,
                        phase=phase,
                        artifact_id=artifact_id,
                    )
                )
        return issues

    return validate


def structured_data_validator(artifact_id: str, required_keys: Iterable[str] = ()) -> Validator:
    """Parse an artifact as JSON.

    Unparseable content is an error. Parseable content missing any of the
    required keys (absent or empty) is an "Incomplete" warning. A missing
    artifact is left to the presence validator.
    """
    required_keys = tuple(required_keys)

    def validate(artifacts: Mapping[str, str], phase: Phase) -> list[ValidationIssue]:
        content = artifacts.get(artifact_id)
        if _is_blank(content):
            return []

        try:
            document = json.loads(content)
        except json.JSONDecodeError:
            return [
                ValidationIssue(
                    severity=Severity.ERROR,
                    message=f"Invalid JSON in {artifact_id}",
                    phase=phase,
                    artifact_id=artifact_id,
                )
            ]

        if not required_keys:
            return []

        if not isinstance(document, dict):
            return [
                ValidationIssue(
                    severity=Severity.WARNING,
                    message=f"Incomplete {artifact_id} - expected a JSON object",
                    phase=phase,
                    artifact_id=artifact_id,
                )
            ]

        missing = [key for key in required_keys if not document.get(key)]
        if not missing:
            return []
        return [
            ValidationIssue(
                severity=Severity.WARNING,
                message=f"Incomplete {artifact_id} - missing: {', '.join(missing)}",
                phase=phase,
                artifact_id=artifact_id,
            )
        ]

    return validate


def build_phase_validators(
    definition: PhaseDefinition, clarification_marker: str = "CLARIFICATION NEEDED"
) -> tuple[Validator, ...]:
    """Validator list for one phase: presence, structured data, frontmatter, clarifications."""
    validators: list[Validator] = []
    if definition.required_artifacts:
        validators.append(presence_validator(definition.required_artifacts))
    for artifact_id, keys in definition.structured_artifacts.items():
        validators.append(structured_data_validator(artifact_id, keys))
    validators.append(frontmatter_validator)
    validators.append(clarification_validator(clarification_marker))
    return tuple(validators)


def run_inline_validation(
    phase: Phase,
    artifacts: Mapping[str, str],
    validators: Iterable[Validator],
    accumulated_warnings: Iterable[ValidationIssue] | None = None,
) -> ValidationResult:
    """Run every validator and partition the findings.

    New warnings are appended (not de-duplicated) to the prior accumulated
    warnings; ``total_warnings`` is the length of the combined history.
    """
    findings: list[ValidationIssue] = []
    for validator in validators:
        findings.extend(validator(artifacts, phase))

    errors = tuple(f for f in findings if f.severity == Severity.ERROR)
    warnings = tuple(f for f in findings if f.severity == Severity.WARNING)
    accumulated = tuple(accumulated_warnings or ()) + warnings
    passed = len(errors) == 0

    return ValidationResult(
        phase=phase,
        passed=passed,
        can_proceed=passed,
        errors=errors,
        warnings=warnings,
        accumulated_warnings=accumulated,
        total_warnings=len(accumulated),
    )


def classify_outcome(result: ValidationResult) -> PhaseOutcome:
    if result.errors:
        return PhaseOutcome.FAILURES_DETECTED
    if result.warnings:
        return PhaseOutcome.WARNINGS_ONLY
    return PhaseOutcome.ALL_PASS


def failed_artifacts(result: ValidationResult) -> list[str]:
    """Artifact ids carrying errors, de-duplicated, first-seen order."""
    seen: dict[str, None] = {}
    for issue in result.errors:
        if issue.artifact_id:
            seen.setdefault(issue.artifact_id, None)
    return list(seen)


class InlineValidationSystem:
    """Phase -> validators table built once from the orchestrator spec."""

    def __init__(self, spec: OrchestratorSpec):
        self._validators: dict[Phase, tuple[Validator, ...]] = {
            phase: build_phase_validators(spec.phase(phase), spec.clarification_marker)
            for phase in PHASE_ORDER
        }

    def validators_for(self, phase: Phase) -> tuple[Validator, ...]:
        return self._validators[phase]

    def validate(
        self,
        phase: Phase,
        artifacts: Mapping[str, str],
        accumulated_warnings: Iterable[ValidationIssue] | None = None,
    ) -> ValidationResult:
        return run_inline_validation(
            phase, artifacts, self._validators[phase], accumulated_warnings
        )

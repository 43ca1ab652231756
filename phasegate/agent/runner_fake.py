"""AgentRunnerFake: Scenario-based test double for the AgentRunner protocol.

Provides deterministic, instant responses for 5 named scenarios:
- happy_path: Every role returns complete, well-formed artifacts
- agent_failure: Every call reports a model API error
- timeout: Every call stalls until cancelled
- invalid_output: Required artifacts missing and structured data unparseable
- with_warnings: Every required artifact present, no frontmatter, open clarifications
"""

import asyncio
import json
from collections.abc import Mapping

from phasegate.agent.runner import AgentRunResult
from phasegate.domain.phases import AgentRole, Phase
from phasegate.schemas.orchestration import Project


def _markdown(title: str, body: str) -> str:
    return f"---\ntitle: {title}\n---\n\n# {title}\n\n{body}\n"


class AgentRunnerFake:
    """Scenario-based test double for AgentRunner.

    Every call is recorded in ``calls`` as ``(phase, role, sorted context filenames)``.
    """

    VALID_SCENARIOS = {"happy_path", "agent_failure", "timeout", "invalid_output", "with_warnings"}

    def __init__(self, scenario: str = "happy_path"):
        """Initialize AgentRunnerFake with a named scenario.

        Args:
            scenario: One of VALID_SCENARIOS

        Raises:
            ValueError: If scenario is not recognized
        """
        if scenario not in self.VALID_SCENARIOS:
            raise ValueError(f"Unknown scenario: {scenario}. Valid scenarios: {self.VALID_SCENARIOS}")
        self.scenario = scenario
        self.calls: list[tuple[Phase, AgentRole, tuple[str, ...]]] = []

    async def run_agent(
        self,
        phase: Phase,
        role: AgentRole,
        project: Project,
        context_artifacts: Mapping[str, str],
    ) -> AgentRunResult:
        self.calls.append((phase, role, tuple(sorted(context_artifacts))))

        if self.scenario == "agent_failure":
            return AgentRunResult(error="Model API rate limit exceeded. Retry after 60 seconds.")

        if self.scenario == "timeout":
            # Stall until the caller's timeout cancels us
            await asyncio.sleep(3600)
            return AgentRunResult(error="unreachable")

        artifacts = self._happy_path_artifacts(role, project)

        if self.scenario == "invalid_output":
            return AgentRunResult(artifacts=self._break(artifacts))

        if self.scenario == "with_warnings":
            return AgentRunResult(artifacts=self._strip(artifacts))

        return AgentRunResult(artifacts=artifacts)

    def _happy_path_artifacts(self, role: AgentRole, project: Project) -> dict[str, str]:
        name = project.name or project.slug

        if role == AgentRole.ANALYST:
            return {
                "project-brief.md": _markdown(
                    "Project Brief",
                    f"{name} helps small teams track inventory across locations.\n\n"
                    "## Target users\n\nOperations managers at retail shops with 2-10 stores.",
                ),
                "constitution.md": _markdown(
                    "Constitution",
                    "1. Ship the smallest useful slice first.\n2. Every feature has an owner.",
                ),
            }

        if role == AgentRole.PM:
            return {
                "PRD.md": _markdown(
                    "Product Requirements",
                    "## Features\n\n- Stock levels per location\n- Low-stock alerts\n- CSV import",
                ),
                "data-model.md": _markdown(
                    "Data Model",
                    "- Location(id, name)\n- Item(id, sku, name)\n- Stock(location_id, item_id, quantity)",
                ),
                "api-spec.json": json.dumps(
                    {
                        "openapi": "3.1.0",
                        "info": {"title": name, "version": "0.1.0"},
                        "paths": {"/items": {"get": {"summary": "List items"}}},
                    },
                    indent=2,
                ),
            }

        if role == AgentRole.DEVOPS:
            return {
                "DEPENDENCIES.md": _markdown(
                    "Dependencies",
                    "| Package | Version | Purpose |\n|---|---|---|\n| next | 15.0.0 | Web framework |",
                ),
                "dependencies.json": json.dumps(
                    {"dependencies": {"next": "15.0.0", "drizzle-orm": "0.36.0"}},
                    indent=2,
                ),
            }

        if role == AgentRole.ARCHITECT:
            return {
                "architecture.md": _markdown(
                    "Architecture",
                    "Monolithic Next.js app with server actions; Postgres via Drizzle.",
                ),
            }

        if role == AgentRole.SCRUMMASTER:
            return {
                "epics.md": _markdown("Epics", "1. Inventory core\n2. Alerts\n3. Import"),
                "tasks.md": _markdown("Tasks", "- [ ] Location CRUD\n- [ ] Item CRUD\n- [ ] Stock view"),
                "plan.md": _markdown("Plan", "Week 1: inventory core. Week 2: alerts and import."),
            }

        return {}

    @staticmethod
    def _break(artifacts: dict[str, str]) -> dict[str, str]:
        """Drop the first artifact (by filename) and corrupt any JSON that remains."""
        broken = {}
        for filename in sorted(artifacts)[1:]:
            broken[filename] = "Invalid JSON {" if filename.endswith(".json") else artifacts[filename]
        return broken

    @staticmethod
    def _strip(artifacts: dict[str, str]) -> dict[str, str]:
        """Remove frontmatter and append an open clarification to each markdown artifact."""
        stripped = {}
        for filename, content in artifacts.items():
            if filename.endswith(".md"):
                body = content.split("---\n", 2)[-1].lstrip()
                content = f"{body}\n[CLARIFICATION NEEDED: confirm scope of {filename}]\n"
            stripped[filename] = content
        return stripped

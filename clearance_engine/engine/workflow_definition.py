"""
Workflow Definition for the Clearance Engine.

This module reads the step catalog (workflow.yaml) and exposes it as an
immutable, validated graph of step templates grouped into macro-stages.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..errors import WorkflowDefinitionError
from ..models import SignatureTag, StageDefinition, StepTemplate

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW_FILE = Path(__file__).parent / "workflow.yaml"
DEFAULT_ARCHIVE_ROLE = "RecordsArchivesReviewer"


class WorkflowDefinition:
    """
    Ordered catalog of step templates.

    Built once and passed into the engine; nothing mutates it afterwards.
    Validation runs at construction so a bad catalog never reaches a request.
    """

    def __init__(
        self,
        stages: List[StageDefinition],
        templates: List[StepTemplate],
        archive_role: str = DEFAULT_ARCHIVE_ROLE,
    ):
        self._stages: Tuple[StageDefinition, ...] = tuple(stages)
        self._templates: Tuple[StepTemplate, ...] = tuple(sorted(templates, key=lambda t: t.order))
        self.archive_role = archive_role

        self._stage_index: Dict[str, StageDefinition] = {}
        self._by_order: Dict[int, StepTemplate] = {}
        self._validate()
        self._clusters = self._build_clusters()

        logger.debug(
            f"Workflow definition ready: {len(self._stages)} stages, {len(self._templates)} steps"
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        """
        Build a definition from the parsed YAML structure.

        Args:
            data: Mapping with ``stages``, ``steps`` and optional ``archive_role``

        Returns:
            Validated WorkflowDefinition
        """
        if not isinstance(data, dict):
            raise WorkflowDefinitionError("Workflow definition must be a mapping")

        try:
            stages = [StageDefinition(**stage) for stage in data.get("stages", [])]
            templates = []
            for step in data.get("steps", []):
                step = dict(step)
                if "roles" in step:
                    step["allowed_roles"] = step.pop("roles")
                templates.append(StepTemplate(**step))
        except (TypeError, ValueError) as e:
            raise WorkflowDefinitionError(f"Invalid workflow definition: {e}") from e

        return cls(stages, templates, data.get("archive_role", DEFAULT_ARCHIVE_ROLE))

    @classmethod
    def from_yaml(cls, path: Optional[Union[str, Path]] = None) -> "WorkflowDefinition":
        """
        Load a definition from a YAML file.

        Args:
            path: Catalog file; defaults to the bundled workflow.yaml

        Returns:
            Validated WorkflowDefinition
        """
        path = Path(path) if path else DEFAULT_WORKFLOW_FILE
        if not path.exists():
            raise WorkflowDefinitionError(f"Workflow file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        definition = cls.from_dict(data)
        logger.info(f"Loaded workflow definition from {path}")
        return definition

    @property
    def stages(self) -> Tuple[StageDefinition, ...]:
        return self._stages

    @property
    def templates(self) -> Tuple[StepTemplate, ...]:
        """Templates in ascending order."""
        return self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def template(self, order: int) -> StepTemplate:
        try:
            return self._by_order[order]
        except KeyError:
            raise KeyError(f"No step template with order {order}") from None

    def stage(self, key: str) -> StageDefinition:
        try:
            return self._stage_index[key]
        except KeyError:
            raise KeyError(f"No stage with key '{key}'") from None

    def stage_position(self, key: str) -> int:
        """1-based position of a stage in the catalog."""
        for position, stage in enumerate(self._stages, start=1):
            if stage.key == key:
                return position
        raise KeyError(f"No stage with key '{key}'")

    def cluster_for(self, order: int) -> Tuple[int, ...]:
        """Orders that must all clear before ``order`` counts as cleared downstream."""
        return self._clusters.get(order, (order,))

    def bookend(self, tag: SignatureTag) -> Optional[StepTemplate]:
        """Template carrying a bookend signature tag, if the catalog has one."""
        for template in self._templates:
            if template.signature_tag == tag:
                return template
        return None

    def templates_for_role(self, role: str) -> List[StepTemplate]:
        return [t for t in self._templates if t.permits(role)]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the catalog (used by the API and CLI)."""
        return {
            "archive_role": self.archive_role,
            "stages": [stage.model_dump(mode="json") for stage in self._stages],
            "steps": [
                {**template.model_dump(mode="json"), "cluster": list(self.cluster_for(template.order))}
                for template in self._templates
            ],
        }

    def _validate(self):
        """Check the structural invariants of the catalog."""
        if not self._stages:
            raise WorkflowDefinitionError("Workflow must declare at least one stage")
        if not self._templates:
            raise WorkflowDefinitionError("Workflow must declare at least one step")

        for stage in self._stages:
            if stage.key in self._stage_index:
                raise WorkflowDefinitionError(f"Duplicate stage key: {stage.key}")
            self._stage_index[stage.key] = stage

        seen_tags = set()
        for template in self._templates:
            if template.order in self._by_order:
                raise WorkflowDefinitionError(f"Duplicate step order: {template.order}")
            self._by_order[template.order] = template

            if template.stage not in self._stage_index:
                raise WorkflowDefinitionError(
                    f"Step {template.order} references unknown stage '{template.stage}'"
                )

            if template.signature_tag is not None:
                if template.signature_tag in seen_tags:
                    raise WorkflowDefinitionError(
                        f"Signature tag '{template.signature_tag.value}' used more than once"
                    )
                seen_tags.add(template.signature_tag)

        for template in self._templates:
            for dependency in template.depends_on:
                if dependency not in self._by_order:
                    raise WorkflowDefinitionError(
                        f"Step {template.order} depends on missing step {dependency}"
                    )
                if dependency >= template.order:
                    raise WorkflowDefinitionError(
                        f"Step {template.order} depends on step {dependency}; "
                        f"dependencies must point at a smaller order"
                    )

        known_roles = {role for t in self._templates for role in t.allowed_roles}
        for template in self._templates:
            unknown = [r for r in template.interdependent_with if r not in known_roles]
            if unknown:
                raise WorkflowDefinitionError(
                    f"Step {template.order} is interdependent with unknown role(s): {', '.join(unknown)}"
                )

    def _build_clusters(self) -> Dict[int, Tuple[int, ...]]:
        clusters = {}
        for template in self._templates:
            if not template.is_interdependent:
                continue
            peers = {
                other.order
                for other in self._templates
                if other.order != template.order
                and any(role in template.interdependent_with for role in other.allowed_roles)
            }
            clusters[template.order] = tuple(sorted(peers | {template.order}))
        return clusters

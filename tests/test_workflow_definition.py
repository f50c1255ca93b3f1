"""
Tests for the Workflow Definition.

Covers the bundled catalog, cluster computation and load-time validation.
"""

import pytest

from clearance_engine.engine.workflow_definition import WorkflowDefinition
from clearance_engine.errors import WorkflowDefinitionError
from clearance_engine.models import RequestStatus, SignatureTag, StepTemplate

from conftest import chain_catalog, store_catalog


class TestBundledCatalog:
    """The default 13-step clearance catalog."""

    def test_thirteen_steps_in_five_stages(self, definition):
        assert len(definition) == 13
        assert [t.order for t in definition.templates] == list(range(1, 14))
        assert [s.key for s in definition.stages] == [
            "initiation",
            "departmental_review",
            "property_clearance",
            "financial_clearance",
            "final_approval",
        ]

    def test_store_officers_form_a_cluster(self, definition):
        assert definition.cluster_for(6) == (6, 7)
        assert definition.cluster_for(7) == (6, 7)
        assert definition.cluster_for(8) == (8,)
        assert definition.template(6).is_interdependent

    def test_bookends_are_tagged(self, definition):
        assert definition.bookend(SignatureTag.INITIAL).order == 1
        assert definition.bookend(SignatureTag.FINAL).order == 13
        assert definition.template(1).allowed_roles == definition.template(13).allowed_roles

    def test_finance_waits_on_parallel_branches(self, definition):
        assert definition.template(9).depends_on == (4, 5, 8)

    def test_archive_role(self, definition):
        assert definition.archive_role == "RecordsArchivesReviewer"

    def test_stage_lookups(self, definition):
        assert definition.stage("final_approval").status == RequestStatus.HR_CLEARANCE
        assert definition.stage_position("property_clearance") == 3
        with pytest.raises(KeyError):
            definition.stage("nowhere")

    def test_templates_for_role(self, definition):
        orders = [t.order for t in definition.templates_for_role("AcademicVicePresident")]
        assert orders == [1, 13]

    def test_unknown_order(self, definition):
        with pytest.raises(KeyError, match="99"):
            definition.template(99)

    def test_to_dict_includes_clusters(self, definition):
        data = definition.to_dict()
        step6 = next(s for s in data["steps"] if s["order"] == 6)
        assert step6["cluster"] == [6, 7]
        assert data["archive_role"] == "RecordsArchivesReviewer"


class TestCatalogValidation:
    """Structural invariants enforced at load time."""

    def test_roles_key_is_accepted(self):
        definition = WorkflowDefinition.from_dict(chain_catalog(3))
        assert definition.template(2).allowed_roles == ("Role2",)
        assert definition.template(2).depends_on == (1,)

    def test_duplicate_order(self):
        data = chain_catalog(2)
        data["steps"][1]["order"] = 1
        data["steps"][1]["depends_on"] = []
        with pytest.raises(WorkflowDefinitionError, match="Duplicate step order"):
            WorkflowDefinition.from_dict(data)

    def test_dependency_must_point_backwards(self):
        data = chain_catalog(3)
        data["steps"][0]["depends_on"] = [2]
        with pytest.raises(WorkflowDefinitionError, match="smaller order"):
            WorkflowDefinition.from_dict(data)

    def test_missing_dependency(self):
        data = chain_catalog(2)
        data["steps"][1]["depends_on"] = [7]
        with pytest.raises(WorkflowDefinitionError, match="missing step 7"):
            WorkflowDefinition.from_dict(data)

    def test_unknown_stage(self):
        data = chain_catalog(2)
        data["steps"][1]["stage"] = "elsewhere"
        with pytest.raises(WorkflowDefinitionError, match="unknown stage"):
            WorkflowDefinition.from_dict(data)

    def test_empty_roles(self):
        data = chain_catalog(2)
        data["steps"][1]["roles"] = []
        with pytest.raises(WorkflowDefinitionError, match="allowed_roles"):
            WorkflowDefinition.from_dict(data)

    def test_unknown_interdependent_role(self):
        data = store_catalog()
        data["steps"][1]["interdependent_with"] = ["Store9Officer"]
        with pytest.raises(WorkflowDefinitionError, match="Store9Officer"):
            WorkflowDefinition.from_dict(data)

    def test_duplicate_signature_tag(self):
        data = chain_catalog(2)
        data["steps"][0]["signature_tag"] = "initial"
        data["steps"][1]["signature_tag"] = "initial"
        with pytest.raises(WorkflowDefinitionError, match="more than once"):
            WorkflowDefinition.from_dict(data)

    def test_no_steps(self):
        with pytest.raises(WorkflowDefinitionError, match="at least one step"):
            WorkflowDefinition.from_dict({"stages": chain_catalog(1)["stages"], "steps": []})

    def test_missing_file(self, tmp_path):
        with pytest.raises(WorkflowDefinitionError, match="not found"):
            WorkflowDefinition.from_yaml(tmp_path / "missing.yaml")

    def test_load_custom_yaml(self, tmp_path):
        path = tmp_path / "workflow.yaml"
        path.write_text(
            "stages:\n"
            "  - {key: review, name: Review, status: department_review}\n"
            "steps:\n"
            "  - {order: 1, stage: review, name: First, roles: [A]}\n"
            "  - {order: 2, stage: review, name: Second, roles: [B], depends_on: [1]}\n"
        )
        definition = WorkflowDefinition.from_yaml(path)
        assert len(definition) == 2
        assert definition.archive_role == "RecordsArchivesReviewer"


class TestStepTemplate:

    def test_interdependency_inferred_from_peers(self):
        template = StepTemplate(
            order=6, stage="s", name="Store 1", allowed_roles=("Store1Officer",),
            interdependent_with=("Store2Officer",),
        )
        assert template.is_interdependent

    def test_templates_are_frozen(self):
        template = StepTemplate(order=1, stage="s", name="One", allowed_roles=("A",))
        with pytest.raises(ValueError):
            template.order = 2

    def test_permits(self):
        template = StepTemplate(order=1, stage="s", name="One", allowed_roles=("A", "B"))
        assert template.permits("B")
        assert not template.permits("C")

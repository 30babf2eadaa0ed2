"""Workflow catalog tests."""

import pytest

from docflow.builtin import HIGH_VALUE_APPROVAL
from docflow.catalog import WorkflowCatalog, load_definitions, parse_definition
from docflow.errors import DefinitionNotFound, ValidationError


def _definition(**overrides):
    data = {
        "id": "vendor_onboarding",
        "name": "Vendor Onboarding",
        "category": "general",
        "steps": [
            {"id": "collect", "type": "task_creation", "config": {"template": "Collect KYC"}},
            {
                "id": "verify",
                "type": "validation",
                "config": {"rules": ["pan_compliance"]},
                "dependencies": ["collect"],
            },
        ],
    }
    data.update(overrides)
    return data


def test_create_and_get_definition():
    catalog = WorkflowCatalog()
    created = catalog.create(_definition())

    assert catalog.get("vendor_onboarding") is created
    assert "vendor_onboarding" in catalog
    assert len(catalog) == 1
    assert created.step("verify").config.rules == ["pan_compliance"]


def test_config_kind_defaults_to_step_type():
    definition = parse_definition(_definition())
    assert definition.steps[0].config.kind == "task_creation"
    assert definition.steps[1].config.kind == "validation"


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"name": "  "}, "name"),
        ({"steps": []}, "steps"),
        (
            {
                "steps": [
                    {"id": "a", "type": "notification", "dependencies": ["missing"]},
                ]
            },
            "steps.a.dependencies",
        ),
        (
            {"steps": [{"id": "a", "type": "notification", "dependencies": ["a"]}]},
            "steps.a.dependencies",
        ),
        (
            {
                "steps": [
                    {"id": "a", "type": "notification"},
                    {"id": "a", "type": "notification"},
                ]
            },
            "steps.a.id",
        ),
        ({"steps": [{"id": "workflow", "type": "notification"}]}, "steps.workflow.id"),
    ],
)
def test_invalid_definitions_name_the_field(overrides, field):
    catalog = WorkflowCatalog()
    with pytest.raises(ValidationError) as exc_info:
        catalog.create(_definition(**overrides))
    assert exc_info.value.field == field
    assert len(catalog) == 0


def test_cycle_is_rejected():
    data = _definition(
        steps=[
            {"id": "a", "type": "notification", "dependencies": ["c"]},
            {"id": "b", "type": "notification", "dependencies": ["a"]},
            {"id": "c", "type": "notification", "dependencies": ["b"]},
        ]
    )
    with pytest.raises(ValidationError) as exc_info:
        WorkflowCatalog().create(data)
    assert exc_info.value.field == "steps.dependencies"
    assert "a, b, c" in exc_info.value.message


def test_invalid_trigger_threshold_and_pattern():
    with pytest.raises(ValidationError) as exc_info:
        parse_definition(
            _definition(
                triggers=[
                    {
                        "type": "amount_threshold",
                        "condition": {"operator": "greater_than", "value": "lots"},
                    }
                ]
            )
        )
    assert exc_info.value.field == "triggers.0.condition.value"

    with pytest.raises(ValidationError) as exc_info:
        parse_definition(
            _definition(
                triggers=[
                    {"type": "keyword_match", "condition": {"operator": "regex", "value": "(["}}
                ]
            )
        )
    assert exc_info.value.field == "triggers.0.condition.value"


def test_pydantic_errors_become_validation_errors():
    with pytest.raises(ValidationError) as exc_info:
        parse_definition(_definition(category="marketing"))
    assert exc_info.value.field == "category"


def test_duplicate_create_rejected():
    catalog = WorkflowCatalog()
    catalog.create(_definition())
    with pytest.raises(ValidationError):
        catalog.create(_definition())


def test_update_bumps_version_and_keeps_old_version():
    catalog = WorkflowCatalog()
    original = catalog.create(_definition())

    updated = catalog.update("vendor_onboarding", {"description": "KYC for new vendors"})

    assert updated.version == "1.0.1"
    assert updated.description == "KYC for new vendors"
    assert updated.created_at == original.created_at
    assert catalog.get("vendor_onboarding") is updated
    assert catalog.get_version("vendor_onboarding", "1.0.0") is original


def test_invalid_update_leaves_catalog_untouched():
    catalog = WorkflowCatalog()
    original = catalog.create(_definition())
    with pytest.raises(ValidationError):
        catalog.update("vendor_onboarding", {"steps": []})
    assert catalog.get("vendor_onboarding") is original

    with pytest.raises(ValidationError):
        catalog.update("vendor_onboarding", {"id": "renamed"})


def test_delete_and_missing_lookup():
    catalog = WorkflowCatalog()
    catalog.create(_definition())
    catalog.delete("vendor_onboarding")

    assert catalog.find("vendor_onboarding") is None
    with pytest.raises(DefinitionNotFound):
        catalog.get("vendor_onboarding")
    with pytest.raises(DefinitionNotFound):
        catalog.delete("vendor_onboarding")
    # published versions remain resolvable for instances pinned to them
    assert catalog.get_version("vendor_onboarding", "1.0.0").id == "vendor_onboarding"


def test_published_version_cannot_be_reused():
    catalog = WorkflowCatalog()
    original = catalog.create(_definition())

    with pytest.raises(ValidationError) as exc_info:
        catalog.update("vendor_onboarding", {"version": "1.0.0", "description": "changed"})
    assert exc_info.value.field == "version"
    assert catalog.get("vendor_onboarding") is original

    catalog.delete("vendor_onboarding")
    with pytest.raises(ValidationError):
        catalog.create(_definition())
    catalog.create(_definition(version="2.0.0"))
    assert catalog.get_version("vendor_onboarding", "1.0.0") is original


def test_list_filters_by_category_and_active_flag():
    catalog = WorkflowCatalog()
    catalog.create(HIGH_VALUE_APPROVAL)
    catalog.create(_definition())
    catalog.create(_definition(id="dormant", is_active=False))

    assert [d.id for d in catalog.list(category="financial")] == ["high_value_approval"]
    assert {d.id for d in catalog.list(is_active=True)} == {"high_value_approval", "vendor_onboarding"}
    assert [d.id for d in catalog.list(is_active=False)] == ["dormant"]
    assert len(catalog.list()) == 3


def test_load_definitions_from_yaml_directory(tmp_path):
    (tmp_path / "single.yaml").write_text(
        """
id: nda_review
name: NDA Review
category: legal
steps:
  - id: legal_review
    type: approval
    config:
      approvers: [LEGAL]
"""
    )
    (tmp_path / "many.yml").write_text(
        """
workflows:
  - id: audit_sampling
    name: Audit Sampling
    category: audit
    steps:
      - id: sample
        type: automation
        config:
          script: "print('{}')"
"""
    )

    definitions = load_definitions(tmp_path)

    assert sorted(d.id for d in definitions) == ["audit_sampling", "nda_review"]


def test_load_definitions_reports_invalid_file(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("id: broken\nname: Broken\nsteps: []\n")
    with pytest.raises(ValidationError):
        load_definitions(path)

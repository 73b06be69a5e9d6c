"""Tests for workflow definitions and validation."""

import pytest

from franz_common.exceptions import NotFoundError, ValidationError
from franz_wizard.exceptions import WorkflowValidationError
from franz_wizard.workflow import (
    EXPORT_FORMATS,
    ExportConfig,
    FormField,
    ImageGenerationSettings,
    Stage,
    Workflow,
)


def make_workflow(*stages, **config):
    return Workflow.from_dict({"id": "wf", "name": "WF", "stages": list(stages), "config": config})


class TestStageFromDict:

    def test_camel_case_keys(self):
        stage = Stage.from_dict({
            "id": "research",
            "inputType": "none",
            "outputType": "json",
            "promptTemplate": "Research {{topic.output}}",
            "dependencies": ["topic"],
            "autoRun": True,
            "autorunDependsOn": ["topic", "notes"],
            "autoRunConditions": {"requiresAll": ["topic"], "requiresAny": ["a", "b"]},
            "groundingRequested": True,
            "isOptional": True,
            "systemInstructions": "Be brief",
            "temperature": "0.2",
        })

        assert stage.input_type == "none"
        assert stage.output_type == "json"
        assert stage.auto_run is True
        assert stage.autorun_depends_on == ["topic", "notes"]
        assert stage.auto_run_conditions.requires_any == ["a", "b"]
        assert stage.grounding_requested is True
        assert stage.is_optional is True
        assert stage.system_instructions == "Be brief"
        assert stage.temperature == 0.2
        assert stage.has_prompt

    def test_snake_case_keys_and_defaults(self):
        stage = Stage.from_dict({"id": "notes", "input_type": "textarea"})

        assert stage.title == "notes"
        assert stage.output_type == "text"
        assert stage.stage_type == "ai"
        assert stage.dependencies == []
        assert not stage.has_prompt
        assert not stage.is_export

    def test_single_dependency_string(self):
        stage = Stage.from_dict({"id": "b", "dependencies": "a"})
        assert stage.dependencies == ["a"]

    def test_missing_id(self):
        with pytest.raises(WorkflowValidationError, match="missing 'id'"):
            Stage.from_dict({"title": "No id"})

    def test_referenced_stage_ids_deduplicated(self):
        stage = Stage.from_dict({
            "id": "c",
            "dependencies": ["a", "b"],
            "autorunDependsOn": ["b"],
            "autoRunConditions": {"requiresAll": ["a"], "requiresAny": ["d"]},
        })
        assert stage.referenced_stage_ids() == ["a", "b", "d"]

    def test_dict_round_trip(self):
        data = {
            "id": "img",
            "input_type": "none",
            "output_type": "image",
            "prompt_template": "Draw {{a.output}}",
            "dependencies": ["a"],
            "image_generation_settings": {"aspect_ratio": "16:9", "number_of_images": 2},
        }
        stage = Stage.from_dict(data)
        assert Stage.from_dict(stage.to_dict()) == stage


class TestFormField:

    def test_options_from_strings_and_mappings(self):
        field = FormField.from_dict({
            "name": "tone",
            "type": "select",
            "options": ["formal", {"value": "casual", "label": "Casual"}],
        })

        assert field.options == [
            {"value": "formal", "label": "formal"},
            {"value": "casual", "label": "Casual"},
        ]
        assert field.label == "tone"

    def test_required(self):
        assert FormField.from_dict({"name": "a", "validation": {"required": True}}).required
        assert not FormField.from_dict({"name": "b"}).required


class TestExportConfig:

    def test_defaults(self):
        config = ExportConfig.from_dict({})

        assert config.formats == list(EXPORT_FORMATS)
        assert config.use_ai is True
        assert config.temperature == 0.3
        assert config.include_stages is None

    def test_formats_mapping(self):
        config = ExportConfig.from_dict({
            "formats": {"html-styled": {"enabled": True}, "markdown": {"enabled": False}, "json": {}},
        })
        assert config.formats == ["html-styled", "json"]


class TestImageGenerationSettings:

    def test_from_camel_case(self):
        settings = ImageGenerationSettings.from_dict({
            "aspectRatio": "{{a.output.ratio}}",
            "numberOfImages": 2,
            "filenames": '["one.png", "two.png"]',
        })

        assert settings.aspect_ratio == "{{a.output.ratio}}"
        assert settings.number_of_images == 2
        assert settings.to_dict()["filenames"] == '["one.png", "two.png"]'


class TestWorkflow:

    def test_lookup(self, workflow):
        assert workflow.stage_ids[:2] == ["topic", "details"]
        assert workflow.has_stage("draft")
        assert workflow.get_stage("draft").auto_run

    def test_unknown_stage(self, workflow):
        with pytest.raises(NotFoundError) as exc_info:
            workflow.get_stage("missing")
        assert "topic" in exc_info.value.context["available"]

    def test_execution_order_follows_dependencies(self, workflow):
        order = workflow.execution_order()

        assert order == ["topic", "details", "draft", "summary", "notes", "export"]

    def test_execution_order_keeps_declaration_order_for_ties(self):
        workflow = make_workflow(
            {"id": "late", "inputType": "none", "promptTemplate": "x", "dependencies": ["first"]},
            {"id": "first"},
            {"id": "other"},
        )
        assert workflow.validate().execution_order() == ["first", "late", "other"]

    def test_dict_round_trip(self, workflow):
        restored = Workflow.from_dict(workflow.to_dict())

        assert restored == workflow


class TestWorkflowValidation:

    def test_valid_workflow_returns_itself(self, workflow):
        assert workflow.validate() is workflow

    def test_collects_every_error(self):
        workflow = make_workflow(
            {"id": "a", "inputType": "voice", "outputType": "video"},
            {"id": "a"},
            {"id": "b", "dependencies": ["ghost", "b"]},
            {"id": "c", "inputType": "none"},
            {"id": "d", "inputType": "form"},
            {"id": "e", "stageType": "export"},
        )

        with pytest.raises(WorkflowValidationError) as exc_info:
            workflow.validate()

        errors = exc_info.value.errors
        assert "duplicate stage id 'a'" in errors
        assert "stage 'a': unknown input_type 'voice'" in errors
        assert "stage 'a': unknown output_type 'video'" in errors
        assert "stage 'b': references unknown stage 'ghost'" in errors
        assert "stage 'b': depends on itself" in errors
        assert "stage 'c': input_type 'none' requires a prompt_template" in errors
        assert "stage 'd': form stage has no form_fields" in errors
        assert "stage 'e': export stage requires export_config" in errors
        assert isinstance(exc_info.value, ValidationError)

    def test_no_stages(self):
        with pytest.raises(WorkflowValidationError, match="no stages"):
            make_workflow().validate()

    def test_export_config_problems(self):
        workflow = make_workflow(
            {"id": "a"},
            {
                "id": "export",
                "stageType": "export",
                "exportConfig": {"formats": ["pdf"], "includeStages": ["nope"]},
            },
        )

        with pytest.raises(WorkflowValidationError) as exc_info:
            workflow.validate()
        assert "stage 'export': unknown export formats ['pdf']" in exc_info.value.errors
        assert "stage 'export': include_stages names unknown stage 'nope'" in exc_info.value.errors

    def test_unknown_field_type(self):
        workflow = make_workflow({
            "id": "form",
            "inputType": "form",
            "formFields": [{"name": "when", "type": "date"}],
        })
        with pytest.raises(WorkflowValidationError, match="unknown type 'date'"):
            workflow.validate()

    def test_config_references(self):
        workflow = make_workflow({"id": "a"}, finalOutputStageId="zzz")
        with pytest.raises(WorkflowValidationError, match="final_output_stage_id"):
            workflow.validate()

    def test_cycle(self):
        workflow = make_workflow(
            {"id": "a", "dependencies": ["c"]},
            {"id": "b", "dependencies": ["a"]},
            {"id": "c", "autorunDependsOn": ["b"]},
        )

        with pytest.raises(WorkflowValidationError) as exc_info:
            workflow.validate()
        assert exc_info.value.errors == ["dependency cycle: a -> c -> b -> a"]

        with pytest.raises(WorkflowValidationError, match="cycle"):
            workflow.execution_order()

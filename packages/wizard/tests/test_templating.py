"""Tests for prompt templating and image settings resolution."""

from datetime import datetime, timezone

import pytest

from franz_wizard.exceptions import TemplateResolutionError
from franz_wizard.state import StageState, initialize_stage_states
from franz_wizard.templating import (
    ResolvedImageSettings,
    build_context_vars,
    find_placeholders,
    resolve_image_generation_settings,
    resolve_template,
    strip_code_fences,
    substitute_prompt_vars,
)
from franz_wizard.workflow import ImageGenerationSettings

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


@pytest.fixture
def context():
    return {
        "topic": {"user_input": "rain", "userInput": "rain", "output": "Rain in Paris"},
        "details": {
            "user_input": None,
            "userInput": None,
            "output": {"audience": "kids", "tags": ["wet", "grey"], "count": 3},
        },
    }


class TestBuildContextVars:

    def test_completed_stages_and_current_input(self, workflow):
        states = initialize_stage_states(workflow)
        states["topic"] = StageState(
            stage_id="topic", status="completed", user_input="rain", output="Rain", completed_at=T0
        )
        states["summary"] = StageState(stage_id="summary", status="error", output="partial")

        context = build_context_vars(workflow, states, "notes", "my notes")

        assert context["topic"] == {"user_input": "rain", "userInput": "rain", "output": "Rain"}
        assert context["notes"] == {"user_input": "my notes", "userInput": "my notes", "output": None}
        assert "summary" not in context
        assert "draft" not in context


class TestSubstitution:

    def test_simple_and_nested_paths(self, context):
        prompt = substitute_prompt_vars(
            "About {{topic.output}} for {{details.output.audience}} ({{details.output.tags.1}})",
            context,
        )
        assert prompt == "About Rain in Paris for kids (grey)"

    def test_structured_values_render_as_json(self, context):
        prompt = substitute_prompt_vars("{{details.output.tags}}", context)
        assert prompt == '[\n  "wet",\n  "grey"\n]'

    def test_numbers_use_str(self, context):
        assert substitute_prompt_vars("{{details.output.count}}", context) == "3"

    def test_none_renders_empty_not_null(self, context):
        prompt = substitute_prompt_vars("[{{details.user_input}}]", context)

        assert prompt == "[]"
        assert resolve_template("[{{details.user_input}}]", context) == "[]"

    def test_missing_placeholder_becomes_empty(self, context, caplog):
        prompt = substitute_prompt_vars("Hello {{ghost.output}}!", context)

        assert prompt == "Hello !"
        assert "ghost.output" in caplog.text

    def test_strict_resolution(self, context):
        with pytest.raises(TemplateResolutionError) as exc_info:
            resolve_template("{{ghost.output}} {{topic.output}} {{ghost.output}}", context)
        assert exc_info.value.placeholders == ["ghost.output"]

    def test_non_strict_resolution(self, context):
        assert resolve_template("{{ghost.output}}x", context, strict=False) == "x"

    def test_empty_template(self, context):
        assert substitute_prompt_vars("", context) == ""

    def test_find_placeholders(self):
        assert find_placeholders("{{a.output}} {{b-c.output.x}} {{a.output}} {{ not one }}") == [
            "a.output",
            "b-c.output.x",
        ]


class TestStripCodeFences:

    @pytest.mark.parametrize("text, expected", [
        ('```json\n{"a": 1}\n```', '{"a": 1}'),
        ("```\nplain\n```", "plain"),
        ("```html\n<p>x</p>```", "<p>x</p>"),
        ("  no fence  ", "no fence"),
        ("text with ```inline``` fence", "text with ```inline``` fence"),
        (None, ""),
    ])
    def test_strip(self, text, expected):
        assert strip_code_fences(text) == expected


class TestImageSettings:

    def test_none_gives_defaults(self):
        assert resolve_image_generation_settings(None, {}) == ResolvedImageSettings()

    def test_templated_values(self):
        context = {"opts": {"output": {"ratio": "16:9", "count": "2", "names": ["a.png", "b.png"]}}}
        settings = ImageGenerationSettings(
            aspect_ratio="{{opts.output.ratio}}",
            number_of_images="{{opts.output.count}}",
            filenames="{{opts.output.names}}",
            style="watercolor",
            model="imagen-test",
        )

        resolved = resolve_image_generation_settings(settings, context)

        assert resolved.aspect_ratio == "16:9"
        assert resolved.number_of_images == 2
        assert resolved.filenames == ["a.png", "b.png"]
        assert resolved.style == "watercolor"
        assert resolved.to_call_kwargs() == {
            "aspect_ratio": "16:9",
            "number_of_images": 2,
            "model": "imagen-test",
        }

    def test_invalid_values_fall_back(self, caplog):
        settings = ImageGenerationSettings(
            aspect_ratio="2:1",
            number_of_images=9,
            filenames="not json",
        )

        resolved = resolve_image_generation_settings(settings, {})

        assert resolved.aspect_ratio == "1:1"
        assert resolved.number_of_images == 1
        assert resolved.filenames is None
        assert "Invalid aspect ratio" in caplog.text

    def test_non_numeric_count(self):
        resolved = resolve_image_generation_settings(ImageGenerationSettings(number_of_images="many"), {})
        assert resolved.number_of_images == 1

    def test_filenames_list(self):
        resolved = resolve_image_generation_settings(
            ImageGenerationSettings(filenames=["cover.png"]), {}
        )
        assert resolved.filenames == ["cover.png"]
        assert "model" not in resolved.to_call_kwargs()

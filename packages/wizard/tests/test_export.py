"""Tests for the export pipeline."""

import json
from datetime import datetime, timezone

import pytest

from franz_config import RetrySettings
from franz_llm.testing import text_response
from franz_wizard.exceptions import ExportJobError
from franz_wizard.export import (
    DocumentExporter,
    build_export_context,
    collect_export_sections,
    format_stage_output,
    html_to_markdown,
    process_export_formats,
)
from franz_wizard.jobs import JobStatus
from franz_wizard.state import StageState, initialize_stage_states
from franz_wizard.workflow import ExportConfig

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)

NO_RETRY = RetrySettings(default="NONE", text_generation="NONE", enable_detailed_logging=False)


@pytest.fixture
def states(workflow):
    states = initialize_stage_states(workflow)
    states["topic"] = StageState(stage_id="topic", status="completed", output="Autumn rain", completed_at=T0)
    states["draft"] = StageState(
        stage_id="draft",
        status="completed",
        output="## The Rain\n\nIt falls **softly**.",
        completed_at=T0,
    )
    states["summary"] = StageState(stage_id="summary", status="completed", output={"gist": "rain"}, completed_at=T0)
    return states


class TestFormatStageOutput:

    def test_text(self):
        assert format_stage_output("hello") == "hello"
        assert format_stage_output(None) == ""

    def test_mapping_with_content(self):
        assert format_stage_output({"content": "body", "other": 1}) == "body"

    def test_images(self):
        output = {"images": [{"filename": "a.png", "data_url": "data:image/png;base64,AA"}]}
        assert format_stage_output(output) == "![a.png](data:image/png;base64,AA)"

    def test_plain_mapping_and_list(self):
        assert format_stage_output({"title": "Rain", "lines": 3}) == "title: Rain\nlines: 3"
        assert format_stage_output(["a", "b"]) == "a\n\nb"


class TestSections:

    def test_include_stages_order(self, workflow, states):
        sections = collect_export_sections(workflow, states, ExportConfig(include_stages=["draft", "topic"]))

        assert [s.id for s in sections] == ["draft", "topic"]
        assert "<strong>softly</strong>" in sections[0].html

    def test_default_is_completed_non_export_stages(self, workflow, states):
        sections = collect_export_sections(workflow, states, ExportConfig())
        assert [s.id for s in sections] == ["topic", "draft", "summary"]

    def test_context(self, workflow, states):
        context = build_export_context(workflow, workflow.get_stage("export"), states, "My Doc")

        assert context["title"] == "My Doc"
        assert context["workflow"] == {"id": "simple", "type": "simple", "title": "Simple Workflow"}
        assert list(context["stages"]) == ["topic", "draft"]
        assert context["image_attribution"] is None

    def test_image_attribution(self, workflow, states):
        states["draft"] = StageState(
            stage_id="draft",
            status="completed",
            output={"images": [{"filename": "x.png", "data_url": "data:"}], "model": "imagen-4"},
            completed_at=T0,
        )
        context = build_export_context(workflow, workflow.get_stage("export"), states)

        assert context["image_attribution"] == "Images generated with imagen-4"
        assert context["title"] == "Simple Workflow"


class TestHtmlToMarkdown:

    def test_common_elements(self):
        html = """
        <html><head><title>x</title><style>p {}</style></head><body>
        <h1>Title</h1>
        <p>Some <strong>bold</strong> and <em>italic</em> text with a <a href="https://x.test">link</a>.</p>
        <ul><li>one</li><li>two</li></ul>
        <blockquote><p>quoted</p></blockquote>
        <pre><code>code()</code></pre>
        <hr>
        <figure><img src="a.png" alt="A"><figcaption>Caption</figcaption></figure>
        </body></html>
        """

        md = html_to_markdown(html)

        assert md.startswith("# Title")
        assert "Some **bold** and *italic* text with a [link](https://x.test)." in md
        assert "- one\n- two" in md
        assert "> quoted" in md
        assert "```\ncode()\n```" in md
        assert "---" in md
        assert "![A](a.png)" in md
        assert "*Caption*" in md
        assert "p {}" not in md
        assert "\n\n\n" not in md

    def test_empty(self):
        assert html_to_markdown("") == ""


class TestProcessExportFormats:

    def test_formats(self):
        results = process_export_formats(
            ["html-styled", "html-clean", "markdown", "json", "pdf"],
            "<html>styled</html>",
            "",
            "# md",
            {"title": "T"},
        )

        assert results["html-styled"] == {"ready": True, "content": "<html>styled</html>", "error": None}
        assert results["html-clean"]["ready"] is False
        assert results["html-clean"]["error"] == "No content generated for html-clean"
        assert results["markdown"]["content"] == "# md"
        assert json.loads(results["json"]["content"]) == {"title": "T"}
        assert results["pdf"]["error"] == "Unsupported format: pdf"


class TestDocumentExporter:

    @pytest.mark.asyncio
    async def test_template_export(self, job_service, workflow, states):
        exporter = DocumentExporter(None, NO_RETRY)
        job = await job_service.create_job("doc-1", "export")

        output = await exporter.run(
            job_service, job.job_id, workflow, workflow.get_stage("export"), states, "Rain"
        )

        record = job_service.get_job(job.job_id)
        assert record.status is JobStatus.COMPLETED
        assert record.output == output
        assert "<title>Rain</title>" in output["html_styled"]
        assert "<strong>softly</strong>" in output["html_clean"]
        assert "It falls **softly**." in output["markdown"]
        assert set(output["formats"]) == {"html-styled", "html-clean", "markdown", "json"}
        exported = json.loads(output["formats"]["json"]["content"])
        assert [s["id"] for s in exported["sections"]] == ["topic", "draft"]

    @pytest.mark.asyncio
    async def test_ai_export(self, job_service, workflow, states, provider):
        stage = workflow.get_stage("export")
        stage.export_config.use_ai = True
        stage.export_config.ai_model = "html-model"
        provider.set_responses([
            text_response("```html\n<html><body><h1>Styled</h1></body></html>\n```"),
            text_response("<article><h1>Clean</h1><p>Body</p></article>"),
        ])
        exporter = DocumentExporter(provider, NO_RETRY)
        job = await job_service.create_job("doc-1", "export")

        output = await exporter.run(job_service, job.job_id, workflow, stage, states, "Rain")

        assert output["html_styled"] == "<html><body><h1>Styled</h1></body></html>"
        assert output["markdown"] == "# Clean\n\nBody"
        styled_call, clean_call = provider.calls
        assert styled_call["options"]["model"] == "html-model"
        assert styled_call["options"]["temperature"] == 0.3
        assert "web designer" in styled_call["options"]["system_prompt"]
        assert "semantic HTML" in clean_call["options"]["system_prompt"]
        assert "Autumn rain" in styled_call["messages"][0].content

    @pytest.mark.asyncio
    async def test_ai_disabled_globally(self, job_service, workflow, states, provider):
        workflow.get_stage("export").export_config.use_ai = True
        exporter = DocumentExporter(provider, NO_RETRY, use_ai=False)
        job = await job_service.create_job("doc-1", "export")

        await exporter.run(job_service, job.job_id, workflow, workflow.get_stage("export"), states)

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_empty_ai_response_fails(self, job_service, workflow, states, provider):
        stage = workflow.get_stage("export")
        stage.export_config.use_ai = True
        provider.set_responses([text_response("   ")])
        exporter = DocumentExporter(provider, NO_RETRY)
        job = await job_service.create_job("doc-1", "export")

        with pytest.raises(ExportJobError, match="styled HTML"):
            await exporter.run(job_service, job.job_id, workflow, stage, states)

    @pytest.mark.asyncio
    async def test_nothing_to_export(self, job_service, workflow):
        exporter = DocumentExporter(None, NO_RETRY)
        job = await job_service.create_job("doc-1", "export")

        with pytest.raises(ExportJobError, match="Nothing to export"):
            await exporter.run(
                job_service, job.job_id, workflow, workflow.get_stage("export"),
                initialize_stage_states(workflow),
            )
        assert job_service.get_job(job.job_id).progress == 5

    @pytest.mark.asyncio
    async def test_custom_prompt_template(self, job_service, workflow, states, provider):
        stage = workflow.get_stage("export")
        stage.export_config.use_ai = True
        stage.export_config.styled_prompt = "Style {{ title }} with {{ sections | length }} sections"
        provider.set_responses([text_response("<html></html>"), text_response("<p>x</p>")])
        exporter = DocumentExporter(provider, NO_RETRY)
        job = await job_service.create_job("doc-1", "export")

        await exporter.run(job_service, job.job_id, workflow, stage, states, "Rain")

        assert provider.calls[0]["messages"][0].content == "Style Rain with 2 sections"

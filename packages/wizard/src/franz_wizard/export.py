"""Export pipeline: stage outputs to styled HTML, clean HTML and Markdown.

HTML comes either from two model passes (a styled, self-contained page and
a clean semantic fragment) or, when AI is disabled, from the built-in
Jinja2 templates with section bodies rendered by ``markdown``. Markdown is
always derived from the clean HTML so both say the same thing.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Mapping

import jinja2
import markdown
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from franz_config.settings import RetrySettings
from franz_llm import AsyncLLMProvider, LLMMessage, retry_executor_for

from .exceptions import ExportJobError
from .templating import strip_code_fences
from .workflow import EXPORT_FORMATS, ExportConfig, Stage, Workflow

if TYPE_CHECKING:
    from .jobs import ExportJobService
    from .state import StageState

logger = logging.getLogger(__name__)

STYLED_SYSTEM_PROMPT = "You are an expert web designer creating beautiful HTML documents."
CLEAN_SYSTEM_PROMPT = "You are an expert in semantic HTML and document structure."

_environment = jinja2.Environment(
    loader=jinja2.PackageLoader("franz_wizard", "templates"),
    autoescape=jinja2.select_autoescape(enabled_extensions=("html.j2",), default=False),
    trim_blocks=True,
    lstrip_blocks=True,
)


def format_stage_output(output: Any) -> str:
    """Readable text for a stage output of any shape."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, Mapping):
        if output.get("content"):
            return format_stage_output(output["content"])
        if isinstance(output.get("images"), list):
            return "\n\n".join(
                f"![{image.get('filename') or 'image'}]({image.get('data_url') or image.get('url', '')})"
                for image in output["images"]
                if isinstance(image, Mapping)
            )
        return "\n".join(f"{key}: {format_stage_output(value)}" for key, value in output.items())
    if isinstance(output, (list, tuple)):
        return "\n\n".join(format_stage_output(item) for item in output)
    return str(output)


@dataclass
class ExportSection:
    id: str
    title: str
    output_type: str
    output: Any
    text: str
    html: str


def collect_export_sections(
    workflow: Workflow,
    states: Mapping[str, StageState],
    config: ExportConfig,
) -> list[ExportSection]:
    """Completed stages with output, in ``include_stages`` or workflow order."""
    if config.include_stages:
        stages = [workflow.get_stage(stage_id) for stage_id in config.include_stages]
    else:
        stages = [stage for stage in workflow.stages if not stage.is_export]

    sections = []
    for stage in stages:
        state = states.get(stage.id)
        if state is None or state.status != "completed" or state.output in (None, "", {}, []):
            continue
        text = format_stage_output(state.output)
        sections.append(ExportSection(
            id=stage.id,
            title=stage.title,
            output_type=stage.output_type,
            output=state.output,
            text=text,
            html=markdown.markdown(text, extensions=["tables", "fenced_code"]),
        ))
    return sections


def _image_attribution(sections: list[ExportSection]) -> str | None:
    models = sorted({
        str(section.output.get("model"))
        for section in sections
        if isinstance(section.output, Mapping) and section.output.get("images") and section.output.get("model")
    })
    if not models:
        return None
    return f"Images generated with {', '.join(models)}"


def build_export_context(
    workflow: Workflow,
    stage: Stage,
    states: Mapping[str, StageState],
    title: str | None = None,
) -> dict[str, Any]:
    """Template context shared by the prompts, the HTML templates and JSON output."""
    config = stage.export_config or ExportConfig()
    sections = collect_export_sections(workflow, states, config)
    resolved_title = config.title or title or workflow.name
    return {
        "title": resolved_title,
        "audience": "general readers",
        "workflow": {"id": workflow.id, "type": workflow.id, "title": workflow.name},
        "stages": {section.id: section.output for section in sections},
        "sections": sections,
        "image_attribution": _image_attribution(sections),
    }


def _render(template_name: str, override: str | None, context: Mapping[str, Any]) -> str:
    if override:
        return jinja2.Template(override).render(**context)
    return _environment.get_template(template_name).render(**context)


def html_to_markdown(html: str) -> str:
    """Convert (clean) HTML to Markdown.

    Covers the elements the HTML generators produce: headings, emphasis,
    links, lists, quotes, code, rules, images and figure captions.
    """
    soup = BeautifulSoup(html or "", "html.parser")
    for element in soup(["script", "style", "head", "title"]):
        element.decompose()
    root = soup.body or soup
    text = _to_markdown(root)

    text = re.sub(r"\n{3,}", "\n\n", "\n".join(line.strip() for line in text.splitlines()))
    return text.strip()


_BLOCKS = {
    "p", "div", "section", "article", "header", "footer", "main", "aside", "nav",
    "figure", "table", "tr", "body", "html",
}


def _to_markdown(node: Any) -> str:
    if isinstance(node, Comment):
        return ""
    if isinstance(node, NavigableString):
        return re.sub(r"\s+", " ", str(node))
    if not isinstance(node, Tag):
        return ""

    name = node.name
    if name == "pre":
        return f"\n\n```\n{node.get_text().strip()}\n```\n\n"
    if name == "code":
        return f"`{node.get_text()}`"
    if name == "br":
        return "\n"
    if name == "hr":
        return "\n\n---\n\n"
    if name == "img":
        return f"![{node.get('alt', '')}]({node.get('src', '')})"

    inner = "".join(_to_markdown(child) for child in node.children)
    if re.fullmatch(r"h[1-6]", name):
        return f"\n\n{'#' * int(name[1])} {inner.strip()}\n\n"
    if name in ("strong", "b"):
        return f"**{inner.strip()}**"
    if name in ("em", "i"):
        return f"*{inner.strip()}*"
    if name == "a":
        href = node.get("href")
        return f"[{inner.strip()}]({href})" if href else inner
    if name == "li":
        return f"\n- {inner.strip()}"
    if name in ("ul", "ol"):
        return f"\n{inner}\n"
    if name == "blockquote":
        quoted = "\n".join(f"> {line.strip()}" for line in inner.strip().splitlines() if line.strip())
        return f"\n\n{quoted}\n\n"
    if name == "figcaption":
        return f"\n*{inner.strip()}*\n"
    if name in ("td", "th"):
        return f"{inner.strip()} "
    if name in _BLOCKS:
        return f"\n\n{inner.strip()}\n\n"
    return inner


def process_export_formats(
    formats: list[str],
    html_styled: str,
    html_clean: str,
    markdown_text: str,
    json_document: Mapping[str, Any],
) -> dict[str, dict[str, Any]]:
    """Per-format ``{ready, content, error}`` records."""
    results: dict[str, dict[str, Any]] = {}
    for fmt in formats:
        if fmt == "html-styled":
            content: str | None = html_styled
        elif fmt == "html-clean":
            content = html_clean
        elif fmt == "markdown":
            content = markdown_text
        elif fmt == "json":
            content = json.dumps(json_document, indent=2, ensure_ascii=False, default=str)
        else:
            logger.warning("Unsupported export format: %s", fmt)
            results[fmt] = {"ready": False, "content": None, "error": f"Unsupported format: {fmt}"}
            continue
        if content:
            results[fmt] = {"ready": True, "content": content, "error": None}
        else:
            results[fmt] = {"ready": False, "content": None, "error": f"No content generated for {fmt}"}
    return results


class DocumentExporter:
    """Runs the export pipeline for one export stage.

    Args:
        provider: Model used for the AI HTML passes; None forces template
            rendering.
        retry_settings: Retry presets for the AI passes
        use_ai: Global switch; stages may also disable AI individually.
    """

    def __init__(
        self,
        provider: AsyncLLMProvider | None = None,
        retry_settings: RetrySettings | None = None,
        use_ai: bool = True,
    ):
        self.provider = provider
        self.retry_settings = retry_settings or RetrySettings()
        self.use_ai = use_ai

    def _uses_ai(self, config: ExportConfig) -> bool:
        return self.use_ai and config.use_ai and self.provider is not None

    async def _ai_pass(
        self,
        prompt: str,
        system_prompt: str,
        config: ExportConfig,
        workflow_id: str,
        stage_id: str,
        label: str,
    ) -> str:
        executor = retry_executor_for(self.retry_settings, "text_generation", workflow_id, stage_id)
        response = await executor.execute(
            self.provider.complete,
            [LLMMessage(role="user", content=prompt)],
            system_prompt=system_prompt,
            model=config.ai_model,
            temperature=config.temperature,
        )
        html = strip_code_fences(response.content or "")
        if not html.strip():
            raise ExportJobError(
                f"AI failed to generate {label} HTML",
                context={"workflow_id": workflow_id, "stage_id": stage_id},
            )
        return html

    async def generate_html(
        self,
        workflow: Workflow,
        stage: Stage,
        context: Mapping[str, Any],
    ) -> tuple[str, str]:
        """Return ``(html_styled, html_clean)``."""
        config = stage.export_config or ExportConfig()
        if not self._uses_ai(config):
            logger.debug("Rendering export %s/%s from templates", workflow.id, stage.id)
            return (
                _render("document_styled.html.j2", None, context),
                _render("document_clean.html.j2", None, context),
            )

        styled_prompt = _render("html_styled_prompt.md.j2", config.styled_prompt, context)
        clean_prompt = _render("html_clean_prompt.md.j2", config.clean_prompt, context)
        html_styled = await self._ai_pass(
            styled_prompt, STYLED_SYSTEM_PROMPT, config, workflow.id, stage.id, "styled"
        )
        html_clean = await self._ai_pass(
            clean_prompt, CLEAN_SYSTEM_PROMPT, config, workflow.id, stage.id, "clean"
        )
        return html_styled, html_clean

    async def run(
        self,
        service: ExportJobService,
        job_id: str,
        workflow: Workflow,
        stage: Stage,
        states: Mapping[str, StageState],
        title: str | None = None,
    ) -> dict[str, Any]:
        """Drive one export job from start to completion.

        Progress goes 5 (started), 10 (validated), 50 (HTML), 90 (formats)
        and then the job completes. Exceptions propagate to the job service,
        which records the failure.
        """
        await service.start_job(job_id)

        config = stage.export_config
        if config is None:
            raise ExportJobError(
                f"Stage '{stage.id}' has no export configuration",
                context={"stage_id": stage.id},
            )
        context = build_export_context(workflow, stage, states, title)
        if not context["sections"]:
            raise ExportJobError(
                "Nothing to export: no completed stages with output",
                context={"stage_id": stage.id, "workflow_id": workflow.id},
            )
        await service.update_progress(job_id, 10, "Validated export content")

        html_styled, html_clean = await self.generate_html(workflow, stage, context)
        await service.update_progress(job_id, 50, "Generated HTML")

        markdown_text = html_to_markdown(html_clean)
        json_document = {
            "title": context["title"],
            "workflow": context["workflow"],
            "sections": [
                {"id": s.id, "title": s.title, "output_type": s.output_type, "output": s.output}
                for s in context["sections"]
            ],
            "exported_at": datetime.now(timezone.utc).isoformat(),
        }
        formats = process_export_formats(
            [fmt for fmt in config.formats if fmt in EXPORT_FORMATS],
            html_styled,
            html_clean,
            markdown_text,
            json_document,
        )
        await service.update_progress(job_id, 90, "Processed export formats")

        output = {
            "html_styled": html_styled,
            "html_clean": html_clean,
            "markdown": markdown_text,
            "formats": formats,
        }
        await service.complete_job(job_id, output)
        logger.info("Export job %s completed with formats %s", job_id, sorted(formats))
        return output

"""Prompt template substitution.

Prompts reference earlier stages with ``{{stage-id.output}}`` or deeper
paths such as ``{{basic-info.output.company}}``. The context maps each
stage id to ``{"user_input": ..., "userInput": ..., "output": ...}``.

Example:
    ```python
    context = build_context_vars(workflow, store.snapshot(), "research", None)
    prompt = substitute_prompt_vars(stage.prompt_template, context)
    ```
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from .exceptions import TemplateResolutionError
from .workflow import ImageGenerationSettings, Workflow

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{([\w.-]+)\}\}")

ASPECT_RATIOS = ("1:1", "3:4", "4:3", "9:16", "16:9")
MAX_IMAGES = 4

_MISSING = object()


def build_context_vars(
    workflow: Workflow,
    states: Mapping[str, Any],
    current_stage_id: str | None = None,
    current_input: Any = None,
) -> dict[str, dict[str, Any]]:
    """Template variables for running ``current_stage_id``.

    Every completed stage contributes its input and output. The stage being
    run contributes ``current_input`` (its own output is not visible).
    """
    context: dict[str, dict[str, Any]] = {}
    for stage in workflow.stages:
        state = states.get(stage.id)
        if state is None:
            continue
        if stage.id == current_stage_id:
            context[stage.id] = {
                "user_input": current_input,
                "userInput": current_input,
                "output": None,
            }
        elif state.status == "completed":
            context[stage.id] = {
                "user_input": state.user_input,
                "userInput": state.user_input,
                "output": state.output,
            }
    return context


def _lookup(context: Mapping[str, Any], path: str) -> Any:
    value: Any = context
    # Stage ids contain dashes but not dots, so a dotted path splits cleanly
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, ensure_ascii=False)
    return str(value)


_FENCE_PATTERN = re.compile(r"^\s*```[\w-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove one Markdown code fence wrapped around the whole text.

    Text without a surrounding fence is returned stripped but otherwise
    unchanged.
    """
    match = _FENCE_PATTERN.match(text or "")
    if match:
        return match.group(1).strip()
    return (text or "").strip()


def find_placeholders(template: str) -> list[str]:
    """Placeholder paths in order of first appearance."""
    return list(dict.fromkeys(PLACEHOLDER_PATTERN.findall(template or "")))


def substitute_prompt_vars(template: str, context: Mapping[str, Any]) -> str:
    """Replace every ``{{path}}`` with its value from ``context``.

    Unresolved placeholders become empty strings and are logged.
    """
    return _substitute(template, context, strict=False)


def resolve_template(template: str, context: Mapping[str, Any], strict: bool = True) -> str:
    """Like ``substitute_prompt_vars`` but fails on unresolved placeholders.

    Raises:
        TemplateResolutionError: When ``strict`` and a placeholder is missing
    """
    return _substitute(template, context, strict=strict)


def _substitute(template: str, context: Mapping[str, Any], strict: bool) -> str:
    if not template:
        return ""
    missing: list[str] = []

    def replace(match: re.Match[str]) -> str:
        path = match.group(1)
        value = _lookup(context, path)
        if value is _MISSING:
            missing.append(path)
            return ""
        return _render_value(value)

    rendered = PLACEHOLDER_PATTERN.sub(replace, template)
    if missing:
        unique = list(dict.fromkeys(missing))
        if strict:
            raise TemplateResolutionError(unique, template=template)
        logger.warning("Unresolved template placeholders: %s", ", ".join(unique))
    return rendered


@dataclass
class ResolvedImageSettings:
    """Image settings with every template resolved and validated."""

    aspect_ratio: str = "1:1"
    number_of_images: int = 1
    filenames: list[str] | None = None
    style: str | None = None
    model: str | None = None

    def to_call_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "aspect_ratio": self.aspect_ratio,
            "number_of_images": self.number_of_images,
        }
        if self.model:
            kwargs["model"] = self.model
        return kwargs


def resolve_image_generation_settings(
    settings: ImageGenerationSettings | None,
    context: Mapping[str, Any],
) -> ResolvedImageSettings:
    """Resolve templated image settings, falling back to defaults with a warning."""
    resolved = ResolvedImageSettings()
    if settings is None:
        return resolved

    if settings.aspect_ratio:
        aspect_ratio = substitute_prompt_vars(str(settings.aspect_ratio), context).strip()
        if aspect_ratio in ASPECT_RATIOS:
            resolved.aspect_ratio = aspect_ratio
        else:
            logger.warning("Invalid aspect ratio %r, using %s", aspect_ratio, resolved.aspect_ratio)

    if settings.number_of_images is not None:
        raw = substitute_prompt_vars(str(settings.number_of_images), context).strip()
        try:
            count = int(raw)
        except ValueError:
            logger.warning("Invalid number_of_images %r, using 1", raw)
        else:
            if 1 <= count <= MAX_IMAGES:
                resolved.number_of_images = count
            else:
                logger.warning("number_of_images %d outside 1..%d, using 1", count, MAX_IMAGES)

    if settings.filenames is not None:
        if isinstance(settings.filenames, list):
            resolved.filenames = [str(name) for name in settings.filenames]
        else:
            raw = substitute_prompt_vars(settings.filenames, context).strip()
            try:
                names = json.loads(raw)
            except json.JSONDecodeError:
                names = None
            if isinstance(names, list):
                resolved.filenames = [str(name) for name in names]
            else:
                logger.warning("Image filenames did not resolve to a JSON list: %r", raw[:100])

    if settings.style:
        resolved.style = substitute_prompt_vars(settings.style, context).strip() or None
    resolved.model = settings.model
    return resolved

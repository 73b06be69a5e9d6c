"""Declarative workflow definitions.

A workflow is an ordered list of stages. Each stage either collects input
from the user, renders a prompt against earlier stage outputs and calls a
model, or packages earlier outputs into an export. Definitions are plain
data: runtime status lives in ``franz_wizard.state``.

Workflow files may use snake_case or camelCase keys::

    id: poem-generation
    shortName: poem
    name: Poem Generator
    stages:
      - id: poem-topic
        title: Poem Topic
        inputType: textarea
        outputType: text
      - id: generate-poem
        title: Generate Poem
        inputType: none
        promptTemplate: "Write a poem about {{poem-topic.output}}"
        dependencies: [poem-topic]
        autoRun: true
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from franz_common.exceptions import NotFoundError

from .exceptions import WorkflowValidationError

logger = logging.getLogger(__name__)

INPUT_TYPES = ("textarea", "context", "form", "none")
OUTPUT_TYPES = ("text", "json", "markdown", "image")
STAGE_TYPES = ("ai", "export")
FIELD_TYPES = ("text", "textarea", "checkbox", "select")
EXPORT_FORMATS = ("html-styled", "html-clean", "markdown", "json")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _pick(data: Mapping[str, Any], name: str, default: Any = None) -> Any:
    """Read ``name`` from ``data`` under its snake_case or camelCase key."""
    if name in data:
        return data[name]
    return data.get(_camel(name), default)


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


@dataclass
class FormField:
    """One field of a ``form`` input stage."""

    name: str
    label: str = ""
    type: str = "text"
    default_value: Any = None
    placeholder: str | None = None
    options: list[dict[str, str]] = field(default_factory=list)
    validation: dict[str, Any] = field(default_factory=dict)

    @property
    def required(self) -> bool:
        return bool(self.validation.get("required"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FormField:
        options = []
        for option in _pick(data, "options", []) or []:
            if isinstance(option, Mapping):
                options.append({
                    "value": str(option.get("value", "")),
                    "label": str(option.get("label", option.get("value", ""))),
                })
            else:
                options.append({"value": str(option), "label": str(option)})
        return cls(
            name=data["name"],
            label=_pick(data, "label", "") or data["name"],
            type=_pick(data, "type", "text"),
            default_value=_pick(data, "default_value"),
            placeholder=_pick(data, "placeholder"),
            options=options,
            validation=dict(_pick(data, "validation", {}) or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "label": self.label, "type": self.type}
        if self.default_value is not None:
            result["default_value"] = self.default_value
        if self.placeholder is not None:
            result["placeholder"] = self.placeholder
        if self.options:
            result["options"] = [dict(o) for o in self.options]
        if self.validation:
            result["validation"] = dict(self.validation)
        return result


@dataclass
class AutoRunConditions:
    """Extra completion requirements before a stage may auto-run."""

    requires_all: list[str] = field(default_factory=list)
    requires_any: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AutoRunConditions:
        return cls(
            requires_all=_str_list(_pick(data, "requires_all")),
            requires_any=_str_list(_pick(data, "requires_any")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"requires_all": list(self.requires_all), "requires_any": list(self.requires_any)}


@dataclass
class ImageGenerationSettings:
    """Image settings; any string value may be a ``{{...}}`` template."""

    aspect_ratio: str | None = None
    number_of_images: int | str | None = None
    filenames: str | list[str] | None = None
    style: str | None = None
    model: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ImageGenerationSettings:
        return cls(
            aspect_ratio=_pick(data, "aspect_ratio"),
            number_of_images=_pick(data, "number_of_images"),
            filenames=_pick(data, "filenames"),
            style=_pick(data, "style"),
            model=_pick(data, "model"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("aspect_ratio", self.aspect_ratio),
                ("number_of_images", self.number_of_images),
                ("filenames", self.filenames),
                ("style", self.style),
                ("model", self.model),
            )
            if value is not None
        }


@dataclass
class ExportConfig:
    """How an export stage renders earlier outputs.

    Attributes:
        formats: Formats to produce, a subset of ``EXPORT_FORMATS``.
        use_ai: Generate HTML with two model passes (styled and clean);
            otherwise render the built-in templates.
        ai_model: Model for the HTML passes (provider default when unset).
        temperature: Sampling temperature for the HTML passes.
        include_stages: Stages to include, in order. Defaults to every
            completed non-export stage in workflow order.
        title: Document title override.
        styled_prompt: Jinja2 template replacing the built-in styled prompt.
        clean_prompt: Jinja2 template replacing the built-in clean prompt.
    """

    formats: list[str] = field(default_factory=lambda: list(EXPORT_FORMATS))
    use_ai: bool = True
    ai_model: str | None = None
    temperature: float = 0.3
    include_stages: list[str] | None = None
    title: str | None = None
    styled_prompt: str | None = None
    clean_prompt: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ExportConfig:
        formats = _pick(data, "formats")
        # Original workflow files list formats as a mapping of name -> options
        if isinstance(formats, Mapping):
            formats = [
                name for name, options in formats.items()
                if not isinstance(options, Mapping) or options.get("enabled", True)
            ]
        include = _pick(data, "include_stages")
        return cls(
            formats=_str_list(formats) if formats is not None else list(EXPORT_FORMATS),
            use_ai=bool(_pick(data, "use_ai", True)),
            ai_model=_pick(data, "ai_model"),
            temperature=float(_pick(data, "temperature", 0.3)),
            include_stages=_str_list(include) if include is not None else None,
            title=_pick(data, "title"),
            styled_prompt=_pick(data, "styled_prompt"),
            clean_prompt=_pick(data, "clean_prompt"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "formats": list(self.formats),
            "use_ai": self.use_ai,
            "temperature": self.temperature,
        }
        for key in ("ai_model", "include_stages", "title", "styled_prompt", "clean_prompt"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass
class Stage:
    """One step of a workflow."""

    id: str
    title: str = ""
    description: str = ""
    input_type: str = "textarea"
    form_fields: list[FormField] = field(default_factory=list)
    prompt_template: str | None = None
    model: str | None = None
    temperature: float | None = None
    output_type: str = "text"
    stage_type: str = "ai"
    dependencies: list[str] = field(default_factory=list)
    auto_run: bool = False
    auto_run_conditions: AutoRunConditions | None = None
    autorun_depends_on: list[str] = field(default_factory=list)
    grounding_requested: bool = False
    is_optional: bool = False
    system_instructions: str | None = None
    image_generation_settings: ImageGenerationSettings | None = None
    export_config: ExportConfig | None = None

    @property
    def is_export(self) -> bool:
        return self.stage_type == "export"

    @property
    def has_prompt(self) -> bool:
        return bool(self.prompt_template and self.prompt_template.strip())

    def referenced_stage_ids(self) -> list[str]:
        """Every stage id this stage waits on, deduplicated in declaration order."""
        ids = list(self.dependencies) + list(self.autorun_depends_on)
        if self.auto_run_conditions:
            ids += self.auto_run_conditions.requires_all + self.auto_run_conditions.requires_any
        return list(dict.fromkeys(ids))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Stage:
        if "id" not in data:
            raise WorkflowValidationError(
                "Stage definition is missing 'id'",
                errors=["stage without id"],
                context={"stage": dict(data)},
            )
        conditions = _pick(data, "auto_run_conditions")
        image_settings = _pick(data, "image_generation_settings")
        export_config = _pick(data, "export_config")
        temperature = _pick(data, "temperature")
        return cls(
            id=str(data["id"]),
            title=_pick(data, "title", "") or str(data["id"]),
            description=_pick(data, "description", "") or "",
            input_type=_pick(data, "input_type", "textarea"),
            form_fields=[FormField.from_dict(f) for f in _pick(data, "form_fields", []) or []],
            prompt_template=_pick(data, "prompt_template"),
            model=_pick(data, "model"),
            temperature=float(temperature) if temperature is not None else None,
            output_type=_pick(data, "output_type", "text"),
            stage_type=_pick(data, "stage_type", "ai"),
            dependencies=_str_list(_pick(data, "dependencies")),
            auto_run=bool(_pick(data, "auto_run", False)),
            auto_run_conditions=(
                AutoRunConditions.from_dict(conditions) if conditions else None
            ),
            autorun_depends_on=_str_list(_pick(data, "autorun_depends_on")),
            grounding_requested=bool(_pick(data, "grounding_requested", False)),
            is_optional=bool(_pick(data, "is_optional", False)),
            system_instructions=_pick(data, "system_instructions"),
            image_generation_settings=(
                ImageGenerationSettings.from_dict(image_settings) if image_settings else None
            ),
            export_config=ExportConfig.from_dict(export_config) if export_config else None,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "input_type": self.input_type,
            "output_type": self.output_type,
            "stage_type": self.stage_type,
            "dependencies": list(self.dependencies),
            "auto_run": self.auto_run,
            "grounding_requested": self.grounding_requested,
            "is_optional": self.is_optional,
        }
        if self.form_fields:
            result["form_fields"] = [f.to_dict() for f in self.form_fields]
        for key in ("prompt_template", "model", "temperature", "system_instructions"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.autorun_depends_on:
            result["autorun_depends_on"] = list(self.autorun_depends_on)
        if self.auto_run_conditions:
            result["auto_run_conditions"] = self.auto_run_conditions.to_dict()
        if self.image_generation_settings:
            result["image_generation_settings"] = self.image_generation_settings.to_dict()
        if self.export_config:
            result["export_config"] = self.export_config.to_dict()
        return result


@dataclass
class WorkflowConfig:
    """Workflow-level behaviour.

    Attributes:
        set_title_from_stage_output: Stage whose output names the document.
        final_output_stage_id: Stage whose completion completes the document.
    """

    set_title_from_stage_output: str | None = None
    final_output_stage_id: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> WorkflowConfig:
        data = data or {}
        return cls(
            set_title_from_stage_output=_pick(data, "set_title_from_stage_output"),
            final_output_stage_id=_pick(data, "final_output_stage_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("set_title_from_stage_output", self.set_title_from_stage_output),
                ("final_output_stage_id", self.final_output_stage_id),
            )
            if value is not None
        }


@dataclass
class Workflow:
    """A named, ordered set of stages."""

    id: str
    name: str = ""
    short_name: str | None = None
    description: str = ""
    stages: list[Stage] = field(default_factory=list)
    config: WorkflowConfig = field(default_factory=WorkflowConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Workflow:
        if "id" not in data:
            raise WorkflowValidationError(
                "Workflow definition is missing 'id'", errors=["workflow without id"]
            )
        return cls(
            id=str(data["id"]),
            name=_pick(data, "name", "") or str(data["id"]),
            short_name=_pick(data, "short_name"),
            description=_pick(data, "description", "") or "",
            stages=[Stage.from_dict(s) for s in _pick(data, "stages", []) or []],
            config=WorkflowConfig.from_dict(_pick(data, "config")),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "stages": [s.to_dict() for s in self.stages],
            "config": self.config.to_dict(),
        }
        if self.short_name:
            result["short_name"] = self.short_name
        return result

    @property
    def stage_ids(self) -> list[str]:
        return [stage.id for stage in self.stages]

    def has_stage(self, stage_id: str) -> bool:
        return any(stage.id == stage_id for stage in self.stages)

    def get_stage(self, stage_id: str) -> Stage:
        """Return a stage by id.

        Raises:
            NotFoundError: If the workflow has no such stage
        """
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        raise NotFoundError(
            f"Stage '{stage_id}' not found in workflow '{self.id}'",
            context={"stage_id": stage_id, "workflow_id": self.id, "available": self.stage_ids},
        )

    def validate(self) -> Workflow:
        """Check the definition for structural problems.

        Returns:
            The workflow itself, so loaders can chain the call.

        Raises:
            WorkflowValidationError: Listing every problem found
        """
        errors: list[str] = []
        if not self.stages:
            errors.append("workflow has no stages")

        seen: set[str] = set()
        for stage in self.stages:
            if stage.id in seen:
                errors.append(f"duplicate stage id '{stage.id}'")
            seen.add(stage.id)

        for stage in self.stages:
            errors.extend(self._stage_errors(stage, seen))

        for key in ("set_title_from_stage_output", "final_output_stage_id"):
            ref = getattr(self.config, key)
            if ref and ref not in seen:
                errors.append(f"config.{key} references unknown stage '{ref}'")

        if not errors:
            cycle = self._find_cycle()
            if cycle:
                errors.append("dependency cycle: " + " -> ".join(cycle))

        if errors:
            raise WorkflowValidationError(
                f"Workflow '{self.id}' is invalid: {'; '.join(errors)}",
                errors=errors,
                context={"workflow_id": self.id},
            )
        return self

    @staticmethod
    def _stage_errors(stage: Stage, known: set[str]) -> list[str]:
        errors = []
        prefix = f"stage '{stage.id}'"
        if stage.input_type not in INPUT_TYPES:
            errors.append(f"{prefix}: unknown input_type '{stage.input_type}'")
        if stage.output_type not in OUTPUT_TYPES:
            errors.append(f"{prefix}: unknown output_type '{stage.output_type}'")
        if stage.stage_type not in STAGE_TYPES:
            errors.append(f"{prefix}: unknown stage_type '{stage.stage_type}'")

        for ref in stage.referenced_stage_ids():
            if ref == stage.id:
                errors.append(f"{prefix}: depends on itself")
            elif ref not in known:
                errors.append(f"{prefix}: references unknown stage '{ref}'")

        if stage.is_export:
            if stage.export_config is None:
                errors.append(f"{prefix}: export stage requires export_config")
            else:
                unknown = [f for f in stage.export_config.formats if f not in EXPORT_FORMATS]
                if unknown:
                    errors.append(f"{prefix}: unknown export formats {unknown}")
                for ref in stage.export_config.include_stages or []:
                    if ref not in known:
                        errors.append(f"{prefix}: include_stages names unknown stage '{ref}'")
        elif stage.input_type == "none" and not stage.has_prompt:
            errors.append(f"{prefix}: input_type 'none' requires a prompt_template")

        if stage.input_type == "form":
            if not stage.form_fields:
                errors.append(f"{prefix}: form stage has no form_fields")
            for form_field in stage.form_fields:
                if form_field.type not in FIELD_TYPES:
                    errors.append(
                        f"{prefix}: field '{form_field.name}' has unknown type '{form_field.type}'"
                    )
        return errors

    def _edges(self) -> dict[str, list[str]]:
        return {stage.id: stage.referenced_stage_ids() for stage in self.stages}

    def _find_cycle(self) -> list[str] | None:
        edges = self._edges()
        visiting: list[str] = []
        done: set[str] = set()

        def visit(node: str) -> list[str] | None:
            if node in visiting:
                return visiting[visiting.index(node):] + [node]
            if node in done:
                return None
            visiting.append(node)
            for dep in edges.get(node, []):
                cycle = visit(dep)
                if cycle:
                    return cycle
            visiting.pop()
            done.add(node)
            return None

        for stage_id in edges:
            cycle = visit(stage_id)
            if cycle:
                return cycle
        return None

    def execution_order(self) -> list[str]:
        """Stage ids ordered so every stage follows the stages it waits on.

        Ties keep declaration order.

        Raises:
            WorkflowValidationError: If the stages form a cycle
        """
        edges = self._edges()
        position = {stage_id: i for i, stage_id in enumerate(edges)}
        remaining = {
            stage_id: {dep for dep in deps if dep in edges}
            for stage_id, deps in edges.items()
        }
        order: list[str] = []
        while remaining:
            ready = sorted(
                (stage_id for stage_id, deps in remaining.items() if not deps),
                key=position.__getitem__,
            )
            if not ready:
                raise WorkflowValidationError(
                    f"Workflow '{self.id}' has a dependency cycle",
                    errors=[f"cycle among {sorted(remaining)}"],
                    context={"workflow_id": self.id},
                )
            # Take one at a time so an earlier-declared stage that becomes
            # ready wins over later ones already waiting
            next_id = ready[0]
            order.append(next_id)
            del remaining[next_id]
            for deps in remaining.values():
                deps.discard(next_id)
        return order

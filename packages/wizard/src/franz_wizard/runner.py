"""Stage execution.

``StageRunner`` performs every user-visible action on a wizard instance:
running stages (model calls, image generation, export jobs), auto-running
stages whose dependencies completed, and the input/output editing actions
that move stages between statuses.

Example:
    ```python
    runner = StageRunner(instance, provider, settings, job_service=jobs)
    runner.change_input("poem-topic", "Autumn in the city")
    await runner.run_stage("poem-topic")
    await runner.run_autorun_stages()
    ```
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Mapping

from franz_common.exceptions import ValidationError
from franz_config.settings import WriterSettings
from franz_llm import AsyncLLMProvider, LLMMessage, retry_executor_for

from .exceptions import DependenciesNotMetError, ExportJobError, StageExecutionError
from .export import DocumentExporter
from .instance import WizardInstance
from .jobs import ExportJobService
from .reconciler import ExportJobReconciler
from .state import StageState, StageStateStore, StageStatus, utcnow
from .templating import (
    build_context_vars,
    resolve_image_generation_settings,
    strip_code_fences,
    substitute_prompt_vars,
)
from .workflow import Stage, Workflow

logger = logging.getLogger(__name__)

REDO_NOTES_PREFIX = "\n\nAdditional instructions: "


def parse_json_output(text: str, stage_id: str | None = None) -> Any:
    """Parse model output as JSON, tolerating a surrounding code fence.

    Unparseable text is returned unchanged.
    """
    body = strip_code_fences(text)
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        logger.warning("Stage %s returned invalid JSON; keeping raw text", stage_id)
        return text


class StageRunner:
    """Runs stages of one wizard instance.

    Args:
        instance: Document, workflow and states to act on
        provider: Model provider for text and image stages
        settings: Retry presets and export behaviour
        job_service: Required for export stages
        reconciler: Mirrors export jobs into stage state; created from
            ``job_service`` when omitted
    """

    def __init__(
        self,
        instance: WizardInstance,
        provider: AsyncLLMProvider,
        settings: WriterSettings | None = None,
        job_service: ExportJobService | None = None,
        reconciler: ExportJobReconciler | None = None,
    ):
        self.instance = instance
        self.provider = provider
        self.settings = settings or WriterSettings()
        self.job_service = job_service
        if reconciler is None:
            reconciler = instance.reconciler
        if reconciler is None and job_service is not None:
            reconciler = ExportJobReconciler(job_service.store, instance.states)
        self.reconciler = reconciler
        instance.reconciler = reconciler
        self.exporter = DocumentExporter(
            provider, self.settings.retry, use_ai=self.settings.export.use_ai
        )

    @property
    def workflow(self) -> Workflow:
        return self.instance.workflow

    @property
    def states(self) -> StageStateStore:
        return self.instance.states

    # ------------------------------------------------------------------
    # Running stages
    # ------------------------------------------------------------------

    async def run_stage(
        self,
        stage_id: str,
        current_input: Any = None,
        ai_redo_notes: str | None = None,
    ) -> StageState:
        """Run one stage and return its resulting state.

        A stage that is already running is left alone. Failures are recorded
        in the stage state (status ``error``) rather than raised.

        Raises:
            NotFoundError: Unknown stage
            DependenciesNotMetError: A declared dependency is not completed
            InvalidTransitionError: The stage is skipped
        """
        stage = self.workflow.get_stage(stage_id)
        state = self.states.get(stage_id)
        if state.status is StageStatus.RUNNING:
            logger.debug("Stage %s is already running", stage_id)
            return state

        missing = [
            dep for dep in stage.dependencies
            if self.states.get(dep).status is not StageStatus.COMPLETED
        ]
        if missing:
            raise DependenciesNotMetError(stage_id, missing)

        stage_input = current_input if current_input is not None else state.user_input
        if stage_input is None and stage.input_type == "form":
            stage_input = self._form_defaults(stage)

        self.states.update(
            stage_id,
            status=StageStatus.RUNNING,
            user_input=stage_input,
            error=None,
            is_editing_output=False,
            generation_progress=None,
        )
        logger.debug("Running stage %s of %s", stage_id, self.workflow.id)

        try:
            if stage.is_export:
                return await self._start_export(stage)
            if not stage.has_prompt:
                if stage_input is None:
                    raise StageExecutionError(
                        f"Stage '{stage_id}' needs input before it can complete",
                        context={"stage_id": stage_id},
                    )
                return self._complete(stage_id, output=stage_input)

            context = build_context_vars(
                self.workflow, self.states.snapshot(), stage_id, stage_input
            )
            prompt = substitute_prompt_vars(stage.prompt_template, context)
            if ai_redo_notes:
                prompt += REDO_NOTES_PREFIX + ai_redo_notes

            if stage.output_type == "image":
                result = await self._generate_image(stage, prompt, context)
            else:
                result = await self._generate_text(stage, prompt)
            return self._complete(stage_id, **result)
        except Exception as e:
            logger.exception("Stage %s failed", stage_id)
            return self.states.update(
                stage_id,
                status=StageStatus.ERROR,
                error=str(e) or type(e).__name__,
                generation_progress=None,
            )

    def _complete(
        self,
        stage_id: str,
        output: Any,
        grounding_info: dict[str, Any] | None = None,
        usage: dict[str, Any] | None = None,
    ) -> StageState:
        return self.states.update(
            stage_id,
            status=StageStatus.COMPLETED,
            output=output,
            completed_at=utcnow(),
            error=None,
            grounding_info=grounding_info,
            usage=usage,
            generation_progress=None,
        )

    async def _generate_text(self, stage: Stage, prompt: str) -> dict[str, Any]:
        operation = "grounding" if stage.grounding_requested else "text_generation"
        executor = retry_executor_for(
            self.settings.retry, operation, self.workflow.id, stage.id
        )
        kwargs: dict[str, Any] = {
            "model": stage.model,
            "temperature": stage.temperature,
            "system_prompt": stage.system_instructions,
        }
        if stage.output_type == "json":
            kwargs["response_format"] = "json"
        if stage.grounding_requested:
            kwargs["grounding"] = True

        response = await executor.execute(
            self.provider.complete, [LLMMessage(role="user", content=prompt)], **kwargs
        )
        if not response.content or not response.content.strip():
            raise StageExecutionError(
                f"Model returned no content for stage '{stage.id}'",
                context={"stage_id": stage.id, "model": response.model},
            )

        output: Any = response.content
        if stage.output_type == "json":
            output = parse_json_output(response.content, stage.id)
        return {
            "output": output,
            "grounding_info": response.grounding_metadata,
            "usage": response.usage,
        }

    async def _generate_image(
        self, stage: Stage, prompt: str, context: Mapping[str, Any]
    ) -> dict[str, Any]:
        image_settings = resolve_image_generation_settings(stage.image_generation_settings, context)
        if image_settings.style:
            prompt = f"{prompt}\n\nStyle: {image_settings.style}"

        executor = retry_executor_for(
            self.settings.retry, "image_generation", self.workflow.id, stage.id
        )
        call_kwargs = image_settings.to_call_kwargs()
        call_kwargs.setdefault("model", self.settings.image_model)
        response = await executor.execute(self.provider.generate_images, prompt, **call_kwargs)
        if not response.images:
            raise StageExecutionError(
                f"No images were generated for stage '{stage.id}'",
                context={"stage_id": stage.id},
            )

        images = []
        for i, image in enumerate(response.images):
            extension = image.mime_type.split("/")[-1]
            filename = image.filename or f"{stage.id}-{i + 1}.{extension}"
            if image_settings.filenames and i < len(image_settings.filenames):
                filename = image_settings.filenames[i]
            encoded = base64.b64encode(image.data).decode("ascii")
            images.append({
                "filename": filename,
                "mime_type": image.mime_type,
                "size": image.size,
                "data_url": f"data:{image.mime_type};base64,{encoded}",
            })
        return {
            "output": {
                "images": images,
                "model": response.model,
                "prompt": prompt,
                "aspect_ratio": image_settings.aspect_ratio,
            }
        }

    async def _start_export(self, stage: Stage) -> StageState:
        if self.job_service is None or self.reconciler is None:
            raise ExportJobError(
                f"Export stage '{stage.id}' needs an export job service",
                context={"stage_id": stage.id},
            )
        states = self.states.snapshot()
        if not states:
            raise ExportJobError("No stage states to export", context={"stage_id": stage.id})

        document = self.instance.document
        job = await self.job_service.create_job(document.id, stage.id)
        self.states.update(
            stage.id,
            export_job_id=job.job_id,
            generation_progress={"message": "Queued for processing...", "percent": 0},
        )
        await self.reconciler.watch(document.id, job.job_id, stage.id)
        self.job_service.start_background(
            job.job_id,
            lambda: self.exporter.run(
                self.job_service, job.job_id, self.workflow, stage, states, document.title
            ),
        )
        logger.info("Started export job %s for stage %s", job.job_id, stage.id)
        return self.states.get(stage.id)

    async def run_autorun_stages(self) -> list[str]:
        """Run auto-run stages until none is left; each at most once per call."""
        ran: list[str] = []
        order = self.workflow.execution_order()
        while True:
            next_id = None
            for stage_id in order:
                state = self.states.get(stage_id)
                if stage_id not in ran and state.should_auto_run and state.deps_are_met:
                    next_id = stage_id
                    break
            if next_id is None:
                return ran
            ran.append(next_id)
            logger.debug("Auto-running stage %s", next_id)
            await self.run_stage(next_id)

    async def run_all(self, inputs: Mapping[str, Any] | None = None) -> list[str]:
        """Drive the workflow as far as it can go without a user.

        Stages given an entry in ``inputs`` use it (forms are submitted);
        stages without input run when they need none, forms fall back to
        their defaults, and optional stages that still lack input are
        skipped. Every stage is attempted at most once.

        Returns:
            Ids of the stages attempted, in order
        """
        inputs = dict(inputs or {})
        attempted: list[str] = []
        order = self.workflow.execution_order()
        progressed = True
        while progressed:
            progressed = False
            for stage_id in order:
                state = self.states.get(stage_id)
                if stage_id in attempted or state.status is not StageStatus.IDLE or not state.deps_are_met:
                    continue
                if not await self._advance(self.workflow.get_stage(stage_id), inputs):
                    continue
                attempted.append(stage_id)
                progressed = True
        return attempted

    async def _advance(self, stage: Stage, inputs: Mapping[str, Any]) -> bool:
        if stage.id in inputs:
            if stage.input_type == "form":
                await self.submit_form(stage.id, inputs[stage.id])
            else:
                await self.run_stage(stage.id, inputs[stage.id])
            return True
        if stage.input_type == "none" or stage.is_export:
            await self.run_stage(stage.id)
            return True
        if stage.input_type == "form" and not stage.is_optional:
            defaults = self._form_defaults(stage)
            if not self._missing_required(stage, defaults):
                await self.submit_form(stage.id, defaults)
                return True
        if stage.is_optional:
            self.skip_stage(stage.id)
            return True
        logger.info("Stage %s is waiting for input", stage.id)
        return False

    async def wait_for_exports(self, timeout: float | None = None) -> None:
        """Wait until every export job started for this instance has finished."""
        if self.job_service is None:
            return
        for state in self.states:
            if state.export_job_id and self.job_service.is_live(state.export_job_id):
                await self.job_service.wait(state.export_job_id, timeout=timeout)

    # ------------------------------------------------------------------
    # Input and output editing
    # ------------------------------------------------------------------

    def change_input(self, stage_id: str, value: Any) -> StageState:
        """Store new input. Finished stages go back to idle and lose their output."""
        state = self.states.get(stage_id)
        if state.status in (StageStatus.COMPLETED, StageStatus.ERROR, StageStatus.SKIPPED):
            return self.states.update(
                stage_id,
                user_input=value,
                status=StageStatus.IDLE,
                output=None,
                completed_at=None,
                error=None,
                export_job_id=None,
                generation_progress=None,
            )
        return self.states.update(stage_id, user_input=value)

    @staticmethod
    def _form_defaults(stage: Stage) -> dict[str, Any]:
        return {f.name: f.default_value for f in stage.form_fields if f.default_value is not None}

    @staticmethod
    def _missing_required(stage: Stage, values: Mapping[str, Any]) -> list[str]:
        return [
            f.name for f in stage.form_fields
            if f.required and values.get(f.name) in (None, "")
        ]

    async def submit_form(self, stage_id: str, values: Mapping[str, Any]) -> StageState:
        """Submit form values; stages without a prompt complete immediately.

        Raises:
            ValidationError: Not a form stage, or required fields are empty
        """
        stage = self.workflow.get_stage(stage_id)
        if stage.input_type != "form":
            raise ValidationError(
                f"Stage '{stage_id}' is not a form stage",
                context={"stage_id": stage_id, "input_type": stage.input_type},
            )
        merged = {**self._form_defaults(stage), **dict(values or {})}
        missing = self._missing_required(stage, merged)
        if missing:
            raise ValidationError(
                f"Required fields missing: {', '.join(missing)}",
                context={"stage_id": stage_id, "missing": missing},
            )

        self.change_input(stage_id, merged)
        if stage.has_prompt:
            return await self.run_stage(stage_id, merged)
        return self._complete(stage_id, output=merged)

    async def request_input_edit(self, stage_id: str) -> StageState:
        """Reopen a stage for input, keeping what was entered before.

        An export still in flight for the stage is abandoned: its job is
        cancelled and later job records no longer reach the stage.
        """
        job_id = self.states.get(stage_id).export_job_id
        if job_id:
            if self.reconciler is not None:
                await self.reconciler.unwatch(stage_id)
            if self.job_service is not None and self.job_service.is_live(job_id):
                await self.job_service.cancel_job(job_id)
                logger.info("Cancelled export job %s to edit stage %s", job_id, stage_id)
        return self.states.update(
            stage_id,
            status=StageStatus.IDLE,
            output=None,
            completed_at=None,
            error=None,
            is_editing_output=False,
            export_job_id=None,
            generation_progress=None,
        )

    def set_editing_output(self, stage_id: str, editing: bool) -> StageState:
        return self.states.update(stage_id, is_editing_output=editing)

    def edit_output(self, stage_id: str, output: Any) -> StageState:
        """Replace a completed stage's output by hand.

        Stages that depend on it become stale.
        """
        state = self.states.get(stage_id)
        if state.status is not StageStatus.COMPLETED:
            raise ValidationError(
                f"Only completed stages can have their output edited; '{stage_id}' is {state.status.value}",
                context={"stage_id": stage_id, "status": state.status.value},
            )
        return self.states.update(
            stage_id, output=output, completed_at=utcnow(), is_editing_output=False
        )

    def dismiss_stale_warning(self, stage_id: str) -> StageState:
        state = self.states.get(stage_id)
        if not state.is_stale:
            return state
        return self.states.update(stage_id, stale_dismissed=True)

    def skip_stage(self, stage_id: str) -> StageState:
        """Mark an optional stage as skipped.

        Raises:
            ValidationError: If the stage is not optional
        """
        stage = self.workflow.get_stage(stage_id)
        if not stage.is_optional:
            raise ValidationError(
                f"Stage '{stage_id}' is required and cannot be skipped",
                context={"stage_id": stage_id},
            )
        return self.states.update(stage_id, status=StageStatus.SKIPPED)

    async def close(self) -> None:
        if self.reconciler is not None:
            await self.reconciler.close()

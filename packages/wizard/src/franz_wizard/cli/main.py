"""franz-writer: run and inspect writing workflows from the command line.

Commands:
- ``workflows list|show|validate`` inspect workflow definitions
- ``run`` creates a document, feeds it inputs and runs every stage it can
- ``documents list|show|delete`` manage saved documents
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from franz_common.events import create_event_bus
from franz_common.exceptions import FranzError
from franz_config import WriterSettings, load_settings
from franz_llm import LLMConfig, create_llm_provider

from .. import __version__
from ..documents import DocumentService, create_document_store
from ..exceptions import WorkflowValidationError
from ..instance import WizardInstance
from ..jobs import ExportJobService, JobStore
from ..loader import WORKFLOW_SUFFIXES, WorkflowLoader, WorkflowRegistry
from ..runner import StageRunner
from ..state import StageStatus

console = Console()

STATUS_STYLES = {
    "idle": "dim",
    "running": "cyan",
    "completed": "green",
    "error": "red",
    "skipped": "yellow",
}


def _settings(ctx: click.Context) -> WriterSettings:
    return ctx.obj["settings"]


def _registry(settings: WriterSettings) -> WorkflowRegistry:
    return WorkflowRegistry.default(settings.workflows_dir)


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    sys.exit(1)


def _preview(value: Any, width: int = 60) -> str:
    if value is None:
        return ""
    if isinstance(value, dict) and isinstance(value.get("images"), list):
        text = f"{len(value['images'])} image(s)"
    elif isinstance(value, dict) and "formats" in value:
        text = "formats: " + ", ".join(sorted(value["formats"]))
    elif isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, default=str)
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 1] + "…"


def _read_structured(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            return json.load(f)
        if path.suffix.lower() in (".yaml", ".yml"):
            return yaml.safe_load(f)
        return f.read()


def parse_input_value(raw: str) -> Any:
    """``@file`` reads a file; otherwise JSON when it parses, else plain text."""
    if raw.startswith("@"):
        path = Path(raw[1:]).expanduser()
        if not path.exists():
            raise click.BadParameter(f"input file not found: {path}")
        return _read_structured(path)
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def collect_inputs(pairs: tuple[str, ...], inputs_file: str | None) -> dict[str, Any]:
    inputs: dict[str, Any] = {}
    if inputs_file:
        data = _read_structured(Path(inputs_file))
        if not isinstance(data, dict):
            raise click.BadParameter("inputs file must contain a mapping of stage id to input")
        inputs.update(data)
    for pair in pairs:
        stage_id, sep, raw = pair.partition("=")
        if not sep or not stage_id:
            raise click.BadParameter(f"expected STAGE=VALUE, got {pair!r}")
        inputs[stage_id.strip()] = parse_input_value(raw)
    return inputs


def _stage_table(instance: WizardInstance) -> Table:
    table = Table(title=f"{instance.document.title} ({instance.document.status.value})")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Output")
    for stage in instance.workflow.stages:
        state = instance.states.get(stage.id)
        status = state.status.value
        detail = state.error if state.status is StageStatus.ERROR else _preview(state.output)
        if state.is_stale and not state.stale_dismissed:
            status += " (stale)"
        table.add_row(stage.id, f"[{STATUS_STYLES[state.status.value]}]{status}[/]", detail or "")
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--settings", "settings_path", type=click.Path(), help="Settings file (YAML or JSON)")
@click.option("--log-level", help="Logging level (overrides settings)")
@click.pass_context
def cli(ctx: click.Context, settings_path: str | None, log_level: str | None):
    """Franz AI Writer - multi-stage writing workflows"""
    try:
        settings = load_settings(settings_path)
    except FranzError as e:
        _fail(f"Cannot load settings: {e}")
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    ctx.obj = {"settings": settings}


# ----------------------------------------------------------------------
# workflows
# ----------------------------------------------------------------------


@cli.group()
def workflows():
    """Inspect workflow definitions"""
    pass


@workflows.command("list")
@click.pass_context
def list_workflows(ctx: click.Context):
    """List available workflows"""
    try:
        registry = _registry(_settings(ctx))
    except FranzError as e:
        _fail(f"Cannot load workflows: {e}")

    table = Table(title="Workflows")
    table.add_column("ID", style="cyan")
    table.add_column("Short name")
    table.add_column("Name")
    table.add_column("Stages", justify="right")
    for workflow in sorted(registry.values(), key=lambda w: w.id):
        table.add_row(workflow.id, workflow.short_name or "", workflow.name, str(len(workflow.stages)))
    console.print(table)


@workflows.command("show")
@click.argument("workflow")
@click.pass_context
def show_workflow(ctx: click.Context, workflow: str):
    """Show the stages of a workflow"""
    try:
        definition = _registry(_settings(ctx)).resolve(workflow)
    except FranzError as e:
        _fail(str(e))

    tree = Tree(f"[bold]{definition.name}[/bold] ({definition.id})")
    for stage_id in definition.execution_order():
        stage = definition.get_stage(stage_id)
        flags = [stage.input_type, stage.output_type]
        if stage.is_export:
            flags.append("export")
        if stage.auto_run:
            flags.append("auto-run")
        if stage.is_optional:
            flags.append("optional")
        if stage.grounding_requested:
            flags.append("grounded")
        branch = tree.add(f"[cyan]{stage.id}[/cyan] {stage.title} [dim]({', '.join(flags)})[/dim]")
        if stage.dependencies:
            branch.add(f"depends on: {', '.join(stage.dependencies)}")
        if stage.autorun_depends_on:
            branch.add(f"auto-runs after: {', '.join(stage.autorun_depends_on)}")
    console.print(tree)


@workflows.command("validate")
@click.argument("path", type=click.Path(exists=True))
def validate_workflows(path: str):
    """Validate a workflow file or every workflow file in a directory"""
    target = Path(path)
    files = (
        sorted(p for p in target.iterdir() if p.suffix.lower() in WORKFLOW_SUFFIXES)
        if target.is_dir()
        else [target]
    )
    loader = WorkflowLoader()
    failures = 0
    for file in files:
        try:
            workflow = loader.load(file)
        except WorkflowValidationError as e:
            failures += 1
            console.print(f"[red]✗[/red] {file}")
            for error in e.errors:
                console.print(f"    {error}")
        except FranzError as e:
            failures += 1
            console.print(f"[red]✗[/red] {file}: {e}")
        else:
            console.print(f"[green]✓[/green] {file} ({workflow.id}, {len(workflow.stages)} stages)")
    if failures:
        sys.exit(1)


# ----------------------------------------------------------------------
# run
# ----------------------------------------------------------------------


async def run_workflow(
    settings: WriterSettings,
    workflow_key: str,
    inputs: dict[str, Any],
    title: str | None = None,
) -> WizardInstance:
    """Create a document for ``workflow_key`` and run it as far as possible."""
    service = DocumentService(create_document_store(settings.documents), _registry(settings))
    instance = service.create_instance(workflow_key, title=title)

    unknown = sorted(set(inputs) - set(instance.workflow.stage_ids))
    if unknown:
        raise click.BadParameter(f"unknown stage(s) in inputs: {', '.join(unknown)}")

    provider = create_llm_provider(LLMConfig(
        provider=settings.provider,
        model=settings.default_model,
        api_key=settings.api_key,
        temperature=settings.default_temperature,
        image_model=settings.image_model,
    ))
    bus = create_event_bus(settings.event_bus)
    await bus.connect()
    job_service = ExportJobService(JobStore(bus), timeout_seconds=settings.export.timeout_seconds)
    runner = StageRunner(instance, provider, settings, job_service=job_service)
    try:
        async with provider:
            await runner.run_all(inputs)
            await runner.wait_for_exports()
            # Stages waiting on an export can run now
            await runner.run_all(inputs)
            await runner.wait_for_exports()
    finally:
        await runner.close()
        await job_service.cleanup_old_jobs(settings.export.cleanup_after_days)
        await job_service.close()
        await bus.close()

    service.save_instance(instance)
    return instance


@cli.command()
@click.argument("workflow")
@click.option("--input", "-i", "input_pairs", multiple=True, metavar="STAGE=VALUE",
              help="Input for a stage: JSON, plain text, or @file")
@click.option("--inputs", "inputs_file", type=click.Path(exists=True),
              help="YAML/JSON file mapping stage ids to inputs")
@click.option("--title", "-t", help="Initial document title")
@click.option("--output", "-o", type=click.Path(), help="Write the document record as JSON")
@click.pass_context
def run(ctx: click.Context, workflow: str, input_pairs: tuple[str, ...],
        inputs_file: str | None, title: str | None, output: str | None):
    """Run a workflow with the given stage inputs"""
    settings = _settings(ctx)
    inputs = collect_inputs(input_pairs, inputs_file)
    try:
        instance = asyncio.run(run_workflow(settings, workflow, inputs, title))
    except FranzError as e:
        _fail(f"Run failed: {e}")

    console.print(_stage_table(instance))
    console.print(f"Document [bold]{instance.document.id}[/bold] saved ({settings.documents.backend} store)")

    waiting = instance.current_stage_id
    if waiting and not instance.is_complete:
        console.print(f"[yellow]Stopped at stage '{waiting}'[/yellow]")

    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump(instance.to_record(), f, indent=2, ensure_ascii=False, default=str)
        console.print(f"[green]Record written to {output}[/green]")

    if any(state.status is StageStatus.ERROR for state in instance.states):
        sys.exit(1)


# ----------------------------------------------------------------------
# documents
# ----------------------------------------------------------------------


def _document_service(settings: WriterSettings) -> DocumentService:
    if settings.documents.backend == "memory":
        console.print(
            "[yellow]Documents use the in-memory store; nothing persists between runs. "
            "Set documents.backend to 'file' to keep them.[/yellow]"
        )
    return DocumentService(create_document_store(settings.documents), _registry(settings))


@cli.group()
def documents():
    """Manage saved documents"""
    pass


@documents.command("list")
@click.pass_context
def list_documents(ctx: click.Context):
    """List saved documents, most recent first"""
    service = _document_service(_settings(ctx))
    table = Table(title="Documents")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Updated")
    for document in service.list_documents():
        table.add_row(
            document.id,
            document.title,
            document.workflow_id,
            document.status.value,
            document.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@documents.command("show")
@click.argument("document_id")
@click.option("--stage", "-s", help="Print the full output of one stage")
@click.pass_context
def show_document(ctx: click.Context, document_id: str, stage: str | None):
    """Show a document's stages"""
    service = _document_service(_settings(ctx))
    try:
        instance = asyncio.run(service.load_instance(document_id))
        if stage:
            output = instance.states.get(stage).output
            if isinstance(output, str):
                console.print(output)
            else:
                console.print_json(json.dumps(output, ensure_ascii=False, default=str))
            return
    except FranzError as e:
        _fail(str(e))
    console.print(_stage_table(instance))


@documents.command("delete")
@click.argument("document_id")
@click.pass_context
def delete_document(ctx: click.Context, document_id: str):
    """Delete a saved document"""
    service = _document_service(_settings(ctx))
    if not service.delete_document(document_id):
        _fail(f"Document not found: {document_id}")
    console.print(f"[green]Deleted {document_id}[/green]")


def main():
    """Main entry point for CLI"""
    cli()


if __name__ == "__main__":
    main()

"""Stage orchestration for multi-stage AI writing workflows.

A workflow is a set of stages (user input, AI generation, export) with
dependencies between them. A ``WizardInstance`` tracks one document's
progress through a workflow; a ``StageRunner`` executes its stages.

Example:
    ```python
    from franz_llm import create_llm_provider
    from franz_wizard import DocumentService, InMemoryDocumentStore, StageRunner, WorkflowRegistry

    service = DocumentService(InMemoryDocumentStore(), WorkflowRegistry.default())
    instance = service.create_instance("poem")
    runner = StageRunner(instance, create_llm_provider({"provider": "echo", "model": "echo-model"}))
    await runner.run_all({"poem-topic": "autumn rain"})
    ```
"""

from franz_wizard.dependencies import evaluate_dependencies
from franz_wizard.documents import (
    DocumentService,
    DocumentStore,
    FileDocumentStore,
    InMemoryDocumentStore,
    create_document_store,
)
from franz_wizard.exceptions import (
    DependenciesNotMetError,
    ExportJobError,
    StageExecutionError,
    TemplateResolutionError,
    WorkflowValidationError,
)
from franz_wizard.export import DocumentExporter, html_to_markdown, process_export_formats
from franz_wizard.instance import DocumentStatus, WizardDocument, WizardInstance
from franz_wizard.jobs import ExportJob, ExportJobService, JobStatus, JobStore
from franz_wizard.loader import WorkflowLoader, WorkflowRegistry, builtin_workflows
from franz_wizard.reconciler import ExportJobReconciler
from franz_wizard.runner import StageRunner
from franz_wizard.state import (
    StageState,
    StageStateStore,
    StageStatus,
    initialize_stage_states,
    reconcile_with_workflow,
    reset_stuck_export_stages,
    validate_stage_state,
)
from franz_wizard.templating import (
    build_context_vars,
    resolve_image_generation_settings,
    resolve_template,
    substitute_prompt_vars,
)
from franz_wizard.workflow import (
    AutoRunConditions,
    ExportConfig,
    FormField,
    ImageGenerationSettings,
    Stage,
    Workflow,
    WorkflowConfig,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Workflow definitions
    "AutoRunConditions",
    "ExportConfig",
    "FormField",
    "ImageGenerationSettings",
    "Stage",
    "Workflow",
    "WorkflowConfig",
    "WorkflowLoader",
    "WorkflowRegistry",
    "builtin_workflows",
    # State
    "StageState",
    "StageStateStore",
    "StageStatus",
    "evaluate_dependencies",
    "initialize_stage_states",
    "reconcile_with_workflow",
    "reset_stuck_export_stages",
    "validate_stage_state",
    # Templating
    "build_context_vars",
    "resolve_image_generation_settings",
    "resolve_template",
    "substitute_prompt_vars",
    # Execution
    "StageRunner",
    "WizardDocument",
    "WizardInstance",
    "DocumentStatus",
    # Export
    "DocumentExporter",
    "ExportJob",
    "ExportJobReconciler",
    "ExportJobService",
    "JobStatus",
    "JobStore",
    "html_to_markdown",
    "process_export_formats",
    # Documents
    "DocumentService",
    "DocumentStore",
    "FileDocumentStore",
    "InMemoryDocumentStore",
    "create_document_store",
    # Errors
    "DependenciesNotMetError",
    "ExportJobError",
    "StageExecutionError",
    "TemplateResolutionError",
    "WorkflowValidationError",
]

"""Pytest configuration and fixtures for wizard package tests."""

import copy
import shutil
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from franz_common.events import create_event_bus
from franz_config import RetrySettings, WriterSettings
from franz_config.settings import ExportSettings
from franz_llm import EchoProvider, LLMConfig
from franz_wizard.instance import WizardInstance
from franz_wizard.jobs import ExportJobService, JobStore
from franz_wizard.loader import WorkflowLoader, WorkflowRegistry
from franz_wizard.runner import StageRunner
from franz_wizard.workflow import Workflow


SIMPLE_WORKFLOW = {
    "id": "simple",
    "shortName": "s",
    "name": "Simple Workflow",
    "config": {
        "setTitleFromStageOutput": "draft",
        "finalOutputStageId": "export",
    },
    "stages": [
        {"id": "topic", "title": "Topic", "inputType": "textarea"},
        {
            "id": "details",
            "title": "Details",
            "inputType": "form",
            "outputType": "json",
            "formFields": [
                {"name": "tone", "type": "select", "defaultValue": "warm",
                 "options": ["warm", "dry"]},
                {"name": "audience", "type": "text", "validation": {"required": True}},
            ],
        },
        {
            "id": "draft",
            "title": "Draft",
            "inputType": "none",
            "dependencies": ["topic", "details"],
            "autoRun": True,
            "promptTemplate": "Write about {{topic.output}} for {{details.output.audience}} "
                              "in a {{details.output.tone}} tone.",
        },
        {
            "id": "summary",
            "title": "Summary",
            "inputType": "none",
            "outputType": "json",
            "dependencies": ["draft"],
            "autoRun": True,
            "promptTemplate": "Summarize: {{draft.output}}",
        },
        {
            "id": "notes",
            "title": "Notes",
            "inputType": "textarea",
            "isOptional": True,
        },
        {
            "id": "export",
            "title": "Export",
            "inputType": "none",
            "stageType": "export",
            "dependencies": ["draft"],
            "exportConfig": {"useAi": False, "includeStages": ["topic", "draft"]},
        },
    ],
}


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp = tempfile.mkdtemp()
    yield Path(temp)
    shutil.rmtree(temp)


@pytest.fixture
def workflow_data():
    """A fresh copy of the simple workflow definition."""
    return copy.deepcopy(SIMPLE_WORKFLOW)


@pytest.fixture
def workflow(workflow_data) -> Workflow:
    return WorkflowLoader().load_from_dict(workflow_data)


@pytest.fixture
def registry(workflow):
    return WorkflowRegistry([workflow])


@pytest.fixture
def fast_settings():
    """Settings without retries or delays."""
    return WriterSettings(
        retry=RetrySettings(
            default="NONE",
            text_generation="NONE",
            image_generation="NONE",
            grounding="NONE",
            enable_detailed_logging=False,
        ),
        export=ExportSettings(timeout_seconds=5, use_ai=True),
    )


@pytest.fixture
def provider():
    return EchoProvider(LLMConfig(provider="echo", model="echo-model", image_model="echo-image"))


@pytest.fixture
def instance(workflow):
    return WizardInstance.create(workflow, document_id="doc-1")


@pytest_asyncio.fixture
async def bus():
    bus = create_event_bus({"backend": "memory"})
    await bus.connect()
    yield bus
    await bus.close()


@pytest_asyncio.fixture
async def job_service(bus):
    service = ExportJobService(JobStore(bus), timeout_seconds=5)
    yield service
    await service.close()


@pytest_asyncio.fixture
async def runner(instance, provider, fast_settings, job_service):
    runner = StageRunner(instance, provider, fast_settings, job_service=job_service)
    yield runner
    await runner.close()

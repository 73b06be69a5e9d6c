"""Tests for wizard instances and document persistence."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from franz_common.exceptions import NotFoundError, SerializationError, ValidationError
from franz_config.settings import DocumentSettings
from franz_wizard.documents import (
    DocumentService,
    DocumentStore,
    FileDocumentStore,
    InMemoryDocumentStore,
    create_document_store,
)
from franz_wizard.instance import DocumentStatus, WizardDocument, WizardInstance, title_from_output
from franz_wizard.loader import WorkflowLoader, WorkflowRegistry
from franz_wizard.state import StageStatus

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def record(document_id="doc-1", updated_at=T0, **states):
    return {
        "document": {
            "id": document_id,
            "title": f"Title {document_id}",
            "workflow_id": "simple",
            "updated_at": updated_at.isoformat(),
        },
        "stage_states": states,
    }


class TestWizardDocument:

    def test_from_camel_case(self):
        document = WizardDocument.from_dict({
            "id": "d",
            "title": "T",
            "workflowId": "simple",
            "status": "in-progress",
            "createdAt": "2024-05-01T00:00:00Z",
            "userId": "u1",
        })

        assert document.workflow_id == "simple"
        assert document.status is DocumentStatus.IN_PROGRESS
        assert document.created_at == T0
        assert document.user_id == "u1"

    def test_dict_round_trip(self):
        document = WizardDocument(id="d", title="T", workflow_id="simple", created_at=T0, updated_at=T0)
        assert WizardDocument.from_dict(document.to_dict()) == document


@pytest.mark.parametrize("output, expected", [
    ("# Autumn Rain\n\nverse", "Autumn Rain"),
    ("\n\n  plain title  ", "plain title"),
    ({"title": "From JSON", "poem": "..."}, "From JSON"),
    ({"topic": "Launch", "company": "Acme"}, "Launch"),
    ({"images": []}, None),
    ("", None),
    ("x" * 150, "x" * 100),
])
def test_title_from_output(output, expected):
    assert title_from_output(output) == expected


class TestWizardInstance:

    def test_create(self, workflow):
        instance = WizardInstance.create(workflow)

        assert instance.document.title == "New Simple Workflow"
        assert instance.document.status is DocumentStatus.DRAFT
        assert instance.document.workflow_id == "simple"
        assert instance.current_stage_id == "topic"
        assert not instance.is_complete

    def test_document_follows_states(self, workflow):
        instance = WizardInstance.create(workflow, title="Mine")
        before = instance.document.updated_at

        instance.states.update("topic", user_input="rain")

        assert instance.document.status is DocumentStatus.IN_PROGRESS
        assert instance.document.updated_at >= before
        assert instance.document.title == "Mine"

    def test_complete_without_final_stage(self, workflow_data):
        workflow_data["config"] = {}
        workflow_data["stages"] = [
            {"id": "a"},
            {"id": "b", "isOptional": True},
        ]
        workflow = WorkflowLoader().load_from_dict(workflow_data)
        instance = WizardInstance.create(workflow)

        instance.states.update("a", status="completed", output="x", completed_at=T0)

        assert instance.is_complete
        assert instance.document.status is DocumentStatus.COMPLETED
        assert instance.current_stage_id == "b"

    def test_to_record(self, instance):
        data = instance.to_record()

        assert data["document"]["id"] == "doc-1"
        assert set(data["stage_states"]) == set(instance.workflow.stage_ids)
        json.dumps(data)


class TestInMemoryDocumentStore:

    def test_save_load_copies(self):
        store = InMemoryDocumentStore()
        data = record()
        store.save(data)
        data["document"]["title"] = "changed"

        loaded = store.load("doc-1")
        loaded["stage_states"]["x"] = {}

        assert store.load("doc-1")["document"]["title"] == "Title doc-1"
        assert store.load("doc-1")["stage_states"] == {}
        assert isinstance(store, DocumentStore)

    def test_missing(self):
        with pytest.raises(NotFoundError):
            InMemoryDocumentStore().load("nope")

    def test_list_and_delete(self):
        store = InMemoryDocumentStore()
        store.save(record("a"))
        store.save(record("b"))

        assert {d.id for d in store.list()} == {"a", "b"}
        assert store.delete("a")
        assert not store.delete("a")
        assert [d.id for d in store.list()] == ["b"]

    def test_invalid_record(self):
        with pytest.raises(ValidationError):
            InMemoryDocumentStore().save({"stage_states": {}})


class TestFileDocumentStore:

    def test_round_trip(self, temp_dir):
        store = FileDocumentStore(temp_dir / "docs")
        store.save(record())

        assert (temp_dir / "docs" / "doc-1.json").exists()
        assert store.load("doc-1") == record()
        assert not list((temp_dir / "docs").glob("*.tmp"))

    def test_rejects_path_like_ids(self, temp_dir):
        store = FileDocumentStore(temp_dir)
        with pytest.raises(ValidationError):
            store.save(record("../escape"))
        with pytest.raises(ValidationError):
            store.load("a/b")

    def test_missing_and_corrupt(self, temp_dir):
        store = FileDocumentStore(temp_dir)
        with pytest.raises(NotFoundError):
            store.load("missing")

        (temp_dir / "bad.json").write_text("{not json")
        with pytest.raises(SerializationError):
            store.load("bad")

    def test_list_skips_unreadable(self, temp_dir):
        store = FileDocumentStore(temp_dir)
        store.save(record("good"))
        (temp_dir / "bad.json").write_text("{not json")

        assert [d.id for d in store.list()] == ["good"]

    def test_list_missing_dir(self, temp_dir):
        assert FileDocumentStore(temp_dir / "none").list() == []

    def test_delete(self, temp_dir):
        store = FileDocumentStore(temp_dir)
        store.save(record())

        assert store.delete("doc-1")
        assert not store.delete("doc-1")


def test_create_document_store(temp_dir):
    assert isinstance(create_document_store(DocumentSettings()), InMemoryDocumentStore)
    store = create_document_store(DocumentSettings(backend="file", path=str(temp_dir)))
    assert isinstance(store, FileDocumentStore)
    assert store.path == temp_dir


class TestDocumentService:

    @pytest.fixture
    def service(self, registry):
        return DocumentService(InMemoryDocumentStore(), registry)

    def test_create_by_short_name(self, service):
        instance = service.create_instance("s", title="Rain", user_id="u1")

        assert instance.workflow.id == "simple"
        assert instance.document.title == "Rain"
        assert instance.document.user_id == "u1"

    def test_create_unknown_workflow(self, service):
        with pytest.raises(NotFoundError):
            service.create_instance("missing")

    @pytest.mark.asyncio
    async def test_save_and_load(self, service):
        instance = service.create_instance("simple")
        instance.states.update("topic", status="completed", user_input="rain", output="rain", completed_at=T0)
        service.save_instance(instance)

        loaded = await service.load_instance(instance.document.id)

        topic = loaded.states.get("topic")
        assert topic.status is StageStatus.COMPLETED
        assert topic.output == "rain"
        assert topic.completed_at == T0
        assert loaded.document.status is DocumentStatus.IN_PROGRESS
        assert loaded.reconciler is None

    @pytest.mark.asyncio
    async def test_load_repairs_states(self, service):
        service.store.save(record(
            topic={"status": "completed", "output": None},
            draft={"status": "running"},
            legacy={"status": "completed", "output": "x"},
            export={"status": "running", "exportJobId": "gone", "generationProgress": {"percent": 40}},
        ))

        instance = await service.load_instance("doc-1")

        assert "legacy" not in instance.states
        assert len(instance.states) == 6
        assert instance.states.get("topic").status is StageStatus.IDLE
        export = instance.states.get("export")
        assert export.status is StageStatus.IDLE
        assert export.export_job_id is None
        assert export.generation_progress is None

    @pytest.mark.asyncio
    async def test_load_resumes_live_export(self, registry, job_service):
        service = DocumentService(InMemoryDocumentStore(), registry, job_service)
        job = await job_service.create_job("doc-1", "export")
        await job_service.start_job(job.job_id)
        service.store.save(record(
            topic={"status": "completed", "output": "rain", "completed_at": T0.isoformat()},
            details={"status": "completed", "output": {"audience": "kids"}, "completed_at": T0.isoformat()},
            draft={"status": "completed", "output": "draft", "completed_at": T0.isoformat()},
            export={"status": "running", "export_job_id": job.job_id},
        ))

        instance = await service.load_instance("doc-1")
        try:
            assert instance.reconciler.is_watching("export")
            assert instance.states.get("export").generation_progress["message"] == "Processing: 5%"

            await job_service.complete_job(job.job_id, {"markdown": "# Rain"})

            assert instance.states.get("export").status is StageStatus.COMPLETED
            assert instance.is_complete
        finally:
            await instance.reconciler.close()

    @pytest.mark.asyncio
    async def test_load_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.load_instance("missing")

    def test_list_sorted_by_update(self, service):
        service.store.save(record("old", updated_at=T0))
        service.store.save(record("new", updated_at=T0 + timedelta(days=1)))

        assert [d.id for d in service.list_documents()] == ["new", "old"]

    def test_delete(self, service):
        service.store.save(record())

        assert service.delete_document("doc-1")
        assert not service.delete_document("doc-1")


@pytest.mark.asyncio
async def test_load_with_unknown_workflow():
    service = DocumentService(InMemoryDocumentStore(), WorkflowRegistry())
    service.store.save(record())

    with pytest.raises(NotFoundError, match="Workflow not found"):
        await service.load_instance("doc-1")

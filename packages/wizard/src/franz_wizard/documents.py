"""Persistence of wizard documents.

A stored record is ``{"document": {...}, "stage_states": {stage_id: {...}}}``.
Records are plain JSON-compatible dicts so any store that can keep JSON can
back the service.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from franz_common.exceptions import NotFoundError, SerializationError, ValidationError
from franz_config.settings import DocumentSettings

from .instance import WizardDocument, WizardInstance
from .reconciler import ExportJobReconciler
from .state import (
    StageState,
    StageStatus,
    reconcile_with_workflow,
    reset_stuck_export_stages,
    validate_stage_state,
)

if TYPE_CHECKING:
    from .jobs import ExportJobService
    from .loader import WorkflowRegistry

logger = logging.getLogger(__name__)

_DOCUMENT_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


@runtime_checkable
class DocumentStore(Protocol):
    """Storage for document records."""

    def save(self, record: dict[str, Any]) -> None:
        ...

    def load(self, document_id: str) -> dict[str, Any]:
        """Raises NotFoundError for unknown documents."""
        ...

    def list(self) -> list[WizardDocument]:
        ...

    def delete(self, document_id: str) -> bool:
        """Returns whether a document was deleted."""
        ...


def _document_id(record: dict[str, Any]) -> str:
    try:
        document_id = record["document"]["id"]
    except (KeyError, TypeError):
        raise ValidationError("Document record has no document.id") from None
    if not _DOCUMENT_ID.match(str(document_id)):
        raise ValidationError(
            f"Invalid document id: {document_id!r}", context={"document_id": document_id}
        )
    return str(document_id)


class InMemoryDocumentStore:
    """Keeps deep copies of records in a dict."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}

    def save(self, record: dict[str, Any]) -> None:
        self._records[_document_id(record)] = copy.deepcopy(record)

    def load(self, document_id: str) -> dict[str, Any]:
        if document_id not in self._records:
            raise NotFoundError(
                f"Document not found: {document_id}", context={"document_id": document_id}
            )
        return copy.deepcopy(self._records[document_id])

    def list(self) -> list[WizardDocument]:
        return [WizardDocument.from_dict(r["document"]) for r in self._records.values()]

    def delete(self, document_id: str) -> bool:
        return self._records.pop(document_id, None) is not None


class FileDocumentStore:
    """One ``<document_id>.json`` file per document under ``path``."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def _file(self, document_id: str) -> Path:
        if not _DOCUMENT_ID.match(document_id):
            raise ValidationError(
                f"Invalid document id: {document_id!r}", context={"document_id": document_id}
            )
        return self.path / f"{document_id}.json"

    def save(self, record: dict[str, Any]) -> None:
        target = self._file(_document_id(record))
        self.path.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(record, f, indent=2, ensure_ascii=False, default=str)
        tmp.replace(target)

    def load(self, document_id: str) -> dict[str, Any]:
        target = self._file(document_id)
        if not target.exists():
            raise NotFoundError(
                f"Document not found: {document_id}",
                context={"document_id": document_id, "path": str(target)},
            )
        try:
            with open(target, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise SerializationError(
                f"Corrupt document file {target}: {e}", context={"path": str(target)}
            ) from e

    def list(self) -> list[WizardDocument]:
        if not self.path.is_dir():
            return []
        documents = []
        for file in sorted(self.path.glob("*.json")):
            try:
                documents.append(WizardDocument.from_dict(self.load(file.stem)["document"]))
            except (SerializationError, KeyError, ValueError) as e:
                logger.warning("Skipping unreadable document file %s: %s", file, e)
        return documents

    def delete(self, document_id: str) -> bool:
        target = self._file(document_id)
        if not target.exists():
            return False
        target.unlink()
        return True


def create_document_store(settings: DocumentSettings) -> DocumentStore:
    if settings.backend == "file":
        return FileDocumentStore(settings.path)
    return InMemoryDocumentStore()


class DocumentService:
    """Creates, saves and restores wizard instances.

    Args:
        store: Where records are kept
        registry: Workflows that documents refer to
        job_service: When given, export stages whose job is still running
            survive a reload and are watched again.
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: WorkflowRegistry,
        job_service: ExportJobService | None = None,
    ):
        self.store = store
        self.registry = registry
        self.job_service = job_service

    def create_instance(
        self,
        workflow_key: str,
        title: str | None = None,
        user_id: str = "local",
    ) -> WizardInstance:
        workflow = self.registry.resolve(workflow_key)
        instance = WizardInstance.create(workflow, title=title, user_id=user_id)
        logger.info("Created document %s from workflow %s", instance.document.id, workflow.id)
        return instance

    def save_instance(self, instance: WizardInstance) -> None:
        self.store.save(instance.to_record())
        logger.debug("Saved document %s", instance.document.id)

    async def load_instance(self, document_id: str) -> WizardInstance:
        """Restore a document and make its states consistent with its workflow.

        States for stages the workflow no longer has are dropped and missing
        ones are added, inconsistent states are repaired, and export stages
        left running are reset unless their job is still live, in which case
        a reconciler resumes watching it.

        Raises:
            NotFoundError: Unknown document or workflow
        """
        record = self.store.load(document_id)
        document = WizardDocument.from_dict(record["document"])
        workflow = self.registry.resolve(document.workflow_id)

        loaded = {
            stage_id: StageState.from_dict({"stage_id": stage_id, **data})
            for stage_id, data in (record.get("stage_states") or {}).items()
        }
        states, _ = reconcile_with_workflow(workflow, loaded)
        states = {stage_id: validate_stage_state(state) for stage_id, state in states.items()}

        job_service = self.job_service
        states = reset_stuck_export_stages(
            states,
            workflow,
            keep=(lambda s: job_service.is_live(s.export_job_id)) if job_service else None,
        )

        instance = WizardInstance(document, workflow, states)
        if job_service is not None:
            instance.reconciler = ExportJobReconciler(job_service.store, instance.states)
            for stage in workflow.stages:
                state = instance.states.get(stage.id)
                if stage.is_export and state.status is StageStatus.RUNNING and state.export_job_id:
                    await instance.reconciler.watch(document.id, state.export_job_id, stage.id)
        return instance

    def list_documents(self) -> list[WizardDocument]:
        return sorted(self.store.list(), key=lambda d: d.updated_at, reverse=True)

    def delete_document(self, document_id: str) -> bool:
        deleted = self.store.delete(document_id)
        if deleted:
            logger.info("Deleted document %s", document_id)
        return deleted

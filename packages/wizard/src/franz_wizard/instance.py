"""A wizard document together with its workflow and stage states."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from .state import StageState, StageStateStore, StageStatus, parse_timestamp, utcnow
from .workflow import Workflow

if TYPE_CHECKING:
    from .reconciler import ExportJobReconciler

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 100
TITLE_KEYS = ("title", "topic", "name")


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


@dataclass
class WizardDocument:
    """Metadata of one document created from a workflow."""

    id: str
    title: str
    workflow_id: str
    status: DocumentStatus = DocumentStatus.DRAFT
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    user_id: str = "local"

    def __post_init__(self) -> None:
        self.status = DocumentStatus(self.status)
        self.created_at = parse_timestamp(self.created_at)
        self.updated_at = parse_timestamp(self.updated_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WizardDocument:
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            workflow_id=data.get("workflow_id") or data["workflowId"],
            status=data.get("status", DocumentStatus.DRAFT),
            created_at=data.get("created_at") or data.get("createdAt") or utcnow(),
            updated_at=data.get("updated_at") or data.get("updatedAt") or utcnow(),
            user_id=data.get("user_id") or data.get("userId") or "local",
        )


def title_from_output(output: Any) -> str | None:
    """Derive a document title from a stage output.

    Text uses its first non-empty line (Markdown heading marks removed);
    mappings use their ``title``, ``topic`` or ``name`` entry.
    """
    if isinstance(output, str):
        for line in output.splitlines():
            line = line.strip().lstrip("#").strip()
            if line:
                return line[:TITLE_MAX_LENGTH]
        return None
    if isinstance(output, Mapping):
        for key in TITLE_KEYS:
            value = output.get(key)
            if isinstance(value, str) and value.strip():
                return title_from_output(value)
    return None


class WizardInstance:
    """Document, workflow and the state store that drives it.

    The document's title and status follow the stage states: the title is
    taken from the stage named by ``set_title_from_stage_output`` once it
    completes, and the document is completed when the final-output stage
    (or, without one, every required stage) is completed.
    """

    def __init__(
        self,
        document: WizardDocument,
        workflow: Workflow,
        states: StageStateStore | Mapping[str, StageState] | None = None,
    ):
        self.document = document
        self.workflow = workflow
        if isinstance(states, StageStateStore):
            self.states = states
        else:
            self.states = StageStateStore(workflow, states)
        self.reconciler: ExportJobReconciler | None = None
        self.states.add_listener(self._on_states_changed)
        self._sync_document()

    @classmethod
    def create(
        cls,
        workflow: Workflow,
        title: str | None = None,
        user_id: str = "local",
        document_id: str | None = None,
    ) -> WizardInstance:
        document = WizardDocument(
            id=document_id or str(uuid.uuid4()),
            title=title or f"New {workflow.name}",
            workflow_id=workflow.id,
            user_id=user_id,
        )
        return cls(document, workflow)

    @property
    def current_stage_id(self) -> str | None:
        """First stage, in workflow order, that is neither completed nor skipped."""
        for stage in self.workflow.stages:
            if not self.states.get(stage.id).is_done:
                return stage.id
        return None

    @property
    def is_complete(self) -> bool:
        final_id = self.workflow.config.final_output_stage_id
        if final_id:
            return self.states.get(final_id).status is StageStatus.COMPLETED
        return all(
            self.states.get(stage.id).status is StageStatus.COMPLETED
            for stage in self.workflow.stages
            if not stage.is_optional
        )

    def _on_states_changed(self, store: StageStateStore, changed: list[str]) -> None:
        self.document.updated_at = utcnow()
        self._sync_document()

    def _sync_document(self) -> None:
        title_stage = self.workflow.config.set_title_from_stage_output
        if title_stage:
            state = self.states.get(title_stage)
            if state.status is StageStatus.COMPLETED:
                title = title_from_output(state.output)
                if title and title != self.document.title:
                    logger.debug("Document %s retitled to %r", self.document.id, title)
                    self.document.title = title

        if self.is_complete:
            status = DocumentStatus.COMPLETED
        elif any(
            state.status is not StageStatus.IDLE or state.user_input is not None
            for state in self.states
        ):
            status = DocumentStatus.IN_PROGRESS
        else:
            status = DocumentStatus.DRAFT
        self.document.status = status

    def to_record(self) -> dict[str, Any]:
        """Plain-dict form for document stores."""
        return {"document": self.document.to_dict(), "stage_states": self.states.to_dict()}

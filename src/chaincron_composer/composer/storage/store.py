"""JSON-file backed workflow storage.

All documents live in one JSON list, keyed by workflow id. Writes are
last-writer-wins; there is no conflict resolution.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from chaincron_composer.composer.storage.document import WorkflowDocument

logger = logging.getLogger(__name__)


class WorkflowNotFound(LookupError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class WorkflowStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[WorkflowDocument]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Workflow state file is not valid JSON; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        if not isinstance(raw, list):
            logger.warning(
                "Workflow state file has unexpected shape; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        return [WorkflowDocument.model_validate(item) for item in raw]

    def _save_unlocked(self, docs: list[WorkflowDocument]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [doc.to_json() for doc in docs]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def list(self) -> list[WorkflowDocument]:
        with self._lock:
            return self._load_unlocked()

    def get(self, workflow_id: str) -> WorkflowDocument | None:
        with self._lock:
            for doc in self._load_unlocked():
                if doc.id == workflow_id:
                    return doc
            return None

    def load(self, workflow_id: str) -> WorkflowDocument:
        doc = self.get(workflow_id)
        if doc is None:
            raise WorkflowNotFound(workflow_id)
        return doc

    def save(self, doc: WorkflowDocument) -> WorkflowDocument:
        """Insert or replace `doc`, keeping the stored `createdAt` of an existing entry."""

        with self._lock:
            docs = self._load_unlocked()
            now = _utc_iso_now()
            for idx, existing in enumerate(docs):
                if existing.id != doc.id:
                    continue
                stored = doc.model_copy(
                    update={"created_at": existing.created_at or now, "updated_at": now}
                )
                docs[idx] = stored
                break
            else:
                stored = doc.model_copy(
                    update={"created_at": doc.created_at or now, "updated_at": now}
                )
                docs.append(stored)
            self._save_unlocked(docs)
            logger.info("Workflow saved", extra={"workflow_id": doc.id, "path": str(self.path)})
            return stored

    def delete(self, workflow_id: str) -> None:
        with self._lock:
            docs = self._load_unlocked()
            remaining = [doc for doc in docs if doc.id != workflow_id]
            if len(remaining) == len(docs):
                raise WorkflowNotFound(workflow_id)
            self._save_unlocked(remaining)
            logger.info("Workflow deleted", extra={"workflow_id": workflow_id})

"""Semantic index synchronisation and search.

Index writes are side effects of task CRUD and are strictly best-effort: every
failure is logged and swallowed so the store operation that triggered it is
unaffected.
"""

import logging
from concurrent.futures import Executor, Future

from productivity_agent.db.models import Task

logger = logging.getLogger(__name__)


class SemanticIndexer:
    def __init__(self, ai=None, index=None, executor: Executor | None = None):
        self.ai = ai
        self.index = index
        self.executor = executor

    @property
    def enabled(self) -> bool:
        return self.ai is not None and self.index is not None

    def index_task(self, task: Task) -> Future | None:
        """Embed the task's title and description and upsert it."""
        if not self.enabled:
            return None
        return self._submit(self._index_task, task)

    def retract_task(self, task_id: str) -> Future | None:
        """Remove a task's vector."""
        if not self.enabled:
            return None
        return self._submit(self._retract_task, task_id)

    def search(self, user_id: str, query: str, top_k: int = 10) -> list[dict]:
        """Find the user's indexed items closest to ``query``. Errors propagate."""
        if not self.enabled:
            return []
        vector = self.ai.embed(query)
        result = self.index.query(vector, top_k=top_k, filter={"userId": {"$eq": user_id}})
        return result.get("matches", [])

    def _submit(self, fn, arg) -> Future | None:
        if self.executor is None:
            fn(arg)
            return None
        return self.executor.submit(fn, arg)

    def _index_task(self, task: Task):
        try:
            text = f"{task.title} {task.description or ''}".strip()
            vector = self.ai.embed(text)
            self.index.upsert([
                {
                    "id": task.id,
                    "values": vector,
                    "metadata": {
                        "title": task.title,
                        "description": task.description,
                        "priority": task.priority,
                        "userId": task.user_id,
                        "type": "task",
                    },
                }
            ])
        except Exception:
            logger.exception("Error adding task %s to vector index", task.id)

    def _retract_task(self, task_id: str):
        try:
            self.index.delete_by_ids([task_id])
        except Exception:
            logger.exception("Error removing task %s from vector index", task_id)

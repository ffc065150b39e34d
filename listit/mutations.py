"""Optimistic updates against a local mirror of backend rows.

The local change is applied before the backend answers and reverted when
the backend reports a failure. Callers get a ``MutationResult`` either way.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from .backend import BackendError
from .utils import now_utc, to_iso

logger = logging.getLogger(__name__)

IN_PROGRESS = 'Update already in progress'


@dataclass
class MutationResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None


async def optimistic(apply: Callable[[], None], revert: Callable[[], None],
                     remote: Callable[[], Awaitable[Any]]) -> MutationResult:
    apply()
    try:
        value = await remote()
    except BackendError as e:
        revert()
        logger.warning('optimistic update reverted: %s', e.message)
        return MutationResult(False, error=e.message)
    return MutationResult(True, value=value)


class Board:
    """Rows of one table as shown on a page, keyed by id."""

    table = ''

    def __init__(self, db, rows: Iterable[dict]):
        self.db = db
        self.rows = {r['id']: dict(r) for r in rows}
        self._updating: set = set()

    def __contains__(self, row_id):
        return row_id in self.rows

    def get(self, row_id) -> Optional[dict]:
        return self.rows.get(row_id)

    def is_updating(self, row_id) -> bool:
        return row_id in self._updating

    async def _mutate(self, row_id, changes: dict) -> MutationResult:
        row = self.rows.get(row_id)
        if row is None:
            return MutationResult(False, error=f'{self.table} {row_id} not found')
        if row_id in self._updating:
            return MutationResult(False, error=IN_PROGRESS)
        before = {k: row.get(k) for k in changes}

        async def remote():
            res = await self.db.table(self.table).update(changes).eq('id', row_id).execute()
            return res.first

        self._updating.add(row_id)
        try:
            result = await optimistic(lambda: row.update(changes), lambda: row.update(before), remote)
        finally:
            self._updating.discard(row_id)
        if result.ok and result.value:
            row.update(result.value)
        return result


class TaskBoard(Board):
    table = 'task'

    async def toggle_completion(self, task_id) -> MutationResult:
        row = self.rows.get(task_id)
        if row is None:
            return MutationResult(False, error=f'task {task_id} not found')
        completed = not row.get('is_completed')
        return await self._mutate(task_id, {
            'is_completed': completed,
            'date_completed': to_iso(now_utc()) if completed else None,
        })

    async def toggle_priority(self, task_id) -> MutationResult:
        row = self.rows.get(task_id)
        if row is None:
            return MutationResult(False, error=f'task {task_id} not found')
        return await self._mutate(task_id, {'is_pinned': not row.get('is_pinned')})

    async def move_to_collection(self, task_id, collection_id) -> MutationResult:
        return await self._mutate(task_id, {'collection_id': collection_id})

    async def soft_delete(self, task_id) -> MutationResult:
        result = await self._mutate(task_id, {'is_deleted': True})
        if result.ok:
            self.rows.pop(task_id, None)
        return result


class NoteBoard(Board):
    table = 'note'

    async def toggle_pin(self, note_id) -> MutationResult:
        row = self.rows.get(note_id)
        if row is None:
            return MutationResult(False, error=f'note {note_id} not found')
        return await self._mutate(note_id, {'is_pinned': not row.get('is_pinned')})


class ListBoard(Board):
    table = 'list'

    async def toggle_pin(self, list_id) -> MutationResult:
        row = self.rows.get(list_id)
        if row is None:
            return MutationResult(False, error=f'list {list_id} not found')
        return await self._mutate(list_id, {'is_pinned': not row.get('is_pinned')})

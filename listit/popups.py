"""Create/edit forms for lists, collections, notes and tasks.

Each popup object validates its input, performs its backend write and hands
the persisted row to ``on_submit`` before reporting ``closed``. A backend
error is kept in ``error`` and the popup stays open so the caller can
resubmit.
"""
import inspect
import logging
from typing import Callable, Iterable, Optional

from .backend import BackendError
from .utils import DEFAULT_COLOR, normalize_color, parse_timestamp, to_iso

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION_NAME = 'General'
DEFAULT_LIST_ICON = 'checklist'


class FormError(ValueError):
    pass


def escape_like(value: str) -> str:
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def find_duplicate(rows: Iterable[dict], field: str, name: str, exclude_id=None) -> Optional[dict]:
    """Case-insensitive name match, ignoring the row being edited."""
    wanted = name.strip().lower()
    for row in rows:
        if exclude_id is not None and row.get('id') == exclude_id:
            continue
        if (row.get(field) or '').lower() == wanted:
            return row
    return None


def default_collection_id(collections: Iterable[dict]) -> Optional[int]:
    for c in collections:
        if c.get('is_default'):
            return c['id']
    return None


def parse_due_date(value) -> Optional[str]:
    if value is None or value == '':
        return None
    dt = parse_timestamp(value)
    if dt is None:
        raise FormError('Invalid due date')
    return to_iso(dt)


class Popup:
    def __init__(self, db, user_id: str, on_submit: Optional[Callable] = None):
        self.db = db
        self.user_id = user_id
        self.on_submit = on_submit
        self.is_loading = False
        self.error: Optional[str] = None
        self.success_message: Optional[str] = None
        self.closed = False

    async def _perform(self, **fields) -> dict:
        raise NotImplementedError

    async def submit(self, **fields) -> Optional[dict]:
        """Validate and persist; returns the saved row or None on failure."""
        if self.is_loading:
            return None
        if not self.user_id:
            self.error = 'You must be logged in'
            return None
        self.is_loading = True
        self.error = None
        self.success_message = None
        try:
            payload = await self._perform(**fields)
        except FormError as e:
            self.error = str(e)
            return None
        except BackendError as e:
            logger.error('%s failed: %s', type(self).__name__, e.message)
            self.error = e.message
            return None
        finally:
            self.is_loading = False
        if self.on_submit is not None:
            res = self.on_submit(payload)
            if inspect.isawaitable(res):
                await res
        self.closed = True
        return payload

    async def _names(self, table: str, field: str, **scope) -> list[dict]:
        q = self.db.table(table).select(f'id, {field}').eq('user_id', self.user_id)
        for column, value in scope.items():
            q = q.eq(column, value)
        try:
            res = await q.execute()
        except BackendError as e:
            # the database double-check and constraints still apply
            logger.error('could not fetch existing %s names: %s', table, e.message)
            return []
        return res.data


class ListPopup(Popup):
    async def _perform(self, list_name: str = '', bg_color_hex: str = DEFAULT_COLOR) -> dict:
        name = (list_name or '').strip()
        if not name:
            raise FormError('List name is required')
        if find_duplicate(await self._names('list', 'list_name'), 'list_name', name):
            raise FormError('A list with this name already exists. Please choose a different name.')
        color = normalize_color(bg_color_hex)
        res = await self.db.table('list').insert({
            'list_name': name,
            'bg_color_hex': color,
            'is_default': False,
            'is_pinned': False,
            'user_id': self.user_id,
            'list_icon': DEFAULT_LIST_ICON,
        }).execute()
        created = res.first
        try:
            await self.db.table('collection').insert({
                'collection_name': DEFAULT_COLLECTION_NAME,
                'bg_color_hex': color,
                'is_default': True,
                'list_id': created['id'],
                'user_id': self.user_id,
            }).execute()
        except BackendError as e:
            # the list stays; it just has no default collection yet
            logger.error('default collection for list %s not created: %s', created['id'], e.message)
            self.success_message = 'List created successfully!'
        else:
            self.success_message = 'List and collection created successfully!'
        return created


class EditListPopup(Popup):
    def __init__(self, db, user_id: str, current_list: dict, on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.current = current_list

    async def _perform(self, list_name: str = '', bg_color_hex: str = DEFAULT_COLOR) -> dict:
        if not self.current:
            raise FormError('No list selected for editing')
        name = (list_name or '').strip()
        if not name:
            raise FormError('List name is required')
        list_id = self.current['id']
        dup = find_duplicate(await self._names('list', 'list_name'), 'list_name', name, exclude_id=list_id)
        if dup is None:
            res = await (self.db.table('list').select('id, list_name')
                         .eq('user_id', self.user_id).neq('id', list_id)
                         .ilike('list_name', escape_like(name)).execute())
            dup = res.first
        if dup is not None:
            raise FormError(f'A list named "{dup["list_name"]}" already exists (case-insensitive)')
        color = normalize_color(bg_color_hex)
        res = await (self.db.table('list').update({'list_name': name, 'bg_color_hex': color})
                     .eq('id', list_id).eq('user_id', self.user_id).execute())
        if not res.data:
            raise FormError('List not found')
        try:
            await (self.db.table('collection').update({'bg_color_hex': color})
                   .eq('list_id', list_id).eq('user_id', self.user_id)
                   .ilike('collection_name', DEFAULT_COLLECTION_NAME.lower()).execute())
        except BackendError as e:
            logger.error('could not recolor collections of list %s: %s', list_id, e.message)
        self.success_message = 'List updated successfully!'
        return res.first


class CollectionPopup(Popup):
    def __init__(self, db, user_id: str, list_id, on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.list_id = list_id

    async def _perform(self, collection_name: str = '', bg_color_hex: Optional[str] = None,
                       is_default: bool = False) -> dict:
        name = (collection_name or '').strip()
        if not name:
            raise FormError('Collection name is required')
        existing = await self._names('collection', 'collection_name', list_id=self.list_id)
        if find_duplicate(existing, 'collection_name', name):
            raise FormError('A collection with this name already exists in this list')
        if is_default:
            # one default per list
            await (self.db.table('collection').update({'is_default': False})
                   .eq('list_id', self.list_id).eq('user_id', self.user_id)
                   .eq('is_default', True).execute())
        res = await self.db.table('collection').insert({
            'collection_name': name,
            'bg_color_hex': normalize_color(bg_color_hex),
            'is_default': bool(is_default),
            'list_id': self.list_id,
            'user_id': self.user_id,
        }).execute()
        return res.first


class EditCollectionPopup(Popup):
    def __init__(self, db, user_id: str, current_collection: dict, on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.current = current_collection

    async def _perform(self, collection_name: str = '', bg_color_hex: Optional[str] = None) -> dict:
        if not self.current:
            raise FormError('No collection selected for editing')
        name = (collection_name or '').strip()
        if not name:
            raise FormError('Collection name is required')
        cid = self.current['id']
        list_id = self.current.get('list_id')
        existing = await self._names('collection', 'collection_name', list_id=list_id)
        dup = find_duplicate(existing, 'collection_name', name, exclude_id=cid)
        if dup is None:
            res = await (self.db.table('collection').select('id, collection_name')
                         .eq('user_id', self.user_id).eq('list_id', list_id).neq('id', cid)
                         .ilike('collection_name', escape_like(name)).execute())
            dup = res.first
        if dup is not None:
            raise FormError(f'A collection named "{dup["collection_name"]}" already exists (case-insensitive)')
        res = await (self.db.table('collection')
                     .update({'collection_name': name, 'bg_color_hex': normalize_color(bg_color_hex)})
                     .eq('id', cid).eq('user_id', self.user_id).execute())
        if not res.data:
            raise FormError('Collection not found')
        self.success_message = 'Collection updated successfully!'
        return res.first


class DeleteCollectionsPopup(Popup):
    """Delete several collections with their tasks and notes.

    Default collections are never deleted. The steps are not atomic: a
    failure part-way leaves earlier deletions in place.
    """

    def __init__(self, db, user_id: str, collections: Iterable[dict], on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.collections = list(collections)

    @property
    def selectable_ids(self) -> list:
        return [c['id'] for c in self.collections if not c.get('is_default')]

    async def _perform(self, collection_ids: Iterable = ()) -> dict:
        allowed = set(self.selectable_ids)
        ids = [cid for cid in collection_ids if cid in allowed]
        if not ids:
            raise FormError('Select at least one collection to delete')
        await self.db.table('task').delete().in_('collection_id', ids).eq('user_id', self.user_id).execute()
        await self.db.table('note').delete().in_('collection_id', ids).eq('user_id', self.user_id).execute()
        await self.db.table('collection').delete().in_('id', ids).eq('user_id', self.user_id).execute()
        return {'deleted': ids}


class NotePopup(Popup):
    def __init__(self, db, user_id: str, collections: Iterable[dict], on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.collections = list(collections)

    async def _perform(self, title: str = '', description: str = '', collection_id=None,
                       bg_color_hex: Optional[str] = None, is_pinned: bool = False) -> dict:
        title = (title or '').strip()
        if not title:
            raise FormError('Note title is required')
        collection_id = collection_id or default_collection_id(self.collections)
        if collection_id is None:
            raise FormError('No collection available for this note')
        res = await self.db.table('note').insert({
            'title': title,
            'description': (description or '').strip(),
            'collection_id': collection_id,
            'bg_color_hex': normalize_color(bg_color_hex),
            'is_pinned': bool(is_pinned),
            'is_deleted': False,
            'user_id': self.user_id,
        }).execute()
        return res.first


class EditNotePopup(Popup):
    def __init__(self, db, user_id: str, current_note: dict, on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.current = current_note

    async def _perform(self, title: str = '', description: str = '', bg_color_hex: Optional[str] = None,
                       collection_id=None) -> dict:
        if not self.current:
            raise FormError('No note selected for editing')
        title = (title or '').strip()
        if not title:
            raise FormError('Note title is required')
        changes = {
            'title': title,
            'description': (description or '').strip(),
            'bg_color_hex': normalize_color(bg_color_hex or self.current.get('bg_color_hex')),
        }
        if collection_id:
            changes['collection_id'] = collection_id
        res = await (self.db.table('note').update(changes)
                     .eq('id', self.current['id']).eq('user_id', self.user_id).execute())
        if not res.data:
            raise FormError('Note not found')
        return res.first


class TaskPopup(Popup):
    def __init__(self, db, user_id: str, list_id, collections: Iterable[dict], on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.list_id = list_id
        self.collections = list(collections)

    async def _perform(self, text: str = '', description: str = '', due_date=None,
                       is_pinned: bool = False, collection_id=None) -> dict:
        text = (text or '').strip()
        if not text:
            raise FormError('Task text is required')
        collection_id = collection_id or default_collection_id(self.collections)
        if collection_id is None:
            raise FormError('No collection available for this task')
        res = await self.db.table('task').insert({
            'text': text,
            'description': (description or '').strip() or None,
            'due_date': parse_due_date(due_date),
            'is_pinned': bool(is_pinned),
            'is_completed': False,
            'is_deleted': False,
            'collection_id': collection_id,
            'list_id': self.list_id,
            'user_id': self.user_id,
        }).execute()
        return res.first


class EditTaskPopup(Popup):
    def __init__(self, db, user_id: str, current_task: dict, on_submit: Optional[Callable] = None):
        super().__init__(db, user_id, on_submit)
        self.current = current_task

    async def _perform(self, text: str = '', description: str = '', due_date=None,
                       is_pinned: bool = False, collection_id=None) -> dict:
        if not self.current:
            raise FormError('No task selected for editing')
        text = (text or '').strip()
        if not text:
            raise FormError('Task text is required')
        changes = {
            'text': text,
            'description': (description or '').strip() or None,
            'due_date': parse_due_date(due_date),
            'is_pinned': bool(is_pinned),
        }
        if collection_id:
            changes['collection_id'] = collection_id
        res = await (self.db.table('task').update(changes)
                     .eq('id', self.current['id']).eq('user_id', self.user_id).execute())
        if not res.data:
            raise FormError('Task not found')
        return res.first


async def delete_list(db, user_id: str, list_id) -> None:
    """Delete a list and everything under it: tasks, notes, collections, list."""
    res = await db.table('collection').select('id').eq('list_id', list_id).eq('user_id', user_id).execute()
    collection_ids = [c['id'] for c in res.data]
    await db.table('task').delete().eq('list_id', list_id).eq('user_id', user_id).execute()
    if collection_ids:
        await db.table('task').delete().in_('collection_id', collection_ids).eq('user_id', user_id).execute()
        await db.table('note').delete().in_('collection_id', collection_ids).eq('user_id', user_id).execute()
        await db.table('collection').delete().in_('id', collection_ids).eq('user_id', user_id).execute()
    await db.table('list').delete().eq('id', list_id).eq('user_id', user_id).execute()

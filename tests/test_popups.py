import pytest

from listit.backend import BackendError, LocalBackend
from listit.popups import (
    CollectionPopup,
    DeleteCollectionsPopup,
    EditCollectionPopup,
    EditListPopup,
    EditNotePopup,
    EditTaskPopup,
    ListPopup,
    NotePopup,
    TaskPopup,
    delete_list,
    escape_like,
    find_duplicate,
)

UID = 'user-1'


class NoCollectionInserts(LocalBackend):
    async def run_query(self, q):
        if q.table == 'collection' and q.action == 'insert':
            raise BackendError('new row violates row-level security policy', status=403, code='42501')
        return await super().run_query(q)


async def _make_list(db, name='Groceries', color='#007AFF'):
    popup = ListPopup(db, UID)
    row = await popup.submit(list_name=name, bg_color_hex=color)
    assert row is not None, popup.error
    return row


async def _collections(db, list_id):
    return (await db.table('collection').select('*').eq('list_id', list_id).order('id').execute()).data


def test_find_duplicate_and_escape():
    rows = [{'id': 1, 'list_name': 'Groceries'}, {'id': 2, 'list_name': 'Work'}]
    assert find_duplicate(rows, 'list_name', '  groceries ')['id'] == 1
    assert find_duplicate(rows, 'list_name', 'groceries', exclude_id=1) is None
    assert escape_like('50%_off\\') == '50\\%\\_off\\\\'


@pytest.mark.asyncio
async def test_new_list_gets_general_collection(backend):
    submitted = []
    popup = ListPopup(backend, UID, on_submit=submitted.append)
    row = await popup.submit(list_name='  Groceries ', bg_color_hex='#007aff')

    assert row['list_name'] == 'Groceries'
    assert row['bg_color_hex'] == '#007AFF'
    assert row['list_icon'] == 'checklist'
    assert popup.closed
    assert submitted == [row]
    assert popup.success_message == 'List and collection created successfully!'
    collections = await _collections(backend, row['id'])
    assert [(c['collection_name'], c['is_default'], c['bg_color_hex']) for c in collections] == [
        ('General', True, '#007AFF')]


@pytest.mark.asyncio
async def test_list_validation(backend):
    await _make_list(backend)
    popup = ListPopup(backend, UID)
    assert await popup.submit(list_name='   ') is None
    assert popup.error == 'List name is required'
    assert not popup.closed

    assert await popup.submit(list_name='GROCERIES') is None
    assert popup.error == 'A list with this name already exists. Please choose a different name.'

    anonymous = ListPopup(backend, None)
    assert await anonymous.submit(list_name='Anything') is None
    assert anonymous.error == 'You must be logged in'

    # names are unique per user only
    other = ListPopup(backend, 'user-2')
    assert await other.submit(list_name='Groceries') is not None


@pytest.mark.asyncio
async def test_list_kept_when_default_collection_fails(prepare_db):
    db = NoCollectionInserts()
    popup = ListPopup(db, UID)
    row = await popup.submit(list_name='Solo')
    assert row is not None
    assert popup.success_message == 'List created successfully!'
    assert await _collections(db, row['id']) == []


@pytest.mark.asyncio
async def test_async_on_submit_is_awaited(backend):
    seen = []

    async def refresh(row):
        seen.append(row['list_name'])

    await ListPopup(backend, UID, on_submit=refresh).submit(list_name='Async')
    assert seen == ['Async']


@pytest.mark.asyncio
async def test_edit_list_checks_duplicates_and_recolors_general(backend):
    groceries = await _make_list(backend)
    work = await _make_list(backend, 'Work')

    popup = EditListPopup(backend, UID, work)
    assert await popup.submit(list_name='groceries') is None
    assert popup.error == 'A list named "Groceries" already exists (case-insensitive)'

    row = await popup.submit(list_name='Work Stuff', bg_color_hex='#34C759')
    assert row['list_name'] == 'Work Stuff'
    assert popup.success_message == 'List updated successfully!'
    general = (await _collections(backend, work['id']))[0]
    assert general['bg_color_hex'] == '#34C759'
    untouched = (await _collections(backend, groceries['id']))[0]
    assert untouched['bg_color_hex'] == '#007AFF'

    # renaming to its own name (different case) is allowed
    assert await EditListPopup(backend, UID, row).submit(list_name='WORK STUFF') is not None

    missing = EditListPopup(backend, UID, None)
    assert await missing.submit(list_name='x') is None
    assert missing.error == 'No list selected for editing'

    gone = EditListPopup(backend, UID, {'id': 999})
    assert await gone.submit(list_name='Ghost') is None
    assert gone.error == 'List not found'


@pytest.mark.asyncio
async def test_collection_popup(backend):
    lst = await _make_list(backend)
    popup = CollectionPopup(backend, UID, lst['id'])
    assert await popup.submit(collection_name='') is None
    assert popup.error == 'Collection name is required'
    assert await popup.submit(collection_name='general') is None
    assert popup.error == 'A collection with this name already exists in this list'

    row = await popup.submit(collection_name='Dairy', bg_color_hex='#FFD60A', is_default=True)
    assert row['is_default'] is True
    defaults = [c for c in await _collections(backend, lst['id']) if c['is_default']]
    assert [c['collection_name'] for c in defaults] == ['Dairy']

    # the same name is fine in another list
    other = await _make_list(backend, 'Work')
    assert await CollectionPopup(backend, UID, other['id']).submit(collection_name='Dairy') is not None


@pytest.mark.asyncio
async def test_edit_collection(backend):
    lst = await _make_list(backend)
    dairy = await CollectionPopup(backend, UID, lst['id']).submit(collection_name='Dairy')
    popup = EditCollectionPopup(backend, UID, dairy)
    assert await popup.submit(collection_name='GENERAL') is None
    assert popup.error == 'A collection named "General" already exists (case-insensitive)'
    row = await popup.submit(collection_name='Milk & Cheese', bg_color_hex='#AF52DE')
    assert row['collection_name'] == 'Milk & Cheese'
    assert row['bg_color_hex'] == '#AF52DE'


@pytest.mark.asyncio
async def test_delete_collections_cascades_and_keeps_default(backend):
    lst = await _make_list(backend)
    general = (await _collections(backend, lst['id']))[0]
    dairy = await CollectionPopup(backend, UID, lst['id']).submit(collection_name='Dairy')
    bakery = await CollectionPopup(backend, UID, lst['id']).submit(collection_name='Bakery')
    collections = await _collections(backend, lst['id'])
    await TaskPopup(backend, UID, lst['id'], collections).submit(text='Milk', collection_id=dairy['id'])
    await NotePopup(backend, UID, collections).submit(title='Brands', collection_id=dairy['id'])
    await TaskPopup(backend, UID, lst['id'], collections).submit(text='Bread', collection_id=bakery['id'])

    popup = DeleteCollectionsPopup(backend, UID, collections)
    assert general['id'] not in popup.selectable_ids
    assert await popup.submit(collection_ids=[general['id']]) is None
    assert popup.error == 'Select at least one collection to delete'

    result = await popup.submit(collection_ids=[dairy['id'], general['id']])
    assert result == {'deleted': [dairy['id']]}
    names = [c['collection_name'] for c in await _collections(backend, lst['id'])]
    assert names == ['General', 'Bakery']
    tasks = (await backend.table('task').select('text').eq('user_id', UID).execute()).data
    assert [t['text'] for t in tasks] == ['Bread']
    assert (await backend.table('note').select('*').execute()).data == []


@pytest.mark.asyncio
async def test_note_popups(backend):
    lst = await _make_list(backend)
    collections = await _collections(backend, lst['id'])
    popup = NotePopup(backend, UID, collections)
    assert await popup.submit(title=' ') is None
    assert popup.error == 'Note title is required'
    note = await popup.submit(title='Recipe', description='  eggs  ', bg_color_hex='#FF9500')
    assert note['collection_id'] == collections[0]['id']
    assert note['description'] == 'eggs'
    assert note['is_pinned'] is False

    empty = NotePopup(backend, UID, [])
    assert await empty.submit(title='Orphan') is None
    assert empty.error == 'No collection available for this note'

    edited = await EditNotePopup(backend, UID, note).submit(title='Recipes', description='')
    assert edited['title'] == 'Recipes'
    # keeps its color when none is submitted
    assert edited['bg_color_hex'] == '#FF9500'


@pytest.mark.asyncio
async def test_task_popups(backend):
    lst = await _make_list(backend)
    collections = await _collections(backend, lst['id'])
    popup = TaskPopup(backend, UID, lst['id'], collections)
    assert await popup.submit(text='') is None
    assert popup.error == 'Task text is required'
    assert await popup.submit(text='Bad date', due_date='someday') is None
    assert popup.error == 'Invalid due date'

    task = await popup.submit(text='Buy milk', due_date='2024-06-01T09:00:00+02:00', is_pinned=True)
    assert task['due_date'] == '2024-06-01T07:00:00+00:00'
    assert task['is_pinned'] is True
    assert task['list_id'] == lst['id']
    assert task['collection_id'] == collections[0]['id']
    assert task['description'] is None

    edit = EditTaskPopup(backend, UID, task)
    row = await edit.submit(text='Buy oat milk', description='2 cartons', due_date='')
    assert row['text'] == 'Buy oat milk'
    assert row['due_date'] is None
    assert row['is_pinned'] is False

    stranger = EditTaskPopup(backend, 'user-2', task)
    assert await stranger.submit(text='Hijack') is None
    assert stranger.error == 'Task not found'


@pytest.mark.asyncio
async def test_popup_keeps_backend_error(prepare_db):
    db = NoCollectionInserts()
    lst = await _make_list(db)
    popup = CollectionPopup(db, UID, lst['id'])
    assert await popup.submit(collection_name='Dairy') is None
    assert 'row-level security' in popup.error
    assert not popup.closed
    assert not popup.is_loading


@pytest.mark.asyncio
async def test_delete_list_cascades(backend):
    keep = await _make_list(backend, 'Keep')
    lst = await _make_list(backend)
    collections = await _collections(backend, lst['id'])
    await TaskPopup(backend, UID, lst['id'], collections).submit(text='Milk')
    await NotePopup(backend, UID, collections).submit(title='Brands')

    await delete_list(backend, UID, lst['id'])
    lists = (await backend.table('list').select('list_name').execute()).data
    assert [r['list_name'] for r in lists] == ['Keep']
    assert (await backend.table('task').select('*').execute()).data == []
    assert (await backend.table('note').select('*').execute()).data == []
    remaining = (await backend.table('collection').select('list_id').execute()).data
    assert remaining == [{'list_id': keep['id']}]

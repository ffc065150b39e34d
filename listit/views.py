"""Read-side queries behind the dashboard, list and filtered task pages."""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from .backend import BackendError
from .utils import parse_timestamp, to_iso

logger = logging.getLogger(__name__)

VIEW_TITLES = {
    'today': 'Today',
    'tomorrow': 'Tomorrow',
    'overdue': 'Overdue',
    'priority': 'Priority',
    'completed': 'Completed',
    'notcomplete': 'Not Completed',
}

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _sort_key(field: str):
    def key(task):
        dt = parse_timestamp(task.get(field))
        return dt or _FAR_FUTURE
    return key


async def _lookups(db, user_id: str) -> tuple[dict, dict]:
    lists = await db.table('list').select('id, list_name, bg_color_hex').eq('user_id', user_id).execute()
    collections = await (db.table('collection').select('id, collection_name, list_id, is_default')
                         .eq('user_id', user_id).execute())
    return ({r['id']: r for r in lists.data}, {r['id']: r for r in collections.data})


def _enrich(tasks: list, lists: dict, collections: dict) -> list:
    out = []
    for t in tasks:
        c = collections.get(t.get('collection_id'))
        list_id = t.get('list_id') or (c or {}).get('list_id')
        if list_id is not None and list_id not in lists:
            # not one of the user's lists
            continue
        row = dict(t)
        row['collection_name'] = c['collection_name'] if c else 'Uncategorized'
        row['list_name'] = lists[list_id]['list_name'] if list_id in lists else None
        out.append(row)
    return out


async def filtered_tasks(db, user_id: str, view: str, today: Optional[date] = None) -> list[dict]:
    if view not in VIEW_TITLES:
        raise ValueError(f'unknown view {view}')
    today = today or datetime.now(timezone.utc).date()
    start = day_start(today)
    q = db.table('task').select('*').eq('user_id', user_id).eq('is_deleted', False)
    if view == 'today':
        q = q.eq('is_completed', False).gte('due_date', to_iso(start)).lt('due_date', to_iso(start + timedelta(days=1)))
    elif view == 'tomorrow':
        tomorrow = start + timedelta(days=1)
        q = q.eq('is_completed', False).gte('due_date', to_iso(tomorrow)).lt('due_date', to_iso(tomorrow + timedelta(days=1)))
    elif view == 'overdue':
        q = q.eq('is_completed', False).lt('due_date', to_iso(start))
    elif view == 'priority':
        q = q.eq('is_pinned', True).eq('is_completed', False)
    elif view == 'completed':
        q = q.eq('is_completed', True).order('date_completed', desc=True)
    else:
        q = q.eq('is_completed', False)
    res = await q.execute()
    tasks = res.data

    if view == 'notcomplete':
        # no due date, or due today or later
        tasks = [t for t in tasks if not t.get('due_date') or parse_timestamp(t['due_date']) >= start]
    if view == 'priority':
        tasks.sort(key=lambda t: (_sort_key('due_date')(t), _sort_key('created_at')(t)))
    elif view != 'completed':
        tasks.sort(key=_sort_key('due_date'))

    lists, collections = await _lookups(db, user_id)
    return _enrich(tasks, lists, collections)


async def dashboard(db, user_id: str, today: Optional[date] = None) -> dict:
    lists = await db.table('list').select('*').eq('user_id', user_id).order('created_at').execute()
    ordered = sorted(lists.data, key=lambda r: not r.get('is_pinned'))
    counts = {}
    for view in VIEW_TITLES:
        try:
            counts[view] = len(await filtered_tasks(db, user_id, view, today))
        except BackendError as e:
            logger.error('could not count %s tasks: %s', view, e.message)
            counts[view] = 0
    return {'lists': ordered, 'counts': counts}


async def list_detail(db, user_id: str, list_id) -> Optional[dict]:
    res = await db.table('list').select('*').eq('id', list_id).eq('user_id', user_id).execute()
    lst = res.first
    if lst is None:
        return None
    collections = (await db.table('collection').select('*').eq('list_id', lst['id'])
                   .eq('user_id', user_id).order('created_at').execute()).data
    # General first
    collections.sort(key=lambda c: not c.get('is_default'))
    ids = [c['id'] for c in collections]
    tasks, notes = [], []
    if ids:
        tasks = (await db.table('task').select('*').in_('collection_id', ids).eq('is_deleted', False)
                 .order('created_at').execute()).data
        notes = (await db.table('note').select('*').in_('collection_id', ids).eq('is_deleted', False)
                 .order('created_at').execute()).data
    for c in collections:
        c['tasks'] = [t for t in tasks if t.get('collection_id') == c['id']]
        c['notes'] = sorted((n for n in notes if n.get('collection_id') == c['id']),
                            key=lambda n: not n.get('is_pinned'))
    return {'list': lst, 'collections': collections}

import logging

from .backend import BackendError, User

logger = logging.getLogger(__name__)

# child tables first
ACCOUNT_TABLES = (
    ('task', 'user_id'),
    ('note', 'user_id'),
    ('collection', 'user_id'),
    ('list', 'user_id'),
    ('users', 'id'),
)


async def ensure_profile(db, user: User) -> None:
    """Insert the public ``users`` row for ``user`` when it does not exist yet.

    Failures are logged; sign-in proceeds without the profile row.
    """
    try:
        await db.table('users').select('id').eq('id', user.id).single().execute()
        return
    except BackendError as e:
        if e.code != 'PGRST116':
            logger.error('error checking for existing user %s: %s', user.id, e.message)
            return
    try:
        await db.table('users').insert({
            'id': user.id,
            'email': user.email or '',
            'full_name': user.full_name or '',
        }).execute()
    except BackendError as e:
        logger.error('error inserting user data for %s: %s', user.id, e.message)


async def delete_account(admin, user_id: str) -> tuple[int, dict]:
    """Remove the auth user, then every row the user owns.

    ``admin`` must be a service-role backend. Per-table failures are
    collected and reported but do not stop the remaining deletions; nothing
    is rolled back.
    """
    try:
        await admin.auth.admin.delete_user(user_id)
    except BackendError as e:
        logger.error('auth deletion failed for %s: %s', user_id, e.message)
        return 500, {
            'success': False,
            'error': 'Authentication deletion failed',
            'details': e.message,
        }

    errors = []
    for table, column in ACCOUNT_TABLES:
        try:
            await admin.table(table).delete().eq(column, user_id).execute()
        except BackendError as e:
            errors.append({'table': table, 'message': e.message})
    if errors:
        logger.error('database deletion errors for %s: %s', user_id, errors)

    body = {'success': True, 'message': 'Account deleted successfully'}
    if errors:
        body['errors'] = errors
    return 200, body

'''
User profile storage. A profile is created by the app's registration flow (not handled here) and
is looked up by the identity the authentication provider assigned to the user (`auth_id`). The
store manager only ever writes the subscription plan and room limit of an existing profile.

Two stores are provided:

  SQLiteProfileStore
    Profiles in a local SQLite DB, the `users` table is created on setup.

  FirebaseProfileStore
    Profiles in a Firebase Realtime Database under `/users/<key>` via its REST API, each record
    carrying `authId`, `subscriptionPlan` and `roomLimit` children.
'''

import collections.abc
import dataclasses
import json
import logging
import sqlite3
import traceback
import typing
import urllib.parse
import urllib3

import base
from base import ErrorSink, JSONObject, handle_not_implemented, safe_dump_arbitrary_value_or_type

log = logging.Logger('PROFILES')

REQUEST_TIMEOUT_S: int = 10

class ProfileStore:
    '''
    Operations the store manager consumes from the profile store. Implementations report failures
    by appending to the error sink, they should not raise.
    '''
    def find_by_identity(self, identity: str, err: ErrorSink) -> list[str]:
        '''Return the keys of every profile whose auth ID matches `identity`'''
        handle_not_implemented('find_by_identity', err)
        return []

    def update_fields(self, key: str, subscription_plan: str, room_limit: int, err: ErrorSink) -> bool:
        handle_not_implemented('update_fields', err)
        return False

UserRowIterator: typing.TypeAlias = tuple[str, # key
                                          str, # auth_id
                                          str, # subscription_plan
                                          int, # room_limit
                                         ]

@dataclasses.dataclass
class UserRow:
    found:             bool = False
    key:               str  = ''
    auth_id:           str  = ''
    subscription_plan: str  = 'none'
    room_limit:        int  = 0

@dataclasses.dataclass
class SetupDBResult:
    """
    Returned by setup_db() which opens the DB and maintains a connection to it via `sql_conn`.
    Caller must close `sql_conn` when they are done with it.

    Normally you would not return the DB connection as it's easy to accidentally leak it in this
    object however the tests use an in-memory shared-cache DB which is wiped as soon as the last
    connection to it closes, so the caller has to be the one to keep it alive.
    """
    path:     str                       = ''
    success:  bool                      = False
    sql_conn: sqlite3.Connection | None = None

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. This class should be used in a `with` context to
    ensure that the connection established to the database is closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn =
        pass
    """
    sql_conn: sqlite3.Connection
    def __init__(self, db_path: str, uri: bool = False):
        self.sql_conn = sqlite3.connect(db_path, uri=uri)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def setup_db(path: str, uri: bool, err: ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = sqlite3.connect(path, uri=uri)
    except Exception as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    sql_stmt: str = '''
        CREATE TABLE IF NOT EXISTS users (
            key               TEXT PRIMARY KEY NOT NULL,

            -- Identity assigned to the user by the authentication provider. Not declared UNIQUE
            -- as the registration flow owns this table, duplicates are detected and refused at
            -- update time instead.
            auth_id           TEXT NOT NULL,

            -- Product identifier of the plan the user is subscribed to, 'none' if they are not
            -- subscribed
            subscription_plan TEXT NOT NULL DEFAULT 'none',
            room_limit        INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS users_auth_id ON users (auth_id);
    '''

    try:
        _ = result.sql_conn.executescript(sql_stmt)
    except sqlite3.Error as e:
        err.msg_list.append(f'Failed to create tables in DB at {path}: {e}')
        result.sql_conn.close()
        result.sql_conn = None
        return result

    result.success = True
    return result

def _user_from_row_iterator(row: UserRowIterator) -> UserRow:
    result                   = UserRow()
    result.found             = True
    result.key               = row[0]
    result.auth_id           = row[1]
    result.subscription_plan = row[2]
    result.room_limit        = row[3]
    return result

def add_user(sql_conn: sqlite3.Connection, key: str, auth_id: str, subscription_plan: str = 'none', room_limit: int = 0):
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            INSERT INTO users (key, auth_id, subscription_plan, room_limit)
            VALUES            (?,   ?,       ?,                 ?)
        ''', (key, auth_id, subscription_plan, room_limit))

def get_user(sql_conn: sqlite3.Connection, key: str) -> UserRow:
    result: UserRow = UserRow()
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _   = tx.cursor.execute('SELECT key, auth_id, subscription_plan, room_limit FROM users WHERE key = ?', (key,))
        row = typing.cast(UserRowIterator | None, tx.cursor.fetchone())
        if row:
            result = _user_from_row_iterator(row)
    return result

def get_users_list(sql_conn: sqlite3.Connection) -> list[UserRow]:
    result: list[UserRow] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _    = tx.cursor.execute('SELECT key, auth_id, subscription_plan, room_limit FROM users ORDER BY key')
        rows = typing.cast(collections.abc.Iterator[UserRowIterator], tx.cursor)
        for row in rows:
            result.append(_user_from_row_iterator(row))
    return result

class SQLiteProfileStore(ProfileStore):
    '''
    Each operation opens its own connection as the store manager calls into the store from its
    control thread whereas the DB is typically set up from the main thread.
    '''
    db_path: str
    uri:     bool

    def __init__(self, db_path: str, uri: bool = False):
        self.db_path = db_path
        self.uri     = uri

    def find_by_identity(self, identity: str, err: ErrorSink) -> list[str]:
        result: list[str] = []
        try:
            with OpenDBAtPath(self.db_path, self.uri) as db:
                with base.SQLTransaction(db.sql_conn) as tx:
                    assert tx.cursor is not None
                    _    = tx.cursor.execute('SELECT key FROM users WHERE auth_id = ? ORDER BY key', (identity,))
                    rows = typing.cast(list[tuple[str]], tx.cursor.fetchall())
                    result = [row[0] for row in rows]
        except sqlite3.Error as e:
            err.msg_list.append(f'Failed to query users by auth ID from {self.db_path}: {e}')
        return result

    def update_fields(self, key: str, subscription_plan: str, room_limit: int, err: ErrorSink) -> bool:
        result = False
        try:
            with OpenDBAtPath(self.db_path, self.uri) as db:
                with base.SQLTransaction(db.sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
                    assert tx.cursor is not None
                    _ = tx.cursor.execute('''
                        UPDATE users
                        SET    subscription_plan = ?, room_limit = ?
                        WHERE  key = ?
                    ''', (subscription_plan, room_limit, key))
                    if tx.cursor.rowcount == 1:
                        result = True
                    else:
                        tx.cancel = True
                        err.msg_list.append(f'Updating user {key} touched {tx.cursor.rowcount} rows, expected 1')
        except sqlite3.Error as e:
            err.msg_list.append(f'Failed to update user {key} in {self.db_path}: {e}')
        return result

class FirebaseProfileStore(ProfileStore):
    '''
    Firebase Realtime Database over REST. The `users` node must have an `.indexOn: ["authId"]`
    rule for the query to be served by the database.

        https://firebase.google.com/docs/reference/rest/database
    '''
    database_url: str
    auth_token:   str
    http:         urllib3.PoolManager

    def __init__(self, database_url: str, auth_token: str = '', http: urllib3.PoolManager | None = None):
        self.database_url = database_url.rstrip('/')
        self.auth_token   = auth_token
        self.http         = http if http else urllib3.PoolManager(timeout=urllib3.Timeout(connect=REQUEST_TIMEOUT_S, read=REQUEST_TIMEOUT_S),
                                                                  retries=urllib3.Retry(total=2, backoff_factor=0.2))

    def _url(self, path: str, query: dict[str, str]) -> str:
        if len(self.auth_token):
            query = {**query, 'auth': self.auth_token}
        result = f'{self.database_url}/{path}.json'
        if len(query):
            result += '?' + urllib.parse.urlencode(query)
        return result

    def _request(self, method: str, path: str, query: dict[str, str], body: JSONObject | None, err: ErrorSink) -> typing.Any:
        result: typing.Any = None
        try:
            response = self.http.request(method  = method,
                                         url     = self._url(path, query),
                                         body    = json.dumps(body).encode('utf-8') if body is not None else None,
                                         headers = {'Content-Type': 'application/json'})
        except urllib3.exceptions.HTTPError as e:
            err.msg_list.append(f'Firebase {method} {path} failed: {e}')
            return result

        if response.status < 200 or response.status >= 300:
            err.msg_list.append(f'Firebase {method} {path} returned status {response.status}: {response.data[:200]!r}')
            return result

        try:
            result = json.loads(response.data)
        except ValueError as e:
            err.msg_list.append(f'Firebase {method} {path} returned invalid JSON: {e}')
        return result

    def find_by_identity(self, identity: str, err: ErrorSink) -> list[str]:
        result: list[str] = []

        # NOTE: Firebase expects the query values to be JSON encoded, e.g. orderBy="authId"
        response = self._request('GET', 'users', query={'orderBy': json.dumps('authId'), 'equalTo': json.dumps(identity)}, body=None, err=err)
        if err.has():
            return result

        if response is None:
            pass
        elif isinstance(response, dict):
            result = sorted(typing.cast(dict[str, typing.Any], response).keys())
        else:
            err.msg_list.append(f'Firebase users query returned an unexpected payload: {safe_dump_arbitrary_value_or_type(response)}')
        return result

    def update_fields(self, key: str, subscription_plan: str, room_limit: int, err: ErrorSink) -> bool:
        body: JSONObject = {'subscriptionPlan': subscription_plan, 'roomLimit': room_limit}
        _                = self._request('PATCH', f'users/{urllib.parse.quote(key, safe="")}', query={}, body=body, err=err)
        result           = not err.has()
        return result

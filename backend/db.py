"""
SQLite-backed data store.

Exposes the operations the rest of the backend relies on: filtered select,
single-row fetch, insert, conditional update, delete, and a row-change feed
that subscribers attach to per table. Writes run inside ``BEGIN IMMEDIATE``
transactions; change events are published after commit, in commit order.
"""
import logging
import sqlite3
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from .errors import BackendUnavailableError, ConflictError
from .models import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)

# Sentinel for "column IS NOT NULL" in where clauses and subscription filters
NOT_NULL = object()

SCHEMA: Sequence[str] = (
    (
        'CREATE TABLE IF NOT EXISTS accounts ('
        '  id TEXT PRIMARY KEY,'
        '  email TEXT UNIQUE NOT NULL,'
        '  password_hash BLOB,'
        "  role TEXT NOT NULL CHECK (role IN ('user', 'scrapper')),"
        '  created_at TEXT NOT NULL'
        ')'
    ),
    (
        'CREATE TABLE IF NOT EXISTS sessions ('
        '  token TEXT PRIMARY KEY,'
        '  account_id TEXT NOT NULL,'
        '  role TEXT NOT NULL,'
        '  created_at TEXT NOT NULL,'
        '  disposed_at TEXT,'
        '  FOREIGN KEY(account_id) REFERENCES accounts(id)'
        ')'
    ),
    (
        'CREATE TABLE IF NOT EXISTS email_otps ('
        '  id INTEGER PRIMARY KEY AUTOINCREMENT,'
        '  email TEXT NOT NULL,'
        '  purpose TEXT NOT NULL,'
        '  code_hash BLOB NOT NULL,'
        '  attempts INTEGER NOT NULL DEFAULT 0,'
        '  expires_at TEXT NOT NULL,'
        '  consumed_at TEXT,'
        '  created_at TEXT NOT NULL'
        ')'
    ),
    (
        'CREATE TABLE IF NOT EXISTS users ('
        '  id TEXT PRIMARY KEY,'
        '  name TEXT NOT NULL,'
        '  email TEXT UNIQUE NOT NULL,'
        '  phone TEXT,'
        '  address TEXT,'
        '  city TEXT,'
        '  pincode TEXT,'
        '  created_at TEXT NOT NULL,'
        '  updated_at TEXT,'
        '  FOREIGN KEY(id) REFERENCES accounts(id)'
        ')'
    ),
    (
        'CREATE TABLE IF NOT EXISTS scrappers ('
        '  id TEXT PRIMARY KEY,'
        '  name TEXT NOT NULL,'
        '  email TEXT UNIQUE NOT NULL,'
        '  phone TEXT,'
        '  address TEXT,'
        '  pincode TEXT NOT NULL,'
        '  available INTEGER NOT NULL DEFAULT 1,'
        '  vehicle_type TEXT,'
        '  availability_hours TEXT,'
        '  scrap_types TEXT,'
        '  scrap_prices TEXT,'
        '  rating REAL NOT NULL DEFAULT 0,'
        '  latitude REAL,'
        '  longitude REAL,'
        '  created_at TEXT NOT NULL,'
        '  updated_at TEXT,'
        '  FOREIGN KEY(id) REFERENCES accounts(id)'
        ')'
    ),
    (
        'CREATE TABLE IF NOT EXISTS pickups ('
        '  id TEXT PRIMARY KEY,'
        '  user_id TEXT NOT NULL,'
        '  scrapper_id TEXT,'
        '  weight REAL NOT NULL CHECK (weight >= 7),'
        '  address TEXT NOT NULL,'
        '  pincode TEXT NOT NULL,'
        '  date TEXT NOT NULL,'
        '  time_slot TEXT NOT NULL,'
        '  slot_start TEXT NOT NULL,'
        '  slot_end TEXT NOT NULL,'
        '  type TEXT NOT NULL,'
        '  status TEXT NOT NULL,'
        '  price REAL,'
        '  latitude REAL,'
        '  longitude REAL,'
        '  created_at TEXT NOT NULL,'
        '  updated_at TEXT,'
        # A collector is attached exactly when the request has been claimed
        '  CHECK ('
        "    (status = 'Requested' AND scrapper_id IS NULL)"
        "    OR status = 'Rejected'"
        "    OR (status IN ('Scheduled', 'Accepted', 'En Route', 'Arrived', 'Completed') AND scrapper_id IS NOT NULL)"
        '  ),'
        '  FOREIGN KEY(user_id) REFERENCES users(id),'
        '  FOREIGN KEY(scrapper_id) REFERENCES scrappers(id)'
        ')'
    ),
    'CREATE INDEX IF NOT EXISTS idx_pickups_area_status ON pickups(pincode, status, created_at)',
    'CREATE INDEX IF NOT EXISTS idx_pickups_user ON pickups(user_id, created_at)',
    (
        'CREATE TABLE IF NOT EXISTS rewards ('
        '  id TEXT PRIMARY KEY,'
        '  name TEXT UNIQUE NOT NULL,'
        '  description TEXT,'
        '  points_required INTEGER NOT NULL CHECK (points_required > 0),'
        '  active INTEGER NOT NULL DEFAULT 1'
        ')'
    ),
    (
        'CREATE TABLE IF NOT EXISTS redeemed_rewards ('
        '  id TEXT PRIMARY KEY,'
        '  user_id TEXT NOT NULL,'
        '  reward_id TEXT NOT NULL,'
        '  created_at TEXT NOT NULL,'
        '  FOREIGN KEY(user_id) REFERENCES users(id),'
        '  FOREIGN KEY(reward_id) REFERENCES rewards(id)'
        ')'
    ),
    (
        'CREATE TABLE IF NOT EXISTS points ('
        '  id TEXT PRIMARY KEY,'
        '  user_id TEXT NOT NULL,'
        '  points INTEGER NOT NULL,'
        '  pickup_id TEXT,'
        '  redemption_id TEXT,'
        '  reason TEXT,'
        '  created_at TEXT NOT NULL,'
        '  FOREIGN KEY(user_id) REFERENCES users(id),'
        '  FOREIGN KEY(pickup_id) REFERENCES pickups(id),'
        '  FOREIGN KEY(redemption_id) REFERENCES redeemed_rewards(id)'
        ')'
    ),
    'CREATE INDEX IF NOT EXISTS idx_points_user ON points(user_id, created_at)',
    'CREATE UNIQUE INDEX IF NOT EXISTS idx_points_pickup ON points(pickup_id) WHERE pickup_id IS NOT NULL',
    (
        'CREATE TABLE IF NOT EXISTS business_locations ('
        '  id TEXT PRIMARY KEY,'
        '  name TEXT NOT NULL,'
        '  address TEXT NOT NULL,'
        '  summary TEXT,'
        '  latitude REAL NOT NULL,'
        '  longitude REAL NOT NULL,'
        '  website_url TEXT,'
        '  created_at TEXT NOT NULL'
        ')'
    ),
)

OrderBy = Union[str, Sequence[str], None]
Where = Optional[Dict[str, Any]]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')


def _adapt(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _check_ident(name: str) -> str:
    if not name.replace('_', '').isalnum():
        raise ValueError(f"invalid identifier: {name!r}")
    return name


def _where_sql(where: Where) -> Tuple[str, List[Any]]:
    if not where:
        return '', []
    clauses: List[str] = []
    params: List[Any] = []
    for column, value in where.items():
        column = _check_ident(column)
        if value is None:
            clauses.append(f'{column} IS NULL')
        elif value is NOT_NULL:
            clauses.append(f'{column} IS NOT NULL')
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = [_adapt(v) for v in value]
            if not values:
                clauses.append('0')
                continue
            clauses.append(f'{column} IN ({",".join("?" * len(values))})')
            params.extend(values)
        else:
            clauses.append(f'{column} = ?')
            params.append(_adapt(value))
    return ' WHERE ' + ' AND '.join(clauses), params


def _order_sql(order_by: OrderBy) -> str:
    if not order_by:
        return ''
    keys = [order_by] if isinstance(order_by, str) else list(order_by)
    parts = []
    for key in keys:
        desc = key.startswith('-')
        parts.append(f'{_check_ident(key.lstrip("-"))} {"DESC" if desc else "ASC"}')
    # rowid breaks ties between rows written in the same microsecond
    parts.append('rowid DESC' if keys[0].startswith('-') else 'rowid ASC')
    return ' ORDER BY ' + ', '.join(parts)


def _strip(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data.pop('_rowid', None)
    return data


def _select(conn: sqlite3.Connection, table: str, where: Where = None, order_by: OrderBy = None,
            limit: Optional[int] = None, with_rowid: bool = False) -> List[Dict[str, Any]]:
    where_sql, params = _where_sql(where)
    columns = 'rowid AS _rowid, *' if with_rowid else '*'
    sql = f'SELECT {columns} FROM {_check_ident(table)}{where_sql}{_order_sql(order_by)}'
    if limit is not None:
        sql += ' LIMIT ?'
        params.append(int(limit))
    rows = conn.execute(sql, params).fetchall()
    if with_rowid:
        return [dict(r) for r in rows]
    return [_strip(r) for r in rows]


def _sum(conn: sqlite3.Connection, table: str, column: str, where: Where = None) -> float:
    where_sql, params = _where_sql(where)
    row = conn.execute(
        f'SELECT COALESCE(SUM({_check_ident(column)}), 0) FROM {_check_ident(table)}{where_sql}', params
    ).fetchone()
    return row[0]


def _table_columns(conn: sqlite3.Connection, table: str) -> Set[str]:
    return {r[1] for r in conn.execute(f'PRAGMA table_info({_check_ident(table)})').fetchall()}


# -----------------------------
# Change feed
# -----------------------------
class Subscription:
    """A handle on the change feed for one table.

    Nothing is delivered until ``start()``; after ``stop()`` late events are
    dropped even if a publisher already holds a reference to the handle.
    """

    def __init__(self, feed: 'ChangeFeed', table: str, handler: Callable[[ChangeEvent], None],
                 events: Optional[Iterable[ChangeKind]] = None, filters: Where = None):
        self.feed = feed
        self.table = table
        self.handler = handler
        self.events = frozenset(ChangeKind(e) for e in events) if events else frozenset(ChangeKind)
        self.filters = {k: _adapt(v) for k, v in (filters or {}).items()}
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> 'Subscription':
        if not self._active:
            self._active = True
            self.feed._attach(self)
        return self

    def stop(self) -> None:
        if self._active:
            self._active = False
            self.feed._detach(self)

    def _row_matches(self, row: Optional[Dict[str, Any]]) -> bool:
        if row is None:
            return False
        for column, expected in self.filters.items():
            value = row.get(column)
            if expected is None:
                if value is not None:
                    return False
            elif expected is NOT_NULL:
                if value is None:
                    return False
            elif value != expected and str(value) != str(expected):
                return False
        return True

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.kind not in self.events:
            return False
        # A row leaving the filtered set is still a change for this view
        return self._row_matches(event.row) or self._row_matches(event.old_row)

    def deliver(self, event: ChangeEvent) -> None:
        if self._active and self.matches(event):
            self.handler(event)


class ChangeFeed:
    def __init__(self):
        self._lock = threading.RLock()
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, table: str, handler: Callable[[ChangeEvent], None],
                  events: Optional[Iterable[ChangeKind]] = None, filters: Where = None) -> Subscription:
        return Subscription(self, table, handler, events=events, filters=filters)

    def _attach(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers[sub.table].add(sub)

    def _detach(self, sub: Subscription) -> None:
        with self._lock:
            self._subscribers[sub.table].discard(sub)

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, ()))

    def publish(self, events: Iterable[ChangeEvent]) -> None:
        with self._lock:
            for event in events:
                for sub in list(self._subscribers.get(event.table, ())):
                    try:
                        sub.deliver(event)
                    except Exception as e:
                        logger.error("change feed delivery error on %s: %s", event.table, e)


# -----------------------------
# Store
# -----------------------------
class Transaction:
    """Write operations on one connection inside ``BEGIN IMMEDIATE``."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.events: List[ChangeEvent] = []

    def select(self, table: str, where: Where = None, order_by: OrderBy = None,
               limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return _select(self.conn, table, where, order_by, limit)

    def fetch_one(self, table: str, where: Where) -> Optional[Dict[str, Any]]:
        rows = _select(self.conn, table, where, limit=1)
        return rows[0] if rows else None

    def sum(self, table: str, column: str, where: Where = None) -> float:
        return _sum(self.conn, table, column, where)

    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        columns = [_check_ident(c) for c in values]
        placeholders = ','.join('?' * len(columns))
        cur = self.conn.execute(
            f'INSERT INTO {_check_ident(table)} ({",".join(columns)}) VALUES ({placeholders})',
            [_adapt(v) for v in values.values()],
        )
        row = _strip(self.conn.execute(f'SELECT rowid AS _rowid, * FROM {table} WHERE rowid = ?', (cur.lastrowid,)).fetchone())
        self.events.append(ChangeEvent(kind=ChangeKind.INSERT, table=table, row=row))
        return row

    def update(self, table: str, values: Dict[str, Any], where: Where) -> List[Dict[str, Any]]:
        """Conditional update: only rows matching ``where`` change. Returns the new row images."""
        if not where:
            raise ValueError("update requires a where clause")
        values = dict(values)
        if 'updated_at' not in values and 'updated_at' in _table_columns(self.conn, table):
            values['updated_at'] = now_iso()
        where_sql, where_params = _where_sql(where)
        old_rows = _select(self.conn, table, where, with_rowid=True)
        set_sql = ', '.join(f'{_check_ident(c)} = ?' for c in values)
        cur = self.conn.execute(
            f'UPDATE {_check_ident(table)} SET {set_sql}{where_sql}',
            [_adapt(v) for v in values.values()] + where_params,
        )
        if cur.rowcount == 0:
            return []
        new_rows = []
        for old in old_rows:
            rowid = old.pop('_rowid')
            new = _strip(self.conn.execute(f'SELECT rowid AS _rowid, * FROM {table} WHERE rowid = ?', (rowid,)).fetchone())
            new_rows.append(new)
            self.events.append(ChangeEvent(kind=ChangeKind.UPDATE, table=table, row=new, old_row=old))
        return new_rows

    def delete(self, table: str, where: Where) -> List[Dict[str, Any]]:
        if not where:
            raise ValueError("delete requires a where clause")
        where_sql, params = _where_sql(where)
        old_rows = _select(self.conn, table, where)
        self.conn.execute(f'DELETE FROM {_check_ident(table)}{where_sql}', params)
        for old in old_rows:
            self.events.append(ChangeEvent(kind=ChangeKind.DELETE, table=table, row=old, old_row=old))
        return old_rows


class Store:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.feed = ChangeFeed()
        self._commit_lock = threading.RLock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    def init_schema(self) -> None:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise BackendUnavailableError(f"database unavailable: {e}") from e
        try:
            conn.execute('PRAGMA journal_mode = WAL')
            for statement in SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        conn = None
        try:
            conn = self._connect()
            tx = Transaction(conn)
            try:
                conn.execute('BEGIN IMMEDIATE')
                yield tx
                with self._commit_lock:
                    conn.execute('COMMIT')
                    self.feed.publish(tx.events)
            except BaseException:
                if conn.in_transaction:
                    conn.execute('ROLLBACK')
                raise
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"conflicting write: {e}") from e
        except sqlite3.OperationalError as e:
            logger.error("database error: %s", e)
            raise BackendUnavailableError(f"database unavailable: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = self._connect()
            yield conn
        except sqlite3.OperationalError as e:
            logger.error("database error: %s", e)
            raise BackendUnavailableError(f"database unavailable: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    def select(self, table: str, where: Where = None, order_by: OrderBy = None,
               limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._reader() as conn:
            return _select(conn, table, where, order_by, limit)

    def fetch_one(self, table: str, where: Where) -> Optional[Dict[str, Any]]:
        rows = self.select(table, where, limit=1)
        return rows[0] if rows else None

    def sum(self, table: str, column: str, where: Where = None) -> float:
        with self._reader() as conn:
            return _sum(conn, table, column, where)

    def insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        with self.transaction() as tx:
            return tx.insert(table, values)

    def update(self, table: str, values: Dict[str, Any], where: Where) -> List[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.update(table, values, where)

    def delete(self, table: str, where: Where) -> List[Dict[str, Any]]:
        with self.transaction() as tx:
            return tx.delete(table, where)

    def subscribe(self, table: str, handler: Callable[[ChangeEvent], None],
                  events: Optional[Iterable[ChangeKind]] = None, filters: Where = None) -> Subscription:
        return self.feed.subscribe(table, handler, events=events, filters=filters)

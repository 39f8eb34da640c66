"""
Replica Router Database Drivers

Capability interface consumed by the router, plus a synchronous SQLite
driver built on the standard sqlite3 module.
"""

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol, Sequence, Union
import structlog

from shared.errors import ConfigurationError, DriverConnectionError
from shared.models import DSN, FetchMode

logger = structlog.get_logger()

Row = Union[tuple, dict[str, Any]]

# Driver options accepted by get_option / set_option
DEFAULT_OPTIONS = {
    "autofree": False,
    "debug": 0,
    "persistent": False,
    "portability": 0,
    "timeout": 5.0,
}

# Capabilities reported by provides()
SQLITE_FEATURES = {
    "limit": True,
    "new_link": False,
    "numrows": True,
    "pconnect": False,
    "prepare": True,
    "transactions": True,
}

# Object types available through get_list_of()
SQLITE_LIST_TYPES = {
    "tables": "table",
    "views": "view",
    "indexes": "index",
    "triggers": "trigger",
}


# =============================================================================
# Capability Interface
# =============================================================================

class QueryResult(Protocol):
    def num_rows(self) -> int: ...


class Connection(Protocol):
    """
    Operations the router forwards to a master or node connection.

    Any driver that exposes this catalog can sit behind the router.
    """
    dsn: DSN
    fetch_mode: FetchMode
    options: dict[str, Any]
    last_query: Optional[str]

    def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult: ...
    def get_one(self, sql: str, params: Sequence[Any] = ()) -> Any: ...
    def get_col(self, sql: str, col: Union[int, str] = 0, params: Sequence[Any] = ()) -> list: ...
    def get_all(self, sql: str, params: Sequence[Any] = (), fetch_mode: Optional[FetchMode] = None) -> list: ...
    def get_row(self, sql: str, params: Sequence[Any] = (), fetch_mode: Optional[FetchMode] = None) -> Optional[Row]: ...
    def get_assoc(self, sql: str, force_array: bool = False, params: Sequence[Any] = (),
                  fetch_mode: Optional[FetchMode] = None, group: bool = False) -> dict: ...
    def limit_query(self, sql: str, offset: int, count: int, params: Sequence[Any] = ()) -> QueryResult: ...
    def quote_smart(self, value: Any) -> str: ...
    def get_tables(self) -> list[str]: ...
    def prepare(self, sql: str) -> Any: ...
    def provides(self, feature: str) -> bool: ...
    def table_info(self, table: str) -> list[dict[str, Any]]: ...
    def get_option(self, name: str) -> Any: ...
    def get_list_of(self, kind: str) -> list[str]: ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...
    def auto_commit(self, on: bool = False) -> None: ...
    def disconnect(self) -> bool: ...
    def set_option(self, name: str, value: Any) -> None: ...
    def set_fetch_mode(self, mode: FetchMode) -> None: ...
    def affected_rows(self) -> int: ...


class Driver(Protocol):
    def connect(self, dsn: DSN) -> Connection: ...


# =============================================================================
# SQLite Driver
# =============================================================================

@dataclass
class Result:
    """Buffered result of a query."""
    columns: list[str]
    rows: list[Row] = field(default_factory=list)
    affected: int = 0

    def num_rows(self) -> int:
        return len(self.rows)

    def fetch_row(self) -> Optional[Row]:
        """Pop the next row, or None when exhausted."""
        return self.rows.pop(0) if self.rows else None

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)


@dataclass(frozen=True)
class PreparedStatement:
    sql: str
    param_count: int


class SQLiteConnection:
    """A connection to a SQLite database exposing the router catalog."""

    backend = "sqlite"

    def __init__(self, dsn: DSN, connection: sqlite3.Connection):
        self.dsn = dsn
        self.fetch_mode = FetchMode.ORDERED
        self.options: dict[str, Any] = dict(DEFAULT_OPTIONS)
        self.last_query: Optional[str] = None
        self._conn = connection
        self._conn.row_factory = sqlite3.Row
        self._affected = 0

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        self.last_query = sql
        if self.options["debug"]:
            logger.debug("sqlite_execute", node=self.dsn.hostspec, sql=sql)
        cursor = self._conn.execute(sql, tuple(params))
        if cursor.description is None:
            self._affected = max(cursor.rowcount, 0)
        return cursor

    def _shape(self, row: sqlite3.Row, fetch_mode: Optional[FetchMode]) -> Row:
        mode = fetch_mode if fetch_mode and fetch_mode != FetchMode.DEFAULT else self.fetch_mode
        if mode == FetchMode.ASSOC:
            return dict(row)
        return tuple(row)

    def _fetch(
        self,
        sql: str,
        params: Sequence[Any] = (),
        fetch_mode: Optional[FetchMode] = None
    ) -> tuple[list[str], list[Row]]:
        cursor = self._execute(sql, params)
        if cursor.description is None:
            return [], []
        columns = [column[0] for column in cursor.description]
        return columns, [self._shape(row, fetch_mode) for row in cursor.fetchall()]

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query(self, sql: str, params: Sequence[Any] = ()) -> Result:
        columns, rows = self._fetch(sql, params)
        return Result(columns=columns, rows=rows, affected=self._affected)

    def limit_query(self, sql: str, offset: int, count: int, params: Sequence[Any] = ()) -> Result:
        return self.query(f"{sql} LIMIT {int(count)} OFFSET {int(offset)}", params)

    def get_one(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self._execute(sql, params).fetchone()
        return row[0] if row is not None else None

    def get_col(self, sql: str, col: Union[int, str] = 0, params: Sequence[Any] = ()) -> list:
        return [row[col] for row in self._execute(sql, params).fetchall()]

    def get_all(
        self,
        sql: str,
        params: Sequence[Any] = (),
        fetch_mode: Optional[FetchMode] = None
    ) -> list[Row]:
        return self._fetch(sql, params, fetch_mode)[1]

    def get_row(
        self,
        sql: str,
        params: Sequence[Any] = (),
        fetch_mode: Optional[FetchMode] = None
    ) -> Optional[Row]:
        row = self._execute(sql, params).fetchone()
        return self._shape(row, fetch_mode) if row is not None else None

    def get_assoc(
        self,
        sql: str,
        force_array: bool = False,
        params: Sequence[Any] = (),
        fetch_mode: Optional[FetchMode] = None,
        group: bool = False
    ) -> dict:
        """
        Key rows by their first column.

        Two-column results map straight to the second column unless
        force_array is set. With group, each key collects a list of values.
        """
        cursor = self._execute(sql, params)
        if cursor.description is None:
            return {}
        columns = [column[0] for column in cursor.description]
        if len(columns) < 2:
            raise ValueError("get_assoc needs at least two columns")

        mode = fetch_mode if fetch_mode and fetch_mode != FetchMode.DEFAULT else self.fetch_mode
        result: dict = {}
        for row in cursor.fetchall():
            key = row[0]
            if len(columns) == 2 and not force_array:
                value = row[1]
            elif mode == FetchMode.ASSOC:
                value = {name: row[name] for name in columns[1:]}
            else:
                value = tuple(row)[1:]

            if group:
                result.setdefault(key, []).append(value)
            else:
                result[key] = value
        return result

    def quote_smart(self, value: Any) -> str:
        """Render a Python value as a SQL literal."""
        if value is None:
            return "NULL"
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float)):
            return repr(value)
        escaped = str(value).replace("'", "''")
        return f"'{escaped}'"

    def prepare(self, sql: str) -> PreparedStatement:
        self.last_query = sql
        return PreparedStatement(sql=sql, param_count=sql.count("?"))

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    def get_list_of(self, kind: str) -> list[str]:
        object_type = SQLITE_LIST_TYPES.get(kind)
        if object_type is None:
            raise ValueError(f"Unknown object list: {kind}")
        cursor = self._execute(
            "SELECT name FROM sqlite_master WHERE type = ? AND name NOT LIKE 'sqlite_%' ORDER BY name",
            (object_type,)
        )
        return [row[0] for row in cursor.fetchall()]

    def get_tables(self) -> list[str]:
        return self.get_list_of("tables")

    def table_info(self, table: str) -> list[dict[str, Any]]:
        quoted = table.replace('"', '""')
        cursor = self._execute(f'PRAGMA table_info("{quoted}")')
        info = []
        for row in cursor.fetchall():
            flags = []
            if row["notnull"]:
                flags.append("not_null")
            if row["pk"]:
                flags.append("primary_key")
            info.append({
                "table": table,
                "name": row["name"],
                "type": row["type"],
                "flags": " ".join(flags),
            })
        return info

    def provides(self, feature: str) -> bool:
        return SQLITE_FEATURES.get(feature, False)

    # -------------------------------------------------------------------------
    # Options and State
    # -------------------------------------------------------------------------

    def get_option(self, name: str) -> Any:
        if name not in self.options:
            raise ValueError(f"Unknown option: {name}")
        return self.options[name]

    def set_option(self, name: str, value: Any) -> None:
        if name not in self.options:
            raise ValueError(f"Unknown option: {name}")
        self.options[name] = value

    def set_fetch_mode(self, mode: FetchMode) -> None:
        self.fetch_mode = FetchMode(mode)

    def affected_rows(self) -> int:
        return self._affected

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def auto_commit(self, on: bool = False) -> None:
        if on and self._conn.in_transaction:
            self._conn.commit()
        self._conn.isolation_level = None if on else "DEFERRED"

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def disconnect(self) -> bool:
        self._conn.close()
        logger.info("sqlite_disconnected", node=self.dsn.hostspec)
        return True


class SQLiteDriver:
    """
    Opens SQLite connections.

    ``sqlite:///relative.db``, ``sqlite:////abs/path.db`` and
    ``sqlite://label/:memory:`` are accepted; the host part only labels
    the node.
    """

    def connect(self, dsn: DSN) -> SQLiteConnection:
        database = dsn.database or ":memory:"
        if database != ":memory:" and not Path(database).parent.exists():
            raise DriverConnectionError(f"Cannot open {dsn}: directory does not exist")

        try:
            conn = sqlite3.connect(
                database,
                timeout=float(dsn.options.get("timeout", DEFAULT_OPTIONS["timeout"])),
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise DriverConnectionError(f"Cannot open {dsn}: {e}") from e

        logger.info("sqlite_connected", node=dsn.hostspec, database=database)
        return SQLiteConnection(dsn, conn)


# Backend name -> driver class
DRIVERS: dict[str, type] = {
    "sqlite": SQLiteDriver,
    "sqlite3": SQLiteDriver,
}


def get_driver(backend: str) -> Driver:
    """Create the driver registered for a DSN backend."""
    driver_class = DRIVERS.get(backend)
    if driver_class is None:
        raise ConfigurationError(f"No driver registered for backend '{backend}'")
    return driver_class()

"""
Row-level access to the relational store.

The core only needs equality filters and ordered reads, so the client speaks
in table names and plain dicts rather than an ORM.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from docscribe.config import config

logger = logging.getLogger(__name__)

TABLES = (
    "documents",
    "document_pages",
    "document_schemas",
    "processing_logs",
    "document_prompts",
    "document_data",
    "document_pipelines",
    "pipeline_documents",
)


class Database(ABC):
    """Row CRUD interface consumed by the registry and the services"""

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update(self, table: str, values: Dict[str, Any], filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, table: str, row: Dict[str, Any], conflict: Iterable[str]) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        raise NotImplementedError


def get_db_connection(database_url: Optional[str] = None):
    """Get PostgreSQL connection"""
    database_url = database_url or config.DATABASE_URL
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not set")
    return psycopg2.connect(database_url, cursor_factory=RealDictCursor)


def _adapt(value: Any) -> Any:
    # jsonb columns (schema structure, suggestions)
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


def _check_table(table: str) -> None:
    if table not in TABLES:
        raise ValueError(f"Unknown table: {table}")


def _where(filters: Optional[Dict[str, Any]]):
    if not filters:
        return sql.SQL(""), []
    clauses = [sql.SQL("{} = %s").format(sql.Identifier(column)) for column in filters]
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), [_adapt(v) for v in filters.values()]


class PostgresDatabase(Database):
    """psycopg2 implementation, one short-lived connection per call"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or config.DATABASE_URL

    def _execute(self, query, params: List[Any]) -> List[Dict[str, Any]]:
        conn = get_db_connection(self.database_url)
        try:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall() if cur.description else []
            conn.commit()
            return [dict(row) for row in rows]
        except Exception as e:
            conn.rollback()
            logger.error("Database error: %s", e)
            raise
        finally:
            conn.close()

    def insert(self, table, row):
        _check_table(table)
        columns = list(row.keys())
        query = sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values}) RETURNING *").format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        rows = self._execute(query, [_adapt(row[c]) for c in columns])
        return rows[0] if rows else dict(row)

    def update(self, table, values, filters):
        _check_table(table)
        if not filters:
            raise ValueError("Refusing to update without filters")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values
        )
        where, where_params = _where(filters)
        query = sql.SQL("UPDATE {table} SET {assignments}").format(
            table=sql.Identifier(table), assignments=assignments
        ) + where + sql.SQL(" RETURNING *")
        return self._execute(query, [_adapt(v) for v in values.values()] + where_params)

    def upsert(self, table, row, conflict):
        _check_table(table)
        columns = list(row.keys())
        conflict = list(conflict)
        updates = [c for c in columns if c not in conflict]
        query = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) ON CONFLICT ({conflict}) DO UPDATE SET {updates} RETURNING *"
        ).format(
            table=sql.Identifier(table),
            columns=sql.SQL(", ").join(map(sql.Identifier, columns)),
            values=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            conflict=sql.SQL(", ").join(map(sql.Identifier, conflict)),
            updates=sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c)) for c in updates
            ),
        )
        rows = self._execute(query, [_adapt(row[c]) for c in columns])
        return rows[0] if rows else dict(row)

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        _check_table(table)
        where, params = _where(filters)
        query = sql.SQL("SELECT * FROM {table}").format(table=sql.Identifier(table)) + where
        if order_by:
            direction = sql.SQL(" DESC") if descending else sql.SQL(" ASC")
            query = query + sql.SQL(" ORDER BY {}").format(sql.Identifier(order_by)) + direction
        if limit:
            query = query + sql.SQL(" LIMIT %s")
            params.append(int(limit))
        return self._execute(query, params)

    def delete(self, table, filters):
        _check_table(table)
        if not filters:
            raise ValueError("Refusing to delete without filters")
        where, params = _where(filters)
        query = sql.SQL("DELETE FROM {table}").format(table=sql.Identifier(table)) + where + sql.SQL(" RETURNING *")
        return len(self._execute(query, params))

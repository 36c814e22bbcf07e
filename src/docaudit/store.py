"""
docaudit.store - 文档集合访问层（PostgreSQL）

提供扫描引擎所需的三类查询:
- load_mapping: 辅助集合整表投影（建立参照索引）
- fetch_page:   主集合 keyset 分页（key > X，可选时间窗，依 key 升序）
- lookup_linked: 批次集合的 in-set 查询（item_id = ANY(...)）

store 即会话对象，由调用方建立后传入各组件，不使用模块级连接单例。
连接为 autocommit + 只读；每次查询都是一个可重试单元。
"""

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from .config import RetrySettings, TableSettings
from .errors import DbConnectionError, QueryError
from .models import DocumentItemRow, ItemYearRow, MappingRow, ScanWindow
from .retry import TRANSIENT_ERRORS, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 会话级只读，autocommit 连接同样适用
READ_ONLY_OPTIONS = "-c default_transaction_read_only=on"


def mask_dsn(dsn: str) -> str:
    """隐藏 DSN 中的密码"""
    return re.sub(r":([^:@/]+)@", ":***@", dsn)


class PostgresDocumentStore:
    """PostgreSQL 文档集合访问"""

    def __init__(
        self,
        dsn: str,
        tables: TableSettings,
        retry: RetrySettings,
        *,
        connect: Callable[..., psycopg.Connection] = psycopg.connect,
    ):
        self._dsn = dsn
        self._tables = tables
        self._retry = retry
        self._connect = connect
        self._conn: Optional[psycopg.Connection] = None

    # ---------- 连接生命周期 ----------

    def _open(self) -> psycopg.Connection:
        self.close()
        self._conn = self._connect(self._dsn, autocommit=True, options=READ_ONLY_OPTIONS)
        return self._conn

    def connect(self) -> psycopg.Connection:
        """
        建立只读连接

        Raises:
            DbConnectionError: 连接失败时抛出
        """
        try:
            return self._open()
        except psycopg.Error as e:
            raise DbConnectionError(
                f"数据库连接失败: {e}",
                {"dsn": mask_dsn(self._dsn), "error": str(e)},
            )

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "PostgresDocumentStore":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _drop_connection(self) -> None:
        logger.info("丢弃数据库连接，下次尝试时重建: %s", mask_dsn(self._dsn))
        try:
            self.close()
        except psycopg.Error as e:
            logger.warning("关闭数据库连接失败: %s", e)

    def _run(self, description: str, fn: Callable[[psycopg.Connection], T]) -> T:
        # 建立连接也在可重试单元内，重连失败同样按暂时性错误重试
        def attempt() -> T:
            conn = self._conn if self._conn is not None else self._open()
            return fn(conn)

        try:
            return call_with_retry(
                attempt,
                self._retry,
                description=description,
                before_retry=self._drop_connection,
            )
        except TRANSIENT_ERRORS:
            raise
        except psycopg.Error as e:
            raise QueryError(
                f"{description} 查询失败: {e}",
                {"error": str(e), "sqlstate": getattr(e, "sqlstate", None)},
            )

    # ---------- 查询 ----------

    def _id_param(self) -> sql.Composable:
        return sql.SQL("%s::{}").format(sql.SQL(self._tables.id_type))

    def load_mapping(self, table: str, key_column: str, value_column: str) -> Dict[str, Optional[str]]:
        """
        载入辅助集合 key -> value 对照，key 为空的行跳过

        Returns:
            {key: value 或 None}
        """
        query = sql.SQL("SELECT {key} AS key, {value} AS value FROM {table}").format(
            key=sql.Identifier(key_column),
            value=sql.Identifier(value_column),
            table=sql.Identifier(table),
        )

        def fetch(conn: psycopg.Connection) -> Dict[str, Optional[str]]:
            mapping: Dict[str, Optional[str]] = {}
            skipped = 0
            with conn.cursor(row_factory=dict_row) as cur:
                for raw in cur.stream(query):
                    row = MappingRow.model_validate(raw)
                    if row.key is None:
                        skipped += 1
                        continue
                    mapping[row.key] = row.value
            if skipped:
                logger.warning("%s 有 %d 笔缺少 %s，已略过", table, skipped, key_column)
            return mapping

        return self._run(f"载入 {table}", fetch)

    def fetch_page(
        self,
        after_key: Optional[str],
        window: ScanWindow,
        limit: int,
    ) -> List[DocumentItemRow]:
        """
        读取主集合下一页（key 严格大于 after_key，依 key 升序）

        Args:
            after_key: 上一页最后一笔的 key，None 表示从头开始
            window: 时间窗 [start_date, end_date)
            limit: 本页最多行数
        """
        t = self._tables
        conditions: List[sql.Composable] = []
        params: List[object] = []
        if after_key is not None:
            conditions.append(sql.SQL("{} > ").format(sql.Identifier(t.primary_key)) + self._id_param())
            params.append(after_key)
        if window.start_date is not None:
            conditions.append(sql.SQL("{} >= %s").format(sql.Identifier(t.primary_time)))
            params.append(window.start_date)
        if window.end_date is not None:
            conditions.append(sql.SQL("{} < %s").format(sql.Identifier(t.primary_time)))
            params.append(window.end_date)

        where = sql.SQL("")
        if conditions:
            where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(conditions)

        query = (
            sql.SQL(
                "SELECT {pk} AS id, {item} AS item_id, {doc} AS document_id, {ts} AS added_on FROM {table}"
            ).format(
                pk=sql.Identifier(t.primary_key),
                item=sql.Identifier(t.primary_item),
                doc=sql.Identifier(t.primary_document),
                ts=sql.Identifier(t.primary_time),
                table=sql.Identifier(t.primary),
            )
            + where
            + sql.SQL(" ORDER BY {pk} LIMIT %s").format(pk=sql.Identifier(t.primary_key))
        )
        params.append(limit)

        def fetch(conn: psycopg.Connection) -> List[DocumentItemRow]:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                return [DocumentItemRow.model_validate(row) for row in cur.fetchall()]

        return self._run(f"读取 {t.primary}", fetch)

    def lookup_linked(self, item_ids: Sequence[str]) -> List[ItemYearRow]:
        """
        以一次 in-set 查询取回批次内 item_id 的关联学程

        Args:
            item_ids: 批次内不重复的 item_id
        """
        t = self._tables
        if not item_ids:
            return []
        query = sql.SQL(
            "SELECT {item} AS item_id, {body} AS body_id FROM {table} WHERE {item} = ANY(%s::{id_type}[])"
        ).format(
            item=sql.Identifier(t.linked_item),
            body=sql.Identifier(t.linked_body),
            table=sql.Identifier(t.linked),
            id_type=sql.SQL(t.id_type),
        )

        def fetch(conn: psycopg.Connection) -> List[ItemYearRow]:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, (list(item_ids),))
                return [ItemYearRow.model_validate(row) for row in cur.fetchall()]

        return self._run(f"查询 {t.linked}", fetch)


__all__ = ["PostgresDocumentStore", "mask_dsn"]

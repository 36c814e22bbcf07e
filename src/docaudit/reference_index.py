"""
docaudit.reference_index - 参照索引

扫描开始前把中小型辅助集合完整载入内存:
- documents:             document_id -> document_repo_id
- document_repositories: repo_id     -> body_of_knowledge_id

索引在一次运行内不可变，也不做中途失效。任一来源载入失败即整次运行失败，
没有部分索引的降级模式。
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Protocol

from .config import TableSettings
from .errors import AuditError, ReferenceLoadError

logger = logging.getLogger(__name__)


class MappingSource(Protocol):
    def load_mapping(self, table: str, key_column: str, value_column: str) -> Dict[str, Optional[str]]:
        ...


@dataclass(frozen=True)
class ReferenceIndex:
    """运行期不可变的参照索引"""

    document_repos: Mapping[str, Optional[str]]
    repo_bodies: Mapping[str, Optional[str]]

    @classmethod
    def build(
        cls,
        document_repos: Mapping[str, Optional[str]],
        repo_bodies: Mapping[str, Optional[str]],
    ) -> "ReferenceIndex":
        return cls(
            document_repos=MappingProxyType(dict(document_repos)),
            repo_bodies=MappingProxyType(dict(repo_bodies)),
        )

    def repo_of(self, document_id: str) -> Optional[str]:
        return self.document_repos.get(document_id)

    def body_of(self, repo_id: str) -> Optional[str]:
        return self.repo_bodies.get(repo_id)

    def sizes(self) -> Dict[str, int]:
        return {
            "document_repos": len(self.document_repos),
            "repo_bodies": len(self.repo_bodies),
        }


def _load_one(source: MappingSource, table: str, key_column: str, value_column: str) -> Dict[str, Optional[str]]:
    try:
        mapping = source.load_mapping(table, key_column, value_column)
    except AuditError as e:
        raise ReferenceLoadError(
            f"载入参照集合 {table} 失败: {e.message}",
            {"table": table, "cause": e.error_type, **e.details},
        ) from e
    except Exception as e:
        raise ReferenceLoadError(
            f"载入参照集合 {table} 失败: {e}",
            {"table": table, "exception_type": type(e).__name__},
        ) from e
    logger.info("已载入 %s %d 笔", table, len(mapping))
    return mapping


def load_reference_index(source: MappingSource, tables: TableSettings) -> ReferenceIndex:
    """
    从辅助集合建立参照索引

    Args:
        source: 提供 load_mapping 的集合访问对象
        tables: 表与栏位名称

    Returns:
        ReferenceIndex

    Raises:
        ReferenceLoadError: 任一集合载入失败
    """
    repo_bodies = _load_one(source, tables.repositories, tables.repository_key, tables.repository_body)
    document_repos = _load_one(source, tables.documents, tables.document_key, tables.document_repo)
    return ReferenceIndex.build(document_repos=document_repos, repo_bodies=repo_bodies)


__all__ = ["ReferenceIndex", "load_reference_index"]

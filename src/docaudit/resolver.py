"""
docaudit.resolver - 批次查询

每个批次对批次集合发出恰好一次 in-set 查询，结果只在该批次内有效，
不并入全局参照索引。单次查询的规模因此受批次门槛约束，与主集合总量无关。
"""

import logging
from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Protocol, Sequence, Set

from .batching import Batch
from .errors import AuditError, ScanError
from .models import ItemYearRow

logger = logging.getLogger(__name__)

# item_id -> 该题目的学程集合
BatchResolution = Mapping[str, FrozenSet[str]]


class LinkedSource(Protocol):
    def lookup_linked(self, item_ids: Sequence[str]) -> List[ItemYearRow]:
        ...


class BatchResolver:
    def __init__(self, source: LinkedSource):
        self._source = source
        self.lookups = 0

    def resolve(self, batch: Batch) -> BatchResolution:
        """
        查询批次内所有外键的关联值

        学程为空的关联行略过；没有任何关联行的 item_id 不出现在结果中。

        Raises:
            ScanError: 查询失败
        """
        keys = sorted(batch.keys)
        try:
            rows = self._source.lookup_linked(keys)
        except AuditError as e:
            raise ScanError(
                f"批次 {batch.index} 查询关联资料失败: {e.message}",
                {"batch": batch.index, "cause": e.error_type, **e.details},
            ) from e
        except Exception as e:
            raise ScanError(
                f"批次 {batch.index} 查询关联资料失败: {e}",
                {"batch": batch.index, "exception_type": type(e).__name__},
            ) from e
        self.lookups += 1

        collected: Dict[str, Set[str]] = {}
        for row in rows:
            if row.item_id is None or row.body_id is None:
                continue
            collected.setdefault(row.item_id, set()).add(row.body_id)

        logger.debug("批次 %d 关联资料 %d 笔，涵盖 item %d 个", batch.index, len(rows), len(collected))
        return MappingProxyType({k: frozenset(v) for k, v in collected.items()})


__all__ = ["BatchResolution", "BatchResolver"]

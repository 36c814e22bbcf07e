"""
docaudit.batching - 批次累积

逐行吸收扫描结果，当批次内不重复的外键（item_id）数量达到门槛时送出批次；
达到门槛的那一行是该批次的最后一行。输入读尽时送出剩余的部分批次，
但绝不送出空批次。

缺少 item_id 的行仍随批次送出（由判定函数归为无法判定），但不计入外键集合。
"""

from dataclasses import dataclass, field
from typing import List, Optional, Set

from .models import DocumentItemRow


@dataclass
class Batch:
    """一个批次: 有序的主集合行与其引用的不重复外键"""

    index: int
    rows: List[DocumentItemRow] = field(default_factory=list)
    keys: Set[str] = field(default_factory=set)

    @property
    def last_key(self) -> Optional[str]:
        return self.rows[-1].id if self.rows else None


class BatchAccumulator:
    """按不重复外键数量切分批次"""

    def __init__(self, threshold: int, start_index: int = 0):
        if threshold <= 0:
            raise ValueError(f"批次门槛必须为正整数: {threshold}")
        self.threshold = threshold
        self._index = start_index
        self._rows: List[DocumentItemRow] = []
        self._keys: Set[str] = set()

    @property
    def pending_rows(self) -> int:
        return len(self._rows)

    def _emit(self) -> Batch:
        self._index += 1
        batch = Batch(index=self._index, rows=self._rows, keys=self._keys)
        self._rows = []
        self._keys = set()
        return batch

    def add(self, row: DocumentItemRow) -> Optional[Batch]:
        """
        吸收一行

        Returns:
            不重复外键数达到门槛时返回完成的批次，否则 None
        """
        self._rows.append(row)
        if row.item_id is not None:
            self._keys.add(row.item_id)
        if len(self._keys) >= self.threshold:
            return self._emit()
        return None

    def drain(self) -> Optional[Batch]:
        """输入读尽时送出剩余行；没有剩余行时返回 None"""
        if not self._rows:
            return None
        return self._emit()


__all__ = ["Batch", "BatchAccumulator"]

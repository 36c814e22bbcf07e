"""
docaudit.aggregator - 统计累积

维护:
- 扫描计数（扫描/已判定/无法判定/违规行数、完成批次数）
- 各原因码的出现次数与不重复实体集合
- 全部违规涉及的不重复实体集合
- 无法判定的原因计数
- 前 N 笔样本（先到先留，不淘汰、不重排）

从续跑档还原后继续累积，不归零。不重复集合保留精确值，序列化为排序后的列表。
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from .detector import Classification, Verdict
from .models import (
    CheckpointModel,
    MismatchRecord,
    ReasonStatsModel,
    ScanCounters,
    ScanWindow,
)

logger = logging.getLogger(__name__)


@dataclass
class ReasonStats:
    count: int = 0
    entity_ids: Set[str] = field(default_factory=set)


class Aggregator:
    def __init__(self, sample_limit: int):
        if sample_limit <= 0:
            raise ValueError(f"样本上限必须为正整数: {sample_limit}")
        self.sample_limit = sample_limit
        self.counters = ScanCounters()
        self.reason_stats: Dict[str, ReasonStats] = {}
        self.all_entity_ids: Set[str] = set()
        self.excluded: Counter = Counter()
        self.samples: List[MismatchRecord] = []

    # ---------- 累积 ----------

    def apply(self, record: MismatchRecord) -> None:
        """累积一笔不一致明细"""
        stat = self.reason_stats.setdefault(record.reason, ReasonStats())
        stat.count += 1
        stat.entity_ids.add(record.item_id)
        self.all_entity_ids.add(record.item_id)
        self.counters.violation_rows += 1
        if len(self.samples) < self.sample_limit:
            self.samples.append(record)

    def observe(self, outcome: Classification) -> None:
        """依判定结果更新计数，违规时转交 apply()"""
        if outcome.verdict is Verdict.UNDETERMINABLE:
            self.counters.excluded_rows += 1
            self.excluded[outcome.cause] += 1
            return
        self.counters.classified_rows += 1
        if outcome.verdict is Verdict.VIOLATION:
            self.apply(outcome.record)

    def finish_batch(self, rows: int) -> None:
        self.counters.scanned_rows += rows
        self.counters.batches += 1

    # ---------- 续跑档转换 ----------

    def to_checkpoint(
        self,
        *,
        last_key: Optional[str],
        window: ScanWindow,
        saved_at: datetime,
    ) -> CheckpointModel:
        return CheckpointModel(
            saved_at=saved_at,
            last_key=last_key,
            window=window,
            counters=self.counters.model_copy(),
            all_entity_ids=sorted(self.all_entity_ids),
            reason_stats={
                reason: ReasonStatsModel(count=stat.count, entity_ids=sorted(stat.entity_ids))
                for reason, stat in sorted(self.reason_stats.items())
            },
            excluded=dict(sorted(self.excluded.items())),
            samples=list(self.samples),
        )

    @classmethod
    def from_checkpoint(cls, checkpoint: CheckpointModel, sample_limit: int) -> "Aggregator":
        aggregator = cls(sample_limit)
        aggregator.counters = checkpoint.counters.model_copy()
        aggregator.reason_stats = {
            reason: ReasonStats(count=stat.count, entity_ids=set(stat.entity_ids))
            for reason, stat in checkpoint.reason_stats.items()
        }
        aggregator.all_entity_ids = set(checkpoint.all_entity_ids)
        aggregator.excluded = Counter(checkpoint.excluded)
        samples = list(checkpoint.samples)
        if len(samples) > sample_limit:
            logger.warning("续跑档样本 %d 笔超过上限 %d，仅保留前 %d 笔", len(samples), sample_limit, sample_limit)
            samples = samples[:sample_limit]
        aggregator.samples = samples
        return aggregator


__all__ = ["ReasonStats", "Aggregator"]

"""
docaudit.detector - 不一致判定

classify() 是纯函数: 相同的 (row, 参照索引, 批次查询结果) 永远得到相同结论，无副作用。

判定顺序与缺值策略:
1. 缺 item_id / document_id              -> 无法判定
2. 文件在参照索引中没有储存库             -> 无法判定
3. 储存库没有学程                         -> 无法判定
4. 批次查询中该题目没有任何学程           -> 无法判定
5. 储存库学程不在题目学程集合中           -> 违规 linked_entity_mismatch
6. 其余                                   -> 一致

「无法判定」不计入一致，也不计入违规，只按原因另行计数。
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import DocumentItemRow, MismatchRecord
from .reference_index import ReferenceIndex
from .resolver import BatchResolution


class Verdict(str, Enum):
    CONSISTENT = "consistent"
    UNDETERMINABLE = "undeterminable"
    VIOLATION = "violation"


class ReasonCode:
    """违规原因码"""

    LINKED_ENTITY_MISMATCH = "linked_entity_mismatch"


class UndeterminedCause:
    """无法判定的原因"""

    MISSING_ITEM_ID = "missing_item_id"
    MISSING_DOCUMENT_ID = "missing_document_id"
    MISSING_REPOSITORY = "missing_repository"
    MISSING_REPOSITORY_BODY = "missing_repository_body"
    MISSING_LINKED_VALUES = "missing_linked_values"


REASON_LABELS = {
    ReasonCode.LINKED_ENTITY_MISMATCH: "储存库学程与题目学程不一致",
}

CAUSE_LABELS = {
    UndeterminedCause.MISSING_ITEM_ID: "缺少题目 Id",
    UndeterminedCause.MISSING_DOCUMENT_ID: "缺少五栏档案 Id",
    UndeterminedCause.MISSING_REPOSITORY: "五栏档案无储存库",
    UndeterminedCause.MISSING_REPOSITORY_BODY: "储存库无学程",
    UndeterminedCause.MISSING_LINKED_VALUES: "题目无学年学程资料",
}


@dataclass(frozen=True)
class Classification:
    verdict: Verdict
    reason: Optional[str] = None
    cause: Optional[str] = None
    record: Optional[MismatchRecord] = None


CONSISTENT = Classification(verdict=Verdict.CONSISTENT)


def _undetermined(cause: str) -> Classification:
    return Classification(verdict=Verdict.UNDETERMINABLE, cause=cause)


def classify(
    row: DocumentItemRow,
    reference_index: ReferenceIndex,
    resolution: BatchResolution,
) -> Classification:
    """
    判定一笔文件题目是否一致

    Args:
        row: 主集合行
        reference_index: 参照索引
        resolution: 本批次的 item_id -> 学程集合

    Returns:
        Classification
    """
    if row.item_id is None:
        return _undetermined(UndeterminedCause.MISSING_ITEM_ID)
    if row.document_id is None:
        return _undetermined(UndeterminedCause.MISSING_DOCUMENT_ID)

    repo_id = reference_index.repo_of(row.document_id)
    if not repo_id:
        return _undetermined(UndeterminedCause.MISSING_REPOSITORY)
    repo_body = reference_index.body_of(repo_id)
    if not repo_body:
        return _undetermined(UndeterminedCause.MISSING_REPOSITORY_BODY)

    item_bodies = resolution.get(row.item_id)
    if not item_bodies:
        return _undetermined(UndeterminedCause.MISSING_LINKED_VALUES)

    if repo_body in item_bodies:
        return CONSISTENT

    reason = ReasonCode.LINKED_ENTITY_MISMATCH
    return Classification(
        verdict=Verdict.VIOLATION,
        reason=reason,
        record=MismatchRecord(
            document_item_id=row.id,
            item_id=row.item_id,
            document_id=row.document_id,
            document_repo_id=repo_id,
            repo_body_id=repo_body,
            item_year_bodies=sorted(item_bodies),
            reason=reason,
        ),
    )


__all__ = [
    "Verdict",
    "ReasonCode",
    "UndeterminedCause",
    "REASON_LABELS",
    "CAUSE_LABELS",
    "Classification",
    "classify",
]

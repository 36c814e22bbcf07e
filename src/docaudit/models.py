"""
docaudit.models - 集合记录与续跑档模型

在扫描/查询边界做一次结构校验，之后的分类逻辑只面对明确的类型:
- 主键一律转为 str
- 关联栏位缺失、为空字符串时统一为 None，作为「无法判定」信号

续跑档格式 (version 1):
    {
        "version": 1,
        "saved_at": "2024-01-15T12:00:00Z",
        "last_key": "65a...",
        "window": {"start_date": "...", "end_date": null},
        "counters": {"scanned_rows": 0, ...},
        "all_entity_ids": ["..."],
        "reason_stats": {"linked_entity_mismatch": {"count": 1, "entity_ids": ["..."]}},
        "excluded": {"missing_linked_values": 3},
        "samples": [{...}]
    }
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CHECKPOINT_VERSION = 1


def _to_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


# ===================== 集合记录 =====================


class DocumentItemRow(BaseModel):
    """主集合 document_items 的投影"""

    model_config = ConfigDict(frozen=True)

    id: str
    item_id: Optional[str] = None
    document_id: Optional[str] = None
    added_on: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        text = _to_optional_str(value)
        if text is None:
            raise ValueError("主键不能为空")
        return text

    @field_validator("item_id", "document_id", mode="before")
    @classmethod
    def _coerce_ref(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


class MappingRow(BaseModel):
    """辅助集合的 id -> 属性 投影"""

    model_config = ConfigDict(frozen=True)

    key: Optional[str] = None
    value: Optional[str] = None

    @field_validator("key", "value", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


class ItemYearRow(BaseModel):
    """批次查询集合 item_year_dimension_values 的投影"""

    model_config = ConfigDict(frozen=True)

    item_id: Optional[str] = None
    body_id: Optional[str] = None

    @field_validator("item_id", "body_id", mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Optional[str]:
        return _to_optional_str(value)


# ===================== 判定结果与样本 =====================


class MismatchRecord(BaseModel):
    """一笔不一致明细，报告样本逐字保留"""

    model_config = ConfigDict(frozen=True)

    document_item_id: str
    item_id: str
    document_id: str
    document_repo_id: str
    repo_body_id: str
    item_year_bodies: List[str]
    reason: str


# ===================== 续跑档 =====================


class ScanWindow(BaseModel):
    """扫描时间窗 [start_date, end_date)"""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ScanCounters(BaseModel):
    scanned_rows: int = Field(0, ge=0)
    classified_rows: int = Field(0, ge=0)
    excluded_rows: int = Field(0, ge=0)
    violation_rows: int = Field(0, ge=0)
    batches: int = Field(0, ge=0)


class ReasonStatsModel(BaseModel):
    count: int = Field(0, ge=0)
    entity_ids: List[str] = Field(default_factory=list)


class CheckpointModel(BaseModel):
    """续跑档的序列化结构，集合以排序后的列表保存"""

    version: int = CHECKPOINT_VERSION
    saved_at: Optional[datetime] = None
    last_key: Optional[str] = None
    window: ScanWindow = Field(default_factory=ScanWindow)
    counters: ScanCounters = Field(default_factory=ScanCounters)
    all_entity_ids: List[str] = Field(default_factory=list)
    reason_stats: Dict[str, ReasonStatsModel] = Field(default_factory=dict)
    excluded: Dict[str, int] = Field(default_factory=dict)
    samples: List[MismatchRecord] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: int) -> int:
        if value != CHECKPOINT_VERSION:
            raise ValueError(f"不支持的续跑档版本: {value}")
        return value


__all__ = [
    "CHECKPOINT_VERSION",
    "DocumentItemRow",
    "MappingRow",
    "ItemYearRow",
    "MismatchRecord",
    "ScanWindow",
    "ScanCounters",
    "ReasonStatsModel",
    "CheckpointModel",
]

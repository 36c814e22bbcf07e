"""
docaudit.report - Markdown 报告

报告只由统计状态（CheckpointModel）决定，不读取当前时间；
同一份续跑档重复输出得到逐字节相同的文件。

结构:
- 摘要（扫描、判定、无法判定、违规笔数，涉及实体数，最后处理的 key）
- 不一致类型统计表（原因码 -> 笔数 -> 不重复实体数）
- 无法判定原因统计表
- 前 N 笔明细表
"""

import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union

from .detector import CAUSE_LABELS, REASON_LABELS
from .errors import ReportWriteError
from .models import CheckpointModel

logger = logging.getLogger(__name__)

REPORT_TITLE = "题目关联储存库与题目学程不一致统计"

SAMPLE_HEADERS = [
    "文件题目 Id",
    "题目 Id",
    "五栏档案 Id",
    "五栏档案储存库 Id",
    "储存库学程 Id",
    "题目学程 Id 清单",
    "不一致原因",
]


def _cell(value: object) -> str:
    text = "" if value is None else str(value)
    return text.replace("|", "\\|").replace("\n", " ")


def _row(values: Iterable[object]) -> str:
    return "|" + "|".join(_cell(v) for v in values) + "|"


def _format_ts(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else "-"


def render_report(state: CheckpointModel, sample_limit: int) -> str:
    """
    将统计状态渲染为 Markdown

    Args:
        state: 最终或续跑档中的统计状态
        sample_limit: 样本上限（决定明细段标题与截断）
    """
    counters = state.counters
    window = state.window
    lines: List[str] = []

    lines.append(f"# {REPORT_TITLE}")
    lines.append("")
    lines.append(f"**统计时间**: {_format_ts(state.saved_at)}")
    lines.append(f"**扫描时间窗**: {_format_ts(window.start_date)} ~ {_format_ts(window.end_date)}")
    lines.append(f"**最后处理的文件题目 Id**: {state.last_key or '-'}")
    lines.append(f"**已完成批次**: {counters.batches}")
    lines.append(f"**已扫描文件题目笔数**: {counters.scanned_rows}")
    lines.append(f"**已判定笔数**: {counters.classified_rows}")
    lines.append(f"**无法判定笔数**: {counters.excluded_rows}")
    lines.append(f"**不一致文件题目笔数**: {counters.violation_rows}")
    lines.append(f"**涉及题目数**: {len(state.all_entity_ids)}")
    lines.append("")

    lines.append("## 不一致类型统计")
    lines.append("")
    lines.append("|不一致类型|原因码|文件题目笔数|涉及题目数|")
    lines.append("|---|---|---:|---:|")
    for reason in sorted(state.reason_stats):
        stat = state.reason_stats[reason]
        lines.append(_row([REASON_LABELS.get(reason, reason), reason, stat.count, len(stat.entity_ids)]))
    if not state.reason_stats:
        lines.append("|（无）|-|0|0|")
    lines.append("")

    lines.append("## 无法判定原因统计")
    lines.append("")
    lines.append("|原因|原因码|文件题目笔数|")
    lines.append("|---|---|---:|")
    for cause in sorted(state.excluded):
        lines.append(_row([CAUSE_LABELS.get(cause, cause), cause, state.excluded[cause]]))
    if not state.excluded:
        lines.append("|（无）|-|0|")
    lines.append("")

    lines.append(f"## 前 {sample_limit} 笔明细")
    lines.append("")
    lines.append(_row(SAMPLE_HEADERS))
    lines.append("|" + "|".join("---" for _ in SAMPLE_HEADERS) + "|")
    for sample in state.samples[:sample_limit]:
        lines.append(
            _row(
                [
                    sample.document_item_id,
                    sample.item_id,
                    sample.document_id,
                    sample.document_repo_id,
                    sample.repo_body_id,
                    ", ".join(sample.item_year_bodies),
                    REASON_LABELS.get(sample.reason, sample.reason),
                ]
            )
        )

    return "\n".join(lines) + "\n"


class ReportEmitter:
    """把报告写到固定位置"""

    def __init__(self, path: Union[str, Path], sample_limit: int):
        self.path = Path(path)
        self.sample_limit = sample_limit

    def emit(self, state: CheckpointModel) -> Path:
        """
        渲染并写入报告

        Raises:
            ReportWriteError: 写入失败
        """
        text = render_report(state, self.sample_limit)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(temp_path, self.path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise ReportWriteError(
                f"写入报告失败: {self.path}",
                {"path": str(self.path), "error": str(e), "last_checkpoint_key": state.last_key},
            )
        logger.info("报告已写入: %s", self.path)
        return self.path


__all__ = ["REPORT_TITLE", "render_report", "ReportEmitter"]

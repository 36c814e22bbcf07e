"""
docaudit.engine - 扫描引擎

状态机:
    INIT -> LOADING_REFERENCES -> SCANNING <-> CHECKPOINTING -> DONE
    INIT -> FINALIZE_ONLY -> DONE

- 每完成 checkpoint_interval 个批次写一次续跑档，输入读尽时再写一次
- 外部停止（--max-batches 或信号）只在批次边界生效: 进行中的批次完成判定与
  累积后，强制写入续跑档再结束
- 续跑档一次写入 (游标, 统计)，两者永远对应同一个批次边界；
  中途崩溃时内存中尚未提交的统计随之丢弃，续跑从一致的状态重放，不会重复计数
- finalize-only 只读取续跑档并输出报告，不连数据库、不写续跑档
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .aggregator import Aggregator
from .batching import Batch, BatchAccumulator
from .checkpoint import CheckpointStore
from .config import AuditSettings, TableSettings
from .detector import classify
from .errors import AuditError, CheckpointMismatchError, CheckpointNotFoundError, with_checkpoint_key
from .models import CheckpointModel, ScanWindow
from .reference_index import ReferenceIndex, load_reference_index
from .report import ReportEmitter
from .resolver import BatchResolver
from .scanner import CursorScanner

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    INIT = "init"
    LOADING_REFERENCES = "loading_references"
    SCANNING = "scanning"
    CHECKPOINTING = "checkpointing"
    FINALIZE_ONLY = "finalize_only"
    DONE = "done"


class StopReason:
    EXHAUSTED = "exhausted"
    MAX_BATCHES = "max_batches"
    REQUESTED = "requested"
    FINALIZE_ONLY = "finalize_only"


@dataclass
class RunOptions:
    window: ScanWindow = field(default_factory=ScanWindow)
    max_batches: Optional[int] = None
    finalize_only: bool = False
    reset: bool = False


@dataclass
class RunResult:
    stop_reason: str
    batches_this_run: int
    last_key: Optional[str]
    report_path: str
    checkpoint_path: str
    counters: Dict[str, int]
    violations: int
    distinct_entities: int

    @property
    def cancelled(self) -> bool:
        return self.stop_reason in (StopReason.MAX_BATCHES, StopReason.REQUESTED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_reason": self.stop_reason,
            "cancelled": self.cancelled,
            "batches_this_run": self.batches_this_run,
            "last_key": self.last_key,
            "report_path": self.report_path,
            "checkpoint_path": self.checkpoint_path,
            "counters": self.counters,
            "violations": self.violations,
            "distinct_entities": self.distinct_entities,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class AuditEngine:
    """
    单一串行流的检查点扫描引擎

    Args:
        store: 集合访问对象（需提供 load_mapping / fetch_page / lookup_linked）
        settings: 扫描参数
        tables: 表与栏位名称
        checkpoint_store: 续跑档存取，默认依 settings.checkpoint_path
        emitter: 报告输出，默认依 settings.report_path
        clock: 续跑档时间戳来源
    """

    def __init__(
        self,
        store: Any,
        settings: AuditSettings,
        tables: TableSettings,
        *,
        checkpoint_store: Optional[CheckpointStore] = None,
        emitter: Optional[ReportEmitter] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.settings = settings
        self.tables = tables
        self.checkpoints = checkpoint_store or CheckpointStore(settings.checkpoint_path)
        self.emitter = emitter or ReportEmitter(settings.report_path, settings.sample_limit)
        self._clock = clock
        self._stop_requested = False
        self._committed_key: Optional[str] = None
        self.state = EngineState.INIT
        self.history: List[EngineState] = [EngineState.INIT]

    # ---------- 状态与停止 ----------

    def _enter(self, state: EngineState) -> None:
        logger.debug("引擎状态 %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def request_stop(self) -> None:
        """请求在当前批次完成后停止（可由信号处理器调用）"""
        if not self._stop_requested:
            logger.info("收到停止请求，将在当前批次完成后写入续跑档并结束")
        self._stop_requested = True

    # ---------- 入口 ----------

    def run(self, options: Optional[RunOptions] = None) -> RunResult:
        options = options or RunOptions()
        try:
            if options.finalize_only:
                return self._finalize_only()
            return self._scan(options)
        except AuditError as e:
            raise with_checkpoint_key(e, self._committed_key)

    def _finalize_only(self) -> RunResult:
        self._enter(EngineState.FINALIZE_ONLY)
        checkpoint = self.checkpoints.load()
        if checkpoint is None:
            raise CheckpointNotFoundError(
                "找不到续跑档，无法输出暂存结果",
                {"path": str(self.checkpoints.path)},
            )
        self._committed_key = checkpoint.last_key
        report_path = self.emitter.emit(checkpoint)
        self._enter(EngineState.DONE)
        return self._result(StopReason.FINALIZE_ONLY, 0, checkpoint, report_path)

    def _load_resume_state(self, options: RunOptions) -> Optional[CheckpointModel]:
        if options.reset and self.checkpoints.delete():
            logger.info("已删除既有续跑档: %s", self.checkpoints.path)
        checkpoint = self.checkpoints.load()
        if checkpoint is None:
            return None
        self._committed_key = checkpoint.last_key
        if checkpoint.window != options.window:
            raise CheckpointMismatchError(
                "续跑档的扫描时间窗与本次参数不一致，请使用相同的 --start-date/--end-date 或加上 --reset",
                {
                    "checkpoint_window": checkpoint.window.model_dump(mode="json"),
                    "requested_window": options.window.model_dump(mode="json"),
                },
            )
        logger.info("已读取续跑档，从 key %s 开始", checkpoint.last_key or "起始")
        return checkpoint

    def _scan(self, options: RunOptions) -> RunResult:
        settings = self.settings
        checkpoint = self._load_resume_state(options)
        if checkpoint is not None:
            aggregator = Aggregator.from_checkpoint(checkpoint, settings.sample_limit)
        else:
            aggregator = Aggregator(settings.sample_limit)
        cursor = self._committed_key

        self._enter(EngineState.LOADING_REFERENCES)
        reference_index = load_reference_index(self.store, self.tables)

        self._enter(EngineState.SCANNING)
        scanner = CursorScanner(
            self.store,
            after_key=cursor,
            window=options.window,
            fetch_size=settings.fetch_size,
            progress_every=settings.progress_every,
        )
        accumulator = BatchAccumulator(settings.batch_threshold, start_index=aggregator.counters.batches)
        resolver = BatchResolver(self.store)

        batches_this_run = 0
        batches_since_save = 0
        stop_reason = StopReason.EXHAUSTED

        for row in scanner.iter_rows():
            batch = accumulator.add(row)
            if batch is None:
                continue
            self._process(batch, reference_index, resolver, aggregator)
            cursor = batch.last_key
            batches_this_run += 1
            batches_since_save += 1

            if batches_since_save >= settings.checkpoint_interval:
                self._checkpoint(aggregator, cursor, options.window)
                batches_since_save = 0

            if options.max_batches is not None and batches_this_run >= options.max_batches:
                logger.info("已达 max-batches 限制 (%d)，停止扫描", options.max_batches)
                stop_reason = StopReason.MAX_BATCHES
                break
            if self._stop_requested:
                stop_reason = StopReason.REQUESTED
                break

        if stop_reason == StopReason.EXHAUSTED:
            tail = accumulator.drain()
            if tail is not None:
                self._process(tail, reference_index, resolver, aggregator)
                cursor = tail.last_key
                batches_this_run += 1

        final = self._checkpoint(aggregator, cursor, options.window)
        report_path = self.emitter.emit(final)
        self._enter(EngineState.DONE)
        logger.info(
            "扫描结束 (%s)：本次批次 %d，不一致文件题目笔数 %d",
            stop_reason,
            batches_this_run,
            final.counters.violation_rows,
        )
        return self._result(stop_reason, batches_this_run, final, report_path)

    # ---------- 阶段 ----------

    def _process(
        self,
        batch: Batch,
        reference_index: ReferenceIndex,
        resolver: BatchResolver,
        aggregator: Aggregator,
    ) -> None:
        logger.info(
            "开始处理批次 %d，itemId 数量 %d，题目笔数 %d",
            batch.index,
            len(batch.keys),
            len(batch.rows),
        )
        resolution = resolver.resolve(batch)
        for row in batch.rows:
            aggregator.observe(classify(row, reference_index, resolution))
        aggregator.finish_batch(len(batch.rows))

    def _checkpoint(self, aggregator: Aggregator, cursor: Optional[str], window: ScanWindow) -> CheckpointModel:
        self._enter(EngineState.CHECKPOINTING)
        checkpoint = aggregator.to_checkpoint(last_key=cursor, window=window, saved_at=self._clock())
        self.checkpoints.save(checkpoint)
        self._committed_key = cursor
        logger.info("已写入续跑档，key %s", cursor or "未知")
        self._enter(EngineState.SCANNING)
        return checkpoint

    def _result(
        self,
        stop_reason: str,
        batches_this_run: int,
        state: CheckpointModel,
        report_path,
    ) -> RunResult:
        return RunResult(
            stop_reason=stop_reason,
            batches_this_run=batches_this_run,
            last_key=state.last_key,
            report_path=str(report_path),
            checkpoint_path=str(self.checkpoints.path),
            counters=state.counters.model_dump(),
            violations=state.counters.violation_rows,
            distinct_entities=len(state.all_entity_ids),
        )


__all__ = [
    "EngineState",
    "StopReason",
    "RunOptions",
    "RunResult",
    "AuditEngine",
]

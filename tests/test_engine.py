# -*- coding: utf-8 -*-
"""
扫描引擎测试

标准数据集（见 conftest.build_dataset_rows）在门槛 3 下切成 13 个批次，预期结果:
- 违规 8 笔，涉及题目 I1/I2/I3
- 已判定 16 笔，无法判定 24 笔
- 前 5 笔样本: 000005, 000012, 000016, 000017, 000025

验证:
- 中断后续跑的最终结果与一次跑完逐字节相同
- 中途失败时内存中未提交的统计被丢弃，续跑不重复计数
- --max-batches 与停止请求只在批次边界生效
- finalize-only 不扫描、不改续跑档，重复输出逐字节相同
- 续跑档时间窗与本次参数不一致时拒绝续跑
"""

from datetime import datetime, timezone

import pytest

from docaudit.checkpoint import CheckpointStore
from docaudit.engine import AuditEngine, EngineState, RunOptions, StopReason
from docaudit.errors import (
    CheckpointMismatchError,
    CheckpointNotFoundError,
    ExitCode,
    ReferenceLoadError,
    ScanError,
)
from docaudit.models import ScanWindow

from tests.fakes import FakeDocumentStore, fixed_clock, make_row

EXPECTED_SAMPLES = ["000005", "000012", "000016", "000017", "000025"]


def _engine(store, settings, tables):
    return AuditEngine(store, settings, tables, clock=fixed_clock)


class TestFullRun:
    def test_single_run_results(self, dataset_store, make_settings, tables):
        store = dataset_store()
        settings = make_settings()
        engine = _engine(store, settings, tables)

        result = engine.run()

        assert result.stop_reason == StopReason.EXHAUSTED
        assert not result.cancelled
        assert result.batches_this_run == 13
        assert result.last_key == "000040"
        assert result.violations == 8
        assert result.distinct_entities == 3
        assert result.counters == {
            "scanned_rows": 40,
            "classified_rows": 16,
            "excluded_rows": 24,
            "violation_rows": 8,
            "batches": 13,
        }
        assert engine.state is EngineState.DONE

        checkpoint = CheckpointStore(settings.checkpoint_path).load()
        assert checkpoint.all_entity_ids == ["I1", "I2", "I3"]
        assert checkpoint.excluded == {
            "missing_document_id": 1,
            "missing_item_id": 1,
            "missing_linked_values": 3,
            "missing_repository": 9,
            "missing_repository_body": 10,
        }
        assert [s.document_item_id for s in checkpoint.samples] == EXPECTED_SAMPLES
        assert settings.report_path.exists()

    def test_one_lookup_per_batch(self, dataset_store, make_settings, tables):
        store = dataset_store()
        _engine(store, make_settings(), tables).run()

        assert len(store.lookup_calls) == 13
        assert all(len(keys) <= 3 for keys in store.lookup_calls)

    def test_state_transitions(self, dataset_store, make_settings, tables):
        engine = _engine(dataset_store(), make_settings(checkpoint_interval=100), tables)
        engine.run()

        assert engine.history == [
            EngineState.INIT,
            EngineState.LOADING_REFERENCES,
            EngineState.SCANNING,
            EngineState.CHECKPOINTING,
            EngineState.SCANNING,
            EngineState.DONE,
        ]

    def test_tail_batch_flushed_at_end(self, make_settings, tables):
        store = FakeDocumentStore(
            rows=[make_row(n, f"I{n}", "D1") for n in range(1, 6)],
            documents={"D1": "R1"},
            repositories={"R1": "B1"},
            linked=[("I2", "B2")],
        )
        result = _engine(store, make_settings(batch_threshold=10), tables).run()

        assert result.batches_this_run == 1
        assert result.last_key == "000005"
        assert result.violations == 1
        assert store.lookup_calls == [["I1", "I2", "I3", "I4", "I5"]]

    def test_empty_collection(self, make_settings, tables):
        store = FakeDocumentStore()
        settings = make_settings()
        result = _engine(store, settings, tables).run()

        assert result.batches_this_run == 0
        assert result.last_key is None
        assert store.lookup_calls == []
        assert "|（无）|-|0|0|" in settings.report_path.read_text(encoding="utf-8")

    def test_window_limits_scan(self, make_settings, tables):
        jan = datetime(2024, 1, 10, tzinfo=timezone.utc)
        mar = datetime(2024, 3, 10, tzinfo=timezone.utc)
        store = FakeDocumentStore(
            rows=[make_row(1, "I1", "D1", jan), make_row(2, "I2", "D1", mar)],
            documents={"D1": "R1"},
            repositories={"R1": "B1"},
        )
        window = ScanWindow(start_date=datetime(2024, 3, 1, tzinfo=timezone.utc))
        result = _engine(store, make_settings(), tables).run(RunOptions(window=window))

        assert result.counters["scanned_rows"] == 1
        assert result.last_key == "000002"


class TestResume:
    def test_interrupted_runs_match_single_run(self, dataset_store, make_settings, tables, tmp_path):
        single = make_settings(output_dir=str(tmp_path / "single"))
        _engine(dataset_store(), single, tables).run()

        resumed = make_settings(output_dir=str(tmp_path / "resumed"))
        runs = 0
        while True:
            runs += 1
            result = _engine(dataset_store(), resumed, tables).run(RunOptions(max_batches=2))
            if result.stop_reason == StopReason.EXHAUSTED:
                break
            assert result.batches_this_run == 2
            assert runs < 20

        assert runs == 7
        assert resumed.report_path.read_bytes() == single.report_path.read_bytes()
        assert CheckpointStore(resumed.checkpoint_path).load() == CheckpointStore(single.checkpoint_path).load()

    def test_failure_discards_uncommitted_progress(self, dataset_store, make_settings, tables, tmp_path):
        single = make_settings(output_dir=str(tmp_path / "single"))
        _engine(dataset_store(), single, tables).run()

        settings = make_settings(output_dir=str(tmp_path / "crash"))
        failing = dataset_store()
        failing.fail_lookup_on = 6

        with pytest.raises(ScanError) as exc_info:
            _engine(failing, settings, tables).run()
        err = exc_info.value
        assert err.exit_code == ExitCode.SCAN_ERROR
        # 第 4 个批次结束（第 13 行）时写入的续跑档
        assert err.details["last_checkpoint_key"] == "000013"
        assert CheckpointStore(settings.checkpoint_path).load().counters.batches == 4

        result = _engine(dataset_store(), settings, tables).run()
        assert result.counters["batches"] == 13
        assert result.violations == 8
        assert settings.report_path.read_bytes() == single.report_path.read_bytes()

    def test_resume_restarts_after_checkpoint_key(self, dataset_store, make_settings, tables):
        settings = make_settings()
        _engine(dataset_store(), settings, tables).run(RunOptions(max_batches=1))

        store = dataset_store()
        _engine(store, settings, tables).run()
        assert store.page_calls[0][0] == "000003"

    def test_window_mismatch_rejected(self, dataset_store, make_settings, tables):
        settings = make_settings()
        _engine(dataset_store(), settings, tables).run(RunOptions(max_batches=1))

        window = ScanWindow(end_date=datetime(2024, 1, 1, tzinfo=timezone.utc))
        store = dataset_store()
        with pytest.raises(CheckpointMismatchError) as exc_info:
            _engine(store, settings, tables).run(RunOptions(window=window))
        assert exc_info.value.details["last_checkpoint_key"] == "000003"
        assert store.mapping_calls == []

    def test_reset_discards_checkpoint(self, dataset_store, make_settings, tables):
        settings = make_settings()
        _engine(dataset_store(), settings, tables).run(RunOptions(max_batches=1))

        store = dataset_store()
        result = _engine(store, settings, tables).run(RunOptions(reset=True))

        assert store.page_calls[0][0] is None
        assert result.counters["batches"] == 13
        assert result.counters["scanned_rows"] == 40


class TestStopping:
    def test_max_batches_forces_checkpoint(self, dataset_store, make_settings, tables):
        settings = make_settings(checkpoint_interval=100)
        result = _engine(dataset_store(), settings, tables).run(RunOptions(max_batches=3))

        assert result.stop_reason == StopReason.MAX_BATCHES
        assert result.cancelled
        assert result.batches_this_run == 3
        checkpoint = CheckpointStore(settings.checkpoint_path).load()
        assert checkpoint.last_key == "000010"
        assert checkpoint.counters.scanned_rows == 10

    def test_stop_request_finishes_in_flight_batch(self, dataset_store, make_settings, tables):
        settings = make_settings()
        store = dataset_store()
        engine = _engine(store, settings, tables)
        store.on_lookup = engine.request_stop

        result = engine.run()

        assert result.stop_reason == StopReason.REQUESTED
        assert result.batches_this_run == 1
        assert len(store.lookup_calls) == 1
        checkpoint = CheckpointStore(settings.checkpoint_path).load()
        assert checkpoint.last_key == "000003"
        assert checkpoint.counters.scanned_rows == 3
        assert checkpoint.counters.classified_rows + checkpoint.counters.excluded_rows == 3


class TestFinalizeOnly:
    def test_finalize_is_pure_and_repeatable(self, dataset_store, make_settings, tables):
        settings = make_settings()
        _engine(dataset_store(), settings, tables).run(RunOptions(max_batches=2))
        checkpoint_text = settings.checkpoint_path.read_text(encoding="utf-8")
        settings.report_path.unlink()

        engine = AuditEngine(None, settings, tables)
        first = engine.run(RunOptions(finalize_only=True))
        first_bytes = settings.report_path.read_bytes()
        AuditEngine(None, settings, tables).run(RunOptions(finalize_only=True))

        assert settings.report_path.read_bytes() == first_bytes
        assert settings.checkpoint_path.read_text(encoding="utf-8") == checkpoint_text
        assert first.stop_reason == StopReason.FINALIZE_ONLY
        assert first.last_key == "000006"
        assert engine.history == [EngineState.INIT, EngineState.FINALIZE_ONLY, EngineState.DONE]

    def test_finalize_matches_scan_report(self, dataset_store, make_settings, tables):
        settings = make_settings()
        _engine(dataset_store(), settings, tables).run()
        scanned = settings.report_path.read_bytes()

        AuditEngine(None, settings, tables).run(RunOptions(finalize_only=True))
        assert settings.report_path.read_bytes() == scanned

    def test_finalize_without_checkpoint(self, make_settings, tables):
        settings = make_settings()
        with pytest.raises(CheckpointNotFoundError) as exc_info:
            AuditEngine(None, settings, tables).run(RunOptions(finalize_only=True))
        assert exc_info.value.exit_code == ExitCode.CHECKPOINT_ERROR
        assert not settings.report_path.exists()


class TestFailures:
    def test_reference_failure_aborts_before_scan(self, dataset_store, make_settings, tables):
        settings = make_settings()
        store = dataset_store()
        store.fail_mapping_table = "documents"

        with pytest.raises(ReferenceLoadError) as exc_info:
            _engine(store, settings, tables).run()
        assert exc_info.value.details["last_checkpoint_key"] is None
        assert store.page_calls == []
        assert not settings.checkpoint_path.exists()

    def test_fetch_failure_reports_committed_key(self, dataset_store, make_settings, tables):
        settings = make_settings()
        _engine(dataset_store(), settings, tables).run(RunOptions(max_batches=2))

        store = dataset_store()
        store.fail_fetch_on = 1
        with pytest.raises(ScanError) as exc_info:
            _engine(store, settings, tables).run()
        assert exc_info.value.details["last_checkpoint_key"] == "000006"

# -*- coding: utf-8 -*-
"""
CLI 测试

验证 main() 的退出码与 stdout JSON:
- 参数错误（含 finalize-only 搭配扫描参数）-> 6 (VALIDATION_ERROR)
- 缺少 DSN -> 2 (CONFIG_ERROR)
- finalize-only 无续跑档 -> 10 (CHECKPOINT_ERROR)
- 以 Fake store 完整跑一次，再以 finalize-only 输出相同报告
"""

import json
import signal
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from docaudit import cli
from docaudit.errors import ExitCode, ValidationError


def _run(capsys, argv):
    code = cli.main(argv)
    out = capsys.readouterr().out
    return code, json.loads(out)


@pytest.fixture
def fake_store(monkeypatch, dataset_store):
    store = dataset_store()
    created = []

    def factory(dsn, tables, retry):
        created.append(dsn)
        return store

    monkeypatch.setattr(cli, "PostgresDocumentStore", factory)
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://audit:secret@db/bank")
    store.created = created
    return store


class TestArguments:
    def test_help(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--help"])
        assert exc_info.value.code == 0

    def test_finalize_and_reset_mutually_exclusive(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--finalize-only", "--reset"])
        assert exc_info.value.code == 2

    def test_invalid_date(self, capsys, tmp_path):
        code, data = _run(capsys, ["--output-dir", str(tmp_path), "--start-date", "yesterday"])
        assert code == ExitCode.VALIDATION_ERROR
        assert data["ok"] is False
        assert data["code"] == "VALIDATION_ERROR"

    def test_start_must_precede_end(self, capsys, tmp_path):
        code, data = _run(
            capsys,
            ["--output-dir", str(tmp_path), "--start-date", "2024-02-01", "--end-date", "2024-01-01"],
        )
        assert code == ExitCode.VALIDATION_ERROR

    def test_non_positive_max_batches(self, capsys, tmp_path):
        code, data = _run(capsys, ["--output-dir", str(tmp_path), "--max-batches", "0"])
        assert code == ExitCode.VALIDATION_ERROR
        assert data["detail"]["argument"] == "--max-batches"

    @pytest.mark.parametrize(
        "extra, conflicts",
        [
            (["--start-date", "2024-01-01"], ["--start-date"]),
            (["--end-date", "2024-02-01"], ["--end-date"]),
            (["--max-batches", "1"], ["--max-batches"]),
            (["--start-date", "2024-01-01", "--max-batches", "2"], ["--start-date", "--max-batches"]),
        ],
    )
    def test_finalize_only_rejects_scan_arguments(self, capsys, tmp_path, extra, conflicts):
        code, data = _run(capsys, ["--output-dir", str(tmp_path), "--finalize-only", *extra])
        assert code == ExitCode.VALIDATION_ERROR
        assert data["code"] == "VALIDATION_ERROR"
        assert data["detail"]["conflicts"] == conflicts
        # 参数校验先于读取续跑档
        assert not (tmp_path / "document_items_repo_itemyear_mismatch.md").exists()

    def test_missing_dsn(self, capsys, tmp_path):
        code, data = _run(capsys, ["--output-dir", str(tmp_path)])
        assert code == ExitCode.CONFIG_ERROR

    def test_invalid_log_level(self, capsys, tmp_path):
        config_path = tmp_path / "config.toml"
        config_path.write_text('[logging]\nlevel = "LOUD"\n', encoding="utf-8")
        code, data = _run(capsys, ["--config", str(config_path), "--output-dir", str(tmp_path)])
        assert code == ExitCode.CONFIG_ERROR


class TestParseDatetime:
    def test_date_only_is_utc_midnight(self):
        assert cli._parse_datetime("2024-01-15", "--start-date") == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_z_suffix(self):
        assert cli._parse_datetime("2024-01-15T08:00:00Z", "--start-date") == datetime(
            2024, 1, 15, 8, tzinfo=timezone.utc
        )

    def test_offset_converted_to_utc(self):
        parsed = cli._parse_datetime("2024-01-15T08:00:00+08:00", "--start-date")
        assert parsed == datetime(2024, 1, 15, 0, tzinfo=timezone.utc)
        assert parsed.utcoffset().total_seconds() == 0

    def test_none(self):
        assert cli._parse_datetime(None, "--end-date") is None

    def test_invalid(self):
        with pytest.raises(ValidationError):
            cli._parse_datetime("15/01/2024", "--end-date")


class TestRun:
    def test_full_run_then_finalize(self, capsys, tmp_path, fake_store):
        out_dir = tmp_path / "outputs"
        code, data = _run(capsys, ["--output-dir", str(out_dir), "--batch-threshold", "3"])

        assert code == 0
        assert data["ok"] is True
        assert data["state"] == "done"
        assert data["stop_reason"] == "exhausted"
        assert data["cancelled"] is False
        assert data["counters"]["violation_rows"] == 8
        assert data["last_key"] == "000040"
        assert fake_store.entered and fake_store.closed
        assert fake_store.created == ["postgresql://audit:secret@db/bank"]

        report_path = out_dir / "document_items_repo_itemyear_mismatch.md"
        scanned = report_path.read_bytes()

        code, data = _run(capsys, ["--output-dir", str(out_dir), "--finalize-only"])
        assert code == 0
        assert data["stop_reason"] == "finalize_only"
        assert data["report_path"] == str(report_path)
        # finalize-only 重新输出的报告只依赖续跑档
        assert report_path.read_bytes() == scanned

    def test_max_batches(self, capsys, tmp_path, fake_store):
        code, data = _run(
            capsys,
            ["--output-dir", str(tmp_path), "--batch-threshold", "3", "--max-batches", "2"],
        )
        assert code == 0
        assert data["cancelled"] is True
        assert data["batches_this_run"] == 2
        assert data["last_key"] == "000006"

    def test_config_file_and_json_out(self, capsys, tmp_path, fake_store):
        config_path = tmp_path / "config.toml"
        config_path.write_text(
            f'[audit]\nbatch_threshold = 3\noutput_dir = "{(tmp_path / "cfg-out").as_posix()}"\n',
            encoding="utf-8",
        )
        json_out = tmp_path / "result" / "run.json"

        code, data = _run(capsys, ["--config", str(config_path), "--json-out", str(json_out)])

        assert code == 0
        assert (tmp_path / "cfg-out" / "document_items_repo_itemyear_mismatch.md").exists()
        assert json.loads(json_out.read_text(encoding="utf-8")) == data

    def test_finalize_without_checkpoint(self, capsys, tmp_path):
        code, data = _run(capsys, ["--output-dir", str(tmp_path), "--finalize-only"])
        assert code == ExitCode.CHECKPOINT_ERROR
        assert data["code"] == "CHECKPOINT_NOT_FOUND"
        assert data["stage"] == "checkpoint_io"

    def test_scan_error_names_stage_and_key(self, capsys, tmp_path, fake_store):
        fake_store.fail_lookup_on = 1
        code = cli.main(["--output-dir", str(tmp_path), "--batch-threshold", "3"])
        captured = capsys.readouterr()
        data = json.loads(captured.out)

        assert code == ExitCode.SCAN_ERROR
        assert data["stage"] == "scanning"
        assert data["detail"]["last_checkpoint_key"] is None
        assert "阶段=scanning" in captured.err

    def test_unexpected_error(self, capsys, tmp_path, monkeypatch):
        monkeypatch.setattr(cli, "run", MagicMock(side_effect=RuntimeError("boom")))
        code, data = _run(capsys, ["--output-dir", str(tmp_path)])
        assert code == ExitCode.AUDIT_ERROR
        assert data["detail"]["exception_type"] == "RuntimeError"


class TestSignals:
    def test_signals_request_stop_and_restore(self):
        engine = MagicMock()
        before = signal.getsignal(signal.SIGTERM)

        with cli._stop_on_signals(engine):
            handler = signal.getsignal(signal.SIGTERM)
            handler(signal.SIGTERM, None)
            assert signal.getsignal(signal.SIGINT) is handler

        engine.request_stop.assert_called_once()
        assert signal.getsignal(signal.SIGTERM) is before

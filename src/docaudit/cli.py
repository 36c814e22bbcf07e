"""
docaudit.cli - 命令行入口

用法:
    docaudit --config ./audit.toml
    docaudit --max-batches 10            # 处理 10 个批次后写入续跑档并结束
    docaudit --finalize-only             # 只依续跑档输出报告，不连数据库
    docaudit --start-date 2024-01-01 --end-date 2024-07-01
    docaudit --reset                     # 丢弃既有续跑档，从头扫描

SIGINT / SIGTERM 不会中断进行中的批次: 引擎在批次边界停下、写入续跑档后正常结束，
输出中 cancelled 为 true。
"""

import argparse
import logging
import signal
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from . import __version__
from .config import Config, add_config_argument, get_dsn
from .engine import AuditEngine, RunOptions
from .errors import AuditError, ConfigValueError, ValidationError, make_success_result
from .io import add_output_arguments, get_output_options, output_error, output_json
from .models import ScanWindow
from .store import PostgresDocumentStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _parse_datetime(value: Optional[str], name: str) -> Optional[datetime]:
    """解析 ISO 日期或时间，未带时区者视为 UTC"""
    if value is None:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(
            f"{name} 不是有效的 ISO 日期: {value}",
            {"argument": name, "value": value},
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _build_window(args: argparse.Namespace) -> ScanWindow:
    start = _parse_datetime(args.start_date, "--start-date")
    end = _parse_datetime(args.end_date, "--end-date")
    if start is not None and end is not None and start >= end:
        raise ValidationError(
            "--start-date 必须早于 --end-date",
            {"start_date": args.start_date, "end_date": args.end_date},
        )
    return ScanWindow(start_date=start, end_date=end)


def _check_positive(args: argparse.Namespace) -> None:
    for name in ("max_batches", "batch_threshold", "checkpoint_interval", "sample_limit"):
        value = getattr(args, name)
        if value is not None and value <= 0:
            flag = "--" + name.replace("_", "-")
            raise ValidationError(
                f"{flag} 必须为正整数: {value}",
                {"argument": flag, "value": value},
            )


def _check_finalize_only(args: argparse.Namespace) -> None:
    if not args.finalize_only:
        return
    conflicts = [
        flag
        for flag, value in (
            ("--start-date", args.start_date),
            ("--end-date", args.end_date),
            ("--max-batches", args.max_batches),
        )
        if value is not None
    ]
    if conflicts:
        raise ValidationError(
            f"--finalize-only 不扫描，不能与 {'、'.join(conflicts)} 同时使用",
            {"argument": "--finalize-only", "conflicts": conflicts},
        )


def _configure_logging(config: Config, verbose: bool) -> None:
    settings = config.logging_settings()
    level = logging.DEBUG if verbose else logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        raise ConfigValueError(
            f"无效的日志级别: {settings.level}",
            {"section": "logging", "key": "level", "value": settings.level},
        )
    logging.basicConfig(level=level, format=settings.format, datefmt=LOG_DATEFMT)


@contextmanager
def _stop_on_signals(engine: AuditEngine) -> Iterator[None]:
    """在作用范围内把 SIGINT/SIGTERM 转为引擎的停止请求"""

    def handler(signum, frame):
        logger.warning("收到信号 %s", signal.Signals(signum).name)
        engine.request_stop()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docaudit",
        description="扫描文件题目，统计储存库学程与题目学程不一致的情形（可中断、可续跑）",
    )
    add_config_argument(parser)
    parser.add_argument("--max-batches", type=int, dest="max_batches", metavar="N", help="本次最多处理的批次数")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--finalize-only",
        action="store_true",
        dest="finalize_only",
        help="不扫描，只依现有续跑档输出报告",
    )
    mode.add_argument("--reset", action="store_true", help="丢弃既有续跑档后从头扫描")
    parser.add_argument("--start-date", dest="start_date", metavar="DATE", help="只扫描 added_on >= DATE 的行")
    parser.add_argument("--end-date", dest="end_date", metavar="DATE", help="只扫描 added_on < DATE 的行")
    parser.add_argument("--batch-threshold", type=int, dest="batch_threshold", metavar="N")
    parser.add_argument("--checkpoint-interval", type=int, dest="checkpoint_interval", metavar="N")
    parser.add_argument("--sample-limit", type=int, dest="sample_limit", metavar="N")
    parser.add_argument("--output-dir", dest="output_dir", metavar="DIR")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    add_output_arguments(parser)
    return parser


def run(args: argparse.Namespace) -> dict:
    """依解析后的参数执行一次扫描或 finalize-only，返回成功结果"""
    config = Config(args.config_path)
    config.load()
    _configure_logging(config, args.verbose)
    _check_positive(args)
    _check_finalize_only(args)
    window = _build_window(args)

    settings = config.audit_settings(
        batch_threshold=args.batch_threshold,
        checkpoint_interval=args.checkpoint_interval,
        sample_limit=args.sample_limit,
        output_dir=args.output_dir,
    )
    tables = config.table_settings()

    if args.finalize_only:
        engine = AuditEngine(None, settings, tables)
        result = engine.run(RunOptions(finalize_only=True))
        return make_success_result(state=engine.state.value, **result.to_dict())

    dsn = get_dsn(config)
    retry = config.retry_settings()
    options = RunOptions(window=window, max_batches=args.max_batches, reset=args.reset)
    with PostgresDocumentStore(dsn, tables, retry) as store:
        engine = AuditEngine(store, settings, tables)
        with _stop_on_signals(engine):
            result = engine.run(options)
    return make_success_result(state=engine.state.value, **result.to_dict())


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    opts = get_output_options(args)
    try:
        result = run(args)
    except AuditError as e:
        return output_error(e, **opts)
    except Exception as e:
        logger.exception("未预期的错误")
        return output_error(
            AuditError(f"未预期的错误: {e}", {"exception_type": type(e).__name__}),
            **opts,
        )
    output_json(result, **opts)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""
docaudit.io - CLI 输出工具

约定:
- stdout: 机器可读的 JSON 结果
- stderr: 人读信息（日志、错误摘要）
- 成功: {ok: true, ...}
- 失败: {ok: false, code, message, stage, detail}，退出码取自错误类型
"""

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import AuditError


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "__dict__"):
        return obj.__dict__
    return str(obj)


def output_json(
    data: Any,
    pretty: bool = False,
    quiet: bool = False,
    json_out: Optional[str] = None,
) -> None:
    """
    输出 JSON 到 stdout，可选同时写入文件

    Args:
        data: 要输出的数据
        pretty: 是否格式化输出
        quiet: 静默模式（不输出 stderr 人读信息）
        json_out: 可选的 JSON 输出文件路径
    """
    indent = 2 if pretty else None
    json_str = json.dumps(data, ensure_ascii=False, indent=indent, default=_json_serializer)
    print(json_str, file=sys.stdout)

    if json_out:
        try:
            out_path = Path(json_out)
            out_path.parent.mkdir(parents=True, exist_ok=True)
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(json_str)
                f.write("\n")
            log_info(f"JSON 输出已写入: {json_out}", quiet=quiet)
        except OSError as e:
            log_error(f"写入 JSON 输出文件失败: {json_out} - {e}")


def log_info(message: str, quiet: bool = False) -> None:
    if not quiet:
        print(message, file=sys.stderr)


def log_error(message: str, quiet: bool = False) -> None:
    if not quiet:
        print(f"ERROR: {message}", file=sys.stderr)


def output_error(
    error: AuditError,
    pretty: bool = False,
    quiet: bool = False,
    json_out: Optional[str] = None,
) -> int:
    """
    输出错误（stdout JSON + stderr 人读摘要）

    人读摘要带出失败阶段与最后一次写入续跑档的 key，便于操作者判断如何续跑。

    Returns:
        对应的退出码
    """
    output_json(error.to_dict(), pretty=pretty, quiet=quiet, json_out=json_out)
    parts = [f"[{error.error_type}]"]
    if error.stage:
        parts.append(f"阶段={error.stage}")
    if "last_checkpoint_key" in error.details:
        parts.append(f"最后续跑 key={error.details['last_checkpoint_key'] or '-'}")
    parts.append(error.message)
    log_error(" ".join(parts), quiet=quiet)
    return error.exit_code


def add_output_arguments(parser) -> None:
    """
    为 argparse.ArgumentParser 添加输出格式参数

    添加的参数:
        --pretty: 格式化 JSON 输出
        --quiet/-q: 静默模式
        --json-out: JSON 输出文件路径（同时写入 stdout 和文件）
    """
    parser.add_argument(
        "--pretty",
        action="store_true",
        help="格式化 JSON 输出（便于阅读）",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="静默模式（不输出 stderr 人读信息）",
    )
    parser.add_argument(
        "--json-out",
        dest="json_out",
        metavar="PATH",
        help="JSON 输出文件路径（同时写入 stdout 和文件，自动创建父目录）",
    )


def get_output_options(args) -> Dict[str, Any]:
    return {
        "pretty": getattr(args, "pretty", False),
        "quiet": getattr(args, "quiet", False),
        "json_out": getattr(args, "json_out", None),
    }


__all__ = [
    "output_json",
    "output_error",
    "log_info",
    "log_error",
    "add_output_arguments",
    "get_output_options",
]

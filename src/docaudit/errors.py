"""
docaudit.errors - 错误定义模块

定义扫描引擎各阶段可能抛出的异常类型，统一错误码和错误消息格式。

退出码约定:
    0   - 成功
    1   - 通用错误 (AUDIT_ERROR)
    2   - 配置错误 (CONFIG_ERROR)
    3   - 数据库错误 (DATABASE_ERROR)
    5   - 报告写入错误 (REPORT_WRITE_ERROR)
    6   - 校验错误 (VALIDATION_ERROR)
    8   - 参照索引加载错误 (REFERENCE_LOAD_ERROR)
    9   - 扫描错误 (SCAN_ERROR)
    10  - 续跑档 I/O 错误 (CHECKPOINT_ERROR)

阶段标识 (stage 字段):
    reference_loading / scanning / checkpoint_io / report_write
"""

from typing import Any, Dict, Optional

# =============================================================================
# 阶段常量
# =============================================================================


class Stage:
    """引擎阶段标识，用于终端错误消息"""

    CONFIG = "config"
    REFERENCE_LOADING = "reference_loading"
    SCANNING = "scanning"
    CHECKPOINT_IO = "checkpoint_io"
    REPORT_WRITE = "report_write"


# =============================================================================
# 退出码枚举
# =============================================================================


class ExitCode:
    """退出码常量"""

    SUCCESS = 0
    AUDIT_ERROR = 1
    CONFIG_ERROR = 2
    DATABASE_ERROR = 3
    REPORT_WRITE_ERROR = 5
    VALIDATION_ERROR = 6
    REFERENCE_LOAD_ERROR = 8
    SCAN_ERROR = 9
    CHECKPOINT_ERROR = 10


# =============================================================================
# 基础异常类
# =============================================================================


class AuditError(Exception):
    """docaudit 基础异常类"""

    exit_code: int = ExitCode.AUDIT_ERROR
    error_type: str = "AUDIT_ERROR"
    stage: Optional[str] = None

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        转换为可序列化的字典格式

        格式: {ok: false, code: str, message: str, stage: str, detail: dict}
        """
        return {
            "ok": False,
            "code": self.error_type,
            "message": self.message,
            "stage": self.stage,
            "detail": self.details,
        }


# =============================================================================
# 配置相关错误 (exit_code = 2)
# =============================================================================


class ConfigError(AuditError):
    """配置相关错误"""

    exit_code = ExitCode.CONFIG_ERROR
    error_type = "CONFIG_ERROR"
    stage = Stage.CONFIG


class ConfigNotFoundError(ConfigError):
    """配置文件未找到"""

    error_type = "CONFIG_NOT_FOUND"


class ConfigParseError(ConfigError):
    """配置文件解析错误"""

    error_type = "CONFIG_PARSE_ERROR"


class ConfigValueError(ConfigError):
    """配置值无效"""

    error_type = "CONFIG_VALUE_ERROR"


# =============================================================================
# 数据库相关错误 (exit_code = 3)
# =============================================================================


class DatabaseError(AuditError):
    """数据库相关错误"""

    exit_code = ExitCode.DATABASE_ERROR
    error_type = "DATABASE_ERROR"


class DbConnectionError(DatabaseError):
    """数据库连接错误"""

    error_type = "CONNECTION_ERROR"


class QueryError(DatabaseError):
    """数据库查询错误"""

    error_type = "QUERY_ERROR"


# =============================================================================
# 校验错误 (exit_code = 6)
# =============================================================================


class ValidationError(AuditError):
    """输入验证错误（CLI 参数、日期格式等）"""

    exit_code = ExitCode.VALIDATION_ERROR
    error_type = "VALIDATION_ERROR"


# =============================================================================
# 阶段错误
# =============================================================================


class ReferenceLoadError(AuditError):
    """参照索引加载失败，整次运行中止（无部分索引模式）"""

    exit_code = ExitCode.REFERENCE_LOAD_ERROR
    error_type = "REFERENCE_LOAD_ERROR"
    stage = Stage.REFERENCE_LOADING


class ScanError(AuditError):
    """主集合扫描或批次查询失败"""

    exit_code = ExitCode.SCAN_ERROR
    error_type = "SCAN_ERROR"
    stage = Stage.SCANNING


class CheckpointError(AuditError):
    """续跑档读写错误"""

    exit_code = ExitCode.CHECKPOINT_ERROR
    error_type = "CHECKPOINT_ERROR"
    stage = Stage.CHECKPOINT_IO


class CheckpointNotFoundError(CheckpointError):
    """续跑档不存在（finalize-only 模式下为致命错误）"""

    error_type = "CHECKPOINT_NOT_FOUND"


class CheckpointCorruptError(CheckpointError):
    """续跑档内容无法解析或结构不合法"""

    error_type = "CHECKPOINT_CORRUPT"


class CheckpointMismatchError(CheckpointError):
    """续跑档的扫描时间窗与本次参数不一致"""

    error_type = "CHECKPOINT_MISMATCH"


class ReportWriteError(AuditError):
    """报告写入失败"""

    exit_code = ExitCode.REPORT_WRITE_ERROR
    error_type = "REPORT_WRITE_ERROR"
    stage = Stage.REPORT_WRITE


# =============================================================================
# 工具函数
# =============================================================================


def make_success_result(**kwargs) -> Dict[str, Any]:
    """
    构造成功结果

    Returns:
        {ok: true, ...kwargs}
    """
    return {"ok": True, **kwargs}


def with_checkpoint_key(error: AuditError, last_key: Optional[str]) -> AuditError:
    """在错误详情中附上最后一次成功写入续跑档的游标，便于重跑时接续"""
    error.details.setdefault("last_checkpoint_key", last_key)
    return error

"""
docaudit.checkpoint - 续跑档存取

save() 先写同目录临时文件再 os.replace，后续 load() 不会读到写了一半的内容。
load() 在文件不存在或内容为空时返回 None；内容无法解析或结构不合法时抛出
CheckpointCorruptError，不会默默当作空续跑档。

续跑档由单一进程独占，同一文件的并发运行须由操作者避免。
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import CheckpointCorruptError, CheckpointError
from .models import CheckpointModel

logger = logging.getLogger(__name__)


class CheckpointStore:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _temp_path(self) -> Path:
        return self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")

    def save(self, checkpoint: CheckpointModel) -> None:
        """
        原子写入完整续跑档

        Raises:
            CheckpointError: 写入失败
        """
        data = checkpoint.model_dump_json(indent=2)
        temp_path: Optional[Path] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self._temp_path()
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(data)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
            temp_path = None
        except OSError as e:
            raise CheckpointError(
                f"写入续跑档失败: {self.path}",
                {"path": str(self.path), "error": str(e), "last_checkpoint_key": checkpoint.last_key},
            )
        finally:
            if temp_path is not None and temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    logger.warning("清理临时续跑档失败: %s", temp_path)

    def load(self) -> Optional[CheckpointModel]:
        """
        读取最后一次保存的续跑档

        Returns:
            CheckpointModel，文件不存在或为空时返回 None

        Raises:
            CheckpointError: 读取失败
            CheckpointCorruptError: 内容损坏
        """
        if not self.path.exists():
            return None
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise CheckpointError(
                f"读取续跑档失败: {self.path}",
                {"path": str(self.path), "error": str(e)},
            )
        if not raw.strip():
            return None
        try:
            return CheckpointModel.model_validate_json(raw)
        except PydanticValidationError as e:
            raise CheckpointCorruptError(
                f"续跑档内容无效: {self.path}",
                {"path": str(self.path), "errors": e.errors(include_url=False, include_context=False, include_input=False)},
            )

    def delete(self) -> bool:
        """删除续跑档，返回是否确实删除了文件"""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CheckpointError(
                f"删除续跑档失败: {self.path}",
                {"path": str(self.path), "error": str(e)},
            )
        return True


__all__ = ["CheckpointStore"]

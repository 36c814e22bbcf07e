"""
docaudit.scanner - 主集合游标扫描

以 keyset 分页依主键升序读取主集合，每次取一页即为一个挂起点。
续跑的正确性只依赖这一点: 主键严格递增扫描、续跑档只记录最后一个 key，
因此从 key K 之后续跑，与从未扫描过 <= K 的行等价
（前提是两次运行之间主集合没有删除行或改动主键，此前提不做检查）。
"""

import logging
from typing import Iterator, List, Optional, Protocol

from .errors import AuditError, ScanError
from .models import DocumentItemRow, ScanWindow

logger = logging.getLogger(__name__)


class PageSource(Protocol):
    def fetch_page(self, after_key: Optional[str], window: ScanWindow, limit: int) -> List[DocumentItemRow]:
        ...


class CursorScanner:
    """惰性、可续跑的主集合行序列"""

    def __init__(
        self,
        source: PageSource,
        *,
        after_key: Optional[str] = None,
        window: Optional[ScanWindow] = None,
        fetch_size: int = 2000,
        progress_every: int = 200000,
    ):
        self._source = source
        self._after_key = after_key
        self._window = window or ScanWindow()
        self._fetch_size = fetch_size
        self._progress_every = progress_every
        self.scanned = 0

    @property
    def position(self) -> Optional[str]:
        """最后一个已交出行的 key"""
        return self._after_key

    def _fetch(self) -> List[DocumentItemRow]:
        try:
            return self._source.fetch_page(self._after_key, self._window, self._fetch_size)
        except AuditError as e:
            raise ScanError(
                f"扫描主集合失败: {e.message}",
                {"after_key": self._after_key, "cause": e.error_type, **e.details},
            ) from e
        except Exception as e:
            raise ScanError(
                f"扫描主集合失败: {e}",
                {"after_key": self._after_key, "exception_type": type(e).__name__},
            ) from e

    def iter_rows(self) -> Iterator[DocumentItemRow]:
        """
        依主键升序逐行产出，直到主集合读尽

        调用方可随时停止迭代；已交出行之后的页不会再被读取。
        """
        while True:
            page = self._fetch()
            if not page:
                return
            for row in page:
                self._after_key = row.id
                self.scanned += 1
                if self.scanned % self._progress_every == 0:
                    logger.info("已扫描文件题目 %d 笔", self.scanned)
                yield row
            if len(page) < self._fetch_size:
                return


__all__ = ["CursorScanner"]

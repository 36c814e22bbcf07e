"""
docaudit - 文件题目学程一致性扫描

以主键游标分批扫描 document_items，比对五栏档案所属储存库的学程与题目学年学程，
统计不一致情形并输出 Markdown 报告。扫描可随时中断，依续跑档接续。
"""

__version__ = "0.1.0"

from .errors import AuditError, ExitCode

__all__ = ["__version__", "AuditError", "ExitCode"]

# -*- coding: utf-8 -*-
"""
pytest 共享 fixtures

提供:
- 与真实环境隔离的配置路径与 DSN 环境变量
- 标准测试数据集（FakeDocumentStore）
- 指向临时目录的 AuditSettings
"""

import pytest

from docaudit.config import AuditSettings, TableSettings

from tests.fakes import FakeDocumentStore, make_row


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """避免读取开发机上的 ~/.docaudit 或 ./.docaudit 配置"""
    monkeypatch.delenv("DOCAUDIT_CONFIG", raising=False)
    monkeypatch.delenv("POSTGRES_DSN", raising=False)
    monkeypatch.delenv("TEST_PG_DSN", raising=False)
    monkeypatch.setattr("docaudit.config.DEFAULT_CONFIG_PATHS", [])
    yield


@pytest.fixture
def tables():
    return TableSettings()


@pytest.fixture
def make_settings(tmp_path):
    def factory(**overrides):
        values = {
            "batch_threshold": 3,
            "checkpoint_interval": 2,
            "sample_limit": 5,
            "fetch_size": 4,
            "progress_every": 10,
            "output_dir": str(tmp_path / "outputs"),
        }
        values.update(overrides)
        return AuditSettings(**values)

    return factory


def build_dataset_rows():
    """
    40 笔主集合行，涵盖一致、违规与各种无法判定原因

    文件 -> 储存库: D1->R1, D2->R2, D3->R3 (R3 无学程), D4 无储存库
    题目学程: I1{B1}, I2{B2,B3}, I3{B3}, I4 无资料, I5{B1,B2}
    """
    docs = ["D1", "D2", "D3", "D4"]
    rows = []
    for n in range(1, 41):
        item = f"I{(n % 5) + 1}"
        doc = docs[n % 4]
        if n == 7:
            item = None
        if n == 13:
            doc = None
        rows.append(make_row(n, item, doc))
    return rows


@pytest.fixture
def dataset_store():
    def factory():
        return FakeDocumentStore(
            rows=build_dataset_rows(),
            documents={"D1": "R1", "D2": "R2", "D3": "R3"},
            repositories={"R1": "B1", "R2": "B2", "R3": None},
            linked=[("I1", "B1"), ("I2", "B2"), ("I2", "B3"), ("I3", "B3"), ("I5", "B1"), ("I5", "B2")],
        )

    return factory

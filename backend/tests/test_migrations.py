import importlib.util
from pathlib import Path

import sqlalchemy as sa

import models  # noqa: F401
from models.database import Base

VERSIONS_DIR = Path(__file__).resolve().parents[1] / "db" / "migrations" / "versions"


class _RecordingOps:
    def __init__(self) -> None:
        self.tables: dict[str, set[str]] = {}
        self.indexes: dict[str, set[str]] = {}

    def create_table(self, name, *elements, **kwargs) -> None:
        self.tables[name] = {el.name for el in elements if isinstance(el, sa.Column)}

    def create_index(self, index_name, table_name, columns, **kwargs) -> None:
        self.indexes.setdefault(table_name, set()).add(index_name)


def _load_initial_revision():
    module_spec = importlib.util.spec_from_file_location(
        "initial_schema", VERSIONS_DIR / "001_initial_schema.py"
    )
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def test_initial_revision_creates_every_model_table(monkeypatch) -> None:
    revision = _load_initial_revision()
    ops = _RecordingOps()
    monkeypatch.setattr(revision, "op", ops)

    revision.upgrade()

    assert revision.down_revision is None
    assert set(ops.tables) == set(Base.metadata.tables)
    for name, table in Base.metadata.tables.items():
        assert ops.tables[name] == {column.name for column in table.columns}, name


def test_initial_revision_creates_model_indexes(monkeypatch) -> None:
    revision = _load_initial_revision()
    ops = _RecordingOps()
    monkeypatch.setattr(revision, "op", ops)

    revision.upgrade()

    for name, table in Base.metadata.tables.items():
        assert ops.indexes.get(name, set()) == {index.name for index in table.indexes}, name
    assert "uq_tasks_visit_target_visit" in ops.indexes["tasks"]

"""Shared fixtures for replica_sync tests."""

import re
from pathlib import Path

import pytest

from replica_sync import SyncSession, setup_logger

LINE_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] .+$")


def write_file(path: Path, content: str = "test content") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def read_log(log_path: Path) -> list[str]:
    """Log messages without the timestamp prefix."""
    if not log_path.exists():
        return []
    return [line.split("] ", 1)[1] for line in log_path.read_text().splitlines()]


@pytest.fixture
def source(tmp_path: Path) -> Path:
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def replica(tmp_path: Path) -> Path:
    return tmp_path / "replica"


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    return tmp_path / "sync.log"


@pytest.fixture
def logger(log_path: Path, tmp_path: Path):
    return setup_logger(log_path, use_color=False, name=f"replica_sync.test.{tmp_path.name}")


@pytest.fixture
def session() -> SyncSession:
    return SyncSession()

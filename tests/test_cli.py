"""End-to-end tests for the CLI commands with a stubbed model."""

import json
import sqlite3
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from pydantic_ai.exceptions import ModelHTTPError

import photo_json.main as m
from photo_json.analysis import ImageAnalysis
from photo_json.store import ItemStatus, QueueStore


class _AgentStub:
    """Answer per image call; an exception in the script is raised instead."""

    def __init__(self, *script: ImageAnalysis | Exception) -> None:
        self.script = list(script)

    def run_sync(self, *args: object, **kwargs: object) -> SimpleNamespace:  # noqa: ARG002
        answer = self.script.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return SimpleNamespace(output=answer)


def _run(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, agent: _AgentStub, **kwargs: Any) -> None:  # noqa: ANN401
    monkeypatch.setattr(m, "_create_agent", lambda *a, **kw: agent)  # noqa: ARG005
    m.run(
        tmp_path / "images",
        tmp_path / "json",
        tmp_path / "data" / "queue.db",
        read_metadata=False,
        file_log_level="OFF",
        console_log_level="OFF",
        **kwargs,
    )


def test_run_converts_images_and_resumes_after_halt(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_image: Callable[..., Path],
) -> None:
    """A halted run leaves items Pending; the next run finishes them without re-enrolling."""
    for name in ("photo1.jpg", "photo2.jpg", "photo3.JPEG", "ignored.png"):
        make_image(name)
    analysis = ImageAnalysis(caption="A card.", text_lines=["Hi"], tags=[])

    _run(
        tmp_path,
        monkeypatch,
        _AgentStub(analysis, ModelHTTPError(status_code=403, model_name="vision", body=None)),
        on_transient="halt",
    )

    with QueueStore.open(tmp_path / "data" / "queue.db") as store:
        assert store.stats() == {"pending": 2, "succeeded": 1, "failed": 0}
    assert [p.name for p in (tmp_path / "json").iterdir()] == ["photo1.json"]

    _run(tmp_path, monkeypatch, _AgentStub(analysis, analysis))

    with QueueStore.open(tmp_path / "data" / "queue.db") as store:
        assert store.stats() == {"pending": 0, "succeeded": 3, "failed": 0}
    assert sorted(p.name for p in (tmp_path / "json").iterdir()) == [
        "photo1.json",
        "photo2.json",
        "photo3.json",
    ]
    document = json.loads((tmp_path / "json" / "photo3.json").read_text(encoding="utf-8"))
    assert document["source"]["file"] == "photo3.JPEG"


def test_run_rejects_empty_extension_list(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Configuration errors stop before any directory or database is created."""
    with pytest.raises(SystemExit):
        _run(tmp_path, monkeypatch, _AgentStub(), image_extensions=" , ")
    assert not (tmp_path / "data").exists()


def test_run_rejects_bad_transient_codes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(SystemExit):
        _run(tmp_path, monkeypatch, _AgentStub(), transient_codes="403,quota")


def test_status_prints_counts(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """The status table lists each status with its item count."""
    db_path = tmp_path / "queue.db"
    with QueueStore.open(db_path) as store:
        store.ensure_schema()
        done = store.enqueue("/images/a.jpg")
        store.enqueue("/images/b.jpg")
        store.mark_succeeded(done)

    m.status(db_path)

    out = capsys.readouterr().out
    assert "pending" in out
    assert "succeeded" in out
    assert "total" in out


def test_status_requires_existing_database(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        m.status(tmp_path / "missing.db")


def test_requeue_resets_failed_items(tmp_path: Path) -> None:
    """The operator command returns Failed items to Pending."""
    db_path = tmp_path / "queue.db"
    with QueueStore.open(db_path) as store:
        store.ensure_schema()
        failed = store.enqueue("/images/a.jpg")
        store.mark_failed(failed, "quota")

    m.requeue(db_path)

    with QueueStore.open(db_path) as store:
        item = store.get(failed)
        assert item is not None
        assert item.status is ItemStatus.PENDING


def test_open_store_closes_connection_when_schema_fails(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A schema error exits with status 1 and does not leak the open connection."""
    closed: list[bool] = []

    def broken_schema(self: QueueStore) -> None:  # noqa: ARG001
        raise sqlite3.OperationalError("database disk image is malformed")

    original_close = QueueStore.close

    def recording_close(self: QueueStore) -> None:
        closed.append(True)
        original_close(self)

    monkeypatch.setattr(QueueStore, "ensure_schema", broken_schema)
    monkeypatch.setattr(QueueStore, "close", recording_close)

    with pytest.raises(SystemExit) as excinfo:
        m._open_store(tmp_path / "queue.db")  # noqa: SLF001

    assert excinfo.value.code == 1
    assert closed == [True]

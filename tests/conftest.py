"""Shared fixtures: a fresh work queue and tiny on-disk images."""

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from PIL import Image

from photo_json.store import QueueStore


@pytest.fixture
def store(tmp_path: Path) -> Iterator[QueueStore]:
    """An empty work queue backed by a SQLite file in the test directory."""
    with QueueStore.open(tmp_path / "db" / "work_queue.db") as queue:
        queue.ensure_schema()
        yield queue


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    """Write a small solid-color image and return its path."""
    image_dir = tmp_path / "images"
    image_dir.mkdir(exist_ok=True)

    def _make(name: str = "photo1.jpg", size: tuple[int, int] = (32, 24)) -> Path:
        path = image_dir / name
        fmt = "PNG" if path.suffix.lower() == ".png" else "JPEG"
        Image.new("RGB", size, (200, 40, 40)).save(path, format=fmt)
        return path

    return _make

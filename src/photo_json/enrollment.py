"""Discover images in the source directory and enroll them into the work queue."""

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from photo_json.store import QueueStore


DEFAULT_EXTENSIONS = "jpg,jpeg"


@dataclass(frozen=True)
class EnrollmentReport:
    discovered: int
    enrolled: int
    skipped_gate: bool = False


def parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a casefolded set like {".cr3", ".jpg"}.

    Examples:
        >>> parse_extensions("cr3, jpg ,PNG")
        {'.cr3', '.jpg', '.png'}

    """
    return {
        f".{ext.strip().lstrip('.')}".casefold()
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def discover_images(source_directory: Path, ext_set: set[str]) -> list[Path]:
    """
    List files directly inside ``source_directory`` whose suffix is in ``ext_set``.

    The scan is not recursive and the suffix comparison ignores case. Results are sorted
    so repeated enrollments of the same directory produce the same queue order.
    """
    if not source_directory.is_dir():
        logger.error("source_directory_missing", path=str(source_directory))
        return []

    found = sorted(
        path.resolve()
        for path in source_directory.iterdir()
        if path.is_file() and path.suffix.casefold() in ext_set
    )
    logger.info("images_discovered", path=str(source_directory), count=len(found))
    return found


def enroll(
    source_directory: Path,
    store: QueueStore,
    extensions: str | set[str] = DEFAULT_EXTENSIONS,
) -> EnrollmentReport:
    """
    Populate the queue from ``source_directory`` when it holds no Pending items.

    While any item is still Pending this is a no-op: a queue that is still draining is
    never topped up, and files already processed from the same directory are never
    enrolled a second time. The flip side is that images added to the directory while
    older items are queued are only picked up once the queue has drained.
    """
    pending = store.count_pending()
    logger.info("queue_pending_items", count=pending)
    if pending:
        logger.info("enrollment_skipped_queue_not_empty", pending=pending)
        return EnrollmentReport(discovered=0, enrolled=0, skipped_gate=True)

    ext_set = parse_extensions(extensions) if isinstance(extensions, str) else extensions
    images = discover_images(source_directory, ext_set)
    # All or nothing: a partial enrollment would sit behind the Pending gate.
    with store.transaction():
        for image in images:
            store.enqueue(str(image))

    logger.info("images_enrolled", discovered=len(images), enrolled=len(images))
    return EnrollmentReport(discovered=len(images), enrolled=len(images))

"""
JSON output documents.

Each successfully analysed image gets one ``<stem>.json`` file in the output directory.
Files are written to a temporary name and renamed into place, so an interrupted write never
leaves a truncated document under the final name.
"""

import contextlib
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger
from pydantic import BaseModel, Field

from photo_json.analysis import ImageAnalysis


CAPTURE_TAGS = (
    "EXIF:DateTimeOriginal",
    "EXIF:Make",
    "EXIF:Model",
    "Composite:GPSPosition",
    "XMP-photoshop:Country",
    "IPTC:Country-PrimaryLocationName",
    "XMP-photoshop:City",
    "IPTC:City",
)


class SourceInfo(BaseModel):
    file: str
    path: str
    metadata: dict[str, str] = Field(default_factory=dict)


class AnalysisDocument(BaseModel):
    """Shape of every JSON file written to the output directory."""

    source: SourceInfo
    analysis: ImageAnalysis
    model: str | None = None
    analyzed_at: datetime


def _format_metadata_value(value: Any) -> str:  # noqa: ANN401
    """
    Coerce metadata values (lists, numbers) into a readable string.

    Examples:
        >>> _format_metadata_value(["sky", "", None])
        'sky, None'
        >>> _format_metadata_value(42)
        '42'

    """
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple, set)):
        return ", ".join(str(v) for v in value if str(v).strip())
    return str(value)


def read_source_metadata(image_path: Path) -> dict[str, str]:
    """
    Read capture date, camera and location tags from the image with ExifTool.

    Missing tags are left out. Any ExifTool problem (including ExifTool not being
    installed) is logged and yields an empty dict: metadata is a nice-to-have and
    never fails an item.

    Examples:
        >>> read_source_metadata(Path("/photos/card.jpg"))  # doctest: +SKIP
        {'EXIF:DateTimeOriginal': '2023:12:24 18:02:11', 'Composite:GPSPosition': '35 deg N, 135 deg E'}

    """
    if not image_path.exists():
        return {}

    try:
        with ExifToolHelper() as et:  # type: ignore[no-untyped-call]
            metadata_blocks = et.get_tags(files=[str(image_path)], tags=list(CAPTURE_TAGS))
    except (OSError, ValueError, TypeError, ExifToolExecuteError) as e:
        logger.warning("failed_to_read_source_metadata", error=str(e))
        return {}

    collected: dict[str, str] = {}
    for block in metadata_blocks:
        for tag in CAPTURE_TAGS:
            if tag in block and block[tag] not in (None, ""):
                collected[tag] = _format_metadata_value(block[tag])

    if collected:
        logger.debug("source_metadata_read", tags=collected)
    return collected


def output_name(source_path: str | Path) -> str:
    """
    Derive the output file name from the source file name.

    Examples:
        >>> output_name("/images/photo1.jpg")
        'photo1.json'

    """
    return f"{Path(source_path).stem}.json"


class OutputWriter:
    """Render analysis results and write them into ``output_dir``."""

    def __init__(
        self,
        output_dir: Path,
        *,
        model_name: str | None = None,
        read_metadata: bool = True,
    ) -> None:
        self.output_dir = output_dir
        self.model_name = model_name
        self.read_metadata = read_metadata

    def render(self, source_path: str | Path, analysis: ImageAnalysis) -> str:
        """Serialize one result as an indented JSON document."""
        path = Path(source_path)
        document = AnalysisDocument(
            source=SourceInfo(
                file=path.name,
                path=str(path),
                metadata=read_source_metadata(path) if self.read_metadata else {},
            ),
            analysis=analysis,
            model=self.model_name,
            analyzed_at=datetime.now(tz=UTC),
        )
        return document.model_dump_json(indent=2)

    def write(self, base_name: str, content: str) -> Path:
        """
        Write ``content`` to ``output_dir / base_name`` in one atomic step.

        The content goes to a temporary file in the same directory, is flushed to disk and
        then renamed over the target. Errors propagate as ``OSError``.
        """
        target = self.output_dir / base_name
        fd, tmp_name = tempfile.mkstemp(dir=self.output_dir, prefix=f".{base_name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            Path(tmp_name).replace(target)
        except BaseException:
            with contextlib.suppress(OSError):
                Path(tmp_name).unlink()
            raise

        logger.debug("json_written", target=str(target), size=len(content))
        return target

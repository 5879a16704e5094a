"""
Image analysis adapter.

Sends one image to a vision-language model through a Pydantic AI agent and folds every
possible result into one of four outcomes: Success, EmptyResult, TransientServiceFailure
or FatalServiceFailure. The adapter never retries and never asks the operator anything;
that policy belongs to the queue driver.
"""

import os
import time
from collections.abc import Collection
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

import rawpy
from loguru import logger
from PIL import Image
from pydantic import BaseModel, Field
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.exceptions import ModelHTTPError


DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "85"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1600"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.1"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "1200"))
DEFAULT_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "120"))
# Authorization and quota signals: retrying the next image would fail the same way.
DEFAULT_TRANSIENT_CODES = frozenset({401, 403, 429})

NON_RAW_EXTS = {
    ".jpg",
    ".jpeg",
    ".png",
    ".webp",
    ".bmp",
    ".gif",
    ".jpe",
    ".jp2",
    ".tif",
    ".tiff",
    ".heic",
    ".heif",
    ".avif",
}

DEFAULT_SYSTEM_PROMPT = (
    "**Persona**: You are a meticulous document and image reader. "
    "Your expertise is in transcribing text and describing visual content precisely.\n"
    "\n"
    "**Mission**: Analyze the provided image and return a structured result that strictly "
    "conforms to the schema provided by the user.\n"
    "\n"
    "**Process**:\n"
    "1.  **Read**: Transcribe every piece of visible text, one entry per line, in reading "
    "order (top to bottom, left to right). Keep the original spelling and punctuation. "
    "Do not translate or summarize.\n"
    "2.  **Caption**: Write a single factual sentence describing the image.\n"
    "3.  **Tags**: List 5-10 short lowercase tags for the main subjects and objects.\n"
    "4.  **Empty images**: If the image is blank or unreadable, return empty fields rather "
    "than guessing.\n"
)

DEFAULT_USER_PROMPT = "Read all text in this image and describe it."


class ImageAnalysis(BaseModel):
    """Schema for structured analysis results."""

    caption: str = ""
    text_lines: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.caption.strip()
            or any(line.strip() for line in self.text_lines)
            or any(tag.strip() for tag in self.tags)
        )


@dataclass(frozen=True)
class Success:
    result: ImageAnalysis


@dataclass(frozen=True)
class EmptyResult:
    reason: str = "empty analysis result"


@dataclass(frozen=True)
class TransientServiceFailure:
    status_code: int
    message: str = ""

    @property
    def reason(self) -> str:
        reason = f"service returned HTTP {self.status_code}"
        return f"{reason}: {self.message}" if self.message else reason


@dataclass(frozen=True)
class FatalServiceFailure:
    reason: str


Outcome = Success | EmptyResult | TransientServiceFailure | FatalServiceFailure


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image from a path with PIL, using rawpy unless format is known non-RAW."""
    suffix = image_path.suffix.lower()
    if suffix not in NON_RAW_EXTS:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()  # 8-bit RGB np.ndarray
            logger.debug("image_opened_with_rawpy")
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    logger.debug("opening_image_with_pil", extension=suffix or "")
    return Image.open(image_path)


def prepare_image_for_agent(
    image_path: Path,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Prepare an image for Pydantic AI agent processing.

    Converts to RGB (compositing transparency onto white), downscales so neither side
    exceeds ``max_size`` and re-encodes as JPEG. Everything happens in memory.

    Args:
        image_path: Path to the input image file
        jpg_quality: JPEG compression quality (1-100)
        max_size: Maximum dimension in pixels for resizing

    Returns:
        BinaryContent object ready for Pydantic AI agent

    """
    with _pil_from_image_path(image_path) as opened:
        if opened.mode in ("RGBA", "LA") or (opened.mode == "P" and "transparency" in opened.info):
            alpha = opened.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = opened.convert("RGB")

    img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)

    buf = BytesIO()
    img.save(buf, format="JPEG", quality=jpg_quality)
    jpeg_bytes = buf.getvalue()

    logger.debug(
        "image_prepared_for_agent",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


class ImageAnalyzer:
    """
    Run the vision model on one image at a time and normalize the result.

    The agent is built once at startup and handed in; the analyzer holds no other state.
    """

    def __init__(
        self,
        agent: Agent,
        *,
        user_prompt: str = DEFAULT_USER_PROMPT,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = DEFAULT_TIMEOUT,
        jpeg_dimensions: int = DEFAULT_DIMENSIONS,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        transient_codes: Collection[int] = DEFAULT_TRANSIENT_CODES,
    ) -> None:
        self.agent = agent
        self.user_prompt = user_prompt
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.jpeg_dimensions = jpeg_dimensions
        self.jpeg_quality = jpeg_quality
        self.transient_codes = frozenset(transient_codes)

    def analyze(self, image_path: Path) -> Outcome:
        try:
            image = prepare_image_for_agent(
                image_path,
                jpg_quality=self.jpeg_quality,
                max_size=self.jpeg_dimensions,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("image_preparation_failed", error=str(exc))
            return FatalServiceFailure(f"image could not be read: {exc}")

        try:
            result = self._run_model(image)
        except ModelHTTPError as exc:
            if exc.status_code in self.transient_codes:
                logger.warning("analysis_transient_failure", status=exc.status_code, error=str(exc))
                return TransientServiceFailure(exc.status_code, str(exc.body or exc.message))
            logger.error("analysis_http_failure", status=exc.status_code, error=str(exc))
            return FatalServiceFailure(f"service returned HTTP {exc.status_code}")
        except Exception as exc:  # noqa: BLE001
            logger.error("analysis_failed", error_type=type(exc).__name__, error=str(exc))
            return FatalServiceFailure(f"{type(exc).__name__}: {exc}")

        if result is None or result.is_empty():
            return EmptyResult()
        return Success(result)

    def _run_model(self, image: BinaryContent) -> ImageAnalysis | None:
        _t0 = time.perf_counter()
        run: AgentRunResult[ImageAnalysis] = self.agent.run_sync(
            [
                self.user_prompt,
                image,
            ],
            model_settings=ModelSettings(
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.timeout,
            ),
            output_type=ImageAnalysis,
        )
        _elapsed = time.perf_counter() - _t0
        logger.info("ai_inference_completed", seconds=round(_elapsed, 3))
        output = run.output
        if output is not None:
            logger.debug(
                "ai_generated_analysis",
                caption=output.caption,
                text_lines=len(output.text_lines),
                tags=output.tags,
            )
        return output

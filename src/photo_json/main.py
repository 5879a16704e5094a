#!/usr/bin/env python3
"""
Photo JSON: convert a large directory of images into per-image JSON files using AI.

A vision-language model reads the text in each image and describes it; the structured result
is written as <image-name>.json. Progress lives in a SQLite work queue, so a run can be
stopped at any point (crash, Ctrl-C, or the operator halting on a quota error) and the next
run picks up exactly where the last one left off.

Requirements:
 - Ollama or LM Studio server running and containing a vision-language model.
 - Exiftool installed and available in PATH (optional; adds capture metadata to the JSON).

"""
# ruff: noqa: PLR0913

import os
import sqlite3
import sys
import urllib.parse
from datetime import UTC, datetime
from http import HTTPStatus
from pathlib import Path
from typing import Annotated, Literal

import httpx
from cyclopts import App, Parameter
from loguru import logger
from pydantic_ai import Agent
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.ollama import OllamaProvider
from pydantic_ai.providers.openai import OpenAIProvider
from rich.console import Console
from rich.table import Table

from photo_json.analysis import (
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_MAX_TOKENS,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TEMPERATURE,
    DEFAULT_TIMEOUT,
    DEFAULT_TRANSIENT_CODES,
    ImageAnalysis,
    ImageAnalyzer,
)
from photo_json.driver import (
    ConsoleDecisionProvider,
    Decision,
    DecisionProvider,
    FixedDecisionProvider,
    QueueDriver,
)
from photo_json.enrollment import DEFAULT_EXTENSIONS, enroll, parse_extensions
from photo_json.output import OutputWriter
from photo_json.store import QueueStore


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]
TransientPolicy = Literal["ask", "skip", "halt"]

# Configuration defaults
DEFAULT_IMAGE_DIR = Path(os.getenv("IMAGE_DIR", "images"))
DEFAULT_JSON_DIR = Path(os.getenv("JSON_DIR", "json"))
DEFAULT_DATABASE = Path(os.getenv("QUEUE_DB", "data/work_queue.db"))
DEFAULT_OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
DEFAULT_OLLAMA_API_KEY = os.getenv("OLLAMA_API_KEY")
DEFAULT_LMSTUDIO_BASE_URL = os.getenv("LM_STUDIO_BASE_URL", "http://localhost:1234/v1")
DEFAULT_LMSTUDIO_API_KEY = os.getenv("LM_STUDIO_API_KEY", os.getenv("OPENAI_API_KEY"))
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "qwen/qwen3-vl-30b")
DEFAULT_RETRIES = int(os.getenv("RETRIES", "3"))
PROVIDER_URLS = {
    "ollama": DEFAULT_OLLAMA_BASE_URL,
    "lmstudio": DEFAULT_LMSTUDIO_BASE_URL,
}


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="photo-json",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    # Remove default handler
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-photo_json.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _validate_lmstudio_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when LM Studio cannot resolve the requested model name."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        logger.error("lmstudio_model_listing_invalid_scheme", url=url, scheme=parsed.scheme)
        raise SystemExit(1)
    if not parsed.netloc:
        logger.error("lmstudio_model_listing_missing_host", url=url)
        raise SystemExit(1)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        logger.error("lmstudio_model_listing_error", error=str(exc), url=url)
        raise SystemExit(1) from exc

    if response.status_code != HTTPStatus.OK:
        logger.error(
            "lmstudio_model_listing_failed",
            status=response.status_code,
            url=url,
            body=response.text,
        )
        raise SystemExit(1)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("lmstudio_model_listing_invalid_json", error=str(exc), url=url)
        raise SystemExit(1) from exc

    models = [
        str(entry["id"])
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]

    if model_name not in models:
        logger.error(
            "lmstudio_model_not_available",
            requested=model_name,
            available=models,
        )
        raise SystemExit(1)

    logger.debug("lmstudio_model_validated", model=model_name)


def _create_agent(
    provider_name: Literal["ollama", "lmstudio"],
    model_name: str,
    *,
    api_base_url: str | None,
    api_key: str | None,
    retries: int,
) -> Agent:
    resolved_url = api_base_url or PROVIDER_URLS.get(provider_name, DEFAULT_LMSTUDIO_BASE_URL)
    if api_base_url is None:
        logger.debug("using_default_provider_url", url=resolved_url)

    logger.info(
        "provider_config_resolved",
        provider=provider_name,
        url=resolved_url,
        model=model_name,
    )

    if provider_name == "ollama":
        resolved_api_key = api_key or DEFAULT_OLLAMA_API_KEY
        provider = OllamaProvider(base_url=resolved_url, api_key=resolved_api_key)
    else:
        resolved_api_key = api_key or DEFAULT_LMSTUDIO_API_KEY
        _validate_lmstudio_model(resolved_url, model_name, resolved_api_key)
        provider = OpenAIProvider(base_url=resolved_url, api_key=resolved_api_key)

    chat_model = OpenAIChatModel(model_name=model_name, provider=provider)
    return Agent(
        chat_model,
        output_type=ImageAnalysis,  # type: ignore[arg-type]
        retries=retries,
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )


def _parse_status_codes(raw: str) -> frozenset[int]:
    """
    Parse a comma-separated list of HTTP status codes.

    Examples:
        >>> sorted(_parse_status_codes("403, 429"))
        [403, 429]

    """
    try:
        return frozenset(int(code) for code in raw.split(",") if code.strip())
    except ValueError as exc:
        logger.error("invalid_transient_codes", raw_input=raw)
        raise SystemExit(1) from exc


def _verify_directory(path: Path, label: str) -> None:
    if path.is_dir():
        return
    logger.info("directory_missing_creating", kind=label, path=str(path))
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.error("directory_create_failed", kind=label, path=str(path), error=str(exc))
        raise SystemExit(1) from exc


def _open_store(database: Path) -> QueueStore:
    try:
        store = QueueStore.open(database)
    except (OSError, sqlite3.Error) as exc:
        logger.error("queue_database_unavailable", path=str(database), error=str(exc))
        raise SystemExit(1) from exc
    try:
        store.ensure_schema()
    except sqlite3.Error as exc:
        store.close()
        logger.error("queue_database_unavailable", path=str(database), error=str(exc))
        raise SystemExit(1) from exc
    logger.info("queue_database_verified", path=str(database))
    return store


def _decision_provider(policy: TransientPolicy) -> DecisionProvider:
    if policy == "skip":
        return FixedDecisionProvider(Decision.SKIP)
    if policy == "halt":
        return FixedDecisionProvider(Decision.HALT)
    return ConsoleDecisionProvider()


@app.default
def run(
    images: Annotated[
        Path,
        Parameter(name=("--images", "-i"), help="Directory containing the images to convert"),
    ] = DEFAULT_IMAGE_DIR,
    output: Annotated[
        Path,
        Parameter(name=("--output", "-o"), help="Directory where JSON files are written"),
    ] = DEFAULT_JSON_DIR,
    database: Annotated[
        Path,
        Parameter(name=("--database", "-d"), help="SQLite work queue file"),
    ] = DEFAULT_DATABASE,
    *,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated image file extensions to enroll (case insensitive)",
        ),
    ] = DEFAULT_EXTENSIONS,
    model_name: Annotated[
        str,
        Parameter(name=("--model", "-m"), help="Vision-language model name"),
    ] = DEFAULT_MODEL_NAME,
    provider_name: Annotated[
        Literal["ollama", "lmstudio"],
        Parameter(name=("--provider",), help="Backend provider: 'ollama' or 'lmstudio'"),
    ] = "lmstudio",
    api_base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="Provider API base URL"),
    ] = None,
    api_key: Annotated[
        str | None,
        Parameter(name=("--api-key", "-k"), help="Provider API key. Will try env vars if not set"),
    ] = None,
    temperature: Annotated[
        float,
        Parameter(name=("--temperature",), help="Sampling temperature (0.0-1.0)"),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(name=("--max-tokens",), help="Maximum tokens to generate"),
    ] = DEFAULT_MAX_TOKENS,
    timeout: Annotated[
        float,
        Parameter(name=("--timeout",), help="Seconds to wait for the model before giving up"),
    ] = DEFAULT_TIMEOUT,
    retries: Annotated[
        int,
        Parameter(name=("--retries",), help="Number of automatic output validation retries"),
    ] = DEFAULT_RETRIES,
    jpeg_dimensions: Annotated[
        int,
        Parameter(
            name=("--jpeg-dimensions",),
            help="Max dimension in pixels for the resized JPEG sent to the model",
        ),
    ] = DEFAULT_DIMENSIONS,
    jpeg_quality: Annotated[
        int,
        Parameter(
            name=("--jpeg-quality",),
            help="JPEG quality (1-100) for the image sent to the model",
        ),
    ] = DEFAULT_JPEG_QUALITY,
    transient_codes: Annotated[
        str,
        Parameter(
            name=("--transient-codes",),
            help="HTTP status codes that pause the run and ask the operator (comma-separated)",
        ),
    ] = ",".join(str(code) for code in sorted(DEFAULT_TRANSIENT_CODES)),
    on_transient: Annotated[
        TransientPolicy,
        Parameter(
            name=("--on-transient",),
            help="On quota/authorization errors: 'ask' the operator, always 'skip', or 'halt'",
        ),
    ] = "ask",
    read_metadata: Annotated[
        bool,
        Parameter(
            name=("--read-metadata",),
            negative="--no-read-metadata",
            help="Include capture date, camera and GPS from ExifTool in each JSON file",
        ),
    ] = True,
    file_log_level: Annotated[
        LogLevel,
        Parameter(name="--file-log-level", help="Log level for file (use 'OFF' to disable)"),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(name=("--log-folder",), help="Folder where log files are stored"),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO",
) -> None:
    """
    Enroll images into the work queue and convert every Pending image to JSON.

    Behavior:
    - When the queue holds no Pending items, every matching image in --images is enrolled.
      While items are still Pending, new images are not enrolled until the queue drains.
    - Each Pending image is analysed once; a JSON file is written to --output and the item
      is marked Succeeded. Unreadable images, empty results and other errors mark it Failed.
    - Quota/authorization errors (--transient-codes) stop and ask whether to skip the image
      or halt the run. Halting leaves the remaining images Pending for the next run.

    Exit status: 0 when the queue was processed or halted by the operator, 1 on startup or
    database errors.

    Examples:
        photo-json -i ./ecards -o ./json
        photo-json -i ./ecards -o ./json --ext jpg,png --on-transient halt

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    logger.info(
        "starting_photo_json",
        images=str(images),
        output=str(output),
        database=str(database),
        extensions=image_extensions,
        model=model_name,
        provider=provider_name,
        api_base_url=api_base_url,
        api_key_present=bool(api_key),
        timeout=timeout,
        on_transient=on_transient,
    )

    ext_set = parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)
    codes = _parse_status_codes(transient_codes)

    _verify_directory(images, "images")
    _verify_directory(output, "output")

    agent = _create_agent(
        provider_name,
        model_name,
        api_base_url=api_base_url,
        api_key=api_key,
        retries=retries,
    )
    analyzer = ImageAnalyzer(
        agent,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        jpeg_dimensions=jpeg_dimensions,
        jpeg_quality=jpeg_quality,
        transient_codes=codes,
    )
    writer = OutputWriter(output, model_name=model_name, read_metadata=read_metadata)

    with _open_store(database) as store:
        try:
            enroll(images, store, ext_set)
            driver = QueueDriver(store, analyzer, writer, _decision_provider(on_transient))
            report = driver.run()
            remaining = store.count_pending()
        except sqlite3.Error as exc:
            logger.exception("queue_database_error", error=str(exc))
            raise SystemExit(1) from exc

    if report.halted:
        logger.info("batch_halted", left_pending=remaining)
    else:
        logger.info("batch_completed", left_pending=remaining)


@app.command
def status(
    database: Annotated[
        Path,
        Parameter(name=("--database", "-d"), help="SQLite work queue file"),
    ] = DEFAULT_DATABASE,
) -> None:
    """Show how many images are Pending, Succeeded and Failed."""
    setup_logging(file_log_level="OFF", console_log_level="WARNING")
    if not database.exists():
        logger.error("queue_database_missing", path=str(database))
        raise SystemExit(1)

    with _open_store(database) as store:
        counts = store.stats()

    table = Table(title=f"Work queue: {database}")
    table.add_column("Status")
    table.add_column("Items", justify="right")
    for name in ("pending", "succeeded", "failed"):
        table.add_row(name, str(counts[name]))
    table.add_row("total", str(sum(counts.values())), style="bold")
    Console().print(table)


@app.command
def requeue(
    database: Annotated[
        Path,
        Parameter(name=("--database", "-d"), help="SQLite work queue file"),
    ] = DEFAULT_DATABASE,
) -> None:
    """Put every Failed image back to Pending so the next run tries it again."""
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    if not database.exists():
        logger.error("queue_database_missing", path=str(database))
        raise SystemExit(1)

    with _open_store(database) as store:
        count = store.requeue_failed()
    logger.info("failed_items_requeued", count=count)


if __name__ == "__main__":
    app()

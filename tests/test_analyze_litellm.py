"""Tests covering the analysis adapter using LiteLLM mocks."""

import json
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import litellm
import pytest
from pydantic_ai import BinaryContent, ModelSettings
from pydantic_ai.exceptions import ModelHTTPError

from photo_json.analysis import (
    EmptyResult,
    FatalServiceFailure,
    ImageAnalysis,
    ImageAnalyzer,
    Success,
    TransientServiceFailure,
    prepare_image_for_agent,
)


class LiteLLMAgentStub:
    """Minimal agent stub that delegates to LiteLLM's mock completion helper."""

    def __init__(self, payload: str, *, model: str = "gpt-4o-mini") -> None:
        """Store the canned payload and model name used for mock completions."""
        self._payload = payload
        self._model = model
        self.calls: list[dict[str, Any]] = []

    def run_sync(
        self,
        items: list[object],
        model_settings: ModelSettings,
        output_type: type[ImageAnalysis],
    ) -> SimpleNamespace:
        """Mimic Agent.run_sync by validating LiteLLM mock output."""
        self.calls.append(
            {
                "items": items,
                "temperature": model_settings.get("temperature"),
                "max_tokens": model_settings.get("max_tokens"),
                "timeout": model_settings.get("timeout"),
            },
        )

        response = litellm.mock_completion(
            model=self._model,
            messages=[{"role": "user", "content": "stub"}],
            mock_response=self._payload,
        )
        content = response.choices[0].message["content"]  # type: ignore[union-attr]
        return SimpleNamespace(output=output_type.model_validate_json(content))


class RaisingAgentStub:
    """Agent stub whose every call fails with the given exception."""

    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    def run_sync(self, *args: object, **kwargs: object) -> SimpleNamespace:  # noqa: ARG002
        self.calls += 1
        raise self.exc


def _payload(**fields: Any) -> str:  # noqa: ANN401
    return json.dumps({"caption": "", "text_lines": [], "tags": []} | fields)


def test_analyze_parses_litellm_payload(make_image: Callable[..., Path]) -> None:
    """LiteLLM mock responses become a Success carrying the parsed ImageAnalysis."""
    image = make_image("card.jpg")
    agent = LiteLLMAgentStub(
        _payload(
            caption="A greeting card with a snowy village.",
            text_lines=["Season's Greetings", "from the Smith family"],
            tags=["card", "snow"],
        ),
    )
    analyzer = ImageAnalyzer(
        agent,  # type: ignore[arg-type]
        user_prompt="Read this card",
        temperature=0.3,
        max_tokens=256,
        timeout=12.5,
    )

    outcome = analyzer.analyze(image)

    assert isinstance(outcome, Success)
    assert outcome.result.text_lines == ["Season's Greetings", "from the Smith family"]
    assert outcome.result.tags == ["card", "snow"]

    assert len(agent.calls) == 1
    recorded = agent.calls[0]
    assert recorded["items"][0] == "Read this card"
    assert isinstance(recorded["items"][1], BinaryContent)
    assert recorded["temperature"] == pytest.approx(0.3)
    assert recorded["max_tokens"] == 256
    assert recorded["timeout"] == pytest.approx(12.5)


def test_analyze_empty_payload_is_empty_result(make_image: Callable[..., Path]) -> None:
    """A well-formed but blank answer is reported as EmptyResult, not Success."""
    agent = LiteLLMAgentStub(_payload(caption="  ", text_lines=["", " "]))
    outcome = ImageAnalyzer(agent).analyze(make_image())  # type: ignore[arg-type]
    assert isinstance(outcome, EmptyResult)
    assert outcome.reason


def test_analyze_invalid_payload_is_fatal(make_image: Callable[..., Path]) -> None:
    """Output that fails validation never escapes the adapter as an exception."""
    agent = LiteLLMAgentStub("not-json")
    outcome = ImageAnalyzer(agent).analyze(make_image())  # type: ignore[arg-type]
    assert isinstance(outcome, FatalServiceFailure)
    assert "ValidationError" in outcome.reason


@pytest.mark.parametrize("status_code", [401, 403, 429])
def test_analyze_quota_errors_are_transient(
    make_image: Callable[..., Path],
    status_code: int,
) -> None:
    """Authorization and quota HTTP errors surface as TransientServiceFailure with the code."""
    agent = RaisingAgentStub(
        ModelHTTPError(status_code=status_code, model_name="vision", body="quota exceeded"),
    )
    outcome = ImageAnalyzer(agent).analyze(make_image())  # type: ignore[arg-type]
    assert isinstance(outcome, TransientServiceFailure)
    assert outcome.status_code == status_code
    assert str(status_code) in outcome.reason


def test_analyze_other_http_errors_are_fatal(make_image: Callable[..., Path]) -> None:
    """Server errors outside the transient set are permanent for the item."""
    agent = RaisingAgentStub(ModelHTTPError(status_code=500, model_name="vision", body=None))
    outcome = ImageAnalyzer(agent).analyze(make_image())  # type: ignore[arg-type]
    assert isinstance(outcome, FatalServiceFailure)
    assert "500" in outcome.reason


def test_analyze_custom_transient_codes(make_image: Callable[..., Path]) -> None:
    """The transient set is configurable; 403 becomes fatal when left out."""
    agent = RaisingAgentStub(ModelHTTPError(status_code=403, model_name="vision", body=None))
    analyzer = ImageAnalyzer(agent, transient_codes={429})  # type: ignore[arg-type]
    assert isinstance(analyzer.analyze(make_image()), FatalServiceFailure)


def test_analyze_network_error_is_fatal(make_image: Callable[..., Path]) -> None:
    """Unexpected exceptions from the model call become FatalServiceFailure."""
    agent = RaisingAgentStub(ConnectionError("connection refused"))
    outcome = ImageAnalyzer(agent).analyze(make_image())  # type: ignore[arg-type]
    assert isinstance(outcome, FatalServiceFailure)
    assert "connection refused" in outcome.reason


def test_analyze_unreadable_image_skips_model(tmp_path: Path) -> None:
    """A file that is not an image fails before the model is called."""
    broken = tmp_path / "broken.jpg"
    broken.write_text("definitely not a jpeg")
    agent = RaisingAgentStub(AssertionError("model must not be called"))

    outcome = ImageAnalyzer(agent).analyze(broken)  # type: ignore[arg-type]

    assert isinstance(outcome, FatalServiceFailure)
    assert agent.calls == 0


def test_prepare_image_downscales_and_encodes_jpeg(make_image: Callable[..., Path]) -> None:
    """Large images are shrunk to fit max_size and re-encoded as JPEG."""
    image = make_image("wide.png", size=(400, 100))
    content = prepare_image_for_agent(image, max_size=200)
    assert content.media_type == "image/jpeg"
    assert content.data[:2] == b"\xff\xd8"

"""Tests covering AI analysis helpers using LiteLLM mocks."""

import json
from types import SimpleNamespace
from typing import Any

import litellm
import pytest
from pydantic import ValidationError
from pydantic_ai import BinaryContent, ModelSettings

from imagemeta.metadata import GeneratedMetadata, analyze_image_with_ai


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
        output_type: type[GeneratedMetadata],
    ) -> SimpleNamespace:
        """Mimic Agent.run_sync by validating LiteLLM mock output."""
        self.calls.append(
            {
                "items": items,
                "temperature": model_settings.get("temperature"),
                "timeout": model_settings.get("timeout"),
            },
        )

        response = litellm.mock_completion(
            model=self._model,
            messages=[{"role": "user", "content": "stub"}],
            mock_response=self._payload,
        )
        content = response.choices[0].message["content"]  # type: ignore[union-attr]
        metadata = output_type.model_validate_json(content)
        return SimpleNamespace(output=metadata)


def test_analyze_image_with_ai_parses_litellm_payload() -> None:
    """LiteLLM mock responses are parsed into GeneratedMetadata and returned."""
    payload = json.dumps(
        {
            "title": "Forest Companions in the Morning Canopy",
            "description": "Two marmosets share a quiet branch in the canopy.",
            "keywords": ["marmoset", "forest", "primate"],
            "rating": 4,
        },
    )
    agent = LiteLLMAgentStub(payload)
    image_bytes = BinaryContent(data=b"\xff\xd8stubjpeg", media_type="image/jpeg")
    target_temperature = 0.42
    target_timeout = 30.0

    result = analyze_image_with_ai(
        image_bytes,
        agent,  # type: ignore[arg-type]
        user_prompt="Analyze this image for stock photo SEO",
        temperature=target_temperature,
        timeout=target_timeout,
    )

    assert result.title == "Forest Companions in the Morning Canopy"
    assert result.description == "Two marmosets share a quiet branch in the canopy."
    assert result.keywords == "marmoset, forest, primate"
    assert result.rating == 4

    assert len(agent.calls) == 1
    recorded = agent.calls[0]
    assert recorded["items"][0] == "Analyze this image for stock photo SEO"
    assert isinstance(recorded["items"][1], BinaryContent)
    assert recorded["temperature"] == target_temperature
    assert recorded["timeout"] == target_timeout


def test_analyze_image_with_ai_invalid_litellm_payload_raises() -> None:
    """Invalid LiteLLM output bubbles up as a validation error."""
    agent = LiteLLMAgentStub("not-json")
    image_bytes = BinaryContent(data=b"\xff\xd8stubjpeg", media_type="image/jpeg")

    with pytest.raises(ValidationError):
        analyze_image_with_ai(image_bytes, agent, user_prompt="p", temperature=0.5)  # type: ignore[arg-type]


def test_analyze_image_with_ai_rejects_out_of_range_rating() -> None:
    """A rating outside 1-5 is a hard failure, not clamped."""
    payload = json.dumps({"title": "T", "description": "D", "keywords": "a", "rating": 9})
    agent = LiteLLMAgentStub(payload)
    image_bytes = BinaryContent(data=b"\xff\xd8stubjpeg", media_type="image/jpeg")

    with pytest.raises(ValidationError):
        analyze_image_with_ai(image_bytes, agent, user_prompt="p", temperature=0.5)  # type: ignore[arg-type]

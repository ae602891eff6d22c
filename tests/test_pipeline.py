"""Tests for the research -> creative -> refine prompt pipeline."""

import json
from typing import Any

import pytest
from pydantic_ai.messages import ModelMessage, ModelResponse, TextPart, UserPromptPart
from pydantic_ai.models.function import AgentInfo, FunctionModel
from pydantic_ai.models.test import TestModel as CannedModel

from imagemeta.errors import PipelineValidationError
from imagemeta.pipeline import (
    PipelineProgress,
    fill_template,
    generate_prompts,
    generate_simple_prompts,
)
from imagemeta.settings import GenerationConfig


CONFIG = GenerationConfig(model="gemini-test", request_timeout=12.0)


class ScriptedStages:
    """FunctionModel backend that answers each stage from a canned script."""

    def __init__(self, creative: str, refine: str, research: str = "- trend: neon") -> None:
        self.replies = {"research": research, "creative": creative, "refine": refine}
        self.prompts: list[str] = []
        self.temperatures: list[float | None] = []
        self.output_modes: list[str] = []
        self.keys: list[str] = []

    @staticmethod
    def _stage(prompt: str) -> str:
        if "market research analyst" in prompt:
            return "research"
        if "creative director" in prompt:
            return "creative"
        return "refine"

    def factory(self, api_key: str, model_name: str) -> FunctionModel:
        assert model_name == "gemini-test"
        self.keys.append(api_key)

        def respond(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:
            prompt = next(
                part.content
                for message in messages
                for part in getattr(message, "parts", [])
                if isinstance(part, UserPromptPart)
            )
            assert isinstance(prompt, str)
            self.prompts.append(prompt)
            self.temperatures.append((info.model_settings or {}).get("temperature"))
            self.output_modes.append(info.model_request_parameters.output_mode)
            reply = self.replies[self._stage(prompt)]
            return ModelResponse(parts=[TextPart(content=reply)])

        return FunctionModel(respond)


def _run(script: ScriptedStages, **kwargs: Any) -> Any:  # noqa: ANN401
    return generate_prompts(
        "futuristic cityscape",
        2,
        ["key-1"],
        CONFIG,
        model_factory=script.factory,
        fallback_key="",
        **kwargs,
    )


def test_pipeline_threads_outputs_between_stages() -> None:
    """Research text and creative concepts are interpolated into the next stage verbatim."""
    refined = {
        "prompts": [
            {"prompt": "neon skyline, 8K", "negativePrompt": "blurry"},
            {"prompt": "holographic ads, macro"},
        ],
    }
    script = ScriptedStages(
        creative='["A neon skyline", "Holographic ads"]',
        refine=json.dumps(refined),
        research="- cyberpunk palettes sell well",
    )
    progress: list[PipelineProgress] = []

    result = _run(
        script,
        image_style="vector",
        include_negative_prompts=True,
        on_progress=progress.append,
    )

    assert [p.prompt for p in result.prompts] == ["neon skyline, 8K", "holographic ads, macro"]
    assert result.prompts[0].negative_prompt == "blurry"
    assert result.prompts[1].negative_prompt is None

    research_prompt, creative_prompt, refine_prompt = script.prompts
    assert "User Idea: futuristic cityscape" in research_prompt
    assert "Image Style: vector" in research_prompt
    assert "- cyberpunk palettes sell well" in creative_prompt
    assert "brainstorm 2 distinct image concepts" in creative_prompt
    assert '["A neon skyline", "Holographic ads"]' in refine_prompt
    assert "Negative prompts requested: true" in refine_prompt
    assert '{"prompts": [{"prompt":' in refine_prompt
    assert script.temperatures == [0.5, 0.8, 0.4]

    assert [p.step for p in progress] == [
        "research-complete",
        "creation-complete",
        "refinement-complete",
    ]
    assert progress[0].prompts == []
    assert progress[1].prompts == []
    assert len(progress[2].prompts) == 2


def test_malformed_concepts_still_run_refinement_with_empty_list() -> None:
    """Stage 2 parse failures are recovered locally; stage 3 receives an empty array."""
    script = ScriptedStages(
        creative="Sure! Here are some ideas: neon, rain",
        refine='{"prompts": [{"prompt": "rainy neon street"}]}',
    )

    result = _run(script)

    assert len(script.prompts) == 3
    assert '"""\n[]\n"""' in script.prompts[2]
    assert [p.prompt for p in result.prompts] == ["rainy neon street"]


def test_creative_and_refine_stages_request_json_responses() -> None:
    """Only the stages parsed as JSON ask the provider for a JSON response body."""
    script = ScriptedStages(creative='["one"]', refine='{"prompts": [{"prompt": "p1"}]}')

    _run(script)

    assert script.output_modes == ["text", "prompted", "prompted"]


def test_concepts_wrapped_in_an_object_are_unwrapped() -> None:
    """JSON-object response modes may wrap the concept array under a single key."""
    script = ScriptedStages(
        creative='{"concepts": ["neon rain", "glass towers"]}',
        refine='{"prompts": [{"prompt": "p1"}]}',
    )

    _run(script)

    assert '"neon rain"' in script.prompts[2]


def test_malformed_refinement_yields_empty_prompt_set() -> None:
    """Stage 3 parse failures produce {prompts: []} instead of an error."""
    script = ScriptedStages(creative='["one"]', refine="{not json")

    result = _run(script)

    assert result.prompts == []


def test_fenced_json_is_accepted() -> None:
    """Markdown code fences around JSON output are stripped before parsing."""
    script = ScriptedStages(
        creative='```json\n["one"]\n```',
        refine='```json\n{"prompts": [{"prompt": "p1"}]}\n```',
    )

    result = _run(script)

    assert [p.prompt for p in result.prompts] == ["p1"]


def test_invalid_final_shape_is_a_hard_failure() -> None:
    """A prompts array whose entries lack 'prompt' is rejected, not coerced."""
    script = ScriptedStages(creative='["one"]', refine='{"prompts": [{"text": "missing"}]}')

    with pytest.raises(PipelineValidationError):
        _run(script)


def test_remote_failure_aborts_remaining_stages() -> None:
    """An exception in the research stage stops the pipeline before any other call."""
    calls: list[str] = []

    def factory(api_key: str, model_name: str) -> FunctionModel:  # noqa: ARG001
        def respond(messages: list[ModelMessage], info: AgentInfo) -> ModelResponse:  # noqa: ARG001
            calls.append(api_key)
            raise ConnectionError("network unreachable")

        return FunctionModel(respond)

    with pytest.raises(ConnectionError):
        generate_prompts("idea", 3, ["k1", "k2"], CONFIG, model_factory=factory, fallback_key="")

    assert calls == ["k1"]


@pytest.mark.parametrize(("idea", "count"), [("   ", 3), ("idea", 0), ("idea", 201)])
def test_invalid_requests_are_rejected_before_any_call(idea: str, count: int) -> None:
    """Blank ideas and out-of-range counts never reach the model."""
    script = ScriptedStages(creative="[]", refine='{"prompts": []}')

    with pytest.raises(ValueError, match=r"Idea|prompts"):
        generate_prompts(idea, count, ["k"], CONFIG, model_factory=script.factory, fallback_key="")

    assert script.prompts == []


def test_fill_template_leaves_unknown_braces() -> None:
    """Only placeholders with values are substituted."""
    assert fill_template("{a} {b} {}", {"a": 1}) == "1 {b} {}"


def test_generate_simple_prompts_wraps_strings() -> None:
    """The single-call generator returns plain prompts without negatives."""

    def factory(api_key: str, model_name: str) -> CannedModel:  # noqa: ARG001
        return CannedModel(custom_output_args={"prompts": ["p1", "p2"]})

    result = generate_simple_prompts(
        "sunset",
        2,
        ["k"],
        CONFIG,
        model_factory=factory,
        fallback_key="",
    )

    assert [p.prompt for p in result.prompts] == ["p1", "p2"]
    assert all(p.negative_prompt is None for p in result.prompts)

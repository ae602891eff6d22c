"""
Text-to-image prompt generation.

``generate_prompts`` runs three dependent model calls: market research, creative
direction and refinement. Each stage feeds its output verbatim into the next stage's
template. Only the final stage's output is validated; malformed JSON from the creative
or refinement stage is replaced by an empty result so the run can finish.
"""

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_ai import Agent, ModelSettings
from pydantic_ai.models import Model

from imagemeta.errors import PipelineValidationError
from imagemeta.providers import JsonResponseModel, ModelFactory, model_factory_for
from imagemeta.rotation import run_with_key_rotation
from imagemeta.settings import GenerationConfig, fallback_api_key


ImageStyle = Literal["photorealistic", "vector"]
PipelineStep = Literal["research-complete", "creation-complete", "refinement-complete"]

MAX_PROMPT_COUNT = 200
RESEARCH_TEMPERATURE = 0.5
CREATIVE_TEMPERATURE = 0.8
REFINE_TEMPERATURE = 0.4

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

RESEARCH_TEMPLATE = """\
You are a market research analyst for a leading stock photography marketplace.
Study the user's idea and write a strategic brief on what currently sells for it.
A creative director will use your brief to plan commercially viable images.

User Idea: {idea}
Image Style: {image_style}

Cover:
1. Core concepts: split the idea into its basic components.
2. Keywords: 15-20 highly searched keywords, literal, conceptual and long-tail.
3. Trends: visual trends for this subject, including colors, lighting and composition.
4. Niches: 2-3 specific, profitable sub-niches worth targeting.

Answer with a concise bullet-point summary. This is a brief, not creative writing.
"""

CREATIVE_TEMPLATE = """\
You are the creative director of a digital art studio.
Using the market research brief below, brainstorm {count} distinct image concepts.
Do not write final prompts yet, only the core ideas.

Market Research Brief:
\"\"\"
{research_summary}
\"\"\"

Rules:
1. Produce exactly {count} concepts.
2. Each concept is one short, descriptive sentence.
3. Vary angles, compositions and moods across concepts.

Return only a valid JSON array of strings, one string per concept.
Example: ["A close-up of a holographic butterfly on a fingertip in a neon alley", \
"A wide shot of a solarpunk city with vertical gardens"]
"""

REFINE_TEMPLATE = """\
You are a technical prompt engineer and quality control specialist.
Turn each creative concept below into a detailed, precise prompt for a text-to-image model
such as Midjourney or DALL-E.

Creative Concepts:
\"\"\"
{concepts}
\"\"\"

User's Original Idea: {idea}
Requested Image Style: {image_style}

Rules:
1. Write one complete prompt per concept.
2. Add professional technical terms (8K, hyper-detailed, cinematic lighting, sharp focus).
3. Match the '{image_style}' style: camera and lens terms for photorealistic images; \
flat design, clean lines and minimalist terms for vector images.
4. Negative prompts requested: {include_negative_prompts}. When true, add a concise \
negative prompt per concept targeting common failures (blurry, deformed, watermark, text).

Return a single JSON object with the key "prompts" holding an array of objects.
Each object has a "prompt" key and, only when negative prompts are requested, \
a "negativePrompt" key.
Example: {"prompts": [{"prompt": "macro shot of a raindrop on a neon street, 85mm lens", \
"negativePrompt": "blurry, cartoon, text"}]}
"""

SIMPLE_PROMPT_SYSTEM = (
    "You are a creative director for a stock photography agency. Turn the user's idea "
    "into unique, diverse and marketable prompts for a text-to-image model. Every prompt "
    "must differ in subject, style, lighting and composition, and include artistic detail "
    "such as lighting, camera angle, art style and mood."
)


class ImagePrompt(BaseModel):
    """One generated text-to-image prompt."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str
    negative_prompt: str | None = Field(default=None, alias="negativePrompt")


class PromptSet(BaseModel):
    prompts: list[ImagePrompt] = Field(default_factory=list)


class SimplePromptSet(BaseModel):
    prompts: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class PipelineProgress:
    """Notification sent after each stage completes."""

    step: PipelineStep
    prompts: list[ImagePrompt] = field(default_factory=list)


ProgressCallback = Callable[[PipelineProgress], None]


def fill_template(template: str, values: dict[str, Any]) -> str:
    """
    Substitute ``{name}`` placeholders that have a value; leave other braces untouched.

    Examples:
        >>> fill_template('Idea: {idea} {"prompts": []}', {"idea": "sunset"})
        'Idea: sunset {"prompts": []}'

    """

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        return str(values[name]) if name in values else match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def _strip_code_fence(text: str) -> str:
    """
    Remove a surrounding Markdown code fence that some models add to JSON output.

    Examples:
        >>> _strip_code_fence('```json\\n[1, 2]\\n```')
        '[1, 2]'

    """
    return _CODE_FENCE.sub("", text.strip())


def _call_model(
    credentials: list[str],
    config: GenerationConfig,
    prompt: str,
    *,
    temperature: float,
    stage: str,
    model_factory: ModelFactory,
    fallback_key: str | None,
    json_response: bool = False,
) -> str:
    def operation(model: Model) -> str:
        if json_response:
            model = JsonResponseModel(model)
        agent = Agent(model, output_type=str)
        result = agent.run_sync(
            prompt,
            model_settings=ModelSettings(
                temperature=temperature,
                timeout=config.request_timeout,
            ),
        )
        return result.output

    logger.info(
        "pipeline_stage_started",
        stage=stage,
        temperature=temperature,
        json_response=json_response,
    )
    output = run_with_key_rotation(
        credentials,
        config.model,
        operation,
        model_factory=model_factory,
        fallback_key=fallback_key,
    )
    logger.debug("pipeline_stage_output", stage=stage, chars=len(output or ""))
    return output


def _parse_concepts(text: str) -> list[str]:
    try:
        parsed = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError as exc:
        logger.warning("creative_concepts_parse_failed", error=str(exc), raw=text[:200])
        return []
    # JSON-object response modes wrap the array, e.g. {"concepts": [...]}.
    if isinstance(parsed, dict) and len(parsed) == 1:
        parsed = next(iter(parsed.values()))
    if not isinstance(parsed, list):
        logger.warning("creative_concepts_not_a_list", kind=type(parsed).__name__)
        return []
    return [str(item) for item in parsed]


def _parse_refined(text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(_strip_code_fence(text))
    except json.JSONDecodeError as exc:
        logger.warning("refined_prompts_parse_failed", error=str(exc), raw=text[:200])
        return {"prompts": []}
    if not isinstance(parsed, dict) or not isinstance(parsed.get("prompts"), list):
        logger.warning("refined_prompts_missing_list")
        return {"prompts": []}
    return parsed


def _validate_request(idea: str, count: int) -> None:
    if not idea.strip():
        raise ValueError("Idea is missing.")
    if not 1 <= count <= MAX_PROMPT_COUNT:
        raise ValueError(f"Number of prompts must be between 1 and {MAX_PROMPT_COUNT}.")


def generate_prompts(  # noqa: PLR0913
    idea: str,
    count: int,
    credentials: list[str],
    config: GenerationConfig,
    *,
    image_style: ImageStyle = "photorealistic",
    include_negative_prompts: bool = False,
    on_progress: ProgressCallback | None = None,
    model_factory: ModelFactory | None = None,
    fallback_key: str | None = None,
) -> PromptSet:
    """
    Turn one idea into ``count`` refined prompts via research, creative and refine stages.

    Args:
        idea: The user's core idea
        count: Number of prompts requested (1-200)
        credentials: API keys in priority order
        config: Run configuration snapshot
        image_style: 'photorealistic' or 'vector'
        include_negative_prompts: Ask the refine stage for a negative prompt per concept
        on_progress: Optional callback invoked after each stage
        model_factory: Builds a model for one API key (defaults to the configured provider)
        fallback_key: Key tried after all credentials (defaults to GEMINI_API_KEY)

    Returns:
        Validated PromptSet; empty when the refine stage returned unusable JSON.

    Raises:
        PipelineValidationError: The refine stage returned prompts of the wrong shape.

    """
    _validate_request(idea, count)
    call_kwargs: dict[str, Any] = {
        "model_factory": model_factory or model_factory_for(config),
        "fallback_key": fallback_key if fallback_key is not None else fallback_api_key(),
    }

    def notify(step: PipelineStep, prompts: list[ImagePrompt] | None = None) -> None:
        logger.info("pipeline_progress", step=step)
        if on_progress is not None:
            on_progress(PipelineProgress(step=step, prompts=prompts or []))

    # Step 1: market research, free text passed through unchecked
    research_summary = _call_model(
        credentials,
        config,
        fill_template(RESEARCH_TEMPLATE, {"idea": idea, "image_style": image_style}),
        temperature=RESEARCH_TEMPERATURE,
        stage="research",
        **call_kwargs,
    ) or ""
    notify("research-complete")

    # Step 2: creative direction
    concepts_text = _call_model(
        credentials,
        config,
        fill_template(
            CREATIVE_TEMPLATE,
            {"research_summary": research_summary, "count": count},
        ),
        temperature=CREATIVE_TEMPERATURE,
        stage="creative",
        json_response=True,
        **call_kwargs,
    )
    concepts = _parse_concepts(concepts_text or "")
    logger.info("creative_concepts_generated", count=len(concepts))
    notify("creation-complete")

    # Step 3: refinement
    refined_text = _call_model(
        credentials,
        config,
        fill_template(
            REFINE_TEMPLATE,
            {
                "concepts": json.dumps(concepts, ensure_ascii=False),
                "idea": idea,
                "image_style": image_style,
                "include_negative_prompts": str(include_negative_prompts).lower(),
            },
        ),
        temperature=REFINE_TEMPERATURE,
        stage="refine",
        json_response=True,
        **call_kwargs,
    )
    refined = _parse_refined(refined_text or "")

    try:
        prompt_set = PromptSet.model_validate(refined)
    except ValidationError as exc:
        logger.error("refined_prompts_invalid", error=str(exc))
        raise PipelineValidationError(f"Refined prompts have an invalid shape: {exc}") from exc

    notify("refinement-complete", prompt_set.prompts)
    logger.info("prompt_pipeline_completed", prompts=len(prompt_set.prompts))
    return prompt_set


def generate_simple_prompts(
    idea: str,
    count: int,
    credentials: list[str],
    config: GenerationConfig,
    *,
    model_factory: ModelFactory | None = None,
    fallback_key: str | None = None,
) -> PromptSet:
    """Generate ``count`` prompts with a single structured-output call."""
    _validate_request(idea, count)

    def operation(model: Model) -> SimplePromptSet:
        agent = Agent(
            model,
            output_type=SimplePromptSet,
            retries=config.retries,
            system_prompt=SIMPLE_PROMPT_SYSTEM,
        )
        result = agent.run_sync(
            f"Based on the user's idea, generate {count} unique and detailed prompts. "
            f"User Idea: {idea}",
            model_settings=ModelSettings(
                temperature=config.temperature,
                timeout=config.request_timeout,
            ),
        )
        return result.output

    output = run_with_key_rotation(
        credentials,
        config.model,
        operation,
        model_factory=model_factory or model_factory_for(config),
        fallback_key=fallback_key if fallback_key is not None else fallback_api_key(),
    )
    logger.info("simple_prompts_generated", count=len(output.prompts))
    return PromptSet(prompts=[ImagePrompt(prompt=text) for text in output.prompts])

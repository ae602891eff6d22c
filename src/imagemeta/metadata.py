"""Stock-photo SEO metadata generation for a single image."""

import time
from io import BytesIO
from pathlib import Path
from typing import Any

import rawpy
from loguru import logger
from PIL import Image
from pydantic import BaseModel, Field, field_validator
from pydantic_ai import Agent, AgentRunResult, BinaryContent, ModelSettings
from pydantic_ai.models import Model

from imagemeta.providers import ModelFactory, model_factory_for
from imagemeta.rotation import run_with_key_rotation
from imagemeta.settings import (
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    GenerationConfig,
    fallback_api_key,
)


NON_RAW_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".webp",
        ".bmp",
        ".gif",
        ".jpe",
        ".tif",
        ".tiff",
        ".heic",
        ".heif",
        ".avif",
    },
)

SYSTEM_PROMPT = (
    "You are an expert stock photography contributor and SEO specialist. "
    "You analyze images and write metadata that helps buyers find them on stock "
    "marketplaces such as Adobe Stock and Shutterstock. "
    "Be accurate: only describe what is visible. Never mention brand names, "
    "trademarks or identifiable people."
)

AUTO_METADATA_INSTRUCTIONS = (
    "*   Title (8-15 words, SEO-friendly)\n"
    "*   Description (50-120 words with colors/objects/mood)\n"
    "*   15-25 keywords (comma-separated, long-tail)\n"
    "*   Rating (1-5 based on commercial appeal and technical quality)"
)

MANUAL_METADATA_INSTRUCTIONS = (
    "*   Title (about {title_length} words, SEO-friendly)\n"
    "*   Description (about {description_length} words with colors/objects/mood)\n"
    "*   Exactly {keyword_count} keywords (comma-separated, most important first)\n"
    "*   Rating (1-5 based on commercial appeal and technical quality)"
)


class GeneratedMetadata(BaseModel):
    """Schema for structured generation results."""

    title: str
    description: str
    keywords: str = Field(description="Comma-separated keywords for the image.")
    rating: int = Field(ge=1, le=5, description="The rating of the image (1-5).")

    @field_validator("keywords", mode="before")
    @classmethod
    def _join_keywords(cls, value: Any) -> Any:  # noqa: ANN401
        if isinstance(value, (list, tuple)):
            return ", ".join(str(kw).strip() for kw in value if str(kw).strip())
        if isinstance(value, str):
            return ", ".join(kw.strip() for kw in value.split(",") if kw.strip())
        return value

    def keyword_list(self) -> list[str]:
        """
        Return the keywords as a list.

        Examples:
            >>> GeneratedMetadata(
            ...     title="T", description="D", keywords="sky, , sea", rating=3
            ... ).keyword_list()
            ['sky', 'sea']

        """
        return [kw.strip() for kw in self.keywords.split(",") if kw.strip()]


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image from a path with PIL, using rawpy unless format is known non-RAW."""
    suffix = image_path.suffix.lower()
    if suffix not in NON_RAW_EXTENSIONS:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()
            logger.debug("image_opened_with_rawpy")
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    return Image.open(image_path)


def prepare_image_for_agent(
    image_path: Path,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Downscale an image and encode it as in-memory JPEG for the model.

    Args:
        image_path: Path to the input image file
        jpg_quality: JPEG compression quality (1-100)
        max_size: Maximum dimension in pixels; larger images are downscaled

    Returns:
        BinaryContent with ``image/jpeg`` media type

    """
    try:
        img = _pil_from_image_path(image_path)

        # Composite alpha onto white background if present
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            alpha = img.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = img.convert("RGB")

        img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)

        buf = BytesIO()
        img.save(buf, format="JPEG", quality=jpg_quality)
        jpeg_bytes = buf.getvalue()

    except Exception as e:
        logger.exception("image_preparation_failed", error=str(e))
        raise
    else:
        logger.debug(
            "image_prepared_for_agent",
            width=img.width,
            height=img.height,
            size_kb=len(jpeg_bytes) // 1024,
        )
        return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


def build_metadata_prompt(config: GenerationConfig) -> str:
    """
    Build the user prompt for one image from the run configuration.

    Examples:
        >>> print(build_metadata_prompt(GenerationConfig(keyword_count=30)))  # doctest: +ELLIPSIS
        Analyze this image for stock photo SEO ...
        *   Exactly 30 keywords (comma-separated, most important first)
        ...

    """
    if config.use_auto_metadata:
        instructions = AUTO_METADATA_INSTRUCTIONS
    else:
        instructions = MANUAL_METADATA_INSTRUCTIONS.format(
            title_length=config.title_length,
            description_length=config.description_length,
            keyword_count=config.keyword_count,
        )
    return (
        "Analyze this image for stock photo SEO and generate the following metadata:\n\n"
        f"{instructions}\n\n"
        'Output in JSON format: {"title": "...", "description": "...", '
        '"keywords": "...", "rating": ...}'
    )


def create_metadata_agent(model: Model, *, retries: int) -> Agent[None, GeneratedMetadata]:
    return Agent(
        model,
        output_type=GeneratedMetadata,
        retries=retries,
        system_prompt=SYSTEM_PROMPT,
    )


def analyze_image_with_ai(
    image_bytes: BinaryContent,
    agent: Agent,
    *,
    user_prompt: str,
    temperature: float,
    timeout: float | None = None,
) -> GeneratedMetadata:
    """
    Generate title, description, keywords and rating using a vision-language model.

    Args:
        image_bytes: Image data as BinaryContent (JPEG format)
        agent: Pydantic AI Agent bound to a single API key
        user_prompt: Instruction text sent alongside the image
        temperature: Sampling temperature for generation
        timeout: Per-request timeout in seconds

    Returns:
        Validated GeneratedMetadata. Responses that do not match the schema raise.

    """
    logger.info("analyzing_image_with_ai")
    _t0 = time.perf_counter()
    settings = ModelSettings(temperature=temperature)
    if timeout is not None:
        settings["timeout"] = timeout

    result: AgentRunResult[GeneratedMetadata] = agent.run_sync(
        [
            user_prompt,
            image_bytes,
        ],
        model_settings=settings,
        output_type=GeneratedMetadata,
    )
    logger.info(
        "ai_inference_completed",
        seconds=round(time.perf_counter() - _t0, 3),
        temperature=temperature,
    )
    logger.debug(
        "ai_generated_metadata",
        title=result.output.title,
        rating=result.output.rating,
        keyword_count=len(result.output.keyword_list()),
    )
    return result.output


def generate_metadata(
    image_path: Path,
    credentials: list[str],
    config: GenerationConfig,
    *,
    model_factory: ModelFactory | None = None,
    fallback_key: str | None = None,
) -> GeneratedMetadata:
    """
    Prepare one image and generate its metadata, rotating through API keys as needed.

    The image is encoded once; each key attempt reuses the same payload.
    """
    image_bytes = prepare_image_for_agent(
        image_path,
        jpg_quality=config.jpeg_quality,
        max_size=config.jpeg_dimensions,
    )
    prompt = build_metadata_prompt(config)

    def operation(model: Model) -> GeneratedMetadata:
        agent = create_metadata_agent(model, retries=config.retries)
        return analyze_image_with_ai(
            image_bytes,
            agent,
            user_prompt=prompt,
            temperature=config.temperature,
            timeout=config.request_timeout,
        )

    return run_with_key_rotation(
        credentials,
        config.model,
        operation,
        model_factory=model_factory or model_factory_for(config),
        fallback_key=fallback_key if fallback_key is not None else fallback_api_key(),
    )

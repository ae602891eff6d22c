"""Build LLM clients scoped to a single API key."""

import urllib.parse
from collections.abc import Callable
from dataclasses import replace
from http import HTTPStatus

import httpx
from loguru import logger
from pydantic_ai.messages import ModelMessage, ModelResponse
from pydantic_ai.models import Model, ModelRequestParameters
from pydantic_ai.models.google import GoogleModel
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.models.wrapper import WrapperModel
from pydantic_ai.providers.google import GoogleProvider
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.settings import ModelSettings

from imagemeta.settings import DEFAULT_OPENAI_BASE_URL, GenerationConfig, ProviderName, mask_key


ModelFactory = Callable[[str, str], Model]


def create_model(
    api_key: str,
    model_name: str,
    *,
    provider_name: ProviderName = "google",
    base_url: str | None = None,
) -> Model:
    """
    Create a chat model bound to exactly one API key.

    Each call constructs a fresh provider so no credential is shared between clients.
    """
    logger.debug(
        "creating_model_client",
        provider=provider_name,
        model=model_name,
        api_key=mask_key(api_key),
    )
    if provider_name == "google":
        return GoogleModel(model_name, provider=GoogleProvider(api_key=api_key))

    resolved_url = base_url or DEFAULT_OPENAI_BASE_URL
    provider = OpenAIProvider(base_url=resolved_url, api_key=api_key)
    return OpenAIChatModel(model_name=model_name, provider=provider)


class JsonResponseModel(WrapperModel):
    """
    Ask the wrapped model for a JSON response body while the caller still reads plain text.

    Gemini gets ``response_mime_type="application/json"`` and OpenAI-compatible endpoints get
    ``response_format={"type": "json_object"}``. The reply text is returned unparsed.
    """

    async def request(
        self,
        messages: list[ModelMessage],
        model_settings: ModelSettings | None,
        model_request_parameters: ModelRequestParameters,
    ) -> ModelResponse:
        json_parameters = replace(model_request_parameters, output_mode="prompted")
        return await super().request(messages, model_settings, json_parameters)


def model_factory_for(config: GenerationConfig) -> ModelFactory:
    """Return a ``(api_key, model_name) -> Model`` factory honouring the configured provider."""

    def factory(api_key: str, model_name: str) -> Model:
        return create_model(
            api_key,
            model_name,
            provider_name=config.provider,
            base_url=config.base_url,
        )

    return factory


def validate_openai_model(api_base_url: str, model_name: str, api_key: str | None) -> None:
    """Fail fast when an OpenAI-compatible endpoint cannot resolve the requested model name."""
    url = urllib.parse.urljoin(api_base_url.rstrip("/") + "/", "models")
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in {"http", "https"}:
        logger.error("model_listing_invalid_scheme", url=url, scheme=parsed.scheme)
        raise SystemExit(1)
    if not parsed.netloc:
        logger.error("model_listing_missing_host", url=url)
        raise SystemExit(1)
    headers = {"Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        response = httpx.get(url, headers=headers, timeout=5.0)
    except httpx.HTTPError as exc:
        logger.error("model_listing_error", error=str(exc), url=url)
        raise SystemExit(1) from exc

    if response.status_code != HTTPStatus.OK:
        logger.error(
            "model_listing_failed",
            status=response.status_code,
            url=url,
            body=response.text,
        )
        raise SystemExit(1)

    try:
        listing = response.json()
    except ValueError as exc:
        logger.error("model_listing_invalid_json", error=str(exc), url=url)
        raise SystemExit(1) from exc

    # Some endpoints prefix ids with "models/".
    models = [
        str(entry["id"]).removeprefix("models/")
        for entry in listing.get("data", [])
        if isinstance(entry, dict) and "id" in entry
    ]

    if model_name.removeprefix("models/") not in models:
        logger.error(
            "model_not_available",
            requested=model_name,
            available=models,
        )
        raise SystemExit(1)

    logger.debug("model_validated", model=model_name)

"""
Persistent user settings and the immutable per-run generation snapshot.

Settings live in a JSON file as a key-value blob. The schema version is part of the
storage key, so older layouts are simply left behind under their own key instead of
being migrated in place.
"""

import json
import os
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from imagemeta.errors import SettingsError


CreativityLevel = Literal["precise", "balanced", "creative"]
ProviderName = Literal["google", "openai"]

SETTINGS_KEY = "image_meta_pro_settings_v2"
LEGACY_SETTINGS_KEYS = ("image_meta_pro_settings",)

# Configuration defaults
DEFAULT_SETTINGS_FILE = Path(
    os.getenv(
        "IMAGEMETA_SETTINGS_FILE",
        str(Path.home() / ".config" / "imagemeta" / "settings.json"),
    ),
)
DEFAULT_MODEL_NAME = os.getenv("MODEL_NAME", "gemini-2.5-flash")
DEFAULT_OPENAI_BASE_URL = os.getenv(
    "OPENAI_BASE_URL",
    "https://generativelanguage.googleapis.com/v1beta/openai/",
)
DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1280"))
DEFAULT_RETRIES = int(os.getenv("RETRIES", "2"))
DEFAULT_REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60"))
CREATIVITY_TEMPERATURES: dict[str, float] = {
    "precise": 0.2,
    "balanced": 0.5,
    "creative": 0.9,
}


def fallback_api_key() -> str | None:
    """Deployment-wide default key, tried after every user-supplied key."""
    for name in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
        if value := os.getenv(name, "").strip():
            return value
    return None


def mask_key(key: str) -> str:
    """
    Hide most of an API key for display and logging.

    Examples:
        >>> mask_key("AIzaSyExample1234")
        'AIza...1234'
        >>> mask_key("short")
        '****'

    """
    if len(key) <= 8:  # noqa: PLR2004
        return "****"
    return f"{key[:4]}...{key[-4:]}"


class ApiKey(BaseModel):
    """A user-managed credential with an optional human label."""

    key: str
    label: str | None = None


class GenerationConfig(BaseModel):
    """Configuration captured when an operation starts; never mutated afterwards."""

    model_config = ConfigDict(frozen=True)

    model: str = DEFAULT_MODEL_NAME
    provider: ProviderName = "google"
    base_url: str | None = None
    use_auto_metadata: bool = False
    title_length: int = 15
    description_length: int = 100
    keyword_count: int = 25
    temperature: float = CREATIVITY_TEMPERATURES["balanced"]
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    retries: int = DEFAULT_RETRIES
    jpeg_quality: int = DEFAULT_JPEG_QUALITY
    jpeg_dimensions: int = DEFAULT_DIMENSIONS


class AppSettings(BaseModel):
    """User settings persisted between runs."""

    api_keys: list[ApiKey] = Field(default_factory=list)
    model: str = DEFAULT_MODEL_NAME
    provider: ProviderName = "google"
    base_url: str | None = None
    use_auto_metadata: bool = False
    title_length: int = Field(default=15, ge=1)
    description_length: int = Field(default=100, ge=1)
    keyword_count: int = Field(default=25, ge=1, le=50)
    creativity_level: CreativityLevel = "balanced"
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)

    def key_values(self) -> list[str]:
        return [entry.key for entry in self.api_keys]

    def add_key(self, key: str, label: str | None = None) -> None:
        """Append a key at the lowest priority; blank and duplicate keys are rejected."""
        key = key.strip()
        if not key:
            raise SettingsError("API key cannot be empty.")
        if key in self.key_values():
            raise SettingsError("This API key has already been added.")
        self.api_keys.append(ApiKey(key=key, label=label or None))

    def remove_key(self, key: str) -> bool:
        """Remove a key by value or label. Returns False when nothing matched."""
        before = len(self.api_keys)
        self.api_keys = [
            entry for entry in self.api_keys if key not in (entry.key, entry.label)
        ]
        return len(self.api_keys) != before

    def snapshot(
        self,
        *,
        retries: int = DEFAULT_RETRIES,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        jpeg_dimensions: int = DEFAULT_DIMENSIONS,
    ) -> GenerationConfig:
        """Freeze the current settings into a ``GenerationConfig`` for one run."""
        return GenerationConfig(
            model=self.model,
            provider=self.provider,
            base_url=self.base_url,
            use_auto_metadata=self.use_auto_metadata,
            title_length=self.title_length,
            description_length=self.description_length,
            keyword_count=self.keyword_count,
            temperature=CREATIVITY_TEMPERATURES[self.creativity_level],
            request_timeout=self.request_timeout,
            retries=retries,
            jpeg_quality=jpeg_quality,
            jpeg_dimensions=jpeg_dimensions,
        )


class SettingsStore:
    """JSON-file backed store holding ``AppSettings`` under a versioned key."""

    def __init__(self, path: Path = DEFAULT_SETTINGS_FILE) -> None:
        self.path = path

    def _read_blob(self) -> dict[str, object]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.error("settings_read_failed", file=str(self.path), error=str(exc))
            return {}

        try:
            blob = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("settings_file_not_json", file=str(self.path), error=str(exc))
            return {}
        if not isinstance(blob, dict):
            logger.error("settings_file_not_object", file=str(self.path))
            return {}
        return blob

    def load(self) -> AppSettings:
        """Return stored settings, or defaults when missing or unreadable."""
        blob = self._read_blob()
        raw = blob.get(SETTINGS_KEY)
        if raw is None:
            if any(key in blob for key in LEGACY_SETTINGS_KEYS):
                logger.info("legacy_settings_ignored", file=str(self.path))
            return AppSettings()

        try:
            settings = AppSettings.model_validate(raw)
        except ValidationError as exc:
            logger.error("settings_invalid_using_defaults", error=str(exc))
            return AppSettings()

        logger.debug(
            "settings_loaded",
            file=str(self.path),
            api_keys=len(settings.api_keys),
            model=settings.model,
        )
        return settings

    def save(self, settings: AppSettings) -> None:
        """Write the current-version entry, leaving any other keys in the file untouched."""
        blob = self._read_blob()
        blob[SETTINGS_KEY] = settings.model_dump(mode="json")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(blob, indent=2), encoding="utf-8")
        logger.debug("settings_saved", file=str(self.path), api_keys=len(settings.api_keys))

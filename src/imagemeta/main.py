#!/usr/bin/env python3
"""
ImageMeta Pro: CLI app to generate stock-photo SEO metadata and image prompts using AI.

For every image, a hosted vision model writes a title, description, keywords and a 1-5
rating. Results can be exported to CSV and, with --embed, written into the image as
IPTC/XMP tags. The prompts command turns one idea into many text-to-image prompts.

API keys are tried in the order they were added; invalid or rate-limited keys hand over
to the next one. GEMINI_API_KEY (or GOOGLE_API_KEY) is used as a last resort.

Requirements:
 - ExifTool installed and available in PATH (only for --embed).
 - At least one Gemini API key, or an OpenAI-compatible endpoint and key.

"""
# ruff: noqa: PLR0913

import contextlib
import sys
from datetime import UTC, datetime
from itertools import chain
from pathlib import Path
from typing import Annotated, Any, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from imagemeta.csv_export import write_metadata_csv, write_prompts_csv
from imagemeta.errors import ImageMetaError, SettingsError, friendly_message
from imagemeta.exif_writer import MetadataWriter
from imagemeta.metadata import GeneratedMetadata, generate_metadata
from imagemeta.pipeline import PipelineProgress, generate_prompts, generate_simple_prompts
from imagemeta.providers import model_factory_for, validate_openai_model
from imagemeta.rotation import build_candidates, check_api_key
from imagemeta.settings import (
    DEFAULT_DIMENSIONS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_RETRIES,
    DEFAULT_SETTINGS_FILE,
    AppSettings,
    CreativityLevel,
    ProviderName,
    SettingsStore,
    fallback_api_key,
    mask_key,
)
from imagemeta.upload_queue import ErrorPolicy, ItemStatus, QueueItem, UploadQueue


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

SettingsFileOption = Annotated[
    Path,
    Parameter(name=("--settings-file",), help="Settings JSON file"),
]


class MetadataWriteError(ImageMetaError):
    """Metadata was generated but ExifTool could not write it into the file."""


# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="imagemeta",
    version=__version__,
)
keys_app = App(name="keys", help="Manage API keys (tried in the order listed).")
settings_app = App(name="settings", help="Show or change generation settings.")
app.command(keys_app)
app.command(settings_app)


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
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-imagemeta.log"),
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


def _parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a lowercase set like {".jpg", ".png"}.

    Examples:
        >>> sorted(_parse_extensions("jpg, .PNG ,webp"))
        ['.jpg', '.png', '.webp']

    """
    return {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def _resolve_image_files(
    inputs: list[Path],
    ext_set: set[str],
    *,
    recursive: bool,
) -> list[Path]:
    """
    Resolve provided inputs into a list of files.

    - Directories are expanded by extension (honoring --recursive), case-insensitively
    - Explicit files are accepted as-is (extension filter not applied)
    - Order is preserved and duplicates removed
    """
    pattern = "**/*" if recursive else "*"

    files_from_dirs: list[Path] = []
    files_explicit: list[Path] = []

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            files_from_dirs.extend(
                sorted(
                    candidate
                    for candidate in path_resolved.glob(pattern)
                    if candidate.is_file() and candidate.suffix.lower() in ext_set
                ),
            )
        elif path_resolved.is_file():
            files_explicit.append(path_resolved)
        else:
            logger.warning("input_not_file_or_dir", path=str(path))

    combined: list[Path] = []
    seen = set()
    for f in chain(files_explicit, files_from_dirs):
        key = str(f.resolve()) if f.exists() else str(f)
        if key not in seen:
            combined.append(f)
            seen.add(key)

    return combined


def _resolve_image_batch(
    inputs: list[Path] | None,
    image_extensions: str,
    *,
    recursive: bool,
) -> list[Path]:
    ext_set = _parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)

    if not inputs:
        logger.error(
            "no_inputs_provided",
            hint="Pass one or more --input/-i paths (files or directories)",
        )
        raise SystemExit(1)

    image_files = _resolve_image_files(inputs, ext_set, recursive=recursive)
    if not image_files:
        logger.error(
            "no_image_files_found",
            inputs=[str(p) for p in inputs],
            recursive=recursive,
            extensions=sorted(ext_set),
        )
        raise SystemExit(1)

    logger.info("image_files_discovered", count=len(image_files))
    return image_files


def _load_settings(
    settings_file: Path,
    model_name: str | None,
    auto: bool | None = None,
) -> AppSettings:
    settings = SettingsStore(settings_file).load()
    # Per-run overrides; the stored settings are not changed.
    if model_name:
        settings = settings.model_copy(update={"model": model_name})
    if auto is not None:
        settings = settings.model_copy(update={"use_auto_metadata": auto})
    return settings


def _resolve_credentials(settings: AppSettings, api_keys: list[str] | None) -> list[str]:
    """Keys given on the command line come first, then stored keys in their saved order."""
    return build_candidates(chain(api_keys or [], settings.key_values()))


def _check_endpoint(settings: AppSettings, credentials: list[str]) -> None:
    if settings.provider != "openai":
        return
    candidates = build_candidates(credentials, fallback_api_key())
    validate_openai_model(
        settings.base_url or DEFAULT_OPENAI_BASE_URL,
        settings.model,
        candidates[0] if candidates else None,
    )


def _log_queue_change(item: QueueItem[GeneratedMetadata]) -> None:
    if item.status is ItemStatus.PROCESSING:
        logger.info("processing_photo", file=item.path.name)
    elif item.status is ItemStatus.ERROR:
        logger.warning("queue_item_failed", file=item.path.name, error=item.error)


@app.command
def tag(
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True),
            help="One or more paths: files and/or directories (repeat this option)",
        ),
    ] = None,
    *,
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated image file extensions to process (case insensitive)",
        ),
    ] = "jpg,jpeg,png,webp",
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            help="Process files in subdirectories recursively",
        ),
    ] = False,
    model_name: Annotated[
        str | None,
        Parameter(name=("--model", "-m"), help="Model name (overrides settings for this run)"),
    ] = None,
    api_keys: Annotated[
        list[str] | None,
        Parameter(
            name=("--api-key", "-k"),
            help="API key to try before the stored ones (repeatable)",
        ),
    ] = None,
    auto: Annotated[
        bool | None,
        Parameter(
            name=("--auto",),
            negative="--manual",
            help="Let the model choose lengths (overrides settings for this run)",
        ),
    ] = None,
    on_error: Annotated[
        ErrorPolicy,
        Parameter(
            name=("--on-error",),
            help="'halt' fails all remaining files after the first error; 'continue' keeps going",
        ),
    ] = ErrorPolicy.HALT,
    csv_path: Annotated[
        Path | None,
        Parameter(name=("--csv",), help="Write successful results to this CSV file"),
    ] = None,
    embed: Annotated[
        bool,
        Parameter(
            name=("--embed",),
            negative="--no-embed",
            help="Write title, description, keywords and rating into each image with ExifTool",
        ),
    ] = False,
    backup: Annotated[
        bool,
        Parameter(
            name=("--backup",),
            negative="--no-backup",
            help="Let ExifTool keep an _original backup when embedding",
        ),
    ] = False,
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
    retries: Annotated[
        int,
        Parameter(name=("--retries",), help="Number of automatic output validation retries"),
    ] = DEFAULT_RETRIES,
    settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE,
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
    Generate SEO metadata for images, one file at a time.

    Behavior:
    - Each image is downscaled in memory and sent to the model with the stored settings
      (model, auto mode, title/description lengths, keyword count, creativity).
    - Files are processed strictly in order. With --on-error halt (default) the first failure
      marks every remaining file as failed; --on-error continue only fails that file.
    - Successful results go to --csv and, with --embed, into the image files.

    Exit status: returns 1 if no inputs, no images found, or any file fails.

    Examples:
        imagemeta tag -i ./photos --csv metadata.csv
        imagemeta tag -i ./photos/IMG_0001.jpg --embed --on-error continue

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    settings = _load_settings(settings_file, model_name, auto)
    credentials = _resolve_credentials(settings, api_keys)
    config = settings.snapshot(
        retries=retries,
        jpeg_quality=jpeg_quality,
        jpeg_dimensions=jpeg_dimensions,
    )
    logger.info(
        "starting_imagemeta_tag",
        inputs=[str(p) for p in (inputs or [])],
        extensions=image_extensions,
        model=config.model,
        provider=config.provider,
        api_keys=[mask_key(k) for k in credentials],
        fallback_key_present=bool(fallback_api_key()),
        on_error=on_error.value,
        auto_metadata=config.use_auto_metadata,
        temperature=config.temperature,
        embed=embed,
        csv=str(csv_path) if csv_path else None,
    )

    image_files = _resolve_image_batch(inputs, image_extensions, recursive=recursive)
    _check_endpoint(settings, credentials)
    model_factory = model_factory_for(config)

    with contextlib.ExitStack() as stack:
        writer = (
            stack.enter_context(MetadataWriter(overwrite_original=not backup)) if embed else None
        )

        def process(image_path: Path) -> GeneratedMetadata:
            metadata = generate_metadata(
                image_path,
                credentials,
                config,
                model_factory=model_factory,
            )
            if writer is not None:
                saved = writer.save_metadata(image_path, metadata)
                if not saved.success:
                    raise MetadataWriteError(
                        f"Metadata generated but could not be written: {saved.error}",
                    )
            return metadata

        queue: UploadQueue[GeneratedMetadata] = UploadQueue(
            process,
            policy=on_error,
            on_change=_log_queue_change,
        )
        queue.add(image_files)
        queue.run()

    items = queue.items()
    successes = [item for item in items if item.status is ItemStatus.SUCCESS and item.result]
    if csv_path and successes:
        write_metadata_csv(
            ((item.path.name, item.result) for item in successes if item.result is not None),
            csv_path,
        )

    summary = queue.summary()
    logger.info(
        "processing_summary",
        total_files=len(items),
        successful=summary[ItemStatus.SUCCESS.value],
        failed=summary[ItemStatus.ERROR.value],
        halted=queue.halted,
    )
    if summary[ItemStatus.ERROR.value]:
        logger.error(
            "files_failed",
            files={item.path.name: item.error for item in items if item.status is ItemStatus.ERROR},
        )
        raise SystemExit(1)


@app.command
def prompts(
    idea: str,
    *,
    count: Annotated[
        int,
        Parameter(
            name=("--count", "-n"),
            validator=validators.Number(gte=1, lte=200),
            help="Number of prompts to generate (1-200)",
        ),
    ] = 10,
    image_style: Annotated[
        Literal["photorealistic", "vector"],
        Parameter(name=("--style",), help="Image style for the prompts"),
    ] = "photorealistic",
    negative: Annotated[
        bool,
        Parameter(name=("--negative",), help="Also generate a negative prompt for each prompt"),
    ] = False,
    simple: Annotated[
        bool,
        Parameter(
            name=("--simple",),
            help="Single request instead of the research, creative and refine stages",
        ),
    ] = False,
    csv_path: Annotated[
        Path | None,
        Parameter(name=("--csv",), help="Write the prompts to this CSV file"),
    ] = None,
    model_name: Annotated[
        str | None,
        Parameter(name=("--model", "-m"), help="Model name (overrides settings for this run)"),
    ] = None,
    api_keys: Annotated[
        list[str] | None,
        Parameter(name=("--api-key", "-k"), help="API key to try before the stored ones"),
    ] = None,
    settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE,
    console_log_level: Annotated[
        LogLevel,
        Parameter(name="--console-log-level", help="Log level for console (use 'OFF' to disable)"),
    ] = "INFO",
) -> None:
    """
    Generate text-to-image prompts from a single idea.

    Examples:
        imagemeta prompts "futuristic cityscape" -n 20 --negative --csv prompts.csv
        imagemeta prompts "islamic geometric pattern" --style vector --simple

    """
    setup_logging(file_log_level="OFF", console_log_level=console_log_level)
    settings = _load_settings(settings_file, model_name)
    credentials = _resolve_credentials(settings, api_keys)
    config = settings.snapshot()

    def report(progress: PipelineProgress) -> None:
        logger.info("stage_complete", step=progress.step, prompts=len(progress.prompts))

    try:
        if simple:
            result = generate_simple_prompts(idea, count, credentials, config)
        else:
            result = generate_prompts(
                idea,
                count,
                credentials,
                config,
                image_style=image_style,
                include_negative_prompts=negative,
                on_progress=report,
            )
    except Exception as exc:
        logger.error("prompt_generation_failed", error=friendly_message(exc))
        raise SystemExit(1) from exc

    if not result.prompts:
        logger.warning("no_prompts_generated", idea=idea)
        raise SystemExit(1)

    for serial, item in enumerate(result.prompts, start=1):
        print(f"{serial}. {item.prompt}")  # noqa: T201
        if item.negative_prompt:
            print(f"   Negative: {item.negative_prompt}")  # noqa: T201

    if csv_path:
        write_prompts_csv(result.prompts, csv_path)


@keys_app.command(name="list")
def list_keys(*, settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE) -> None:
    """List stored API keys (masked) in the order they are tried."""
    setup_logging(file_log_level="OFF", console_log_level="WARNING")
    settings = SettingsStore(settings_file).load()
    for position, entry in enumerate(settings.api_keys, start=1):
        label = f"  ({entry.label})" if entry.label else ""
        print(f"{position}. {mask_key(entry.key)}{label}")  # noqa: T201
    if fallback := fallback_api_key():
        print(f"*. {mask_key(fallback)}  (environment fallback)")  # noqa: T201


@keys_app.command(name="add")
def add_key(
    key: str,
    *,
    label: Annotated[str | None, Parameter(name=("--label", "-l"))] = None,
    settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE,
) -> None:
    """Add an API key at the lowest priority."""
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    store = SettingsStore(settings_file)
    settings = store.load()
    try:
        settings.add_key(key, label)
    except SettingsError as exc:
        logger.error("api_key_not_added", error=str(exc))
        raise SystemExit(1) from exc
    store.save(settings)
    logger.info("api_key_added", api_key=mask_key(key.strip()), total=len(settings.api_keys))


@keys_app.command(name="remove")
def remove_key(key: str, *, settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE) -> None:
    """Remove an API key by value or label."""
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    store = SettingsStore(settings_file)
    settings = store.load()
    if not settings.remove_key(key):
        logger.warning("api_key_not_found")
        return
    store.save(settings)
    logger.info("api_key_removed", total=len(settings.api_keys))


@keys_app.command(name="test")
def test_keys(
    key: str | None = None,
    *,
    settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE,
) -> None:
    """Check one key, or every stored key, with a tiny request."""
    setup_logging(file_log_level="OFF", console_log_level="WARNING")
    settings = SettingsStore(settings_file).load()
    factory = model_factory_for(settings.snapshot())
    targets = [key] if key is not None else settings.key_values()
    if not targets:
        logger.error("no_api_key_configured")
        raise SystemExit(1)

    failures = 0
    for target in targets:
        result = check_api_key(target, model_name=settings.model, model_factory=factory)
        detail = f" - {result.error}" if result.error else ""
        print(f"{mask_key(target)}: {result.status}{detail}")  # noqa: T201
        failures += not result.success
    if failures:
        raise SystemExit(1)


@settings_app.command(name="show")
def show_settings(*, settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE) -> None:
    """Print the current settings (API keys masked)."""
    setup_logging(file_log_level="OFF", console_log_level="WARNING")
    settings = SettingsStore(settings_file).load()
    shown = settings.model_dump(mode="json", exclude={"api_keys"})
    shown["api_keys"] = [mask_key(k) for k in settings.key_values()]
    for name, value in shown.items():
        print(f"{name}: {value}")  # noqa: T201


@settings_app.command(name="set")
def set_settings(
    *,
    model_name: Annotated[str | None, Parameter(name=("--model", "-m"))] = None,
    provider: Annotated[ProviderName | None, Parameter(name=("--provider",))] = None,
    base_url: Annotated[
        str | None,
        Parameter(name=("--url", "-u"), help="OpenAI-compatible API base URL"),
    ] = None,
    auto: Annotated[
        bool | None,
        Parameter(
            name=("--auto",),
            negative="--manual",
            help="Let the model choose lengths instead of the configured targets",
        ),
    ] = None,
    title_length: Annotated[int | None, Parameter(name=("--title-length",))] = None,
    description_length: Annotated[int | None, Parameter(name=("--description-length",))] = None,
    keyword_count: Annotated[int | None, Parameter(name=("--keyword-count",))] = None,
    creativity: Annotated[CreativityLevel | None, Parameter(name=("--creativity",))] = None,
    timeout: Annotated[
        float | None,
        Parameter(name=("--timeout",), help="Per-request timeout in seconds"),
    ] = None,
    settings_file: SettingsFileOption = DEFAULT_SETTINGS_FILE,
) -> None:
    """Change stored settings; options that are not given keep their value."""
    setup_logging(file_log_level="OFF", console_log_level="INFO")
    store = SettingsStore(settings_file)
    settings = store.load()
    changes: dict[str, Any] = {
        "model": model_name,
        "provider": provider,
        "base_url": base_url,
        "use_auto_metadata": auto,
        "title_length": title_length,
        "description_length": description_length,
        "keyword_count": keyword_count,
        "creativity_level": creativity,
        "request_timeout": timeout,
    }
    changes = {name: value for name, value in changes.items() if value is not None}
    if not changes:
        logger.warning("no_settings_changed")
        return

    try:
        updated = AppSettings.model_validate({**settings.model_dump(), **changes})
    except ValueError as exc:
        logger.error("invalid_setting", error=str(exc))
        raise SystemExit(1) from exc
    store.save(updated)
    logger.info("settings_updated", changed=sorted(changes))


if __name__ == "__main__":
    app()

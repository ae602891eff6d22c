"""
Write generated metadata back into image files with ExifTool.

``MetadataWriter`` owns one long-running ExifTool process for its lifetime: start it once,
write any number of files, and terminate it on exit so no background process leaks.
"""

from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Self

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolExecuteError
from loguru import logger

from imagemeta.metadata import GeneratedMetadata


@dataclass(frozen=True)
class SaveResult:
    success: bool
    error: str | None = None


def build_tags(metadata: GeneratedMetadata) -> dict[str, str | int | list[str]]:
    """
    Map generated metadata to IPTC tags, mirrored into XMP for Lightroom and Bridge.

    Examples:
        >>> meta = GeneratedMetadata(title="T", description="D", keywords="a, b", rating=4)
        >>> build_tags(meta)  # doctest: +NORMALIZE_WHITESPACE
        {'IPTC:ObjectName': 'T', 'IPTC:Caption-Abstract': 'D', 'IPTC:Keywords': ['a', 'b'],
         'XMP:Rating': 4, 'XMP-dc:Title': 'T', 'XMP-dc:Description': 'D',
         'XMP-dc:Subject': ['a', 'b']}

    """
    keywords = metadata.keyword_list()
    return {
        "IPTC:ObjectName": metadata.title,
        "IPTC:Caption-Abstract": metadata.description,
        "IPTC:Keywords": keywords,
        "XMP:Rating": metadata.rating,
        "XMP-dc:Title": metadata.title,
        "XMP-dc:Description": metadata.description,
        "XMP-dc:Subject": keywords,
    }


class MetadataWriter:
    """Scoped ExifTool session exposing a single operation: save metadata to a file."""

    def __init__(self, *, overwrite_original: bool = True) -> None:
        self.overwrite_original = overwrite_original
        self._et = ExifToolHelper()  # type: ignore[no-untyped-call]

    def __enter__(self) -> Self:
        self._et.run()
        logger.debug("exiftool_started")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        if self._et.running:
            self._et.terminate()
            logger.debug("exiftool_terminated")

    def save_metadata(
        self,
        file_path: Path | None,
        metadata: GeneratedMetadata,
        *,
        overwrite_original: bool | None = None,
    ) -> SaveResult:
        """
        Write title, description, keywords and rating into ``file_path``.

        ``overwrite_original`` overrides the writer default for this file only.

        Returns:
            SaveResult with ``success`` False and an error message instead of raising.

        """
        if not file_path:
            return SaveResult(success=False, error="File path is missing.")

        if overwrite_original is None:
            overwrite_original = self.overwrite_original
        params = ["-overwrite_original"] if overwrite_original else None
        try:
            self._et.set_tags(files=[str(file_path)], tags=build_tags(metadata), params=params)
        except (ValueError, TypeError, ExifToolExecuteError) as e:
            logger.exception("metadata_write_failed", error=str(e), target=str(file_path))
            return SaveResult(success=False, error=str(e))

        logger.info(
            "metadata_written_successfully",
            target=str(file_path),
            keywords=len(metadata.keyword_list()),
            rating=metadata.rating,
            backup_created=not overwrite_original,
        )
        return SaveResult(success=True)

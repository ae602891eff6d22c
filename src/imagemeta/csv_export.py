"""
CSV export of generated metadata and prompts.

Every field is quoted and embedded double quotes are doubled (RFC 4180), so titles and
descriptions containing commas or quotes survive a round trip.
"""

import csv
from collections.abc import Iterable
from pathlib import Path

from loguru import logger

from imagemeta.metadata import GeneratedMetadata
from imagemeta.pipeline import ImagePrompt


METADATA_HEADER = ("Filename", "Title", "Description", "Keywords", "Rating")
PROMPT_HEADER = ("Serial", "Prompt", "Negative Prompt")


def write_metadata_csv(
    rows: Iterable[tuple[str, GeneratedMetadata]],
    output_path: Path,
) -> int:
    """
    Write ``(filename, metadata)`` rows to ``output_path``.

    Returns:
        Number of data rows written.

    """
    count = 0
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, quoting=csv.QUOTE_ALL, lineterminator="\r\n")
        writer.writerow(METADATA_HEADER)
        for filename, metadata in rows:
            writer.writerow(
                (
                    filename,
                    metadata.title,
                    metadata.description,
                    metadata.keywords,
                    metadata.rating,
                ),
            )
            count += 1
    logger.info("metadata_csv_written", file=str(output_path), rows=count)
    return count


def read_metadata_csv(input_path: Path) -> list[tuple[str, GeneratedMetadata]]:
    """Parse a file written by ``write_metadata_csv`` back into metadata records."""
    with input_path.open(encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        return [
            (
                row["Filename"],
                GeneratedMetadata(
                    title=row["Title"],
                    description=row["Description"],
                    keywords=row["Keywords"],
                    rating=int(row["Rating"]),
                ),
            )
            for row in reader
        ]


def write_prompts_csv(prompts: Iterable[ImagePrompt], output_path: Path) -> int:
    """Write prompts with a 1-based serial number."""
    count = 0
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, quoting=csv.QUOTE_ALL, lineterminator="\r\n")
        writer.writerow(PROMPT_HEADER)
        for serial, item in enumerate(prompts, start=1):
            writer.writerow((serial, item.prompt, item.negative_prompt or ""))
            count += 1
    logger.info("prompts_csv_written", file=str(output_path), rows=count)
    return count

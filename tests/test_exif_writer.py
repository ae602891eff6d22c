"""Tests for the ExifTool metadata writer using a stubbed ExifToolHelper."""

from pathlib import Path
from typing import Any

import pytest
from exiftool.exceptions import ExifToolExecuteError

import imagemeta.exif_writer as w
from imagemeta.metadata import GeneratedMetadata


class _StubExifTool:
    """Records lifecycle calls and tag writes instead of spawning exiftool."""

    fail_with: Exception | None = None

    def __init__(self) -> None:
        self.running = False
        self.events: list[str] = []
        self.writes: list[dict[str, Any]] = []

    def run(self) -> None:
        self.running = True
        self.events.append("run")

    def terminate(self) -> None:
        self.running = False
        self.events.append("terminate")

    def set_tags(
        self,
        files: list[str],
        tags: dict[str, Any],
        params: list[str] | None = None,
    ) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.writes.append({"files": files, "tags": tags, "params": params})
        return "1 image files updated"


@pytest.fixture
def stub_exiftool(monkeypatch: pytest.MonkeyPatch) -> list[_StubExifTool]:
    created: list[_StubExifTool] = []

    def factory() -> _StubExifTool:
        instance = _StubExifTool()
        created.append(instance)
        return instance

    monkeypatch.setattr(w, "ExifToolHelper", factory)
    return created


META = GeneratedMetadata(
    title="Foggy Harbor at Dawn",
    description="Fishing boats moored in a quiet harbor under morning fog.",
    keywords="harbor, fog, boats",
    rating=5,
)


def test_build_tags_mirrors_iptc_into_xmp() -> None:
    """Keywords become a list and every field lands in both IPTC and XMP."""
    tags = w.build_tags(META)

    assert tags["IPTC:ObjectName"] == tags["XMP-dc:Title"] == "Foggy Harbor at Dawn"
    assert tags["IPTC:Caption-Abstract"] == tags["XMP-dc:Description"]
    assert tags["IPTC:Keywords"] == tags["XMP-dc:Subject"] == ["harbor", "fog", "boats"]
    assert tags["XMP:Rating"] == 5  # noqa: PLR2004


def test_writer_starts_and_terminates_exiftool(
    stub_exiftool: list[_StubExifTool],
    tmp_path: Path,
) -> None:
    """The process lives exactly as long as the context and writes overwrite in place."""
    target = tmp_path / "harbor.jpg"

    with w.MetadataWriter() as writer:
        result = writer.save_metadata(target, META)

    et = stub_exiftool[0]
    assert result == w.SaveResult(success=True)
    assert et.events == ["run", "terminate"]
    assert et.writes[0]["files"] == [str(target)]
    assert et.writes[0]["params"] == ["-overwrite_original"]


def test_writer_keeps_backup_when_requested(
    stub_exiftool: list[_StubExifTool],
    tmp_path: Path,
) -> None:
    """Without overwrite_original ExifTool is left to create its _original backup."""
    with w.MetadataWriter(overwrite_original=False) as writer:
        writer.save_metadata(tmp_path / "harbor.jpg", META)

    assert stub_exiftool[0].writes[0]["params"] is None


def test_writer_per_call_override(stub_exiftool: list[_StubExifTool], tmp_path: Path) -> None:
    """A single call can opt out of overwriting without changing the writer default."""
    with w.MetadataWriter() as writer:
        writer.save_metadata(tmp_path / "a.jpg", META, overwrite_original=False)
        writer.save_metadata(tmp_path / "b.jpg", META)

    writes = stub_exiftool[0].writes
    assert [entry["params"] for entry in writes] == [None, ["-overwrite_original"]]


def test_writer_reports_missing_path(stub_exiftool: list[_StubExifTool]) -> None:
    """An empty path is reported, not raised, and nothing is written."""
    with w.MetadataWriter() as writer:
        result = writer.save_metadata(None, META)

    assert not result.success
    assert result.error == "File path is missing."
    assert stub_exiftool[0].writes == []


def test_writer_converts_exiftool_errors_to_failed_result(
    stub_exiftool: list[_StubExifTool],
    tmp_path: Path,
) -> None:
    """ExifTool execution errors become a failed SaveResult and the process still stops."""
    with w.MetadataWriter() as writer:
        stub_exiftool[0].fail_with = ExifToolExecuteError(1, "", "Error: file not found", [])
        result = writer.save_metadata(tmp_path / "gone.jpg", META)

    assert not result.success
    assert result.error
    assert stub_exiftool[0].events == ["run", "terminate"]

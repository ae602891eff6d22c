"""Tests for the versioned settings store and generation snapshots."""

import json
from pathlib import Path

import pytest

import imagemeta.settings as s
from imagemeta.errors import SettingsError


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    """A fresh install starts with default settings and no keys."""
    settings = s.SettingsStore(tmp_path / "missing.json").load()

    assert settings == s.AppSettings()
    assert settings.api_keys == []


def test_save_writes_versioned_key_and_keeps_legacy_data(tmp_path: Path) -> None:
    """Old-shape data stays orphaned under its old key instead of being migrated."""
    path = tmp_path / "settings.json"
    legacy = {"apiKeys": ["legacy-key"], "model": "googleai/gemini-2.5-flash"}
    path.write_text(json.dumps({"image_meta_pro_settings": legacy}), encoding="utf-8")
    store = s.SettingsStore(path)

    settings = store.load()
    assert settings.api_keys == []

    settings.add_key("AIzaNewKey12345", label="work")
    store.save(settings)

    blob = json.loads(path.read_text(encoding="utf-8"))
    assert blob["image_meta_pro_settings"] == legacy
    assert blob[s.SETTINGS_KEY]["api_keys"] == [{"key": "AIzaNewKey12345", "label": "work"}]
    assert store.load().key_values() == ["AIzaNewKey12345"]


def test_invalid_blob_falls_back_to_defaults(tmp_path: Path) -> None:
    """Unparsable files and schema mismatches never crash the app."""
    path = tmp_path / "settings.json"
    path.write_text("{broken", encoding="utf-8")
    assert s.SettingsStore(path).load() == s.AppSettings()

    path.write_text(json.dumps({s.SETTINGS_KEY: {"keyword_count": "lots"}}), encoding="utf-8")
    assert s.SettingsStore(path).load() == s.AppSettings()


def test_add_key_rejects_blank_and_duplicates() -> None:
    """Keys are unique by value and must not be empty."""
    settings = s.AppSettings()
    settings.add_key("  key-one  ")

    with pytest.raises(SettingsError, match="empty"):
        settings.add_key("   ")
    with pytest.raises(SettingsError, match="already"):
        settings.add_key("key-one")

    assert settings.key_values() == ["key-one"]


def test_remove_key_by_value_or_label() -> None:
    """Removal accepts the key itself or its label; unknown keys are a no-op."""
    settings = s.AppSettings()
    settings.add_key("key-one", label="personal")
    settings.add_key("key-two")

    assert settings.remove_key("personal")
    assert not settings.remove_key("key-three")
    assert settings.key_values() == ["key-two"]


def test_snapshot_is_frozen_and_maps_creativity() -> None:
    """Snapshots copy the settings and translate creativity into a temperature."""
    settings = s.AppSettings(creativity_level="creative", keyword_count=40, use_auto_metadata=True)

    config = settings.snapshot(retries=1)
    settings.keyword_count = 10

    assert config.temperature == pytest.approx(0.9)
    assert config.keyword_count == 40
    assert config.use_auto_metadata
    assert config.retries == 1
    with pytest.raises(ValueError, match="frozen"):
        config.keyword_count = 5  # type: ignore[misc]


def test_fallback_api_key_prefers_gemini_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """GEMINI_API_KEY wins over GOOGLE_API_KEY; blank values are ignored."""
    monkeypatch.setenv("GEMINI_API_KEY", "  ")
    monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
    assert s.fallback_api_key() == "google-key"

    monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
    assert s.fallback_api_key() == "gemini-key"

    monkeypatch.delenv("GEMINI_API_KEY")
    monkeypatch.delenv("GOOGLE_API_KEY")
    assert s.fallback_api_key() is None


def test_mask_key() -> None:
    """Keys are shortened for display."""
    assert s.mask_key("AIzaSyExample1234") == "AIza...1234"
    assert s.mask_key("12345678") == "****"

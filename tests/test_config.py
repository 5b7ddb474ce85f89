from __future__ import annotations

import json
from pathlib import Path

import pytest

from med_vid.config import (
    DEFAULT_CAMERA_SETTINGS,
    DEFAULT_RECORDER_SETTINGS,
    DEFAULT_THUMBNAIL_SETTINGS,
    ConfigManager,
    Resolution,
    ThumbnailSettings,
)


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    assert manager.get_camera_settings() == DEFAULT_CAMERA_SETTINGS
    assert manager.get_recorder_settings() == DEFAULT_RECORDER_SETTINGS
    thumbnails = manager.get_thumbnail_settings()
    assert thumbnails == DEFAULT_THUMBNAIL_SETTINGS
    assert (thumbnails.target_count, thumbnails.max_width, thumbnails.jpeg_quality) == (5, 320, 85)
    assert thumbnails.settle_delay == pytest.approx(0.05)


def test_camera_persistence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MEDVID_CAMERA", raising=False)
    config_file = tmp_path / "config.json"
    manager = ConfigManager(config_file)

    manager.set_camera("synthetic")
    manager.set_camera_settings({"resolution": "640x480", "facing_devices": {"environment": 2}})

    reloaded = ConfigManager(config_file)
    settings = reloaded.get_camera_settings()
    assert reloaded.get_camera() == "synthetic"
    assert settings.resolution == Resolution(640, 480)
    assert settings.facing_devices == {"user": 0, "environment": 2}


def test_camera_requires_known_choice(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    with pytest.raises(ValueError):
        manager.set_camera("")
    with pytest.raises(ValueError):
        manager.set_camera("picamera")
    with pytest.raises(ValueError):
        manager.set_camera_settings({"facing_devices": {"sideways": 3}})


def test_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    monkeypatch.setenv("MEDVID_CAMERA", "synthetic")
    monkeypatch.setenv("MEDVID_DATA_DIR", str(tmp_path / "elsewhere"))

    assert manager.get_camera() == "synthetic"
    storage = manager.get_storage_settings()
    assert storage.root == tmp_path / "elsewhere"
    assert storage.catalog_dir == tmp_path / "elsewhere" / "videos"


def test_recorder_preferences_are_validated(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    updated = manager.set_recorder_settings(
        {"format_preferences": ["video/mp4", "video/webm", "video/mp4"], "tick_interval": 0.5}
    )

    assert updated.format_preferences == ("video/mp4", "video/webm")
    assert updated.tick_interval == 0.5
    with pytest.raises(ValueError):
        manager.set_recorder_settings({"format_preferences": ["video/x-flv"]})
    with pytest.raises(ValueError):
        manager.set_recorder_settings({"tick_interval": 0})


def test_thumbnail_settings_round_trip(tmp_path: Path) -> None:
    config_file = tmp_path / "config.json"
    manager = ConfigManager(config_file)

    manager.set_thumbnail_settings({"target_count": 3, "quality": 70, "seek_timeout": 2})

    payload = json.loads(config_file.read_text())
    assert payload["thumbnails"]["target_count"] == 3
    reloaded = ConfigManager(config_file).get_thumbnail_settings()
    assert reloaded == ThumbnailSettings(target_count=3, jpeg_quality=70, seek_timeout=2.0)


@pytest.mark.parametrize(
    "payload",
    [
        {"target_count": 0},
        {"jpeg_quality": 101},
        {"max_width": 4},
        {"settle_delay": 6.0},
        {"metadata_timeout": "soon"},
    ],
)
def test_invalid_thumbnail_settings_rejected(tmp_path: Path, payload: dict) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    with pytest.raises(ValueError):
        manager.set_thumbnail_settings(payload)
    assert manager.get_thumbnail_settings() == DEFAULT_THUMBNAIL_SETTINGS


def test_legacy_camera_string_is_accepted(tmp_path: Path) -> None:
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"camera": "opencv"}))

    manager = ConfigManager(config_file)

    assert manager.get_camera_settings().choice == "opencv"


def test_corrupt_file_raises(tmp_path: Path) -> None:
    config_file = tmp_path / "config.json"
    config_file.write_text("[1, 2, 3]")

    with pytest.raises(RuntimeError):
        ConfigManager(config_file)

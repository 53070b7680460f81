from __future__ import annotations

import json
from pathlib import Path

import pytest

from bird_cam.config import (
    GIB,
    ConfigManager,
    MotionSettings,
    RecordingSettings,
    Resolution,
    StorageSettings,
)


def test_defaults_when_file_missing(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")

    assert manager.get_camera() == "auto"
    assert manager.get_resolution() == Resolution(1280, 720)
    assert manager.get_stream_settings().jpeg_quality == 80
    motion = manager.get_motion_settings()
    assert (motion.variant, motion.threshold, motion.debounce_frames) == ("difference", 10.0, 3)
    recording = manager.get_recording_settings()
    assert recording.hold_frames == 300
    assert recording.bitrate == 2_000_000
    storage = manager.get_storage_settings()
    assert storage.max_total_bytes == 5 * GIB
    assert storage.min_free_bytes == GIB
    assert storage.backend == "local"


def test_settings_persist_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    manager = ConfigManager(path)
    manager.set_storage_settings({"max_total_gb": 2.5, "min_free_gb": "0.5"})
    summary = manager.update_settings(
        {
            "camera": "Synthetic",
            "resolution": "640x480",
            "motion": {"variant": "Background", "min_area": 800},
            "recording": {"hold_frames": 90, "max_session_frames": 0},
        }
    )

    assert summary["camera"] == "synthetic"
    assert summary["resolution"] == "640x480"

    reloaded = ConfigManager(path)

    assert reloaded.get_storage_settings() == StorageSettings(max_total_gb=2.5, min_free_gb=0.5)
    assert reloaded.get_motion_settings().variant == "background"
    assert reloaded.get_motion_settings().min_area == 800
    assert reloaded.get_recording_settings().hold_frames == 90
    assert reloaded.get_recording_settings().max_session_frames is None
    assert reloaded.get_resolution() == Resolution(640, 480)
    assert reloaded.get_camera() == "synthetic"
    payload = json.loads(path.read_text())
    assert payload["storage"]["max_total_gb"] == 2.5


@pytest.mark.parametrize(
    "payload",
    [
        {"camera": "picamera"},
        {"resolution": "wide"},
        {"stream": {"fps": 500}},
        {"camera": "synthetic", "motion": {"debounce_frames": 0}},
    ],
)
def test_invalid_update_leaves_settings_untouched(tmp_path: Path, payload: dict) -> None:
    path = tmp_path / "config.json"
    manager = ConfigManager(path)
    with pytest.raises(ValueError):
        manager.update_settings(payload)
    assert manager.get_camera() == "auto"
    assert manager.get_motion_settings() == MotionSettings()
    assert not path.exists()


def test_partial_update_keeps_other_fields(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    manager.set_storage_settings({"max_total_gb": 8})
    settings = manager.get_storage_settings()
    assert settings.max_total_gb == 8.0
    assert settings.min_free_gb == 1.0


def test_external_backend_requires_path(tmp_path: Path) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    with pytest.raises(ValueError):
        manager.set_storage_settings({"backend": "external"})

    manager.set_storage_settings({"backend": "external", "external_path": str(tmp_path)})
    reset = manager.reset_storage_backend()
    assert reset.backend == "local"
    assert reset.external_path is None


@pytest.mark.parametrize(
    "payload",
    [
        {"max_total_gb": -1},
        {"min_free_gb": "lots"},
        {"backend": "cloud"},
    ],
)
def test_invalid_storage_settings_are_rejected(tmp_path: Path, payload: dict) -> None:
    manager = ConfigManager(tmp_path / "config.json")
    with pytest.raises(ValueError):
        manager.set_storage_settings(payload)
    assert manager.get_storage_settings() == StorageSettings()


def test_invalid_value_objects() -> None:
    with pytest.raises(ValueError):
        MotionSettings(variant="magic")
    with pytest.raises(ValueError):
        MotionSettings(debounce_frames=0)
    with pytest.raises(ValueError):
        RecordingSettings(prefix="bad/prefix")
    with pytest.raises(ValueError):
        Resolution(0, 10)


def test_malformed_file_raises_runtime_error(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(RuntimeError, match="Failed to load configuration"):
        ConfigManager(path)


def test_unknown_camera_in_file_falls_back_to_default(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"camera": "picamera"}))
    assert ConfigManager(path).get_camera() == "auto"

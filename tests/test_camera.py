from __future__ import annotations

import asyncio

import numpy as np
import pytest

from med_vid import camera as camera_module
from med_vid.camera import (
    MediaConstraints,
    SyntheticCamera,
    create_camera,
    identify_camera,
    resolve_device_index,
    summarise_exception,
)
from med_vid.errors import CameraError, DeviceUnavailable, PermissionDenied


def test_constraints_are_normalised() -> None:
    constraints = MediaConstraints(facing_mode=" Environment ", width="640", height=480.0, fps=24)

    assert constraints.facing_mode == "environment"
    assert constraints.resolution == (640, 480)
    assert constraints.to_dict()["fps"] == 24


@pytest.mark.parametrize(
    "kwargs",
    [{"facing_mode": "sideways"}, {"width": 0}, {"fps": 0}, {"fps": 240}],
)
def test_invalid_constraints(kwargs) -> None:
    with pytest.raises(ValueError):
        MediaConstraints(**kwargs)


def test_synthetic_camera_produces_rgb_frames() -> None:
    camera = create_camera(MediaConstraints(width=64, height=48, fps=12), "synthetic")

    frame = asyncio.run(camera.get_frame())

    assert isinstance(camera, SyntheticCamera)
    assert identify_camera(camera) == "synthetic"
    assert camera.fps == 12
    assert frame.shape == (48, 64, 3)
    assert frame.dtype == np.uint8
    asyncio.run(camera.close())
    with pytest.raises(CameraError):
        asyncio.run(camera.get_frame())


def test_auto_falls_back_when_device_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(*args, **kwargs):
        raise DeviceUnavailable("no device")

    monkeypatch.setattr(camera_module, "OpenCVCamera", missing)

    camera = create_camera(MediaConstraints(), "auto")

    assert isinstance(camera, SyntheticCamera)


def test_auto_does_not_mask_permission_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def blocked(*args, **kwargs):
        raise PermissionDenied("not in video group")

    monkeypatch.setattr(camera_module, "OpenCVCamera", blocked)

    with pytest.raises(PermissionDenied):
        create_camera(MediaConstraints(), "auto")


def test_facing_mode_selects_device(monkeypatch: pytest.MonkeyPatch) -> None:
    opened: list[int] = []

    class _FakeOpenCV:
        def __init__(self, index, resolution=None, *, fps=None) -> None:
            opened.append(index)

    monkeypatch.setattr(camera_module, "OpenCVCamera", _FakeOpenCV)

    create_camera(MediaConstraints(facing_mode="environment"), "webcam", device_map={"environment": 4})

    assert opened == [4]
    assert resolve_device_index("user") == 0


def test_unknown_choice_is_unavailable() -> None:
    with pytest.raises(DeviceUnavailable):
        create_camera(MediaConstraints(), "kinect")


def test_summarise_exception_collects_chain() -> None:
    try:
        try:
            raise OSError("busy")
        except OSError as inner:
            raise CameraError("open failed") from inner
    except CameraError as exc:
        assert summarise_exception(exc) == "open failed | busy"

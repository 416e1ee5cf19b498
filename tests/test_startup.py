from __future__ import annotations

from dataclasses import replace

import pytest

from overlay_core.assets import AssetLoader, AssetsConfig
from overlay_core.camera import CameraAcquisition, ConstraintMode
from overlay_core.config import AppConfig
from overlay_core.errors import CameraDeviceError, CameraErrorKind, PoseModelError, StartupError, camera_error
from overlay_core.render_loop import ManualScheduler
from overlay_core.startup import STAGE_ASSETS, STAGE_CAMERA, STAGE_POSE_MODEL, start_session
from overlay_core.types import AnchorId, CameraState, FacingMode

from fakes import FACE_POSE, FakeBackend, FakeCapture, FakeEstimator, FutureEstimator, make_pose


@pytest.fixture
def config(tmp_path):
    missing = str(tmp_path / "missing.glb")
    return replace(
        AppConfig(),
        assets=AssetsConfig(shoulder=missing, back=missing, head=missing),
        threaded_inference=False,
    )


def start(config, backend, estimator=None, frames=None):
    scheduler = ManualScheduler()
    est = estimator or FakeEstimator(make_pose(**FACE_POSE))
    session = start_session(
        config,
        scheduler,
        on_frame=frames.append if frames is not None else None,
        acquisition=CameraAcquisition(backend, config.camera),
        estimator_factory=lambda cfg: est,
        asset_loader=AssetLoader(config.assets),
    )
    return session, scheduler, est


def test_start_runs_full_pipeline(config):
    frames = []
    session, scheduler, est = start(config, FakeBackend({ConstraintMode.EXACT: FakeCapture()}), frames=frames)
    assert session.camera.state is CameraState.ACTIVE
    assert all(a.placeholder for a in session.assets.values())
    assert scheduler.pending == 1

    scheduler.run(4)
    assert len(est.calls) == 2
    assert len(frames) == 4
    assert session.engine.anchors[AnchorId.HEAD].visible
    assert session.compositor.frames_submitted == 4


def test_camera_failure_aborts_startup(config):
    backend = FakeBackend({m: camera_error(CameraErrorKind.PERMISSION_DENIED) for m in ConstraintMode})
    with pytest.raises(StartupError) as exc:
        start(config, backend)
    assert exc.value.stage == STAGE_CAMERA
    assert exc.value.cause.kind is CameraErrorKind.PERMISSION_DENIED


def test_pose_model_failure_releases_camera(config):
    cap = FakeCapture()

    def broken(cfg):
        raise PoseModelError("no model")

    with pytest.raises(StartupError) as exc:
        start_session(
            config,
            ManualScheduler(),
            acquisition=CameraAcquisition(FakeBackend({ConstraintMode.EXACT: cap})),
            estimator_factory=broken,
            asset_loader=AssetLoader(config.assets),
        )
    assert exc.value.stage == STAGE_POSE_MODEL
    assert cap.released


def test_threaded_inference_wraps_estimator(config):
    session, scheduler, est = start(replace(config, threaded_inference=True), FakeBackend({ConstraintMode.EXACT: FakeCapture()}))
    assert session.estimator is not est
    session.close()
    session.estimator.close().result(timeout=5)
    assert est.closed


def test_close_stops_everything(config):
    cap = FakeCapture()
    session, scheduler, est = start(config, FakeBackend({ConstraintMode.EXACT: cap}))
    scheduler.run(2)
    session.close()
    assert not session.ctx.running
    assert cap.released and est.closed
    scheduler.run(5)
    assert scheduler.pending == 0


def test_switch_camera_resets_pose_and_follows_facing(config):
    backend = FakeBackend({ConstraintMode.EXACT: FakeCapture()})
    session, scheduler, _ = start(config, backend)
    scheduler.run(2)
    assert session.ctx.held_pose is not None

    backend.outcomes[ConstraintMode.EXACT] = FakeCapture()
    session.switch_camera()
    assert session.ctx.facing is FacingMode.ENVIRONMENT
    assert session.ctx.held_pose is None
    assert backend.attempts[-1].facing is FacingMode.ENVIRONMENT


def test_switch_camera_failure_keeps_loop_running(config):
    backend = FakeBackend({ConstraintMode.EXACT: FakeCapture()})
    session, scheduler, _ = start(config, backend)
    backend.outcomes = {m: camera_error(CameraErrorKind.DEVICE_NOT_FOUND) for m in ConstraintMode}
    with pytest.raises(CameraDeviceError):
        session.switch_camera()
    assert session.ctx.facing is FacingMode.ENVIRONMENT
    assert session.camera.state is CameraState.FAILED
    assert scheduler.run(3) == 3
    assert session.ctx.running


def test_detection_from_previous_camera_is_dropped_after_switch(config):
    backend = FakeBackend({ConstraintMode.EXACT: FakeCapture()})
    est = FutureEstimator()
    session, scheduler, _ = start(config, backend, estimator=est)
    scheduler.run(2)
    assert session.loop.detection_pending

    backend.outcomes[ConstraintMode.EXACT] = FakeCapture()
    session.switch_camera()
    est.futures[0].set_result(make_pose(**FACE_POSE))
    scheduler.run(1)
    assert session.ctx.held_pose is None
    assert not any(st.visible for st in session.engine.anchors.values())

    scheduler.run(1)
    assert len(est.futures) == 2
    pose = make_pose(**FACE_POSE)
    est.futures[1].set_result(pose)
    scheduler.run(1)
    assert session.ctx.held_pose is pose
    assert session.ctx.facing is FacingMode.ENVIRONMENT


def test_unexpected_asset_failure_releases_camera_and_detector(config):
    class BrokenLoader:
        def load_anchor_assets(self):
            raise RuntimeError("mesh parser crashed")

    cap = FakeCapture()
    est = FakeEstimator(None)
    scheduler = ManualScheduler()
    with pytest.raises(StartupError) as exc:
        start_session(
            config,
            scheduler,
            acquisition=CameraAcquisition(FakeBackend({ConstraintMode.EXACT: cap})),
            estimator_factory=lambda cfg: est,
            asset_loader=BrokenLoader(),
        )
    assert exc.value.stage == STAGE_ASSETS
    assert "mesh parser crashed" in str(exc.value)
    assert cap.released and est.closed
    assert scheduler.pending == 0

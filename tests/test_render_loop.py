from __future__ import annotations

import threading

import numpy as np
import pytest

from overlay_core.placement import AnchorPlacementEngine
from overlay_core.pose_detector import ThreadedPoseEstimator
from overlay_core.render_loop import LoopConfig, ManualScheduler, RenderLoop, SessionContext
from overlay_core.types import AnchorId, FacingMode

from fakes import (
    BACK_POSE,
    FACE_POSE,
    FakeEstimator,
    FakeSource,
    FutureEstimator,
    RecordingClock,
    RecordingRenderer,
    make_pose,
)


def build_loop(estimator, source=None, every_n=2, clocks=(), renderer=None, facing=FacingMode.USER):
    ctx = SessionContext(facing=facing, clock=lambda: 1234.0)
    scheduler = ManualScheduler()
    loop = RenderLoop(
        ctx,
        source or FakeSource(),
        estimator,
        AnchorPlacementEngine(),
        renderer or RecordingRenderer(),
        scheduler,
        clocks=clocks,
        config=LoopConfig(pose_every_n_frames=every_n),
    )
    return loop, scheduler


@pytest.mark.parametrize("every_n, ticks, expected", [(2, 6, 3), (3, 9, 3), (1, 4, 4)])
def test_detection_runs_every_n_ticks(every_n, ticks, expected):
    est = FakeEstimator(make_pose(**FACE_POSE))
    loop, scheduler = build_loop(est, every_n=every_n)
    loop.start()
    assert scheduler.run(ticks) == ticks
    assert len(est.calls) == expected
    assert est.calls[0] == 1234.0
    assert loop.ctx.frame == ticks


def test_no_detection_until_video_has_data():
    est = FakeEstimator(make_pose(**FACE_POSE))
    source = FakeSource(ready=False)
    loop, scheduler = build_loop(est, source=source)
    loop.start()
    scheduler.run(4)
    assert est.calls == []
    assert source.polls == 4


def test_inference_failure_keeps_previous_pose():
    first = make_pose(**FACE_POSE)
    est = FakeEstimator(first, RuntimeError("model hiccup"), RuntimeError("again"))
    loop, scheduler = build_loop(est)
    loop.start()
    scheduler.run(2)
    assert loop.ctx.held_pose is first
    scheduler.run(4)
    assert loop.ctx.held_pose is first
    assert loop.ctx.inference_failures == 2
    assert loop.engine.anchors[AnchorId.HEAD].visible


def test_empty_detection_replaces_pose_and_hides_anchors():
    est = FakeEstimator(make_pose(**FACE_POSE), None)
    loop, scheduler = build_loop(est)
    loop.start()
    scheduler.run(2)
    assert loop.engine.anchors[AnchorId.HEAD].visible
    scheduler.run(2)
    assert loop.ctx.held_pose is None
    assert not any(st.visible for st in loop.engine.anchors.values())


def test_every_tick_advances_animation_and_submits():
    clock = RecordingClock()
    renderer = RecordingRenderer()
    loop, scheduler = build_loop(FakeEstimator(make_pose(**BACK_POSE)), clocks=[clock], renderer=renderer)
    loop.start()
    scheduler.run(5)
    assert clock.steps == [pytest.approx(1 / 60)] * 5
    assert len(renderer.submissions) == 5
    assert all(len(s) == 4 for s in renderer.submissions)
    last = {t.id: t for t in renderer.submissions[-1]}
    assert last[AnchorId.BACK].visible and not last[AnchorId.HEAD].visible


def test_anchors_keep_converging_between_detections():
    loop, scheduler = build_loop(FakeEstimator(make_pose(**FACE_POSE)), every_n=4)
    loop.start()
    scheduler.run(4)
    x4 = loop.engine.anchors[AnchorId.SHOULDER_LEFT].position[0]
    scheduler.run(2)
    x6 = loop.engine.anchors[AnchorId.SHOULDER_LEFT].position[0]
    assert x6 > x4


def test_stop_prevents_rescheduling():
    loop, scheduler = build_loop(FakeEstimator(None))
    loop.start()
    scheduler.run(3)
    loop.stop()
    assert scheduler.run(10) <= 1
    assert scheduler.pending == 0
    assert loop.ctx.frame == 3


def test_stop_requested_inside_tick_is_the_last_tick():
    class StoppingRenderer(RecordingRenderer):
        def submit(self, transforms):
            super().submit(transforms)
            if len(self.submissions) == 2:
                loop.stop()

    renderer = StoppingRenderer()
    loop, scheduler = build_loop(FakeEstimator(None), renderer=renderer)
    loop.start()
    scheduler.run(10)
    assert len(renderer.submissions) == 2
    assert scheduler.pending == 0


def test_start_twice_schedules_once():
    loop, scheduler = build_loop(FakeEstimator(None))
    loop.start()
    loop.start()
    assert scheduler.pending == 1


def test_async_detection_never_overlaps():
    est = FutureEstimator()
    renderer = RecordingRenderer()
    loop, scheduler = build_loop(est, renderer=renderer)
    loop.start()
    scheduler.run(4)
    assert len(est.futures) == 1
    assert loop.detection_pending
    assert len(renderer.submissions) == 4

    pose = make_pose(**FACE_POSE)
    est.futures[0].set_result(pose)
    scheduler.run(1)
    assert loop.ctx.held_pose is pose
    assert not loop.detection_pending
    scheduler.run(1)
    assert len(est.futures) == 2


def test_async_detection_failure_keeps_pose():
    est = FutureEstimator()
    loop, scheduler = build_loop(est)
    loop.start()
    scheduler.run(2)
    pose = make_pose(**FACE_POSE)
    est.futures[0].set_result(pose)
    scheduler.run(2)
    est.futures[1].set_exception(RuntimeError("gpu lost"))
    scheduler.run(1)
    assert loop.ctx.held_pose is pose
    assert loop.ctx.inference_failures == 1


def test_threaded_estimator_wraps_inner():
    pose = make_pose(**FACE_POSE)
    inner = FakeEstimator(pose)
    est = ThreadedPoseEstimator(inner)
    assert est.submit(np.zeros((4, 4, 3), dtype=np.uint8), 5.0).result(timeout=5) is pose
    closing = est.close()
    assert est.close() is closing
    closing.result(timeout=5)
    assert inner.closed


def test_threaded_close_does_not_wait_for_hung_inference():
    release = threading.Event()
    order = []

    class StuckEstimator:
        def detect(self, frame, timestamp_ms):
            release.wait(timeout=5)
            order.append("detect")

        def close(self):
            order.append("close")

    est = ThreadedPoseEstimator(StuckEstimator())
    running = est.submit(np.zeros((4, 4, 3), dtype=np.uint8), 1.0)
    closing = est.close()
    assert not closing.done()
    assert order == []

    release.set()
    running.result(timeout=5)
    closing.result(timeout=5)
    assert order == ["detect", "close"]


def test_discarded_detection_is_not_applied():
    est = FutureEstimator()
    loop, scheduler = build_loop(est)
    loop.start()
    scheduler.run(2)
    loop.discard_detection()
    assert loop.detection_pending

    scheduler.run(2)
    assert len(est.futures) == 1

    est.futures[0].set_result(make_pose(**FACE_POSE))
    scheduler.run(1)
    assert loop.ctx.held_pose is None
    assert loop.ctx.detections == 0
    assert not loop.detection_pending

    scheduler.run(1)
    assert len(est.futures) == 2
    pose = make_pose(**BACK_POSE)
    est.futures[1].set_result(pose)
    scheduler.run(1)
    assert loop.ctx.held_pose is pose


def test_discard_without_pending_detection_is_harmless():
    loop, scheduler = build_loop(FakeEstimator(make_pose(**FACE_POSE)))
    loop.discard_detection()
    loop.start()
    scheduler.run(2)
    assert loop.ctx.held_pose is not None

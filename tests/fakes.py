from __future__ import annotations

from concurrent.futures import Future
from typing import Optional

import numpy as np

from overlay_core.camera import ConstraintMode
from overlay_core.types import Landmark, PoseFrame


def make_pose(ts: float = 0.0, **points: tuple[float, float, float]) -> PoseFrame:
    """points: name=(x, y, score)"""
    return PoseFrame(ts, {n: Landmark(n, x, y, s) for n, (x, y, s) in points.items()})


FACE_POSE = dict(
    left_shoulder=(0.6, 0.5, 0.9),
    right_shoulder=(0.4, 0.5, 0.9),
    nose=(0.5, 0.3, 0.9),
    left_eye=(0.52, 0.28, 0.9),
    right_eye=(0.48, 0.28, 0.9),
)

BACK_POSE = dict(
    left_shoulder=(0.6, 0.5, 0.9),
    right_shoulder=(0.4, 0.5, 0.9),
    nose=(0.5, 0.3, 0.1),
)


class FakeCapture:
    def __init__(self, opened: bool = True, frames: bool = True, shape=(48, 64, 3), read_error=None):
        self.opened = opened
        self.read_error = read_error
        self.frames = frames
        self.shape = shape
        self.props: dict[int, float] = {}
        self.released = False
        self.reads = 0

    def isOpened(self) -> bool:
        return self.opened and not self.released

    def read(self):
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        if not self.frames or self.released:
            return False, None
        return True, np.zeros(self.shape, dtype=np.uint8)

    def set(self, prop: int, value: float) -> bool:
        self.props[prop] = value
        return True

    def release(self) -> None:
        self.released = True


class FakeBackend:
    """按约束模式返回结果：FakeCapture 或要抛出的异常。"""

    def __init__(self, outcomes: dict[ConstraintMode, object]):
        self.outcomes = outcomes
        self.attempts = []

    def open(self, constraints):
        self.attempts.append(constraints)
        out = self.outcomes.get(constraints.mode)
        if isinstance(out, Exception):
            raise out
        if out is None:
            raise AssertionError(f"unexpected constraint {constraints}")
        return out


class FakeSource:
    def __init__(self, ready: bool = True, shape=(48, 64, 3)):
        self.ready = ready
        self.frame = np.zeros(shape, dtype=np.uint8)
        self.polls = 0

    def poll(self) -> bool:
        self.polls += 1
        return self.ready

    def has_enough_data(self) -> bool:
        return self.ready

    def latest_frame(self) -> Optional[np.ndarray]:
        return self.frame if self.ready else None


class FakeEstimator:
    """依次返回 results 中的值；值为异常时抛出。列表耗尽后重复最后一个。"""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[float] = []
        self.closed = False

    def detect(self, frame, timestamp_ms):
        self.calls.append(timestamp_ms)
        out = self.results.pop(0) if len(self.results) > 1 else (self.results[0] if self.results else None)
        if isinstance(out, Exception):
            raise out
        return out

    def close(self) -> None:
        self.closed = True


class FutureEstimator:
    """submit() 返回手动完成的 Future，用于模拟异步推理。"""

    def __init__(self):
        self.futures: list[Future] = []
        self.closed = False

    def submit(self, frame, timestamp_ms) -> Future:
        fut: Future = Future()
        self.futures.append(fut)
        return fut

    def detect(self, frame, timestamp_ms):
        raise AssertionError("detect() should not be used when submit() exists")

    def close(self) -> None:
        self.closed = True


class RecordingRenderer:
    def __init__(self):
        self.submissions = []

    def submit(self, transforms) -> None:
        self.submissions.append(list(transforms))


class RecordingClock:
    def __init__(self):
        self.steps: list[float] = []

    def update(self, dt: float) -> None:
        self.steps.append(dt)

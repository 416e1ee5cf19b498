from __future__ import annotations

import logging
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

import numpy as np

from .errors import InferenceError
from .placement import AnchorPlacementEngine
from .pose_detector import PoseEstimator
from .types import AnchorTransform, FacingMode, PoseFrame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopConfig:
    pose_every_n_frames: int = 2
    animation_step_s: float = 1.0 / 60.0  # 固定步长，与实际帧间隔无关
    tick_interval_ms: int = 16


class TickScheduler(Protocol):
    def schedule(self, callback: Callable[[], None]) -> None:
        ...


class FrameSource(Protocol):
    def poll(self) -> bool: ...

    def has_enough_data(self) -> bool: ...

    def latest_frame(self) -> Optional[np.ndarray]: ...


class Renderer(Protocol):
    def submit(self, transforms: Sequence[AnchorTransform]) -> None:
        ...


class AnimationClock(Protocol):
    def update(self, dt: float) -> None:
        ...


class ManualScheduler:
    """测试用调度器：回调排队，由 run() 逐个执行。"""

    def __init__(self) -> None:
        self._queue: deque[Callable[[], None]] = deque()
        self.ticks_run = 0

    def schedule(self, callback: Callable[[], None]) -> None:
        self._queue.append(callback)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def run(self, max_ticks: int) -> int:
        n = 0
        while self._queue and n < max_ticks:
            cb = self._queue.popleft()
            cb()
            n += 1
        self.ticks_run += n
        return n


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class SessionContext:
    """一次会话的运行状态，每个 tick 显式传入，不使用全局变量。"""

    facing: FacingMode = FacingMode.USER
    running: bool = False
    frame: int = 0
    held_pose: Optional[PoseFrame] = None
    detections: int = 0
    inference_failures: int = 0
    clock: Callable[[], float] = field(default_factory=lambda: _monotonic_ms)


class DetectionSlot:
    """检测槽：同一时刻最多一个未完成的检测调用。

    估计器若提供 submit()（返回 Future）则异步执行，否则同步调用。
    推理异常视为“没有新信息”，保留之前的 PoseFrame。
    """

    def __init__(self, estimator: PoseEstimator):
        self._estimator = estimator
        self._pending: Optional[Future] = None
        self._discard = False

    @property
    def busy(self) -> bool:
        return self._pending is not None

    def issue(self, ctx: SessionContext, frame: np.ndarray, timestamp_ms: float) -> None:
        if self.busy:
            return
        submit = getattr(self._estimator, "submit", None)
        if callable(submit):
            self._pending = submit(frame, timestamp_ms)
            self.collect(ctx)
            return
        try:
            result = self._estimator.detect(frame, timestamp_ms)
        except Exception as e:
            self._on_failure(ctx, e)
            return
        self._accept(ctx, result)

    def collect(self, ctx: SessionContext) -> None:
        """若异步调用已完成，把结果写入上下文；未完成则什么也不做。"""
        fut = self._pending
        if fut is None or not fut.done():
            return
        self._pending = None
        if self._discard:
            self._discard = False
            return
        try:
            result = fut.result()
        except Exception as e:
            self._on_failure(ctx, e)
            return
        self._accept(ctx, result)

    def discard(self) -> None:
        """丢弃未完成调用的结果。槽位仍占用到该调用结束，避免并发推理。"""
        if self._pending is not None:
            self._discard = True

    def _accept(self, ctx: SessionContext, result: Optional[PoseFrame]) -> None:
        ctx.held_pose = result
        ctx.detections += 1

    def _on_failure(self, ctx: SessionContext, e: Exception) -> None:
        ctx.inference_failures += 1
        err = e if isinstance(e, InferenceError) else InferenceError(str(e))
        logger.debug("姿态推理失败，沿用上一帧结果：%s", err)


class RenderLoop:
    """单线程协作式渲染循环，每个显示帧一个 tick。

    每个 tick：帧计数 +1；每 N 帧且画面就绪、检测槽空闲时发起一次检测；
    调用放置引擎；以固定步长推进动画；把锚点变换提交给渲染器；
    仍在运行时再调度下一帧。stop() 只清除运行标志，最多再执行一个 tick。
    """

    def __init__(
        self,
        ctx: SessionContext,
        source: FrameSource,
        estimator: PoseEstimator,
        engine: AnchorPlacementEngine,
        renderer: Renderer,
        scheduler: TickScheduler,
        clocks: Sequence[AnimationClock] = (),
        config: Optional[LoopConfig] = None,
    ):
        self.ctx = ctx
        self.config = config or LoopConfig()
        self.engine = engine
        self._source = source
        self._slot = DetectionSlot(estimator)
        self._renderer = renderer
        self._scheduler = scheduler
        self._clocks = list(clocks)

    @property
    def detection_pending(self) -> bool:
        return self._slot.busy

    def start(self) -> None:
        if self.ctx.running:
            return
        self.ctx.running = True
        self._scheduler.schedule(self.tick)

    def stop(self) -> None:
        self.ctx.running = False

    def discard_detection(self) -> None:
        """画面来源切换后调用：进行中的检测基于旧画面，其结果不再采用。"""
        self._slot.discard()

    def tick(self) -> None:
        ctx = self.ctx
        if not ctx.running:
            return
        ctx.frame += 1
        self._source.poll()

        self._slot.collect(ctx)
        n = max(1, self.config.pose_every_n_frames)
        if ctx.frame % n == 0 and self._source.has_enough_data() and not self._slot.busy:
            frame = self._source.latest_frame()
            if frame is not None:
                self._slot.issue(ctx, frame, ctx.clock())

        self.engine.update(ctx.held_pose, ctx.facing)

        for clock in self._clocks:
            clock.update(self.config.animation_step_s)

        self._renderer.submit(self.engine.snapshot())

        if ctx.running:
            self._scheduler.schedule(self.tick)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import cv2
import numpy as np

from .errors import (
    CameraError,
    CameraErrorKind,
    CameraEnvironmentError,
    OverconstrainedError,
    camera_error,
)
from .types import CameraState, FacingMode

logger = logging.getLogger(__name__)


class ConstraintMode(str, Enum):
    EXACT = "exact"  # 必须是指定朝向的设备
    PREFERRED = "preferred"  # 优先指定朝向，其它设备也可
    ANY = "any"  # 任意摄像头


@dataclass(frozen=True)
class CameraConstraints:
    mode: ConstraintMode
    facing: Optional[FacingMode]
    ideal_width: int = 1280
    ideal_height: int = 720


@dataclass(frozen=True)
class CameraConfig:
    facing: FacingMode = FacingMode.USER
    ideal_width: int = 1280
    ideal_height: int = 720
    # 朝向 -> 设备索引；桌面端通常 0 为内置前置摄像头
    device_map: dict[str, int] = field(default_factory=lambda: {"user": 0, "environment": 1})
    probe_indices: tuple[int, ...] = (0, 1, 2, 3)
    ready_attempts: int = 30


def build_cascade(facing: FacingMode, config: CameraConfig) -> list[CameraConstraints]:
    """约束放宽顺序：指定朝向(精确) -> 指定朝向(优先) -> 任意摄像头。"""
    w, h = config.ideal_width, config.ideal_height
    return [
        CameraConstraints(ConstraintMode.EXACT, facing, w, h),
        CameraConstraints(ConstraintMode.PREFERRED, facing, w, h),
        CameraConstraints(ConstraintMode.ANY, None, w, h),
    ]


class Capture(Protocol):
    """cv2.VideoCapture 的最小接口。"""

    def isOpened(self) -> bool: ...

    def read(self) -> tuple[bool, Any]: ...

    def set(self, prop: int, value: float) -> bool: ...

    def release(self) -> None: ...


class CameraBackend(Protocol):
    def open(self, constraints: CameraConstraints) -> Capture:
        """按约束打开设备；失败时抛出 CameraError（约束不满足时为 OverconstrainedError）。"""
        ...


class OpenCVCameraBackend:
    """基于 cv2.VideoCapture 的摄像头后端。朝向通过 device_map 映射为设备索引。"""

    def __init__(
        self,
        config: Optional[CameraConfig] = None,
        open_fn: Optional[Callable[[int], Capture]] = None,
    ):
        self._config = config or CameraConfig()
        self._open_fn = open_fn

    def _open_index(self, index: int, constraints: CameraConstraints) -> Optional[Capture]:
        open_fn = self._open_fn
        if open_fn is None:
            if not hasattr(cv2, "VideoCapture"):
                raise camera_error(CameraErrorKind.API_UNAVAILABLE)
            open_fn = cv2.VideoCapture
        try:
            cap = open_fn(index)
        except cv2.error as e:
            raise camera_error(CameraErrorKind.UNKNOWN, str(e)) from e
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            return None
        # 分辨率只是期望值，设备不支持时按实际输出
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.ideal_width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.ideal_height)
        return cap

    def open(self, constraints: CameraConstraints) -> Capture:
        cfg = self._config
        preferred = cfg.device_map.get(constraints.facing.value) if constraints.facing is not None else None

        if constraints.mode is ConstraintMode.EXACT:
            if preferred is None:
                raise OverconstrainedError(f"没有 {constraints.facing} 朝向的设备映射")
            cap = self._open_index(preferred, constraints)
            if cap is None:
                raise OverconstrainedError(f"设备 {preferred} 无法打开")
            return cap

        indices = list(cfg.probe_indices)
        if constraints.mode is ConstraintMode.PREFERRED and preferred is not None:
            indices = [preferred] + [i for i in indices if i != preferred]
        for idx in indices:
            cap = self._open_index(idx, constraints)
            if cap is not None:
                return cap
        raise camera_error(CameraErrorKind.DEVICE_NOT_FOUND, f"已尝试设备 {indices}")


class VideoSink:
    """保存最新一帧画面。"""

    def __init__(self) -> None:
        self.frame: Optional[np.ndarray] = None
        self.frames_received = 0

    def push(self, frame: np.ndarray) -> None:
        self.frame = frame
        self.frames_received += 1

    def clear(self) -> None:
        self.frame = None


class VideoStream:
    """已打开的视频流，绑定到一个 VideoSink。"""

    def __init__(self, capture: Capture, sink: Optional[VideoSink] = None):
        self._capture = capture
        self.sink = sink or VideoSink()
        self._released = False

    def poll(self) -> bool:
        """读取一帧到 sink。返回是否读到新帧。"""
        if self._released:
            return False
        ok, frame = self._capture.read()
        if not ok or frame is None:
            return False
        self.sink.push(frame)
        return True

    def wait_ready(self, attempts: int) -> bool:
        for _ in range(max(1, attempts)):
            if self.poll():
                return True
        return False

    def has_enough_data(self) -> bool:
        return not self._released and self.sink.frame is not None

    def latest_frame(self) -> Optional[np.ndarray]:
        return self.sink.frame

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._capture.release()
        self.sink.clear()


class CameraAcquisition:
    """按约束级联获取摄像头；不做内部重试，失败由调用方重新发起。"""

    def __init__(self, backend: Optional[CameraBackend] = None, config: Optional[CameraConfig] = None):
        self._config = config or CameraConfig()
        self._backend = backend or OpenCVCameraBackend(self._config)

    def acquire(self, preferred_facing: Optional[FacingMode] = None, sink: Optional[VideoSink] = None) -> VideoStream:
        """获取视频流。

        输入:
        - preferred_facing: 期望朝向，缺省取配置。
        - sink: 可选的画面接收端。

        输出: 已读到首帧的 VideoStream。

        作用: 依次尝试 精确朝向 -> 优先朝向 -> 任意设备，首个成功即返回；
        运行环境类错误（不安全上下文、API 不可用）无法靠放宽约束解决，立即抛出；
        三级都失败时抛出最后一级的错误。打开后等待首帧，读不到则视为设备被占用。
        后端抛出的非 CameraError 异常一律归为 UNKNOWN，已打开的设备会先释放。
        """
        facing = preferred_facing or self._config.facing
        last_error: Optional[CameraError] = None
        capture: Optional[Capture] = None
        for constraints in build_cascade(facing, self._config):
            try:
                capture = self._backend.open(constraints)
                logger.info("摄像头已打开：%s", constraints)
                break
            except CameraEnvironmentError:
                raise
            except CameraError as e:
                logger.debug("约束 %s 失败：%s", constraints.mode.value, e)
                last_error = e
            except Exception as e:
                logger.debug("约束 %s 打开异常：%s", constraints.mode.value, e)
                last_error = camera_error(CameraErrorKind.UNKNOWN, str(e))

        if capture is None:
            if last_error is None or isinstance(last_error, OverconstrainedError):
                raise camera_error(CameraErrorKind.DEVICE_NOT_FOUND)
            raise last_error

        stream = VideoStream(capture, sink)
        try:
            ready = stream.wait_ready(self._config.ready_attempts)
        except Exception as e:
            stream.release()
            raise camera_error(CameraErrorKind.UNKNOWN, f"读取首帧失败：{e}") from e
        if not ready:
            stream.release()
            raise camera_error(CameraErrorKind.DEVICE_BUSY, "未读到首帧")
        return stream


class CameraSession:
    """摄像头会话：持有视频流、所选朝向与生命周期状态。"""

    def __init__(self, acquisition: CameraAcquisition, facing: FacingMode = FacingMode.USER):
        self._acquisition = acquisition
        self.facing = facing
        self.state = CameraState.IDLE
        self.stream: Optional[VideoStream] = None
        self.last_error: Optional[CameraError] = None

    def start(self) -> VideoStream:
        self.release()
        self.state = CameraState.ACQUIRING
        try:
            self.stream = self._acquisition.acquire(self.facing)
        except CameraError as e:
            self.state = CameraState.FAILED
            self.last_error = e
            raise
        self.last_error = None
        self.state = CameraState.ACTIVE
        return self.stream

    def switch_facing(self) -> VideoStream:
        self.facing = self.facing.other()
        return self.start()

    # 作为渲染循环的画面来源；切换摄像头后自动跟随新的视频流
    def poll(self) -> bool:
        return self.stream.poll() if self.stream is not None else False

    def has_enough_data(self) -> bool:
        return self.stream is not None and self.stream.has_enough_data()

    def latest_frame(self) -> Optional[np.ndarray]:
        return self.stream.latest_frame() if self.stream is not None else None

    def release(self) -> None:
        if self.stream is not None:
            self.stream.release()
            self.stream = None
        self.state = CameraState.IDLE

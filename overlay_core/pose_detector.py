from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import cv2
import numpy as np

from .errors import PoseModelError
from .pose_connections import LANDMARK_NAMES
from .types import Landmark, PoseFrame

logger = logging.getLogger(__name__)


class PoseEstimator(Protocol):
    """姿态估计接口：每次调用最多返回一组关键点。"""

    def detect(self, frame_bgr: np.ndarray, timestamp_ms: float) -> Optional[PoseFrame]:
        ...

    def close(self) -> None:
        ...


@dataclass(frozen=True)
class PoseDetectorConfig:
    model_complexity: int = 0
    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5


def landmarks_to_pose_frame(landmarks: Any, timestamp_ms: float) -> PoseFrame:
    """把 MediaPipe 的 landmark 列表转换为带名称的 PoseFrame。

    输入:
    - landmarks: 可按索引访问的序列，每项具有 x, y, visibility 属性。
    - timestamp_ms: 采集时间戳（毫秒）。

    输出: PoseFrame，score 取 visibility。
    """
    out: dict[str, Landmark] = {}
    for i, name in enumerate(LANDMARK_NAMES):
        if i >= len(landmarks):
            break
        p = landmarks[i]
        out[name] = Landmark(
            name=name,
            x=float(p.x),
            y=float(p.y),
            score=float(getattr(p, "visibility", 0.0) or 0.0),
        )
    return PoseFrame(timestamp_ms=float(timestamp_ms), landmarks=out)


class PoseDetector:
    """MediaPipe Pose 的薄封装。业务层只拿到 PoseFrame，不接触 MediaPipe 对象。"""

    def __init__(self, config: Optional[PoseDetectorConfig] = None):
        """初始化 PoseDetector。

        输入:
        - config: 可选的 PoseDetectorConfig，控制模型复杂度与置信度阈值。

        作用: 延迟导入 mediapipe 并创建 Pose 推理对象；失败时抛出 PoseModelError，
        启动流程据此终止并提示用户。
        """
        self._config = config or PoseDetectorConfig()
        # 延迟导入，避免没有安装 mediapipe 时 import 直接炸
        try:
            import mediapipe as mp

            self._pose = mp.solutions.pose.Pose(
                static_image_mode=False,
                model_complexity=self._config.model_complexity,
                enable_segmentation=False,
                smooth_landmarks=True,
                min_detection_confidence=self._config.min_detection_confidence,
                min_tracking_confidence=self._config.min_tracking_confidence,
            )
        except Exception as e:
            raise PoseModelError(f"姿态模型初始化失败：{e}") from e

    def detect(self, frame_bgr: np.ndarray, timestamp_ms: float) -> Optional[PoseFrame]:
        """对单帧运行推理。

        输入:
        - frame_bgr: BGR 图像 (h,w,3)。
        - timestamp_ms: 帧时间戳（毫秒）。

        输出: 检测到人体时返回 PoseFrame，否则返回 None。推理异常直接向上抛出，
        由渲染循环按“无新信息”处理。
        """
        if frame_bgr is None or frame_bgr.size == 0:
            return None

        frame_rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        result = self._pose.process(frame_rgb)
        if result.pose_landmarks is None:
            return None
        return landmarks_to_pose_frame(result.pose_landmarks.landmark, timestamp_ms)

    def close(self) -> None:
        """释放内部 MediaPipe 资源，调用后不应再使用该实例。"""
        self._pose.close()


class ThreadedPoseEstimator:
    """把同步估计器放到单个后台线程执行，submit 返回 Future。

    渲染循环的检测槽保证同一时刻最多只有一个未完成的调用。
    """

    def __init__(self, inner: PoseEstimator):
        self._inner = inner
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pose")
        self._closing: Optional[Future] = None

    def submit(self, frame_bgr: np.ndarray, timestamp_ms: float) -> "Future[Optional[PoseFrame]]":
        # 帧可能被采集端复用，拷贝一份再交给后台线程
        return self._executor.submit(self._inner.detect, frame_bgr.copy(), timestamp_ms)

    def detect(self, frame_bgr: np.ndarray, timestamp_ms: float) -> Optional[PoseFrame]:
        return self.submit(frame_bgr, timestamp_ms).result()

    def close(self) -> "Future[None]":
        """不阻塞调用线程地关闭。

        输出: 内部估计器关闭完成的 Future；重复调用返回同一个。

        作用: 内部估计器在后台线程上、排在进行中的推理之后关闭，
        推理卡住时界面线程也不会被阻塞。
        """
        if self._closing is None:
            self._closing = self._executor.submit(self._inner.close)
            self._executor.shutdown(wait=False)
        return self._closing

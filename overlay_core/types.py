from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class Landmark:
    """单个命名关键点。

    属性:
    - name: 关键点名称（MediaPipe 命名，如 "left_shoulder"、"nose"）。
    - x, y: 归一化图像坐标，范围 [0,1]。
    - score: 置信度/可见度，范围 [0,1]。
    """

    name: str
    x: float
    y: float
    score: float


@dataclass(frozen=True)
class PoseFrame:
    """一次推理得到的关键点集合，产生后不可变。"""

    timestamp_ms: float
    landmarks: dict[str, Landmark] = field(default_factory=dict)

    def get(self, name: str) -> Optional[Landmark]:
        return self.landmarks.get(name)


class FacingMode(str, Enum):
    USER = "user"  # 前置，预览镜像
    ENVIRONMENT = "environment"  # 后置

    @property
    def mirrored(self) -> bool:
        return self is FacingMode.USER

    def other(self) -> "FacingMode":
        return FacingMode.ENVIRONMENT if self is FacingMode.USER else FacingMode.USER


class AnchorId(str, Enum):
    SHOULDER_LEFT = "shoulder_left"
    SHOULDER_RIGHT = "shoulder_right"
    BACK = "back"
    HEAD = "head"


class CameraState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class AnchorState:
    """锚点的可变状态：局部位置/旋转/缩放与可见性。只由放置引擎修改。"""

    position: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float64))
    rotation: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float64))
    scale: float = 1.0
    visible: bool = False


@dataclass(frozen=True)
class AnchorTransform:
    """提交给渲染器的只读快照，position 为世界坐标。"""

    id: AnchorId
    position: tuple[float, float, float]
    rotation: tuple[float, float, float]
    scale: float
    visible: bool

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .pose_connections import LEFT_EYE, LEFT_SHOULDER, NOSE, RIGHT_EYE, RIGHT_SHOULDER
from .types import AnchorId, AnchorState, AnchorTransform, FacingMode, Landmark, PoseFrame


@dataclass(frozen=True)
class PlacementConfig:
    min_shoulder_score: float = 0.4
    min_face_score: float = 0.4
    shoulder_offset: float = 0.38  # 左右肩最小横向间距（下限）
    span_ratio: float = 0.35
    back_y_offset: float = 0.2
    back_z: float = -0.2
    back_scale: float = 1.2
    head_scale_factor: float = 2.2
    head_scale_clamp: tuple[float, float] = (0.6, 2.2)
    head_y_offset: float = 0.1
    head_z: float = -0.1
    head_fallback_rise: float = 0.06  # 无鼻/眼时，头部位于肩中点上方（归一化图像单位）
    head_span_ratio: float = 0.6  # 无双眼时用肩宽估计眼距
    z_models: float = -5.0
    smooth: float = 0.6


# 固定朝向（Euler XYZ，弧度）
SHOULDER_LEFT_ROTATION = np.array([-0.2, math.pi, math.pi * 0.08])
SHOULDER_RIGHT_ROTATION = np.array([-0.2, math.pi, -math.pi * 0.08])
BACK_ROTATION = np.array([0.0, math.pi, 0.0])
HEAD_ROTATION = np.array([0.0, math.pi, 0.0])

FACE_LANDMARKS = (NOSE, LEFT_EYE, RIGHT_EYE)


def is_present(lm: Optional[Landmark], threshold: float) -> bool:
    """关键点存在且置信度 >= 阈值（等于阈值视为存在）。"""
    return lm is not None and lm.score >= threshold


def to_ndc(x: float, y: float, mirror: bool = False) -> tuple[float, float]:
    """归一化图像坐标 [0,1] 映射到 [-1,1]；Y 轴向上，前置摄像头时 X 取反。"""
    nx = x * 2.0 - 1.0
    ny = -(y * 2.0 - 1.0)
    if mirror:
        nx = -nx
    return nx, ny


def shoulder_offset(span: float, config: PlacementConfig) -> float:
    return max(config.shoulder_offset, span * config.span_ratio)


def head_scale(interocular: float, config: PlacementConfig) -> float:
    lo, hi = config.head_scale_clamp
    return min(hi, max(lo, interocular * config.head_scale_factor))


def has_face(pose: PoseFrame, threshold: float) -> bool:
    return any(is_present(pose.get(n), threshold) for n in FACE_LANDMARKS)


class AnchorPlacementEngine:
    """把最新的姿态关键点映射为四个锚点的目标变换，并逐帧平滑逼近。

    锚点挂在一个以肩中点为原点的组下：组位置直接设置（不平滑），锚点保存相对组的
    局部位置，每个渲染帧按 smooth 系数向目标靠拢。隐藏的锚点保持最后的变换不动，
    重新可见时从该位置继续平滑。
    """

    def __init__(self, config: Optional[PlacementConfig] = None):
        self.config = config or PlacementConfig()
        self.anchors: dict[AnchorId, AnchorState] = {aid: AnchorState() for aid in AnchorId}
        self.group_position = np.array([0.0, 0.0, self.config.z_models])
        self.face_present: Optional[bool] = None

    def update(self, pose: Optional[PoseFrame], facing: FacingMode) -> None:
        """处理一个渲染帧。

        输入:
        - pose: 当前持有的 PoseFrame（可能是旧帧）；None 表示没有人体。
        - facing: 当前摄像头朝向，前置时 X 轴镜像。

        作用: 肩部无效时隐藏全部锚点并冻结组位置；否则按“是否有脸”在
        {左肩, 右肩, 头} 与 {背} 之间二选一显示，并对可见锚点做一步指数平滑。
        """
        cfg = self.config
        if pose is None:
            self._hide_all()
            return

        ls = pose.get(LEFT_SHOULDER)
        rs = pose.get(RIGHT_SHOULDER)
        if not (is_present(ls, cfg.min_shoulder_score) and is_present(rs, cfg.min_shoulder_score)):
            self._hide_all()
            return

        mirror = facing.mirrored
        cx = (ls.x + rs.x) / 2.0
        cy = (ls.y + rs.y) / 2.0
        gx, gy = to_ndc(cx, cy, mirror)
        self.group_position[:] = (gx, gy, cfg.z_models)

        span = abs(to_ndc(ls.x, 0.0)[0] - to_ndc(rs.x, 0.0)[0])
        offset = shoulder_offset(span, cfg)

        face = has_face(pose, cfg.min_face_score)
        self.face_present = face

        for aid, st in self.anchors.items():
            st.visible = (not face) if aid is AnchorId.BACK else face
            if not st.visible:
                continue
            if aid is AnchorId.SHOULDER_LEFT:
                target, rotation, scale = np.array([offset, 0.0, 0.0]), SHOULDER_LEFT_ROTATION, 1.0
            elif aid is AnchorId.SHOULDER_RIGHT:
                target, rotation, scale = np.array([-offset, 0.0, 0.0]), SHOULDER_RIGHT_ROTATION, 1.0
            elif aid is AnchorId.BACK:
                target, rotation, scale = np.array([0.0, cfg.back_y_offset, cfg.back_z]), BACK_ROTATION, cfg.back_scale
            else:
                target, scale = self._head_target(pose, cx, cy, span, mirror)
                rotation = HEAD_ROTATION
            st.position += (target - st.position) * cfg.smooth
            st.rotation[:] = rotation
            st.scale = float(scale)

    def _head_target(
        self, pose: PoseFrame, cx: float, cy: float, span: float, mirror: bool
    ) -> tuple[np.ndarray, float]:
        cfg = self.config
        th = cfg.min_face_score
        nose = pose.get(NOSE)
        le = pose.get(LEFT_EYE)
        re = pose.get(RIGHT_EYE)
        eyes = is_present(le, th) and is_present(re, th)

        if is_present(nose, th):
            hx, hy = nose.x, nose.y
        elif eyes:
            hx, hy = (le.x + re.x) / 2.0, (le.y + re.y) / 2.0
        else:
            hx, hy = cx, cy - cfg.head_fallback_rise
        nx, ny = to_ndc(hx, hy, mirror)

        if eyes:
            dx = abs(to_ndc(le.x, 0.0)[0] - to_ndc(re.x, 0.0)[0])
        else:
            dx = span * cfg.head_span_ratio

        gx, gy = float(self.group_position[0]), float(self.group_position[1])
        target = np.array([nx - gx, ny - gy + cfg.head_y_offset, cfg.head_z])
        return target, head_scale(dx, cfg)

    def _hide_all(self) -> None:
        self.face_present = None
        for st in self.anchors.values():
            st.visible = False

    def snapshot(self) -> list[AnchorTransform]:
        """按 AnchorId 顺序返回世界坐标下的变换快照。"""
        out: list[AnchorTransform] = []
        for aid in AnchorId:
            st = self.anchors[aid]
            world = self.group_position + st.position
            out.append(
                AnchorTransform(
                    id=aid,
                    position=(float(world[0]), float(world[1]), float(world[2])),
                    rotation=(float(st.rotation[0]), float(st.rotation[1]), float(st.rotation[2])),
                    scale=float(st.scale),
                    visible=bool(st.visible),
                )
            )
        return out

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import cv2
import numpy as np

from .assets import LoadedAsset
from .pose_connections import POSE_CONNECTIONS
from .render_loop import FrameSource
from .types import AnchorId, AnchorTransform, FacingMode, PoseFrame


@dataclass(frozen=True)
class SceneConfig:
    fov_deg: float = 60.0
    near: float = 0.01
    max_faces: int = 1500  # 每个模型最多绘制的三角面数
    color_bgr: tuple[int, int, int] = (255, 220, 180)
    light_dir: tuple[float, float, float] = (0.3, 0.5, 1.0)
    show_skeleton: bool = False


def euler_xyz_matrix(rx: float, ry: float, rz: float) -> np.ndarray:
    """XYZ 顺序欧拉角转旋转矩阵（R = Rx·Ry·Rz）。"""
    cx, sx = math.cos(rx), math.sin(rx)
    cy, sy = math.cos(ry), math.sin(ry)
    cz, sz = math.cos(rz), math.sin(rz)
    rot_x = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    rot_y = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    rot_z = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
    return rot_x @ rot_y @ rot_z


def project_points(points: np.ndarray, width: int, height: int, fov_deg: float) -> np.ndarray:
    """透视投影：相机位于原点、朝 -Z 方向，返回 (n,2) 像素坐标。"""
    f = (height / 2.0) / math.tan(math.radians(fov_deg) / 2.0)
    depth = np.maximum(-points[:, 2], 1e-6)
    u = width / 2.0 + f * points[:, 0] / depth
    v = height / 2.0 - f * points[:, 1] / depth
    return np.stack([u, v], axis=1)


def draw_skeleton_bgr(frame_bgr: np.ndarray, pose: Optional[PoseFrame], mirror: bool, threshold: float = 0.5) -> np.ndarray:
    """在（已按预览镜像处理的）画面上叠加骨架连线和关键点，用于诊断。"""
    if pose is None:
        return frame_bgr
    out = frame_bgr.copy()
    h, w = out.shape[:2]

    pts: dict[str, tuple[int, int]] = {}
    for name, lm in pose.landmarks.items():
        if lm.score < threshold:
            continue
        x = (1.0 - lm.x) if mirror else lm.x
        pts[name] = (int(x * w), int(lm.y * h))

    for a, b in POSE_CONNECTIONS:
        if a in pts and b in pts:
            cv2.line(out, pts[a], pts[b], (0, 255, 0), 2)
    for x, y in pts.values():
        cv2.circle(out, (x, y), 3, (0, 0, 255), -1)
    return out


class SceneCompositor:
    """把视频画面与锚点模型合成为一帧图像。占位模型与真实模型一视同仁。"""

    def __init__(
        self,
        source: FrameSource,
        assets: dict[AnchorId, LoadedAsset],
        facing: Callable[[], FacingMode],
        config: Optional[SceneConfig] = None,
        on_frame: Optional[Callable[[np.ndarray], None]] = None,
    ):
        self._source = source
        self._assets = assets
        self._facing = facing
        self.config = config or SceneConfig()
        self._on_frame = on_frame
        self.last_transforms: list[AnchorTransform] = []
        self.last_image: Optional[np.ndarray] = None
        self.frames_submitted = 0

    def submit(self, transforms: Sequence[AnchorTransform]) -> None:
        self.last_transforms = list(transforms)
        self.frames_submitted += 1
        frame = self._source.latest_frame()
        if frame is None:
            return
        self.last_image = self.compose(frame, self.last_transforms, self._facing().mirrored)
        if self._on_frame is not None:
            self._on_frame(self.last_image)

    def compose(self, frame_bgr: np.ndarray, transforms: Sequence[AnchorTransform], mirror: bool) -> np.ndarray:
        out = cv2.flip(frame_bgr, 1) if mirror else frame_bgr.copy()
        h, w = out.shape[:2]

        # 全部可见锚点的三角面统一按深度从远到近绘制
        polys: list[tuple[float, np.ndarray, tuple[int, int, int]]] = []
        for t in transforms:
            asset = self._assets.get(t.id)
            if not t.visible or asset is None:
                continue
            polys.extend(self._project_asset(asset, t, w, h))
        polys.sort(key=lambda p: p[0])

        for _, pts, color in polys:
            cv2.fillPoly(out, [pts], color, cv2.LINE_AA)
        return out

    def _project_asset(
        self, asset: LoadedAsset, t: AnchorTransform, w: int, h: int
    ) -> list[tuple[float, np.ndarray, tuple[int, int, int]]]:
        cfg = self.config
        rotation = np.asarray(t.rotation, dtype=np.float64)
        if asset.mixer is not None:
            rotation = rotation + asset.mixer.rotation_offset()
        rot = euler_xyz_matrix(*rotation)

        mesh = asset.mesh
        verts = (np.asarray(mesh.vertices) * t.scale) @ rot.T + np.asarray(t.position)
        if np.any(-verts[:, 2] <= cfg.near):
            return []
        pts2d = project_points(verts, w, h, cfg.fov_deg).astype(np.int32)

        faces = np.asarray(mesh.faces)
        step = max(1, len(faces) // max(1, cfg.max_faces))
        faces = faces[::step]
        normals = np.asarray(mesh.face_normals)[::step] @ rot.T

        light = np.asarray(cfg.light_dir, dtype=np.float64)
        light = light / np.linalg.norm(light)
        shade = np.clip(normals @ light, 0.25, 1.0)
        # 深度越小越远（-Z 方向），先画远处
        depth = verts[faces][:, :, 2].mean(axis=1)

        base = np.asarray(cfg.color_bgr, dtype=np.float64)
        out = []
        for i, face in enumerate(faces):
            color = tuple(int(c) for c in base * shade[i])
            out.append((float(depth[i]), pts2d[face], color))
        return out

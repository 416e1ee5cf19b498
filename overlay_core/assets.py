from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import trimesh

from .errors import AssetLoadError
from .types import AnchorId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetsConfig:
    shoulder: str = "assets/model1.glb"
    back: str = "assets/model2.glb"
    head: str = "assets/model3.glb"
    model_size: float = 0.5  # 归一化后模型最大边长（场景单位）
    idle_spin: float = 0.0  # 待机旋转角速度 rad/s，0 表示不加动画


@dataclass(frozen=True)
class AnimationClip:
    name: str
    angular_speed: float  # rad/s，绕 Y 轴

    def sample(self, t: float) -> np.ndarray:
        return np.array([0.0, self.angular_speed * t, 0.0])


class AnimationMixer:
    """按外部给定步长推进的动画时钟。"""

    def __init__(self, clips: list[AnimationClip]):
        self.clips = clips
        self.time_s = 0.0

    def update(self, dt: float) -> None:
        self.time_s += dt

    def rotation_offset(self) -> np.ndarray:
        out = np.zeros(3)
        for clip in self.clips:
            out += clip.sample(self.time_s)
        return out


@dataclass
class LoadedAsset:
    mesh: trimesh.Trimesh
    source: str
    placeholder: bool = False
    mixer: Optional[AnimationMixer] = None
    clips: list[AnimationClip] = field(default_factory=list)

    def clone(self) -> "LoadedAsset":
        # 克隆体共享动画时钟
        return LoadedAsset(self.mesh.copy(), self.source, self.placeholder, self.mixer, list(self.clips))


def normalize_mesh(mesh: trimesh.Trimesh, size: float) -> trimesh.Trimesh:
    """居中并缩放到最大边长为 size。"""
    mesh = mesh.copy()
    mesh.vertices -= mesh.vertices.mean(axis=0)
    extent = float(np.max(mesh.vertices.max(axis=0) - mesh.vertices.min(axis=0)))
    if extent > 1e-9:
        mesh.vertices *= size / extent
    return mesh


class AssetLoader:
    """加载 GLB/OBJ 等模型；失败时返回占位立方体，调用方无需区分。"""

    def __init__(self, config: Optional[AssetsConfig] = None):
        self._config = config or AssetsConfig()

    def load(self, path: str) -> LoadedAsset:
        cfg = self._config
        try:
            mesh = self._load_mesh(path)
        except AssetLoadError as e:
            logger.warning("模型加载失败，使用占位体：%s", e)
            return self.placeholder(path)

        clips = [AnimationClip("idle_spin", cfg.idle_spin)] if cfg.idle_spin else []
        mixer = AnimationMixer(clips) if clips else None
        return LoadedAsset(normalize_mesh(mesh, cfg.model_size), path, False, mixer, clips)

    def _load_mesh(self, path: str) -> trimesh.Trimesh:
        try:
            mesh = trimesh.load(path, force="mesh")
        except Exception as e:
            raise AssetLoadError(f"{path}: {e}") from e
        if not isinstance(mesh, trimesh.Trimesh) or len(mesh.vertices) == 0 or len(mesh.faces) == 0:
            raise AssetLoadError(f"{path}: 模型为空")
        return mesh

    def placeholder(self, path: str) -> LoadedAsset:
        s = self._config.model_size
        return LoadedAsset(trimesh.creation.box(extents=(s, s, s)), path, placeholder=True)

    def load_anchor_assets(self) -> dict[AnchorId, LoadedAsset]:
        """加载四个锚点的模型，左右肩共用同一模型的两个克隆。"""
        cfg = self._config
        shoulder = self.load(cfg.shoulder)
        return {
            AnchorId.SHOULDER_LEFT: shoulder.clone(),
            AnchorId.SHOULDER_RIGHT: shoulder.clone(),
            AnchorId.BACK: self.load(cfg.back),
            AnchorId.HEAD: self.load(cfg.head),
        }


def collect_mixers(assets: dict[AnchorId, LoadedAsset]) -> list[AnimationMixer]:
    out: list[AnimationMixer] = []
    for asset in assets.values():
        if asset.mixer is not None and all(asset.mixer is not m for m in out):
            out.append(asset.mixer)
    return out

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .assets import AssetsConfig
from .camera import CameraConfig
from .compositor import SceneConfig
from .placement import PlacementConfig
from .pose_detector import PoseDetectorConfig
from .render_loop import LoopConfig
from .types import FacingMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppConfig:
    camera: CameraConfig = field(default_factory=CameraConfig)
    pose: PoseDetectorConfig = field(default_factory=PoseDetectorConfig)
    placement: PlacementConfig = field(default_factory=PlacementConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    scene: SceneConfig = field(default_factory=SceneConfig)
    assets: AssetsConfig = field(default_factory=AssetsConfig)
    # 后台线程推理；关闭时在渲染帧内同步推理
    threaded_inference: bool = True


def get_default_config_path() -> Path:
    # overlay_core/config.py -> 项目根目录
    return Path(__file__).resolve().parents[1] / "config.json"


def _deep_get(d: Dict[str, Any], keys: list[str], default: Any = None) -> Any:
    cur: Any = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
    return cur if cur is not None else default


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_bool(v: Any, default: bool) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(default)


def _as_str(v: Any, default: str = "") -> str:
    return str(v) if v is not None else str(default)


def _as_facing(v: Any, default: FacingMode) -> FacingMode:
    try:
        return FacingMode(str(v).strip().lower())
    except ValueError:
        return default


def _as_pair(v: Any, default: tuple[float, float]) -> tuple[float, float]:
    if isinstance(v, (list, tuple)) and len(v) == 2:
        lo, hi = _as_float(v[0], default[0]), _as_float(v[1], default[1])
        if lo <= hi:
            return lo, hi
    return default


def _probability(v: Any, default: float) -> float:
    x = _as_float(v, default)
    return x if 0.0 <= x <= 1.0 else default


def _parse_camera(raw: Dict[str, Any]) -> CameraConfig:
    d = CameraConfig()
    device_map = _deep_get(raw, ["camera", "device_map"], None)
    if isinstance(device_map, dict):
        dm = {str(k): _as_int(v, 0) for k, v in device_map.items()}
    else:
        dm = dict(d.device_map)
    probe = _deep_get(raw, ["camera", "probe_indices"], None)
    if isinstance(probe, list) and probe:
        probe_indices = tuple(_as_int(i, 0) for i in probe)
    else:
        probe_indices = d.probe_indices
    width = _as_int(_deep_get(raw, ["camera", "ideal_width"], d.ideal_width), d.ideal_width)
    height = _as_int(_deep_get(raw, ["camera", "ideal_height"], d.ideal_height), d.ideal_height)
    attempts = _as_int(_deep_get(raw, ["camera", "ready_attempts"], d.ready_attempts), d.ready_attempts)
    return CameraConfig(
        facing=_as_facing(_deep_get(raw, ["camera", "facing"], d.facing.value), d.facing),
        ideal_width=width if width > 0 else d.ideal_width,
        ideal_height=height if height > 0 else d.ideal_height,
        device_map=dm,
        probe_indices=probe_indices,
        ready_attempts=attempts if attempts > 0 else d.ready_attempts,
    )


def _parse_placement(raw: Dict[str, Any]) -> PlacementConfig:
    d = PlacementConfig()

    def f(key: str, default: float) -> float:
        return _as_float(_deep_get(raw, ["placement", key], default), default)

    smooth = f("smooth", d.smooth)
    return PlacementConfig(
        min_shoulder_score=_probability(_deep_get(raw, ["placement", "min_shoulder_score"]), d.min_shoulder_score),
        min_face_score=_probability(_deep_get(raw, ["placement", "min_face_score"]), d.min_face_score),
        shoulder_offset=f("shoulder_offset", d.shoulder_offset),
        span_ratio=f("span_ratio", d.span_ratio),
        back_y_offset=f("back_y_offset", d.back_y_offset),
        back_z=f("back_z", d.back_z),
        back_scale=f("back_scale", d.back_scale),
        head_scale_factor=f("head_scale_factor", d.head_scale_factor),
        head_scale_clamp=_as_pair(_deep_get(raw, ["placement", "head_scale_clamp"]), d.head_scale_clamp),
        head_y_offset=f("head_y_offset", d.head_y_offset),
        head_z=f("head_z", d.head_z),
        head_fallback_rise=f("head_fallback_rise", d.head_fallback_rise),
        head_span_ratio=f("head_span_ratio", d.head_span_ratio),
        z_models=f("z_models", d.z_models),
        smooth=smooth if 0.0 < smooth <= 1.0 else d.smooth,
    )


def load_config(path: Optional[str | Path] = None) -> AppConfig:
    """读取 JSON 配置；文件不存在或格式错误时使用默认值，程序照常运行。"""
    p = Path(path).expanduser().resolve() if path else get_default_config_path()
    if not p.exists():
        return AppConfig()
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("配置文件 %s 无法解析，使用默认配置：%s", p, e)
        return AppConfig()
    if not isinstance(raw, dict):
        return AppConfig()

    dp = PoseDetectorConfig()
    pose = PoseDetectorConfig(
        model_complexity=min(2, max(0, _as_int(_deep_get(raw, ["pose", "model_complexity"], dp.model_complexity), dp.model_complexity))),
        min_detection_confidence=_probability(_deep_get(raw, ["pose", "min_detection_confidence"]), dp.min_detection_confidence),
        min_tracking_confidence=_probability(_deep_get(raw, ["pose", "min_tracking_confidence"]), dp.min_tracking_confidence),
    )

    dl = LoopConfig()
    every_n = _as_int(_deep_get(raw, ["loop", "pose_every_n_frames"], dl.pose_every_n_frames), dl.pose_every_n_frames)
    step = _as_float(_deep_get(raw, ["loop", "animation_step_s"], dl.animation_step_s), dl.animation_step_s)
    interval = _as_int(_deep_get(raw, ["loop", "tick_interval_ms"], dl.tick_interval_ms), dl.tick_interval_ms)
    loop = LoopConfig(
        pose_every_n_frames=every_n if every_n > 0 else dl.pose_every_n_frames,
        animation_step_s=step if step > 0.0 else dl.animation_step_s,
        tick_interval_ms=interval if interval >= 0 else dl.tick_interval_ms,
    )

    ds = SceneConfig()
    fov = _as_float(_deep_get(raw, ["scene", "fov_deg"], ds.fov_deg), ds.fov_deg)
    scene = SceneConfig(
        fov_deg=fov if 1.0 <= fov < 179.0 else ds.fov_deg,
        max_faces=max(1, _as_int(_deep_get(raw, ["scene", "max_faces"], ds.max_faces), ds.max_faces)),
        show_skeleton=_as_bool(_deep_get(raw, ["scene", "show_skeleton"], ds.show_skeleton), ds.show_skeleton),
    )

    da = AssetsConfig()
    assets = AssetsConfig(
        shoulder=_as_str(_deep_get(raw, ["assets", "shoulder"], da.shoulder), da.shoulder),
        back=_as_str(_deep_get(raw, ["assets", "back"], da.back), da.back),
        head=_as_str(_deep_get(raw, ["assets", "head"], da.head), da.head),
        model_size=_as_float(_deep_get(raw, ["assets", "model_size"], da.model_size), da.model_size),
        idle_spin=_as_float(_deep_get(raw, ["assets", "idle_spin"], da.idle_spin), da.idle_spin),
    )

    return AppConfig(
        camera=_parse_camera(raw),
        pose=pose,
        placement=_parse_placement(raw),
        loop=loop,
        scene=scene,
        assets=assets,
        threaded_inference=_as_bool(_deep_get(raw, ["threaded_inference"], True), True),
    )

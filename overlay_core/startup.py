from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from .assets import AssetLoader, LoadedAsset, collect_mixers
from .camera import CameraAcquisition, CameraSession
from .compositor import SceneCompositor
from .config import AppConfig
from .errors import CameraError, PoseModelError, StartupError
from .placement import AnchorPlacementEngine
from .pose_detector import PoseDetector, PoseDetectorConfig, PoseEstimator, ThreadedPoseEstimator
from .render_loop import RenderLoop, SessionContext, TickScheduler
from .types import AnchorId

logger = logging.getLogger(__name__)

STAGE_CAMERA = "camera"
STAGE_POSE_MODEL = "pose_model"
STAGE_ASSETS = "assets"


@dataclass
class OverlaySession:
    ctx: SessionContext
    camera: CameraSession
    estimator: PoseEstimator
    engine: AnchorPlacementEngine
    compositor: SceneCompositor
    loop: RenderLoop
    assets: dict[AnchorId, LoadedAsset]

    def switch_camera(self) -> None:
        """切换前/后置摄像头。失败时抛出 CameraError，循环继续运行但没有画面。"""
        self.loop.discard_detection()
        self.ctx.held_pose = None
        try:
            self.camera.switch_facing()
        finally:
            self.ctx.facing = self.camera.facing

    def close(self) -> None:
        self.loop.stop()
        self.camera.release()
        self.estimator.close()


def start_session(
    config: AppConfig,
    scheduler: TickScheduler,
    on_frame: Optional[Callable[[np.ndarray], None]] = None,
    acquisition: Optional[CameraAcquisition] = None,
    estimator_factory: Optional[Callable[[PoseDetectorConfig], PoseEstimator]] = None,
    asset_loader: Optional[AssetLoader] = None,
) -> OverlaySession:
    """按顺序执行启动阶段：摄像头 -> 姿态模型 -> 模型资源 -> 渲染循环。

    输入:
    - config: 应用配置。
    - scheduler: 渲染帧调度器（Qt 定时器或测试用调度器）。
    - on_frame: 每帧合成图像的回调。
    - acquisition / estimator_factory / asset_loader: 可替换的依赖，缺省用 OpenCV / MediaPipe / trimesh 实现。

    输出: 已启动的 OverlaySession。

    作用: 摄像头或姿态模型失败时抛出 StartupError(stage, cause)，已获取的资源会被释放，
    需要用户手动重试；单个模型文件加载失败只会退化为占位体，不影响启动，
    之后阶段的意外异常同样释放资源并以 StartupError("assets") 抛出。
    """
    camera = CameraSession(acquisition or CameraAcquisition(config=config.camera), config.camera.facing)
    try:
        camera.start()
    except CameraError as e:
        raise StartupError(STAGE_CAMERA, e) from e

    try:
        estimator = (estimator_factory or PoseDetector)(config.pose)
    except PoseModelError as e:
        camera.release()
        raise StartupError(STAGE_POSE_MODEL, e) from e
    if config.threaded_inference:
        estimator = ThreadedPoseEstimator(estimator)

    try:
        assets = (asset_loader or AssetLoader(config.assets)).load_anchor_assets()
        placeholders = [aid.value for aid, a in assets.items() if a.placeholder]
        if placeholders:
            logger.info("以下锚点使用占位模型：%s", ", ".join(placeholders))

        ctx = SessionContext(facing=camera.facing)
        engine = AnchorPlacementEngine(config.placement)
        compositor = SceneCompositor(camera, assets, lambda: ctx.facing, config.scene, on_frame)
        loop = RenderLoop(
            ctx,
            camera,
            estimator,
            engine,
            compositor,
            scheduler,
            clocks=collect_mixers(assets),
            config=config.loop,
        )
        loop.start()
    except Exception as e:
        camera.release()
        estimator.close()
        raise StartupError(STAGE_ASSETS, e) from e
    return OverlaySession(ctx, camera, estimator, engine, compositor, loop, assets)

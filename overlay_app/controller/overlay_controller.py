from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Optional

import cv2
import numpy as np
from PySide6.QtCore import QObject, Qt, QTimer, Slot
from PySide6.QtGui import QImage, QPixmap

from overlay_core.compositor import draw_skeleton_bgr
from overlay_core.config import AppConfig
from overlay_core.errors import CameraError, StartupError
from overlay_core.startup import STAGE_ASSETS, STAGE_CAMERA, OverlaySession, start_session

from .view_protocol import OverlayView

logger = logging.getLogger(__name__)

_STAGE_TITLES = {
    STAGE_CAMERA: "摄像头启动失败",
    STAGE_ASSETS: "模型资源加载失败",
}


def _bgr_to_qpixmap(frame_bgr: np.ndarray, max_w: int, max_h: int) -> QPixmap:
    """BGR 帧转 QPixmap 并按最大尺寸等比缩放。"""
    h, w = frame_bgr.shape[:2]
    rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
    qimg = QImage(rgb.data, w, h, rgb.strides[0], QImage.Format.Format_RGB888)
    pm = QPixmap.fromImage(qimg.copy())
    return pm.scaled(
        max_w,
        max_h,
        Qt.AspectRatioMode.KeepAspectRatio,
        Qt.TransformationMode.SmoothTransformation,
    )


class QtTickScheduler:
    """用单次 QTimer 调度下一个渲染帧；context 销毁后未触发的回调自动作废。"""

    def __init__(self, context: QObject, interval_ms: int):
        self._context = context
        self._interval_ms = max(0, int(interval_ms))

    def schedule(self, callback: Callable[[], None]) -> None:
        QTimer.singleShot(self._interval_ms, self._context, callback)


class OverlayController(QObject):
    """控制器：承接 UI 事件，启动/停止叠加会话，把合成画面交给视图。"""

    def __init__(self, view: OverlayView, config: Optional[AppConfig] = None):
        """初始化控制器。

        输入: view 为实现 OverlayView 协议的视图对象；config 为应用配置。
        作用: 准备渲染调度器与诊断刷新计时器；摄像头与模型在 start() 时才获取。
        """
        super().__init__()
        self._view = view
        self._config = config or AppConfig()
        self._session: Optional[OverlaySession] = None
        self._show_skeleton = self._config.scene.show_skeleton

        self._scheduler = QtTickScheduler(self, self._config.loop.tick_interval_ms)

        # QTimer 必须归属 UI 线程；parent 设为 controller 可保证线程归属一致
        self._diag_timer = QTimer(self)
        self._diag_timer.setInterval(500)
        self._diag_timer.timeout.connect(self._update_diagnostics)

    @property
    def running(self) -> bool:
        return self._session is not None and self._session.ctx.running

    def start(self) -> None:
        """依次打开摄像头、加载姿态模型与模型资源并启动渲染循环。失败时提示用户手动重试。"""
        if self._session is not None:
            return
        self._view.set_status("正在打开摄像头并加载模型…", 0)
        try:
            self._session = start_session(self._config, self._scheduler, on_frame=self._on_frame)
        except StartupError as e:
            logger.warning("启动失败（%s）：%s", e.stage, e)
            self._view.show_error(_STAGE_TITLES.get(e.stage, "姿态模型加载失败"), f"{e}\n请检查后重试。")
            self._view.set_status("启动失败", 5000)
            self._view.set_running(False)
            return

        self._diag_timer.start()
        self._view.set_running(True)
        self._view.set_status(f"运行中（摄像头：{self._session.ctx.facing.value}）", 3000)

    def stop(self) -> None:
        """停止渲染循环并释放摄像头与检测器。"""
        session = self._session
        self._session = None
        if self._diag_timer.isActive():
            self._diag_timer.stop()
        if session is not None:
            session.close()
        self._view.set_running(False)

    def switch_camera(self) -> None:
        """切换前/后置摄像头。未运行时只修改下次启动使用的朝向。"""
        if self._session is None:
            cam = self._config.camera
            self._config = dataclasses.replace(self._config, camera=dataclasses.replace(cam, facing=cam.facing.other()))
            self._view.set_status(f"下次启动使用摄像头：{self._config.camera.facing.value}", 3000)
            return
        try:
            self._session.switch_camera()
        except CameraError as e:
            self._view.show_error("切换摄像头失败", f"{e}\n请再次切换或重新开始。")
            return
        self._view.set_status(f"已切换摄像头：{self._session.ctx.facing.value}", 3000)

    @property
    def show_skeleton(self) -> bool:
        return self._show_skeleton

    def set_show_skeleton(self, show: bool) -> None:
        self._show_skeleton = bool(show)

    def _on_frame(self, image: np.ndarray) -> None:
        session = self._session
        if session is None:
            return
        if self._show_skeleton:
            image = draw_skeleton_bgr(image, session.ctx.held_pose, session.ctx.facing.mirrored)
        self._view.set_frame_pixmap(_bgr_to_qpixmap(image, 960, 540))

    @Slot()
    def _update_diagnostics(self) -> None:
        session = self._session
        if session is None:
            return
        ctx = session.ctx
        visible = [t.id.value for t in session.compositor.last_transforms if t.visible]
        face = session.engine.face_present
        face_txt = "--" if face is None else ("是" if face else "否")
        self._view.set_diagnostics(
            f"摄像头：{ctx.facing.value} | 帧：{ctx.frame} | 检测：{ctx.detections}"
            f" | 推理失败：{ctx.inference_failures} | 人脸：{face_txt}"
            f" | 可见锚点：{', '.join(visible) or '无'}"
        )

    def close(self) -> None:
        """关闭控制器：应在窗口关闭时调用，确保摄像头与后台线程被释放。"""
        self.stop()

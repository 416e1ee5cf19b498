from __future__ import annotations

from typing import Protocol

from PySide6.QtGui import QPixmap


class OverlayView(Protocol):
    """叠加视图接口：控制器通过该协议调用视图更新。"""

    def set_frame_pixmap(self, pixmap: QPixmap) -> None:
        """更新合成后的画面。输入: QPixmap。输出: 无。"""
        ...

    def set_status(self, message: str, timeout_ms: int = 3000) -> None:
        """更新状态栏。输入: 文本与超时毫秒。输出: 无。"""
        ...

    def set_diagnostics(self, text: str) -> None:
        """显示诊断信息（检测次数、可见锚点、摄像头朝向）。"""
        ...

    def set_running(self, running: bool) -> None:
        """根据运行状态切换按钮可用性。"""
        ...

    def show_error(self, title: str, message: str) -> None:
        """显示错误弹窗。输入: 标题与内容。输出: 无。"""
        ...

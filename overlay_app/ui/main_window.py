from __future__ import annotations

from typing import Optional

from PySide6.QtCore import Qt
from PySide6.QtGui import QPixmap
from PySide6.QtWidgets import (
    QCheckBox,
    QGroupBox,
    QHBoxLayout,
    QLabel,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QStatusBar,
    QVBoxLayout,
    QWidget,
)

from overlay_app.controller.overlay_controller import OverlayController
from overlay_core.config import AppConfig


class MainWindow(QMainWindow):
    def __init__(self, config: Optional[AppConfig] = None):
        """初始化主窗口并构造控制器。

        输入: config 为应用配置，缺省使用默认值。
        作用: 设置窗口属性，创建控制器并搭建 UI 与事件绑定。
        """
        super().__init__()
        self.setWindowTitle("人体锚点模型叠加（MediaPipe + PySide6）")
        self.resize(1100, 720)

        self._controller = OverlayController(self, config)

        self._build_ui()
        self._wire_events()
        self.set_running(False)

    def _build_ui(self) -> None:
        root = QWidget(self)
        self.setCentralWidget(root)

        self.btn_start = QPushButton("开始")
        self.btn_stop = QPushButton("停止")
        self.btn_switch = QPushButton("切换摄像头")
        self.chk_skeleton = QCheckBox("显示骨架")
        self.chk_skeleton.setChecked(self._controller.show_skeleton)

        self.lbl_frame = QLabel("点击“开始”打开摄像头")
        self.lbl_frame.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.lbl_frame.setMinimumSize(960, 540)

        self.lbl_diag = QLabel("--")
        self.lbl_diag.setAlignment(Qt.AlignmentFlag.AlignLeft | Qt.AlignmentFlag.AlignVCenter)

        grp_controls = QGroupBox("操作")
        controls_layout = QHBoxLayout(grp_controls)
        controls_layout.addWidget(self.btn_start)
        controls_layout.addWidget(self.btn_stop)
        controls_layout.addWidget(self.btn_switch)
        controls_layout.addWidget(self.chk_skeleton)
        controls_layout.addStretch(1)

        layout = QVBoxLayout(root)
        layout.addWidget(grp_controls)
        layout.addWidget(self.lbl_frame, 1)
        layout.addWidget(self.lbl_diag)

        self._status = QStatusBar(self)
        self.setStatusBar(self._status)

    def _wire_events(self) -> None:
        self.btn_start.clicked.connect(self._controller.start)
        self.btn_stop.clicked.connect(self._controller.stop)
        self.btn_switch.clicked.connect(self._controller.switch_camera)
        self.chk_skeleton.toggled.connect(self._controller.set_show_skeleton)

    # ====== 供控制器调用（视图接口） ======

    def set_frame_pixmap(self, pixmap: QPixmap) -> None:
        self.lbl_frame.setPixmap(pixmap)

    def set_status(self, message: str, timeout_ms: int = 3000) -> None:
        self.statusBar().showMessage(message, timeout_ms)

    def set_diagnostics(self, text: str) -> None:
        self.lbl_diag.setText(text)

    def set_running(self, running: bool) -> None:
        self.btn_start.setEnabled(not running)
        self.btn_stop.setEnabled(running)

    def show_error(self, title: str, message: str) -> None:
        """弹出错误消息框。输入: 标题与内容。输出: 无。"""
        QMessageBox.critical(self, title, message)

    def closeEvent(self, event) -> None:
        """窗口关闭钩子：先停止渲染循环并释放摄像头，再关闭窗口。"""
        try:
            self._controller.close()
        finally:
            super().closeEvent(event)

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys

from PySide6.QtWidgets import QApplication

from overlay_app.ui.main_window import MainWindow
from overlay_core.config import load_config
from overlay_core.types import FacingMode


def main() -> int:
    """应用入口：解析参数、配置日志、创建 QApplication 与主窗口并运行事件循环。

    输入/输出: 命令行参数；返回应用退出码（int）。
    """
    parser = argparse.ArgumentParser(description="人体锚点模型叠加")
    parser.add_argument("--config", default=None, help="JSON 配置文件路径，缺省为项目根目录 config.json")
    parser.add_argument("--facing", choices=[m.value for m in FacingMode], default=None, help="初始摄像头朝向")
    parser.add_argument("--debug", action="store_true", help="输出调试日志")
    args, qt_args = parser.parse_known_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    config = load_config(args.config)
    if args.facing:
        config = dataclasses.replace(config, camera=dataclasses.replace(config.camera, facing=FacingMode(args.facing)))

    app = QApplication([sys.argv[0], *qt_args])
    w = MainWindow(config)
    w.show()
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())

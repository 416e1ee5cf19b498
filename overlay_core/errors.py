from __future__ import annotations

from enum import Enum
from typing import Optional


class CameraErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    INSECURE_CONTEXT = "insecure_context"
    API_UNAVAILABLE = "api_unavailable"
    UNKNOWN = "unknown"


# 面向用户的提示文案，需要用户手动重试
_CAMERA_HINTS: dict[CameraErrorKind, str] = {
    CameraErrorKind.PERMISSION_DENIED: "摄像头权限被拒绝，请在系统设置中允许访问后重试",
    CameraErrorKind.DEVICE_NOT_FOUND: "未找到可用的摄像头",
    CameraErrorKind.DEVICE_BUSY: "摄像头被其他程序占用或无法读取画面",
    CameraErrorKind.INSECURE_CONTEXT: "当前运行环境不允许访问摄像头",
    CameraErrorKind.API_UNAVAILABLE: "当前 OpenCV 不支持视频采集（缺少 VideoCapture）",
    CameraErrorKind.UNKNOWN: "打开摄像头时发生未知错误",
}


class OverlayError(RuntimeError):
    pass


class CameraError(OverlayError):
    """摄像头获取失败。kind 表示失败类别，message 为可展示给用户的文字。"""

    def __init__(self, kind: CameraErrorKind, detail: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        msg = _CAMERA_HINTS[kind]
        if detail:
            msg = f"{msg}（{detail}）"
        super().__init__(msg)


class CameraPermissionError(CameraError):
    def __init__(self, detail: Optional[str] = None):
        super().__init__(CameraErrorKind.PERMISSION_DENIED, detail)


class CameraDeviceError(CameraError):
    pass


class CameraEnvironmentError(CameraError):
    pass


class OverconstrainedError(CameraError):
    """约束过严（例如指定朝向的设备不存在），级联中用于切换到更宽松的约束。"""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(CameraErrorKind.DEVICE_NOT_FOUND, detail)


def camera_error(kind: CameraErrorKind, detail: Optional[str] = None) -> CameraError:
    """按类别构造对应的异常子类。"""
    if kind is CameraErrorKind.PERMISSION_DENIED:
        return CameraPermissionError(detail)
    if kind in (CameraErrorKind.DEVICE_NOT_FOUND, CameraErrorKind.DEVICE_BUSY):
        return CameraDeviceError(kind, detail)
    if kind in (CameraErrorKind.INSECURE_CONTEXT, CameraErrorKind.API_UNAVAILABLE):
        return CameraEnvironmentError(kind, detail)
    return CameraError(kind, detail)


class PoseModelError(OverlayError):
    pass


class InferenceError(OverlayError):
    pass


class AssetLoadError(OverlayError):
    pass


class StartupError(OverlayError):
    """启动阶段失败。stage 为失败阶段名，cause 为原始异常。"""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(str(cause))

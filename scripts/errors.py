"""singbox-manager 错误类型

所有可预期的失败都继承自 ManagerError。status_code 供 HTTP 层映射响应码，
CLI 层只使用 message。
"""

from typing import Optional


class ManagerError(Exception):
    """管理器错误基类"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ManagerError):
    """请求参数不合法（空用户名、端口越界等）"""
    status_code = 400


class NotInitializedError(ManagerError):
    """尚未执行 init，没有状态文件"""
    status_code = 409

    def __init__(self, message: str = "Manager not initialized. Run \"singbox-manager init\" first."):
        super().__init__(message)


class DuplicateUserError(ManagerError):
    """用户名已存在"""
    status_code = 409

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"User \"{name}\" already exists")


class UserNotFoundError(ManagerError):
    """按名称或 ID 查找用户失败"""
    status_code = 404

    def __init__(self, name_or_id: str):
        self.name_or_id = name_or_id
        super().__init__(f"User \"{name_or_id}\" not found")


class UnsupportedProtocolError(ManagerError):
    """只支持 VLESS + Reality 的分享链接"""
    status_code = 400

    def __init__(self, protocol: str, tls_type: str):
        self.protocol = protocol
        self.tls_type = tls_type
        super().__init__(
            f"Only VLESS+Reality is supported for client URIs (got {protocol}+{tls_type})"
        )


class PersistenceError(ManagerError):
    """状态文件或 sing-box 配置文件读写失败"""
    status_code = 500


class ExternalProcessError(ManagerError):
    """sing-box 二进制缺失、启动失败或无法发送信号"""
    status_code = 502


class InstallError(ManagerError):
    """下载或安装 sing-box 失败"""
    status_code = 502

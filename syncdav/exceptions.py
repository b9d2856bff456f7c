"""
syncdav 异常定义
"""

import errno
from pathlib import Path
from typing import Optional


class SyncDavError(Exception):
    """syncdav 所有异常的基类"""


# 配置错误

class ConfigError(SyncDavError):
    """启动参数无效"""

    def __init__(self, name: str, value: Optional[str], reason: str):
        self.name = name
        self.value = value
        self.reason = reason
        super().__init__(f'Invalid {name}: "{value}" ({reason})')


class InvalidPort(ConfigError):
    """端口不是 1..65535 之间的整数"""

    def __init__(self, value: Optional[str]):
        super().__init__("PORT", value, "must be an integer between 1 and 65535")


class InvalidSetting(ConfigError):
    """其它配置项无效"""


# 启动错误

class StartupError(SyncDavError):
    """启动阶段的致命错误"""


class StorageRootError(StartupError):
    """无法创建存储根目录"""

    def __init__(self, path: Path, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(
            f'Unable to create DATA_DIR "{path}". '
            f"Set DATA_DIR to a writable folder. Original error: {cause}"
        )


class BindError(StartupError):
    """无法绑定监听地址"""

    def __init__(self, host: str, port: int, cause: BaseException):
        self.host = host
        self.port = port
        self.cause = cause
        super().__init__(f"Unable to bind {host}:{port}: {cause}")


# 认证错误

class AuthError(SyncDavError):
    """凭据缺失或错误"""


# 存储错误

class StorageError(SyncDavError):
    """存储后端错误的基类"""

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path
        super().__init__(message or f"{self.__class__.__name__}: {path}")


class PathTraversalDenied(StorageError):
    """路径规范化后落在存储根目录之外"""


class ParentMissing(StorageError):
    """父集合不存在"""


class ResourceNotFound(StorageError):
    """资源不存在"""


class ResourceExists(StorageError):
    """目标位置已存在资源"""


class ResourceConflict(StorageError):
    """资源类型不符 (文件/集合)"""


class CollectionNotEmpty(StorageError):
    """集合非空且禁用了递归删除"""


class OperationNotAllowed(StorageError):
    """不允许的操作, 例如删除根目录"""


class DocumentTooLarge(StorageError):
    """上传内容超过大小限制"""

    def __init__(self, path: str, limit: int):
        self.limit = limit
        super().__init__(path, f"Document exceeds {limit} bytes: {path}")


class StorageIOError(StorageError):
    """底层存储 I/O 失败"""

    def __init__(self, path: str, cause: OSError):
        self.cause = cause
        self.errno = cause.errno
        super().__init__(path, f"Storage I/O error on {path}: {cause}")

    @property
    def insufficient_storage(self) -> bool:
        return self.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))

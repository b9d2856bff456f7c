import logging
import posixpath
from dataclasses import dataclass
from typing import FrozenSet, Tuple

from .models import Principal

logger = logging.getLogger(__name__)

ALL = 'all'


@dataclass(frozen=True)
class PrivilegeEntry:
    """一条授权: 某用户对某路径及其子路径拥有的权限"""

    principal: Principal
    path: str = '/'
    rights: FrozenSet[str] = frozenset({ALL})

    def covers(self, path: str) -> bool:
        if self.path == '/':
            return True
        prefix = self.path.rstrip('/')
        return path == prefix or path.startswith(prefix + '/')


class PrivilegeTable:
    """权限表

    本设计中只有一条记录: 配置的用户对 "/" 拥有全部权限.
    """

    PERMISSION_MAP = {
        'read': {'GET', 'HEAD', 'PROPFIND'},
        'write': {'PUT', 'POST', 'MKCOL', 'COPY', 'MOVE'},
        'delete': {'DELETE'},
        'properties': {'PROPPATCH'},
        'lock': {'LOCK', 'UNLOCK'},
    }

    def __init__(self, principal: Principal):
        self._entries: Tuple[PrivilegeEntry, ...] = (
            PrivilegeEntry(principal=principal, path='/', rights=frozenset({ALL})),
        )

    @property
    def entries(self) -> Tuple[PrivilegeEntry, ...]:
        return self._entries

    @classmethod
    def right_for_method(cls, method: str) -> str:
        """HTTP 方法对应的权限名"""
        method = method.upper()
        for right, methods in cls.PERMISSION_MAP.items():
            if method in methods:
                return right
        return ALL

    def check_permission(self, principal: Principal, path: str, method: str) -> bool:
        """检查用户对指定路径的 HTTP 方法权限"""
        if principal is None:
            return False

        path = posixpath.normpath('/' + (path or '').lstrip('/'))
        right = self.right_for_method(method)

        for entry in self._entries:
            if entry.principal.username != principal.username:
                continue
            if not entry.covers(path):
                continue
            if ALL in entry.rights or right in entry.rights:
                return True

        logger.warning(f"Permission denied: {principal.username} tried to {method} {path}")
        return False

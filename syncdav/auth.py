import hmac
import logging
from typing import Any, Dict, Optional

from wsgidav.dc.base_dc import BaseDomainController

from .config import DEFAULT_REALM, Config
from .exceptions import AuthError
from .models import Principal
from .permissions import PrivilegeTable

logger = logging.getLogger(__name__)

# WSGI environ 中保存已认证用户的键
ENVIRON_PRINCIPAL_KEY = "syncdav.principal"

# WsgiDAV 配置中传递认证器的小节
CONFIG_SECTION = "sync_dc"


def _constant_time_equals(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


class Authenticator:
    """WebDAV 认证器

    持有唯一的用户和权限表, 启动时创建一次, 以引用方式传给域控制器和存储提供者.
    """

    def __init__(self, principal: Principal, privileges: Optional[PrivilegeTable] = None,
                 realm: str = DEFAULT_REALM):
        self.principal = principal
        self.privileges = privileges or PrivilegeTable(principal)
        self.realm = realm

    @classmethod
    def from_config(cls, config: Config) -> "Authenticator":
        principal = Principal(username=config.username, secret=config.secret, is_admin=False)
        return cls(principal, PrivilegeTable(principal), realm=config.realm)

    def authenticate(self, username: str, password: str) -> Principal:
        """基础认证"""
        # 两项都要比较, 不能短路
        user_ok = _constant_time_equals(username or "", self.principal.username)
        secret_ok = _constant_time_equals(password or "", self.principal.secret)
        if user_ok & secret_ok:
            return self.principal
        raise AuthError(f"Invalid credentials for user {username!r}")

    def authorize(self, principal: Optional[Principal], path: str, method: str) -> bool:
        return self.privileges.check_permission(principal, path, method)

    def get_domain_controller(self) -> type:
        """返回域控制器类用于 wsgidav"""
        return SyncDomainController

    def wsgidav_config(self) -> Dict[str, Any]:
        """WsgiDAV 认证相关配置"""
        return {
            "http_authenticator": {
                "domain_controller": self.get_domain_controller(),
                "accept_basic": True,
                "accept_digest": False,
                "default_to_digest": False,
            },
            CONFIG_SECTION: {
                "authenticator": self,
            },
        }


def get_principal(environ: Dict[str, Any]) -> Optional[Principal]:
    """从 WSGI environ 取出已认证用户"""
    return environ.get(ENVIRON_PRINCIPAL_KEY)


class SyncDomainController(BaseDomainController):
    """单用户域控制器, 只支持 HTTP Basic 认证"""

    def __init__(self, wsgidav_app, config):
        super().__init__(wsgidav_app, config)
        self.authenticator: Authenticator = config[CONFIG_SECTION]["authenticator"]

    def __str__(self):
        return f"{self.__class__.__name__}({self.authenticator.realm!r})"

    def get_domain_realm(self, path_info, environ):
        return self.authenticator.realm

    def require_authentication(self, realm, environ):
        # /health 和 OPTIONS 在外层中间件中处理, 到这里的请求都需要认证
        return True

    def basic_auth_user(self, realm, user_name, password, environ):
        remote_ip = environ.get("REMOTE_ADDR", "unknown")
        try:
            principal = self.authenticator.authenticate(user_name, password)
        except AuthError:
            logger.warning(f"Authentication failed: user={user_name}, ip={remote_ip}")
            return False

        environ[ENVIRON_PRINCIPAL_KEY] = principal
        logger.debug(f"Authentication succeeded: user={user_name}, ip={remote_ip}")
        return True

    def supports_http_digest_auth(self):
        return False

    def digest_auth_user(self, realm, user_name, environ):
        return False

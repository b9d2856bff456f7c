import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .exceptions import InvalidPort, InvalidSetting

# 默认值
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 2345
DEFAULT_DATA_DIR = "data"
DEFAULT_USERNAME = "admin"
DEFAULT_PASSWORD = "admin"
DEFAULT_REALM = "Super Productivity Sync"

# 已知的弱凭据
WEAK_USERNAMES = frozenset({DEFAULT_USERNAME})
WEAK_SECRETS = frozenset({DEFAULT_PASSWORD, "change-me"})

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Config:
    """运行期配置, 启动时构造一次, 之后不可变"""

    host: str
    port: int
    storage_root: Path
    username: str
    secret: str = field(repr=False)
    realm: str = DEFAULT_REALM

    # 运维相关
    debug: bool = False
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # 资源限制
    max_upload_size: int = 100 * 1024 * 1024  # 100MB
    idle_timeout: int = 60
    shutdown_timeout: int = 30
    num_threads: int = 10

    recursive_delete: bool = True

    @property
    def bind_addr(self):
        return (self.host, self.port)

    @property
    def uses_weak_credentials(self) -> bool:
        """用户名或密码是否为已知的弱默认值"""
        return self.username in WEAK_USERNAMES or self.secret in WEAK_SECRETS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """从进程环境变量读取配置"""
        return resolve(os.environ if environ is None else environ)


def _get(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_port(raw: Optional[str]) -> int:
    if raw is None:
        return DEFAULT_PORT
    try:
        port = int(raw)
    except ValueError:
        raise InvalidPort(raw) from None
    if not 1 <= port <= 65535:
        raise InvalidPort(raw)
    return port


def _parse_bool(name: str, raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    word = raw.lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise InvalidSetting(name, raw, "expected true/false")


def _parse_positive_int(name: str, raw: Optional[str], default: int) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidSetting(name, raw, "must be a positive integer") from None
    if value <= 0:
        raise InvalidSetting(name, raw, "must be a positive integer")
    return value


def _absolute(raw: str, cwd: str) -> Path:
    return Path(os.path.abspath(os.path.join(cwd, os.path.expanduser(raw))))


def resolve(environ: Mapping[str, str], cwd: Optional[str] = None) -> Config:
    """校验环境变量并生成 Config

    只做校验, 不创建目录也不打开端口; 任何无效值都抛出 ConfigError.
    """
    cwd = cwd or os.getcwd()

    log_level = (_get(environ, "LOG_LEVEL") or "INFO").upper()
    if log_level not in LOG_LEVELS:
        raise InvalidSetting("LOG_LEVEL", environ.get("LOG_LEVEL"),
                             f"expected one of {', '.join(LOG_LEVELS)}")

    log_file = _get(environ, "LOG_FILE")

    return Config(
        host=_get(environ, "HOST") or DEFAULT_HOST,
        port=_parse_port(_get(environ, "PORT")),
        storage_root=_absolute(_get(environ, "DATA_DIR") or DEFAULT_DATA_DIR, cwd),
        username=_get(environ, "USERNAME") or DEFAULT_USERNAME,
        secret=_get(environ, "PASSWORD") or DEFAULT_PASSWORD,
        realm=_get(environ, "REALM") or DEFAULT_REALM,
        debug=_parse_bool("DEBUG", _get(environ, "DEBUG"), False),
        log_level=log_level,
        log_file=_absolute(log_file, cwd) if log_file else None,
        max_upload_size=_parse_positive_int(
            "MAX_UPLOAD_SIZE", _get(environ, "MAX_UPLOAD_SIZE"), 100 * 1024 * 1024),
        idle_timeout=_parse_positive_int(
            "IDLE_TIMEOUT", _get(environ, "IDLE_TIMEOUT"), 60),
        shutdown_timeout=_parse_positive_int(
            "SHUTDOWN_TIMEOUT", _get(environ, "SHUTDOWN_TIMEOUT"), 30),
        num_threads=_parse_positive_int(
            "NUM_THREADS", _get(environ, "NUM_THREADS"), 10),
        recursive_delete=_parse_bool(
            "RECURSIVE_DELETE", _get(environ, "RECURSIVE_DELETE"), True),
    )

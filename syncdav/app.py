#!/usr/bin/env python3
"""
WebDAV 同步服务器主程序
"""

import argparse
import enum
import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from typing import Optional

from cheroot import wsgi
from wsgidav.error_printer import ErrorPrinter
from wsgidav.http_authenticator import HTTPAuthenticator
from wsgidav.request_resolver import RequestResolver
from wsgidav.wsgidav_app import WsgiDAVApp

from . import __version__
from .auth import Authenticator
from .config import Config
from .exceptions import BindError, ConfigError, StartupError, StorageRootError
from .middleware import SyncFrontDoor
from .storage.backend import StorageBackend
from .storage.filesystem import SyncFilesystemProvider

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


# 配置日志
def setup_logging(config: Optional[Config] = None):
    """配置日志系统"""
    level = getattr(logging, config.log_level) if config else logging.INFO
    debug = config.debug if config else False

    root_logger = logging.getLogger()
    # 重复调用时替换之前安装的处理器
    for handler in [h for h in root_logger.handlers if getattr(h, "_syncdav", False)]:
        root_logger.removeHandler(handler)
        handler.close()

    # 控制台日志
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    console_handler._syncdav = True
    root_logger.addHandler(console_handler)

    # 文件日志
    if config and config.log_file:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler._syncdav = True
        root_logger.addHandler(file_handler)

    root_logger.setLevel(logging.DEBUG if debug else level)

    # 设置第三方库的日志级别
    third_party_level = logging.DEBUG if debug else logging.WARNING
    logging.getLogger('wsgidav').setLevel(third_party_level)
    logging.getLogger('cheroot').setLevel(third_party_level)


def create_webdav_app(config: Config, authenticator: Authenticator, storage: StorageBackend):
    """创建 WebDAV 应用, 外层包上 SyncFrontDoor"""
    provider = SyncFilesystemProvider(storage, authenticator)

    dav_config = {
        "host": config.host,
        "port": config.port,
        "provider_mapping": {
            "/": provider,
        },
        "verbose": 3 if config.debug else 1,
        "logging": {
            # 日志由 setup_logging 统一配置
            "enable": False,
        },
        "property_manager": True,
        "lock_storage": True,
        "hotfixes": {
            "emulate_win32_lastmod": True,
        },
        "dir_browser": {
            "enable": False,
        },
        "middleware_stack": [
            ErrorPrinter,
            HTTPAuthenticator,
            RequestResolver,
        ],
    }
    dav_config.update(authenticator.wsgidav_config())

    return SyncFrontDoor(WsgiDAVApp(dav_config), config)


class ServerState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class SyncServer:
    """WebDAV 同步服务器

    状态: STARTING -> RUNNING -> DRAINING -> STOPPED
    """

    def __init__(self, config: Config):
        self.config = config
        self.state = ServerState.STARTING
        self.authenticator = Authenticator.from_config(config)
        self.storage: Optional[StorageBackend] = None
        self.webdav_app = None

        self._server: Optional[wsgi.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_requested = threading.Event()
        self._stop_signal: Optional[int] = None
        self._state_lock = threading.Lock()

    @property
    def bound_port(self) -> Optional[int]:
        """实际监听的端口 (PORT=0 时由系统分配)"""
        if self._server is None:
            return None
        return self._server.bind_addr[1]

    def init_storage(self):
        """创建数据目录"""
        root = self.config.storage_root
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageRootError(root, e) from e
        if not root.is_dir():
            raise StorageRootError(root, NotADirectoryError(f"Not a directory: {root}"))

        self.storage = StorageBackend(
            root,
            recursive_delete=self.config.recursive_delete,
            max_document_size=self.config.max_upload_size,
        )
        logger.info(f"Data directory: {self.storage.root}")

    def start(self):
        """创建应用并绑定端口, 不开始接受连接"""
        if self.state is not ServerState.STARTING:
            raise RuntimeError(f"Cannot start server in state {self.state.value}")

        try:
            self.init_storage()
            self.webdav_app = create_webdav_app(self.config, self.authenticator, self.storage)

            server = wsgi.Server(
                self.config.bind_addr,
                self.webdav_app,
                numthreads=self.config.num_threads,
                timeout=self.config.idle_timeout,
                shutdown_timeout=self.config.shutdown_timeout,
            )
            try:
                server.prepare()
            except OSError as e:
                raise BindError(self.config.host, self.config.port, e) from e
        except Exception:
            self.state = ServerState.STOPPED
            raise

        self._server = server
        self.state = ServerState.RUNNING

        logger.info(
            f"syncdav started host={self.config.host} port={self.bound_port} "
            f"dataDir={self.storage.root} username={self.config.username}"
        )
        if self.config.uses_weak_credentials:
            logger.warning(
                "Using default or weak credentials. "
                "Set USERNAME and PASSWORD before exposing this server."
            )

    def serve(self):
        """在后台线程中运行 cheroot 的接受循环"""
        if self.state is not ServerState.RUNNING:
            raise RuntimeError(f"Cannot serve in state {self.state.value}")
        self._thread = threading.Thread(target=self._server.serve, name="syncdav-server")
        self._thread.daemon = True
        self._thread.start()

    def request_stop(self, signum=None, frame=None):
        """记录停止请求, 可以在信号处理函数中调用"""
        if signum is not None:
            self._stop_signal = signum
        self._stop_requested.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stop_requested.wait(timeout)

    def stop(self):
        """停止接受新连接, 等待进行中的请求完成"""
        with self._state_lock:
            if self.state in (ServerState.DRAINING, ServerState.STOPPED):
                return
            if self._server is None:
                self.state = ServerState.STOPPED
                return
            self.state = ServerState.DRAINING

        if self._stop_signal is not None:
            logger.info(f"received {signal.Signals(self._stop_signal).name}, shutting down...")
        else:
            logger.info("Shutting down, draining in-flight requests...")
        try:
            self._server.stop()
            if self._thread is not None:
                self._thread.join(self.config.shutdown_timeout)
                if self._thread.is_alive():
                    logger.warning("Server thread did not finish before shutdown timeout")
        finally:
            self.state = ServerState.STOPPED
            self._stop_requested.set()
        logger.info("syncdav stopped")

    def _install_signal_handlers(self):
        for signum in (signal.SIGINT, signal.SIGTERM):
            signal.signal(signum, self.request_stop)

    def run(self):
        """启动服务器, 直到收到 SIGINT/SIGTERM"""
        self.start()
        self._install_signal_handlers()
        self.serve()
        try:
            while not self.wait(0.5):
                if self._thread is not None and not self._thread.is_alive():
                    logger.error("Server thread exited unexpectedly")
                    break
        finally:
            self.stop()


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(
        prog="syncdav",
        description="WebDAV 同步服务器, 通过环境变量配置 (HOST, PORT, DATA_DIR, USERNAME, PASSWORD ...)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.parse_args(argv)

    try:
        config = Config.from_env()
    except ConfigError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(config)
    server = SyncServer(config)
    try:
        server.run()
    except StartupError as e:
        logger.error(f"Startup failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

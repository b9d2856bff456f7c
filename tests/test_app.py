"""服务器生命周期测试"""

import dataclasses
import http.client
import logging
import signal
import socket

import pytest

from syncdav import app as app_module
from syncdav.app import ServerState, SyncServer, create_webdav_app, main, setup_logging
from syncdav.exceptions import BindError, StorageRootError
from syncdav.middleware import SyncFrontDoor

from .conftest import basic_auth


@pytest.fixture
def server(config):
    server = SyncServer(config)
    yield server
    server.stop()


def request(port, method, path, headers=None, body=None):
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        conn.request(method, path, body=body, headers=headers or {})
        resp = conn.getresponse()
        return resp.status, dict(resp.getheaders()), resp.read()
    finally:
        conn.close()


class TestSyncServer:

    def test_start_creates_storage_root(self, config, tmp_path):
        root = tmp_path / "nested" / "data"
        server = SyncServer(dataclasses.replace(config, storage_root=root))
        try:
            server.start()

            assert root.is_dir()
            assert server.state is ServerState.RUNNING
            assert server.bound_port > 0
        finally:
            server.stop()

        assert server.state is ServerState.STOPPED

    def test_unusable_storage_root(self, config, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_bytes(b"")
        server = SyncServer(dataclasses.replace(config, storage_root=blocker / "data"))

        with pytest.raises(StorageRootError) as excinfo:
            server.start()

        assert "DATA_DIR" in str(excinfo.value)
        assert str(blocker / "data") in str(excinfo.value)
        assert server.state is ServerState.STOPPED

    def test_port_in_use(self, config):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            port = sock.getsockname()[1]

            server = SyncServer(dataclasses.replace(config, port=port))
            with pytest.raises(BindError) as excinfo:
                server.start()

        assert excinfo.value.port == port
        assert server.state is ServerState.STOPPED

    def test_banner_and_weak_credentials_warning(self, config, caplog):
        caplog.set_level(logging.INFO, logger="syncdav")
        server = SyncServer(dataclasses.replace(config, username="admin", secret="admin"))
        try:
            server.start()
        finally:
            server.stop()

        assert f"syncdav started host=127.0.0.1 port={server.bound_port}" in caplog.text
        assert "username=admin" in caplog.text
        assert any(r.levelno == logging.WARNING and "weak credentials" in r.getMessage()
                   for r in caplog.records)

    def test_serves_over_real_socket(self, server, data_dir):
        server.start()
        server.serve()
        port = server.bound_port

        status, headers, body = request(port, "GET", "/health")
        assert status == 200
        assert body == b"ok"
        assert headers["Access-Control-Allow-Origin"] == "*"

        status, headers, _ = request(port, "PROPFIND", "/", headers={"Depth": "0"})
        assert status == 401
        assert headers["WWW-Authenticate"].startswith("Basic realm=")

        status, _, _ = request(port, "PUT", "/a.txt", headers=basic_auth(), body=b"hello")
        assert status == 201
        assert (data_dir / "a.txt").read_bytes() == b"hello"

    def test_stop_is_idempotent(self, server):
        server.start()
        server.serve()
        port = server.bound_port

        server.stop()
        server.stop()

        assert server.state is ServerState.STOPPED
        with pytest.raises(OSError):
            request(port, "GET", "/health")

    def test_stop_before_start(self, server):
        server.stop()

        assert server.state is ServerState.STOPPED

    def test_request_stop(self, server):
        assert server.wait(0) is False

        server.request_stop()

        assert server.wait(0) is True

    def test_unexpected_start_failure_stops_server(self, server, monkeypatch):
        def broken_app(*args, **kwargs):
            raise ValueError("Invalid configuration")

        monkeypatch.setattr(app_module, "create_webdav_app", broken_app)

        with pytest.raises(ValueError):
            server.start()

        assert server.state is ServerState.STOPPED

    def test_stop_logs_signal(self, server, caplog):
        caplog.set_level(logging.INFO, logger="syncdav")
        server.start()
        server.serve()

        server.request_stop(signal.SIGTERM)
        assert server.wait(0) is True
        server.stop()

        assert "received SIGTERM, shutting down..." in caplog.text
        assert server.state is ServerState.STOPPED

    def test_cannot_start_twice(self, server):
        server.start()

        with pytest.raises(RuntimeError):
            server.start()


def test_create_webdav_app(config, authenticator, storage):
    app = create_webdav_app(config, authenticator, storage)

    assert isinstance(app, SyncFrontDoor)
    assert app.config is config


@pytest.fixture
def restore_logging():
    yield
    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, "_syncdav", False)]:
        root.removeHandler(handler)
        handler.close()


@pytest.mark.usefixtures("restore_logging")
class TestMain:

    def test_invalid_port_exits_with_error(self, monkeypatch, caplog):
        monkeypatch.setenv("PORT", "not-a-port")

        assert main([]) == 1
        assert 'Invalid PORT: "not-a-port"' in caplog.text

    def test_unusable_data_dir_exits_with_error(self, monkeypatch, tmp_path, caplog):
        blocker = tmp_path / "file"
        blocker.write_bytes(b"")
        monkeypatch.setenv("PORT", "2345")
        monkeypatch.setenv("DATA_DIR", str(blocker / "data"))

        assert main([]) == 1
        assert "Unable to create DATA_DIR" in caplog.text

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--version"])

        assert excinfo.value.code == 0
        assert "syncdav" in capsys.readouterr().out


@pytest.mark.usefixtures("restore_logging")
def test_setup_logging_does_not_stack_handlers(config):
    setup_logging(config)
    setup_logging(config)

    ours = [h for h in logging.getLogger().handlers if getattr(h, "_syncdav", False)]
    assert len(ours) == 1
    assert logging.getLogger("wsgidav").level == logging.WARNING


@pytest.mark.usefixtures("restore_logging")
def test_setup_logging_with_log_file(config, tmp_path):
    log_file = tmp_path / "logs" / "syncdav.log"
    setup_logging(dataclasses.replace(config, log_file=log_file))

    logging.getLogger("syncdav.test").warning("written to file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "written to file" in log_file.read_text()

"""测试共用的 fixtures"""

import base64
import dataclasses

import pytest
from werkzeug.test import Client

from syncdav.app import create_webdav_app
from syncdav.auth import ENVIRON_PRINCIPAL_KEY, Authenticator
from syncdav.config import Config
from syncdav.storage.backend import StorageBackend
from syncdav.storage.filesystem import SyncFilesystemProvider

USERNAME = "alice"
PASSWORD = "s3cret-pass"


def basic_auth(username=USERNAME, password=PASSWORD):
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def config(data_dir):
    return Config(
        host="127.0.0.1",
        port=0,
        storage_root=data_dir,
        username=USERNAME,
        secret=PASSWORD,
        max_upload_size=1024 * 1024,
        idle_timeout=5,
        shutdown_timeout=5,
        num_threads=4,
    )


@pytest.fixture
def storage(data_dir):
    return StorageBackend(data_dir)


@pytest.fixture
def authenticator(config):
    return Authenticator.from_config(config)


@pytest.fixture
def provider(storage, authenticator):
    provider = SyncFilesystemProvider(storage, authenticator)
    provider.set_share_path("/")
    return provider


@pytest.fixture
def dav_environ(provider, authenticator):
    """已认证请求的最小 WSGI environ"""
    return {
        "REQUEST_METHOD": "GET",
        "wsgidav.provider": provider,
        ENVIRON_PRINCIPAL_KEY: authenticator.principal,
    }


def make_app(config):
    authenticator = Authenticator.from_config(config)
    storage = StorageBackend(
        config.storage_root,
        recursive_delete=config.recursive_delete,
        max_document_size=config.max_upload_size,
    )
    return create_webdav_app(config, authenticator, storage)


@pytest.fixture
def app(config):
    return make_app(config)


@pytest.fixture
def client(app):
    return Client(app)


@pytest.fixture
def make_client(config):
    """按需修改配置后创建客户端"""

    def factory(**changes):
        return Client(make_app(dataclasses.replace(config, **changes)))

    return factory


@pytest.fixture
def auth():
    return basic_auth()

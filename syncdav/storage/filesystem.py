# storage/filesystem.py: 基于 StorageBackend 的 WsgiDAV 资源提供者
import logging
from contextlib import contextmanager
from typing import BinaryIO

from wsgidav import util
from wsgidav.dav_error import (
    DAVError,
    HTTP_BAD_REQUEST,
    HTTP_CONFLICT,
    HTTP_FORBIDDEN,
    HTTP_INSUFFICIENT_STORAGE,
    HTTP_INTERNAL_ERROR,
    HTTP_METHOD_NOT_ALLOWED,
    HTTP_NOT_FOUND,
)
from wsgidav.dav_provider import DAVCollection, DAVNonCollection, DAVProvider

from ..auth import Authenticator, get_principal
from ..exceptions import (
    CollectionNotEmpty,
    DocumentTooLarge,
    OperationNotAllowed,
    ParentMissing,
    PathTraversalDenied,
    ResourceConflict,
    ResourceExists,
    ResourceNotFound,
    StorageError,
    StorageIOError,
)
from .backend import Metadata, StorageBackend

logger = logging.getLogger(__name__)

HTTP_REQUEST_ENTITY_TOO_LARGE = 413

# 存储错误 -> HTTP 状态码
STATUS_BY_ERROR = (
    (PathTraversalDenied, HTTP_FORBIDDEN),
    (OperationNotAllowed, HTTP_FORBIDDEN),
    (ResourceNotFound, HTTP_NOT_FOUND),
    (ParentMissing, HTTP_CONFLICT),
    (ResourceConflict, HTTP_CONFLICT),
    (CollectionNotEmpty, HTTP_CONFLICT),
    (ResourceExists, HTTP_METHOD_NOT_ALLOWED),
    (DocumentTooLarge, HTTP_REQUEST_ENTITY_TOO_LARGE),
)


def to_dav_error(error: StorageError) -> DAVError:
    if isinstance(error, StorageIOError):
        status = HTTP_INSUFFICIENT_STORAGE if error.insufficient_storage else HTTP_INTERNAL_ERROR
        return DAVError(status, str(error), src_exception=error)
    for error_class, status in STATUS_BY_ERROR:
        if isinstance(error, error_class):
            return DAVError(status, str(error))
    return DAVError(HTTP_INTERNAL_ERROR, str(error), src_exception=error)


@contextmanager
def dav_errors():
    """把存储错误转换为 DAVError"""
    try:
        yield
    except StorageError as e:
        raise to_dav_error(e) from e


class DocumentResource(DAVNonCollection):
    """文档 (文件) 资源"""

    def __init__(self, path: str, environ: dict, storage: StorageBackend, meta: Metadata):
        super().__init__(path, environ)
        self._storage = storage
        self._meta = meta
        self._created_empty = False
        self._upload = None

    def get_content_length(self):
        return self._meta.content_length

    def get_content_type(self):
        return util.guess_mime_type(self.path)

    def get_creation_date(self):
        return self._meta.created

    def get_last_modified(self):
        return self._meta.last_modified

    def get_etag(self):
        # 内容的 SHA-256, 不带引号 (WsgiDAV 负责加引号)
        return self._meta.etag

    def support_etag(self):
        return True

    def support_ranges(self):
        return True

    def get_content(self) -> BinaryIO:
        with dav_errors():
            return self._storage.open_document(self.path)

    def begin_write(self, *, content_type=None):
        logger.debug(f"Beginning write for document: {self.path}")
        with dav_errors():
            self._upload = _UploadWriter(self._storage.open_writer(self.path))
        return self._upload

    def end_write(self, *, with_errors):
        if with_errors:
            if self._upload is not None:
                self._upload.abort()
            if self._created_empty:
                # PUT 失败时不留下空文件
                with dav_errors():
                    self._storage.delete(self.path)
            return
        with dav_errors():
            self._meta = self._storage.stat(self.path)

    def delete(self):
        with dav_errors():
            self._storage.delete(self.path)
        self.remove_all_properties(recursive=True)
        self.remove_all_locks(recursive=True)

    def copy_move_single(self, dest_path, *, is_move):
        with dav_errors():
            self._storage.copy(self.path, dest_path)
        _transfer_properties(self, dest_path, is_move=is_move, with_children=False)

    def support_recursive_move(self, dest_path):
        return True

    def move_recursive(self, dest_path):
        with dav_errors():
            self._storage.move(self.path, dest_path)
        _transfer_properties(self, dest_path, is_move=True, with_children=True)

    def set_last_modified(self, dest_path, time_stamp, *, dry_run):
        return _set_last_modified(self, dest_path, time_stamp, dry_run=dry_run)


class CollectionResource(DAVCollection):
    """集合 (目录) 资源"""

    def __init__(self, path: str, environ: dict, storage: StorageBackend, meta: Metadata):
        super().__init__(path, environ)
        self._storage = storage
        self._meta = meta

    def get_creation_date(self):
        return self._meta.created

    def get_last_modified(self):
        return self._meta.last_modified

    def get_etag(self):
        return None

    def get_member_names(self):
        with dav_errors():
            return self._storage.list_children(self.path)

    def create_empty_resource(self, name):
        path = util.join_uri(self.path, name)
        with dav_errors():
            meta = self._storage.write_document(path, b"")
        res = DocumentResource(path, self.environ, self._storage, meta)
        res._created_empty = True
        return res

    def create_collection(self, name):
        path = util.join_uri(self.path, name)
        with dav_errors():
            self._storage.create_collection(path)
            meta = self._storage.stat(path)
        return CollectionResource(path, self.environ, self._storage, meta)

    def support_recursive_delete(self):
        return True

    def delete(self):
        with dav_errors():
            self._storage.delete(self.path)
        self.remove_all_properties(recursive=True)
        self.remove_all_locks(recursive=True)

    def copy_move_single(self, dest_path, *, is_move):
        # 只创建目标集合, 成员由 WsgiDAV 逐个复制
        with dav_errors():
            self._storage.copy(self.path, dest_path, recursive=False)
        _transfer_properties(self, dest_path, is_move=is_move, with_children=False)

    def support_recursive_move(self, dest_path):
        return True

    def move_recursive(self, dest_path):
        with dav_errors():
            self._storage.move(self.path, dest_path)
        _transfer_properties(self, dest_path, is_move=True, with_children=True)

    def set_last_modified(self, dest_path, time_stamp, *, dry_run):
        return _set_last_modified(self, dest_path, time_stamp, dry_run=dry_run)


def _transfer_properties(res, dest_path, *, is_move, with_children):
    """复制或移动死属性 (PROPPATCH 写入的属性)"""
    prop_man = res.provider.prop_manager
    if not prop_man:
        return
    dest_res = res.provider.get_resource_inst(dest_path, res.environ)
    if dest_res is None:
        return
    if is_move:
        prop_man.move_properties(res.get_ref_url(), dest_res.get_ref_url(),
                                 with_children=with_children, environ=res.environ)
    else:
        prop_man.copy_properties(res.get_ref_url(), dest_res.get_ref_url(), res.environ)


def _set_last_modified(res, dest_path, time_stamp, *, dry_run):
    if isinstance(time_stamp, str):
        time_stamp = util.parse_time_string(time_stamp)
    if time_stamp is None:
        raise DAVError(HTTP_BAD_REQUEST, "Invalid last-modified time stamp")
    if not dry_run:
        with dav_errors():
            res._storage.set_last_modified(dest_path, time_stamp)
    return True


class _UploadWriter:
    """PUT 请求体写入流, 把存储错误转换为 DAVError"""

    def __init__(self, writer):
        self._writer = writer

    def write(self, data):
        with dav_errors():
            return self._writer.write(data)

    def writelines(self, chunks):
        with dav_errors():
            self._writer.writelines(chunks)

    def close(self):
        with dav_errors():
            self._writer.close()

    def abort(self):
        self._writer.abort()

    @property
    def closed(self):
        return self._writer.closed


class SyncFilesystemProvider(DAVProvider):
    """支持权限检查的文件系统提供者"""

    def __init__(self, storage: StorageBackend, authenticator: Authenticator):
        super().__init__()
        self.storage = storage
        self.authenticator = authenticator

    def __repr__(self):
        return f"{self.__class__.__name__}({str(self.storage.root)!r})"

    def is_readonly(self):
        return False

    def _check_permission(self, path: str, environ: dict) -> None:
        """检查权限"""
        method = environ.get('REQUEST_METHOD', 'GET')
        principal = get_principal(environ)
        if not self.authenticator.authorize(principal, path, method):
            raise DAVError(HTTP_FORBIDDEN, f"Permission denied for {method} on {path}")

    def get_resource_inst(self, path: str, environ: dict):
        """获取资源实例, 检查权限"""
        # WsgiDAV 查询根目录的父路径时传入 None
        if path is None:
            return None
        self._check_permission(path, environ)

        try:
            meta = self.storage.stat(path)
        except ResourceNotFound:
            return None
        except StorageError as e:
            raise to_dav_error(e) from e

        if meta.is_collection:
            return CollectionResource(meta.path, environ, self.storage, meta)
        return DocumentResource(meta.path, environ, self.storage, meta)

    def exists(self, path, environ):
        if path is None:
            return False
        self._check_permission(path, environ)
        with dav_errors():
            return self.storage.exists(path)

    def is_collection(self, path, environ):
        if path is None:
            return False
        self._check_permission(path, environ)
        with dav_errors():
            return self.storage.exists(path) and self.storage.is_collection(path)

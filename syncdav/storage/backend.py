# storage/backend.py: WebDAV 路径与本地目录树之间的映射
import hashlib
import logging
import os
import shutil
import stat
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple

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

logger = logging.getLogger(__name__)

# 上传过程中的临时文件, 不出现在目录列表中
TEMP_PREFIX = ".syncdav-"
TEMP_SUFFIX = ".tmp"

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class Metadata:
    """资源元数据"""

    path: str
    is_collection: bool
    content_length: int
    last_modified: float
    created: float
    etag: Optional[str] = None


def is_temp_name(name: str) -> bool:
    return name.startswith(TEMP_PREFIX) and name.endswith(TEMP_SUFFIX)


def normalize_path(path: str) -> str:
    """把 WebDAV 路径规范化为 /a/b 形式

    折叠多余的斜杠, 去掉 ".", 处理 "..". 越过根目录的 ".." 视为路径穿越.
    """
    if "\x00" in path or "\\" in path:
        raise PathTraversalDenied(path)

    parts: List[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not parts:
                raise PathTraversalDenied(path)
            parts.pop()
            continue
        parts.append(segment)
    return "/" + "/".join(parts)


def parent_path(path: str) -> str:
    norm = normalize_path(path)
    if norm == "/":
        return "/"
    return norm.rsplit("/", 1)[0] or "/"


def is_equal_or_child(parent: str, path: str) -> bool:
    return parent == "/" or path == parent or path.startswith(parent + "/")


class StorageBackend:
    """基于本地目录树的存储后端

    集合对应目录, 文档对应文件. 这是唯一把 WebDAV 路径翻译成磁盘路径的地方.
    """

    def __init__(self, root, recursive_delete: bool = True,
                 max_document_size: Optional[int] = None):
        self.root = Path(os.path.realpath(root))
        self.recursive_delete = recursive_delete
        self.max_document_size = max_document_size

        # path -> ((inode, size, mtime_ns), sha256)
        self._etag_cache: Dict[str, Tuple[Tuple[int, int, int], str]] = {}
        self._etag_lock = threading.Lock()

    def __repr__(self):
        return f"{self.__class__.__name__}({str(self.root)!r})"

    # --- 路径 ---------------------------------------------------------------

    def normalize(self, path: str) -> str:
        return normalize_path(path)

    def resolve(self, path: str) -> Path:
        """WebDAV 路径 -> 根目录下的磁盘路径"""
        norm = normalize_path(path)
        if norm == "/":
            return self.root

        target = self.root.joinpath(*norm[1:].split("/"))

        # 符号链接也不能指向根目录之外
        real = os.path.realpath(target)
        root = str(self.root)
        if real != root and not real.startswith(root.rstrip(os.sep) + os.sep):
            logger.warning(f"Path traversal denied: {path} -> {real}")
            raise PathTraversalDenied(norm)
        return target

    def _locate(self, path: str) -> Tuple[str, Path]:
        norm = normalize_path(path)
        return norm, self.resolve(norm)

    @contextmanager
    def _io_errors(self, path: str):
        try:
            yield
        except FileNotFoundError:
            raise ResourceNotFound(path) from None
        except OSError as e:
            logger.error(f"Storage I/O error on {path}: {e}")
            raise StorageIOError(path, e) from e

    # --- 查询 ---------------------------------------------------------------

    def exists(self, path: str) -> bool:
        norm, fs_path = self._locate(path)
        if is_temp_name(fs_path.name):
            return False
        return os.path.lexists(fs_path)

    def is_collection(self, path: str) -> bool:
        _, fs_path = self._locate(path)
        return fs_path.is_dir()

    def stat(self, path: str) -> Metadata:
        norm, fs_path = self._locate(path)
        if is_temp_name(fs_path.name):
            raise ResourceNotFound(norm)

        with self._io_errors(norm):
            st = os.stat(fs_path)

        if stat.S_ISDIR(st.st_mode):
            return Metadata(norm, True, 0, st.st_mtime, st.st_ctime)
        return Metadata(norm, False, st.st_size, st.st_mtime, st.st_ctime,
                        etag=self._etag_for(norm, fs_path, st))

    def etag(self, path: str) -> str:
        meta = self.stat(path)
        if meta.is_collection:
            raise ResourceConflict(meta.path, f"Collections have no entity tag: {meta.path}")
        return meta.etag

    def _etag_for(self, norm: str, fs_path: Path, st: os.stat_result) -> str:
        key = (st.st_ino, st.st_size, st.st_mtime_ns)
        with self._etag_lock:
            cached = self._etag_cache.get(norm)
            if cached and cached[0] == key:
                return cached[1]

        digest = hashlib.sha256()
        with self._io_errors(norm), open(fs_path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
        etag = digest.hexdigest()

        with self._etag_lock:
            self._etag_cache[norm] = (key, etag)
        return etag

    def _forget(self, norm: str) -> None:
        with self._etag_lock:
            for key in [k for k in self._etag_cache if is_equal_or_child(norm, k)]:
                del self._etag_cache[key]

    def list_children(self, path: str) -> List[str]:
        norm, fs_path = self._locate(path)
        if not fs_path.exists():
            raise ResourceNotFound(norm)
        if not fs_path.is_dir():
            raise ResourceConflict(norm, f"Not a collection: {norm}")

        with self._io_errors(norm):
            names = os.listdir(fs_path)
        return sorted(name for name in names if not is_temp_name(name))

    # --- 读写 ---------------------------------------------------------------

    def open_document(self, path: str) -> BinaryIO:
        norm, fs_path = self._locate(path)
        if fs_path.is_dir():
            raise ResourceConflict(norm, f"Not a document: {norm}")
        with self._io_errors(norm):
            return open(fs_path, "rb")

    def read_document(self, path: str) -> bytes:
        with self.open_document(path) as f:
            return f.read()

    def open_writer(self, path: str) -> "DocumentWriter":
        """打开文档写入流, close() 时原子地替换目标文件"""
        norm, fs_path = self._locate(path)
        if norm == "/" or fs_path.is_dir():
            raise ResourceConflict(norm, f"Cannot write to a collection: {norm}")
        if is_temp_name(fs_path.name):
            raise OperationNotAllowed(norm, f"Reserved name: {norm}")
        if not fs_path.parent.is_dir():
            raise ParentMissing(norm, f"Parent collection does not exist: {parent_path(norm)}")

        with self._io_errors(norm):
            fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX,
                                            dir=fs_path.parent)
        return DocumentWriter(self, norm, fs_path, os.fdopen(fd, "wb"), Path(tmp_name))

    def write_document(self, path: str, data: bytes) -> Metadata:
        with self.open_writer(path) as writer:
            writer.write(data)
        return self.stat(path)

    def create_collection(self, path: str) -> None:
        norm, fs_path = self._locate(path)
        if norm == "/" or os.path.lexists(fs_path):
            raise ResourceExists(norm)
        if not fs_path.parent.is_dir():
            raise ParentMissing(norm, f"Parent collection does not exist: {parent_path(norm)}")

        try:
            with self._io_errors(norm):
                fs_path.mkdir()
        except StorageIOError as e:
            if isinstance(e.cause, FileExistsError):
                raise ResourceExists(norm) from None
            raise
        logger.info(f"Created collection {norm}")

    def delete(self, path: str) -> None:
        norm, fs_path = self._locate(path)
        if norm == "/":
            raise OperationNotAllowed(norm, "Refusing to delete the storage root")
        if not os.path.lexists(fs_path):
            raise ResourceNotFound(norm)

        with self._io_errors(norm):
            if fs_path.is_dir() and not fs_path.is_symlink():
                if os.listdir(fs_path) and not self.recursive_delete:
                    raise CollectionNotEmpty(norm)
                shutil.rmtree(fs_path)
            else:
                fs_path.unlink()
        self._forget(norm)
        logger.info(f"Deleted {norm}")

    def _remove(self, fs_path: Path) -> None:
        if fs_path.is_dir() and not fs_path.is_symlink():
            shutil.rmtree(fs_path)
        else:
            fs_path.unlink()

    def _prepare_transfer(self, src: str, dst: str) -> Tuple[str, Path, str, Path]:
        src_norm, src_fs = self._locate(src)
        dst_norm, dst_fs = self._locate(dst)

        if src_norm == "/" or dst_norm == "/":
            raise OperationNotAllowed(src_norm, "The storage root cannot be moved or copied")
        if is_equal_or_child(src_norm, dst_norm):
            raise OperationNotAllowed(src_norm, f"Cannot transfer {src_norm} into {dst_norm}")
        if not os.path.lexists(src_fs):
            raise ResourceNotFound(src_norm)
        if not dst_fs.parent.is_dir():
            raise ParentMissing(dst_norm, f"Parent collection does not exist: {parent_path(dst_norm)}")
        return src_norm, src_fs, dst_norm, dst_fs

    def move(self, src: str, dst: str) -> None:
        src_norm, src_fs, dst_norm, dst_fs = self._prepare_transfer(src, dst)

        with self._io_errors(src_norm):
            if os.path.lexists(dst_fs):
                self._remove(dst_fs)
            shutil.move(str(src_fs), str(dst_fs))
        self._forget(src_norm)
        self._forget(dst_norm)
        logger.info(f"Moved {src_norm} -> {dst_norm}")

    def copy(self, src: str, dst: str, recursive: bool = True) -> None:
        """复制资源

        recursive=False 时只为集合创建空的目标集合, 不复制成员.
        """
        src_norm, src_fs, dst_norm, dst_fs = self._prepare_transfer(src, dst)

        with self._io_errors(src_norm):
            if src_fs.is_dir():
                if not recursive:
                    if dst_fs.exists() and not dst_fs.is_dir():
                        dst_fs.unlink()
                    dst_fs.mkdir(exist_ok=True)
                    shutil.copystat(src_fs, dst_fs)
                else:
                    if os.path.lexists(dst_fs):
                        self._remove(dst_fs)
                    shutil.copytree(src_fs, dst_fs)
            else:
                if dst_fs.is_dir():
                    self._remove(dst_fs)
                fd, tmp_name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX,
                                                dir=dst_fs.parent)
                os.close(fd)
                try:
                    shutil.copy2(src_fs, tmp_name)
                    os.replace(tmp_name, dst_fs)
                except OSError:
                    _discard(Path(tmp_name))
                    raise
        self._forget(dst_norm)
        logger.info(f"Copied {src_norm} -> {dst_norm}")

    def set_last_modified(self, path: str, timestamp: float) -> None:
        norm, fs_path = self._locate(path)
        with self._io_errors(norm):
            os.utime(fs_path, (timestamp, timestamp))
        self._forget(norm)


def _discard(tmp_path: Path) -> None:
    try:
        tmp_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {tmp_path}: {e}")


class DocumentWriter:
    """上传写入流

    先写入同目录下的临时文件, close() 时用 os.replace 发布. 对同一路径的并发写入
    不会交错, 最后完成的写入生效.
    """

    def __init__(self, backend: StorageBackend, path: str, target: Path,
                 handle: BinaryIO, tmp_path: Path):
        self._backend = backend
        self.path = path
        self._target = target
        self._handle = handle
        self._tmp_path = tmp_path
        self._written = 0
        self.closed = False

    @property
    def bytes_written(self) -> int:
        return self._written

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ValueError("write to closed DocumentWriter")

        limit = self._backend.max_document_size
        if limit is not None and self._written + len(data) > limit:
            self.abort()
            raise DocumentTooLarge(self.path, limit)

        try:
            with self._backend._io_errors(self.path):
                self._handle.write(data)
        except StorageError:
            self.abort()
            raise
        self._written += len(data)
        return len(data)

    def writelines(self, chunks: Iterable[bytes]) -> None:
        for chunk in chunks:
            self.write(chunk)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            with self._backend._io_errors(self.path):
                self._handle.close()
                # mkstemp 创建的文件权限为 0600
                os.chmod(self._tmp_path, 0o644)
                os.replace(self._tmp_path, self._target)
        except StorageError:
            _discard(self._tmp_path)
            raise
        self._backend._forget(self.path)
        logger.info(f"Stored document {self.path} ({self._written} bytes)")

    def abort(self) -> None:
        """放弃本次写入, 目标文件保持不变"""
        if self.closed:
            return
        self.closed = True
        try:
            self._handle.close()
        finally:
            _discard(self._tmp_path)
        logger.debug(f"Discarded upload to {self.path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.abort()
        return False

"""
WSGI 前置中间件: CORS, 预检请求, 健康检查, 上传大小限制
"""

import logging
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Config

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"

# WsgiDAV 对没有登记的状态码只输出 "<code> Status"
REASON_PHRASES = {
    413: "Request Entity Too Large",
}

ALLOWED_METHODS = (
    "GET", "HEAD", "POST", "PUT", "DELETE", "OPTIONS",
    "PROPFIND", "PROPPATCH", "MKCOL", "COPY", "MOVE", "LOCK", "UNLOCK",
)

ALLOWED_HEADERS = (
    "authorization", "content-type", "depth", "destination", "overwrite",
    "if", "if-match", "if-none-match", "range", "accept", "user-agent",
    "lock-token", "timeout",
)

EXPOSED_HEADERS = (
    "etag", "content-length", "content-type", "date", "last-modified",
    "dav", "lock-token",
)

Headers = List[Tuple[str, str]]


def cors_headers(environ: Dict[str, Any]) -> Headers:
    """每个响应都要带的 CORS 和安全响应头"""
    origin = environ.get("HTTP_ORIGIN") or "*"
    return [
        ("Access-Control-Allow-Origin", origin),
        ("Vary", "Origin"),
        ("Access-Control-Allow-Credentials", "true"),
        ("Access-Control-Allow-Methods", ", ".join(ALLOWED_METHODS)),
        ("Access-Control-Allow-Headers", ", ".join(ALLOWED_HEADERS)),
        ("Access-Control-Expose-Headers", ", ".join(EXPOSED_HEADERS)),
        ("X-Content-Type-Options", "nosniff"),
        ("Referrer-Policy", "no-referrer"),
    ]


def merge_headers(headers: Headers, extra: Headers) -> Headers:
    """追加 extra, 同名的原有响应头被替换"""
    replaced = {name.lower() for name, _ in extra}
    return [(k, v) for (k, v) in headers if k.lower() not in replaced] + list(extra)


def status_line(status: str) -> str:
    """补全通用的原因短语, 例如 413 Status -> 413 Request Entity Too Large"""
    code, _, reason = status.partition(" ")
    if reason != "Status" or not code.isdigit():
        return status
    phrase = REASON_PHRASES.get(int(code))
    if phrase is None:
        try:
            phrase = HTTPStatus(int(code)).phrase
        except ValueError:
            return status
    return f"{code} {phrase}"


def _declared_length(environ: Dict[str, Any]) -> Optional[int]:
    raw = environ.get("CONTENT_LENGTH")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class SyncFrontDoor:
    """
    包在 WsgiDAV 应用外层的 WSGI 中间件.

    OPTIONS 和 /health 不需要认证, 直接在这里应答; 其余请求交给 WsgiDAV.
    """

    def __init__(self, app: Callable, config: Config):
        self.app = app
        self.config = config

    def __call__(self, environ, start_response):
        method = environ.get("REQUEST_METHOD", "GET").upper()
        path = environ.get("PATH_INFO", "") or "/"
        extra = cors_headers(environ)

        if method == "OPTIONS":
            return self._respond(start_response, "204 No Content", extra)

        if path == HEALTH_PATH:
            return self._respond(start_response, "200 OK", extra + [
                ("Content-Type", "text/plain; charset=utf-8"),
            ], b"ok")

        length = _declared_length(environ)
        if length is not None and length > self.config.max_upload_size:
            logger.warning(
                f"Rejected upload of {length} bytes to {path} "
                f"(limit {self.config.max_upload_size})"
            )
            return self._respond(start_response, "413 " + REASON_PHRASES[413], extra + [
                ("Content-Type", "text/plain; charset=utf-8"),
            ], b"Request body too large")

        return self._delegate(environ, start_response, extra)

    def _delegate(self, environ, start_response, extra: Headers):
        started: Dict[str, bool] = {"value": False}

        def cors_start_response(status, headers, exc_info=None):
            started["value"] = True
            return start_response(status_line(status), merge_headers(headers, extra), exc_info)

        try:
            return self.app(environ, cors_start_response)
        except Exception as e:
            logger.exception(
                f"Unhandled error for {environ.get('REQUEST_METHOD')} {environ.get('PATH_INFO')}"
            )
            if started["value"]:
                raise
            body = f"Internal Server Error: {e.__class__.__name__}".encode("utf-8")
            return self._respond(start_response, "500 Internal Server Error", extra + [
                ("Content-Type", "text/plain; charset=utf-8"),
            ], body)

    @staticmethod
    def _respond(start_response, status: str, headers: Headers, body: bytes = b""):
        headers = [(k, v) for (k, v) in headers if k.lower() != "content-length"]
        headers.append(("Content-Length", str(len(body))))
        start_response(status, headers)
        return [body]

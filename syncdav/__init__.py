"""
syncdav: 单用户 WebDAV 同步服务器
"""

__version__ = "1.0.0"

import logging
import sys
from pathlib import Path

CACHE_CONTROL = "max-age=0, must-revalidate"


class ProxyMapLogger:
    """Unified logger for mitmproxy and standalone runs.

    mitmproxy installs its own handler on the root logger, so records emitted
    here show up in the proxy's event log when running as an addon.
    """
    def __init__(self, name: str = "proxymap"):
        self.name = name
        self._logger = logging.getLogger(name)

    def info(self, msg: str):
        self._logger.info(msg)

    def warn(self, msg: str):
        self._logger.warning(msg)

    def warning(self, msg: str):
        self.warn(msg)

    def error(self, msg: str):
        self._logger.error(msg)

    def debug(self, msg: str):
        self._logger.debug(msg)

_LOG_INITIALIZED = False

def setup_logging() -> ProxyMapLogger:
    global _LOG_INITIALIZED

    # Configure root logger for standalone runs
    root = logging.getLogger()
    if root.level == logging.NOTSET:
        root.setLevel(logging.INFO)

    # Add stdout handler in standalone mode
    if not root.handlers and not any(Path(arg).name.startswith("mitm") for arg in sys.argv):
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', datefmt='%H:%M:%S')
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # Reduce noise from mitmproxy's own logging
    logging.getLogger("mitmproxy").setLevel(logging.WARNING)

    logger = ProxyMapLogger("proxymap")
    if not _LOG_INITIALIZED:
        logger.debug("proxymap logger initialized")
        _LOG_INITIALIZED = True
    return logger

def get_mime_type(file_path: str) -> str:
    """Detect MIME type from file extension"""
    ext = Path(file_path).suffix.lower()
    mime_types = {
        # Text
        '.html': 'text/html; charset=utf-8',
        '.htm': 'text/html; charset=utf-8',
        '.css': 'text/css; charset=utf-8',
        '.js': 'application/javascript; charset=utf-8',
        '.mjs': 'application/javascript; charset=utf-8',
        '.map': 'application/json; charset=utf-8',
        '.json': 'application/json; charset=utf-8',
        '.xml': 'application/xml; charset=utf-8',
        '.txt': 'text/plain; charset=utf-8',
        '.csv': 'text/csv; charset=utf-8',
        # Images
        '.jpg': 'image/jpeg',
        '.jpeg': 'image/jpeg',
        '.png': 'image/png',
        '.gif': 'image/gif',
        '.svg': 'image/svg+xml',
        '.webp': 'image/webp',
        '.ico': 'image/x-icon',
        # Fonts
        '.woff': 'font/woff',
        '.woff2': 'font/woff2',
        '.ttf': 'font/ttf',
        '.otf': 'font/otf',
        '.eot': 'application/vnd.ms-fontobject',
        # Media
        '.mp4': 'video/mp4',
        '.webm': 'video/webm',
        '.mp3': 'audio/mpeg',
        '.wav': 'audio/wav',
        # Documents
        '.pdf': 'application/pdf',
        '.wasm': 'application/wasm',
        '.zip': 'application/zip',
        '.tar': 'application/x-tar',
        '.gz': 'application/gzip',
    }
    return mime_types.get(ext, 'application/octet-stream')

def cache_headers(file_path: str) -> dict:
    """Headers attached to every synthetic response"""
    return {
        "Cache-Control": CACHE_CONTROL,
        "Content-Type": get_mime_type(file_path),
    }

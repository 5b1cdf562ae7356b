import asyncio
import json
import os
from pathlib import Path
from typing import List, Optional, Sequence, Union
from urllib.parse import urlsplit

from ..utils import cache_headers, setup_logging
from .matcher import MatchResult
from .models import (
    Action, ApiTarget, FileTarget, Respond, Rewrite, StaticData, Target,
    TargetAttempt, UnresolvedTarget, describe_target, substitute,
)


def _read_file(path: Path) -> Optional[bytes]:
    if not path.is_file():
        return None
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        # Removed between the existence check and the open
        return None


def throttle_delay(size: int, bandwidth_kbps: int) -> float:
    """Seconds it takes to move size bytes at bandwidth_kbps kilobits per second"""
    if bandwidth_kbps <= 0 or size <= 0:
        return 0.0
    # delay = bytes * 8 / (kbps * 1000)
    return (size * 8) / (bandwidth_kbps * 1000.0)


class LocalFileReader:
    """File system collaborator for map-local targets.

    Relative paths resolve against ``base_dir``. Reads run in a worker thread
    so a slow disk never stalls the proxy's event loop; the handle is closed
    inside the thread even if the awaiting request is cancelled.
    """

    def __init__(self, base_dir: Optional[Union[str, Path]] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    def resolve_path(self, raw_path: str) -> Path:
        raw_path = raw_path.split("?")[0]
        path = Path(os.path.expanduser(raw_path))
        if not path.is_absolute():
            path = self.base_dir / path
        return Path(os.path.normpath(path))

    async def read(self, path: Path) -> Optional[bytes]:
        """File contents, or None if the file does not exist. Other OSErrors propagate."""
        return await asyncio.to_thread(_read_file, path)


class TargetResolver:
    def __init__(self, file_reader: Optional[LocalFileReader] = None):
        self.file_reader = file_reader or LocalFileReader()
        self.logger = setup_logging()

    async def resolve(self, match: MatchResult, targets: Sequence[Target]) -> Union[Action, UnresolvedTarget]:
        """Resolve the first target that works, in declaration order"""
        attempts: List[TargetAttempt] = []

        for target in targets:
            if isinstance(target, StaticData):
                return self.resolve_data(target)

            if isinstance(target, ApiTarget):
                url = substitute(target.url_template, match.captures)
                rewrite = self.resolve_api(url, match.url)
                if rewrite is not None:
                    return rewrite
                attempts.append(TargetAttempt(target=url, reason="invalid url"))

            elif isinstance(target, FileTarget):
                raw_path = substitute(target.path_template, match.captures)
                path = self.file_reader.resolve_path(raw_path)
                try:
                    body = await self.file_reader.read(path)
                except OSError as e:
                    self.logger.error(f"Map Local read failed: {path}: {e}")
                    attempts.append(TargetAttempt(target=str(path), reason=f"FileReadError: {e}"))
                    continue

                if body is None:
                    self.logger.warn(f"Map Local file not found: {path}")
                    attempts.append(TargetAttempt(target=str(path), reason="missing"))
                    continue

                self.logger.info(f"Map Local (File): {match.url} -> {path}")
                return Respond(status_code=200, headers=cache_headers(str(path)), body=body)

            else:
                attempts.append(TargetAttempt(target=describe_target(target), reason="unknown target"))

        return UnresolvedTarget(attempts=tuple(attempts))

    def resolve_data(self, target: StaticData) -> Respond:
        body = json.dumps(target.payload, ensure_ascii=False, separators=(",", ":"))
        return Respond(status_code=200, headers=cache_headers("data.json"), body=body.encode("utf-8"))

    def resolve_api(self, url: str, request_url: str) -> Optional[Rewrite]:
        """Point the request at ``url``; the original query survives unless ``url`` has its own"""
        try:
            parsed = urlsplit(url)
            explicit_port = parsed.port
        except ValueError as e:
            self.logger.error(f"Error parsing target URL {url}: {e}")
            return None

        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            self.logger.error(f"Invalid target URL: {url}")
            return None

        scheme = parsed.scheme
        host = parsed.hostname
        port = explicit_port or (443 if scheme == "https" else 80)

        query = parsed.query or urlsplit(request_url).query
        path = parsed.path or "/"
        if query:
            path = f"{path}?{query}"

        host_header = f"[{host}]" if ":" in host else host
        if explicit_port:
            host_header = f"{host_header}:{explicit_port}"

        rewrite = Rewrite(scheme=scheme, host=host, port=port, path=path, headers={"Host": host_header})
        self.logger.info(f"Map Remote: {request_url} -> {rewrite.url}")
        return rewrite

"""
Byte-source abstraction for manual files.
Local filesystem and HTTP(S) implementations; the interface allows object stores later.
"""
from __future__ import annotations

import urllib.error
import urllib.request
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

from .errors import SourceNotFoundError, TransportError
from .observability import get_logger

logger = get_logger(__name__)


class SourceProvider(Protocol):
    def fetch(self, source_ref: str) -> bytes:
        ...


class LocalFileSourceProvider:
    def __init__(self, root: Path | None = None):
        self._root = Path(root) if root else None

    @property
    def root(self) -> Path | None:
        return self._root

    def _resolve(self, source_ref: str) -> Path:
        raw = str(source_ref or "").strip()
        if raw.startswith("file://"):
            raw = urlparse(raw).path
        path = Path(raw).expanduser()
        if not path.is_absolute() and self._root is not None:
            path = self._root / path
        return path

    def fetch(self, source_ref: str) -> bytes:
        path = self._resolve(source_ref)
        if not path.is_file():
            raise SourceNotFoundError(f"manual source not found: {source_ref}")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise TransportError(f"could not read {path}: {exc}") from exc


class HttpSourceProvider:
    def __init__(self, timeout_s: float = 120.0):
        self.timeout_s = float(timeout_s)

    def fetch(self, source_ref: str) -> bytes:
        req = urllib.request.Request(str(source_ref), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                data = resp.read()
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                raise SourceNotFoundError(f"manual source not found: {source_ref}") from exc
            raise TransportError(f"failed to download manual: HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise TransportError(f"failed to download manual: {exc}") from exc
        logger.info("manual_downloaded", source=str(source_ref), bytes=len(data))
        return data


class RoutingSourceProvider:
    """Dispatches http(s) references to HTTP and everything else to the filesystem."""

    def __init__(self, local: SourceProvider | None = None, http: SourceProvider | None = None):
        self.local = local or LocalFileSourceProvider()
        self.http = http or HttpSourceProvider()

    def fetch(self, source_ref: str) -> bytes:
        scheme = urlparse(str(source_ref or "")).scheme.lower()
        if scheme in {"http", "https"}:
            return self.http.fetch(source_ref)
        return self.local.fetch(source_ref)

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Some platform MIME tables miss these or map .js to text/plain.
_EXTRA_TYPES = {
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".css": "text/css",
    ".html": "text/html",
    ".htm": "text/html",
}


@dataclass(frozen=True, slots=True)
class ServedFile:
    url: str
    path: str
    content_type: str
    body: bytes


def guess_content_type(path: str | Path) -> str:
    suffix = Path(path).suffix.lower()
    if suffix in _EXTRA_TYPES:
        return _EXTRA_TYPES[suffix]
    guessed, _encoding = mimetypes.guess_type(str(path))
    return guessed or DEFAULT_CONTENT_TYPE


def url_to_path(root_dir: str | Path, base_url: str, url: str) -> Path | None:
    """Map a URL under base_url to a file below root_dir (None if outside either)."""
    if not url.startswith(base_url):
        return None
    root = Path(root_dir).resolve()
    rest = url[len(base_url):]
    relative = unquote(rest.split("#", 1)[0].split("?", 1)[0])
    candidate = (root / relative.lstrip("/")).resolve()
    if candidate != root and root not in candidate.parents:
        return None
    if relative == "" or relative.endswith("/") or candidate.is_dir():
        candidate = candidate / "index.html"
    return candidate


def resolve(root_dir: str | Path, base_url: str, url: str) -> ServedFile | None:
    """Resolve a request URL to file bytes and a content type; None means 404."""
    path = url_to_path(root_dir, base_url, url)
    if path is None or not path.is_file():
        return None
    body = path.read_bytes()
    return ServedFile(url=url, path=str(path), content_type=guess_content_type(path), body=body)


__all__ = ["DEFAULT_CONTENT_TYPE", "ServedFile", "guess_content_type", "resolve", "url_to_path"]

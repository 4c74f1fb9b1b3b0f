from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import urlparse, unquote
from urllib.request import url2pathname

from services.errors import NotFoundError

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "application/pdf": ".pdf",
}


@dataclass(frozen=True)
class StoredObject:
    uri: str
    size_bytes: int


class Storage(Protocol):
    def put_bytes(self, *, document_id: str, blob: bytes, content_type: Optional[str] = None) -> StoredObject: ...
    def get_bytes(self, *, uri: str) -> bytes: ...
    def put_json_atomic(self, *, document_id: str, obj: dict, name: str) -> StoredObject: ...
    def get_json_if_exists(self, *, document_id: str, name: str) -> dict | None: ...


def path_from_uri(uri: str) -> Path:
    u = urlparse(uri)
    if u.scheme != "file":
        raise ValueError(f"unsupported uri scheme: {u.scheme!r}")
    path = url2pathname(unquote(u.path))
    # file:///C:/x on Windows
    if len(path) >= 3 and path[0] in ("\\", "/") and path[2] == ":":
        path = path[1:]
    if u.netloc:
        path = f"\\\\{u.netloc}{path}"
    return Path(path)


class LocalStorage:
    """
    One directory per document:

      <root>/<document_id>/input.<ext>     uploaded bytes (.bin when the type is unknown)
      <root>/<document_id>/document.json   document state (see DocumentRepository)

    Shared between the API process and the Celery workers through the filesystem.
    """

    def __init__(self, root_dir: str) -> None:
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _doc_dir(self, document_id: str) -> Path:
        if not document_id or "/" in document_id or "\\" in document_id or document_id in (".", ".."):
            raise ValueError(f"invalid document id: {document_id!r}")
        return self.root / document_id

    def put_bytes(self, *, document_id: str, blob: bytes, content_type: Optional[str] = None) -> StoredObject:
        ext = _EXTENSIONS.get((content_type or "").lower(), ".bin")
        p = self._doc_dir(document_id) / f"input{ext}"
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(blob)
        return StoredObject(uri=p.resolve().as_uri(), size_bytes=len(blob))

    def get_bytes(self, *, uri: str) -> bytes:
        p = path_from_uri(uri)
        if not p.is_file():
            raise NotFoundError(f"Stored file is missing: {p.name}")
        return p.read_bytes()

    def put_json_atomic(self, *, document_id: str, obj: dict, name: str) -> StoredObject:
        out = self._doc_dir(document_id) / name
        out.parent.mkdir(parents=True, exist_ok=True)

        # api and worker processes may write the same document
        tmp = out.with_name(f".{out.name}.{os.getpid()}.tmp")
        data = json.dumps(obj, indent=2, ensure_ascii=False)
        tmp.write_text(data, encoding="utf-8")
        tmp.replace(out)

        return StoredObject(uri=out.resolve().as_uri(), size_bytes=len(data.encode("utf-8")))

    def get_json_if_exists(self, *, document_id: str, name: str) -> dict | None:
        try:
            p = self._doc_dir(document_id) / name
        except ValueError:
            return None
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8"))

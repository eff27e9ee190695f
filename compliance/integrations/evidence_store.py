"""
Evidence Store
==============
Blob storage for audit and CAPA evidence files.

The engine only keeps opaque references (``evidence/<owner>/<item>/<id>_<name>``);
bytes live in the store. ``resolve`` turns a reference into a short-lived URL
signed with HMAC-SHA256 over ``reference:expires`` using the app SECRET_KEY.

Backends:
  - LocalEvidenceStore: filesystem under EVIDENCE_ROOT (default).

Usage:
    from compliance.integrations.evidence_store import get_evidence_store

    store = get_evidence_store()
    ref = store.upload(capa.id, "capa", request.files["file"]).reference
    url = store.resolve(ref)
"""

import abc
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import urlencode

from flask import current_app
from werkzeug.utils import secure_filename

from compliance.core.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "evidence"
CHUNK_SIZE = 1 << 16  # 64 KiB
FILE_ENDPOINT = "/api/v1/evidence/file"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UploadResult:
    """Result of a stored upload."""

    reference: str
    sha256: str
    size_bytes: int
    filename: str


@dataclass(frozen=True)
class SignedUrl:
    url: str
    expires: int


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


def _secret() -> bytes:
    return current_app.config["SECRET_KEY"].encode()


def sign(reference: str, expires: int) -> str:
    message = f"{reference}:{expires}".encode()
    return hmac.new(_secret(), message, hashlib.sha256).hexdigest()


def verify_signature(reference: str, expires, signature: str, *, now: Optional[float] = None) -> bool:
    """True if ``signature`` is valid for ``reference`` and has not expired."""
    try:
        expires = int(expires)
    except (TypeError, ValueError):
        return False
    if expires < int(now if now is not None else time.time()):
        return False
    return hmac.compare_digest(sign(reference, expires), signature or "")


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class EvidenceStore(abc.ABC):
    """Uniform interface for evidence storage."""

    @abc.abstractmethod
    def upload(self, owner_id, item_id, file) -> UploadResult:
        """Store ``file`` (a werkzeug FileStorage or binary stream) and return its reference."""

    @abc.abstractmethod
    def open(self, reference: str) -> BinaryIO:
        """Open stored content for reading. Raises NotFoundError."""

    @abc.abstractmethod
    def exists(self, reference: str) -> bool:
        """Return True if the reference resolves to stored content."""

    def resolve(self, reference: str, *, now: Optional[float] = None) -> SignedUrl:
        """Short-lived signed fetch URL for a stored reference."""
        if not self.exists(reference):
            raise NotFoundError(resource="Evidence", resource_id=reference)
        ttl = int(current_app.config.get("EVIDENCE_URL_TTL_SECONDS", 900))
        expires = int(now if now is not None else time.time()) + ttl
        query = urlencode({"ref": reference, "expires": expires,
                           "sig": sign(reference, expires)})
        return SignedUrl(url=f"{FILE_ENDPOINT}?{query}", expires=expires)


# ---------------------------------------------------------------------------
# LocalEvidenceStore
# ---------------------------------------------------------------------------


def _segment(value, field) -> str:
    cleaned = secure_filename(str(value or ""))
    if not cleaned:
        raise ValidationError(f"Invalid {field}", details={field: "Required"})
    return cleaned


class LocalEvidenceStore(EvidenceStore):
    """
    Filesystem-backed evidence store.

    References are slash-delimited paths relative to ``root``. Stored files
    are never overwritten: every upload gets a fresh id.
    """

    def __init__(self, root):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, reference: str) -> Path:
        if not reference or not reference.startswith(f"{REFERENCE_PREFIX}/"):
            raise NotFoundError(resource="Evidence", resource_id=reference)
        resolved = (self.root / reference).resolve()
        # refuse references that escape the store root
        if not resolved.is_relative_to(self.root):
            raise NotFoundError(resource="Evidence", resource_id=reference)
        return resolved

    def upload(self, owner_id, item_id, file) -> UploadResult:
        filename = secure_filename(getattr(file, "filename", None) or "") or "upload.bin"
        stream = getattr(file, "stream", file)
        reference = "/".join([
            REFERENCE_PREFIX,
            _segment(owner_id, "owner_id"),
            _segment(item_id, "item_id"),
            f"{uuid.uuid4().hex}_{filename}",
        ])
        path = self._path(reference)
        path.parent.mkdir(parents=True, exist_ok=True)

        digest = hashlib.sha256()
        size = 0
        with open(path, "wb") as out:
            while True:
                chunk = stream.read(CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
                out.write(chunk)
                size += len(chunk)

        if size == 0:
            path.unlink(missing_ok=True)
            raise ValidationError("Uploaded file is empty", details={"file": "Empty"})

        logger.info("Evidence stored: %s (%d bytes)", reference, size)
        return UploadResult(reference=reference, sha256=digest.hexdigest(),
                            size_bytes=size, filename=filename)

    def open(self, reference: str) -> BinaryIO:
        path = self._path(reference)
        if not path.is_file():
            raise NotFoundError(resource="Evidence", resource_id=reference)
        return open(path, "rb")

    def exists(self, reference: str) -> bool:
        try:
            return self._path(reference).is_file()
        except NotFoundError:
            return False


def get_evidence_store() -> EvidenceStore:
    """The app's configured evidence store (created once per app)."""
    store = current_app.extensions.get("evidence_store")
    if store is None:
        store = LocalEvidenceStore(current_app.config["EVIDENCE_ROOT"])
        current_app.extensions["evidence_store"] = store
    return store

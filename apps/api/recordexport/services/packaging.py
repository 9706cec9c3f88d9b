"""Archive packaging for export deliverables.

Each deliverable is a zip holding a single entry named after the export file.
With a password the entry body is an AES-GCM envelope whose key is derived from
the password (PBKDF2-HMAC-SHA256, random salt); ``read_archive`` reverses it.
Archives of a job live in their own folder under the export directory. They
are written to a temp file beside the target and renamed into place,
so a reader never sees a half-written archive and a retry replaces the old one.
"""

from __future__ import annotations

import logging
import os
import struct
import tempfile
import zipfile
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from recordexport.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ENVELOPE_MAGIC = b"REXA1"
_HEADER = struct.Struct(">5sI16s12s")


class PackagingFailure(RuntimeError):
    pass


class ArchivePasswordError(PackagingFailure):
    pass


class FileMissing(FileNotFoundError):
    pass


def ensure_export_dir(settings: Settings | None = None) -> Path:
    settings = settings or get_settings()
    settings.export_dir.mkdir(parents=True, exist_ok=True)
    return settings.export_dir


def safe_file_name(file_name: str) -> str:
    safe = Path(str(file_name)).name
    if not safe or safe in (".", ".."):
        raise ValueError(f"Invalid export file name: {file_name!r}")
    return safe


def archive_path(file_name: str, settings: Settings | None = None, *, job_id: object | None = None) -> Path:
    settings = settings or get_settings()
    folder = settings.export_dir if job_id is None else settings.export_dir / safe_file_name(str(job_id))
    return folder / f"{safe_file_name(file_name)}.zip"


def _derive_key(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


def encrypt_payload(payload: bytes, password: str, file_name: str, iterations: int) -> bytes:
    salt = os.urandom(16)
    nonce = os.urandom(12)
    ciphertext = AESGCM(_derive_key(password, salt, iterations)).encrypt(nonce, payload, file_name.encode("utf-8"))
    return _HEADER.pack(ENVELOPE_MAGIC, iterations, salt, nonce) + ciphertext


def decrypt_payload(envelope: bytes, password: str, file_name: str) -> bytes:
    magic, iterations, salt, nonce = _HEADER.unpack_from(envelope)
    if magic != ENVELOPE_MAGIC:
        raise ArchivePasswordError("Archive entry is not encrypted")
    try:
        return AESGCM(_derive_key(password, salt, iterations)).decrypt(
            nonce, envelope[_HEADER.size :], file_name.encode("utf-8")
        )
    except InvalidTag as exc:
        raise ArchivePasswordError("Wrong password for archive") from exc


def package(
    file_name: str,
    payload: bytes | Path,
    password: str | None = None,
    *,
    settings: Settings | None = None,
    job_id: object | None = None,
) -> Path:
    settings = settings or get_settings()
    entry_name = safe_file_name(file_name)
    target = archive_path(entry_name, settings, job_id=job_id)

    tmp_path: Path | None = None
    try:
        if job_id is not None:
            target.parent.mkdir(exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=str(target.parent), suffix=".zip.tmp", delete=False) as tmp_file:
            tmp_path = Path(tmp_file.name)

        with zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_DEFLATED) as archive:
            if password:
                data = payload.read_bytes() if isinstance(payload, Path) else payload
                archive.writestr(
                    entry_name, encrypt_payload(data, password, entry_name, settings.archive_kdf_iterations)
                )
            elif isinstance(payload, Path):
                archive.write(payload, arcname=entry_name)
            else:
                archive.writestr(entry_name, payload)

        os.replace(tmp_path, target)
    except OSError as exc:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise PackagingFailure(f"Could not write archive {target}: {exc}") from exc

    logger.info("Packaged %s (%d bytes, encrypted=%s)", target, target.stat().st_size, bool(password))
    return target


def is_encrypted(path: Path, file_name: str) -> bool:
    with zipfile.ZipFile(path) as archive:
        with archive.open(safe_file_name(file_name)) as entry:
            return entry.read(len(ENVELOPE_MAGIC)) == ENVELOPE_MAGIC


def read_archive(path: Path, file_name: str, password: str | None = None) -> bytes:
    entry_name = safe_file_name(file_name)
    with zipfile.ZipFile(path) as archive:
        data = archive.read(entry_name)
    if not data.startswith(ENVELOPE_MAGIC):
        return data
    if not password:
        raise ArchivePasswordError(f"Archive {path.name} is password protected")
    return decrypt_payload(data, password, entry_name)


def remove_archive(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError as exc:
        raise FileMissing(f"Archive {path} does not exist") from exc

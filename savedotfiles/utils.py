"""
Core utilities for SaveDotFiles.
"""
import hashlib
import os
import shutil
import sys
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator


def is_windows() -> bool:
    """Return True if running on Windows."""
    return sys.platform == "win32"

def mask_token(token: str) -> str:
    """Mask a token, returning only the last 4 characters visible."""
    if not token or len(token) < 8:
        return "****"
    return "*" * (len(token) - 4) + token[-4:]

def secure_shred_file(path: Path) -> None:
    """Overwrite a regular file with random bytes, then remove it."""
    if path.is_symlink() or not path.is_file():
        return
    try:
        size = path.stat().st_size
        with path.open("r+b") as f:
            f.write(os.urandom(size))
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        pass
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            pass

@contextmanager
def secure_temp_dir(prefix: str = "savedotfiles_") -> Generator[Path, None, None]:
    """Provide a private temporary directory whose files are shredded on cleanup."""
    temp_dir = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        if not is_windows():
            temp_dir.chmod(0o700)
        yield temp_dir
    finally:
        # copied trees keep their modes; read-only dirs would block removal
        for root, dirs, _ in os.walk(temp_dir):
            for name in dirs:
                child = Path(root) / name
                if not child.is_symlink():
                    try:
                        child.chmod(0o700)
                    except OSError:
                        pass
        for root, dirs, files in os.walk(temp_dir, topdown=False):
            for name in files:
                secure_shred_file(Path(root) / name)
        shutil.rmtree(temp_dir, ignore_errors=True)

def validate_path(path: str | Path, base_dir: str | Path) -> Path:
    """
    Resolve a path and ensure it falls strictly under the base_dir to prevent directory traversal.
    """
    resolved_path = Path(path).resolve()
    resolved_base = Path(base_dir).resolve()

    if resolved_path != resolved_base and resolved_base not in resolved_path.parents:
        from .errors import PathTraversalError
        raise PathTraversalError(f"Path '{path}' escapes base directory '{base_dir}'.")
    return resolved_path

def sha256_file(path: Path) -> str:
    """Stream a file and return its SHA-256 hex digest."""
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()

def human_size(nbytes: int) -> str:
    """Convert bytes to a human-readable string (e.g. 1.2 MiB)."""
    if nbytes == 0:
        return "0 B"
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    i = 0
    while nbytes >= 1024 and i < len(suffixes) - 1:
        nbytes /= 1024.0  # type: ignore
        i += 1
    if i == 0:
        return f"{int(nbytes)} {suffixes[i]}"
    return f"{nbytes:.1f} {suffixes[i]}"

def timestamp_id() -> str:
    """Return a YYYYMMDD-HHMMSS formatted string."""
    return time.strftime("%Y%m%d-%H%M%S")

def default_output_name() -> str:
    return f"dotfiles-backup-{timestamp_id()}"

"""
Environment diagnostic suite.
"""
import importlib
import shutil
import subprocess
from pathlib import Path
from typing import List

from .config import get_config_dir, get_log_file, get_token, load_settings, resolve_repository
from .errors import ConfigurationError
from .models import DoctorCheck
from .utils import is_windows


def _check_binary(name: str, label: str, missing_status: str, hint: str) -> DoctorCheck:
    path = shutil.which(name)
    if path:
        return DoctorCheck(name=label, status="pass", detail=path)
    return DoctorCheck(name=label, status=missing_status, detail=hint)  # type: ignore[arg-type]

def _check_git() -> DoctorCheck:
    if not shutil.which("git"):
        return DoctorCheck(name="1. Git", status="fail", detail="git not found; --push will not work.")
    try:
        out = subprocess.run(["git", "--version"], capture_output=True, text=True, timeout=10)
        return DoctorCheck(name="1. Git", status="pass", detail=out.stdout.strip())
    except (OSError, subprocess.TimeoutExpired) as e:
        return DoctorCheck(name="1. Git", status="warn", detail=str(e))

def run_diagnostics(home: Path | None = None) -> List[DoctorCheck]:
    """Execute the health checks synchronously."""
    checks: List[DoctorCheck] = [_check_git()]

    # 2/3. Schedulers
    if is_windows():
        checks.append(_check_binary("schtasks", "2. Task Scheduler", "fail", "schtasks.exe not found."))
    else:
        checks.append(_check_binary("crontab", "2. Cron", "fail", "crontab not found; scheduling unavailable."))
        checks.append(_check_binary(
            "anacron", "3. Anacron", "warn",
            "Not installed; missed weekly runs will not be caught up (e.g. sudo apt install anacron).",
        ))

    # 4. Compression codecs
    missing = []
    for module in ("zlib", "bz2", "lzma"):
        try:
            importlib.import_module(module)
        except ImportError:
            missing.append(module)
    if missing:
        checks.append(DoctorCheck(name="4. Compression Codecs", status="fail", detail=f"Missing: {', '.join(missing)}"))
    else:
        checks.append(DoctorCheck(name="4. Compression Codecs", status="pass", detail="gzip, bzip2, xz"))

    # 5. Settings
    try:
        settings = load_settings()
        checks.append(DoctorCheck(name="5. Settings", status="pass", detail=f"cap={settings.retention_cap}, {settings.compression}/{settings.level}"))
    except ConfigurationError as e:
        settings = None
        checks.append(DoctorCheck(name="5. Settings", status="fail", detail=str(e)))

    # 6. Publish target
    try:
        repo = resolve_repository(settings=settings) if settings else None
        checks.append(DoctorCheck(name="6. Publish Repository", status="pass" if repo else "warn", detail=repo or "Unresolved"))
    except ConfigurationError as e:
        checks.append(DoctorCheck(name="6. Publish Repository", status="fail", detail=str(e)))

    # 7. Keyring token
    try:
        import keyring
        kr = keyring.get_keyring()
        has_token = get_token() is not None
        checks.append(DoctorCheck(
            name="7. OS Keyring Backend",
            status="pass" if has_token else "warn",
            detail=f"{kr.__class__.__name__}, token {'stored' if has_token else 'not stored (git credential helpers apply)'}",
        ))
    except Exception as e:
        checks.append(DoctorCheck(name="7. OS Keyring Backend", status="warn", detail=str(e)))

    # 8. Config directory
    config_dir = get_config_dir()
    checks.append(DoctorCheck(name="8. Config Directory", status="pass", detail=str(config_dir)))

    # 9. Log file
    log_file = get_log_file()
    checks.append(DoctorCheck(
        name="9. Scheduled-run Log",
        status="pass" if log_file.exists() else "warn",
        detail=str(log_file) if log_file.exists() else f"{log_file} (no scheduled run yet)",
    ))

    # 10. Disk space
    target = home or Path.home()
    try:
        total, used, free = shutil.disk_usage(target)
        free_gb = free // (2**30)
        status = "pass" if free_gb > 1 else "warn"
        checks.append(DoctorCheck(name="10. Disk Space (Home)", status=status, detail=f"{free_gb} GB free"))
    except OSError as e:
        checks.append(DoctorCheck(name="10. Disk Space (Home)", status="fail", detail=str(e)))

    # 11. Dependencies
    try:
        import apscheduler
        import pydantic
        import rich
        import typer
        checks.append(DoctorCheck(name="11. Dependencies", status="pass", detail="All core requirements met"))
    except ImportError as e:
        checks.append(DoctorCheck(name="11. Dependencies", status="fail", detail=str(e)))

    return checks

"""
Configuration, persisted settings, repository resolution and token storage for SaveDotFiles.
"""
import getpass
import json
import os
import stat
import sys
from pathlib import Path
from typing import List, Optional

import keyring
from keyring.errors import KeyringError
from pydantic import ValidationError

from .errors import ConfigurationError
from .models import ItemSpec, Settings, is_repository_ref

APP_NAME = "savedotfiles"
REPO_ENV_VAR = "SAVEDOTFILES_REPO"
FALLBACK_REPO_NAME = "dotfiles-backup"
TOKEN_REF = "git_token"

def get_config_dir() -> Path:
    """Returns the platform-specific configuration directory."""
    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        if appdata:
            base_dir = Path(appdata)
        else:
            base_dir = Path.home() / "AppData" / "Roaming"
    else:
        # XDG Base Directory specification
        xdg_config = os.getenv("XDG_CONFIG_HOME")
        if xdg_config:
            base_dir = Path(xdg_config)
        else:
            base_dir = Path.home() / ".config"

    config_dir = base_dir / APP_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir

def get_state_dir() -> Path:
    """Returns the directory holding the scheduled-run log."""
    if sys.platform == "win32":
        local = os.getenv("LOCALAPPDATA")
        base_dir = Path(local) if local else Path.home() / "AppData" / "Local"
    else:
        xdg_state = os.getenv("XDG_STATE_HOME")
        base_dir = Path(xdg_state) if xdg_state else Path.home() / ".local" / "state"
    return base_dir / APP_NAME

def get_log_file() -> Path:
    return get_state_dir() / "backup.log"

def get_settings_path() -> Path:
    return get_config_dir() / "config.json"

def apply_secure_permissions(path: Path) -> None:
    """Apply chmod 600 equivalent permissions to a file."""
    if sys.platform != "win32":
        # Owner read/write only
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)

def load_settings() -> Settings:
    """Load persisted settings, returning defaults when none were saved."""
    path = get_settings_path()
    if not path.exists():
        return Settings()

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return Settings(**data)
    except (OSError, ValueError, ValidationError) as e:
        raise ConfigurationError(f"Failed to load settings from {path}: {e}") from e

def save_settings(settings: Settings) -> None:
    path = get_settings_path()
    with path.open("w", encoding="utf-8") as f:
        f.write(settings.model_dump_json(indent=2, exclude_none=True))
    apply_secure_permissions(path)

def update_settings(**changes) -> Settings:
    """Validate and persist a partial settings change."""
    current = load_settings()
    try:
        updated = Settings(**{**current.model_dump(), **changes})
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
    save_settings(updated)
    return updated

def fallback_repository() -> str:
    return f"{getpass.getuser()}/{FALLBACK_REPO_NAME}"

def resolve_repository(flag: Optional[str] = None, settings: Optional[Settings] = None) -> str:
    """
    Pick the publish target: explicit flag, then environment, then persisted setting,
    then '<login user>/dotfiles-backup'.
    """
    if flag:
        candidate = flag
    elif os.getenv(REPO_ENV_VAR):
        candidate = os.environ[REPO_ENV_VAR]
    else:
        settings = settings if settings is not None else load_settings()
        candidate = settings.repo or fallback_repository()

    if not is_repository_ref(candidate):
        raise ConfigurationError(f"Repository '{candidate}' is not 'owner/name', a git URL or an absolute path.")
    return candidate

def configured_items(settings: Optional[Settings] = None) -> List[ItemSpec]:
    """The item specs to back up: persisted list if present, built-in defaults otherwise."""
    from .items import DEFAULT_ITEMS

    settings = settings if settings is not None else load_settings()
    texts = settings.items if settings.items is not None else DEFAULT_ITEMS
    return [ItemSpec.parse(t) for t in texts]

def save_token(token: str) -> bool:
    """Store the git token in the OS keyring. Returns False when no keyring is usable."""
    try:
        keyring.set_password(APP_NAME, TOKEN_REF, token)
        return True
    except KeyringError:
        return False

def get_token() -> Optional[str]:
    """Retrieve the git token from the keyring, if any."""
    try:
        return keyring.get_password(APP_NAME, TOKEN_REF)
    except KeyringError:
        return None

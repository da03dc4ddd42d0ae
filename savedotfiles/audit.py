"""
Operation audit logging with structured JSON-Lines.
"""
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict

from .config import get_config_dir

REDACTED_KEYS = ("password", "token", "secret", "key")


class AuditLogger:
    """Writes structured JSONL records of backups, publishes and schedule changes."""
    def __init__(self):
        self.log_file = get_config_dir() / "audit.jsonl"

    def log(self, event_type: str, **kwargs: Any) -> None:
        """Log a structured operation event."""
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "details": kwargs
        }

        for key in REDACTED_KEYS:
            if key in entry["details"]:
                entry["details"][key] = "*****"

        try:
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            sys.stderr.write(f"[SaveDotFiles Audit Error] Failed to write log: {e}\n")

def get_audit_log(last_n: int = 50) -> list[Dict[str, Any]]:
    """Retrieve the last N events from the audit log."""
    log_file = get_config_dir() / "audit.jsonl"
    if not log_file.exists():
        return []

    with log_file.open("r", encoding="utf-8") as f:
        lines = f.readlines()

    parsed = []
    for line in lines[-last_n:]:
        if not line.strip():
            continue
        try:
            parsed.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return parsed

"""
Manifest logic for savedotfiles: the per-run record embedded in every archive,
and the README and restore script rendered from it.
"""
import getpass
import socket
from datetime import datetime, timezone
from typing import List, Sequence

from .models import ArchiveManifest, BackupJob, ItemOutcome, ResolvedItem

RESTORE_SCRIPT_NAME = "restore-dotfiles.sh"
README_NAME = "README.md"
MANIFEST_NAME = "manifest.json"

OUTCOME_LABELS = {
    ItemOutcome.INCLUDED: "included",
    ItemOutcome.PARTIAL: "partial copy",
    ItemOutcome.MISSING: "missing",
}

def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"

def build_manifest(
    job: BackupJob,
    entries: Sequence[ResolvedItem],
    skipped: int,
    errors: Sequence[str],
) -> ArchiveManifest:
    """Freeze the outcome of a run."""
    return ArchiveManifest(
        entries=list(entries),
        created_at=datetime.now(timezone.utc),
        hostname=socket.gethostname(),
        user=current_user(),
        codec=job.codec,
        level=job.level,
        skipped=skipped,
        errors=list(errors),
    )

def serialize_manifest(manifest: ArchiveManifest) -> bytes:
    """Serialize the manifest to JSON bytes deterministically."""
    return manifest.model_dump_json(indent=2).encode("utf-8")

def _manifest_table(manifest: ArchiveManifest) -> List[str]:
    lines = ["| Item | Outcome | Notes |", "|---|---|---|"]
    for entry in manifest.entries:
        note = (entry.detail or "").replace("|", "\\|").replace("\n", " ")
        lines.append(f"| `{entry.relative_path}` | {OUTCOME_LABELS[entry.outcome]} | {note} |")
    return lines

def render_readme(manifest: ArchiveManifest, job: BackupJob) -> str:
    extract_flag = {"gzip": "-xzf", "bzip2": "-xjf", "xz": "-xJf"}[job.codec]
    created = manifest.created_at.strftime("%Y-%m-%d %H:%M:%S %Z")

    lines = [
        "# Dotfiles Backup",
        "",
        f"Created on: {created}",
        f"From host: {manifest.hostname}",
        f"User: {manifest.user}",
        f"Compression: {manifest.codec} (level {manifest.level})",
        "",
        "## Contents",
        "",
        "This archive contains configuration files (dotfiles) from your home directory.",
        "",
        f"- Included: {manifest.count(ItemOutcome.INCLUDED)}",
        f"- Partially copied: {manifest.count(ItemOutcome.PARTIAL)}",
        f"- Missing: {manifest.count(ItemOutcome.MISSING)}",
        f"- Not present on this host: {manifest.skipped}",
        "",
        *_manifest_table(manifest),
        "",
        "## SECURITY WARNING",
        "",
        "**This backup may include SSH PRIVATE KEYS and other credentials!**",
        "- Keep this archive secure",
        "- Do not share it publicly",
        "- Delete it after restoring on the new machine",
        "",
        "## How to restore",
        "",
        "1. Extract this archive:",
        "   ```bash",
        f"   tar {extract_flag} {job.archive_name}",
        f"   cd {job.output_name}",
        "   ```",
        "",
        "2. Run the restore script (it asks before overwriting anything):",
        "   ```bash",
        f"   ./{RESTORE_SCRIPT_NAME}",
        "   ```",
        "",
        "3. Reload your shell configuration:",
        "   ```bash",
        "   source ~/.zshrc  # or ~/.bashrc",
        "   ```",
        "",
        "## Manual steps after restore",
        "",
        "1. Fix SSH key permissions:",
        "   ```bash",
        "   chmod 700 ~/.ssh",
        "   chmod 600 ~/.ssh/id_*",
        "   chmod 644 ~/.ssh/*.pub",
        "   chmod 644 ~/.ssh/config",
        "   ```",
        "2. Fix GnuPG permissions if `~/.gnupg` was restored: `chmod 700 ~/.gnupg`",
        "3. Re-enter application passwords or tokens that are not stored in files",
        "4. Install the tools these files configure (Oh My Zsh, tmux and vim plugins, ...)",
    ]
    if manifest.errors:
        lines += ["", "## Copy errors", ""]
        lines += [f"- {err}" for err in manifest.errors]
    return "\n".join(lines) + "\n"

RESTORE_SCRIPT = """#!/bin/bash
# Restore script for dotfiles, generated by savedotfiles

set -euo pipefail

GREEN='\\033[0;32m'
YELLOW='\\033[1;33m'
RED='\\033[0;31m'
NC='\\033[0m'

echo -e "${YELLOW}Restoring dotfiles to $HOME${NC}"
echo -e "${RED}WARNING: This will overwrite existing files!${NC}"
read -p "Continue? (y/N) " -n 1 -r
echo
if [[ ! $REPLY =~ ^[Yy]$ ]]; then
    exit 1
fi

SCRIPT_DIR="$( cd "$( dirname "${BASH_SOURCE[0]}" )" && pwd )"
cd "$SCRIPT_DIR"

# Directories first so empty ones survive
find . -mindepth 1 -type d -print0 | while IFS= read -r -d '' dir; do
    mkdir -p "$HOME/${dir#./}"
done

find . \\( -type f -o -type l \\) -not -path "./__SCRIPT__" -not -path "./__README__" -not -path "./__MANIFEST__" -print0 |
while IFS= read -r -d '' item; do
    rel="${item#./}"
    mkdir -p "$HOME/$(dirname "$rel")"
    if [[ -L "$item" ]]; then
        ln -sfn "$(readlink "$item")" "$HOME/$rel"
    else
        cp -p "$item" "$HOME/$rel"
    fi
    echo -e "${GREEN}  \u2713${NC} Restored $rel"
done

echo -e "\\n${GREEN}Dotfiles restored successfully!${NC}"
echo -e "${YELLOW}You may need to:${NC}"
echo "  - Reload your shell: source ~/.zshrc or source ~/.bashrc"
echo "  - Restart your terminal"
echo "  - Fix key permissions, see README.md"
"""

def render_restore_script() -> str:
    return (
        RESTORE_SCRIPT.replace("__SCRIPT__", RESTORE_SCRIPT_NAME)
        .replace("__README__", README_NAME)
        .replace("__MANIFEST__", MANIFEST_NAME)
    )

"""
Item resolution: maps configured item specs onto concrete entries under a source root.

Literal specs resolve to their path when it exists and to nothing otherwise.
Wildcard specs look one directory level deep and match regular files only.
An entry that cannot be probed is reported as missing instead of failing the run.
"""
import fnmatch
import os
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator, List

from .models import ItemOutcome, ItemSpec, ResolvedItem

DEFAULT_ITEMS: List[str] = [
    # Shell configurations
    ".bashrc",
    ".bash_profile",
    ".bash_aliases",
    ".zshrc",
    ".zprofile",
    ".zsh_aliases",
    ".oh-my-zsh",
    ".p10k.zsh",
    # Shell history
    ".bash_history",
    ".zsh_history",
    # Git
    ".gitconfig",
    ".gitignore_global",
    ".gitmessage",
    # SSH, private keys included
    ".ssh",
    # Terminal multiplexers
    ".tmux.conf",
    ".tmux",
    ".screenrc",
    # Editors
    ".vimrc",
    ".vim",
    ".nanorc",
    ".emacs",
    ".emacs.d",
    # Development tools
    ".npmrc",
    ".yarnrc",
    ".cargo/config",
    ".cargo/config.toml",
    ".rustup/settings.toml",
    ".pypirc",
    ".pip/pip.conf",
    ".gem/credentials",
    ".bundle/config",
    # Other CLI tools
    ".curlrc",
    ".wgetrc",
    ".dircolors",
    ".inputrc",
    ".hushlogin",
    ".selected_editor",
    # Application configs
    ".config",
    # WSL
    ".wslconfig",
    ".wslgconfig",
    # Personal scripts and notes
    "bin",
    "doc",
]


def _missing(spec: ItemSpec, path: Path, relative: str, error: OSError) -> ResolvedItem:
    return ResolvedItem(
        spec=spec,
        source_path=str(path),
        relative_path=relative,
        outcome=ItemOutcome.MISSING,
        detail=error.strerror or str(error),
    )

def _resolve_literal(spec: ItemSpec, root: Path) -> Iterator[ResolvedItem]:
    source = root / spec.path
    try:
        # lstat so a dangling symlink still counts as present
        os.lstat(source)
    except FileNotFoundError:
        return
    except NotADirectoryError:
        return
    except OSError as e:
        yield _missing(spec, source, spec.path, e)
        return
    yield ResolvedItem(spec=spec, source_path=str(source), relative_path=spec.path)

def _resolve_wildcard(spec: ItemSpec, root: Path) -> Iterator[ResolvedItem]:
    pure = PurePosixPath(spec.path)
    parent = root / pure.parent
    pattern = pure.name

    try:
        with os.scandir(parent) as it:
            entries = sorted(it, key=lambda e: e.name)
    except (FileNotFoundError, NotADirectoryError):
        return
    except OSError as e:
        yield _missing(spec, parent, pure.parent.as_posix(), e)
        return

    for entry in entries:
        if not fnmatch.fnmatchcase(entry.name, pattern):
            continue
        relative = (pure.parent / entry.name).as_posix()
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
        except OSError as e:
            yield _missing(spec, Path(entry.path), relative, e)
            continue
        yield ResolvedItem(spec=spec, source_path=entry.path, relative_path=relative)

def resolve_items(specs: Iterable[ItemSpec], root: str | Path) -> Iterator[ResolvedItem]:
    """Lazily resolve specs against root, in spec order."""
    base = Path(root)
    for spec in specs:
        if spec.is_wildcard:
            yield from _resolve_wildcard(spec, base)
        else:
            yield from _resolve_literal(spec, base)

def skipped_specs(specs: Iterable[ItemSpec], items: Iterable[ResolvedItem]) -> List[ItemSpec]:
    """Specs that produced no resolved item on this host."""
    seen = {item.spec for item in items}
    return [spec for spec in specs if spec not in seen]

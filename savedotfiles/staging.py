"""
Staging archiver.
Copies resolved items into a private staging area, writes the restore script and
README, then packs everything into a single tar container with the chosen codec.
"""
import shutil
import tarfile
from contextlib import contextmanager, suppress
from pathlib import Path, PurePosixPath
from typing import Callable, Generator, Iterable, List, Optional, Tuple

from .errors import ConfigurationError, ItemError, PackagingError, PathTraversalError
from .items import skipped_specs
from .manifest import (
    MANIFEST_NAME,
    README_NAME,
    RESTORE_SCRIPT_NAME,
    build_manifest,
    render_readme,
    render_restore_script,
    serialize_manifest,
)
from .models import CODEC_EXTENSIONS, ArchiveResult, BackupJob, ItemOutcome, ItemSpec, ResolvedItem
from .utils import secure_temp_dir, validate_path

TAR_MODES = {
    "gzip": "w:gz",
    "bzip2": "w:bz2",
    "xz": "w:xz",
}

ItemCallback = Callable[[ResolvedItem], None]

def validate_job(job: BackupJob) -> None:
    """Reject codec/level combinations before anything is created."""
    if job.codec not in CODEC_EXTENSIONS:
        raise ConfigurationError(
            f"Unsupported compression '{job.codec}'. Choose one of: {', '.join(CODEC_EXTENSIONS)}."
        )
    if not isinstance(job.level, int) or not 1 <= job.level <= 9:
        raise ConfigurationError(f"Compression level must be between 1 and 9, got {job.level!r}.")

@contextmanager
def staging_area() -> Generator[Path, None, None]:
    """A private staging directory, shredded and removed on every exit path."""
    with secure_temp_dir(prefix="savedotfiles_stage_") as stage:
        yield stage

def copy_item(item: ResolvedItem, stage_root: Path) -> Tuple[ResolvedItem, List[ItemError]]:
    """
    Copy one included item into the staging tree.

    Directory copies are best effort: entries that fail are recorded and the item
    is downgraded to a partial copy. A failure on the item itself marks it missing.
    """
    source = Path(item.source_path)
    try:
        target = validate_path(stage_root / item.relative_path, stage_root)
    except PathTraversalError as e:
        return item.with_outcome(ItemOutcome.MISSING, str(e)), [ItemError(str(e))]

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        if source.is_dir() and not source.is_symlink():
            shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(source, target, follow_symlinks=False)
    except shutil.Error as e:
        failures = [ItemError(f"{item.relative_path}: {src}: {why}") for src, _dst, why in e.args[0]]
        detail = f"{len(failures)} entr{'y' if len(failures) == 1 else 'ies'} skipped"
        return item.with_outcome(ItemOutcome.PARTIAL, detail), failures
    except OSError as e:
        reason = e.strerror or str(e)
        return item.with_outcome(ItemOutcome.MISSING, reason), [ItemError(f"{item.relative_path}: {reason}")]

    return item, []

def _member_filter(root_name: str) -> Callable[[tarfile.TarInfo], tarfile.TarInfo]:
    def check(member: tarfile.TarInfo) -> tarfile.TarInfo:
        name = PurePosixPath(member.name)
        if name.is_absolute() or ".." in name.parts or name.parts[:1] != (root_name,):
            raise PathTraversalError(f"Refusing to pack '{member.name}' outside '{root_name}/'.")
        return member
    return check

def pack(stage_dir: Path, job: BackupJob) -> Path:
    """Pack stage_dir/<output_name> into <destination>/<archive_name>."""
    destination = Path(job.destination).expanduser().resolve()
    archive_path = destination / job.archive_name
    options = {"preset": job.level} if job.codec == "xz" else {"compresslevel": job.level}

    try:
        destination.mkdir(parents=True, exist_ok=True)
        # symlinks are stored as links, never followed
        with tarfile.open(archive_path, TAR_MODES[job.codec], **options) as tar:
            tar.add(
                stage_dir / job.output_name,
                arcname=job.output_name,
                recursive=True,
                filter=_member_filter(job.output_name),
            )
    except (OSError, tarfile.TarError, PathTraversalError) as e:
        with suppress(OSError):
            archive_path.unlink(missing_ok=True)
        raise PackagingError(f"Failed to write {archive_path}: {e}") from e
    return archive_path

def assemble(
    job: BackupJob,
    items: Iterable[ResolvedItem],
    specs: Optional[Iterable[ItemSpec]] = None,
    on_item: Optional[ItemCallback] = None,
) -> ArchiveResult:
    """
    Build the archive for job from resolved items.

    specs, when given, lets the manifest report how many configured items had no
    match on this host. on_item is called with each item's final outcome.
    """
    validate_job(job)

    with staging_area() as stage:
        root = stage / job.output_name
        root.mkdir()

        entries: List[ResolvedItem] = []
        failures: List[ItemError] = []
        for item in items:
            if item.outcome == ItemOutcome.INCLUDED:
                item, errors = copy_item(item, root)
                failures.extend(errors)
            entries.append(item)
            if on_item:
                on_item(item)

        skipped = len(skipped_specs(specs, entries)) if specs is not None else 0
        manifest = build_manifest(job, entries, skipped, [str(f) for f in failures])

        try:
            script = root / RESTORE_SCRIPT_NAME
            script.write_text(render_restore_script(), encoding="utf-8", newline="\n")
            script.chmod(0o755)
            (root / README_NAME).write_text(render_readme(manifest, job), encoding="utf-8")
            (root / MANIFEST_NAME).write_bytes(serialize_manifest(manifest))
        except OSError as e:
            raise PackagingError(f"Failed to write restore artifacts: {e}") from e

        archive_path = pack(stage, job)

    return ArchiveResult(path=archive_path, manifest=manifest, size=archive_path.stat().st_size)

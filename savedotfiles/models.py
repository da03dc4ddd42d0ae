"""
Pydantic v2 data models for SaveDotFiles.
"""
import re
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

WILDCARD_CHARS = ("*", "?", "[")

CODEC_EXTENSIONS = {
    "gzip": "tar.gz",
    "bzip2": "tar.bz2",
    "xz": "tar.xz",
}

REPO_PATTERN = r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$"


def is_repository_ref(value: str) -> bool:
    """True for 'owner/name' shorthand, git URLs and absolute local paths."""
    if re.match(REPO_PATTERN, value):
        return True
    if "://" in value or value.startswith("git@"):
        return True
    return Path(value).is_absolute()


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'value'}: {err['msg']}" for err in exc.errors()
    )


class ItemSpec(FrozenModel):
    path: str
    is_wildcard: bool = False

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        v = v.replace("\\", "/").strip()
        if not v:
            raise ValueError("Item path must not be empty")
        pure = PurePosixPath(v)
        if pure.is_absolute():
            raise ValueError(f"Item path '{v}' must be relative to the source root")
        if ".." in pure.parts:
            raise ValueError(f"Item path '{v}' must not contain '..'")
        return pure.as_posix()

    @classmethod
    def parse(cls, text: str) -> "ItemSpec":
        """Build a spec from its configured text form, flagging wildcard patterns."""
        name = PurePosixPath(text.replace("\\", "/")).name
        try:
            return cls(path=text, is_wildcard=any(c in name for c in WILDCARD_CHARS))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid item '{text}': {_validation_message(e)}") from e


class ItemOutcome(str, Enum):
    INCLUDED = "included"
    PARTIAL = "partial"
    MISSING = "missing"


class ResolvedItem(FrozenModel):
    spec: ItemSpec
    source_path: str
    relative_path: str
    outcome: ItemOutcome = ItemOutcome.INCLUDED
    detail: Optional[str] = None

    def with_outcome(self, outcome: ItemOutcome, detail: Optional[str] = None) -> "ResolvedItem":
        return self.model_copy(update={"outcome": outcome, "detail": detail})


class ArchiveManifest(FrozenModel):
    entries: List[ResolvedItem] = Field(default_factory=list)
    created_at: datetime
    hostname: str
    user: str
    codec: str
    level: int
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)

    def count(self, outcome: ItemOutcome) -> int:
        return sum(1 for e in self.entries if e.outcome == outcome)


class BackupJob(FrozenModel):
    output_name: str = Field(..., min_length=1)
    codec: Literal["gzip", "bzip2", "xz"] = "gzip"
    level: int = Field(6, ge=1, le=9)
    push: bool = False
    repository: Optional[str] = None
    source_root: Path
    destination: Path

    @field_validator("output_name")
    @classmethod
    def validate_output_name(cls, v: str) -> str:
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("Output name must be a plain file name")
        return v

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_repository_ref(v):
            raise ValueError(f"Unrecognised repository '{v}'")
        return v

    @property
    def extension(self) -> str:
        return CODEC_EXTENSIONS[self.codec]

    @property
    def archive_name(self) -> str:
        return f"{self.output_name}.{self.extension}"

    @classmethod
    def create(cls, **kwargs: Any) -> "BackupJob":
        """Validate job parameters, mapping any failure to ConfigurationError."""
        try:
            return cls(**kwargs)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid backup job: {_validation_message(e)}") from e


class ArchiveResult(FrozenModel):
    path: Path
    manifest: ArchiveManifest
    size: int


class RemoteArtifact(FrozenModel):
    name: str
    modified: int


class PublishResult(FrozenModel):
    repository: str
    archive_name: str
    removed: List[str] = Field(default_factory=list)
    retained: List[str] = Field(default_factory=list)
    commit_message: str

    @property
    def rotated(self) -> bool:
        return bool(self.removed)


class ScheduleConfig(FrozenModel):
    day_of_week: int = Field(0, ge=0, le=6)
    hour: int = Field(2, ge=0, le=23)
    push: bool = False


class ScheduleEntry(FrozenModel):
    marker: str
    day_of_week: int = Field(..., ge=0, le=6)
    hour: int = Field(..., ge=0, le=23)
    push: bool = False
    backend: Literal["cron", "anacron", "native"]
    command: str


class ScheduleStatus(FrozenModel):
    backend: str
    installed: bool
    entry: Optional[ScheduleEntry] = None
    next_run: Optional[datetime] = None


class Settings(FrozenModel):
    repo: Optional[str] = None
    items: Optional[List[str]] = None
    compression: Literal["gzip", "bzip2", "xz"] = "gzip"
    level: int = Field(6, ge=1, le=9)
    retention_cap: int = Field(5, ge=1)
    git_timeout: Optional[float] = Field(None, gt=0)

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_repository_ref(v):
            raise ValueError("Repo must be 'owner/name', a git URL or an absolute path")
        return v


class DoctorCheck(FrozenModel):
    name: str
    status: Literal["pass", "warn", "fail"]
    detail: str

"""
Weekly schedule installation for unattended backups.

Entries live in shared job stores (the user crontab, a user anacrontab, the Windows
task registry). This module only ever touches blocks tagged with MARKER: a marker
comment line, optional comment lines, then exactly one job line. Everything else in
a store is written back untouched.
"""
import os
import re
import shlex
import shutil
import subprocess
import sys
import tempfile
import xml.etree.ElementTree as ET
from collections import deque
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from apscheduler.triggers.cron import CronTrigger  # type: ignore

from .errors import ScheduleStoreError
from .models import ScheduleConfig, ScheduleEntry, ScheduleStatus
from .utils import is_windows

MARKER = "# SaveDotFiles Weekly Backup"
REGULAR_ROLE = "Regular"
RUNNER_ROLE = "Anacron Runner"
ANACRON_ROLE = "Anacron Job"
ANACRON_JOB_ID = "savedotfiles-backup"
ANACRON_PERIOD_DAYS = 7
ANACRON_DELAY_MINUTES = 10
TASK_NAME = "SaveDotFiles Weekly Backup"

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
CRON_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]

CRON_LINE = re.compile(r"^(\d+)\s+(\d+)\s+\*\s+\*\s+([0-6])\s+(.+)$")
ANACRON_LINE = re.compile(r"^(\d+)\s+(\d+)\s+(\S+)\s+(.+)$")


class InstallOutcome(str, Enum):
    INSTALLED = "installed"
    ALREADY_INSTALLED = "already-installed"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


# --- job stores -------------------------------------------------------------

class JobStore(Protocol):
    def available(self) -> bool: ...
    def read(self) -> List[str]: ...
    def write(self, lines: List[str]) -> None: ...


class FileStore:
    """A job table kept in a plain file, replaced atomically on write."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def available(self) -> bool:
        return True

    def read(self) -> List[str]:
        if not self.path.exists():
            return []
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise ScheduleStoreError(f"Cannot read {self.path}: {e}") from e

    def write(self, lines: List[str]) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=self.path.parent)
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(_join(lines))
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise ScheduleStoreError(f"Cannot write {self.path}: {e}") from e


class CrontabStore:
    """The invoking user's crontab, read and replaced through the crontab command."""

    def __init__(self, executable: str = "crontab"):
        self.executable = executable

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def _run(self, args: List[str], stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.executable, *args], input=stdin, capture_output=True, text=True
            )
        except OSError as e:
            raise ScheduleStoreError(f"Cannot run {self.executable}: {e}") from e

    def read(self) -> List[str]:
        proc = self._run(["-l"])
        if proc.returncode != 0:
            if "no crontab" in proc.stderr.lower():
                return []
            raise ScheduleStoreError(f"crontab -l failed: {proc.stderr.strip()}")
        return proc.stdout.splitlines()

    def write(self, lines: List[str]) -> None:
        proc = self._run(["-"], stdin=_join(lines))
        if proc.returncode != 0:
            raise ScheduleStoreError(f"crontab install failed: {proc.stderr.strip()}")


def _join(lines: List[str]) -> str:
    return "\n".join(lines) + "\n" if lines else ""


# --- marked blocks ----------------------------------------------------------

def marker_line(role: str) -> str:
    return f"{MARKER} - {role}"

def _is_marker(line: str, role: Optional[str] = None) -> bool:
    text = line.strip()
    if role is None:
        return text.startswith(MARKER)
    return text == marker_line(role) or text.startswith(marker_line(role) + " ")

def find_blocks(lines: List[str], role: Optional[str] = None) -> List[Tuple[int, int, Optional[str]]]:
    """
    Locate marked blocks as (start, end, job_line) with end exclusive.
    A block runs from its marker through any comment lines to the first job line.
    """
    blocks = []
    i = 0
    while i < len(lines):
        if not _is_marker(lines[i], role):
            i += 1
            continue
        start = i
        i += 1
        while i < len(lines) and lines[i].lstrip().startswith("#") and not _is_marker(lines[i]):
            i += 1
        job = None
        if i < len(lines) and lines[i].strip() and not lines[i].lstrip().startswith("#"):
            job = lines[i]
            i += 1
        blocks.append((start, i, job))
    return blocks

def strip_blocks(lines: List[str], role: Optional[str] = None) -> List[str]:
    """Return lines without the marked blocks for role (all roles when None)."""
    drop = set()
    for start, end, _ in find_blocks(lines, role):
        drop.update(range(start, end))
    return [line for idx, line in enumerate(lines) if idx not in drop]


# --- commands and triggers ----------------------------------------------------

def backup_command(
    push: bool,
    log_file: Path,
    python: Optional[str] = None,
    windows: Optional[bool] = None,
) -> str:
    """
    Shell command a scheduler runs: one backup, output appended to log_file.
    Quoted for cmd.exe when windows (default: the current platform), for sh otherwise.
    """
    args = [python or sys.executable, "-m", "savedotfiles", "backup"]
    if push:
        args.append("--push")
    if windows is None:
        windows = is_windows()
    if windows:
        return subprocess.list2cmdline(args) + f" >> {subprocess.list2cmdline([str(log_file)])} 2>&1"
    return " ".join(shlex.quote(a) for a in args) + f" >> {shlex.quote(str(log_file))} 2>&1"

def weekly_expression(day_of_week: int, hour: int) -> str:
    """Crontab expression for a weekly run at hour:00, validated by APScheduler."""
    expr = f"0 {hour} * * {day_of_week}"
    # APScheduler counts weekdays from Monday; validate with names instead of numbers
    CronTrigger(day_of_week=CRON_DAY_NAMES[day_of_week], hour=hour, minute=0)
    return expr

def next_weekly_run(day_of_week: int, hour: int, now: Optional[datetime] = None) -> Optional[datetime]:
    trigger = CronTrigger(day_of_week=CRON_DAY_NAMES[day_of_week], hour=hour, minute=0)
    now = now.astimezone(trigger.timezone) if now else datetime.now(trigger.timezone)
    return trigger.get_next_fire_time(None, now)

def describe(config: ScheduleConfig) -> str:
    return f"Every {DAY_NAMES[config.day_of_week]} at {config.hour:02d}:00"


# --- backends -----------------------------------------------------------------

class ScheduleBackend(Protocol):
    name: str

    def available(self) -> bool: ...
    def is_installed(self) -> bool: ...
    def install(self, config: ScheduleConfig, command: str) -> bool: ...
    def remove(self) -> bool: ...
    def status(self) -> ScheduleStatus: ...


class CronBackend:
    """Weekly cron job in the user crontab."""

    name = "cron"

    def __init__(self, store: Optional[JobStore] = None):
        self.store = store if store is not None else CrontabStore()

    def available(self) -> bool:
        return self.store.available()

    def _entry(self, job_line: str) -> Optional[ScheduleEntry]:
        match = CRON_LINE.match(job_line.strip())
        if not match:
            return None
        _, hour, dow, command = match.groups()
        return ScheduleEntry(
            marker=marker_line(REGULAR_ROLE),
            day_of_week=int(dow),
            hour=int(hour),
            push="--push" in command.split(),
            backend="cron",
            command=command.replace("\\%", "%"),
        )

    def is_installed(self) -> bool:
        return bool(find_blocks(self.store.read(), REGULAR_ROLE))

    def install(self, config: ScheduleConfig, command: str) -> bool:
        lines = self.store.read()
        if find_blocks(lines, REGULAR_ROLE):
            return False
        # cron turns a bare % into a newline
        escaped = command.replace("%", "\\%")
        lines += [
            marker_line(REGULAR_ROLE),
            f"# Runs every week on day {config.day_of_week} at {config.hour}:00",
            f"{weekly_expression(config.day_of_week, config.hour)} {escaped}",
        ]
        self.store.write(lines)
        return True

    def remove(self) -> bool:
        lines = self.store.read()
        if not find_blocks(lines, REGULAR_ROLE):
            return False
        self.store.write(strip_blocks(lines, REGULAR_ROLE))
        return True

    def status(self) -> ScheduleStatus:
        blocks = find_blocks(self.store.read(), REGULAR_ROLE)
        if not blocks:
            return ScheduleStatus(backend=self.name, installed=False)
        job = blocks[0][2]
        entry = self._entry(job) if job else None
        next_run = next_weekly_run(entry.day_of_week, entry.hour) if entry else None
        return ScheduleStatus(backend=self.name, installed=True, entry=entry, next_run=next_run)


class AnacronBackend:
    """
    Catch-up scheduling through a user anacrontab.

    The job itself sits in ~/.anacron/anacrontab; an hourly cron entry runs anacron
    against that table so a week missed while the machine was off runs on next boot.
    """

    name = "anacron"

    def __init__(
        self,
        home: Optional[Path] = None,
        cron_store: Optional[JobStore] = None,
        anacron_bin: Optional[str] = None,
    ):
        base = Path(home or Path.home()) / ".anacron"
        self.tab = FileStore(base / "anacrontab")
        self.spool = base / "spool"
        self.cron_store = cron_store if cron_store is not None else CrontabStore()
        self.anacron_bin = anacron_bin if anacron_bin is not None else shutil.which("anacron")

    def available(self) -> bool:
        return bool(self.anacron_bin)

    def _tab_has_job(self, lines: List[str]) -> bool:
        if find_blocks(lines, ANACRON_ROLE):
            return True
        return any(self._job_id(line) == ANACRON_JOB_ID for line in lines)

    @staticmethod
    def _job_id(line: str) -> Optional[str]:
        match = ANACRON_LINE.match(line.strip())
        return match.group(3) if match and not line.lstrip().startswith("#") else None

    def is_installed(self) -> bool:
        """Both halves present: the job in the anacrontab and the runner in the crontab."""
        return self._tab_has_job(self.tab.read()) and bool(find_blocks(self.cron_store.read(), RUNNER_ROLE))

    def runner_line(self) -> str:
        args = [self.anacron_bin or "anacron", "-t", str(self.tab.path), "-S", str(self.spool)]
        return "0 * * * * " + " ".join(shlex.quote(a) for a in args)

    def install(self, config: ScheduleConfig, command: str) -> bool:
        """Write whichever half is missing; False when both are already in place."""
        tab_lines = self.tab.read()
        cron_lines = self.cron_store.read()
        in_tab = self._tab_has_job(tab_lines)
        in_cron = bool(find_blocks(cron_lines, RUNNER_ROLE))
        if in_tab and in_cron:
            return False

        try:
            self.spool.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ScheduleStoreError(f"Cannot create {self.spool}: {e}") from e

        if not in_tab:
            new_tab = list(tab_lines) or ["# period delay job-identifier command"]
            new_tab += [
                marker_line(ANACRON_ROLE),
                f"{ANACRON_PERIOD_DAYS} {ANACRON_DELAY_MINUTES} {ANACRON_JOB_ID} {command}",
            ]
            self.tab.write(new_tab)
        if not in_cron:
            new_cron = cron_lines + [
                marker_line(RUNNER_ROLE),
                "# Run anacron hourly to catch up on missed backups",
                self.runner_line(),
            ]
            try:
                self.cron_store.write(new_cron)
            except ScheduleStoreError:
                # keep the two stores consistent
                if not in_tab:
                    self._restore_tab(tab_lines)
                raise
        return True

    def _restore_tab(self, lines: List[str]) -> None:
        if lines:
            self.tab.write(lines)
        else:
            self.tab.path.unlink(missing_ok=True)

    def remove(self) -> bool:
        """Remove both halves, or leave both stores as they were."""
        tab_lines = self.tab.read()
        cron_lines = self.cron_store.read()
        in_tab = self._tab_has_job(tab_lines)
        in_cron = bool(find_blocks(cron_lines, RUNNER_ROLE))
        if not (in_tab or in_cron):
            return False

        if in_cron:
            self.cron_store.write(strip_blocks(cron_lines, RUNNER_ROLE))
        if in_tab:
            kept = [l for l in strip_blocks(tab_lines, ANACRON_ROLE) if self._job_id(l) != ANACRON_JOB_ID]
            try:
                self.tab.write(kept)
            except ScheduleStoreError:
                if in_cron:
                    self.cron_store.write(cron_lines)
                raise
        (self.spool / ANACRON_JOB_ID).unlink(missing_ok=True)
        return True

    def status(self) -> ScheduleStatus:
        # anacron runs by period, not by weekday, so there is no calendar entry to report
        return ScheduleStatus(backend=self.name, installed=self.is_installed())


TaskRunner = Callable[..., subprocess.CompletedProcess]

class NativeTaskBackend:
    """Windows Task Scheduler registration via schtasks.exe."""

    name = "native"

    def __init__(
        self,
        runner: TaskRunner = subprocess.run,
        schtasks: Optional[str] = None,
        task_name: str = TASK_NAME,
    ):
        self.runner = runner
        self.schtasks = schtasks if schtasks is not None else shutil.which("schtasks")
        self.task_name = task_name

    def available(self) -> bool:
        return bool(self.schtasks)

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        if not self.schtasks:
            raise ScheduleStoreError("schtasks.exe not found.")
        try:
            return self.runner([self.schtasks, *args], capture_output=True, text=True)
        except OSError as e:
            raise ScheduleStoreError(f"Cannot run schtasks: {e}") from e

    def is_installed(self) -> bool:
        return self._run("/Query", "/TN", self.task_name).returncode == 0

    def install(self, config: ScheduleConfig, command: str) -> bool:
        if self.is_installed():
            return False
        xml = generate_task_xml(config, command)
        fd, xml_path = tempfile.mkstemp(suffix=".xml", prefix="savedotfiles_task_")
        try:
            with os.fdopen(fd, "w", encoding="utf-16") as f:
                f.write(xml)
            proc = self._run("/Create", "/TN", self.task_name, "/XML", xml_path)
        finally:
            Path(xml_path).unlink(missing_ok=True)
        if proc.returncode != 0:
            raise ScheduleStoreError(f"schtasks /Create failed: {proc.stderr.strip() or proc.stdout.strip()}")
        return True

    def remove(self) -> bool:
        if not self.is_installed():
            return False
        proc = self._run("/Delete", "/TN", self.task_name, "/F")
        if proc.returncode != 0:
            raise ScheduleStoreError(f"schtasks /Delete failed: {proc.stderr.strip() or proc.stdout.strip()}")
        return True

    def status(self) -> ScheduleStatus:
        proc = self._run("/Query", "/TN", self.task_name, "/XML")
        if proc.returncode != 0:
            return ScheduleStatus(backend=self.name, installed=False)
        entry = parse_task_xml(proc.stdout)
        next_run = next_weekly_run(entry.day_of_week, entry.hour) if entry else None
        return ScheduleStatus(backend=self.name, installed=True, entry=entry, next_run=next_run)


TASK_NS = "http://schemas.microsoft.com/windows/2004/02/mit/task"

def generate_task_xml(config: ScheduleConfig, command: str) -> str:
    """Task Scheduler definition: weekly trigger, run as soon as possible after a missed start."""
    day = DAY_NAMES[config.day_of_week]
    arguments = f'/c "{command}"'.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")
    return f"""<?xml version="1.0" encoding="UTF-16"?>
<Task version="1.2" xmlns="{TASK_NS}">
  <RegistrationInfo>
    <Description>{TASK_NAME}</Description>
  </RegistrationInfo>
  <Triggers>
    <CalendarTrigger>
      <StartBoundary>2020-01-05T{config.hour:02d}:00:00</StartBoundary>
      <Enabled>true</Enabled>
      <ScheduleByWeek>
        <DaysOfWeek>
          <{day} />
        </DaysOfWeek>
        <WeeksInterval>1</WeeksInterval>
      </ScheduleByWeek>
    </CalendarTrigger>
  </Triggers>
  <Principals>
    <Principal>
      <LogonType>InteractiveToken</LogonType>
      <RunLevel>LeastPrivilege</RunLevel>
    </Principal>
  </Principals>
  <Settings>
    <MultipleInstancesPolicy>IgnoreNew</MultipleInstancesPolicy>
    <DisallowStartIfOnBatteries>false</DisallowStartIfOnBatteries>
    <StopIfGoingOnBatteries>false</StopIfGoingOnBatteries>
    <StartWhenAvailable>true</StartWhenAvailable>
    <ExecutionTimeLimit>PT0S</ExecutionTimeLimit>
    <Priority>7</Priority>
  </Settings>
  <Actions Context="Author">
    <Exec>
      <Command>cmd.exe</Command>
      <Arguments>{arguments}</Arguments>
    </Exec>
  </Actions>
</Task>"""

def parse_task_xml(xml: str) -> Optional[ScheduleEntry]:
    """Recover the schedule from a registered task definition."""
    try:
        root = ET.fromstring(xml.encode("utf-16") if xml.lstrip().startswith("<?xml") else xml)
    except ET.ParseError:
        return None
    ns = {"t": TASK_NS}
    boundary = root.findtext(".//t:CalendarTrigger/t:StartBoundary", default="", namespaces=ns)
    days = root.find(".//t:ScheduleByWeek/t:DaysOfWeek", ns)
    arguments = root.findtext(".//t:Exec/t:Arguments", default="", namespaces=ns)
    if days is None or len(days) == 0 or "T" not in boundary:
        return None
    day_name = days[0].tag.split("}")[-1]
    if day_name not in DAY_NAMES:
        return None
    command = arguments[4:-1] if arguments.startswith('/c "') else arguments
    return ScheduleEntry(
        marker=TASK_NAME,
        day_of_week=DAY_NAMES.index(day_name),
        hour=int(boundary.split("T")[1][:2]),
        push="--push" in command.split(),
        backend="native",
        command=command,
    )


# --- installer ------------------------------------------------------------------

class ScheduleInstaller:
    """
    Composes a primary backend with an optional catch-up backend.
    Every operation is idempotent per backend; the secondary never fails the whole call.
    """

    def __init__(
        self,
        primary: ScheduleBackend,
        secondary: Optional[ScheduleBackend] = None,
        log_file: Optional[Path] = None,
        python: Optional[str] = None,
    ):
        from .config import get_log_file

        self.primary = primary
        self.secondary = secondary
        self.log_file = Path(log_file) if log_file else get_log_file()
        self.python = python
        self.warnings: List[str] = []

    @property
    def backends(self) -> List[ScheduleBackend]:
        return [b for b in (self.primary, self.secondary) if b is not None]

    def command(self, config: ScheduleConfig) -> str:
        # the Windows task runs the command through cmd.exe
        windows = isinstance(self.primary, NativeTaskBackend)
        return backup_command(config.push, self.log_file, self.python, windows=windows)

    def install(self, config: ScheduleConfig) -> Dict[str, InstallOutcome]:
        self.warnings = []
        if not self.primary.available():
            raise ScheduleStoreError(f"The {self.primary.name} scheduler is not available on this system.")
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ScheduleStoreError(f"Cannot create log directory {self.log_file.parent}: {e}") from e

        command = self.command(config)
        outcomes: Dict[str, InstallOutcome] = {}
        outcomes[self.primary.name] = (
            InstallOutcome.INSTALLED if self.primary.install(config, command) else InstallOutcome.ALREADY_INSTALLED
        )

        if self.secondary is not None:
            name = self.secondary.name
            if not self.secondary.available():
                outcomes[name] = InstallOutcome.UNAVAILABLE
                self.warnings.append(
                    f"{name} not found: backups only run if the machine is on at the scheduled time."
                )
            else:
                try:
                    written = self.secondary.install(config, command)
                    outcomes[name] = InstallOutcome.INSTALLED if written else InstallOutcome.ALREADY_INSTALLED
                except ScheduleStoreError as e:
                    outcomes[name] = InstallOutcome.FAILED
                    self.warnings.append(f"{name} entry not installed: {e}")
        return outcomes

    def remove(self) -> List[str]:
        """Remove every marked entry; returns the backends that had one."""
        self.warnings = []
        removed = []
        for backend in self.backends:
            if backend is self.secondary:
                try:
                    if backend.remove():
                        removed.append(backend.name)
                except ScheduleStoreError as e:
                    self.warnings.append(f"{backend.name} entry not removed: {e}")
            elif backend.remove():
                removed.append(backend.name)
        return removed

    def status(self) -> List[ScheduleStatus]:
        return [backend.status() for backend in self.backends]

    def tail_log(self, n: int = 5) -> List[str]:
        if not self.log_file.exists():
            return []
        with self.log_file.open("r", encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=n)]


def default_installer(log_file: Optional[Path] = None) -> ScheduleInstaller:
    """Windows task registry on Windows; cron with anacron catch-up elsewhere."""
    if is_windows():
        return ScheduleInstaller(NativeTaskBackend(), log_file=log_file)
    crontab = CrontabStore()
    return ScheduleInstaller(CronBackend(crontab), AnacronBackend(cron_store=crontab), log_file=log_file)

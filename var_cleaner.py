#!/usr/bin/env python3
"""
VarCleaner - duplicate package merger for addon folders

Finds .var packages that share a filename but live in different sub-folders,
merges every such group into a single package that keeps the largest copy of
each member file, and moves the original packages to a backup folder.

Performance Features:
- Bounded pool of group workers, each fanning out one extraction thread per copy
- Streaming member extraction straight from the container into the workspace
- Stored (uncompressed) output by default, package content is already compressed
"""

import argparse
import asyncio
import contextlib
import fnmatch
import functools
import io
import logging
import os
import re
import shutil
import signal
import stat
import sys
import time
import traceback
import zipfile
import zlib
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    BinaryIO,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)


# Async helper for running blocking I/O in thread pool
async def run_in_thread(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking function in a thread pool for true async I/O.

    Uses asyncio.to_thread() for Python 3.9+ (more efficient),
    falls back to run_in_executor() for Python 3.8.
    """
    if sys.version_info >= (3, 9):
        return await asyncio.to_thread(func, *args, **kwargs)
    else:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(
            None, functools.partial(func, *args, **kwargs)
        )


try:
    from rich.console import Console
    from rich.markup import escape
    from rich.progress import (
        Progress,
        SpinnerColumn,
        TextColumn,
        BarColumn,
        TimeElapsedColumn,
        MofNCompleteColumn,
    )

    HAS_RICH = True
except ImportError:
    HAS_RICH = False
    Console = None
    Progress = None

try:
    from tqdm import tqdm

    HAS_TQDM = True
except ImportError:
    HAS_TQDM = False
    tqdm = None


__version__ = "1.0.0"
__author__ = "VarCleaner Project"
__license__ = "MIT"


DEFAULT_EXTENSION = ".var"
DEFAULT_MARKER_FILE = "VaM.exe"
DEFAULT_SCAN_DIR = "AddonPackages"
DEFAULT_BACKUP_DIR = os.path.join("VarCleaner", "Backup")
DEFAULT_TMP_DIR = os.path.join("VarCleaner", "Tmp")
DEFAULT_GROUP_WORKERS = 12
WORKING_DIR_NAME = "working"

# Earliest timestamp a zip entry can carry
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
COMPRESSION_METHODS = {
    "stored": zipfile.ZIP_STORED,
    "deflated": zipfile.ZIP_DEFLATED,
}

# Errors zipfile raises while opening or reading a single member
MEMBER_READ_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    NotImplementedError,
    RuntimeError,
)


class VarCleanerError(Exception):
    """Base exception for var cleaner errors"""

    pass


class CorruptContainer(VarCleanerError):
    """Container cannot be opened or its index is unreadable"""

    pass


class MemberReadFailure(VarCleanerError):
    """A single entry of an otherwise valid container cannot be read"""

    pass


class PathTraversalRejected(VarCleanerError):
    """Member name would land outside the extraction directory"""

    pass


class SourceVanished(VarCleanerError):
    """Original package disappeared before it could be backed up"""

    pass


class PackFailed(VarCleanerError):
    """Merged package could not be written"""

    pass


class DiscoveryIOError(VarCleanerError):
    """Scan root cannot be enumerated"""

    pass


class PreconditionError(VarCleanerError):
    """Tool was started outside the expected working directory"""

    pass


class GroupState(Enum):
    DISCOVERED = "discovered"
    SKIPPED = "skipped"
    EXTRACTING = "extracting"
    RECONCILING = "reconciling"
    REPACKAGING = "repackaging"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class DuplicateGroup:
    """Packages sharing one basename, in discovery order"""

    name: str
    paths: Tuple[Path, ...]

    @property
    def is_merge_candidate(self) -> bool:
        return len(self.paths) > 1


@dataclass(frozen=True)
class MemberCandidate:
    """Best copy seen so far for one relative member path"""

    relative_path: str
    source_path: Path
    size: int


@dataclass
class ArchiveMember:
    """One entry yielded while reading a container"""

    name: str
    is_dir: bool
    stream: Optional[BinaryIO] = None
    error: Optional[MemberReadFailure] = None


@dataclass
class ExtractionStats:
    files: int = 0
    directories: int = 0
    skipped: int = 0


@dataclass
class ExtractionResult:
    """Outcome of extracting and backing up one package"""

    index: int
    source_path: Path
    files_extracted: int = 0
    members_skipped: int = 0
    backup_path: Optional[Path] = None
    error: Optional[str] = None
    warnings: int = 0

    @property
    def backed_up(self) -> bool:
        return self.backup_path is not None


@dataclass
class ReconcileResult:
    working_dir: Optional[Path]
    winners: Dict[str, MemberCandidate] = field(default_factory=dict)
    files_seen: int = 0
    staging_failures: int = 0


@dataclass
class GroupResult:
    """Final state of one group's merge"""

    name: str
    member_count: int
    state: GroupState = GroupState.DISCOVERED
    output_path: Optional[Path] = None
    files_merged: int = 0
    archives_backed_up: int = 0
    warnings: int = 0
    error: Optional[str] = None


@dataclass
class RunSummary:
    """Aggregate of all group results for one run"""

    groups_found: int = 0
    groups_merged: int = 0
    groups_skipped: int = 0
    groups_failed: int = 0
    archives_backed_up: int = 0
    warnings: int = 0
    elapsed: float = 0.0
    results: List[GroupResult] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.warnings == 0 and self.groups_failed == 0

    def add(self, result: GroupResult) -> None:
        self.results.append(result)
        self.archives_backed_up += result.archives_backed_up
        self.warnings += result.warnings
        if result.state == GroupState.DONE:
            self.groups_merged += 1
        elif result.state == GroupState.SKIPPED:
            self.groups_skipped += 1
        else:
            self.groups_failed += 1

    def completion_message(self) -> str:
        if self.clean:
            return "Done"
        return (
            f"Done with {self.warnings} warning(s) and "
            f"{self.groups_failed} failed group(s), see the log for details"
        )


StatusReporter = Callable[[str, str, bool], None]


class ConsoleStatusReporter:
    """Shows the final status of a run on the terminal"""

    def __init__(self, console=None):
        self.console = console

    def __call__(self, title: str, message: str, success: bool) -> None:
        if HAS_RICH and self.console:
            color = "green" if success else "yellow"
            self.console.print(f"[bold {color}]{title}:[/bold {color}] {escape(message)}")
        else:
            print(f"{title}: {message}")


class ArchiveCodec:
    """Reads and writes the zip containers used for packages"""

    def __init__(
        self,
        compression: str = "stored",
        compression_level: Optional[int] = None,
        permissions: int = 0o755,
        buffer_size: int = 64 * 1024,
        logger: Optional[logging.Logger] = None,
    ):
        if compression not in COMPRESSION_METHODS:
            raise ValueError(
                f"Unknown compression method: {compression} "
                f"(expected one of {', '.join(COMPRESSION_METHODS)})"
            )
        self.compression = COMPRESSION_METHODS[compression]
        self.compression_level = (
            compression_level if self.compression != zipfile.ZIP_STORED else None
        )
        self.permissions = permissions
        self.buffer_size = buffer_size
        self.logger = logger or logging.getLogger("var_cleaner")

    def extract(self, container_path: Union[str, Path]) -> Iterator[ArchiveMember]:
        """Yield every entry of a container.

        File entries carry an open stream that is only valid until the next
        entry is requested. Entries that cannot be opened are yielded with
        ``error`` set instead of a stream.

        Raises:
            CorruptContainer: If the container or its index cannot be read
        """
        container_path = Path(container_path)
        try:
            archive = zipfile.ZipFile(container_path)
        except (OSError, zipfile.BadZipFile, EOFError, ValueError) as e:
            raise CorruptContainer(f"Cannot open {container_path}: {e}") from e

        with archive:
            for info in archive.infolist():
                if info.is_dir():
                    yield ArchiveMember(name=info.filename, is_dir=True)
                    continue

                try:
                    stream = archive.open(info)
                except MEMBER_READ_ERRORS as e:
                    failure = MemberReadFailure(
                        f"Cannot read {info.filename} in {container_path}: {e}"
                    )
                    self.logger.warning(str(failure))
                    yield ArchiveMember(name=info.filename, is_dir=False, error=failure)
                    continue

                with stream:
                    yield ArchiveMember(name=info.filename, is_dir=False, stream=stream)

    def entry_target_path(self, dest_root: Union[str, Path], member_name: str) -> Path:
        """
        Map a member name to a path inside dest_root.

        Args:
            dest_root: Extraction directory (does not need to exist yet)
            member_name: Entry name as stored in the container

        Returns:
            Path inside dest_root

        Raises:
            PathTraversalRejected: If the name is absolute, empty, contains
                null bytes or climbs out of dest_root
        """
        if "\x00" in member_name:
            raise PathTraversalRejected(
                f"Member name contains null bytes: {member_name!r}"
            )

        normalized = member_name.replace("\\", "/")
        if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
            raise PathTraversalRejected(f"Absolute member name: {member_name!r}")

        parts: List[str] = []
        for part in normalized.split("/"):
            if part in ("", "."):
                continue
            if part == "..":
                if not parts:
                    raise PathTraversalRejected(
                        f"Member name escapes the destination: {member_name!r}"
                    )
                parts.pop()
                continue
            parts.append(part)

        if not parts:
            raise PathTraversalRejected(f"Empty member name: {member_name!r}")

        base_dir = Path(dest_root).resolve()
        target = base_dir.joinpath(*parts)

        # Catches links already present under dest_root
        try:
            target.resolve().relative_to(base_dir)
        except ValueError:
            raise PathTraversalRejected(
                f"Member name escapes the destination: {member_name!r}"
            )

        return target

    def extract_all(
        self, container_path: Union[str, Path], dest_root: Union[str, Path]
    ) -> ExtractionStats:
        """Extract a whole container under dest_root, skipping bad members.

        OSError raised while writing into dest_root is propagated.
        """
        stats = ExtractionStats()
        members = self.extract(container_path)
        try:
            for member in members:
                if member.error is not None:
                    stats.skipped += 1
                    continue

                try:
                    target = self.entry_target_path(dest_root, member.name)
                except PathTraversalRejected as e:
                    self.logger.warning(f"Skipping member of {container_path}: {e}")
                    stats.skipped += 1
                    continue

                if member.is_dir:
                    target.mkdir(parents=True, exist_ok=True)
                    stats.directories += 1
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                try:
                    with open(target, "wb") as out:
                        shutil.copyfileobj(member.stream, out, self.buffer_size)
                except MEMBER_READ_ERRORS as e:
                    target.unlink()
                    self.logger.warning(
                        f"Cannot read {member.name} in {container_path}, skipping: {e}"
                    )
                    stats.skipped += 1
                    continue
                except OSError:
                    # Truncated copies must not reach reconciliation
                    if target.is_file():
                        target.unlink()
                    raise

                stats.files += 1
        finally:
            members.close()

        return stats

    def pack(self, root_dir: Union[str, Path], output_path: Union[str, Path]) -> int:
        """Write root_dir as a container at output_path, returns the entry count"""
        root_dir = Path(root_dir)
        output_path = Path(output_path)
        if not root_dir.is_dir():
            raise PackFailed(f"Path {root_dir} is not a directory")

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, "wb") as f:
                return self._write_container(root_dir, f)
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            try:
                if output_path.is_file():
                    output_path.unlink()
            except (OSError, PermissionError):
                pass
            raise PackFailed(f"Cannot write {output_path}: {e}") from e

    def pack_bytes(self, root_dir: Union[str, Path]) -> bytes:
        """Build a container from root_dir in memory"""
        root_dir = Path(root_dir)
        if not root_dir.is_dir():
            raise PackFailed(f"Path {root_dir} is not a directory")

        buffer = io.BytesIO()
        try:
            self._write_container(root_dir, buffer)
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            raise PackFailed(f"Cannot pack {root_dir}: {e}") from e
        return buffer.getvalue()

    def _entry_info(self, name: str, is_dir: bool) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=ZIP_EPOCH)
        info.create_system = 3  # unix, so external_attr holds permission bits
        if is_dir:
            info.external_attr = ((stat.S_IFDIR | self.permissions) << 16) | 0x10
        else:
            info.external_attr = (stat.S_IFREG | self.permissions) << 16
        return info

    def _write_container(self, root_dir: Path, fileobj: BinaryIO) -> int:
        def raise_walk_error(error: OSError) -> None:
            raise error

        entries = 0
        with zipfile.ZipFile(fileobj, "w", allowZip64=True) as archive:
            for current, dirnames, filenames in os.walk(root_dir, onerror=raise_walk_error):
                dirnames.sort()
                current_path = Path(current)
                relative_dir = current_path.relative_to(root_dir)

                # No entry for the root itself, unzip tools warn about it
                if relative_dir.parts:
                    archive.writestr(
                        self._entry_info(relative_dir.as_posix() + "/", is_dir=True),
                        b"",
                        compress_type=zipfile.ZIP_STORED,
                    )
                    entries += 1

                for filename in sorted(filenames):
                    file_path = current_path / filename
                    archive.writestr(
                        self._entry_info((relative_dir / filename).as_posix(), is_dir=False),
                        file_path.read_bytes(),
                        compress_type=self.compression,
                        compresslevel=self.compression_level,
                    )
                    entries += 1

        return entries


def matches_pattern(path: str, patterns: List[str]) -> bool:
    """Glob matching on a posix relative path, ``**`` spans directories"""
    for pattern in patterns:
        try:
            if "**" in pattern:
                regex_pattern = re.escape(pattern)
                # Placeholders keep the replacements below from clobbering each other
                regex_pattern = (
                    regex_pattern.replace(r"\*\*", "\x00DSTAR\x00")
                    .replace(r"\*", "\x00STAR\x00")
                    .replace(r"\?", "\x00QUEST\x00")
                )
                regex_pattern = regex_pattern.replace("\x00DSTAR\x00/", "(.*/)?")
                regex_pattern = regex_pattern.replace("\x00DSTAR\x00", ".*")
                regex_pattern = regex_pattern.replace("\x00STAR\x00", "[^/]*")
                regex_pattern = regex_pattern.replace("\x00QUEST\x00", "[^/]")
                if re.match(f"^{regex_pattern}$", path):
                    return True
            elif fnmatch.fnmatch(path, pattern):
                return True
            elif fnmatch.fnmatch(os.path.basename(path), pattern):
                return True
            elif path.startswith(pattern.rstrip("/") + "/"):
                return True
        except re.error:
            continue

    return False


class VarCleaner:
    """Merges duplicate packages found under an addon folder"""

    def __init__(
        self,
        config: Optional[Dict] = None,
        reporter: Optional[StatusReporter] = None,
    ):
        self.config = config or {}

        self.console = Console() if HAS_RICH else None
        self.logger = self._setup_logging()
        self.reporter = reporter or ConsoleStatusReporter(self.console)

        # Folder layout, relative settings resolve against base_dir
        self.base_dir = Path(self.config.get("base_dir") or ".").expanduser().resolve()
        self.scan_dir = self._resolve_dir("scan_dir", DEFAULT_SCAN_DIR)
        self.merged_dir = self._resolve_dir("merged_dir", self.scan_dir / "merged")
        self.backup_dir = self._resolve_dir("backup_dir", DEFAULT_BACKUP_DIR)
        self.tmp_dir = self._resolve_dir("tmp_dir", DEFAULT_TMP_DIR)

        extension = self.config.get("extension") or DEFAULT_EXTENSION
        self.extension = extension if extension.startswith(".") else f".{extension}"
        self.marker_file = self.config.get("marker_file", DEFAULT_MARKER_FILE)

        group_workers = self.config.get("max_group_workers", DEFAULT_GROUP_WORKERS)
        if not group_workers or group_workers <= 0:
            group_workers = DEFAULT_GROUP_WORKERS
        self.max_group_workers = group_workers

        self.max_depth = self.config.get("max_depth", 50)
        self.exclude_patterns = list(self.config.get("exclude_patterns") or [])
        self.follow_symlinks = self.config.get("follow_symlinks", False)
        self.dry_run = self.config.get("dry_run", False)
        self.verbose = self.config.get("verbose", False)
        self.discovery_warnings = 0

        self.codec = ArchiveCodec(
            compression=self.config.get("compression", "stored"),
            compression_level=self.config.get("compression_level"),
            logger=self.logger,
        )

        # TTY detection for progress bars (disable in non-interactive terminals like CI/CD)
        self.is_tty = sys.stdout.isatty()

        self._setup_signal_handlers()

    def _setup_logging(self) -> logging.Logger:
        """Setup structured logging"""
        level = logging.DEBUG if self.config.get("verbose") else logging.INFO

        logger = logging.getLogger("var_cleaner")
        logger.setLevel(level)

        # Avoid duplicate handlers
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def _setup_signal_handlers(self):
        """Log where workspaces were left when the run is interrupted"""

        def signal_handler(signum, frame):
            self.logger.warning(
                f"Received interrupt signal, unfinished workspaces are kept under {self.tmp_dir}"
            )
            sys.exit(130)  # 128 + SIGINT (2)

        # Signal handling may not be available in all contexts (e.g., threads)
        try:
            signal.signal(signal.SIGINT, signal_handler)
            signal.signal(signal.SIGTERM, signal_handler)
        except (ValueError, OSError):
            pass

    def _resolve_dir(self, key: str, default: Union[str, Path]) -> Path:
        path = Path(self.config.get(key) or default).expanduser()
        if not path.is_absolute():
            path = self.base_dir / path
        return path

    def _format_size(self, size: int) -> str:
        """Format size in human-readable format"""
        if size < 0:
            return "0B"

        for unit in ["B", "KB", "MB", "GB", "TB"]:
            if size < 1024.0:
                return f"{size:.1f}{unit}"
            size /= 1024.0
        return f"{size:.1f}PB"

    def check_preconditions(self) -> None:
        """Refuse to run outside the folder holding the marker file"""
        if not self.marker_file:
            return

        marker = self.base_dir / self.marker_file
        if not marker.exists():
            message = (
                f"Please run var-cleaner from the folder that contains "
                f"{self.marker_file} (looked in {self.base_dir})"
            )
            self.logger.error(message)
            self.reporter("Error", message, False)
            raise PreconditionError(message)

    def discover(self, scan_root: Optional[Union[str, Path]] = None) -> Dict[str, List[Path]]:
        """Group package paths under scan_root by file name.

        Unreadable sub-folders are logged and skipped. Only a scan root that
        cannot be listed at all raises DiscoveryIOError.
        """
        root = Path(os.path.abspath(scan_root)) if scan_root else self.scan_dir
        if not root.is_dir():
            raise DiscoveryIOError(f"Scan root is not a directory: {root}")
        try:
            with os.scandir(root):
                pass
        except OSError as e:
            raise DiscoveryIOError(f"Cannot read scan root {root}: {e}") from e

        groups: Dict[str, List[Path]] = {}
        visited_dirs = set()  # Prevent infinite loops with symlinks
        suffix = self.extension.lower()
        warnings = [0]

        def warn(message: str) -> None:
            warnings[0] += 1
            self.logger.warning(message)

        def scan_recursive(current_path: Path, depth: int = 0) -> None:
            if depth > self.max_depth:
                warn(
                    f"Maximum depth ({self.max_depth}) reached at {current_path}"
                )
                return

            try:
                real_path = current_path.resolve()
                if real_path in visited_dirs:
                    warn(f"Directory loop at {current_path}, skipping")
                    return
                visited_dirs.add(real_path)
            except (OSError, RuntimeError) as e:
                warn(f"Cannot resolve {current_path}: {e}")
                return

            try:
                items = sorted(current_path.iterdir())
            except (OSError, PermissionError) as e:
                warn(f"Cannot scan directory {current_path}: {e}")
                return

            for item in items:
                try:
                    if item.is_symlink() and not self.follow_symlinks:
                        continue
                    if item.is_dir():
                        scan_recursive(item, depth + 1)
                    elif item.is_file() and item.name.lower().endswith(suffix):
                        relative_path = item.relative_to(root).as_posix()
                        if matches_pattern(relative_path, self.exclude_patterns):
                            self.logger.debug(f"Excluding {relative_path}")
                            continue
                        groups.setdefault(item.name, []).append(item)
                except (OSError, PermissionError) as e:
                    warn(f"Cannot access {item}: {e}")
                    continue

        scan_recursive(root)
        self.discovery_warnings = warnings[0]
        return groups

    def extract_and_backup(
        self,
        source_path: Union[str, Path],
        group_tmp: Union[str, Path],
        index: int,
        backup_root: Optional[Union[str, Path]] = None,
        scan_root: Optional[Union[str, Path]] = None,
    ) -> ExtractionResult:
        """Extract one package into group_tmp/index, then move it to backup.

        A package that cannot be opened or written out stays where it is.
        """
        source_path = Path(source_path)
        backup_root = Path(backup_root) if backup_root else self.backup_dir
        scan_root = Path(scan_root) if scan_root else self.scan_dir
        result = ExtractionResult(index=index, source_path=source_path)

        try:
            stats = self.codec.extract_all(source_path, Path(group_tmp) / str(index))
        except CorruptContainer as e:
            self.logger.warning(f"Package is invalid, leaving it in place: {e}")
            result.error = str(e)
            result.warnings += 1
            return result
        except OSError as e:
            self.logger.error(f"Failed to extract {source_path}: {e}")
            result.error = str(e)
            result.warnings += 1
            return result

        result.files_extracted = stats.files
        result.members_skipped = stats.skipped
        result.warnings += stats.skipped

        try:
            relative_path = source_path.relative_to(scan_root)
        except ValueError:
            self.logger.warning(
                f"{source_path} is outside {scan_root}, backing it up by name only"
            )
            relative_path = Path(source_path.name)
            result.warnings += 1

        try:
            result.backup_path = self._relocate(source_path, backup_root / relative_path)
        except SourceVanished as e:
            self.logger.warning(str(e))
            result.warnings += 1
        except OSError as e:
            self.logger.warning(f"Cannot back up {source_path}: {e}")
            result.warnings += 1

        return result

    def _relocate(self, source: Path, destination: Path) -> Path:
        if not source.exists():
            raise SourceVanished(f"{source} no longer exists, nothing to back up")
        if destination.exists():
            raise FileExistsError(f"backup {destination} already exists")

        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.move(str(source), str(destination))
        except FileNotFoundError as e:
            raise SourceVanished(f"{source} disappeared while backing up: {e}") from e

        self.logger.debug(f"Backed up {source} -> {destination}")
        return destination

    def _walk_files(self, root: Path) -> Iterator[Path]:
        for current, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for filename in sorted(filenames):
                yield Path(current) / filename

    def reconcile(self, group_tmp: Union[str, Path], num_indices: int) -> ReconcileResult:
        """Stage the largest copy of every member path into group_tmp/working.

        Subtrees are scanned in index order, so on equal sizes the copy from
        the lowest index wins.
        """
        group_tmp = Path(group_tmp)
        best: Dict[str, MemberCandidate] = {}
        files_seen = 0

        for index in range(num_indices):
            subtree = group_tmp / str(index)
            if not subtree.is_dir():
                continue

            for file_path in self._walk_files(subtree):
                key = file_path.relative_to(subtree).as_posix()
                size = file_path.stat().st_size
                files_seen += 1

                current = best.get(key)
                if current is None or size > current.size:
                    best[key] = MemberCandidate(key, file_path, size)

        if not best:
            return ReconcileResult(working_dir=None)

        working_dir = group_tmp / WORKING_DIR_NAME
        staged: Dict[str, MemberCandidate] = {}
        failures = 0
        for key, candidate in best.items():
            target = working_dir.joinpath(*key.split("/"))
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(candidate.source_path, target)
            except OSError as e:
                self.logger.warning(f"Cannot stage {key} from {candidate.source_path}: {e}")
                failures += 1
                continue
            staged[key] = candidate

        return ReconcileResult(
            working_dir=working_dir if staged else None,
            winners=staged,
            files_seen=files_seen,
            staging_failures=failures,
        )

    def repackage(self, working_dir: Union[str, Path], output_path: Union[str, Path]) -> int:
        """Pack the reconciled tree into output_path"""
        output_path = Path(output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PackFailed(f"Cannot create {output_path.parent}: {e}") from e
        return self.codec.pack(working_dir, output_path)

    def _remove_workspace(self, group_tmp: Path) -> bool:
        try:
            shutil.rmtree(group_tmp)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Cannot remove workspace {group_tmp}: {e}")
            return False
        return True

    def _transition(self, result: GroupResult, state: GroupState) -> None:
        self.logger.debug(f"{result.name}: {result.state.value} -> {state.value}")
        result.state = state

    def _extract_group(self, group: DuplicateGroup, group_tmp: Path) -> List[ExtractionResult]:
        """Extract every copy in parallel and wait for all of them"""
        with ThreadPoolExecutor(max_workers=len(group.paths)) as pool:
            futures = {
                pool.submit(self.extract_and_backup, path, group_tmp, index): (index, path)
                for index, path in enumerate(group.paths)
            }
            wait(futures)

        results = []
        for future, (index, path) in futures.items():
            try:
                results.append(future.result())
            except Exception as e:
                self.logger.error(f"Error extracting {path}: {e}")
                results.append(
                    ExtractionResult(index=index, source_path=path, error=str(e), warnings=1)
                )

        results.sort(key=lambda r: r.index)
        return results

    def merge_group(self, group: DuplicateGroup) -> GroupResult:
        """Run one group through extract, reconcile, repackage and cleanup"""
        result = GroupResult(name=group.name, member_count=len(group.paths))
        if not group.is_merge_candidate:
            self._transition(result, GroupState.SKIPPED)
            return result

        self.logger.info(f"Processing {group.name} ({len(group.paths)} copies)")
        group_tmp = self.tmp_dir / group.name
        if group_tmp.exists():
            result.error = f"workspace {group_tmp} is left from an earlier run, remove it to retry"
            self.logger.warning(f"Skipping {group.name}: {result.error}")
            result.warnings += 1
            self._transition(result, GroupState.FAILED)
            return result

        self._transition(result, GroupState.EXTRACTING)
        extractions = self._extract_group(group, group_tmp)
        result.archives_backed_up = sum(1 for r in extractions if r.backed_up)
        result.warnings += sum(r.warnings for r in extractions)

        self._transition(result, GroupState.RECONCILING)
        try:
            reconciled = self.reconcile(group_tmp, len(group.paths))
        except OSError as e:
            result.error = f"reconciliation failed: {e}"
            self.logger.error(f"{group.name}: {result.error}, workspace kept at {group_tmp}")
            self._transition(result, GroupState.FAILED)
            return result

        result.warnings += reconciled.staging_failures
        if reconciled.working_dir is None:
            result.error = "no readable members, no merged package written"
            self.logger.warning(f"{group.name}: {result.error}")
            self._remove_workspace(group_tmp)
            self._transition(result, GroupState.FAILED)
            return result

        self._transition(result, GroupState.REPACKAGING)
        output_path = self.merged_dir / group.name
        try:
            self.repackage(reconciled.working_dir, output_path)
        except PackFailed as e:
            result.error = str(e)
            self.logger.error(f"{group.name}: {e}, workspace kept at {group_tmp}")
            self._transition(result, GroupState.FAILED)
            return result

        result.output_path = output_path
        result.files_merged = len(reconciled.winners)

        self._transition(result, GroupState.CLEANUP)
        if not self._remove_workspace(group_tmp):
            result.warnings += 1

        self._transition(result, GroupState.DONE)
        self.logger.info(
            f"Merged {group.name}: {result.files_merged} files, "
            f"{self._format_size(output_path.stat().st_size)}"
        )
        return result

    def _merge_group_safely(self, group: DuplicateGroup) -> GroupResult:
        try:
            return self.merge_group(group)
        except Exception as e:
            self.logger.error(f"Error processing {group.name}: {e}")
            if self.verbose:
                self.logger.error(traceback.format_exc())
            return GroupResult(
                name=group.name,
                member_count=len(group.paths),
                state=GroupState.FAILED,
                error=str(e),
            )

    @contextlib.contextmanager
    def _progress(self, total: int, description: str, enabled: bool):
        """Yield an ``advance()`` callable backed by rich, tqdm or plain prints"""
        # Disable rich/tqdm progress bars in non-TTY environments (CI/CD)
        use_rich_progress = enabled and HAS_RICH and self.console and self.is_tty
        use_tqdm_progress = enabled and HAS_TQDM and tqdm and self.is_tty and not use_rich_progress

        if use_rich_progress:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self.console,
            ) as progress_bar:
                task = progress_bar.add_task(description, total=total)
                yield lambda: progress_bar.update(task, advance=1)
        elif use_tqdm_progress:
            pbar = tqdm(total=total, desc=description, unit="groups")
            try:
                yield lambda: pbar.update(1)
            finally:
                pbar.close()
        elif enabled:
            completed = [0]

            def advance():
                completed[0] += 1
                print(f"{description}: {completed[0]}/{total}", end="\r")

            yield advance
            print()
        else:
            yield lambda: None

    async def _run_groups(
        self, groups: List[DuplicateGroup], progress: bool
    ) -> List[GroupResult]:
        loop = asyncio.get_running_loop()
        results: List[GroupResult] = []

        with ThreadPoolExecutor(max_workers=self.max_group_workers) as pool:
            futures = [
                loop.run_in_executor(pool, self._merge_group_safely, group)
                for group in groups
            ]
            with self._progress(len(futures), "Merging duplicates", progress) as advance:
                for future in asyncio.as_completed(futures):
                    results.append(await future)
                    advance()

        return results

    def _dry_run_clean(self, groups: List[DuplicateGroup]) -> None:
        self.logger.info("DRY RUN - Packages that would be merged:")
        for group in groups:
            if HAS_RICH and self.console:
                self.console.print(
                    f"  [green]{group.name}[/green] ([blue]{len(group.paths)}[/blue] copies)"
                )
            else:
                print(f"  {group.name} ({len(group.paths)} copies)")

            for path in group.paths:
                try:
                    size = self._format_size(path.stat().st_size)
                except OSError as e:
                    size = f"error: {e}"
                print(f"    {path} ({size})")

    def _remove_tmp_root(self) -> None:
        if not self.tmp_dir.exists():
            return
        try:
            self.tmp_dir.rmdir()
        except OSError:
            self.logger.warning(f"Workspaces from failed merges are kept under {self.tmp_dir}")

    async def clean(self, progress: bool = True) -> RunSummary:
        """Merge every duplicate group under the scan folder.

        Raises:
            PreconditionError: If the marker file is missing
            DiscoveryIOError: If the scan folder cannot be listed
        """
        start_time = time.time()
        self.check_preconditions()

        self.logger.info(
            f"Merged packages go to {self.merged_dir}, originals are backed up under {self.backup_dir}"
        )
        self.logger.info(f"Scanning {self.scan_dir} for *{self.extension}")
        plan = await run_in_thread(self.discover, self.scan_dir)

        groups = [DuplicateGroup(name, tuple(paths)) for name, paths in plan.items()]
        candidates = [group for group in groups if group.is_merge_candidate]
        summary = RunSummary(
            groups_found=len(groups),
            groups_skipped=len(groups) - len(candidates),
            warnings=self.discovery_warnings,
        )
        self.logger.info(
            f"Found {len(groups)} packages, {len(candidates)} with duplicates"
        )

        if self.dry_run:
            self._dry_run_clean(candidates)
            summary.elapsed = time.time() - start_time
            return summary

        if candidates:
            for result in await self._run_groups(candidates, progress):
                summary.add(result)
            self._remove_tmp_root()

        summary.elapsed = time.time() - start_time
        self.logger.info(
            f"Merged {summary.groups_merged} groups, backed up {summary.archives_backed_up} packages"
        )
        self.logger.info(
            f"Failed: {summary.groups_failed}, Warnings: {summary.warnings}"
        )
        self.logger.info(f"Processing time: {summary.elapsed:.2f}s")

        title = "Success" if summary.clean else "Completed with problems"
        self.reporter(title, summary.completion_message(), summary.clean)
        return summary


def create_config_file(config_path: Path) -> bool:
    """Create a default configuration file"""
    default_config = """# VarCleaner Configuration
# Uncomment and modify values as needed

# Folder holding the marker file; other folders resolve against it
# base_dir = "."

# Marker file that must exist in base_dir (empty to disable the check)
# marker_file = "VaM.exe"

# Folders (relative to base_dir or absolute)
# scan_dir = "AddonPackages"
# merged_dir = "AddonPackages/merged"
# backup_dir = "VarCleaner/Backup"
# tmp_dir = "VarCleaner/Tmp"

# Package extension to look for
# extension = ".var"

# Number of duplicate groups merged at the same time
# max_group_workers = 12

# Compression for merged packages: stored or deflated
# compression = "stored"
# compression_level = 6

# Maximum folder depth to scan
# max_depth = 50

# Patterns to leave out of the scan (glob-style, relative to scan_dir)
# exclude_patterns = [
#     "merged/**",
#     "*.disabled.var"
# ]

# Feature flags
# follow_symlinks = false
# dry_run = false
# verbose = false
"""

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(default_config)
        return True
    except (OSError, PermissionError) as e:
        print(f"Error creating config file: {e}")
        return False


def load_config_file(config_path: Path) -> Dict:
    """Load configuration from file with error handling"""
    if not config_path.exists():
        return {}

    config = {}
    line_num = 0
    try:
        with open(config_path, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                if "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("\"'")

                    # Parse different value types
                    if value.lower() in ("true", "false"):
                        config[key] = value.lower() == "true"
                    elif value.isdigit():
                        config[key] = int(value)
                    elif value.startswith("[") and value.endswith("]"):
                        items = [
                            item.strip().strip("\"'") for item in value[1:-1].split(",")
                        ]
                        config[key] = [item for item in items if item]
                    else:
                        config[key] = value

    except (OSError, UnicodeDecodeError) as e:
        print(f"Warning: Error loading config file on line {line_num}: {e}")

    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Merge duplicate .var packages and back up the originals",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run from the folder that contains VaM.exe
  %(prog)s

  # Point at the game folder explicitly
  %(prog)s /games/VaM

  # Preview which packages would be merged
  %(prog)s --dry-run --verbose

  # Custom layout without the marker check
  %(prog)s ./data --no-marker --scan-dir packages --backup-dir old --tmp-dir work

  # Leave a folder out of the scan
  %(prog)s --exclude "Archive/**"

  # Compress merged packages and merge fewer groups at once
  %(prog)s --compression deflated --compression-level 9 -j 4
        """,
    )

    parser.add_argument(
        "base_dir", nargs="?", default=None, help="Folder containing the marker file"
    )

    # Layout options
    parser.add_argument("--scan-dir", default=None, help="Folder scanned for packages")
    parser.add_argument("--merged-dir", default=None, help="Folder for merged packages")
    parser.add_argument("--backup-dir", default=None, help="Folder for original packages")
    parser.add_argument("--tmp-dir", default=None, help="Folder for temporary workspaces")
    parser.add_argument("--extension", default=None, help="Package extension (.var)")
    parser.add_argument("--marker", default=None, help="Marker file expected in base_dir")
    parser.add_argument(
        "--no-marker", action="store_true", help="Skip the marker file check"
    )

    # Processing options
    parser.add_argument(
        "-j", "--jobs", type=int, default=None, help="Groups merged in parallel"
    )
    parser.add_argument(
        "--compression",
        choices=sorted(COMPRESSION_METHODS),
        default=None,
        help="Compression for merged packages",
    )
    parser.add_argument(
        "--compression-level",
        type=int,
        default=None,
        choices=range(1, 10),
        help="Compression level for deflated output",
    )
    parser.add_argument(
        "-e", "--exclude", action="append", default=None,
        help="Glob pattern (relative to the scan folder) to leave out. Can be used multiple times."
    )
    parser.add_argument("-d", "--max-depth", type=int, default=None, help="Maximum depth")
    parser.add_argument(
        "-L", "--follow-symlinks", action="store_true", default=None, help="Follow symlinks"
    )
    parser.add_argument(
        "-n", "--dry-run", action="store_true", default=None, help="Show what would be done"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=None, help="Verbose output"
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Disable progress bars"
    )

    # Configuration
    parser.add_argument(
        "--config",
        type=Path,
        default=Path.home() / ".config" / "var-cleaner" / "config",
        help="Configuration file path",
    )
    parser.add_argument(
        "--create-config", action="store_true", help="Create default config"
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser


def config_from_args(args: argparse.Namespace, config: Optional[Dict] = None) -> Dict:
    """Overlay command line arguments that were given on top of file config"""
    config = dict(config or {})
    overrides = {
        "base_dir": args.base_dir,
        "scan_dir": args.scan_dir,
        "merged_dir": args.merged_dir,
        "backup_dir": args.backup_dir,
        "tmp_dir": args.tmp_dir,
        "extension": args.extension,
        "marker_file": args.marker,
        "max_group_workers": args.jobs,
        "compression": args.compression,
        "compression_level": args.compression_level,
        "exclude_patterns": args.exclude,
        "max_depth": args.max_depth,
        "follow_symlinks": args.follow_symlinks,
        "dry_run": args.dry_run,
        "verbose": args.verbose,
    }
    config.update({key: value for key, value in overrides.items() if value is not None})
    if args.no_marker:
        config["marker_file"] = ""
    return config


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with comprehensive error handling"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.create_config:
            if create_config_file(args.config):
                print(f"Created default configuration file: {args.config}")
            else:
                print(f"Failed to create configuration file: {args.config}")
                return 1
            return 0

        config = config_from_args(args, load_config_file(args.config))
        cleaner = VarCleaner(config)
        await cleaner.clean(progress=not args.no_progress)
        return 0

    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except VarCleanerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1


def cli_main():
    """Synchronous entry point for console scripts"""
    return asyncio.run(main())


if __name__ == "__main__":
    sys.exit(cli_main())

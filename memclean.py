#!/usr/bin/env python

r"""
memclean.py - Clean up an exported folder of chat "memories" photos and videos

SUMMARY:
--------
This script tidies a directory of media exported from a messaging app. It can flatten
nested export folders, prefix every file with its real capture date, delete the overlay
layers the app exports next to each picture, move byte-identical copies into a quarantine
folder, and shorten dated filenames so photo managers import them cleanly.

FEATURES:
---------
- Date detection in priority order: millisecond timestamp at the start of the filename,
  EXIF tags (DateTimeOriginal, DateTime, DateTimeDigitized) read with exifread, the
  container creation date read with hachoir, then the filesystem birth/modification time.
- Duplicate detection that only hashes files sharing a byte size with another file
  (SHA-256, chunked reads), keeping the lexicographically first path of each group.
- Collision-safe renames: an existing name is never overwritten, a _copyN (or _N inside
  the quarantine folder) suffix is added instead.
- Dry run is the default: every operation reports what it would do without touching disk.
- Live runs ask for confirmation before each batch (skip with --yes).
- Progress bars for every phase and optional logging to a file.
- Interactive menu when no --operation is given.

USAGE EXAMPLES:
---------------
1. Open the interactive menu for the current directory (dry run):
    python memclean.py

2. Preview every cleanup step on an export folder:
    python memclean.py -d ~/Downloads/memories -o all

3. Flatten, date-prefix, delete overlays and quarantine duplicates for real:
    python memclean.py -d ~/Downloads/memories -o all --apply

4. Quarantine duplicates without being asked, into a custom folder:
    python memclean.py -d ~/Downloads/memories -o duplicates -q Dupes --apply -y

5. Delete overlays in the export and in a second download folder:
    python memclean.py -d ~/Downloads/memories -o overlays --overlay-dir ~/Downloads/chat_media --apply

6. Shorten dated filenames to YYYY-MM-DD-NNN.ext, logging to a file:
    python memclean.py -d ~/Downloads/memories -o shorten -l ~/memclean.log --apply

See --help for all options.
"""

# Standard library imports
import sys
import datetime
import logging
import shutil
import argparse
import fnmatch
import re
import os
import hashlib
import errno
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Third-party library imports for metadata extraction and progress display
import exifread
from hachoir.parser import createParser
from hachoir.metadata import extractMetadata
from hachoir.core import config
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

# Suppress hachoir warnings to keep console output clean
config.quiet = True
# exifread logs "File format not recognized" for every non-EXIF file
logging.getLogger("exifread").setLevel(logging.ERROR)

# Version history:
# v1.0.0 - Flatten, date-prefix rename, overlay deletion and duplicate quarantine
# v1.1.0 - Shorten filenames for photo manager imports
# v1.2.0 - Plans computed before any change so dry runs and live runs agree exactly
#          Names claimed earlier in a batch are reserved for later collisions
__version__ = "1.2.0"
myversion = f"v. {__version__} 2026-10-19"

QUARANTINE_DIRNAME = "duplicates"

# Only these get an EXIF/container metadata lookup
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic"}

# exifread tag names, most trustworthy first
EXIF_DATE_TAGS = (
    "EXIF DateTimeOriginal",
    "Image DateTime",
    "EXIF DateTimeDigitized",
)

# Accepted year window for millisecond timestamps embedded in filenames
MIN_TIMESTAMP_YEAR = 2000
MAX_TIMESTAMP_YEAR = 2030

OVERLAY_PATTERNS = (
    "*-overlay.png",
    "*-overlay.webp",
    "*overlay~*.png",  # chat media overlays, e.g. 2025-11-05_overlay~...
    "*overlay~*.webp",
    "*_extracted_2.png",  # overlays from extracted zips
)

COPY_TOKEN = "_copy"
QUARANTINE_TOKEN = "_"
MAX_COLLISION_SUFFIX = 9999

HASH_CHUNK_SIZE = 1024 * 1024
PREVIEW_LIMIT = 10

FILENAME_TIMESTAMP_RE = re.compile(r"^(\d{13})")
EXIF_DATE_RE = re.compile(r"^(\d{4}):(\d{2}):(\d{2})")
DATED_NAME_RE = re.compile(r"^\d{4}[-_]\d{2}[-_]\d{2}")
DATE_PREFIX_RE = re.compile(r"^(\d{4})[-_](\d{2})[-_](\d{2})[-_]")

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


@dataclass
class FileRecord:
    """A file seen during one scan. Built fresh every run, never persisted."""

    path: Path
    size: int
    content_hash: Optional[str] = None
    resolved_date: Optional[datetime.datetime] = None


@dataclass
class RenamePlan:
    """
    A single move decided before anything on disk changes.

    final_name equals proposed_name unless the proposed name was already taken,
    in which case it carries the collision suffix.
    """

    original_path: Path
    destination_dir: Path
    proposed_name: str
    final_name: str

    @property
    def final_path(self) -> Path:
        return self.destination_dir / self.final_name

    @property
    def collided(self) -> bool:
        return self.final_name != self.proposed_name


@dataclass
class Outcome:
    """Result of applying one plan or deletion."""

    path: Path
    status: str  # moved, deleted, would-move, would-delete or error
    target: Optional[Path] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status != "error"


@dataclass
class Summary:
    """Per-operation counts reported at the end of a batch."""

    operation: str
    dry_run: bool
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: bool = False
    interrupted: bool = False

    def add(self, outcome: Outcome):
        self.attempted += 1
        if outcome.ok:
            self.succeeded += 1
        else:
            self.failed += 1

    def describe(self) -> str:
        if self.cancelled:
            return f"{self.operation}: cancelled, nothing changed"
        label = "would have processed" if self.dry_run else "processed"
        line = (
            f"{self.operation}: {label} {self.succeeded}/{self.attempted} files "
            f"({self.failed} failed, {self.skipped} skipped)"
        )
        if self.interrupted:
            line += " before being interrupted"
        return line


def progress(iterable, desc: str, total=None):
    """Wrap an iterable in a per-file progress bar (silent when not on a TTY)."""
    return tqdm(iterable, desc=desc, total=total, unit="file", disable=None, leave=False)


def calculate_file_hash(file_path: Path, logger, algorithm: str = "sha256") -> str:
    """
    Calculate hash of a file for content comparison.

    Args:
        file_path (Path): Path to the file to hash
        logger (logging.Logger): Logger for recording read failures
        algorithm (str): Hash algorithm to use (default: sha256)

    Returns:
        str: Hexadecimal hash string, or empty string if error
    """
    try:
        hash_obj = hashlib.new(algorithm)
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                hash_obj.update(chunk)
        return hash_obj.hexdigest()
    except OSError as e:
        logger.error(f"Error hashing {file_path}: {e}")
        return ""


def iter_files(root: Path, exclude: Optional[Path] = None, recursive: bool = True):
    """
    Yield every regular file under root, in sorted order.

    Args:
        root (Path): Directory to enumerate
        exclude (Path, optional): Subdirectory whose whole subtree is skipped
        recursive (bool): False lists only the files directly inside root

    Yields:
        Path: File paths, absolute when root is absolute
    """
    root = Path(root)
    if not recursive:
        for entry in sorted(root.iterdir()):
            if entry.is_file():
                yield entry
        return

    excluded = Path(exclude).resolve() if exclude else None
    for folder_name, dirnames, filenames in os.walk(root):
        folder = Path(folder_name)
        # Prune in place so os.walk never descends into the excluded tree
        dirnames[:] = sorted(
            d for d in dirnames if excluded is None or (folder / d).resolve() != excluded
        )
        for filename in sorted(filenames):
            yield folder / filename


# ---------------------------------------------------------------------------
# Date resolution
# ---------------------------------------------------------------------------


def to_utc(value: datetime.datetime) -> datetime.datetime:
    """Convert a datetime to aware UTC."""
    # Naive values are wall-clock times on this machine
    return value.astimezone(datetime.timezone.utc)


def format_date_prefix(date: datetime.datetime) -> str:
    """Render a date as the YYYY-MM-DD_ filename prefix, using UTC calendar fields."""
    return to_utc(date).strftime("%Y-%m-%d_")


def parse_exif_datetime(text) -> Optional[datetime.datetime]:
    """
    Parse an EXIF style timestamp ("YYYY:MM:DD HH:MM:SS").

    The colons of the date part are turned into hyphens first so the value can go
    through the generic ISO parser. Returns None for empty or invalid values such
    as the "0000:00:00 00:00:00" placeholder some cameras write.
    """
    text = str(text).strip().rstrip("\x00").strip()
    if not text:
        return None
    normalized = EXIF_DATE_RE.sub(r"\1-\2-\3", text)
    try:
        return to_utc(datetime.datetime.fromisoformat(normalized))
    except (ValueError, OverflowError, OSError):
        return None


def date_from_filename(path: Path, logger=None) -> Optional[datetime.datetime]:
    """
    Read a millisecond Unix timestamp from the first 13 characters of the filename.

    Exports name files like 1468516444000_image.jpg. Sequence numbers and other
    numeric prefixes are rejected by requiring a year between 2000 and 2030.
    """
    match = FILENAME_TIMESTAMP_RE.match(path.name)
    if not match:
        return None
    stamp = EPOCH + datetime.timedelta(milliseconds=int(match.group(1)))
    if MIN_TIMESTAMP_YEAR <= stamp.year <= MAX_TIMESTAMP_YEAR:
        return stamp
    return None


def get_exif_date(filename: Path, logger) -> Optional[datetime.datetime]:
    """
    Read the capture date from EXIF tags with exifread.

    Args:
        filename (Path): Image to read
        logger (logging.Logger): Logger for recording issues

    Returns:
        datetime.datetime or None: First tag in EXIF_DATE_TAGS that parses, in UTC
    """
    try:
        with open(filename, "rb") as f:
            tags = exifread.process_file(f, details=False)
    except Exception as e:
        logger.debug(f"EXIF read failed for {filename}: {e}")
        return None

    if not tags:
        logger.debug(f"No EXIF tags found for {filename}")
        return None

    for tag in EXIF_DATE_TAGS:
        value = tags.get(tag)
        if value is None:
            continue
        parsed = parse_exif_datetime(value)
        if parsed is not None:
            return parsed
        logger.debug(f"Unusable {tag} value {value!r} in {filename}")
    return None


def get_created_date(filename: Path, logger) -> Optional[datetime.datetime]:
    """
    Attempt to extract the creation date from the file's container metadata.

    Args:
        filename (Path): Path to the file to extract metadata from
        logger (logging.Logger): Logger for recording issues

    Returns:
        datetime.datetime or None: Creation date in UTC if found, otherwise None

    This function uses hachoir to parse the file and extract its metadata.
    It specifically looks for the 'creation_date' metadata field.
    """
    try:
        parser = createParser(str(filename))
    except Exception as e:
        logger.debug(f"Failed to create parser for {filename}: {e}")
        return None

    if not parser:
        logger.debug(f"Unable to parse file for created date: {filename}")
        return None

    try:
        with parser:
            metadata = extractMetadata(parser)
    except Exception as e:
        logger.debug(f"Metadata extraction error for {filename}: {e}")
        return None

    if not metadata:
        logger.debug(f"Unable to extract metadata for {filename}")
        return None

    for value in metadata.getValues("creation_date"):
        if isinstance(value, datetime.datetime):
            try:
                return to_utc(value)
            except (ValueError, OverflowError, OSError):
                continue
    return None


def date_from_metadata(path: Path, logger) -> Optional[datetime.datetime]:
    """EXIF date, then container creation date, for image files only."""
    if path.suffix.lower() not in IMAGE_EXTENSIONS:
        return None
    return get_exif_date(path, logger) or get_created_date(path, logger)


def date_from_filesystem(path: Path, logger) -> Optional[datetime.datetime]:
    """Birth time where the platform has one, modification time otherwise."""
    st = path.stat()
    # st_birthtime is missing on most Linux filesystems and may be reported as 0
    stamp = getattr(st, "st_birthtime", 0) or st.st_mtime
    return datetime.datetime.fromtimestamp(stamp, tz=datetime.timezone.utc)


# Evaluated in order, the first source returning a date wins
DATE_SOURCES = (
    ("filename", date_from_filename),
    ("metadata", date_from_metadata),
    ("filesystem", date_from_filesystem),
)


def resolve_date(path: Path, logger) -> datetime.datetime:
    """
    Find the best guess capture date for a file.

    Args:
        path (Path): File to date
        logger (logging.Logger): Logger for recording issues

    Returns:
        datetime.datetime: Timezone-aware UTC date. Never raises: when every source
        fails (for example the file vanished) the error is logged and the current
        time is returned.
    """
    path = Path(path)
    try:
        for source, step in DATE_SOURCES:
            found = step(path, logger)
            if found is not None:
                logger.debug(f"  {path.name}: date {found.isoformat()} from {source}")
                return found
    except Exception as e:
        logger.error(f"Error getting date for {path}: {e}")
    return datetime.datetime.now(datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Collision-safe moves
# ---------------------------------------------------------------------------


def plan_move(
    destination_dir: Path,
    desired_name: str,
    token: str = COPY_TOKEN,
    reserved: Optional[set] = None,
) -> Path:
    """
    Pick a destination path that does not clobber anything.

    Args:
        destination_dir (Path): Directory the file should end up in
        desired_name (str): Name the file would ideally get
        token (str): Inserted between the stem and the counter on collision
        reserved (set, optional): Names already claimed earlier in the same batch.
            They count as taken, and the chosen name is added to the set.

    Returns:
        Path: destination_dir / desired_name if free, otherwise the first free
        stem{token}{N}{ext} with N counting from 1

    Examples:
        photo.jpg -> photo.jpg (if free)
        photo.jpg -> photo_copy1.jpg (if photo.jpg exists)
        photo.jpg -> photo_copy2.jpg (if photo_copy1.jpg exists too)
    """
    if reserved is None:
        reserved = set()

    def taken(name):
        return name in reserved or os.path.lexists(destination_dir / name)

    final_name = desired_name
    if taken(final_name):
        stem = Path(desired_name).stem
        suffix = Path(desired_name).suffix
        counter = 1
        while True:
            final_name = f"{stem}{token}{counter}{suffix}"
            if not taken(final_name):
                break
            counter += 1

            # Safety limit to prevent infinite loop
            if counter > MAX_COLLISION_SUFFIX:
                raise ValueError(f"Too many name collisions for {destination_dir / desired_name}")

    reserved.add(final_name)
    return destination_dir / final_name


def plan_rename(
    source: Path,
    destination_dir: Path,
    desired_name: str,
    token: str = COPY_TOKEN,
    reserved: Optional[set] = None,
) -> RenamePlan:
    """Plan moving source into destination_dir under a collision-free form of desired_name."""
    final_path = plan_move(destination_dir, desired_name, token, reserved)
    return RenamePlan(source, destination_dir, desired_name, final_path.name)


def apply_plan(plan: RenamePlan, dry_run: bool, logger) -> Outcome:
    """
    Carry out one move, or only report it in dry run mode.

    Failures (permissions, the source vanishing, another process creating the
    target after planning) are logged and returned as an error outcome so the
    rest of the batch keeps going.
    """
    source = plan.original_path
    target = plan.final_path

    if dry_run:
        logger.info(f"  [DRY RUN] Would move: {source} -> {target}")
        return Outcome(source, "would-move", target)

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        # Never overwrite: the name was free at planning time but may not be now
        move_without_clobber(source, target)
    except OSError as e:
        logger.error(f"  Error moving {source}: {e}")
        return Outcome(source, "error", target, str(e))

    logger.info(f"  moved: {source} -> {target}")
    return Outcome(source, "moved", target)


# link() failures that mean hard links are unavailable here, not that the target is taken
LINK_FALLBACK_ERRNOS = {
    errno.EXDEV, errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EMLINK, errno.ENOSYS,
}


def is_case_variant(source: Path, target: Path) -> bool:
    """True when target is only another spelling of source on a case-insensitive filesystem."""
    if source == target or str(source).lower() != str(target).lower():
        return False
    try:
        # Hard links differing only in case are both listed on a case-sensitive filesystem
        return os.path.samefile(source, target) and target.name not in os.listdir(target.parent)
    except OSError:
        return False


def move_without_clobber(source: Path, target: Path):
    """
    Move source to target, raising FileExistsError if target already exists.

    Within one filesystem the move is a hard link followed by removing the
    source, so checking for the target and claiming it happen in one call.
    Across filesystems, or where hard links are not supported, it checks for
    the target and falls back to shutil.move.
    """
    if is_case_variant(source, target):
        os.rename(source, target)
        return

    if not source.is_symlink():
        try:
            os.link(source, target)
        except OSError as e:
            if e.errno not in LINK_FALLBACK_ERRNOS:
                raise
        else:
            try:
                os.unlink(source)
            except OSError:
                os.unlink(target)
                raise
            return

    if os.path.lexists(target):
        raise FileExistsError(errno.EEXIST, "Target already exists", str(target))
    shutil.move(str(source), str(target))


def apply_delete(path: Path, dry_run: bool, logger) -> Outcome:
    """Delete one file, or only report it in dry run mode."""
    if dry_run:
        logger.info(f"  [DRY RUN] Would delete: {path}")
        return Outcome(path, "would-delete")

    try:
        path.unlink()
    except OSError as e:
        logger.error(f"  Error deleting {path}: {e}")
        return Outcome(path, "error", message=str(e))

    logger.info(f"  deleted: {path}")
    return Outcome(path, "deleted")


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------


def group_indices(records: list, key, indices=None) -> dict:
    """Group record indices by key(record), keeping first-seen order."""
    groups = {}
    for index in range(len(records)) if indices is None else indices:
        groups.setdefault(key(records[index]), []).append(index)
    return groups


def find_duplicates(root: Path, quarantine_dir: Path, logger) -> list:
    """
    Find files whose content is byte-identical to an earlier file.

    Args:
        root (Path): Directory scanned recursively
        quarantine_dir (Path): Skipped during the scan so files quarantined by a
            previous run are not detected again
        logger (logging.Logger): Logger for recording progress and errors

    Returns:
        list: FileRecord for every duplicate to move away, in no particular order

    Files are bucketed by size first; a size shared by no other file cannot have
    a duplicate, so only files in buckets of two or more are hashed. Inside every
    group of identical hashes the path that sorts first is kept as the original.
    Files that cannot be stat'ed or read are logged and left alone.
    """
    records = []
    files = list(iter_files(root, exclude=quarantine_dir))
    for file_path in progress(files, "Scanning sizes"):
        try:
            records.append(FileRecord(file_path, file_path.stat().st_size))
        except OSError as e:
            logger.error(f"Error scanning {file_path}: {e}")

    size_buckets = group_indices(records, lambda record: record.size)
    candidates = [bucket for bucket in size_buckets.values() if len(bucket) > 1]
    logger.info(
        f"Scanned {len(records)} files, {sum(len(b) for b in candidates)} share a size with another file"
    )
    if not candidates:
        logger.info("No potential duplicates.")
        return []

    duplicates = []
    total = sum(len(bucket) for bucket in candidates)
    with tqdm(total=total, desc="Hashing potential duplicates", unit="file", disable=None, leave=False) as bar:
        for bucket in candidates:
            hashed = []
            for index in bucket:
                digest = calculate_file_hash(records[index].path, logger)
                bar.update(1)
                if digest:
                    records[index].content_hash = digest
                    hashed.append(index)

            hash_groups = group_indices(records, lambda record: record.content_hash, hashed)
            for group in hash_groups.values():
                if len(group) < 2:
                    continue
                ordered = sorted(group, key=lambda i: str(records[i].path))
                original = records[ordered[0]]
                for index in ordered[1:]:
                    logger.info(f"  DUPLICATE: {records[index].path} matches {original.path}")
                    duplicates.append(records[index])

    return duplicates


def plan_quarantine(duplicates: list, quarantine_dir: Path, logger) -> list:
    """Plan a move into the quarantine directory for each duplicate (photo_1.jpg style on collision)."""
    reserved = set()
    plans = []
    for record in duplicates:
        try:
            plans.append(
                plan_rename(record.path, quarantine_dir, record.path.name, QUARANTINE_TOKEN, reserved)
            )
        except ValueError as e:
            logger.error(f"  Cannot place {record.path}: {e}")
    return plans


# ---------------------------------------------------------------------------
# Planning for the other operations
# ---------------------------------------------------------------------------


def plan_flatten(root: Path, quarantine_dir: Path, logger) -> list:
    """Plan moving every file in a subdirectory of root up into root itself."""
    root = Path(root)
    reserved = set()
    plans = []
    for file_path in iter_files(root, exclude=quarantine_dir):
        if file_path.parent == root:
            continue
        try:
            plans.append(plan_rename(file_path, root, file_path.name, COPY_TOKEN, reserved))
        except ValueError as e:
            logger.error(f"  Cannot place {file_path}: {e}")
    return plans


def is_dated_name(name: str) -> bool:
    """True when name already starts with a YYYY-MM-DD_ prefix."""
    return bool(DATED_NAME_RE.match(name))


def plan_date_renames(root: Path, logger):
    """
    Plan a YYYY-MM-DD_ prefix for every top-level file of root that lacks one.

    Args:
        root (Path): Directory whose files (not subdirectories) are renamed
        logger (logging.Logger): Logger for recording issues

    Returns:
        tuple: (plans, skipped) where skipped counts files already dated
    """
    root = Path(root)
    reserved = set()
    plans = []
    skipped = 0
    files = list(iter_files(root, recursive=False))
    for file_path in progress(files, "Resolving dates"):
        if is_dated_name(file_path.name):
            skipped += 1
            continue

        try:
            record = FileRecord(file_path, file_path.stat().st_size)
        except OSError as e:
            logger.error(f"  Error reading {file_path}: {e}")
            skipped += 1
            continue
        record.resolved_date = resolve_date(file_path, logger)

        desired_name = format_date_prefix(record.resolved_date) + file_path.name
        try:
            plans.append(plan_rename(file_path, root, desired_name, COPY_TOKEN, reserved))
        except ValueError as e:
            logger.error(f"  Cannot rename {file_path}: {e}")
    return plans, skipped


def plan_shorten(root: Path, logger, sequences: Optional[dict] = None):
    """
    Plan short YYYY-MM-DD-NNN.ext names for dated top-level files of root.

    Args:
        root (Path): Directory whose files are renamed
        logger (logging.Logger): Logger for recording issues
        sequences (dict, optional): Next number to hand out per "YYYY-MM-DD-"
            prefix. Not modified; the updated mapping is returned.

    Returns:
        tuple: (plans, skipped, sequences)

    Files without a date prefix are skipped, as are files already carrying
    their short name (their number is still used up). When a short name is
    taken the number is bumped for that file only.

    Example:
        2018-04-27_IMG001.JPG -> 2018-04-27-001.jpg
        2018-04-27_IMG002.JPG -> 2018-04-27-002.jpg
    """
    root = Path(root)
    sequences = dict(sequences or {})
    reserved = set()
    plans = []
    skipped = 0

    for file_path in iter_files(root, recursive=False):
        match = DATE_PREFIX_RE.match(file_path.name)
        if not match:
            skipped += 1
            continue

        date_prefix = "{}-{}-{}-".format(*match.groups())
        seq = sequences.get(date_prefix, 1)
        sequences[date_prefix] = seq + 1

        suffix = file_path.suffix.lower()
        proposed_name = f"{date_prefix}{seq:03d}{suffix}"
        if proposed_name == file_path.name:
            skipped += 1
            continue

        final_name = proposed_name
        bump = 0
        while final_name in reserved or (
            os.path.lexists(root / final_name) and not is_case_variant(file_path, root / final_name)
        ):
            bump += 1
            final_name = f"{date_prefix}{seq + bump:03d}{suffix}"
        reserved.add(final_name)

        logger.debug(f"  shorten: {file_path.name} -> {final_name}")
        plans.append(RenamePlan(file_path, root, proposed_name, final_name))

    return plans, skipped, sequences


def is_overlay_name(name: str) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in OVERLAY_PATTERNS)


def find_overlays(root: Path, extra_dirs=()) -> list:
    """Collect overlay files under root and any extra directories that exist, sorted and unique."""
    found = set()
    for search_dir in [Path(root), *(Path(d).expanduser() for d in extra_dirs)]:
        if not search_dir.is_dir():
            continue
        for file_path in iter_files(search_dir.resolve()):
            if is_overlay_name(file_path.name):
                found.add(file_path)
    return sorted(found)


def remove_empty_dirs(root: Path, logger, keep=()) -> int:
    """Delete subdirectories of root left empty, deepest first. Returns how many were removed."""
    root = Path(root)
    keep = {Path(k).resolve() for k in keep}
    removed = 0
    for folder_name, _, _ in os.walk(root, topdown=False):
        folder = Path(folder_name)
        if folder == root or folder.resolve() in keep:
            continue
        try:
            if not any(folder.iterdir()):
                folder.rmdir()
                removed += 1
        except OSError as e:
            logger.warning(f"Could not remove directory {folder}: {e}")
    return removed


# ---------------------------------------------------------------------------
# Operations: plan, confirm, apply
# ---------------------------------------------------------------------------


def confirm(prompt: str, assume_yes: bool = False) -> bool:
    """Ask a yes/no question on the console. EOF counts as no."""
    if assume_yes:
        return True
    print(f"{prompt} [y/N]: ", end="")
    try:
        user_input = input().strip().lower()
    except EOFError:
        user_input = ""
    return user_input in ("y", "yes")


def preview(items: list, logger, describe=str):
    """Log the first few planned items so the user knows what a batch touches."""
    for item in items[:PREVIEW_LIMIT]:
        logger.info(f"  {describe(item)}")
    if len(items) > PREVIEW_LIMIT:
        logger.info(f"  ... and {len(items) - PREVIEW_LIMIT} more")


def run_batch(summary: Summary, items: list, apply, dry_run: bool, logger, desc: str, prompt: str, assume_yes: bool):
    """
    Gate a batch on confirmation (live runs only), then apply it item by item.

    Every item is applied even if earlier ones failed; the outcomes are
    counted into summary, which is logged and returned. A KeyboardInterrupt
    stops the batch before the next item; the partial summary is logged and
    the interrupt propagates.
    """
    if not dry_run and not confirm(prompt, assume_yes):
        logger.info("Cancelled by user.")
        summary.cancelled = True
        return report(summary, logger)

    try:
        for item in progress(items, desc):
            summary.add(apply(item, dry_run, logger))
    except KeyboardInterrupt:
        summary.interrupted = True
        report(summary, logger)
        raise
    return report(summary, logger)


def report(summary: Summary, logger) -> Summary:
    """Log the closing count line of a batch."""
    logger.info(summary.describe())
    return summary


def describe_plan(plan: RenamePlan) -> str:
    return f"{plan.original_path.name} -> {plan.final_name}"


def run_flatten(root: Path, quarantine_dir: Path, dry_run: bool, logger, assume_yes: bool = False) -> Summary:
    """Move every file below root into root, then remove the emptied folders."""
    logger.info("=== Flatten Subdirectories ===")
    summary = Summary("flatten", dry_run)
    plans = plan_flatten(root, quarantine_dir, logger)
    if not plans:
        logger.info("No files in subdirectories.")
        return report(summary, logger)

    logger.info(f"Found {len(plans)} files in subdirectories:")
    preview(plans, logger, describe_plan)
    run_batch(summary, plans, apply_plan, dry_run, logger, "Flattening",
              f"Move {len(plans)} files into {root}?", assume_yes)

    if not dry_run and summary.succeeded > 0:
        removed = remove_empty_dirs(root, logger, keep=[quarantine_dir])
        logger.info(f"Cleaned up {removed} empty subdirectories.")
    return summary


def run_rename(root: Path, dry_run: bool, logger, assume_yes: bool = False) -> Summary:
    """Prefix undated top-level files with their resolved date."""
    logger.info("=== Rename with Date Prefix ===")
    summary = Summary("rename", dry_run)
    plans, summary.skipped = plan_date_renames(root, logger)
    if not plans:
        logger.info("No files to rename.")
        return report(summary, logger)

    logger.info(f"Found {len(plans)} files without a date prefix:")
    preview(plans, logger, describe_plan)
    return run_batch(summary, plans, apply_plan, dry_run, logger, "Renaming",
                     f"Add a date prefix to {len(plans)} files?", assume_yes)


def run_delete_overlays(root: Path, dry_run: bool, logger, assume_yes: bool = False, extra_dirs=()) -> Summary:
    """Delete overlay layers under root and any extra directories."""
    logger.info("=== Delete Overlay Files ===")
    summary = Summary("overlays", dry_run)
    files = find_overlays(root, extra_dirs)
    if not files:
        logger.info("No overlay files found.")
        return report(summary, logger)

    logger.info(f"Found {len(files)} overlay files:")
    preview(files, logger, lambda p: p.name)
    return run_batch(summary, files, apply_delete, dry_run, logger, "Deleting overlays",
                     f"Delete ALL {len(files)} overlay files?", assume_yes)


def run_find_duplicates(root: Path, quarantine_dir: Path, dry_run: bool, logger, assume_yes: bool = False) -> Summary:
    """Move every duplicate after the first of its group into the quarantine folder."""
    logger.info("=== Find & Move Duplicates ===")
    summary = Summary("duplicates", dry_run)
    duplicates = find_duplicates(root, quarantine_dir, logger)
    if not duplicates:
        logger.info("No confirmed duplicates.")
        return report(summary, logger)

    plans = plan_quarantine(duplicates, quarantine_dir, logger)
    logger.info(f"Found {len(plans)} duplicates:")
    preview(plans, logger, describe_plan)
    return run_batch(summary, plans, apply_plan, dry_run, logger, "Moving duplicates",
                     f"Move {len(plans)} duplicates to {quarantine_dir}?", assume_yes)


def run_shorten(root: Path, dry_run: bool, logger, assume_yes: bool = False, sequences=None):
    """Returns (summary, sequences) so callers can carry the counters into another run."""
    logger.info("=== Shorten Filenames ===")
    summary = Summary("shorten", dry_run)
    plans, summary.skipped, sequences = plan_shorten(root, logger, sequences)
    if not plans:
        logger.info("No files to shorten.")
        return report(summary, logger), sequences

    logger.info(f"Found {len(plans)} files to shorten:")
    preview(plans, logger, describe_plan)
    run_batch(summary, plans, apply_plan, dry_run, logger, "Shortening filenames",
              f"Rename {len(plans)} files to short names?", assume_yes)
    return summary, sequences


def run_all(root: Path, quarantine_dir: Path, dry_run: bool, logger, assume_yes: bool = False, extra_dirs=()) -> list:
    """Flatten, date-prefix, delete overlays, then quarantine duplicates."""
    return [
        run_flatten(root, quarantine_dir, dry_run, logger, assume_yes),
        run_rename(root, dry_run, logger, assume_yes),
        run_delete_overlays(root, dry_run, logger, assume_yes, extra_dirs),
        run_find_duplicates(root, quarantine_dir, dry_run, logger, assume_yes),
    ]


OPERATIONS = ("flatten", "rename", "overlays", "duplicates", "shorten", "all")


def run_operation(operation: str, root: Path, quarantine_dir: Path, dry_run: bool, logger,
                  assume_yes: bool = False, extra_dirs=()) -> list:
    """Run one named operation and return its summaries."""
    if operation == "flatten":
        summaries = [run_flatten(root, quarantine_dir, dry_run, logger, assume_yes)]
    elif operation == "rename":
        summaries = [run_rename(root, dry_run, logger, assume_yes)]
    elif operation == "overlays":
        summaries = [run_delete_overlays(root, dry_run, logger, assume_yes, extra_dirs)]
    elif operation == "duplicates":
        summaries = [run_find_duplicates(root, quarantine_dir, dry_run, logger, assume_yes)]
    elif operation == "shorten":
        summary, _ = run_shorten(root, dry_run, logger, assume_yes)
        summaries = [summary]
    elif operation == "all":
        summaries = run_all(root, quarantine_dir, dry_run, logger, assume_yes, extra_dirs)
    else:
        raise ValueError(f"Unknown operation: '{operation}'. Valid operations: {', '.join(OPERATIONS)}")

    return summaries


MENU_CHOICES = (
    ("1", "Flatten subdirectories + Rename with date prefix", ("flatten", "rename")),
    ("2", "Delete overlay files (*overlay*.png / *.webp)", ("overlays",)),
    ("3", "Find & move duplicates", ("duplicates",)),
    ("4", "Run ALL steps in sequence", ("all",)),
    ("5", "Shorten filenames (Photos.app compatibility)", ("shorten",)),
)


def interactive_menu(root: Path, quarantine_dir: Path, dry_run: bool, logger,
                     assume_yes: bool = False, extra_dirs=()) -> list:
    """
    Loop over a numbered menu until the user exits.

    't' toggles dry run mode, 'q' (or end of input) exits. Returns every
    summary produced during the session.
    """
    summaries = []
    operations = {key: ops for key, _, ops in MENU_CHOICES}
    while True:
        print()
        for key, label, _ in MENU_CHOICES:
            print(f"  {key}. {label}")
        print("  t. Toggle dry-run mode")
        print("  q. Exit")
        print(f"What would you like to do? (dry-run is {'ON' if dry_run else 'OFF'}): ", end="")
        try:
            choice = input().strip().lower()
        except EOFError:
            choice = "q"

        if choice in ("q", "exit"):
            print("Goodbye!")
            return summaries
        if choice == "t":
            dry_run = not dry_run
            logger.info(f"Dry-run is now {'ON' if dry_run else 'OFF'}")
            continue
        if choice not in operations:
            print("Invalid choice. Please enter 1-5, t or q.")
            continue

        for operation in operations[choice]:
            summaries.extend(
                run_operation(operation, root, quarantine_dir, dry_run, logger, assume_yes, extra_dirs)
            )


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def set_up_logging(log_file: Optional[Path], verbose: bool):
    """
    Set up console logging, plus a log file when one is requested.

    Args:
        log_file (Path or None): File to append log messages to
        verbose (bool): Whether to enable verbose (DEBUG) logging

    Returns:
        logging.Logger: Configured logger instance

    The log file is opt-in so that a dry run never writes inside the directory
    being cleaned. Handlers left over from an earlier call are replaced.
    """
    logger = logging.getLogger(__name__)

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    # Define a simple formatter that just prints the message
    formatter = logging.Formatter("%(message)s")

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"Failed to create log directory: {e}")
            sys.exit(1)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger


def validate_root(root_dir: Path, logger):
    """
    Exit with status 1 if the directory to clean does not exist.

    Nothing has been scanned or changed at this point.
    """
    if not root_dir.exists() or not root_dir.is_dir():
        logger.error(f"Error: Directory does not exist: {root_dir}")
        sys.exit(1)


def resolve_quarantine_dir(root_dir: Path, quarantine_name: str) -> Path:
    """Absolute names are used as given, anything else lives under root_dir."""
    if Path(quarantine_name).is_absolute():
        return Path(quarantine_name)
    return root_dir / quarantine_name


def print_examples():
    """
    Print usage examples to the user.

    This function extracts and displays the examples section from the module's docstring.
    It's used when the --examples flag is provided.
    """
    doc_lines = __doc__.split("\n")
    examples_start = doc_lines.index("USAGE EXAMPLES:")
    examples_end = next(
        (
            i
            for i, line in enumerate(doc_lines[examples_start:], examples_start)
            if line.startswith("See --help")
        ),
        len(doc_lines),
    )

    examples = "\n".join(doc_lines[examples_start : examples_end + 1])
    print(examples)


def parse_arguments(args=None):
    """
    Parse command line arguments using argparse.

    Args:
        args (list, optional): Command line arguments. Defaults to None.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    if args is None:
        args = sys.argv[1:]

    # --examples bypasses everything else
    if "--examples" in args:
        print_examples()
        sys.exit(0)

    parser = argparse.ArgumentParser(
        prog="memclean.py",
        description="Clean up an exported folder of chat memories: flatten subfolders, prefix files with their capture date, delete overlay layers, quarantine byte-identical duplicates and shorten filenames for photo managers.",
        epilog="""
IMPORTANT NOTES:
• Dry run is the default; nothing changes on disk unless --apply is given
• Live runs ask before each batch unless --yes is given
• Without --operation an interactive menu is shown
• Use --examples to see usage scenarios""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "-d",
        "--dir",
        default=os.getcwd(),
        help="Directory to clean up [default: current directory]",
        metavar="DIR",
    )

    parser.add_argument(
        "-o",
        "--operation",
        choices=OPERATIONS,
        default=None,
        help="Operation to run: 'flatten' moves files from subfolders into DIR; 'rename' prefixes top-level files with YYYY-MM-DD_; 'overlays' deletes overlay layers; 'duplicates' moves identical copies to the quarantine folder; 'shorten' renames dated files to YYYY-MM-DD-NNN.ext; 'all' runs flatten, rename, overlays and duplicates in order. A dry run of 'all' previews every step against the unchanged tree, so its counts can differ from a live run, where later steps see the results of earlier ones. If omitted, an interactive menu is shown.",
    )

    parser.add_argument(
        "-a",
        "--apply",
        action="store_true",
        help="Actually change files. Without it every operation is a dry run that only reports what it would do.",
    )

    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Do not ask for confirmation before applying a batch.",
    )

    parser.add_argument(
        "-q",
        "--quarantine-dir",
        default=QUARANTINE_DIRNAME,
        help=f"Folder duplicates are moved to, relative to DIR or absolute. It is never scanned for duplicates or flattened [default: {QUARANTINE_DIRNAME}]",
        dest="quarantine_dir",
    )

    parser.add_argument(
        "--overlay-dir",
        action="append",
        default=[],
        help="Extra directory searched for overlay files, e.g. ~/Downloads/chat_media. May be given more than once.",
        dest="overlay_dirs",
        metavar="DIR",
    )

    parser.add_argument(
        "-l",
        "--log-file",
        default=None,
        help="Also append log messages to this file.",
        dest="log_file",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging, including where each file's date came from.",
    )

    parser.add_argument(
        "--examples",
        action="store_true",
        help="Display usage examples and exit.",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show program version and exit",
    )

    return parser.parse_args(args)


def main(args=None):
    """
    Main entry point for the script.

    Args:
        args (list, optional): Command line arguments. Defaults to None.

    Returns:
        int: 0 when every attempted file succeeded, 1 if any failed
    """
    parsed_args = parse_arguments(args)

    root_dir = Path(parsed_args.dir).expanduser().resolve()
    log_file = Path(parsed_args.log_file).expanduser().resolve() if parsed_args.log_file else None
    dry_run = not parsed_args.apply

    logger = set_up_logging(log_file, parsed_args.verbose)

    start_time = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    logger.info("=" * 80)
    logger.info(f"memclean {myversion}")
    logger.info(f"Session Started: {start_time}")
    logger.info("=" * 80)
    logger.debug("Command-line options: %s", vars(parsed_args))

    validate_root(root_dir, logger)
    quarantine_dir = resolve_quarantine_dir(root_dir, parsed_args.quarantine_dir)

    logger.info(f"Working in: {root_dir}")
    logger.info(f"Dry-run mode: {'ON (preview only)' if dry_run else 'OFF (changes will be applied)'}")

    try:
        with logging_redirect_tqdm(loggers=[logger]):
            if parsed_args.operation:
                summaries = run_operation(
                    parsed_args.operation, root_dir, quarantine_dir, dry_run, logger,
                    parsed_args.yes, parsed_args.overlay_dirs,
                )
            else:
                summaries = interactive_menu(
                    root_dir, quarantine_dir, dry_run, logger,
                    parsed_args.yes, parsed_args.overlay_dirs,
                )
    except KeyboardInterrupt:
        logger.warning("Interrupted. No further changes will be made.")
        logging.shutdown()
        sys.exit(130)

    end_time = datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    logger.info("=" * 80)
    logger.info(f"Session Ended: {end_time}")
    logger.info("=" * 80)

    for handler in logger.handlers:
        handler.flush()

    return 1 if any(summary.failed for summary in summaries) else 0


if __name__ == "__main__":
    sys.exit(main())

"""Drop-folder watcher for SMS export files.

Phones and SMS backup apps dump their inbox as .txt or .json files. Each
new file in the watched folder goes through:
  detect → settle → validate → hash check → read → batch import

Export formats:
  .txt   one message per block, blocks separated by blank lines
  .json  a list of strings, or of objects carrying "message" or "body";
         the list may also sit under a top-level "messages" key

Polling instead of inotify: exports usually land on synced or mounted
folders where native events are not delivered.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEventHandler

from smsledger.database.models import Import
from smsledger.database.repository import DuplicateImportError
from smsledger.parsers.base import compute_file_hash

if TYPE_CHECKING:
    from smsledger.database.repository import Repository
    from smsledger.ingest.pipeline import ImportPipeline

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".txt", ".json"}

DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0
DEFAULT_MAX_WAIT = 300.0

# Seconds between directory scans
DEFAULT_POLL_INTERVAL = 30

DEFAULT_CHUNK_SIZE = 100

_BLANK_LINE = re.compile(r"\n\s*\n")


@dataclass
class FileImportResult:
    """Outcome of one export file."""
    file_name: str
    status: str  # success / duplicate / error
    message_count: int = 0
    imported_count: int = 0
    pending_count: int = 0
    duplicate_count: int = 0
    error_count: int = 0
    error_message: str | None = None


class FileStabilityError(Exception):
    """The export is still being written or was cut short."""


# ── Settling & validation ────────────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: float = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = DEFAULT_MAX_WAIT,
) -> None:
    """Block until (size, mtime) has not changed for stability_seconds.

    Raises:
        TimeoutError: The file kept changing for longer than max_wait.
    """
    deadline = time.monotonic() + max_wait
    last_seen: tuple[int, float] | None = None
    unchanged_since: float | None = None

    while time.monotonic() <= deadline:
        st = filepath.stat()
        snapshot = (st.st_size, st.st_mtime)
        now = time.monotonic()

        if snapshot != last_seen:
            last_seen = snapshot
            unchanged_since = None
        elif unchanged_since is None:
            unchanged_since = now
        elif now - unchanged_since >= stability_seconds:
            return

        time.sleep(check_interval)

    raise TimeoutError(f"{filepath} still changing after {max_wait}s")


def validate_file_completeness(filepath: Path) -> None:
    """Reject blank exports and JSON that does not parse as a whole.

    Raises:
        FileStabilityError: The content looks empty or truncated.
    """
    content = filepath.read_text(encoding="utf-8", errors="replace")
    if not content.strip():
        raise FileStabilityError(f"Empty export file: {filepath}")

    if filepath.suffix.lower() != ".json":
        return
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        raise FileStabilityError(
            f"JSON export is incomplete or malformed: {filepath} ({e})"
        ) from e


def _json_body(item) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        return item.get("message") or item.get("body") or ""
    raise ValueError(f"Unsupported JSON message entry: {item!r}")


def read_messages(filepath: Path) -> list[str]:
    """SMS bodies in file order, blank entries dropped.

    Raises:
        ValueError: Unknown extension or JSON layout.
    """
    ext = filepath.suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported file extension: {filepath.suffix}")

    content = filepath.read_text(encoding="utf-8", errors="replace")
    if ext == ".txt":
        bodies = _BLANK_LINE.split(content.replace("\r\n", "\n"))
    else:
        data = json.loads(content)
        if isinstance(data, dict):
            data = data.get("messages")
        if not isinstance(data, list):
            raise ValueError(f"JSON export must be a list of messages: {filepath}")
        bodies = [_json_body(item) for item in data]

    return [b.strip() for b in bodies if b.strip()]


# ── Import ───────────────────────────────────────────────


class FileImporter:
    """Feed one export file through the batch pipeline for a fixed user.

    Every file is recorded in the imports table keyed by content hash, so a
    file dropped twice is skipped before any message is parsed.
    """

    def __init__(
        self,
        repo: Repository,
        pipeline: ImportPipeline,
        user_id: str,
        min_confidence: float = 0.7,
        auto_approve: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.repo = repo
        self.pipeline = pipeline
        self.user_id = user_id
        self.min_confidence = min_confidence
        self.auto_approve = auto_approve
        self.chunk_size = max(1, chunk_size)

    def process_file(self, filepath: Path) -> FileImportResult:
        name = filepath.name
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return FileImportResult(
                file_name=name,
                status="error",
                error_message=f"Unsupported file extension: {filepath.suffix}",
            )

        record = Import(
            file_name=name,
            file_hash=compute_file_hash(filepath),
            user_id=self.user_id,
            file_size=filepath.stat().st_size,
        )
        try:
            self.repo.insert_import(record)
        except DuplicateImportError:
            logger.info("Export %s already imported, skipping", name)
            return FileImportResult(file_name=name, status="duplicate")

        try:
            result = self._import_messages(name, read_messages(filepath))
        except Exception as e:
            logger.exception("Import of %s failed", name)
            self.repo.update_import_status(record.id, "error", error_message=str(e))
            return FileImportResult(file_name=name, status="error", error_message=str(e))

        self.repo.update_import_status(
            record.id, "completed", record_count=result.message_count,
        )
        return result

    def _import_messages(self, name: str, messages: list[str]) -> FileImportResult:
        result = FileImportResult(
            file_name=name, status="success", message_count=len(messages),
        )
        # one dedup set per file, so a repeat split across chunks still matches
        seen = self.pipeline.dedup.new_batch()
        for start in range(0, len(messages), self.chunk_size):
            batch = self.pipeline.import_batch(
                self.user_id,
                messages[start:start + self.chunk_size],
                min_confidence=self.min_confidence,
                auto_approve=self.auto_approve,
                seen=seen,
            )
            result.imported_count += batch.imported
            result.pending_count += batch.pending
            result.duplicate_count += batch.skipped
            result.error_count += len(batch.errors)
        return result


# ── Watcher ──────────────────────────────────────────────


class FileWatcher(FileSystemEventHandler):
    """Poll watch_dir and import each new export, one file at a time."""

    def __init__(
        self,
        watch_dir: Path,
        importer: FileImporter,
        stability_seconds: float = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.importer = importer
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self._observer = None

    def start(self) -> None:
        from watchdog.observers.polling import PollingObserver

        self.watch_dir.mkdir(parents=True, exist_ok=True)
        observer = PollingObserver(timeout=DEFAULT_POLL_INTERVAL)
        observer.schedule(self, str(self.watch_dir), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for SMS exports", self.watch_dir)

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join()
        logger.info("Stopped watching %s", self.watch_dir)

    def on_created(self, event) -> None:
        if event.is_directory:
            return
        path = Path(event.src_path)
        if path.suffix.lower() in SUPPORTED_EXTENSIONS:
            logger.info("New export: %s", path.name)
            self._process_file(path)

    def _process_file(self, filepath: Path) -> FileImportResult:
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)
            result = self.importer.process_file(filepath)
        except (FileStabilityError, TimeoutError) as e:
            logger.error("Skipping %s: %s", filepath.name, e)
            return FileImportResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )
        except Exception as e:
            logger.exception("Unexpected error importing %s", filepath.name)
            return FileImportResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )

        logger.info(
            "%s: %s (messages=%d imported=%d pending=%d dup=%d errors=%d)",
            filepath.name, result.status, result.message_count,
            result.imported_count, result.pending_count,
            result.duplicate_count, result.error_count,
        )
        return result

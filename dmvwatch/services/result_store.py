"""
Append-only run result archive

JSON Lines file, one record per RunResult:
    {"query_id": ..., "timestamp": ..., "duration_ms": ..., "rows": [...]}

Only (timestamp, byte offset) pairs are kept in memory; rows are read back
from the file when a run is requested.
"""

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, List, NamedTuple, Optional

from dmvwatch.core.exceptions import NoResultsError, StorageError
from dmvwatch.core.logger import get_logger, run_context
from dmvwatch.models.run_models import RunResult

logger = get_logger('services.result_store')


class _Entry(NamedTuple):
    timestamp: datetime
    offset: int


class ResultStore:
    """
    Persistent, append-only store of RunResults

    Lifecycle is explicit: ``open()`` at startup indexes the existing log,
    ``close()`` at shutdown. There is no update or delete operation.

    Usage:
        with ResultStore(path) as store:
            store.append(result)
            latest = store.recent("top-io", 2)
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._index: Dict[str, List[_Entry]] = {}
        self._lock = Lock()
        self._file = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._file is not None

    # === Lifecycle ===

    def open(self) -> 'ResultStore':
        """
        Index existing records and open the log for appending

        Raises:
            StorageError: If the log cannot be read or contains a bad record
        """
        with self._lock:
            if self._file is not None:
                return self
            self._index = {}
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                if self._path.exists():
                    self._load()
                self._file = open(self._path, 'ab')
            except OSError as e:
                raise StorageError(f"Cannot open result store: {e}", {"path": str(self._path)}) from e

        total = sum(len(entries) for entries in self._index.values())
        logger.info(f"Opened result store {self._path} ({total} runs, {len(self._index)} queries)")
        return self

    def _load(self) -> None:
        offset = 0
        with open(self._path, 'rb') as f:
            for line_no, raw in enumerate(f, start=1):
                start, offset = offset, offset + len(raw)
                if not raw.strip():
                    continue
                try:
                    result = RunResult.from_record(json.loads(raw))
                except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
                    raise StorageError(
                        f"Corrupt result record at line {line_no}: {e}",
                        {"path": str(self._path)},
                    ) from e
                self._index.setdefault(result.query_id, []).append(_Entry(result.timestamp, start))

        # Records are appended in timestamp order per query; keep that
        # invariant even for logs merged by hand
        for entries in self._index.values():
            entries.sort(key=lambda entry: entry.timestamp)

    def close(self) -> None:
        with self._lock:
            if self._file is None:
                return
            try:
                self._file.close()
            finally:
                self._file = None
        logger.debug(f"Closed result store {self._path}")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # === Append ===

    def append(self, result: RunResult) -> None:
        """
        Persist one RunResult

        A failed write is rolled back to the previous end of the log and
        retried once; a second failure is rolled back as well and surfaces.

        Raises:
            StorageError: Store closed, timestamp older than the last run of
                the same query, or the write failed twice
        """
        data = (json.dumps(result.to_record(), ensure_ascii=False, default=str) + "\n").encode('utf-8')

        with self._lock:
            if self._file is None:
                raise StorageError("Result store is not open", {"path": str(self._path)})

            history = self._index.get(result.query_id)
            if history and result.timestamp < history[-1].timestamp:
                raise StorageError(
                    f"Run for '{result.query_id}' at {result.timestamp.isoformat()} is older than "
                    f"the last stored run ({history[-1].timestamp.isoformat()})",
                    {"query_id": result.query_id},
                )

            offset = self._file.tell()
            try:
                self._write_line(data)
            except OSError as first:
                logger.warning(f"Result append failed, retrying once: {first}",
                               extra=run_context(result.query_id))
                try:
                    self._rewind(offset)
                    self._write_line(data)
                except OSError as e:
                    self._rewind_quietly(offset)
                    raise StorageError(
                        f"Failed to append result for '{result.query_id}': {e}",
                        {"path": str(self._path), "query_id": result.query_id},
                    ) from e

            self._index.setdefault(result.query_id, []).append(_Entry(result.timestamp, offset))

        logger.debug(f"Stored run ({result.row_count} rows)", extra=run_context(result.query_id))

    def _write_line(self, data: bytes) -> None:
        self._file.write(data)
        self._file.flush()

    def _rewind(self, offset: int) -> None:
        """Drop whatever a failed write left behind past ``offset`` and reopen"""
        try:
            self._file.close()
        except OSError as e:
            # Buffered bytes of the failed write go with the handle
            logger.debug(f"Discarding handle after failed write: {e}")
        self._file = None
        with open(self._path, 'r+b') as f:
            f.truncate(offset)
        self._file = open(self._path, 'ab')

    def _rewind_quietly(self, offset: int) -> None:
        try:
            self._rewind(offset)
        except OSError as e:
            logger.error(f"Result store could not be rolled back to byte {offset}: {e}")

    # === Retrieval ===

    def recent(self, query_id: str, limit: int = 1) -> List[RunResult]:
        """
        The ``limit`` most recent runs of ``query_id``, newest first

        Raises:
            NoResultsError: Nothing stored for this query id
            StorageError: The log can no longer be read
            ValueError: limit < 1
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        with self._lock:
            history = self._index.get(query_id)
            if not history:
                raise NoResultsError(query_id)
            entries = list(reversed(history[-limit:]))
            return [self._read_at(entry.offset) for entry in entries]

    def _read_at(self, offset: int) -> RunResult:
        try:
            with open(self._path, 'rb') as f:
                f.seek(offset)
                raw = f.readline()
            return RunResult.from_record(json.loads(raw))
        except OSError as e:
            raise StorageError(f"Cannot read result store: {e}", {"path": str(self._path)}) from e
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(
                f"Corrupt result record at byte {offset}: {e}",
                {"path": str(self._path)},
            ) from e

    def latest(self, query_id: str) -> RunResult:
        return self.recent(query_id, 1)[0]

    def count(self, query_id: Optional[str] = None) -> int:
        with self._lock:
            if query_id is not None:
                return len(self._index.get(query_id, ()))
            return sum(len(entries) for entries in self._index.values())

    def query_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._index)

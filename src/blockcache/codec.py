"""
Gzip-compressed NDJSON batch files.

A batch file holds a JSON header on its first line followed by one JSON record
per line. Files are written to a temporary sibling and renamed into place, so a
reader never observes a partially written file at the final path.
"""

from __future__ import annotations

import gzip
import json
import os
from pathlib import Path
from typing import IO, Any, Callable, Iterable, Iterator, Mapping

import structlog

log = structlog.get_logger(__name__)

_COMPACT: tuple[str, str] = (",", ":")


def _to_jsonable(record: Any) -> Any:
    to_dict = getattr(record, "to_dict", None)
    return to_dict() if callable(to_dict) else record


def write_batch_file(path: str | Path, header: Mapping[str, Any], batches: Iterable[Any]) -> Path:
    """Write `header` and `batches` as gzip NDJSON, atomically replacing `path`."""
    destination = Path(path)
    temp_path = destination.with_name(destination.name + ".tmp")
    count = 0
    try:
        with gzip.open(temp_path, "wt", encoding="utf-8", compresslevel=1) as handle:
            handle.write(json.dumps(dict(header), separators=_COMPACT))
            handle.write("\n")
            for batch in batches:
                handle.write(json.dumps(_to_jsonable(batch), separators=_COMPACT))
                handle.write("\n")
                count += 1
        os.replace(temp_path, destination)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    log.debug("batch_file_written", path=str(destination), records=count)
    return destination


class BatchFileReader:
    """
    Single-pass cursor over the record groups of one batch file.

    With `group_size=None` the whole file is yielded as one group; a file with
    no records yields no groups. With an integer `group_size`, groups of at most
    that many records are yielded as the file is decompressed.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        skip_header: bool = False,
        group_size: int | None = None,
        decode: Callable[[Any], Any] | None = None,
    ) -> None:
        if group_size is not None and group_size <= 0:
            raise ValueError("group_size must be a positive integer")
        self.path = Path(path)
        self.skip_header = skip_header
        self.group_size = group_size
        self._decode = decode
        self._handle: IO[str] | None = None
        self._pending: list[Any] | None = None
        self._exhausted = False
        self.header: dict[str, Any] | None = None

    def __enter__(self) -> "BatchFileReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __iter__(self) -> Iterator[list[Any]]:
        return self

    def __next__(self) -> list[Any]:
        if not self.has_next():
            raise StopIteration
        group, self._pending = self._pending, None
        return group

    def has_next(self) -> bool:
        """Return True if another group is available, reading ahead if needed."""
        if self._pending is None and not self._exhausted:
            self._pending = self._read_group()
        return self._pending is not None

    def close(self) -> None:
        self._exhausted = True
        self._pending = None
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def _open(self) -> IO[str]:
        if self._handle is None:
            self._handle = gzip.open(self.path, "rt", encoding="utf-8")
            if self.skip_header:
                self._skip_header_line(self._handle)
        return self._handle

    def _skip_header_line(self, handle: IO[str]) -> None:
        for line in handle:
            if line.strip():
                self.header = json.loads(line)
                return

    def _read_group(self) -> list[Any] | None:
        try:
            handle = self._open()
            group: list[Any] = []
            for line in handle:
                if not line.strip():
                    continue
                record = json.loads(line)
                group.append(self._decode(record) if self._decode is not None else record)
                if self.group_size is not None and len(group) >= self.group_size:
                    return group
        except BaseException:
            self.close()
            raise
        self.close()
        return group or None


def read_batch_file(
    path: str | Path,
    skip_header: bool = False,
    *,
    group_size: int | None = None,
    decode: Callable[[Any], Any] | None = None,
) -> BatchFileReader:
    """Open a lazy, non-restartable reader over the batch groups in `path`."""
    return BatchFileReader(path, skip_header=skip_header, group_size=group_size, decode=decode)


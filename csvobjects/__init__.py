"""
csvobjects: stream delimited text into nested, typed records (stdlib-only).

Contract:
- The first logical line is the header; it declares every column.
- Header cell grammar: <path>[(<type>)]
    path: dot-separated segments, each `name` or `name[index]`
    type: string | integer | float | boolean | datetime | object
  Untyped defaults to string. An empty header cell becomes "undefined".
- Example (separator ";"):
    a.b;a.c(integer);d[0](float)
    x;5;1.5      -> {"a": {"b": "x", "c": 5}, "d": [1.5]}
- Coercion:
    integer/float -> leading number, trailing garbage ignored, NaN if none
    boolean       -> True only for "true" (any case)
    datetime      -> milliseconds since the epoch, NaN if unparseable
    object        -> JSON, malformed input is fatal (RecordError)
- Line breaks: \\n, \\r\\n and \\r. No quoting: the separator always splits.
- Columns are matched by position. Short lines coerce the missing cells as
  None, extra cells are ignored.
- Errors: SchemaError (header), RecordError (object column), SourceError (I/O).

API:
- reader(source, ...) -> synchronous iterator of records
- CsvObjectsStream(source, ...) -> asyncio event stream (open/line/error/end)
  with pause(), resume() and close()
- parse_csv(text, ...) -> coroutine returning the list of records

Python: 3.10+
"""

from __future__ import annotations

import asyncio
import codecs
import dataclasses
import email.utils
import inspect
import io
import json
import logging
import math
import os
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence, Tuple, Union

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


# ----------------------------
# Exceptions
# ----------------------------

class CsvObjectsError(Exception):
    """Base class for decoding failures, with the position that caused them."""

    def __init__(
        self,
        *,
        reason: str,
        row: int = 0,
        col: int = 0,
        header: str = "",
        value: str = "",
    ) -> None:
        msg = (
            f"{type(self).__name__}(" +
            f"row={row}, col={col}, header={header!r}, value={value!r}): {reason}"
        )
        super().__init__(msg)
        self.row = row          # 1-based logical line (header line is 1), 0 if unknown
        self.col = col          # 0-based column index
        self.header = header    # raw header cell text
        self.value = value      # raw cell text
        self.reason = reason


class SchemaError(CsvObjectsError, ValueError):
    """A header cell does not follow the path/type grammar."""


class RecordError(CsvObjectsError, ValueError):
    """An object column holds text that is not valid JSON."""


class SourceError(CsvObjectsError):
    """Reading or decoding the underlying source failed."""


# ----------------------------
# Dialect
# ----------------------------

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_iso_or_rfc2822(text: str) -> datetime:
    """Parse ISO 8601 (a trailing "Z" is accepted) or RFC 2822 date strings."""
    s = text.strip()
    if s[-1:] in ("Z", "z"):
        s = s[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return email.utils.parsedate_to_datetime(text)


@dataclass(frozen=True)
class Dialect:
    separator: str = ";"
    encoding: str = "utf-8"
    encoding_errors: str = "strict"
    skip_empty_lines: bool = False
    # bytes (or characters, for text sources) requested per read
    chunk_size: int = 64 * 1024
    # records buffered by `async for` before the stream is paused
    queue_size: int = 64
    datetime_parser: Callable[[str], datetime] = staticmethod(parse_iso_or_rfc2822)

    def __post_init__(self) -> None:
        if not self.separator:
            raise ValueError("separator must be a non-empty string")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size!r}")
        if self.queue_size <= 0:
            raise ValueError(f"queue_size must be positive, got {self.queue_size!r}")


DEFAULT = Dialect()


def _resolve_dialect(dialect: Dialect, overrides: Dict[str, Any]) -> Dialect:
    if not overrides:
        return dialect
    return dataclasses.replace(dialect, **overrides)


# ----------------------------
# Schema / column descriptors
# ----------------------------

TypeName = str  # "string" | "integer" | "float" | "boolean" | "datetime" | "object"

TYPE_NAMES: Tuple[TypeName, ...] = ("string", "integer", "float", "object", "boolean", "datetime")


@dataclass(frozen=True)
class PathSegment:
    name: str
    index: Optional[int] = None   # set for `name[index]` segments

    def __str__(self) -> str:
        if self.index is None:
            return self.name
        return f"{self.name}[{self.index}]"


@dataclass(frozen=True)
class ColumnDescriptor:
    field_path: Tuple[PathSegment, ...]
    type_name: TypeName = "string"
    raw_header: str = ""          # header cell as written

    @property
    def leaf(self) -> PathSegment:
        return self.field_path[-1]

    @property
    def path(self) -> str:
        return ".".join(str(s) for s in self.field_path)


@dataclass(frozen=True)
class Schema:
    columns: Tuple[ColumnDescriptor, ...] = ()

    @property
    def paths(self) -> List[str]:
        return [c.path for c in self.columns]

    def __len__(self) -> int:
        return len(self.columns)


# ----------------------------
# Header parsing
# ----------------------------

HEADER_GRAMMAR = "<path>[(string|integer|float|object|boolean|datetime)]"
PATH_GRAMMAR = "name or name[index] segments joined by '.'"

_HEADER_RE = re.compile(
    r"(?P<path>[A-Za-z0-9._\[\]]+)"
    r"(?:\((?P<type>string|integer|float|object|boolean|datetime)\))?"
)
_PATH_RE = re.compile(r"[A-Za-z0-9_]+(?:\[[0-9]+\])?(?:\.[A-Za-z0-9_]+(?:\[[0-9]+\])?)*")
_SEGMENT_RE = re.compile(r"(?P<name>[A-Za-z0-9_]+)(?:\[(?P<index>[0-9]+)\])?")

_UNDEFINED_PATH = (PathSegment("undefined"),)


def parse_column_header(token: Optional[str], *, row: int = 1, col: int = 0) -> ColumnDescriptor:
    """
    Parse one header cell into a ColumnDescriptor.

    An empty cell maps to the "undefined" string column instead of failing, so
    ragged headers still decode. Anything else must match HEADER_GRAMMAR and
    its path part PATH_GRAMMAR, otherwise SchemaError is raised.
    """
    if not token:
        return ColumnDescriptor(field_path=_UNDEFINED_PATH, type_name="string", raw_header="")

    m = _HEADER_RE.fullmatch(token)
    if m is None:
        raise SchemaError(
            row=row, col=col, header=token,
            reason=f"Header not matching expected format {HEADER_GRAMMAR}"
        )

    path = m.group("path")
    if _PATH_RE.fullmatch(path) is None:
        raise SchemaError(
            row=row, col=col, header=token,
            reason=f"Header path not matching expected format: {PATH_GRAMMAR}"
        )

    segments: List[PathSegment] = []
    for part in path.split("."):
        sm = _SEGMENT_RE.fullmatch(part)
        index = sm.group("index")
        segments.append(PathSegment(sm.group("name"), None if index is None else int(index)))

    return ColumnDescriptor(
        field_path=tuple(segments),
        type_name=m.group("type") or "string",
        raw_header=token,
    )


def parse_header_row(headers: Sequence[Optional[str]], *, row: int = 1) -> Schema:
    return Schema(columns=tuple(
        parse_column_header(cell, row=row, col=i) for i, cell in enumerate(headers)
    ))


# ----------------------------
# Path resolution
# ----------------------------

def _child_dict(parent: Dict[str, Any], name: str) -> Dict[str, Any]:
    child = parent.get(name)
    if not isinstance(child, dict):
        child = parent[name] = {}
    return child


def _child_list(parent: Dict[str, Any], name: str) -> List[Any]:
    child = parent.get(name)
    if not isinstance(child, list):
        child = parent[name] = []
    return child


def resolve_parent(root: Dict[str, Any], field_path: Sequence[PathSegment]) -> Dict[str, Any]:
    """
    Return the mapping that receives the leaf of `field_path`, creating the
    intermediate mappings and lists on the way.

    Indexed segments grow their list with empty mappings up to the index, never
    further. A container slot holding something else (a scalar written by an
    earlier column) is replaced.
    """
    current = root
    for segment in field_path[:-1]:
        if segment.index is None:
            current = _child_dict(current, segment.name)
            continue
        items = _child_list(current, segment.name)
        while len(items) <= segment.index:
            items.append({})
        if not isinstance(items[segment.index], dict):
            items[segment.index] = {}
        current = items[segment.index]
    return current


def set_leaf(parent: Dict[str, Any], leaf: PathSegment, value: Any) -> None:
    """Store `value` at `leaf`, overwriting whatever is there."""
    if leaf.index is None:
        parent[leaf.name] = value
        return
    items = _child_list(parent, leaf.name)
    if len(items) <= leaf.index:
        items.extend([None] * (leaf.index + 1 - len(items)))
    items[leaf.index] = value


# ----------------------------
# Value coercion
# ----------------------------

_INT_RE = re.compile(r"\s*([+-]?[0-9]+)")
_FLOAT_RE = re.compile(r"\s*([+-]?(?:Infinity|(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?))")


def parse_int(raw: Optional[str]) -> Union[int, float]:
    """Leading decimal integer of `raw`, or NaN when there is none."""
    if raw is None:
        return math.nan
    m = _INT_RE.match(raw)
    if m is None:
        return math.nan
    try:
        return int(m.group(1))
    except ValueError:
        # past the int string-conversion digit limit
        return float(m.group(1))


def parse_float(raw: Optional[str]) -> float:
    """Leading decimal/exponent number of `raw`, or NaN when there is none."""
    if raw is None:
        return math.nan
    m = _FLOAT_RE.match(raw)
    if m is None:
        return math.nan
    return float(m.group(1))


def parse_datetime(
    raw: Optional[str],
    parser: Callable[[str], datetime] = parse_iso_or_rfc2822,
) -> Union[int, float]:
    """Milliseconds since the Unix epoch, or NaN. Naive datetimes are read as UTC."""
    if raw is None:
        return math.nan
    try:
        dt = parser(raw)
    except (TypeError, ValueError, IndexError, OverflowError):
        return math.nan
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def coerce(raw: Optional[str], type_name: TypeName, dialect: Dialect = DEFAULT) -> Any:
    """
    Convert one cell. Only "object" can fail (json.JSONDecodeError, a
    ValueError); the other types degrade to NaN / False.
    """
    if type_name == "integer":
        return parse_int(raw)
    if type_name == "float":
        return parse_float(raw)
    if type_name == "boolean":
        return raw is not None and raw.lower() == "true"
    if type_name == "datetime":
        return parse_datetime(raw, dialect.datetime_parser)
    if type_name == "object":
        if raw is None:
            raise ValueError("Missing value")
        try:
            return json.loads(raw)
        except RecursionError as e:
            raise ValueError(f"Nesting too deep: {e}") from e
    return raw


# ----------------------------
# Line reassembly
# ----------------------------

_LINE_BREAK_RE = re.compile(r"\r\n|\n|\r")


class LineReassembler:
    """
    Rebuild logical lines from text chunks cut at arbitrary positions.

    The incomplete tail of each chunk is kept in `fragment` and prefixed to the
    next one. A chunk ending in "\\r" keeps that "\\r" pending, so a "\\r\\n"
    pair cut in two is still a single line break.
    """

    def __init__(self) -> None:
        self.fragment = ""
        self._pending_cr = False

    def feed(self, chunk: str) -> Iterator[str]:
        text = self.fragment + ("\r" if self._pending_cr else "") + chunk
        self._pending_cr = text.endswith("\r")
        if self._pending_cr:
            text = text[:-1]
        pieces = _LINE_BREAK_RE.split(text)
        self.fragment = pieces.pop()
        return iter(pieces)

    def finish(self) -> Iterator[str]:
        lines: List[str] = []
        if self._pending_cr:
            # the held "\r" terminated the fragment
            lines.append(self.fragment)
            self.fragment = ""
            self._pending_cr = False
        if self.fragment:
            lines.append(self.fragment)
            self.fragment = ""
        return iter(lines)


# ----------------------------
# Record decoding
# ----------------------------

AWAITING_HEADER = "awaiting_header"
STREAMING_ROWS = "streaming_rows"
DRAINING = "draining"
ENDED = "ended"
CLOSED = "closed"


class RecordDecoder:
    """Turns logical lines into records: the first line is the schema, the rest are data."""

    def __init__(self, dialect: Dialect = DEFAULT) -> None:
        self._dialect = dialect
        self.schema: Optional[Schema] = None
        self.line_num = 0

    @property
    def state(self) -> str:
        return AWAITING_HEADER if self.schema is None else STREAMING_ROWS

    def set_schema(self, schema: Schema) -> None:
        if self.schema is not None:
            raise RuntimeError("Schema already parsed for this stream")
        self.schema = schema
        logger.debug("Parsed schema with %d columns: %s", len(schema), schema.paths)

    def process(self, line: str) -> Optional[Dict[str, Any]]:
        """Consume one logical line; return its record, or None for header/skipped lines."""
        self.line_num += 1
        if self._dialect.skip_empty_lines and not line:
            return None
        tokens = line.split(self._dialect.separator)
        if self.schema is None:
            self.set_schema(parse_header_row(tokens, row=self.line_num))
            return None
        return self.decode(tokens)

    def decode(self, tokens: Sequence[str]) -> Dict[str, Any]:
        if self.schema is None:
            raise RuntimeError("No schema: the header line has not been processed")
        columns = self.schema.columns
        if len(tokens) != len(columns):
            logger.debug(
                "Line %d has %d cells for %d columns", self.line_num, len(tokens), len(columns)
            )

        record: Dict[str, Any] = {}
        for j, column in enumerate(columns):
            raw = tokens[j] if j < len(tokens) else None
            parent = resolve_parent(record, column.field_path)
            set_leaf(parent, column.leaf, self._coerce_cell(column, raw, col=j))
        return record

    def _coerce_cell(self, column: ColumnDescriptor, raw: Optional[str], *, col: int) -> Any:
        try:
            return coerce(raw, column.type_name, self._dialect)
        except ValueError as e:
            raise RecordError(
                row=self.line_num, col=col, header=column.raw_header,
                value="" if raw is None else raw,
                reason=f"Parse failed for type {column.type_name!r}: {e}"
            ) from e


# ----------------------------
# Sources
# ----------------------------

class _ChunkSource:
    """Reads chunks from a path or a file-like object, decoding bytes incrementally."""

    def __init__(
        self,
        source: Any,
        dialect: Dialect,
        *,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> None:
        self._dialect = dialect
        self._decoder: Optional[codecs.IncrementalDecoder] = None
        self._remaining: Optional[int] = None
        self._start = start or 0
        self._owned = False

        if isinstance(source, (str, os.PathLike)):
            self._path: Optional[str] = os.path.normpath(os.fspath(source))
            self._file: Any = None
            self.name = self._path
        else:
            if start is not None or end is not None:
                raise ValueError("start/end offsets are only supported for path sources")
            if not hasattr(source, "read"):
                raise TypeError(f"Expected a path or an object with read(), got {type(source).__name__}")
            self._path = None
            self._file = source
            self.name = getattr(source, "name", repr(source))

        if end is not None:
            if end < self._start:
                raise ValueError(f"end ({end}) must not be before start ({self._start})")
            # end offset is inclusive
            self._remaining = end - self._start + 1

    def open(self) -> bool:
        """Open a path source. Returns True when a file was opened here."""
        if self._path is None or self._file is not None:
            return False
        try:
            f = open(self._path, "rb")
        except OSError as e:
            raise SourceError(reason=f"Cannot open {self._path!r}: {e}") from e
        if self._start:
            f.seek(self._start)
        self._file = f
        self._owned = True
        return True

    def read(self) -> Any:
        """Next raw chunk: str, bytes, or an awaitable of either. Empty means end of input."""
        size = self._dialect.chunk_size
        if self._remaining is not None:
            size = min(size, self._remaining)
            if size <= 0:
                return b""
        try:
            return self._file.read(size)
        except OSError as e:
            raise SourceError(reason=f"Read failed on {self.name!r}: {e}") from e

    def decode(self, data: Union[str, bytes]) -> str:
        if isinstance(data, str):
            return data
        if self._remaining is not None:
            self._remaining -= len(data)
        if self._decoder is None:
            self._decoder = codecs.getincrementaldecoder(self._dialect.encoding)(
                errors=self._dialect.encoding_errors
            )
        try:
            return self._decoder.decode(data, final=not data)
        except UnicodeDecodeError as e:
            raise SourceError(reason=f"Cannot decode {self.name!r} as {self._dialect.encoding}: {e}") from e

    def close(self) -> None:
        if self._owned and self._file is not None:
            self._file.close()
            self._owned = False


# ----------------------------
# Reader (synchronous)
# ----------------------------

class ObjectReader:
    """Record iterator in the manner of csv.reader; the header is consumed on construction."""

    def __init__(
        self,
        source: Any,
        dialect: Dialect = DEFAULT,
        *,
        start: Optional[int] = None,
        end: Optional[int] = None,
        **overrides: Any,
    ) -> None:
        self.dialect = _resolve_dialect(dialect, overrides)
        self._source = _ChunkSource(source, self.dialect, start=start, end=end)
        self._lines = LineReassembler()
        self._decoder = RecordDecoder(self.dialect)
        self._pending: Deque[str] = deque()
        self._eof = False

        self._source.open()
        try:
            while self._decoder.schema is None:
                line = self._next_line()
                if line is None:
                    break
                self._decoder.process(line)
        except BaseException:
            self.close()
            raise
        self.schema = self._decoder.schema if self._decoder.schema is not None else Schema()

    @property
    def line_num(self) -> int:
        return self._decoder.line_num

    def __iter__(self) -> "ObjectReader":
        return self

    def __next__(self) -> Dict[str, Any]:
        while True:
            line = self._next_line()
            if line is None:
                self.close()
                raise StopIteration
            try:
                record = self._decoder.process(line)
            except Exception:
                self.close()
                raise
            if record is not None:
                return record

    def __enter__(self) -> "ObjectReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._pending.clear()
        self._eof = True
        self._source.close()

    def _next_line(self) -> Optional[str]:
        while not self._pending:
            if self._eof:
                return None
            self._fill()
        return self._pending.popleft()

    def _fill(self) -> None:
        data = self._source.read()
        if inspect.isawaitable(data):
            if inspect.iscoroutine(data):
                data.close()
            raise TypeError(f"{self._source.name!r} reads asynchronously, use CsvObjectsStream")
        self._pending.extend(self._lines.feed(self._source.decode(data)))
        if not data:
            self._pending.extend(self._lines.finish())
            self._eof = True


def reader(
    source: Any,
    dialect: Dialect = DEFAULT,
    *,
    start: Optional[int] = None,
    end: Optional[int] = None,
    **overrides: Any,
) -> ObjectReader:
    return ObjectReader(source, dialect, start=start, end=end, **overrides)


# ----------------------------
# Event stream (asyncio)
# ----------------------------

Listener = Callable[..., Any]

_QUEUE_END = "end"
_QUEUE_ERROR = "error"
_QUEUE_LINE = "line"


class CsvObjectsStream:
    """
    Event-driven decoder running on an asyncio loop.

    Events, in order: "open" (path sources only), "line" once per record, then
    exactly one of "error" or "end". Each line and each read is its own
    loop.call_soon callback, so other tasks run between lines. pause(),
    resume() and close() take effect at the next callback and may be called
    from inside a listener.

    The stream must be created while its loop is running, unless `loop` is given.
    """

    EVENTS = ("open", "line", "error", "end")

    def __init__(
        self,
        source: Any,
        dialect: Dialect = DEFAULT,
        *,
        start: Optional[int] = None,
        end: Optional[int] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        **overrides: Any,
    ) -> None:
        self.dialect = _resolve_dialect(dialect, overrides)
        self._source = _ChunkSource(source, self.dialect, start=start, end=end)
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self._listeners: Dict[str, List[Tuple[Listener, bool]]] = {name: [] for name in self.EVENTS}
        self._reassembler = LineReassembler()
        self._decoder = RecordDecoder(self.dialect)
        self._lines: Deque[str] = deque()
        self._eof = False
        self._started = False
        self._paused = False
        self._closed = False
        self._ended = False
        self._reading: Optional[asyncio.Future] = None
        self._step_handle: Optional[asyncio.Handle] = None
        self.exception: Optional[BaseException] = None

        self._loop.call_soon(self._init_source)

    # -- listeners --

    def on(self, event: str, callback: Listener) -> "CsvObjectsStream":
        self._check_event(event)
        self._listeners[event].append((callback, False))
        return self

    def once(self, event: str, callback: Listener) -> "CsvObjectsStream":
        self._check_event(event)
        self._listeners[event].append((callback, True))
        return self

    def off(self, event: str, callback: Listener) -> "CsvObjectsStream":
        self._check_event(event)
        self._listeners[event] = [(cb, once) for cb, once in self._listeners[event] if cb != callback]
        return self

    def _check_event(self, event: str) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}, expected one of {self.EVENTS}")

    def _emit(self, event: str, *args: Any) -> None:
        listeners = self._listeners[event]
        if any(once for _, once in listeners):
            self._listeners[event] = [(cb, once) for cb, once in listeners if not once]
        for callback, _ in listeners:
            callback(*args)

    # -- flow control --

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def state(self) -> str:
        if self._ended:
            return ENDED
        if self._closed:
            return CLOSED
        if self._eof:
            return DRAINING
        return self._decoder.state

    @property
    def schema(self) -> Optional[Schema]:
        return self._decoder.schema

    @property
    def line_num(self) -> int:
        return self._decoder.line_num

    def pause(self) -> None:
        if not self._paused:
            self._paused = True
            logger.debug("Paused %s at line %d", self._source.name, self._decoder.line_num)

    def resume(self) -> None:
        if self._paused:
            self._paused = False
            logger.debug("Resumed %s at line %d", self._source.name, self._decoder.line_num)
        self._schedule()

    def close(self) -> None:
        """Stop reading and drop buffered lines; "end" follows on a later loop turn."""
        if self._closed or self._ended:
            return
        self._closed = True
        self._eof = True
        self._lines.clear()
        self._release()
        logger.debug("Closed %s with %d lines processed", self._source.name, self._decoder.line_num)
        self._schedule()

    async def wait(self) -> None:
        """Return once "end" is emitted; raise the error if the stream failed."""
        if not self._ended:
            done = self._loop.create_future()

            def on_end() -> None:
                if not done.done():
                    done.set_result(None)

            def on_error(exc: BaseException) -> None:
                if not done.done():
                    done.set_exception(exc)

            self.once("end", on_end)
            self.once("error", on_error)
            await done
        if self.exception is not None:
            raise self.exception

    def __aiter__(self) -> Any:
        return self._iter_records()

    async def _iter_records(self) -> Any:
        if self._ended:
            if self.exception is not None:
                raise self.exception
            return

        queue: asyncio.Queue = asyncio.Queue()
        throttled = False

        def on_line(record: Dict[str, Any]) -> None:
            nonlocal throttled
            queue.put_nowait((_QUEUE_LINE, record))
            if queue.qsize() >= self.dialect.queue_size and not self._paused:
                throttled = True
                self.pause()

        def on_end() -> None:
            queue.put_nowait((_QUEUE_END, None))

        def on_error(exc: BaseException) -> None:
            queue.put_nowait((_QUEUE_ERROR, exc))

        self.on("line", on_line)
        self.once("end", on_end)
        self.once("error", on_error)
        try:
            while True:
                kind, item = await queue.get()
                if kind == _QUEUE_END:
                    return
                if kind == _QUEUE_ERROR:
                    raise item
                if throttled and queue.qsize() <= self.dialect.queue_size // 2:
                    throttled = False
                    self.resume()
                yield item
        finally:
            self.off("line", on_line)
            self.off("end", on_end)
            self.off("error", on_error)
            self.close()

    # -- processing --

    def _init_source(self) -> None:
        if self._closed:
            return
        try:
            opened = self._source.open()
        except SourceError as e:
            self._fail(e)
            return
        self._started = True
        self._schedule()
        if opened:
            logger.debug("Opened %s", self._source.name)
            self._emit("open")

    def _schedule(self) -> None:
        if self._step_handle is None and not self._ended:
            self._step_handle = self._loop.call_soon(self._step)

    def _step(self) -> None:
        self._step_handle = None
        if self._ended or (self._paused and not self._closed):
            return
        if not self._lines:
            if self._eof:
                self._finish()
            elif self._started and self._reading is None:
                self._request_chunk()
            return

        line = self._lines.popleft()
        try:
            record = self._decoder.process(line)
        except Exception as e:
            self._fail(e)
            return
        self._schedule()
        if record is not None:
            self._emit("line", record)

    def _request_chunk(self) -> None:
        try:
            data = self._source.read()
        except SourceError as e:
            self._fail(e)
            return
        if inspect.isawaitable(data):
            self._reading = asyncio.ensure_future(data, loop=self._loop)
            self._reading.add_done_callback(self._on_read_done)
        else:
            self._on_data(data)

    def _on_read_done(self, future: asyncio.Future) -> None:
        self._reading = None
        if future.cancelled() or self._closed:
            return
        exc = future.exception()
        if exc is not None:
            err = SourceError(reason=f"Read failed on {self._source.name!r}: {exc}")
            err.__cause__ = exc
            self._fail(err)
            return
        self._on_data(future.result())

    def _on_data(self, data: Union[str, bytes]) -> None:
        try:
            text = self._source.decode(data)
        except SourceError as e:
            self._fail(e)
            return
        self._lines.extend(self._reassembler.feed(text))
        if not data:
            self._lines.extend(self._reassembler.finish())
            self._eof = True
            logger.debug("End of input on %s, %d lines buffered", self._source.name, len(self._lines))
        self._schedule()

    def _release(self) -> None:
        if self._reading is not None:
            self._reading.cancel()
            self._reading = None
        self._source.close()

    def _finish(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._release()
        logger.debug("Finished %s after %d lines", self._source.name, self._decoder.line_num)
        self._emit("end")

    def _fail(self, exc: Exception) -> None:
        if self._ended:
            return
        self._ended = True
        self._lines.clear()
        self.exception = exc
        self._release()
        if self._listeners["error"]:
            self._emit("error", exc)
        else:
            self._loop.call_exception_handler({
                "message": f"Unhandled error in CsvObjectsStream for {self._source.name!r}",
                "exception": exc,
            })


async def parse_csv(text: str, dialect: Dialect = DEFAULT, **overrides: Any) -> List[Dict[str, Any]]:
    """Decode a whole string; resolves with every record, raises on the first error."""
    records: List[Dict[str, Any]] = []
    stream = CsvObjectsStream(io.StringIO(text), dialect, **overrides)
    stream.on("line", records.append)
    await stream.wait()
    return records


__all__ = [
    "CsvObjectsError",
    "SchemaError",
    "RecordError",
    "SourceError",
    "Dialect",
    "DEFAULT",
    "TYPE_NAMES",
    "PathSegment",
    "ColumnDescriptor",
    "Schema",
    "LineReassembler",
    "RecordDecoder",
    "ObjectReader",
    "CsvObjectsStream",
    "__version__",
    "coerce",
    "parse_column_header",
    "parse_csv",
    "parse_datetime",
    "parse_float",
    "parse_header_row",
    "parse_int",
    "parse_iso_or_rfc2822",
    "reader",
    "resolve_parent",
    "set_leaf",
]

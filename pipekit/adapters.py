import csv
from collections.abc import Iterator
import json
from pathlib import Path
import sys
from typing import TextIO

from pipekit.errors import ConfigError, ParseError
from pipekit.records import MISSING, Record, parse_json_line, record_from_row, thaw_value


FORMATS = ("jsonl", "csv", "tsv", "lines")
_SUFFIX_FORMATS = {
    ".jsonl": "jsonl",
    ".ndjson": "jsonl",
    ".json": "jsonl",
    ".csv": "csv",
    ".tsv": "tsv",
}


def resolve_path(path: str | Path) -> Path:
    return Path(path).expanduser()


def detect_format(path: str | Path | None, fmt: str | None = None) -> str:
    if fmt is not None:
        if fmt not in FORMATS:
            raise ConfigError(f"unknown format {fmt!r}, expected one of {', '.join(FORMATS)}")
        return fmt
    if path is None or str(path) == "-":
        return "jsonl"
    return _SUFFIX_FORMATS.get(resolve_path(path).suffix.lower(), "lines")


class _TextSource:
    # Files are opened on first iteration so a missing input fails the run, not its setup.
    def __init__(self, target: str | Path | TextIO) -> None:
        self.target = target

    def _lines(self) -> Iterator[str]:
        if isinstance(self.target, (str, Path)):
            with resolve_path(self.target).open("r", encoding="utf-8", newline="") as infile:
                yield from infile
        else:
            yield from self.target


class JsonLinesSource(_TextSource):
    def __iter__(self) -> Iterator[Record | ParseError]:
        for position, line in enumerate(self._lines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield parse_json_line(line, position=position)
            except ParseError as exc:
                yield exc


class DelimitedSource(_TextSource):
    def __init__(
        self,
        target: str | Path | TextIO,
        *,
        delimiter: str = ",",
        header: list[str] | None = None,
        infer_types: bool = True,
    ) -> None:
        super().__init__(target)
        self.delimiter = delimiter
        self.header = header
        self.infer_types = infer_types

    def __iter__(self) -> Iterator[Record | ParseError]:
        header = self.header
        reader = csv.reader(self._lines(), delimiter=self.delimiter)
        while True:
            try:
                cells = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                yield ParseError(f"invalid delimited row: {exc}", position=reader.line_num)
                continue
            if not cells:
                continue
            if header is None:
                header = cells
                continue
            try:
                yield record_from_row(header, cells, infer_types=self.infer_types, position=reader.line_num)
            except ParseError as exc:
                yield exc


class LineSource(_TextSource):
    def __init__(self, target: str | Path | TextIO, *, field: str = "line", skip_blank: bool = True) -> None:
        super().__init__(target)
        self.field = field
        self.skip_blank = skip_blank

    def __iter__(self) -> Iterator[Record]:
        for line in self._lines():
            line = line.rstrip("\r\n")
            if self.skip_blank and not line.strip():
                continue
            yield Record({self.field: line})


class _TextSink:
    def __init__(self, target: str | Path | TextIO) -> None:
        self.target = target
        self._stream: TextIO | None = None
        self._owned = isinstance(target, (str, Path))
        self._closed = False

    def _output(self) -> TextIO:
        if self._stream is None:
            if self._owned:
                path = resolve_path(self.target)
                path.parent.mkdir(parents=True, exist_ok=True)
                self._stream = path.open("w", encoding="utf-8", newline="")
            else:
                self._stream = self.target
        return self._stream

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        stream = self._output()
        stream.flush()
        if self._owned:
            stream.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class JsonLinesSink(_TextSink):
    def write(self, record: Record) -> None:
        output = self._output()
        output.write(json.dumps(record.to_dict()))
        output.write("\n")


def _cell(value: object) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (tuple, Record)):
        return json.dumps(thaw_value(value))
    return str(value)


class DelimitedSink(_TextSink):
    def __init__(self, target: str | Path | TextIO, *, delimiter: str = ",", header: list[str] | None = None) -> None:
        super().__init__(target)
        self.delimiter = delimiter
        self.header = header
        self._writer = None

    def write(self, record: Record) -> None:
        if self._writer is None:
            self._writer = csv.writer(self._output(), delimiter=self.delimiter, lineterminator="\n")
            if self.header is None:
                self.header = list(record)
            self._writer.writerow(self.header)
        self._writer.writerow([_cell(record.field(name)) for name in self.header])


class LineSink(_TextSink):
    def __init__(self, target: str | Path | TextIO, *, field: str = "line") -> None:
        super().__init__(target)
        self.field = field

    def write(self, record: Record) -> None:
        output = self._output()
        output.write(_cell(record.field(self.field)))
        output.write("\n")


class ListSink:
    def __init__(self) -> None:
        self.records: list[Record] = []

    def write(self, record: Record) -> None:
        self.records.append(record)

    def close(self) -> None:
        pass


def open_source(target: str | Path, fmt: str | None = None, *, infer_types: bool = True):
    fmt = detect_format(target, fmt)
    stream_or_path = sys.stdin if str(target) == "-" else target
    if fmt == "jsonl":
        return JsonLinesSource(stream_or_path)
    if fmt in ("csv", "tsv"):
        return DelimitedSource(stream_or_path, delimiter="\t" if fmt == "tsv" else ",", infer_types=infer_types)
    return LineSource(stream_or_path)


def open_sink(target: str | Path, fmt: str | None = None):
    fmt = detect_format(target, fmt)
    stream_or_path = sys.stdout if str(target) == "-" else target
    if fmt == "jsonl":
        return JsonLinesSink(stream_or_path)
    if fmt in ("csv", "tsv"):
        return DelimitedSink(stream_or_path, delimiter="\t" if fmt == "tsv" else ",")
    return LineSink(stream_or_path)

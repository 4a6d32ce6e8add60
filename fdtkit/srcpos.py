"""Source file tracking and source position bookkeeping for device tree input."""

from __future__ import annotations

import dataclasses
import os
import sys
from dataclasses import dataclass, field
from typing import IO, List, Optional, TextIO, Tuple

from .util import FatalError, escape_path, join_path

__all__ = [
    "SourceFile",
    "SourcePosition",
    "SourceTracker",
    "format_error",
    "report_error",
]

MAX_SRCFILE_DEPTH = 200


def _get_dirname(path: str) -> Optional[str]:
    slash = path.rfind("/")
    if slash < 0:
        return None
    return path[:slash]


@dataclass
class SourceFile:
    """State of one source file being read."""

    name: Optional[str]
    dir: Optional[str] = None
    lineno: int = 1
    colno: int = 1
    prev: Optional["SourceFile"] = field(default=None, repr=False, compare=False)
    stream: Optional[IO[bytes]] = field(default=None, repr=False, compare=False)


@dataclass
class SourcePosition:
    """A span of source text, possibly chained to further spans."""

    first_line: int = 0
    first_column: int = 0
    last_line: int = 0
    last_column: int = 0
    file: Optional[SourceFile] = None
    next: Optional["SourcePosition"] = field(default=None, repr=False)

    def copy(self) -> "SourcePosition":
        """Return an unchained copy with its own copy of the file state."""
        if self.next is not None:
            raise ValueError("cannot copy a chained source position")
        file_copy = dataclasses.replace(self.file) if self.file is not None else None
        return dataclasses.replace(self, file=file_copy, next=None)

    def extend(self, newtail: Optional["SourcePosition"]) -> "SourcePosition":
        """Append *newtail* to the end of this position's chain and return self."""
        tail = self
        while tail.next is not None:
            tail = tail.next
        tail.next = newtail
        return self

    def __str__(self) -> str:
        fname = "<no-file>"
        if self.file is not None and self.file.name:
            fname = self.file.name
        if self.first_line != self.last_line:
            return (f"{fname}:{self.first_line}.{self.first_column}"
                    f"-{self.last_line}.{self.last_column}")
        if self.first_column != self.last_column:
            return (f"{fname}:{self.first_line}.{self.first_column}"
                    f"-{self.last_column}")
        return f"{fname}:{self.first_line}.{self.first_column}"

    def string_first(self, level: int,
                     tracker: Optional["SourceTracker"] = None) -> Optional[str]:
        """Describe the chain for an annotation, using each span's first line."""
        return _string_comment(self, True, level, tracker)

    def string_last(self, level: int,
                    tracker: Optional["SourceTracker"] = None) -> Optional[str]:
        """Describe the chain for an annotation, using each span's last line."""
        return _string_comment(self, False, level, tracker)


def _string_comment(pos: Optional[SourcePosition], first_line: bool, level: int,
                    tracker: Optional["SourceTracker"]) -> Optional[str]:
    if pos is None:
        return "<no-file>:<no-line>" if level > 1 else None

    if pos.file is None:
        fname = "<no-file>"
    elif pos.file.name is None:
        fname = "<no-filename>"
    elif level > 1 or tracker is None:
        fname = pos.file.name
    else:
        fname = tracker.shorten_to_initial_path(pos.file.name) or pos.file.name

    if level > 1:
        first = (f"{fname}:{pos.first_line}:{pos.first_column}"
                 f"-{pos.last_line}:{pos.last_column}")
    else:
        first = f"{fname}:{pos.first_line if first_line else pos.last_line}"

    if pos.next is not None:
        rest = _string_comment(pos.next, first_line, level, tracker)
        return f"{first}, {rest}"
    return first


class SourceTracker:
    """Keeps the stack of open source files, the search path and the dependency output."""

    def __init__(self, depfile: Optional[TextIO] = None) -> None:
        self.depfile = depfile
        self.current: Optional[SourceFile] = None
        self.search_paths: List[str] = []
        self.depth = 0
        self.initial_path: Optional[str] = None
        self.initial_pathlen = 0
        self._initial_cpp = True

    def _set_initial_path(self, fname: str) -> None:
        self.initial_path = fname
        self.initial_pathlen = fname.count("/")

    def shorten_to_initial_path(self, fname: str) -> Optional[str]:
        """Express *fname* relative to the directory of the initial file, or None."""
        if self.initial_path is None:
            return None
        prevslash = -1
        slashes = 0
        for idx, (a, b) in enumerate(zip(fname, self.initial_path)):
            if a != b:
                break
            if a == "/":
                prevslash = idx
                slashes += 1
        if prevslash < 0:
            return None
        diff = self.initial_pathlen - slashes
        return "../" * diff + fname[prevslash + 1:]

    def add_search_path(self, dirname: str) -> None:
        """Add *dirname* to the end of the include search path."""
        self.search_paths.append(dirname)

    @staticmethod
    def _try_open(dirname: Optional[str], fname: str) -> Tuple[IO[bytes], str]:
        if dirname is None or fname.startswith("/"):
            fullname = fname
        else:
            fullname = join_path(dirname, fname)
        return open(fullname, "rb"), fullname

    def _open_any_on_path(self, fname: str) -> Tuple[IO[bytes], str]:
        cur_dir = self.current.dir if self.current is not None else None
        last_error: Optional[OSError] = None
        for dirname in [cur_dir, *self.search_paths]:
            try:
                return self._try_open(dirname, fname)
            except OSError as exc:
                last_error = exc
        assert last_error is not None
        errno = last_error.errno
        reason = os.strerror(errno) if errno is not None else str(last_error)
        raise FatalError(f'Couldn\'t open "{fname}": {reason}')

    def relative_open(self, fname: str) -> Tuple[IO[bytes], str]:
        """Open *fname*, searching the current file's directory then the search path.

        ``-`` means standard input. Returns the stream and the name it was found under.
        """
        if fname == "-":
            stream: IO[bytes] = sys.stdin.buffer if hasattr(sys.stdin, "buffer") \
                else sys.stdin  # type: ignore[assignment]
            fullname = "<stdin>"
        else:
            stream, fullname = self._open_any_on_path(fname)
        if self.depfile is not None:
            self.depfile.write(" " + escape_path(fullname))
        return stream, fullname

    def push(self, fname: str) -> SourceFile:
        """Open *fname* and make it the current source file."""
        depth = self.depth
        self.depth += 1
        if depth >= MAX_SRCFILE_DEPTH:
            raise FatalError("Includes nested too deeply")
        stream, fullname = self.relative_open(fname)
        srcfile = SourceFile(name=fullname, dir=_get_dirname(fullname),
                             prev=self.current, stream=stream)
        self.current = srcfile
        if self.depth == 1:
            self._set_initial_path(fullname)
        return srcfile

    def pop(self) -> bool:
        """Close the current source file; tell whether an enclosing file remains."""
        srcfile = self.current
        if srcfile is None:
            raise ValueError("no source file is open")
        self.current = srcfile.prev
        stream = srcfile.stream
        if stream is not None and stream not in (sys.stdin, getattr(sys.stdin, "buffer", None)):
            try:
                stream.close()
            except OSError as exc:
                raise FatalError(
                    f'Error closing "{srcfile.name}": {exc.strerror}') from exc
        return self.current is not None

    def update(self, text: str) -> SourcePosition:
        """Advance over *text* in the current file and return the span it covered."""
        cur = self.current
        if cur is None:
            raise ValueError("no source file is open")
        first_line, first_column = cur.lineno, cur.colno
        for ch in text:
            if ch == "\n":
                cur.lineno += 1
                cur.colno = 1
            else:
                cur.colno += 1
        return SourcePosition(first_line, first_column, cur.lineno, cur.colno, cur)

    def set_line(self, fname: str, line: int) -> None:
        """Apply a line marker: the current file is now *fname* at *line*."""
        if self.current is None:
            raise ValueError("no source file is open")
        self.current.name = fname
        self.current.lineno = line
        if self._initial_cpp:
            self._initial_cpp = False
            self._set_initial_path(fname)


def format_error(pos: SourcePosition, prefix: str, message: str) -> str:
    """Format a diagnostic for *pos*."""
    return f"{prefix}: {pos} {message}"


def report_error(pos: SourcePosition, prefix: str, message: str,
                 stream: Optional[TextIO] = None) -> None:
    """Write a diagnostic for *pos* to *stream*, standard error by default."""
    out = stream if stream is not None else sys.stderr
    out.write(format_error(pos, prefix, message) + "\n")
"""Shared helpers: path handling, escapes, blob I/O, type decoding and usage text."""

from __future__ import annotations

import string
import struct
import sys
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

__all__ = [
    "FatalError",
    "UsageOption",
    "escape_path",
    "join_path",
    "is_printable_string",
    "get_escape_char",
    "read_fdt",
    "write_fdt",
    "decode_type",
    "format_data",
    "format_usage",
]

_ARG_PLACEHOLDER = "<arg>"
_TYPE_CHARS = "iuxsr"
_QUALIFIERS = "hlLb"
_QUALIFIER_SIZES = {"b": 1, "h": 2, "l": 4}
_HEADER = struct.Struct(">II")


class FatalError(Exception):
    """An unrecoverable error that ends the current operation."""


@dataclass(frozen=True)
class UsageOption:
    """One long option shown in a usage message."""

    name: str
    help: str
    short: Optional[str] = None
    has_arg: bool = False


def escape_path(path: str) -> str:
    """Return *path* with every space escaped by a backslash."""
    return path.replace(" ", "\\ ")


def join_path(path: str, name: str) -> str:
    """Join a directory and a name with exactly one separating slash."""
    if path.endswith("/"):
        return path + name
    return f"{path}/{name}"


def _is_print(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def is_printable_string(data: bytes) -> bool:
    """Tell whether *data* is one or more non-empty, NUL-terminated printable strings."""
    if not data or data[-1] != 0:
        return False
    return all(
        segment and all(_is_print(b) for b in segment)
        for segment in data[:-1].split(b"\0")
    )


def _take_digits(s: str, start: int, limit: int, digits: str) -> str:
    taken = []
    for ch in s[start:start + limit]:
        if ch not in digits:
            break
        taken.append(ch)
    return "".join(taken)


def get_escape_char(s: str, i: int) -> Tuple[str, int]:
    """Decode the escape sequence starting at index *i* of *s*.

    *i* points just past the backslash. Returns the decoded character and
    the index of the first character after the sequence.
    """
    c = s[i]
    simple = {"a": "\a", "b": "\b", "t": "\t", "n": "\n",
              "v": "\v", "f": "\f", "r": "\r"}
    if c in simple:
        return simple[c], i + 1
    if c in "01234567":
        digits = _take_digits(s, i, 3, "01234567")
        return chr(int(digits, 8) & 0xFF), i + len(digits)
    if c == "x":
        digits = _take_digits(s, i + 1, 2, string.hexdigits)
        if not digits:
            raise FatalError("\\x used with no following hex digits")
        return chr(int(digits, 16) & 0xFF), i + 1 + len(digits)
    return c, i + 1


def read_fdt(filename: str) -> bytes:
    """Read a whole device tree blob from *filename*, or stdin for ``-``."""
    if filename == "-":
        return sys.stdin.buffer.read()
    with open(filename, "rb") as f:
        return f.read()


def _totalsize(blob: bytes) -> int:
    if len(blob) < _HEADER.size:
        raise ValueError("blob is too short to hold a header")
    _magic, totalsize = _HEADER.unpack_from(blob, 0)
    if totalsize > len(blob):
        raise ValueError(
            f"blob header claims {totalsize} bytes but only {len(blob)} given"
        )
    return totalsize


def write_fdt(filename: str, blob: bytes) -> None:
    """Write the blob's header-declared total size to *filename*, or stdout for ``-``."""
    payload = bytes(blob[:_totalsize(blob)])
    if filename == "-":
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        return
    with open(filename, "wb") as f:
        f.write(payload)


def decode_type(fmt: str) -> Tuple[str, int]:
    """Decode a data type string such as ``hx`` into ``(type, size)``.

    Size is -1 for strings, raw data and when no size modifier is given.
    Raises ValueError for an invalid format.
    """
    if not fmt:
        raise ValueError("empty type format")
    pos = 0
    qualifier = ""
    if fmt[pos] in _QUALIFIERS:
        qualifier = fmt[pos]
        pos += 1
        if pos < len(fmt) and fmt[pos] == qualifier:
            pos += 1
            if qualifier == "h":
                qualifier = "b"
    if pos >= len(fmt) or fmt[pos] not in _TYPE_CHARS:
        raise ValueError(f"invalid type format {fmt!r}")
    type_char = fmt[pos]
    pos += 1
    if pos != len(fmt):
        raise ValueError(f"invalid type format {fmt!r}")
    size = -1
    if type_char not in "sr":
        size = _QUALIFIER_SIZES.get(qualifier, -1)
    return type_char, size


def format_data(data: bytes) -> str:
    """Render property data as strings, cells or bytes; empty data gives ``""``."""
    if not data:
        return ""
    if is_printable_string(data):
        parts = data[:-1].split(b"\0")
        return " = " + ", ".join(f'"{p.decode("ascii")}"' for p in parts)
    if len(data) % 4 == 0:
        cells = struct.unpack(f">{len(data) // 4}I", data)
        return " = <" + " ".join(f"0x{c:08x}" for c in cells) + ">"
    return " = [" + " ".join(f"{b:02x}" for b in data) + "]"


def format_usage(
    synopsis: str,
    short_opts: str,
    options: Iterable[UsageOption],
    errmsg: Optional[str] = None,
) -> str:
    """Build a usage message listing *options*, with an error line if *errmsg* is given."""
    options = list(options)
    arg_len = len(_ARG_PLACEHOLDER) + 1
    lines = [f"Usage: {synopsis}\n", "\n", f"Options: -[{short_opts}]\n"]

    optlen = 0
    for opt in options:
        width = len(opt.name) + 1 + (arg_len if opt.has_arg else 0)
        optlen = max(optlen, width)

    for opt in options:
        prefix = f"  -{opt.short}, " if opt.short else "      "
        if opt.has_arg:
            pad = " " * abs(optlen - len(opt.name) - arg_len)
            flag = f"--{opt.name} {_ARG_PLACEHOLDER}{pad}"
        else:
            flag = f"--{opt.name:<{optlen}}"
        lines.append(f"{prefix}{flag}{opt.help}\n")

    if errmsg is not None:
        lines.append(f"\nError: {errmsg}\n")
    return "".join(lines)
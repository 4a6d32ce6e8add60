"""Write a live device tree back out as device tree source text."""

from __future__ import annotations

import io
from typing import List, Optional, TextIO

from .livetree import DeviceTree, Marker, MarkerType, Node, Property, active_labels
from .srcpos import SourcePosition

__all__ = ["dt_to_source", "write_tree_source"]

_DELIM_START = {
    MarkerType.TYPE_UINT8: "[",
    MarkerType.TYPE_UINT16: "/bits/ 16 <",
    MarkerType.TYPE_UINT32: "<",
    MarkerType.TYPE_UINT64: "/bits/ 64 <",
    MarkerType.TYPE_STRING: "",
}
_DELIM_END = {
    MarkerType.TYPE_UINT8: "]",
    MarkerType.TYPE_UINT16: ">",
    MarkerType.TYPE_UINT32: ">",
    MarkerType.TYPE_UINT64: ">",
    MarkerType.TYPE_STRING: "",
}
_CONTROL_CHARS = frozenset(b"\a\b\t\n\v\f\r")
_ESCAPES = {
    0x07: "\\a", 0x08: "\\b", 0x09: "\\t", 0x0A: "\\n", 0x0B: "\\v",
    0x0C: "\\f", 0x0D: "\\r", 0x5C: "\\\\", 0x22: '\\"', 0x00: "\\0",
}
_CELL_SIZE = 4


def _is_print(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _is_string_byte(byte: int) -> bool:
    return _is_print(byte) or byte == 0 or byte in _CONTROL_CHARS


def _format_string(chunk: bytes) -> str:
    if not chunk:
        return ""
    if chunk[-1] != 0:
        raise ValueError("string data is not NUL-terminated")
    parts = []
    for byte in chunk[:-1]:
        if byte in _ESCAPES:
            parts.append(_ESCAPES[byte])
        elif _is_print(byte):
            parts.append(chr(byte))
        else:
            parts.append(f"\\x{byte:02x}")
    return '"' + "".join(parts) + '"'


def _format_ints(chunk: bytes, width: int) -> str:
    if len(chunk) % width:
        raise ValueError(f"data length {len(chunk)} is not a multiple of {width}")
    template = "{:02x}" if width == 1 else "0x{:02x}"
    return " ".join(
        template.format(int.from_bytes(chunk[off:off + width], "big"))
        for off in range(0, len(chunk), width)
    )


def _type_marker_length(markers: List[Marker], idx: int) -> int:
    start = markers[idx].offset
    for marker in markers[idx + 1:]:
        if marker.type.is_type:
            return marker.offset - start
    return 0


def _add_string_markers(prop: Property) -> None:
    val = bytes(prop.val.val)
    offset = val.find(b"\0") + 1
    while offset < len(val):
        prop.val.markers.append(Marker(offset, MarkerType.TYPE_STRING))
        end = val.find(b"\0", offset)
        if end < 0:
            break
        offset = end + 1


def _guess_value_type(prop: Property) -> MarkerType:
    val = bytes(prop.val.val)
    length = len(val)
    nnotstring = sum(1 for b in val if not _is_string_byte(b))
    nnul = val.count(0)
    nnotstringlbl = 0
    nnotcelllbl = 0
    for marker in prop.val.markers_of_type(MarkerType.LABEL):
        if marker.offset > 0 and val[marker.offset - 1] != 0:
            nnotstringlbl += 1
        if marker.offset % _CELL_SIZE:
            nnotcelllbl += 1

    if (val[-1] == 0 and nnotstring == 0 and nnul <= length - nnul
            and nnotstringlbl == 0):
        if nnul > 1:
            _add_string_markers(prop)
        return MarkerType.TYPE_STRING
    if length % _CELL_SIZE == 0 and nnotcelllbl == 0:
        return MarkerType.TYPE_UINT32
    return MarkerType.TYPE_UINT8


def _annotation(pos: Optional[SourcePosition], annotate: int, last: bool = False) -> str:
    if not annotate:
        return ""
    if pos is None:
        text = "<no-file>:<no-line>" if annotate > 1 else None
    elif last:
        text = pos.string_last(annotate)
    else:
        text = pos.string_first(annotate)
    return f" /* {text} */" if text else ""


def _format_propval(prop: Property, annotate: int) -> str:
    val = bytes(prop.val.val)
    length = len(val)
    if length == 0:
        return ";" + _annotation(prop.srcpos, annotate) + "\n"

    out = [" ="]
    if not any(m.type.is_type for m in prop.val.markers):
        guessed = _guess_value_type(prop)
        markers = [Marker(0, guessed), *prop.val.markers]
    else:
        markers = list(prop.val.markers)

    emit_type = MarkerType.TYPE_NONE
    for idx, marker in enumerate(markers):
        following = markers[idx + 1] if idx + 1 < len(markers) else None
        chunk_len = (following.offset if following else length) - marker.offset
        data_len = _type_marker_length(markers, idx) or length - marker.offset
        chunk = val[marker.offset:marker.offset + max(chunk_len, 0)]

        if marker.type.is_type:
            emit_type = marker.type
            out.append(" " + _DELIM_START[emit_type])
        elif marker.type == MarkerType.LABEL:
            out.append(f" {marker.ref}:")

        if emit_type == MarkerType.TYPE_NONE or chunk_len == 0:
            continue

        if emit_type == MarkerType.TYPE_UINT16:
            out.append(_format_ints(chunk, 2))
        elif emit_type == MarkerType.TYPE_UINT32:
            phandle = next(
                (m for m in prop.val.markers_of_type(MarkerType.REF_PHANDLE)
                 if m.offset == marker.offset),
                None,
            )
            if phandle is not None:
                ref = phandle.ref or ""
                out.append(f"&{{{ref}}}" if ref.startswith("/") else f"&{ref}")
                if chunk_len > _CELL_SIZE:
                    out.append(" " + _format_ints(chunk[_CELL_SIZE:], _CELL_SIZE))
            else:
                out.append(_format_ints(chunk, _CELL_SIZE))
            if data_len > chunk_len:
                out.append(" ")
        elif emit_type == MarkerType.TYPE_UINT64:
            out.append(_format_ints(chunk, 8))
        elif emit_type == MarkerType.TYPE_STRING:
            out.append(_format_string(chunk))
        else:
            out.append(_format_ints(chunk, 1))

        if chunk_len == data_len:
            end = _DELIM_END.get(emit_type, "")
            out.append(end if marker.offset + chunk_len == length else end + ",")
            emit_type = MarkerType.TYPE_NONE

    out.append(";" + _annotation(prop.srcpos, annotate) + "\n")
    return "".join(out)


def _write_node(stream: TextIO, node: Node, level: int, annotate: int) -> None:
    indent = "\t" * level
    labels = "".join(f"{l.label}: " for l in active_labels(node.labels))
    name = node.name if node.name else "/"
    stream.write(f"{indent}{labels}{name} {{{_annotation(node.srcpos, annotate)}\n")

    for prop in node.properties:
        prop_labels = "".join(f"{l.label}: " for l in active_labels(prop.labels))
        stream.write(f"{indent}\t{prop_labels}{prop.name}")
        stream.write(_format_propval(prop, annotate))

    for child in node.children:
        stream.write("\n")
        _write_node(stream, child, level + 1, annotate)

    stream.write(f"{indent}}};{_annotation(node.srcpos, annotate, last=True)}\n")


def write_tree_source(stream: TextIO, tree: DeviceTree, annotate: int = 0) -> None:
    """Write *tree* as device tree source to *stream*."""
    stream.write("/dts-v1/;\n\n")
    for entry in tree.reservelist:
        labels = "".join(f"{l.label}: " for l in active_labels(entry.labels))
        stream.write(f"{labels}/memreserve/\t0x{entry.address:016x} 0x{entry.size:016x};\n")
    _write_node(stream, tree.root, 0, annotate)


def dt_to_source(tree: DeviceTree, annotate: int = 0) -> str:
    """Return *tree* rendered as device tree source text."""
    buffer = io.StringIO()
    write_tree_source(buffer, tree, annotate)
    return buffer.getvalue()
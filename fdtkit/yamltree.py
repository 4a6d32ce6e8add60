"""Write a live device tree as YAML."""

from __future__ import annotations

from typing import Iterator, List, TextIO

import yaml

from .livetree import DeviceTree, Marker, MarkerType, Node, Property
from .util import FatalError

__all__ = ["dt_to_yaml", "write_yaml"]

_STR_TAG = "tag:yaml.org,2002:str"
_INT_TAG = "tag:yaml.org,2002:int"
_BOOL_TAG = "tag:yaml.org,2002:bool"
_SEQ_TAG = "tag:yaml.org,2002:seq"
_MAP_TAG = "tag:yaml.org,2002:map"
_WIDTH_TAGS = {1: "!u8", 2: "!u16", 4: "!u32", 8: "!u64"}


def _type_marker_length(markers: List[Marker], idx: int) -> int:
    start = markers[idx].offset
    for marker in markers[idx + 1:]:
        if marker.type.is_type:
            return marker.offset - start
    return 0


def _int_events(markers: List[Marker], data: bytes, seq_offset: int,
                width: int) -> Iterator[yaml.Event]:
    tag = _WIDTH_TAGS.get(width)
    if tag is None:
        raise FatalError(f"Invalid width {width}")
    if len(data) % width:
        raise ValueError(f"data length {len(data)} is not a multiple of {width}")

    yield yaml.SequenceStartEvent(None, tag, width == 4, flow_style=True)
    phandle_offsets = {m.offset for m in markers if m.type == MarkerType.REF_PHANDLE}
    for off in range(0, len(data), width):
        text = f"0x{int.from_bytes(data[off:off + width], 'big'):x}"
        if width == 4 and seq_offset + off in phandle_offsets:
            yield yaml.ScalarEvent(None, "!phandle", (False, False), text)
        else:
            yield yaml.ScalarEvent(None, _INT_TAG, (True, True), text)
    yield yaml.SequenceEndEvent()


def _string_event(data: bytes) -> yaml.Event:
    if not data or data[-1] != 0:
        raise ValueError("string data is not NUL-terminated")
    if any(b > 0x7F for b in data):
        raise ValueError("string data is not 7-bit ASCII")
    return yaml.ScalarEvent(None, _STR_TAG, (False, True),
                            data[:-1].decode("ascii"), style='"')


def _property_events(prop: Property) -> Iterator[yaml.Event]:
    yield yaml.ScalarEvent(None, _STR_TAG, (True, True), prop.name)

    val = bytes(prop.val.val)
    remaining = len(val)
    if remaining == 0:
        yield yaml.ScalarEvent(None, _BOOL_TAG, (True, False), "true")
        return

    markers = prop.val.markers
    if not markers:
        raise FatalError(f"No markers present in property '{prop.name}' value")

    yield yaml.SequenceStartEvent(None, _SEQ_TAG, True, flow_style=True)
    for idx, marker in enumerate(markers):
        if not marker.type.is_type:
            continue
        chunk_len = _type_marker_length(markers, idx) or remaining
        if chunk_len <= 0:
            raise ValueError(f"empty data chunk in property '{prop.name}'")
        remaining -= chunk_len
        chunk = val[marker.offset:marker.offset + chunk_len]

        if marker.type == MarkerType.TYPE_UINT16:
            yield from _int_events(markers, chunk, marker.offset, 2)
        elif marker.type == MarkerType.TYPE_UINT32:
            yield from _int_events(markers, chunk, marker.offset, 4)
        elif marker.type == MarkerType.TYPE_UINT64:
            yield from _int_events(markers, chunk, marker.offset, 8)
        elif marker.type == MarkerType.TYPE_STRING:
            yield _string_event(chunk)
        else:
            yield from _int_events(markers, chunk, marker.offset, 1)
    yield yaml.SequenceEndEvent()


def _node_events(node: Node) -> Iterator[yaml.Event]:
    if node.deleted:
        return
    yield yaml.MappingStartEvent(None, _MAP_TAG, True, flow_style=None)
    for prop in node.properties:
        yield from _property_events(prop)
    for child in node.children:
        yield yaml.ScalarEvent(None, _STR_TAG, (True, False), child.name or "")
        yield from _node_events(child)
    yield yaml.MappingEndEvent()


def _document_events(tree: DeviceTree) -> List[yaml.Event]:
    events: List[yaml.Event] = [
        yaml.StreamStartEvent(),
        yaml.DocumentStartEvent(explicit=True),
        yaml.SequenceStartEvent(None, _SEQ_TAG, True, flow_style=None),
    ]
    events.extend(_node_events(tree.root))
    events.extend([
        yaml.SequenceEndEvent(),
        yaml.DocumentEndEvent(explicit=True),
        yaml.StreamEndEvent(),
    ])
    return events


def dt_to_yaml(tree: DeviceTree) -> str:
    """Return *tree* rendered as a YAML document."""
    return yaml.emit(_document_events(tree))


def write_yaml(stream: TextIO, tree: DeviceTree) -> None:
    """Write *tree* as a YAML document to *stream*."""
    yaml.emit(_document_events(tree), stream)
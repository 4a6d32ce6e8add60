"""In-memory device tree: nodes, properties, labels, markers and tree transforms."""

from __future__ import annotations

import enum
import sys
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from .srcpos import SourcePosition
from .util import FatalError, get_escape_char, join_path

__all__ = [
    "MarkerType",
    "PhandleFormat",
    "Marker",
    "Data",
    "Label",
    "Property",
    "Node",
    "ReserveEntry",
    "DeviceTree",
    "add_label",
    "delete_labels",
    "active_labels",
]

_CELL_SIZE = 4
_INVALID_PHANDLE = 0xFFFFFFFF


class MarkerType(enum.IntEnum):
    """Kinds of marker attached to property data."""

    TYPE_NONE = 0
    REF_PHANDLE = 1
    REF_PATH = 2
    LABEL = 3
    TYPE_UINT8 = 4
    TYPE_UINT16 = 5
    TYPE_UINT32 = 6
    TYPE_UINT64 = 7
    TYPE_STRING = 8

    @property
    def is_type(self) -> bool:
        """True for markers that describe the type of the data that follows."""
        return self >= MarkerType.TYPE_UINT8


class PhandleFormat(enum.IntFlag):
    """Which phandle properties are generated for a node."""

    LEGACY = 1
    EPAPR = 2
    BOTH = 3


def _phandle_is_valid(phandle: int) -> bool:
    return phandle != 0 and phandle != _INVALID_PHANDLE


@dataclass
class Marker:
    """A typed annotation at a byte offset of property data."""

    offset: int
    type: MarkerType
    ref: Optional[str] = None


def _char_bytes(c: str) -> bytes:
    code = ord(c)
    if code < 0x100:
        return bytes([code])
    return c.encode("utf-8")


@dataclass
class Data:
    """Property value bytes together with their markers."""

    val: bytearray = field(default_factory=bytearray)
    markers: List[Marker] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.val = bytearray(self.val)

    def __len__(self) -> int:
        return len(self.val)

    def add_marker(self, type: MarkerType, ref: Optional[str] = None) -> "Data":
        """Add a marker at the current end of the data."""
        self.markers.append(Marker(len(self.val), MarkerType(type), ref))
        return self

    def append(self, data: bytes) -> "Data":
        """Append raw bytes."""
        self.val += data
        return self

    def append_integer(self, value: int, bits: int) -> "Data":
        """Append *value* as a big-endian integer of *bits* bits."""
        if bits not in (8, 16, 32, 64):
            raise ValueError(f"Invalid literal size ({bits})")
        masked = value & ((1 << bits) - 1)
        self.val += masked.to_bytes(bits // 8, "big")
        return self

    def append_cell(self, value: int) -> "Data":
        """Append a 32-bit big-endian cell."""
        return self.append_integer(value, 32)

    def markers_of_type(self, type: MarkerType) -> Iterator[Marker]:
        """Yield the markers of the given type in order."""
        return (m for m in self.markers if m.type == type)

    @classmethod
    def from_escaped_string(cls, text: str) -> "Data":
        """Build NUL-terminated string data from *text*, decoding backslash escapes."""
        data = cls().add_marker(MarkerType.TYPE_STRING)
        out = bytearray()
        i = 0
        while i < len(text):
            c = text[i]
            i += 1
            if c == "\\":
                if i >= len(text):
                    c, i = "\0", i + 1
                else:
                    c, i = get_escape_char(text, i)
                out += _char_bytes(c)
            else:
                out += c.encode("utf-8")
        out.append(0)
        return data.append(bytes(out))


@dataclass
class Label:
    """A label name, which may be marked deleted."""

    label: str
    deleted: bool = False


def add_label(labels: List[Label], label: str) -> None:
    """Add *label* to the front of *labels*, or revive it if already present."""
    for existing in labels:
        if existing.label == label:
            existing.deleted = False
            return
    labels.insert(0, Label(label))


def delete_labels(labels: List[Label]) -> None:
    """Mark every label in *labels* deleted."""
    for label in labels:
        label.deleted = True


def active_labels(labels: List[Label]) -> Iterator[Label]:
    """Yield the labels not marked deleted."""
    return (label for label in labels if not label.deleted)


@dataclass(eq=False)
class Property:
    """A named property value."""

    name: str
    val: Data = field(default_factory=Data)
    srcpos: Optional[SourcePosition] = None
    labels: List[Label] = field(default_factory=list)
    deleted: bool = False

    @classmethod
    def deletion(cls, name: str) -> "Property":
        """Build a property that requests deletion of *name* when merged."""
        return cls(name=name, deleted=True)

    def delete(self) -> None:
        """Mark the property and its labels deleted."""
        self.deleted = True
        delete_labels(self.labels)

    def cell(self) -> int:
        """Return the value as a single 32-bit cell."""
        if len(self.val) != _CELL_SIZE:
            raise ValueError(f"property {self.name!r} is not a single cell")
        return int.from_bytes(self.val.val, "big")

    def cell_n(self, n: int) -> int:
        """Return cell number *n* of the value."""
        if n < 0 or len(self.val) // _CELL_SIZE <= n:
            raise IndexError(f"property {self.name!r} has no cell {n}")
        start = n * _CELL_SIZE
        return int.from_bytes(self.val.val[start:start + _CELL_SIZE], "big")


@dataclass(eq=False)
class Node:
    """A device tree node; deleted properties and children are kept but hidden."""

    name: Optional[str] = None
    all_properties: List[Property] = field(default_factory=list)
    all_children: List["Node"] = field(default_factory=list)
    srcpos: Optional[SourcePosition] = None
    labels: List[Label] = field(default_factory=list)
    deleted: bool = False
    phandle: int = 0
    omit_if_unused: bool = False
    is_referenced: bool = False
    parent: Optional["Node"] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        for child in self.all_children:
            child.parent = self

    @classmethod
    def deletion(cls, srcpos: Optional[SourcePosition] = None) -> "Node":
        """Build a node that requests deletion when merged."""
        return cls(deleted=True, srcpos=srcpos)

    @property
    def properties(self) -> List[Property]:
        """Properties not marked deleted."""
        return [p for p in self.all_properties if not p.deleted]

    @property
    def children(self) -> List["Node"]:
        """Children not marked deleted."""
        return [c for c in self.all_children if not c.deleted]

    @property
    def basename(self) -> str:
        """The name without its unit address."""
        return (self.name or "").partition("@")[0]

    @property
    def unitname(self) -> str:
        """The unit address part of the name, or an empty string."""
        return (self.name or "").partition("@")[2]

    @property
    def fullpath(self) -> str:
        """The absolute path of this node."""
        if self.parent is None:
            return "/"
        return join_path(self.parent.fullpath, self.name or "")

    def add_property(self, prop: Property) -> None:
        """Append *prop* to the property list."""
        self.all_properties.append(prop)

    def add_child(self, child: "Node") -> None:
        """Append *child* to the children and adopt it."""
        child.parent = self
        self.all_children.append(child)

    def delete(self) -> None:
        """Mark this node, its live children and properties, and its labels deleted."""
        self.deleted = True
        for child in self.children:
            child.delete()
        for prop in self.properties:
            prop.delete()
        delete_labels(self.labels)

    def delete_property_by_name(self, name: str) -> None:
        """Delete the first property called *name*, if any."""
        for prop in self.all_properties:
            if prop.name == name:
                prop.delete()
                return

    def delete_child_by_name(self, name: Optional[str]) -> None:
        """Delete the first child called *name*, if any."""
        for child in self.all_children:
            if child.name == name:
                child.delete()
                return

    def get_property(self, name: str) -> Optional[Property]:
        """Return the live property called *name*, or None."""
        return next((p for p in self.properties if p.name == name), None)

    def get_subnode(self, name: str) -> Optional["Node"]:
        """Return the live child called *name*, or None."""
        return next((c for c in self.children if c.name == name), None)

    def append_to_property(self, name: str, data: bytes,
                           type: MarkerType) -> None:
        """Append typed *data* to property *name*, creating it if needed."""
        prop = self.get_property(name)
        if prop is not None:
            prop.val.add_marker(type, name).append(data)
        else:
            val = Data().add_marker(type, name).append(data)
            self.add_property(Property(name, val))

    def merge(self, other: "Node") -> "Node":
        """Merge *other* into this node, applying its overrides and deletions."""
        self.deleted = False

        for label in other.labels:
            add_label(self.labels, label.label)

        new_props, other.all_properties = other.all_properties, []
        for new_prop in new_props:
            if new_prop.deleted:
                self.delete_property_by_name(new_prop.name)
                continue
            for old_prop in self.all_properties:
                if old_prop.name == new_prop.name:
                    for label in new_prop.labels:
                        add_label(old_prop.labels, label.label)
                    old_prop.val = new_prop.val
                    old_prop.deleted = False
                    old_prop.srcpos = new_prop.srcpos
                    break
            else:
                self.add_property(new_prop)

        new_children, other.all_children = other.all_children, []
        for new_child in new_children:
            new_child.parent = None
            if new_child.deleted:
                self.delete_child_by_name(new_child.name)
                continue
            for old_child in self.all_children:
                if old_child.name == new_child.name:
                    old_child.merge(new_child)
                    break
            else:
                self.add_child(new_child)

        if self.srcpos is None:
            self.srcpos = other.srcpos
        else:
            self.srcpos.extend(other.srcpos)
        return self

    def get_node_by_path(self, path: Optional[str]) -> Optional["Node"]:
        """Find the node at *path* relative to this one."""
        if not path:
            return None if self.deleted else self
        path = path.lstrip("/")
        slash = path.find("/")
        for child in self.children:
            if slash >= 0 and child.name == path[:slash]:
                return child.get_node_by_path(path[slash + 1:])
            if slash < 0 and child.name == path:
                return child
        return None

    def get_node_by_label(self, label: str) -> Optional["Node"]:
        """Find the node carrying *label* in this subtree."""
        if not label:
            raise ValueError("label must not be empty")
        if any(l.label == label for l in active_labels(self.labels)):
            return self
        for child in self.children:
            found = child.get_node_by_label(label)
            if found is not None:
                return found
        return None

    def get_node_by_phandle(self, phandle: int,
                            generate_fixups: bool = False) -> Optional["Node"]:
        """Find the node with *phandle* in this subtree."""
        if not _phandle_is_valid(phandle):
            if not generate_fixups:
                raise ValueError(f"invalid phandle 0x{phandle:x}")
            return None
        if self.phandle == phandle:
            return None if self.deleted else self
        for child in self.children:
            found = child.get_node_by_phandle(phandle, generate_fixups)
            if found is not None:
                return found
        return None

    def get_node_by_ref(self, ref: str) -> Optional["Node"]:
        """Resolve a reference: a path, a label, or a label followed by a path."""
        if ref == "/":
            return self
        target: Optional[Node] = self
        path: Optional[str] = None
        if ref.startswith("/"):
            path = ref
        else:
            label, slash, rest = ref.partition("/")
            if slash:
                path = rest
            target = self.get_node_by_label(label)
            if target is None:
                return None
        if path is not None:
            target = target.get_node_by_path(path)
        return target

    def get_property_by_label(self, label: str) -> Optional[Tuple["Node", Property]]:
        """Find the property carrying *label*; return it with its node."""
        for prop in self.properties:
            if any(l.label == label for l in active_labels(prop.labels)):
                return self, prop
        for child in self.children:
            found = child.get_property_by_label(label)
            if found is not None:
                return found
        return None

    def get_marker_label(self, label: str) -> Optional[Tuple["Node", Property, Marker]]:
        """Find a LABEL marker named *label*; return it with its node and property."""
        for prop in self.properties:
            for marker in prop.val.markers_of_type(MarkerType.LABEL):
                if marker.ref == label:
                    return self, prop, marker
        for child in self.children:
            found = child.get_marker_label(label)
            if found is not None:
                return found
        return None


@dataclass
class ReserveEntry:
    """One memory reservation."""

    address: int
    size: int
    labels: List[Label] = field(default_factory=list)


def _build_root_node(parent: Node, name: str) -> Node:
    node = parent.get_subnode(name)
    if node is None:
        node = Node(name=name)
        parent.add_child(node)
    return node


@dataclass(eq=False)
class DeviceTree:
    """A whole device tree with its reservations and header information."""

    root: Node
    reservelist: List[ReserveEntry] = field(default_factory=list)
    dtsflags: int = 0
    boot_cpuid_phys: int = 0
    phandle_format: PhandleFormat = PhandleFormat.EPAPR
    _next_phandle: int = field(default=1, init=False, repr=False)
    _next_orphan_fragment: int = field(default=0, init=False, repr=False)

    def add_reserve_entry(self, entry: ReserveEntry) -> None:
        """Append a memory reservation."""
        self.reservelist.append(entry)

    def add_orphan_node(self, node: Node, ref: str) -> "DeviceTree":
        """Wrap *node* in an overlay fragment targeting *ref* and add it to the root."""
        if node.name is not None:
            raise ValueError("orphan node is already named")
        data = Data()
        if ref.startswith("/"):
            data.add_marker(MarkerType.TYPE_STRING, ref)
            data.append(ref.encode("utf-8") + b"\0")
            prop = Property("target-path", data)
        else:
            data.add_marker(MarkerType.REF_PHANDLE, ref)
            data.append_integer(_INVALID_PHANDLE, 32)
            prop = Property("target", data)

        name = f"fragment@{self._next_orphan_fragment}"
        self._next_orphan_fragment += 1
        node.name = "__overlay__"
        fragment = Node(name=name, all_properties=[prop], all_children=[node])
        self.root.add_child(fragment)
        return self

    def _add_phandle_property(self, node: Node, name: str,
                              fmt: PhandleFormat) -> None:
        if not (self.phandle_format & fmt):
            return
        if node.get_property(name) is not None:
            return
        data = Data().add_marker(MarkerType.TYPE_UINT32).append_cell(node.phandle)
        node.add_property(Property(name, data))

    def get_node_phandle(self, node: Node) -> int:
        """Return the phandle of *node*, allocating one if it has none."""
        if _phandle_is_valid(node.phandle):
            return node.phandle
        while self.root.get_node_by_phandle(self._next_phandle) is not None:
            self._next_phandle += 1
        node.phandle = self._next_phandle
        self._add_phandle_property(node, "linux,phandle", PhandleFormat.LEGACY)
        self._add_phandle_property(node, "phandle", PhandleFormat.EPAPR)
        return node.phandle

    def guess_boot_cpuid(self) -> int:
        """Take the boot CPU id from the reg of the first node under /cpus, else 0."""
        cpus = self.root.get_node_by_path("/cpus")
        if cpus is None or not cpus.all_children:
            return 0
        reg = cpus.all_children[0].get_property("reg")
        if reg is None or len(reg.val) != _CELL_SIZE:
            return 0
        return reg.cell()

    def sort(self) -> None:
        """Sort reservations, and properties and children by name, throughout."""
        self.reservelist.sort(key=lambda r: (r.address, r.size))
        _sort_node(self.root)

    def generate_label_tree(self, name: str, allocph: bool) -> None:
        """Add a root child *name* mapping each label to its node's path."""
        if not _any_label_tree(self.root):
            return
        symbols = _build_root_node(self.root, name)
        self._label_tree_internal(symbols, self.root, allocph)

    def _label_tree_internal(self, an: Node, node: Node, allocph: bool) -> None:
        if node.labels:
            for label in active_labels(node.labels):
                if an.get_property(label.label) is not None:
                    sys.stderr.write(f"WARNING: label {label.label} already"
                                     f" exists in /{an.name}")
                    continue
                an.add_property(Property(
                    label.label, Data.from_escaped_string(node.fullpath)))
            if allocph:
                self.get_node_phandle(node)
        for child in node.children:
            self._label_tree_internal(an, child, allocph)

    def _phandle_refs(self, node: Node) -> Iterator[Tuple[Node, Property, Marker]]:
        for prop in node.properties:
            for marker in prop.val.markers_of_type(MarkerType.REF_PHANDLE):
                yield node, prop, marker
        for child in node.children:
            yield from self._phandle_refs(child)

    def generate_fixups_tree(self, name: str) -> None:
        """Add a root child *name* recording references to unresolved labels."""
        existing = self.root.get_subnode(name)
        if existing is not None:
            existing.deleted = True
        if not any(self.root.get_node_by_ref(m.ref) is None
                   for _, _, m in self._phandle_refs(self.root)):
            return
        fixups = Node(name=name)
        self.root.add_child(fixups)
        for node, prop, marker in list(self._phandle_refs(self.root)):
            if self.root.get_node_by_ref(marker.ref) is None:
                _add_fixup_entry(fixups, node, prop, marker)

    def generate_local_fixups_tree(self, name: str) -> None:
        """Add a root child *name* recording where resolved phandles are used."""
        existing = self.root.get_subnode(name)
        if existing is not None:
            existing.deleted = True
        if not any(self.root.get_node_by_ref(m.ref) is not None
                   for _, _, m in self._phandle_refs(self.root)):
            return
        local = Node(name=name)
        self.root.add_child(local)
        for node, prop, marker in list(self._phandle_refs(self.root)):
            if self.root.get_node_by_ref(marker.ref) is not None:
                _add_local_fixup_entry(local, node, prop, marker)


def _sort_node(node: Node) -> None:
    node.all_properties.sort(key=lambda p: p.name)
    node.all_children.sort(key=lambda c: c.name or "")
    for child in node.all_children:
        _sort_node(child)


def _any_label_tree(node: Node) -> bool:
    if node.labels:
        return True
    return any(_any_label_tree(child) for child in node.children)


def _add_fixup_entry(fn: Node, node: Node, prop: Property, marker: Marker) -> None:
    ref = marker.ref or ""
    if "/" in ref:
        raise FatalError(f"Can't generate fixup for reference to path &{{{ref}}}")
    if ":" in node.fullpath or ":" in prop.name:
        raise FatalError("arguments should not contain ':'")
    entry = f"{node.fullpath}:{prop.name}:{marker.offset}"
    fn.append_to_property(ref, entry.encode("utf-8") + b"\0",
                          MarkerType.TYPE_STRING)


def _add_local_fixup_entry(lfn: Node, node: Node, prop: Property,
                           marker: Marker) -> None:
    names: List[str] = []
    walk: Optional[Node] = node
    while walk is not None:
        names.append(walk.name or "")
        walk = walk.parent
    names.reverse()
    target = lfn
    for component in names[1:]:
        target = _build_root_node(target, component)
    target.append_to_property(prop.name, marker.offset.to_bytes(4, "big"),
                              MarkerType.TYPE_UINT32)
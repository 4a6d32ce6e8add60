import pytest

from fdtkit.livetree import (
    Data,
    DeviceTree,
    Label,
    Marker,
    MarkerType,
    Node,
    PhandleFormat,
    Property,
    ReserveEntry,
    active_labels,
    add_label,
    delete_labels,
)
from fdtkit.util import FatalError


def cell_prop(name, *values):
    data = Data().add_marker(MarkerType.TYPE_UINT32)
    for v in values:
        data.append_cell(v)
    return Property(name, data)


def make_tree():
    subsub = Node(name="subsub", all_properties=[cell_prop("x", 5)])
    n1 = Node(name="node@1", all_children=[subsub])
    add_label(n1.labels, "n1")
    n2 = Node(name="node@2", all_properties=[cell_prop("y", 6)])
    root = Node(name="", all_children=[n1, n2])
    return root, n1, n2, subsub


def test_add_label_prepends_and_revives():
    labels = []
    add_label(labels, "a")
    add_label(labels, "b")
    assert [l.label for l in labels] == ["b", "a"]
    delete_labels(labels)
    assert list(active_labels(labels)) == []
    add_label(labels, "a")
    assert len(labels) == 2
    assert [l.label for l in active_labels(labels)] == ["a"]


def test_data_markers_and_integers():
    d = Data().add_marker(MarkerType.TYPE_UINT16).append_integer(0x1234, 16)
    d.add_marker(MarkerType.LABEL, "lbl")
    assert len(d) == 2
    assert int.from_bytes(d.val, "big") == 0x1234
    assert d.markers[1] == Marker(2, MarkerType.LABEL, "lbl")
    assert [m.ref for m in d.markers_of_type(MarkerType.LABEL)] == ["lbl"]
    with pytest.raises(ValueError):
        Data().append_integer(1, 12)


def test_marker_type_is_type():
    d = Data().add_marker(MarkerType.TYPE_STRING).add_marker(MarkerType.LABEL, "l")
    assert [m.type.is_type for m in d.markers] == [True, False]


def test_from_escaped_string():
    d = Data.from_escaped_string("a\\tb")
    assert bytes(d.val) == b"a\tb\0"
    assert d.markers == [Marker(0, MarkerType.TYPE_STRING, None)]


def test_property_cells():
    p = cell_prop("p", 7, 8, 9)
    assert p.cell_n(2) == 9
    with pytest.raises(IndexError):
        p.cell_n(3)
    with pytest.raises(ValueError):
        p.cell()
    assert cell_prop("q", 11).cell() == 11


def test_node_names_and_paths():
    root, n1, n2, subsub = make_tree()
    assert subsub.fullpath == "/node@1/subsub"
    assert n1.unitname == "1"
    assert n1.basename == "node"
    assert subsub.unitname == ""
    assert subsub.parent is n1


def test_get_node_by_path():
    root, n1, n2, subsub = make_tree()
    assert root.get_node_by_path("/node@1/subsub") is subsub
    assert root.get_node_by_path("//node@1") is n1
    assert root.get_node_by_path("node@1/") is n1
    assert root.get_node_by_path("/missing") is None
    n2.deleted = True
    assert root.get_node_by_path("/node@2") is None


def test_get_node_by_ref_and_label():
    root, n1, n2, subsub = make_tree()
    assert root.get_node_by_ref("/") is root
    assert root.get_node_by_ref("n1") is n1
    assert root.get_node_by_ref("n1/subsub") is subsub
    assert root.get_node_by_ref("/node@2") is n2
    assert root.get_node_by_ref("nope") is None
    with pytest.raises(ValueError):
        root.get_node_by_label("")


def test_get_property_and_marker_by_label():
    root, n1, n2, subsub = make_tree()
    prop = subsub.get_property("x")
    add_label(prop.labels, "plabel")
    prop.val.add_marker(MarkerType.LABEL, "mlabel")
    assert root.get_property_by_label("plabel") == (subsub, prop)
    node, p, m = root.get_marker_label("mlabel")
    assert (node, p, m.ref) == (subsub, prop, "mlabel")
    assert root.get_property_by_label("none") is None
    assert root.get_marker_label("none") is None


def test_delete_node_recursively():
    root, n1, n2, subsub = make_tree()
    root.delete_child_by_name("node@1")
    assert n1.deleted and subsub.deleted
    assert subsub.all_properties[0].deleted
    assert list(active_labels(n1.labels)) == []
    assert root.children == [n2]


def test_merge_nodes():
    old_child = Node(name="c", all_properties=[cell_prop("k", 1)])
    gone = Node(name="gone")
    old = Node(name="n", all_properties=[cell_prop("a", 1), cell_prop("b", 2)],
               all_children=[old_child, gone])
    doomed = Node.deletion()
    doomed.name = "gone"
    new_child = Node(name="c", all_properties=[cell_prop("m", 3)])
    extra = Node(name="extra")
    new = Node(name="n",
               all_properties=[cell_prop("a", 10), Property.deletion("b"),
                               cell_prop("d", 4)],
               all_children=[new_child, doomed, extra])
    add_label(new.labels, "lab")

    merged = old.merge(new)
    assert merged is old
    assert old.get_property("a").cell() == 10
    assert old.get_property("b") is None
    assert old.get_property("d").cell() == 4
    assert [p.name for p in old_child.properties] == ["k", "m"]
    assert gone.deleted
    assert old.get_subnode("extra") is extra and extra.parent is old
    assert [l.label for l in old.labels] == ["lab"]
    assert new.all_properties == [] and new.all_children == []


def test_append_to_property():
    node = Node(name="n")
    node.append_to_property("p", b"ab\0", MarkerType.TYPE_STRING)
    node.append_to_property("p", b"cd\0", MarkerType.TYPE_STRING)
    prop = node.get_property("p")
    assert bytes(prop.val.val) == b"ab\0cd\0"
    assert [m.offset for m in prop.val.markers] == [0, 3]


def test_get_node_phandle_allocation():
    root, n1, n2, subsub = make_tree()
    dt = DeviceTree(root)
    h1 = dt.get_node_phandle(n1)
    assert h1 == 1
    assert n1.get_property("phandle").cell() == h1
    assert n1.get_property("linux,phandle") is None
    assert dt.get_node_phandle(n1) == h1
    h2 = dt.get_node_phandle(n2)
    assert h2 != h1
    assert root.get_node_by_phandle(h2) is n2


def test_phandle_legacy_format_adds_both():
    root, n1, n2, subsub = make_tree()
    dt = DeviceTree(root, phandle_format=PhandleFormat.BOTH)
    h = dt.get_node_phandle(n2)
    assert n2.get_property("linux,phandle").cell() == h
    assert n2.get_property("phandle").cell() == h


def test_get_node_by_phandle_invalid():
    root, *_ = make_tree()
    with pytest.raises(ValueError):
        root.get_node_by_phandle(0)
    assert root.get_node_by_phandle(0xFFFFFFFF, True) is None


def test_guess_boot_cpuid():
    cpu = Node(name="cpu@0", all_properties=[cell_prop("reg", 7)])
    root = Node(name="", all_children=[Node(name="cpus", all_children=[cpu])])
    assert DeviceTree(root).guess_boot_cpuid() == 7
    assert DeviceTree(Node(name="")).guess_boot_cpuid() == 0
    bad = Node(name="cpu@0", all_properties=[cell_prop("reg", 1, 2)])
    root2 = Node(name="", all_children=[Node(name="cpus", all_children=[bad])])
    assert DeviceTree(root2).guess_boot_cpuid() == 0


def test_sort():
    root = Node(name="", all_properties=[cell_prop("z", 1), cell_prop("a", 2)],
                all_children=[Node(name="b"), Node(name="a"), Node(name="c")])
    dt = DeviceTree(root, reservelist=[ReserveEntry(20, 1), ReserveEntry(10, 5),
                                       ReserveEntry(10, 2)])
    dt.sort()
    assert [p.name for p in root.all_properties] == ["a", "z"]
    assert [c.name for c in root.all_children] == ["a", "b", "c"]
    keys = [(r.address, r.size) for r in dt.reservelist]
    assert keys == sorted(keys)


def test_add_reserve_entry():
    dt = DeviceTree(Node(name=""))
    dt.add_reserve_entry(ReserveEntry(1, 2))
    assert [(r.address, r.size) for r in dt.reservelist] == [(1, 2)]


def test_add_orphan_node_label_and_path():
    dt = DeviceTree(Node(name=""))
    first = Node()
    dt.add_orphan_node(first, "lbl")
    frag = dt.root.get_subnode("fragment@0")
    assert first.name == "__overlay__" and first.parent is frag
    target = frag.get_property("target")
    assert target.cell() == 0xFFFFFFFF
    assert target.val.markers[0].type == MarkerType.REF_PHANDLE
    assert target.val.markers[0].ref == "lbl"

    second = Node()
    dt.add_orphan_node(second, "/soc")
    frag2 = second.parent
    assert frag2 is not frag and frag2.parent is dt.root
    assert bytes(frag2.get_property("target-path").val.val) == b"/soc\0"
    with pytest.raises(ValueError):
        dt.add_orphan_node(first, "x")


def test_generate_label_tree():
    dev = Node(name="dev")
    add_label(dev.labels, "mylabel")
    dt = DeviceTree(Node(name="", all_children=[dev]))
    dt.generate_label_tree("__symbols__", True)
    symbols = dt.root.get_subnode("__symbols__")
    assert bytes(symbols.get_property("mylabel").val.val) == b"/dev\0"
    assert dev.get_property("phandle").cell() == dev.phandle


def test_generate_label_tree_duplicate_warns(capsys):
    a = Node(name="a")
    b = Node(name="b")
    add_label(a.labels, "same")
    add_label(b.labels, "same")
    dt = DeviceTree(Node(name="", all_children=[a, b]))
    dt.generate_label_tree("__symbols__", False)
    symbols = dt.root.get_subnode("__symbols__")
    assert bytes(symbols.get_property("same").val.val) == b"/a\0"
    assert "WARNING: label same already exists in /__symbols__" in capsys.readouterr().err


def test_generate_label_tree_without_labels():
    dt = DeviceTree(Node(name="", all_children=[Node(name="a")]))
    dt.generate_label_tree("__symbols__", False)
    assert dt.root.get_subnode("__symbols__") is None


def ref_prop(name, ref, offset_cells=0):
    data = Data().add_marker(MarkerType.TYPE_UINT32)
    for _ in range(offset_cells):
        data.append_cell(0)
    data.add_marker(MarkerType.REF_PHANDLE, ref)
    data.append_cell(0xFFFFFFFF)
    return Property(name, data)


def test_generate_fixups_tree():
    dev = Node(name="dev", all_properties=[ref_prop("clocks", "missing")])
    dt = DeviceTree(Node(name="", all_children=[dev]))
    dt.generate_fixups_tree("__fixups__")
    fixups = dt.root.get_subnode("__fixups__")
    assert bytes(fixups.get_property("missing").val.val) == b"/dev:clocks:0\0"
    dt.generate_fixups_tree("__fixups__")
    live = [c for c in dt.root.children if c.name == "__fixups__"]
    assert len(live) == 1 and live[0] is not fixups


def test_generate_fixups_tree_path_ref_fails():
    dev = Node(name="dev", all_properties=[ref_prop("clocks", "nolabel/sub")])
    dt = DeviceTree(Node(name="", all_children=[dev]))
    with pytest.raises(FatalError):
        dt.generate_fixups_tree("__fixups__")


def test_generate_local_fixups_tree():
    clk = Node(name="clk")
    add_label(clk.labels, "clk")
    dev = Node(name="dev", all_properties=[ref_prop("clocks", "clk", 1)])
    bus = Node(name="bus", all_children=[dev])
    dt = DeviceTree(Node(name="", all_children=[clk, bus]))
    dt.generate_local_fixups_tree("__local_fixups__")
    local = dt.root.get_subnode("__local_fixups__")
    entry = local.get_node_by_path("bus/dev").get_property("clocks")
    assert entry.cell() == 4
    dt.generate_fixups_tree("__fixups__")
    assert dt.root.get_subnode("__fixups__") is None


def test_label_dataclass_default():
    assert Label("x") == Label("x", False)
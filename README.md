# fdtkit

A Python library for working with device trees in memory. You can build a
tree, merge one tree into another, look nodes up, generate the metadata nodes
that overlays use, and write the result out as device tree source or as YAML.

## Modules

- `fdtkit.util`: small shared helpers.
  - `join_path(path, name)` joins with exactly one slash; `escape_path(path)`
    escapes spaces with a backslash.
  - `is_printable_string(data)` tells whether bytes are one or more non-empty,
    NUL-terminated printable strings.
  - `get_escape_char(s, i)` decodes a backslash escape (`\n`, octal, `\xNN`,
    ...) and returns the character with the index after it. A `\x` with no hex
    digits raises `FatalError`.
  - `decode_type(fmt)` decodes a format such as `x`, `hx`, `hhu` or `bi` into
    `(type, size)`. The size is -1 for `s`, `r` and when no modifier is given.
    An invalid format raises `ValueError`.
  - `format_data(data)` renders property bytes as strings, 32-bit cells or
    bytes, for example ` = <0x00000001>`.
  - `read_fdt(filename)` reads a whole file, or stdin for `-`.
    `write_fdt(filename, blob)` writes the number of bytes given by the blob
    header's total-size field, to a file or to stdout for `-`.
  - `format_usage(synopsis, short_opts, options, errmsg)` builds aligned usage
    text from `UsageOption` entries.
- `fdtkit.srcpos`: source files and positions.
  - `SourceTracker` opens files relative to the current file's directory and
    then along its search path (`add_search_path`). It keeps a stack of open
    files (`push`, `pop`) and updates line and column numbers (`update`,
    `set_line`). It also writes opened file names to an optional dependency
    stream. Includes nested more than 200 deep raise `FatalError`.
  - `SourcePosition` is a chainable span. `str()` gives `file:line.col`
    forms, and `string_first` / `string_last` give the annotation text.
  - `format_error` and `report_error` produce `prefix: position message`
    diagnostics.
- `fdtkit.livetree`: the tree itself.
  - Classes: `DeviceTree`, `Node`, `Property`, `Data` (bytes plus typed
    `Marker`s), `Label`, `ReserveEntry`, and the `MarkerType` and
    `PhandleFormat` enums.
  - `Node.merge` applies overrides and deletion requests
    (`Node.deletion`, `Property.deletion`).
  - Look-ups go by path, label, phandle or reference (`get_node_by_ref`
    accepts `/path`, `label` or `label/sub/path`).
  - `DeviceTree` can allocate phandles (`get_node_phandle`), sort itself, and
    guess the boot CPU from `/cpus`. It can wrap a node as an overlay fragment
    (`add_orphan_node`) and generate the `__symbols__`-style label tree, the
    fixups tree and the local-fixups tree.
- `fdtkit.treesource`: `dt_to_source(tree, annotate)` and
  `write_tree_source(stream, tree, annotate)` write `/dts-v1/` source. Value
  types come from markers; where a property has no type markers, the type is
  guessed. A non-zero `annotate` adds source-position comments.
- `fdtkit.yamltree`: `dt_to_yaml(tree)` and `write_yaml(stream, tree)` write
  YAML. Integers are tagged by width (`!u8`, `!u16`, `!u32`, `!u64`) and
  phandle references are tagged `!phandle`. A non-empty property without
  markers raises `FatalError`.

## Example

```python
from fdtkit.livetree import Data, DeviceTree, Node, Property
from fdtkit.treesource import dt_to_source

root = Node()
root.add_property(Property("compatible", Data.from_escaped_string("example,board")))
print(dt_to_source(DeviceTree(root)), end="")
```

prints

```
/dts-v1/;

/ {
	compatible = "example,board";
};
```

## What it does not do

- It has no parser for device tree source.
- It has no reader or writer for the structure of flattened device tree
  blobs. `read_fdt` and `write_fdt` only move raw bytes.
- It installs no command-line tools. It is a library only.

## Requirements

Python 3.10 or later, and PyYAML for YAML output.
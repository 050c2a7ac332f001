# fdtkit

A Python library for working with device trees in memory: building and
merging a live tree, resolving labels, paths and phandles, generating
overlay symbol and fixup nodes, and writing the tree out as device tree
source or YAML.

## Modules

- `fdtkit.util` – shared helpers:
  - `get_escape_char(s, i)` decodes one backslash escape (`\n`, octal,
    `\x..`) and returns the character and the index after it; a `\x` with
    no hex digits raises `FatalError`.
  - `decode_type(fmt)` decodes a type string such as `"x"`, `"hhu"` or
    `"s"` into `(type, size)`; invalid strings raise `ValueError`.
  - `is_printable_string(data)` and `format_data(data)` classify and
    render raw property bytes as strings, 32-bit cells or bytes.
  - `read_blob(filename)` and `write_blob(filename, blob)` read and write
    blob files (`"-"` means stdin/stdout); `write_blob` writes only the
    `totalsize` bytes given in the blob header.
  - `escape_path`, `join_path`, `version_string` and
    `format_usage(errmsg, synopsis, short_opts, long_opts, opts_help)`,
    with `LongOption` describing each option.
- `fdtkit.srcpos` – source positions and include handling.
  `SourceTracker` keeps the stack of open files (`push`, `pop`), the
  include search path (`add_search_path`, `relative_open`), updates
  positions as text is read (`update`, `set_line`) and renders positions
  for annotation comments (`string_first`, `string_last`).
  `SourcePosition` records a span and can be chained with `extend`;
  `format_error` builds an error line naming a position.
- `fdtkit.livetree` – the in-memory tree: `Node`, `Property`, `Label`,
  `ReserveEntry`, `DtInfo`, and the immutable `Data` value with its
  `Marker`s (`MarkerType`). Deleted nodes and properties stay in their
  lists, flagged. Functions include `build_node`, `build_property`,
  `merge_nodes`, `add_orphan_node`, `get_node_by_path`,
  `get_node_by_label`, `get_node_by_phandle`, `get_node_by_ref`,
  `get_node_phandle` (with `PhandleFormat`), `guess_boot_cpuid`,
  `sort_tree`, and `generate_label_tree`, `generate_fixups_tree` and
  `generate_local_fixups_tree`.
- `fdtkit.treesource` – `dt_to_source(f, dti, annotate, tracker)` writes
  a tree as device tree source, guessing the value type of untyped
  properties with `guess_value_type`; `format_propval_string` and
  `format_propval_int` render single value chunks.
- `fdtkit.yamltree` – `dt_to_yaml(f, dti)` writes a tree as a YAML
  document, with typed integer sequences (`!u8` … `!u64`) and `!phandle`
  scalars for phandle references.

## Example

```python
import io

from fdtkit.livetree import Data, DtInfo, MarkerType, build_node, build_property
from fdtkit.treesource import dt_to_source

value = Data().add_marker(MarkerType.TYPE_STRING).append_data(b"example\0")
root = build_node([build_property("compatible", value, None)], None, None)

out = io.StringIO()
dt_to_source(out, DtInfo(dt=root))
print(out.getvalue())
```

prints

```
/dts-v1/;

/ {
	compatible = "example";
};
```

`dt_to_yaml` takes the same `DtInfo` and a text stream.

## What it does not do

- It does not parse device tree source text; trees are built in Python
  with the `livetree` functions.
- It does not build or decode flattened device tree blobs; `read_blob`
  and `write_blob` only move bytes to and from files.
- It provides no command-line programs; `format_usage` and
  `version_string` only produce text.

## Requirements

Python 3.10 or later. YAML output uses PyYAML.
# dtmerge

A Python library for reading, editing and writing flattened device trees
(`.dtb` / `.dtbo`) and for merging device tree overlays into a base tree.
It has no dependencies beyond the standard library.

## Installation

```
pip install .
```

## Modules

- `dtmerge.fdt`: parse and serialise flattened device trees. `Fdt` holds
  the tree, `Node` its nodes and properties. `Fdt.from_bytes` parses a blob,
  and `Fdt.to_bytes` writes a packed version 17 blob, optionally padded to a
  total size. `read_uint`, `write_uint` and `check_header` are helpers for
  raw data.
- `dtmerge.dtblob`: `Dtb` wraps a tree with its total size, trailer (bytes
  stored after the tree in the file) and highest phandle. It loads and saves
  files (`Dtb.load`, `Dtb.save`), finds nodes by path, phandle, alias or
  symbol, creates and deletes nodes, sets aliases and synonyms, and lists the
  pins of a device (`Dtb.pins_for_device`). `enable_debug` turns on debug
  logging for the `dtmerge` logger.
- `dtmerge.fixups`: keep `__fixups__`, `__local_fixups__` and `__symbols__`
  consistent: `rename_node`, `filter_symbols`, `find_fixup`, `add_fixup`,
  `delete_fixup` and `stringlist_replace`.
- `dtmerge.merge`: resolve an overlay's references against a base tree
  (`fixup_overlay`), merge its fragments (`merge_overlay`,
  `merge_fragment`), set `node/path/property` values (`merge_params`) and
  build single-property fragments (`create_prop_fragment`).
- `dtmerge.overlay_map`: `detect_platform` reads the platform from a
  `compatible` string list, and `OverlayMap` reads `overlay_map.dtb` and
  remaps overlay names for that platform, following renames and rejecting
  deprecated or unsupported overlays.

## Example

```python
from dtmerge.dtblob import Dtb
from dtmerge.merge import fixup_overlay, merge_overlay

base = Dtb.load("base.dtb", 200000)
overlay = Dtb.load("overlays/example.dtbo", 200000)
fixup_overlay(base, overlay)
merge_overlay(base, overlay, None)
base.pack()
base.save("merged.dtb")
```

Errors are raised as `dtmerge.fdt.FdtError`, which carries an
`FdtErrorCode` and a `fatal` flag; `fatal=False` marks errors that reject a
single step rather than the whole operation.

## What this package does not do

- It has no command-line program; it is used from Python only.
- It does not look up or apply the named parameters an overlay declares in
  its `__overrides__` node (such as `i2c_arm=on`). Properties can be set
  directly with `Node.set`, `Dtb.set_node_properties` or `merge_params`.
"""Maintenance of the fixup, local-fixup and symbol tables of an overlay."""

from __future__ import annotations

from typing import Optional, Union

from .dtblob import Dtb, logger
from .fdt import FdtError, FdtErrorCode, Node

FIXUPS_PATH = "/__fixups__"
LOCAL_FIXUPS_PATH = "/__local_fixups__"
SYMBOLS_PATH = "/__symbols__"
EXPORTS_PATH = "/__exports__"

# Tables whose string values hold node paths that must follow a rename.
_PATH_TABLES = (FIXUPS_PATH, LOCAL_FIXUPS_PATH, SYMBOLS_PATH)

StrOrBytes = Union[str, bytes, bytearray, memoryview]


def _encode(value: StrOrBytes) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8", "surrogateescape")
    return bytes(value)


def _decode(value: bytes) -> str:
    return value.decode("utf-8", "surrogateescape")


def _split_stringlist(value) -> list[bytes]:
    """The NUL-terminated strings of a property (a trailing fragment is ignored)."""
    return bytes(value).split(b"\0")[:-1]


def _rename_in_stringlist(value, old_path: bytes, dir_len: int,
                          new_name: bytes) -> Optional[bytes]:
    """Rewrite every string naming ``old_path`` (or a path below it).

    Returns the new value, or None if nothing matched.
    """
    parts = bytes(value).split(b"\0")
    changed = False
    last = len(parts) - 1
    for index, part in enumerate(parts):
        if not part.startswith(old_path):
            continue
        rest = part[len(old_path):]
        terminated = index < last
        if rest[:1] in (b":", b"/") or (not rest and terminated):
            parts[index] = part[:dir_len] + new_name + rest
            changed = True
    return b"\0".join(parts) if changed else None


def rename_node(dtb: Dtb, node: Node, name) -> None:
    """Rename a node, keeping fixups, local fixups and symbols consistent.

    Once the overlay's fixups have been applied the tables are no longer
    needed, so only the node itself is renamed.
    """
    if dtb.fixups_applied or node.parent is None:
        node.rename(name)
        return

    old_name = node.name
    old_path = _encode(node.path())
    node.rename(name)
    if name == old_name:
        return

    old_name_bytes = _encode(old_name)
    dir_len = len(old_path) - len(old_name_bytes)
    new_name = _encode(name)
    root = dtb.fdt.root

    for table_path in _PATH_TABLES:
        table = root.find(table_path)
        if table is None:
            continue
        for prop, value in list(table.properties.items()):
            patched = _rename_in_stringlist(value, old_path, dir_len, new_name)
            if patched is not None:
                table.properties[prop] = bytearray(patched)

    # The node-structured local fixups mirror the tree, so rename the twin.
    local_fixups = root.find(LOCAL_FIXUPS_PATH)
    if local_fixups is not None:
        twin = local_fixups.find(_decode(old_path))
        if twin is not None and twin is not local_fixups:
            twin.rename(name)


def filter_symbols(dtb: Dtb) -> None:
    """Drop every symbol that is not listed in /__exports__.

    Without an /__exports__ node all symbols are private and /__symbols__
    is removed entirely.
    """
    root = dtb.fdt.root
    symbols = root.find(SYMBOLS_PATH)
    if symbols is None:
        return
    exports = root.find(EXPORTS_PATH)
    if exports is None:
        symbols.remove()
        return
    exported = set(exports.properties)
    for symbol in list(symbols.properties):
        if symbol not in exported:
            del symbols.properties[symbol]


def find_fixup(dtb: Dtb, fixup_loc) -> Optional[str]:
    """The symbol whose fixup list holds ``fixup_loc``, or None."""
    fixups = dtb.fdt.root.find(FIXUPS_PATH)
    if fixups is None:
        return None
    wanted = _encode(fixup_loc)
    for symbol, value in fixups.properties.items():
        if wanted in _split_stringlist(value):
            return symbol
    return None


def add_fixup(dtb: Dtb, symbol, fixup_loc) -> None:
    """Append ``fixup_loc`` to the fixup list of ``symbol``."""
    fixups = dtb.fdt.root.find(FIXUPS_PATH)
    if fixups is None:
        raise FdtError(FdtErrorCode.NOTFOUND, "no /__fixups__ node")
    fixups.append(symbol, _encode(fixup_loc) + b"\0")


def delete_fixup(dtb: Dtb, fixup_loc) -> None:
    """Remove ``fixup_loc`` from whichever fixup list holds it.

    A symbol left with no fixups is no longer referenced and is removed.
    """
    fixups = dtb.fdt.root.find(FIXUPS_PATH)
    wanted = _encode(fixup_loc)
    if fixups is not None:
        for symbol, value in list(fixups.properties.items()):
            strings = _split_stringlist(value)
            if wanted not in strings:
                continue
            strings.remove(wanted)
            if not strings:
                logger.debug("fixup symbol '%s' no longer referenced", symbol)
                del fixups.properties[symbol]
            else:
                fixups.properties[symbol] = bytearray(
                    b"".join(s + b"\0" for s in strings))
            return
    raise FdtError(FdtErrorCode.NOTFOUND, f"no fixup '{fixup_loc}'")


def stringlist_replace(strings, src_prefix, dst_prefix) -> Optional[bytes]:
    """Replace ``src_prefix`` with ``dst_prefix`` at the start of each string.

    ``strings`` is a list of NUL-terminated strings. Returns the rewritten
    list, or None if no string began with the prefix.
    """
    data = bytes(strings)
    if data and not data.endswith(b"\0"):
        raise FdtError(FdtErrorCode.BADSTRUCTURE, "malformed string list")
    src = _encode(src_prefix)
    dst = _encode(dst_prefix)
    replaced = False
    out = []
    for item in _split_stringlist(data):
        if item.startswith(src):
            item = dst + item[len(src):]
            replaced = True
        out.append(item + b"\0")
    if not replaced:
        return None
    return b"".join(out)
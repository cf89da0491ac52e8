"""Applying overlays to a base device tree: fixups, phandles and fragments."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Callable, Iterable, Optional

from .dtblob import Dtb, logger
from .fdt import FdtError, FdtErrorCode, Node, read_uint, write_uint
from .fixups import (FIXUPS_PATH, LOCAL_FIXUPS_PATH, SYMBOLS_PATH,
                     filter_symbols, rename_node)

MAX_PATH = 256

_FRAGMENT_PREFIXES = ("fragment@", "fragment-")
_OVERLAY = "__overlay__"
_DORMANT = "__dormant__"
_FIXUP_OFFSET = re.compile(rb"\s*\+?(\d+)")

IntraFragmentCallback = Callable[[Dtb, Node, Node], None]


def _encode(value: str) -> bytes:
    return value.encode("utf-8", "surrogateescape")


def _decode(value) -> str:
    return bytes(value).decode("utf-8", "surrogateescape")


def _cstring(value) -> str:
    return _decode(bytes(value).split(b"\0", 1)[0])


def _error(code: FdtErrorCode, message: str, fatal: bool = True) -> FdtError:
    logger.error(message)
    return FdtError(code, message, fatal=fatal)


def _as_nonfatal(exc: FdtError) -> FdtError:
    return FdtError(exc.code, exc.message, fatal=False)


def _set_or_append(node: Node, name: str, value) -> None:
    """Set a property, except that a non-empty "bootargs" is extended."""
    existing = node.get(name)
    if name == "bootargs" and existing and existing[0]:
        existing[-1] = ord(" ")
        node.append(name, value)
    else:
        node.set(name, value)


def merge_fragment(base, target, overlay, source, depth=0) -> None:
    """Copy the properties and subnodes of ``source`` into ``target``.

    At the top level the phandle properties of ``source`` are not copied;
    the "name" pseudo-property never is.
    """
    logger.debug("merge_fragment(%s,%s)", target.path(), source.path())

    for name, value in list(source.properties.items()):
        if name == "name" or (depth == 0 and name in ("phandle", "linux,phandle")):
            continue
        logger.debug("  +prop(%s)", name)
        _set_or_append(target, name, bytes(value))

    for child in list(source.children):
        subtarget = target.subnode(child.name)
        if subtarget is None:
            subtarget = target.add_subnode(child.name)
        merge_fragment(base, subtarget, overlay, child, depth + 1)

    logger.debug("merge_fragment() end")


def _apply_fixups(dtb: Dtb, stringlist, phandle: int, relative: bool) -> None:
    """Patch cells named by "path:property:offset" strings.

    Relative fixups add ``phandle`` to the existing cell; absolute ones
    replace it. An empty string ends the list.
    """
    for fixup in bytes(stringlist).split(b"\0"):
        if not fixup:
            break
        path, sep, rest = fixup.partition(b":")
        if not sep:
            raise FdtError(FdtErrorCode.BADSTRUCTURE, f"bad fixup '{_decode(fixup)}'")
        prop_name, sep, offset_text = rest.partition(b":")
        if not sep:
            raise FdtError(FdtErrorCode.BADSTRUCTURE, f"bad fixup '{_decode(fixup)}'")
        match = _FIXUP_OFFSET.fullmatch(offset_text)
        if not match:
            raise FdtError(FdtErrorCode.BADSTRUCTURE, f"bad fixup '{_decode(fixup)}'")
        offset = int(match.group(1))

        node = dtb.fdt.find_node(_decode(path))
        if node is None:
            raise FdtError(FdtErrorCode.NOTFOUND, f"no node '{_decode(path)}'")
        prop = node.get(_decode(prop_name))
        if prop is None:
            raise FdtError(FdtErrorCode.NOTFOUND,
                           f"no property '{_decode(prop_name)}'")
        if offset > len(prop) - 4:
            raise FdtError(FdtErrorCode.BADSTRUCTURE,
                           f"fixup offset {offset} outside '{_decode(prop_name)}'")

        patch = phandle + read_uint(prop, offset, 4) if relative else phandle
        write_uint(prop, offset, 4, patch)


def _apply_fixups_node(dtb: Dtb, fixups: Node, target: Node, increment: int) -> None:
    """Apply node-structured local fixups, which mirror the tree they patch."""
    for name, offsets in fixups.properties.items():
        prop = target.get(name)
        if prop is None:
            raise FdtError(FdtErrorCode.BADSTRUCTURE,
                           f"local fixup for missing property '{name}'")
        for pos in range(0, len(offsets) - 3, 4):
            patch_offset = read_uint(offsets, pos, 4)
            if patch_offset + 4 > len(prop):
                raise FdtError(FdtErrorCode.BADSTRUCTURE,
                               f"local fixup outside property '{name}'")
            write_uint(prop, patch_offset, 4,
                       increment + read_uint(prop, patch_offset, 4))

    for child in fixups.children:
        subtarget = target.subnode(child.name)
        if subtarget is None:
            raise FdtError(FdtErrorCode.NOTFOUND,
                           f"local fixup for missing node '{child.name}'")
        _apply_fixups_node(dtb, child, subtarget, increment)


def _relocate_phandle(node: Node, prop_name: str, increment: int) -> None:
    value = node.get(prop_name)
    if value is None:
        return
    if len(value) < 4:
        logger.error("%s property too small", prop_name)
        return
    if len(value) == 4:
        write_uint(value, 0, 4, read_uint(value, 0, 4) + increment)


def _resolve_phandles(base: Dtb, overlay: Dtb) -> None:
    """Move the overlay's phandles above those of the base, with references."""
    increment = base.max_phandle
    for node in overlay.fdt.root.walk():
        _relocate_phandle(node, "phandle", increment)
        _relocate_phandle(node, "linux,phandle", increment)

    local_fixups = overlay.fdt.root.find(LOCAL_FIXUPS_PATH)
    if local_fixups is not None:
        try:
            stringlist = local_fixups.get("fixup")
            if stringlist is not None:
                _apply_fixups(overlay, stringlist, increment, relative=True)
            else:
                _apply_fixups_node(overlay, local_fixups, overlay.fdt.root,
                                   increment)
        except FdtError:
            logger.error("error applying local fixups")
            raise

    overlay.max_phandle += increment


def _resolve_fixups(base: Dtb, overlay: Dtb) -> None:
    """Point the overlay's references to base labels at the base's phandles."""
    fixups = overlay.fdt.root.find(FIXUPS_PATH)
    if fixups is None or not fixups.properties:
        return

    symbols = base.fdt.root.find(SYMBOLS_PATH)
    if symbols is None:
        raise _error(FdtErrorCode.NOTFOUND, "no symbols found")

    for symbol_name, stringlist in list(fixups.properties.items()):
        if symbol_name.startswith("/"):
            target_path, ref_type = symbol_name, "path"
        else:
            value = symbols.get(symbol_name)
            if value is None:
                raise _error(FdtErrorCode.NOTFOUND,
                             f"can't find symbol '{symbol_name}'")
            target_path, ref_type = _cstring(value), "symbol"

        target = base.fdt.find_node(target_path)
        if target is None:
            raise _error(FdtErrorCode.NOTFOUND,
                         f"{ref_type} '{symbol_name}' is invalid")

        phandle = target.phandle()
        if not phandle:
            base.max_phandle += 1
            phandle = base.max_phandle
            target.set("phandle", phandle.to_bytes(4, "big"))

        try:
            _apply_fixups(overlay, stringlist, phandle, relative=False)
        except FdtError:
            logger.error("failed to apply fixups")
            raise


def fixup_overlay(base, overlay) -> None:
    """Resolve an overlay's external references and relocate its phandles.

    Any failure is raised as a non-fatal error. The overlay is marked as
    having had its fixups applied either way.
    """
    try:
        _resolve_fixups(base, overlay)
        _resolve_phandles(base, overlay)
    except FdtError as exc:
        raise _as_nonfatal(exc) from exc
    finally:
        overlay.fixups_applied = True


def _target_node(base: Optional[Dtb], overlay: Dtb, fragment: Node) -> Node:
    """The node a fragment applies to: in the base, or in the overlay itself."""
    path_value = fragment.get("target-path")
    if path_value is not None:
        if base is None:
            raise FdtError(FdtErrorCode.NOTFOUND, "target-path needs a base tree")
        raw = bytes(path_value)
        if raw.endswith(b"\0"):
            raw = raw[:-1]
        path = _decode(raw)
        node = base.fdt.find_node(path)
        if node is None:
            raise _error(FdtErrorCode.NOTFOUND, f"invalid target-path '{path}'")
        return node

    target = fragment.get("target")
    if target is None:
        raise _error(FdtErrorCode.NOTFOUND, "no target or target-path")
    if len(target) != 4:
        raise FdtError(FdtErrorCode.BADSTRUCTURE, "target is not a single cell")
    phandle = read_uint(target, 0, 4)

    if base is None:
        if phandle & 0x80000000 or phandle > overlay.max_phandle:
            raise FdtError(FdtErrorCode.NOTFOUND, f"phandle {phandle} not in overlay")
        node = overlay.fdt.node_by_phandle(phandle)
        if node is None:
            raise FdtError(FdtErrorCode.NOTFOUND, f"phandle {phandle} not in overlay")
        return node

    signed = phandle - (1 << 32) if phandle & 0x80000000 else phandle
    try:
        node = base.find_phandle(phandle)
    except FdtError:
        logger.error("invalid target (phandle %d)", signed)
        raise
    if node is None:
        raise _error(FdtErrorCode.NOTFOUND, f"invalid target (phandle {signed})")
    return node


def _rebase_paths(base: Dtb, strings: Node, overlay: Dtb, source: Node,
                  kind: str) -> None:
    """Copy path-valued properties, rebasing fragment paths onto their targets.

    A value of the form /<fragment>/__overlay__/<rest> becomes
    <path of the fragment's target>/<rest>; anything else is copied as is.
    """
    for name, value in list(source.properties.items()):
        raw = bytes(value)
        new_value = raw
        first = raw.split(b"\0", 1)[0]
        slash = first.find(b"/", 1) if first.startswith(b"/") else -1
        if (slash >= 0 and raw[slash + 1:slash + 12] == _encode(_OVERLAY)
                and raw[slash + 12:slash + 13] in (b"/", b"\0")):
            fragment = overlay.fdt.root.find(_decode(raw[:slash]))
            if fragment is None:
                raise _error(FdtErrorCode.NOTFOUND, "no target or target-path",
                             fatal=False)
            try:
                target = _target_node(base, overlay, fragment)
            except FdtError as exc:
                raise _as_nonfatal(exc) from exc

            target_path = _encode(target.path())
            if len(target_path) >= MAX_PATH:
                raise _error(FdtErrorCode.NOSPACE,
                             f"bad target path for {_cstring(raw)}")
            rest = raw[slash + 12:]
            if target_path == b"/":
                rest = rest[1:]
            new_value = target_path + rest
            if len(new_value) >= MAX_PATH:
                raise _error(FdtErrorCode.NOSPACE,
                             f"exported symbol path too long for {_cstring(raw)}")
            logger.debug("set %s '%s' path to '%s'", kind, name, _cstring(new_value))
        strings.set(name, new_value)


def _fragment_payload(fragment: Node) -> Optional[Node]:
    """The active payload of a fragment node, or None if there is none."""
    if not fragment.name.startswith(_FRAGMENT_PREFIXES):
        return None
    frag_name = fragment.name[len(_FRAGMENT_PREFIXES[0]):]
    payload = fragment.subnode(_OVERLAY)
    if payload is None:
        if fragment.subnode(_DORMANT) is not None:
            logger.debug("fragment %s disabled", frag_name)
        else:
            logger.error("no overlay in fragment %s", frag_name)
    return payload


def _index_path(node: Node) -> list[int]:
    indices = []
    while node.parent is not None:
        parent = node.parent
        indices.append(next(i for i, child in enumerate(parent.children)
                            if child is node))
        node = parent
    return indices[::-1]


def _node_at(root: Node, indices: Iterable[int]) -> Node:
    node = root
    for index in indices:
        node = node.children[index]
    return node


def _merge_intra_fragments(overlay: Dtb,
                           callback: Optional[IntraFragmentCallback]) -> None:
    """Apply fragments that target the overlay itself, then disable them."""
    frag_idx = 0
    while frag_idx < len(overlay.fdt.root.children):
        fragment = overlay.fdt.root.children[frag_idx]
        payload = _fragment_payload(fragment)
        if payload is None:
            frag_idx += 1
            continue
        try:
            target = _target_node(None, overlay, fragment)
        except FdtError:
            frag_idx += 1
            continue

        if callback is not None:
            callback(overlay, payload, target)

        # Merge into a copy so that the source stays unchanged, then switch.
        clone = overlay.fdt.copy()
        clone_target = _node_at(clone.root, _index_path(target))
        merge_fragment(overlay, clone_target, overlay, payload, 0)
        overlay.fdt = clone

        payload = overlay.fdt.root.children[frag_idx].subnode(_OVERLAY)
        if payload is not None:
            rename_node(overlay, payload, _DORMANT)
        frag_idx += 1


def _merge_into_base(base: Dtb, overlay: Dtb) -> None:
    for fragment in list(overlay.fdt.root.children):
        if fragment.name == "__symbols__":
            # Only exported symbols remain at this point.
            symbols = base.fdt.root.find(SYMBOLS_PATH)
            if symbols is not None:
                try:
                    _rebase_paths(base, symbols, overlay, fragment, "label")
                except FdtError as exc:
                    logger.debug("symbols not exported: %s", exc.message)
            continue

        payload = _fragment_payload(fragment)
        if payload is None:
            continue

        try:
            target = _target_node(base, overlay, fragment)
        except FdtError as exc:
            raise _as_nonfatal(exc) from exc

        if target.name == "aliases":
            _rebase_paths(base, target, overlay, payload, "alias")
        else:
            merge_fragment(base, target, overlay, payload, 0)


def merge_overlay(base, overlay, on_intra_fragment_merged=None) -> None:
    """Merge an overlay's fragments into ``base``.

    Private symbols are dropped first and fragments that target the overlay
    itself are applied and disabled. With ``base`` None only that first
    stage is done. ``on_intra_fragment_merged(overlay, payload, target)`` is
    called before each intra-overlay fragment is applied.
    """
    try:
        filter_symbols(overlay)
        _merge_intra_fragments(overlay, on_intra_fragment_merged)
        if base is not None:
            _merge_into_base(base, overlay)
            base.max_phandle = overlay.max_phandle
    except FdtError:
        logger.error("merge failed")
        raise


def merge_params(dtb, params) -> None:
    """Set "node/path/property" parameters, creating nodes as needed.

    ``params`` is a mapping or an iterable of (name, value) pairs.
    """
    items = params.items() if isinstance(params, Mapping) else params
    for param, value in items:
        slash = param.rfind("/")
        if slash < 0:
            raise FdtError(FdtErrorCode.BADPATH, f"bad parameter path '{param}'",
                           fatal=False)
        node = dtb.create_node(param[:slash] or "/")
        _set_or_append(node, param[slash + 1:], value)


def create_prop_fragment(dtb, idx, target_phandle, prop_name, prop_data) -> Node:
    """Add a fragment setting one property of the node with ``target_phandle``."""
    fragment = dtb.fdt.root.add_subnode(f"fragment-{idx}")
    fragment.set("target", (target_phandle & 0xFFFFFFFF).to_bytes(4, "big"))
    payload = fragment.add_subnode(_OVERLAY)
    payload.set(prop_name, prop_data)
    return fragment
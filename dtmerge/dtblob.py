"""Device tree blobs as loaded from and saved to files, with lookup helpers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator, Optional, Union

from .fdt import Fdt, FdtError, FdtErrorCode, Node, check_header, read_uint

logger = logging.getLogger("dtmerge")
logger.setLevel(logging.INFO)


def enable_debug(enable) -> None:
    """Switch debug logging for the package on or off."""
    logger.setLevel(logging.DEBUG if enable else logging.INFO)


def _cstring(value) -> str:
    """Decode a property value up to its first NUL."""
    return bytes(value).split(b"\0", 1)[0].decode("utf-8", "surrogateescape")


def _cell_for(values: bytes, offset: int) -> int:
    """The cell matching a pin offset, the only cell if there is one, or -1."""
    if not values:
        return -1
    index = offset if len(values) > 4 else 0
    if index + 4 > len(values):
        return -1
    return read_uint(values, index, 4)


@dataclass(frozen=True)
class Pin:
    """A GPIO pin used by a device, with its function and pull (-1 if unset)."""

    pin: int
    function: int = -1
    pull: int = -1


class Dtb:
    """A device tree together with its buffer size, trailer and phandle range.

    ``max_size`` is the total size the blob is written out with; ``None``
    means the blob is packed, so its size is exactly what its contents need.
    """

    def __init__(self, fdt=None, max_size=None):
        self.fdt: Fdt = fdt if fdt is not None else Fdt()
        self.max_size: Optional[int] = max_size
        self.trailer: bytes = b""
        self.fixups_applied: bool = False
        self.max_phandle: int = self.fdt.max_phandle()

    def __repr__(self) -> str:
        return f"Dtb(totalsize={self.totalsize()}, max_phandle={self.max_phandle})"

    @classmethod
    def create(cls, max_size) -> Dtb:
        """An empty tree with a total size of ``max_size`` bytes."""
        fdt = Fdt()
        if max_size < fdt.size():
            raise FdtError(FdtErrorCode.NOSPACE, "failed to create empty dtb")
        return cls(fdt, max_size)

    @classmethod
    def from_bytes(cls, data, max_size=0) -> Dtb:
        """Parse a blob, keeping any bytes after the tree as the trailer.

        A positive ``max_size`` is the buffer size, which must hold the data;
        a negative one is padding added to the data length; zero uses the
        data length itself.
        """
        data = bytes(data)
        length = len(data)
        if max_size > 0:
            if max_size < length:
                raise FdtError(FdtErrorCode.NOSPACE,
                               f"file too large ({length} bytes) for max_size")
        elif max_size < 0:
            max_size = length - max_size
        else:
            max_size = length

        try:
            header = check_header(data)
        except FdtError as exc:
            raise FdtError(exc.code, f"not a valid FDT - {exc.message}") from exc
        if max_size < header.totalsize:
            raise FdtError(FdtErrorCode.NOSPACE, "fdt is too large")

        dtb = cls(Fdt.from_bytes(data), max_size)
        dtb.trailer = data[header.totalsize:]
        return dtb

    @classmethod
    def load(cls, path, max_size=0) -> Dtb:
        """Read a blob from a file."""
        with open(path, "rb") as fp:
            return cls.load_file(fp, max_size)

    @classmethod
    def load_file(cls, fp: BinaryIO, max_size=0) -> Dtb:
        """Read a blob from an open binary file."""
        return cls.from_bytes(fp.read(), max_size)

    def save(self, path) -> None:
        """Write the blob, followed by its trailer, to a file."""
        data = self.to_bytes()
        with open(path, "wb") as fp:
            fp.write(data)
        logger.debug("wrote %d bytes to '%s'", len(data), path)

    def pack(self) -> None:
        """Shrink the total size to what the contents need."""
        self.max_size = None

    def totalsize(self) -> int:
        """The size of the serialised tree, excluding the trailer."""
        return self.max_size if self.max_size is not None else self.fdt.size()

    def extend(self, new_size) -> None:
        """Grow the total size; a negative size is an amount to grow by."""
        size = self.totalsize()
        if new_size < 0:
            new_size = size - new_size
        if new_size > size:
            self.max_size = new_size
        elif new_size < size:
            raise FdtError(FdtErrorCode.NOSPACE, "a dtb cannot be shrunk")

    def to_bytes(self) -> bytes:
        """The serialised tree followed by the trailer."""
        return self.fdt.to_bytes(self.max_size) + bytes(self.trailer)

    def find_node(self, path) -> Optional[Node]:
        """The node at an absolute (or alias-based) path, or None."""
        return self.fdt.find_node(path)

    def create_node(self, path) -> Node:
        """The node at an absolute path, creating it and its parents as needed."""
        if path.endswith("/"):
            path = path[:-1]
        node = self.fdt.root
        if not path:
            return node
        if not path.startswith("/"):
            raise FdtError(FdtErrorCode.BADPATH, f"bad path '{path}'")
        for component in path[1:].split("/"):
            if not component:
                raise FdtError(FdtErrorCode.BADPATH, f"bad path '{path}'")
            child = node.subnode(component)
            node = child if child is not None else node.add_subnode(component)
        return node

    def delete_node(self, path) -> None:
        """Remove the node at ``path`` and everything below it."""
        logger.debug("delete_node(%s)", path)
        node = self.find_node(path)
        if node is None:
            raise FdtError(FdtErrorCode.NOTFOUND, f"no node '{path}'")
        node.remove()

    def set_node_properties(self, path, properties) -> Node:
        """Set properties (a mapping or name/value pairs) on a node, creating it."""
        node = self.find_node(path)
        if node is None:
            node = self.create_node(path)
        items: Iterable = properties.items() if isinstance(properties, Mapping) \
            else properties
        for name, value in items:
            node.set(name, value)
        return node

    def find_phandle(self, phandle) -> Optional[Node]:
        """The node carrying ``phandle``, or None."""
        return self.fdt.node_by_phandle(phandle)

    def find_symbol(self, symbol_name) -> Node:
        """The node named by an alias or by a label in /__symbols__."""
        node_path = self.get_alias(symbol_name)
        if node_path is None:
            symbols = self.fdt.root.find("/__symbols__")
            if symbols is None:
                logger.error("no symbols found")
                raise FdtError(FdtErrorCode.NOTFOUND, "no symbols found")
            value = symbols.get(symbol_name)
            if value is None:
                raise FdtError(FdtErrorCode.NOTFOUND,
                               f"no symbol '{symbol_name}'")
            node_path = _cstring(value)
        node = self.fdt.find_node(node_path)
        if node is None:
            raise FdtError(FdtErrorCode.NOTFOUND,
                           f"symbol '{symbol_name}' refers to a missing node")
        return node

    def find_matching_node(self, node_names, start=None) -> Optional[Node]:
        """The next node after ``start`` (or from the root) named as listed.

        A listed name matches a node of that name with or without a unit
        address.
        """
        if isinstance(node_names, str):
            node_names = [node_names]
        nodes = self.fdt.root.walk()
        if start is not None:
            for node in nodes:
                if node is start:
                    break
            else:
                return None
        for node in nodes:
            for wanted in node_names:
                if node.name == wanted or node.name.startswith(wanted + "@"):
                    return node
        return None

    def node_is_enabled(self, node) -> bool:
        """Whether a node's status is "okay" or "ok"."""
        status = self.get_property(node, "status")
        return status is not None and _cstring(status) in ("okay", "ok")

    def get_property(self, node, prop_name) -> Optional[bytearray]:
        """A property of ``node`` (which may be None), or None."""
        if node is None:
            return None
        return node.get(prop_name)

    def set_property(self, node, prop_name, value) -> None:
        """Create or replace a property of ``node``."""
        node.set(prop_name, value)

    def get_alias(self, alias_name) -> Optional[str]:
        """The path an alias refers to ("" if empty), or None."""
        aliases = self.fdt.root.find("/aliases")
        value = self.get_property(aliases, alias_name)
        if value is None:
            return None
        return _cstring(value)

    def set_alias(self, alias_name, value) -> None:
        """Create or replace an alias, creating /aliases if necessary."""
        aliases = self.fdt.root.find("/aliases")
        if aliases is None:
            aliases = self.fdt.root.add_subnode("aliases")
        aliases.set(alias_name, value)

    def dup_property(self, node_path, dst, src) -> None:
        """Copy property ``src`` of a node to ``dst``; absent sources are ignored."""
        node = self.find_node(node_path)
        if node is None:
            return
        value = node.get(src)
        if value is None:
            return
        node.set(dst, bytes(value))
        logger.debug("%s:%s=%s", node_path, dst, src)

    def set_synonym(self, dst, src) -> None:
        """Make the aliases, symbols and overrides named ``dst`` match ``src``."""
        for node_path in ("/aliases", "/__symbols__", "/__overrides__"):
            self.dup_property(node_path, dst, src)

    def pins_for_device(self, symbol) -> Iterator[Pin]:
        """The pins configured by an enabled device's pinctrl-0 groups."""
        device = self.find_symbol(symbol)
        pinctrl = None
        if self.node_is_enabled(device):
            pinctrl = self.get_property(device, "pinctrl-0")
        return self._iter_pins(bytes(pinctrl) if pinctrl is not None else b"")

    def _iter_pins(self, pinctrl: bytes) -> Iterator[Pin]:
        for offset in range(0, len(pinctrl) - 3, 4):
            phandle = read_uint(pinctrl, offset, 4)
            try:
                group = self.find_phandle(phandle)
            except FdtError:
                group = None
            if group is None:
                continue
            pins = bytes(group.get("brcm,pins") or b"")
            funcs = bytes(group.get("brcm,function") or b"")
            pulls = bytes(group.get("brcm,pull") or b"")
            for pin_offset in range(0, len(pins) - 3, 4):
                yield Pin(read_uint(pins, pin_offset, 4),
                          _cell_for(funcs, pin_offset),
                          _cell_for(pulls, pin_offset))


BytesLike = Union[bytes, bytearray, memoryview]
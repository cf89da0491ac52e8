"""In-memory flattened device tree: parsing, editing and serialisation."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Union

FDT_MAGIC = 0xD00DFEED

FDT_BEGIN_NODE = 0x1
FDT_END_NODE = 0x2
FDT_PROP = 0x3
FDT_NOP = 0x4
FDT_END = 0x9

FIRST_SUPPORTED_VERSION = 16
LAST_SUPPORTED_VERSION = 17

V16_HEADER_SIZE = 36
V17_HEADER_SIZE = 40

_RESERVE_ENTRY = struct.Struct(">QQ")

PropertyValue = Union[bytes, bytearray, memoryview, str, None]


class FdtErrorCode(enum.IntEnum):
    """Error numbers as used by the flattened device tree format library."""

    NOTFOUND = 1
    EXISTS = 2
    NOSPACE = 3
    BADOFFSET = 4
    BADPATH = 5
    BADPHANDLE = 6
    BADSTATE = 7
    TRUNCATED = 8
    BADMAGIC = 9
    BADVERSION = 10
    BADSTRUCTURE = 11
    BADLAYOUT = 12
    INTERNAL = 13
    BADNCELLS = 14
    BADVALUE = 15
    BADOVERLAY = 16
    NOPHANDLES = 17


class FdtError(Exception):
    """A device tree operation failed.

    ``fatal`` distinguishes errors that abort a whole operation from those
    that only cause a single step (such as one parameter) to be rejected.
    """

    def __init__(self, code, message=None, fatal=True):
        self.code = FdtErrorCode(code)
        self.message = message or f"FDT error {self.code.name}"
        self.fatal = bool(fatal)
        super().__init__(self.message)

    @property
    def status(self) -> int:
        """Numeric status: negative for fatal errors, positive otherwise."""
        return -int(self.code) if self.fatal else int(self.code)


def _to_bytearray(value: PropertyValue) -> bytearray:
    if value is None:
        return bytearray()
    if isinstance(value, str):
        return bytearray(value.encode("utf-8", "surrogateescape") + b"\0")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytearray(value)
    raise TypeError(f"unsupported property value type {type(value).__name__}")


def _name_matches(node_name: str, wanted: str) -> bool:
    """Node name comparison: a name without a unit address matches any unit."""
    if node_name == wanted:
        return True
    return "@" not in wanted and node_name.startswith(wanted + "@")


class Node:
    """A device tree node holding ordered properties and child nodes."""

    def __init__(self, name=""):
        self.name: str = name
        self.properties: dict[str, bytearray] = {}
        self.children: list[Node] = []
        self.parent: Optional[Node] = None

    def __repr__(self) -> str:
        return f"Node({self.path()!r})"

    def path(self) -> str:
        """The absolute path of this node."""
        names = []
        node = self
        while node.parent is not None:
            names.append(node.name)
            node = node.parent
        return "/" + "/".join(reversed(names))

    def get(self, name) -> Optional[bytearray]:
        """The stored value of a property (patchable in place), or None."""
        return self.properties.get(name)

    def set(self, name, value) -> None:
        """Create or replace a property; strings gain a terminating NUL."""
        self.properties[name] = _to_bytearray(value)

    def append(self, name, value) -> None:
        """Append data to a property, creating it if absent."""
        data = _to_bytearray(value)
        existing = self.properties.get(name)
        if existing is None:
            self.properties[name] = data
        else:
            existing.extend(data)

    def delete(self, name) -> None:
        """Remove a property."""
        if name not in self.properties:
            raise FdtError(FdtErrorCode.NOTFOUND, f"no property '{name}'")
        del self.properties[name]

    def subnode(self, name) -> Optional[Node]:
        """The first child matching ``name``, or None."""
        for child in self.children:
            if _name_matches(child.name, name):
                return child
        return None

    def add_subnode(self, name) -> Node:
        """Add a new child, placed before any existing children."""
        if self.subnode(name) is not None:
            raise FdtError(FdtErrorCode.EXISTS, f"node '{name}' already exists")
        child = Node(name)
        child.parent = self
        self.children.insert(0, child)
        return child

    def _attach(self, child: Node) -> None:
        child.parent = self
        self.children.append(child)

    def remove(self) -> None:
        """Detach this node (and its subtree) from its parent."""
        if self.parent is None:
            raise FdtError(FdtErrorCode.BADOFFSET, "cannot remove the root node")
        self.parent.children = [c for c in self.parent.children if c is not self]
        self.parent = None

    def rename(self, name) -> None:
        """Change the name of this node."""
        self.name = name

    def walk(self) -> Iterator[Node]:
        """Yield this node and all its descendants in depth-first order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def phandle(self) -> int:
        """The node's phandle, or 0 if it has none."""
        for prop in ("phandle", "linux,phandle"):
            value = self.properties.get(prop)
            if value is not None and len(value) == 4:
                return int.from_bytes(value, "big")
        return 0

    def find(self, path) -> Optional[Node]:
        """Follow a '/'-separated path relative to this node."""
        node: Optional[Node] = self
        for component in path.split("/"):
            if not component:
                continue
            node = node.subnode(component)
            if node is None:
                return None
        return node

    def _copy(self, parent: Optional[Node] = None) -> Node:
        clone = Node(self.name)
        clone.parent = parent
        clone.properties = {k: bytearray(v) for k, v in self.properties.items()}
        clone.children = [child._copy(clone) for child in self.children]
        return clone


@dataclass(frozen=True)
class FdtHeader:
    """The fields of a flattened device tree header."""

    magic: int
    totalsize: int
    off_dt_struct: int
    off_dt_strings: int
    off_mem_rsvmap: int
    version: int
    last_comp_version: int
    boot_cpuid_phys: int
    size_dt_strings: int
    size_dt_struct: Optional[int]


def read_uint(data, offset, size) -> int:
    """Read a big-endian unsigned integer of 1, 2, 4 or 8 bytes."""
    if size not in (1, 2, 4, 8):
        raise ValueError(f"unsupported integer size {size}")
    if offset < 0 or offset + size > len(data):
        raise IndexError("read beyond the end of the data")
    return int.from_bytes(bytes(data[offset:offset + size]), "big")


def write_uint(buffer, offset, size, value) -> None:
    """Write a big-endian unsigned integer, truncated to ``size`` bytes."""
    if size not in (1, 2, 4, 8):
        raise ValueError(f"unsupported integer size {size}")
    if offset < 0 or offset + size > len(buffer):
        raise IndexError("write beyond the end of the buffer")
    mask = (1 << (8 * size)) - 1
    buffer[offset:offset + size] = (value & mask).to_bytes(size, "big")


def check_header(data) -> FdtHeader:
    """Validate the header of a flattened device tree and return it."""
    if len(data) < 4:
        raise FdtError(FdtErrorCode.TRUNCATED, "data too short for an FDT header")
    if read_uint(data, 0, 4) != FDT_MAGIC:
        raise FdtError(FdtErrorCode.BADMAGIC, "bad FDT magic")
    if len(data) < V16_HEADER_SIZE:
        raise FdtError(FdtErrorCode.TRUNCATED, "data too short for an FDT header")
    fields = struct.unpack_from(">9I", data, 0)
    (magic, totalsize, off_struct, off_strings, off_rsv,
     version, last_comp, boot_cpuid, size_strings) = fields
    if version < FIRST_SUPPORTED_VERSION or last_comp > LAST_SUPPORTED_VERSION:
        raise FdtError(FdtErrorCode.BADVERSION, f"unsupported FDT version {version}")
    header_size = V17_HEADER_SIZE if version >= 17 else V16_HEADER_SIZE
    if len(data) < header_size or totalsize < header_size:
        raise FdtError(FdtErrorCode.TRUNCATED, "FDT header truncated")
    if totalsize > len(data):
        raise FdtError(FdtErrorCode.TRUNCATED, "FDT larger than the data supplied")
    size_struct = read_uint(data, 36, 4) if version >= 17 else None

    if not header_size <= off_rsv <= totalsize:
        raise FdtError(FdtErrorCode.TRUNCATED, "reserve map outside the FDT")
    if not header_size <= off_struct <= totalsize:
        raise FdtError(FdtErrorCode.TRUNCATED, "structure block outside the FDT")
    if size_struct is not None and off_struct + size_struct > totalsize:
        raise FdtError(FdtErrorCode.TRUNCATED, "structure block outside the FDT")
    if not header_size <= off_strings or off_strings + size_strings > totalsize:
        raise FdtError(FdtErrorCode.TRUNCATED, "strings block outside the FDT")

    return FdtHeader(magic, totalsize, off_struct, off_strings, off_rsv,
                     version, last_comp, boot_cpuid, size_strings, size_struct)


def _align4(pos: int) -> int:
    return (pos + 3) & ~3


def _bad_structure(message: str) -> FdtError:
    return FdtError(FdtErrorCode.BADSTRUCTURE, message)


def _parse_reservations(data: bytes, header: FdtHeader) -> list[tuple[int, int]]:
    entries = []
    pos = header.off_mem_rsvmap
    while True:
        if pos + _RESERVE_ENTRY.size > header.totalsize:
            raise FdtError(FdtErrorCode.TRUNCATED, "unterminated reserve map")
        address, size = _RESERVE_ENTRY.unpack_from(data, pos)
        pos += _RESERVE_ENTRY.size
        if address == 0 and size == 0:
            return entries
        entries.append((address, size))


def _parse_structure(data: bytes, header: FdtHeader) -> Node:
    start = header.off_dt_struct
    end = start + header.size_dt_struct if header.size_dt_struct is not None \
        else header.totalsize
    str_start = header.off_dt_strings
    str_end = str_start + header.size_dt_strings

    def string_at(offset: int) -> str:
        pos = str_start + offset
        if offset < 0 or pos >= str_end:
            raise _bad_structure("property name outside the strings block")
        nul = data.find(b"\0", pos, str_end)
        if nul < 0:
            raise _bad_structure("unterminated property name")
        return data[pos:nul].decode("utf-8", "surrogateescape")

    stack: list[Node] = []
    root: Optional[Node] = None
    pos = start
    while True:
        if pos + 4 > end:
            raise _bad_structure("structure block ends without an END token")
        token = read_uint(data, pos, 4)
        pos += 4
        if token == FDT_NOP:
            continue
        if token == FDT_BEGIN_NODE:
            nul = data.find(b"\0", pos, end)
            if nul < 0:
                raise _bad_structure("unterminated node name")
            node = Node(data[pos:nul].decode("utf-8", "surrogateescape"))
            pos = _align4(nul + 1)
            if stack:
                stack[-1]._attach(node)
            elif root is not None:
                raise _bad_structure("more than one root node")
            else:
                root = node
            stack.append(node)
        elif token == FDT_END_NODE:
            if not stack:
                raise _bad_structure("unbalanced END_NODE")
            stack.pop()
        elif token == FDT_PROP:
            if not stack:
                raise _bad_structure("property outside a node")
            if pos + 8 > end:
                raise _bad_structure("truncated property")
            length, nameoff = struct.unpack_from(">II", data, pos)
            pos += 8
            if pos + length > end:
                raise _bad_structure("truncated property value")
            value = bytearray(data[pos:pos + length])
            pos = _align4(pos + length)
            stack[-1].properties[string_at(nameoff)] = value
        elif token == FDT_END:
            if stack or root is None:
                raise _bad_structure("END token inside a node")
            return root
        else:
            raise _bad_structure(f"unknown token {token:#x}")


class Fdt:
    """A whole device tree: the node hierarchy plus header-level data."""

    def __init__(self, root=None):
        self.root: Node = root if root is not None else Node("")
        self.memory_reservations: list[tuple[int, int]] = []
        self.boot_cpuid_phys: int = 0

    @classmethod
    def from_bytes(cls, data) -> Fdt:
        """Parse a flattened device tree blob."""
        data = bytes(data)
        header = check_header(data)
        fdt = cls(_parse_structure(data, header))
        fdt.memory_reservations = _parse_reservations(data, header)
        fdt.boot_cpuid_phys = header.boot_cpuid_phys
        return fdt

    def to_bytes(self, totalsize=None) -> bytes:
        """Serialise as a packed version 17 blob, optionally zero-padded."""
        strings = bytearray()
        name_offsets: dict[str, int] = {}
        structure = bytearray()

        def name_offset(name: str) -> int:
            offset = name_offsets.get(name)
            if offset is None:
                offset = len(strings)
                strings.extend(name.encode("utf-8", "surrogateescape") + b"\0")
                name_offsets[name] = offset
            return offset

        def pad() -> None:
            structure.extend(b"\0" * (_align4(len(structure)) - len(structure)))

        def emit(node: Node) -> None:
            structure.extend(struct.pack(">I", FDT_BEGIN_NODE))
            structure.extend(node.name.encode("utf-8", "surrogateescape") + b"\0")
            pad()
            for prop, value in node.properties.items():
                structure.extend(struct.pack(">III", FDT_PROP, len(value),
                                             name_offset(prop)))
                structure.extend(value)
                pad()
            for child in node.children:
                emit(child)
            structure.extend(struct.pack(">I", FDT_END_NODE))

        emit(self.root)
        structure.extend(struct.pack(">I", FDT_END))

        reserve = bytearray()
        for address, size in self.memory_reservations:
            reserve.extend(_RESERVE_ENTRY.pack(address, size))
        reserve.extend(_RESERVE_ENTRY.pack(0, 0))

        off_rsv = V17_HEADER_SIZE
        off_struct = off_rsv + len(reserve)
        off_strings = off_struct + len(structure)
        packed_size = off_strings + len(strings)
        if totalsize is None:
            totalsize = packed_size
        elif totalsize < packed_size:
            raise FdtError(FdtErrorCode.NOSPACE,
                           f"tree needs {packed_size} bytes, only {totalsize} allowed")

        header = struct.pack(">10I", FDT_MAGIC, totalsize, off_struct, off_strings,
                             off_rsv, LAST_SUPPORTED_VERSION, FIRST_SUPPORTED_VERSION,
                             self.boot_cpuid_phys, len(strings), len(structure))
        blob = header + bytes(reserve) + bytes(structure) + bytes(strings)
        return blob + b"\0" * (totalsize - packed_size)

    def size(self) -> int:
        """The size of the packed serialised tree."""
        return len(self.to_bytes())

    def find_node(self, path) -> Optional[Node]:
        """Look up an absolute path, or a path starting with an alias."""
        if path.startswith("/"):
            return self.root.find(path)
        alias, _, rest = path.partition("/")
        aliases = self.root.subnode("aliases")
        value = aliases.get(alias) if aliases is not None else None
        if value is None:
            return None
        target = bytes(value).split(b"\0", 1)[0].decode("utf-8", "surrogateescape")
        if not target.startswith("/"):
            return None
        node = self.root.find(target)
        return node.find(rest) if node is not None else None

    def node_by_phandle(self, phandle) -> Optional[Node]:
        """The node carrying ``phandle``, or None."""
        if phandle in (0, 0xFFFFFFFF):
            raise FdtError(FdtErrorCode.BADPHANDLE, f"invalid phandle {phandle}")
        for node in self.root.walk():
            if node.phandle() == phandle:
                return node
        return None

    def max_phandle(self) -> int:
        """The largest phandle in use, or 0."""
        return max((node.phandle() for node in self.root.walk()), default=0)

    def copy(self) -> Fdt:
        """A deep, independent copy of the tree."""
        clone = Fdt(self.root._copy())
        clone.memory_reservations = list(self.memory_reservations)
        clone.boot_cpuid_phys = self.boot_cpuid_phys
        return clone
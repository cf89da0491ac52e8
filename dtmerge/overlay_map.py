"""Platform detection and the overlay map that renames overlays per platform."""

from __future__ import annotations

import os
from typing import BinaryIO, Optional

from .dtblob import Dtb, logger
from .fdt import FdtError, FdtErrorCode

MAP_FILE = "overlay_map.dtb"

# Compatible strings, in the order they are tried, and the platform each
# belongs to. The BCM2835 family members share one platform.
_FAMILIES = (
    (b"bcm2708", "bcm2835"),
    (b"bcm2709", "bcm2835"),
    (b"bcm2710", "bcm2835"),
    (b"bcm2835", "bcm2835"),
    (b"bcm2836", "bcm2835"),
    (b"bcm2837", "bcm2835"),
    (b"bcm2711", "bcm2711"),
    (b"bcm2712", "bcm2712"),
)


def _cstring(value) -> str:
    return bytes(value).split(b"\0", 1)[0].decode("utf-8", "surrogateescape")


def detect_platform(compatible) -> Optional[str]:
    """The platform named by a "compatible" string list, or None.

    Each string is examined after its vendor prefix (up to the first comma);
    a string without a comma is taken whole.
    """
    if compatible is None:
        return None
    if isinstance(compatible, str):
        data = compatible.encode("utf-8", "surrogateescape")
    else:
        data = bytes(compatible)

    pos = 0
    while pos < len(data):
        comma = data.find(b",", pos)
        start = comma + 1 if comma >= 0 else pos
        nul = data.find(b"\0", start)
        if nul >= 0:
            name = data[start:nul]
            for family, platform in _FAMILIES:
                if family == name:
                    return platform
            pos = nul + 1
        else:
            # An unterminated tail is compared only as far as it goes.
            name = data[start:]
            for family, platform in _FAMILIES:
                if family.startswith(name):
                    return platform
            pos = len(data) + 1
    return None


class OverlayMap:
    """Maps overlay names to the names used on a particular platform."""

    def __init__(self, platform=None, map_dtb=None):
        self.platform: Optional[str] = platform
        self.map_dtb: Optional[Dtb] = map_dtb

    def __repr__(self) -> str:
        loaded = "loaded" if self.map_dtb is not None else "not loaded"
        return f"OverlayMap(platform={self.platform!r}, {loaded})"

    @classmethod
    def from_file(cls, fp: Optional[BinaryIO], compatible) -> OverlayMap:
        """Detect the platform and read the map from ``fp`` (which may be None)."""
        if compatible is None:
            return cls()

        platform = detect_platform(compatible)
        map_dtb = None
        if platform:
            logger.debug("using platform '%s'", platform)
            if fp is not None:
                try:
                    map_dtb = Dtb.load_file(fp, 0)
                except FdtError as exc:
                    logger.error("%s", exc.message)
        else:
            logger.warning("no matching platform found")

        logger.debug("overlay map %sloaded", "" if map_dtb is not None else "not ")
        return cls(platform, map_dtb)

    @classmethod
    def from_directory(cls, overlay_dir, compatible) -> OverlayMap:
        """Read ``overlay_map.dtb`` from an overlay directory, if it is there."""
        if compatible is None:
            return cls()
        overlay_dir = os.fspath(overlay_dir)
        separator = "" if overlay_dir.endswith("/") else "/"
        path = f"{overlay_dir}{separator}{MAP_FILE}"
        try:
            fp = open(path, "rb")
        except OSError:
            return cls.from_file(None, compatible)
        with fp:
            return cls.from_file(fp, compatible)

    def remap(self, overlay) -> str:
        """The name to load for ``overlay`` on this platform.

        Renamed overlays are followed. Raises FdtError if the overlay is
        deprecated or not supported on the platform.
        """
        if self.map_dtb is None:
            return overlay

        seen = set()
        while True:
            node = self.map_dtb.fdt.root.subnode(overlay)
            if node is None:
                return overlay

            if self.platform is not None:
                value = node.get(self.platform)
                if value is not None:
                    new_name = _cstring(value)
                    return new_name or overlay

            renamed = node.get("renamed")
            if renamed is not None:
                new_name = _cstring(renamed)
                logger.warning("overlay '%s' has been renamed '%s'", overlay, new_name)
                seen.add(overlay)
                if new_name in seen:
                    message = f"overlay '{new_name}' is renamed in a cycle"
                    logger.error(message)
                    raise FdtError(FdtErrorCode.BADSTRUCTURE, message, fatal=False)
                overlay = new_name
                continue

            deprecated = node.get("deprecated")
            if deprecated is not None:
                message = f"overlay '{overlay}' is deprecated: {_cstring(deprecated)}"
            else:
                message = (f"overlay '{overlay}' is not supported on the "
                           f"'{self.platform}' platform")
            logger.error(message)
            raise FdtError(FdtErrorCode.NOTFOUND, message, fatal=False)
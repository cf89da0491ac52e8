"""Read, edit and write flattened device trees and merge overlays into them."""

__version__ = "0.1.0"
__all__ = ["dtblob", "fdt", "fixups", "merge", "overlay_map"]
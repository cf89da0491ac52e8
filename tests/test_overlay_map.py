import io

import pytest

from dtmerge.dtblob import Dtb
from dtmerge.fdt import Fdt, FdtError
from dtmerge.overlay_map import OverlayMap, detect_platform


def _map_fdt():
    fdt = Fdt()
    root = fdt.root
    root.add_subnode("foo").set("bcm2711", b"foo-pi4\0")
    root.add_subnode("bar").set("renamed", b"foo\0")
    root.add_subnode("old").set("deprecated", b"use foo\0")
    root.add_subnode("nope").set("bcm2835", b"nope\0")
    root.add_subnode("same").set("bcm2711", b"\0")
    return fdt


def _map_bytes():
    return Dtb(_map_fdt()).to_bytes()


@pytest.mark.parametrize("compatible, expected", [
    (b"raspberrypi,4-model-b\0brcm,bcm2711\0", "bcm2711"),
    (b"brcm,bcm2837\0", "bcm2835"),
    (b"brcm,bcm2708\0", "bcm2835"),
    (b"raspberrypi,5-model-b\0brcm,bcm2712\0", "bcm2712"),
    (b"bcm2836\0", "bcm2835"),
])
def test_detect_platform(compatible, expected):
    assert detect_platform(compatible) == expected


def test_detect_platform_unknown():
    assert detect_platform(b"acme,widget\0") is None
    assert detect_platform(None) is None


def test_detect_platform_accepts_str():
    assert detect_platform("brcm,bcm2711") == "bcm2711"


def test_remap_platform_name():
    omap = OverlayMap("bcm2711", Dtb(_map_fdt()))
    assert omap.remap("foo") == "foo-pi4"


def test_remap_follows_rename():
    omap = OverlayMap("bcm2711", Dtb(_map_fdt()))
    assert omap.remap("bar") == "foo-pi4"


def test_remap_unknown_and_empty_keep_name():
    omap = OverlayMap("bcm2711", Dtb(_map_fdt()))
    assert omap.remap("unlisted") == "unlisted"
    assert omap.remap("same") == "same"


def test_remap_deprecated_raises():
    omap = OverlayMap("bcm2711", Dtb(_map_fdt()))
    with pytest.raises(FdtError):
        omap.remap("old")


def test_remap_unsupported_platform_raises():
    omap = OverlayMap("bcm2711", Dtb(_map_fdt()))
    with pytest.raises(FdtError):
        omap.remap("nope")


def test_remap_without_map_is_identity():
    assert OverlayMap("bcm2711", None).remap("anything") == "anything"


def test_from_file_loads_map():
    omap = OverlayMap.from_file(io.BytesIO(_map_bytes()), b"brcm,bcm2711\0")
    assert omap.platform == "bcm2711"
    assert omap.remap("foo") == "foo-pi4"


def test_from_file_unknown_platform():
    omap = OverlayMap.from_file(io.BytesIO(_map_bytes()), b"acme,widget\0")
    assert omap.platform is None
    assert omap.map_dtb is None


def test_from_file_without_compatible():
    omap = OverlayMap.from_file(io.BytesIO(_map_bytes()), None)
    assert omap.platform is None
    assert omap.remap("foo") == "foo"


def test_from_directory(tmp_path):
    (tmp_path / "overlay_map.dtb").write_bytes(_map_bytes())
    omap = OverlayMap.from_directory(str(tmp_path), b"brcm,bcm2711\0")
    assert omap.remap("bar") == "foo-pi4"
    with_slash = OverlayMap.from_directory(str(tmp_path) + "/", b"brcm,bcm2711\0")
    assert with_slash.remap("foo") == "foo-pi4"


def test_from_directory_missing_file(tmp_path):
    omap = OverlayMap.from_directory(str(tmp_path), b"brcm,bcm2711\0")
    assert omap.platform == "bcm2711"
    assert omap.map_dtb is None
    assert omap.remap("foo") == "foo"
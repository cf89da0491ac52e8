import pytest

from dtmerge.dtblob import Dtb
from dtmerge.fdt import Fdt, FdtError, FdtErrorCode, Node, read_uint
from dtmerge.merge import (create_prop_fragment, fixup_overlay, merge_fragment,
                           merge_overlay, merge_params)

UART_PATH = "/soc/serial@7e201000"
GPIO_PATH = "/soc/gpio@7e200000"


def u32(value):
    return value.to_bytes(4, "big")


def make_base():
    root = Node()
    soc = root.add_subnode("soc")
    uart = soc.add_subnode("serial@7e201000")
    uart.set("status", "disabled")
    uart.set("phandle", u32(5))
    soc.add_subnode("gpio@7e200000")
    chosen = root.add_subnode("chosen")
    chosen.set("bootargs", "console=ttyS0")
    aliases = root.add_subnode("aliases")
    aliases.set("serial0", UART_PATH)
    symbols = root.add_subnode("__symbols__")
    symbols.set("uart0", UART_PATH)
    symbols.set("gpio", GPIO_PATH)
    return Dtb(Fdt(root))


def make_overlay(symbol="uart0", fixup="/fragment@0:target:0", node_local=True):
    root = Node()
    frag = root.add_subnode("fragment@0")
    frag.set("target", u32(0xFFFFFFFF))
    payload = frag.add_subnode("__overlay__")
    payload.set("status", "okay")
    dev = payload.add_subnode("dev@0")
    dev.set("phandle", u32(1))
    dev.set("ref", u32(1))
    root.add_subnode("__fixups__").set(symbol, fixup)
    local = root.add_subnode("__local_fixups__")
    if node_local:
        (local.add_subnode("fragment@0").add_subnode("__overlay__")
         .add_subnode("dev@0").set("ref", u32(0)))
    else:
        local.set("fixup", "/fragment@0/__overlay__/dev@0:ref:0")
    return Dtb(Fdt(root))


def target_cell(overlay, path="/fragment@0"):
    return read_uint(overlay.find_node(path).get("target"), 0, 4)


def test_fixup_overlay_resolves_symbol_and_relocates():
    base, ov = make_base(), make_overlay()
    base_max = base.max_phandle
    fixup_overlay(base, ov)
    assert target_cell(ov) == base.find_node(UART_PATH).phandle()
    dev = ov.find_node("/fragment@0/__overlay__/dev@0")
    assert dev.phandle() == 1 + base_max
    assert read_uint(dev.get("ref"), 0, 4) == dev.phandle()
    assert ov.max_phandle == dev.phandle()
    assert ov.fixups_applied is True


def test_fixup_overlay_old_style_local_fixups():
    base, ov = make_base(), make_overlay(node_local=False)
    fixup_overlay(base, ov)
    dev = ov.find_node("/fragment@0/__overlay__/dev@0")
    assert read_uint(dev.get("ref"), 0, 4) == dev.phandle()
    assert dev.phandle() == 1 + base.max_phandle


def test_fixup_gives_target_a_new_phandle():
    base, ov = make_base(), make_overlay(symbol="gpio")
    old_max = base.max_phandle
    fixup_overlay(base, ov)
    gpio = base.find_node(GPIO_PATH)
    assert gpio.phandle() == old_max + 1
    assert base.max_phandle == old_max + 1
    assert target_cell(ov) == gpio.phandle()


def test_fixup_path_reference():
    base, ov = make_base(), make_overlay(symbol=UART_PATH)
    fixup_overlay(base, ov)
    assert target_cell(ov) == base.find_node(UART_PATH).phandle()


def test_fixup_unknown_symbol_is_nonfatal():
    base, ov = make_base(), make_overlay(symbol="nosuch")
    with pytest.raises(FdtError) as info:
        fixup_overlay(base, ov)
    assert info.value.code == FdtErrorCode.NOTFOUND
    assert info.value.fatal is False
    assert ov.fixups_applied is True


def test_fixup_without_base_symbols():
    base, ov = make_base(), make_overlay()
    base.delete_node("/__symbols__")
    with pytest.raises(FdtError) as info:
        fixup_overlay(base, ov)
    assert info.value.code == FdtErrorCode.NOTFOUND


@pytest.mark.parametrize("fixup", ["/fragment@0:target", "/fragment@0:target:4",
                                   "/fragment@0:target:x"])
def test_malformed_fixups(fixup):
    base, ov = make_base(), make_overlay(fixup=fixup)
    with pytest.raises(FdtError) as info:
        fixup_overlay(base, ov)
    assert info.value.code == FdtErrorCode.BADSTRUCTURE
    assert info.value.fatal is False


def test_merge_overlay_into_base():
    base, ov = make_base(), make_overlay()
    fixup_overlay(base, ov)
    merge_overlay(base, ov)
    uart = base.find_node(UART_PATH)
    assert uart.get("status") == b"okay\0"
    dev = uart.subnode("dev@0")
    assert dev is not None
    assert read_uint(dev.get("ref"), 0, 4) == dev.phandle()
    assert base.max_phandle == ov.max_phandle


def test_merge_drops_private_symbols():
    base, ov = make_base(), make_overlay()
    ov.fdt.root.add_subnode("__symbols__").set("mydev", "/fragment@0/__overlay__/dev@0")
    fixup_overlay(base, ov)
    merge_overlay(base, ov)
    assert ov.find_node("/__symbols__") is None
    assert base.find_node("/__symbols__").get("mydev") is None


def test_merge_rebases_exported_symbols():
    base, ov = make_base(), make_overlay()
    ov.fdt.root.add_subnode("__symbols__").set("mydev", "/fragment@0/__overlay__/dev@0")
    ov.fdt.root.add_subnode("__exports__").set("mydev", u32(0))
    fixup_overlay(base, ov)
    merge_overlay(base, ov)
    symbols = base.find_node("/__symbols__")
    assert bytes(symbols.get("mydev")) == (UART_PATH + "/dev@0\0").encode()


def test_merge_rebases_onto_root_without_double_slash():
    base = make_base()
    root = Node()
    frag = root.add_subnode("fragment@0")
    frag.set("target-path", "/")
    frag.add_subnode("__overlay__").add_subnode("dev@0").set("compatible", "x")
    root.add_subnode("__symbols__").set("mydev", "/fragment@0/__overlay__/dev@0")
    root.add_subnode("__exports__").set("mydev", u32(0))
    ov = Dtb(Fdt(root))
    merge_overlay(base, ov)
    assert bytes(base.find_node("/__symbols__").get("mydev")) == b"/dev@0\0"
    assert base.find_node("/dev@0").get("compatible") == b"x\0"


def test_merge_rebases_aliases():
    base, ov = make_base(), make_overlay()
    frag = ov.fdt.root.add_subnode("fragment@1")
    frag.set("target-path", "/aliases")
    payload = frag.add_subnode("__overlay__")
    payload.set("mydev", "/fragment@0/__overlay__/dev@0")
    payload.set("plain", "/soc/other")
    fixup_overlay(base, ov)
    merge_overlay(base, ov)
    aliases = base.find_node("/aliases")
    assert bytes(aliases.get("mydev")) == (UART_PATH + "/dev@0\0").encode()
    assert bytes(aliases.get("plain")) == b"/soc/other\0"


def test_merge_appends_bootargs():
    base = make_base()
    root = Node()
    frag = root.add_subnode("fragment@0")
    frag.set("target-path", "/chosen")
    frag.add_subnode("__overlay__").set("bootargs", "quiet")
    merge_overlay(base, Dtb(Fdt(root)))
    assert bytes(base.find_node("/chosen").get("bootargs")) == b"console=ttyS0 quiet\0"


def test_invalid_target_is_nonfatal():
    base, ov = make_base(), make_overlay()
    ov.find_node("/fragment@0").set("target", u32(99))
    with pytest.raises(FdtError) as info:
        merge_overlay(base, ov)
    assert info.value.code == FdtErrorCode.NOTFOUND
    assert info.value.fatal is False


def make_intra_overlay():
    root = Node()
    frag1 = root.add_subnode("fragment@1")
    frag1.set("target", u32(1))
    frag1.add_subnode("__overlay__").set("extra", "yes")
    frag0 = root.add_subnode("fragment@0")
    frag0.set("target-path", "/soc")
    frag0.add_subnode("__overlay__").add_subnode("thing").set("phandle", u32(1))
    return Dtb(Fdt(root))


def test_intra_overlay_fragments():
    ov = make_intra_overlay()
    calls = []
    merge_overlay(None, ov,
                  lambda dtb, payload, target: calls.append((payload.path(),
                                                             target.path())))
    assert calls == [("/fragment@1/__overlay__", "/fragment@0/__overlay__/thing")]
    thing = ov.find_node("/fragment@0/__overlay__/thing")
    assert thing.get("extra") == b"yes\0"
    assert ov.find_node("/fragment@1/__overlay__") is None
    assert ov.find_node("/fragment@1/__dormant__") is not None


def test_intra_then_base_merge():
    base, ov = make_base(), make_intra_overlay()
    merge_overlay(None, ov)
    merge_overlay(base, ov)
    thing = base.find_node("/soc/thing")
    assert thing.get("extra") == b"yes\0"
    assert base.find_node("/extra") is None
    assert base.fdt.root.get("extra") is None


def test_merge_fragment_depth_controls_phandles():
    base = make_base()
    source = Node("__overlay__")
    source.set("phandle", u32(9))
    source.set("name", "ignored")
    source.set("value", b"\x01\x02")
    child = source.add_subnode("child")
    child.set("phandle", u32(10))
    target = base.find_node(GPIO_PATH)
    merge_fragment(base, target, None, source, 0)
    assert target.get("phandle") is None
    assert target.get("name") is None
    assert target.get("value") == b"\x01\x02"
    assert target.subnode("child").get("phandle") == u32(10)


def test_merge_params():
    base = make_base()
    merge_params(base, {"/chosen/bootargs": "quiet", "/newnode/sub/prop": b"\x01",
                        "/model": "board"})
    assert bytes(base.find_node("/chosen").get("bootargs")) == b"console=ttyS0 quiet\0"
    assert base.find_node("/newnode/sub").get("prop") == b"\x01"
    assert base.fdt.root.get("model") == b"board\0"


def test_merge_params_needs_a_path():
    with pytest.raises(FdtError) as info:
        merge_params(make_base(), [("noslash", b"")])
    assert info.value.code == FdtErrorCode.BADPATH
    assert info.value.fatal is False


def test_create_prop_fragment_round_trip():
    dtb = Dtb.create(2048)
    create_prop_fragment(dtb, 3, 7, "status", b"okay\0")
    reparsed = Dtb.from_bytes(dtb.to_bytes())
    frag = reparsed.find_node("/fragment-3")
    assert frag.get("target") == u32(7)
    assert frag.subnode("__overlay__").get("status") == b"okay\0"
    assert reparsed.totalsize() == 2048


def test_create_prop_fragment_duplicate_index():
    dtb = Dtb.create(2048)
    create_prop_fragment(dtb, 0, 7, "status", b"okay\0")
    with pytest.raises(FdtError) as info:
        create_prop_fragment(dtb, 0, 8, "status", b"okay\0")
    assert info.value.code == FdtErrorCode.EXISTS
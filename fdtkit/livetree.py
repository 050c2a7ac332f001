"""In-memory device tree: nodes, properties, labels, and tree operations."""

from __future__ import annotations

import enum
import struct
import sys
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from .srcpos import SourcePosition
from .util import FatalError, get_escape_char


class MarkerType(enum.IntEnum):
    """Kinds of markers that annotate offsets inside property data."""

    TYPE_NONE = 0
    REF_PHANDLE = 1
    REF_PATH = 2
    LABEL = 3
    TYPE_UINT8 = 4
    TYPE_UINT16 = 5
    TYPE_UINT32 = 6
    TYPE_UINT64 = 7
    TYPE_STRING = 8


class PhandleFormat(enum.IntFlag):
    """Which phandle properties are generated for a node."""

    LEGACY = 0x1
    EPAPR = 0x2
    BOTH = 0x3


_INTEGER_SIZES = (8, 16, 32, 64)


def _phandle_is_valid(phandle: int) -> bool:
    return phandle not in (0, 0xFFFFFFFF)


@dataclass(frozen=True)
class Marker:
    """A marker at ``offset`` in a property value."""

    type: MarkerType
    offset: int
    ref: str | None = None


@dataclass(frozen=True)
class Data:
    """An immutable property value: raw bytes plus their markers."""

    val: bytes = b""
    markers: tuple[Marker, ...] = ()

    def __len__(self) -> int:
        return len(self.val)

    def add_marker(self, type: MarkerType, ref: str | None = None) -> Data:
        """Return a copy with a marker placed at the current end of the data."""
        marker = Marker(MarkerType(type), len(self.val), ref)
        return Data(self.val, self.markers + (marker,))

    def append_data(self, data: bytes) -> Data:
        """Return a copy with ``data`` appended."""
        return Data(self.val + bytes(data), self.markers)

    def append_integer(self, value: int, bits: int) -> Data:
        """Return a copy with a big-endian integer of ``bits`` bits appended."""
        if bits not in _INTEGER_SIZES:
            raise ValueError(f"Invalid literal size ({bits})")
        masked = value & ((1 << bits) - 1)
        return self.append_data(masked.to_bytes(bits // 8, "big"))

    def append_cell(self, value: int) -> Data:
        """Return a copy with one 32-bit cell appended."""
        return self.append_integer(value, 32)

    @classmethod
    def from_escaped_string(cls, s: str) -> Data:
        """Build a NUL-terminated string value, decoding backslash escapes."""
        out = bytearray()
        i = 0
        while i < len(s):
            c = s[i]
            i += 1
            if c != "\\":
                out += c.encode("utf-8")
            elif i >= len(s):
                out.append(0)
                break
            else:
                decoded, i = get_escape_char(s, i)
                out.append(ord(decoded) & 0xFF)
        out.append(0)
        return cls().add_marker(MarkerType.TYPE_STRING).append_data(bytes(out))


@dataclass
class Label:
    """A label attached to a node, property or reserve entry."""

    label: str
    deleted: bool = False


def _live(items: Iterable) -> Iterator:
    return (item for item in items if not item.deleted)


def add_label(labels: list[Label], label: str) -> None:
    """Add ``label`` to the front of ``labels``, or revive it if already there."""
    for existing in labels:
        if existing.label == label:
            existing.deleted = False
            return
    labels.insert(0, Label(label))


def delete_labels(labels: list[Label]) -> None:
    """Mark every label in ``labels`` as deleted."""
    for label in labels:
        label.deleted = True


@dataclass(eq=False)
class Property:
    """A named property with its value."""

    name: str
    val: Data = field(default_factory=Data)
    srcpos: SourcePosition | None = None
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False

    def delete(self) -> None:
        """Mark the property and its labels deleted."""
        self.deleted = True
        delete_labels(self.labels)

    def cell(self) -> int:
        """Return the value as a single 32-bit cell."""
        if len(self.val) != 4:
            raise ValueError(f"property {self.name!r} is not a single cell")
        return struct.unpack(">I", self.val.val)[0]

    def cell_n(self, n: int) -> int:
        """Return the ``n``-th 32-bit cell of the value."""
        if not 0 <= n < len(self.val) // 4:
            raise IndexError(f"property {self.name!r} has no cell {n}")
        return struct.unpack_from(">I", self.val.val, 4 * n)[0]


@dataclass(eq=False)
class Node:
    """A device tree node. Deleted entries stay in the lists, flagged."""

    name: str | None = None
    proplist: list[Property] = field(default_factory=list)
    children: list[Node] = field(default_factory=list, repr=False)
    parent: Node | None = field(default=None, repr=False)
    labels: list[Label] = field(default_factory=list)
    phandle: int = 0
    srcpos: SourcePosition | None = None
    deleted: bool = False
    omit_if_unused: bool = False
    is_referenced: bool = False

    def __post_init__(self) -> None:
        for child in self.children:
            child.parent = self

    @property
    def fullpath(self) -> str:
        """The absolute path of this node within its tree."""
        if self.parent is None:
            return "/"
        return f"{self.parent.fullpath.rstrip('/')}/{self.name}"

    def unitname(self) -> str:
        """Return the part of the name after '@', or '' if there is none."""
        _, _, unit = (self.name or "").partition("@")
        return unit

    def add_property(self, prop: Property) -> None:
        """Append a property at the end of the property list."""
        self.proplist.append(prop)

    def delete_property_by_name(self, name: str) -> None:
        """Mark the first property called ``name`` deleted."""
        for prop in self.proplist:
            if prop.name == name:
                prop.delete()
                return

    def add_child(self, child: Node) -> None:
        """Append ``child`` as the last subnode."""
        child.parent = self
        self.children.append(child)

    def delete_node_by_name(self, name: str | None) -> None:
        """Mark the first subnode called ``name`` deleted, recursively."""
        for child in self.children:
            if child.name == name:
                child.delete()
                return

    def delete(self) -> None:
        """Mark this node, its subtree, properties and labels deleted."""
        self.deleted = True
        for child in _live(self.children):
            child.delete()
        for prop in _live(self.proplist):
            prop.delete()
        delete_labels(self.labels)

    def get_property(self, propname: str) -> Property | None:
        """Return the live property called ``propname``, if any."""
        return next((p for p in _live(self.proplist) if p.name == propname), None)

    def get_subnode(self, nodename: str) -> Node | None:
        """Return the live subnode called ``nodename``, if any."""
        return next((c for c in _live(self.children) if c.name == nodename), None)

    def append_to_property(self, name: str, data: bytes, type: MarkerType) -> None:
        """Append typed data to property ``name``, creating it if needed."""
        prop = self.get_property(name)
        if prop is not None:
            prop.val = prop.val.add_marker(type, name).append_data(data)
        else:
            val = Data().add_marker(type, name).append_data(data)
            self.add_property(build_property(name, val, None))


@dataclass
class ReserveEntry:
    """A memory reservation entry."""

    address: int
    size: int
    labels: list[Label] = field(default_factory=list)


@dataclass
class DtInfo:
    """A whole device tree with its reserve map and header details."""

    dtsflags: int = 0
    reservelist: list[ReserveEntry] = field(default_factory=list)
    dt: Node | None = None
    boot_cpuid_phys: int = 0


def _copy_pos(srcpos: SourcePosition | None) -> SourcePosition | None:
    return srcpos.copy() if srcpos is not None else None


def build_property(name: str, val: Data, srcpos: SourcePosition | None) -> Property:
    """Create a property with a copy of the source position."""
    return Property(name=name, val=val, srcpos=_copy_pos(srcpos))


def build_property_delete(name: str) -> Property:
    """Create a property that, when merged, deletes its namesake."""
    return Property(name=name, deleted=True)


def build_node(proplist: Iterable[Property] | None, children: Iterable[Node] | None,
               srcpos: SourcePosition | None) -> Node:
    """Create an unnamed node from properties and subnodes."""
    return Node(proplist=list(proplist or ()), children=list(children or ()),
                srcpos=_copy_pos(srcpos))


def build_node_delete(srcpos: SourcePosition | None) -> Node:
    """Create a node that, when merged, deletes its namesake."""
    return Node(deleted=True, srcpos=_copy_pos(srcpos))


def merge_nodes(old_node: Node, new_node: Node) -> Node:
    """Merge ``new_node`` into ``old_node``; later definitions win."""
    old_node.deleted = False

    for label in new_node.labels:
        add_label(old_node.labels, label.label)

    new_props, new_node.proplist = new_node.proplist, []
    for new_prop in new_props:
        if new_prop.deleted:
            old_node.delete_property_by_name(new_prop.name)
            continue
        old_prop = next((p for p in old_node.proplist if p.name == new_prop.name), None)
        if old_prop is None:
            old_node.add_property(new_prop)
            continue
        for label in new_prop.labels:
            add_label(old_prop.labels, label.label)
        old_prop.val = new_prop.val
        old_prop.deleted = False
        old_prop.srcpos = new_prop.srcpos

    new_children, new_node.children = new_node.children, []
    for new_child in new_children:
        new_child.parent = None
        if new_child.deleted:
            old_node.delete_node_by_name(new_child.name)
            continue
        old_child = next((c for c in old_node.children if c.name == new_child.name), None)
        if old_child is not None:
            merge_nodes(old_child, new_child)
        else:
            old_node.add_child(new_child)

    if old_node.srcpos is None:
        old_node.srcpos = new_node.srcpos
    else:
        old_node.srcpos.extend(new_node.srcpos)
    return old_node


def add_orphan_node(dt: Node, new_node: Node, ref: str, index: int) -> Node:
    """Wrap ``new_node`` in an overlay fragment targeting ``ref`` and add it to ``dt``."""
    if new_node.name is not None:
        raise ValueError("overlay node is already named")
    if ref.startswith("/"):
        d = Data().add_marker(MarkerType.TYPE_STRING, ref)
        d = d.append_data(ref.encode("utf-8") + b"\0")
        prop = build_property("target-path", d, None)
    else:
        d = Data().add_marker(MarkerType.REF_PHANDLE, ref)
        d = d.append_integer(0xFFFFFFFF, 32)
        prop = build_property("target", d, None)

    new_node.name = "__overlay__"
    fragment = build_node([prop], [new_node], None)
    fragment.name = f"fragment@{index}"
    dt.add_child(fragment)
    return dt


def add_reserve_entry(entries: list[ReserveEntry], new: ReserveEntry) -> list[ReserveEntry]:
    """Append a reserve entry and return the list."""
    entries.append(new)
    return entries


def get_property_by_label(tree: Node, label: str) -> tuple[Node, Property] | None:
    """Find the property carrying ``label``; return it with its node."""
    for prop in _live(tree.proplist):
        if any(l.label == label for l in _live(prop.labels)):
            return tree, prop
    for child in _live(tree.children):
        found = get_property_by_label(child, label)
        if found is not None:
            return found
    return None


def get_marker_label(tree: Node, label: str) -> tuple[Node, Property, Marker] | None:
    """Find a LABEL marker called ``label`` inside some property value."""
    for prop in _live(tree.proplist):
        for marker in prop.val.markers:
            if marker.type == MarkerType.LABEL and marker.ref == label:
                return tree, prop, marker
    for child in _live(tree.children):
        found = get_marker_label(child, label)
        if found is not None:
            return found
    return None


def get_node_by_path(tree: Node, path: str | None) -> Node | None:
    """Look up a node by a slash-separated path relative to ``tree``."""
    if not path:
        return None if tree.deleted else tree
    path = path.lstrip("/")
    head, slash, rest = path.partition("/")
    for child in _live(tree.children):
        if slash and head == child.name:
            return get_node_by_path(child, rest)
        if not slash and path == child.name:
            return child
    return None


def get_node_by_label(tree: Node, label: str) -> Node | None:
    """Find the node carrying ``label``."""
    if not label:
        raise ValueError("label must not be empty")
    if any(l.label == label for l in _live(tree.labels)):
        return tree
    for child in _live(tree.children):
        node = get_node_by_label(child, label)
        if node is not None:
            return node
    return None


def get_node_by_phandle(tree: Node, phandle: int,
                        generate_fixups: bool = False) -> Node | None:
    """Find the live node with the given phandle."""
    if not _phandle_is_valid(phandle):
        if not generate_fixups:
            raise ValueError(f"invalid phandle 0x{phandle:x}")
        return None
    if tree.phandle == phandle:
        return None if tree.deleted else tree
    for child in _live(tree.children):
        node = get_node_by_phandle(child, phandle, generate_fixups)
        if node is not None:
            return node
    return None


def get_node_by_ref(tree: Node, ref: str) -> Node | None:
    """Resolve a reference: a path, a label, or 'label/sub/path'."""
    if ref == "/":
        return tree
    target: Node | None = tree
    path: str | None = None
    if ref.startswith("/"):
        path = ref
    else:
        label, slash, rest = ref.partition("/")
        if slash:
            path = rest
        target = get_node_by_label(tree, label)
        if target is None:
            return None
    if path:
        target = get_node_by_path(target, path)
    return target


def _add_phandle_property(node: Node, name: str, flag: PhandleFormat,
                          phandle_format: PhandleFormat) -> None:
    if not (phandle_format & flag):
        return
    if node.get_property(name) is not None:
        return
    d = Data().add_marker(MarkerType.TYPE_UINT32).append_cell(node.phandle)
    node.add_property(build_property(name, d, None))


def get_node_phandle(root: Node, node: Node,
                     phandle_format: PhandleFormat = PhandleFormat.EPAPR) -> int:
    """Return the phandle of ``node``, allocating the lowest free one if needed."""
    if _phandle_is_valid(node.phandle):
        return node.phandle
    phandle = 1
    while get_node_by_phandle(root, phandle) is not None:
        phandle += 1
    node.phandle = phandle
    _add_phandle_property(node, "linux,phandle", PhandleFormat.LEGACY, phandle_format)
    _add_phandle_property(node, "phandle", PhandleFormat.EPAPR, phandle_format)
    return node.phandle


def guess_boot_cpuid(tree: Node) -> int:
    """Take the boot CPU id from the 'reg' of the first node under /cpus."""
    cpus = get_node_by_path(tree, "/cpus")
    if cpus is None or not cpus.children:
        return 0
    reg = cpus.children[0].get_property("reg")
    if reg is None or len(reg.val) != 4:
        return 0
    return reg.cell()


def _sort_node(node: Node) -> None:
    node.proplist.sort(key=lambda p: p.name)
    node.children.sort(key=lambda c: c.name or "")
    for child in node.children:
        _sort_node(child)


def sort_tree(dti: DtInfo) -> None:
    """Sort reserve entries, properties and subnodes throughout the tree."""
    dti.reservelist.sort(key=lambda r: (r.address, r.size))
    if dti.dt is not None:
        _sort_node(dti.dt)


def _build_and_name_child(parent: Node, name: str) -> Node:
    node = build_node(None, None, None)
    node.name = name
    parent.add_child(node)
    return node


def _build_root_node(dt: Node, name: str) -> Node:
    return dt.get_subnode(name) or _build_and_name_child(dt, name)


def _walk(node: Node) -> Iterator[Node]:
    yield node
    for child in _live(node.children):
        yield from _walk(child)


def _any_label_tree(node: Node) -> bool:
    return any(n.labels for n in _walk(node))


def _label_tree_internal(dt: Node, an: Node, node: Node, allocph: bool,
                         phandle_format: PhandleFormat) -> None:
    if node.labels:
        for label in _live(node.labels):
            if an.get_property(label.label) is not None:
                sys.stderr.write(f"WARNING: label {label.label} already"
                                 f" exists in /{an.name}\n")
                continue
            an.add_property(build_property(
                label.label, Data.from_escaped_string(node.fullpath), None))
        if allocph:
            get_node_phandle(dt, node, phandle_format)
    for child in list(_live(node.children)):
        _label_tree_internal(dt, an, child, allocph, phandle_format)


def generate_label_tree(dti: DtInfo, name: str, allocph: bool,
                        phandle_format: PhandleFormat = PhandleFormat.EPAPR) -> None:
    """Build a node ``/name`` mapping each label to its node's path."""
    dt = dti.dt
    if dt is None or not _any_label_tree(dt):
        return
    an = _build_root_node(dt, name)
    _label_tree_internal(dt, an, dt, allocph, phandle_format)


def _phandle_refs(dt: Node) -> list[tuple[Node, Property, Marker, Node | None]]:
    return [
        (node, prop, marker, get_node_by_ref(dt, marker.ref))
        for node in _walk(dt)
        for prop in _live(node.proplist)
        for marker in prop.val.markers
        if marker.type == MarkerType.REF_PHANDLE
    ]


def _add_fixup_entry(fn: Node, node: Node, prop: Property, marker: Marker) -> None:
    if "/" in marker.ref:
        raise FatalError(f"Can't generate fixup for reference to path &{{{marker.ref}}}")
    fullpath = node.fullpath
    if ":" in fullpath or ":" in prop.name:
        raise FatalError("arguments should not contain ':'")
    entry = f"{fullpath}:{prop.name}:{marker.offset}"
    fn.append_to_property(marker.ref, entry.encode("utf-8") + b"\0",
                          MarkerType.TYPE_STRING)


def generate_fixups_tree(dti: DtInfo, name: str) -> None:
    """Record every unresolved phandle reference under ``/name``."""
    dt = dti.dt
    if dt is None:
        return
    refs = _phandle_refs(dt)
    if all(target is not None for *_, target in refs):
        return
    fn = _build_root_node(dt, name)
    for node, prop, marker, target in refs:
        if target is None:
            _add_fixup_entry(fn, node, prop, marker)


def _add_local_fixup_entry(lfn: Node, node: Node, prop: Property, marker: Marker) -> None:
    names = []
    walker = node
    while walker.parent is not None:
        names.append(walker.name)
        walker = walker.parent
    target = lfn
    for component in reversed(names):
        target = target.get_subnode(component) or _build_and_name_child(target, component)
    target.append_to_property(prop.name, struct.pack(">I", marker.offset),
                              MarkerType.TYPE_UINT32)


def generate_local_fixups_tree(dti: DtInfo, name: str) -> None:
    """Record every resolved phandle reference's location under ``/name``."""
    dt = dti.dt
    if dt is None:
        return
    refs = _phandle_refs(dt)
    if all(target is None for *_, target in refs):
        return
    lfn = _build_root_node(dt, name)
    for node, prop, marker, target in refs:
        if target is not None:
            _add_local_fixup_entry(lfn, node, prop, marker)
"""Write a live device tree as YAML."""

from __future__ import annotations

import struct
from typing import Iterator, Sequence, TextIO

import yaml

from .livetree import DtInfo, Marker, MarkerType, Node, Property
from .treesource import _type_marker_length
from .util import FatalError

_STR_TAG = "tag:yaml.org,2002:str"
_INT_TAG = "tag:yaml.org,2002:int"
_BOOL_TAG = "tag:yaml.org,2002:bool"
_SEQ_TAG = "tag:yaml.org,2002:seq"
_MAP_TAG = "tag:yaml.org,2002:map"
_PHANDLE_TAG = "!phandle"

_INT_TAGS = {1: "!u8", 2: "!u16", 4: "!u32", 8: "!u64"}
_INT_CODES = {1: "B", 2: "H", 4: "I", 8: "Q"}


class _Dumper(yaml.Dumper):
    """Emitter that keeps tagged phandle scalars plain rather than quoted."""

    def choose_scalar_style(self):
        if self.event.tag == _PHANDLE_TAG and not self.event.style:
            if self.analysis is None:
                self.analysis = self.analyze_scalar(self.event.value)
            return ""
        return super().choose_scalar_style()


def _propval_int(markers: Sequence[Marker], data: bytes, seq_offset: int,
                 width: int) -> Iterator[yaml.Event]:
    tag = _INT_TAGS.get(width)
    if tag is None:
        raise FatalError(f"Invalid width {width}")
    if len(data) % width:
        raise ValueError(f"data length {len(data)} is not a multiple of {width}")

    yield yaml.SequenceStartEvent(None, tag, width == 4, flow_style=True)
    phandle_offsets = {m.offset for m in markers if m.type == MarkerType.REF_PHANDLE}
    for index, (value,) in enumerate(struct.iter_unpack(f">{_INT_CODES[width]}", data)):
        text = f"0x{value:x}"
        if width == 4 and seq_offset + index * width in phandle_offsets:
            yield yaml.ScalarEvent(None, _PHANDLE_TAG, (False, False), text)
        else:
            yield yaml.ScalarEvent(None, _INT_TAG, (True, True), text)
    yield yaml.SequenceEndEvent()


def _propval_string(data: bytes) -> yaml.Event:
    if not data or data[-1] != 0:
        raise ValueError("string chunk is not NUL-terminated")
    try:
        text = data[:-1].decode("ascii")
    except UnicodeDecodeError as exc:
        raise ValueError("string value is not 7-bit ASCII") from exc
    return yaml.ScalarEvent(None, _STR_TAG, (False, True), text, style='"')


def _propval(prop: Property) -> Iterator[yaml.Event]:
    yield yaml.ScalarEvent(None, _STR_TAG, (True, True), prop.name)

    remaining = len(prop.val)
    if remaining == 0:
        yield yaml.ScalarEvent(None, _BOOL_TAG, (True, False), "true")
        return

    markers = prop.val.markers
    if not markers:
        raise FatalError(f"No markers present in property '{prop.name}' value")

    yield yaml.SequenceStartEvent(None, _SEQ_TAG, True, flow_style=True)
    for index, marker in enumerate(markers):
        if marker.type < MarkerType.TYPE_UINT8:
            continue
        chunk_len = _type_marker_length(markers, index) or remaining
        if chunk_len <= 0:
            raise ValueError(f"empty typed chunk in property '{prop.name}'")
        remaining -= chunk_len
        chunk = prop.val.val[marker.offset:marker.offset + chunk_len]

        if marker.type == MarkerType.TYPE_UINT16:
            yield from _propval_int(markers, chunk, marker.offset, 2)
        elif marker.type == MarkerType.TYPE_UINT32:
            yield from _propval_int(markers, chunk, marker.offset, 4)
        elif marker.type == MarkerType.TYPE_UINT64:
            yield from _propval_int(markers, chunk, marker.offset, 8)
        elif marker.type == MarkerType.TYPE_STRING:
            yield _propval_string(chunk)
        else:
            yield from _propval_int(markers, chunk, marker.offset, 1)
    yield yaml.SequenceEndEvent()


def _tree(node: Node) -> Iterator[yaml.Event]:
    if node.deleted:
        return
    yield yaml.MappingStartEvent(None, _MAP_TAG, True, flow_style=None)
    for prop in node.proplist:
        if not prop.deleted:
            yield from _propval(prop)
    for child in node.children:
        if child.deleted:
            continue
        yield yaml.ScalarEvent(None, _STR_TAG, (True, False), child.name or "")
        yield from _tree(child)
    yield yaml.MappingEndEvent()


def _events(dti: DtInfo) -> Iterator[yaml.Event]:
    yield yaml.StreamStartEvent()
    yield yaml.DocumentStartEvent(explicit=True)
    yield yaml.SequenceStartEvent(None, _SEQ_TAG, True, flow_style=None)
    if dti.dt is not None:
        yield from _tree(dti.dt)
    yield yaml.SequenceEndEvent()
    yield yaml.DocumentEndEvent(explicit=True)
    yield yaml.StreamEndEvent()


def dt_to_yaml(f: TextIO, dti: DtInfo) -> None:
    """Write ``dti`` as a YAML document to the text stream ``f``."""
    events = list(_events(dti))
    yaml.emit(events, f, Dumper=_Dumper)
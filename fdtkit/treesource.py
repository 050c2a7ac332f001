"""Write a live device tree back out as device tree source text."""

from __future__ import annotations

import struct
from typing import Sequence, TextIO

from .livetree import Data, DtInfo, Marker, MarkerType, Node, Property
from .srcpos import SourcePosition, SourceTracker

_DELIM_START = {
    MarkerType.TYPE_UINT8: "[",
    MarkerType.TYPE_UINT16: "/bits/ 16 <",
    MarkerType.TYPE_UINT32: "<",
    MarkerType.TYPE_UINT64: "/bits/ 64 <",
    MarkerType.TYPE_STRING: "",
}

_DELIM_END = {
    MarkerType.TYPE_UINT8: "]",
    MarkerType.TYPE_UINT16: ">",
    MarkerType.TYPE_UINT32: ">",
    MarkerType.TYPE_UINT64: ">",
    MarkerType.TYPE_STRING: "",
}

_STRING_ESCAPES = {
    0x07: "\\a",
    0x08: "\\b",
    0x09: "\\t",
    0x0A: "\\n",
    0x0B: "\\v",
    0x0C: "\\f",
    0x0D: "\\r",
    0x5C: "\\\\",
    0x22: '\\"',
    0x00: "\\0",
}

_STRING_CONTROLS = frozenset(b"\a\b\t\n\v\f\r")

_INT_CODES = {1: "B", 2: "H", 4: "I", 8: "Q"}


def _is_print(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _is_string_byte(byte: int) -> bool:
    return _is_print(byte) or byte == 0 or byte in _STRING_CONTROLS


def _is_type_marker(mtype: MarkerType) -> bool:
    return mtype >= MarkerType.TYPE_UINT8


def _next_type_marker(markers: Sequence[Marker], start: int) -> Marker | None:
    return next((m for m in markers[start:] if _is_type_marker(m.type)), None)


def _type_marker_length(markers: Sequence[Marker], index: int) -> int:
    """Length of the typed region started by ``markers[index]``, or 0 if it runs to the end."""
    following = _next_type_marker(markers, index + 1)
    if following is None:
        return 0
    return following.offset - markers[index].offset


def format_propval_string(data: bytes) -> str:
    """Render a NUL-terminated chunk as a quoted, escaped string; empty data gives ''."""
    if not data:
        return ""
    if data[-1] != 0:
        raise ValueError("string chunk is not NUL-terminated")
    body = "".join(
        _STRING_ESCAPES.get(b) or (chr(b) if _is_print(b) else f"\\x{b:02x}")
        for b in data[:-1]
    )
    return f'"{body}"'


def format_propval_int(data: bytes, width: int) -> str:
    """Render data as space-separated big-endian integers of ``width`` bytes."""
    code = _INT_CODES.get(width)
    if code is None:
        raise ValueError(f"Invalid width {width}")
    if len(data) % width:
        raise ValueError(f"data length {len(data)} is not a multiple of {width}")
    template = "{:02x}" if width == 1 else "0x{:02x}"
    return " ".join(template.format(v) for (v,) in struct.iter_unpack(f">{code}", data))


def _add_string_markers(prop: Property) -> None:
    data = prop.val.val
    new_markers = []
    offset = data.index(0) + 1
    while offset < len(data):
        new_markers.append(Marker(MarkerType.TYPE_STRING, offset))
        offset = data.index(0, offset) + 1
    markers = sorted(prop.val.markers + tuple(new_markers), key=lambda m: m.offset)
    prop.val = Data(data, tuple(markers))


def guess_value_type(prop: Property) -> MarkerType:
    """Guess how an untyped property value should be shown.

    Values taken to be several strings get a string marker at each string start.
    """
    data = prop.val.val
    length = len(data)
    nnotstring = sum(1 for b in data if not _is_string_byte(b))
    nnul = data.count(0)

    labels = [m for m in prop.val.markers if m.type == MarkerType.LABEL]
    nnotstringlbl = sum(1 for m in labels if m.offset > 0 and data[m.offset - 1] != 0)
    nnotcelllbl = sum(1 for m in labels if m.offset % 4 != 0)

    if (data and data[-1] == 0 and nnotstring == 0 and nnul <= length - nnul
            and nnotstringlbl == 0):
        if nnul > 1:
            _add_string_markers(prop)
        return MarkerType.TYPE_STRING
    if length % 4 == 0 and nnotcelllbl == 0:
        return MarkerType.TYPE_UINT32
    return MarkerType.TYPE_UINT8


def _annotation(tracker: SourceTracker, pos: SourcePosition | None, level: int,
                last: bool = False) -> str:
    if not level:
        return ""
    text = tracker.string_last(pos, level) if last else tracker.string_first(pos, level)
    return f" /* {text} */" if text else ""


def _format_propval(prop: Property, annotate: int, tracker: SourceTracker) -> str:
    length = len(prop.val)
    if length == 0:
        return ";" + _annotation(tracker, prop.srcpos, annotate) + "\n"

    parts = [" ="]
    markers: list[Marker] = list(prop.val.markers)
    if _next_type_marker(markers, 0) is None:
        guessed = guess_value_type(prop)
        markers = [Marker(guessed, 0), *prop.val.markers]

    data = prop.val.val
    emit_type = MarkerType.TYPE_NONE
    for index, marker in enumerate(markers):
        end = markers[index + 1].offset if index + 1 < len(markers) else length
        chunk_len = end - marker.offset
        data_len = _type_marker_length(markers, index) or length - marker.offset
        chunk = data[marker.offset:marker.offset + chunk_len]

        if _is_type_marker(marker.type):
            emit_type = marker.type
            parts.append(" " + _DELIM_START[emit_type])
        elif marker.type == MarkerType.LABEL:
            parts.append(f" {marker.ref}:")

        if emit_type == MarkerType.TYPE_NONE or chunk_len <= 0:
            continue

        if emit_type == MarkerType.TYPE_UINT16:
            parts.append(format_propval_int(chunk, 2))
        elif emit_type == MarkerType.TYPE_UINT32:
            phandle = next((m for m in prop.val.markers
                            if m.type == MarkerType.REF_PHANDLE
                            and m.offset == marker.offset), None)
            if phandle is not None:
                ref = phandle.ref or ""
                parts.append(f"&{{{ref}}}" if ref.startswith("/") else f"&{ref}")
                if chunk_len > 4:
                    parts.append(" " + format_propval_int(chunk[4:], 4))
            else:
                parts.append(format_propval_int(chunk, 4))
            if data_len > chunk_len:
                parts.append(" ")
        elif emit_type == MarkerType.TYPE_UINT64:
            parts.append(format_propval_int(chunk, 8))
        elif emit_type == MarkerType.TYPE_STRING:
            parts.append(format_propval_string(chunk))
        else:
            parts.append(format_propval_int(chunk, 1))

        if chunk_len == data_len:
            pos = marker.offset + chunk_len
            delim = _DELIM_END.get(emit_type, "")
            parts.append(delim if pos == length else delim + ",")
            emit_type = MarkerType.TYPE_NONE

    parts.append(";")
    parts.append(_annotation(tracker, prop.srcpos, annotate))
    parts.append("\n")
    return "".join(parts)


def _label_prefix(labels) -> str:
    return "".join(f"{l.label}: " for l in labels if not l.deleted)


def _write_node(f: TextIO, tree: Node, level: int, annotate: int,
                tracker: SourceTracker) -> None:
    indent = "\t" * level
    name = tree.name if tree.name else "/"
    f.write(f"{indent}{_label_prefix(tree.labels)}{name} {{")
    f.write(_annotation(tracker, tree.srcpos, annotate) + "\n")

    for prop in tree.proplist:
        if prop.deleted:
            continue
        f.write(f"{indent}\t{_label_prefix(prop.labels)}{prop.name}")
        f.write(_format_propval(prop, annotate, tracker))

    for child in tree.children:
        if child.deleted:
            continue
        f.write("\n")
        _write_node(f, child, level + 1, annotate, tracker)

    f.write(f"{indent}}};")
    f.write(_annotation(tracker, tree.srcpos, annotate, last=True) + "\n")


def dt_to_source(f: TextIO, dti: DtInfo, annotate: int = 0,
                 tracker: SourceTracker | None = None) -> None:
    """Write ``dti`` as device tree source to the text stream ``f``.

    A non-zero ``annotate`` level adds source-position comments, described
    through ``tracker``.
    """
    if dti.dt is None:
        raise ValueError("device tree has no root node")
    if tracker is None:
        tracker = SourceTracker()

    f.write("/dts-v1/;\n\n")
    for entry in dti.reservelist:
        f.write(_label_prefix(entry.labels))
        f.write(f"/memreserve/\t0x{entry.address:016x} 0x{entry.size:016x};\n")

    _write_node(f, dti.dt, 0, annotate, tracker)
"""Shared helpers: string escapes, blob file I/O, data formatting and usage text."""

from __future__ import annotations

import itertools
import struct
import sys
from dataclasses import dataclass
from typing import Sequence

DTC_VERSION = "DTC 1.7.2"

USAGE_TYPE_MSG = (
    "<type>\ts=string, i=int, u=unsigned, x=hex, r=raw\n"
    "\tOptional modifier prefix:\n"
    "\t\thh or b=byte, h=2 byte, l=4 byte (default)"
)

COMMON_SHORT_OPTS = "hV"

_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
}

_OCTAL_DIGITS = frozenset("01234567")
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


class FatalError(Exception):
    """An unrecoverable error in the input or the environment."""


@dataclass(frozen=True)
class LongOption:
    """A command-line option as shown in usage text.

    ``short`` is the one-character short flag, or None if the option has none.
    """

    name: str
    has_arg: bool = False
    short: str | None = None


COMMON_LONG_OPTS = (
    LongOption("help", False, "h"),
    LongOption("version", False, "V"),
)

COMMON_OPTS_HELP = (
    "Print this help and exit",
    "Print version and exit",
)


def escape_path(path: str) -> str:
    """Return ``path`` with each space escaped by a backslash."""
    return path.replace(" ", "\\ ")


def join_path(path: str, name: str) -> str:
    """Join a directory and a file name with exactly one slash between them."""
    if path.endswith("/"):
        return path + name
    return f"{path}/{name}"


def _is_print(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def is_printable_string(data: bytes) -> bool:
    """Tell whether ``data`` is one or more non-empty printable NUL-terminated strings."""
    if not data or data[-1] != 0:
        return False
    return all(
        segment and all(_is_print(b) for b in segment)
        for segment in data[:-1].split(b"\0")
    )


def _leading(s: str, start: int, limit: int, allowed: frozenset) -> str:
    return "".join(itertools.takewhile(allowed.__contains__, s[start:start + limit]))


def get_escape_char(s: str, i: int) -> tuple[str, int]:
    """Decode the escape sequence whose first character (after the backslash) is at ``s[i]``.

    Returns the decoded character and the index just past the sequence.
    """
    c = s[i]
    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], i + 1
    if c in _OCTAL_DIGITS:
        digits = _leading(s, i, 3, _OCTAL_DIGITS)
        return chr(int(digits, 8) & 0xFF), i + len(digits)
    if c == "x":
        digits = _leading(s, i + 1, 2, _HEX_DIGITS)
        if not digits:
            raise FatalError("\\x used with no following hex digits")
        return chr(int(digits, 16)), i + 1 + len(digits)
    return c, i + 1


def decode_type(fmt: str) -> tuple[str, int]:
    """Decode a data type string such as ``"x"``, ``"hhu"`` or ``"s"``.

    Returns ``(type, size)`` where size is the byte size, or -1 when the
    type is a string, raw, or no size modifier was given.
    Raises ValueError if the string is not a valid type.
    """
    if not fmt:
        raise ValueError("empty type string")

    pos = 0
    qualifier = ""
    if fmt[pos] in "hlLb":
        qualifier = fmt[pos]
        pos += 1
        if pos < len(fmt) and fmt[pos] == qualifier:
            pos += 1
            if qualifier == "h":
                qualifier = "b"

    if pos >= len(fmt) or fmt[pos] not in "iuxsr":
        raise ValueError(f"invalid type string {fmt!r}")

    type_char = fmt[pos]
    pos += 1
    if pos != len(fmt):
        raise ValueError(f"invalid type string {fmt!r}")

    size = -1
    if type_char not in "sr":
        size = {"b": 1, "h": 2, "l": 4}.get(qualifier, -1)
    return type_char, size


def format_data(data: bytes) -> str:
    """Render property data as strings, cells or bytes; empty data renders as ''."""
    if not data:
        return ""
    if is_printable_string(data):
        strings = data[:-1].split(b"\0")
        return " = " + ", ".join(f'"{s.decode("ascii")}"' for s in strings)
    if len(data) % 4 == 0:
        cells = struct.unpack(f">{len(data) // 4}I", data)
        return " = <" + " ".join(f"0x{cell:08x}" for cell in cells) + ">"
    return " = [" + " ".join(f"{b:02x}" for b in data) + "]"


def read_blob(filename: str) -> bytes:
    """Read a whole device tree blob from a file, or from stdin when ``filename`` is '-'."""
    if filename == "-":
        return sys.stdin.buffer.read()
    with open(filename, "rb") as f:
        return f.read()


def write_blob(filename: str, blob: bytes) -> None:
    """Write the first ``totalsize`` bytes of a blob to a file, or to stdout for '-'."""
    if len(blob) < 8:
        raise ValueError("blob too short to hold a header")
    (totalsize,) = struct.unpack_from(">I", blob, 4)
    payload = bytes(blob[:totalsize])
    if filename == "-":
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        return
    with open(filename, "wb") as f:
        f.write(payload)


def version_string() -> str:
    """Return the version line printed by the tools."""
    return f"Version: {DTC_VERSION}\n"


def format_usage(
    errmsg: str | None,
    synopsis: str,
    short_opts: str,
    long_opts: Sequence[LongOption],
    opts_help: Sequence[str],
) -> str:
    """Build the usage text for a tool, with an error line when ``errmsg`` is given."""
    if len(opts_help) < len(long_opts):
        raise ValueError("every long option needs a help string")

    arg_text = "<arg>"
    arg_len = len(arg_text) + 1

    optlen = max(
        (len(opt.name) + 1 + (arg_len if opt.has_arg else 0) for opt in long_opts),
        default=0,
    )

    lines = [f"Usage: {synopsis}\n\nOptions: -[{short_opts}]\n"]
    for opt, help_text in zip(long_opts, opts_help):
        prefix = f"  -{opt.short}, " if opt.short else "      "
        if opt.has_arg:
            pad = " " * abs(optlen - len(opt.name) - arg_len)
            flag = f"--{opt.name} {arg_text}{pad}"
        else:
            flag = f"--{opt.name:<{optlen}}"
        lines.append(f"{prefix}{flag}{help_text}\n")

    if errmsg:
        lines.append(f"\nError: {errmsg}\n")
    return "".join(lines)
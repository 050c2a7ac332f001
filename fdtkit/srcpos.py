"""Source file tracking: include search paths, positions and position strings."""

from __future__ import annotations

import copy as _copy
import dataclasses
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, TextIO

from .util import FatalError, escape_path, join_path

MAX_SRCFILE_DEPTH = 200


@dataclass(eq=False)
class SourceFile:
    """State of one source file being read."""

    f: BinaryIO | None = None
    name: str | None = None
    dir: str | None = None
    lineno: int = 1
    colno: int = 1
    prev: SourceFile | None = field(default=None, repr=False)


@dataclass
class SourcePosition:
    """A span of source text, possibly chained to further spans via ``next``."""

    first_line: int = 0
    first_column: int = 0
    last_line: int = 0
    last_column: int = 0
    file: SourceFile | None = None
    next: SourcePosition | None = None

    def copy(self) -> SourcePosition:
        """Return an independent copy, with its own copy of the file state."""
        if self.next is not None:
            raise ValueError("cannot copy a chained source position")
        file_copy = _copy.copy(self.file) if self.file is not None else None
        return dataclasses.replace(self, file=file_copy)

    def extend(self, newtail: SourcePosition | None) -> SourcePosition:
        """Append ``newtail`` at the end of this chain and return the head."""
        tail = self
        while tail.next is not None:
            tail = tail.next
        tail.next = newtail
        return self

    def __str__(self) -> str:
        fname = "<no-file>"
        if self.file is not None and self.file.name:
            fname = self.file.name
        if self.first_line != self.last_line:
            return (f"{fname}:{self.first_line}.{self.first_column}"
                    f"-{self.last_line}.{self.last_column}")
        if self.first_column != self.last_column:
            return (f"{fname}:{self.first_line}.{self.first_column}"
                    f"-{self.last_column}")
        return f"{fname}:{self.first_line}.{self.first_column}"


def _dirname(path: str) -> str | None:
    slash = path.rfind("/")
    return path[:slash] if slash >= 0 else None


class SourceTracker:
    """Keeps the stack of open source files and the include search path."""

    def __init__(self, depfile: TextIO | None = None) -> None:
        self.depfile = depfile
        self.current: SourceFile | None = None
        self.search_paths: list[str] = []
        self._depth = 0
        self._initial_path: str | None = None
        self._initial_pathlen = 0
        self._initial_cpp = True

    def _set_initial_path(self, fname: str) -> None:
        self._initial_path = fname
        self._initial_pathlen = fname.count("/")

    def add_search_path(self, dirname: str) -> None:
        """Add a directory at the end of the include search path."""
        self.search_paths.append(dirname)

    def _open_on_path(self, fname: str) -> tuple[BinaryIO, str]:
        cur_dir = self.current.dir if self.current is not None else None
        last_error: OSError | None = None
        for dirname in [cur_dir, *self.search_paths]:
            if dirname is None or fname.startswith("/"):
                fullname = fname
            else:
                fullname = join_path(dirname, fname)
            try:
                return open(fullname, "rb"), fullname
            except OSError as exc:
                last_error = exc
        reason = last_error.strerror if last_error is not None else "not found"
        raise FatalError(f'Couldn\'t open "{fname}": {reason}')

    def relative_open(self, fname: str) -> tuple[BinaryIO, str]:
        """Open ``fname`` (or stdin for '-'), searching relative paths.

        Relative names are tried in the directory of the current file first,
        then in each search path in order. Returns the file and its full name.
        """
        if fname == "-":
            f, fullname = sys.stdin.buffer, "<stdin>"
        else:
            f, fullname = self._open_on_path(fname)
        if self.depfile is not None:
            self.depfile.write(" " + escape_path(fullname))
        return f, fullname

    def push(self, fname: str) -> SourceFile:
        """Open a source file and make it the current one."""
        depth = self._depth
        self._depth += 1
        if depth >= MAX_SRCFILE_DEPTH:
            raise FatalError("Includes nested too deeply")

        f, fullname = self.relative_open(fname)
        srcfile = SourceFile(f=f, name=fullname, dir=_dirname(fullname),
                             prev=self.current)
        self.current = srcfile
        if self._depth == 1:
            self._set_initial_path(fullname)
        return srcfile

    def pop(self) -> bool:
        """Close the current file; return whether an outer file remains."""
        srcfile = self.current
        if srcfile is None:
            raise IndexError("no source file to pop")
        self.current = srcfile.prev
        if srcfile.f is not None and srcfile.f is not sys.stdin.buffer:
            try:
                srcfile.f.close()
            except OSError as exc:
                raise FatalError(
                    f'Error closing "{srcfile.name}": {exc.strerror}') from exc
        return self.current is not None

    def update(self, pos: SourcePosition, text: str) -> None:
        """Record that ``text`` was read at the current place, filling ``pos``."""
        cur = self.current
        if cur is None:
            raise IndexError("no current source file")
        pos.file = cur
        pos.first_line = cur.lineno
        pos.first_column = cur.colno

        newlines = text.count("\n")
        if newlines:
            cur.lineno += newlines
            cur.colno = 1 + len(text) - text.rfind("\n") - 1
        else:
            cur.colno += len(text)

        pos.last_line = cur.lineno
        pos.last_column = cur.colno

    def set_line(self, name: str, line: int) -> None:
        """Apply a preprocessor line marker to the current file."""
        cur = self.current
        if cur is None:
            raise IndexError("no current source file")
        cur.name = name
        cur.lineno = line
        if self._initial_cpp:
            self._initial_cpp = False
            self._set_initial_path(name)

    def shorten_to_initial_path(self, fname: str) -> str | None:
        """Express ``fname`` relative to the directory of the first file read.

        Returns None when the two names share no leading directory.
        """
        if self._initial_path is None:
            return None
        prevslash = -1
        slashes = 0
        for index, (a, b) in enumerate(zip(fname, self._initial_path)):
            if a != b:
                break
            if a == "/":
                prevslash = index
                slashes += 1
        if prevslash < 0:
            return None
        diff = self._initial_pathlen - slashes
        return "../" * diff + fname[prevslash + 1:]

    def _string_comment(self, pos: SourcePosition | None, first_line: bool,
                        level: int) -> str | None:
        if pos is None:
            return "<no-file>:<no-line>" if level > 1 else None

        if pos.file is None:
            fname = "<no-file>"
        elif pos.file.name is None:
            fname = "<no-filename>"
        elif level > 1:
            fname = pos.file.name
        else:
            fname = self.shorten_to_initial_path(pos.file.name) or pos.file.name

        if level > 1:
            first = (f"{fname}:{pos.first_line}:{pos.first_column}"
                     f"-{pos.last_line}:{pos.last_column}")
        else:
            line = pos.first_line if first_line else pos.last_line
            first = f"{fname}:{line}"

        if pos.next is not None:
            rest = self._string_comment(pos.next, first_line, level)
            return f"{first}, {rest}"
        return first

    def string_first(self, pos: SourcePosition | None, level: int) -> str | None:
        """Describe ``pos`` for an annotation comment, using its first lines."""
        return self._string_comment(pos, True, level)

    def string_last(self, pos: SourcePosition | None, level: int) -> str | None:
        """Describe ``pos`` for an annotation comment, using its last lines."""
        return self._string_comment(pos, False, level)


def format_error(pos: SourcePosition, prefix: str, message: str) -> str:
    """Build an error line naming the source position."""
    return f"{prefix}: {pos} {message}"
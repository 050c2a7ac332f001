import io

import pytest

from fdtkit.srcpos import (
    MAX_SRCFILE_DEPTH,
    SourceFile,
    SourcePosition,
    SourceTracker,
    format_error,
)
from fdtkit.util import FatalError


@pytest.fixture
def dts(tmp_path):
    path = tmp_path / "main.dts"
    path.write_text("/dts-v1/;\n")
    return path


def test_push_sets_current_file(dts):
    tracker = SourceTracker()
    srcfile = tracker.push(str(dts))
    assert tracker.current is srcfile
    assert srcfile.name == str(dts)
    assert srcfile.dir == str(dts.parent)
    assert (srcfile.lineno, srcfile.colno) == (1, 1)
    assert srcfile.f.read() == b"/dts-v1/;\n"
    tracker.pop()


def test_push_missing_file_raises(tmp_path):
    tracker = SourceTracker()
    with pytest.raises(FatalError, match="Couldn't open"):
        tracker.push(str(tmp_path / "absent.dts"))


def test_relative_include_found_next_to_current_file(tmp_path, dts):
    (tmp_path / "inc.dtsi").write_text("x")
    tracker = SourceTracker()
    outer = tracker.push(str(dts))
    inner = tracker.push("inc.dtsi")
    assert inner.name == str(tmp_path / "inc.dtsi")
    assert inner.prev is outer
    assert tracker.pop() is True
    assert tracker.current is outer
    assert tracker.pop() is False
    assert tracker.current is None


def test_search_path_used_when_not_in_current_dir(tmp_path, dts):
    incdir = tmp_path / "include"
    incdir.mkdir()
    (incdir / "board.dtsi").write_text("y")
    tracker = SourceTracker()
    tracker.add_search_path(str(incdir))
    tracker.push(str(dts))
    inner = tracker.push("board.dtsi")
    assert inner.name == str(incdir / "board.dtsi")
    assert tracker.search_paths == [str(incdir)]


def test_pop_closes_file(dts):
    tracker = SourceTracker()
    srcfile = tracker.push(str(dts))
    tracker.pop()
    assert srcfile.f.closed


def test_pop_without_file_raises():
    with pytest.raises(IndexError):
        SourceTracker().pop()


def test_stdin_name():
    tracker = SourceTracker()
    _, fullname = tracker.relative_open("-")
    assert fullname == "<stdin>"


def test_depfile_records_escaped_names(tmp_path):
    spaced = tmp_path / "my dir"
    spaced.mkdir()
    path = spaced / "a.dts"
    path.write_text("")
    dep = io.StringIO()
    tracker = SourceTracker(depfile=dep)
    tracker.push(str(path))
    assert dep.getvalue() == " " + str(path).replace(" ", "\\ ")


def test_include_depth_limit(dts):
    tracker = SourceTracker()
    for _ in range(MAX_SRCFILE_DEPTH):
        tracker.push(str(dts))
        tracker.pop()
    with pytest.raises(FatalError, match="nested too deeply"):
        tracker.push(str(dts))


def test_update_without_newline_advances_columns(dts):
    tracker = SourceTracker()
    tracker.push(str(dts))
    pos = SourcePosition()
    tracker.update(pos, "abc")
    assert pos.file is tracker.current
    assert pos.first_line == pos.last_line == 1
    assert pos.last_column - pos.first_column == len("abc")


def test_update_with_newline_moves_to_next_line(dts):
    tracker = SourceTracker()
    tracker.push(str(dts))
    first = SourcePosition()
    tracker.update(first, "ab\ncd")
    assert first.last_line == first.first_line + 1
    assert first.last_column == 1 + len("cd")
    second = SourcePosition()
    tracker.update(second, "x")
    assert (second.first_line, second.first_column) == (
        first.last_line, first.last_column)


def test_str_formats():
    f = SourceFile(name="x.dts")
    assert str(SourcePosition(1, 1, 1, 1, f)) == "x.dts:1.1"
    assert str(SourcePosition(1, 2, 1, 4, f)) == "x.dts:1.2-4"
    assert str(SourcePosition(3, 2, 5, 7, f)) == "x.dts:3.2-5.7"
    assert str(SourcePosition(1, 1, 1, 1, None)) == "<no-file>:1.1"


def test_copy_is_independent():
    f = SourceFile(name="x.dts", lineno=4)
    pos = SourcePosition(1, 2, 3, 4, f)
    dup = pos.copy()
    assert dup == pos
    assert dup.file is not f
    f.lineno = 9
    assert dup.file.lineno == 4


def test_copy_of_chain_rejected():
    pos = SourcePosition(next=SourcePosition())
    with pytest.raises(ValueError):
        pos.copy()


def test_extend_appends_at_tail():
    a, b, c = SourcePosition(1), SourcePosition(2), SourcePosition(3)
    assert a.extend(b) is a
    assert a.extend(c) is a
    assert a.next is b
    assert b.next is c


def test_shorten_to_initial_path(dts):
    tracker = SourceTracker()
    tracker.push(str(dts))
    tracker.set_line("/a/b/main.dts", 1)
    assert tracker.shorten_to_initial_path("/a/c/inc.dtsi") == "../c/inc.dtsi"
    assert tracker.shorten_to_initial_path("/a/b/other.dts") == "other.dts"
    assert tracker.shorten_to_initial_path("rel.dts") is None


def test_set_line_only_first_marker_sets_initial_path(dts):
    tracker = SourceTracker()
    tracker.push(str(dts))
    tracker.set_line("/a/b/main.dts", 7)
    assert tracker.current.name == "/a/b/main.dts"
    assert tracker.current.lineno == 7
    tracker.set_line("/z/other.dts", 1)
    assert tracker.shorten_to_initial_path("/a/b/c.dts") == "c.dts"


def test_string_first_and_last():
    tracker = SourceTracker()
    f = SourceFile(name="f.dts")
    g = SourceFile(name="g.dts")
    pos = SourcePosition(1, 1, 2, 5, f)
    pos.extend(SourcePosition(3, 1, 4, 2, g))
    assert tracker.string_first(pos, 1) == "f.dts:1, g.dts:3"
    assert tracker.string_last(pos, 1) == "f.dts:2, g.dts:4"
    assert tracker.string_first(pos, 2) == "f.dts:1:1-2:5, g.dts:3:1-4:2"


def test_string_for_missing_position_and_names():
    tracker = SourceTracker()
    assert tracker.string_first(None, 1) is None
    assert tracker.string_first(None, 2) == "<no-file>:<no-line>"
    assert tracker.string_last(SourcePosition(1, 1, 2, 1, None), 1) == "<no-file>:2"
    nameless = SourcePosition(5, 1, 5, 1, SourceFile())
    assert tracker.string_first(nameless, 1) == "<no-filename>:5"


def test_string_first_shortens_at_level_one(dts):
    tracker = SourceTracker()
    tracker.push(str(dts))
    tracker.set_line("/a/b/main.dts", 1)
    pos = SourcePosition(2, 1, 2, 1, SourceFile(name="/a/b/inc.dtsi"))
    assert tracker.string_first(pos, 1) == "inc.dtsi:2"
    assert tracker.string_first(pos, 2).startswith("/a/b/inc.dtsi:")


def test_format_error():
    pos = SourcePosition(1, 1, 1, 1, SourceFile(name="x.dts"))
    assert format_error(pos, "ERROR", "bad thing") == "ERROR: x.dts:1.1 bad thing"
"""Tests for sync entry ordering."""

from pypan.sync.entries import (
    DestinationEntry,
    SourceEntry,
    entry_less,
    sort_entries,
)


def _src(name, is_dir=False):
    return SourceEntry(
        name=name, rel_path=name, abs_path=f"/l/{name}", size=0, is_dir=is_dir
    )


def _dst(name, is_dir=False):
    return DestinationEntry(
        name=name, rel_path=f"/{name}", abs_path=f"/r/{name}", size=0, is_dir=is_dir
    )


class TestEntryOrdering:
    """Tests for entry_less and sort_entries."""

    def test_files_before_directories(self):
        """Test that every file sorts before every directory."""
        entries = [_src("a", is_dir=True), _src("z"), _src("b", is_dir=True), _src("m")]
        assert [(e.name, e.is_dir) for e in sort_entries(entries)] == [
            ("m", False),
            ("z", False),
            ("a", True),
            ("b", True),
        ]

    def test_case_sensitive_byte_order(self):
        """Test that upper case sorts before lower case."""
        names = [e.name for e in sort_entries([_src("b"), _src("B"), _src("a")])]
        assert names == ["B", "a", "b"]

    def test_utf8_byte_order(self):
        """Test that names compare by their UTF-8 encoding."""
        # U+FF21 encodes as EF BC A1, U+00E9 as C3 A9
        names = [e.name for e in sort_entries([_src("Ａ"), _src("é"), _src("z")])]
        assert names == ["z", "é", "Ａ"]

    def test_same_order_for_both_sides(self):
        """Test that local and remote listings sort identically."""
        names = ["b.txt", "A.txt", "sub", "a.txt"]
        src = sort_entries([_src(n, is_dir=(n == "sub")) for n in names])
        dst = sort_entries([_dst(n, is_dir=(n == "sub")) for n in reversed(names)])
        assert [e.name for e in src] == [e.name for e in dst]

    def test_entry_less_across_sides(self):
        """Test comparing a local entry with a remote one."""
        assert entry_less(_src("a"), _dst("b"))
        assert entry_less(_dst("z"), _src("a", is_dir=True))
        assert not entry_less(_src("a"), _dst("a"))
        assert not entry_less(_src("a", is_dir=True), _dst("a"))

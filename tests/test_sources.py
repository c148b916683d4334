from pathlib import Path

import pytest

from sources import SourceCatalog


def test_add_argument_keeps_command_line_order(tmp_path: Path) -> None:
    listing = tmp_path / "files.txt"
    listing.write_text("b.mseed\n# skipped\n\nc.mseed\n", encoding="utf-8")

    catalog = SourceCatalog()
    catalog.add_argument("a.mseed")
    catalog.add_argument(f"@{listing}")
    catalog.add_argument("d.mseed")

    assert [s.path for s in catalog] == ["a.mseed", "b.mseed", "c.mseed", "d.mseed"]
    assert len(catalog) == 4


def test_add_list_file_returns_count(tmp_path: Path) -> None:
    listing = tmp_path / "files.txt"
    listing.write_text("one\r\ntwo\r\n", encoding="utf-8")

    catalog = SourceCatalog()

    assert catalog.add_list_file(str(listing)) == 2
    assert [s.path for s in catalog] == ["one", "two"]


def test_missing_list_file_raises(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="Cannot open list file"):
        SourceCatalog().add_list_file(str(tmp_path / "nope.txt"))


def test_close_all_closes_opened_sources(tmp_path: Path) -> None:
    data = tmp_path / "data.bin"
    data.write_bytes(b"x" * 10)

    catalog = SourceCatalog()
    source = catalog.add_file(str(data))
    untouched = catalog.add_file(str(data))
    source.open()

    catalog.close_all()

    assert source.is_open is False
    assert untouched.is_open is False

"""Tests for build_catalog."""

import pytest

from bm_purge import Logger, LogLevel, NameParser, build_catalog


def test_catalog_indexes_masters_and_all_archives() -> None:
    """Masters are indexed separately, every archive is indexed by set name and date."""
    lines = [
        "bm-etc.20231201.master.tar.gz\n",
        "bm-etc.20231202.tar.gz\n",
        "bm-home.20231201.master.tar.gz\n",
    ]
    catalog = build_catalog(lines, NameParser("bm"), Logger())

    assert catalog.paths == ["bm-etc.20231201.master.tar.gz", "bm-etc.20231202.tar.gz", "bm-home.20231201.master.tar.gz"]
    assert catalog.master_dates_by_name == {"etc": {"20231201": "bm-etc.20231201.master.tar.gz"}, "home": {"20231201": "bm-home.20231201.master.tar.gz"}}
    assert catalog.all_dates_by_name["etc"] == {"20231201": "bm-etc.20231201.master.tar.gz", "20231202": "bm-etc.20231202.tar.gz"}
    assert catalog.by_path["bm-etc.20231202.tar.gz"].is_master is False


def test_catalog_skips_blank_lines_without_replaying() -> None:
    """A blank line is a no-op, the previous archive is not processed again."""
    lines = ["bm-etc.20231201.tar.gz\n", "\n", "   \n", "bm-etc.20231202.tar.gz\n"]
    catalog = build_catalog(lines, NameParser("bm"), Logger())
    assert catalog.paths == ["bm-etc.20231201.tar.gz", "bm-etc.20231202.tar.gz"]
    assert catalog.lines_read == 4


def test_catalog_uses_first_token(capsys: pytest.CaptureFixture[str]) -> None:
    """Only the first token of a line is used as path, with a warning."""
    catalog = build_catalog(["  /archives/bm-etc.20231201.tar.gz  1024\n"], NameParser("bm"), Logger(LogLevel.WARN))
    assert catalog.paths == ["/archives/bm-etc.20231201.tar.gz"]
    assert "only the first token is used" in capsys.readouterr().err


def test_catalog_skips_unrecognized_names() -> None:
    """Unrecognized names do not enter the catalog."""
    catalog = build_catalog(["README\n", "bm-etc.20231201.tar.gz\n"], NameParser("bm"), Logger())
    assert catalog.paths == ["bm-etc.20231201.tar.gz"]
    assert list(catalog.by_path) == ["bm-etc.20231201.tar.gz"]
    assert catalog.unrecognized == ["README"]


def test_catalog_keeps_duplicates_in_working_list() -> None:
    """Duplicate paths stay in the working list, the record is overwritten."""
    catalog = build_catalog(["bm-etc.20231201.tar.gz\n", "bm-etc.20231201.tar.gz\n"], NameParser("bm"), Logger())
    assert catalog.paths == ["bm-etc.20231201.tar.gz", "bm-etc.20231201.tar.gz"]
    assert len(catalog.by_path) == 1


def test_catalog_debug_output(capsys: pytest.CaptureFixture[str]) -> None:
    """With debug log level every line and every archive set is reported."""
    build_catalog(["bm-etc.20231201.master.tar.gz\n", "\n", "junk\n"], NameParser("bm"), Logger(LogLevel.DEBUG))
    err = capsys.readouterr().err
    assert "Line 1: bm-etc.20231201.master.tar.gz => set: 'etc'" in err
    assert "Line 2: blank, ignored" in err
    assert "Line 3: unrecognized archive name 'junk'" in err
    assert "Archive set 'etc': 20231201 (master)" in err

from collections.abc import Iterable

import pytest

from bm_purge import Catalog, Logger, LogLevel, NameParser, build_catalog


def make_catalog(names: Iterable[str], archive_prefix: str = "bm", logger: Logger = None) -> Catalog:
    return build_catalog((f"{name}\n" for name in names), NameParser(archive_prefix), logger or Logger(LogLevel.ERROR))


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BM_ARCHIVE_PREFIX", raising=False)
    monkeypatch.delenv("BM_ARCHIVE_STRICTPURGE", raising=False)

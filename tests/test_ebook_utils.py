import logging
import os
import re
import sys
from pathlib import Path

import pytest

# Add project root for `epubnav.*` imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from epubnav.cfi.epubcfi import compare, parse
from epubnav.utils.config_loader import ReaderConfig
from epubnav.services.section import Section, Spine
from epubnav.utils.ebook_utils import BookCache, EbookParser, OpenBook


@pytest.fixture
def parser(tmp_path):
    return EbookParser(ReaderConfig(books_dir=tmp_path, data_dir=tmp_path, locations_pause_ms=0, locations_break=10))


def test_package_layout(parser, epub_book):
    layout = parser.read_package_layout(epub_book)

    assert layout.opf_path == "OEBPS/content.opf"
    assert layout.spine_node_index == 2
    assert [ref["idref"] for ref in layout.itemrefs] == ["c1", "c2", "notes"]
    assert layout.nav_path == "OEBPS/nav.xhtml"
    assert layout.ncx_path is None


def test_open_book_builds_spine(parser, epub_book):
    opened = parser.open_book(epub_book)

    assert opened.title == "Test Book"
    assert [s.cfi_base for s in opened.spine] == ["/6/2", "/6/4[chap01ref]", "/6/6"]
    assert [s.linear for s in opened.spine] == [True, True, False]
    assert opened.spine.get("chap2.xhtml#pg2").index == 1
    assert opened.spine.get("epubcfi(/6/4[chap01ref]!/4/2)").href == "chap2.xhtml"
    assert opened.spine.get().index == 0
    assert parser.open_book(epub_book) is opened


def test_books_are_found_by_name_under_books_dir(parser, epub_book):
    assert parser.resolve_book_path("book.epub") == epub_book
    with pytest.raises(FileNotFoundError):
        parser.resolve_book_path("missing.epub")


def test_book_id_is_stable(parser, epub_book, tmp_path):
    book_id = parser.get_book_id(epub_book)

    assert re.fullmatch(r"[0-9a-f]{32}", book_id)
    assert parser.get_book_id(epub_book) == book_id
    assert parser.get_book_id(tmp_path / "missing.epub") is None


@pytest.mark.asyncio
async def test_section_markup_is_served_raw(parser, epub_book):
    section = parser.open_book(epub_book).spine.get(1)

    document = await section.load()

    assert document.find(id="pg2").get_text() == "Hello world, this is chapter two."
    assert section.cfi_from_element(document.find(id="pg2")) == "epubcfi(/6/4[chap01ref]!/4[body01]/4[pg2])"
    section.unload()
    assert not section.loaded


@pytest.mark.asyncio
async def test_page_list_with_resolved_fragments(parser, epub_book):
    page_list = await parser.load_page_list(epub_book)

    assert page_list.pages == [1, 2, 3]
    assert page_list.locations == [
        "epubcfi(/6/2!/4/2[pg1])",
        "epubcfi(/6/4[chap01ref]!/4[body01]/4[pg2])",
    ]
    assert page_list.cfi_from_page(3) is None
    assert page_list.page_from_cfi("epubcfi(/6/4[chap01ref]!/4[body01]/4[pg2]/1:5)") == 2
    assert page_list.page_from_cfi("epubcfi(/6/2!/4/4/1:2)") == 1
    assert not any(section.loaded for section in parser.open_book(epub_book).spine)


@pytest.mark.asyncio
async def test_page_list_without_resolving(parser, epub_book):
    page_list = await parser.load_page_list(epub_book, resolve=False)

    assert page_list.pages == [1, 2, 3]
    assert page_list.locations == []


@pytest.mark.asyncio
async def test_text_around_cfi(parser, epub_book):
    text = await parser.get_text_around_cfi(epub_book, "epubcfi(/6/4[chap01ref]!/4[body01]/4[pg2]/1:6)", context=5)
    assert text == "ello world"


@pytest.mark.asyncio
async def test_text_around_unusable_cfi(parser, epub_book, caplog):
    caplog.set_level(logging.ERROR)

    assert await parser.get_text_around_cfi(epub_book, "not-a-cfi") is None
    assert await parser.get_text_around_cfi(epub_book, "epubcfi(/6/4!/8/2/1:0)") is None
    assert await parser.get_text_around_cfi(epub_book, "epubcfi(/6/4!/4/2") is None
    assert any("Could not read text around" in record.message for record in caplog.records)


@pytest.mark.asyncio
async def test_locations_for_book(parser, epub_book):
    locations = parser.create_locations(epub_book)

    result = await locations.generate()

    assert result
    assert parse(result[0]).spine_pos == 0
    assert parse(result[-1]).spine_pos == 1
    assert all(compare(a, b) < 0 for a, b in zip(result, result[1:]))
    assert locations.cfi_from_percentage(0) == result[0]



def _open_book(path):
    path.write_bytes(b"epub")
    section = Section(index=0, idref="c1", href="c1.xhtml", cfi_base="/6/2")
    section.document = "parsed"
    return OpenBook(path=path, book=None, layout=None, spine=Spine([section]))


def test_book_cache_evicts_least_recently_used(tmp_path):
    cache = BookCache(capacity=2)
    a, b, c = (_open_book(tmp_path / name) for name in ("a.epub", "b.epub", "c.epub"))
    cache.put(a)
    cache.put(b)
    cache.get(a.path)
    cache.put(c)

    assert b.path not in cache
    assert not b.spine.get(0).loaded
    assert cache.get(a.path) is a
    assert cache.get(c.path) is c
    assert len(cache) == 2

    cache.clear()
    assert len(cache) == 0
    assert not a.spine.get(0).loaded


def test_book_cache_drops_files_changed_on_disk(tmp_path):
    cache = BookCache()
    book = _open_book(tmp_path / "a.epub")
    cache.put(book)

    stat = book.path.stat()
    os.utime(book.path, (stat.st_atime, stat.st_mtime + 10))

    assert cache.get(book.path) is None
    assert book.path not in cache


def test_changed_book_is_reopened(parser, epub_book):
    opened = parser.open_book(epub_book)
    stat = epub_book.stat()
    os.utime(epub_book, (stat.st_atime, stat.st_mtime + 10))

    reopened = parser.open_book(epub_book)

    assert reopened is not opened
    assert parser.open_book(epub_book) is reopened

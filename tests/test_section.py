import sys
import unittest
from pathlib import Path

import pytest

# Add project root for `epubnav.*` imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from epubnav.services.section import EXCERPT_LIMIT, SearchResult, Section, Spine


def _section(body: str, index: int = 0, **kwargs) -> Section:
    markup = f"<html><head></head><body>{body}</body></html>"
    return Section(index=index, idref=f"item{index}", href=f"chap{index}.xhtml",
                   cfi_base=f"/6/{(index + 1) * 2}", loader=lambda section: markup, **kwargs)


@pytest.mark.asyncio
async def test_find_is_case_insensitive_per_text_node():
    section = _section("<p>Hello world</p><p>say hello again, HELLO</p>")
    await section.load()

    results = section.find("hello")

    assert [r.cfi for r in results] == [
        "epubcfi(/6/2!/4/2,/1:0,/1:5)",
        "epubcfi(/6/2!/4/4,/1:4,/1:9)",
        "epubcfi(/6/2!/4/4,/1:17,/1:22)",
    ]
    assert results[0] == SearchResult("epubcfi(/6/2!/4/2,/1:0,/1:5)", "Hello world")


@pytest.mark.asyncio
async def test_find_results_resolve_to_the_match():
    section = _section("<p>one <em>two</em> three two</p>")
    await section.load()

    for result in section.find("two"):
        assert section.to_range(result.cfi).text().lower() == "two"


@pytest.mark.asyncio
async def test_search_spans_inline_markup():
    section = _section("<p>The <em>quick</em> brown fox</p>")
    await section.load()

    assert section.find("the quick") == []
    results = section.search("the quick")

    assert [r.cfi for r in results] == ["epubcfi(/6/2!/4/2,/1:0,/2/1:5)"]
    assert results[0].excerpt == "The quick"
    assert section.to_range(results[0].cfi).text() == "The quick"


@pytest.mark.asyncio
async def test_search_window_is_limited():
    section = _section("<p>a<b>b</b><i>c</i><u>d</u></p>")
    await section.load()

    assert len(section.search("abcd")) == 1
    assert section.search("abcd", max_seq_ele=3) == []


@pytest.mark.asyncio
async def test_long_text_excerpt_is_trimmed():
    text = "x" * 200 + " needle " + "y" * 200
    section = _section(f"<p>{text}</p>")
    await section.load()

    (result,) = section.find("needle")

    assert result.excerpt.startswith("...") and result.excerpt.endswith("...")
    assert "needle" in result.excerpt
    assert len(result.excerpt) <= EXCERPT_LIMIT + 6


@pytest.mark.asyncio
async def test_load_accepts_async_loader():
    async def loader(section):
        return b"<html><head></head><body><p>bytes</p></body></html>"

    section = Section(index=0, idref="a", href="a.xhtml", cfi_base="/6/2", loader=loader)
    document = await section.load()

    assert section.loaded
    assert await section.load() is document
    assert section.body.name == "body"


class TestSectionState(unittest.TestCase):

    def test_unloaded_section(self):
        section = _section("<p>x</p>")
        self.assertIsNone(section.body)
        self.assertEqual(section.find("x"), [])
        with self.assertRaises(RuntimeError):
            section.to_range("epubcfi(/6/2!/4/2/1:0)")

    def test_load_without_loader(self):
        import asyncio
        section = Section(index=0, idref="a", href="a.xhtml")
        with self.assertRaises(RuntimeError):
            asyncio.run(section.load())


class TestSpine(unittest.TestCase):

    def setUp(self):
        self.first = Section(index=0, idref="cover", href="cover.xhtml", linear=False)
        self.second = Section(index=1, idref="c1", href="text/chap%201.xhtml")
        self.third = Section(index=2, idref="c2", href="text/chap2.xhtml")
        self.spine = Spine([self.first, self.second, self.third])

    def test_get(self):
        self.assertIs(self.spine.get(), self.second)
        self.assertIs(self.spine.get(2), self.third)
        self.assertIsNone(self.spine.get(9))
        self.assertIs(self.spine.get("text/chap 1.xhtml"), self.second)
        self.assertIs(self.spine.get("text/chap%201.xhtml#frag"), self.second)
        self.assertIs(self.spine.get("c2"), self.third)
        self.assertIs(self.spine.get("epubcfi(/6/6!/4/2/1:0)"), self.third)
        self.assertIsNone(self.spine.get("nothing.xhtml"))

    def test_each(self):
        self.assertEqual(list(self.spine.each()), [self.second, self.third])
        self.assertEqual(list(self.spine.each(linear_only=False)), [self.first, self.second, self.third])
        self.assertEqual(len(self.spine), 3)


if __name__ == '__main__':
    unittest.main()

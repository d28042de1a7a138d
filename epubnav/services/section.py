"""
Spine items and the spine itself.

A Section knows where it sits in the reading order (its cfi_base), how
to load its markup into a BeautifulSoup tree, and how to translate
between positions in that tree and addresses. Markup is only held while
loaded; callers unload() sections they are done with.
"""
import inspect
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Union
from urllib.parse import unquote

from bs4 import BeautifulSoup

from epubnav.cfi import builder, dom, resolver
from epubnav.cfi.epubcfi import EpubCFI, coerce, is_cfi_string

logger = logging.getLogger(__name__)

EXCERPT_LIMIT = 150


@dataclass
class SearchResult:
    cfi: str
    excerpt: str


class Section:
    def __init__(self, index: int, idref: str, href: str, linear: bool = True,
                 cfi_base: str = "", properties: Optional[List[str]] = None,
                 loader: Optional[Callable] = None, ignore_class: Optional[str] = None,
                 parser: str = "html.parser"):
        self.index = index
        self.idref = idref
        self.href = href
        self.linear = linear
        self.cfi_base = cfi_base
        self.properties = properties or []
        self.loader = loader
        self.ignore_class = ignore_class or None
        self.parser = parser
        self.document: Optional[BeautifulSoup] = None

    def __repr__(self):
        return f"Section(index={self.index}, href='{self.href}', linear={self.linear})"

    @property
    def loaded(self) -> bool:
        return self.document is not None

    async def load(self) -> BeautifulSoup:
        """Parse the section's markup (once) and return the tree."""
        if self.document is not None:
            return self.document
        if self.loader is None:
            raise RuntimeError(f"Section '{self.href}' has no loader")

        content = self.loader(self)
        if inspect.isawaitable(content):
            content = await content

        self.document = dom.parse_document(content, self.parser)
        return self.document

    def unload(self):
        self.document = None

    @property
    def body(self):
        if self.document is None:
            return None
        return dom.body_of(self.document)

    def cfi_from_range(self, doc_range: dom.DocumentRange) -> str:
        return str(builder.cfi_from_range(doc_range, self.cfi_base, self.ignore_class))

    def cfi_from_element(self, element) -> str:
        return str(builder.cfi_from_node(element, self.cfi_base, self.ignore_class))

    def to_range(self, cfi: Union[str, EpubCFI], fuzzy_threshold: int = resolver.DEFAULT_FUZZY_THRESHOLD):
        if self.document is None:
            raise RuntimeError(f"Section '{self.href}' is not loaded")
        return resolver.to_range(cfi, self.document, self.ignore_class, fuzzy_threshold)

    def _excerpt(self, text: str, pos: int) -> str:
        if len(text) < EXCERPT_LIMIT:
            return text
        half = EXCERPT_LIMIT // 2
        return "..." + text[max(pos - half, 0):pos + half] + "..."

    def find(self, query: str) -> List[SearchResult]:
        """Case-insensitive search inside individual text nodes."""
        if self.document is None or not query:
            return []

        matches = []
        needle = query.lower()
        for node in dom.iter_text_nodes(self.document):
            text = str(node)
            lowered = text.lower()
            pos = lowered.find(needle)
            while pos != -1:
                doc_range = dom.DocumentRange(node, pos, node, pos + len(needle))
                matches.append(SearchResult(self.cfi_from_range(doc_range), self._excerpt(text, pos)))
                pos = lowered.find(needle, pos + 1)
        return matches

    def search(self, query: str, max_seq_ele: int = 5) -> List[SearchResult]:
        """
        Case-insensitive search across up to `max_seq_ele` consecutive text
        nodes, so matches broken up by inline markup are still found.
        Each match is reported once, from the node it starts in.
        """
        if self.document is None or not query:
            return []

        matches = []
        needle = query.lower()
        nodes = list(dom.iter_text_nodes(self.document))

        for i, first in enumerate(nodes):
            window = nodes[i:i + max_seq_ele]
            joined = "".join(str(n) for n in window)
            lowered = joined.lower()
            pos = lowered.find(needle)

            while pos != -1 and pos < len(first):
                end_pos = pos + len(needle)
                consumed = 0
                end_index = 0
                while end_index < len(window) - 1 and consumed + len(window[end_index]) < end_pos:
                    consumed += len(window[end_index])
                    end_index += 1

                doc_range = dom.DocumentRange(first, pos, window[end_index], end_pos - consumed)
                excerpt = "".join(str(n) for n in window[:end_index + 1])
                matches.append(SearchResult(self.cfi_from_range(doc_range), self._excerpt(excerpt, pos)))
                pos = lowered.find(needle, pos + 1)

        return matches


class Spine:
    """Reading order of a publication."""

    def __init__(self, sections: Optional[List[Section]] = None):
        self.sections: List[Section] = []
        self._by_href: Dict[str, Section] = {}
        self._by_idref: Dict[str, Section] = {}
        self._by_index: Dict[int, Section] = {}
        for section in sections or []:
            self.append(section)

    def append(self, section: Section):
        self.sections.append(section)
        self._by_href[section.href] = section
        self._by_href[unquote(section.href)] = section
        self._by_idref[section.idref] = section
        self._by_index[section.index] = section

    def __len__(self):
        return len(self.sections)

    def __iter__(self) -> Iterator[Section]:
        return iter(self.sections)

    def get(self, target: Union[int, str, None] = None) -> Optional[Section]:
        """
        Look a section up by position, address, href or idref.
        With no target, the first linear section.
        """
        if target is None:
            return next((s for s in self.sections if s.linear), None)

        if isinstance(target, int):
            return self._by_index.get(target)

        if is_cfi_string(target):
            return self.get(coerce(target).spine_pos)

        href = target.split("#", 1)[0]
        return self._by_href.get(href) or self._by_href.get(unquote(href)) or self._by_idref.get(target)

    def each(self, linear_only: bool = True) -> Iterator[Section]:
        for section in self.sections:
            if linear_only and not section.linear:
                continue
            yield section

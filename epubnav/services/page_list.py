"""
Print page numbers from the publisher's page list.

Reads either an EPUB 3 navigation document (<nav epub:type="page-list">)
or an EPUB 2 NCX <pageList>, and maps page numbers to addresses and back.
"""
import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Union

from lxml import etree

from epubnav.cfi.epubcfi import EpubCFI, coerce, compare, is_cfi_string
from epubnav.utils.sorted_search import index_of_sorted, location_of

logger = logging.getLogger(__name__)

_PAGE_NUMBER_RE = re.compile(r"^\s*([+-]?\d+)")


@dataclass
class PageListItem:
    href: str
    page: int
    cfi: Optional[str] = None
    package_url: Optional[str] = None


def parse_page_number(text: str) -> Optional[int]:
    """Leading integer of a page label ("12", "12a"); None for labels like "xii"."""
    match = _PAGE_NUMBER_RE.match(text or "")
    return int(match.group(1)) if match else None


def _local(name: str) -> str:
    return f"*[local-name()='{name}']"


def _text_of(element) -> str:
    return "".join(element.itertext()).strip()


class PageList:
    def __init__(self, xml: Union[str, bytes, None] = None):
        self.pages: List[int] = []
        self.locations: List[str] = []
        self._located_pages: List[int] = []
        self.first_page = 0
        self.last_page = 0
        self.total_pages = 0
        self.page_list: List[PageListItem] = []

        if xml:
            self.page_list = self.parse(xml)
        if self.page_list:
            self.process(self.page_list)

    # =====================================================================
    # Parsing
    # =====================================================================

    def parse(self, xml: Union[str, bytes]) -> List[PageListItem]:
        if isinstance(xml, str):
            xml = xml.encode("utf-8")

        try:
            root = etree.fromstring(xml, parser=etree.XMLParser(recover=True, resolve_entities=False))
        except etree.XMLSyntaxError as e:
            logger.warning(f"⚠️ Could not parse page list document: {e}")
            return []
        if root is None:
            return []

        name = etree.QName(root).localname
        if name == "html":
            return self.parse_nav(root)
        if name == "ncx":
            return self.parse_ncx(root)

        logger.debug(f"No page list in a <{name}> document")
        return []

    def parse_nav(self, root) -> List[PageListItem]:
        navs = root.xpath(
            f".//{_local('nav')}[@*[local-name()='type' and "
            f"contains(concat(' ', normalize-space(.), ' '), ' page-list ')]]"
        )
        if not navs:
            return []

        items = []
        for li in navs[0].xpath(f".//{_local('li')}"):
            item = self.item(li)
            if item is not None:
                items.append(item)
        return items

    def parse_ncx(self, root) -> List[PageListItem]:
        page_lists = root.xpath(f".//{_local('pageList')}")
        if not page_lists:
            return []

        items = []
        for target in page_lists[0].xpath(f".//{_local('pageTarget')}"):
            item = self.ncx_item(target)
            if item is not None:
                items.append(item)
        return items

    def ncx_item(self, target) -> Optional[PageListItem]:
        labels = target.xpath(f"./{_local('navLabel')}/{_local('text')}")
        contents = target.xpath(f"./{_local('content')}")
        label = _text_of(labels[0]) if labels else ""
        href = contents[0].get("src", "") if contents else ""

        page = parse_page_number(label)
        if page is None:
            logger.debug(f"Skipping page target with non-numeric label '{label}'")
            return None
        return PageListItem(href=href, page=page)

    def item(self, li) -> Optional[PageListItem]:
        anchors = li.xpath(f"./{_local('a')}") or li.xpath(f".//{_local('a')}")
        if not anchors:
            return None

        anchor = anchors[0]
        href = anchor.get("href", "")
        label = _text_of(anchor)
        page = parse_page_number(label)
        if page is None:
            logger.debug(f"Skipping page list entry with non-numeric label '{label}'")
            return None

        if "epubcfi" in href:
            package_url, _, fragment = href.partition("#")
            cfi = fragment if is_cfi_string(fragment) else None
            return PageListItem(href=href, page=page, cfi=cfi, package_url=package_url)

        return PageListItem(href=href, page=page)

    def process(self, page_list: List[PageListItem]):
        """Build the lookup arrays. Page ranges come from entries that carry an address, when any do."""
        self.page_list = list(page_list)
        self.pages = [item.page for item in page_list]
        located = [item for item in page_list if item.cfi]
        self.locations = [item.cfi for item in located]
        self._located_pages = [item.page for item in located]

        bounds = self._located_pages or self.pages
        if bounds:
            self.first_page = bounds[0]
            self.last_page = bounds[-1]
            self.total_pages = self.last_page - self.first_page

        logger.debug(f"Page list: {len(self.pages)} pages, {len(self.locations)} with addresses")

    # =====================================================================
    # Queries
    # =====================================================================

    def page_from_cfi(self, cfi: Union[str, EpubCFI]) -> int:
        """Page containing `cfi`: the page that starts at or most recently before it. -1 if nothing is mapped."""
        if not self.locations:
            return -1

        target = coerce(cfi)
        index = index_of_sorted(target, self.locations, compare)
        if index != -1:
            return self._located_pages[index]

        insert_at = location_of(target, self.locations, compare)
        if insert_at - 1 >= 0:
            return self._located_pages[insert_at - 1]
        return self._located_pages[0]

    def cfi_from_page(self, page: Union[int, str]) -> Optional[str]:
        try:
            page = int(page)
        except (TypeError, ValueError):
            return None

        for i, located in enumerate(self._located_pages):
            if located == page:
                return self.locations[i]
        return None

    def page_from_percentage(self, percentage: float) -> int:
        return int(math.floor(self.total_pages * percentage + 0.5))

    def percentage_from_page(self, page: int) -> float:
        if not self.total_pages:
            return 0
        percentage = (page - self.first_page) / self.total_pages
        return math.floor(percentage * 1000 + 0.5) / 1000

    def percentage_from_cfi(self, cfi: Union[str, EpubCFI]) -> float:
        page = self.page_from_cfi(cfi)
        if page == -1:
            return 0
        return self.percentage_from_page(page)

    def destroy(self):
        self.pages = []
        self.locations = []
        self._located_pages = []
        self.page_list = []
        self.first_page = self.last_page = self.total_pages = 0

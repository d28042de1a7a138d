"""
Ebook Utilities for epubnav

Opens EPUB files and turns them into the structures the address engine
works on: a Spine of loadable Sections, the publisher page list and a
stable book id.
"""
from typing import Dict, List, Optional, Tuple

import ebooklib
from ebooklib import epub
from lxml import etree
import glob
import hashlib
import logging
import posixpath
import zipfile
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote

from epubnav.cfi import dom
from epubnav.cfi.epubcfi import generate_chapter_component
from epubnav.cfi.errors import AddressNotFound, CfiError
from epubnav.services.locations import Locations
from epubnav.services.page_list import PageList
from epubnav.services.section import Section, Spine
from epubnav.utils.config_loader import ReaderConfig
from epubnav.utils.logging_utils import sanitize_log_data

logger = logging.getLogger(__name__)

NCX_MEDIA_TYPE = "application/x-dtbncx+xml"
DEFAULT_SPINE_NODE_INDEX = 2


@dataclass
class PackageLayout:
    """What the OPF says about reading order, read straight from the package document."""
    opf_path: str
    spine_node_index: int = DEFAULT_SPINE_NODE_INDEX
    itemrefs: List[Dict[str, str]] = field(default_factory=list)
    manifest: Dict[str, Dict[str, str]] = field(default_factory=dict)
    nav_path: Optional[str] = None
    ncx_path: Optional[str] = None

    @property
    def opf_dir(self) -> str:
        return posixpath.dirname(self.opf_path)


@dataclass
class OpenBook:
    path: Path
    book: epub.EpubBook
    layout: PackageLayout
    spine: Spine
    book_id: Optional[str] = None

    @property
    def title(self) -> str:
        titles = self.book.get_metadata('DC', 'title')
        return titles[0][0] if titles else self.path.stem


class BookCache:
    """
    Most recently opened books, keyed by file path.

    An entry is dropped (and its parsed sections released) when it falls
    off the end or when the file's modification time no longer matches
    the one recorded when it was opened.
    """

    def __init__(self, capacity: int = 3):
        self._books: "OrderedDict[str, Tuple[Optional[float], OpenBook]]" = OrderedDict()
        self.capacity = capacity

    def __len__(self):
        return len(self._books)

    def __contains__(self, path):
        return str(path) in self._books

    @staticmethod
    def _mtime(path) -> Optional[float]:
        try:
            return Path(path).stat().st_mtime
        except OSError:
            return None

    def get(self, path) -> Optional[OpenBook]:
        key = str(path)
        entry = self._books.get(key)
        if entry is None:
            return None

        mtime, book = entry
        if mtime != self._mtime(key):
            logger.info(f"Book changed on disk, reopening: {Path(key).name}")
            self._drop(key)
            return None

        self._books.move_to_end(key)
        return book

    def put(self, book: OpenBook):
        key = str(book.path)
        if key in self._books:
            self._drop(key)
        self._books[key] = (self._mtime(key), book)
        while len(self._books) > self.capacity:
            oldest = next(iter(self._books))
            logger.debug(f"Evicting '{Path(oldest).name}' from the book cache")
            self._drop(oldest)

    def _drop(self, key: str):
        _, book = self._books.pop(key)
        for section in book.spine:
            section.unload()

    def clear(self):
        for key in list(self._books):
            self._drop(key)


class EbookParser:
    def __init__(self, config: Optional[ReaderConfig] = None):
        self.config = config or ReaderConfig()
        self.books_dir = Path(self.config.books_dir)
        self.cache = BookCache(capacity=self.config.ebook_cache_size)
        self.ignore_class = self.config.ignore_class or None
        self.html_parser = self.config.html_parser

        logger.info(f"✅ EbookParser initialized (cache={self.config.ebook_cache_size}, "
                    f"ignore_class='{self.config.ignore_class}', parser={self.html_parser})")

    def resolve_book_path(self, filename):
        path = Path(filename)
        if path.exists():
            return path

        try:
            safe_name = glob.escape(path.name)
            return next(self.books_dir.glob(f"**/{safe_name}"))
        except StopIteration:
            pass

        raise FileNotFoundError(f"Could not locate {filename}")

    def get_book_id(self, filepath) -> Optional[str]:
        """KOReader-style partial MD5: 1 KiB samples at growing offsets, stable for unchanged files."""
        md5 = hashlib.md5()
        try:
            file_size = Path(filepath).stat().st_size
            with open(filepath, 'rb') as f:
                for i in range(-1, 11):
                    offset = 0 if i == -1 else 1024 * (4 ** i)
                    if offset >= file_size:
                        break
                    f.seek(offset)
                    chunk = f.read(1024)
                    if not chunk:
                        break
                    md5.update(chunk)
            return md5.hexdigest()
        except OSError as e:
            logger.error(f"❌ Error computing hash for {filepath}: {e}")
            return None

    # =====================================================================
    # Package document
    # =====================================================================

    def _find_opf_path(self, zf: zipfile.ZipFile) -> Optional[str]:
        try:
            root = etree.fromstring(zf.read('META-INF/container.xml'))
            for rootfile in root.iter():
                if isinstance(rootfile.tag, str) and rootfile.tag.endswith('rootfile'):
                    return rootfile.get('full-path')
        except (KeyError, etree.XMLSyntaxError) as e:
            logger.debug(f"Failed to read OPF path from container.xml: {e}")
        return None

    def read_package_layout(self, filepath) -> PackageLayout:
        with zipfile.ZipFile(filepath) as zf:
            opf_path = self._find_opf_path(zf)
            if not opf_path:
                raise ValueError(f"No rootfile in container.xml of {filepath}")
            root = etree.fromstring(zf.read(opf_path), parser=etree.XMLParser(recover=True))

        layout = PackageLayout(opf_path=opf_path)
        package_children = [child for child in root if isinstance(child.tag, str)]

        for position, child in enumerate(package_children):
            name = etree.QName(child).localname
            if name == 'spine':
                layout.spine_node_index = position
                for itemref in child:
                    if isinstance(itemref.tag, str) and etree.QName(itemref).localname == 'itemref':
                        layout.itemrefs.append({
                            'idref': itemref.get('idref', ''),
                            'id': itemref.get('id', ''),
                            'linear': itemref.get('linear', 'yes'),
                        })
            elif name == 'manifest':
                for item in child:
                    if not isinstance(item.tag, str):
                        continue
                    layout.manifest[item.get('id', '')] = {
                        'href': unquote(item.get('href', '')),
                        'media_type': item.get('media-type', ''),
                        'properties': item.get('properties', ''),
                    }

        for item in layout.manifest.values():
            full_path = posixpath.normpath(posixpath.join(layout.opf_dir, item['href']))
            if 'nav' in item['properties'].split():
                layout.nav_path = full_path
            elif item['media_type'] == NCX_MEDIA_TYPE and layout.ncx_path is None:
                layout.ncx_path = full_path

        return layout

    # =====================================================================
    # Books and sections
    # =====================================================================

    def open_book(self, filepath) -> OpenBook:
        filepath = self.resolve_book_path(filepath)
        str_path = str(filepath)

        cached = self.cache.get(filepath)
        if cached is not None:
            return cached

        logger.info(f"Parsing EPUB: {filepath.name}")
        book = epub.read_epub(str_path, {"ignore_ncx": True})
        layout = self.read_package_layout(filepath)

        opened = OpenBook(path=filepath, book=book, layout=layout, spine=Spine())
        for index, itemref in enumerate(layout.itemrefs):
            item = book.get_item_with_id(itemref['idref'])
            if item is None:
                logger.warning(f"⚠️ Spine references missing manifest item '{itemref['idref']}'")
                continue
            opened.spine.append(Section(
                index=index,
                idref=itemref['idref'],
                href=item.get_name(),
                linear=itemref['linear'] != 'no',
                cfi_base=generate_chapter_component(layout.spine_node_index, index, itemref['id'] or None),
                properties=layout.manifest.get(itemref['idref'], {}).get('properties', '').split(),
                loader=self._section_loader(book),
                ignore_class=self.ignore_class,
                parser=self.html_parser,
            ))

        opened.book_id = self.get_book_id(filepath)
        self.cache.put(opened)
        logger.info(f"✅ Opened '{opened.title}' with {len(opened.spine)} spine items")
        return opened

    def _section_loader(self, book: epub.EpubBook):
        def load(section: Section) -> bytes:
            item = book.get_item_with_id(section.idref)
            if item is None or item.get_type() not in (ebooklib.ITEM_DOCUMENT, ebooklib.ITEM_NAVIGATION):
                raise ValueError(f"Spine item '{section.idref}' is not a document")
            # Raw file bytes: get_content() would rebuild the markup and shift addresses
            return item.content
        return load

    def create_locations(self, filepath) -> Locations:
        opened = self.open_book(filepath)
        return Locations(opened.spine, pause_ms=self.config.locations_pause_ms,
                         break_size=self.config.locations_break)

    # =====================================================================
    # Page list
    # =====================================================================

    def _read_zip_member(self, filepath, member: str) -> Optional[bytes]:
        try:
            with zipfile.ZipFile(filepath) as zf:
                return zf.read(member)
        except KeyError:
            logger.warning(f"⚠️ '{member}' is listed in the package but missing from {filepath}")
            return None

    async def load_page_list(self, filepath, resolve: bool = True) -> PageList:
        """
        Page list from the navigation document, or the NCX for EPUB 2 books.
        With `resolve`, entries that point at an element id get addresses too.
        """
        opened = self.open_book(filepath)
        layout = opened.layout

        source_path = layout.nav_path or layout.ncx_path
        if not source_path:
            logger.info(f"No navigation document in '{opened.title}'")
            return PageList()

        page_list = PageList()
        xml = self._read_zip_member(opened.path, source_path)
        items = page_list.parse(xml) if xml else []
        if not items and layout.nav_path and layout.ncx_path and source_path != layout.ncx_path:
            source_path = layout.ncx_path
            xml = self._read_zip_member(opened.path, source_path)
            items = page_list.parse(xml) if xml else []

        if resolve:
            await self._resolve_page_hrefs(opened, items, source_path)

        page_list.process(items)
        logger.info(f"✅ Loaded {len(page_list.pages)} pages ({len(page_list.locations)} with addresses)")
        return page_list

    async def _resolve_page_hrefs(self, opened: OpenBook, items, source_path: str):
        by_zip_path = {}
        for section in opened.spine:
            zip_path = posixpath.normpath(posixpath.join(opened.layout.opf_dir, section.href))
            by_zip_path[zip_path] = section

        touched = set()
        for item in items:
            if item.cfi or not item.href:
                continue

            path_part, _, fragment = item.href.partition('#')
            target = posixpath.normpath(posixpath.join(posixpath.dirname(source_path), unquote(path_part)))
            section = by_zip_path.get(target)
            if section is None:
                logger.debug(f"Page {item.page} points outside the spine: '{item.href}'")
                continue

            try:
                document = await section.load()
            except Exception as e:
                logger.error(f"❌ Could not load '{section.href}' for page {item.page}: {e}")
                continue
            touched.add(section.index)

            element = dom.find_by_id(document, unquote(fragment)) if fragment else dom.body_of(document)
            if element is None:
                logger.debug(f"Page {item.page}: no element with id '{fragment}' in '{section.href}'")
                continue
            item.cfi = section.cfi_from_element(element)

        for index in touched:
            opened.spine.get(index).unload()

    # =====================================================================
    # Text lookups
    # =====================================================================

    async def get_text_around_cfi(self, filepath, cfi, context=50) -> Optional[str]:
        """
        Returns a text fragment of length 2*context centered on the position indicated by the CFI.

        Example supported CFI: epubcfi(/6/16[chapter_6]!/4/2[book-columns]/2[book-inner]/268/4/2[kobo.134.3]/1:11)
        """
        try:
            opened = self.open_book(filepath)
            section = opened.spine.get(cfi)
            if section is None:
                logger.error(f"❌ No spine item for CFI '{sanitize_log_data(cfi)}'")
                return None

            document = await section.load()
            try:
                doc_range = section.to_range(cfi, self.config.fuzzy_threshold)
                full_text, position = self._flat_position(document, doc_range)
            finally:
                section.unload()
        except (CfiError, FileNotFoundError, ValueError) as e:
            logger.error(f"❌ Could not read text around '{sanitize_log_data(cfi)}': {e}")
            return None

        if doc_range.approximate:
            logger.warning(f"⚠️ '{sanitize_log_data(cfi)}' resolved approximately")

        snippet = full_text[max(0, position - context):min(len(full_text), position + context)]
        logger.debug(f"Snippet extracted: {sanitize_log_data(snippet)}")
        return snippet

    def _flat_position(self, document, doc_range: dom.DocumentRange) -> Tuple[str, int]:
        """Body text of the section and the character position of the range start within it."""
        body = dom.body_of(document)
        parts = []
        position = None
        container = doc_range.start_container

        for node in dom.iter_text_nodes(body):
            if position is None and node is container:
                position = sum(len(p) for p in parts) + doc_range.start_offset
            parts.append(str(node))

        full_text = "".join(parts)
        if position is None:
            # element container: everything before its first text node
            first = next(dom.iter_text_nodes(container), None) if not dom.is_text(container) else None
            position = 0
            if first is not None:
                for node in dom.iter_text_nodes(body):
                    if node is first:
                        break
                    position += len(node)
            elif not dom.is_text(container):
                raise AddressNotFound("Resolved position has no text")
        return full_text, position

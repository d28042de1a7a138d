"""
Document-tree accessor over BeautifulSoup trees.

Everything the address engine needs to know about a parsed section lives
here: node kinds, same-kind children, ignorable nodes, text runs and
ranges. bs4 nodes compare by value (two identical strings are "equal"),
so every lookup in this module goes by identity.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

logger = logging.getLogger(__name__)

ELEMENT = "element"
TEXT = "text"


def parse_document(markup, parser: str = "html.parser") -> BeautifulSoup:
    if isinstance(markup, bytes):
        markup = markup.decode("utf-8", errors="replace")
    return BeautifulSoup(markup, parser)


def is_text(node) -> bool:
    # Comments, CDATA, doctypes and processing instructions are not text
    return isinstance(node, NavigableString) and not isinstance(node, PreformattedString)


def is_element(node) -> bool:
    return isinstance(node, Tag) and not isinstance(node, BeautifulSoup)


def node_kind(node) -> Optional[str]:
    if is_text(node):
        return TEXT
    if is_element(node):
        return ELEMENT
    return None


def has_class(node, class_name: Optional[str]) -> bool:
    if not class_name or not is_element(node):
        return False
    classes = node.get("class") or []
    if isinstance(classes, str):
        classes = classes.split()
    return class_name in classes


def is_root_boundary(node) -> bool:
    """True for the document node itself (the parent of <html>)."""
    return node is None or isinstance(node, BeautifulSoup)


def document_element(soup: BeautifulSoup) -> Optional[Tag]:
    for child in soup.contents:
        if is_element(child):
            return child
    return None


def body_of(soup: BeautifulSoup) -> Optional[Tag]:
    return soup.find("body") or document_element(soup)


def root_of(node):
    while node.parent is not None:
        node = node.parent
    return node


def find_by_id(soup, element_id: str) -> Optional[Tag]:
    if not element_id:
        return None
    return soup.find(id=element_id)


def index_of_node(nodes, node) -> int:
    for i, candidate in enumerate(nodes):
        if candidate is node:
            return i
    return -1


def child_nodes(node) -> list:
    if isinstance(node, Tag):
        return list(node.contents)
    return []


def element_children(node) -> List[Tag]:
    return [child for child in child_nodes(node) if is_element(child)]


def text_children(node, ignore_class: Optional[str] = None) -> list:
    """Text children of `node`; ignorable elements stand in for text when an ignore class is given."""
    return [
        child for child in child_nodes(node)
        if is_text(child) or has_class(child, ignore_class)
    ]


def text_content(node) -> str:
    if is_text(node):
        return str(node)
    if isinstance(node, Tag):
        return node.get_text()
    return ""


def text_length(node) -> int:
    return len(text_content(node))


def normalized_map(children: list, kind: str, ignore_class: Optional[str]) -> Dict[int, int]:
    """
    Map child positions to logical indices of the requested kind.

    Ignorable elements count as text, and runs of adjacent text share one
    index. Positions of the other kind are absent from the result.
    """
    output = {}
    prev_index = -1
    prev_kind = None

    for i, child in enumerate(children):
        curr_kind = node_kind(child)
        if curr_kind == ELEMENT and has_class(child, ignore_class):
            curr_kind = TEXT

        if i > 0 and curr_kind == TEXT and prev_kind == TEXT:
            output[i] = prev_index
        elif curr_kind == kind:
            prev_index += 1
            output[i] = prev_index

        prev_kind = curr_kind

    return output


def normalized_text_runs(parent, ignore_class: Optional[str]) -> List[list]:
    """Group `parent`'s children into the merged text runs addressed by text steps."""
    children = child_nodes(parent)
    runs: List[list] = []
    for position, index in normalized_map(children, TEXT, ignore_class).items():
        while len(runs) <= index:
            runs.append([])
        runs[index].append(children[position])
    return runs


def filtered_element_children(parent, ignore_class: Optional[str]) -> List[Tag]:
    return [child for child in element_children(parent) if not has_class(child, ignore_class)]


def iter_text_nodes(root) -> Iterator[NavigableString]:
    if is_text(root):
        yield root
        return
    for node in root.descendants:
        if is_text(node):
            yield node


class TextWalker:
    """
    Generator over the text nodes below `root` in document order.

    Call stop() from the consuming loop to end the walk early.
    """

    def __init__(self, root, skip_whitespace: bool = True):
        self.root = root
        self.skip_whitespace = skip_whitespace
        self._stopped = False

    def stop(self):
        self._stopped = True

    @property
    def stopped(self) -> bool:
        return self._stopped

    def __iter__(self):
        for node in iter_text_nodes(self.root):
            if self._stopped:
                return
            if self.skip_whitespace and not node.strip():
                continue
            yield node


def _last_descendant(node):
    last = node
    while isinstance(last, Tag) and last.contents:
        last = last.contents[-1]
    return last


def _first_text_from(node, include_self: bool):
    if include_self and is_text(node):
        return node
    for candidate in node.next_elements:
        if is_text(candidate):
            return candidate
    return None


@dataclass
class DocumentRange:
    """
    A span inside a parsed section, DOM Range style.

    Containers are text nodes (offset counts characters) or elements
    (offset counts child nodes). `approximate` is set when the position
    had to be repaired or failed its text assertion.
    """
    start_container: object
    start_offset: int = 0
    end_container: object = None
    end_offset: Optional[int] = None
    approximate: bool = False

    def __post_init__(self):
        if self.end_container is None:
            self.end_container = self.start_container
            self.end_offset = self.start_offset
        elif self.end_offset is None:
            self.end_offset = 0

    @property
    def collapsed(self) -> bool:
        return self.start_container is self.end_container and self.start_offset == self.end_offset

    def collapse(self, to_start: bool = False) -> "DocumentRange":
        if to_start:
            return DocumentRange(self.start_container, self.start_offset, approximate=self.approximate)
        return DocumentRange(self.end_container, self.end_offset, approximate=self.approximate)

    def _flat_point(self, container, offset, text_nodes) -> Tuple[int, int]:
        if is_text(container):
            return index_of_node(text_nodes, container), offset

        if offset < len(container.contents):
            first = _first_text_from(container.contents[offset], include_self=True)
        else:
            first = _first_text_from(_last_descendant(container), include_self=False)

        if first is None:
            return len(text_nodes), 0
        return index_of_node(text_nodes, first), 0

    def text(self) -> str:
        """Text covered by the range."""
        if self.start_container is self.end_container and is_text(self.start_container):
            return str(self.start_container)[self.start_offset:self.end_offset]

        text_nodes = list(iter_text_nodes(root_of(self.start_container)))
        start_index, start_offset = self._flat_point(self.start_container, self.start_offset, text_nodes)
        end_index, end_offset = self._flat_point(self.end_container, self.end_offset, text_nodes)
        if start_index < 0 or end_index < 0:
            return ""

        parts = []
        for i in range(start_index, min(end_index + 1, len(text_nodes))):
            value = str(text_nodes[i])
            lo = start_offset if i == start_index else 0
            hi = end_offset if i == end_index else len(value)
            parts.append(value[lo:hi])
        return "".join(parts)

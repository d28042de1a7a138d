"""
Build addresses from positions in a parsed section.

The base segment (which spine item the address belongs to) is supplied by
the caller, usually a Section's cfi_base. Steps are emitted for every
ancestor up to, but not including, the document node, so <html> itself
never appears and <body> is normally the first step (/4).
"""
import logging
from typing import Optional, Union

from epubnav.cfi import dom
from epubnav.cfi.epubcfi import (
    CFIComponent,
    CFIStep,
    CFITerminal,
    EpubCFI,
    StepType,
    compare,
    parse_component,
)
from epubnav.cfi.errors import RangeConstructionError

logger = logging.getLogger(__name__)


def _base_component(base: Union[str, CFIComponent]) -> CFIComponent:
    if isinstance(base, CFIComponent):
        return base
    return parse_component(base)


def needs_ignoring(node, ignore_class: Optional[str]) -> bool:
    """Only bother with ignore-class filtering when the document has such nodes."""
    if not ignore_class:
        return False
    return dom.root_of(node).find(class_=ignore_class) is not None


def position(node) -> int:
    parent = node.parent
    if dom.is_element(node):
        return dom.index_of_node(dom.element_children(parent), node)
    return dom.index_of_node(dom.text_children(parent), node)


def step_for(node) -> CFIStep:
    if dom.is_text(node):
        return CFIStep(StepType.TEXT, position(node))
    return CFIStep(StepType.ELEMENT, position(node), node.get("id") or None)


def ignorable_ancestor(node, ignore_class: Optional[str]):
    """Outermost element carrying `ignore_class` among `node` and its ancestors, or None."""
    outer = None
    current = node
    while current is not None and not dom.is_root_boundary(current):
        if dom.has_class(current, ignore_class):
            outer = current
        current = current.parent
    return outer


def filter_node(anchor, ignore_class: str):
    """
    Swap a node for the one that should be addressed instead.

    Everything inside an ignorable element belongs to the text run that
    element sits in, so the outermost ignorable ancestor stands in for it.
    """
    outer = ignorable_ancestor(anchor, ignore_class)
    return anchor if outer is None else outer


def _as_text(node, ignore_class: str) -> bool:
    return dom.is_text(node) or dom.has_class(node, ignore_class)


def filtered_position(anchor, ignore_class: str) -> Optional[int]:
    if _as_text(anchor, ignore_class):
        children = dom.child_nodes(anchor.parent)
        mapping = dom.normalized_map(children, dom.TEXT, ignore_class)
    else:
        children = dom.element_children(anchor.parent)
        mapping = dom.normalized_map(children, dom.ELEMENT, ignore_class)

    return mapping.get(dom.index_of_node(children, anchor))


def filtered_step(node, ignore_class: str) -> Optional[CFIStep]:
    filtered = filter_node(node, ignore_class)
    index = filtered_position(filtered, ignore_class)
    if index is None:
        return None

    if _as_text(filtered, ignore_class):
        return CFIStep(StepType.TEXT, index)
    return CFIStep(StepType.ELEMENT, index, filtered.get("id") or None)


def path_to(node, offset: Optional[int] = None, ignore_class: Optional[str] = None) -> CFIComponent:
    steps = []
    current = node

    if ignore_class:
        outer = ignorable_ancestor(node, ignore_class)
        if outer is not None:
            # text in injected markup is addressed through the surrounding run,
            # injected elements through the element holding them
            if dom.is_text(node):
                step = filtered_step(node, ignore_class)
                if step is not None:
                    steps.append(step)
            current = outer.parent

    while current is not None and not dom.is_root_boundary(current.parent):
        step = filtered_step(current, ignore_class) if ignore_class else step_for(current)
        if step is not None:
            steps.insert(0, step)
        current = current.parent

    terminal = CFITerminal()
    if offset is not None and offset >= 0:
        terminal = CFITerminal(offset=offset)
        # an offset only makes sense inside a text node
        if not steps or steps[-1].type != StepType.TEXT:
            steps.append(CFIStep(StepType.TEXT, 0))

    return CFIComponent(tuple(steps), terminal)


def patch_offset(anchor, offset: int, ignore_class: str) -> int:
    """
    Re-express `offset` relative to the merged text run `anchor` belongs to.

    Text of the enclosing ignorable element before `anchor`, then lengths
    of preceding text siblings and ignorable elements are added until a
    regular element (or a comment) is reached.
    """
    if not dom.is_text(anchor):
        raise ValueError("Anchor must be a text node")

    current = anchor
    total = offset

    outer = ignorable_ancestor(anchor, ignore_class)
    if outer is not None:
        for text_node in dom.iter_text_nodes(outer):
            if text_node is anchor:
                break
            total += len(text_node)
        current = outer

    while current.previous_sibling is not None:
        previous = current.previous_sibling
        if dom.is_element(previous):
            if not dom.has_class(previous, ignore_class):
                break
            total += dom.text_length(previous)
        elif dom.is_text(previous):
            total += len(previous)
        else:
            break
        current = previous

    return total


def equal_step(step_a: Optional[CFIStep], step_b: Optional[CFIStep]) -> bool:
    if step_a is None or step_b is None:
        return False
    return step_a.index == step_b.index and step_a.id == step_b.id and step_a.type == step_b.type


def cfi_from_node(node, base: Union[str, CFIComponent], ignore_class: Optional[str] = None) -> EpubCFI:
    """Address of a node itself (no character offset)."""
    ignore = ignore_class if needs_ignoring(node, ignore_class) else None
    return EpubCFI(base=_base_component(base), path=path_to(node, None, ignore))


def cfi_from_range(doc_range: dom.DocumentRange, base: Union[str, CFIComponent],
                   ignore_class: Optional[str] = None) -> EpubCFI:
    """
    Address of a DocumentRange.

    A collapsed range (or one whose ends produce identical paths) gives a
    point address. Raises RangeConstructionError when the end sorts before
    the start.
    """
    base_component = _base_component(base)
    start, end = doc_range.start_container, doc_range.end_container
    start_offset, end_offset = doc_range.start_offset, doc_range.end_offset

    ignore = ignore_class if needs_ignoring(start, ignore_class) else None
    if ignore and dom.is_text(start):
        start_offset = patch_offset(start, start_offset, ignore)

    if doc_range.collapsed:
        return EpubCFI(base=base_component, path=path_to(start, start_offset, ignore))

    if ignore and dom.is_text(end):
        end_offset = patch_offset(end, end_offset, ignore)

    start_path = path_to(start, start_offset, ignore)
    end_path = path_to(end, end_offset, ignore)

    shared = []
    is_range = True
    length = len(start_path.steps)
    for i in range(length):
        if not equal_step(start_path.steps[i], end_path.steps[i] if i < len(end_path.steps) else None):
            break
        if i == length - 1:
            if start_path.terminal == end_path.terminal and len(end_path.steps) == length:
                shared.append(start_path.steps[i])
                is_range = False
        else:
            shared.append(start_path.steps[i])

    if not is_range:
        return EpubCFI(base=base_component, path=CFIComponent(tuple(shared), start_path.terminal))

    if compare(EpubCFI(base=base_component, path=start_path), EpubCFI(base=base_component, path=end_path)) > 0:
        raise RangeConstructionError("Range end sorts before its start")

    return EpubCFI(
        base=base_component,
        path=CFIComponent(tuple(shared)),
        is_range=True,
        start=CFIComponent(start_path.steps[len(shared):], start_path.terminal),
        end=CFIComponent(end_path.steps[len(shared):], end_path.terminal),
    )

"""
Resolve addresses back into positions of a parsed section.

Resolution walks the steps from the document element. When the live
document no longer matches the address (a step index is out of range or
an offset runs past its text node) the position is repaired against the
deepest ancestor that still resolves, and the result is flagged
approximate. Only an address whose very first step fails is reported as
AddressNotFound.
"""
import logging
from typing import Optional, Sequence, Tuple, Union

from rapidfuzz import fuzz

from epubnav.cfi import dom
from epubnav.cfi.epubcfi import CFIStep, CFITerminal, EpubCFI, StepType, coerce
from epubnav.cfi.errors import AddressNotFound
from epubnav.utils.logging_utils import sanitize_log_data

logger = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 80


def _effective_ignore_class(soup, ignore_class: Optional[str]) -> Optional[str]:
    if ignore_class and soup.find(class_=ignore_class) is not None:
        return ignore_class
    return None


def _run_text_nodes(run: list) -> list:
    nodes = []
    for member in run:
        nodes.extend(dom.iter_text_nodes(member))
    return nodes


def _walk(steps: Sequence[CFIStep], soup, ignore_class: Optional[str] = None):
    """Follow as many steps as possible. Returns (deepest node reached, steps resolved)."""
    container = dom.document_element(soup)
    if container is None:
        return None, 0

    depth = 0
    for step in steps:
        if not dom.is_element(container):
            break

        found = None
        if step.type == StepType.ELEMENT:
            # ids survive re-pagination and markup injection better than indices
            if step.id:
                found = dom.find_by_id(soup, step.id)
            if found is None:
                if ignore_class:
                    children = dom.filtered_element_children(container, ignore_class)
                else:
                    children = dom.element_children(container)
                found = children[step.index] if step.index < len(children) else None
        elif ignore_class:
            runs = dom.normalized_text_runs(container, ignore_class)
            if step.index < len(runs):
                texts = _run_text_nodes(runs[step.index])
                found = texts[0] if texts else None
        else:
            texts = dom.text_children(container)
            found = texts[step.index] if step.index < len(texts) else None

        if found is None:
            break
        container = found
        depth += 1

    return container, depth


def find_node(steps: Sequence[CFIStep], soup, ignore_class: Optional[str] = None):
    """The node addressed by `steps`, or None if any step fails."""
    node, depth = _walk(steps, soup, _effective_ignore_class(soup, ignore_class))
    if depth < len(steps):
        return None
    return node


def _distribute(candidates: list, offset: int):
    """Walk `offset` characters through `candidates`. Returns (node, offset, overflowed)."""
    remaining = offset
    for node in candidates:
        length = len(node)
        if remaining <= length:
            return node, remaining, False
        remaining -= length
    if candidates:
        return candidates[-1], len(candidates[-1]), True
    return None, 0, True


def fix_miss(steps: Sequence[CFIStep], offset: Optional[int], soup,
             ignore_class: Optional[str] = None) -> Tuple[object, int]:
    """
    Best-effort position for an address that no longer resolves exactly.

    The offset is spent over the text of the deepest resolvable ancestor
    (or over the addressed text run, when that still exists) in document
    order. Past the end, the position is clamped to the last character.
    """
    ancestor, depth = _walk(steps[:-1], soup, ignore_class)
    if ancestor is None:
        raise AddressNotFound("Document has no root element")

    candidates = None
    last = steps[-1] if steps else None
    if last is not None and last.type == StepType.TEXT and depth == len(steps) - 1:
        runs = dom.normalized_text_runs(ancestor, ignore_class)
        if last.index < len(runs):
            candidates = _run_text_nodes(runs[last.index])
    if candidates is None:
        candidates = list(dom.iter_text_nodes(ancestor))

    node, new_offset, _ = _distribute(candidates, offset or 0)
    if node is None:
        return ancestor, 0
    return node, new_offset


def resolve_position(steps: Sequence[CFIStep], terminal: CFITerminal, soup,
                     ignore_class: Optional[str] = None) -> Tuple[object, int, bool]:
    """Resolve one end of an address to (container, offset, approximate)."""
    ignore = _effective_ignore_class(soup, ignore_class)
    node, depth = _walk(steps, soup, ignore)

    if node is None or (steps and depth == 0):
        raise AddressNotFound("No step of the address resolves")

    offset = terminal.offset
    if depth == len(steps):
        if offset is None:
            return node, 0, False

        if dom.is_text(node):
            if offset <= len(node):
                return node, offset, False
            if ignore and steps[-1].type == StepType.TEXT:
                # offsets inside a merged run count from the start of the run
                parent, _ = _walk(steps[:-1], soup, ignore)
                runs = dom.normalized_text_runs(parent, ignore)
                run = runs[steps[-1].index] if steps[-1].index < len(runs) else []
                target, new_offset, overflowed = _distribute(_run_text_nodes(run), offset)
                if target is not None and not overflowed:
                    return target, new_offset, False
        elif offset <= len(node.contents):
            return node, offset, False

    container, new_offset = fix_miss(steps, offset, soup, ignore)
    logger.debug(f"Repaired address position at step {depth}/{len(steps)}, offset {offset} -> {new_offset}")
    return container, new_offset, True


def verify_assertion(doc_range: dom.DocumentRange, assertion: str,
                     threshold: int = DEFAULT_FUZZY_THRESHOLD) -> bool:
    """Fuzzy-check a terminal text assertion against the text around the resolved start."""
    needle = " ".join(part for part in assertion.replace("^", "").split(",") if part).strip()
    if not needle:
        return True

    container = doc_range.start_container
    haystack = dom.text_content(container.parent if dom.is_text(container) else container)
    score = fuzz.partial_ratio(needle, haystack)
    if score < threshold:
        logger.warning(f"⚠️ Text assertion '{sanitize_log_data(needle)}' matched only {score:.0f}% (threshold {threshold})")
        return False
    return True


def to_range(cfi: Union[str, EpubCFI], soup, ignore_class: Optional[str] = None,
             fuzzy_threshold: int = DEFAULT_FUZZY_THRESHOLD) -> dom.DocumentRange:
    """
    Resolve an address against a parsed section.

    Point addresses give a collapsed range. Raises AddressNotFound when
    nothing resolves; otherwise the range may come back approximate.
    """
    cfi = coerce(cfi)

    try:
        start, start_offset, start_fixed = resolve_position(cfi.start_steps, cfi.start_terminal, soup, ignore_class)
    except AddressNotFound as e:
        raise AddressNotFound(e.message, str(cfi)) from e

    if cfi.is_range:
        try:
            end, end_offset, end_fixed = resolve_position(cfi.end_steps, cfi.end_terminal, soup, ignore_class)
        except AddressNotFound:
            logger.warning(f"⚠️ Range end of '{sanitize_log_data(cfi)}' does not resolve, collapsing to start")
            end, end_offset, end_fixed = start, start_offset, True
        doc_range = dom.DocumentRange(start, start_offset, end, end_offset, approximate=start_fixed or end_fixed)
    else:
        doc_range = dom.DocumentRange(start, start_offset, approximate=start_fixed)

    assertion = cfi.start_terminal.assertion
    if assertion and not verify_assertion(doc_range, assertion, fuzzy_threshold):
        doc_range.approximate = True

    return doc_range


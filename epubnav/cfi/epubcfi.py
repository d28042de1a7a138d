"""
EPUB Canonical Fragment Identifiers.

Parsing, serialization and ordering of epubcfi(...) strings:

- Character offset: epubcfi(/6/4[chap01ref]!/4[body01]/10[para05]/2/1:3)
- Simple range:     epubcfi(/6/4[chap01ref]!/4[body01]/10[para05],/2/1:1,/3:4)

Temporal (~) and spatial (@) offsets are not supported.

Step numbers use the usual encoding: element child i -> (i + 1) * 2 (even),
text child i -> i * 2 + 1 (odd). Building addresses from a parsed document
lives in builder.py, resolving them back in resolver.py.
"""
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cmp_to_key, lru_cache
from typing import List, Optional, Sequence, Tuple, Union

from epubnav.cfi.errors import InvalidAddressFormat

logger = logging.getLogger(__name__)

CFI_PREFIX = "epubcfi("
CFI_SUFFIX = ")"

_STEP_RE = re.compile(r"^(\d+)(?:\[(.*)\])?$", re.DOTALL)
_TERMINAL_RE = re.compile(r"^(\d+)(?:\[(.*)\])?$", re.DOTALL)


class StepType(str, Enum):
    ELEMENT = "element"
    TEXT = "text"


@dataclass(frozen=True)
class CFIStep:
    type: StepType
    index: int
    id: Optional[str] = None

    def __post_init__(self):
        if self.index < 0:
            raise InvalidAddressFormat(f"Step index must be >= 0, got {self.index}")

    def encode(self) -> int:
        if self.type == StepType.ELEMENT:
            return (self.index + 1) * 2
        return self.index * 2 + 1


@dataclass(frozen=True)
class CFITerminal:
    offset: Optional[int] = None
    assertion: Optional[str] = None


@dataclass(frozen=True)
class CFIComponent:
    steps: Tuple[CFIStep, ...] = ()
    terminal: CFITerminal = field(default_factory=CFITerminal)

    def __post_init__(self):
        if not isinstance(self.steps, tuple):
            object.__setattr__(self, "steps", tuple(self.steps))


@dataclass(frozen=True)
class EpubCFI:
    """
    Structured address.

    For ranges `path` holds the steps shared by both ends and `start`/`end`
    hold what each end adds after that prefix.
    """
    base: CFIComponent
    path: CFIComponent
    is_range: bool = False
    start: Optional[CFIComponent] = None
    end: Optional[CFIComponent] = None
    spine_pos: Optional[int] = None

    def __post_init__(self):
        if self.is_range and (self.start is None or self.end is None):
            raise InvalidAddressFormat("Range address needs both start and end")
        if not self.is_range and (self.start is not None or self.end is not None):
            raise InvalidAddressFormat("Non-range address cannot carry start/end")
        if self.is_range and self.start == self.end:
            raise InvalidAddressFormat("Range start and end are the same position")
        if self.spine_pos is None:
            pos = self.base.steps[1].index if len(self.base.steps) > 1 else -1
            object.__setattr__(self, "spine_pos", pos)

    @classmethod
    def from_string(cls, cfi_str: str) -> "EpubCFI":
        return parse(cfi_str)

    def __str__(self) -> str:
        return to_string(self)

    @property
    def start_steps(self) -> Tuple[CFIStep, ...]:
        """Full step list of the (start) position, prefix included."""
        if self.is_range:
            return self.path.steps + self.start.steps
        return self.path.steps

    @property
    def end_steps(self) -> Tuple[CFIStep, ...]:
        if self.is_range:
            return self.path.steps + self.end.steps
        return self.path.steps

    @property
    def start_terminal(self) -> CFITerminal:
        return self.start.terminal if self.is_range else self.path.terminal

    @property
    def end_terminal(self) -> CFITerminal:
        return self.end.terminal if self.is_range else self.path.terminal

    def collapse(self, to_start: bool = False) -> "EpubCFI":
        """Return the single position at one end of a range (end by default)."""
        if not self.is_range:
            return self
        if to_start:
            path = CFIComponent(self.start_steps, self.start.terminal)
        else:
            path = CFIComponent(self.end_steps, self.end.terminal)
        return replace(self, path=path, is_range=False, start=None, end=None)


# =========================================================================
# PARSING
# =========================================================================

def is_cfi_string(value) -> bool:
    """Check if a value is a string wrapped with epubcfi(...)."""
    return isinstance(value, str) and value.startswith(CFI_PREFIX) and value.endswith(CFI_SUFFIX)


def _split_outside_brackets(text: str, sep: str) -> List[str]:
    """Split on `sep`, ignoring separators inside [...] and ^-escaped characters."""
    parts = []
    current = []
    depth = 0
    escaped = False
    for ch in text:
        if escaped:
            current.append(ch)
            escaped = False
            continue
        if ch == "^":
            current.append(ch)
            escaped = True
            continue
        if ch == "[":
            depth += 1
        elif ch == "]" and depth:
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    if depth:
        raise InvalidAddressFormat("Unbalanced brackets", text)
    parts.append("".join(current))
    return parts


def parse_step(step_str: str) -> CFIStep:
    match = _STEP_RE.match(step_str)
    if not match:
        raise InvalidAddressFormat("Unparseable step", step_str)

    num = int(match.group(1))
    if num == 0:
        raise InvalidAddressFormat("Step number must be positive", step_str)

    if num % 2 == 0:
        step_type, index = StepType.ELEMENT, num // 2 - 1
    else:
        step_type, index = StepType.TEXT, (num - 1) // 2

    return CFIStep(type=step_type, index=index, id=match.group(2) or None)


def parse_terminal(terminal_str: str) -> CFITerminal:
    if "~" in terminal_str or "@" in terminal_str:
        raise InvalidAddressFormat("Temporal and spatial offsets are not supported", terminal_str)

    match = _TERMINAL_RE.match(terminal_str)
    if not match:
        raise InvalidAddressFormat("Unparseable character offset", terminal_str)

    return CFITerminal(offset=int(match.group(1)), assertion=match.group(2) or None)


def parse_component(component_str: str, allow_empty: bool = False) -> CFIComponent:
    """
    Parse one "/4/2/1:3" segment.

    `allow_empty` admits a segment made only of a terminal (":3"), which is
    how range ends that share every step with the prefix are written.
    """
    parts = _split_outside_brackets(component_str, ":")
    if len(parts) > 2:
        raise InvalidAddressFormat("More than one terminal in component", component_str)

    terminal = parse_terminal(parts[1]) if len(parts) == 2 else CFITerminal()
    step_part = parts[0]

    if not step_part:
        if allow_empty and terminal.offset is not None:
            return CFIComponent((), terminal)
        raise InvalidAddressFormat("Component has no steps", component_str)

    if not step_part.startswith("/"):
        raise InvalidAddressFormat("Component must start with '/'", component_str)

    tokens = _split_outside_brackets(step_part, "/")[1:]
    steps = tuple(parse_step(token) for token in tokens)
    return CFIComponent(steps, terminal)


def parse(cfi_str: str) -> EpubCFI:
    """Parse an epubcfi(...) string into an EpubCFI."""
    if not is_cfi_string(cfi_str):
        raise InvalidAddressFormat("Missing epubcfi(...) wrapper", cfi_str)

    inner = cfi_str[len(CFI_PREFIX):-len(CFI_SUFFIX)]
    indirection = _split_outside_brackets(inner, "!")
    if len(indirection) != 2:
        raise InvalidAddressFormat("Expected exactly one '!' indirection", cfi_str)

    base_str, rest = indirection
    base = parse_component(base_str)
    if len(base.steps) < 2:
        raise InvalidAddressFormat("Base has no spine step", cfi_str)

    segments = _split_outside_brackets(rest, ",")
    if len(segments) == 1:
        path = parse_component(segments[0])
        return EpubCFI(base=base, path=path)

    if len(segments) != 3:
        raise InvalidAddressFormat("Range must have exactly three segments", cfi_str)

    path = parse_component(segments[0], allow_empty=True) if segments[0] else CFIComponent()
    start = parse_component(segments[1], allow_empty=True)
    end = parse_component(segments[2], allow_empty=True)
    if start == end:
        # both ends at one position: that position, as a point address
        point = CFIComponent(path.steps + start.steps, start.terminal)
        if not point.steps:
            raise InvalidAddressFormat("Range has no steps", cfi_str)
        return EpubCFI(base=base, path=point)
    return EpubCFI(base=base, path=path, is_range=True, start=start, end=end)


@lru_cache(maxsize=4096)
def _parse_cached(cfi_str: str) -> EpubCFI:
    return parse(cfi_str)


def coerce(cfi: Union[str, EpubCFI]) -> EpubCFI:
    """Accept either form; strings are parsed through a small cache."""
    if isinstance(cfi, EpubCFI):
        return cfi
    return _parse_cached(cfi)


# =========================================================================
# SERIALIZATION
# =========================================================================

def join_steps(steps: Sequence[CFIStep]) -> str:
    segments = []
    for step in steps:
        segment = str(step.encode())
        if step.id:
            segment += f"[{step.id}]"
        segments.append(segment)
    return "/".join(segments)


def segment_string(component: CFIComponent) -> str:
    out = "/" + join_steps(component.steps) if component.steps else ""
    terminal = component.terminal
    if terminal.offset is not None:
        out += f":{terminal.offset}"
        if terminal.assertion is not None:
            out += f"[{terminal.assertion}]"
    return out


def to_string(cfi: EpubCFI) -> str:
    if not cfi.is_range and not cfi.path.steps:
        raise InvalidAddressFormat("Refusing to serialize an address with an empty path")

    out = CFI_PREFIX + segment_string(cfi.base) + "!" + segment_string(cfi.path)
    if cfi.is_range:
        out += "," + segment_string(cfi.start) + "," + segment_string(cfi.end)
    return out + CFI_SUFFIX


def generate_chapter_component(spine_node_index: int, pos: int, id: Optional[str] = None) -> str:
    """Base segment for a spine item, e.g. /6/4[chap01ref]."""
    out = f"/{(spine_node_index + 1) * 2}/{(pos + 1) * 2}"
    if id:
        out += f"[{id}]"
    return out


def steps_to_xpath(steps: Sequence[CFIStep]) -> str:
    xpath = [".", "*"]
    for step in steps:
        position = step.index + 1
        if step.id:
            xpath.append(f"*[position()={position} and @id='{step.id}']")
        elif step.type == StepType.TEXT:
            xpath.append(f"text()[{position}]")
        else:
            xpath.append(f"*[{position}]")
    return "/".join(xpath)


def steps_to_query_selector(steps: Sequence[CFIStep]) -> str:
    query = ["html"]
    for step in steps:
        if step.id:
            query.append(f"#{step.id}")
        elif step.type == StepType.TEXT:
            # text nodes cannot be selected with CSS
            continue
        else:
            query.append(f"*:nth-child({step.index + 1})")
    return ">".join(query)


# =========================================================================
# ORDERING
# =========================================================================

def compare(cfi_one: Union[str, EpubCFI], cfi_two: Union[str, EpubCFI]) -> int:
    """
    Document order of two addresses: -1 if the first is earlier, 1 if later, 0 if equal.
    Ranges are ordered by their start. Ids are ignored.
    """
    first = coerce(cfi_one)
    second = coerce(cfi_two)

    if first.spine_pos != second.spine_pos:
        return 1 if first.spine_pos > second.spine_pos else -1

    steps_a, terminal_a = first.start_steps, first.start_terminal
    steps_b, terminal_b = second.start_steps, second.start_terminal

    for step_a, step_b in zip(steps_a, steps_b):
        if step_a.index != step_b.index:
            return 1 if step_a.index > step_b.index else -1

    # Equal so far: the less specific address comes first
    if len(steps_a) != len(steps_b):
        return -1 if len(steps_a) < len(steps_b) else 1

    offset_a = terminal_a.offset or 0
    offset_b = terminal_b.offset or 0
    if offset_a != offset_b:
        return 1 if offset_a > offset_b else -1

    return 0


cmp_key = cmp_to_key(compare)

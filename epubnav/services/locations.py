"""
Location index for a whole publication.

The text of every linear section is cut into chunks of `break_size`
characters; each chunk is stored as a range address, in reading order.
The resulting list is what percentage based navigation and "location N
of M" displays are built on. Generation runs section by section on a
TaskQueue so it can share the event loop with other work.
"""
import json
import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from epubnav.cfi import builder, dom, resolver
from epubnav.cfi.epubcfi import EpubCFI, coerce, compare
from epubnav.services.section import Section, Spine
from epubnav.utils.sorted_search import floor_index
from epubnav.utils.task_queue import TaskQueue

logger = logging.getLogger(__name__)

DEFAULT_BREAK = 150
DEFAULT_PAUSE_MS = 100


@dataclass
class LocationItem:
    """A word based location: the address of the node a chunk closed in."""
    cfi: str
    word_count: int


class Locations:
    def __init__(self, spine: Spine, pause_ms: int = DEFAULT_PAUSE_MS, break_size: int = DEFAULT_BREAK):
        self.spine = spine
        self.pause_ms = pause_ms
        self.q = TaskQueue(tick=pause_ms / 1000.0)

        self._locations: List[str] = []
        self._locations_words: List[LocationItem] = []
        self.total = 0
        self.break_size = break_size

        self._current = 0
        self._word_counter = 0
        self._current_cfi = ""
        self._listeners: List[Callable[[dict], None]] = []

        # bumped by every generate/generate_from_words/destroy call
        self._run = 0

    def _start_run(self) -> int:
        """Drop work queued by an earlier run and hand out a new run number."""
        self.q.stop()
        self._run += 1
        return self._run

    def _is_stale(self, run: Optional[int]) -> bool:
        return run is not None and run != self._run

    # =====================================================================
    # Character based generation
    # =====================================================================

    async def generate(self, chars: Optional[int] = None) -> List[str]:
        """
        Walk every linear section and build the location list.

        Starting a new generation (or destroy()) abandons one in progress;
        the abandoned call returns the partial list it had built.
        """
        if chars:
            self.break_size = chars

        run = self._start_run()
        self._locations = locations = []
        self.q.pause()
        for section in self.spine.each(linear_only=True):
            self.q.enqueue(self.process, section, run)

        await self.q.run()

        if self._is_stale(run):
            logger.info(f"Location generation superseded after {len(locations)} locations")
            return locations

        self.total = len(self._locations) - 1
        if self._current_cfi:
            self._current = self.location_from_cfi(self._current_cfi)

        logger.info(f"✅ Generated {len(self._locations)} locations (break={self.break_size})")
        return self._locations

    async def process(self, section: Section, run: Optional[int] = None) -> List[str]:
        """Chunk one section. A section that fails to load is logged and skipped."""
        try:
            document = await section.load()
            if self._is_stale(run):
                return []
            locations = self.parse(section, document)
        except Exception as e:
            logger.error(f"❌ Skipping section '{section.href}' while generating locations: {e}")
            return []
        finally:
            section.unload()

        self._locations.extend(locations)
        return locations

    def parse(self, section: Section, document, chars: Optional[int] = None) -> List[str]:
        """
        Chunk addresses for one parsed section.

        A chunk opens at the first character it covers and closes exactly
        `chars` characters later, so consecutive chunks share a boundary.
        A partial chunk left at the end of the section closes at the end of
        the last text node. Whitespace-only text nodes are not counted.
        """
        chars = chars or self.break_size
        body = dom.body_of(document)
        if body is None:
            return []

        locations = []
        counter = 0
        start = None
        last_node = None

        for node in dom.TextWalker(body):
            length = len(node)
            last_node = node
            pos = 0

            while pos < length:
                dist = chars - counter
                if start is None:
                    start = (node, pos)

                if pos + dist <= length:
                    doc_range = dom.DocumentRange(start[0], start[1], node, pos + dist)
                    locations.append(section.cfi_from_range(doc_range))
                    start = None
                    counter = 0
                    pos += dist
                else:
                    counter += length - pos
                    pos = length

        if start is not None and last_node is not None:
            doc_range = dom.DocumentRange(start[0], start[1], last_node, len(last_node))
            locations.append(section.cfi_from_range(doc_range))

        return locations

    # =====================================================================
    # Word based generation
    # =====================================================================

    async def generate_from_words(self, start_cfi: Union[str, EpubCFI, None] = None,
                                  word_count: Optional[int] = None,
                                  count: Optional[int] = None) -> List[LocationItem]:
        """
        Mark every `word_count` words with the address of the node the
        count ran out in. Sections before `start_cfi` are skipped, and
        generation stops once `count` items exist.
        """
        if not word_count or word_count <= 0:
            raise ValueError("word_count must be a positive number")

        start = coerce(start_cfi) if start_cfi else None
        run = self._start_run()
        self.q.pause()
        self._locations_words = items = []
        self._word_counter = 0

        for section in self.spine.each(linear_only=True):
            if start is not None and section.index < start.spine_pos:
                continue
            self.q.enqueue(self.process_words, section, word_count, start, count, run)

        await self.q.run()

        if self._is_stale(run):
            return items

        if self._current_cfi:
            self._current = self.location_from_cfi(self._current_cfi)

        return self._locations_words

    async def process_words(self, section: Section, word_count: int,
                            start_cfi: Optional[EpubCFI] = None,
                            count: Optional[int] = None,
                            run: Optional[int] = None) -> List[LocationItem]:
        if count and len(self._locations_words) >= count:
            return []

        try:
            document = await section.load()
            if self._is_stale(run):
                return []
            locations = self.parse_words(section, document, word_count, start_cfi)
        except Exception as e:
            logger.error(f"❌ Skipping section '{section.href}' while counting words: {e}")
            return []
        finally:
            section.unload()

        if count:
            locations = locations[:max(count - len(self._locations_words), 0)]
        self._locations_words.extend(locations)
        return locations

    @staticmethod
    def count_words(text: str) -> int:
        return len(text.split())

    def _start_node(self, section: Section, document, start_cfi: Optional[EpubCFI]):
        if start_cfi is None or start_cfi.spine_pos != section.index:
            return None
        node = resolver.find_node(start_cfi.start_steps, document, section.ignore_class)
        if node is not None and not dom.is_text(node):
            node = next(dom.iter_text_nodes(node), node)
        return node

    def parse_words(self, section: Section, document, word_count: int,
                    start_cfi: Optional[EpubCFI] = None) -> List[LocationItem]:
        """
        Words are counted per text node; the counter carries over between
        nodes and sections. `word_count` on each item is the number of words
        carried into the node the chunk closed in.
        """
        body = dom.body_of(document)
        if body is None:
            return []

        locations = []
        start_node = self._start_node(section, document, start_cfi)
        found_start = start_node is None

        for node in dom.TextWalker(body):
            if not found_start:
                if node is not start_node:
                    continue
                found_start = True

            length = self.count_words(str(node))
            if length == 0:
                continue

            pos = 0
            while pos < length:
                dist = word_count - self._word_counter
                if pos + dist >= length:
                    self._word_counter += length - pos
                    pos = length
                else:
                    pos += dist
                    cfi = builder.cfi_from_node(node, section.cfi_base, section.ignore_class)
                    locations.append(LocationItem(str(cfi), self._word_counter))
                    self._word_counter = 0

        return locations

    # =====================================================================
    # Queries
    # =====================================================================

    def location_from_cfi(self, cfi: Union[str, EpubCFI]) -> int:
        """Index of the chunk containing `cfi` (the last chunk starting at or before it), -1 if none are built."""
        if not self._locations:
            return -1

        loc = floor_index(coerce(cfi), self._locations, compare)
        if loc < 0:
            return 0
        return min(loc, self.total)

    def percentage_from_cfi(self, cfi: Union[str, EpubCFI]) -> Optional[float]:
        if not self._locations:
            return None
        return self.percentage_from_location(self.location_from_cfi(cfi))

    def percentage_from_location(self, loc: int) -> float:
        if not loc or not self.total:
            return 0
        return loc / self.total

    def cfi_from_location(self, loc: Union[int, str]) -> Optional[str]:
        try:
            loc = int(loc)
        except (TypeError, ValueError):
            return None

        if 0 <= loc < len(self._locations):
            return self._locations[loc]
        return None

    def cfi_from_percentage(self, percentage: float) -> Optional[str]:
        if not self._locations:
            return None

        if percentage > 1:
            logger.warning(f"⚠️ Percentage {percentage} is above 1, using the end of the book")

        # 1 means the very end, not the start of the last chunk
        if percentage >= 1:
            return str(coerce(self._locations[self.total]).collapse())

        return self.cfi_from_location(math.ceil(self.total * percentage))

    def load(self, locations: Union[str, List[str]]) -> List[str]:
        """Restore a list produced by save() (JSON string or plain list)."""
        if isinstance(locations, str):
            locations = json.loads(locations)
        self._locations = list(locations)
        self.total = len(self._locations) - 1
        return self._locations

    def save(self) -> str:
        return json.dumps(self._locations)

    def length(self) -> int:
        return len(self._locations)

    def __len__(self):
        return len(self._locations)

    @property
    def locations(self) -> List[str]:
        return self._locations

    @property
    def locations_words(self) -> List[LocationItem]:
        return self._locations_words

    # =====================================================================
    # Current location
    # =====================================================================

    def on_changed(self, listener: Callable[[dict], None]) -> Callable[[], None]:
        """Register a listener for {"percentage": float} updates. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit_changed(self, payload: dict):
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"❌ Location listener failed: {e}")

    @property
    def current(self) -> int:
        return self._current

    def set_current(self, curr: Union[str, int]):
        if isinstance(curr, str):
            self._current_cfi = curr
        elif isinstance(curr, int):
            self._current = curr
        else:
            return

        if not self._locations:
            return

        if isinstance(curr, str):
            loc = self.location_from_cfi(curr)
            self._current = loc
        else:
            loc = curr

        self._emit_changed({"percentage": self.percentage_from_location(loc)})

    @property
    def current_location(self) -> str:
        return self._current_cfi

    @current_location.setter
    def current_location(self, curr: str):
        self.set_current(curr)

    def destroy(self):
        self._start_run()
        self._locations = []
        self._locations_words = []
        self._listeners = []
        self.total = 0
        self._current = 0
        self._current_cfi = ""

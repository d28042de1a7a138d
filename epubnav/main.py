"""
epubnav - command line

Usage:
  python -m epubnav.main <command> [options]

Commands:
  locations  Generate (or load from the store) the location list of a book.
  resolve    Print the text around an address.
  page       Print the print-page number of an address.
  percent    Print the address at a percentage of the book.
"""

import argparse
import asyncio
import logging
import sys

from epubnav.cfi.epubcfi import is_cfi_string
from epubnav.cfi.errors import CfiError
from epubnav.db.location_store import LocationStore
from epubnav.utils.config_loader import ReaderConfig
from epubnav.utils.ebook_utils import EbookParser
from epubnav.utils.logging_utils import configure_logging, sanitize_log_data, time_execution
from epubnav.version import APP_VERSION

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="epubnav",
        description="EPUB addresses, locations and page lists.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"epubnav {APP_VERSION}")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    subparsers.required = True

    p_locations = subparsers.add_parser("locations", help="Generate the location list of a book.")
    p_locations.add_argument("book", help="EPUB file (path, or name under BOOKS_DIR)")
    p_locations.add_argument("--break", dest="break_size", type=int, default=None,
                             help="characters per location (default: LOCATIONS_BREAK)")
    p_locations.add_argument("--force", action="store_true", help="regenerate even if stored")

    p_resolve = subparsers.add_parser("resolve", help="Print the text around an address.")
    p_resolve.add_argument("book")
    p_resolve.add_argument("cfi")
    p_resolve.add_argument("--context", type=int, default=50, help="characters on each side")

    p_page = subparsers.add_parser("page", help="Print the print-page number of an address.")
    p_page.add_argument("book")
    p_page.add_argument("cfi")

    p_percent = subparsers.add_parser("percent", help="Print the address at a percentage (0-1).")
    p_percent.add_argument("book")
    p_percent.add_argument("percentage", type=float)

    return parser


@time_execution
async def load_or_generate_locations(parser: EbookParser, store: LocationStore, book,
                                     break_size: int, force: bool = False):
    opened = parser.open_book(book)
    locations = parser.create_locations(book)
    book_id = opened.book_id or opened.path.name

    saved = None if force else store.load_locations(book_id, break_size)
    if saved is not None:
        locations.load(saved)
        logger.info(f"Loaded {len(locations)} stored locations for '{opened.title}'")
        return locations

    await locations.generate(break_size)
    store.save_locations(book_id, locations.save(), break_size)
    return locations


async def run_command(args, config: ReaderConfig) -> int:
    parser = EbookParser(config)

    if args.command in ("resolve", "page") and not is_cfi_string(args.cfi):
        logger.error(f"❌ Not an epubcfi(...) address: '{sanitize_log_data(args.cfi)}'")
        return 1

    if args.command == "locations":
        store = LocationStore(config.location_store_path)
        break_size = args.break_size or config.locations_break
        locations = await load_or_generate_locations(parser, store, args.book, break_size, args.force)
        print(len(locations))
        return 0

    if args.command == "resolve":
        text = await parser.get_text_around_cfi(args.book, args.cfi, args.context)
        if text is None:
            return 1
        print(text)
        return 0

    if args.command == "page":
        page_list = await parser.load_page_list(args.book, resolve=True)
        page = page_list.page_from_cfi(args.cfi)
        if page == -1:
            logger.error("❌ This book has no page list with addresses")
            return 1
        print(page)
        return 0

    if args.command == "percent":
        store = LocationStore(config.location_store_path)
        locations = await load_or_generate_locations(parser, store, args.book, config.locations_break)
        cfi = locations.cfi_from_percentage(args.percentage)
        if cfi is None:
            logger.error("❌ No locations could be generated for this book")
            return 1
        print(cfi)
        return 0

    return 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = ReaderConfig.from_env()
    configure_logging(config)

    try:
        return asyncio.run(run_command(args, config))
    except FileNotFoundError as e:
        logger.error(f"❌ {e}")
    except CfiError as e:
        logger.error(f"❌ {e}")
    return 1


if __name__ == "__main__":
    sys.exit(main())

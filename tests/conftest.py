"""
Shared fixtures: a small hand-built EPUB 3 book.

Spine: chap1.xhtml, chap2.xhtml (itemref id "chap01ref"), notes.xhtml
(non-linear). The navigation document carries a page list whose entries
point at element ids.
"""
import sys
import zipfile
from pathlib import Path

import pytest

# Add project root for `epubnav.*` imports
sys.path.insert(0, str(Path(__file__).parent.parent))

CONTAINER = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

OPF = """<?xml version="1.0" encoding="UTF-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0" unique-identifier="BookId">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:identifier id="BookId">urn:uuid:epubnav-test</dc:identifier>
    <dc:title>Test Book</dc:title>
    <dc:language>en</dc:language>
  </metadata>
  <manifest>
    <item id="nav" href="nav.xhtml" media-type="application/xhtml+xml" properties="nav"/>
    <item id="c1" href="chap1.xhtml" media-type="application/xhtml+xml"/>
    <item id="c2" href="chap2.xhtml" media-type="application/xhtml+xml"/>
    <item id="notes" href="notes.xhtml" media-type="application/xhtml+xml"/>
  </manifest>
  <spine>
    <itemref idref="c1"/>
    <itemref idref="c2" id="chap01ref"/>
    <itemref idref="notes" linear="no"/>
  </spine>
</package>
"""

CHAP1 = ('<html xmlns="http://www.w3.org/1999/xhtml"><head><title>One</title></head>'
         '<body><p id="pg1">Alpha beta gamma.</p><p>Delta epsilon.</p></body></html>')

CHAP2 = ('<html xmlns="http://www.w3.org/1999/xhtml"><head><title>Two</title></head>'
         '<body id="body01"><p>zero</p><p id="pg2">Hello world, this is chapter two.</p></body></html>')

NOTES = ('<html xmlns="http://www.w3.org/1999/xhtml"><head><title>Notes</title></head>'
         '<body><p>Note text.</p></body></html>')

NAV = """<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head><title>Navigation</title></head>
<body>
  <nav epub:type="toc"><ol>
    <li><a href="chap1.xhtml">One</a></li>
    <li><a href="chap2.xhtml">Two</a></li>
  </ol></nav>
  <nav epub:type="page-list"><ol>
    <li><a href="chap1.xhtml#pg1">1</a></li>
    <li><a href="chap2.xhtml#pg2">2</a></li>
    <li><a href="chap2.xhtml#nowhere">3</a></li>
    <li><a href="chap2.xhtml#pg2">iv</a></li>
  </ol></nav>
</body>
</html>
"""

def write_epub(path: Path) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip", compress_type=zipfile.ZIP_STORED)
        zf.writestr("META-INF/container.xml", CONTAINER)
        zf.writestr("OEBPS/content.opf", OPF)
        zf.writestr("OEBPS/nav.xhtml", NAV)
        zf.writestr("OEBPS/chap1.xhtml", CHAP1)
        zf.writestr("OEBPS/chap2.xhtml", CHAP2)
        zf.writestr("OEBPS/notes.xhtml", NOTES)
    return path


@pytest.fixture
def epub_book(tmp_path):
    return write_epub(tmp_path / "book.epub")

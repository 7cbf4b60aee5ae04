from typing import Dict, List, NamedTuple, Optional
import re

BOOK_NAME_TO_CODE: Dict[str, str] = {
    "genesis": "GEN", "exodus": "EXO", "leviticus": "LEV", "numbers": "NUM",
    "deuteronomy": "DEU", "joshua": "JOS", "judges": "JDG", "ruth": "RUT",
    "1 samuel": "1SA", "2 samuel": "2SA", "1 kings": "1KI", "2 kings": "2KI",
    "1 chronicles": "1CH", "2 chronicles": "2CH", "ezra": "EZR", "nehemiah": "NEH",
    "esther": "EST", "job": "JOB", "psalms": "PSA", "psalm": "PSA",
    "proverbs": "PRO", "ecclesiastes": "ECC", "song of solomon": "SNG",
    "song of songs": "SNG", "isaiah": "ISA", "jeremiah": "JER",
    "lamentations": "LAM", "ezekiel": "EZK", "daniel": "DAN", "hosea": "HOS",
    "joel": "JOL", "amos": "AMO", "obadiah": "OBA", "jonah": "JON",
    "micah": "MIC", "nahum": "NAM", "habakkuk": "HAB", "zephaniah": "ZEP",
    "haggai": "HAG", "zechariah": "ZEC", "malachi": "MAL",
    "matthew": "MAT", "mark": "MRK", "luke": "LUK", "john": "JHN",
    "acts": "ACT", "romans": "ROM", "1 corinthians": "1CO", "2 corinthians": "2CO",
    "galatians": "GAL", "ephesians": "EPH", "philippians": "PHP",
    "colossians": "COL", "1 thessalonians": "1TH", "2 thessalonians": "2TH",
    "1 timothy": "1TI", "2 timothy": "2TI", "titus": "TIT", "philemon": "PHM",
    "hebrews": "HEB", "james": "JAS", "1 peter": "1PE", "2 peter": "2PE",
    "1 john": "1JN", "2 john": "2JN", "3 john": "3JN", "jude": "JUD",
    "revelation": "REV",
}

# First name wins so "PSA" displays as "Psalms", not "Psalm".
BOOK_CODE_TO_NAME: Dict[str, str] = {}
for _name, _code in BOOK_NAME_TO_CODE.items():
    BOOK_CODE_TO_NAME.setdefault(_code, _name.title())

_LOOSE_REF = re.compile(r"^(\d?\s*[A-Za-z][A-Za-z\s]+?)\s+(\d{1,3})(?::(\d{1,3})(?:-(\d{1,3}))?)?$")
_COMPACT_REF = re.compile(r"^([1-3]?[A-Z]{2,3})\s+(\d{1,3})(?::(\d{1,3})(?:-(\d{1,3}))?)?$")
_INLINE_REF = re.compile(r"\b(\d?\s*[A-Za-z]+)\s+(\d{1,3})(?::(\d{1,3})(?:-(\d{1,3}))?)?\b")
_CHAPTER_LOCAL_RANGE = re.compile(r"^(\d{1,3})(?:-(\d{1,3}))?$")


class ScriptureRef(NamedTuple):
    book_code: str
    chapter: int
    verse_start: Optional[int] = None
    verse_end: Optional[int] = None

    def format(self) -> str:
        """Compact form such as ``JHN 6:1-5``"""
        if not self.verse_start:
            return f"{self.book_code} {self.chapter}"
        if not self.verse_end or self.verse_end == self.verse_start:
            return f"{self.book_code} {self.chapter}:{self.verse_start}"
        return f"{self.book_code} {self.chapter}:{self.verse_start}-{self.verse_end}"

    def ref_key(self) -> str:
        """Action parameter form such as ``JHN:6:1-5``"""
        return self.format().replace(" ", ":", 1)


def normalize_book_name(raw: str) -> str:
    return re.sub(r"\s+", " ", raw.strip().lower().replace(".", ""))


def book_code_for(name: str) -> Optional[str]:
    return BOOK_NAME_TO_CODE.get(normalize_book_name(name))


def book_display_name(code: str) -> Optional[str]:
    return BOOK_CODE_TO_NAME.get(code.upper())


def _build_ref(book_code: str, chapter: str, verse_start: Optional[str], verse_end: Optional[str]) -> ScriptureRef:
    start = int(verse_start) if verse_start else None
    end = int(verse_end) if verse_end else None
    return ScriptureRef(book_code, int(chapter), start or None, end or None)


def parse_loose_ref(text: str) -> Optional[ScriptureRef]:
    """Parse a human reference like ``1 John 2:1-2`` or ``Song of Songs 1``"""

    match = _LOOSE_REF.match(text.strip())
    if not match:
        return None

    book_code = book_code_for(match.group(1))
    if not book_code:
        return None

    return _build_ref(book_code, match.group(2), match.group(3), match.group(4))


def parse_compact_ref(text: str) -> Optional[ScriptureRef]:
    """Parse ``JHN 6`` / ``JHN 6:1-5``; only the first of several comma ranges is used"""

    first_part = text.strip().split(",")[0].strip()
    if not first_part:
        return None

    match = _COMPACT_REF.match(first_part)
    if not match:
        return None

    return _build_ref(match.group(1), match.group(2), match.group(3), match.group(4))


def parse_chapter_local_range(read_range: str) -> Optional[ScriptureRef]:
    """Parse a chapter-local range (``2:1-10``, ``1-10``) into verse bounds only"""

    raw = read_range.strip()
    if not raw:
        return None

    after_colon = raw.split(":", 1)[1] if ":" in raw else raw
    match = _CHAPTER_LOCAL_RANGE.match(after_colon)
    if not match:
        return None

    a = int(match.group(1))
    b = int(match.group(2)) if match.group(2) else a
    return ScriptureRef("", 0, max(1, min(a, b)), max(1, max(a, b)))


def refs_overlap(a: ScriptureRef, b: ScriptureRef) -> bool:
    """Same chapter and overlapping verses; chapter-level when either side has no verse"""

    if a.book_code != b.book_code or a.chapter != b.chapter:
        return False
    if not a.verse_start or not b.verse_start:
        return True

    a_end = a.verse_end or a.verse_start
    b_end = b.verse_end or b.verse_start
    return a.verse_start <= b_end and b.verse_start <= a_end


def find_references(text: str) -> List[str]:
    """Extract every recognizable scripture reference in free text, in order of appearance"""

    found: List[str] = []
    for match in _INLINE_REF.finditer(text):
        book = match.group(1)
        book_code = book_code_for(book)
        if not book_code:
            continue
        ref = _build_ref(book_code, match.group(2), match.group(3), match.group(4))
        found.append(ref.format())
    return found

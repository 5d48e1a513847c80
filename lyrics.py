"""
Lyric parsing and slide pairing.

Turns pasted lyric text into an ordered list of section markers and lyric
lines (plus title/credits metadata), and groups lyric lines two per slide
without ever mixing lines from different sections.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union

from errors import RequestValidationError


TITLE_RE = re.compile(r'^(Title|Song Title):\s*(.+)$', re.IGNORECASE)
CREDITS_RE = re.compile(r'^(Credits|Credit):\s*(.+)$', re.IGNORECASE)
SECTION_RE = re.compile(r'^\[(.+)\]$')


@dataclass
class Section:
    label: str
    raw_line: str


@dataclass
class Lyric:
    section: str
    original: str
    simplified: str = ''
    pinyin: str = ''


LyricEntry = Union[Section, Lyric]


@dataclass
class Metadata:
    title: str = ''
    credits: str = ''

    @property
    def has_title_slide(self) -> bool:
        return bool(self.title or self.credits)

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "credits": self.credits}


@dataclass
class LyricPair:
    line1: Lyric
    line2: Optional[Lyric] = None
    section_label: str = field(default='')


def parse_lyrics(text: str) -> Tuple[List[LyricEntry], Metadata]:
    """
    Parse raw lyric text into entries and metadata.

    Title/Credits lines are consumed as metadata, bracketed lines become
    section markers, and every other non-empty line becomes a lyric carrying
    the label of the nearest preceding section.

    Args:
        text: Raw multi-line lyric text

    Returns:
        Tuple of (ordered entries, metadata)
    """
    entries: List[LyricEntry] = []
    metadata = Metadata()
    current_section = ''

    lines = [line.strip() for line in (text or '').splitlines()]

    for line in lines:
        if not line:
            continue

        match = TITLE_RE.match(line)
        if match:
            metadata.title = match.group(2).strip()
            continue

        match = CREDITS_RE.match(line)
        if match:
            metadata.credits = match.group(2).strip()
            continue

        match = SECTION_RE.match(line)
        if match:
            current_section = f"[{match.group(1)}]"
            entries.append(Section(label=current_section, raw_line=line))
            continue

        entries.append(Lyric(section=current_section, original=line))

    return entries, metadata


def lyric_lines(entries: List[LyricEntry]) -> List[Lyric]:
    """Return only the lyric entries, in order."""
    return [entry for entry in entries if isinstance(entry, Lyric)]


def strip_section_brackets(section: str) -> str:
    if not section:
        return ''
    return re.sub(r'^\[|\]$', '', section)


def pair_lyrics(lyrics: List[Lyric]) -> List[LyricPair]:
    """
    Group lyric lines two per slide.

    Runs of consecutive lines with the same section are paired independently,
    so a pair never straddles a section boundary; an odd run ends with a pair
    whose second line is None. The section label is only kept on the first
    pair of each run.

    Args:
        lyrics: Lyric entries in input order (section markers removed)

    Returns:
        Ordered list of LyricPair
    """
    pairs: List[LyricPair] = []

    # Split into runs of identical section values
    runs: List[List[Lyric]] = []
    for lyric in lyrics:
        if runs and runs[-1][0].section == lyric.section:
            runs[-1].append(lyric)
        else:
            runs.append([lyric])

    for run in runs:
        for i in range(0, len(run), 2):
            line2 = run[i + 1] if i + 1 < len(run) else None
            pairs.append(LyricPair(line1=run[i], line2=line2))

    previous_section = None
    for pair in pairs:
        section = pair.line1.section
        if section != previous_section:
            pair.section_label = strip_section_brackets(section)
        previous_section = section

    return pairs


def count_slides(pairs: List[LyricPair], metadata: Metadata) -> int:
    return (1 if metadata.has_title_slide else 0) + len(pairs)


# ----------------------------------------------------------------------------
# Preview (JSON) conversion
# ----------------------------------------------------------------------------

def entries_to_preview(entries: List[LyricEntry]) -> List[Dict[str, str]]:
    """Serialize entries into the preview list exchanged with clients."""
    preview = []
    for entry in entries:
        if isinstance(entry, Section):
            preview.append({
                "type": "section",
                "section": entry.label,
                "original": entry.raw_line,
            })
        else:
            preview.append({
                "type": "lyric",
                "section": entry.section,
                "original": entry.original,
                "simplified": entry.simplified,
                "pinyin": entry.pinyin,
            })
    return preview


def _optional_str(item: Dict[str, Any], key: str, index: int) -> str:
    value = item.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise RequestValidationError(
            "Preview data is invalid",
            f"Item {index}: '{key}' must be a string",
        )
    return value


def entries_from_preview(preview: Any) -> List[LyricEntry]:
    """
    Rebuild entries from a client-supplied preview list.

    Raises:
        RequestValidationError: if the preview is not a list of recognizable items
    """
    if not isinstance(preview, list):
        raise RequestValidationError("Preview data is required")

    entries: List[LyricEntry] = []
    for index, item in enumerate(preview):
        if not isinstance(item, dict):
            raise RequestValidationError(
                "Preview data is invalid", f"Item {index} is not an object"
            )

        item_type = item.get("type")
        if item_type == "section":
            label = _optional_str(item, "section", index)
            raw_line = _optional_str(item, "original", index) or label
            entries.append(Section(label=label, raw_line=raw_line))
        elif item_type == "lyric":
            original = _optional_str(item, "original", index)
            entries.append(Lyric(
                section=_optional_str(item, "section", index),
                original=original,
                simplified=_optional_str(item, "simplified", index),
                pinyin=_optional_str(item, "pinyin", index),
            ))
        else:
            raise RequestValidationError(
                "Preview data is invalid",
                f"Item {index} has unknown type {item_type!r}",
            )

    return entries


def metadata_from_dict(data: Any) -> Metadata:
    if data is None:
        return Metadata()
    if not isinstance(data, dict):
        raise RequestValidationError("Metadata must be an object")
    title = data.get("title") or ''
    credits = data.get("credits") or ''
    if not isinstance(title, str) or not isinstance(credits, str):
        raise RequestValidationError("Metadata title and credits must be strings")
    return Metadata(title=title.strip(), credits=credits.strip())


def with_enrichment(lyric: Lyric, result: Dict[str, str]) -> Lyric:
    return replace(
        lyric,
        simplified=result.get("simplified") or lyric.original,
        pinyin=result.get("pinyin") or '',
    )

"""
Lyrics Slide Pipeline
=====================
Parse → Enrich → Synthesize: turns pasted worship lyrics into a .pptx built
from a template deck.

The template's first slide is the title slide (when a title or credits are
given) and the next slide is the lyric template. Template text may contain
{title}, {credits}, {pinyin1}, {chinese1}, {pinyin2}, {chinese2} and
{section} tokens.

Usage:
    python deck_builder.py lyrics.txt -t template.pptx
    python deck_builder.py lyrics.txt -t template.pptx -o grace.pptx --record grace.xlsx
"""

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List

import config
from errors import LyricsSlidesError, RequestValidationError, SynthesisError
from lyrics import (
    Lyric,
    LyricEntry,
    LyricPair,
    Metadata,
    count_slides,
    lyric_lines,
    pair_lyrics,
    parse_lyrics,
    with_enrichment,
)
from ooxml import EMPTY_RELATIONSHIPS, rels_part_for
from placeholders import fill_title_slide
from presentation_graph import PresentationGraphUpdater
from slide_cloner import SlideCloner
from template_reader import read_template
from deck_inspector import format_summary, summarize_deck, verify_package
from enricher import LyricsEnricher
from preview_record import PreviewRecordGenerator


logger = logging.getLogger(__name__)


@dataclass
class DeckResult:
    content: bytes
    slide_count: int
    pairs: List[LyricPair]
    slide_parts: List[str]
    stats: Dict[str, int] = field(default_factory=dict)


class LyricsDeckBuilder:
    """
    Builds a lyrics deck by splicing new slides into a template package.

    Steps: read template → parse master documents → fill title slide →
    emit lyric slides → patch presentation graph → verify → serialize.
    Nothing is retried; any failure aborts the build and the template bytes
    are never modified.

    Args:
        template_bytes: Raw bytes of the uploaded .pptx template
    """

    def __init__(self, template_bytes: bytes):
        self.template_bytes = template_bytes

        # Statistics
        self.stats = {
            "lyric_lines": 0,
            "lyric_pairs": 0,
            "title_nodes_replaced": 0,
        }

    def _fill_title_slide(self, package, graph, part_name: str, metadata: Metadata):
        slide = package.read_xml(part_name)
        self.stats["title_nodes_replaced"] = fill_title_slide(slide, metadata)
        package.write_xml(part_name, slide)
        if rels_part_for(part_name) not in package:
            package.set(rels_part_for(part_name), EMPTY_RELATIONSHIPS)
        graph.ensure_override(part_name)

    def build(self, entries: List[LyricEntry], metadata: Metadata) -> DeckResult:
        """
        Generate the presentation.

        Args:
            entries: Parsed (and usually enriched) lyric entries
            metadata: Song title and credits

        Returns:
            DeckResult with the .pptx bytes and slide count

        Raises:
            RequestValidationError: no lyric lines
            TemplateError: unusable template or master documents
            SynthesisError: failure while building the package
        """
        lyrics = lyric_lines(entries)
        if not lyrics:
            raise RequestValidationError("No lyric lines found")

        pairs = pair_lyrics(lyrics)
        self.stats["lyric_lines"] = len(lyrics)
        self.stats["lyric_pairs"] = len(pairs)

        # Read template and parse everything before mutating
        layout = read_template(self.template_bytes, metadata)
        package = layout.package
        graph = PresentationGraphUpdater(package)
        cloner = SlideCloner(package, layout.lyric_template_part, graph)

        try:
            slide_parts = []
            if layout.title_slide_part:
                self._fill_title_slide(package, graph, layout.title_slide_part, metadata)
                slide_parts.append(layout.title_slide_part)

            slide_parts.extend(cloner.emit(pairs))

            graph.save()
            verify_package(package, slide_parts)
            content = package.to_bytes()
        except LyricsSlidesError:
            raise
        except Exception as e:
            logger.exception("Unexpected error while synthesizing presentation")
            raise SynthesisError("Failed to generate PPTX", str(e)) from e

        self.stats.update(cloner.stats)
        self.stats.update(graph.stats)

        slide_count = count_slides(pairs, metadata)
        logger.info(f"Generated deck with {slide_count} slides ({len(pairs)} lyric pairs)")
        return DeckResult(
            content=content,
            slide_count=slide_count,
            pairs=pairs,
            slide_parts=slide_parts,
            stats=dict(self.stats),
        )


# ============================================================================
# MAIN PIPELINE INTERFACE
# ============================================================================

def run_full_pipeline(lyrics_file: str, template_file: str, output_file: str = None,
                      api_key: str = None, record_file: str = None, enrich: bool = True,
                      enricher: LyricsEnricher = None):
    """
    Run the complete pipeline: Parse → Enrich → Synthesize

    Args:
        lyrics_file: Path to a UTF-8 text file with lyrics
        template_file: Path to the template .pptx
        output_file: Output .pptx path (default: OUTPUT_FILENAME next to the lyrics)
        api_key: OpenAI API key (optional, reads from .env if not provided)
        record_file: Optional .xlsx path for the preview record
        enrich: Skip the language model when False (original text, empty pinyin)
        enricher: Pre-built LyricsEnricher to use instead of one made from api_key

    Returns:
        dict: Statistics from all stages
    """
    if output_file is None:
        output_file = os.path.join(os.path.dirname(lyrics_file) or ".", config.OUTPUT_FILENAME)

    print("\n" + "=" * 80)
    print("LYRICS SLIDE PIPELINE")
    print("=" * 80)
    print(f"Lyrics file: {lyrics_file}")
    print(f"Template: {template_file}")
    print(f"Output: {output_file}")
    print("=" * 80 + "\n")

    # Stage 1: Parse
    print("STAGE 1: PARSING")
    print("-" * 80)
    with open(lyrics_file, 'r', encoding='utf-8') as f:
        entries, metadata = parse_lyrics(f.read())
    lines = lyric_lines(entries)
    if not lines:
        raise RequestValidationError("No lyric lines found")
    print(f"✓ Parsed {len(lines)} lyric lines")
    if metadata.title:
        print(f"  Title: {metadata.title}")
    if metadata.credits:
        print(f"  Credits: {metadata.credits}")
    print()

    # Stage 2: Enrich
    print("STAGE 2: ENRICHMENT")
    print("-" * 80)
    start_time = time.time()
    if not enrich:
        enricher = None
    elif enricher is None:
        enricher = LyricsEnricher(api_key=api_key)
    if enricher is not None and enricher.is_configured:
        entries = enricher.enrich_entries(
            entries, progress_callback=lambda done, total: print(f"  Enriched {done}/{total} lines")
        )
        enrichment_stats = enricher.stats
    else:
        entries = [
            with_enrichment(entry, {}) if isinstance(entry, Lyric) else entry
            for entry in entries
        ]
        enrichment_stats = {"lines_fallback": len(lines)}
        print("⚠️  Enrichment skipped: original text used, pinyin left empty")
    print(f"✓ Enrichment finished in {time.time() - start_time:.2f} seconds")
    print()

    # Stage 3: Synthesize
    print("STAGE 3: SYNTHESIS")
    print("-" * 80)
    with open(template_file, 'rb') as f:
        template_bytes = f.read()
    builder = LyricsDeckBuilder(template_bytes)
    result = builder.build(entries, metadata)
    with open(output_file, 'wb') as f:
        f.write(result.content)
    print(f"✓ Wrote {result.slide_count} slides to {output_file}")

    if record_file:
        PreviewRecordGenerator(entries, metadata).generate_excel(record_file)
        print(f"✓ Preview record: {record_file}")

    print()
    print(format_summary(summarize_deck(result.content)))

    return {
        "parsing": {"lyric_lines": len(lines)},
        "enrichment": enrichment_stats,
        "synthesis": result.stats,
    }


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Generate a lyrics .pptx (Simplified Chinese + pinyin) from a template deck"
    )
    parser.add_argument("lyrics_file", help="Text file with lyrics (Title:/Credits: lines and [Section] markers)")
    parser.add_argument("-t", "--template", required=True, help="Template .pptx file")
    parser.add_argument("-o", "--output", help=f"Output .pptx path (default: {config.OUTPUT_FILENAME})")
    parser.add_argument("-k", "--api-key", help="OpenAI API key (default: from .env)")
    parser.add_argument("--record", help="Also write an Excel preview record to this path")
    parser.add_argument("--no-enrich", action="store_true", help="Skip the language model")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")

    args = parser.parse_args()
    config.setup_logging(args.verbose)

    for path in (args.lyrics_file, args.template):
        if not os.path.exists(path):
            print(f"Error: File not found: {path}")
            return 1

    try:
        run_full_pipeline(
            args.lyrics_file,
            args.template,
            output_file=args.output,
            api_key=args.api_key,
            record_file=args.record,
            enrich=not args.no_enrich,
        )
        return 0
    except LyricsSlidesError as e:
        print(f"\n❌ {e.message}")
        if e.details:
            print(f"   {e.details}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

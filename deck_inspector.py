"""
Checks and summaries for generated decks.

verify_package() guards the synthesis step: a deck is only handed out when
every slide in the slide-ID list resolves through presentation.xml.rels to an
existing, correctly typed slide part. summarize_deck() reopens the output
with python-pptx as an independent reader.
"""

import io
import logging
from collections import Counter
from typing import Dict, List

from pptx import Presentation

from errors import SynthesisError
from ooxml import (
    CONTENT_TYPES_PART,
    PRESENTATION_PART,
    PRESENTATION_RELS_PART,
    SLIDE_CONTENT_TYPE,
    SLIDE_REL_TYPE,
    qn,
    rels_part_for,
    resolve_target,
)


logger = logging.getLogger(__name__)


def find_package_problems(package, slide_parts: List[str]) -> List[str]:
    """
    List referential-integrity problems in a package.

    Args:
        package: TemplatePackage after the master documents were saved
        slide_parts: Slide parts written or rewritten by the synthesis step

    Returns:
        Human readable problem descriptions (empty when the package is consistent)
    """
    problems = []
    presentation = package.read_xml(PRESENTATION_PART)
    presentation_rels = package.read_xml(PRESENTATION_RELS_PART)
    content_types = package.read_xml(CONTENT_TYPES_PART)

    rels = list(presentation_rels.iter(qn('rel:Relationship')))
    rel_id_counts = Counter(rel.get('Id') for rel in rels)
    for rel_id, count in rel_id_counts.items():
        if count > 1:
            problems.append(f"Duplicate relationship id {rel_id} in presentation.xml.rels")
    rels_by_id = {rel.get('Id'): rel for rel in rels}

    sld_ids = list(presentation.iter(qn('p:sldId')))
    for key, label in ((lambda e: e.get('id'), 'slide id'), (lambda e: e.get(qn('r:id')), 'slide rId')):
        for value, count in Counter(key(sld_id) for sld_id in sld_ids).items():
            if count > 1:
                problems.append(f"Duplicate {label} {value} in presentation.xml")

    for sld_id in sld_ids:
        rel_id = sld_id.get(qn('r:id'))
        rel = rels_by_id.get(rel_id)
        if rel is None:
            problems.append(f"Slide id {sld_id.get('id')} references missing relationship {rel_id}")
            continue
        if rel.get('Type') != SLIDE_REL_TYPE:
            problems.append(f"Relationship {rel_id} is not a slide relationship")
            continue
        target = resolve_target(PRESENTATION_PART, rel.get('Target', ''))
        if target not in package:
            problems.append(f"Relationship {rel_id} targets missing part {target}")

    overrides = {
        override.get('PartName'): override.get('ContentType')
        for override in content_types.iter(qn('ct:Override'))
    }
    for part_name in slide_parts:
        if part_name not in package:
            problems.append(f"Slide part {part_name} is missing")
        if overrides.get(f"/{part_name}") != SLIDE_CONTENT_TYPE:
            problems.append(f"Slide part {part_name} has no slide content type override")
        if rels_part_for(part_name) not in package:
            problems.append(f"Slide part {part_name} has no relationship part")

    return problems


def verify_package(package, slide_parts: List[str]):
    """
    Raises:
        SynthesisError: if the package is not internally consistent
    """
    problems = find_package_problems(package, slide_parts)
    if problems:
        for problem in problems:
            logger.error(f"Package check failed: {problem}")
        raise SynthesisError("Generated presentation is inconsistent", "; ".join(problems))


def summarize_deck(data: bytes) -> Dict:
    """Open a generated deck with python-pptx and collect slide texts."""
    presentation = Presentation(io.BytesIO(data))
    slides = []
    for slide_num, slide in enumerate(presentation.slides, 1):
        texts = []
        for shape in slide.shapes:
            if shape.has_text_frame and shape.text_frame.text.strip():
                texts.append(shape.text_frame.text)
        slides.append({"slide_number": slide_num, "texts": texts})
    return {
        "total_slides": len(presentation.slides),
        "slides": slides,
    }


def format_summary(summary: Dict) -> str:
    lines = []
    lines.append("=" * 80)
    lines.append("GENERATED DECK SUMMARY")
    lines.append("=" * 80)
    lines.append(f"Total Slides: {summary['total_slides']}")
    lines.append("-" * 80)
    for slide in summary["slides"]:
        text = " | ".join(t.replace("\n", " / ") for t in slide["texts"]) or "(no text)"
        lines.append(f"Slide {slide['slide_number']}: {text[:120]}")
    lines.append("=" * 80)
    return "\n".join(lines)

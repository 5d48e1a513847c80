import logging
from copy import deepcopy
from typing import List

from lxml import etree

from errors import SynthesisError
from lyrics import LyricPair
from ooxml import EMPTY_RELATIONSHIPS, NOTES_SLIDE_REL_TYPE, parse_xml, qn, rels_part_for, serialize_xml
from placeholders import fill_lyric_slide
from presentation_graph import PresentationGraphUpdater, SlideIdentity


logger = logging.getLogger(__name__)


class SlideCloner:
    """
    Produces one lyric slide per LyricPair from a single template slide.

    The template XML is parsed once and kept untouched; every slide is
    rendered from a fresh deep copy so tokens filled for one pair can never
    leak into another.

    Args:
        package: TemplatePackage being synthesized
        template_part: Part name of the lyric template slide
        graph: PresentationGraphUpdater that allocates ids and registers slides
    """

    def __init__(self, package, template_part: str, graph: PresentationGraphUpdater):
        self.package = package
        self.template_part = template_part
        self.graph = graph
        self.template_xml = package.read_xml(template_part)
        self.template_rels_part = rels_part_for(template_part)
        self.template_rels = package.get(self.template_rels_part)

        if self.template_rels is None:
            logger.warning(
                f"Template slide {template_part} has no relationship part; "
                f"a minimal empty one will be used"
            )

        # Statistics
        self.stats = {
            "slides_updated_in_place": 0,
            "slides_cloned": 0,
            "text_nodes_replaced": 0,
            "rels_synthesized": 0,
        }

    def render(self, pair: LyricPair):
        slide = deepcopy(self.template_xml)
        self.stats["text_nodes_replaced"] += fill_lyric_slide(slide, pair)
        return slide

    def _clone_rels(self) -> bytes:
        """
        Relationship part for a cloned slide.

        The template's relationships (layout, images, media) are reused as is,
        except notes-slide links: a notes slide belongs to exactly one slide.
        """
        if self.template_rels is None:
            self.stats["rels_synthesized"] += 1
            return EMPTY_RELATIONSHIPS

        try:
            rels = parse_xml(self.template_rels)
        except etree.XMLSyntaxError as e:
            raise SynthesisError(
                f"Relationship part could not be parsed: {self.template_rels_part}", str(e)
            ) from e

        notes = [
            rel for rel in rels.iter(qn('rel:Relationship'))
            if rel.get('Type') == NOTES_SLIDE_REL_TYPE
        ]
        if not notes:
            return self.template_rels
        for rel in notes:
            rel.getparent().remove(rel)
        return serialize_xml(rels)

    def update_in_place(self, pair: LyricPair):
        """Fill the template slide itself with the first pair, keeping its wiring."""
        self.package.write_xml(self.template_part, self.render(pair))
        if self.template_rels is None:
            self.package.set(self.template_rels_part, EMPTY_RELATIONSHIPS)
            self.stats["rels_synthesized"] += 1
        self.graph.ensure_override(self.template_part)
        self.stats["slides_updated_in_place"] += 1

    def clone(self, pair: LyricPair) -> SlideIdentity:
        """Add a new slide part for the pair and register it in the presentation."""
        identity = self.graph.allocator.take()
        if identity.part_name in self.package or identity.rels_part_name in self.package:
            raise SynthesisError(
                "Slide number collision while cloning", f"{identity.part_name} already exists"
            )

        self.package.write_xml(identity.part_name, self.render(pair))
        self.package.set(identity.rels_part_name, self._clone_rels())
        self.graph.register_slide(identity)
        self.stats["slides_cloned"] += 1
        return identity

    def emit(self, pairs: List[LyricPair]) -> List[str]:
        """
        Produce slides for all pairs, in order.

        The first pair reuses the template slide when that slide is wired into
        presentation.xml; otherwise every pair gets a cloned slide appended to
        the deck. New slides follow the template slide in presentation order.

        Returns:
            Slide part names holding the lyric pairs, in pair order
        """
        if not pairs:
            return []

        in_place = self.graph.is_registered(self.template_part)
        remaining = pairs
        part_names = []

        if in_place:
            self.update_in_place(pairs[0])
            part_names.append(self.template_part)
            remaining = pairs[1:]
            self.graph.anchor_after(self.template_part)
        else:
            logger.info(
                f"Template slide {self.template_part} is not in the slide list; "
                f"cloning it for every pair"
            )
            self.graph.anchor_after(None)

        for pair in remaining:
            identity = self.clone(pair)
            part_names.append(identity.part_name)

        logger.info(
            f"Emitted {len(part_names)} lyric slides "
            f"({self.stats['slides_updated_in_place']} in place, {self.stats['slides_cloned']} cloned)"
        )
        return part_names

"""
Keeps presentation.xml, presentation.xml.rels and [Content_Types].xml in
step when slides are added.

Every new slide needs three matching identifiers: a part number
(ppt/slides/slideN.xml), a slide id in presentation.xml's p:sldIdLst, and a
relationship id (rIdN) tying the two together through presentation.xml.rels.
All three come from one IdAllocator so they advance in lockstep.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from lxml import etree

from errors import SynthesisError
from ooxml import (
    CONTENT_TYPES_PART,
    PRESENTATION_PART,
    PRESENTATION_RELS_PART,
    RELS_CONTENT_TYPE,
    SLIDE_CONTENT_TYPE,
    SLIDE_REL_TYPE,
    qn,
    relative_target,
    rels_part_for,
    resolve_target,
)


logger = logging.getLogger(__name__)

# ST_SlideId range from the PresentationML schema
MIN_SLIDE_ID = 256
MAX_SLIDE_ID = 2147483647

RID_RE = re.compile(r'^rId(\d+)$')
SLIDE_PATH_RE = re.compile(r'(?:^|/)slides/slide(\d+)\.xml$')
SLIDE_RELS_PATH_RE = re.compile(r'(?:^|/)slides/_rels/slide(\d+)\.xml\.rels$')

# Children of p:presentation that must precede p:sldIdLst
_BEFORE_SLD_ID_LST = ('p:sldMasterIdLst', 'p:notesMasterIdLst', 'p:handoutMasterIdLst')


@dataclass(frozen=True)
class SlideIdentity:
    slide_number: int
    slide_id: int
    relationship_id: str

    @property
    def part_name(self) -> str:
        return f"ppt/slides/slide{self.slide_number}.xml"

    @property
    def rels_part_name(self) -> str:
        return rels_part_for(self.part_name)


class IdAllocator:
    """
    Hands out SlideIdentity values strictly above every existing slide
    number, slide id and relationship id, using a single running offset.
    """

    def __init__(self, max_slide_number: int = 0, max_slide_id: int = MIN_SLIDE_ID - 1,
                 max_relationship_id: int = 0):
        self.max_slide_number = max_slide_number
        self.max_slide_id = max(max_slide_id, MIN_SLIDE_ID - 1)
        self.max_relationship_id = max_relationship_id
        self.offset = 0

    @classmethod
    def from_documents(cls, part_names: List[str], presentation, presentation_rels,
                       content_types) -> 'IdAllocator':
        """
        Seed the allocator from the package's current state.

        Slide numbers are taken from slide and slide-relationship part names,
        Content_Types overrides and relationship targets, so a number that is
        referenced anywhere is never reused.
        """
        slide_numbers = [0]
        for part_name in part_names:
            match = SLIDE_PATH_RE.search(part_name) or SLIDE_RELS_PATH_RE.search(part_name)
            if match:
                slide_numbers.append(int(match.group(1)))
        for override in content_types.iter(qn('ct:Override')):
            match = SLIDE_PATH_RE.search(override.get('PartName', ''))
            if match:
                slide_numbers.append(int(match.group(1)))
        for rel in presentation_rels.iter(qn('rel:Relationship')):
            match = SLIDE_PATH_RE.search(rel.get('Target', ''))
            if match:
                slide_numbers.append(int(match.group(1)))

        slide_ids = [0]
        for sld_id in presentation.iter(qn('p:sldId')):
            try:
                slide_ids.append(int(sld_id.get('id', '0')))
            except ValueError:
                logger.warning(f"Ignoring non-numeric slide id: {sld_id.get('id')!r}")

        rel_ids = [0]
        for rel in presentation_rels.iter(qn('rel:Relationship')):
            match = RID_RE.match(rel.get('Id', ''))
            if match:
                rel_ids.append(int(match.group(1)))
        for element in presentation.iter():
            if not isinstance(element.tag, str):
                continue
            match = RID_RE.match(element.get(qn('r:id'), ''))
            if match:
                rel_ids.append(int(match.group(1)))

        allocator = cls(max(slide_numbers), max(slide_ids), max(rel_ids))
        logger.debug(
            f"ID allocator seeded: slide number {allocator.max_slide_number}, "
            f"slide id {allocator.max_slide_id}, rId {allocator.max_relationship_id}"
        )
        return allocator

    def take(self) -> SlideIdentity:
        self.offset += 1
        slide_id = self.max_slide_id + self.offset
        if slide_id > MAX_SLIDE_ID:
            raise SynthesisError("Slide id space exhausted", f"Next id would be {slide_id}")
        return SlideIdentity(
            slide_number=self.max_slide_number + self.offset,
            slide_id=slide_id,
            relationship_id=f"rId{self.max_relationship_id + self.offset}",
        )


class PresentationGraphUpdater:
    """
    Parses the three master documents once, registers new slides in them and
    writes them back to the package.

    Args:
        package: TemplatePackage being synthesized

    Raises:
        TemplateError: if a master document is missing or unparsable
    """

    def __init__(self, package):
        self.package = package
        self.presentation = package.read_xml(PRESENTATION_PART)
        self.presentation_rels = package.read_xml(PRESENTATION_RELS_PART)
        self.content_types = package.read_xml(CONTENT_TYPES_PART)
        self.allocator = IdAllocator.from_documents(
            list(package.parts), self.presentation, self.presentation_rels, self.content_types
        )
        self._insert_anchor = None

        # Statistics
        self.stats = {
            "slide_ids_added": 0,
            "relationships_added": 0,
            "overrides_added": 0,
            "duplicates_skipped": 0,
        }

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def slide_relationships(self):
        return [
            rel for rel in self.presentation_rels.iter(qn('rel:Relationship'))
            if rel.get('Type') == SLIDE_REL_TYPE and rel.get('TargetMode') != 'External'
        ]

    def relationship_id_for(self, part_name: str) -> Optional[str]:
        for rel in self.slide_relationships():
            if resolve_target(PRESENTATION_PART, rel.get('Target', '')) == part_name:
                return rel.get('Id')
        return None

    def slide_id_list(self):
        return self.presentation.find(qn('p:sldIdLst'))

    def slide_id_entry_for(self, part_name: str):
        rel_id = self.relationship_id_for(part_name)
        sld_id_lst = self.slide_id_list()
        if rel_id is None or sld_id_lst is None:
            return None
        for sld_id in sld_id_lst.iter(qn('p:sldId')):
            if sld_id.get(qn('r:id')) == rel_id:
                return sld_id
        return None

    def is_registered(self, part_name: str) -> bool:
        """True when the slide part is reachable from the slide-ID list."""
        return self.slide_id_entry_for(part_name) is not None

    def registered_slide_parts(self) -> List[str]:
        """Slide parts in presentation order, as listed by p:sldIdLst."""
        targets = {
            rel.get('Id'): resolve_target(PRESENTATION_PART, rel.get('Target', ''))
            for rel in self.slide_relationships()
        }
        sld_id_lst = self.slide_id_list()
        if sld_id_lst is None:
            return []
        parts = []
        for sld_id in sld_id_lst.iter(qn('p:sldId')):
            target = targets.get(sld_id.get(qn('r:id')))
            if target:
                parts.append(target)
        return parts

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _ensure_slide_id_list(self):
        sld_id_lst = self.slide_id_list()
        if sld_id_lst is not None:
            return sld_id_lst

        sld_id_lst = etree.Element(qn('p:sldIdLst'))
        index = 0
        for position, child in enumerate(self.presentation):
            if child.tag in {qn(tag) for tag in _BEFORE_SLD_ID_LST}:
                index = position + 1
        self.presentation.insert(index, sld_id_lst)
        logger.info("presentation.xml had no slide id list; created one")
        return sld_id_lst

    def anchor_after(self, part_name: Optional[str]):
        """Insert subsequent slide ids right after this slide's entry (append if None)."""
        self._insert_anchor = self.slide_id_entry_for(part_name) if part_name else None

    def _add_slide_id(self, identity: SlideIdentity):
        sld_id_lst = self._ensure_slide_id_list()
        for existing in sld_id_lst.iter(qn('p:sldId')):
            if existing.get('id') == str(identity.slide_id) or \
                    existing.get(qn('r:id')) == identity.relationship_id:
                logger.warning(
                    f"Slide id {identity.slide_id}/{identity.relationship_id} already present "
                    f"in presentation.xml; skipping"
                )
                self.stats["duplicates_skipped"] += 1
                return

        sld_id = etree.Element(qn('p:sldId'))
        sld_id.set('id', str(identity.slide_id))
        sld_id.set(qn('r:id'), identity.relationship_id)

        if self._insert_anchor is not None and self._insert_anchor.getparent() is sld_id_lst:
            self._insert_anchor.addnext(sld_id)
        else:
            sld_id_lst.append(sld_id)
        self._insert_anchor = sld_id
        self.stats["slide_ids_added"] += 1

    def _add_relationship(self, identity: SlideIdentity):
        for rel in self.presentation_rels.iter(qn('rel:Relationship')):
            if rel.get('Id') == identity.relationship_id:
                logger.warning(
                    f"Relationship {identity.relationship_id} already present in "
                    f"presentation.xml.rels; skipping"
                )
                self.stats["duplicates_skipped"] += 1
                return

        etree.SubElement(
            self.presentation_rels,
            qn('rel:Relationship'),
            Id=identity.relationship_id,
            Type=SLIDE_REL_TYPE,
            Target=relative_target(PRESENTATION_PART, identity.part_name),
        )
        self.stats["relationships_added"] += 1

    def ensure_override(self, part_name: str, content_type: str = SLIDE_CONTENT_TYPE):
        part_path = f"/{part_name}"
        for override in self.content_types.iter(qn('ct:Override')):
            if override.get('PartName') == part_path:
                return
        etree.SubElement(
            self.content_types, qn('ct:Override'), PartName=part_path, ContentType=content_type
        )
        self.stats["overrides_added"] += 1

    def ensure_rels_default(self):
        for default in self.content_types.iter(qn('ct:Default')):
            if (default.get('Extension') or '').lower() == 'rels':
                return
        default = etree.Element(qn('ct:Default'), Extension='rels', ContentType=RELS_CONTENT_TYPE)
        self.content_types.insert(0, default)

    def register_slide(self, identity: SlideIdentity):
        """Wire one new slide into all three master documents."""
        self._add_slide_id(identity)
        self._add_relationship(identity)
        self.ensure_override(identity.part_name)

    def save(self):
        """Write the three master documents back into the package."""
        self.ensure_rels_default()
        self.package.write_xml(PRESENTATION_PART, self.presentation)
        self.package.write_xml(PRESENTATION_RELS_PART, self.presentation_rels)
        self.package.write_xml(CONTENT_TYPES_PART, self.content_types)

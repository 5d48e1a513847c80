"""Namespaces, content types and XML (de)serialization for OOXML parts."""

import posixpath

from lxml import etree


NAMESPACES = {
    'a': 'http://schemas.openxmlformats.org/drawingml/2006/main',
    'p': 'http://schemas.openxmlformats.org/presentationml/2006/main',
    'r': 'http://schemas.openxmlformats.org/officeDocument/2006/relationships',
    'rel': 'http://schemas.openxmlformats.org/package/2006/relationships',
    'ct': 'http://schemas.openxmlformats.org/package/2006/content-types',
}

SLIDE_REL_TYPE = 'http://schemas.openxmlformats.org/officeDocument/2006/relationships/slide'
NOTES_SLIDE_REL_TYPE = 'http://schemas.openxmlformats.org/officeDocument/2006/relationships/notesSlide'
SLIDE_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.presentationml.slide+xml'
RELS_CONTENT_TYPE = 'application/vnd.openxmlformats-package.relationships+xml'
PPTX_MIME_TYPE = 'application/vnd.openxmlformats-officedocument.presentationml.presentation'

PRESENTATION_PART = 'ppt/presentation.xml'
PRESENTATION_RELS_PART = 'ppt/_rels/presentation.xml.rels'
CONTENT_TYPES_PART = '[Content_Types].xml'

EMPTY_RELATIONSHIPS = (
    b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    b'<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships"/>'
)

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


def qn(tag: str) -> str:
    """Expand a prefixed tag like 'a:t' into Clark notation."""
    prefix, local = tag.split(':')
    return f"{{{NAMESPACES[prefix]}}}{local}"


def parse_xml(data: bytes):
    return etree.fromstring(data, parser=_PARSER)


def serialize_xml(root) -> bytes:
    return etree.tostring(root, xml_declaration=True, encoding='UTF-8', standalone=True)


def rels_part_for(part_name: str) -> str:
    """ppt/slides/slide3.xml -> ppt/slides/_rels/slide3.xml.rels"""
    directory, filename = posixpath.split(part_name)
    return posixpath.join(directory, '_rels', f"{filename}.rels")


def resolve_target(source_part: str, target: str) -> str:
    """Resolve a relationship Target relative to the part that owns the .rels file."""
    if target.startswith('/'):
        return target.lstrip('/')
    base = posixpath.dirname(source_part)
    return posixpath.normpath(posixpath.join(base, target))


def relative_target(source_part: str, part_name: str) -> str:
    return posixpath.relpath(part_name, posixpath.dirname(source_part))

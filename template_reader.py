import io
import logging
import re
import zipfile
from dataclasses import dataclass
from typing import Dict, List, Optional

from lxml import etree

from errors import TemplateError
from lyrics import Metadata
from ooxml import CONTENT_TYPES_PART, parse_xml, serialize_xml


logger = logging.getLogger(__name__)

SLIDE_PART_RE = re.compile(r'^ppt/slides/slide(\d+)\.xml$')


class TemplatePackage:
    """
    In-memory view of a .pptx archive: part name -> raw bytes.

    Parts keep the order they had in the uploaded archive; parts that are
    never touched are written back byte-for-byte.
    """

    def __init__(self, parts: Dict[str, bytes]):
        self.parts = dict(parts)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'TemplatePackage':
        """
        Open a presentation archive.

        Raises:
            TemplateError: if the data is empty or not a readable zip archive
        """
        if not data:
            raise TemplateError("Template file is empty. Please upload a valid .pptx file.")

        try:
            with zipfile.ZipFile(io.BytesIO(data), 'r') as zip_ref:
                parts = {}
                for info in zip_ref.infolist():
                    if info.is_dir():
                        continue
                    parts[info.filename] = zip_ref.read(info)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, RuntimeError) as e:
            raise TemplateError(
                "Template file is invalid. Please upload a valid .pptx file.", str(e)
            ) from e

        logger.debug(f"Loaded template archive with {len(parts)} parts")
        return cls(parts)

    def __contains__(self, part_name: str) -> bool:
        return part_name in self.parts

    def get(self, part_name: str) -> Optional[bytes]:
        return self.parts.get(part_name)

    def set(self, part_name: str, data: bytes):
        self.parts[part_name] = data

    @staticmethod
    def slide_number(part_name: str) -> Optional[int]:
        match = SLIDE_PART_RE.match(part_name)
        return int(match.group(1)) if match else None

    def slide_parts(self) -> List[str]:
        """Slide part names ordered by their numeric suffix (slide2 before slide10)."""
        slides = [name for name in self.parts if self.slide_number(name) is not None]
        return sorted(slides, key=self.slide_number)

    def read_xml(self, part_name: str):
        """
        Parse an XML part.

        Raises:
            TemplateError: if the part is missing or not well-formed XML
        """
        data = self.parts.get(part_name)
        if data is None:
            raise TemplateError(f"Template is missing required part: {part_name}")
        try:
            return parse_xml(data)
        except etree.XMLSyntaxError as e:
            raise TemplateError(f"Template part could not be parsed: {part_name}", str(e)) from e

    def write_xml(self, part_name: str, root):
        self.parts[part_name] = serialize_xml(root)

    def to_bytes(self) -> bytes:
        """Serialize the package, writing [Content_Types].xml first."""
        names = list(self.parts)
        if CONTENT_TYPES_PART in names:
            names.remove(CONTENT_TYPES_PART)
            names.insert(0, CONTENT_TYPES_PART)

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zip_out:
            for name in names:
                zip_out.writestr(name, self.parts[name])
        return buffer.getvalue()


@dataclass
class TemplateLayout:
    package: TemplatePackage
    slide_parts: List[str]
    title_slide_part: Optional[str]
    lyric_template_part: str


def read_template(data: bytes, metadata: Metadata) -> TemplateLayout:
    """
    Open the template and pick the title and lyric template slides.

    The first slide is the title slide when the metadata has a title or
    credits, in which case the lyric template is the second slide; otherwise
    the first slide is the lyric template.

    Args:
        data: Raw .pptx bytes
        metadata: Song metadata (decides whether a title slide is needed)

    Returns:
        TemplateLayout

    Raises:
        TemplateError: on empty/invalid archives or missing slides
    """
    package = TemplatePackage.from_bytes(data)
    slide_parts = package.slide_parts()

    if not slide_parts:
        raise TemplateError("Template file has no slides. Please use a valid PowerPoint template.")

    if metadata.has_title_slide:
        if len(slide_parts) < 2:
            raise TemplateError(
                "Template needs at least 2 slides (title slide and lyrics slide) "
                "when a title or credits are provided."
            )
        title_slide_part = slide_parts[0]
        lyric_template_part = slide_parts[1]
    else:
        title_slide_part = None
        lyric_template_part = slide_parts[0]

    logger.info(
        f"Template has {len(slide_parts)} slides; "
        f"title slide: {title_slide_part or 'none'}, lyric template: {lyric_template_part}"
    )
    return TemplateLayout(
        package=package,
        slide_parts=slide_parts,
        title_slide_part=title_slide_part,
        lyric_template_part=lyric_template_part,
    )

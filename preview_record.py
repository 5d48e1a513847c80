"""
Preview Record Generator

Creates an Excel spreadsheet listing every parsed lyric line next to its
Simplified Chinese and pinyin, so a lyric sheet can be proofread before it
is projected.

Usage:
    from preview_record import PreviewRecordGenerator
    generator = PreviewRecordGenerator(entries, metadata)
    generator.generate_excel("preview.xlsx")
"""

import logging
import re
from datetime import datetime
from typing import Dict, List

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from lyrics import Lyric, LyricEntry, Metadata, Section


logger = logging.getLogger(__name__)

ILLEGAL_CHARACTERS_RE = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F]')


class PreviewRecordGenerator:
    """Generate an Excel preview record from parsed lyric entries"""

    HEADERS = [
        "Line",
        "Type",
        "Section",
        "Original Text",
        "Simplified Chinese",
        "Pinyin",
        "Status",
    ]

    COLUMN_WIDTHS = {
        'A': 8,   # Line
        'B': 10,  # Type
        'C': 15,  # Section
        'D': 40,  # Original
        'E': 40,  # Simplified
        'F': 50,  # Pinyin
        'G': 12,  # Status
    }

    def __init__(self, entries: List[LyricEntry], metadata: Metadata = None):
        self.entries = entries
        self.metadata = metadata or Metadata()

        # Statistics
        self.stats = {
            "total_records": 0,
            "sections": 0,
            "lyric_lines": 0,
            "fallback_lines": 0,
        }

    def sanitize_text(self, text):
        """Remove control characters that Excel refuses to store."""
        if not text or not isinstance(text, str):
            return text
        return ILLEGAL_CHARACTERS_RE.sub('', text)

    def create_workbook(self):
        """Create and style the Excel workbook"""
        wb = Workbook()
        ws = wb.active
        ws.title = "Lyrics Preview"

        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        header_font = Font(bold=True, color="FFFFFF", size=11)
        header_alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)

        for col_num, header in enumerate(self.HEADERS, 1):
            cell = ws.cell(row=1, column=col_num)
            cell.value = header
            cell.fill = header_fill
            cell.font = header_font
            cell.alignment = header_alignment

        for col, width in self.COLUMN_WIDTHS.items():
            ws.column_dimensions[col].width = width

        # Freeze header row
        ws.freeze_panes = 'A2'

        return wb, ws

    def generate_records(self) -> List[Dict]:
        records = []
        line_number = 0
        for entry in self.entries:
            if isinstance(entry, Section):
                self.stats["sections"] += 1
                records.append({
                    "line": "",
                    "type": "Section",
                    "section": entry.label,
                    "original": entry.raw_line,
                    "simplified": "",
                    "pinyin": "",
                    "status": "",
                })
            elif isinstance(entry, Lyric):
                line_number += 1
                self.stats["lyric_lines"] += 1
                fallback = not entry.pinyin
                if fallback:
                    self.stats["fallback_lines"] += 1
                records.append({
                    "line": line_number,
                    "type": "Lyric",
                    "section": entry.section,
                    "original": entry.original,
                    "simplified": entry.simplified,
                    "pinyin": entry.pinyin,
                    "status": "Fallback" if fallback else "OK",
                })

        self.stats["total_records"] = len(records)
        return records

    def add_record(self, ws, row_num, record_data):
        """Add one preview row to the worksheet."""
        text_alignment = Alignment(horizontal="left", vertical="top", wrap_text=True)
        center_alignment = Alignment(horizontal="center", vertical="center")
        border = Border(
            left=Side(style='thin', color='D3D3D3'),
            right=Side(style='thin', color='D3D3D3'),
            top=Side(style='thin', color='D3D3D3'),
            bottom=Side(style='thin', color='D3D3D3')
        )

        if record_data["type"] == "Section":
            fill = PatternFill(start_color="DCE6F1", end_color="DCE6F1", fill_type="solid")
        elif record_data["status"] == "Fallback":
            fill = PatternFill(start_color="FCE4D6", end_color="FCE4D6", fill_type="solid")
        else:
            fill = PatternFill(start_color="FFFFFF", end_color="FFFFFF", fill_type="solid")

        columns = [
            ('A', record_data['line'], center_alignment),
            ('B', record_data['type'], center_alignment),
            ('C', self.sanitize_text(record_data['section']), center_alignment),
            ('D', self.sanitize_text(record_data['original']), text_alignment),
            ('E', self.sanitize_text(record_data['simplified']), text_alignment),
            ('F', self.sanitize_text(record_data['pinyin']), text_alignment),
            ('G', record_data['status'], center_alignment),
        ]

        for col, value, alignment in columns:
            cell = ws[f"{col}{row_num}"]
            cell.value = value
            cell.alignment = alignment
            cell.fill = fill
            cell.border = border

        if record_data["type"] == "Section":
            ws[f"C{row_num}"].font = Font(bold=True)

    def add_summary_sheet(self, wb):
        """Add a summary sheet with statistics"""
        ws = wb.create_sheet("Summary")

        ws['A1'] = "Lyrics Preview Summary"
        ws['A1'].font = Font(bold=True, size=14, color="366092")

        rows = [
            ("", ""),
            ("Generation Date:", datetime.now().strftime("%Y-%m-%d %H:%M:%S")),
            ("", ""),
            ("Song:", ""),
            ("  Title:", self.sanitize_text(self.metadata.title)),
            ("  Credits:", self.sanitize_text(self.metadata.credits)),
            ("", ""),
            ("Statistics:", ""),
            ("  Sections:", self.stats['sections']),
            ("  Lyric Lines:", self.stats['lyric_lines']),
            ("  Lines Without Pinyin:", self.stats['fallback_lines']),
        ]

        for row_num, (label, value) in enumerate(rows, 3):
            ws[f'A{row_num}'] = label
            ws[f'B{row_num}'] = value
            if label and label.endswith(":"):
                ws[f'A{row_num}'].font = Font(bold=True)

        ws.column_dimensions['A'].width = 25
        ws.column_dimensions['B'].width = 40

    def generate_excel(self, output):
        """
        Generate the Excel file.

        Args:
            output: File path or writable binary file object
        """
        wb, ws = self.create_workbook()
        records = self.generate_records()

        for row_num, record in enumerate(records, 2):
            self.add_record(ws, row_num, record)

        self.add_summary_sheet(wb)
        wb.save(output)

        logger.info(
            f"Preview record written: {self.stats['lyric_lines']} lines, "
            f"{self.stats['fallback_lines']} without pinyin"
        )
        return self.stats

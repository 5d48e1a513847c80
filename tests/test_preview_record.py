import io

from openpyxl import load_workbook

from lyrics import Metadata, parse_lyrics, with_enrichment
from preview_record import PreviewRecordGenerator


def test_generate_excel_lists_sections_and_lines():
    entries, metadata = parse_lyrics("Title: Grace\n[Verse]\n奇異恩典\n何等甘甜\n[Chorus]\n我罪已得赦免")
    entries[1] = with_enrichment(entries[1], {"simplified": "奇异恩典", "pinyin": "qí yì ēn diǎn"})
    entries[2] = with_enrichment(entries[2], {"simplified": "何等甘甜", "pinyin": "hé děng gān tián"})
    entries[4] = with_enrichment(entries[4], {})

    buffer = io.BytesIO()
    stats = PreviewRecordGenerator(entries, metadata).generate_excel(buffer)

    assert stats["sections"] == 2
    assert stats["lyric_lines"] == 3
    assert stats["fallback_lines"] == 1

    buffer.seek(0)
    wb = load_workbook(buffer)
    assert wb.sheetnames == ["Lyrics Preview", "Summary"]

    ws = wb["Lyrics Preview"]
    rows = list(ws.iter_rows(values_only=True))
    assert rows[0] == tuple(PreviewRecordGenerator.HEADERS)
    assert rows[1][1:4] == ("Section", "[Verse]", "[Verse]")
    assert rows[2] == (1, "Lyric", "[Verse]", "奇異恩典", "奇异恩典", "qí yì ēn diǎn", "OK")
    assert rows[5][0] == 3
    assert rows[5][-1] == "Fallback"
    assert ws.freeze_panes == "A2"

    summary = dict(
        (label.strip(), value) for label, value in wb["Summary"].iter_rows(min_row=3, max_col=2, values_only=True)
        if label
    )
    assert summary["Title:"] == "Grace"
    assert summary["Lyric Lines:"] == 3


def test_control_characters_are_removed(tmp_path):
    entries, _ = parse_lyrics("line\x07 with bell")
    output = tmp_path / "record.xlsx"

    PreviewRecordGenerator(entries, Metadata()).generate_excel(str(output))

    ws = load_workbook(output)["Lyrics Preview"]
    assert ws["D2"].value == "line with bell"

"""Template builders and a fake OpenAI client shared by the test modules."""

import io
import json
import zipfile
from types import SimpleNamespace

from pptx import Presentation
from pptx.util import Inches


LYRIC_TOKENS = ["{section}", "{pinyin1}", "{chinese1}", "{pinyin2}", "{chinese2}"]
TITLE_TOKENS = ["{title}", "{credits}"]


def build_template(slides, notes=False) -> bytes:
    """Build a .pptx whose slides hold one text box per string."""
    prs = Presentation()
    blank = prs.slide_layouts[6]
    for texts in slides:
        slide = prs.slides.add_slide(blank)
        for i, text in enumerate(texts):
            box = slide.shapes.add_textbox(Inches(1), Inches(0.5 + i), Inches(8), Inches(0.8))
            box.text_frame.text = text
        if notes:
            slide.notes_slide.notes_text_frame.text = "speaker notes"
    buffer = io.BytesIO()
    prs.save(buffer)
    return buffer.getvalue()


def rewrite_zip(data: bytes, drop=(), replace=None, add=None) -> bytes:
    replace = replace or {}
    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(data)) as zin, zipfile.ZipFile(out, 'w', zipfile.ZIP_DEFLATED) as zout:
        for info in zin.infolist():
            if info.filename in drop:
                continue
            zout.writestr(info.filename, replace.get(info.filename, zin.read(info)))
        for name, content in (add or {}).items():
            zout.writestr(name, content)
    return out.getvalue()


def read_part(data: bytes, name: str) -> bytes:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return zf.read(name)


def part_names(data: bytes):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return zf.namelist()


def slide_texts(data: bytes):
    """Text of every text box, per slide, in presentation order."""
    prs = Presentation(io.BytesIO(data))
    return [
        [shape.text_frame.text for shape in slide.shapes if shape.has_text_frame]
        for slide in prs.slides
    ]


# ----------------------------------------------------------------------------
# Fake OpenAI client
# ----------------------------------------------------------------------------

def prompt_texts(prompt: str):
    """Lines the enricher asked about, in order."""
    if "Input JSON:" in prompt:
        payload = prompt.split("Input JSON:\n", 1)[1].split("\n\nOutput", 1)[0]
        return [item["text"] for item in json.loads(payload)]
    return [prompt.rsplit("Text: ", 1)[1]]


def echo_result(text):
    return {"simplified": f"简{text}", "pinyin": f"py {text}"}


def echo_handler(prompt: str) -> str:
    texts = prompt_texts(prompt)
    if "Input JSON:" in prompt:
        return json.dumps(
            [dict(id=idx, **echo_result(text)) for idx, text in enumerate(texts)],
            ensure_ascii=False,
        )
    return json.dumps(echo_result(texts[0]), ensure_ascii=False)


class FakeCompletions:
    def __init__(self, handler):
        self.handler = handler
        self.prompts = []

    def create(self, model, messages, **kwargs):
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        content = self.handler(prompt)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(total_tokens=42),
        )


class FakeClient:
    def __init__(self, handler):
        self.completions = FakeCompletions(handler)
        self.chat = SimpleNamespace(completions=self.completions)

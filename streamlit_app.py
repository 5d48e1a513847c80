"""
Streamlit App for the Lyrics Slide Generator
============================================
Paste lyrics, upload a template deck, check the Simplified Chinese / pinyin
preview and download the generated PowerPoint.
"""

import io
import time

import streamlit as st

import config
from deck_builder import LyricsDeckBuilder
from enricher import LyricsEnricher
from errors import LyricsSlidesError
from lyrics import entries_to_preview, lyric_lines, parse_lyrics
from ooxml import PPTX_MIME_TYPE
from preview_record import PreviewRecordGenerator


st.set_page_config(
    page_title="Lyrics Slide Generator",
    layout="centered"
)

st.markdown("""
    <style>
    .main-header {
        font-size: 2.6rem;
        font-weight: bold;
        text-align: center;
        color: #1f77b4;
        margin-bottom: 0.2rem;
    }
    .sub-header {
        text-align: center;
        color: #666;
        margin-bottom: 2rem;
    }
    </style>
""", unsafe_allow_html=True)

st.markdown('<h1 class="main-header">歌词幻灯片生成器</h1>', unsafe_allow_html=True)
st.markdown('<p class="sub-header">Lyrics Slide Generator</p>', unsafe_allow_html=True)

if 'entries' not in st.session_state:
    st.session_state.entries = None
    st.session_state.metadata = None
    st.session_state.enrichment_time = 0
    st.session_state.output_file = None
    st.session_state.slide_count = 0

lyrics_text = st.text_area(
    "Lyrics",
    height=260,
    placeholder="Title: 何等恩典\nCredits: 词曲：XXX\n[Verse]\n...\n[Chorus]\n...",
    help='Optional "Title:" and "Credits:" lines; section markers like [Verse], [Chorus], [Bridge]'
)

uploaded_file = st.file_uploader(
    "Upload PowerPoint Template",
    type=['pptx'],
    help=f"Slide 1: {{title}} / {{credits}} (only used when a title or credits are given). "
         f"Next slide: {{pinyin1}} {{chinese1}} {{pinyin2}} {{chinese2}} {{section}} "
         f"(Max {config.MAX_TEMPLATE_MB}MB)"
)

if uploaded_file is not None:
    file_size = uploaded_file.size / (1024 * 1024)
    if file_size > config.MAX_TEMPLATE_MB:
        st.error(f"File size ({file_size:.2f} MB) exceeds the {config.MAX_TEMPLATE_MB}MB limit.")
        uploaded_file = None

if st.button("Process Lyrics", type="primary", use_container_width=True):
    entries, metadata = parse_lyrics(lyrics_text)
    lines = lyric_lines(entries)
    if not lines:
        st.error("未找到歌词行 No lyric lines found")
    else:
        progress_bar = st.progress(0)
        status_text = st.empty()
        status_text.text(f"Processing {len(lines)} lines...")
        start_time = time.time()

        enricher = LyricsEnricher()
        if not enricher.is_configured:
            st.warning("OPENAI_API_KEY is not configured: original text is kept and pinyin is left empty.")

        def on_progress(done, total):
            progress_bar.progress(int(done * 100 / total))
            status_text.text(f"Processed {done}/{total} lines")

        st.session_state.entries = enricher.enrich_entries(entries, progress_callback=on_progress)
        st.session_state.metadata = metadata
        st.session_state.enrichment_time = time.time() - start_time
        st.session_state.output_file = None
        progress_bar.progress(100)

        fallback = enricher.stats["lines_fallback"]
        if fallback:
            st.warning(f"{fallback} line(s) could not be converted and keep their original text.")
        st.success(f"处理完成 Processing complete in {st.session_state.enrichment_time:.2f} seconds")

if st.session_state.entries:
    metadata = st.session_state.metadata
    st.markdown("### Preview")
    if metadata.title:
        st.markdown(f"**标题 Title:** {metadata.title}")
    if metadata.credits:
        st.markdown(f"**制作人 Credits:** {metadata.credits}")

    preview = entries_to_preview(st.session_state.entries)
    st.dataframe(
        [
            {
                "Section": item["section"],
                "Original": item["original"],
                "Simplified": item.get("simplified", ""),
                "Pinyin": item.get("pinyin", ""),
            }
            for item in preview if item["type"] == "lyric"
        ],
        use_container_width=True,
    )

    record_buffer = io.BytesIO()
    PreviewRecordGenerator(st.session_state.entries, metadata).generate_excel(record_buffer)
    st.download_button(
        label="Download Preview Record (.xlsx)",
        data=record_buffer.getvalue(),
        file_name="lyrics-preview.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        use_container_width=True
    )

    if uploaded_file is None:
        st.info("Upload a template to generate slides.")
    elif st.button("Generate PPTX", type="primary", use_container_width=True):
        try:
            builder = LyricsDeckBuilder(uploaded_file.getvalue())
            result = builder.build(st.session_state.entries, metadata)
            st.session_state.output_file = result.content
            st.session_state.slide_count = result.slide_count
        except LyricsSlidesError as e:
            st.error(f"生成失败 Generation failed: {e.message}")
            if e.details:
                st.caption(e.details)

if st.session_state.output_file is not None:
    st.markdown("---")
    st.success(f"PPTX generated with {st.session_state.slide_count} slides")
    st.download_button(
        label="Download PowerPoint",
        data=st.session_state.output_file,
        file_name=config.OUTPUT_FILENAME,
        mime=PPTX_MIME_TYPE,
        type="primary",
        use_container_width=True
    )

"""
Placeholder substitution over parsed slide XML.

Template authors type tokens such as {pinyin1} or {title} into text boxes.
Each token ends up inside a DrawingML text node (a:t), wherever the shape
sits: a plain text box, a placeholder, a table cell, a group or a field.
The walker below visits every such node regardless of nesting.
"""

import logging
import re
from typing import Dict, Iterable, Iterator, Optional

from lyrics import LyricPair, Metadata
from ooxml import qn


logger = logging.getLogger(__name__)

A_T = qn('a:t')
A_P = qn('a:p')

LYRIC_TOKENS = ('{pinyin1}', '{chinese1}', '{pinyin2}', '{chinese2}', '{section}')
TITLE_TOKENS = ('{title}', '{credits}')

# Plain words treated as title placeholders when a run carries no explicit token
TITLE_KEYWORDS = {
    'Title': '{title}',
    'Credits': '{credits}',
}


def lyric_substitutions(pair: LyricPair) -> Dict[str, str]:
    line1 = pair.line1
    line2 = pair.line2
    return {
        '{pinyin1}': line1.pinyin or '',
        '{chinese1}': line1.simplified or '',
        '{pinyin2}': (line2.pinyin or '') if line2 else '',
        '{chinese2}': (line2.simplified or '') if line2 else '',
        '{section}': pair.section_label or '',
    }


def title_substitutions(metadata: Metadata) -> Dict[str, str]:
    return {
        '{title}': metadata.title or '',
        '{credits}': metadata.credits or '',
    }


def iter_text_nodes(node) -> Iterator:
    """Yield every a:t element under node (node included), depth first."""
    if not isinstance(node.tag, str):
        # comments and processing instructions
        return
    if node.tag == A_T:
        yield node
        return
    for child in node:
        yield from iter_text_nodes(child)


def merge_split_tokens(root, tokens: Iterable[str]) -> int:
    """
    Re-join tokens that PowerPoint split across several runs of a paragraph.

    The characters of a split token are moved into the run where the token
    starts, so that run's formatting is kept. Returns the number of tokens
    that were merged.
    """
    tokens = [token for token in tokens if token]
    if not tokens:
        return 0
    pattern = re.compile('|'.join(re.escape(token) for token in tokens))

    merged = 0
    for paragraph in root.iter(A_P):
        nodes = list(iter_text_nodes(paragraph))
        if len(nodes) < 2:
            continue

        original = [node.text or '' for node in nodes]
        starts = []
        offset = 0
        for text in original:
            starts.append(offset)
            offset += len(text)

        def run_at(position: int) -> int:
            for i, start in enumerate(starts):
                if start <= position < start + len(original[i]):
                    return i
            return len(original) - 1

        texts = list(original)
        paragraph_merged = 0
        # Right to left so run start offsets of earlier matches stay valid
        for match in reversed(list(pattern.finditer(''.join(original)))):
            first = run_at(match.start())
            last = run_at(match.end() - 1)
            if first == last:
                continue

            tail_cut = match.end() - starts[last]
            moved = ''.join(texts[first + 1:last]) + texts[last][:tail_cut]
            texts[first] = texts[first] + moved
            for i in range(first + 1, last):
                texts[i] = ''
            texts[last] = texts[last][tail_cut:]
            paragraph_merged += 1

        if paragraph_merged:
            for node, text in zip(nodes, texts):
                if (node.text or '') != text:
                    node.text = text
            merged += paragraph_merged

    if merged:
        logger.debug(f"Merged {merged} placeholder token(s) split across runs")
    return merged


def _replace_text(text: str, substitutions: Dict[str, str],
                  keywords: Optional[Dict[str, str]]) -> str:
    # Explicit tokens win over the label keywords
    if keywords and not any(token in text for token in keywords.values()):
        for word, token in keywords.items():
            value = substitutions.get(token, '')
            if not value:
                continue
            if re.search(rf'\b{re.escape(word)}\b', text):
                return value

    new_text = text
    for token, value in substitutions.items():
        if token in new_text:
            new_text = new_text.replace(token, value)
    return new_text


def substitute_tokens(root, substitutions: Dict[str, str],
                      keywords: Optional[Dict[str, str]] = None) -> int:
    """
    Replace placeholder tokens in every text node under root.

    Unknown tokens are left verbatim. A node is only rewritten when its text
    actually changes.

    Args:
        root: lxml element (slide root or any fragment)
        substitutions: token -> replacement text
        keywords: optional plain word -> token map; a run containing the
            word but not the token is replaced wholesale by that token's value

    Returns:
        Number of text nodes rewritten
    """
    merge_split_tokens(root, substitutions.keys())

    changed = 0
    for node in iter_text_nodes(root):
        text = node.text or ''
        new_text = _replace_text(text, substitutions, keywords)
        if new_text != text:
            node.text = new_text
            changed += 1
    return changed


def fill_lyric_slide(root, pair: LyricPair) -> int:
    return substitute_tokens(root, lyric_substitutions(pair))


def fill_title_slide(root, metadata: Metadata) -> int:
    return substitute_tokens(root, title_substitutions(metadata), TITLE_KEYWORDS)

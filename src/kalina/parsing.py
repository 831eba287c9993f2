# kalina: Lightweight textual parsing of model output: the first-turn TITLE directive and fenced code blocks. Pure functions only.

import re
from typing import List, NamedTuple, Optional

# Complete directive line (terminated by a newline).
_TITLE_LINE_RE = re.compile(r"^\s*TITLE:\s*([^\n]+)\n")
# Directive at the very end of the text (stream finished without a newline).
_TITLE_TAIL_RE = re.compile(r"^\s*TITLE:\s*([^\n]+)$")
# Directive, complete or still streaming, plus one following newline.
_TITLE_STRIP_RE = re.compile(r"^\s*TITLE:\s*[^\n]*\n?")

_CODE_BLOCK_RE = re.compile(r"```(\w+)?\n([\s\S]*?)\n?```")


class CodeBlock(NamedTuple):
    language: str
    code: str


def match_title(text: str, final: bool = False) -> Optional[str]:
    """
    Return the title from a leading 'TITLE: <text>' line, or None.

    While streaming the line only counts once its newline has arrived, so a
    half-received title is never stored. With final=True an unterminated
    directive at the end of the text is accepted too.
    """
    m = _TITLE_LINE_RE.match(text)
    if m is None and final:
        m = _TITLE_TAIL_RE.match(text)
    if m is None:
        return None
    title = m.group(1).strip()
    return title or None


def strip_title(text: str) -> str:
    """Remove a leading TITLE directive (and the newline after it) from text."""
    return _TITLE_STRIP_RE.sub("", text, count=1)


def extract_code_blocks(text: str) -> List[CodeBlock]:
    """Return every fenced code block in text; the language tag defaults to 'text'."""
    return [CodeBlock(m.group(1) or "text", m.group(2)) for m in _CODE_BLOCK_RE.finditer(text)]

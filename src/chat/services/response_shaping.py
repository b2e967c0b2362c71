"""
Response shaping applied to every answer text before a client sees it.

The upstream bot sometimes appends confirmation boilerplate after generating
an image ("已为你生成一张猫的图片。", "I've already generated an image of a cat
for you."). Lines that are exactly such a sentence are dropped.
"""

import re

BOILERPLATE_LINE_PATTERNS = (
    re.compile(r"^已为你生成一张.*?的图片。?$"),
    re.compile(r"^I('ve| have)? already generated an image of .*? for you\.?$", re.IGNORECASE),
)


def is_boilerplate_line(line: str) -> bool:
    stripped = line.strip()
    return any(pattern.match(stripped) for pattern in BOILERPLATE_LINE_PATTERNS)


def sanitize_answer_text(text: str) -> str:
    """Remove boilerplate confirmation lines; everything else is kept verbatim."""
    if not text:
        return text
    return "\n".join(line for line in text.split("\n") if not is_boilerplate_line(line))

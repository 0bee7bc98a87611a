"""
Text normalization for feed items.

Pure functions, independent of the parser, so each rule can be tested on its
own:
- CDATA unwrapping and HTML entity decoding
- Markup stripping and whitespace collapsing
- Description truncation
- Optional, named summary rewrite rules for specific feed families
"""

import html
import re
from dataclasses import dataclass
from typing import Callable, Optional

from bs4 import BeautifulSoup

MAX_DESCRIPTION_CHARS = 300
ELLIPSIS = "..."

_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")
_POINTS_COMMENTS_RE = re.compile(
    r"Points:\s*(\d+)\s*#\s*Comments:\s*(\d+)",
    re.IGNORECASE,
)


def strip_cdata(text: str) -> str:
    """Unwrap ``<![CDATA[...]]>`` sections, keeping their contents."""
    return _CDATA_RE.sub(lambda m: m.group(1), text)


def decode_entities(text: str) -> str:
    """
    Decode HTML entities.

    Covers the core five (``&amp; &lt; &gt; &quot; &#39;``), ``&apos;``,
    ``&nbsp;`` and any other named or numeric reference. Non-breaking
    spaces become plain spaces.
    """
    return html.unescape(text).replace("\xa0", " ")


def strip_tags(text: str) -> str:
    """Remove markup tags, keeping the text between them."""
    if "<" not in text:
        return text
    soup = BeautifulSoup(text, "lxml")
    return soup.get_text(separator=" ")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def truncate(text: str, limit: int = MAX_DESCRIPTION_CHARS) -> str:
    """Cut ``text`` to ``limit`` characters, ending with an ellipsis marker."""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def clean_title(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return collapse_whitespace(decode_entities(strip_cdata(raw)))


def clean_link(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return decode_entities(strip_cdata(raw)).strip()


def clean_description(
    raw: Optional[str],
    rules: tuple["NormalizationRule", ...] = (),
) -> str:
    """
    Produce a plain-text summary: unwrap, decode, strip markup, collapse,
    apply rules, then truncate.

    Entities are decoded twice because feeds commonly escape their embedded
    HTML (``&lt;p&gt;``); the second pass handles text inside those tags.
    """
    if not raw:
        return ""
    text = decode_entities(strip_cdata(raw))
    text = decode_entities(strip_tags(text))
    text = collapse_whitespace(text)
    text = apply_rules(text, rules)
    return truncate(text)


# =============================================================================
# Named normalization rules
# =============================================================================

@dataclass(frozen=True)
class NormalizationRule:
    """A summary rewrite that only some feed families need."""
    name: str
    rewrite: Callable[[str], Optional[str]]  # None = rule does not apply


def _points_comments(text: str) -> Optional[str]:
    match = _POINTS_COMMENTS_RE.search(text)
    if not match:
        return None
    points, comments = match.groups()
    return f"{points} points · {comments} comments"


AGGREGATOR_POINTS_COMMENTS = NormalizationRule(
    name="aggregator_points_comments",
    rewrite=_points_comments,
)

RULES: dict[str, NormalizationRule] = {
    AGGREGATOR_POINTS_COMMENTS.name: AGGREGATOR_POINTS_COMMENTS,
}


def resolve_rules(names: list[str]) -> tuple[NormalizationRule, ...]:
    """Look up rules by name. Unknown names raise ``KeyError``."""
    return tuple(RULES[name] for name in names)


def apply_rules(text: str, rules: tuple[NormalizationRule, ...]) -> str:
    """Apply the first rule that matches; otherwise return ``text`` as is."""
    for rule in rules:
        rewritten = rule.rewrite(text)
        if rewritten is not None:
            return rewritten
    return text

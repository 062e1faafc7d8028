"""Removal of user-authored style directives from scene descriptions."""

import re
from typing import Iterable, List, Pattern


# Art-style and medium words a user may try to force on a single scene.
STYLE_TERMS = (
    r"watercolou?r",
    r"oil[- ]painting",
    r"oil[- ]paint",
    r"pastel",
    r"anime",
    r"manga",
    r"cartoon",
    r"comic(?:[- ]book)?",
    r"pixel[- ]art",
    r"photo[- ]?realistic",
    r"realistic",
    r"hyper[- ]?realistic",
    r"ghibli",
    r"studio ghibli",
    r"disney",
    r"pixar",
    r"webtoon",
    r"3d[- ]render(?:ed)?",
    r"sketch",
    r"pencil[- ]drawing",
    r"line[- ]art",
    r"storybook",
    r"fairy[- ]?tale illustration",
    r"cel[- ]shaded",
    r"vintage",
    r"retro",
    r"impressionist",
    r"noir",
)

# Korean art-style and medium words, matched only as whole words before 스타일/풍.
KOREAN_STYLE_TERMS = (
    r"지브리",
    r"디즈니",
    r"픽사",
    r"수채화",
    r"유화",
    r"파스텔",
    r"애니메이션",
    r"애니",
    r"만화",
    r"카툰",
    r"웹툰",
    r"동화책",
    r"동화",
    r"스케치",
    r"연필화",
    r"한국화",
    r"수묵화",
    r"실사",
    r"사실적인",
    r"일러스트",
    r"픽셀아트",
    r"빈티지",
    r"레트로",
)

_TERM_GROUP = "(?:" + "|".join(STYLE_TERMS) + ")"
_KOREAN_TERM_GROUP = "(?:" + "|".join(KOREAN_STYLE_TERMS) + ")"

STYLE_DIRECTIVE_PATTERNS: List[Pattern[str]] = [
    # "in watercolor style", "in a Ghibli-style", "in the style of Disney"
    re.compile(rf"\b(?:drawn |painted |rendered |done )?in (?:an? |the )?{_TERM_GROUP}[- ]?style\b", re.IGNORECASE),
    re.compile(rf"\b(?:drawn |painted |rendered |done )?in the style of (?:an? )?{_TERM_GROUP}\b", re.IGNORECASE),
    # "as an anime", "as a cartoon"
    re.compile(rf"\bas (?:an? )?{_TERM_GROUP}(?: illustration| drawing| painting| art)?\b", re.IGNORECASE),
    # "in pastel tones", "in watercolor colors"
    re.compile(
        rf"\bin (?:soft |muted |bright )?{_TERM_GROUP} (?:tones?|colou?rs?|palette|shades|hues)\b",
        re.IGNORECASE,
    ),
    # "watercolor style", "anime-style"
    re.compile(rf"\b{_TERM_GROUP}[- ]style\b", re.IGNORECASE),
    # "style: anime"
    re.compile(rf"\bstyle\s*[:=]\s*{_TERM_GROUP}\b", re.IGNORECASE),
    # Korean: "수채화 스타일로", "지브리 풍으로"
    re.compile(
        rf"(?<!\S)(?:{_KOREAN_TERM_GROUP}|{_TERM_GROUP})\s*(?:스타일|풍)(?:로|으로)?(?=\s|$|[,.])",
        re.IGNORECASE,
    ),
]

_WHITESPACE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.;:!?])")
_REPEATED_PUNCT = re.compile(r"([,;:])(?:\s*[,;:])+")
_LEADING_PUNCT = re.compile(r"^[\s,;:]+")
_TRAILING_SEPARATOR = re.compile(r"[\s,;:]+$")


def _tidy(text: str) -> str:
    text = _WHITESPACE.sub(" ", text)
    text = _SPACE_BEFORE_PUNCT.sub(r"\1", text)
    text = _REPEATED_PUNCT.sub(r"\1", text)
    text = _LEADING_PUNCT.sub("", text)
    text = _TRAILING_SEPARATOR.sub("", text)
    return text.strip()


def sanitize_scene_text(text: str | None, patterns: Iterable[Pattern[str]] = STYLE_DIRECTIVE_PATTERNS) -> str:
    """Strip style directives from scene text, then collapse whitespace and trim.

    Pure and deterministic; applying it twice gives the same result as once.
    An empty return value means the scene carries no usable text.
    """
    if not text:
        return ""

    previous = None
    current = text
    # Removing one directive can expose another, so run to a fixed point.
    while current != previous:
        previous = current
        for pattern in patterns:
            current = pattern.sub(" ", current)
        current = _tidy(current)

    return current


def sanitize_scenes(texts: Iterable[str | None]) -> List[str]:
    """Sanitize every scene and drop those left empty, preserving order."""
    sanitized = (sanitize_scene_text(text) for text in texts)
    return [text for text in sanitized if text]

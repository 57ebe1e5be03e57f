from __future__ import annotations

import re
from typing import Iterable

from damflow_core.assets.types import Specificity

PALETTE: dict[str, tuple[int, int, int]] = {
    "Red": (220, 38, 38),
    "Orange": (249, 115, 22),
    "Yellow": (250, 204, 21),
    "Green": (34, 197, 94),
    "Teal": (20, 184, 166),
    "Blue": (59, 130, 246),
    "Purple": (147, 51, 234),
    "Pink": (236, 72, 153),
    "Black": (0, 0, 0),
    "White": (255, 255, 255),
    "Gray": (128, 128, 128),
}

_PALETTE_LOOKUP = {name.lower(): name for name in PALETTE}
_COLOR_ALIASES = {
    "grey": "Gray",
    "silver": "Gray",
    "violet": "Purple",
    "magenta": "Pink",
    "cyan": "Teal",
    "turquoise": "Teal",
    "navy": "Blue",
    "gold": "Yellow",
    "brown": "Orange",
}
_HEX_RE = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")

MAX_COLORS = 3
TAG_LIMITS = {Specificity.GENERAL: (8, 10), Specificity.HIGH: (20, 25)}

PALETTE_TEXT = ", ".join(PALETTE)

IMAGE_SYSTEM_PROMPT = (
    "You are a visual analyst cataloguing assets for e-learning courses "
    "(Storyline, Rise, Captivate). Respond with a single JSON object. "
    f"COLORS: use ONLY names from [{PALETTE_TEXT}]."
)

VIDEO_SYSTEM_PROMPT = (
    "You are a video content analyst for e-learning. Describe the instructional "
    "value, pacing and content of videos, GIFs and recordings. Respond with a "
    "single JSON object describing the whole clip, never one entry per frame. "
    f"COLORS: use ONLY names from [{PALETTE_TEXT}]."
)

DOCUMENT_SYSTEM_PROMPT = (
    "You are an instructional design archivist. Respond with a single JSON object."
)

EXPANSION_SYSTEM_PROMPT = (
    "You expand search terms for an educational technology asset library. "
    "Respond with a single JSON object."
)


def image_prompt(specificity: Specificity) -> str:
    if specificity == Specificity.HIGH:
        return (
            "Analyze this image in high detail for e-learning use. Return JSON with:\n"
            "1. 'tags': 20-25 precise keywords (objects, style, technical).\n"
            "2. 'description': a detailed breakdown of composition and utility.\n"
            f"3. 'colors': up to 3 names from [{PALETTE_TEXT}].\n"
            "4. 'educationalContext': how this can be used in training.\n"
            "5. 'storylineUseCase': a specific slide suggestion "
            "(e.g. 'Background', 'Character')."
        )
    return (
        "Analyze this image generally. Return JSON with:\n"
        "1. 'tags': 8-10 broad categories.\n"
        "2. 'description': a brief summary.\n"
        f"3. 'colors': up to 3 names from [{PALETTE_TEXT}]."
    )


def motion_prompt(specificity: Specificity, transcript_excerpt: str) -> str:
    context = f'Context: Transcript: "{transcript_excerpt}"\n'
    if specificity == Specificity.HIGH:
        return context + (
            "Analyze these frames and the transcript in depth. Return JSON with:\n"
            "1. 'tags': 20-25 keywords (action, software, instructional method).\n"
            "2. 'description': a detailed step-by-step or narrative summary.\n"
            f"3. 'colors': up to 3 names from [{PALETTE_TEXT}].\n"
            "4. 'instructionalApproach': e.g. 'Demo' or 'Scenario'.\n"
            "5. 'educationalContext': how this can be used in training."
        )
    return context + (
        "Analyze these frames and the transcript generally. Return JSON with:\n"
        "1. 'tags': 8-10 broad topics.\n"
        "2. 'description': a brief summary.\n"
        f"3. 'colors': up to 3 names from [{PALETTE_TEXT}]."
    )


def audio_prompt(specificity: Specificity, transcript_excerpt: str) -> str:
    low, high = TAG_LIMITS[specificity]
    return (
        f'Analyze this audio recording from its transcript: "{transcript_excerpt}"\n'
        "Return JSON with:\n"
        f"1. 'tags': {low}-{high} keywords.\n"
        "2. 'description': a summary of the recording.\n"
        "3. 'educationalContext': the topic it covers."
    )


def document_prompt(specificity: Specificity, text_sample: str) -> str:
    low, high = TAG_LIMITS[specificity]
    return (
        "Analyze this document text. Return JSON: "
        f'{{"tags": [{low}-{high} keywords], "description": "Summary", '
        '"educationalContext": "Topic"}\n\n'
        f"{text_sample}"
    )


def expansion_prompt(term: str) -> str:
    return (
        f'Given the search term "{term}" in an EdTech context, return JSON with a '
        "'terms' array of 3-5 synonyms or closely related terms. Example: "
        '"tutorial" -> ["walkthrough", "demonstration", "guide"].'
    )


def _parse_hex(value: str) -> tuple[int, int, int] | None:
    match = _HEX_RE.match(value.strip())
    if not match:
        return None
    digits = match.group(1)
    if len(digits) == 3:
        digits = "".join(char * 2 for char in digits)
    return (int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16))


def nearest_palette_color(rgb: tuple[int, int, int]) -> str:
    best_name = "Gray"
    best_distance: float | None = None
    for name, (red, green, blue) in PALETTE.items():
        distance = (
            (rgb[0] - red) ** 2 * 0.30
            + (rgb[1] - green) ** 2 * 0.59
            + (rgb[2] - blue) ** 2 * 0.11
        )
        if best_distance is None or distance < best_distance:
            best_name = name
            best_distance = distance
    return best_name


def palette_color(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    lowered = cleaned.lower()
    if lowered in _PALETTE_LOOKUP:
        return _PALETTE_LOOKUP[lowered]
    if lowered in _COLOR_ALIASES:
        return _COLOR_ALIASES[lowered]
    rgb = _parse_hex(cleaned)
    if rgb is not None:
        return nearest_palette_color(rgb)
    for word in re.split(r"[\s\-/]+", lowered):
        if word in _PALETTE_LOOKUP:
            return _PALETTE_LOOKUP[word]
        if word in _COLOR_ALIASES:
            return _COLOR_ALIASES[word]
    return None


def normalize_colors(values: object) -> list[str]:
    if isinstance(values, str):
        values = re.split(r"[,;]", values)
    if not isinstance(values, list):
        return []
    colors: list[str] = []
    for value in values:
        name = palette_color(value)
        if name and name not in colors:
            colors.append(name)
        if len(colors) >= MAX_COLORS:
            break
    return colors


def normalize_tags(values: Iterable[object] | object, limit: int) -> list[str]:
    if isinstance(values, str):
        values = values.split(",")
    if not isinstance(values, (list, tuple)):
        return []
    tags: list[str] = []
    seen: set[str] = set()
    for value in values:
        if not isinstance(value, str):
            continue
        tag = " ".join(value.split())
        key = tag.lower()
        if not tag or key in seen:
            continue
        seen.add(key)
        tags.append(tag)
        if len(tags) >= limit:
            break
    return tags

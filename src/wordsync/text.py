# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Word-level text helpers shared by the chunker, aligner and element index.
"""

import re

# Apostrophe look-alikes that speech recognizers and typesetters substitute
# for a plain ASCII apostrophe.
APOSTROPHE_VARIANTS = re.compile("[ʼ‘’′]")

# Anything that is not a letter, digit or apostrophe, anchored at either end.
# \w also matches underscore, so it is listed explicitly.
_EDGE_PUNCTUATION = re.compile(r"^(?:_|[^\w'])+|(?:_|[^\w'])+$")

# One or more terminal marks, optionally followed by closing quotes/brackets
_SENTENCE_END = re.compile(r"[.!?]+[\"'”’»)\]}]*$")

_TOKEN = re.compile(r"\S+")


def normalize_word(text: str | None) -> str:
    """Normalize a word for matching.

    Lowercases, unifies apostrophe variants and strips leading/trailing
    characters that are not letters, digits or apostrophes. Internal
    punctuation is preserved.

    Examples:
        "Hello," -> "hello"
        "“Don’t”" -> "don't"
        "3.14" -> "3.14"
        "--" -> ""
    """
    if not text:
        return ""
    lowered = APOSTROPHE_VARIANTS.sub("'", text.lower())
    return _EDGE_PUNCTUATION.sub("", lowered)


def is_sentence_end(text: str | None) -> bool:
    """Check whether a token ends a sentence (e.g. "end.", "what?!", 'said."')."""
    return bool(_SENTENCE_END.search((text or "").strip()))


def iter_tokens(text: str):
    """Yield (start, end, token) for every whitespace-delimited token."""
    for match in _TOKEN.finditer(text):
        yield match.start(), match.end(), match.group(0)

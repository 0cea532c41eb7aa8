"""
Tokenizer shared by index construction and query processing.

Text is lowercased and split on non-alphanumeric boundaries; empty tokens
are dropped. Course codes also contribute the whole lowercased code as one
token, so "comp-1020" is findable as a unit and not only as "comp" + "1020".
"""

import re

_TOKEN = re.compile(r"[^\W_]+")
_CODE_LIKE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)+$")


def tokenize(text: str) -> list[str]:
    """
    Split text into lowercase alphanumeric tokens, duplicates kept.

    Example:
        >>> tokenize("Intro to C++ (Part-2)")
        ['intro', 'to', 'c', 'part', '2']
    """
    if not text:
        return []
    return _TOKEN.findall(text.lower())


def tokenize_code(code: str) -> list[str]:
    """Tokens of a course code plus the un-split code itself."""
    tokens = tokenize(code)
    whole = code.strip().lower()
    if whole and whole not in tokens:
        tokens.append(whole)
    return tokens


def tokenize_query(text: str) -> list[str]:
    """
    Distinct query tokens in first-seen order.

    Whitespace-separated pieces shaped like a hyphenated course code are
    kept whole as well, matching the extra token tokenize_code() indexes.
    """
    tokens: list[str] = []
    for piece in text.split():
        piece_tokens = tokenize(piece)
        tokens.extend(piece_tokens)
        lowered = piece.lower().strip(".,;:!?()[]\"'")
        if _CODE_LIKE.match(lowered):
            tokens.append(lowered)
    return list(dict.fromkeys(tokens))

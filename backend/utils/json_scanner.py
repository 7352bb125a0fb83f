# backend/utils/json_scanner.py
"""
Locate JSON objects embedded in free-form model text.

Models wrap their JSON in prose, markdown fences or trailing commentary.
Rather than a greedy ``{...}`` match, the text is scanned once with a stack
of open-brace positions, ignoring braces inside double-quoted strings.
"""

from typing import List, Optional, Tuple


def find_json_block_span(text: str) -> Optional[Tuple[int, int]]:
    """
    Find the first balanced curly-brace block in ``text``.

    "First" means the block with the earliest opening brace that balances.
    An opening brace that never closes is skipped, so a complete object
    nested after it is still found. Strings are tracked from the first
    opening brace onwards. Single pass, linear in ``len(text)``.

    Returns:
        ``(start, end)`` slice bounds, or None if there is no balanced block
    """
    first = text.find("{")
    if first == -1:
        return None

    open_braces: List[int] = []
    best: Optional[Tuple[int, int]] = None
    in_string = False
    escaped = False

    for i in range(first, len(text)):
        ch = text[i]

        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            open_braces.append(i)
        elif ch == "}" and open_braces:
            start = open_braces.pop()
            if not open_braces:
                # Nothing opened earlier is still pending
                return start, i + 1
            if best is None or start < best[0]:
                best = (start, i + 1)

    return best


def extract_json_block(text: str) -> Optional[str]:
    """Return the first balanced curly-brace block in ``text``, if any"""
    span = find_json_block_span(text)
    if span is None:
        return None
    start, end = span
    return text[start:end]

"""Recover a JSON object or array embedded in free-form provider text.

Providers routinely wrap the requested payload in conversational prose
("Here is your plan: {...} Enjoy!"). The scan below returns the first
balanced top-level object, falling back to the first balanced array.
"""

from __future__ import annotations


def extract_json_payload(text: str) -> str:
    """Return the first balanced JSON object (else array) in ``text``, or ``""``."""
    payload = extract_json_object(text)
    if payload:
        return payload
    return extract_json_array(text)


def extract_json_object(text: str) -> str:
    return _scan_balanced(text, "{", "}")


def extract_json_array(text: str) -> str:
    return _scan_balanced(text, "[", "]")


def _scan_balanced(text: str, opener: str, closer: str) -> str:
    start = -1
    depth = 0
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if start == -1:
            # Nothing counts until the first opener; stray closers are prose.
            if char == opener:
                start = index
                depth = 1
            continue

        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return ""

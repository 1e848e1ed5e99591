"""
Host range patterns.

Expands inventory tokens such as ``web[01:03]``, ``db-[a:c]``,
``redis[1,3,5]`` or ``10.0.0.1[0:2]`` into concrete names. Several
bracket groups in one token expand as a cartesian product, leftmost
group varying slowest.
"""

import itertools
import re
from typing import List, Tuple

from parsible.engine.errors import InvalidPattern, PatternCardinalityMismatch

# Limit pattern expansion to prevent resource exhaustion
MAX_HOSTS_PER_PATTERN = 10000

BRACKET_PATTERN = re.compile(r'\[([^\[\]]*)\]')
NUMERIC_BOUND = re.compile(r'^\d+$')
ALPHA_BOUND = re.compile(r'^[A-Za-z]$')


def is_pattern(token: str) -> bool:
    """True when the token carries bracket syntax."""
    return '[' in token or ']' in token


def _check_brackets(token: str) -> None:
    depth = 0
    for char in token:
        if char == '[':
            if depth:
                raise InvalidPattern(token, "nested brackets are not allowed")
            depth += 1
        elif char == ']':
            if not depth:
                raise InvalidPattern(token, "unmatched ']'")
            depth -= 1
    if depth:
        raise InvalidPattern(token, "unclosed '['")


def _expand_range(token: str, body: str) -> List[str]:
    parts = body.split(':')
    if len(parts) not in (2, 3) or not all(part.strip() for part in parts):
        raise InvalidPattern(token, f"invalid range '[{body}]'")
    start, end = parts[0].strip(), parts[1].strip()
    step = 1
    if len(parts) == 3:
        if not NUMERIC_BOUND.match(parts[2].strip()) or int(parts[2]) < 1:
            raise InvalidPattern(token, f"invalid range step '{parts[2]}'")
        step = int(parts[2])

    if NUMERIC_BOUND.match(start) and NUMERIC_BOUND.match(end):
        first, last = int(start), int(end)
        if first > last:
            raise InvalidPattern(token, f"start {first} is greater than end {last}")
        # Zero padding only when the start operand is written padded
        width = len(start) if start.startswith('0') and len(start) > 1 else 0
        return [str(i).zfill(width) for i in range(first, last + 1, step)]

    if ALPHA_BOUND.match(start) and ALPHA_BOUND.match(end):
        if start > end:
            raise InvalidPattern(token, f"start '{start}' is greater than end '{end}'")
        return [chr(c) for c in range(ord(start), ord(end) + 1, step)]

    raise InvalidPattern(token, f"range bounds must both be numbers or single letters: '[{body}]'")


def _expand_group(token: str, body: str) -> List[str]:
    if not body.strip():
        raise InvalidPattern(token, "empty brackets")
    if ':' in body:
        return _expand_range(token, body)
    # Comma lists keep their order and duplicates
    items = [item.strip() for item in body.split(',') if item.strip()]
    if not items:
        raise InvalidPattern(token, f"empty list '[{body}]'")
    return items


def expand(token: str) -> List[str]:
    """
    Expand a host token into the names it stands for.

    A token without brackets expands to itself.

    Raises:
        InvalidPattern: On malformed brackets, reversed ranges, or an
            expansion larger than MAX_HOSTS_PER_PATTERN
    """
    if not is_pattern(token):
        return [token]
    _check_brackets(token)

    pieces: List[str] = []
    choices: List[List[str]] = []
    last = 0
    total = 1
    for match in BRACKET_PATTERN.finditer(token):
        pieces.append(token[last:match.start()])
        group = _expand_group(token, match.group(1))
        total *= len(group)
        if total > MAX_HOSTS_PER_PATTERN:
            raise InvalidPattern(
                token, f"expansion exceeds the maximum of {MAX_HOSTS_PER_PATTERN} hosts"
            )
        choices.append(group)
        last = match.end()
    tail = token[last:]

    results = []
    for combination in itertools.product(*choices):
        name = ''.join(piece + value for piece, value in zip(pieces, combination))
        results.append(name + tail)
    return results


def expand_paired(name_token: str, address_token: str) -> List[Tuple[str, str]]:
    """
    Expand a host token together with an address token.

    An address without brackets is shared by every name; an address
    range is spliced one-to-one onto the name range.

    Raises:
        PatternCardinalityMismatch: If both ranges differ in length
    """
    names = expand(name_token)
    if not is_pattern(address_token):
        return [(name, address_token) for name in names]
    addresses = expand(address_token)
    if len(names) != len(addresses):
        raise PatternCardinalityMismatch(names, addresses)
    return list(zip(names, addresses))

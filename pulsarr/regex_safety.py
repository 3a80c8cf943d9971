"""
Guarded regular-expression matching for admin-authored rule values.

Python's ``re`` engine backtracks, so a pattern with nested unbounded
quantifiers such as ``(a+)+$`` can take exponential time on a crafted
title. Patterns are screened before use and rejected rather than run.
"""
import logging
import re
from typing import Iterable, List

MAX_PATTERN_LENGTH = 500
MAX_REPETITION = 25

_BRACE_QUANTIFIER = re.compile(r'\{(\d*)(,?)(\d*)\}')


def _quantifier_at(pattern: str, pos: int):
    """Return (length, unbounded, upper) for a quantifier starting at ``pos``, or None."""
    if pos >= len(pattern):
        return None
    ch = pattern[pos]
    if ch in '*+':
        return 1, True, None
    if ch == '?':
        return 1, False, 1
    if ch == '{':
        m = _BRACE_QUANTIFIER.match(pattern, pos)
        if m and (m.group(1) or m.group(3)):
            low, comma, high = m.group(1), m.group(2), m.group(3)
            if comma and not high:
                return m.end() - pos, True, None
            upper = int(high or low)
            return m.end() - pos, False, upper
    return None


def is_safe_pattern(pattern: str) -> bool:
    """
    Screen a pattern for catastrophic backtracking.

    Rejects quantified groups that themselves contain an unbounded
    quantifier (star height above one), bounded repetitions above
    MAX_REPETITION, and overly long patterns.
    """
    if not isinstance(pattern, str) or len(pattern) > MAX_PATTERN_LENGTH:
        return False

    # Each frame records whether the open group holds a repeating quantifier.
    stack: List[bool] = [False]
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == '\\':
            i += 2
            q = _quantifier_at(pattern, i)
            if q:
                if q[2] is not None and q[2] > MAX_REPETITION:
                    return False
                stack[-1] = stack[-1] or q[1] or (q[2] or 0) > 1
                i += q[0]
            continue
        if ch == '[':
            j = i + 1
            if j < n and pattern[j] == '^':
                j += 1
            if j < n and pattern[j] == ']':
                j += 1
            while j < n and pattern[j] != ']':
                j += 2 if pattern[j] == '\\' else 1
            i = j + 1
        elif ch == '(':
            stack.append(False)
            i += 1
            continue
        elif ch == ')':
            inner = stack.pop() if len(stack) > 1 else False
            i += 1
            q = _quantifier_at(pattern, i)
            if q:
                repeats = q[1] or (q[2] or 0) > 1
                if repeats and inner:
                    return False
                if q[2] is not None and q[2] > MAX_REPETITION:
                    return False
                stack[-1] = stack[-1] or inner or repeats
                i += q[0]
            else:
                stack[-1] = stack[-1] or inner
            continue
        else:
            i += 1
        q = _quantifier_at(pattern, i)
        if q:
            if q[2] is not None and q[2] > MAX_REPETITION:
                return False
            stack[-1] = stack[-1] or q[1] or (q[2] or 0) > 1
            i += q[0]
            # lazy / possessive suffix
            if i < n and pattern[i] in '?+':
                i += 1
    return True


def evaluate_regex_safely(pattern: str, value: str, context: str, ignore_case: bool = False) -> bool:
    """Search ``value`` for ``pattern``; unsafe or invalid patterns never match."""
    return evaluate_regex_safely_multiple(pattern, [value], context, ignore_case=ignore_case)


def evaluate_regex_safely_multiple(pattern: str, values: Iterable[str], context: str,
                                   ignore_case: bool = False) -> bool:
    """True if ``pattern`` matches any of ``values``."""
    if not is_safe_pattern(pattern):
        logging.warning("Rejected unsafe regex in %s: %s", context, pattern)
        return False
    try:
        compiled = re.compile(pattern, re.IGNORECASE if ignore_case else 0)
    except re.error as e:
        logging.error("Invalid regex in %s: %s (%s)", context, pattern, e)
        return False
    return any(compiled.search(str(v)) for v in values if v is not None)

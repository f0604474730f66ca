"""
SQL Lexer - literal-aware, depth-aware helpers shared by every repair pass
==========================================================================

ARCHITECTURAL ROLE:
    None of the repair passes use a SQL parser. They rewrite text with regular
    expressions. This module gives those regexes the two guarantees a regex
    alone cannot provide:

        1. String literals and comments are never matched or mutated
           (mask_literals / unmask_literals)
        2. A pass can restrict itself to a single query level
           (blank_nested, split_top_level, find_matching_paren)

MASKING:
        'WA'                 ->  __STRL0000__
        N'Café'              ->  __STRL0001__
        -- trailing note     ->  __CMNT0002__
        /* block comment */  ->  __CMNT0003__

    Placeholders are plain word tokens. Every rewrite treats them as opaque
    identifiers and unmask_literals() restores the original text afterwards.

DEPTH VIEW:
        SELECT a, SUM(b) FROM (SELECT x FROM t) d
    ->  SELECT a, SUM( ) FROM (                ) d

    blank_nested() keeps string length, so a match position in the view is a
    valid position in the original text.
"""

import re
import logging
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Reserved words that can never be a table alias or a bare column alias
SQL_KEYWORDS = frozenset({
    'SELECT', 'FROM', 'WHERE', 'JOIN', 'ON', 'AND', 'OR', 'NOT', 'AS',
    'LEFT', 'RIGHT', 'INNER', 'OUTER', 'FULL', 'CROSS', 'APPLY',
    'GROUP', 'ORDER', 'BY', 'HAVING', 'OFFSET', 'FETCH', 'NEXT', 'ROWS',
    'ROW', 'ONLY', 'UNION', 'EXCEPT', 'INTERSECT', 'ALL', 'DISTINCT',
    'TOP', 'PERCENT', 'TIES', 'WITH', 'ASC', 'DESC', 'NULL', 'IS', 'IN',
    'BETWEEN', 'LIKE', 'EXISTS', 'CASE', 'WHEN', 'THEN', 'ELSE', 'END',
    'OVER', 'PARTITION', 'FOR', 'OPTION', 'INTO', 'PIVOT', 'UNPIVOT',
    'SET', 'VALUES', 'LIMIT',
})

_PLACEHOLDER_RE = re.compile(r'__(STRL|CMNT)(\d{4,})__')


# =============================================================================
# SCANNING PRIMITIVES
# =============================================================================

def _skip_string(text: str, pos: int) -> int:
    """Return the index just past the single-quoted literal opening at pos."""
    i = pos + 1
    n = len(text)
    while i < n:
        if text[i] == "'":
            if i + 1 < n and text[i + 1] == "'":
                i += 2
                continue
            return i + 1
        i += 1
    return n


def _skip_opaque(text: str, pos: int, brackets: bool = True) -> Optional[int]:
    """
    If an opaque region (literal, comment, quoted identifier) starts at pos,
    return the index just past it. Otherwise return None.
    """
    ch = text[pos]
    if ch == "[" and brackets:
        end = text.find("]", pos + 1)
        return len(text) if end == -1 else end + 1
    if ch == "'":
        return _skip_string(text, pos)
    if ch == '"':
        end = text.find('"', pos + 1)
        return len(text) if end == -1 else end + 1
    if text.startswith('--', pos):
        end = text.find('\n', pos)
        return len(text) if end == -1 else end
    if text.startswith('/*', pos):
        end = text.find('*/', pos + 2)
        return len(text) if end == -1 else end + 2
    return None


def _opaque_spans(sql: str) -> List[Tuple[int, int, str]]:
    """Locate string literals and comments as (start, end, kind) spans."""
    spans = []
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]
        if ch == '[':
            # Bracketed identifiers may legally contain quotes: [Customer's Orders]
            end = sql.find(']', i + 1)
            i = n if end == -1 else end + 1
            continue
        if ch == "'":
            start = i
            if i > 0 and sql[i - 1] in 'Nn' and (i < 2 or not (sql[i - 2].isalnum() or sql[i - 2] == '_')):
                start = i - 1
            end = _skip_string(sql, i)
            spans.append((start, end, 'STRL'))
            i = end
            continue
        if sql.startswith('--', i) or sql.startswith('/*', i):
            end = _skip_opaque(sql, i)
            spans.append((i, end, 'CMNT'))
            i = end
            continue
        i += 1
    return spans


# =============================================================================
# LITERAL MASKING
# =============================================================================

def mask_literals(sql: str) -> Tuple[str, List[str]]:
    """
    Replace string literals and comments with numbered placeholders.

    Returns:
        (masked_sql, saved) where saved[i] is the original text of placeholder i
    """
    saved: List[str] = []
    parts: List[str] = []
    last = 0
    for start, end, kind in _opaque_spans(sql):
        parts.append(sql[last:start])
        parts.append(f'__{kind}{len(saved):04d}__')
        saved.append(sql[start:end])
        last = end
    parts.append(sql[last:])
    return ''.join(parts), saved


def unmask_literals(masked: str, saved: List[str]) -> str:
    """Restore placeholders produced by mask_literals()."""
    if not saved:
        return masked

    def _restore(m: re.Match) -> str:
        idx = int(m.group(2))
        return saved[idx] if idx < len(saved) else m.group(0)

    return _PLACEHOLDER_RE.sub(_restore, masked)


def rewrite_masked(sql: str, rewrite: Callable[[str], str]) -> str:
    """Apply a text rewrite to sql with literals and comments masked."""
    masked, saved = mask_literals(sql)
    return unmask_literals(rewrite(masked), saved)


def is_placeholder(token: str) -> bool:
    return bool(_PLACEHOLDER_RE.fullmatch(token.strip()))


# =============================================================================
# BALANCED EXTRACTION
# =============================================================================

def extract_balanced(text: str, open_char: str = '(', close_char: str = ')') -> str:
    """
    Extract the content of a delimiter pair whose opening delimiter has
    already been consumed.

    `text` starts immediately after the opening delimiter (depth 1). The
    returned substring stops before the matching closing delimiter. Nested
    pairs of the same kind are honoured; delimiters inside string literals,
    comments and quoted identifiers are ignored.

    Unbalanced input returns the whole remainder.
    """
    depth = 1
    i = 0
    n = len(text)
    while i < n:
        skip = _skip_opaque(text, i, brackets=open_char != "[")
        if skip is not None:
            i = skip
            continue
        ch = text[i]
        if ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return text[:i]
        i += 1
    return text


def find_matching_paren(text: str, open_pos: int) -> Optional[int]:
    """Index of the ')' matching the '(' at open_pos, or None if unbalanced."""
    content = extract_balanced(text[open_pos + 1:])
    close_pos = open_pos + 1 + len(content)
    if close_pos < len(text) and text[close_pos] == ')':
        return close_pos
    return None


# =============================================================================
# DEPTH-AWARE VIEWS
# =============================================================================

def blank_nested(text: str) -> str:
    """
    Same-length copy of text where everything inside parentheses is blanked.

    The outermost parentheses themselves are kept so callers can still see
    where a nested group sits.
    """
    out = list(text)
    depth = 0
    i = 0
    n = len(text)
    while i < n:
        skip = _skip_opaque(text, i)
        if skip is not None:
            if depth > 0:
                for k in range(i, skip):
                    if out[k] != '\n':
                        out[k] = ' '
            i = skip
            continue
        ch = text[i]
        if ch == '(':
            if depth > 0:
                out[i] = ' '
            depth += 1
        elif ch == ')':
            if depth > 1:
                out[i] = ' '
            depth = max(depth - 1, 0)
        elif depth > 0 and ch != '\n':
            out[i] = ' '
        i += 1
    return ''.join(out)


def split_top_level(text: str, sep: str = ',') -> List[str]:
    """Split on sep at parenthesis depth zero, outside literals and brackets."""
    parts: List[str] = []
    depth = 0
    last = 0
    i = 0
    n = len(text)
    while i < n:
        skip = _skip_opaque(text, i)
        if skip is not None:
            i = skip
            continue
        ch = text[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        elif ch == sep and depth == 0:
            parts.append(text[last:i].strip())
            last = i + 1
        i += 1
    tail = text[last:].strip()
    if tail:
        parts.append(tail)
    return parts


def find_subquery_spans(text: str) -> List[Tuple[int, int]]:
    """
    Locate every parenthesised SELECT at any depth.

    Returns (open_pos, close_pos) pairs ordered by open_pos. Unbalanced
    groups are skipped.
    """
    spans = []
    i = 0
    n = len(text)
    while i < n:
        skip = _skip_opaque(text, i)
        if skip is not None:
            i = skip
            continue
        if text[i] == '(' and re.match(r'\s*SELECT\b', text[i + 1:], re.IGNORECASE):
            close_pos = find_matching_paren(text, i)
            if close_pos is not None:
                spans.append((i, close_pos))
        i += 1
    return spans


def enclosing_scope_end(text: str, pos: int) -> int:
    """Index of the ')' closing the group that contains pos, or len(text)."""
    depth = 0
    i = pos
    n = len(text)
    while i < n:
        skip = _skip_opaque(text, i)
        if skip is not None:
            i = skip
            continue
        ch = text[i]
        if ch == '(':
            depth += 1
        elif ch == ')':
            if depth == 0:
                return i
            depth -= 1
        i += 1
    return n


def enclosing_scope_start(text: str, pos: int) -> int:
    """
    Index of the '(' opening the group that contains pos, or -1 at top level.

    Expects masked text: scans backwards without literal tracking.
    """
    depth = 0
    for i in range(pos - 1, -1, -1):
        ch = text[i]
        if ch == ')':
            depth += 1
        elif ch == '(':
            if depth == 0:
                return i
            depth -= 1
    return -1


def top_level_search(pattern: re.Pattern, text: str, start: int = 0) -> Optional[re.Match]:
    """Search pattern over the depth-zero view of text."""
    return pattern.search(blank_nested(text), start)


# =============================================================================
# IDENTIFIERS
# =============================================================================

def strip_brackets(identifier: str) -> str:
    """[Order Details] -> Order Details, "x" -> x"""
    identifier = identifier.strip()
    if len(identifier) >= 2 and (
        (identifier[0] == '[' and identifier[-1] == ']') or
        (identifier[0] == '"' and identifier[-1] == '"')
    ):
        return identifier[1:-1]
    return identifier


def is_keyword(token: str) -> bool:
    return token.upper() in SQL_KEYWORDS

"""
Malformed-JOIN Repairer
=======================

PROBLEM:
    LLMs regularly emit JOIN clauses whose structure has been mangled:

        FROM [dbo.Order Details.od.INNER.JOIN.[dbo.Products.p.ON.od.ProductID = p.ProductID]
        JOIN dbo.[Products p ON od].ProductID = p.ProductID
        FROM [Order Details ON od.ProductID = p.ProductID]
        JOIN [Products p].ProductID = od.ProductID
        FROM [Order Details od] ... WHERE od.Quantity > 5

SOLUTION:
    An ordered battery of rewrite passes, each targeting one malformation
    shape. The whole battery is re-run until the text stops changing (a
    fixed point) or a pass bound is hit.

        unwrap [FROM ...]  →  merge [Order] Details]  →  expand dotted chain
        →  relocate ON qualifier  →  relocate keywords  →  alias equality
        →  split fused alias

GUARANTEES:
    - Never raises: any failure is logged and the input is returned
    - String literals and comments are masked for the whole run
    - Idempotent: a repaired query is a fixed point of the battery
    - No warnings object; all activity is logged
"""

import re
import logging
from typing import Callable, List, Optional, Tuple

from sql_lexer import SQL_KEYWORDS, mask_literals, strip_brackets, unmask_literals
from table_formatter import format_table_name

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "dbo"
MAX_REPAIR_PASSES = 10

_KW = r'(?:FROM|JOIN)'
_SCHEMA_PREFIX = r'((?:\[\w+\]|\w+)\.)?'
_JOIN_TYPE = r'(?:INNER|CROSS|(?:LEFT|RIGHT|FULL)(?:\s+OUTER)?)'


# =============================================================================
# MULTI-WORD TABLE NAME MERGE (heuristic strategy)
# =============================================================================

class MultiWordTableMergeStrategy:
    """
    Re-merge a multi-word table name that a stray bracket split in two.

        [Order] Details]  ->  [Order Details]

    Best-effort heuristic: both fragments must start with a letter, be longer
    than one character, and the second must not be a keyword, an operator or
    the start of a clause. Lower-case or single-letter fragments are a known
    blind spot. Disable with enabled=False.
    """

    _SPLIT_NAME_RE = re.compile(r'\[([^\[\]]+)\]\s+([^\[\]]+)\]')
    _KEYWORD_RE = re.compile(
        r'^(?:ON|AND|OR|WHERE|FROM|JOIN|INNER|LEFT|RIGHT|FULL|CROSS|OUTER|HAVING|'
        r'GROUP|ORDER|BY|ASC|DESC|UNION|ALL|ANY|SOME|EXISTS|IN|AS|IS|NULL|NOT|TRUE|FALSE)$',
        re.IGNORECASE
    )
    _OPERATOR_RE = re.compile(r'^[=<>!+\-*/,;()]+')
    _CLAUSE_START_RE = re.compile(r'^(?:ON|WHERE|GROUP|ORDER|HAVING)\b', re.IGNORECASE)

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def _should_merge(self, first: str, second: str) -> bool:
        return (
            not self._KEYWORD_RE.match(second)
            and not self._OPERATOR_RE.match(second)
            and not self._OPERATOR_RE.match(first)
            and len(first) > 1 and len(second) > 1
            and not self._CLAUSE_START_RE.match(second)
            and first[0].isalpha() and second[0].isalpha()
        )

    def apply(self, sql: str) -> str:
        if not self.enabled:
            return sql

        def _merge(m: re.Match) -> str:
            first, second = m.group(1), m.group(2)
            if self._should_merge(first, second):
                logger.debug(f"[JOIN_REPAIR] Merged split table name: [{first} {second}]")
                return f'[{first} {second}]'
            return m.group(0)

        return self._SPLIT_NAME_RE.sub(_merge, sql)


# =============================================================================
# JOIN REPAIRER
# =============================================================================

class JoinRepairer:
    """Applies the malformed-JOIN pass battery to a fixed point."""

    _WRAPPED_CLAUSE_RE = re.compile(
        rf'\[\s*(FROM|(?:{_JOIN_TYPE}\s+)?JOIN|WHERE|GROUP\s+BY|ORDER\s+BY|HAVING)\s+([^\[\]]+)\]',
        re.IGNORECASE
    )
    _CLAUSE_END_RE = re.compile(
        rf'\s*(?:$|[;)]|(?:WHERE|GROUP|ORDER|HAVING|UNION|EXCEPT|INTERSECT|OFFSET|{_JOIN_TYPE}|JOIN)\b)',
        re.IGNORECASE
    )
    _JOIN_ON_RE = re.compile(r'^\S.*?\sON\s(.+)$', re.IGNORECASE | re.DOTALL)

    # [dbo.Order Details.od.INNER.JOIN.[dbo.Products.p.ON.<condition>]
    _DOTTED_CHAIN_RE = re.compile(
        rf'\b({_KW})\s+\['
        r'(?:(\w+)\.)?([\w\s]+?)\.(?!(?:INNER|LEFT|RIGHT|FULL|CROSS|JOIN)\b)(\w+)\.'
        r'(?:(INNER|LEFT|RIGHT|FULL)\.)?JOIN\.\[?'
        r'(?:(\w+)\.)?([\w\s]+?)\.(\w+)\.ON\.([^\]]+)\]',
        re.IGNORECASE
    )

    # JOIN dbo.[Products p ON od].ProductID = p.ProductID
    _ON_QUALIFIER_RE = re.compile(
        rf'\b({_KW})\s+{_SCHEMA_PREFIX}\[([^\[\]]*\bON\b[^\[\]]*)\]\.(\w+|\[[^\]]+\])\s*=\s*([^\s;]+)',
        re.IGNORECASE
    )

    _BRACKETED_KEYWORD_RE = re.compile(
        r'\[([^\[\]]*?\s(?:JOIN|ON|WHERE)\s[^\[\]]*?)\]',
        re.IGNORECASE
    )
    _KEYWORD_SPLIT_RE = re.compile(
        rf'\s((?:{_JOIN_TYPE}\s+)?JOIN|ON|WHERE)\s',
        re.IGNORECASE
    )
    _PREDICATE_RE = re.compile(r'[=<>]|\bIN\b|\bLIKE\b|\bBETWEEN\b|\bIS\b', re.IGNORECASE)

    # JOIN [Products p].ProductID = od.ProductID
    _ALIAS_EQUALITY_RE = re.compile(
        rf'\b({_KW})\s+{_SCHEMA_PREFIX}\[([^\[\]]+)\]\.(\w+|\[[^\]]+\])\s*=\s*(\w+\.[\w\[\]]+)',
        re.IGNORECASE
    )

    # FROM [Order Details od]
    _FUSED_ALIAS_RE = re.compile(
        rf'\b({_KW})\s+((?:\[[^\[\]]+\]|\w+)\.)?\[([^\[\]]*?\S)\s+([A-Za-z_]\w*)\](?!\s*\.)',
        re.IGNORECASE
    )
    _TRAILING_ALIAS_RE = re.compile(r'\s+(?:AS\s+)?([A-Za-z_]\w*)', re.IGNORECASE)

    def __init__(
        self,
        merge_strategy: Optional[MultiWordTableMergeStrategy] = None,
        default_schema: str = DEFAULT_SCHEMA,
        max_passes: int = MAX_REPAIR_PASSES,
    ):
        self.merge_strategy = merge_strategy or MultiWordTableMergeStrategy()
        self.default_schema = default_schema
        self.max_passes = max_passes
        self._passes: List[Tuple[str, Callable[[str], str]]] = [
            ("unwrap_clauses", self._unwrap_bracketed_clauses),
            ("merge_split_names", self.merge_strategy.apply),
            ("expand_dotted_chain", self._expand_dotted_chain),
            ("relocate_on_qualifier", self._relocate_on_qualifier),
            ("relocate_keywords", self._relocate_bracketed_keywords),
            ("alias_equality", self._split_alias_equality),
            ("split_fused_alias", self._split_fused_alias),
        ]

    def repair(self, sql: str) -> str:
        """Return sql with malformed JOIN syntax repaired. Never raises."""
        if not sql or not isinstance(sql, str):
            return sql

        try:
            masked, saved = mask_literals(sql)
            text = masked
            for pass_no in range(1, self.max_passes + 1):
                previous = text
                for name, rewrite in self._passes:
                    rewritten = rewrite(text)
                    if rewritten != text:
                        logger.debug(f"[JOIN_REPAIR] pass {pass_no}: {name} applied")
                    text = rewritten
                if text == previous:
                    break
            else:
                logger.warning(f"[JOIN_REPAIR] No fixed point after {self.max_passes} passes")

            if text != masked:
                logger.info("[JOIN_REPAIR] Repaired malformed JOIN syntax")
            return unmask_literals(text, saved)
        except Exception as e:
            logger.error(f"[JOIN_REPAIR] Repair failed, returning input unchanged: {e}")
            return sql

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    def _unwrap_bracketed_clauses(self, sql: str) -> str:
        """
        [INNER JOIN Products p ON od.ProductID = p.ProductID] -> the bare clause.

        Only brackets holding real clause structure at a clause boundary are
        unwrapped; [From Date] or e.[Join Date] are identifiers.
        """
        def _unwrap(m: re.Match) -> str:
            if not self._at_clause_boundary(sql, m.start()):
                return m.group(0)

            keyword = ' '.join(m.group(1).upper().split())
            body = m.group(2)
            ends_clause = bool(self._CLAUSE_END_RE.match(sql, m.end()))
            if keyword in ("WHERE", "HAVING"):
                structured = bool(self._PREDICATE_RE.search(body))
            elif keyword.endswith("JOIN"):
                on_match = self._JOIN_ON_RE.match(body.strip())
                structured = bool(on_match and self._PREDICATE_RE.search(on_match.group(1)))
            elif keyword == "FROM":
                structured = ends_clause or bool(
                    self._KEYWORD_SPLIT_RE.search(body) and self._PREDICATE_RE.search(body)
                )
            else:
                structured = ends_clause

            if not structured:
                return m.group(0)
            return m.group(0)[1:-1].strip()

        return self._WRAPPED_CLAUSE_RE.sub(_unwrap, sql)

    def _expand_dotted_chain(self, sql: str) -> str:
        """Chain parts are emitted fully bracketed: [dbo].[Order Details] od INNER JOIN ..."""
        def _expand(m: re.Match) -> str:
            keyword, schema1, table1, alias1, join_type, schema2, table2, alias2, condition = m.groups()
            schema1 = schema1 or self.default_schema
            schema2 = schema2 or self.default_schema
            join_type = (join_type or "INNER").upper()
            condition = condition.lstrip('.').strip()
            return (
                f"{keyword} [{schema1}].[{table1.strip()}] {alias1} "
                f"{join_type} JOIN [{schema2}].[{table2.strip()}] {alias2} ON {condition}"
            )

        return self._DOTTED_CHAIN_RE.sub(_expand, sql)

    def _relocate_on_qualifier(self, sql: str) -> str:
        def _relocate(m: re.Match) -> str:
            keyword, schema_part, content, left_column, rhs = m.groups()
            on_match = None
            for on_match in re.finditer(r'\sON\s', content, re.IGNORECASE):
                pass
            if on_match is None:
                return m.group(0)

            before = content[:on_match.start()].strip()
            target = content[on_match.end():].strip().lstrip('.')
            if not before or not target:
                return m.group(0)

            table_name, alias = self._split_table_alias(before)
            schema = schema_part.rstrip('.') if schema_part else ''
            formatted = format_table_name(f"{schema}.{table_name}" if schema else table_name)
            alias_part = f" {alias}" if alias else ""
            return f"{keyword} {formatted}{alias_part} ON {target}.{left_column} = {rhs.lstrip('.')}"

        return self._ON_QUALIFIER_RE.sub(_relocate, sql)

    def _relocate_bracketed_keywords(self, sql: str) -> str:
        def _relocate(m: re.Match) -> str:
            content = m.group(1)
            last = None
            for last in self._KEYWORD_SPLIT_RE.finditer(content):
                pass
            if last is None:
                return m.group(0)

            keyword = ' '.join(last.group(1).upper().split())
            before = content[:last.start()].strip()
            after = content[last.end():].strip().lstrip('.')
            if not after:
                return m.group(0)
            if not self._PREDICATE_RE.search(after):
                # [Sales on Hold] and [Last Join Date] are names, not misplaced clauses
                return m.group(0)

            return f"{self._bracket_identifier(before)} {keyword} {after}".lstrip()

        return self._BRACKETED_KEYWORD_RE.sub(_relocate, sql)

    def _split_alias_equality(self, sql: str) -> str:
        def _split(m: re.Match) -> str:
            keyword, schema_part, content, left_column, rhs = m.groups()
            table_name, alias = self._split_table_alias(content.strip())
            schema = schema_part.rstrip('.') if schema_part else ''
            formatted = format_table_name(f"{schema}.{table_name}" if schema else table_name)
            if alias:
                return f"{keyword} {formatted} {alias} ON {alias}.{left_column} = {rhs}"
            return f"{keyword} {formatted} ON {formatted}.{left_column} = {rhs}"

        return self._ALIAS_EQUALITY_RE.sub(_split, sql)

    def _split_fused_alias(self, sql: str) -> str:
        def _split(m: re.Match) -> str:
            keyword, schema_part, table_name, alias = m.groups()
            if alias.upper() in SQL_KEYWORDS:
                return m.group(0)

            following = self._TRAILING_ALIAS_RE.match(sql, m.end())
            if following and following.group(1).upper() not in SQL_KEYWORDS:
                # Already followed by its own alias
                return m.group(0)

            rest = sql[:m.start()] + sql[m.end():]
            if not re.search(rf'(?<![\w.\]]){re.escape(alias)}\.', rest, re.IGNORECASE):
                return m.group(0)

            logger.debug(f"[JOIN_REPAIR] Split fused alias '{alias}' out of [{table_name} {alias}]")
            return f"{keyword} {schema_part or ''}[{table_name.strip()}] {alias}"

        return self._FUSED_ALIAS_RE.sub(_split, sql)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _at_clause_boundary(sql: str, pos: int) -> bool:
        """False after '.', a comma, an operator or a keyword (SELECT list, predicate)."""
        before = sql[:pos].rstrip()
        if not before:
            return True
        if before[-1] in '.,(=<>!+-/%':
            return False
        last_word = re.search(r'(\w+)$', before)
        return not (last_word and last_word.group(1).upper() in SQL_KEYWORDS)

    @staticmethod
    def _split_table_alias(fragment: str) -> Tuple[str, str]:
        """'Products p' -> ('Products', 'p'); 'Products' -> ('Products', '')"""
        tokens = fragment.split()
        if len(tokens) > 1 and tokens[-1].upper() not in SQL_KEYWORDS:
            return ' '.join(tokens[:-1]), tokens[-1]
        return fragment, ''

    @staticmethod
    def _bracket_identifier(fragment: str) -> str:
        fragment = strip_brackets(fragment.strip())
        if not fragment:
            return ''
        schema_split = re.match(r'^(\w+)\.(.+)$', fragment)
        if schema_split:
            return f"[{schema_split.group(1)}].[{strip_brackets(schema_split.group(2).strip())}]"
        return f"[{fragment}]"


_default_repairer: Optional[JoinRepairer] = None


def fix_malformed_joins(sql: str, merge_split_names: bool = True) -> str:
    """Repair malformed JOIN syntax with the default pass battery."""
    global _default_repairer
    if not merge_split_names:
        return JoinRepairer(MultiWordTableMergeStrategy(enabled=False)).repair(sql)
    if _default_repairer is None:
        _default_repairer = JoinRepairer()
    return _default_repairer.repair(sql)

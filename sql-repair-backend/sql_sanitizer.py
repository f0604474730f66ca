"""
SQL Output Sanitizer - extract one read-only SQL statement from LLM output
==========================================================================

LLM completions rarely contain bare SQL. Typical shapes:

    ```sql
    SELECT 1;
    ```

    sql: SELECT TOP 5 * FROM Orders

    Here is the query you asked for:
    SELECT CustomerID, SUM(Amount) AS Total
    FROM Orders
    GROUP BY CustomerID
    This returns one row per customer.

    "SELECT *\\nFROM Orders"                  (escaped newlines)

The sanitizer strips fences and labels, converts backtick-quoted identifiers
to brackets, drops surrounding prose and keeps the first statement of the
longest SQL block. Only SELECT/WITH statements are accepted.

It extracts, it never repairs SQL logic, and it does not append a terminator.
"""

import re
import logging
from dataclasses import dataclass
from typing import List, Optional

import sqlparse

from sql_lexer import is_keyword, rewrite_masked

logger = logging.getLogger(__name__)


@dataclass
class SanitizationResult:
    """
    Result of SQL output sanitization.

    Attributes:
        valid: Whether a usable SQL statement was extracted
        sql: The extracted statement (if valid)
        statement_count: Number of statements found in the chosen block
        had_commentary: Whether prose or markup surrounded the SQL
        error_message: Error description (if invalid)
        raw_input: The original input for debugging
    """
    valid: bool
    sql: Optional[str]
    statement_count: int
    had_commentary: bool
    error_message: Optional[str]
    raw_input: str


class SQLOutputSanitizer:
    """Extracts exactly one read-only statement from free-form LLM text."""

    FENCE_BLOCK_PATTERN = re.compile(
        r"```[ \t]*[\"']?(?:sql|tsql|t-sql|mssql)?[\"']?[ \t]*\n?(.*?)(?:```|$)",
        re.IGNORECASE | re.DOTALL
    )
    FENCE_MARKER_PATTERN = re.compile(r"```[ \t]*[\"']?(?:sql|tsql|t-sql|mssql)?[\"']?", re.IGNORECASE)
    LABEL_PATTERN = re.compile(r"^\s*[\"']?sql[\"']?\s*(?::|\n)\s*", re.IGNORECASE)
    SQL_QUERY_MARKER_PATTERN = re.compile(
        r"SQL Query:\s*((?:SELECT|WITH)\b[\s\S]*?)(?=\n\s*Expected Output:|$)",
        re.IGNORECASE
    )
    BACKTICK_IDENTIFIER_PATTERN = re.compile(r"`([\w .$#-]+)`")
    INLINE_CODE_PATTERN = re.compile(r"(?<![\w\]])`((?:SELECT|WITH)\b[^`]*)`", re.IGNORECASE)
    STATEMENT_START_PATTERN = re.compile(r"^\s*(?:SELECT|WITH)\b", re.IGNORECASE)
    INLINE_SELECT_PATTERN = re.compile(r"(?:^|:)[ \t]*(SELECT\b)", re.IGNORECASE | re.MULTILINE)
    HAS_SELECT_PATTERN = re.compile(r"\bSELECT\b", re.IGNORECASE)
    COMMENT_LINE_PATTERN = re.compile(r"^\s*(?:--|/\*)")
    # Capitalised sentence with no SQL punctuation: "This returns one row per customer."
    PROSE_LINE_PATTERN = re.compile(r"^[A-Z][a-z']+(?:[ ,][A-Za-z'’,-]+){3,}[.:!?]?$")
    SQL_TOKEN_PATTERN = re.compile(r"[=<>()*]|\w\.[\w\[]")
    SENTENCE_END_PATTERN = re.compile(r"[.!?:]$")

    def sanitize(self, raw_output: str) -> SanitizationResult:
        """
        Sanitize LLM output down to one SQL statement.

        Args:
            raw_output: Raw completion text

        Returns:
            SanitizationResult with the extracted SQL or an error
        """
        if not raw_output or not raw_output.strip():
            return SanitizationResult(
                valid=False,
                sql=None,
                statement_count=0,
                had_commentary=False,
                error_message="Empty SQL output",
                raw_input=raw_output or ""
            )

        raw_input = raw_output
        working_text = self._unescape_newlines(raw_output.strip())
        working_text, fenced = self._strip_fences(working_text)
        working_text = self.LABEL_PATTERN.sub('', working_text, count=1)
        working_text = rewrite_masked(working_text, self._unwrap_inline_code)

        marker = self.SQL_QUERY_MARKER_PATTERN.search(working_text)
        if marker:
            block = marker.group(1).strip()
        else:
            block = self._longest_sql_block(working_text)
        block = rewrite_masked(block, self._replace_backticks)

        if not block or not self.HAS_SELECT_PATTERN.search(block):
            logger.warning("[SANITIZER] REJECTED: No SELECT statement found in output")
            return SanitizationResult(
                valid=False,
                sql=None,
                statement_count=0,
                had_commentary=True,
                error_message="No valid SQL statement found in output",
                raw_input=raw_input
            )

        statements = [s.strip() for s in sqlparse.split(block) if s.strip()]
        if not statements:
            return SanitizationResult(
                valid=False,
                sql=None,
                statement_count=0,
                had_commentary=True,
                error_message="Could not extract valid SQL statement from output",
                raw_input=raw_input
            )
        if len(statements) > 1:
            logger.warning(f"[SANITIZER] {len(statements)} statements found, keeping the first")

        sql = statements[0]
        if not self.STATEMENT_START_PATTERN.match(self._strip_leading_comments(sql)):
            detected = sql.split(None, 1)[0].upper()
            logger.warning(f"[SANITIZER] REJECTED: Non-read-only statement ({detected})")
            return SanitizationResult(
                valid=False,
                sql=None,
                statement_count=len(statements),
                had_commentary=fenced,
                error_message=f"Only SELECT queries are allowed. Detected: {detected}",
                raw_input=raw_input
            )

        had_commentary = fenced or sql != raw_output.strip()
        if had_commentary:
            logger.info("[SANITIZER] Stripped markup or commentary from SQL output")
        logger.info(f"[SANITIZER] Extracted clean SQL: {sql[:80]}...")

        return SanitizationResult(
            valid=True,
            sql=sql,
            statement_count=len(statements),
            had_commentary=had_commentary,
            error_message=None,
            raw_input=raw_input
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    @staticmethod
    def _unescape_newlines(text: str) -> str:
        # Only when the whole completion arrived escaped; real newlines mean
        # any remaining backslash-n belongs to a literal
        if '\n' in text or '\\n' not in text:
            return text
        return text.replace('\\r\\n', '\n').replace('\\n', '\n').replace('\\t', '\t')

    def _strip_fences(self, text: str):
        if '```' not in text:
            return text, False
        blocks = [
            m.group(1).strip() for m in self.FENCE_BLOCK_PATTERN.finditer(text)
            if self.HAS_SELECT_PATTERN.search(m.group(1))
        ]
        if blocks:
            return max(blocks, key=len), True
        return self.FENCE_MARKER_PATTERN.sub('', text).replace('```', '').strip(), True

    def _unwrap_inline_code(self, text: str) -> str:
        return self.INLINE_CODE_PATTERN.sub(lambda m: m.group(1), text)

    def _replace_backticks(self, text: str) -> str:
        if '`' not in text:
            return text

        def _bracket(m: re.Match) -> str:
            name = m.group(1).strip()
            if self.HAS_SELECT_PATTERN.search(name):
                return name
            return f"[{name}]"

        text = self.BACKTICK_IDENTIFIER_PATTERN.sub(_bracket, text)
        return text.replace('`', '')

    def _longest_sql_block(self, text: str) -> str:
        lines = text.split('\n')
        blocks: List[str] = []
        i = 0
        while i < len(lines):
            if not self.STATEMENT_START_PATTERN.match(lines[i]):
                i += 1
                continue

            start = i
            while start > 0 and self.COMMENT_LINE_PATTERN.match(lines[start - 1]):
                start -= 1

            end = i + 1
            while end < len(lines) and not self._is_prose(lines[end]):
                end += 1
            blocks.append('\n'.join(lines[start:end]).strip())
            i = end

        if blocks:
            return max(blocks, key=len)

        # Prose and SQL on one line: "Here is the query: SELECT ..."
        inline = self.INLINE_SELECT_PATTERN.search(text)
        return text[inline.start(1):].strip() if inline else ""

    def _is_prose(self, line: str) -> bool:
        stripped = line.strip()
        if not stripped or self.COMMENT_LINE_PATTERN.match(stripped):
            return False
        if self.SQL_TOKEN_PATTERN.search(stripped):
            return False
        # "Where Country Is Not Null" is a clause, "In short, it lists rows." is prose
        first_word = stripped.split(None, 1)[0].rstrip(",")
        if is_keyword(first_word) and not self.SENTENCE_END_PATTERN.search(stripped):
            return False
        return bool(self.PROSE_LINE_PATTERN.match(stripped))

    @staticmethod
    def _strip_leading_comments(sql: str) -> str:
        return sqlparse.format(sql, strip_comments=True).strip()


_sanitizer: Optional[SQLOutputSanitizer] = None


def get_sql_sanitizer() -> SQLOutputSanitizer:
    """Get or create the shared sanitizer."""
    global _sanitizer
    if _sanitizer is None:
        _sanitizer = SQLOutputSanitizer()
    return _sanitizer


def clean_sql_query(raw_output: str) -> str:
    """Extracted SQL statement, or an empty string if none was found."""
    result = get_sql_sanitizer().sanitize(raw_output)
    return result.sql if result.valid else ""


def strip_backticks(sql: str) -> str:
    """Backtick identifiers become brackets; stray backticks outside literals are dropped."""
    if not sql or '`' not in sql:
        return sql
    sanitizer = get_sql_sanitizer()
    return rewrite_masked(sql, sanitizer._replace_backticks)

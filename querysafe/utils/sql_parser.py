"""SQL parsing utilities using sqlglot.

This module provides the AST primitives the safety validator composes:
statement parsing, read-only classification, dangerous-function lookup,
table/column extraction, complexity analysis and the row-limit rewrite.
"""

from dataclasses import dataclass
from typing import List, Optional, Set

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError
from sqlglot.parser import Parser
from sqlglot.tokens import Token, TokenType

from querysafe.logging import get_logger

logger = get_logger(__name__)

READ_ONLY_ROOTS = (exp.Select, exp.Union, exp.Intersect, exp.Except)

WRITE_NODES = (
    exp.Insert,
    exp.Update,
    exp.Delete,
    exp.Merge,
    exp.Create,
    exp.Drop,
    exp.Alter,
    exp.TruncateTable,
    exp.Command,
)

STATEMENT_TYPE_ALIASES = {
    "truncatetable": "truncate",
    "altertable": "alter",
}

DANGEROUS_FUNCTIONS = {
    "postgres": frozenset({"pg_sleep", "pg_read_file", "pg_read_binary_file", "pg_ls_dir", "lo_import", "lo_export", "lo_unlink", "set_config", "dblink"}),
    "mysql": frozenset({"load_file", "sleep", "benchmark"}),
    "tsql": frozenset({"xp_cmdshell", "openrowset", "opendatasource", "openquery"}),
    "sqlite": frozenset({"load_extension", "readfile", "writefile"}),
}

# Scoring weights for the complexity estimate
JOIN_WEIGHT = 2
SUBQUERY_WEIGHT = 5
AGGREGATION_WEIGHT = 1
WILDCARD_WEIGHT = 1
CARTESIAN_PENALTY = 50

LOW_COMPLEXITY_MAX = 10
MEDIUM_COMPLEXITY_MAX = 20

BRACKET_PRECEDERS = {
    TokenType.VAR,
    TokenType.IDENTIFIER,
    TokenType.STRING,
    TokenType.R_BRACKET,
    TokenType.R_PAREN,
    TokenType.ARRAY,
} | set(Parser.TYPE_TOKENS)


class SQLSyntaxError(ValueError):
    """Raised by ``SQLParser.parse_statements`` for input the grammar rejects."""


@dataclass(frozen=True)
class ComplexityAnalysis:
    joins: int = 0
    subqueries: int = 0
    max_subquery_depth: int = 0
    aggregations: int = 0
    has_wildcard: bool = False
    has_cartesian: bool = False

    @property
    def score(self) -> int:
        return (
            self.joins * JOIN_WEIGHT
            + self.subqueries * SUBQUERY_WEIGHT
            + self.aggregations * AGGREGATION_WEIGHT
            + (WILDCARD_WEIGHT if self.has_wildcard else 0)
            + (CARTESIAN_PENALTY if self.has_cartesian else 0)
        )

    @property
    def level(self) -> str:
        if self.score <= LOW_COMPLEXITY_MAX:
            return "low"
        if self.score <= MEDIUM_COMPLEXITY_MAX:
            return "medium"
        return "high"

    def merge(self, other: "ComplexityAnalysis") -> "ComplexityAnalysis":
        return ComplexityAnalysis(
            joins=self.joins + other.joins,
            subqueries=self.subqueries + other.subqueries,
            max_subquery_depth=max(self.max_subquery_depth, other.max_subquery_depth),
            aggregations=self.aggregations + other.aggregations,
            has_wildcard=self.has_wildcard or other.has_wildcard,
            has_cartesian=self.has_cartesian or other.has_cartesian,
        )

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "level": self.level,
            "joins": self.joins,
            "subqueries": self.subqueries,
            "maxSubqueryDepth": self.max_subquery_depth,
            "aggregations": self.aggregations,
            "hasWildcard": self.has_wildcard,
            "hasCartesianProduct": self.has_cartesian,
        }


class SQLParser:
    """SQL parser and analyzer using sqlglot."""

    def __init__(self, dialect: str = "postgres") -> None:
        """Initialize SQL parser.

        Args:
            dialect: sqlglot dialect (postgres, mysql, sqlite, tsql)

        """
        self.dialect = dialect

    def tokenize(self, sql: str) -> List[Token]:
        return sqlglot.tokenize(sql, read=self.dialect)

    def is_blank(self, sql: str) -> bool:
        """True for empty, whitespace-only or comment-only input."""
        if not sql or not sql.strip():
            return True
        try:
            tokens = self.tokenize(sql)
        except TokenError:
            return False
        return all(token.token_type == TokenType.SEMICOLON for token in tokens)

    def find_bracket_identifier(self, sql: str) -> bool:
        """Detect ``[name]`` identifier quoting outside the T-SQL and SQLite grammars.

        PostgreSQL legitimately uses brackets for array literals, subscripts
        and array type suffixes; MySQL never does.
        """
        if self.dialect in ("tsql", "sqlite"):
            return False

        try:
            tokens = self.tokenize(sql)
        except TokenError:
            return False

        depth = 0
        previous: Optional[Token] = None
        for token in tokens:
            if token.token_type == TokenType.L_BRACKET:
                if self.dialect == "mysql":
                    return True
                legit = depth > 0 or (previous is not None and previous.token_type in BRACKET_PRECEDERS)
                if not legit:
                    return True
                depth += 1
            elif token.token_type == TokenType.R_BRACKET and depth > 0:
                depth -= 1
            previous = token
        return False

    def parse_statements(self, sql: str) -> List[exp.Expression]:
        """Parse every statement in ``sql``.

        Raises:
            SQLSyntaxError: If tokenizing or parsing fails

        """
        try:
            statements = sqlglot.parse(sql, read=self.dialect)
        except ParseError as e:
            raise SQLSyntaxError(self._describe_parse_error(e)) from e
        except TokenError as e:
            raise SQLSyntaxError(str(e)) from e
        return [statement for statement in statements if statement is not None]

    @staticmethod
    def _describe_parse_error(error: ParseError) -> str:
        if error.errors:
            first = error.errors[0]
            description = first.get("description") or str(error)
            line, col = first.get("line"), first.get("col")
            if line is not None and col is not None:
                return f"{description} (line {line}, column {col})"
            return description
        return str(error)

    @staticmethod
    def unwrap(statement: exp.Expression) -> exp.Expression:
        while isinstance(statement, (exp.Subquery, exp.Paren)) and statement.this is not None:
            statement = statement.this
        return statement

    @staticmethod
    def statement_type(statement: exp.Expression) -> str:
        """Lowercase statement kind, e.g. ``select``, ``drop``, ``grant``."""
        if isinstance(statement, exp.Command):
            word = str(statement.this or "command").split()
            return word[0].lower() if word else "command"
        if isinstance(statement, READ_ONLY_ROOTS):
            return "select"
        return STATEMENT_TYPE_ALIASES.get(statement.key, statement.key)

    def is_read_only_root(self, statement: exp.Expression) -> bool:
        return isinstance(self.unwrap(statement), READ_ONLY_ROOTS)

    def find_write_operations(self, statement: exp.Expression) -> List[str]:
        """Data-modifying nodes anywhere in the tree, including CTEs and ``SELECT ... INTO``."""
        found: List[str] = []
        for node in statement.find_all(*WRITE_NODES):
            kind = self.statement_type(node)
            if kind not in found:
                found.append(kind)
        for select in statement.find_all(exp.Select):
            if select.args.get("into") is not None and "select into" not in found:
                found.append("select into")
        return found

    def find_dangerous_functions(self, statement: exp.Expression) -> List[str]:
        blocked = DANGEROUS_FUNCTIONS.get(self.dialect, frozenset())
        found: List[str] = []
        for func in statement.find_all(exp.Func):
            name = (func.name if isinstance(func, exp.Anonymous) else func.sql_name()).lower()
            if name in blocked and name not in found:
                found.append(name)
        return found

    def extract_tables(self, statement: exp.Expression) -> Set[str]:
        """Referenced tables, schema-qualified where written; CTE names are excluded."""
        cte_names = {cte.alias_or_name.lower() for cte in statement.find_all(exp.CTE)}
        tables: Set[str] = set()
        for table in statement.find_all(exp.Table):
            if not isinstance(table.this, exp.Identifier):
                continue
            name = table.name
            if not name:
                continue
            if not table.db and name.lower() in cte_names:
                continue
            tables.add(".".join(part for part in (table.catalog, table.db, name) if part))
        return tables

    def extract_columns(self, statement: exp.Expression) -> Set[str]:
        columns: Set[str] = set()
        for column in statement.find_all(exp.Column):
            name = column.name
            if name and name != "*":
                columns.add(name)
        return columns

    def analyze_complexity(self, statement: exp.Expression) -> ComplexityAnalysis:
        joins = list(statement.find_all(exp.Join))

        depths = [self._select_depth(select) for select in statement.find_all(exp.Select)]
        nested = [depth for depth in depths if depth > 0]

        aggregate_kinds = {type(node) for node in statement.find_all(exp.AggFunc)}
        has_group = any(True for _ in statement.find_all(exp.Group))

        return ComplexityAnalysis(
            joins=len(joins),
            subqueries=len(nested),
            max_subquery_depth=max(nested, default=0),
            aggregations=len(aggregate_kinds) + (1 if has_group else 0),
            has_wildcard=self.has_select_star(statement),
            has_cartesian=any(self._is_cartesian(join) for join in joins),
        )

    @staticmethod
    def _select_depth(select: exp.Select) -> int:
        depth = 0
        parent = select.parent
        while parent is not None:
            if isinstance(parent, exp.Select):
                depth += 1
            parent = parent.parent
        return depth

    @staticmethod
    def _is_cartesian(join: exp.Join) -> bool:
        if join.args.get("on") is not None or join.args.get("using"):
            return False
        if str(join.args.get("method") or "").upper() == "NATURAL":
            return False
        # LATERAL, UNNEST and CROSS APPLY are correlated, not products
        if isinstance(join.this, (exp.Lateral, exp.Unnest)):
            return False
        return True

    @staticmethod
    def has_select_star(statement: exp.Expression) -> bool:
        for select in statement.find_all(exp.Select):
            if any(isinstance(projection, exp.Star) for projection in select.expressions):
                return True
        return False

    @staticmethod
    def limit_value(statement: exp.Expression) -> Optional[int]:
        """Row limit written on the statement.

        Returns None when there is no limit, and -1 when the limit is not an
        integer literal (a parameter or expression), which callers treat as
        unbounded.
        """
        limit = statement.args.get("limit")
        if limit is None:
            return None
        if isinstance(limit, exp.Fetch):
            value = limit.args.get("count")
        elif isinstance(limit, exp.Limit):
            value = limit.args.get("expression") or limit.args.get("this")
        else:
            value = limit
        if isinstance(value, exp.Literal) and value.is_int:
            return int(value.name)
        return -1

    def apply_row_limit(self, statement: exp.Expression, max_rows: int) -> Optional[exp.Expression]:
        """Return a rewritten copy capped at ``max_rows``, or None when the cap already holds."""
        target = self.unwrap(statement)
        current = self.limit_value(target)
        if current is not None and 0 <= current <= max_rows:
            return None

        rewritten = target.copy()
        if isinstance(rewritten, exp.Select):
            rewritten.set("limit", exp.Limit(expression=exp.Literal.number(max_rows)))
            return rewritten

        if self.dialect == "tsql":
            # TOP cannot follow a set operation; cap it from the outside
            rewritten.set("limit", None)
            return exp.select("*").from_(rewritten.subquery("limited_result")).limit(max_rows)

        rewritten.set("limit", exp.Limit(expression=exp.Literal.number(max_rows)))
        return rewritten

    def to_sql(self, statement: exp.Expression) -> str:
        return statement.sql(dialect=self.dialect)


_sql_parsers: dict[str, SQLParser] = {}


def get_sql_parser(dialect: str = "postgres") -> SQLParser:
    """Get or create the SQL parser for a dialect."""
    if dialect not in _sql_parsers:
        _sql_parsers[dialect] = SQLParser(dialect=dialect)
    return _sql_parsers[dialect]

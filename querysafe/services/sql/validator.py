"""SQL safety validator.

Decides whether a SQL string may run against a live connection and under
which limits:
- Syntax validation in the connection's dialect
- Read-only enforcement over the whole AST
- Dialect-specific dangerous function checks
- Row-limit rewrite and complexity-derived timeout
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from opentelemetry import trace

from querysafe.cache.metrics import pipeline_metrics
from querysafe.config import settings
from querysafe.logging import get_logger
from querysafe.utils.dialect_mapper import db_type_to_dialect
from querysafe.utils.sql_parser import ComplexityAnalysis, SQLSyntaxError, get_sql_parser

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

EMPTY_QUERY_ERROR = "SQL query cannot be empty"

BRACKET_HINTS = {
    "postgres": "use double quotes for identifiers",
    "mysql": "use backticks for identifiers",
}


@dataclass(frozen=True)
class ValidationOptions:
    max_rows: int = 1000
    timeout_seconds: int = 30
    min_timeout_seconds: int = 5
    max_subquery_depth: int = 3
    max_joins: int = 10

    @classmethod
    def from_settings(cls) -> "ValidationOptions":
        return cls(
            max_rows=settings.QUERY_MAX_ROWS,
            timeout_seconds=settings.QUERY_TIMEOUT_SECONDS,
            min_timeout_seconds=settings.QUERY_MIN_TIMEOUT_SECONDS,
            max_subquery_depth=settings.MAX_SUBQUERY_DEPTH,
            max_joins=settings.MAX_JOINS,
        )


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one request; immutable once produced."""

    valid: bool
    sql: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    recommended_timeout_seconds: int = 30
    complexity: str = "low"
    limit_applied: bool = False
    statement_types: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "sql": self.sql,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "tables": list(self.tables),
            "columns": list(self.columns),
            "recommendedTimeoutSeconds": self.recommended_timeout_seconds,
            "complexity": self.complexity,
            "limitApplied": self.limit_applied,
            "statementTypes": list(self.statement_types),
            "details": dict(self.details),
        }


def recommend_timeout(level: str, timeout_seconds: int, min_timeout_seconds: int) -> int:
    """Shorter enforced timeouts for heavier queries; never above the input."""
    if level == "high":
        recommended = math.ceil(timeout_seconds / 2)
    elif level == "medium":
        recommended = math.ceil(timeout_seconds * 2 / 3)
    else:
        recommended = timeout_seconds
    floor = min(min_timeout_seconds, timeout_seconds)
    return max(floor, min(recommended, timeout_seconds))


class SQLValidator:
    """SQL safety validator for a single dialect."""

    def __init__(self, db_type: str = "postgresql") -> None:
        self.db_type = db_type
        self.dialect, self.known_db_type = db_type_to_dialect(db_type)
        self.parser = get_sql_parser(self.dialect)

    def validate(self, sql: str, options: Optional[ValidationOptions] = None) -> ValidationResult:
        """Validate ``sql`` and compute its execution constraints.

        Malformed input never raises; it yields ``valid=False`` with errors.
        """
        options = options or ValidationOptions()

        with tracer.start_as_current_span(
            "sql_validator.validate",
            attributes={"sql_length": len(sql or ""), "dialect": self.dialect},
        ) as span:
            result = self._validate(sql or "", options)

            span.set_attribute("validation_result", "valid" if result.valid else "invalid")
            span.set_attribute("error_count", len(result.errors))
            span.set_attribute("warning_count", len(result.warnings))
            span.set_attribute("limit_applied", result.limit_applied)
            span.set_attribute("complexity", result.complexity)

            pipeline_metrics.record_validation(self.db_type, result.valid, result.limit_applied)
            logger.info(
                "SQL validation completed",
                extra={
                    "db_type": self.db_type,
                    "is_valid": result.valid,
                    "errors": len(result.errors),
                    "warnings": len(result.warnings),
                    "complexity": result.complexity,
                    "limit_applied": result.limit_applied,
                },
            )
            return result

    def _validate(self, sql: str, options: ValidationOptions) -> ValidationResult:
        warnings: List[str] = []
        if not self.known_db_type:
            warnings.append(f"Unknown database type '{self.db_type}'; validated with PostgreSQL grammar")

        def invalid(errors: List[str], **kwargs: Any) -> ValidationResult:
            return ValidationResult(
                valid=False,
                sql=sql,
                errors=errors,
                warnings=warnings,
                recommended_timeout_seconds=options.timeout_seconds,
                **kwargs,
            )

        if self.parser.is_blank(sql):
            return invalid([EMPTY_QUERY_ERROR])

        if self.parser.find_bracket_identifier(sql):
            hint = BRACKET_HINTS.get(self.dialect, "use the dialect's identifier quoting")
            return invalid([f"SQL syntax error: bracket-quoted identifiers are not valid in this dialect ({hint})"])

        try:
            statements = self.parser.parse_statements(sql)
        except SQLSyntaxError as e:
            return invalid([f"SQL syntax error: {e}"])

        if not statements:
            return invalid([EMPTY_QUERY_ERROR])

        errors: List[str] = []
        statement_types: List[str] = []
        tables: set[str] = set()
        columns: set[str] = set()
        complexity = ComplexityAnalysis()

        if len(statements) > 1:
            errors.append(f"Multiple statements are not allowed (found {len(statements)})")

        for statement in statements:
            kind = self.parser.statement_type(self.parser.unwrap(statement))
            statement_types.append(kind)

            if not self.parser.is_read_only_root(statement):
                errors.append(f"Only SELECT queries allowed (found: {kind})")
                continue

            for operation in self.parser.find_write_operations(statement):
                errors.append(f"Only SELECT queries allowed (found: {operation})")

            for function in self.parser.find_dangerous_functions(statement):
                errors.append(f"Dangerous function detected: {function}")

            tables |= self.parser.extract_tables(statement)
            columns |= self.parser.extract_columns(statement)
            complexity = complexity.merge(self.parser.analyze_complexity(statement))

        warnings.extend(self._complexity_warnings(complexity, options))

        if errors:
            return invalid(
                errors,
                tables=sorted(tables),
                columns=sorted(columns),
                statement_types=statement_types,
                complexity=complexity.level,
                details=complexity.to_dict(),
            )

        output_sql = sql
        limit_applied = False
        rewritten = self.parser.apply_row_limit(statements[0], options.max_rows)
        if rewritten is not None:
            output_sql = self.parser.to_sql(rewritten)
            limit_applied = True

        return ValidationResult(
            valid=True,
            sql=output_sql,
            warnings=warnings,
            tables=sorted(tables),
            columns=sorted(columns),
            recommended_timeout_seconds=recommend_timeout(
                complexity.level, options.timeout_seconds, options.min_timeout_seconds
            ),
            complexity=complexity.level,
            limit_applied=limit_applied,
            statement_types=statement_types,
            details={**complexity.to_dict(), "maxRows": options.max_rows},
        )

    @staticmethod
    def _complexity_warnings(complexity: ComplexityAnalysis, options: ValidationOptions) -> List[str]:
        warnings: List[str] = []
        if complexity.has_cartesian:
            warnings.append("Potential cartesian product detected (JOIN without ON clause)")
        if complexity.has_wildcard:
            warnings.append("Query uses SELECT * - consider specifying columns for better performance")
        if complexity.max_subquery_depth > options.max_subquery_depth:
            warnings.append(
                f"Query has {complexity.max_subquery_depth} nested subqueries "
                f"(recommend max {options.max_subquery_depth})"
            )
        if complexity.joins > options.max_joins:
            warnings.append(f"Query has {complexity.joins} JOINs (max recommended: {options.max_joins})")
        return warnings

    def validate_against_schema(self, result: ValidationResult, schema: Mapping[str, Any]) -> List[str]:
        """Warn about tables and columns the schema does not know. Never blocks."""
        tables: Mapping[str, Sequence[Mapping[str, Any]]] = schema.get("tables", {})
        known_tables = {name.lower() for name in tables}
        known_short = {name.lower().split(".")[-1] for name in tables}
        known_columns = {
            str(column.get("name", "")).lower() for columns in tables.values() for column in columns
        }

        warnings: List[str] = []
        for table in result.tables:
            lowered = table.lower()
            if lowered not in known_tables and lowered.split(".")[-1] not in known_short:
                warnings.append(f'Table "{table}" was not found in the schema')
        for column in result.columns:
            if column.lower() not in known_columns:
                warnings.append(f'Column "{column}" might not exist (unable to verify without table context)')
        return warnings


_sql_validators: Dict[str, SQLValidator] = {}


def get_sql_validator(db_type: str = "postgresql") -> SQLValidator:
    """Get or create the validator for a database type."""
    if db_type not in _sql_validators:
        _sql_validators[db_type] = SQLValidator(db_type=db_type)
    return _sql_validators[db_type]


def validate(sql: str, db_type: str, options: Optional[ValidationOptions] = None) -> ValidationResult:
    return get_sql_validator(db_type).validate(sql, options)

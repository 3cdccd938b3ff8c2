"""Natural-language to SQL generation.

The generated statement is validated but never executed here; callers send
it to the execution orchestrator separately.
"""

import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from langchain_core.messages import HumanMessage, SystemMessage
from opentelemetry import trace

from querysafe.cache.metrics import pipeline_metrics
from querysafe.exceptions.base import QuerySafeBaseError
from querysafe.exceptions.pipeline import ConnectionUnavailableError, NoActiveConnectionError
from querysafe.llm_config import llm_config
from querysafe.logging import get_logger
from querysafe.security import injection_detector
from querysafe.services.audit.audit_logger import AuditLogger, QueryHistoryEntry, SecurityEvent
from querysafe.services.connections.schema import SchemaService
from querysafe.services.knowledge.store import GlossaryTerm, GoldenQuery, KnowledgeStore
from querysafe.services.ratelimit.rate_limiter import RateLimiter
from querysafe.services.sql.results import ErrorKind, GenerationOutcome, GenerationSuccess, PipelineFailure
from querysafe.services.sql.validator import ValidationOptions, get_sql_validator

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

# Async callable: (system prompt, user prompt) -> raw model output
SQLGenerator = Callable[[str, str], Awaitable[str]]

MAX_GENERATION_ATTEMPTS = 3

_FENCE = re.compile(r"```(?:sql)?\s*\n?(.*?)```", re.IGNORECASE | re.DOTALL)

SYSTEM_PROMPT = """You are an expert SQL query generator. Follow these rules strictly:
1. Generate ONLY valid SQL queries based on the provided schema
2. Use ONLY table names and column names that appear in the DATABASE SCHEMA section
3. DO NOT treat schema qualifiers (like "public") as table names
4. Return ONLY the SQL query without explanations, markdown formatting, or code blocks
5. Do not include semicolons at the end
6. Use proper JOIN syntax with explicit ON conditions
7. Reference foreign key relationships from the schema
8. Generate a single read-only SELECT statement

CRITICAL: Only use tables and columns that are explicitly listed in the schema provided below."""


@dataclass
class FailedAttempt:
    sql: str
    error: str


@dataclass
class PromptContext:
    question: str
    schema_text: str
    dialect: str
    guidelines: str
    examples: List[str] = field(default_factory=list)
    glossary: List[GlossaryTerm] = field(default_factory=list)
    golden_queries: List[GoldenQuery] = field(default_factory=list)
    previous_attempts: List[FailedAttempt] = field(default_factory=list)


def build_prompt(context: PromptContext) -> str:
    parts = [
        f"SQL DIALECT: {context.dialect}",
        f"DIALECT GUIDELINES:\n{context.guidelines}",
        f"DATABASE SCHEMA:\n{context.schema_text}",
    ]
    if context.glossary:
        lines = ["BUSINESS GLOSSARY (use these definitions for specific terms):"]
        for term in context.glossary:
            line = f"- {term.term}: {term.definition}"
            if term.sql_logic:
                line += f" (SQL logic: `{term.sql_logic}`)"
            lines.append(line)
        parts.append("\n".join(lines))
    if context.golden_queries:
        lines = ["VERIFIED EXAMPLES (use these as reference for similar questions):"]
        for index, golden in enumerate(context.golden_queries, 1):
            lines.append(f'{index}. Q: "{golden.natural_query}"\n   SQL: {golden.sql_query}')
        parts.append("\n".join(lines))
    if context.examples:
        parts.append("EXAMPLE QUERIES:\n" + "\n".join(f"- {example}" for example in context.examples))
    if context.previous_attempts:
        feedback = ["PREVIOUS ATTEMPTS FAILED:"]
        for index, attempt in enumerate(context.previous_attempts, 1):
            feedback.append(f"Attempt {index}:\nSQL: {attempt.sql}\nError: {attempt.error}")
        feedback.append("Fix the error. Table and column names must exist in the schema.")
        parts.append("\n".join(feedback))
    parts.append(f'USER QUESTION: "{context.question}"\n\nSQL QUERY:')
    return "\n\n".join(parts)


def clean_sql(raw: str) -> str:
    """Strip markdown fences and a trailing semicolon from model output."""
    text = raw.strip()
    match = _FENCE.search(text)
    if match:
        text = match.group(1).strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    return text


def calculate_confidence(attempts: int, has_warnings: bool, table_count: int) -> float:
    score = 1.0 - (attempts - 1) * 0.15
    if has_warnings:
        score -= 0.05
    if table_count > 5:
        score -= 0.05
    return round(max(0.5, min(1.0, score)), 2)


async def langchain_generator(system_prompt: str, user_prompt: str) -> str:
    llm = llm_config.get_llm()
    response = await llm.ainvoke([SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)])
    return str(response.content)


class GenerationService:
    def __init__(
        self,
        schema_service: SchemaService,
        rate_limiter: RateLimiter,
        audit: Optional[AuditLogger] = None,
        generator: SQLGenerator = langchain_generator,
        knowledge: Optional[KnowledgeStore] = None,
        options: Optional[ValidationOptions] = None,
        max_attempts: int = MAX_GENERATION_ATTEMPTS,
    ) -> None:
        self.schema_service = schema_service
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.generator = generator
        self.knowledge = knowledge
        self.options = options or ValidationOptions.from_settings()
        self.max_attempts = max_attempts

    async def generate(
        self,
        user_id: str,
        question: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> GenerationOutcome:
        with tracer.start_as_current_span("generation.generate", attributes={"question.length": len(question)}) as span:
            outcome = await self._run(user_id, question, ip_address, user_agent)
            label = "success" if outcome.success else outcome.kind.value
            span.set_attribute("pipeline.outcome", label)
            pipeline_metrics.record_outcome("generate", label)
            return outcome

    async def _run(
        self,
        user_id: str,
        question: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> GenerationOutcome:
        check = injection_detector.detect(question)
        if check.should_block:
            if self.audit is not None:
                self.audit.log_security_event(
                    SecurityEvent(
                        user_id=user_id,
                        event_type="prompt_injection",
                        severity=check.risk_level.value,
                        details={
                            "query_preview": question[:100],
                            "threats": check.threats,
                            "patterns": check.detected_patterns,
                        },
                        ip_address=ip_address,
                        user_agent=user_agent,
                    )
                )
            return PipelineFailure(
                ErrorKind.SECURITY_INCIDENT,
                injection_detector.user_message(check),
                details={"securityThreat": True, "riskLevel": check.risk_level.value},
            )
        if not check.is_safe:
            logger.info("Question flagged below blocking level", user_id=user_id, threats=check.threats)

        rate_limit = await self.rate_limiter.check_generation(user_id)
        headers = rate_limit.headers()
        if not rate_limit.success:
            return PipelineFailure(
                ErrorKind.RATE_LIMITED,
                rate_limit.message or "Rate limit exceeded",
                retry_after=rate_limit.retry_after,
                headers=headers,
            )

        try:
            record, adapter = await self.schema_service.resolve(user_id)
            schema, _ = await self.schema_service.load(record.id, adapter)
        except NoActiveConnectionError as e:
            return PipelineFailure(ErrorKind.NO_ACTIVE_CONNECTION, e.message, headers=headers)
        except ConnectionUnavailableError as e:
            return PipelineFailure(ErrorKind.CONNECTION_FAILED, e.message, headers=headers)
        except Exception as e:
            logger.error("Failed to load schema for generation", user_id=user_id, error_type=type(e).__name__, error=str(e))
            return PipelineFailure(ErrorKind.CONNECTION_FAILED, "Failed to load database schema", headers=headers)

        context = PromptContext(
            question=question,
            schema_text=adapter.format_schema_for_prompt(schema),
            dialect=adapter.get_sql_dialect(),
            guidelines=adapter.get_sql_generation_guidelines(),
            examples=adapter.get_example_queries(),
        )
        context.glossary, context.golden_queries = await self._load_knowledge(user_id, question)

        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self.generator(SYSTEM_PROMPT, build_prompt(context))
            except QuerySafeBaseError as e:
                logger.error("LLM unavailable", error_code=e.error_code)
                return PipelineFailure(ErrorKind.INTERNAL, "Failed to generate SQL", headers=headers)
            except Exception as e:
                logger.error("LLM call failed", attempt=attempt, error_type=type(e).__name__, error=str(e))
                return PipelineFailure(ErrorKind.INTERNAL, "Failed to generate SQL", headers=headers)

            sql = clean_sql(raw)
            validation = adapter.validate_query(sql, self.options)
            if not validation.valid:
                context.previous_attempts.append(FailedAttempt(sql, f"Syntax error: {', '.join(validation.errors)}"))
                logger.info("Generated SQL failed validation", attempt=attempt, errors=validation.errors)
                continue

            schema_warnings = get_sql_validator(adapter.CONNECTOR_KEY.value).validate_against_schema(validation, schema)
            if any(warning.startswith("Table ") for warning in schema_warnings):
                context.previous_attempts.append(FailedAttempt(sql, f"Schema error: {', '.join(schema_warnings)}"))
                logger.info("Generated SQL references unknown tables", attempt=attempt, warnings=schema_warnings)
                continue

            warnings = list(validation.warnings) + schema_warnings
            if self.audit is not None:
                self.audit.log_query_history(
                    QueryHistoryEntry(user_id=user_id, connection_id=record.id, generated_sql=sql, nl_query=question)
                )
            logger.info("SQL generated", user_id=user_id, connection_id=record.id, attempts=attempt)
            return GenerationSuccess(
                sql=sql,
                validation=validation,
                confidence=calculate_confidence(attempt, bool(warnings), len(validation.tables)),
                attempts=attempt,
                warnings=warnings,
                headers=headers,
            )

        last_error = context.previous_attempts[-1].error if context.previous_attempts else "unknown error"
        return PipelineFailure(
            ErrorKind.GENERATION_FAILED,
            f"Failed to generate valid SQL after {self.max_attempts} attempts: {last_error}",
            headers=headers,
        )

    async def _load_knowledge(self, user_id: str, question: str) -> Tuple[List[GlossaryTerm], List[GoldenQuery]]:
        """Glossary terms and verified examples for the prompt; a failed lookup only drops that section."""
        if self.knowledge is None:
            return [], []

        glossary: List[GlossaryTerm] = []
        golden: List[GoldenQuery] = []
        try:
            glossary = await self.knowledge.find_glossary_terms(user_id, question)
        except Exception as e:
            logger.warning("Failed to fetch glossary terms", user_id=user_id, error_type=type(e).__name__)
        try:
            golden = await self.knowledge.find_golden_queries(user_id, question)
        except Exception as e:
            logger.warning("Failed to fetch golden queries", user_id=user_id, error_type=type(e).__name__)
        return glossary, golden

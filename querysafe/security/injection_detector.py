"""Prompt-injection detection for natural-language questions.

Runs before a question reaches the LLM. Regex patterns catch instruction
overrides, fake role markers, embedded SQL and jailbreak personas; a few
heuristics flag unusual shapes of input. The highest matched risk decides
whether the request is blocked.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Pattern, Tuple


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def score(self) -> int:
        return RISK_SCORES[self]


RISK_SCORES = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3, RiskLevel.CRITICAL: 4}

BLOCKING_LEVELS = frozenset({RiskLevel.HIGH, RiskLevel.CRITICAL})

HEURISTIC_PATTERN = "Heuristic check"


@dataclass(frozen=True)
class InjectionPattern:
    pattern: Pattern[str]
    threat: str
    risk: RiskLevel


def _p(regex: str, threat: str, risk: RiskLevel, flags: int = re.IGNORECASE) -> InjectionPattern:
    return InjectionPattern(re.compile(regex, flags), threat, risk)


INJECTION_PATTERNS: Tuple[InjectionPattern, ...] = (
    # Instruction overrides
    _p(
        r"ignore\s+(previous|all|above|prior)\s+(instructions?|rules?|prompts?|context)",
        "Attempt to override system instructions",
        RiskLevel.CRITICAL,
    ),
    _p(
        r"disregard\s+(previous|all|above|prior)\s+(instructions?|rules?|prompts?)",
        "Attempt to disregard safety rules",
        RiskLevel.CRITICAL,
    ),
    _p(r"forget\s+(everything|all)\s+(you\s+)?(know|learned|were\s+told)", "Attempt to reset LLM context", RiskLevel.HIGH),
    # Role manipulation
    _p(
        r"(you\s+are\s+now|now\s+you\s+are|from\s+now\s+on)\s+(a\s+)?(different|new)",
        "Attempt to change LLM role",
        RiskLevel.HIGH,
    ),
    _p(r"system\s*:", "Fake system message injection", RiskLevel.CRITICAL),
    _p(r"assistant\s*:", "Fake assistant message injection", RiskLevel.HIGH),
    # Delimiter tricks
    _p(
        r"```[\s\S]*?(DROP|DELETE|UPDATE|INSERT|ALTER|TRUNCATE)[\s\S]*?```",
        "Code block with dangerous SQL commands",
        RiskLevel.CRITICAL,
    ),
    _p(r"<!--[\s\S]*?(DROP|DELETE|UPDATE|INSERT|ALTER)[\s\S]*?-->", "HTML comment with dangerous SQL", RiskLevel.HIGH),
    # SQL injection inside the question
    _p(r"(;|\n)\s*(DROP|DELETE|TRUNCATE|ALTER)\s+(TABLE|DATABASE)", "SQL injection attempt in query", RiskLevel.CRITICAL),
    _p(r"'\s*(OR|AND)\s*'?\d*'?\s*=\s*'?\d*'?", "SQL injection (OR/AND condition)", RiskLevel.HIGH),
    _p(r"UNION\s+SELECT", "UNION-based SQL injection attempt", RiskLevel.CRITICAL),
    _p(
        r"\b(bypass|override|disable|skip)\s+(safety|security|check|validation|filter)",
        "Attempt to bypass security measures",
        RiskLevel.CRITICAL,
    ),
    # Prompt leaking
    _p(
        r"(show|display|print|reveal|give)\s+(me\s+)?(your\s+)?(system\s+)?(prompt|instructions|rules)",
        "Attempt to leak system prompt",
        RiskLevel.MEDIUM,
    ),
    _p(r"\b(eval|exec|execute)\s*\(", "Code execution attempt", RiskLevel.CRITICAL),
    # Obfuscation
    _p(r"\\x[0-9a-fA-F]{2}", "Hex encoding detected (possible obfuscation)", RiskLevel.MEDIUM, flags=0),
    _p(r"&#\d+;", "HTML entity encoding (possible obfuscation)", RiskLevel.MEDIUM, flags=0),
    # Jailbreaks
    _p(r"\b(DAN|KEVIN|Developer Mode|Opposite Mode)\b", "Known jailbreak persona detected", RiskLevel.CRITICAL),
    _p(r"pretend\s+(you\s+)?(are|to\s+be)", "Attempt to change LLM behavior", RiskLevel.HIGH),
)

SPECIAL_CHARACTERS = re.compile(r"""[;'"\\<>{}\[\]]""")
HEURISTIC_SQL_KEYWORDS = ("SELECT", "FROM", "WHERE", "DROP", "DELETE", "INSERT", "UPDATE")

MAX_SPECIAL_CHARACTERS = 10
MAX_LENGTH = 500
MAX_NEWLINES = 5
MAX_SQL_KEYWORDS = 3


def _too_many_special_characters(text: str) -> bool:
    return len(SPECIAL_CHARACTERS.findall(text)) > MAX_SPECIAL_CHARACTERS


def _too_long(text: str) -> bool:
    return len(text) > MAX_LENGTH


def _too_many_newlines(text: str) -> bool:
    return text.count("\n") > MAX_NEWLINES


def _too_many_sql_keywords(text: str) -> bool:
    upper = text.upper()
    return sum(1 for keyword in HEURISTIC_SQL_KEYWORDS if keyword in upper) > MAX_SQL_KEYWORDS


HEURISTICS: Tuple[Tuple[Callable[[str], bool], str, RiskLevel], ...] = (
    (_too_many_special_characters, "Excessive special characters (possible injection)", RiskLevel.MEDIUM),
    (_too_long, "Unusually long query (possible prompt stuffing)", RiskLevel.LOW),
    (_too_many_newlines, "Multiple newlines (possible instruction injection)", RiskLevel.MEDIUM),
    (_too_many_sql_keywords, "Multiple SQL keywords in natural language query", RiskLevel.LOW),
)


@dataclass(frozen=True)
class InjectionCheck:
    is_safe: bool
    risk_level: RiskLevel
    threats: List[str] = field(default_factory=list)
    detected_patterns: List[str] = field(default_factory=list)

    @property
    def should_block(self) -> bool:
        return not self.is_safe and self.risk_level in BLOCKING_LEVELS


def detect(text: str) -> InjectionCheck:
    threats: List[str] = []
    detected: List[str] = []
    highest = RiskLevel.LOW

    for entry in INJECTION_PATTERNS:
        if entry.pattern.search(text):
            threats.append(entry.threat)
            detected.append(entry.pattern.pattern)
            if entry.risk.score > highest.score:
                highest = entry.risk

    for check, threat, risk in HEURISTICS:
        if check(text):
            threats.append(threat)
            detected.append(HEURISTIC_PATTERN)
            if risk.score > highest.score:
                highest = risk

    return InjectionCheck(
        is_safe=not threats,
        risk_level=highest,
        threats=threats,
        detected_patterns=detected,
    )


def user_message(check: InjectionCheck) -> str:
    """Message shown to the user for a flagged question; empty when safe."""
    if check.is_safe:
        return ""

    base = "Security Alert: Your query was blocked for safety reasons."
    first = check.threats[0]
    if check.risk_level == RiskLevel.CRITICAL:
        return (
            f"{base}\n\nCritical threat detected: {first}\n\n"
            "Please rephrase your query as a natural language question about your data."
        )
    if check.risk_level == RiskLevel.HIGH:
        return (
            f"{base}\n\nHigh risk pattern detected: {first}\n\n"
            "For security, we only accept natural language questions. "
            "Please avoid using SQL syntax or special commands."
        )
    if check.risk_level == RiskLevel.MEDIUM:
        return f"{base}\n\nSuspicious pattern detected: {first}\n\nPlease simplify your query and ask in plain English."
    return f"{base}\n\nYour query appears unusual. Please rephrase it as a simple question about your data."

"""
SQL quality scoring and the bounded repair loop.

The scores are best-effort lint heuristics based on string matching, not
correctness proofs:

- syntax (weight 0.4): SELECT and FROM present, balanced parentheses and
  single quotes
- security (weight 0.3): data-modifying keywords, comments, UNION and
  classic injection tokens
- performance (weight 0.3): ``SELECT *`` and missing WHERE

A low security score lowers the total and is logged, it never rejects a
query on its own.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from ..services.sql_validator import sql_validator
from .json_utils import strip_code_fence

SYNTAX_WEIGHT = 0.4
SECURITY_WEIGHT = 0.3
PERFORMANCE_WEIGHT = 0.3

DANGEROUS_KEYWORDS = ("DROP", "DELETE", "UPDATE", "INSERT", "ALTER", "CREATE", "TRUNCATE")
INJECTION_PATTERNS = ("--", "/*", "*/", "UNION", "OR 1=1", "OR '1'='1'")


@dataclass(frozen=True)
class SqlQualityScore:
    syntax: float
    security: float
    performance: float
    total: float

    @classmethod
    def of(cls, syntax: float, security: float, performance: float) -> "SqlQualityScore":
        total = SYNTAX_WEIGHT * syntax + SECURITY_WEIGHT * security + PERFORMANCE_WEIGHT * performance
        return cls(syntax, security, performance, round(total, 6))


def syntax_score(sql: str) -> float:
    upper = sql.upper()
    score = 1.0
    if "SELECT" not in upper:
        score -= 0.3
    if "FROM" not in upper:
        score -= 0.3
    if sql.count("(") != sql.count(")"):
        score -= 0.2
    if sql.count("'") % 2 != 0:
        score -= 0.2
    return max(0.0, score)


def security_score(sql: str) -> float:
    upper = sql.upper()
    score = 1.0
    for keyword in DANGEROUS_KEYWORDS:
        if keyword in upper:
            score -= 0.3
    for pattern in INJECTION_PATTERNS:
        if pattern in upper:
            score -= 0.2
    return max(0.0, score)


def performance_score(sql: str) -> float:
    upper = sql.upper()
    score = 1.0
    if "SELECT *" in upper:
        score -= 0.2
    if "WHERE" not in upper:
        score -= 0.3
    return max(0.0, score)


def score_sql(sql: str) -> SqlQualityScore:
    return SqlQualityScore.of(syntax_score(sql), security_score(sql), performance_score(sql))


def extract_sql(text: Optional[str]) -> Optional[str]:
    """SQL from an LLM answer (fenced or bare); None when empty."""
    if text is None:
        return None
    sql = strip_code_fence(text)
    return sql or None


# (seed_sql, round_no) -> candidate text; seed is None when there is nothing to repair
CandidateGenerator = Callable[[Optional[str], int], Awaitable[Optional[str]]]


@dataclass
class RepairOutcome:
    sql: Optional[str]
    score: Optional[SqlQualityScore]
    llm_calls: int
    candidates: List[Tuple[str, SqlQualityScore]] = field(default_factory=list)


async def optimize_sql(
    generate: CandidateGenerator,
    existing_sql: Optional[str],
    max_rounds: int,
    threshold: float,
    logger: logging.Logger,
) -> RepairOutcome:
    """
    Generate, score and regenerate SQL for at most ``max_rounds`` LLM calls.

    Each later round is seeded from the best candidate so far (falling back
    to ``existing_sql``). The loop stops early once a candidate reaches
    ``threshold``. Empty candidates are skipped; the outcome's ``sql`` is
    None only if every candidate was empty.
    """
    best_sql: Optional[str] = None
    best_score: Optional[SqlQualityScore] = None
    candidates: List[Tuple[str, SqlQualityScore]] = []
    calls = 0

    for round_no in range(1, max_rounds + 1):
        seed = best_sql if best_sql is not None else existing_sql
        calls += 1
        candidate = extract_sql(await generate(seed, round_no))
        if candidate is None:
            logger.warning(f"Round {round_no}: empty SQL candidate")
            continue

        score = score_sql(candidate)
        candidates.append((candidate, score))
        logger.info(
            f"Round {round_no}: syntax={score.syntax:.2f} security={score.security:.2f} "
            f"performance={score.performance:.2f} total={score.total:.2f}"
        )
        if best_score is None or score.total > best_score.total:
            best_sql, best_score = candidate, score
        if score.total >= threshold:
            break

    return RepairOutcome(sql=best_sql, score=best_score, llm_calls=calls, candidates=candidates)


def finalize_sql(sql: str, dialect: Optional[str], warn_threshold: float,
                 logger: logging.Logger) -> str:
    """Trim, terminate with ``;`` and log remaining security or parse findings."""
    final = sql.strip()
    if not final.endswith(";"):
        final += ";"

    security = security_score(final)
    if security < warn_threshold:
        logger.warning(f"Accepted SQL has a low security score ({security:.2f}): {final}")
    writes = sql_validator.write_statements(final, dialect)
    if writes:
        logger.warning(f"Accepted SQL contains data-modifying statements: {writes}")
    is_valid, error = sql_validator.validate_sql(final, dialect)
    if not is_valid:
        logger.warning(f"Accepted SQL does not parse as {dialect or 'generic'} SQL: {error}")
    return final

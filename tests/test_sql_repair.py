"""Tests for SQL scoring and the bounded repair loop"""
import asyncio
import logging

import pytest

from data_agent.workflow.sql_repair import (
    extract_sql, finalize_sql, optimize_sql, performance_score, score_sql, security_score,
    syntax_score,
)

logger = logging.getLogger("tests.sql_repair")

GOOD_SQL = "SELECT SUM(amount) FROM orders WHERE region = '华东'"


def test_clean_select_scores_full_marks():
    score = score_sql(GOOD_SQL)
    assert score.syntax == 1.0
    assert score.security == 1.0
    assert score.performance == 1.0
    assert score.total == 1.0


def test_syntax_penalties():
    assert syntax_score("SUM(amount") == pytest.approx(0.2)
    assert syntax_score("SELECT 1 FROM t WHERE a = 'x") == pytest.approx(0.8)


def test_security_penalties_are_soft():
    assert security_score("DROP TABLE orders") == pytest.approx(0.7)
    assert security_score("SELECT a FROM t WHERE 1=1 -- comment") == pytest.approx(0.8)
    assert security_score("SELECT a FROM t UNION SELECT b FROM u") == pytest.approx(0.8)


def test_performance_penalties():
    assert performance_score("SELECT * FROM orders") == pytest.approx(0.5)
    assert performance_score("SELECT id FROM orders WHERE id = 1") == 1.0


def test_extract_sql_strips_fences():
    assert extract_sql("```sql\nSELECT 1\n```") == "SELECT 1"
    assert extract_sql("   ") is None
    assert extract_sql(None) is None


def test_stops_at_threshold():
    calls = []

    async def generate(seed, round_no):
        calls.append((seed, round_no))
        return GOOD_SQL

    outcome = asyncio.run(optimize_sql(generate, None, 3, 0.95, logger))
    assert outcome.sql == GOOD_SQL
    assert outcome.llm_calls == 1
    assert calls == [(None, 1)]


def test_never_exceeds_max_rounds_and_keeps_best():
    answers = iter([
        "SELECT * FROM orders",
        "SELECT amount FROM orders",
        "SELECT * FROM orders",
    ])
    seeds = []

    async def generate(seed, round_no):
        seeds.append(seed)
        return next(answers)

    outcome = asyncio.run(optimize_sql(generate, "SELECT x FROM orders", 3, 0.95, logger))
    assert outcome.llm_calls == 3
    # A later, weaker candidate never replaces the best one
    assert outcome.sql == "SELECT amount FROM orders"
    assert seeds[0] == "SELECT x FROM orders"
    assert seeds[2] == "SELECT amount FROM orders"


def test_empty_candidates_are_skipped():
    async def generate(seed, round_no):
        return None

    outcome = asyncio.run(optimize_sql(generate, None, 2, 0.95, logger))
    assert outcome.sql is None
    assert outcome.llm_calls == 2


def test_finalize_terminates_statement():
    assert finalize_sql(f"  {GOOD_SQL}  ", "mysql", 0.5, logger) == f"{GOOD_SQL};"
    assert finalize_sql(f"{GOOD_SQL};", "mysql", 0.5, logger) == f"{GOOD_SQL};"


def test_finalize_keeps_low_security_sql(caplog):
    with caplog.at_level(logging.WARNING, logger="tests.sql_repair"):
        final = finalize_sql("DELETE FROM orders -- all", "mysql", 0.6, logger)
    assert final == "DELETE FROM orders -- all;"
    assert "low security score" in caplog.text

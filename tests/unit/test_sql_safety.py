"""
Unit tests -- SQL safety gate run just before execution.
"""
import pytest

from src.copilot.spec import QuerySpec
from src.copilot.sql_generator import compile_query
from src.governance.semantic_loader import load_registry
from src.governance.sql_safety import check_sql_safety


@pytest.fixture(scope="module")
def sessions():
    return load_registry().get("sessions")


_SAFE_SQL = """\
SELECT
  traffic_source AS "Traffic Source",
  SUM(session_revenue) AS total_revenue
FROM sessions
WHERE country = 'US'
GROUP BY 1
ORDER BY total_revenue DESC
LIMIT 50"""


def test_safe_sql_passes(sessions):
    errors = check_sql_safety(_SAFE_SQL, sessions)
    assert errors == [], f"Expected no errors but got: {errors}"


def test_compiled_sql_passes(sessions):
    sql = compile_query(
        QuerySpec(dimensions=["Session Date", "Session Length"], measures=["total_revenue", "trial_signup_rate"]),
        sessions,
    )
    assert check_sql_safety(sql, sessions) == []


def test_trailing_semicolon_allowed(sessions):
    assert check_sql_safety(_SAFE_SQL + ";", sessions) == []


# ── 1. Must start with SELECT ───────────────────────────

def test_not_select(sessions):
    errors = check_sql_safety("INSERT INTO sessions VALUES (1)", sessions)
    assert any("SELECT" in e for e in errors)


def test_cte_allowed(sessions):
    sql = "WITH t AS (SELECT country FROM sessions) SELECT country FROM t"
    assert check_sql_safety(sql, sessions) == []


# ── 2. No multi-statement ───────────────────────────────

def test_multi_statement(sessions):
    errors = check_sql_safety("SELECT 1 AS x FROM sessions; DROP TABLE sessions", sessions)
    assert any("Multi-statement" in e for e in errors)


# ── 3. No dangerous keywords ────────────────────────────

@pytest.mark.parametrize("statement", [
    "DROP TABLE sessions",
    "ALTER TABLE sessions ADD col int",
    "DELETE FROM sessions",
    "UPDATE sessions SET country = 'US'",
    "CREATE TABLE foo (id int)",
    "ATTACH 'other.db'",
    "COPY sessions TO 'out.csv'",
    "PRAGMA database_list",
])
def test_dangerous_keywords(sessions, statement):
    errors = check_sql_safety(statement, sessions)
    assert any("Dangerous" in e for e in errors)


def test_keyword_inside_literal_ignored(sessions):
    sql = "SELECT COUNT(*) AS n FROM sessions WHERE country = 'DROP TABLE'"
    assert check_sql_safety(sql, sessions) == []


def test_replace_function_allowed(sessions):
    sql = "SELECT REPLACE(country, 'U', 'u') AS c, COUNT(*) AS n FROM sessions GROUP BY 1"
    assert check_sql_safety(sql, sessions) == []


# ── 4. No SQL comments ──────────────────────────────────

def test_inline_comment(sessions):
    errors = check_sql_safety("SELECT 1 AS x FROM sessions -- sneaky\nLIMIT 10", sessions)
    assert any("comment" in e.lower() for e in errors)


def test_block_comment(sessions):
    errors = check_sql_safety("SELECT 1 AS x /* hidden */ FROM sessions", sessions)
    assert any("comment" in e.lower() for e in errors)


# ── 5. Only the catalog table ───────────────────────────

def test_other_table_rejected(sessions):
    errors = check_sql_safety("SELECT COUNT(*) AS n FROM users", sessions)
    assert any("'users'" in e for e in errors)


def test_join_target_rejected(sessions):
    sql = "SELECT s.country FROM sessions s JOIN users u ON s.user_id = u.user_id"
    errors = check_sql_safety(sql, sessions)
    assert len(errors) == 1
    assert "users" in errors[0]


def test_extract_from_is_not_a_table(sessions):
    sql = "SELECT EXTRACT(YEAR FROM session_date) AS y, COUNT(*) AS n FROM sessions GROUP BY 1"
    assert check_sql_safety(sql, sessions) == []


def test_quoted_alias_with_from_is_not_a_table(sessions):
    sql = 'SELECT country AS "From Country", COUNT(*) AS n FROM sessions GROUP BY 1'
    assert check_sql_safety(sql, sessions) == []


# ── Edge cases ───────────────────────────────────────────

def test_empty_sql(sessions):
    assert len(check_sql_safety("", sessions)) >= 1


def test_word_starting_with_select_is_not_a_select(sessions):
    errors = check_sql_safety("SELECTED traffic_source FROM sessions", sessions)
    assert "SQL must be a SELECT statement." in errors


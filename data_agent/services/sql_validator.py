"""
SQL parse checks using sqlglot.

Used by the final validation pass of the SQL repair loop. The checks never
block a query: they only produce findings that are logged next to the
heuristic quality scores, because the datasource itself is the final judge
of what it accepts.
"""

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError
from typing import List, Optional, Tuple


# Datasource dialect names -> sqlglot dialect names
_DIALECT_ALIASES = {
    "postgresql": "postgres",
    "pg": "postgres",
    "mariadb": "mysql",
    "sqlserver": "tsql",
    "mssql": "tsql",
    "dameng": "oracle",
}


def to_sqlglot_dialect(dialect: Optional[str]) -> Optional[str]:
    """Map a datasource dialect name onto a sqlglot dialect (None = generic)."""
    if not dialect:
        return None
    name = dialect.lower()
    return _DIALECT_ALIASES.get(name, name)


class SQLValidator:
    """
    Dialect-aware parse checks for generated SQL.

    Example:
        ```python
        is_valid, error = SQLValidator.validate_sql("SELECT * FROM orders", "mysql")
        if not is_valid:
            logger.warning(f"SQL does not parse: {error}")
        ```
    """

    @staticmethod
    def validate_sql(sql_expression: str, dialect: Optional[str] = None) -> Tuple[bool, Optional[str]]:
        """
        Parse ``sql_expression`` without executing it.

        Returns:
            Tuple[bool, Optional[str]]:
                - (True, None) if the SQL parses
                - (False, error_message) otherwise
        """
        try:
            sqlglot.parse(sql_expression, read=to_sqlglot_dialect(dialect))
            return True, None
        except ParseError as e:
            return False, str(e)
        except Exception as e:
            # Unknown dialect names surface here
            return False, f"Unexpected error during SQL validation: {str(e)}"

    @staticmethod
    def write_statements(sql_expression: str, dialect: Optional[str] = None) -> List[str]:
        """
        Names of the data-modifying statements found in the SQL.

        Empty when the SQL is read-only or cannot be parsed.
        """
        modifying = (exp.Insert, exp.Update, exp.Delete, exp.Drop, exp.Create, exp.Alter)
        try:
            statements = sqlglot.parse(sql_expression, read=to_sqlglot_dialect(dialect))
        except Exception:
            return []
        return [
            type(statement).__name__.upper()
            for statement in statements
            if statement is not None and isinstance(statement, modifying)
        ]


# Global validator instance
sql_validator = SQLValidator()

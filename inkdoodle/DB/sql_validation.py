"""
SQL identifier validation module for preventing SQL injection in dynamic queries.

Table and column names in the sync layer are assembled from the entity schema
tables, so every identifier that reaches a query string is checked against the
remote store's whitelist first.
"""

import re
from typing import Iterable, Optional
from loguru import logger

# Tables of the remote relational store
VALID_TABLES = {
    'creators', 'projects', 'chapters', 'notes', 'refs', 'lore', 'timelines', 'prefs'
}

_CHILD_COMMON = {'id', 'code', 'project_id', 'creator_id', 'title', 'created_at', 'updated_at'}

VALID_COLUMNS = {
    'creators': {
        'id', 'email', 'display_name', 'created_at', 'is_active', 'updated_at', 'last_login_at'
    },
    'projects': {'id', 'code', 'title', 'creator_id', 'created_at', 'updated_at'},
    'chapters': _CHILD_COMMON | {'number', 'content', 'status', 'summary', 'tags', 'word_goal'},
    'notes': _CHILD_COMMON | {'number', 'content', 'tags', 'category', 'pinned'},
    'refs': _CHILD_COMMON | {
        'number', 'tags', 'reference_type', 'summary', 'source_link', 'content'
    },
    'lore': _CHILD_COMMON | {
        'number', 'content', 'status', 'summary', 'tags', 'lore_kind',
        'entry1_name', 'entry1_content', 'entry2_name', 'entry2_content',
        'entry3_name', 'entry3_content', 'entry4_name', 'entry4_content'
    },
    'timelines': _CHILD_COMMON | {'events'},
    'prefs': {'key', 'value', 'updated_at'},
}

# SQL identifier pattern - letters, digits and underscore, not starting with a digit
SQL_IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

# Reserved SQL keywords that should not be used as identifiers
SQL_RESERVED_KEYWORDS = {
    'SELECT', 'FROM', 'WHERE', 'INSERT', 'UPDATE', 'DELETE', 'DROP', 'CREATE',
    'TABLE', 'INDEX', 'VIEW', 'UNION', 'JOIN', 'LEFT', 'RIGHT', 'INNER', 'OUTER',
    'ORDER', 'BY', 'GROUP', 'HAVING', 'LIMIT', 'OFFSET', 'AS', 'ON', 'AND', 'OR',
    'NOT', 'NULL', 'PRIMARY', 'KEY', 'FOREIGN', 'REFERENCES', 'CASCADE', 'SET',
    'VALUES', 'INTO', 'EXISTS', 'BETWEEN', 'LIKE', 'IN', 'IS', 'DISTINCT', 'ALL'
}


def validate_identifier(identifier: str, identifier_type: str = "identifier") -> bool:
    """
    Validates a SQL identifier (table name, column name, etc.) for safety.

    Args:
        identifier: The SQL identifier to validate
        identifier_type: Type of identifier for logging (e.g., "table", "column")

    Returns:
        bool: True if valid, False otherwise
    """
    if not identifier:
        logger.warning(f"Empty {identifier_type} provided")
        return False

    if len(identifier) > 64:
        logger.warning(f"{identifier_type} '{identifier}' exceeds maximum length")
        return False

    if not SQL_IDENTIFIER_PATTERN.match(identifier):
        logger.warning(f"{identifier_type} '{identifier}' contains invalid characters")
        return False

    if identifier.upper() in SQL_RESERVED_KEYWORDS:
        logger.warning(f"{identifier_type} '{identifier}' is a reserved SQL keyword")
        return False

    return True


def validate_table_name(table_name: str) -> bool:
    """Validates a table name against the remote store whitelist."""
    if not validate_identifier(table_name, "table name"):
        return False

    if table_name not in VALID_TABLES:
        logger.warning(f"Table '{table_name}' not in whitelist for the remote store")
        return False

    return True


def validate_column_name(column_name: str, table_name: Optional[str] = None) -> bool:
    """
    Validates a column name, optionally against a specific table's schema.

    Args:
        column_name: The column name to validate
        table_name: Optional table name to validate against specific schema

    Returns:
        bool: True if valid, False otherwise
    """
    if not validate_identifier(column_name, "column name"):
        return False

    if table_name and table_name in VALID_COLUMNS:
        if column_name not in VALID_COLUMNS[table_name]:
            logger.warning(f"Column '{column_name}' not in schema for table '{table_name}'")
            return False

    return True


def validate_column_list(columns: Iterable[str], table_name: Optional[str] = None) -> bool:
    """Validates a list of column names."""
    for column in columns:
        if not validate_column_name(column, table_name):
            return False
    return True


def require_table(table_name: str) -> str:
    """Returns the table name or raises ValueError if it is not whitelisted."""
    if not validate_table_name(table_name):
        raise ValueError(f"Invalid table name: {table_name!r}")
    return table_name


def require_columns(columns: Iterable[str], table_name: str) -> list:
    """Returns the columns as a list or raises ValueError if any is not whitelisted."""
    columns = list(columns)
    if not validate_column_list(columns, table_name):
        raise ValueError(f"Invalid column list for {table_name}: {columns!r}")
    return columns

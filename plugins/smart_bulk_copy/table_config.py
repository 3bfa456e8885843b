"""
Table Configuration Utility Module

This module handles parsing of table references in 'schema.table' format,
normalizes them to the bracketed form SQL Server returns from QUOTENAME,
and resolves the configured table list (including the '*' wildcard).
"""

import json
import re
from typing import Callable, Iterable, List, Tuple
import logging

logger = logging.getLogger(__name__)

WILDCARD = '*'

# One identifier part: either [bracketed]]escaped] or a plain name without dots/brackets
_PART = r'(?:\[((?:[^\]]|\]\])+)\]|([^.\[\]]+))'
_TABLE_PATTERN = re.compile(rf'^{_PART}\.{_PART}$')


def parse_schema_table(entry: str) -> Tuple[str, str]:
    """
    Parse single 'schema.table' entry.

    Handles:
    - Simple format: "dbo.Users" -> ("dbo", "Users")
    - Bracketed format: "[dbo].[My Table]" -> ("dbo", "My Table")
    - Escaped brackets: "[dbo].[a]]b]" -> ("dbo", "a]b")

    Args:
        entry: Schema.table string in either format

    Returns:
        Tuple of (schema, table)

    Raises:
        ValueError: If format is invalid (no schema or table part found)
    """
    entry = entry.strip()
    match = _TABLE_PATTERN.match(entry)
    if not match:
        raise ValueError(
            f"Invalid table format '{entry}': must be 'schema.table' or '[schema].[table]'"
        )

    schema_bracketed, schema_plain, table_bracketed, table_plain = match.groups()
    schema = schema_bracketed.replace(']]', ']') if schema_bracketed else schema_plain.strip()
    table = table_bracketed.replace(']]', ']') if table_bracketed else table_plain.strip()

    if not schema or not table:
        raise ValueError(
            f"Invalid table format '{entry}': must be 'schema.table' or '[schema].[table]'"
        )

    return schema, table


def quote_identifier(name: str) -> str:
    """Quote a single identifier the way QUOTENAME does."""
    return '[' + name.replace(']', ']]') + ']'


def quote_table_name(entry: str) -> str:
    """
    Normalize a table reference to '[schema].[table]'.

    Examples:
        quote_table_name("dbo.Users") -> "[dbo].[Users]"
        quote_table_name("[sales].[Order Lines]") -> "[sales].[Order Lines]"
    """
    schema, table = parse_schema_table(entry)
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def validate_tables(tables: Iterable[str]) -> None:
    """
    Validate a configured table list.

    Args:
        tables: Table references and/or the '*' wildcard

    Raises:
        ValueError: If the list is empty or any entry is invalid format
    """
    tables = list(tables)
    if not tables:
        raise ValueError(
            "At least one table is required. "
            "Specify tables in 'schema.table' format, e.g., ['dbo.Users'], or '*' for all tables"
        )

    for entry in tables:
        if entry == WILDCARD:
            continue
        try:
            parse_schema_table(entry)
        except ValueError as e:
            raise ValueError(f"Invalid tables entry: {e}")


def expand_tables_param(tables_raw) -> List[str]:
    """
    Expand and normalize the table list from various input formats.

    Handles:
    - List of strings: ["dbo.Users", "dbo.Posts"]
    - JSON string: '["dbo.Users", "dbo.Posts"]'
    - Comma-separated string: "dbo.Users,dbo.Posts"
    - List with comma-separated items: ["dbo.Users,dbo.Posts"]

    Args:
        tables_raw: Raw parameter value from config or DAG params

    Returns:
        List of table strings, wildcard kept as-is
    """
    if isinstance(tables_raw, str):
        tables_raw = tables_raw.strip()
        if not tables_raw:
            return []

        try:
            parsed = json.loads(tables_raw)
            if isinstance(parsed, list):
                tables_raw = parsed
            else:
                tables_raw = [str(parsed)]
        except json.JSONDecodeError:
            tables_raw = [t.strip() for t in tables_raw.split(',') if t.strip()]

    if isinstance(tables_raw, list):
        expanded = []
        for item in tables_raw:
            if isinstance(item, str):
                if ',' in item:
                    expanded.extend([t.strip() for t in item.split(',') if t.strip()])
                elif item.strip():
                    expanded.append(item.strip())
        return expanded

    logger.warning(
        "expand_tables_param received unsupported type %s; returning empty list.",
        type(tables_raw).__name__,
    )
    return []


def resolve_table_list(
    configured: Iterable[str],
    list_all_tables: Callable[[], List[str]],
) -> List[str]:
    """
    Resolve the configured tables into a de-duplicated list of quoted names.

    The '*' token is removed and replaced by every table the source catalog
    reports, appended after the explicitly configured tables. Duplicates are
    dropped keeping the first occurrence.

    Args:
        configured: Configured table references, possibly containing '*'
        list_all_tables: Callable returning all source tables (only called for '*')

    Returns:
        Ordered list of '[schema].[table]' references
    """
    configured = list(configured)
    explicit = [t for t in configured if t != WILDCARD]
    candidates = list(explicit)

    if len(explicit) != len(configured):
        logger.info("Getting list of tables to copy...")
        for table in list_all_tables():
            logger.info(f"Adding {table}")
            candidates.append(table)

    resolved: List[str] = []
    seen = set()
    for entry in candidates:
        table = quote_table_name(entry)
        if table in seen:
            continue
        seen.add(table)
        resolved.append(table)

    return resolved

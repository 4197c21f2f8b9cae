"""
Helper Utilities Module
Common utility functions used across the application.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from dateutil import parser as date_parser
import pytz


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(pytz.UTC).replace(tzinfo=None)


def parse_jira_datetime(dt_string: Optional[str]) -> Optional[datetime]:
    """
    Parse Jira datetime string to a naive UTC datetime.

    Args:
        dt_string: Jira datetime string (ISO 8601 format)

    Returns:
        datetime object or None if parsing fails
    """
    if not dt_string:
        return None

    try:
        return to_naive_utc(date_parser.parse(dt_string))
    except (ValueError, TypeError, OverflowError):
        return None


def format_jql_datetime(value: datetime) -> str:
    """Format a datetime the way JQL date clauses expect it."""
    return value.strftime('%Y-%m-%d %H:%M')


def seconds_to_hours(seconds: Optional[int]) -> Optional[float]:
    """Convert seconds to hours with 2 decimal places."""
    if seconds is None:
        return None
    return round(seconds / 3600, 2)


def hours_to_seconds(hours: Optional[float]) -> Optional[int]:
    """Convert hours to seconds."""
    if hours is None:
        return None
    return int(hours * 3600)


def count_weekdays_without(start: date, end: date, covered: Set[date]) -> int:
    """
    Count Monday-Friday days in [start, end] that are not in ``covered``.

    Args:
        start: First day of the range
        end: Last day of the range (inclusive)
        covered: Days that should not be counted

    Returns:
        Number of uncovered business days, 0 when end < start
    """
    if end < start:
        return 0

    missing = 0
    current = start
    while current <= end:
        if current.weekday() < 5 and current not in covered:
            missing += 1
        current += timedelta(days=1)
    return missing


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """
    Split a list into chunks of specified size.

    Args:
        lst: List to chunk
        chunk_size: Size of each chunk

    Returns:
        List of chunks
    """
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def safe_get(data: Dict, *keys, default=None) -> Any:
    """
    Safely get nested dictionary value.

    Args:
        data: Dictionary to traverse
        *keys: Keys to follow
        default: Default value if key not found

    Returns:
        Value at path or default
    """
    result = data
    for key in keys:
        if isinstance(result, dict):
            result = result.get(key)
        else:
            return default
        if result is None:
            return default
    return result


def sanitize_string(text: Optional[str], max_length: int = None) -> Optional[str]:
    """
    Sanitize string for database storage.

    Args:
        text: Text to sanitize
        max_length: Maximum length (truncate if exceeded)

    Returns:
        Sanitized string
    """
    if text is None:
        return None

    text = text.replace('\x00', '')

    if max_length and len(text) > max_length:
        text = text[:max_length - 3] + '...'

    return text


def build_jql(
    board_ids: Iterable[str] = None,
    squad_field: str = 'cf[24140]',
    additional_clauses: List[str] = None,
    order_by: str = 'key ASC'
) -> str:
    """
    Build the open-sprint JQL query for a squad.

    Args:
        board_ids: Board identifiers stored in the squad custom field
        squad_field: JQL name of the custom field holding the board id
        additional_clauses: Additional JQL clauses
        order_by: ORDER BY expression

    Returns:
        JQL query string
    """
    clauses = ['sprint in openSprints()']

    board_ids = [str(b).strip() for b in (board_ids or []) if str(b).strip()]
    if len(board_ids) == 1:
        clauses.append(f'{squad_field} = "{board_ids[0]}"')
    elif board_ids:
        ids_str = ', '.join(f'"{b}"' for b in board_ids)
        clauses.append(f'{squad_field} in ({ids_str})')

    if additional_clauses:
        clauses.extend(additional_clauses)

    return ' AND '.join(clauses) + f' ORDER BY {order_by}'

"""
Query and statistics engine for todos.

Pure, read-only functions over already-loaded Todo records: filtering,
free-text search with ranking, pagination, the upcoming-items window and
aggregate statistics. Nothing here touches the store; TodoManager loads the
records and delegates.

Conventions:
    - An `assigned_to` filter also matches meetings the user attends.
    - Lists are newest first (created_at descending) unless ranked.
    - `now` is injectable on every time-dependent function for testing.
"""

from datetime import datetime, timedelta
import math
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from family_organizer.config import settings
from family_organizer.models.todo_models import (
    PaginatedTodos,
    Pagination,
    SearchResult,
    Todo,
    TodoFilters,
    TodoPriority,
    TodoStatistics,
    TodoStatus,
    TodoType,
    UpcomingTodos,
)
from family_organizer.utils.datetime_utils import days_ago, ensure_timezone_aware, utc_now
from family_organizer.utils.error_handling import ValidationError

FiltersInput = Union[TodoFilters, Dict[str, Any], None]


def coerce_filters(filters: FiltersInput) -> TodoFilters:
    if isinstance(filters, TodoFilters):
        return filters
    try:
        return TodoFilters.model_validate(filters or {})
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, "Invalid filters") from e


def is_overdue(todo: Todo, now: Optional[datetime] = None) -> bool:
    """Due instant is in the past and the todo is not completed."""
    return todo.is_overdue(now)


def days_until_due(todo: Todo, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days until due, rounded up. None when there is no due date."""
    return todo.days_until_due(now)


def matches_search(todo: Todo, query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    if needle in todo.title.lower() or needle in todo.description.lower():
        return True
    return any(needle in tag.lower() for tag in todo.tags)


def matches_filters(todo: Todo, filters: TodoFilters) -> bool:
    if filters.family_id and todo.family_id != filters.family_id:
        return False
    if filters.assigned_to and not todo.involves(filters.assigned_to):
        return False
    if filters.status and todo.status != filters.status:
        return False
    if filters.type and todo.type != filters.type:
        return False
    if filters.priority and todo.priority != filters.priority:
        return False
    if filters.category and todo.category != filters.category:
        return False
    if filters.tag and filters.tag not in todo.tags:
        return False
    if filters.due_date and todo.due_date != filters.due_date:
        return False
    if filters.search and not matches_search(todo, filters.search):
        return False
    return True


def _newest_first(todos: Iterable[Todo]) -> List[Todo]:
    return sorted(todos, key=lambda t: ensure_timezone_aware(t.created_at), reverse=True)


def filter_todos(todos: Iterable[Todo], filters: FiltersInput = None) -> List[Todo]:
    """All todos matching the filters, newest first. Paging fields are ignored."""
    filters = coerce_filters(filters)
    return _newest_first(t for t in todos if matches_filters(t, filters))


def paginate(todos: List[Todo], page: int = 1, limit: int = None) -> PaginatedTodos:
    """
    Slice an ordered list into one page.

    Pages are 1-indexed. A limit above MAX_PAGE_SIZE is clamped; a page or
    limit below 1 is a ValidationError.
    """
    limit = settings.DEFAULT_PAGE_SIZE if limit is None else limit
    if page < 1:
        raise ValidationError("Page must be at least 1", field="page", value=page)
    if limit < 1:
        raise ValidationError("Limit must be at least 1", field="limit", value=limit)
    limit = min(limit, settings.MAX_PAGE_SIZE)

    total_count = len(todos)
    total_pages = math.ceil(total_count / limit) if total_count else 0
    offset = (page - 1) * limit
    items = todos[offset:offset + limit]

    return PaginatedTodos(
        items=items,
        pagination=Pagination(
            page=page,
            limit=limit,
            total=len(items),
            total_count=total_count,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        ),
    )


def list_todos(todos: Iterable[Todo], filters: FiltersInput = None) -> PaginatedTodos:
    filters = coerce_filters(filters)
    return paginate(filter_todos(todos, filters), filters.page, filters.limit)


def search_todos(todos: Iterable[Todo], query: str, filters: FiltersInput = None) -> SearchResult:
    """
    Case-insensitive substring search over title, description and tags.

    Exact (case-insensitive) title matches rank first; ties are broken by
    created_at, newest first.

    Raises:
        ValidationError: If the query is shorter than MIN_SEARCH_QUERY_LENGTH
    """
    query = (query or "").strip()
    if len(query) < settings.MIN_SEARCH_QUERY_LENGTH:
        raise ValidationError(
            f"Search query must be at least {settings.MIN_SEARCH_QUERY_LENGTH} characters",
            field="query",
            value=query,
        )

    filters = coerce_filters(filters).model_copy(update={"search": query})
    needle = query.lower()
    matches = filter_todos(todos, filters)
    # sorted() is stable, so newest-first order survives within each rank.
    ranked = sorted(matches, key=lambda t: t.title.lower() != needle)
    return SearchResult(query=query, results=ranked, count=len(ranked))


def compute_statistics(
    todos: Iterable[Todo],
    scope_user_id: Optional[str] = None,
    period_days: Optional[int] = None,
    family_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TodoStatistics:
    """
    Aggregate counts over the todos in scope.

    Args:
        todos: Candidate todos
        scope_user_id: Only todos assigned to (or attended by) this user
        period_days: Only todos created within this many days; 0 or None means all time
        family_id: Only todos of this family
        now: Reference instant for the period cutoff and overdue checks
    """
    now = ensure_timezone_aware(now or utc_now())
    if period_days is not None and period_days < 0:
        raise ValidationError("Period must not be negative", field="period", value=period_days)

    selected = [
        t for t in todos
        if (scope_user_id is None or t.involves(scope_user_id))
        and (family_id is None or t.family_id == family_id)
    ]
    if period_days:
        cutoff = days_ago(period_days, now)
        selected = [t for t in selected if ensure_timezone_aware(t.created_at) >= cutoff]

    stats = TodoStatistics(period=f"{period_days} days" if period_days else "all time")
    stats.total = len(selected)
    for todo in selected:
        if todo.status == TodoStatus.PENDING:
            stats.pending += 1
        elif todo.status == TodoStatus.IN_PROGRESS:
            stats.in_progress += 1
        elif todo.status == TodoStatus.COMPLETED:
            stats.completed += 1
        elif todo.status == TodoStatus.CANCELLED:
            stats.cancelled += 1

        if todo.is_overdue(now):
            stats.overdue += 1

        stats.by_type["meetings" if todo.type == TodoType.MEETING else "tasks"] += 1
        stats.by_priority[TodoPriority(todo.priority).value] += 1
        category = todo.category or "uncategorized"
        stats.by_category[category] = stats.by_category.get(category, 0) + 1
        stats.by_assignee[todo.assigned_to] = stats.by_assignee.get(todo.assigned_to, 0) + 1

    stats.completion_rate = round(stats.completed / stats.total * 100) if stats.total else 0
    return stats


def upcoming(
    todos: Iterable[Todo],
    days: int = 7,
    assigned_to: Optional[str] = None,
    family_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UpcomingTodos:
    """
    Open todos due within [today, today + days], soonest first, also grouped by due date.

    Raises:
        ValidationError: If days is outside 1..MAX_UPCOMING_DAYS
    """
    if days < 1 or days > settings.MAX_UPCOMING_DAYS:
        raise ValidationError(
            f"Days must be between 1 and {settings.MAX_UPCOMING_DAYS}", field="days", value=days
        )

    today = ensure_timezone_aware(now or utc_now()).date()
    horizon = today + timedelta(days=days)

    selected = [
        t for t in todos
        if t.due_date is not None
        and t.status not in (TodoStatus.COMPLETED, TodoStatus.CANCELLED)
        and today <= t.due_date <= horizon
        and (assigned_to is None or t.involves(assigned_to))
        and (family_id is None or t.family_id == family_id)
    ]
    selected.sort(key=lambda t: t.due_at())

    grouped: Dict[str, List[Todo]] = {}
    for todo in selected:
        grouped.setdefault(todo.due_date.isoformat(), []).append(todo)

    return UpcomingTodos(todos=selected, grouped_by_date=grouped, period=f"{days} days", count=len(selected))

"""
Tests for the pure query and statistics functions in todo_query.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from family_organizer.managers import todo_query
from family_organizer.models.todo_models import Todo, TodoFilters, TodoPriority, TodoStatus
from family_organizer.utils.error_handling import ValidationError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_todo(title="Chore", minutes_old=0, **fields):
    fields.setdefault("assigned_to", "joel")
    fields.setdefault("created_by", "happy")
    if fields.get("status") in (TodoStatus.COMPLETED, "completed"):
        fields.setdefault("completed_at", NOW)
    created = NOW - timedelta(minutes=minutes_old)
    return Todo(title=title, created_at=created, updated_at=created, **fields)


class TestDueDates:
    """Overdue and countdown arithmetic."""

    def test_overdue_uses_due_time(self):
        todo = make_todo(due_date=date(2024, 6, 1), due_time="09:00")
        assert todo_query.is_overdue(todo, NOW) is True

        later = make_todo(due_date=date(2024, 6, 1), due_time="18:00")
        assert todo_query.is_overdue(later, NOW) is False

    def test_completed_todo_is_never_overdue(self):
        todo = make_todo(due_date=date(2024, 5, 1), status="completed")
        assert todo_query.is_overdue(todo, NOW) is False

    def test_no_due_date(self):
        todo = make_todo()
        assert todo_query.is_overdue(todo, NOW) is False
        assert todo_query.days_until_due(todo, NOW) is None

    @pytest.mark.parametrize(
        "due, expected",
        [
            (date(2024, 6, 3), 2),
            (date(2024, 6, 2), 1),
            (date(2024, 5, 30), -2),
        ],
    )
    def test_days_until_due_rounds_up(self, due, expected):
        assert todo_query.days_until_due(make_todo(due_date=due), NOW) == expected

    def test_api_view_includes_derived_fields(self):
        view = make_todo(due_date=date(2024, 5, 30)).api_view(NOW)
        assert view["is_overdue"] is True
        assert view["days_until_due"] == -2
        assert view["due_date"] == "2024-05-30"


class TestFiltering:
    """Filter matching and ordering."""

    def test_newest_first(self):
        todos = [make_todo("old", minutes_old=30), make_todo("new", minutes_old=1), make_todo("mid", minutes_old=10)]
        assert [t.title for t in todo_query.filter_todos(todos)] == ["new", "mid", "old"]

    def test_assigned_to_matches_meeting_attendees(self):
        meeting = make_todo(
            "Planning",
            type="meeting",
            assigned_to="happy",
            attendees=["kiaan"],
            start_time=NOW,
            end_time=NOW + timedelta(hours=1),
        )
        task = make_todo("Homework", assigned_to="monika")

        result = todo_query.filter_todos([meeting, task], {"assigned_to": "kiaan"})
        assert [t.title for t in result] == ["Planning"]

    def test_all_assignees_means_no_filter(self):
        todos = [make_todo(assigned_to="joel"), make_todo(assigned_to="monika")]
        assert len(todo_query.filter_todos(todos, {"assigned_to": "all"})) == 2

    def test_combined_filters(self):
        todos = [
            make_todo("a", priority="high", category="home", tags=["weekly"]),
            make_todo("b", priority="high", category="school"),
            make_todo("c", priority="low", category="home", tags=["weekly"]),
        ]
        filters = TodoFilters(priority=TodoPriority.HIGH, category="home", tag="weekly")
        assert [t.title for t in todo_query.filter_todos(todos, filters)] == ["a"]

    def test_invalid_filter_value(self):
        with pytest.raises(ValidationError):
            todo_query.filter_todos([], {"status": "bogus"})


class TestPagination:
    """Page slicing and metadata."""

    def test_last_partial_page(self):
        todos = [make_todo(f"t{i}", minutes_old=i) for i in range(25)]

        page = todo_query.paginate(todos, page=3, limit=10)

        assert len(page.items) == 5
        assert page.pagination.total == 5
        assert page.pagination.total_count == 25
        assert page.pagination.total_pages == 3
        assert page.pagination.has_next is False
        assert page.pagination.has_previous is True

    def test_first_page_has_next(self):
        todos = [make_todo(f"t{i}") for i in range(3)]
        page = todo_query.paginate(todos, page=1, limit=2)
        assert page.pagination.has_next is True
        assert page.pagination.has_previous is False

    def test_limit_is_clamped(self):
        page = todo_query.paginate([make_todo()], page=1, limit=500)
        assert page.pagination.limit == 100

    def test_empty_result(self):
        page = todo_query.paginate([], page=1, limit=20)
        assert page.items == []
        assert page.pagination.total_pages == 0
        assert page.pagination.has_next is False

    @pytest.mark.parametrize("page, limit", [(0, 20), (1, 0), (-1, 5)])
    def test_rejects_non_positive_page_or_limit(self, page, limit):
        with pytest.raises(ValidationError):
            todo_query.paginate([], page=page, limit=limit)

    def test_list_todos_uses_filter_paging(self):
        todos = [make_todo(f"t{i}", minutes_old=i) for i in range(5)]
        page = todo_query.list_todos(todos, {"page": 2, "limit": 2})
        assert [t.title for t in page.items] == ["t2", "t3"]


class TestSearch:
    """Free-text search and ranking."""

    def test_two_characters_is_enough(self):
        result = todo_query.search_todos([make_todo("Abacus practice")], "ab")
        assert result.count == 1

    @pytest.mark.parametrize("query", ["a", " a ", ""])
    def test_short_query_rejected(self, query):
        with pytest.raises(ValidationError):
            todo_query.search_todos([make_todo()], query)

    def test_exact_title_ranks_first(self):
        todos = [
            make_todo("Groceries list", minutes_old=1),
            make_todo("groceries", minutes_old=60),
            make_todo("Pay bills", description="after groceries", minutes_old=5),
        ]

        result = todo_query.search_todos(todos, "Groceries")

        assert [t.title for t in result.results] == ["groceries", "Groceries list", "Pay bills"]
        assert result.query == "Groceries"

    def test_search_covers_description_and_tags(self):
        todos = [
            make_todo("Bins", description="Recycling day"),
            make_todo("Garden", tags=["recycling"]),
            make_todo("Homework"),
        ]
        result = todo_query.search_todos(todos, "recycl")
        assert {t.title for t in result.results} == {"Bins", "Garden"}

    def test_search_honours_other_filters(self):
        todos = [make_todo("Walk dog", assigned_to="joel"), make_todo("Walk dog", assigned_to="monika")]
        result = todo_query.search_todos(todos, "walk", {"assigned_to": "monika"})
        assert [t.assigned_to for t in result.results] == ["monika"]


class TestStatistics:
    """Aggregate counts."""

    def test_no_todos(self):
        stats = todo_query.compute_statistics([], now=NOW)

        assert stats.total == 0
        assert stats.completion_rate == 0
        assert stats.by_type == {"tasks": 0, "meetings": 0}
        assert stats.by_priority == {"low": 0, "medium": 0, "high": 0, "urgent": 0}
        assert stats.period == "all time"

    def test_counts(self):
        todos = [
            make_todo(status="completed", priority="high", category="home"),
            make_todo(status="in-progress", due_date=date(2024, 5, 1)),
            make_todo(status="cancelled", assigned_to="monika"),
            make_todo(
                type="meeting",
                assigned_to="happy",
                start_time=NOW,
                end_time=NOW + timedelta(hours=1),
            ),
        ]

        stats = todo_query.compute_statistics(todos, now=NOW)

        assert stats.total == 4
        assert (stats.pending, stats.in_progress, stats.completed, stats.cancelled) == (1, 1, 1, 1)
        assert stats.overdue == 1
        assert stats.completion_rate == 25
        assert stats.by_type == {"tasks": 3, "meetings": 1}
        assert stats.by_priority["high"] == 1
        assert stats.by_priority["medium"] == 3
        assert stats.by_category == {"home": 1, "general": 3}
        assert stats.by_assignee == {"joel": 2, "monika": 1, "happy": 1}

    def test_scope_and_period(self):
        todos = [
            make_todo(assigned_to="joel", minutes_old=60),
            make_todo(assigned_to="joel", minutes_old=60 * 24 * 10),
            make_todo(assigned_to="monika"),
        ]

        stats = todo_query.compute_statistics(todos, scope_user_id="joel", period_days=7, now=NOW)

        assert stats.total == 1
        assert stats.period == "7 days"

    def test_zero_period_means_all_time(self):
        stats = todo_query.compute_statistics([make_todo(minutes_old=60 * 24 * 400)], period_days=0, now=NOW)
        assert stats.total == 1
        assert stats.period == "all time"

    def test_negative_period_rejected(self):
        with pytest.raises(ValidationError):
            todo_query.compute_statistics([], period_days=-1, now=NOW)

    def test_family_scope(self):
        todos = [make_todo(family_id="fam_a"), make_todo(family_id="fam_b")]
        assert todo_query.compute_statistics(todos, family_id="fam_a", now=NOW).total == 1


class TestUpcoming:
    """The upcoming window."""

    def test_window_grouping_and_order(self):
        todos = [
            make_todo("today late", due_date=date(2024, 6, 1), due_time="20:00"),
            make_todo("today early", due_date=date(2024, 6, 1), due_time="08:00"),
            make_todo("in four days", due_date=date(2024, 6, 5)),
            make_todo("horizon", due_date=date(2024, 6, 8)),
            make_todo("too far", due_date=date(2024, 6, 9)),
            make_todo("yesterday", due_date=date(2024, 5, 31)),
            make_todo("done", due_date=date(2024, 6, 3), status="completed"),
            make_todo("dropped", due_date=date(2024, 6, 3), status="cancelled"),
            make_todo("undated"),
        ]

        result = todo_query.upcoming(todos, days=7, now=NOW)

        assert [t.title for t in result.todos] == ["today early", "today late", "in four days", "horizon"]
        assert list(result.grouped_by_date) == ["2024-06-01", "2024-06-05", "2024-06-08"]
        assert [t.title for t in result.grouped_by_date["2024-06-01"]] == ["today early", "today late"]
        assert result.count == 4
        assert result.period == "7 days"

    def test_assignee_filter(self):
        todos = [
            make_todo("joel's", due_date=date(2024, 6, 2)),
            make_todo("monika's", due_date=date(2024, 6, 2), assigned_to="monika"),
        ]
        result = todo_query.upcoming(todos, days=3, assigned_to="monika", now=NOW)
        assert [t.title for t in result.todos] == ["monika's"]

    @pytest.mark.parametrize("days", [0, -3, 366])
    def test_days_bounds(self, days):
        with pytest.raises(ValidationError):
            todo_query.upcoming([], days=days, now=NOW)

    def test_max_window_allowed(self):
        result = todo_query.upcoming([make_todo(due_date=date(2025, 6, 1))], days=365, now=NOW)
        assert result.count == 1

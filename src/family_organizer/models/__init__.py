"""
Data models for Family Organizer.

This module contains Pydantic models for the stored user, family and todo
records, the request models that validate caller input, and the result
models the query engine returns.
"""

from .family_models import CreateFamilyRequest, Family, FamilySettings, InviteData, UpdateFamilyRequest
from .todo_models import (
    STATUS_TRANSITIONS,
    Comment,
    CommentType,
    CreateTodoRequest,
    Todo,
    TodoFilters,
    TodoPriority,
    TodoStatus,
    TodoType,
    UpdateTodoRequest,
)
from .user_models import Actor, RegisterUserRequest, User, UserRole

__all__ = [
    # User models
    "Actor",
    "RegisterUserRequest",
    "User",
    "UserRole",
    # Family models
    "CreateFamilyRequest",
    "Family",
    "FamilySettings",
    "InviteData",
    "UpdateFamilyRequest",
    # Todo models
    "STATUS_TRANSITIONS",
    "Comment",
    "CommentType",
    "CreateTodoRequest",
    "Todo",
    "TodoFilters",
    "TodoPriority",
    "TodoStatus",
    "TodoType",
    "UpdateTodoRequest",
]

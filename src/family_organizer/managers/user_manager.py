"""
User Manager for registration, login bookkeeping and member administration.

Credential verification happens outside the core. This manager only stores a
password hash produced by a pluggable hasher, tracks failed-login counters
and lockouts that the authentication collaborator reports, and lets a family
admin change roles or deactivate members. Users are never hard-deleted.

Logging:
    - Uses the centralized logging manager with the "[UserManager]" prefix
    - Emails and password material never appear in log records
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable
import uuid

import bcrypt
from pydantic import ValidationError as PydanticValidationError

from family_organizer.config import settings
from family_organizer.database.document_store import DocumentStoreProtocol, document_store
from family_organizer.managers.access_policy import can_manage_family
from family_organizer.managers.logging_manager import get_logger
from family_organizer.models.user_models import RegisterUserRequest, User, UserRole
from family_organizer.utils.datetime_utils import utc_now
from family_organizer.utils.error_handling import (
    AccessDenied,
    Conflict,
    DuplicateDocument,
    NotFound,
    OrganizerError,
    ValidationError,
    handle_errors,
)

logger = get_logger(prefix="[UserManager]")


@runtime_checkable
class PasswordHasherProtocol(Protocol):
    """Protocol for password hashing dependency injection."""

    def hash(self, password: str) -> str: ...
    def verify(self, password: str, password_hash: str) -> bool: ...


class BcryptPasswordHasher:
    """bcrypt-backed password hasher."""

    # bcrypt only uses the first 72 bytes of a password
    MAX_PASSWORD_BYTES = 72

    def __init__(self, rounds: int = None):
        self.rounds = rounds or settings.BCRYPT_ROUNDS

    def hash(self, password: str) -> str:
        password_bytes = password.encode("utf-8")[: self.MAX_PASSWORD_BYTES]
        return bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        password_bytes = password.encode("utf-8")[: self.MAX_PASSWORD_BYTES]
        try:
            return bcrypt.checkpw(password_bytes, password_hash.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False


class UserNotFound(NotFound):
    """User does not exist."""

    def __init__(self, message: str = "User not found", user_id: str = None):
        super().__init__(message, resource="user", resource_id=user_id, error_code="USER_NOT_FOUND")


class AccountLocked(OrganizerError):
    """Too many failed logins; the account is locked until `locked_until`."""

    http_status = 423

    def __init__(self, message: str = "Account is temporarily locked", user_id: str = None, locked_until=None):
        super().__init__(
            message,
            "ACCOUNT_LOCKED",
            {"user_id": user_id, "locked_until": locked_until.isoformat() if locked_until else None},
        )


class UserManager:
    """Stores users and applies the login lockout policy."""

    def __init__(
        self,
        store: DocumentStoreProtocol = None,
        password_hasher: PasswordHasherProtocol = None,
    ) -> None:
        self.store = store or document_store
        self.password_hasher = password_hasher or BcryptPasswordHasher()
        self.collection = settings.USERS_COLLECTION
        logger.debug("UserManager initialized with dependency injection")

    @handle_errors("register_user")
    async def register_user(
        self,
        request: Union[RegisterUserRequest, Dict[str, Any]],
        password_hasher: PasswordHasherProtocol = None,
    ) -> User:
        """
        Register a new user.

        Args:
            request: Registration data (email, name, password, optional role/family)
            password_hasher: Overrides the manager's hasher for this call

        Returns:
            User: The stored user

        Raises:
            ValidationError: If the registration data is invalid
            Conflict: If the email is already registered
        """
        if not isinstance(request, RegisterUserRequest):
            try:
                request = RegisterUserRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(e, "Invalid registration data") from e

        existing = await self.store.query_by_index(self.collection, "email", request.email, limit=1)
        if existing:
            raise Conflict("Email is already registered", resource="user")

        hasher = password_hasher or self.password_hasher
        now = utc_now()
        user = User(
            id=f"user_{uuid.uuid4().hex[:16]}",
            unique_id=f"usr-{uuid.uuid4()}",
            email=request.email,
            name=request.name,
            role=request.role,
            avatar=request.avatar,
            family_id=request.family_id,
            joined_family_at=now if request.family_id else None,
            password_hash=hasher.hash(request.password),
            created_at=now,
            updated_at=now,
        )

        try:
            await self.store.insert(self.collection, user.to_document())
        except DuplicateDocument as e:
            raise Conflict("Email is already registered", resource="user") from e

        logger.info("User registered: %s (role=%s, family=%s)", user.id, user.role.value, user.family_id)
        return user

    async def get_user(self, user_id: str) -> User:
        document = await self.store.get(self.collection, user_id)
        if document is None:
            raise UserNotFound(user_id=user_id)
        return User.model_validate(document)

    async def get_users_by_family(self, family_id: str, limit: Optional[int] = None) -> List[User]:
        documents = await self.store.query_by_index(self.collection, "family_id", family_id, limit=limit)
        return [User.model_validate(doc) for doc in documents]

    async def claim_family_membership(
        self, user_id: str, family_id: str, role: UserRole = UserRole.MEMBER
    ) -> Optional[User]:
        """
        Link a user to a family if, and only if, the user has no family yet.

        The check and the write are a single conditional update, so two
        concurrent claims for the same user cannot both succeed.

        Returns:
            The updated user, or None when the user already has a family or does not exist.
        """
        now = utc_now()
        document = await self.store.update_by_expression(
            self.collection,
            user_id,
            {"$set": {"family_id": family_id, "role": UserRole(role).value, "joined_family_at": now, "updated_at": now}},
            condition={"family_id": None},
        )
        if document is None:
            return None
        logger.info("User %s linked to family %s as %s", user_id, family_id, UserRole(role).value)
        return User.model_validate(document)

    @staticmethod
    def ensure_not_locked(user: User) -> None:
        """Raise AccountLocked if the user is inside a lockout window."""
        if user.is_locked():
            raise AccountLocked(user_id=user.id, locked_until=user.locked_until)

    @handle_errors("record_login")
    async def record_login(self, user_id: str, success: bool) -> User:
        """
        Record the outcome of a login attempt reported by the authentication layer.

        A success resets the counters and stamps last_login_at. A failure
        increments login_attempts and locks the account for
        LOCKOUT_DURATION_MINUTES once MAX_LOGIN_ATTEMPTS is reached.
        """
        user = await self.get_user(user_id)
        self.ensure_not_locked(user)
        now = utc_now()

        if success:
            document = await self.store.update_by_expression(
                self.collection,
                user_id,
                {"$set": {"login_attempts": 0, "locked_until": None, "last_login_at": now, "updated_at": now}},
            )
            logger.info("Successful login recorded for user %s", user_id)
            return User.model_validate(document)

        document = await self.store.update_by_expression(
            self.collection, user_id, {"$inc": {"login_attempts": 1}, "$set": {"updated_at": now}}
        )
        if document is None:
            raise UserNotFound(user_id=user_id)

        if document["login_attempts"] >= settings.MAX_LOGIN_ATTEMPTS:
            locked_until = now + timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES)
            document = await self.store.update_by_expression(
                self.collection, user_id, {"$set": {"locked_until": locked_until}}
            )
            logger.warning(
                "User %s locked until %s after %d failed logins",
                user_id,
                locked_until.isoformat(),
                settings.MAX_LOGIN_ATTEMPTS,
            )
        else:
            logger.info("Failed login %d recorded for user %s", document["login_attempts"], user_id)
        return User.model_validate(document)

    async def _load_family_for_admin_check(self, user: User, actor_id: str, action: str) -> None:
        family = None
        if user.family_id:
            family = await self.store.get(settings.FAMILIES_COLLECTION, user.family_id)
        if not can_manage_family(actor_id, family):
            raise AccessDenied("Only the family admin can perform this action", actor_id=actor_id, action=action)

    @handle_errors("change_role")
    async def change_role(self, user_id: str, new_role: Union[UserRole, str], actor_id: str) -> User:
        """Change a member's role. Only the admin of the member's family may do this."""
        try:
            new_role = UserRole(new_role)
        except ValueError as e:
            raise ValidationError("Invalid role", field="role", value=new_role) from e

        user = await self.get_user(user_id)
        await self._load_family_for_admin_check(user, actor_id, "change_role")

        document = await self.store.update_by_expression(
            self.collection, user_id, {"$set": {"role": new_role.value, "updated_at": utc_now()}}
        )
        if document is None:
            raise UserNotFound(user_id=user_id)
        logger.info("Role of user %s changed to %s by %s", user_id, new_role.value, actor_id)
        return User.model_validate(document)

    @handle_errors("deactivate_user")
    async def deactivate_user(self, user_id: str, actor_id: str) -> User:
        """Deactivate a user. Allowed for the user themselves or their family admin."""
        user = await self.get_user(user_id)
        if actor_id != user_id:
            await self._load_family_for_admin_check(user, actor_id, "deactivate_user")

        document = await self.store.update_by_expression(
            self.collection, user_id, {"$set": {"is_active": False, "updated_at": utc_now()}}
        )
        if document is None:
            raise UserNotFound(user_id=user_id)
        logger.info("User %s deactivated by %s", user_id, actor_id)
        return User.model_validate(document)


user_manager = UserManager()

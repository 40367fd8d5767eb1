"""
Family Manager for family creation, join codes and member admission.

This module provides the FamilyManager class, which creates families,
generates and regenerates their six-character join codes, previews a family
for a prospective member, and admits members while keeping member_count
within the family's max_members.

Admission safety:
    - Join codes are drawn from [A-Z0-9]. Each draw is checked against the
      store and the families collection carries a unique index on the code;
      a collision from either source consumes one of FAMILY_CODE_MAX_ATTEMPTS.
    - Joining increments member_count with a single conditional update
      (is_active and member_count < max_members), then claims the user with a
      second conditional update (family_id is unset). If the claim fails the
      increment is compensated, so concurrent joins never overshoot the cap.
    - Creating a family claims the creator with the admin role through the
      same conditional user update. A lost claim removes the new family.

Logging:
    - Uses the centralized logging manager with the "[FamilyManager]" prefix
    - Admission rejections are logged at WARNING, storage failures at ERROR
"""

import secrets
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

from pydantic import ValidationError as PydanticValidationError

from family_organizer.config import settings
from family_organizer.database.document_store import DocumentStoreProtocol, document_store
from family_organizer.managers.access_policy import can_manage_family
from family_organizer.managers.logging_manager import get_logger
from family_organizer.managers.user_manager import UserManager, user_manager as default_user_manager
from family_organizer.models.family_models import (
    FAMILY_CODE_ALPHABET,
    CreateFamilyRequest,
    Family,
    FamilyPreview,
    FamilySettings,
    InviteData,
    UpdateFamilyRequest,
)
from family_organizer.models.user_models import UserRole
from family_organizer.utils.datetime_utils import utc_now
from family_organizer.utils.error_handling import (
    AccessDenied,
    DuplicateDocument,
    Forbidden,
    NotFound,
    OrganizerError,
    StorageError,
    ValidationError,
    handle_errors,
)

logger = get_logger(prefix="[FamilyManager]")

T = TypeVar("T")


class FamilyNotFound(NotFound):
    """Family does not exist."""

    def __init__(self, message: str = "Family not found", family_id: str = None):
        super().__init__(message, resource="family", resource_id=family_id, error_code="FAMILY_NOT_FOUND")


class FamilyNotAcceptingMembers(OrganizerError):
    """Family is inactive or already at max_members."""

    http_status = 409

    def __init__(self, message: str = "Family is not accepting new members", family_id: str = None,
                 member_count: int = None, max_members: int = None):
        super().__init__(
            message,
            "FAMILY_NOT_ACCEPTING_MEMBERS",
            {"family_id": family_id, "member_count": member_count, "max_members": max_members},
        )


class AlreadyInFamily(OrganizerError):
    """User already belongs to a family."""

    http_status = 409

    def __init__(self, message: str = "User already belongs to a family", user_id: str = None,
                 family_id: str = None):
        super().__init__(message, "ALREADY_IN_FAMILY", {"user_id": user_id, "family_id": family_id})


class CodeGenerationExhausted(OrganizerError):
    """Every code draw collided with an existing family."""

    http_status = 500

    def __init__(self, message: str = "Could not generate a unique family code", attempts: int = None):
        super().__init__(message, "CODE_GENERATION_EXHAUSTED", {"attempts": attempts})


def generate_family_code(length: int = None, choice: Callable[[str], str] = secrets.choice) -> str:
    """Draw a join code uniformly from [A-Z0-9]. `choice` defaults to the CSPRNG."""
    length = length or settings.FAMILY_CODE_LENGTH
    return "".join(choice(FAMILY_CODE_ALPHABET) for _ in range(length))


def normalize_family_code(code: Any) -> str:
    return str(code or "").strip().upper()


class FamilyManager:
    """
    Family admission service.

    Collaborators are injected for testability and fall back to the
    process-wide instances.
    """

    def __init__(
        self,
        store: DocumentStoreProtocol = None,
        user_manager: UserManager = None,
        code_generator: Callable[[], str] = None,
    ) -> None:
        self.store = store or document_store
        self.user_manager = user_manager or default_user_manager
        self.code_generator = code_generator or generate_family_code
        self.collection = settings.FAMILIES_COLLECTION
        logger.debug("FamilyManager initialized with dependency injection")

    # --- Lookups ---

    async def _load_family(self, family_id: str) -> Family:
        document = await self.store.get(self.collection, family_id)
        if document is None:
            raise FamilyNotFound(family_id=family_id)
        return Family.model_validate(document)

    async def _find_by_code(self, code: str) -> Optional[Family]:
        documents = await self.store.query_by_index(self.collection, "family_code", code, limit=1)
        return Family.model_validate(documents[0]) if documents else None

    async def _code_in_use(self, code: str) -> bool:
        documents = await self.store.query_by_index(self.collection, "family_code", code, limit=1)
        return bool(documents)

    async def _write_with_unique_code(self, write: Callable[[str], Awaitable[T]], operation: str) -> T:
        """
        Draw codes until `write(code)` succeeds with a code nobody else holds.

        A code found in the store, or a unique-index violation raised by the
        write, counts as one collision.
        """
        max_attempts = settings.FAMILY_CODE_MAX_ATTEMPTS
        for attempt in range(1, max_attempts + 1):
            code = self.code_generator()
            if await self._code_in_use(code):
                logger.warning("%s: family code collision on attempt %d/%d", operation, attempt, max_attempts)
                continue
            try:
                return await write(code)
            except DuplicateDocument:
                logger.warning(
                    "%s: family code claimed concurrently on attempt %d/%d", operation, attempt, max_attempts
                )

        logger.error("%s: family code generation exhausted after %d attempts", operation, max_attempts)
        raise CodeGenerationExhausted(attempts=max_attempts)

    # --- Creation and codes ---

    @handle_errors("create_family")
    async def create_family(
        self,
        form_data: Union[CreateFamilyRequest, Dict[str, Any]],
        requesting_user_id: Optional[str] = None,
    ) -> Family:
        """
        Create a family with a unique join code.

        The creator counts as the first member, so member_count starts at 1,
        and is linked to the new family with the admin role. If that link
        loses a race with another join or creation, the family is removed
        again and AlreadyInFamily is raised.

        Args:
            form_data: Family name, optional description and settings
            requesting_user_id: The creating user, recorded as admin_user_id

        Returns:
            Family: The stored family

        Raises:
            ValidationError: If the form data is invalid
            UserNotFound: If the creating user does not exist
            AlreadyInFamily: If the creating user already belongs to a family
            CodeGenerationExhausted: If every code draw collided
        """
        if not isinstance(form_data, CreateFamilyRequest):
            try:
                form_data = CreateFamilyRequest.model_validate(form_data or {})
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(e, "Invalid family data") from e

        if requesting_user_id:
            creator = await self.user_manager.get_user(requesting_user_id)
            if creator.family_id:
                raise AlreadyInFamily(user_id=requesting_user_id, family_id=creator.family_id)

        family_settings = form_data.settings or FamilySettings()
        family_id = f"fam_{secrets.token_hex(8)}"
        now = utc_now()

        async def insert_with_code(code: str) -> Family:
            family = Family(
                family_id=family_id,
                family_name=form_data.family_name,
                family_code=code,
                admin_user_id=requesting_user_id,
                description=form_data.description,
                member_count=1,
                settings=family_settings,
                created_at=now,
                updated_at=now,
            )
            await self.store.insert(self.collection, family.to_document())
            return family

        family = await self._write_with_unique_code(insert_with_code, "create_family")

        if requesting_user_id:
            claimed = await self.user_manager.claim_family_membership(requesting_user_id, family_id, UserRole.ADMIN)
            if claimed is None:
                await self._discard_family(family_id)
                raise AlreadyInFamily(user_id=requesting_user_id)

        logger.info(
            "Family created: %s (%s) by %s", family.family_id, family.family_name, requesting_user_id or "anonymous"
        )
        return family

    async def _discard_family(self, family_id: str) -> None:
        """Remove a just-created family whose creator could not be linked."""
        try:
            await self.store.delete(self.collection, family_id)
        except StorageError:
            logger.error("Failed to remove orphaned family %s", family_id, exc_info=True)
            raise
        logger.warning("Removed family %s after its creator was linked elsewhere", family_id)

    @handle_errors("regenerate_code")
    async def regenerate_code(self, family_id: str, actor_id: str) -> str:
        """
        Replace a family's join code. Admin only; the old code stops working immediately.

        Raises:
            FamilyNotFound: If the family does not exist
            Forbidden: If the actor is not the family admin
            CodeGenerationExhausted: If every code draw collided
        """
        family = await self._load_family(family_id)
        if not can_manage_family(actor_id, family):
            raise Forbidden("Only the family admin can regenerate the family code", actor_id=actor_id,
                            action="regenerate_code")

        async def set_code(code: str) -> str:
            updated = await self.store.update_by_expression(
                self.collection, family_id, {"$set": {"family_code": code, "updated_at": utc_now()}}
            )
            if updated is None:
                raise FamilyNotFound(family_id=family_id)
            return code

        code = await self._write_with_unique_code(set_code, "regenerate_code")
        logger.info("Family code regenerated for %s by %s", family_id, actor_id)
        return code

    # --- Admission ---

    @handle_errors("get_family_by_code")
    async def get_family_by_code(self, code: str) -> FamilyPreview:
        """
        Preview a family for a prospective member.

        Returns the public family view plus up to MEMBER_PREVIEW_LIMIT members
        (name, avatar, role, join date; no emails).

        Raises:
            FamilyNotFound: If no family has this code
            FamilyNotAcceptingMembers: If the family is inactive or full
        """
        normalized = normalize_family_code(code)
        family = await self._find_by_code(normalized) if normalized else None
        if family is None:
            raise FamilyNotFound("No family found for this code")
        if not family.can_accept_new_members():
            raise FamilyNotAcceptingMembers(
                family_id=family.family_id,
                member_count=family.member_count,
                max_members=family.settings.max_members,
            )

        members = await self.user_manager.get_users_by_family(family.family_id, limit=settings.MEMBER_PREVIEW_LIMIT)
        return FamilyPreview(
            family=family.public_view(),
            members=[member.member_preview() for member in members],
        )

    @handle_errors("join_family")
    async def join_family(self, code: str, user_id: str) -> Family:
        """
        Admit a user into the family holding `code`.

        Raises:
            UserNotFound: If the user does not exist
            AlreadyInFamily: If the user already belongs to a family
            FamilyNotFound: If no family has this code
            FamilyNotAcceptingMembers: If the family is inactive or full
        """
        user = await self.user_manager.get_user(user_id)
        if user.family_id:
            raise AlreadyInFamily(user_id=user_id, family_id=user.family_id)

        normalized = normalize_family_code(code)
        family = await self._find_by_code(normalized) if normalized else None
        if family is None:
            raise FamilyNotFound("No family found for this code")
        if not family.can_accept_new_members():
            raise FamilyNotAcceptingMembers(
                family_id=family.family_id,
                member_count=family.member_count,
                max_members=family.settings.max_members,
            )

        updated = await self.store.update_by_expression(
            self.collection,
            family.family_id,
            {"$inc": {"member_count": 1}, "$set": {"updated_at": utc_now()}},
            condition={
                "is_active": True,
                "family_code": normalized,
                "member_count": {"$lt": family.settings.max_members},
            },
        )
        if updated is None:
            logger.warning("Join rejected for user %s: family %s filled up or changed", user_id, family.family_id)
            raise FamilyNotAcceptingMembers(family_id=family.family_id, max_members=family.settings.max_members)

        claimed = await self.user_manager.claim_family_membership(user_id, family.family_id, UserRole.MEMBER)
        if claimed is None:
            await self._release_seat(family.family_id)
            raise AlreadyInFamily(user_id=user_id)

        logger.info(
            "User %s joined family %s (%d/%d members)",
            user_id,
            family.family_id,
            updated["member_count"],
            family.settings.max_members,
        )
        return Family.model_validate(updated)

    async def _release_seat(self, family_id: str) -> None:
        """Undo a member_count increment whose user claim failed."""
        try:
            await self.store.update_by_expression(
                self.collection, family_id, {"$inc": {"member_count": -1}, "$set": {"updated_at": utc_now()}}
            )
        except StorageError:
            logger.error("Failed to release member seat on family %s", family_id, exc_info=True)
            raise
        logger.warning("Released member seat on family %s after a failed membership claim", family_id)

    # --- Family views and administration ---

    async def _actor_is_member(self, actor_id: str, family_id: str) -> bool:
        user_document = await self.store.get(settings.USERS_COLLECTION, actor_id)
        return bool(user_document) and user_document.get("family_id") == family_id

    @handle_errors("get_family")
    async def get_family(self, family_id: str, actor_id: str) -> Dict[str, Any]:
        """Full record for the admin, public view for members, AccessDenied for anyone else."""
        family = await self._load_family(family_id)
        if can_manage_family(actor_id, family):
            return family.model_dump(mode="json")
        if await self._actor_is_member(actor_id, family_id):
            return family.public_view()
        raise AccessDenied("You are not a member of this family", actor_id=actor_id, action="get_family")

    @handle_errors("get_current_family")
    async def get_current_family(self, user_id: str) -> Dict[str, Any]:
        """The user's own family, flagged with whether the user administers it."""
        user = await self.user_manager.get_user(user_id)
        if not user.family_id:
            raise FamilyNotFound("User does not belong to a family")
        family = await self._load_family(user.family_id)
        is_admin = can_manage_family(user_id, family)
        return {
            "family": family.model_dump(mode="json") if is_admin else family.public_view(),
            "is_current_user_admin": is_admin,
        }

    @handle_errors("update_family")
    async def update_family(
        self, family_id: str, actor_id: str, changes: Union[UpdateFamilyRequest, Dict[str, Any]]
    ) -> Family:
        """Admin-only update of name, description and (shallow-merged) settings."""
        if not isinstance(changes, UpdateFamilyRequest):
            try:
                changes = UpdateFamilyRequest.model_validate(changes or {})
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(e, "Invalid family update") from e

        family = await self._load_family(family_id)
        if not can_manage_family(actor_id, family):
            raise Forbidden("Only the family admin can update the family", actor_id=actor_id, action="update_family")

        patch = changes.model_dump(exclude_unset=True, exclude_none=True)
        if not patch:
            raise ValidationError("No valid fields to update")
        if "settings" in patch:
            patch["settings"] = {**family.settings.model_dump(), **patch["settings"]}

        try:
            merged = Family.model_validate({**family.model_dump(), **patch})
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "Invalid family update") from e

        set_fields = {name: getattr(merged, name) for name in patch}
        if "settings" in set_fields:
            set_fields["settings"] = merged.settings.model_dump()
        set_fields["updated_at"] = utc_now()

        updated = await self.store.update_by_expression(self.collection, family_id, {"$set": set_fields})
        if updated is None:
            raise FamilyNotFound(family_id=family_id)
        logger.info("Family %s updated by %s: %s", family_id, actor_id, sorted(patch))
        return Family.model_validate(updated)

    @handle_errors("get_family_members")
    async def get_family_members(self, family_id: str, actor_id: str) -> List[Dict[str, Any]]:
        """Members of a family without credentials. Only visible to members."""
        family = await self._load_family(family_id)
        if not (can_manage_family(actor_id, family) or await self._actor_is_member(actor_id, family_id)):
            raise AccessDenied("You are not a member of this family", actor_id=actor_id, action="get_family_members")
        members = await self.user_manager.get_users_by_family(family_id)
        return [member.safe_view() for member in members]

    @handle_errors("generate_invite_data")
    async def generate_invite_data(self, family_id: str, actor_id: str, regenerate_code: bool = False) -> InviteData:
        """
        Build shareable invite links and messages for a family.

        The admin may always invite and may ask for a fresh code. Members may
        invite only when the family allows member invites; their request to
        regenerate the code is ignored.
        """
        family = await self._load_family(family_id)
        is_admin = can_manage_family(actor_id, family)
        if not is_admin:
            if not await self._actor_is_member(actor_id, family_id):
                raise AccessDenied("You are not a member of this family", actor_id=actor_id, action="invite")
            if not family.settings.allow_member_invites:
                raise AccessDenied("Only the family admin can invite members", actor_id=actor_id, action="invite")

        if regenerate_code and is_admin:
            await self.regenerate_code(family_id, actor_id)
            family = await self._load_family(family_id)

        return InviteData.for_family(family, settings.FRONTEND_URL, settings.APP_DEEP_LINK_SCHEME)


family_manager = FamilyManager()

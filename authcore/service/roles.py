from __future__ import annotations

from typing import List, Union

from authcore.logging import get_logger
from authcore.service.errors import ResponseCode
from authcore.service.results import Result
from authcore.storage.common import AuthStore
from authcore.storage.errors import ConstraintViolation, RecordNotFound
from authcore.storage.models import RoleType

logger = get_logger(__name__)


class RoleService:
    """Role grants per user. Roles only widen access; there is no implicit role."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    async def create_user_role(
        self, user_id: str, role_type: Union[RoleType, str]
    ) -> Result[RoleType]:
        try:
            role = RoleType(role_type)
        except ValueError:
            return Result.failure(ResponseCode.ROLE_NOT_FOUND, role_type=str(role_type))
        try:
            self.store.add_user_role(user_id, role)
        except RecordNotFound:
            return Result.failure(ResponseCode.USER_NOT_FOUND, user_id=user_id)
        except ConstraintViolation:
            return Result.failure(ResponseCode.CONFLICT, user_id=user_id, role=role.value)
        logger.info("user_role_granted", user_id=user_id, role=role.value)
        return Result.success(role)

    async def get_roles_for_user(self, user_id: str) -> Result[List[RoleType]]:
        return Result.success(self.store.list_user_roles(user_id))

    async def has_any_role(self, user_id: str, *roles: RoleType) -> bool:
        granted = set(self.store.list_user_roles(user_id))
        return any(role in granted for role in roles)

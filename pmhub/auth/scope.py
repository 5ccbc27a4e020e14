"""
Row-level visibility.

Query builders take an ``AccessScope`` instead of inspecting the caller's role
themselves: ``AllRows`` leaves the query untouched, ``OwnedBy`` narrows it to
rows the user is attached to. What "attached" means is decided per aggregate
by the builder.
"""
import uuid
from dataclasses import dataclass
from typing import Union

from fastapi import Depends

from ..models.models import User
from .security import get_current_user, is_admin


@dataclass(frozen=True)
class AllRows:
    pass


@dataclass(frozen=True)
class OwnedBy:
    user_id: uuid.UUID


AccessScope = Union[AllRows, OwnedBy]


def scope_for(user: User) -> AccessScope:
    if is_admin(user):
        return AllRows()
    return OwnedBy(user.id)


def current_scope(user: User = Depends(get_current_user)) -> AccessScope:
    return scope_for(user)

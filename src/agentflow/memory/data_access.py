"""
Data access interface.

Profile, deadline and role storage belong to the host application.  Memory and accounting only
read through :class:`DataAccess`, so any store (SQL, an HTTP service, fixtures) can back them.
"""

from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    List,
    Optional,
)

from agentflow.core.schema import (
    DeadlineSnapshot,
    ProfileSnapshot,
)


class DataAccess(ABC):
    """Read-only view of the user data the agents need."""

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[ProfileSnapshot]:
        """Profile snapshot of *user_id*, or *None* if the user has none."""

    @abstractmethod
    async def get_upcoming_deadlines(self, user_id: str, limit: int = 5) -> List[DeadlineSnapshot]:
        """Nearest deadlines first."""

    @abstractmethod
    async def get_user_role(self, user_id: str) -> Optional[str]:
        """Account role (``ADMIN``, ``VERIFIED``, ...) used to pick a quota tier."""


class NullDataAccess(DataAccess):
    """No user data at all; every user is an anonymous default-tier user."""

    async def get_profile(self, user_id: str) -> Optional[ProfileSnapshot]:
        return None

    async def get_upcoming_deadlines(self, user_id: str, limit: int = 5) -> List[DeadlineSnapshot]:
        return []

    async def get_user_role(self, user_id: str) -> Optional[str]:
        return None

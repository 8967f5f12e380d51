from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Set
import httpx
import redis
from backend import RedisBackend
from logging_config import get_logger

logger = get_logger(__name__)


class MembershipDirectory(ABC):
    """Answers whether a user belongs to the project backing a call room."""

    @abstractmethod
    def is_member(self, project_id: str, user_id: str) -> bool:
        ...


def parse_project_members(value: str) -> Dict[str, Set[str]]:
    """Parse "project1:alice,bob;project2:carol" into {project: {users}}."""
    members: Dict[str, Set[str]] = {}
    if not value:
        return members
    for item in value.split(';'):
        if ':' not in item:
            continue
        project_id, users = item.split(':', 1)
        project_id = project_id.strip()
        if not project_id:
            continue
        members.setdefault(project_id, set()).update(u.strip() for u in users.split(',') if u.strip())
    return members


class StaticMembershipDirectory(MembershipDirectory):
    def __init__(self, members: Optional[Dict[str, Iterable[str]]] = None):
        self.members: Dict[str, Set[str]] = {k: set(v) for k, v in (members or {}).items()}

    def add_member(self, project_id: str, user_id: str):
        self.members.setdefault(project_id, set()).add(user_id)

    def is_member(self, project_id, user_id):
        return user_id in self.members.get(project_id, ())


class RedisMembershipDirectory(MembershipDirectory):
    """Reads the project:members:{id} sets maintained by the main application."""

    def __init__(self, backend: RedisBackend):
        self.backend = backend

    def is_member(self, project_id, user_id):
        try:
            return self.backend.is_project_member(project_id, user_id)
        except redis.RedisError as e:
            logger.error(f"Membership lookup for {user_id} in project {project_id} failed: {e}", exc_info=True)
            return False


class HttpMembershipDirectory(MembershipDirectory):
    """Asks the main application: GET {base_url}/projects/{id}/members/{user} -> 200 or 404."""

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip('/')
        self.client = client or httpx.Client(timeout=timeout)

    def is_member(self, project_id, user_id):
        url = f"{self.base_url}/projects/{project_id}/members/{user_id}"
        try:
            response = self.client.get(url)
        except httpx.HTTPError as e:
            logger.error(f"Membership lookup request to {url} failed: {e}", exc_info=True)
            return False
        if response.status_code == 200:
            return True
        if response.status_code != 404:
            logger.warning(f"Unexpected membership lookup status {response.status_code} from {url}")
        return False

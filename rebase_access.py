"""
Rebase Engine — Role Registry

Minimal AccessControl: principal -> set of Roles.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Set

from rebase_types import Role

_log = logging.getLogger(__name__)


class RoleRegistry:
    """In-process role assignments."""

    def __init__(self, grants: Dict[str, Iterable[Role]] | None = None) -> None:
        self._lock = threading.Lock()
        self._roles: Dict[str, Set[Role]] = {}
        for principal, roles in (grants or {}).items():
            for role in roles:
                self.grant(principal, role)

    def grant(self, principal: str, role: Role) -> None:
        with self._lock:
            self._roles.setdefault(principal, set()).add(role)
        _log.info("Granted %s to %s", role.value, principal)

    def has_role(self, principal: str, role: Role) -> bool:
        return role in self._roles.get(principal, ())

"""
Role and admin gate.

The active role decides which sections a caller can reach; management and
destructive actions additionally need the admin passphrase to have been
entered. Both flags survive restarts in the local storage directory.
"""
import hmac
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from errors import AccessDeniedError, PersistenceError
from schemas import Role

logger = logging.getLogger(__name__)

ROLE_STORAGE_KEY = "user-role-storage"
AUTH_STORAGE_KEY = "admin-auth-storage"

SECTION_ROLES: Dict[str, FrozenSet[Role]] = {
    "dashboard": frozenset({Role.admin, Role.cashier, Role.viewer}),
    "pos": frozenset({Role.admin, Role.cashier}),
    "products": frozenset({Role.admin, Role.viewer}),
    "orders": frozenset({Role.admin, Role.cashier, Role.viewer}),
    "customers": frozenset({Role.admin, Role.viewer}),
    "reports": frozenset({Role.admin}),
    "settings": frozenset({Role.admin}),
}


class AdminGate:
    def __init__(self, passphrase: str, storage_dir: str):
        self._passphrase = passphrase
        self.storage_dir = Path(storage_dir)
        self.role = self._load_role()
        self.is_authenticated = bool(self._load(AUTH_STORAGE_KEY).get("is_authenticated", False))

    def _path(self, key: str) -> Path:
        return self.storage_dir / f"{key}.json"

    def _load(self, key: str) -> dict:
        path = self._path(key)
        if not path.exists():
            return {}
        try:
            with path.open(encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {key}: {e}") from e

    def _load_role(self) -> Role:
        stored = self._load(ROLE_STORAGE_KEY).get("role", Role.admin.value)
        try:
            return Role(stored)
        except ValueError:
            logger.warning("Ignoring unknown stored role %r; using admin", stored)
            return Role.admin

    def _save(self, key: str, state: dict) -> None:
        path = self._path(key)
        tmp = None
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.storage_dir, prefix=key, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh)
            os.replace(tmp, path)
        except OSError as e:
            if tmp and os.path.exists(tmp):
                os.unlink(tmp)
            raise PersistenceError(f"Failed to save {key}: {e}") from e

    def authenticate(self, passphrase: str) -> bool:
        is_valid = hmac.compare_digest(passphrase.encode(), self._passphrase.encode())
        if is_valid:
            self.is_authenticated = True
            self._save(AUTH_STORAGE_KEY, {"is_authenticated": True})
            logger.info("Admin mode unlocked")
        else:
            logger.warning("Rejected admin passphrase")
        return is_valid

    def logout(self) -> None:
        self.is_authenticated = False
        self._save(AUTH_STORAGE_KEY, {"is_authenticated": False})

    def check_auth(self) -> bool:
        return self.is_authenticated

    def set_role(self, role: Role) -> None:
        self.role = Role(role)
        self._save(ROLE_STORAGE_KEY, {"role": self.role.value})

    def can_manage(self, role: Optional[Role] = None) -> bool:
        return (role or self.role) is Role.admin and self.is_authenticated

    def ensure_section(self, section: str, role: Optional[Role] = None) -> None:
        role = role or self.role
        if role not in SECTION_ROLES[section]:
            raise AccessDeniedError(f"Role '{role.value}' cannot access {section}")

    def ensure_admin(self, role: Optional[Role] = None) -> None:
        role = role or self.role
        if role is not Role.admin:
            raise AccessDeniedError(f"Role '{role.value}' cannot manage the shop")
        if not self.is_authenticated:
            raise AccessDeniedError("Admin passphrase required")

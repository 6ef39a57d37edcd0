"""Multi-credential pool with health tracking and round-robin rotation.

The pool hands out one credential at a time. Failures reported against a
credential push it into ``cooldown`` (after ``max_errors`` consecutive
transient failures) or straight into ``disabled`` (when the upstream
service rejected the key itself). Cooldowns expire on their own; disabled
credentials only come back through :meth:`CredentialPool.reset_key`.

All mutations are synchronous, so within one event loop they are atomic
with respect to the single in-flight request.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum
from uuid import uuid4

from docwriter.core.config import settings
from docwriter.core.exceptions import CredentialError
from docwriter.core.exceptions import NoCredentialsAvailableError
from docwriter.models.session_models import CredentialInfo
from docwriter.models.session_models import CredentialStatus
from docwriter.models.session_models import CredentialView
from docwriter.models.session_models import KeyStats
from docwriter.models.session_models import RotationResult
from docwriter.services.storage.state_store import API_KEYS_KEY
from docwriter.services.storage.state_store import JsonFileStore

logger = logging.getLogger(__name__)

RotationCallback = Callable[[str, str, str], None]
AllFailedCallback = Callable[[], None]


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    INVALID_CREDENTIAL = "invalid_credential"


def mask_key(key: str) -> str:
    """Hide all but the first and last four characters of a key."""
    if not key or len(key) < 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


class CredentialPool:
    def __init__(
        self,
        store: JsonFileStore | None = None,
        max_credentials: int | None = None,
        max_errors: int | None = None,
        cooldown_seconds: float | None = None,
        min_key_length: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_credentials = max_credentials if max_credentials is not None else settings.max_credentials
        self.max_errors = max_errors if max_errors is not None else settings.credential_max_errors
        self.cooldown_seconds = cooldown_seconds if cooldown_seconds is not None else settings.credential_cooldown_seconds
        self.min_key_length = min_key_length if min_key_length is not None else settings.credential_min_length
        self.clock = clock

        self._credentials: list[CredentialInfo] = []
        self._current_index = 0
        self.on_rotation: RotationCallback | None = None
        self.on_all_failed: AllFailedCallback | None = None

        self._load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        if self.store is None:
            return
        data = self.store.get(API_KEYS_KEY) or {}
        try:
            self._credentials = [CredentialInfo(**item) for item in data.get("keys", [])]
            self._current_index = int(data.get("current_index", 0))
        except (TypeError, ValueError):
            logger.exception("Stored credential list is malformed, starting with an empty pool")
            self._credentials = []
            self._current_index = 0
        if self._current_index >= len(self._credentials):
            self._current_index = 0
        self._refresh_cooldowns()
        logger.info("Loaded %d credentials from state store", len(self._credentials))

    def _save(self) -> None:
        if self.store is None:
            return
        self.store.set(
            API_KEYS_KEY,
            {
                "keys": [c.model_dump(mode="json") for c in self._credentials],
                "current_index": self._current_index,
            },
        )

    def _refresh_cooldowns(self) -> None:
        now = self.clock()
        changed = False
        for cred in self._credentials:
            if cred.status == CredentialStatus.COOLDOWN and cred.cooldown_until is not None and cred.cooldown_until <= now:
                cred.status = CredentialStatus.ACTIVE
                cred.error_count = 0
                cred.cooldown_until = None
                changed = True
                logger.info("Credential '%s' finished its cooldown", cred.name)
        if changed:
            self._save()

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._credentials)

    def _index_of(self, credential_id: str) -> int:
        for idx, cred in enumerate(self._credentials):
            if cred.id == credential_id:
                return idx
        raise CredentialError(f"Credential not found: {credential_id}")

    def get(self, credential_id: str) -> CredentialInfo:
        self._refresh_cooldowns()
        return self._credentials[self._index_of(credential_id)]

    def status_of(self, credential_id: str) -> CredentialStatus:
        return self.get(credential_id).status

    @property
    def current_index(self) -> int:
        return self._current_index

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def add_key(self, key: str, name: str | None = None) -> CredentialInfo:
        if len(self._credentials) >= self.max_credentials:
            raise CredentialError(f"Credential limit reached ({self.max_credentials} keys)")

        trimmed = key.strip()
        if any(c.key == trimmed for c in self._credentials):
            raise CredentialError("This key is already stored")
        if not trimmed or len(trimmed) < self.min_key_length:
            raise CredentialError("Invalid key")

        cred = CredentialInfo(
            id=uuid4().hex[:12],
            key=trimmed,
            name=(name or "").strip() or f"Key {len(self._credentials) + 1}",
            added_at=self.clock(),
        )
        self._credentials.append(cred)
        self._save()
        logger.info("Added credential '%s' (%s)", cred.name, mask_key(cred.key))
        return cred

    def remove_key(self, credential_id: str) -> None:
        index = self._index_of(credential_id)
        removed = self._credentials.pop(index)

        if index < self._current_index:
            self._current_index -= 1
        # Removing the current slot leaves the pointer on its successor
        if self._current_index >= len(self._credentials):
            self._current_index = 0

        self._save()
        logger.info("Removed credential '%s' (%s)", removed.name, mask_key(removed.key))

    def reset_key(self, credential_id: str) -> CredentialInfo:
        cred = self._credentials[self._index_of(credential_id)]
        cred.status = CredentialStatus.ACTIVE
        cred.error_count = 0
        cred.cooldown_until = None
        cred.last_error = None
        self._save()
        logger.info("Credential '%s' manually reactivated", cred.name)
        return cred

    def rename_key(self, credential_id: str, new_name: str) -> CredentialInfo:
        cred = self._credentials[self._index_of(credential_id)]
        cred.name = new_name.strip() or cred.name
        self._save()
        return cred

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def acquire_active(self) -> CredentialInfo:
        """Return the first active credential in rotation order, starting at the pointer."""
        self._refresh_cooldowns()

        count = len(self._credentials)
        for offset in range(count):
            idx = (self._current_index + offset) % count
            cred = self._credentials[idx]
            if cred.status == CredentialStatus.ACTIVE:
                self._current_index = idx
                return cred

        raise NoCredentialsAvailableError("No active API key is available")

    def advance_rotation_pointer(self) -> None:
        if self._credentials:
            self._current_index = (self._current_index + 1) % len(self._credentials)
            self._save()

    def report_success(self, credential_id: str) -> None:
        cred = self._credentials[self._index_of(credential_id)]
        if cred.error_count or cred.last_error:
            cred.error_count = 0
            cred.last_error = None
            self._save()

    def report_failure(self, credential_id: str, error_kind: ErrorKind | str) -> RotationResult:
        """Record a failed request and rotate to the next active credential."""
        kind = ErrorKind(error_kind)
        cred = self._credentials[self._index_of(credential_id)]
        cred.last_error = kind.value
        cred.error_count += 1

        if kind == ErrorKind.INVALID_CREDENTIAL:
            cred.status = CredentialStatus.DISABLED
            cred.cooldown_until = None
            logger.warning("Credential '%s' rejected by upstream, disabling it", cred.name)
        elif cred.error_count >= self.max_errors:
            cred.status = CredentialStatus.COOLDOWN
            cred.cooldown_until = self.clock() + self.cooldown_seconds
            logger.warning(
                "Credential '%s' failed %d times in a row, cooling down for %.0fs",
                cred.name,
                cred.error_count,
                self.cooldown_seconds,
            )

        self._save()
        return self._rotate_after(credential_id, kind.value)

    def _rotate_after(self, credential_id: str, reason: str) -> RotationResult:
        self._refresh_cooldowns()
        from_index = self._index_of(credential_id)
        from_key = self._credentials[from_index].key
        count = len(self._credentials)

        for offset in range(1, count + 1):
            idx = (from_index + offset) % count
            nxt = self._credentials[idx]
            if nxt.status == CredentialStatus.ACTIVE:
                self._current_index = idx
                self._save()
                if self.on_rotation and idx != from_index:
                    self.on_rotation(mask_key(from_key), mask_key(nxt.key), reason)
                return RotationResult(
                    success=True,
                    has_more_keys=True,
                    next_id=nxt.id,
                    message=f"Switched to key: {nxt.name}",
                )

        if self.on_all_failed:
            self.on_all_failed()
        return RotationResult(success=False, has_more_keys=False, message="No API key is available")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def has_available(self) -> bool:
        self._refresh_cooldowns()
        return any(c.status == CredentialStatus.ACTIVE for c in self._credentials)

    def stats(self) -> KeyStats:
        self._refresh_cooldowns()
        return KeyStats(
            total=len(self._credentials),
            active=sum(1 for c in self._credentials if c.status == CredentialStatus.ACTIVE),
            disabled=sum(1 for c in self._credentials if c.status == CredentialStatus.DISABLED),
            cooldown=sum(1 for c in self._credentials if c.status == CredentialStatus.COOLDOWN),
        )

    def credentials(self) -> list[CredentialView]:
        self._refresh_cooldowns()
        return [
            CredentialView(
                id=c.id,
                name=c.name,
                masked_key=mask_key(c.key),
                status=c.status,
                error_count=c.error_count,
                last_error=c.last_error,
                cooldown_until=c.cooldown_until,
            )
            for c in self._credentials
        ]

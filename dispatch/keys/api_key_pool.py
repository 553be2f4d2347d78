"""API key pool with health status tracking and selection policy."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import yaml
from loguru import logger

from dispatch.keys.classifier import CredentialFailure, FailureClassification

MIN_KEY_LENGTH = 10
_SEPARATORS = re.compile(r"[\n,;]+")


def parse_key_pool(raw: str) -> List[str]:
    """Split a pasted block of keys on newlines, commas and semicolons.

    Entries shorter than ``MIN_KEY_LENGTH`` are dropped. Order is kept and
    duplicates are not removed.
    """
    if not raw:
        return []
    entries = (part.strip() for part in _SEPARATORS.split(raw))
    return [entry for entry in entries if len(entry) >= MIN_KEY_LENGTH]


def mask_secret(secret: str) -> str:
    """Short label for logs and API output."""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


class CredentialStatus(str, Enum):
    """Credential status enumeration."""
    UNCHECKED = "unchecked"
    VALID = "valid"
    INVALID = "invalid"
    RATE_LIMITED = "rate_limited"
    CHECKING = "checking"


_ELIGIBLE = (CredentialStatus.VALID, CredentialStatus.UNCHECKED)


class KeyPoolExhaustedError(Exception):
    """No eligible credential is left for a call."""

    def __init__(self, message: str, last_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


@dataclass
class Credential:
    """One API secret and what we know about it."""
    secret: str
    status: CredentialStatus = CredentialStatus.UNCHECKED
    last_latency_ms: Optional[float] = None
    last_checked_at: Optional[float] = None
    last_error: Optional[str] = None
    cooldown_until: float = 0.0

    # Usage statistics
    total_calls: int = 0
    success_calls: int = 0
    failed_calls: int = 0

    status_before_check: Optional[CredentialStatus] = field(default=None, repr=False)

    @property
    def key_id(self) -> str:
        return mask_secret(self.secret)

    @property
    def is_eligible(self) -> bool:
        if self.status == CredentialStatus.CHECKING:
            return self.status_before_check in _ELIGIBLE
        return self.status in _ELIGIBLE

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 1.0
        return self.success_calls / self.total_calls

    def to_dict(self) -> Dict:
        """Convert to dictionary for monitoring; the secret is masked."""
        return {
            "key_id": self.key_id,
            "status": self.status.value,
            "last_latency_ms": self.last_latency_ms,
            "last_checked_at": self.last_checked_at,
            "last_error": self.last_error,
            "total_calls": self.total_calls,
            "success_calls": self.success_calls,
            "failed_calls": self.failed_calls,
            "success_rate": self.success_rate,
            "cooldown_until": self.cooldown_until if self.status == CredentialStatus.RATE_LIMITED else None,
        }


class KeyPool:
    """
    API key pool

    Responsibilities:
    1. Keep the ordered list of candidate keys (primary first)
    2. Track status from health checks and call outcomes
    3. Pick the next usable key, skipping invalid and cooling keys
    4. Bring rate-limited keys back after their cooldown
    """

    def __init__(self, secrets: Iterable[str] = (), cooldown_seconds: float = 60.0) -> None:
        """
        Initialise the pool

        Args:
            secrets: keys in preference order; exact duplicates are skipped
            cooldown_seconds: how long a rate-limited key is left alone
        """
        self.cooldown_seconds = cooldown_seconds
        self.lock = threading.RLock()
        self._credentials: List[Credential] = []

        for secret in secrets:
            self._add(secret)

        logger.info(f"Key pool initialized with {len(self._credentials)} keys")

    @classmethod
    def from_raw(cls, raw: str, primary: Optional[str] = None, **kwargs) -> "KeyPool":
        """Build a pool from the primary key and a pasted pool block."""
        secrets: List[str] = []
        if primary and primary.strip():
            secrets.append(primary.strip())
        secrets.extend(parse_key_pool(raw))
        return cls(secrets, **kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path], **kwargs) -> "KeyPool":
        """Load ``primary_key`` and ``pool`` from a YAML key file."""
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
        pool = config.get("pool") or ""
        if isinstance(pool, list):
            pool = "\n".join(str(item) for item in pool)
        return cls.from_raw(pool, primary=config.get("primary_key"), **kwargs)

    def __len__(self) -> int:
        with self.lock:
            return len(self._credentials)

    def __contains__(self, secret: object) -> bool:
        with self.lock:
            return self._find(secret) is not None

    def _find(self, secret) -> Optional[Credential]:
        for credential in self._credentials:
            if credential.secret == secret:
                return credential
        return None

    def _require(self, secret: str) -> Credential:
        credential = self._find(secret)
        if credential is None:
            raise KeyError(mask_secret(secret))
        return credential

    def _add(self, secret: str) -> bool:
        if self._find(secret) is not None:
            return False
        self._credentials.append(Credential(secret=secret))
        return True

    def add_key(self, secret: str) -> bool:
        """Append a key; returns False when it is already pooled."""
        secret = secret.strip()
        with self.lock:
            added = self._add(secret)
        if added:
            logger.info(f"Added API key {mask_secret(secret)} to pool")
        return added

    def add_keys(self, raw: str) -> int:
        """Parse a pasted block and append the new keys."""
        return sum(1 for secret in parse_key_pool(raw) if self.add_key(secret))

    def remove_key(self, secret: str) -> bool:
        with self.lock:
            credential = self._find(secret)
            if credential is None:
                return False
            self._credentials.remove(credential)
        logger.info(f"Removed API key {mask_secret(secret)} from pool")
        return True

    def find_by_key_id(self, key_id: str) -> Optional[str]:
        """Resolve a masked key id back to its secret."""
        with self.lock:
            for credential in self._credentials:
                if credential.key_id == key_id:
                    return credential.secret
        return None

    def get(self, secret: str) -> Optional[Credential]:
        """Copy of the credential record, or None."""
        with self.lock:
            credential = self._find(secret)
            return replace(credential) if credential else None

    def credentials(self) -> List[Credential]:
        """Copies of every credential in pool order."""
        with self.lock:
            self._update_cooling_keys()
            return [replace(c) for c in self._credentials]

    def select(self, exclude: Iterable[str] = ()) -> Optional[Credential]:
        """
        Pick the first eligible key in pool order

        Args:
            exclude: secrets already tried for the current call

        Returns:
            The live credential, or None when nothing is eligible
        """
        excluded = set(exclude)
        with self.lock:
            self._update_cooling_keys()
            for credential in self._credentials:
                if credential.secret not in excluded and credential.is_eligible:
                    return credential
        return None

    def mark_success(self, secret: str, latency_ms: Optional[float] = None) -> None:
        with self.lock:
            credential = self._find(secret)
            if credential is None:
                logger.debug(f"Key {mask_secret(secret)} was removed during its call; outcome dropped")
                return
            credential.total_calls += 1
            credential.success_calls += 1
            credential.last_error = None
            credential.last_checked_at = time.time()
            if latency_ms is not None:
                credential.last_latency_ms = latency_ms
            self._set_status(credential, CredentialStatus.VALID)
            logger.debug(f"Released API key: {credential.key_id} (success)")

    def mark_failure(self, secret: str, classification: FailureClassification) -> None:
        """Record a failed call and apply the status its classification implies."""
        with self.lock:
            credential = self._find(secret)
            if credential is None:
                logger.debug(f"Key {mask_secret(secret)} was removed during its call; outcome dropped")
                return
            credential.total_calls += 1
            credential.failed_calls += 1
            credential.last_error = classification.message
            self._apply_classification(credential, classification)

    @staticmethod
    def _set_status(credential: Credential, status: CredentialStatus) -> None:
        # a running check owns the visible status; record the outcome behind it
        if credential.status == CredentialStatus.CHECKING:
            credential.status_before_check = status
        else:
            credential.status = status

    def _apply_classification(self, credential: Credential, classification: FailureClassification) -> None:
        reason = classification.reason
        if reason == CredentialFailure.QUOTA_EXHAUSTED:
            self._set_status(credential, CredentialStatus.RATE_LIMITED)
            credential.cooldown_until = time.time() + self.cooldown_seconds
            logger.warning(
                f"API key {credential.key_id} rate limited, cooling for {self.cooldown_seconds:.0f}s"
            )
        elif reason in (CredentialFailure.INVALID_KEY, CredentialFailure.EXPIRED):
            self._set_status(credential, CredentialStatus.INVALID)
            logger.warning(f"API key {credential.key_id} marked invalid: {classification.message}")

    def reset_key(self, secret: str) -> None:
        """Give a key another chance regardless of its current status."""
        with self.lock:
            credential = self._require(secret)
            self._set_status(credential, CredentialStatus.UNCHECKED)
            credential.cooldown_until = 0.0
            credential.last_error = None
            logger.info(f"API key {credential.key_id} reset to unchecked")

    def begin_check(self, secret: str) -> bool:
        """Flag a key as being checked; False if a check is already running."""
        with self.lock:
            credential = self._require(secret)
            if credential.status == CredentialStatus.CHECKING:
                return False
            self._update_cooling_keys()
            credential.status_before_check = credential.status
            credential.status = CredentialStatus.CHECKING
            return True

    def finish_check(
        self,
        secret: str,
        status: Optional[CredentialStatus] = None,
        latency_ms: Optional[float] = None,
        error: Optional[str] = None,
        classification: Optional[FailureClassification] = None,
    ) -> None:
        """
        Clear the CHECKING flag

        Args:
            secret: the key that was checked
            status: VALID on success; None reverts to the status before the check
            latency_ms: measured probe latency
            error: message to keep on the record
            classification: definitive failure classification, if any
        """
        with self.lock:
            credential = self._find(secret)
            if credential is None:
                # removed while the check was in flight
                return
            previous = credential.status_before_check or CredentialStatus.UNCHECKED
            credential.status = previous
            credential.last_checked_at = time.time()
            credential.last_error = error
            if latency_ms is not None:
                credential.last_latency_ms = latency_ms

            if classification is not None and classification.is_credential_failure:
                self._apply_classification(credential, classification)
            elif status is not None:
                credential.status = status
            credential.status_before_check = None

    def _update_cooling_keys(self) -> None:
        now = time.time()
        for credential in self._credentials:
            if credential.status == CredentialStatus.RATE_LIMITED and now >= credential.cooldown_until:
                credential.status = CredentialStatus.UNCHECKED
                logger.info(f"API key {credential.key_id} cooling completed, now available")

    def stats(self) -> Dict:
        """Pool statistics for monitoring."""
        with self.lock:
            self._update_cooling_keys()
            counts = {status.value: 0 for status in CredentialStatus}
            for credential in self._credentials:
                counts[credential.status.value] += 1
            return {
                "total_keys": len(self._credentials),
                "eligible_keys": sum(1 for c in self._credentials if c.is_eligible),
                "by_status": counts,
                "total_calls": sum(c.total_calls for c in self._credentials),
                "keys": [c.to_dict() for c in self._credentials],
            }

"""
Pseudonymization and PII minimization.

Subject identifiers are replaced by an HMAC-SHA256 of the id under a
version-tagged secret salt. The transform is deterministic within a salt
epoch, which is what lets erasure find warehouse rows by recomputing the
pseudonym instead of keeping a reverse index.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from .errors import ConfigurationError
from .settings import SyncSettings

# Keys never allowed to reach the warehouse (compared case-insensitively,
# with underscores/dashes removed).
PII_KEYS = frozenset(
    {
        "email",
        "displayname",
        "nickname",
        "name",
        "avatar",
        "avatarurl",
        "photourl",
        "ip",
        "ipaddress",
        "lastip",
        "phone",
        "phonenumber",
    }
)

_DEVICE_FAMILY = re.compile(r"[A-Za-z]+")


@dataclass(frozen=True)
class SaltConfig:
    """Immutable, version-tagged salt.

    Rotation never mutates a SaltConfig: build a new one whose ``previous``
    points at the old salt and set ``rotation_window_until`` so in-flight
    erasures still find rows written under the old pseudonym.
    """

    salt: bytes
    version: str
    previous: Optional["SaltConfig"] = None
    rotation_window_until: Optional[datetime] = None

    def __post_init__(self):
        if not self.salt:
            raise ConfigurationError("pseudonym salt must not be empty")

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "SaltConfig":
        if settings.pseudonym_salt is None or not settings.pseudonym_salt.get_secret_value():
            raise ConfigurationError(
                "SUBJECT_SYNC_PSEUDONYM_SALT is not set; refusing to run without pseudonymization"
            )
        previous = None
        if settings.previous_salt is not None and settings.previous_salt.get_secret_value():
            if settings.rotation_window_until is None:
                raise ConfigurationError("previous_salt requires rotation_window_until")
            previous = cls(
                salt=settings.previous_salt.get_secret_value().encode(),
                version=settings.previous_salt_version or "previous",
            )
        return cls(
            salt=settings.pseudonym_salt.get_secret_value().encode(),
            version=settings.salt_version,
            previous=previous,
            rotation_window_until=settings.rotation_window_until,
        )

    def rotate(self, new_salt: bytes, new_version: str, window_until: datetime) -> "SaltConfig":
        """Return a new epoch that keeps this one resolvable until ``window_until``."""
        current = SaltConfig(salt=self.salt, version=self.version)
        return SaltConfig(
            salt=new_salt, version=new_version, previous=current, rotation_window_until=window_until
        )


def _digest(salt: bytes, subject_id: str) -> str:
    return hmac.new(salt, subject_id.encode("utf-8"), hashlib.sha256).hexdigest()


class Pseudonymizer:
    """One-way subject id transform plus PII stripping helpers."""

    def __init__(self, salt: SaltConfig):
        self._salt = salt

    @property
    def salt_version(self) -> str:
        return self._salt.version

    def pseudonymize(self, subject_id: str) -> str:
        if not subject_id:
            raise ValueError("subject_id required")
        return _digest(self._salt.salt, subject_id)

    def candidates(self, subject_id: str, now: datetime) -> list[str]:
        """Every pseudonym the subject may have in the warehouse at ``now``."""
        out = [self.pseudonymize(subject_id)]
        prev = self._salt.previous
        until = self._salt.rotation_window_until
        if prev is not None and until is not None and now <= until:
            out.append(_digest(prev.salt, subject_id))
        return out


def _norm_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


def strip_pii(data: Mapping[str, Any]) -> dict[str, Any]:
    """Drop direct identifiers from a (possibly nested) mapping."""
    out: dict[str, Any] = {}
    for k, v in data.items():
        if _norm_key(k) in PII_KEYS:
            continue
        if isinstance(v, Mapping):
            out[k] = strip_pii(v)
        elif isinstance(v, list):
            out[k] = [strip_pii(i) if isinstance(i, Mapping) else i for i in v]
        else:
            out[k] = v
    return out


def generalize_device_model(model: Optional[str]) -> str:
    """Coarsen a device model string to its family ("iPhone14,2" -> "iphone")."""
    if not model:
        return "unknown"
    m = _DEVICE_FAMILY.search(model)
    return m.group(0).lower() if m else "unknown"


def birth_year_range(birth_year: Optional[int]) -> str:
    if not birth_year:
        return "unknown"
    return f"{(birth_year // 10) * 10}s"

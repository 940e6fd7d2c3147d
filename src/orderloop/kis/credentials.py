"""Broker credentials per owner.

Credentials are read from a JSON file mapping owner id to an object with
``app_key``, ``app_secret`` and ``account_number``.  Storage and
encryption of that file are the deployment's concern.
"""

from __future__ import annotations

import json
import re
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from orderloop.errors import ConfigurationError


class KisCredentials(BaseModel):
    """App key pair and account for one owner."""

    app_key: str = Field(min_length=1)
    app_secret: str = Field(min_length=1)
    account_number: str = Field(
        min_length=8,
        description="8-digit account plus optional 2-digit product code, e.g. 12345678-01",
    )

    def account_parts(self) -> tuple[str, str]:
        """Split into (CANO, ACNT_PRDT_CD); the product code defaults to "01"."""
        digits = re.sub(r"\D", "", self.account_number)
        return digits[:8], digits[8:10] or "01"


class CredentialStore:
    """Loads ``KisCredentials`` from a JSON file keyed by owner id.

    Args:
        path: JSON file location.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _read(self) -> dict:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(
                f"credentials file not found: {self.path}"
            ) from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"credentials file is not valid JSON: {self.path}"
            ) from exc

    def load(self, owner_id: str) -> KisCredentials:
        """Return the credentials for ``owner_id``.

        Raises:
            ConfigurationError: If the owner is missing or the entry is malformed.
        """
        entry = self._read().get(owner_id)
        if entry is None:
            raise ConfigurationError(f"no broker credentials for owner {owner_id}")
        try:
            return KisCredentials.model_validate(entry)
        except ValidationError as exc:
            raise ConfigurationError(
                f"malformed broker credentials for owner {owner_id}"
            ) from exc

    def owners(self) -> list[str]:
        return sorted(self._read())

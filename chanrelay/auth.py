"""Authentication providers consulted when a connection sends its auth message."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum


class AuthResult(IntEnum):
    """Outcome of an authentication attempt."""

    SUCCESSFUL = 0
    INVALID_PIT = 1
    INVALID_LT = 2


class AuthProvider(ABC):
    """Decides whether a connection may authenticate."""

    @abstractmethod
    def do_auth(self, conn_id: int, pit: str, lt: str) -> AuthResult:
        """Check the player identity token and login token of a connection."""


@dataclass
class LoggingAuthProvider(AuthProvider):
    """Accepts every connection, logging each attempt if a logger is given."""

    logger: logging.Logger | None = None
    msg: str = ""

    def do_auth(self, conn_id: int, pit: str, lt: str) -> AuthResult:
        if self.logger is not None:
            self.logger.info(
                "%s",
                self.msg,
                extra={"conn_id": conn_id, "pit": pit, "lt": lt},
            )
        return AuthResult.SUCCESSFUL


class AlwaysFailAuthProvider(AuthProvider):
    """Rejects every connection."""

    def do_auth(self, conn_id: int, pit: str, lt: str) -> AuthResult:
        return AuthResult.INVALID_PIT


@dataclass
class FixedPasswordAuthProvider(AuthProvider):
    """Accepts a connection only when its login token equals a fixed password."""

    password: str

    def do_auth(self, conn_id: int, pit: str, lt: str) -> AuthResult:
        if lt == self.password:
            return AuthResult.SUCCESSFUL
        return AuthResult.INVALID_LT


@dataclass
class _ProviderSlot:
    """Holds the provider used process-wide."""

    provider: AuthProvider | None = None


_slot = _ProviderSlot()


def set_auth_provider(value: AuthProvider | None) -> None:
    """Install the provider used for all subsequent authentications."""
    if value is not None and not isinstance(value, AuthProvider):
        raise TypeError(f"expected an AuthProvider, got {type(value).__name__}")
    _slot.provider = value


def get_auth_provider() -> AuthProvider | None:
    """Return the installed provider, or None when none is set."""
    return _slot.provider
"""Typed identity of whoever performs a mutating call."""

from dataclasses import dataclass
from enum import Enum


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    POSTMASTER = "postmaster"
    POSTMAN = "postman"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    id: str
    role: ActorRole

    def __str__(self) -> str:
        return f"{self.role.value}:{self.id}"


SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)

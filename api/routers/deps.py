"""Shared router dependencies: caller identity and outbound clients."""

from fastapi import Header, HTTPException

from services.actors import Actor, ActorRole
from services.dms import DmsClient
from services.sms import NotificationSender, SmsSender


async def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header(...),
) -> Actor:
    """Identity forwarded by the gateway that authenticated the caller."""
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown actor role: {x_actor_role}")
    if not x_actor_id.strip():
        raise HTTPException(status_code=400, detail="X-Actor-Id header is empty")
    return Actor(id=x_actor_id.strip(), role=role)


def require_admin(actor: Actor) -> None:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")


def get_sender() -> NotificationSender:
    return SmsSender()


def get_dms() -> DmsClient:
    return DmsClient()

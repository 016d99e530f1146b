from __future__ import annotations

from typing import Any

from .models import OrderAuditLog


def log_order_event(
    action: str,
    *,
    message: str = "",
    actor=None,
    order=None,
    ticket=None,
    metadata: dict[str, Any] | None = None,
) -> OrderAuditLog:
    return OrderAuditLog.objects.create(
        action=action,
        message=message,
        actor=actor if actor is not None and actor.is_authenticated else None,
        order=order,
        ticket=ticket,
        metadata=metadata or {},
    )

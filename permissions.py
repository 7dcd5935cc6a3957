"""
Role-scoped authorization for order operations.

Every mutation calls `require(actor, action, order)` before touching the
database. `actor` is the serialized user dict supplied by the auth layer
(at least `id` and `role`); `order` is the raw order document where the rule
depends on it.
"""
from typing import Callable, Dict, Optional

from errors import Forbidden


def seller_ids(order: dict) -> set:
    return {item.get("seller_id") for item in order.get("order_items", [])}


def is_owner(actor: dict, order: dict) -> bool:
    return order.get("user_id") == actor.get("id")


def is_owning_seller(actor: dict, order: dict) -> bool:
    return actor.get("role") == "seller" and actor.get("id") in seller_ids(order)


def is_assigned_agent(actor: dict, order: dict, agent: Optional[dict] = None) -> bool:
    # delivery_agent_id holds the agent profile id; agent is that profile
    if actor.get("role") != "delivery" or agent is None:
        return False
    return str(agent.get("_id")) == order.get("delivery_agent_id") and agent.get("user_id") == actor.get("id")


def is_admin(actor: dict) -> bool:
    return actor.get("role") == "admin"


_RULES: Dict[str, Callable[..., bool]] = {
    "order:create": lambda actor, order, agent: actor.get("role") == "customer",
    "order:pay": lambda actor, order, agent: is_owner(actor, order),
    "order:cancel_customer": lambda actor, order, agent: is_owner(actor, order),
    "order:accept": lambda actor, order, agent: is_owning_seller(actor, order),
    "order:ship": lambda actor, order, agent: is_owning_seller(actor, order),
    "order:cancel_seller": lambda actor, order, agent: is_owning_seller(actor, order),
    "order:assign": lambda actor, order, agent: is_owning_seller(actor, order) or is_admin(actor),
    "order:start_delivery": lambda actor, order, agent: is_assigned_agent(actor, order, agent),
    "order:complete": lambda actor, order, agent: is_assigned_agent(actor, order, agent),
    "order:attempt": lambda actor, order, agent: is_assigned_agent(actor, order, agent),
    "order:generate_otp": lambda actor, order, agent: (
        is_assigned_agent(actor, order, agent) or is_owning_seller(actor, order)
    ),
    "order:invoice": lambda actor, order, agent: is_owner(actor, order) or is_owning_seller(actor, order),
    "order:rate": lambda actor, order, agent: is_owner(actor, order),
    "order:admin": lambda actor, order, agent: is_admin(actor),
    "order:view": lambda actor, order, agent: (
        is_owner(actor, order)
        or is_admin(actor)
        or is_owning_seller(actor, order)
        or is_assigned_agent(actor, order, agent)
    ),
}


def allowed(actor: dict, action: str, order: Optional[dict] = None, agent: Optional[dict] = None) -> bool:
    rule = _RULES.get(action)
    if rule is None:
        raise KeyError(f"Unknown action: {action}")
    return bool(rule(actor, order or {}, agent))


def require(actor: dict, action: str, order: Optional[dict] = None, agent: Optional[dict] = None):
    if not allowed(actor, action, order, agent):
        raise Forbidden("Not authorized")


def require_role(actor: dict, *roles: str):
    if actor.get("role") not in roles:
        raise Forbidden(f"Access denied. {'/'.join(r.capitalize() for r in roles)} only.")

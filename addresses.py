"""
Per-user address book embedded in the user document.

Invariant: exactly one address has is_default=True whenever the book is
non-empty, none when it is empty. Each operation builds the new list in memory
(validating first) and writes it back in one update guarded by
address_version, retrying if another request changed the book in between.
"""
import copy
import logging
from typing import Callable, List, Optional

from bson.objectid import ObjectId

from database import to_object_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import Address

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "street", "city", "state", "pincode", "phone")
EDITABLE_FIELDS = REQUIRED_FIELDS + ("type",)
ADDRESS_TYPES = ("home", "work", "other")
MAX_RETRIES = 5


def _clean(value):
    return value.strip() if isinstance(value, str) else value


def _check_type(value):
    if value not in ADDRESS_TYPES:
        raise ValidationFailed(f"Address type must be one of: {', '.join(ADDRESS_TYPES)}")


def _find(addresses: List[dict], address_id: str) -> dict:
    for address in addresses:
        if address.get("id") == address_id:
            return address
    raise NotFound("Address not found")


def _clear_defaults(addresses: List[dict]):
    for address in addresses:
        address["is_default"] = False


def add_address(addresses: List[dict], data: dict) -> List[dict]:
    missing = [f for f in REQUIRED_FIELDS if not _clean(data.get(f))]
    if missing:
        raise ValidationFailed(f"All fields are required (missing: {', '.join(missing)})")
    address_type = data.get("type") or "home"
    _check_type(address_type)

    addresses = copy.deepcopy(addresses)
    make_default = bool(data.get("is_default")) or not addresses
    if make_default:
        _clear_defaults(addresses)
    new_address = Address(
        id=str(ObjectId()),
        type=address_type,
        is_default=make_default,
        **{f: _clean(data[f]) for f in REQUIRED_FIELDS},
    )
    addresses.append(new_address.model_dump())
    return addresses


def update_address(addresses: List[dict], address_id: str, data: dict) -> List[dict]:
    addresses = copy.deepcopy(addresses)
    address = _find(addresses, address_id)

    changes = {f: _clean(data[f]) for f in EDITABLE_FIELDS if data.get(f) is not None}
    blank = [f for f, v in changes.items() if v == ""]
    if blank:
        raise ValidationFailed(f"Fields cannot be empty: {', '.join(blank)}")
    if "type" in changes:
        _check_type(changes["type"])

    is_default = data.get("is_default")
    if is_default:
        _clear_defaults(addresses)
        address["is_default"] = True
    elif is_default is False and address.get("is_default"):
        # unsetting the default hands it to the first other address, if any
        others = [a for a in addresses if a is not address]
        if others:
            address["is_default"] = False
            others[0]["is_default"] = True
    address.update(changes)
    return addresses


def delete_address(addresses: List[dict], address_id: str) -> List[dict]:
    addresses = copy.deepcopy(addresses)
    address = _find(addresses, address_id)
    remaining = [a for a in addresses if a is not address]
    if address.get("is_default") and remaining:
        remaining[0]["is_default"] = True
    return remaining


def set_default(addresses: List[dict], address_id: str) -> List[dict]:
    addresses = copy.deepcopy(addresses)
    address = _find(addresses, address_id)
    _clear_defaults(addresses)
    address["is_default"] = True
    return addresses


def default_address(addresses: List[dict]) -> Optional[dict]:
    return next((a for a in addresses if a.get("is_default")), None)


# ----------------------- Persistence -----------------------

def _load_user(db, user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "User")}, {"addresses": 1, "address_version": 1})
    if not user:
        raise NotFound("User not found")
    return user


def _commit(db, user_id: str, change: Callable[[List[dict]], List[dict]]) -> List[dict]:
    for _ in range(MAX_RETRIES):
        user = _load_user(db, user_id)
        new_addresses = change(user.get("addresses", []))

        if "address_version" in user:
            version_filter = {"address_version": user["address_version"]}
        else:
            version_filter = {"address_version": {"$exists": False}}
        res = db["user"].update_one(
            {"_id": user["_id"], **version_filter},
            {"$set": {"addresses": new_addresses, "updated_at": utcnow()}, "$inc": {"address_version": 1}},
        )
        if res.matched_count == 1:
            return new_addresses
        logger.info("Address book of user %s changed concurrently, retrying", user_id)
    raise Conflict("Address book was modified concurrently, please retry")


def list_addresses(db, user_id: str) -> List[dict]:
    return _load_user(db, user_id).get("addresses", [])


def add(db, user_id: str, data: dict) -> List[dict]:
    return _commit(db, user_id, lambda addresses: add_address(addresses, data))


def update(db, user_id: str, address_id: str, data: dict) -> List[dict]:
    return _commit(db, user_id, lambda addresses: update_address(addresses, address_id, data))


def delete(db, user_id: str, address_id: str) -> List[dict]:
    return _commit(db, user_id, lambda addresses: delete_address(addresses, address_id))


def make_default(db, user_id: str, address_id: str) -> List[dict]:
    return _commit(db, user_id, lambda addresses: set_default(addresses, address_id))

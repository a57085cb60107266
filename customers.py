"""Directory store: customers, owners and their order history."""
import logging
import re
from typing import Optional

from pymongo.errors import DuplicateKeyError

from auth import Identity, hash_password
from database import create_document, paginate, to_object_id, utcnow
from errors import ConflictError, NotFoundError, PermissionDenied
from schemas import CustomerIn, ProfileUpdate, User

logger = logging.getLogger(__name__)


def create_customer(db, payload: CustomerIn, role: str = "customer") -> dict:
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise ConflictError("Email already registered")
    if db["user"].find_one({"mobile": payload.mobile}):
        raise ConflictError("Mobile number already registered")
    user = User(
        name=payload.name,
        email=email,
        mobile=payload.mobile,
        role=role,
        address=payload.address,
        hashed_password=hash_password(payload.password),
    )
    try:
        inserted_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ConflictError("Email or mobile number already registered")
    logger.info("Registered %s %s", role, inserted_id)
    return db["user"].find_one({"_id": inserted_id})


def list_customers(db, search: Optional[str] = None, page: int = 1, limit: int = 10):
    query = {"role": "customer", "is_active": True}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}, {"mobile": pattern}]
    return paginate(db, "user", query, page, limit, sort=[("created_at", -1)],
                    projection={"order_history": 0, "hashed_password": 0})


def get_customer(db, customer_id: str) -> dict:
    customer = db["user"].find_one({"_id": to_object_id(customer_id, "customer id")})
    if not customer:
        raise NotFoundError("Customer not found")
    history = db["order"].find(
        {"_id": {"$in": customer.get("order_history", [])}},
        {"order_number": 1, "total_mrp": 1, "final_amount": 1, "status": 1, "created_at": 1},
    ).sort("created_at", -1)
    customer["order_history"] = list(history)
    return customer


def set_customer_status(db, actor: Identity, customer_id: str, is_active: bool) -> dict:
    oid = to_object_id(customer_id, "customer id")
    if str(oid) == actor.id and not is_active:
        raise PermissionDenied("You cannot deactivate your own account")
    res = db["user"].update_one({"_id": oid}, {"$set": {"is_active": is_active, "updated_at": utcnow()}})
    if res.matched_count == 0:
        raise NotFoundError("Customer not found")
    logger.info("Customer %s is_active=%s by %s", customer_id, is_active, actor.id)
    return db["user"].find_one({"_id": oid})


def update_profile(db, actor: Identity, payload: ProfileUpdate) -> dict:
    update = payload.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    oid = to_object_id(actor.id)
    db["user"].update_one({"_id": oid}, {"$set": update})
    return db["user"].find_one({"_id": oid})

"""
Promotion store: customer coupons and product discounts.

An empty coupon `applicable` list means every active customer, and an empty
discount `products` list means every active product. Both are resolved when
queried, never frozen at creation.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from bson import ObjectId
from pydantic import ValidationError as ModelValidationError
from pymongo.errors import DuplicateKeyError

from auth import Identity
from database import create_document, get_documents, to_object_id, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Coupon, CouponIn, CouponUpdate, Discount, DiscountIn, DiscountUpdate

logger = logging.getLogger(__name__)


def _model_error(exc: ModelValidationError) -> ValidationError:
    first = exc.errors()[0]
    return ValidationError(first["msg"].replace("Value error, ", ""))


def _resolve_ids(db, collection_name: str, ids: List[str], query: dict, label: str) -> List[ObjectId]:
    oids = list(dict.fromkeys(to_object_id(i, label) for i in ids))
    if not oids:
        return []
    found = db[collection_name].count_documents({"_id": {"$in": oids}, **query})
    if found != len(oids):
        raise ValidationError(f"Unknown {label} in list")
    return oids


# Coupons

def create_coupon(db, actor: Identity, payload: CouponIn) -> dict:
    if db["coupon"].find_one({"coupon_code": payload.coupon_code}):
        raise ConflictError("Coupon code already exists")
    coupon = Coupon(
        coupon_code=payload.coupon_code,
        applicable=_resolve_ids(db, "user", payload.applicable, {"role": "customer"}, "customer id"),
        price_condition=payload.price_condition,
        reduction_price=payload.reduction_price,
        reduction_percent=payload.reduction_percent,
        max_usage=payload.max_usage,
        expiry_date=payload.expiry_date,
    )
    try:
        inserted_id = create_document(db, "coupon", coupon)
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists")
    logger.info("Coupon %s (%s) created by %s", payload.coupon_code, inserted_id, actor.id)
    return db["coupon"].find_one({"_id": inserted_id})


def _populate_coupon(db, coupon: dict) -> dict:
    ids = set(coupon.get("applicable", [])) | {u["customer_id"] for u in coupon.get("used_by", [])}
    people = {
        u["_id"]: {"_id": u["_id"], "name": u.get("name"), "email": u.get("email")}
        for u in db["user"].find({"_id": {"$in": list(ids)}})
    }
    coupon["applicable"] = [people.get(i, {"_id": i}) for i in coupon.get("applicable", [])]
    coupon["used_by"] = [
        {"customer": people.get(u["customer_id"], {"_id": u["customer_id"]}), "used_at": u["used_at"]}
        for u in coupon.get("used_by", [])
    ]
    return coupon


def list_coupons(db) -> List[dict]:
    return [_populate_coupon(db, c) for c in get_documents(db, "coupon", sort=[("created_at", -1)])]


def _get_coupon_doc(db, coupon_id: str) -> dict:
    coupon = db["coupon"].find_one({"_id": to_object_id(coupon_id, "coupon id")})
    if not coupon:
        raise NotFoundError("Coupon not found")
    return coupon


def get_coupon(db, coupon_id: str) -> dict:
    return _populate_coupon(db, _get_coupon_doc(db, coupon_id))


def update_coupon(db, actor: Identity, coupon_id: str, payload: CouponUpdate) -> dict:
    coupon = _get_coupon_doc(db, coupon_id)
    changes = payload.model_dump(exclude_unset=True)
    is_active = changes.pop("is_active", None)
    merged = {
        "coupon_code": coupon["coupon_code"],
        "applicable": [str(i) for i in coupon.get("applicable", [])],
        "price_condition": coupon.get("price_condition"),
        "reduction_price": coupon.get("reduction_price", 0),
        "reduction_percent": coupon.get("reduction_percent", 0),
        "max_usage": coupon["max_usage"],
        "expiry_date": coupon["expiry_date"],
        **changes,
    }
    try:
        checked = CouponIn(**merged)
    except ModelValidationError as exc:
        raise _model_error(exc)
    if checked.max_usage < len(coupon.get("used_by", [])):
        raise ValidationError("Max usage cannot be lower than the current usage")
    if checked.coupon_code != coupon["coupon_code"] and db["coupon"].find_one({"coupon_code": checked.coupon_code}):
        raise ConflictError("Coupon code already exists")

    update = checked.model_dump()
    update["applicable"] = _resolve_ids(db, "user", checked.applicable, {"role": "customer"}, "customer id")
    if is_active is not None:
        update["is_active"] = is_active
    update["updated_at"] = utcnow()
    try:
        db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": update})
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists")
    logger.info("Coupon %s updated by %s", coupon_id, actor.id)
    return get_coupon(db, coupon_id)


def delete_coupon(db, actor: Identity, coupon_id: str) -> None:
    coupon = _get_coupon_doc(db, coupon_id)
    db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("Coupon %s deleted by %s", coupon_id, actor.id)


def toggle_coupon(db, actor: Identity, coupon_id: str) -> dict:
    coupon = _get_coupon_doc(db, coupon_id)
    db["coupon"].update_one(
        {"_id": coupon["_id"]},
        {"$set": {"is_active": not coupon.get("is_active", True), "updated_at": utcnow()}},
    )
    logger.info("Coupon %s toggled by %s", coupon_id, actor.id)
    return db["coupon"].find_one({"_id": coupon["_id"]})


def coupon_stats(db, coupon_id: str, now: Optional[datetime] = None) -> dict:
    coupon = _get_coupon_doc(db, coupon_id)
    now = now or utcnow()
    if coupon.get("applicable"):
        applicable = len(coupon["applicable"])
    else:
        applicable = db["user"].count_documents({"role": "customer", "is_active": True})
    used = len(coupon.get("used_by", []))
    return {
        "total_applicable_users": applicable,
        "total_used": used,
        "usage_percentage": round(used / applicable * 100, 2) if applicable else 0,
        "remaining_usage": coupon["max_usage"] - used,
        "is_expired": coupon["expiry_date"] <= now,
    }


def validate_coupon(db, code: str, subtotal: float, customer_id: ObjectId,
                    now: Optional[datetime] = None) -> Tuple[dict, float]:
    """Check a coupon against an order subtotal and customer; return it with the discount amount."""
    now = now or utcnow()
    coupon = db["coupon"].find_one({"coupon_code": code.strip().upper()})
    if not coupon:
        raise ValidationError("Invalid coupon code")
    if not coupon.get("is_active", True):
        raise ValidationError("Coupon is not active")
    if now >= coupon["expiry_date"]:
        raise ValidationError("Coupon has expired")
    if len(coupon.get("used_by", [])) >= coupon["max_usage"]:
        raise ValidationError("Coupon usage limit reached")

    customer = db["user"].find_one({"_id": customer_id, "is_active": True})
    applicable = coupon.get("applicable") or []
    if not customer or (applicable and customer_id not in applicable):
        raise ValidationError("Coupon is not applicable for this customer")
    if not applicable and customer.get("role") != "customer":
        raise ValidationError("Coupon is not applicable for this customer")

    condition = coupon.get("price_condition") or {}
    low, high = condition.get("low"), condition.get("high")
    if low is not None and subtotal < low:
        raise ValidationError(f"Order subtotal must be at least {low}")
    if high is not None and subtotal > high:
        raise ValidationError(f"Order subtotal must not exceed {high}")

    if coupon.get("reduction_price", 0) > 0:
        amount = coupon["reduction_price"]
    else:
        amount = subtotal * coupon.get("reduction_percent", 0) / 100
    return coupon, round(min(amount, subtotal), 2)


def redeem_coupon(db, coupon: dict, customer_id: ObjectId, now: datetime, session=None) -> None:
    """Append one use to the ledger, provided nobody else used the coupon since it was read."""
    seen = len(coupon.get("used_by", []))
    res = db["coupon"].update_one(
        {"_id": coupon["_id"], "is_active": True, "used_by": {"$size": seen}},
        {"$push": {"used_by": {"customer_id": customer_id, "used_at": now}}, "$set": {"updated_at": now}},
        session=session,
    )
    if res.modified_count == 0:
        logger.warning("Coupon %s changed while redeeming", coupon["coupon_code"])
        raise ConflictError("Coupon was used concurrently, please retry")


def release_coupon(db, coupon: dict, customer_id: ObjectId, used_at: datetime, session=None) -> None:
    db["coupon"].update_one(
        {"_id": coupon["_id"]},
        {"$pull": {"used_by": {"customer_id": customer_id, "used_at": used_at}}},
        session=session,
    )


# Discounts

def create_discount(db, actor: Identity, payload: DiscountIn) -> dict:
    discount = Discount(
        name=payload.name,
        products=_resolve_ids(db, "product", payload.products, {}, "product id"),
        discount_percent=payload.discount_percent,
        start_date=payload.start_date,
        end_date=payload.end_date,
        description=payload.description,
    )
    inserted_id = create_document(db, "discount", discount)
    logger.info("Discount %s created by %s", inserted_id, actor.id)
    return db["discount"].find_one({"_id": inserted_id})


def _populate_discount(db, discount: dict) -> dict:
    products = {
        p["_id"]: {"_id": p["_id"], "name": p["name"], "collection_id": p["collection_id"], "type": p.get("type")}
        for p in db["product"].find({"_id": {"$in": discount.get("products", [])}})
    }
    discount["products"] = [products.get(i, {"_id": i}) for i in discount.get("products", [])]
    return discount


def list_discounts(db) -> List[dict]:
    return [_populate_discount(db, d) for d in get_documents(db, "discount", sort=[("created_at", -1)])]


def _get_discount_doc(db, discount_id: str) -> dict:
    discount = db["discount"].find_one({"_id": to_object_id(discount_id, "discount id")})
    if not discount:
        raise NotFoundError("Discount not found")
    return discount


def get_discount(db, discount_id: str) -> dict:
    return _populate_discount(db, _get_discount_doc(db, discount_id))


def update_discount(db, actor: Identity, discount_id: str, payload: DiscountUpdate) -> dict:
    discount = _get_discount_doc(db, discount_id)
    changes = payload.model_dump(exclude_unset=True)
    is_active = changes.pop("is_active", None)
    merged = {
        "name": discount["name"],
        "products": [str(i) for i in discount.get("products", [])],
        "discount_percent": discount["discount_percent"],
        "start_date": discount["start_date"],
        "end_date": discount["end_date"],
        "description": discount.get("description"),
        **changes,
    }
    try:
        checked = DiscountIn(**merged)
    except ModelValidationError as exc:
        raise _model_error(exc)
    update = checked.model_dump()
    update["products"] = _resolve_ids(db, "product", checked.products, {}, "product id")
    if is_active is not None:
        update["is_active"] = is_active
    update["updated_at"] = utcnow()
    db["discount"].update_one({"_id": discount["_id"]}, {"$set": update})
    logger.info("Discount %s updated by %s", discount_id, actor.id)
    return get_discount(db, discount_id)


def delete_discount(db, actor: Identity, discount_id: str) -> None:
    discount = _get_discount_doc(db, discount_id)
    db["discount"].update_one({"_id": discount["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("Discount %s deleted by %s", discount_id, actor.id)


def toggle_discount(db, actor: Identity, discount_id: str) -> dict:
    discount = _get_discount_doc(db, discount_id)
    db["discount"].update_one(
        {"_id": discount["_id"]},
        {"$set": {"is_active": not discount.get("is_active", True), "updated_at": utcnow()}},
    )
    logger.info("Discount %s toggled by %s", discount_id, actor.id)
    return db["discount"].find_one({"_id": discount["_id"]})


def active_discount_for(db, product: dict, now: Optional[datetime] = None) -> Optional[dict]:
    """
    The discount that prices `product` at `now`: active, window [start, end)
    containing now, product listed or list empty. Highest percent wins, then
    the most recently created.
    """
    if not product.get("is_active", True):
        return None
    now = now or utcnow()
    query = {
        "is_active": True,
        "start_date": {"$lte": now},
        "end_date": {"$gt": now},
        "$or": [{"products": {"$size": 0}}, {"products": product["_id"]}],
    }
    matches = db["discount"].find(query).sort([("discount_percent", -1), ("created_at", -1), ("_id", -1)]).limit(1)
    return next(iter(matches), None)


def effective_price(price: float, discount_percent: float) -> float:
    return round(price * (1 - discount_percent / 100), 2)

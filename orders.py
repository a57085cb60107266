"""
Order store.

An order is written once with frozen line-item snapshots and totals; after
that only its status, payment status and tracking id move. Placing an order
reserves stock with a conditional decrement per variant. Cancelling returns
that stock.
"""
import logging
import re
from datetime import datetime
from typing import List, Optional

from bson import ObjectId

import promotions
from auth import Identity
from database import (create_document, next_sequence, paginate, sequence_number, to_object_id, transaction,
                      utcnow)
from errors import ConflictError, NotFoundError, PermissionDenied, ValidationError
from schemas import ItemSnapshot, Order, OrderIn, OrderItem

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("processing", "cancelled"),
    "processing": ("shipped", "cancelled"),
    "shipped": ("delivered", "cancelled"),
    "delivered": (),
    "cancelled": (),
}


def check_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, ()):
        raise ConflictError(f"Cannot change order status from {current} to {target}")


def _image_for(product: dict, color: str) -> Optional[str]:
    images = product.get("images") or []
    for img in images:
        if img.get("color") == color and img.get("urls"):
            return img["urls"][0]
    for img in images:
        if img.get("urls"):
            return img["urls"][0]
    return None


def _build_lines(db, payload: OrderIn) -> List[OrderItem]:
    requested = {}
    for item in payload.items:
        vid = to_object_id(item.variant_id, "variant id")
        requested[vid] = requested.get(vid, 0) + item.quantity

    lines = []
    for vid, qty in requested.items():
        variant = db["productquantity"].find_one({"_id": vid, "is_active": True})
        if not variant:
            raise ValidationError(f"Product variant {vid} not found")
        product = db["product"].find_one({"_id": variant["product_id"], "is_active": True})
        if not product:
            raise ValidationError(f"Product for variant {vid} is no longer available")
        if variant["quantity"] < qty:
            raise ValidationError(f"Insufficient stock for {product['name']} ({variant['size']}/{variant['color']})")
        lines.append(OrderItem(
            variant_id=vid,
            product_id=product["_id"],
            product=ItemSnapshot(
                name=product["name"],
                description=product.get("description"),
                image_url=_image_for(product, variant["color"]),
            ),
            size=variant["size"],
            color=variant["color"],
            price=variant["price"],
            quantity=qty,
        ))
    return lines


def _move_stock(db, item, sign: int = 1, session=None) -> None:
    # Variants of deleted products are gone; nothing to return stock to
    db["productquantity"].update_one(
        {"_id": item["variant_id"]},
        {"$inc": {"quantity": sign * item["quantity"]}, "$set": {"updated_at": utcnow()}},
        session=session,
    )


def _restock(db, items, session=None) -> None:
    for item in items:
        _move_stock(db, item, session=session)


def create_order(db, actor: Identity, payload: OrderIn, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    if payload.customer_id:
        customer_id = to_object_id(payload.customer_id, "customer id")
        if not actor.is_owner and str(customer_id) != actor.id:
            raise PermissionDenied("Customers can only place their own orders")
    else:
        customer_id = to_object_id(actor.id)
    customer = db["user"].find_one({"_id": customer_id, "is_active": True})
    if not customer:
        raise NotFoundError("Customer not found")

    lines = _build_lines(db, payload)
    total_mrp = round(sum(line.price * line.quantity for line in lines), 2)
    coupon, discount_amount = None, 0.0
    if payload.coupon_code:
        coupon, discount_amount = promotions.validate_coupon(db, payload.coupon_code, total_mrp, customer_id, now)

    reserved, redeemed, order_id = [], False, None
    with transaction(db) as session:
        try:
            for line in lines:
                res = db["productquantity"].update_one(
                    {"_id": line.variant_id, "is_active": True, "quantity": {"$gte": line.quantity}},
                    {"$inc": {"quantity": -line.quantity}, "$set": {"updated_at": now}},
                    session=session,
                )
                if res.modified_count == 0:
                    raise ValidationError(f"Insufficient stock for {line.product.name} ({line.size}/{line.color})")
                reserved.append({"variant_id": line.variant_id, "quantity": line.quantity})
            if coupon:
                promotions.redeem_coupon(db, coupon, customer_id, now, session=session)
                redeemed = True

            order = Order(
                customer_id=customer_id,
                order_number=sequence_number("ORD", now, next_sequence(db, "order", session=session)),
                items=lines,
                total_mrp=total_mrp,
                discount_amount=discount_amount,
                final_amount=round(total_mrp - discount_amount, 2),
                coupon_code=coupon["coupon_code"] if coupon else None,
                shipping_address=payload.shipping_address or customer.get("address"),
            )
            order_id = create_document(db, "order", order, session=session)
            db["user"].update_one({"_id": customer_id}, {"$push": {"order_history": order_id}}, session=session)
        except Exception:
            if session is None:
                logger.warning("Order for customer %s failed, undoing partial writes", customer_id)
                _restock(db, reserved)
                if redeemed:
                    promotions.release_coupon(db, coupon, customer_id, now)
                if order_id is not None:
                    db["order"].delete_one({"_id": order_id})
                    db["user"].update_one({"_id": customer_id}, {"$pull": {"order_history": order_id}})
            raise
    logger.info("Order %s (%s) placed for customer %s by %s", order.order_number, order_id, customer_id, actor.id)
    return db["order"].find_one({"_id": order_id})


def _attach_customers(db, orders: List[dict], fields=("name", "email", "mobile")) -> List[dict]:
    ids = list({o["customer_id"] for o in orders})
    projection = {f: 1 for f in fields}
    by_id = {u["_id"]: u for u in db["user"].find({"_id": {"$in": ids}}, projection)}
    for o in orders:
        o["customer"] = by_id.get(o["customer_id"])
    return orders


def list_orders(db, status: Optional[str] = None, start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None, search: Optional[str] = None,
                customer_id: Optional[ObjectId] = None, page: int = 1, limit: int = 10):
    query = {}
    if status:
        query["status"] = status
    if customer_id is not None:
        query["customer_id"] = customer_id
    if start_date and end_date:
        query["created_at"] = {"$gte": start_date, "$lte": end_date}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        matching = [u["_id"] for u in db["user"].find({"name": pattern}, {"_id": 1})]
        query["$or"] = [{"order_number": pattern}, {"customer_id": {"$in": matching}}]
    items, pagination = paginate(db, "order", query, page, limit, sort=[("created_at", -1)])
    return _attach_customers(db, items), pagination


def _get_order_doc(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_order(db, actor: Identity, order_id: str) -> dict:
    order = _get_order_doc(db, order_id)
    if not actor.is_owner and str(order["customer_id"]) != actor.id:
        raise NotFoundError("Order not found")
    return _attach_customers(db, [order], ("name", "email", "mobile", "address"))[0]


def update_status(db, actor: Identity, order_id: str, status: str, tracking_id: Optional[str] = None) -> dict:
    order = _get_order_doc(db, order_id)
    try:
        check_transition(order["status"], status)
    except ConflictError:
        logger.warning("Rejected order %s transition %s -> %s", order_id, order["status"], status)
        raise
    update = {"status": status, "updated_at": utcnow()}
    if tracking_id:
        update["tracking_id"] = tracking_id
    with transaction(db) as session:
        res = db["order"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": update},
                                     session=session)
        if res.modified_count == 0:
            raise ConflictError("Order status changed concurrently, please retry")
        returned = []
        try:
            if status == "cancelled":
                for item in order["items"]:
                    _move_stock(db, item, session=session)
                    returned.append(item)
        except Exception:
            if session is None:
                logger.warning("Cancelling order %s failed, restoring status %s", order_id, order["status"])
                for item in returned:
                    _move_stock(db, item, -1)
                db["order"].update_one(
                    {"_id": order["_id"], "status": status},
                    {"$set": {"status": order["status"], "tracking_id": order.get("tracking_id"),
                              "updated_at": order["updated_at"]}},
                )
            raise
    logger.info("Order %s %s -> %s by %s", order["order_number"], order["status"], status, actor.id)
    return _attach_customers(db, [db["order"].find_one({"_id": order["_id"]})])[0]


def cancel_order(db, actor: Identity, order_id: str) -> dict:
    order = _get_order_doc(db, order_id)
    if order["status"] in ("delivered", "cancelled"):
        raise ConflictError("Cannot cancel order in current status")
    return update_status(db, actor, order_id, "cancelled")


def update_payment_status(db, actor: Identity, order_id: str, payment_status: str) -> dict:
    order = _get_order_doc(db, order_id)
    current = order.get("payment_status", "pending")
    if current == "refunded":
        raise ConflictError("Payment already refunded")
    if payment_status == "refunded" and current != "completed":
        raise ConflictError("Only completed payments can be refunded")
    res = db["order"].update_one(
        {"_id": order["_id"], "payment_status": current},
        {"$set": {"payment_status": payment_status, "updated_at": utcnow()}},
    )
    if res.modified_count == 0 and current != payment_status:
        raise ConflictError("Payment status changed concurrently, please retry")
    logger.info("Order %s payment %s -> %s by %s", order["order_number"], current, payment_status, actor.id)
    return db["order"].find_one({"_id": order["_id"]})

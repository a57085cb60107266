"""
Shipment packages grouping confirmed orders for a courier.

An order belongs to at most one package: packing claims it by setting its
package_id, and only orders without one can be claimed.
"""
import logging
from typing import List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from auth import Identity
from database import create_document, next_sequence, paginate, sequence_number, to_object_id, transaction, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import PACKAGE_STATUSES, Package, PackageIn

logger = logging.getLogger(__name__)

PACKABLE_ORDER_STATUSES = ("confirmed", "processing")


def create_package(db, actor: Identity, payload: PackageIn) -> dict:
    order_ids = list(dict.fromkeys(to_object_id(i, "order id") for i in payload.order_ids))
    found = list(db["order"].find({"_id": {"$in": order_ids}}, {"status": 1, "order_number": 1}))
    if len(found) != len(order_ids):
        raise NotFoundError("Order not found")
    not_ready = [o["order_number"] for o in found if o["status"] not in PACKABLE_ORDER_STATUSES]
    if not_ready:
        raise ValidationError(f"Orders not ready for packing: {', '.join(not_ready)}")

    now = utcnow()
    package_id = ObjectId()
    with transaction(db) as session:
        claimed = db["order"].update_many(
            {"_id": {"$in": order_ids}, "package_id": None, "status": {"$in": list(PACKABLE_ORDER_STATUSES)}},
            {"$set": {"package_id": package_id, "updated_at": now}},
            session=session,
        )
        try:
            if claimed.modified_count != len(order_ids):
                raise ConflictError("One or more orders are already packed")
            package_number = sequence_number("PKG", now, next_sequence(db, "package", session=session))
            package = Package(
                orders=order_ids,
                package_number=package_number,
                courier_service=payload.courier_service,
                estimated_delivery=payload.estimated_delivery,
                weight=payload.weight,
                dimensions=payload.dimensions,
            )
            create_document(db, "package", {"_id": package_id, **package.model_dump()}, session=session)
        except Exception:
            if session is None:
                db["order"].update_many({"package_id": package_id}, {"$set": {"package_id": None}})
            raise
    logger.info("Package %s with %d orders created by %s", package_number, len(order_ids), actor.id)
    return db["package"].find_one({"_id": package_id})


def list_packages(db, status: Optional[str] = None, page: int = 1, limit: int = 10):
    query = {"status": status} if status else {}
    return paginate(db, "package", query, page, limit, sort=[("created_at", -1)])


def get_package(db, package_id: str) -> dict:
    package = db["package"].find_one({"_id": to_object_id(package_id, "package id")})
    if not package:
        raise NotFoundError("Package not found")
    package["orders"] = list(db["order"].find(
        {"_id": {"$in": package["orders"]}},
        {"order_number": 1, "status": 1, "final_amount": 1, "customer_id": 1},
    ))
    return package


def update_package_status(db, actor: Identity, package_id: str, status: str,
                          tracking_id: Optional[str] = None) -> dict:
    oid = to_object_id(package_id, "package id")
    package = db["package"].find_one({"_id": oid})
    if not package:
        raise NotFoundError("Package not found")
    current = PACKAGE_STATUSES.index(package["status"])
    if PACKAGE_STATUSES.index(status) <= current:
        raise ConflictError(f"Cannot change package status from {package['status']} to {status}")
    update = {"status": status, "updated_at": utcnow()}
    if tracking_id:
        update["tracking_id"] = tracking_id
    if status == "delivered":
        update["actual_delivery"] = update["updated_at"]
    try:
        res = db["package"].update_one({"_id": oid, "status": package["status"]}, {"$set": update})
    except DuplicateKeyError:
        raise ConflictError("Tracking id already in use")
    if res.modified_count == 0:
        raise ConflictError("Package status changed concurrently, please retry")
    logger.info("Package %s %s -> %s by %s", package["package_number"], package["status"], status, actor.id)
    return db["package"].find_one({"_id": oid})


def packages_for_order(db, order_id: str) -> List[dict]:
    return list(db["package"].find({"orders": to_object_id(order_id, "order id")}))

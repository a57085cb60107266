"""
Catalog store: collections, products and their size/color variants.

A collection's products_count is only ever moved by product create, delete
or a product changing collection, and never drops below zero. Variants are
keyed by (product, size, color) and exist only for sizes and colors the
product declares.
"""
import logging
import re
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import promotions
from auth import Identity
from database import create_document, get_documents, paginate, to_object_id, transaction, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import (Collection, CollectionIn, CollectionUpdate, Product, ProductIn, ProductQuantity, ProductUpdate,
                     VariantIn)

logger = logging.getLogger(__name__)


# Collections

def create_collection(db, actor: Identity, payload: CollectionIn) -> dict:
    if db["collection"].find_one({"name": payload.name}):
        raise ConflictError("Collection name already exists")
    try:
        inserted_id = create_document(db, "collection", Collection(**payload.model_dump()))
    except DuplicateKeyError:
        raise ConflictError("Collection name already exists")
    logger.info("Collection %s created by %s", inserted_id, actor.id)
    return db["collection"].find_one({"_id": inserted_id})


def list_collections(db) -> List[dict]:
    return get_documents(db, "collection", {"is_active": True}, sort=[("created_at", -1)])


def get_collection(db, collection_id: str) -> dict:
    collection = db["collection"].find_one({"_id": to_object_id(collection_id, "collection ID")})
    if not collection:
        raise NotFoundError("Collection not found")
    return collection


def update_collection(db, actor: Identity, collection_id: str, payload: CollectionUpdate) -> dict:
    oid = to_object_id(collection_id, "collection ID")
    update = payload.model_dump(exclude_none=True)
    if "name" in update:
        update["name"] = update["name"].strip()
        if db["collection"].find_one({"name": update["name"], "_id": {"$ne": oid}}):
            raise ConflictError("Collection name already exists")
    update["updated_at"] = utcnow()
    try:
        res = db["collection"].update_one({"_id": oid}, {"$set": update})
    except DuplicateKeyError:
        raise ConflictError("Collection name already exists")
    if res.matched_count == 0:
        raise NotFoundError("Collection not found")
    logger.info("Collection %s updated by %s", collection_id, actor.id)
    return db["collection"].find_one({"_id": oid})


def delete_collection(db, actor: Identity, collection_id: str) -> None:
    oid = to_object_id(collection_id, "collection ID")
    if not db["collection"].find_one({"_id": oid, "is_active": True}):
        raise NotFoundError("Collection not found")
    if db["product"].count_documents({"collection_id": oid, "is_active": True}) > 0:
        raise ConflictError("Cannot delete collection with existing products")
    # The count guard lives in the filter so a concurrent product create cannot slip in
    res = db["collection"].update_one(
        {"_id": oid, "is_active": True, "products_count": {"$lte": 0}},
        {"$set": {"is_active": False, "updated_at": utcnow()}},
    )
    if res.modified_count == 0:
        logger.warning("Refused to delete collection %s with products", collection_id)
        raise ConflictError("Cannot delete collection with existing products")
    logger.info("Collection %s deleted by %s", collection_id, actor.id)


# Products

def _check_image_colors(images: list, colors: List[str]) -> None:
    stray = sorted({img["color"] for img in images} - set(colors))
    if stray:
        raise ValidationError(f"Image colors not in available colors: {', '.join(stray)}")


def _shift_count(db, collection_id, delta: int, session=None, require_active: bool = False) -> bool:
    query = {"_id": collection_id}
    if delta < 0:
        query["products_count"] = {"$gt": 0}
    if require_active:
        query["is_active"] = True
    res = db["collection"].update_one(
        query, {"$inc": {"products_count": delta}, "$set": {"updated_at": utcnow()}}, session=session
    )
    return res.modified_count > 0


def create_product(db, actor: Identity, payload: ProductIn) -> dict:
    collection_id = to_object_id(payload.collection_id, "collection ID")
    if not db["collection"].find_one({"_id": collection_id, "is_active": True}):
        raise ValidationError("Invalid collection ID")
    product = Product(collection_id=collection_id, **payload.model_dump(exclude={"collection_id"}))
    _check_image_colors(product.model_dump()["images"], product.available_colors)

    with transaction(db) as session:
        product_id = create_document(db, "product", product, session=session)
        try:
            if not _shift_count(db, collection_id, 1, session=session, require_active=True):
                raise ValidationError("Invalid collection ID")
        except Exception:
            if session is None:
                db["product"].delete_one({"_id": product_id})
            raise
    logger.info("Product %s created in collection %s by %s", product_id, collection_id, actor.id)
    return db["product"].find_one({"_id": product_id})


def _attach_collections(db, products: List[dict]) -> List[dict]:
    ids = list({p["collection_id"] for p in products})
    by_id = {
        c["_id"]: {"_id": c["_id"], "name": c["name"], "image_url": c.get("image_url")}
        for c in db["collection"].find({"_id": {"$in": ids}})
    }
    for p in products:
        p["collection"] = by_id.get(p["collection_id"])
    return products


def list_products(db, search: Optional[str] = None, collection_id: Optional[str] = None,
                  type: Optional[str] = None, gender: Optional[str] = None,
                  page: int = 1, limit: int = 10):
    query = {"is_active": True}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}]
    if collection_id:
        query["collection_id"] = to_object_id(collection_id, "collection ID")
    if type:
        query["type"] = type
    if gender:
        query["gender"] = gender
    items, pagination = paginate(db, "product", query, page, limit, sort=[("created_at", -1)])
    return _attach_collections(db, items), pagination


def get_product(db, product_id: str, now=None) -> dict:
    oid = to_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise NotFoundError("Product not found")
    _attach_collections(db, [product])
    discount = promotions.active_discount_for(db, product, now) if product.get("is_active") else None
    percent = discount["discount_percent"] if discount else 0
    quantities = list_variants(db, product_id)
    for q in quantities:
        q["sale_price"] = promotions.effective_price(q["price"], percent)
    product["quantities"] = quantities
    product["discount"] = (
        {"_id": discount["_id"], "name": discount["name"], "discount_percent": percent} if discount else None
    )
    return product


def update_product(db, actor: Identity, product_id: str, payload: ProductUpdate) -> dict:
    oid = to_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": oid, "is_active": True})
    if not product:
        raise NotFoundError("Product not found")
    update = payload.model_dump(exclude_none=True)

    colors = update.get("available_colors", product["available_colors"])
    sizes = update.get("available_sizes", product["available_sizes"])
    if "available_colors" in update or "available_sizes" in update:
        orphaned = [
            f"{v['size']}/{v['color']}"
            for v in db["productquantity"].find({"product_id": oid})
            if v["size"] not in sizes or v["color"] not in colors
        ]
        if orphaned:
            raise ConflictError(f"Variants still use removed sizes or colors: {', '.join(orphaned)}")
    _check_image_colors(update.get("images", product.get("images", [])), colors)

    new_collection = None
    if "collection_id" in update:
        new_collection = to_object_id(update.pop("collection_id"), "collection ID")
        if new_collection == product["collection_id"]:
            new_collection = None

    update["updated_at"] = utcnow()
    if new_collection is None:
        db["product"].update_one({"_id": oid}, {"$set": update})
    else:
        update["collection_id"] = new_collection
        old_collection = product["collection_id"]
        with transaction(db) as session:
            if not _shift_count(db, new_collection, 1, session=session, require_active=True):
                raise ValidationError("Invalid collection ID")
            left_old = False
            try:
                left_old = _shift_count(db, old_collection, -1, session=session)
                db["product"].update_one({"_id": oid}, {"$set": update}, session=session)
            except Exception:
                if session is None:
                    logger.warning("Moving product %s failed, restoring collection counts", product_id)
                    _shift_count(db, new_collection, -1)
                    if left_old:
                        _shift_count(db, old_collection, 1)
                raise
        logger.info("Product %s moved to collection %s", product_id, new_collection)
    logger.info("Product %s updated by %s", product_id, actor.id)
    return db["product"].find_one({"_id": oid})


def delete_product(db, actor: Identity, product_id: str) -> None:
    oid = to_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": oid, "is_active": True})
    if not product:
        raise NotFoundError("Product not found")
    with transaction(db) as session:
        # Flipping the flag first makes the decrement happen at most once per product
        res = db["product"].update_one(
            {"_id": oid, "is_active": True},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
            session=session,
        )
        if res.modified_count == 0:
            raise NotFoundError("Product not found")
        variants = list(db["productquantity"].find({"product_id": oid}, session=session))
        decremented = False
        try:
            decremented = _shift_count(db, product["collection_id"], -1, session=session)
            removed = db["productquantity"].delete_many({"product_id": oid}, session=session).deleted_count
        except Exception:
            if session is None:
                logger.warning("Deleting product %s failed, restoring it", product_id)
                # Re-insert only rows the failed delete already removed
                for row in variants:
                    fields = {k: v for k, v in row.items() if k != "_id"}
                    db["productquantity"].update_one({"_id": row["_id"]}, {"$setOnInsert": fields}, upsert=True)
                if decremented:
                    _shift_count(db, product["collection_id"], 1)
                db["product"].update_one({"_id": oid}, {"$set": {"is_active": True, "updated_at": utcnow()}})
            raise
    logger.info("Product %s deleted by %s (%d variants removed)", product_id, actor.id, removed)


# Variants

def list_variants(db, product_id: str) -> List[dict]:
    oid = to_object_id(product_id, "product id")
    return list(db["productquantity"].find({"product_id": oid, "is_active": True}).sort([("color", 1), ("size", 1)]))


def _upsert_variant(db, product_id, entry: VariantIn) -> dict:
    now = utcnow()
    row = ProductQuantity(product_id=product_id, **entry.model_dump()).model_dump()
    key = {"product_id": product_id, "size": row.pop("size"), "color": row.pop("color")}
    del row["product_id"]
    update = {"$set": {**row, "updated_at": now}, "$setOnInsert": {"created_at": now}}
    try:
        return db["productquantity"].find_one_and_update(
            key, update, upsert=True, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        # Lost an insert race on the unique key; the row exists now, so update it
        return db["productquantity"].find_one_and_update(key, update, return_document=ReturnDocument.AFTER)


def upsert_variants(db, actor: Identity, product_id: str, entries: List[VariantIn]) -> List[dict]:
    """
    Apply a batch of variant rows to a product.

    The whole batch is validated before anything is written. Each entry is
    then its own atomic upsert: if the store fails part way, entries already
    applied stay committed and the error is raised to the caller.
    """
    oid = to_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": oid, "is_active": True})
    if not product:
        raise NotFoundError("Product not found")
    invalid = [
        f"{e.size}/{e.color}" for e in entries
        if e.size not in product["available_sizes"] or e.color not in product["available_colors"]
    ]
    if invalid:
        raise ValidationError(f"Size/color not offered by this product: {', '.join(invalid)}")

    updated = [_upsert_variant(db, oid, entry) for entry in entries]
    logger.info("Upserted %d variants on product %s by %s", len(updated), product_id, actor.id)
    return updated

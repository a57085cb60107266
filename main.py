import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import analytics
import catalog
import config
import customers
import database
import orders
import packages
import promotions
from auth import Identity, authenticate, create_token, get_current_user, identity_from_user, require_owner
from database import as_utc, get_db, serialize, to_object_id
from errors import PermissionDenied, StoreError
from schemas import (
    CollectionIn, CollectionUpdate, CouponIn, CouponUpdate, CustomerIn, DiscountIn, DiscountUpdate,
    Gender, OrderIn, OrderStatus, PackageIn, PackageStatus, PaymentStatus, ProductIn, ProductType,
    ProductUpdate, ProfileUpdate, VariantIn,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
        logger.info("Indexes ensured on %s", config.DATABASE_NAME)
    else:
        logger.warning("DATABASE_URL is not set; requests needing the database will fail")
    yield


# App setup
app = FastAPI(title="StyleHub Back-Office API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error responses
@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = first.get("msg", "Invalid request").replace("Value error, ", "")
    return JSONResponse(status_code=400, content={"success": False, "message": f"{field}: {message}" if field else message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


def ok(data: Any, **extra) -> dict:
    return {"success": True, "data": serialize(data), **extra}


# Schemas (request)
class LoginRequest(BaseModel):
    email: str
    password: str


class SeedOwnerRequest(CustomerIn):
    seed_key: str


class VariantsRequest(BaseModel):
    quantities: List[VariantIn] = Field(..., min_length=1)


class StatusRequest(BaseModel):
    status: OrderStatus
    tracking_id: Optional[str] = None


class PaymentRequest(BaseModel):
    payment_status: PaymentStatus


class CustomerStatusRequest(BaseModel):
    is_active: bool


class CouponCheckRequest(BaseModel):
    coupon_code: str
    subtotal: float = Field(..., ge=0)
    customer_id: Optional[str] = None


class PackageStatusRequest(BaseModel):
    status: PackageStatus
    tracking_id: Optional[str] = None


# Health and helpers
@app.get("/")
def root():
    return {"message": "StyleHub back-office API running"}


STORE_COLLECTIONS = ("collection", "product", "productquantity", "order", "coupon", "discount", "user", "package")


@app.get("/test")
def database_status():
    status = {"backend": "running", "database": "not configured", "database_name": config.DATABASE_NAME,
              "documents": {}}
    if database.db is None:
        return status
    try:
        present = set(database.db.list_collection_names())
        status["documents"] = {
            name: database.db[name].estimated_document_count() for name in STORE_COLLECTIONS if name in present
        }
        status["database"] = "connected"
    except PyMongoError as exc:
        logger.warning("Database check failed: %s", exc)
        status["database"] = "unreachable"
    return status


# Auth
@app.post("/auth/register", status_code=201)
def register(payload: CustomerIn, db=Depends(get_db)):
    user = customers.create_customer(db, payload)
    return ok({"token": create_token(user), "user": identity_from_user(user).model_dump()})


@app.post("/auth/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = authenticate(db, payload.email, payload.password)
    return ok({"token": create_token(user), "user": identity_from_user(user).model_dump()})


@app.post("/auth/seed-owner", status_code=201)
def seed_owner(payload: SeedOwnerRequest, db=Depends(get_db)):
    if not config.OWNER_SEED_KEY or payload.seed_key != config.OWNER_SEED_KEY:
        raise PermissionDenied("Invalid seed key")
    user = customers.create_customer(db, CustomerIn(**payload.model_dump(exclude={"seed_key"})), role="owner")
    return ok({"token": create_token(user), "user": identity_from_user(user).model_dump()})


@app.get("/me")
async def me(user: Identity = Depends(get_current_user), db=Depends(get_db)):
    return ok(customers.get_customer(db, user.id))


@app.put("/me")
async def update_me(payload: ProfileUpdate, user: Identity = Depends(get_current_user), db=Depends(get_db)):
    return ok(customers.update_profile(db, user, payload))


@app.get("/me/orders")
async def my_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                    user: Identity = Depends(get_current_user), db=Depends(get_db)):
    items, pagination = orders.list_orders(db, customer_id=to_object_id(user.id), page=page, limit=limit)
    return ok(items, pagination=pagination)


# Collections
@app.get("/collections")
def list_collections(db=Depends(get_db)):
    return ok(catalog.list_collections(db))


@app.get("/collections/{collection_id}")
def get_collection(collection_id: str, db=Depends(get_db)):
    return ok(catalog.get_collection(db, collection_id))


@app.post("/collections", status_code=201)
async def create_collection(payload: CollectionIn, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(catalog.create_collection(db, user, payload))


@app.put("/collections/{collection_id}")
async def update_collection(collection_id: str, payload: CollectionUpdate,
                            user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(catalog.update_collection(db, user, collection_id, payload))


@app.delete("/collections/{collection_id}")
async def delete_collection(collection_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    catalog.delete_collection(db, user, collection_id)
    return {"success": True, "message": "Collection deleted successfully"}


# Products
@app.get("/products")
def list_products(search: Optional[str] = None, collection: Optional[str] = None,
                  type: Optional[ProductType] = None, gender: Optional[Gender] = None,
                  page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), db=Depends(get_db)):
    items, pagination = catalog.list_products(db, search, collection, type, gender, page, limit)
    return ok(items, pagination=pagination)


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return ok(catalog.get_product(db, product_id))


@app.post("/products", status_code=201)
async def create_product(payload: ProductIn, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(catalog.create_product(db, user, payload))


@app.put("/products/{product_id}")
async def update_product(product_id: str, payload: ProductUpdate,
                         user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(catalog.update_product(db, user, product_id, payload))


@app.delete("/products/{product_id}")
async def delete_product(product_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    catalog.delete_product(db, user, product_id)
    return {"success": True, "message": "Product deleted successfully"}


@app.get("/products/{product_id}/quantities")
def list_quantities(product_id: str, db=Depends(get_db)):
    return ok(catalog.list_variants(db, product_id))


@app.put("/products/{product_id}/quantities")
async def update_quantities(product_id: str, payload: VariantsRequest,
                            user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(catalog.upsert_variants(db, user, product_id, payload.quantities))


# Orders
@app.get("/orders")
async def list_orders(status: Optional[OrderStatus] = None, search: Optional[str] = None,
                      start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                      page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      user: Identity = Depends(require_owner), db=Depends(get_db)):
    items, pagination = orders.list_orders(db, status, as_utc(start_date), as_utc(end_date), search,
                                           page=page, limit=limit)
    return ok(items, pagination=pagination)


@app.post("/orders", status_code=201)
async def create_order(payload: OrderIn, user: Identity = Depends(get_current_user), db=Depends(get_db)):
    return ok(orders.create_order(db, user, payload))


@app.get("/orders/{order_id}")
async def get_order(order_id: str, user: Identity = Depends(get_current_user), db=Depends(get_db)):
    return ok(orders.get_order(db, user, order_id))


@app.put("/orders/{order_id}/status")
async def update_order_status(order_id: str, payload: StatusRequest,
                              user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(orders.update_status(db, user, order_id, payload.status, payload.tracking_id))


@app.put("/orders/{order_id}/cancel")
async def cancel_order(order_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(orders.cancel_order(db, user, order_id))


@app.put("/orders/{order_id}/payment")
async def update_payment(order_id: str, payload: PaymentRequest,
                         user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(orders.update_payment_status(db, user, order_id, payload.payment_status))


@app.get("/orders/{order_id}/packages")
async def order_packages(order_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(packages.packages_for_order(db, order_id))


# Coupons
@app.get("/coupons")
async def list_coupons(user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.list_coupons(db))


@app.post("/coupons/validate")
async def check_coupon(payload: CouponCheckRequest, user: Identity = Depends(get_current_user), db=Depends(get_db)):
    customer_id = to_object_id(payload.customer_id or user.id, "customer id")
    if not user.is_owner and str(customer_id) != user.id:
        raise PermissionDenied("Customers can only check coupons for themselves")
    coupon, amount = promotions.validate_coupon(db, payload.coupon_code, payload.subtotal, customer_id)
    return ok({
        "coupon_code": coupon["coupon_code"],
        "discount_amount": amount,
        "final_amount": round(payload.subtotal - amount, 2),
    })


@app.get("/coupons/{coupon_id}")
async def get_coupon(coupon_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.get_coupon(db, coupon_id))


@app.post("/coupons", status_code=201)
async def create_coupon(payload: CouponIn, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.create_coupon(db, user, payload))


@app.put("/coupons/{coupon_id}")
async def update_coupon(coupon_id: str, payload: CouponUpdate,
                        user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.update_coupon(db, user, coupon_id, payload))


@app.delete("/coupons/{coupon_id}")
async def delete_coupon(coupon_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    promotions.delete_coupon(db, user, coupon_id)
    return {"success": True, "message": "Coupon deleted successfully"}


@app.patch("/coupons/{coupon_id}/toggle")
async def toggle_coupon(coupon_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.toggle_coupon(db, user, coupon_id))


@app.get("/coupons/{coupon_id}/stats")
async def coupon_stats(coupon_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.coupon_stats(db, coupon_id))


# Discounts
@app.get("/discounts")
async def list_discounts(user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.list_discounts(db))


@app.get("/discounts/{discount_id}")
async def get_discount(discount_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.get_discount(db, discount_id))


@app.post("/discounts", status_code=201)
async def create_discount(payload: DiscountIn, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.create_discount(db, user, payload))


@app.put("/discounts/{discount_id}")
async def update_discount(discount_id: str, payload: DiscountUpdate,
                          user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.update_discount(db, user, discount_id, payload))


@app.delete("/discounts/{discount_id}")
async def delete_discount(discount_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    promotions.delete_discount(db, user, discount_id)
    return {"success": True, "message": "Discount deleted successfully"}


@app.patch("/discounts/{discount_id}/toggle")
async def toggle_discount(discount_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(promotions.toggle_discount(db, user, discount_id))


# Customers
@app.get("/customers")
async def list_customers(search: Optional[str] = None, page: int = Query(1, ge=1),
                         limit: int = Query(10, ge=1, le=100),
                         user: Identity = Depends(require_owner), db=Depends(get_db)):
    items, pagination = customers.list_customers(db, search, page, limit)
    return ok(items, pagination=pagination)


@app.get("/customers/{customer_id}")
async def get_customer(customer_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(customers.get_customer(db, customer_id))


@app.patch("/customers/{customer_id}/status")
async def set_customer_status(customer_id: str, payload: CustomerStatusRequest,
                              user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(customers.set_customer_status(db, user, customer_id, payload.is_active))


# Packages
@app.get("/packages")
async def list_packages(status: Optional[PackageStatus] = None, page: int = Query(1, ge=1),
                        limit: int = Query(10, ge=1, le=100),
                        user: Identity = Depends(require_owner), db=Depends(get_db)):
    items, pagination = packages.list_packages(db, status, page, limit)
    return ok(items, pagination=pagination)


@app.post("/packages", status_code=201)
async def create_package(payload: PackageIn, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(packages.create_package(db, user, payload))


@app.get("/packages/{package_id}")
async def get_package(package_id: str, user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(packages.get_package(db, package_id))


@app.put("/packages/{package_id}/status")
async def update_package_status(package_id: str, payload: PackageStatusRequest,
                                user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(packages.update_package_status(db, user, package_id, payload.status, payload.tracking_id))


# Analytics
@app.get("/analytics/orders-stats")
async def orders_stats(period: str = "week", user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(analytics.orders_stats(db, period))


@app.get("/analytics/top-products")
async def top_products(user: Identity = Depends(require_owner), db=Depends(get_db)):
    return ok(analytics.top_products(db))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)

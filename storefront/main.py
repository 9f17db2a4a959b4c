import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, File, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import auth, catalog, checkout, config, crud, database, schemas, uploads
from .coupons import validate_coupon
from .errors import StorefrontError
from .models import User
from .payments import StripeClient, get_payment_client
from .sessions import SessionStore, get_session_store

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.Base.metadata.create_all(bind=database.engine)
    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    yield


app = FastAPI(title="Car Parts Storefront API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.mount("/assets", StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="assets")


@app.exception_handler(StorefrontError)
def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        errors.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"status": "error", "message": "Validation failed", "errors": errors})


@app.exception_handler(SQLAlchemyError)
def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("unhandled storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"status": "error", "message": "Storage unavailable"})


def _query(request: Request) -> dict:
    return dict(request.query_params)


@app.get("/health")
def health(db: Session = Depends(database.get_db)):
    return {"status": "ok", "products": catalog.product_count(db)}


# ---------- auth ----------

@app.post("/auth/register", status_code=201)
def register(body: schemas.RegisterIn, db: Session = Depends(database.get_db)):
    user, verify_url = auth.register_user(db, body)
    return {"status": "ok", "user_id": user.id, "verify_url": verify_url}


@app.post("/auth/login")
def login(
    body: schemas.LoginIn,
    response: Response,
    db: Session = Depends(database.get_db),
    store: SessionStore = Depends(get_session_store),
):
    user = auth.authenticate(db, body)
    session_id = store.create(db, user.id)
    response.set_cookie(
        config.SESSION_COOKIE_NAME,
        session_id,
        max_age=config.SESSION_TTL_HOURS * 3600,
        httponly=True,
        samesite="lax",
        secure=config.SESSION_COOKIE_SECURE,
    )
    logger.info("user %s logged in", user.id)
    return {"status": "ok", "user": schemas.dump(schemas.UserOut, user)}


@app.post("/auth/logout")
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(database.get_db),
    store: SessionStore = Depends(get_session_store),
):
    session_id = request.cookies.get(config.SESSION_COOKIE_NAME)
    if session_id:
        store.delete(db, session_id)
    response.delete_cookie(config.SESSION_COOKIE_NAME, httponly=True, samesite="lax")
    return {"status": "ok"}


@app.get("/auth/me")
def me(user: User = Depends(auth.require_login)):
    return {"status": "ok", "user": schemas.dump(schemas.UserOut, user)}


@app.get("/me/profile")
def my_profile(user: User = Depends(auth.require_login), db: Session = Depends(database.get_db)):
    return {"status": "ok", **crud.get_profile(db, user)}


@app.get("/auth/verify-email")
def verify_email(token: Optional[str] = None, db: Session = Depends(database.get_db)):
    user = auth.verify_email_token(db, token)
    return {"status": "ok", "message": "Email verified", "user_id": user.id}


# ---------- catalog ----------

@app.get("/categories")
def categories(db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": catalog.category_summary(db)}


@app.get("/products")
def list_products(request: Request, db: Session = Depends(database.get_db)):
    return catalog.list_entities(db, "products", _query(request)).envelope()


@app.get("/products/{product_id}")
def get_product(product_id: int, db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": catalog.get_product(db, product_id)}


@app.post("/coupons/validate")
def coupon_validate(body: schemas.CouponValidateIn, db: Session = Depends(database.get_db)):
    quote = validate_coupon(db, body.code, body.order_total)
    return {"status": "ok", "data": quote.to_dict()}


# ---------- payments ----------

@app.post("/payments/checkout")
def payments_checkout(
    body: schemas.CheckoutCreate,
    user: User = Depends(auth.require_login),
    db: Session = Depends(database.get_db),
    client: StripeClient = Depends(get_payment_client),
):
    return checkout.create_checkout(db, client, user, body)


@app.get("/payments/session-status")
def payments_session_status(session_id: Optional[str] = None, client: StripeClient = Depends(get_payment_client)):
    return checkout.session_status(client, session_id)


@app.post("/payments/webhook")
async def payments_webhook(request: Request, db: Session = Depends(database.get_db)):
    # signature is computed over the exact bytes Stripe sent
    payload = await request.body()
    return await run_in_threadpool(checkout.handle_webhook, db, payload, request.headers.get("stripe-signature"))


# ---------- admin ----------

@app.get("/admin/ping")
def admin_ping(admin: User = Depends(auth.require_admin)):
    return {"status": "ok", "admin": {"id": admin.id, "name": admin.name, "email": admin.email}}


@app.get("/admin/products")
def admin_list_products(request: Request, admin: User = Depends(auth.require_admin),
                        db: Session = Depends(database.get_db)):
    return catalog.list_entities(db, "products", _query(request)).envelope()


@app.post("/admin/products", status_code=201)
def admin_create_product(body: schemas.ProductIn, admin: User = Depends(auth.require_admin),
                         db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.create_product(db, body)}


@app.post("/admin/products/image", status_code=201)
def admin_upload_image(image: Optional[UploadFile] = File(None), admin: User = Depends(auth.require_admin)):
    return {"status": "ok", "url": uploads.save_product_image(image)}


@app.put("/admin/products/{product_id}")
def admin_update_product(product_id: int, body: schemas.ProductIn, admin: User = Depends(auth.require_admin),
                         db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.update_product(db, product_id, body)}


@app.delete("/admin/products/{product_id}")
def admin_delete_product(product_id: int, admin: User = Depends(auth.require_admin),
                         db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.delete_product(db, product_id)}


@app.get("/admin/users")
def admin_list_users(request: Request, admin: User = Depends(auth.require_admin),
                     db: Session = Depends(database.get_db)):
    return catalog.list_entities(db, "users", _query(request)).envelope()


@app.get("/admin/users/{user_id}")
def admin_get_user(user_id: int, admin: User = Depends(auth.require_admin), db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.get_user_detail(db, user_id)}


@app.put("/admin/users/{user_id}")
def admin_update_user(user_id: int, body: schemas.UserUpdate, admin: User = Depends(auth.require_admin),
                      db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.update_user(db, admin, user_id, body)}


@app.delete("/admin/users/{user_id}")
def admin_delete_user(user_id: int, admin: User = Depends(auth.require_admin),
                      db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.delete_user(db, admin, user_id)}


@app.get("/admin/orders")
def admin_list_orders(request: Request, admin: User = Depends(auth.require_admin),
                      db: Session = Depends(database.get_db)):
    return catalog.list_entities(db, "orders", _query(request)).envelope()


@app.get("/admin/orders/{order_id}")
def admin_get_order(order_id: int, admin: User = Depends(auth.require_admin), db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.get_order_detail(db, order_id)}


@app.put("/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: int, body: schemas.OrderStatusUpdate,
                              admin: User = Depends(auth.require_admin), db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.update_order_status(db, order_id, body.status)}


@app.get("/admin/coupons")
def admin_list_coupons(request: Request, admin: User = Depends(auth.require_admin),
                       db: Session = Depends(database.get_db)):
    return catalog.list_entities(db, "coupons", _query(request)).envelope()


@app.post("/admin/coupons", status_code=201)
def admin_create_coupon(body: schemas.CouponIn, admin: User = Depends(auth.require_admin),
                        db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.create_coupon(db, body)}


@app.put("/admin/coupons/{coupon_id}")
def admin_update_coupon(coupon_id: int, body: schemas.CouponIn, admin: User = Depends(auth.require_admin),
                        db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.update_coupon(db, coupon_id, body)}


@app.delete("/admin/coupons/{coupon_id}")
def admin_delete_coupon(coupon_id: int, admin: User = Depends(auth.require_admin),
                        db: Session = Depends(database.get_db)):
    return {"status": "ok", "data": crud.deactivate_coupon(db, coupon_id)}

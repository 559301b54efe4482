import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Tuple

from fastapi import FastAPI, HTTPException, Header, Form, Depends
from fastapi.middleware.cors import CORSMiddleware
from jose import jwt, JWTError
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

import database
from database import add_log, add_notification, find_document, get_next_id
from schemas import (
    User, PublicProfile, Session, PendingOrder, ApprovedOrder, DeliveredOrder, RejectedOrder,
    order_adapter, ORDER_STATUSES,
)

APP_TITLE = "Luxury Service API"
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

PASSWORD_MIN_LENGTH = 6
ADMIN_ACTOR_ID = int(os.getenv("ADMIN_ACTOR_ID", "1"))
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@luxuryservice.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
# Stock is checked on purchase but only decremented when this is on.
DECREMENT_STOCK = os.getenv("DECREMENT_STOCK", "0") == "1"
RECENT_ORDERS_LIMIT = 10

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

app = FastAPI(title=APP_TITLE)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Auth helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_user_by_email(email: str) -> Optional[dict]:
    for user in database.load("users"):
        if user.get("email") == email:
            return user
    return None


def open_session(user: dict) -> Tuple[str, Session]:
    lifetime = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    session = Session(
        id=uuid.uuid4().hex,
        user=PublicProfile.from_user(user),
        expires_at=datetime.now(timezone.utc) + lifetime,
    )
    database.save_session(session)
    token = create_access_token({"sub": str(user["id"]), "sid": session.id}, expires_delta=lifetime)
    return token, session


def get_current_session(authorization: Optional[str] = Header(default=None)) -> Session:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="You must log in first")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    sid = payload.get("sid")
    if not sid:
        raise HTTPException(status_code=401, detail="Invalid token")
    session = database.get_session(sid)
    if session is None:
        raise HTTPException(status_code=401, detail="Session expired, please log in again")
    return session


def require_admin(session: Session):
    if session.user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin only")


def get_admin_session(session: Session = Depends(get_current_session)) -> Session:
    require_admin(session)
    return session


# Catalog and aggregates

def filter_products(products: List[dict], q: Optional[str] = None, category: Optional[str] = None) -> List[dict]:
    """Case-insensitive search on name/description combined with a category filter.

    ``category`` of None or "all" disables the category filter.
    """
    result = products
    if q:
        needle = q.lower()
        result = [
            p for p in result
            if needle in (p.get("name") or "").lower() or needle in (p.get("description") or "").lower()
        ]
    if category and category != "all":
        try:
            category_id = int(category)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid category")
        result = [p for p in result if p.get("category_id") == category_id]
    return result


def order_stats(orders: List[dict]) -> Dict[str, int]:
    stats = {f"{status}_orders": 0 for status in ORDER_STATUSES}
    revenue = 0
    for o in orders:
        status = o.get("status")
        if status in ORDER_STATUSES:
            stats[f"{status}_orders"] += 1
        if status in ("approved", "delivered"):
            revenue += int(o.get("total_price", 0))
    stats["total_orders"] = len(orders)
    stats["total_revenue"] = revenue
    return stats


def newest_first(docs: List[dict], key: str = "created_at") -> List[dict]:
    return sorted(docs, key=lambda d: (d.get(key) or "", d.get("id", 0)), reverse=True)


# Order workflow

ORDER_ACTIONS = {
    "approve": ("pending", ApprovedOrder, "Your order #{id} has been approved"),
    "reject": ("pending", RejectedOrder, "Your order #{id} has been rejected"),
    "deliver": ("approved", DeliveredOrder, "Your order #{id} has been delivered"),
}


def transition_order(order: dict, action: str, reason: Optional[str] = None) -> tuple:
    """Return the order moved to its next state and the owner's notification text.

    Raises 409 when ``action`` is not allowed from the order's current status.
    """
    if action not in ORDER_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown order action: {action}")
    source, target, template = ORDER_ACTIONS[action]
    current = order_adapter.validate_python(order)
    if current.status != source:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot {action} order #{current.id} with status '{current.status}'",
        )
    fields = current.model_dump(exclude={"status", "rejection_reason"})
    message = template.format(id=current.id)
    if target is RejectedOrder:
        reason = (reason or "").strip() or None
        updated = RejectedOrder(**fields, rejection_reason=reason)
        if reason:
            message += f" - Reason: {reason}"
    else:
        updated = target(**fields)
    return updated.model_dump(mode="json"), message


def apply_order_action(order_id: int, action: str, reason: Optional[str] = None) -> dict:
    orders = database.load("orders")
    index = next((i for i, o in enumerate(orders) if o.get("id") == order_id), None)
    if index is None:
        raise HTTPException(status_code=404, detail="Order not found")
    updated, message = transition_order(orders[index], action, reason)
    orders[index] = updated
    database.save("orders", orders)
    add_notification(updated["user_id"], message)
    add_log(ADMIN_ACTOR_ID, f"{action} order #{order_id}")
    logger.info("Order #%s %s -> %s", order_id, action, updated["status"])
    return {"order": updated, "stats": order_stats(orders)}


# Request bodies

class ProfileUpdateRequest(BaseModel):
    username: str = Field(..., min_length=1)
    full_name: str = ""
    address: str = ""
    email: EmailStr


@app.get("/")
def read_root():
    return {"message": f"{APP_TITLE} is running"}


@app.get("/schema")
def get_schema():
    return {"collections": list(database.COLLECTIONS)}


# ---------- Auth Endpoints ----------
@app.post("/auth/register", status_code=201)
def register_user(
    email: EmailStr = Form(...),
    username: str = Form(...),
    password: str = Form(...),
    confirm_password: str = Form(...),
    full_name: str = Form(""),
    address: str = Form(""),
):
    if password != confirm_password:
        raise HTTPException(status_code=400, detail="Passwords do not match")
    if len(password) < PASSWORD_MIN_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    users = database.load("users")
    if any(u.get("email") == email for u in users):
        raise HTTPException(status_code=400, detail="Email already registered")
    if any(u.get("username") == username for u in users):
        raise HTTPException(status_code=400, detail="Username already taken")
    # Always user role; admins come from seeding
    user = User(
        id=get_next_id(users),
        email=email,
        password_hash=hash_password(password),
        username=username,
        full_name=full_name,
        address=address,
        role="user",
        balance=0,
    ).model_dump(mode="json")
    users.append(user)
    database.save("users", users)
    add_log(user["id"], "account created")
    logger.info("Registered user #%s (%s)", user["id"], username)
    return PublicProfile.from_user(user)


@app.post("/auth/login")
def login(email: EmailStr = Form(...), password: str = Form(...)):
    user = get_user_by_email(email)
    if not user:
        logger.warning("Login attempt for unknown email %s", email)
        raise HTTPException(status_code=401, detail="Email is not registered")
    if not verify_password(password, user.get("password_hash", "")):
        logger.warning("Failed login for user #%s", user["id"])
        raise HTTPException(status_code=401, detail="Incorrect password")
    token, session = open_session(user)
    add_log(user["id"], "login")
    return {"access_token": token, "token_type": "bearer", "user": session.user}


@app.post("/auth/logout")
def logout(session: Session = Depends(get_current_session)):
    database.drop_session(session.id)
    return {"logged_out": True}


# ---------- Profile ----------
@app.get("/me")
def me(session: Session = Depends(get_current_session)):
    return session.user


@app.put("/me")
def update_profile(body: ProfileUpdateRequest, session: Session = Depends(get_current_session)):
    users = database.load("users")
    index = next((i for i, u in enumerate(users) if u.get("id") == session.user.id), None)
    if index is None:
        raise HTTPException(status_code=404, detail="User not found")
    for u in users:
        if u.get("id") != session.user.id and (u.get("username") == body.username or u.get("email") == body.email):
            raise HTTPException(status_code=400, detail="Username or email already in use")
    users[index] = {**users[index], **body.model_dump()}
    database.save("users", users)
    database.refresh_user_sessions(users[index])
    add_log(session.user.id, "profile updated")
    return PublicProfile.from_user(users[index])


@app.get("/me/orders")
def my_orders(session: Session = Depends(get_current_session)):
    names = {p["id"]: p.get("name") for p in database.load("products")}
    orders = database.get_documents("orders", {"user_id": session.user.id})
    return [
        {**o, "product_name": names.get(o.get("product_id")) or f"Product #{o.get('product_id')}"}
        for o in newest_first(orders)
    ]


@app.get("/me/notifications")
def my_notifications(session: Session = Depends(get_current_session)):
    items = newest_first(database.get_documents("notifications", {"user_id": session.user.id}))
    return {"items": items, "unread": sum(1 for n in items if not n.get("read"))}


@app.post("/me/notifications/{notification_id}/read")
def mark_notification_read(notification_id: int, session: Session = Depends(get_current_session)):
    notifications = database.load("notifications")
    for n in notifications:
        if n.get("id") == notification_id and n.get("user_id") == session.user.id:
            n["read"] = True
            database.save("notifications", notifications)
            return n
    raise HTTPException(status_code=404, detail="Notification not found")


# ---------- Catalog ----------
@app.get("/categories")
def list_categories():
    return sorted(database.load("categories"), key=lambda c: (c.get("order", 0), c.get("id", 0)))


@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None):
    return filter_products(database.load("products"), q, category)


@app.get("/products/{product_id}")
def get_product(product_id: int):
    product = find_document("products", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/stats")
def store_stats():
    orders = database.load("orders")
    stats = order_stats(orders)
    return {
        "total_users": len(database.load("users")),
        "total_products": len(database.load("products")),
        "total_orders": stats["total_orders"],
        "total_revenue": stats["total_revenue"],
    }


# ---------- Purchase ----------
@app.post("/products/{product_id}/purchase", status_code=201)
def purchase_product(product_id: int, session: Session = Depends(get_current_session)):
    product = find_document("products", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    buyer = find_document("users", session.user.id)
    if not buyer:
        raise HTTPException(status_code=401, detail="User not found")
    price = int(product.get("price", 0))
    if int(buyer.get("balance", 0)) < price:
        raise HTTPException(status_code=400, detail="Insufficient balance to purchase this product")
    if int(product.get("stock", 0)) <= 0:
        raise HTTPException(status_code=400, detail="Product is out of stock")

    # No rollback below: each step persists on its own.
    orders = database.load("orders")
    order = PendingOrder(
        id=get_next_id(orders),
        user_id=buyer["id"],
        product_id=product["id"],
        quantity=1,
        total_price=price,
    ).model_dump(mode="json")
    orders.append(order)
    database.save("orders", orders)

    users = database.load("users")
    new_balance = None
    for u in users:
        if u.get("id") == buyer["id"]:
            u["balance"] = int(u.get("balance", 0)) - price
            new_balance = u["balance"]
            database.save("users", users)
            database.refresh_user_sessions(u)
            break

    if DECREMENT_STOCK:
        products = database.load("products")
        for p in products:
            if p.get("id") == product["id"]:
                p["stock"] = int(p.get("stock", 0)) - 1
        database.save("products", products)

    add_notification(buyer["id"], f"New order #{order['id']} created for product {product.get('name')}")
    add_log(buyer["id"], f"ordered product: {product.get('name')}")
    logger.info("User #%s bought product #%s for %s coins (order #%s)", buyer["id"], product["id"], price, order["id"])
    return {
        "order": order,
        "balance": new_balance,
        "message": "Order created! It will be reviewed by the administration",
    }


# ---------- Admin: Orders ----------
@app.get("/admin/dashboard")
def admin_dashboard(session: Session = Depends(get_admin_session)):
    users = database.load("users")
    products = database.load("products")
    orders = database.load("orders")
    product_names = {p["id"]: p.get("name") for p in products}
    usernames = {u["id"]: u.get("username") for u in users}
    recent = [
        {
            **o,
            "product_name": product_names.get(o.get("product_id")) or f"Product #{o.get('product_id')}",
            "username": usernames.get(o.get("user_id")) or f"User #{o.get('user_id')}",
        }
        for o in newest_first(orders)[:RECENT_ORDERS_LIMIT]
    ]
    return {
        "total_users": len(users),
        "total_products": len(products),
        **order_stats(orders),
        "recent_orders": recent,
    }


@app.get("/admin/orders")
def admin_orders(status: Optional[str] = None, session: Session = Depends(get_admin_session)):
    if status and status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    q = {"status": status} if status else None
    return newest_first(database.get_documents("orders", q))


@app.post("/admin/orders/{order_id}/approve")
def approve_order(order_id: int, session: Session = Depends(get_admin_session)):
    return apply_order_action(order_id, "approve")


@app.post("/admin/orders/{order_id}/reject")
def reject_order(order_id: int, reason: Optional[str] = Form(None), session: Session = Depends(get_admin_session)):
    return apply_order_action(order_id, "reject", reason)


@app.post("/admin/orders/{order_id}/deliver")
def deliver_order(order_id: int, session: Session = Depends(get_admin_session)):
    return apply_order_action(order_id, "deliver")


# ---------- Admin: Users, coupons, notifications, logs ----------
@app.get("/admin/users")
def admin_users(session: Session = Depends(get_admin_session)):
    return [PublicProfile.from_user(u) for u in database.load("users")]


@app.post("/admin/users/{user_id}/balance")
def credit_balance(user_id: int, amount: int = Form(...), session: Session = Depends(get_admin_session)):
    users = database.load("users")
    user = next((u for u in users if u.get("id") == user_id), None)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    new_balance = int(user.get("balance", 0)) + amount
    if new_balance < 0:
        raise HTTPException(status_code=400, detail="Balance cannot go below zero")
    user["balance"] = new_balance
    database.save("users", users)
    database.refresh_user_sessions(user)
    add_notification(user_id, f"Your balance was adjusted by {amount} coins")
    add_log(session.user.id, f"adjust balance of user #{user_id} by {amount}")
    return PublicProfile.from_user(user)


@app.get("/admin/coupons")
def admin_coupons(session: Session = Depends(get_admin_session)):
    return database.load("coupons")


@app.get("/admin/notifications")
def admin_notifications(session: Session = Depends(get_admin_session)):
    return newest_first(database.load("notifications"))


@app.get("/admin/logs")
def admin_logs(session: Session = Depends(get_admin_session)):
    return newest_first(database.load("logs"), key="timestamp")


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "data_dir": str(database.DATA_DIR),
        "cache_dir": str(database.CACHE_DIR),
        "collections": {},
    }
    try:
        response["collections"] = database.collection_counts()
        response["database"] = "Connected & Working"
    except Exception as e:
        response["database"] = f"Error: {str(e)[:50]}"
    return response


# ---------- Seed Data (idempotent) and Startup Hook ----------

def seed_admin() -> Optional[dict]:
    users = database.load("users")
    if any(u.get("role") == "admin" for u in users):
        return None
    admin = User(
        id=get_next_id(users),
        email=ADMIN_EMAIL,
        password_hash=hash_password(ADMIN_PASSWORD),
        username="admin",
        full_name="Administrator",
        role="admin",
    ).model_dump(mode="json")
    users.append(admin)
    database.save("users", users)
    logger.info("Seeded admin user #%s (%s)", admin["id"], ADMIN_EMAIL)
    return admin


@app.on_event("startup")
def on_startup():
    try:
        seed_admin()
    except Exception:
        logger.exception("Seeding admin user failed")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)

"""Shiftdesk — FastAPI Backend (shifts, production, inventory, suppliers, tasks, expenses, trips)"""
import os, json, uuid, traceback, threading, logging, copy, time, hashlib, hmac, base64, re, math
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, date, timedelta
from fastapi import FastAPI, HTTPException, Depends, Request, BackgroundTasks, Query
from fastapi.responses import FileResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError, ValidationInfo, field_validator
from typing import Optional, Literal
import database
import calc
import notify

STATIC_DIR = os.path.join(os.path.dirname(__file__), "static")

logger = logging.getLogger("shiftdesk")

_db_ready = False

DB_INIT_MAX_RETRIES = int(os.environ.get("DB_INIT_MAX_RETRIES", 5))
DB_INIT_RETRY_DELAY = int(os.environ.get("DB_INIT_RETRY_DELAY", 3))

def _init_database():
    global _db_ready
    for attempt in range(1, DB_INIT_MAX_RETRIES + 1):
        try:
            database.init_db()
            database.seed_data()
            database.ensure_demo_users()
            _db_ready = True
            print("✅ Database initialized successfully")
            return
        except Exception as e:
            print(f"⚠️ Database initialization error (attempt {attempt}/{DB_INIT_MAX_RETRIES}): {e}")
            if attempt < DB_INIT_MAX_RETRIES:
                time.sleep(DB_INIT_RETRY_DELAY)
            else:
                traceback.print_exc()

@asynccontextmanager
async def lifespan(app):
    threading.Thread(target=_init_database, daemon=True).start()
    yield
    logging.getLogger("uvicorn.error").info("Application shutting down gracefully")

app = FastAPI(title="Shiftdesk", lifespan=lifespan)
# CORS: restrict to specific origins in production. Use "*" only for development.
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

SECRET_KEY = os.environ.get("APP_TOKEN_SECRET")
if not SECRET_KEY:
    if os.environ.get("ENV") == "production":
        raise ValueError("APP_TOKEN_SECRET environment variable must be set in production")
    SECRET_KEY = "shiftdesk-dev-secret"
TOKEN_TTL_SECONDS = int(os.environ.get("APP_TOKEN_TTL", 60 * 60 * 24 * 7))

def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")

def _b64url_decode(data: str) -> bytes:
    padding = "=" * ((4 - len(data) % 4) % 4)
    return base64.urlsafe_b64decode(data + padding)

def make_token(username, role):
    payload = {"u": username, "r": role, "iat": int(time.time())}
    body = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
    sig = hmac.new(SECRET_KEY.encode(), body.encode(), hashlib.sha256).hexdigest()
    return f"{body}.{sig}"

def _parse_token(token: str):
    try:
        body, sig = token.split(".", 1)
    except ValueError:
        raise HTTPException(401, "Unauthorized")
    expected = hmac.new(SECRET_KEY.encode(), body.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(sig, expected):
        raise HTTPException(401, "Unauthorized")
    try:
        payload = json.loads(_b64url_decode(body).decode())
    except ValueError:
        raise HTTPException(401, "Unauthorized")
    if int(time.time()) - int(payload.get("iat", 0)) > TOKEN_TTL_SECONDS:
        raise HTTPException(401, "Token expired")
    return payload

# ── Roles ──
ROLE_HIERARCHY = {"owner": 3, "admin": 2, "worker": 1}
DEFAULT_ROLE = "worker"
ROLE_LABELS = {"owner": "Owner", "admin": "Administrator", "worker": "Worker"}
ALL_ROLES = ["owner", "admin", "worker"]
MANAGERS = ["owner", "admin"]

# Page prefix -> roles allowed to open it
ROUTE_PERMISSIONS = {
    "/users": MANAGERS,
    "/dashboard": ALL_ROLES,
    "/shifts": ALL_ROLES,
    "/employees": ALL_ROLES,
    "/products": ALL_ROLES,
    "/materials": ALL_ROLES,
    "/inventory": ALL_ROLES,
    "/suppliers": ALL_ROLES,
    "/tasks": ALL_ROLES,
    "/statistics": ALL_ROLES,
    "/expenses": ALL_ROLES,
    "/vehicles": ALL_ROLES,
    "/trips": ALL_ROLES,
    "/user": ALL_ROLES,
}

def has_role_permission(role, required) -> bool:
    if role not in ROLE_HIERARCHY:
        return False
    return ROLE_HIERARCHY[role] >= ROLE_HIERARCHY[required]

def has_any_role(role, allowed) -> bool:
    if not role:
        return False
    return role in allowed

def normalize_role(role):
    return role if role in ROLE_HIERARCHY else DEFAULT_ROLE

def can_open_page(role, path: str) -> bool:
    # longest matching prefix wins so /users is not shadowed by /user
    matches = [p for p in ROUTE_PERMISSIONS if path == p or path.startswith(p + "/")]
    if not matches:
        return True
    return has_any_role(role, ROUTE_PERMISSIONS[max(matches, key=len)])

def allowed_pages(role):
    return [p for p, roles in ROUTE_PERMISSIONS.items() if has_any_role(role, roles)]

def get_user(request: Request):
    token = request.headers.get("Authorization", "").replace("Bearer ", "")
    if not token:
        raise HTTPException(401, "Unauthorized")
    payload = _parse_token(token)
    username = payload.get("u")
    if not username:
        raise HTTPException(401, "Unauthorized")
    db = database.get_db()
    try:
        u = db.execute("SELECT username, display_name, role, active, created_at FROM users WHERE username=? AND active=1",
                       (username,)).fetchone()
        if not u:
            raise HTTPException(401, "Unauthorized")
        user = dict(u)
        if user.get("role") not in ROLE_HIERARCHY:
            logger.warning(f"User {username} had invalid role {user.get('role')!r}, resetting to {DEFAULT_ROLE}")
            db.execute("UPDATE users SET role=? WHERE username=?", (DEFAULT_ROLE, username))
            db.commit()
            user["role"] = DEFAULT_ROLE
        return user
    finally:
        db.close()

def require_role(*roles):
    def checker(user=Depends(get_user)):
        if not has_any_role(user.get("role"), roles):
            raise HTTPException(403, "Insufficient permissions")
        return user
    return checker

# Whitelist of table names used by the generic query helper
ALLOWED_TABLES = {
    "users", "audit_logs", "employees", "shifts", "product_categories", "products",
    "warehouses", "suppliers", "tasks", "expense_categories", "vehicles",
}

TABLE_ORDER_COLUMNS = {
    "users": ["created_at", "username"],
    "audit_logs": ["id", "timestamp"],
    "employees": ["id", "name", "created_at"],
    "shifts": ["id", "shift_date", "created_at"],
    "product_categories": ["id", "name"],
    "products": ["id", "name", "created_at"],
    "warehouses": ["id", "name"],
    "suppliers": ["id", "name", "created_at"],
    "tasks": ["id", "created_at", "due_date"],
    "expense_categories": ["id", "name"],
    "vehicles": ["id", "name", "created_at"],
}

def _validate_table_name(table: str):
    if table not in ALLOWED_TABLES:
        raise HTTPException(400, f"Invalid table name: {table}")
    return table

def _validate_order_clause(order: str, table: str):
    """Validate ORDER BY clause to prevent SQL injection"""
    for part in [p.strip() for p in order.split(',')]:
        match = re.match(r'^(\w+)(\s+(DESC|ASC))?$', part, re.IGNORECASE)
        if not match:
            raise HTTPException(400, f"Invalid order clause part: {part}")
        if match.group(1) not in TABLE_ORDER_COLUMNS.get(table, ["id"]):
            raise HTTPException(400, f"Invalid order column '{match.group(1)}' for table '{table}'")
    return order

def q(table, where="1=1", params=(), order="id DESC", limit=500):
    _validate_table_name(table)
    _validate_order_clause(order, table)
    try:
        limit = int(limit)
        if limit <= 0 or limit > 1000:
            limit = 500
    except (ValueError, TypeError):
        limit = 500
    db = database.get_db()
    try:
        rows = db.execute(f"SELECT * FROM {table} WHERE {where} ORDER BY {order} LIMIT {limit}", params).fetchall()
        return [dict(r) for r in rows]
    finally:
        db.close()

def audit_log(username: str, action: str, target_table: str, target_id, details: str = ""):
    """Record a mutation; failures are logged and never fail the request"""
    try:
        db = database.get_db()
        try:
            db.execute("""
                INSERT INTO audit_logs (username, action, target_table, target_id, details, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (username, action, target_table, str(target_id), details, _now()))
            db.commit()
        finally:
            db.close()
    except Exception as e:
        logger.error(f"AUDIT LOG FAILURE: {username} {action} {target_table}/{target_id} - Error: {e}")

@contextmanager
def _transaction(action: str):
    """One connection for a multi-step mutation: commit on success, roll back on any error"""
    db = database.get_db()
    try:
        yield db
        db.commit()
    except HTTPException:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.exception(f"{action} failed")
        raise HTTPException(500, f"{action} failed: {e}")
    finally:
        db.close()

# ── Request parsing ──
async def read_body(request: Request) -> dict:
    """JSON object or urlencoded/multipart form fields"""
    ctype = request.headers.get("content-type", "")
    if ctype.startswith("application/x-www-form-urlencoded") or ctype.startswith("multipart/form-data"):
        form = await request.form()
        data = {}
        for key in form.keys():
            values = form.getlist(key)
            data[key] = values if len(values) > 1 else values[0]
        return data
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid request body")
    if not isinstance(data, dict):
        raise HTTPException(400, "Invalid request body")
    return data

def _now():
    return datetime.now().isoformat(timespec="seconds")

def _text(value, max_len=None, field="value"):
    if value is None:
        return None
    value = str(value).strip()
    if max_len and len(value) > max_len:
        raise HTTPException(400, f"{field} must be at most {max_len} characters")
    return value or None

def _to_int(value, field, required=True):
    if value is None or value == "":
        if required:
            raise HTTPException(400, f"{field} is required")
        return None
    if isinstance(value, float) and not value.is_integer():
        raise HTTPException(400, f"{field} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(400, f"{field} must be an integer")

def _to_float(value, field, required=True):
    if value is None or value == "":
        if required:
            raise HTTPException(400, f"{field} is required")
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise HTTPException(400, f"{field} must be a number")
    if not math.isfinite(number):
        raise HTTPException(400, f"{field} must be a number")
    return number

def _to_date(value, field, required=True):
    if value is None or str(value).strip() == "":
        if required:
            raise HTTPException(400, f"{field} is required")
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10]).isoformat()
    except ValueError:
        raise HTTPException(400, f"{field} must be a date (YYYY-MM-DD)")

def _stamp_from_date(value, field="date"):
    """Date part from the form, time of day from now"""
    day = _to_date(value, field, required=False)
    if not day:
        return _now()
    return datetime.combine(date.fromisoformat(day), datetime.now().time()).isoformat(timespec="seconds")

def _fmt_qty(value):
    return int(value) if float(value).is_integer() else value

def _one(db, sql, params=(), not_found=None):
    row = db.execute(sql, params).fetchone()
    if row is None:
        if not_found:
            raise HTTPException(404, not_found)
        return None
    return dict(row)

def _all(db, sql, params=()):
    return [dict(r) for r in db.execute(sql, params).fetchall()]

def _validation_message(err: ValidationError) -> str:
    first = err.errors()[0]
    msg = first.get("msg", "Invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    loc = ".".join(str(x) for x in first.get("loc", ()))
    return f"{loc}: {msg}" if loc else msg

def _parse_form(model, data: dict):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise HTTPException(400, _validation_message(e))

# ── Auth ──
class LoginReq(BaseModel):
    username: str
    password: str

class SignupReq(BaseModel):
    username: str
    password: str
    display_name: Optional[str] = None

class RoleUpdateReq(BaseModel):
    role: str

class TelegramSettingsReq(BaseModel):
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

def _user_info(u):
    role = normalize_role(u["role"])
    return {"username": u["username"], "display_name": u["display_name"], "role": role,
            "role_label": ROLE_LABELS[role]}

@app.get("/health")
def health_check():
    return {"status": "ok", "db_ready": _db_ready}

@app.post("/api/login")
def login(req: LoginReq):
    db = database.get_db()
    u = db.execute("SELECT * FROM users WHERE username=? AND active=1", (req.username,)).fetchone()
    db.close()
    if not u or not database.verify_password(req.password, u["password_hash"]):
        raise HTTPException(401, "Invalid username or password")
    return {"token": make_token(u["username"], normalize_role(u["role"])), "user": _user_info(u)}

@app.post("/api/signup")
def signup(req: SignupReq):
    username = req.username.strip()
    if not re.match(r'^[A-Za-z0-9_.-]{3,50}$', username):
        raise HTTPException(400, "Username must be 3-50 letters, digits, dots, dashes or underscores")
    if len(req.password) < 6:
        raise HTTPException(400, "Password must be at least 6 characters")
    display_name = _text(req.display_name, 200, "display_name") or username
    with _transaction("Sign up") as db:
        if _one(db, "SELECT username FROM users WHERE username=?", (username,)):
            raise HTTPException(400, "Username is already taken")
        db.execute("INSERT INTO users(username,password_hash,display_name,role,active,created_at) VALUES(?,?,?,?,1,?)",
                   (username, database.hash_password(req.password), display_name, DEFAULT_ROLE, _now()))
    audit_log(username, "signup", "users", username)
    user = {"username": username, "display_name": display_name, "role": DEFAULT_ROLE}
    return {"token": make_token(username, DEFAULT_ROLE), "user": _user_info(user)}

@app.get("/api/me")
def me(user=Depends(get_user)):
    return {**_user_info(user), "created_at": user.get("created_at"), "pages": allowed_pages(user["role"])}

@app.get("/api/pages")
def pages(path: Optional[str] = None, user=Depends(get_user)):
    if path:
        return {"path": path, "allowed": can_open_page(user["role"], path)}
    return {"role": user["role"], "pages": allowed_pages(user["role"])}

# ── User administration ──
@app.get("/api/users")
def get_users(user=Depends(require_role(*MANAGERS))):
    rows = q("users", order="created_at ASC, username ASC")
    for r in rows:
        r.pop("password_hash", None)
        r["role_label"] = ROLE_LABELS.get(r.get("role"), "Unknown role")
    return rows

@app.put("/api/users/{username}/role")
def update_user_role(username: str, req: RoleUpdateReq, user=Depends(require_role(*MANAGERS))):
    if req.role not in ROLE_HIERARCHY:
        raise HTTPException(400, f"Invalid role: {req.role}")
    if username == user["username"]:
        raise HTTPException(400, "You cannot change your own role")
    with _transaction("Role update") as db:
        target = _one(db, "SELECT username, role FROM users WHERE username=?", (username,), "User not found")
        if "owner" in (req.role, target["role"]) and user["role"] != "owner":
            raise HTTPException(403, "Only an owner can grant or revoke the owner role")
        db.execute("UPDATE users SET role=? WHERE username=?", (req.role, username))
    audit_log(user["username"], "update_role", "users", username, f"{target['role']} -> {req.role}")
    return {"ok": True, "username": username, "role": req.role}

@app.delete("/api/users/{username}")
def delete_user(username: str, user=Depends(require_role(*MANAGERS))):
    if username == user["username"]:
        raise HTTPException(400, "You cannot delete your own account")
    with _transaction("User deletion") as db:
        target = _one(db, "SELECT username, role FROM users WHERE username=?", (username,), "User not found")
        if target["role"] == "owner" and user["role"] != "owner":
            raise HTTPException(403, "Only an owner can delete an owner")
        db.execute("DELETE FROM users WHERE username=?", (username,))
    audit_log(user["username"], "delete", "users", username)
    return {"ok": True}

# ── Settings ──
@app.get("/api/settings/telegram")
def get_telegram_settings(user=Depends(require_role(*MANAGERS))):
    db = database.get_db()
    try:
        row = _one(db, "SELECT telegram_bot_token, telegram_chat_id FROM settings ORDER BY id LIMIT 1") or {}
    finally:
        db.close()
    token = row.get("telegram_bot_token") or ""
    return {
        "telegram_bot_token": f"{token[:4]}***" if token else None,
        "telegram_chat_id": row.get("telegram_chat_id"),
        "configured": bool(token and row.get("telegram_chat_id")),
    }

@app.put("/api/settings/telegram")
def update_telegram_settings(req: TelegramSettingsReq, user=Depends(require_role(*MANAGERS))):
    with _transaction("Settings update") as db:
        if _one(db, "SELECT id FROM settings WHERE id=1"):
            db.execute("UPDATE settings SET telegram_bot_token=?, telegram_chat_id=?, updated_at=? WHERE id=1",
                       (_text(req.telegram_bot_token), _text(req.telegram_chat_id), _now()))
        else:
            db.execute("INSERT INTO settings(id,telegram_bot_token,telegram_chat_id,updated_at) VALUES(1,?,?,?)",
                       (_text(req.telegram_bot_token), _text(req.telegram_chat_id), _now()))
    audit_log(user["username"], "update", "settings", 1, "telegram")
    return {"ok": True}

@app.get("/api/logs")
def get_logs(user=Depends(require_role(*MANAGERS))):
    return q("audit_logs", order="id DESC", limit=200)

# ── Employees ──
@app.get("/api/employees")
def get_employees(user=Depends(get_user)):
    return q("employees", order="name ASC")

@app.get("/api/employees/{eid}")
def get_employee(eid: int, user=Depends(get_user)):
    emps = q("employees", "id=?", (eid,))
    if not emps: raise HTTPException(404, "Employee not found")
    return emps[0]

@app.post("/api/employees")
async def create_employee(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Employee name is required")
    with _transaction("Employee creation") as db:
        eid = database.insert_returning_id(db, "INSERT INTO employees(name,position,created_at) VALUES(?,?,?)",
                                           (name, _text(data.get("position"), 200, "position"), _now()))
    audit_log(user["username"], "create", "employees", eid, f"Employee: {name}")
    return {"ok": True, "id": eid}

@app.put("/api/employees/{eid}")
async def update_employee(eid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Employee name is required")
    with _transaction("Employee update") as db:
        _one(db, "SELECT id FROM employees WHERE id=?", (eid,), "Employee not found")
        db.execute("UPDATE employees SET name=?, position=? WHERE id=?",
                   (name, _text(data.get("position"), 200, "position"), eid))
    audit_log(user["username"], "update", "employees", eid, f"Employee: {name}")
    return {"ok": True}

@app.delete("/api/employees/{eid}")
def delete_employee(eid: int, user=Depends(get_user)):
    with _transaction("Employee deletion") as db:
        _one(db, "SELECT id FROM employees WHERE id=?", (eid,), "Employee not found")
        if _one(db, "SELECT id FROM shift_employees WHERE employee_id=? LIMIT 1", (eid,)):
            raise HTTPException(400, "Employee is assigned to a shift and cannot be deleted")
        db.execute("DELETE FROM employees WHERE id=?", (eid,))
    audit_log(user["username"], "delete", "employees", eid)
    return {"ok": True}

# ── Product categories ──
@app.get("/api/categories")
def get_categories(user=Depends(get_user)):
    return q("product_categories", order="name ASC")

@app.post("/api/categories")
async def create_category(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Category name is required")
    with _transaction("Category creation") as db:
        cid = database.insert_returning_id(db, "INSERT INTO product_categories(name,created_at) VALUES(?,?)", (name, _now()))
    audit_log(user["username"], "create", "product_categories", cid, f"Category: {name}")
    return {"ok": True, "id": cid}

@app.put("/api/categories/{cid}")
async def update_category(cid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Category name is required")
    with _transaction("Category update") as db:
        _one(db, "SELECT id FROM product_categories WHERE id=?", (cid,), "Category not found")
        db.execute("UPDATE product_categories SET name=? WHERE id=?", (name, cid))
    audit_log(user["username"], "update", "product_categories", cid, f"Category: {name}")
    return {"ok": True}

@app.delete("/api/categories/{cid}")
def delete_category(cid: int, user=Depends(get_user)):
    with _transaction("Category deletion") as db:
        _one(db, "SELECT id FROM product_categories WHERE id=?", (cid,), "Category not found")
        updated = db.execute("UPDATE products SET category_id=NULL WHERE category_id=?", (cid,)).rowcount
        db.execute("DELETE FROM product_categories WHERE id=?", (cid,))
    audit_log(user["username"], "delete", "product_categories", cid, f"Detached {updated} products")
    return {"ok": True, "updated_products": updated}

# ── Products (finished goods) ──
FINISHED_WHERE = "(p.product_type='finished' OR p.product_type IS NULL)"
PRODUCT_SELECT = """SELECT p.*, c.name AS category_name FROM products p
    LEFT JOIN product_categories c ON c.id=p.category_id"""

def _product_fields(db, data):
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Product name is required")
    category_id = _to_int(data.get("category_id"), "category_id", required=False)
    if category_id is not None:
        _one(db, "SELECT id FROM product_categories WHERE id=?", (category_id,), "Category not found")
    fields = {"name": name, "description": _text(data.get("description"), 2000, "description"),
              "category_id": category_id}
    for key in ("reward", "cost"):
        value = _to_float(data.get(key), key, required=False)
        if value is not None and value < 0:
            raise HTTPException(400, f"{key} cannot be negative")
        fields[key] = value
    return fields

@app.get("/api/products")
def get_products(user=Depends(get_user)):
    db = database.get_db()
    try:
        return _all(db, f"{PRODUCT_SELECT} WHERE {FINISHED_WHERE} ORDER BY p.name")
    finally:
        db.close()

@app.get("/api/products/by-category")
def get_products_by_category(name: str, user=Depends(get_user)):
    db = database.get_db()
    try:
        return _all(db, f"{PRODUCT_SELECT} WHERE c.name=? ORDER BY p.name", (name,))
    finally:
        db.close()

@app.post("/api/products")
async def create_product(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Product creation") as db:
        f = _product_fields(db, data)
        pid = database.insert_returning_id(db,
            "INSERT INTO products(name,description,category_id,product_type,reward,cost,created_at) VALUES(?,?,?,'finished',?,?,?)",
            (f["name"], f["description"], f["category_id"], f["reward"], f["cost"], _now()))
        db.execute("INSERT INTO inventory(product_id,quantity,updated_at) VALUES(?,0,?)", (pid, _now()))
    audit_log(user["username"], "create", "products", pid, f"Product: {f['name']}")
    return {"ok": True, "id": pid}

@app.put("/api/products/{pid}")
async def update_product(pid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Product update") as db:
        _one(db, f"SELECT p.id FROM products p WHERE p.id=? AND {FINISHED_WHERE}", (pid,), "Product not found")
        f = _product_fields(db, data)
        db.execute("UPDATE products SET name=?, description=?, category_id=?, reward=?, cost=? WHERE id=?",
                   (f["name"], f["description"], f["category_id"], f["reward"], f["cost"], pid))
    audit_log(user["username"], "update", "products", pid, f"Product: {f['name']}")
    return {"ok": True}

def _ensure_product_unused(db, pid):
    if _one(db, "SELECT id FROM production WHERE product_id=? LIMIT 1", (pid,)):
        raise HTTPException(400, "Product has production records and cannot be deleted")
    if _one(db, "SELECT id FROM supplier_deliveries WHERE product_id=? OR material_product_id=? LIMIT 1", (pid, pid)):
        raise HTTPException(400, "Product is used in supplier deliveries and cannot be deleted")

@app.delete("/api/products/{pid}")
def delete_product(pid: int, user=Depends(get_user)):
    with _transaction("Product deletion") as db:
        _one(db, f"SELECT p.id FROM products p WHERE p.id=? AND {FINISHED_WHERE}", (pid,), "Product not found")
        _ensure_product_unused(db, pid)
        db.execute("DELETE FROM products WHERE id=?", (pid,))
    audit_log(user["username"], "delete", "products", pid)
    return {"ok": True}

# ── Materials ──
@app.get("/api/materials")
def get_materials(user=Depends(get_user)):
    db = database.get_db()
    try:
        return _all(db, f"{PRODUCT_SELECT} WHERE p.product_type='material' ORDER BY p.name")
    finally:
        db.close()

@app.post("/api/materials")
async def create_material(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Material creation") as db:
        f = _product_fields(db, data)
        mid = database.insert_returning_id(db,
            "INSERT INTO products(name,description,category_id,product_type,reward,cost,created_at) VALUES(?,?,?,'material',NULL,?,?)",
            (f["name"], f["description"], f["category_id"], f["cost"], _now()))
    audit_log(user["username"], "create", "products", mid, f"Material: {f['name']}")
    return {"ok": True, "id": mid}

@app.put("/api/materials/{mid}")
async def update_material(mid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Material update") as db:
        _one(db, "SELECT id FROM products WHERE id=? AND product_type='material'", (mid,), "Material not found")
        f = _product_fields(db, data)
        db.execute("UPDATE products SET name=?, description=?, category_id=?, cost=?, reward=NULL WHERE id=? AND product_type='material'",
                   (f["name"], f["description"], f["category_id"], f["cost"], mid))
    audit_log(user["username"], "update", "products", mid, f"Material: {f['name']}")
    return {"ok": True}

@app.delete("/api/materials/{mid}")
def delete_material(mid: int, user=Depends(get_user)):
    with _transaction("Material deletion") as db:
        _one(db, "SELECT id FROM products WHERE id=? AND product_type='material'", (mid,), "Material not found")
        _ensure_product_unused(db, mid)
        db.execute("DELETE FROM products WHERE id=? AND product_type='material'", (mid,))
    audit_log(user["username"], "delete", "products", mid)
    return {"ok": True}

# ── Shifts ──
SHIFT_PRODUCTION_SQL = """SELECT pr.id, pr.product_id, pr.quantity, p.name, p.reward, p.category_id,
        c.name AS category_name
    FROM production pr JOIN products p ON p.id=pr.product_id
    LEFT JOIN product_categories c ON c.id=p.category_id
    WHERE pr.shift_id=? ORDER BY p.name"""

def _attach_shift_details(db, shifts):
    for s in shifts:
        s["employees"] = _all(db, """SELECT se.id, se.employee_id, e.name, e.position
            FROM shift_employees se JOIN employees e ON e.id=se.employee_id
            WHERE se.shift_id=? ORDER BY e.name""", (s["id"],))
        s["production"] = _all(db, SHIFT_PRODUCTION_SQL, (s["id"],))
        s["total_production"] = sum(p["quantity"] or 0 for p in s["production"])
    return shifts

def _list_shifts(where="1=1", params=(), limit=500):
    db = database.get_db()
    try:
        shifts = _all(db, f"SELECT * FROM shifts WHERE {where} ORDER BY shift_date DESC, id DESC LIMIT {int(limit)}", params)
        return _attach_shift_details(db, shifts)
    finally:
        db.close()

def _opened_at(value):
    """Opening date from the form, stored as 09:00 local time"""
    day = _to_date(value, "opened_at", required=False)
    return f"{day}T09:00:00" if day else None

def _active_shift(db, sid):
    shift = _one(db, "SELECT * FROM shifts WHERE id=?", (sid,), "Shift not found")
    if shift["status"] == "completed":
        raise HTTPException(400, "Shift is already completed")
    return shift

@app.get("/api/shifts")
def get_shifts(status: Optional[str] = None, user=Depends(get_user)):
    if status:
        return _list_shifts("status=?", (status,))
    return _list_shifts()

@app.get("/api/shifts/active")
def get_active_shifts(user=Depends(get_user)):
    return _list_shifts("status='active'")

@app.get("/api/shifts/{sid}")
def get_shift(sid: int, user=Depends(get_user)):
    db = database.get_db()
    try:
        shift = _one(db, "SELECT * FROM shifts WHERE id=?", (sid,), "Shift not found")
        return _attach_shift_details(db, [shift])[0]
    finally:
        db.close()

@app.post("/api/shifts")
async def create_shift(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    shift_date = _to_date(data.get("shift_date"), "shift_date")
    with _transaction("Shift creation") as db:
        sid = database.insert_returning_id(db,
            "INSERT INTO shifts(shift_date,status,notes,created_at,opened_at) VALUES(?,'active',?,?,?)",
            (shift_date, _text(data.get("notes"), 2000, "notes"), _now(), _opened_at(data.get("opened_at"))))
    audit_log(user["username"], "create", "shifts", sid, f"Shift on {shift_date}")
    return {"ok": True, "id": sid}

def _employee_ids(value):
    if value is None or value == "":
        return []
    if isinstance(value, str):
        value = [v for v in value.split(",") if v.strip()]
    elif not isinstance(value, list):
        value = [value]
    ids = []
    for v in value:
        eid = _to_int(v, "employee_ids")
        if eid not in ids:
            ids.append(eid)
    return ids

@app.post("/api/shifts/with-employees")
async def create_shift_with_employees(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    shift_date = _to_date(data.get("shift_date"), "shift_date")
    employee_ids = _employee_ids(data.get("employee_ids"))
    if not employee_ids:
        raise HTTPException(400, "Select at least one employee")
    with _transaction("Shift creation") as db:
        for eid in employee_ids:
            if not _one(db, "SELECT id FROM employees WHERE id=?", (eid,)):
                raise HTTPException(400, f"Employee {eid} not found")
        now = _now()
        sid = database.insert_returning_id(db,
            "INSERT INTO shifts(shift_date,status,notes,created_at,opened_at) VALUES(?,'active',?,?,?)",
            (shift_date, _text(data.get("notes"), 2000, "notes"), now, _opened_at(data.get("opened_at"))))
        for eid in employee_ids:
            db.execute("INSERT INTO shift_employees(shift_id,employee_id,created_at) VALUES(?,?,?)", (sid, eid, now))
    audit_log(user["username"], "create", "shifts", sid, f"Shift on {shift_date} with {len(employee_ids)} employees")
    return {"ok": True, "id": sid, "employees": len(employee_ids)}

@app.put("/api/shifts/{sid}/opened-at")
async def update_shift_opened_at(sid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    opened_at = _opened_at(data.get("opened_at"))
    if not opened_at:
        raise HTTPException(400, "opened_at is required")
    with _transaction("Shift update") as db:
        _one(db, "SELECT id FROM shifts WHERE id=?", (sid,), "Shift not found")
        db.execute("UPDATE shifts SET opened_at=? WHERE id=?", (opened_at, sid))
    audit_log(user["username"], "update", "shifts", sid, f"opened_at={opened_at}")
    return {"ok": True, "opened_at": opened_at}

@app.post("/api/shifts/{sid}/employees")
async def add_employee_to_shift(sid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    eid = _to_int(data.get("employee_id"), "employee_id")
    with _transaction("Adding employee") as db:
        _active_shift(db, sid)
        _one(db, "SELECT id FROM employees WHERE id=?", (eid,), "Employee not found")
        if _one(db, "SELECT id FROM shift_employees WHERE shift_id=? AND employee_id=?", (sid, eid)):
            raise HTTPException(400, "Employee is already on this shift")
        db.execute("INSERT INTO shift_employees(shift_id,employee_id,created_at) VALUES(?,?,?)", (sid, eid, _now()))
    audit_log(user["username"], "add_employee", "shifts", sid, f"employee {eid}")
    return {"ok": True}

@app.delete("/api/shifts/{sid}/employees/{eid}")
def remove_employee_from_shift(sid: int, eid: int, user=Depends(get_user)):
    with _transaction("Removing employee") as db:
        _active_shift(db, sid)
        removed = db.execute("DELETE FROM shift_employees WHERE shift_id=? AND employee_id=?", (sid, eid)).rowcount
        if not removed:
            raise HTTPException(404, "Employee is not on this shift")
    audit_log(user["username"], "remove_employee", "shifts", sid, f"employee {eid}")
    return {"ok": True}

@app.put("/api/shifts/{sid}/production")
async def update_production(sid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    product_id = _to_int(data.get("product_id"), "product_id")
    quantity = _to_float(data.get("quantity"), "quantity")
    if quantity < 0:
        raise HTTPException(400, "quantity cannot be negative")
    with _transaction("Production update") as db:
        _active_shift(db, sid)
        product = _one(db, "SELECT id, product_type FROM products WHERE id=?", (product_id,), "Product not found")
        if product["product_type"] == "material":
            raise HTTPException(400, "Materials cannot be recorded as production")
        existing = _one(db, "SELECT id FROM production WHERE shift_id=? AND product_id=?", (sid, product_id))
        if existing:
            db.execute("UPDATE production SET quantity=? WHERE id=?", (quantity, existing["id"]))
        else:
            db.execute("INSERT INTO production(shift_id,product_id,quantity,created_at) VALUES(?,?,?,?)",
                       (sid, product_id, quantity, _now()))
    audit_log(user["username"], "update_production", "shifts", sid, f"product {product_id} = {quantity}")
    return {"ok": True}

@app.post("/api/shifts/{sid}/complete")
def complete_shift(sid: int, background_tasks: BackgroundTasks, user=Depends(get_user)):
    with _transaction("Shift completion") as db:
        _active_shift(db, sid)
        production = _all(db, SHIFT_PRODUCTION_SQL, (sid,))
        warehouse_id = _main_warehouse_id(db)
        closed_at = datetime.now()
        stamp = closed_at.isoformat(timespec="seconds")
        for item in production:
            qty = item["quantity"] or 0
            if qty <= 0:
                continue
            _add_inventory(db, item["product_id"], qty)
            db.execute("""INSERT INTO inventory_transactions(product_id,warehouse_id,quantity,transaction_type,
                    reference_id,notes,created_by,created_at) VALUES(?,?,?,'production',?,?,?,?)""",
                       (item["product_id"], warehouse_id, qty, str(sid),
                        f"Production on shift #{sid} (added when the shift was completed)", user["username"], stamp))
        db.execute("UPDATE shifts SET status='completed', completed_at=? WHERE id=?", (stamp, sid))
    total = sum(item["quantity"] or 0 for item in production)
    background_tasks.add_task(notify.send_telegram_message, notify.format_shift_report(sid, production, closed_at))
    audit_log(user["username"], "complete", "shifts", sid, f"Total produced: {total}")
    return {"ok": True, "total_production": total, "completed_at": stamp}

@app.delete("/api/shifts/{sid}")
def delete_shift(sid: int, user=Depends(get_user)):
    with _transaction("Shift deletion") as db:
        shift = _one(db, "SELECT * FROM shifts WHERE id=?", (sid,), "Shift not found")
        reversed_items = 0
        if shift["status"] == "completed":
            warehouse_id = _main_warehouse_id(db)
            for item in _all(db, SHIFT_PRODUCTION_SQL, (sid,)):
                qty = item["quantity"] or 0
                if qty <= 0:
                    continue
                _add_inventory(db, item["product_id"], -qty)
                db.execute("""INSERT INTO inventory_transactions(product_id,warehouse_id,quantity,transaction_type,
                        reference_id,notes,created_by,created_at) VALUES(?,?,?,'adjustment',?,?,?,?)""",
                           (item["product_id"], warehouse_id, -qty, str(sid),
                            f"Shift #{sid} deleted, production removed from stock", user["username"], _now()))
                reversed_items += 1
        db.execute("DELETE FROM production WHERE shift_id=?", (sid,))
        db.execute("DELETE FROM shift_employees WHERE shift_id=?", (sid,))
        db.execute("DELETE FROM shifts WHERE id=?", (sid,))
    audit_log(user["username"], "delete", "shifts", sid, f"Reversed {reversed_items} inventory items")
    return {"ok": True, "reversed_items": reversed_items}

@app.get("/api/shifts/{sid}/wages")
def get_shift_wages(sid: int, hourly_rate: float = calc.DEFAULT_HOURLY_RATE, hours: Optional[float] = None,
                    user=Depends(get_user)):
    if hourly_rate < 0 or (hours is not None and hours < 0):
        raise HTTPException(400, "hourly_rate and hours cannot be negative")
    db = database.get_db()
    try:
        shift = _one(db, "SELECT * FROM shifts WHERE id=?", (sid,), "Shift not found")
        production = _all(db, SHIFT_PRODUCTION_SQL, (sid,))
    finally:
        db.close()
    wages = calc.calculate_shift_wages(production, shift["created_at"], shift.get("completed_at"),
                                       hourly_rate=hourly_rate, hours=hours)
    return {"shift_id": sid, **wages}

# ── Inventory ──
def _main_warehouse_id(db):
    row = db.execute("SELECT id FROM warehouses WHERE LOWER(name) LIKE ? ORDER BY id LIMIT 1", ("%main%",)).fetchone()
    return row["id"] if row else None

def _inventory_quantity(db, product_id):
    row = db.execute("SELECT quantity FROM inventory WHERE product_id=?", (product_id,)).fetchone()
    return None if row is None else (row["quantity"] or 0)

def _set_inventory(db, product_id, quantity):
    if _inventory_quantity(db, product_id) is None:
        db.execute("INSERT INTO inventory(product_id,quantity,updated_at) VALUES(?,?,?)", (product_id, quantity, _now()))
    else:
        db.execute("UPDATE inventory SET quantity=?, updated_at=? WHERE product_id=?", (quantity, _now(), product_id))

def _add_inventory(db, product_id, delta):
    _set_inventory(db, product_id, (_inventory_quantity(db, product_id) or 0) + delta)

def _add_warehouse_stock(db, warehouse_id, product_id, delta):
    """Move warehouse stock by delta; removals never take it below zero"""
    row = db.execute("SELECT id, quantity FROM warehouse_inventory WHERE warehouse_id=? AND product_id=?",
                     (warehouse_id, product_id)).fetchone()
    if row is None:
        if delta > 0:
            db.execute("INSERT INTO warehouse_inventory(warehouse_id,product_id,quantity,updated_at) VALUES(?,?,?,?)",
                       (warehouse_id, product_id, delta, _now()))
        return
    db.execute("UPDATE warehouse_inventory SET quantity=?, updated_at=? WHERE id=?",
               (max(0, (row["quantity"] or 0) + delta), _now(), row["id"]))

def _inventory_rows(db):
    finished = _all(db, """SELECT i.id, i.product_id, i.quantity, i.updated_at, p.name, p.product_type,
            p.reward, p.cost, p.category_id, c.name AS category_name
        FROM inventory i JOIN products p ON p.id=i.product_id
        LEFT JOIN product_categories c ON c.id=p.category_id
        WHERE p.product_type='finished' OR (p.product_type IS NULL AND p.reward IS NOT NULL)
        ORDER BY i.id""")
    for r in finished:
        r["kind"] = "finished"
    materials = []
    warehouse_id = _main_warehouse_id(db)
    if warehouse_id is not None:
        materials = _all(db, """SELECT wi.id, wi.product_id, wi.quantity, wi.updated_at, p.name, p.product_type,
                p.reward, p.cost, p.category_id, c.name AS category_name
            FROM warehouse_inventory wi JOIN products p ON p.id=wi.product_id
            LEFT JOIN product_categories c ON c.id=p.category_id
            WHERE wi.warehouse_id=? AND p.product_type='material'
            ORDER BY wi.id""", (warehouse_id,))
        for r in materials:
            r["kind"] = "material"
    return finished + materials

def _total_inventory(db):
    return round(sum(r["quantity"] or 0 for r in _inventory_rows(db)))

@app.get("/api/inventory")
def get_inventory(user=Depends(get_user)):
    db = database.get_db()
    try:
        return _inventory_rows(db)
    finally:
        db.close()

@app.get("/api/inventory/total")
def get_total_inventory(user=Depends(get_user)):
    db = database.get_db()
    try:
        return {"total": _total_inventory(db)}
    finally:
        db.close()

@app.get("/api/inventory/transactions")
def get_inventory_transactions(product_id: Optional[int] = None, transaction_type: Optional[str] = None,
                               limit: int = 200, user=Depends(get_user)):
    conditions, params = [], []
    if product_id is not None:
        conditions.append("t.product_id=?"); params.append(product_id)
    if transaction_type:
        conditions.append("t.transaction_type=?"); params.append(transaction_type)
    where = " AND ".join(conditions) if conditions else "1=1"
    limit = limit if 0 < limit <= 1000 else 200
    db = database.get_db()
    try:
        return _all(db, f"""SELECT t.*, p.name AS product_name, p.product_type, w.name AS warehouse_name
            FROM inventory_transactions t JOIN products p ON p.id=t.product_id
            LEFT JOIN warehouses w ON w.id=t.warehouse_id
            WHERE {where} ORDER BY t.created_at DESC, t.id DESC LIMIT {limit}""", tuple(params))
    finally:
        db.close()

@app.post("/api/inventory/adjust")
async def adjust_inventory(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    product_id = _to_int(data.get("product_id"), "product_id")
    quantity = _to_float(data.get("quantity"), "quantity")
    if quantity < 0:
        raise HTTPException(400, "quantity cannot be negative")
    with _transaction("Inventory adjustment") as db:
        _one(db, "SELECT id FROM products WHERE id=?", (product_id,), "Product not found")
        current = _inventory_quantity(db, product_id)
        adjustment = quantity - (current or 0)
        if adjustment == 0 and current is not None:
            return {"ok": True, "changed": False}
        _set_inventory(db, product_id, quantity)
        db.execute("""INSERT INTO inventory_transactions(product_id,warehouse_id,quantity,transaction_type,
                notes,created_by,created_at) VALUES(?,?,?,'adjustment',?,?,?)""",
                   (product_id, _main_warehouse_id(db), adjustment,
                    _text(data.get("notes"), 2000, "notes") or "Manual quantity adjustment", user["username"], _now()))
    audit_log(user["username"], "adjust", "inventory", product_id, f"{current} -> {quantity}")
    return {"ok": True, "changed": True, "adjustment": adjustment}

@app.post("/api/inventory/ship")
async def ship_inventory(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    product_id = _to_int(data.get("product_id"), "product_id", required=False)
    quantity = _to_float(data.get("quantity"), "quantity", required=False)
    if not product_id or quantity is None or quantity <= 0:
        raise HTTPException(400, "A product and a quantity above zero are required")
    with _transaction("Shipment") as db:
        _one(db, "SELECT id FROM products WHERE id=?", (product_id,), "Product not found")
        current = _inventory_quantity(db, product_id) or 0
        if current < quantity:
            raise HTTPException(400, f"Insufficient stock. Available: {_fmt_qty(current)}")
        _set_inventory(db, product_id, current - quantity)
        db.execute("""INSERT INTO inventory_transactions(product_id,warehouse_id,quantity,transaction_type,
                notes,created_by,created_at) VALUES(?,?,?,'shipment',?,?,?)""",
                   (product_id, _main_warehouse_id(db), -quantity,
                    _text(data.get("notes"), 2000, "notes") or "Product shipment", user["username"], _now()))
    audit_log(user["username"], "ship", "inventory", product_id, f"-{quantity}")
    return {"ok": True, "remaining": current - quantity}

@app.post("/api/inventory/recalculate")
def recalculate_inventory(user=Depends(require_role(*MANAGERS))):
    """Rebuild finished-goods stock from the production history"""
    with _transaction("Inventory rebuild") as db:
        totals = _all(db, """SELECT pr.product_id, p.name, SUM(pr.quantity) AS total
            FROM production pr JOIN products p ON p.id=pr.product_id
            GROUP BY pr.product_id, p.name ORDER BY p.name""")
        results = []
        for row in totals:
            previous = _inventory_quantity(db, row["product_id"])
            _set_inventory(db, row["product_id"], row["total"] or 0)
            results.append({"product_id": row["product_id"], "name": row["name"],
                            "previous": previous, "quantity": row["total"] or 0})
    audit_log(user["username"], "recalculate", "inventory", "all", f"{len(results)} products")
    return {"ok": True, "updated": len(results), "results": results}

# ── Warehouses ──
@app.get("/api/warehouses")
def get_warehouses(user=Depends(get_user)):
    return q("warehouses", order="name ASC")

@app.post("/api/warehouses")
async def create_warehouse(request: Request, user=Depends(require_role(*MANAGERS))):
    data = await read_body(request)
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Warehouse name is required")
    with _transaction("Warehouse creation") as db:
        wid = database.insert_returning_id(db, "INSERT INTO warehouses(name,location,created_at) VALUES(?,?,?)",
                                           (name, _text(data.get("location"), 200, "location"), _now()))
    audit_log(user["username"], "create", "warehouses", wid, f"Warehouse: {name}")
    return {"ok": True, "id": wid}

# ── Suppliers ──
SUPPLIER_SELECT = """SELECT s.*,
    COALESCE((SELECT SUM(a.amount) FROM supplier_advance_transactions a WHERE a.supplier_id=s.id), 0) AS advances_total,
    COALESCE((SELECT SUM(d.quantity * d.price_per_unit) FROM supplier_deliveries d
              WHERE d.supplier_id=s.id AND d.price_per_unit IS NOT NULL), 0) AS delivered_value,
    COALESCE((SELECT SUM(d.material_quantity) FROM supplier_deliveries d
              WHERE d.supplier_id=s.id AND d.material_quantity IS NOT NULL), 0) AS materials_balance
    FROM suppliers s"""

def _with_balance(row):
    row["advance"] = calc.r2((row["advances_total"] or 0) - (row["delivered_value"] or 0))
    return row

@app.get("/api/suppliers")
def get_suppliers(user=Depends(get_user)):
    db = database.get_db()
    try:
        return [_with_balance(r) for r in _all(db, f"{SUPPLIER_SELECT} ORDER BY s.name")]
    finally:
        db.close()

@app.get("/api/suppliers/{sid}")
def get_supplier(sid: int, user=Depends(get_user)):
    db = database.get_db()
    try:
        return _with_balance(_one(db, f"{SUPPLIER_SELECT} WHERE s.id=?", (sid,), "Supplier not found"))
    finally:
        db.close()

def _supplier_fields(data):
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Supplier name is required")
    return name, _text(data.get("phone"), 50, "phone"), _text(data.get("notes"), 2000, "notes")

@app.post("/api/suppliers")
async def create_supplier(request: Request, user=Depends(get_user)):
    name, phone, notes = _supplier_fields(await read_body(request))
    with _transaction("Supplier creation") as db:
        sid = database.insert_returning_id(db, "INSERT INTO suppliers(name,phone,notes,created_at) VALUES(?,?,?,?)",
                                           (name, phone, notes, _now()))
    audit_log(user["username"], "create", "suppliers", sid, f"Supplier: {name}")
    return {"ok": True, "id": sid}

@app.post("/api/suppliers/batch")
async def create_suppliers_batch(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    entries = data.get("suppliers", data.get("names"))
    if isinstance(entries, str):
        entries = entries.splitlines()
    if not isinstance(entries, list):
        raise HTTPException(400, "A list of suppliers is required")
    rows = []
    for entry in entries:
        item = entry if isinstance(entry, dict) else {"name": entry}
        name = _text(item.get("name"), 200, "name")
        if name:
            rows.append((name, _text(item.get("phone"), 50, "phone"), _text(item.get("notes"), 2000, "notes")))
    if not rows:
        raise HTTPException(400, "No valid supplier names to import")
    with _transaction("Supplier import") as db:
        now = _now()
        for row in rows:
            db.execute("INSERT INTO suppliers(name,phone,notes,created_at) VALUES(?,?,?,?)", row + (now,))
    audit_log(user["username"], "batch_create", "suppliers", "batch", f"{len(rows)} of {len(entries)}")
    return {"ok": True, "created": len(rows), "total": len(entries)}

@app.put("/api/suppliers/{sid}")
async def update_supplier(sid: int, request: Request, user=Depends(get_user)):
    name, phone, notes = _supplier_fields(await read_body(request))
    with _transaction("Supplier update") as db:
        _one(db, "SELECT id FROM suppliers WHERE id=?", (sid,), "Supplier not found")
        db.execute("UPDATE suppliers SET name=?, phone=?, notes=? WHERE id=?", (name, phone, notes, sid))
    audit_log(user["username"], "update", "suppliers", sid, f"Supplier: {name}")
    return {"ok": True}

@app.delete("/api/suppliers/{sid}")
def delete_supplier(sid: int, user=Depends(get_user)):
    with _transaction("Supplier deletion") as db:
        _one(db, "SELECT id FROM suppliers WHERE id=?", (sid,), "Supplier not found")
        if _one(db, "SELECT id FROM supplier_deliveries WHERE supplier_id=? LIMIT 1", (sid,)) or \
                _one(db, "SELECT id FROM supplier_advance_transactions WHERE supplier_id=? LIMIT 1", (sid,)):
            raise HTTPException(400, "Supplier has deliveries or advances and cannot be deleted")
        db.execute("DELETE FROM suppliers WHERE id=?", (sid,))
    audit_log(user["username"], "delete", "suppliers", sid)
    return {"ok": True}

# ── Supplier deliveries ──
DELIVERY_SELECT = """SELECT d.*, s.name AS supplier_name, p.name AS product_name, w.name AS warehouse_name,
        m.name AS material_name
    FROM supplier_deliveries d
    JOIN suppliers s ON s.id=d.supplier_id
    JOIN products p ON p.id=d.product_id
    JOIN warehouses w ON w.id=d.warehouse_id
    LEFT JOIN products m ON m.id=d.material_product_id"""

def _delivery_fields(db, data):
    f = {
        "supplier_id": _to_int(data.get("supplier_id"), "supplier_id"),
        "product_id": _to_int(data.get("product_id"), "product_id"),
        "warehouse_id": _to_int(data.get("warehouse_id"), "warehouse_id"),
        "quantity": _to_float(data.get("quantity"), "quantity"),
        "price_per_unit": _to_float(data.get("price_per_unit"), "price_per_unit", required=False),
        "material_product_id": _to_int(data.get("material_product_id"), "material_product_id", required=False),
        "material_quantity": _to_float(data.get("material_quantity"), "material_quantity", required=False),
        "notes": _text(data.get("notes"), 2000, "notes"),
    }
    if f["quantity"] <= 0:
        raise HTTPException(400, "quantity must be greater than zero")
    if f["price_per_unit"] is not None and f["price_per_unit"] < 0:
        raise HTTPException(400, "price_per_unit cannot be negative")
    if f["material_quantity"] is not None and f["material_quantity"] < 0:
        raise HTTPException(400, "material_quantity cannot be negative")
    _one(db, "SELECT id FROM suppliers WHERE id=?", (f["supplier_id"],), "Supplier not found")
    _one(db, "SELECT id FROM products WHERE id=?", (f["product_id"],), "Product not found")
    _one(db, "SELECT id FROM warehouses WHERE id=?", (f["warehouse_id"],), "Warehouse not found")
    if f["material_product_id"] is not None:
        _one(db, "SELECT id FROM products WHERE id=?", (f["material_product_id"],), "Material not found")
    return f

@app.get("/api/supplier-deliveries")
def get_supplier_deliveries(supplier_id: Optional[int] = None, user=Depends(get_user)):
    db = database.get_db()
    try:
        if supplier_id is not None:
            return _all(db, f"{DELIVERY_SELECT} WHERE d.supplier_id=? ORDER BY d.created_at DESC, d.id DESC", (supplier_id,))
        return _all(db, f"{DELIVERY_SELECT} ORDER BY d.created_at DESC, d.id DESC")
    finally:
        db.close()

@app.post("/api/supplier-deliveries")
async def create_supplier_delivery(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    created_at = _stamp_from_date(data.get("delivery_date"), "delivery_date")
    with _transaction("Delivery creation") as db:
        f = _delivery_fields(db, data)
        did = database.insert_returning_id(db, """INSERT INTO supplier_deliveries(supplier_id,product_id,warehouse_id,
                quantity,price_per_unit,material_product_id,material_quantity,notes,created_at)
                VALUES(?,?,?,?,?,?,?,?,?)""",
            (f["supplier_id"], f["product_id"], f["warehouse_id"], f["quantity"], f["price_per_unit"],
             f["material_product_id"], f["material_quantity"], f["notes"], created_at))
        _add_warehouse_stock(db, f["warehouse_id"], f["product_id"], f["quantity"])
        db.execute("""INSERT INTO inventory_transactions(product_id,warehouse_id,quantity,transaction_type,
                reference_id,notes,created_by,created_at) VALUES(?,?,?,'income',?,?,?,?)""",
                   (f["product_id"], f["warehouse_id"], f["quantity"], str(did),
                    f"Supplier delivery #{did}", user["username"], created_at))
    audit_log(user["username"], "create", "supplier_deliveries", did, f"{f['quantity']} of product {f['product_id']}")
    return {"ok": True, "id": did}

@app.put("/api/supplier-deliveries/{did}")
async def update_supplier_delivery(did: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Delivery update") as db:
        old = _one(db, "SELECT * FROM supplier_deliveries WHERE id=?", (did,), "Delivery not found")
        f = _delivery_fields(db, {**old, **data})
        created_at = _stamp_from_date(data["delivery_date"], "delivery_date") if data.get("delivery_date") else old["created_at"]
        if f["warehouse_id"] != old["warehouse_id"] or f["product_id"] != old["product_id"]:
            _add_warehouse_stock(db, old["warehouse_id"], old["product_id"], -(old["quantity"] or 0))
            _add_warehouse_stock(db, f["warehouse_id"], f["product_id"], f["quantity"])
        else:
            diff = f["quantity"] - (old["quantity"] or 0)
            if diff:
                _add_warehouse_stock(db, f["warehouse_id"], f["product_id"], diff)
        db.execute("""UPDATE supplier_deliveries SET supplier_id=?, product_id=?, warehouse_id=?, quantity=?,
                price_per_unit=?, material_product_id=?, material_quantity=?, notes=?, created_at=? WHERE id=?""",
                   (f["supplier_id"], f["product_id"], f["warehouse_id"], f["quantity"], f["price_per_unit"],
                    f["material_product_id"], f["material_quantity"], f["notes"], created_at, did))
        updated = db.execute("""UPDATE inventory_transactions SET product_id=?, warehouse_id=?, quantity=?, created_at=?
                WHERE transaction_type='income' AND reference_id=?""",
                             (f["product_id"], f["warehouse_id"], f["quantity"], created_at, str(did))).rowcount
        if not updated:
            db.execute("""INSERT INTO inventory_transactions(product_id,warehouse_id,quantity,transaction_type,
                    reference_id,notes,created_by,created_at) VALUES(?,?,?,'income',?,?,?,?)""",
                       (f["product_id"], f["warehouse_id"], f["quantity"], str(did),
                        f"Supplier delivery #{did}", user["username"], created_at))
    audit_log(user["username"], "update", "supplier_deliveries", did, f"{old['quantity']} -> {f['quantity']}")
    return {"ok": True}

@app.delete("/api/supplier-deliveries/{did}")
def delete_supplier_delivery(did: int, user=Depends(get_user)):
    with _transaction("Delivery deletion") as db:
        old = _one(db, "SELECT * FROM supplier_deliveries WHERE id=?", (did,), "Delivery not found")
        _add_warehouse_stock(db, old["warehouse_id"], old["product_id"], -(old["quantity"] or 0))
        db.execute("DELETE FROM inventory_transactions WHERE transaction_type='income' AND reference_id=?", (str(did),))
        db.execute("DELETE FROM supplier_deliveries WHERE id=?", (did,))
    audit_log(user["username"], "delete", "supplier_deliveries", did)
    return {"ok": True}

# ── Supplier advances ──
def _advance_fields(db, data):
    supplier_id = _to_int(data.get("supplier_id"), "supplier_id")
    amount = _to_float(data.get("amount"), "amount")
    if amount <= 0:
        raise HTTPException(400, "amount must be greater than zero")
    _one(db, "SELECT id FROM suppliers WHERE id=?", (supplier_id,), "Supplier not found")
    return supplier_id, amount, _text(data.get("notes"), 2000, "notes")

@app.get("/api/supplier-advances")
def get_supplier_advances(supplier_id: Optional[int] = None, user=Depends(get_user)):
    sql = """SELECT a.*, s.name AS supplier_name FROM supplier_advance_transactions a
        JOIN suppliers s ON s.id=a.supplier_id"""
    db = database.get_db()
    try:
        if supplier_id is not None:
            return _all(db, f"{sql} WHERE a.supplier_id=? ORDER BY a.created_at DESC, a.id DESC", (supplier_id,))
        return _all(db, f"{sql} ORDER BY a.created_at DESC, a.id DESC")
    finally:
        db.close()

@app.post("/api/supplier-advances")
async def create_supplier_advance(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    created_at = _stamp_from_date(data.get("date"))
    with _transaction("Advance creation") as db:
        supplier_id, amount, notes = _advance_fields(db, data)
        aid = database.insert_returning_id(db,
            "INSERT INTO supplier_advance_transactions(supplier_id,amount,notes,created_at) VALUES(?,?,?,?)",
            (supplier_id, amount, notes, created_at))
    audit_log(user["username"], "create", "supplier_advance_transactions", aid, f"{amount} to supplier {supplier_id}")
    return {"ok": True, "id": aid}

@app.put("/api/supplier-advances/{aid}")
async def update_supplier_advance(aid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Advance update") as db:
        old = _one(db, "SELECT * FROM supplier_advance_transactions WHERE id=?", (aid,), "Advance not found")
        supplier_id, amount, notes = _advance_fields(db, {**old, **data})
        created_at = _stamp_from_date(data["date"]) if data.get("date") else old["created_at"]
        db.execute("UPDATE supplier_advance_transactions SET supplier_id=?, amount=?, notes=?, created_at=? WHERE id=?",
                   (supplier_id, amount, notes, created_at, aid))
    audit_log(user["username"], "update", "supplier_advance_transactions", aid, f"{old['amount']} -> {amount}")
    return {"ok": True}

@app.delete("/api/supplier-advances/{aid}")
def delete_supplier_advance(aid: int, user=Depends(get_user)):
    with _transaction("Advance deletion") as db:
        _one(db, "SELECT id FROM supplier_advance_transactions WHERE id=?", (aid,), "Advance not found")
        db.execute("DELETE FROM supplier_advance_transactions WHERE id=?", (aid,))
    audit_log(user["username"], "delete", "supplier_advance_transactions", aid)
    return {"ok": True}

# ── Tasks ──
TASK_STATUSES = ("pending", "completed")
TASK_PRIORITIES = ("low", "medium", "high")

def _task_fields(data):
    title = _text(data.get("title"), 500, "title")
    if not title:
        raise HTTPException(400, "Task title is required")
    priority = data.get("priority") or "medium"
    if priority not in TASK_PRIORITIES:
        raise HTTPException(400, f"Invalid priority: {priority}")
    return {"title": title, "description": _text(data.get("description"), 2000, "description"),
            "priority": priority, "due_date": _to_date(data.get("due_date"), "due_date", required=False)}

@app.get("/api/tasks")
def get_tasks(user=Depends(get_user)):
    return q("tasks", order="created_at DESC, id DESC")

@app.get("/api/tasks/active")
def get_active_tasks(user=Depends(get_user)):
    return q("tasks", "status='pending'", order="created_at DESC, id DESC", limit=5)

@app.post("/api/tasks")
async def create_task(request: Request, user=Depends(get_user)):
    f = _task_fields(await read_body(request))
    with _transaction("Task creation") as db:
        tid = database.insert_returning_id(db,
            "INSERT INTO tasks(title,description,status,priority,due_date,created_at) VALUES(?,?,'pending',?,?,?)",
            (f["title"], f["description"], f["priority"], f["due_date"], _now()))
    audit_log(user["username"], "create", "tasks", tid, f["title"])
    return {"ok": True, "id": tid}

@app.put("/api/tasks/{tid}")
async def update_task(tid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    f = _task_fields(data)
    with _transaction("Task update") as db:
        old = _one(db, "SELECT * FROM tasks WHERE id=?", (tid,), "Task not found")
        status = data.get("status") or old["status"]
        if status not in TASK_STATUSES:
            raise HTTPException(400, f"Invalid status: {status}")
        completed_at = (old["completed_at"] or _now()) if status == "completed" else None
        db.execute("UPDATE tasks SET title=?, description=?, priority=?, due_date=?, status=?, completed_at=? WHERE id=?",
                   (f["title"], f["description"], f["priority"], f["due_date"], status, completed_at, tid))
    audit_log(user["username"], "update", "tasks", tid, f["title"])
    return {"ok": True}

@app.put("/api/tasks/{tid}/status")
async def update_task_status(tid: int, request: Request, user=Depends(get_user)):
    status = (await read_body(request)).get("status")
    if status not in TASK_STATUSES:
        raise HTTPException(400, f"Invalid status: {status}")
    completed_at = _now() if status == "completed" else None
    with _transaction("Task status update") as db:
        _one(db, "SELECT id FROM tasks WHERE id=?", (tid,), "Task not found")
        db.execute("UPDATE tasks SET status=?, completed_at=? WHERE id=?", (status, completed_at, tid))
    audit_log(user["username"], "update_status", "tasks", tid, status)
    return {"ok": True, "status": status, "completed_at": completed_at}

@app.delete("/api/tasks/{tid}")
def delete_task(tid: int, user=Depends(get_user)):
    with _transaction("Task deletion") as db:
        _one(db, "SELECT id FROM tasks WHERE id=?", (tid,), "Task not found")
        db.execute("DELETE FROM tasks WHERE id=?", (tid,))
    audit_log(user["username"], "delete", "tasks", tid)
    return {"ok": True}

# ── Expenses ──
@app.get("/api/expense-categories")
def get_expense_categories(user=Depends(get_user)):
    return q("expense_categories", order="name ASC")

@app.post("/api/expense-categories")
async def create_expense_category(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Category name is required")
    with _transaction("Expense category creation") as db:
        cid = database.insert_returning_id(db,
            "INSERT INTO expense_categories(name,description,created_at) VALUES(?,?,?)",
            (name, _text(data.get("description"), 2000, "description"), _now()))
    audit_log(user["username"], "create", "expense_categories", cid, name)
    return {"ok": True, "id": cid}

@app.put("/api/expense-categories/{cid}")
async def update_expense_category(cid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    name = _text(data.get("name"), 200, "name")
    if not name:
        raise HTTPException(400, "Category name cannot be empty")
    with _transaction("Expense category update") as db:
        _one(db, "SELECT id FROM expense_categories WHERE id=?", (cid,), "Expense category not found")
        db.execute("UPDATE expense_categories SET name=?, description=? WHERE id=?",
                   (name, _text(data.get("description"), 2000, "description"), cid))
    audit_log(user["username"], "update", "expense_categories", cid, name)
    return {"ok": True}

@app.delete("/api/expense-categories/{cid}")
def delete_expense_category(cid: int, user=Depends(get_user)):
    with _transaction("Expense category deletion") as db:
        _one(db, "SELECT id FROM expense_categories WHERE id=?", (cid,), "Expense category not found")
        if _one(db, "SELECT id FROM expenses WHERE category_id=? LIMIT 1", (cid,)):
            raise HTTPException(400, "Category has expenses and cannot be deleted")
        db.execute("DELETE FROM expense_categories WHERE id=?", (cid,))
    audit_log(user["username"], "delete", "expense_categories", cid)
    return {"ok": True}

def _expense_fields(db, data):
    category_id = _to_int(data.get("category_id"), "category_id")
    amount = _to_float(data.get("amount"), "amount")
    if amount <= 0:
        raise HTTPException(400, "amount must be greater than zero")
    if not _one(db, "SELECT id FROM expense_categories WHERE id=?", (category_id,)):
        raise HTTPException(400, "Expense category not found")
    expense_date = _to_date(data.get("expense_date", data.get("date")), "date", required=False) or date.today().isoformat()
    return category_id, amount, _text(data.get("description"), 2000, "description"), expense_date

@app.get("/api/expenses")
def get_expenses(user=Depends(get_user)):
    db = database.get_db()
    try:
        return _all(db, """SELECT e.*, c.name AS category_name FROM expenses e
            JOIN expense_categories c ON c.id=e.category_id
            ORDER BY e.expense_date DESC, e.id DESC""")
    finally:
        db.close()

@app.post("/api/expenses")
async def create_expense(request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Expense creation") as db:
        category_id, amount, description, expense_date = _expense_fields(db, data)
        eid = database.insert_returning_id(db,
            "INSERT INTO expenses(category_id,amount,description,expense_date,created_at) VALUES(?,?,?,?,?)",
            (category_id, amount, description, expense_date, _now()))
    audit_log(user["username"], "create", "expenses", eid, f"{amount} on {expense_date}")
    return {"ok": True, "id": eid}

@app.put("/api/expenses/{eid}")
async def update_expense(eid: int, request: Request, user=Depends(get_user)):
    data = await read_body(request)
    with _transaction("Expense update") as db:
        _one(db, "SELECT id FROM expenses WHERE id=?", (eid,), "Expense not found")
        category_id, amount, description, expense_date = _expense_fields(db, data)
        db.execute("UPDATE expenses SET category_id=?, amount=?, description=?, expense_date=? WHERE id=?",
                   (category_id, amount, description, expense_date, eid))
    audit_log(user["username"], "update", "expenses", eid, f"{amount} on {expense_date}")
    return {"ok": True}

@app.delete("/api/expenses/{eid}")
def delete_expense(eid: int, user=Depends(get_user)):
    with _transaction("Expense deletion") as db:
        _one(db, "SELECT id FROM expenses WHERE id=?", (eid,), "Expense not found")
        db.execute("DELETE FROM expenses WHERE id=?", (eid,))
    audit_log(user["username"], "delete", "expenses", eid)
    return {"ok": True}

PERIODS = ("year", "month", "week", "day")

@app.get("/api/expenses/summary")
def get_expense_summary(period: str = "month", date_from: Optional[str] = Query(None, alias="from"),
                        date_to: Optional[str] = Query(None, alias="to"),
                        user=Depends(get_user)):
    """Spending for a period: expenses by category, supplier purchases, completed-shift product wages"""
    if period not in PERIODS:
        raise HTTPException(400, f"Invalid period: {period}")
    start = _to_date(date_from, "date_from", required=False) or calc.expense_period_start(period).isoformat()
    end = _to_date(date_to, "date_to", required=False) or calc.period_end(period).isoformat()
    # exclusive upper bound so timestamps on the last day are included
    end_excl = (date.fromisoformat(end) + timedelta(days=1)).isoformat()
    db = database.get_db()
    try:
        by_category = _all(db, """SELECT c.name AS category, SUM(e.amount) AS total
            FROM expenses e JOIN expense_categories c ON c.id=e.category_id
            WHERE e.expense_date >= ? AND e.expense_date < ?
            GROUP BY c.name ORDER BY c.name""", (start, end_excl))
        purchases = db.execute("""SELECT COALESCE(SUM(quantity * price_per_unit), 0) FROM supplier_deliveries
            WHERE price_per_unit IS NOT NULL AND created_at >= ? AND created_at < ?""", (start, end_excl)).fetchone()[0]
        wages = db.execute("""SELECT COALESCE(SUM(pr.quantity * p.reward), 0)
            FROM production pr JOIN shifts s ON s.id=pr.shift_id JOIN products p ON p.id=pr.product_id
            WHERE p.reward > 0 AND s.status='completed'
              AND COALESCE(s.completed_at, s.shift_date) >= ? AND COALESCE(s.completed_at, s.shift_date) < ?""",
                           (start, end_excl)).fetchone()[0]
    finally:
        db.close()
    expenses_total = sum(r["total"] or 0 for r in by_category)
    return {
        "period": period, "from": start, "to": end,
        "by_category": [{"category": r["category"], "total": calc.r2(r["total"] or 0)} for r in by_category],
        "expenses_total": calc.r2(expenses_total),
        "supplier_purchases": calc.r2(purchases or 0),
        "product_wages": calc.r2(wages or 0),
        "grand_total": calc.r2(expenses_total + (purchases or 0) + (wages or 0)),
    }

# ── Statistics & home ──
def _production_stats(db, period):
    start = calc.period_start(period).isoformat()
    rows = _all(db, """SELECT pr.quantity, c.name AS category_name
        FROM production pr JOIN shifts s ON s.id=pr.shift_id
        JOIN products p ON p.id=pr.product_id
        LEFT JOIN product_categories c ON c.id=p.category_id
        WHERE s.shift_date >= ?""", (start,))
    total = 0
    by_category = {}
    for r in rows:
        qty = math.floor((r["quantity"] or 0) + 0.5)
        total += qty
        name = r["category_name"] or calc.UNCATEGORIZED
        by_category[name] = by_category.get(name, 0) + qty
    return {"period": period, "from": start, "total_production": total, "production_by_category": by_category}

@app.get("/api/statistics/production")
def get_production_stats(period: str = "year", user=Depends(get_user)):
    if period not in ("year", "month", "week"):
        raise HTTPException(400, f"Invalid period: {period}")
    db = database.get_db()
    try:
        return _production_stats(db, period)
    finally:
        db.close()

@app.get("/api/home")
def get_home(user=Depends(get_user)):
    db = database.get_db()
    try:
        recent = _attach_shift_details(db, _all(db, "SELECT * FROM shifts ORDER BY shift_date DESC, id DESC LIMIT 10"))
        count = lambda sql: db.execute(sql).fetchone()[0]
        return {
            "recent_shifts": recent,
            "active_shifts_count": count("SELECT COUNT(*) FROM shifts WHERE status='active'"),
            "employees_count": count("SELECT COUNT(*) FROM employees"),
            "products_count": count("SELECT COUNT(*) FROM products WHERE product_type='finished' OR product_type IS NULL"),
            "materials_count": count("SELECT COUNT(*) FROM products WHERE product_type='material'"),
            "total_inventory": _total_inventory(db),
            "production_stats": _production_stats(db, "year"),
            "active_tasks": _all(db, "SELECT * FROM tasks WHERE status='pending' ORDER BY created_at DESC, id DESC LIMIT 5"),
        }
    finally:
        db.close()

# ── Vehicles ──
def _optional_number(value):
    """Blank, non-numeric and negative inputs become None"""
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number >= 0 else None

def _required_text(value, max_len, message):
    value = "" if value is None else str(value).strip()
    if not value:
        raise ValueError(message)
    if len(value) > max_len:
        raise ValueError(f"must be at most {max_len} characters")
    return value

class VehicleForm(BaseModel):
    name: str
    type: Literal["van", "truck"]
    default_fuel_consumption_l_per_100km: Optional[float] = None
    default_depreciation_uah_per_km: Optional[float] = None
    default_daily_taxes_uah: Optional[float] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v):
        return _required_text(v, 200, "Enter the vehicle name")

    @field_validator("default_fuel_consumption_l_per_100km", "default_depreciation_uah_per_km",
                     "default_daily_taxes_uah", mode="before")
    @classmethod
    def _numbers(cls, v):
        return _optional_number(v)

class TripForm(BaseModel):
    name: str
    trip_date: str
    vehicle_id: str
    trip_type: Literal["raw", "commerce"]
    start_odometer_km: Optional[float] = None
    end_odometer_km: Optional[float] = None
    fuel_consumption_l_per_100km: Optional[float] = None
    fuel_price_uah_per_l: Optional[float] = None
    depreciation_uah_per_km: Optional[float] = None
    days_count: int = 1
    daily_taxes_uah: Optional[float] = None
    freight_uah: Optional[float] = None
    driver_pay_mode: Literal["per_trip", "per_day"] = "per_trip"
    driver_pay_uah: Optional[float] = None
    driver_pay_uah_per_day: Optional[float] = None
    extra_costs_uah: Optional[float] = None
    notes: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v):
        return _required_text(v, 500, "Enter the trip name")

    @field_validator("trip_date", mode="before")
    @classmethod
    def _trip_date(cls, v):
        return _required_text(v, 50, "Enter the trip date")

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def _vehicle(cls, v):
        return _required_text(v, 100, "Choose a vehicle")

    @field_validator("start_odometer_km", "end_odometer_km", "fuel_consumption_l_per_100km",
                     "fuel_price_uah_per_l", "depreciation_uah_per_km", "daily_taxes_uah", "freight_uah",
                     "driver_pay_uah", "driver_pay_uah_per_day", "extra_costs_uah", mode="before")
    @classmethod
    def _numbers(cls, v):
        return _optional_number(v)

    @field_validator("days_count", mode="before")
    @classmethod
    def _days(cls, v):
        n = _optional_number(v)
        return int(math.floor(n)) if n is not None and n >= 1 else 1

    @field_validator("driver_pay_mode", mode="before")
    @classmethod
    def _pay_mode(cls, v):
        return v or "per_trip"

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        if len(v) > 2000:
            raise ValueError("must be at most 2000 characters")
        return v or None

    @field_validator("end_odometer_km")
    @classmethod
    def _end_after_start(cls, v, info: ValidationInfo):
        if (v or 0) < (info.data.get("start_odometer_km") or 0):
            raise ValueError("end_odometer_km cannot be less than start_odometer_km")
        return v

def _vehicle_row(form: VehicleForm):
    defaults = calc.TYPE_DEFAULTS[form.type]
    return {
        "name": form.name,
        "type": form.type,
        "default_fuel_consumption_l_per_100km": form.default_fuel_consumption_l_per_100km
            if form.default_fuel_consumption_l_per_100km is not None else defaults["fuel"],
        "default_depreciation_uah_per_km": form.default_depreciation_uah_per_km
            if form.default_depreciation_uah_per_km is not None else defaults["depreciation"],
        "default_daily_taxes_uah": form.default_daily_taxes_uah
            if form.default_daily_taxes_uah is not None else defaults["daily_taxes"],
    }

def _own_vehicle(db, vid, username):
    return _one(db, "SELECT * FROM vehicles WHERE id=? AND user_id=?", (vid, username), "Vehicle not found")

@app.get("/api/vehicles")
def get_vehicles(user=Depends(get_user)):
    return q("vehicles", "user_id=?", (user["username"],), order="name ASC")

@app.get("/api/vehicles/{vid}")
def get_vehicle(vid: str, user=Depends(get_user)):
    db = database.get_db()
    try:
        return _own_vehicle(db, vid, user["username"])
    finally:
        db.close()

@app.post("/api/vehicles")
async def create_vehicle(request: Request, user=Depends(get_user)):
    row = _vehicle_row(_parse_form(VehicleForm, await read_body(request)))
    row["id"] = f"VH-{uuid.uuid4().hex[:8].upper()}"
    with _transaction("Vehicle creation") as db:
        db.execute("""INSERT INTO vehicles(id,user_id,name,type,default_fuel_consumption_l_per_100km,
                default_depreciation_uah_per_km,default_daily_taxes_uah,created_at) VALUES(?,?,?,?,?,?,?,?)""",
                   (row["id"], user["username"], row["name"], row["type"], row["default_fuel_consumption_l_per_100km"],
                    row["default_depreciation_uah_per_km"], row["default_daily_taxes_uah"], _now()))
    audit_log(user["username"], "create", "vehicles", row["id"], row["name"])
    return {"ok": True, "id": row["id"], "vehicle": row}

@app.put("/api/vehicles/{vid}")
async def update_vehicle(vid: str, request: Request, user=Depends(get_user)):
    row = _vehicle_row(_parse_form(VehicleForm, await read_body(request)))
    with _transaction("Vehicle update") as db:
        _own_vehicle(db, vid, user["username"])
        db.execute("""UPDATE vehicles SET name=?, type=?, default_fuel_consumption_l_per_100km=?,
                default_depreciation_uah_per_km=?, default_daily_taxes_uah=? WHERE id=? AND user_id=?""",
                   (row["name"], row["type"], row["default_fuel_consumption_l_per_100km"],
                    row["default_depreciation_uah_per_km"], row["default_daily_taxes_uah"], vid, user["username"]))
    audit_log(user["username"], "update", "vehicles", vid, row["name"])
    return {"ok": True}

@app.delete("/api/vehicles/{vid}")
def delete_vehicle(vid: str, user=Depends(get_user)):
    with _transaction("Vehicle deletion") as db:
        _own_vehicle(db, vid, user["username"])
        if _one(db, "SELECT id FROM trips WHERE vehicle_id=? LIMIT 1", (vid,)):
            raise HTTPException(400, "Vehicle has trips and cannot be deleted")
        db.execute("DELETE FROM vehicles WHERE id=? AND user_id=?", (vid, user["username"]))
    audit_log(user["username"], "delete", "vehicles", vid)
    return {"ok": True}

# ── Trips ──
TRIP_INPUT_FIELDS = ("vehicle_id", "name", "trip_date", "trip_type", "start_odometer_km", "end_odometer_km",
                     "fuel_consumption_l_per_100km", "fuel_price_uah_per_l", "depreciation_uah_per_km",
                     "days_count", "daily_taxes_uah", "freight_uah", "driver_pay_mode", "driver_pay_uah",
                     "driver_pay_uah_per_day", "extra_costs_uah", "notes")
TRIP_METRIC_FIELDS = ("distance_km", "fuel_used_l", "fuel_cost_uah", "depreciation_cost_uah", "taxes_cost_uah",
                      "driver_cost_uah", "total_costs_uah", "profit_uah", "profit_per_km_uah", "roi_percent")

def _trip_row(db, form: TripForm, username):
    """Form values plus vehicle defaults, storage defaults and computed metrics"""
    vehicle = _own_vehicle(db, form.vehicle_id, username)
    row = form.model_dump()
    if row["fuel_consumption_l_per_100km"] is None:
        row["fuel_consumption_l_per_100km"] = vehicle["default_fuel_consumption_l_per_100km"]
    if row["depreciation_uah_per_km"] is None:
        row["depreciation_uah_per_km"] = vehicle["default_depreciation_uah_per_km"]
    if row["daily_taxes_uah"] is None:
        row["daily_taxes_uah"] = vehicle["default_daily_taxes_uah"]
    for key, default in (("daily_taxes_uah", 150), ("freight_uah", 0), ("driver_pay_uah", 0),
                         ("driver_pay_uah_per_day", 0), ("extra_costs_uah", 0)):
        if row[key] is None:
            row[key] = default
    try:
        metrics = calc.calculate_trip_metrics(row)
    except ValueError as e:
        raise HTTPException(400, str(e))
    row.update({k: metrics[k] for k in TRIP_METRIC_FIELDS})
    row["profit_status"] = metrics["status"]
    return row

TRIP_LIST_SELECT = """SELECT t.id, t.name, t.trip_date, t.trip_type, t.vehicle_id, v.name AS vehicle_name,
        t.distance_km, t.total_costs_uah, t.freight_uah, t.profit_uah, t.roi_percent, t.profit_status
    FROM trips t JOIN vehicles v ON v.id=t.vehicle_id"""

@app.get("/api/trips")
def get_trips(vehicle_id: Optional[str] = None, user=Depends(get_user)):
    db = database.get_db()
    try:
        if vehicle_id:
            return _all(db, f"{TRIP_LIST_SELECT} WHERE t.user_id=? AND t.vehicle_id=? ORDER BY t.trip_date DESC, t.created_at DESC",
                        (user["username"], vehicle_id))
        return _all(db, f"{TRIP_LIST_SELECT} WHERE t.user_id=? ORDER BY t.trip_date DESC, t.created_at DESC",
                    (user["username"],))
    finally:
        db.close()

@app.get("/api/trips/summary")
def get_trips_summary(vehicle_id: Optional[str] = None, user=Depends(get_user)):
    where, params = "user_id=?", [user["username"]]
    if vehicle_id:
        where += " AND vehicle_id=?"; params.append(vehicle_id)
    db = database.get_db()
    try:
        row = _one(db, f"""SELECT COUNT(*) AS trips, COALESCE(SUM(distance_km),0) AS distance_km,
                COALESCE(SUM(freight_uah),0) AS freight_uah, COALESCE(SUM(total_costs_uah),0) AS total_costs_uah,
                COALESCE(SUM(profit_uah),0) AS profit_uah
            FROM trips WHERE {where}""", tuple(params))
    finally:
        db.close()
    total_costs = row["total_costs_uah"] or 0
    profit = row["profit_uah"] or 0
    return {
        "trips": row["trips"],
        "distance_km": calc.r2(row["distance_km"] or 0),
        "freight_uah": calc.r2(row["freight_uah"] or 0),
        "total_costs_uah": calc.r2(total_costs),
        "profit_uah": calc.r2(profit),
        "roi_percent": calc.r2(profit / total_costs * 100) if total_costs > 0 else 0,
    }

@app.post("/api/trips/preview")
async def preview_trip(request: Request, user=Depends(get_user)):
    form = _parse_form(TripForm, await read_body(request))
    db = database.get_db()
    try:
        row = _trip_row(db, form, user["username"])
    finally:
        db.close()
    return {**{k: row[k] for k in TRIP_METRIC_FIELDS}, "status": row["profit_status"]}

@app.get("/api/trips/{tid}")
def get_trip(tid: str, user=Depends(get_user)):
    db = database.get_db()
    try:
        return _one(db, """SELECT t.*, v.name AS vehicle_name, v.type AS vehicle_type
            FROM trips t JOIN vehicles v ON v.id=t.vehicle_id
            WHERE t.id=? AND t.user_id=?""", (tid, user["username"]), "Trip not found")
    finally:
        db.close()

@app.post("/api/trips")
async def create_trip(request: Request, user=Depends(get_user)):
    form = _parse_form(TripForm, await read_body(request))
    tid = f"TR-{uuid.uuid4().hex[:10].upper()}"
    with _transaction("Trip creation") as db:
        row = _trip_row(db, form, user["username"])
        cols = ("id", "user_id") + TRIP_INPUT_FIELDS + TRIP_METRIC_FIELDS + ("profit_status", "created_at", "updated_at")
        now = _now()
        values = [tid, user["username"]] + [row[k] for k in TRIP_INPUT_FIELDS + TRIP_METRIC_FIELDS] + [row["profit_status"], now, now]
        db.execute(f"INSERT INTO trips({','.join(cols)}) VALUES({','.join(['?'] * len(cols))})", values)
    audit_log(user["username"], "create", "trips", tid, f"{form.name}: profit {row['profit_uah']}")
    return {"ok": True, "id": tid, "metrics": {**{k: row[k] for k in TRIP_METRIC_FIELDS}, "status": row["profit_status"]}}

@app.put("/api/trips/{tid}")
async def update_trip(tid: str, request: Request, user=Depends(get_user)):
    form = _parse_form(TripForm, await read_body(request))
    with _transaction("Trip update") as db:
        _one(db, "SELECT id FROM trips WHERE id=? AND user_id=?", (tid, user["username"]), "Trip not found")
        row = _trip_row(db, form, user["username"])
        fields = TRIP_INPUT_FIELDS + TRIP_METRIC_FIELDS + ("profit_status",)
        sets = ",".join(f"{k}=?" for k in fields)
        db.execute(f"UPDATE trips SET {sets}, updated_at=? WHERE id=? AND user_id=?",
                   [row[k] for k in fields] + [_now(), tid, user["username"]])
    audit_log(user["username"], "update", "trips", tid, f"{form.name}: profit {row['profit_uah']}")
    return {"ok": True, "metrics": {**{k: row[k] for k in TRIP_METRIC_FIELDS}, "status": row["profit_status"]}}

@app.delete("/api/trips/{tid}")
def delete_trip(tid: str, user=Depends(get_user)):
    with _transaction("Trip deletion") as db:
        _one(db, "SELECT id FROM trips WHERE id=? AND user_id=?", (tid, user["username"]), "Trip not found")
        db.execute("DELETE FROM trips WHERE id=? AND user_id=?", (tid, user["username"]))
    audit_log(user["username"], "delete", "trips", tid)
    return {"ok": True}

# ── Static Files & SPA ──
@app.get("/{path:path}")
def spa(path: str):
    root = os.path.realpath(STATIC_DIR)
    fp = os.path.realpath(os.path.join(root, path))
    # only files inside the static bundle are served
    if path and os.path.commonpath([fp, root]) == root and os.path.isfile(fp): return FileResponse(fp)
    idx = os.path.join(STATIC_DIR, "index.html")
    if os.path.isfile(idx): return FileResponse(idx)
    return JSONResponse({"msg": "Shiftdesk API running"})

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))

    # Route uvicorn lifecycle logs to stdout so INFO lines are not tagged as errors.
    log_config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    log_config["handlers"]["default"]["stream"] = "ext://sys.stdout"
    log_config["handlers"]["access"]["stream"] = "ext://sys.stdout"

    uvicorn.run(app, host="0.0.0.0", port=port, log_config=log_config)

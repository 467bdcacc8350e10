"""Shiftdesk Database — shifts, production, inventory, suppliers, tasks, expenses, trips
Database Abstraction Layer supporting both SQLite and PostgreSQL
"""
import os, hashlib

DB_PATH = os.environ.get("DB_PATH") or os.path.join(os.path.dirname(__file__), "shiftdesk.db")
DATABASE_URL = os.environ.get("DATABASE_URL", "")

# Determine database type based on DATABASE_URL
USE_POSTGRES = DATABASE_URL.startswith("postgresql://") or DATABASE_URL.startswith("postgres://")

if USE_POSTGRES:
    import psycopg2
    import psycopg2.extras
else:
    import sqlite3


class PgRowWrapper:
    """Wraps PostgreSQL RealDictRow to support both integer and string indexing"""
    def __init__(self, row):
        self._row = row
        self._keys = list(row.keys())

    def __getitem__(self, key):
        if isinstance(key, int):
            return self._row[self._keys[key]]
        return self._row[key]

    def __contains__(self, key):
        return key in self._row

    def __repr__(self):
        return repr(self._row)

    def __len__(self):
        return len(self._row)

    def keys(self):
        return self._row.keys()

    def get(self, key, default=None):
        if isinstance(key, int):
            try:
                return self._row[self._keys[key]]
            except IndexError:
                return default
        return self._row.get(key, default)


class CursorWrapper:
    """Wrapper for cursor to handle placeholder conversion and result formatting"""
    def __init__(self, cursor, is_postgres=False):
        self._cursor = cursor
        self._is_postgres = is_postgres

    def _convert_placeholders(self, sql):
        """Convert ? placeholders to %s for PostgreSQL, skipping quoted literals"""
        if not self._is_postgres or '?' not in sql:
            return sql
        result = []
        in_single_quote = False
        in_double_quote = False
        for char in sql:
            if char == "'" and not in_double_quote:
                in_single_quote = not in_single_quote
                result.append(char)
            elif char == '"' and not in_single_quote:
                in_double_quote = not in_double_quote
                result.append(char)
            elif char == '?' and not in_single_quote and not in_double_quote:
                result.append('%s')
            else:
                result.append(char)
        return ''.join(result)

    def execute(self, sql, params=()):
        sql = self._convert_placeholders(sql)
        return self._cursor.execute(sql, params)

    def executemany(self, sql, params_list):
        sql = self._convert_placeholders(sql)
        return self._cursor.executemany(sql, params_list)

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is not None and self._is_postgres:
            return PgRowWrapper(row)
        return row

    def fetchall(self):
        rows = self._cursor.fetchall()
        if self._is_postgres:
            return [PgRowWrapper(r) for r in rows]
        return rows

    @property
    def rowcount(self):
        return self._cursor.rowcount

    @property
    def lastrowid(self):
        return self._cursor.lastrowid


class DBWrapper:
    """Wrapper for database connection to handle differences between SQLite and PostgreSQL"""
    def __init__(self, conn, is_postgres=False):
        self._conn = conn
        self._is_postgres = is_postgres

    @property
    def is_postgres(self):
        return self._is_postgres

    def execute(self, sql, params=()):
        cursor = self.cursor()
        cursor.execute(sql, params)
        return cursor

    def cursor(self):
        if self._is_postgres:
            raw_cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
        else:
            raw_cursor = self._conn.cursor()
        return CursorWrapper(raw_cursor, self._is_postgres)

    def commit(self):
        return self._conn.commit()

    def rollback(self):
        return self._conn.rollback()

    def close(self):
        return self._conn.close()


def get_db():
    """Get database connection with abstraction layer"""
    if USE_POSTGRES:
        conn = psycopg2.connect(DATABASE_URL, connect_timeout=5)
        conn.autocommit = False
        return DBWrapper(conn, is_postgres=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return DBWrapper(conn, is_postgres=False)


def insert_returning_id(db, sql, params=()):
    """Run an INSERT and return the generated integer id"""
    if db.is_postgres:
        return db.execute(sql + " RETURNING id", params).fetchone()["id"]
    return db.execute(sql, params).lastrowid


def _adapt_sql_for_db(sql):
    """Adapt SQL statement for the current database type"""
    if USE_POSTGRES:
        sql = sql.replace("DEFAULT (datetime('now'))", "DEFAULT CURRENT_TIMESTAMP")
        sql = sql.replace("datetime('now')", "CURRENT_TIMESTAMP")
        sql = sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
    return sql


def init_db():
    conn = get_db(); c = conn.cursor()
    tables = [
    # ── Accounts ──
    """CREATE TABLE IF NOT EXISTS users (
        username TEXT PRIMARY KEY, password_hash TEXT NOT NULL,
        display_name TEXT, role TEXT DEFAULT 'worker',
        active INTEGER DEFAULT 1, created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS settings (
        id INTEGER PRIMARY KEY,
        telegram_bot_token TEXT, telegram_chat_id TEXT,
        updated_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS audit_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT DEFAULT (datetime('now')),
        username TEXT, action TEXT, target_table TEXT, target_id TEXT,
        details TEXT)""",
    # ── Staff & Shifts ──
    """CREATE TABLE IF NOT EXISTS employees (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL, position TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS shifts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shift_date TEXT NOT NULL, status TEXT DEFAULT 'active', notes TEXT,
        created_at TEXT DEFAULT (datetime('now')),
        opened_at TEXT, completed_at TEXT)""",
    """CREATE TABLE IF NOT EXISTS shift_employees (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shift_id INTEGER NOT NULL REFERENCES shifts(id) ON DELETE CASCADE,
        employee_id INTEGER NOT NULL REFERENCES employees(id),
        created_at TEXT DEFAULT (datetime('now')),
        UNIQUE(shift_id, employee_id))""",
    # ── Catalogue ──
    """CREATE TABLE IF NOT EXISTS product_categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL, description TEXT,
        category_id INTEGER REFERENCES product_categories(id) ON DELETE SET NULL,
        product_type TEXT DEFAULT 'finished',
        reward REAL, cost REAL,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS production (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        shift_id INTEGER NOT NULL REFERENCES shifts(id) ON DELETE CASCADE,
        product_id INTEGER NOT NULL REFERENCES products(id),
        quantity REAL DEFAULT 0,
        created_at TEXT DEFAULT (datetime('now')),
        UNIQUE(shift_id, product_id))""",
    # ── Stock ──
    """CREATE TABLE IF NOT EXISTS warehouses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL, location TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS inventory (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id INTEGER NOT NULL UNIQUE REFERENCES products(id) ON DELETE CASCADE,
        quantity REAL DEFAULT 0,
        updated_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS warehouse_inventory (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        warehouse_id INTEGER NOT NULL REFERENCES warehouses(id),
        product_id INTEGER NOT NULL REFERENCES products(id) ON DELETE CASCADE,
        quantity REAL DEFAULT 0,
        updated_at TEXT DEFAULT (datetime('now')),
        UNIQUE(warehouse_id, product_id))""",
    """CREATE TABLE IF NOT EXISTS inventory_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        product_id INTEGER NOT NULL REFERENCES products(id) ON DELETE CASCADE,
        warehouse_id INTEGER,
        quantity REAL NOT NULL,
        transaction_type TEXT NOT NULL,
        reference_id TEXT, notes TEXT, created_by TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    # ── Suppliers ──
    """CREATE TABLE IF NOT EXISTS suppliers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL, phone TEXT, notes TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS supplier_deliveries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        supplier_id INTEGER NOT NULL REFERENCES suppliers(id),
        product_id INTEGER NOT NULL REFERENCES products(id),
        warehouse_id INTEGER NOT NULL REFERENCES warehouses(id),
        quantity REAL NOT NULL, price_per_unit REAL,
        material_product_id INTEGER REFERENCES products(id),
        material_quantity REAL, notes TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS supplier_advance_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        supplier_id INTEGER NOT NULL REFERENCES suppliers(id),
        amount REAL NOT NULL, notes TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    # ── Tasks & Expenses ──
    """CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL, description TEXT,
        status TEXT DEFAULT 'pending', priority TEXT DEFAULT 'medium',
        due_date TEXT, completed_at TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS expense_categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL, description TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS expenses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        category_id INTEGER NOT NULL REFERENCES expense_categories(id),
        amount REAL NOT NULL, description TEXT, expense_date TEXT,
        created_at TEXT DEFAULT (datetime('now')))""",
    # ── Fleet ──
    """CREATE TABLE IF NOT EXISTS vehicles (
        id TEXT PRIMARY KEY, user_id TEXT NOT NULL,
        name TEXT NOT NULL, type TEXT DEFAULT 'van',
        default_fuel_consumption_l_per_100km REAL,
        default_depreciation_uah_per_km REAL,
        default_daily_taxes_uah REAL,
        created_at TEXT DEFAULT (datetime('now')))""",
    """CREATE TABLE IF NOT EXISTS trips (
        id TEXT PRIMARY KEY, user_id TEXT NOT NULL,
        vehicle_id TEXT NOT NULL REFERENCES vehicles(id),
        name TEXT NOT NULL, trip_date TEXT NOT NULL, trip_type TEXT DEFAULT 'raw',
        start_odometer_km REAL, end_odometer_km REAL,
        fuel_consumption_l_per_100km REAL, fuel_price_uah_per_l REAL,
        depreciation_uah_per_km REAL, days_count INTEGER DEFAULT 1,
        daily_taxes_uah REAL, freight_uah REAL,
        driver_pay_mode TEXT DEFAULT 'per_trip',
        driver_pay_uah REAL, driver_pay_uah_per_day REAL,
        extra_costs_uah REAL, notes TEXT,
        distance_km REAL, fuel_used_l REAL, fuel_cost_uah REAL,
        depreciation_cost_uah REAL, taxes_cost_uah REAL, driver_cost_uah REAL,
        total_costs_uah REAL, profit_uah REAL, profit_per_km_uah REAL,
        roi_percent REAL, profit_status TEXT,
        created_at TEXT DEFAULT (datetime('now')), updated_at TEXT)""",
    ]
    for sql in tables:
        c.execute(_adapt_sql_for_db(sql))

    indexes = [
        "CREATE INDEX IF NOT EXISTS idx_shifts_date ON shifts(shift_date)",
        "CREATE INDEX IF NOT EXISTS idx_production_shift ON production(shift_id)",
        "CREATE INDEX IF NOT EXISTS idx_inv_tx_product ON inventory_transactions(product_id)",
        "CREATE INDEX IF NOT EXISTS idx_trips_user ON trips(user_id, trip_date)",
    ]
    for idx_sql in indexes:
        c.execute(_adapt_sql_for_db(idx_sql))

    conn.commit(); conn.close()


def hash_password(password):
    return hashlib.sha256(password.encode()).hexdigest()


def verify_password(password, hashed):
    return hash_password(password) == hashed


def ensure_demo_users():
    """Make sure one login per role exists (used for role testing after deploy)"""
    demo_users = [
        ("owner", "owner123", "Owner", "owner"),
        ("admin", "admin123", "Administrator", "admin"),
        ("worker", "worker123", "Shift worker", "worker"),
    ]
    conn = get_db(); c = conn.cursor()
    for username, password, display_name, role in demo_users:
        c.execute(
            """INSERT INTO users(username,password_hash,display_name,role,active)
               VALUES(?,?,?,?,1)
               ON CONFLICT(username) DO UPDATE SET
                   password_hash=excluded.password_hash,
                   display_name=excluded.display_name,
                   role=excluded.role,
                   active=1""",
            (username, hash_password(password), display_name, role),
        )
    conn.commit(); conn.close()


def seed_data():
    conn = get_db(); c = conn.cursor()
    if c.execute("SELECT COUNT(*) AS n FROM warehouses").fetchone()[0] > 0:
        conn.close(); return

    c.execute("INSERT INTO settings(id) VALUES(1)")

    for name, location in [("Main warehouse", "Workshop"), ("Yard storage", "Outdoor yard")]:
        c.execute("INSERT INTO warehouses(name,location) VALUES(?,?)", (name, location))

    cats = {}
    for name in ["Paving", "Blocks", "Materials"]:
        cats[name] = insert_returning_id(conn, "INSERT INTO product_categories(name) VALUES(?)", (name,))

    # ── Finished goods ──
    for name, cat, reward, cost in [
        ("Paving tile 30x30", "Paving", 2.5, 18.0),
        ("Paving tile 50x50", "Paving", 4.0, 32.0),
        ("Curb stone", "Paving", 3.0, 25.0),
        ("Foundation block", "Blocks", 6.0, 55.0),
        ("Partition block", "Blocks", 3.5, 30.0),
    ]:
        pid = insert_returning_id(conn,
            "INSERT INTO products(name,category_id,product_type,reward,cost) VALUES(?,?,'finished',?,?)",
            (name, cats[cat], reward, cost))
        c.execute("INSERT INTO inventory(product_id,quantity) VALUES(?,0)", (pid,))

    # ── Raw materials ──
    for name, cost in [("Cement M500", 210.0), ("Sand", 450.0), ("Gravel", 600.0), ("Pigment", 95.0)]:
        c.execute(
            "INSERT INTO products(name,category_id,product_type,reward,cost) VALUES(?,?,'material',NULL,?)",
            (name, cats["Materials"], cost))

    for name, position in [("Ivan Petrenko", "Press operator"), ("Olena Koval", "Mixer"),
                           ("Taras Bondar", "Loader"), ("Maria Shevchenko", "Quality control")]:
        c.execute("INSERT INTO employees(name,position) VALUES(?,?)", (name, position))

    for name, desc in [("Utilities", "Electricity, water, gas"), ("Rent", "Workshop and yard"),
                       ("Fuel", "Fuel outside of trips"), ("Repairs", "Equipment maintenance")]:
        c.execute("INSERT INTO expense_categories(name,description) VALUES(?,?)", (name, desc))

    for name, phone in [("BudMix LLC", "+380441112233"), ("Sand Quarry 7", "+380672223344")]:
        c.execute("INSERT INTO suppliers(name,phone) VALUES(?,?)", (name, phone))

    conn.commit(); conn.close()
    print("✅ DB seeded with demo catalogue")


if __name__ == "__main__":
    if os.path.exists(DB_PATH): os.remove(DB_PATH)
    init_db(); seed_data(); ensure_demo_users()

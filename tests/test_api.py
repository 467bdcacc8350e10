"""Tests for the Shiftdesk API endpoints."""
import os
import pytest
from httpx import AsyncClient, ASGITransport

# Use a separate test database
os.environ["DATABASE_URL"] = ""

from app import app  # noqa: E402
import database  # noqa: E402


def _remove_db():
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(database.DB_PATH + suffix):
            os.remove(database.DB_PATH + suffix)


@pytest.fixture(autouse=True)
def setup_db():
    """Initialize a fresh test database for each test."""
    _remove_db()
    database.init_db()
    database.seed_data()
    database.ensure_demo_users()
    yield
    _remove_db()


@pytest.fixture
def admin_token():
    """Get admin auth token."""
    from app import make_token
    return make_token("admin", "admin")


@pytest.fixture
def auth_headers(admin_token):
    """Return headers with admin token."""
    return {"Authorization": f"Bearer {admin_token}"}


@pytest.fixture
def owner_headers():
    from app import make_token
    return {"Authorization": f"Bearer {make_token('owner', 'owner')}"}


@pytest.fixture
def worker_headers():
    from app import make_token
    return {"Authorization": f"Bearer {make_token('worker', 'worker')}"}


def _client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _inventory_qty(rows, product_id):
    return next(r["quantity"] for r in rows if r["product_id"] == product_id and r["kind"] == "finished")


@pytest.mark.asyncio
async def test_health_check():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        r = await ac.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


# ── Auth & roles ──

@pytest.mark.asyncio
async def test_login_success():
    async with _client() as ac:
        r = await ac.post("/api/login", json={"username": "admin", "password": "admin123"})
    assert r.status_code == 200
    data = r.json()
    assert "token" in data
    assert data["user"]["role"] == "admin"
    assert data["user"]["role_label"] == "Administrator"


@pytest.mark.asyncio
async def test_login_failure():
    async with _client() as ac:
        r = await ac.post("/api/login", json={"username": "admin", "password": "wrong"})
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_unauthorized_access():
    async with _client() as ac:
        r = await ac.get("/api/employees")
        r2 = await ac.get("/api/employees", headers={"Authorization": "Bearer garbage.sig"})
    assert r.status_code == 401
    assert r2.status_code == 401


@pytest.mark.asyncio
async def test_signup_creates_worker():
    async with _client() as ac:
        r = await ac.post("/api/signup", json={"username": "newbie", "password": "secret1"})
        assert r.status_code == 200
        token = r.json()["token"]
        me = await ac.get("/api/me", headers={"Authorization": f"Bearer {token}"})
        dup = await ac.post("/api/signup", json={"username": "newbie", "password": "secret1"})
        short = await ac.post("/api/signup", json={"username": "other", "password": "123"})
    assert me.json()["role"] == "worker"
    assert "/users" not in me.json()["pages"]
    assert dup.status_code == 400
    assert short.status_code == 400


@pytest.mark.asyncio
async def test_invalid_role_is_reset_to_worker(auth_headers):
    db = database.get_db()
    db.execute("UPDATE users SET role='superuser' WHERE username='admin'")
    db.commit(); db.close()
    async with _client() as ac:
        r = await ac.get("/api/me", headers=auth_headers)
        users = await ac.get("/api/users", headers=auth_headers)
    assert r.json()["role"] == "worker"
    assert users.status_code == 403
    db = database.get_db()
    assert db.execute("SELECT role FROM users WHERE username='admin'").fetchone()["role"] == "worker"
    db.close()


@pytest.mark.asyncio
async def test_page_permissions(auth_headers, worker_headers):
    async with _client() as ac:
        worker = await ac.get("/api/pages", params={"path": "/users"}, headers=worker_headers)
        worker_user = await ac.get("/api/pages", params={"path": "/user/profile"}, headers=worker_headers)
        admin = await ac.get("/api/pages", params={"path": "/users"}, headers=auth_headers)
    assert worker.json()["allowed"] is False
    assert worker_user.json()["allowed"] is True
    assert admin.json()["allowed"] is True


@pytest.mark.asyncio
async def test_only_owner_grants_owner(auth_headers, owner_headers):
    async with _client() as ac:
        r = await ac.put("/api/users/worker/role", headers=auth_headers, json={"role": "owner"})
        assert r.status_code == 403
        r = await ac.put("/api/users/worker/role", headers=owner_headers, json={"role": "owner"})
        assert r.status_code == 200
        r = await ac.put("/api/users/worker/role", headers=owner_headers, json={"role": "boss"})
        assert r.status_code == 400
        r = await ac.put("/api/users/admin/role", headers=auth_headers, json={"role": "worker"})
        assert r.status_code == 400


@pytest.mark.asyncio
async def test_user_admin_requires_manager(worker_headers, auth_headers):
    async with _client() as ac:
        r = await ac.get("/api/users", headers=worker_headers)
        assert r.status_code == 403
        r = await ac.get("/api/users", headers=auth_headers)
        assert r.status_code == 200
        assert all("password_hash" not in u for u in r.json())
        r = await ac.delete("/api/users/admin", headers=auth_headers)
        assert r.status_code == 400
        r = await ac.delete("/api/users/owner", headers=auth_headers)
        assert r.status_code == 403
        r = await ac.delete("/api/users/worker", headers=auth_headers)
        assert r.status_code == 200


@pytest.mark.asyncio
async def test_telegram_settings_are_masked(owner_headers):
    async with _client() as ac:
        r = await ac.put("/api/settings/telegram", headers=owner_headers,
                         json={"telegram_bot_token": "123456:ABCDEF", "telegram_chat_id": "-100"})
        assert r.status_code == 200
        r = await ac.get("/api/settings/telegram", headers=owner_headers)
    data = r.json()
    assert data["telegram_bot_token"] == "1234***"
    assert data["configured"] is True


# ── Employees & catalogue ──

@pytest.mark.asyncio
async def test_create_employee_validation(auth_headers):
    async with _client() as ac:
        # Missing name should fail
        r = await ac.post("/api/employees", headers=auth_headers, json={})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_create_employee_from_form(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/employees", headers=auth_headers,
                          data={"name": "Petro Lysenko", "position": "Driver"})
        assert r.status_code == 200
        eid = r.json()["id"]
        r = await ac.get(f"/api/employees/{eid}", headers=auth_headers)
    assert r.json()["position"] == "Driver"


@pytest.mark.asyncio
async def test_update_and_delete_employee(auth_headers):
    async with _client() as ac:
        r = await ac.put("/api/employees/4", headers=auth_headers, json={"name": "Maria S.", "position": "QC"})
        assert r.status_code == 200
        r = await ac.delete("/api/employees/4", headers=auth_headers)
        assert r.status_code == 200
        r = await ac.delete("/api/employees/4", headers=auth_headers)
        assert r.status_code == 404


@pytest.mark.asyncio
async def test_employee_on_shift_cannot_be_deleted(auth_headers):
    async with _client() as ac:
        await ac.post("/api/shifts/with-employees", headers=auth_headers,
                      json={"shift_date": "2026-05-04", "employee_ids": [1]})
        r = await ac.delete("/api/employees/1", headers=auth_headers)
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_audit_logging(auth_headers):
    """Test that create operations produce audit log entries."""
    async with _client() as ac:
        await ac.post("/api/employees", headers=auth_headers, json={"name": "Audit Check"})
        r = await ac.get("/api/logs", headers=auth_headers)
    assert r.status_code == 200
    create_logs = [l for l in r.json() if l.get("action") == "create" and l.get("target_table") == "employees"]
    assert len(create_logs) > 0


@pytest.mark.asyncio
async def test_products_and_materials_are_separate(auth_headers):
    async with _client() as ac:
        products = (await ac.get("/api/products", headers=auth_headers)).json()
        materials = (await ac.get("/api/materials", headers=auth_headers)).json()
        paving = (await ac.get("/api/products/by-category", params={"name": "Paving"}, headers=auth_headers)).json()
    assert len(products) == 5
    assert len(materials) == 4
    assert all(m["reward"] is None for m in materials)
    assert {p["name"] for p in paving} == {"Paving tile 30x30", "Paving tile 50x50", "Curb stone"}


@pytest.mark.asyncio
async def test_create_product_adds_inventory_row(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/products", headers=auth_headers,
                          json={"name": "Garden border", "category_id": 1, "reward": "1.5", "cost": 12})
        assert r.status_code == 200
        pid = r.json()["id"]
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
        bad = await ac.post("/api/products", headers=auth_headers, json={"name": "X", "reward": -1})
        missing_cat = await ac.post("/api/products", headers=auth_headers, json={"name": "X", "category_id": 999})
    assert _inventory_qty(inv, pid) == 0
    assert bad.status_code == 400
    assert missing_cat.status_code == 404


@pytest.mark.asyncio
async def test_material_crud(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/materials", headers=auth_headers, json={"name": "Plasticizer", "cost": 80})
        mid = r.json()["id"]
        r = await ac.put(f"/api/materials/{mid}", headers=auth_headers, json={"name": "Plasticizer S", "cost": 85})
        assert r.status_code == 200
        # a material is not editable through the products endpoint
        r = await ac.put(f"/api/products/{mid}", headers=auth_headers, json={"name": "Oops"})
        assert r.status_code == 404
        r = await ac.delete(f"/api/materials/{mid}", headers=auth_headers)
        assert r.status_code == 200


@pytest.mark.asyncio
async def test_delete_category_detaches_products(auth_headers):
    async with _client() as ac:
        r = await ac.delete("/api/categories/2", headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["updated_products"] == 2
        products = (await ac.get("/api/products", headers=auth_headers)).json()
    block = next(p for p in products if p["name"] == "Foundation block")
    assert block["category_id"] is None


# ── Shifts & production ──

async def _shift_with_production(ac, headers, items, employees=(1, 2)):
    r = await ac.post("/api/shifts/with-employees", headers=headers,
                      json={"shift_date": "2026-05-04", "employee_ids": list(employees)})
    assert r.status_code == 200
    sid = r.json()["id"]
    for product_id, quantity in items:
        r = await ac.put(f"/api/shifts/{sid}/production", headers=headers,
                         json={"product_id": product_id, "quantity": quantity})
        assert r.status_code == 200
    return sid


@pytest.mark.asyncio
async def test_create_shift_validation(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/shifts", headers=auth_headers, json={})
        assert r.status_code == 400
        r = await ac.post("/api/shifts/with-employees", headers=auth_headers,
                          json={"shift_date": "2026-05-04", "employee_ids": []})
        assert r.status_code == 400
        r = await ac.post("/api/shifts/with-employees", headers=auth_headers,
                          json={"shift_date": "2026-05-04", "employee_ids": [999]})
        assert r.status_code == 400


@pytest.mark.asyncio
async def test_shift_roster(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/shifts", headers=auth_headers,
                          json={"shift_date": "2026-05-04", "opened_at": "2026-05-04"})
        sid = r.json()["id"]
        r = await ac.post(f"/api/shifts/{sid}/employees", headers=auth_headers, json={"employee_id": 3})
        assert r.status_code == 200
        r = await ac.post(f"/api/shifts/{sid}/employees", headers=auth_headers, json={"employee_id": 3})
        assert r.status_code == 400
        shift = (await ac.get(f"/api/shifts/{sid}", headers=auth_headers)).json()
        assert shift["opened_at"] == "2026-05-04T09:00:00"
        assert [e["employee_id"] for e in shift["employees"]] == [3]
        r = await ac.delete(f"/api/shifts/{sid}/employees/3", headers=auth_headers)
        assert r.status_code == 200
        r = await ac.delete(f"/api/shifts/{sid}/employees/3", headers=auth_headers)
        assert r.status_code == 404


@pytest.mark.asyncio
async def test_production_upsert(auth_headers):
    async with _client() as ac:
        sid = await _shift_with_production(ac, auth_headers, [(1, 100), (1, 120), (2, 40)])
        shift = (await ac.get(f"/api/shifts/{sid}", headers=auth_headers)).json()
        r = await ac.put(f"/api/shifts/{sid}/production", headers=auth_headers,
                         json={"product_id": 1, "quantity": -5})
        assert r.status_code == 400
        r = await ac.put(f"/api/shifts/{sid}/production", headers=auth_headers,
                         json={"product_id": 6, "quantity": 5})
        assert r.status_code == 400
    assert {p["product_id"]: p["quantity"] for p in shift["production"]} == {1: 120, 2: 40}
    assert shift["total_production"] == 160


@pytest.mark.asyncio
async def test_complete_shift_moves_production_to_inventory(auth_headers):
    async with _client() as ac:
        sid = await _shift_with_production(ac, auth_headers, [(1, 100), (4, 20), (5, 0)])
        r = await ac.post(f"/api/shifts/{sid}/complete", headers=auth_headers)
        assert r.status_code == 200
        assert r.json()["total_production"] == 120
        again = await ac.post(f"/api/shifts/{sid}/complete", headers=auth_headers)
        locked = await ac.put(f"/api/shifts/{sid}/production", headers=auth_headers,
                              json={"product_id": 1, "quantity": 1})
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
        txs = (await ac.get("/api/inventory/transactions", params={"transaction_type": "production"},
                            headers=auth_headers)).json()
        active = (await ac.get("/api/shifts/active", headers=auth_headers)).json()
    assert again.status_code == 400
    assert locked.status_code == 400
    assert _inventory_qty(inv, 1) == 100
    assert _inventory_qty(inv, 4) == 20
    assert len(txs) == 2
    assert all(t["reference_id"] == str(sid) and t["warehouse_name"] == "Main warehouse" for t in txs)
    assert sid not in [s["id"] for s in active]


@pytest.mark.asyncio
async def test_delete_completed_shift_reverses_inventory(auth_headers):
    async with _client() as ac:
        sid = await _shift_with_production(ac, auth_headers, [(2, 30)])
        await ac.post(f"/api/shifts/{sid}/complete", headers=auth_headers)
        r = await ac.delete(f"/api/shifts/{sid}", headers=auth_headers)
        assert r.json()["reversed_items"] == 1
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
        r = await ac.get(f"/api/shifts/{sid}", headers=auth_headers)
    assert _inventory_qty(inv, 2) == 0
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_delete_active_shift_keeps_inventory(auth_headers):
    async with _client() as ac:
        sid = await _shift_with_production(ac, auth_headers, [(2, 30)])
        r = await ac.delete(f"/api/shifts/{sid}", headers=auth_headers)
        txs = (await ac.get("/api/inventory/transactions", headers=auth_headers)).json()
    assert r.json()["reversed_items"] == 0
    assert txs == []


@pytest.mark.asyncio
async def test_shift_wages(auth_headers):
    async with _client() as ac:
        sid = await _shift_with_production(ac, auth_headers, [(1, 100), (4, 10)])
        r = await ac.get(f"/api/shifts/{sid}/wages", params={"hours": 8}, headers=auth_headers)
        bad = await ac.get(f"/api/shifts/{sid}/wages", params={"hourly_rate": -1}, headers=auth_headers)
    data = r.json()
    # 100 * 2.5 + 10 * 6.0
    assert data["product_wages"] == 310
    assert data["hourly_wages"] == 800
    assert data["total_wages"] == 1110
    assert bad.status_code == 400


# ── Inventory ──

@pytest.mark.asyncio
async def test_adjust_inventory(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/inventory/adjust", headers=auth_headers, json={"product_id": 3, "quantity": 50})
        assert r.json()["adjustment"] == 50
        r = await ac.post("/api/inventory/adjust", headers=auth_headers, json={"product_id": 3, "quantity": 50})
        assert r.json()["changed"] is False
        r = await ac.post("/api/inventory/adjust", headers=auth_headers, json={"product_id": 3, "quantity": -1})
        assert r.status_code == 400
        txs = (await ac.get("/api/inventory/transactions", params={"product_id": 3}, headers=auth_headers)).json()
        total = (await ac.get("/api/inventory/total", headers=auth_headers)).json()
    assert len(txs) == 1
    assert txs[0]["notes"] == "Manual quantity adjustment"
    assert total["total"] == 50


@pytest.mark.asyncio
async def test_ship_inventory(auth_headers):
    async with _client() as ac:
        await ac.post("/api/inventory/adjust", headers=auth_headers, json={"product_id": 1, "quantity": 10})
        r = await ac.post("/api/inventory/ship", headers=auth_headers, json={"product_id": 1, "quantity": 15})
        assert r.status_code == 400
        assert r.json()["detail"] == "Insufficient stock. Available: 10"
        r = await ac.post("/api/inventory/ship", headers=auth_headers, json={"product_id": 1, "quantity": 0})
        assert r.status_code == 400
        r = await ac.post("/api/inventory/ship", headers=auth_headers, json={"product_id": 1, "quantity": 4})
        assert r.status_code == 200
        txs = (await ac.get("/api/inventory/transactions", params={"transaction_type": "shipment"},
                            headers=auth_headers)).json()
    assert r.json()["remaining"] == 6
    assert txs[0]["quantity"] == -4


@pytest.mark.asyncio
async def test_recalculate_inventory_requires_manager(worker_headers, auth_headers):
    async with _client() as ac:
        await _shift_with_production(ac, auth_headers, [(1, 70)])
        r = await ac.post("/api/inventory/recalculate", headers=worker_headers)
        assert r.status_code == 403
        r = await ac.post("/api/inventory/recalculate", headers=auth_headers)
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
    assert r.json()["updated"] == 1
    assert _inventory_qty(inv, 1) == 70


@pytest.mark.asyncio
async def test_create_warehouse(auth_headers, worker_headers):
    async with _client() as ac:
        r = await ac.post("/api/warehouses", headers=auth_headers, json={})
        assert r.status_code == 400
        r = await ac.post("/api/warehouses", headers=worker_headers, json={"name": "Annex"})
        assert r.status_code == 403
        r = await ac.post("/api/warehouses", headers=auth_headers, json={"name": "Annex"})
        assert r.status_code == 200
        r = await ac.get("/api/warehouses", headers=auth_headers)
    assert "Annex" in [w["name"] for w in r.json()]


# ── Suppliers ──

@pytest.mark.asyncio
async def test_create_supplier_validation(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/suppliers", headers=auth_headers, json={"phone": "123456789"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_supplier_batch(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/suppliers/batch", headers=auth_headers,
                          json={"names": ["Stone Co", "  ", {"name": "Cement Hub", "phone": "+380"}]})
        empty = await ac.post("/api/suppliers/batch", headers=auth_headers, json={"names": ["", " "]})
    assert r.json()["created"] == 2
    assert r.json()["total"] == 3
    assert empty.status_code == 400


@pytest.mark.asyncio
async def test_delivery_updates_stock_and_balance(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/supplier-advances", headers=auth_headers,
                          json={"supplier_id": 1, "amount": 5000, "date": "2026-05-01"})
        assert r.status_code == 200
        r = await ac.post("/api/supplier-deliveries", headers=auth_headers,
                          json={"supplier_id": 1, "product_id": 6, "warehouse_id": 1, "quantity": 10,
                                "price_per_unit": 200, "material_product_id": 7, "material_quantity": 3,
                                "delivery_date": "2026-05-02"})
        assert r.status_code == 200
        did = r.json()["id"]
        supplier = (await ac.get("/api/suppliers/1", headers=auth_headers)).json()
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
        assert supplier["advance"] == 3000
        assert supplier["materials_balance"] == 3
        cement = next(r for r in inv if r["product_id"] == 6)
        assert cement["kind"] == "material" and cement["quantity"] == 10

        r = await ac.put(f"/api/supplier-deliveries/{did}", headers=auth_headers, json={"quantity": 4})
        assert r.status_code == 200
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
        txs = (await ac.get("/api/inventory/transactions", params={"transaction_type": "income"},
                            headers=auth_headers)).json()
        assert next(r for r in inv if r["product_id"] == 6)["quantity"] == 4
        assert [t["quantity"] for t in txs] == [4]

        locked = await ac.delete("/api/suppliers/1", headers=auth_headers)
        assert locked.status_code == 400
        r = await ac.delete(f"/api/supplier-deliveries/{did}", headers=auth_headers)
        assert r.status_code == 200
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
        txs = (await ac.get("/api/inventory/transactions", params={"transaction_type": "income"},
                            headers=auth_headers)).json()
    assert next(r for r in inv if r["product_id"] == 6)["quantity"] == 0
    assert txs == []


@pytest.mark.asyncio
async def test_delivery_moves_between_warehouses(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/supplier-deliveries", headers=auth_headers,
                          json={"supplier_id": 2, "product_id": 7, "warehouse_id": 1, "quantity": 8})
        did = r.json()["id"]
        await ac.put(f"/api/supplier-deliveries/{did}", headers=auth_headers, json={"warehouse_id": 2})
        inv = (await ac.get("/api/inventory", headers=auth_headers)).json()
    # only the main warehouse is listed for materials
    assert next(r for r in inv if r["product_id"] == 7)["quantity"] == 0
    db = database.get_db()
    row = db.execute("SELECT quantity FROM warehouse_inventory WHERE warehouse_id=2 AND product_id=7").fetchone()
    db.close()
    assert row["quantity"] == 8


@pytest.mark.asyncio
async def test_delivery_validation(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/supplier-deliveries", headers=auth_headers,
                          json={"supplier_id": 1, "product_id": 6, "warehouse_id": 1, "quantity": 0})
        assert r.status_code == 400
        r = await ac.post("/api/supplier-deliveries", headers=auth_headers,
                          json={"supplier_id": 99, "product_id": 6, "warehouse_id": 1, "quantity": 1})
        assert r.status_code == 404


@pytest.mark.asyncio
async def test_supplier_advance_crud(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/supplier-advances", headers=auth_headers, json={"supplier_id": 2, "amount": 0})
        assert r.status_code == 400
        r = await ac.post("/api/supplier-advances", headers=auth_headers, json={"supplier_id": 2, "amount": 700})
        aid = r.json()["id"]
        await ac.put(f"/api/supplier-advances/{aid}", headers=auth_headers, json={"amount": 900})
        supplier = (await ac.get("/api/suppliers/2", headers=auth_headers)).json()
        assert supplier["advance"] == 900
        r = await ac.delete(f"/api/supplier-advances/{aid}", headers=auth_headers)
        assert r.status_code == 200
        r = await ac.delete("/api/suppliers/2", headers=auth_headers)
        assert r.status_code == 200


# ── Tasks ──

@pytest.mark.asyncio
async def test_tasks(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/tasks", headers=auth_headers, json={"description": "no title"})
        assert r.status_code == 400
        r = await ac.post("/api/tasks", headers=auth_headers, json={"title": "Order pallets", "priority": "urgent"})
        assert r.status_code == 400
        r = await ac.post("/api/tasks", headers=auth_headers,
                          json={"title": "Order pallets", "priority": "high", "due_date": "2026-06-01"})
        tid = r.json()["id"]
        active = (await ac.get("/api/tasks/active", headers=auth_headers)).json()
        assert tid in [t["id"] for t in active]
        r = await ac.put(f"/api/tasks/{tid}/status", headers=auth_headers, json={"status": "completed"})
        assert r.json()["completed_at"] is not None
        active = (await ac.get("/api/tasks/active", headers=auth_headers)).json()
        assert tid not in [t["id"] for t in active]
        r = await ac.put(f"/api/tasks/{tid}/status", headers=auth_headers, json={"status": "pending"})
        assert r.json()["completed_at"] is None
        r = await ac.delete(f"/api/tasks/{tid}", headers=auth_headers)
        assert r.status_code == 200


@pytest.mark.asyncio
async def test_active_tasks_limited_to_five(auth_headers):
    async with _client() as ac:
        for i in range(7):
            await ac.post("/api/tasks", headers=auth_headers, json={"title": f"Task {i}"})
        active = (await ac.get("/api/tasks/active", headers=auth_headers)).json()
    assert len(active) == 5


# ── Expenses ──

@pytest.mark.asyncio
async def test_create_expense_validation(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/expenses", headers=auth_headers, json={"category_id": 1, "amount": 0})
        assert r.status_code == 400
        r = await ac.post("/api/expenses", headers=auth_headers, json={"category_id": 99, "amount": 10})
        assert r.status_code == 400


@pytest.mark.asyncio
async def test_expense_summary(auth_headers):
    from datetime import date
    today = date.today().isoformat()
    async with _client() as ac:
        await ac.post("/api/expenses", headers=auth_headers,
                      json={"category_id": 1, "amount": 1200.5, "expense_date": today})
        await ac.post("/api/expenses", headers=auth_headers,
                      json={"category_id": 2, "amount": 8000, "expense_date": today})
        await ac.post("/api/expenses", headers=auth_headers,
                      json={"category_id": 2, "amount": 500, "expense_date": "2001-01-01"})
        r = await ac.get("/api/expenses/summary", params={"period": "day"}, headers=auth_headers)
        bad = await ac.get("/api/expenses/summary", params={"period": "decade"}, headers=auth_headers)
        locked = await ac.delete("/api/expense-categories/2", headers=auth_headers)
    data = r.json()
    assert data["expenses_total"] == 9200.5
    assert {c["category"]: c["total"] for c in data["by_category"]} == {"Utilities": 1200.5, "Rent": 8000}
    assert bad.status_code == 400
    assert locked.status_code == 400


# ── Statistics & home ──

@pytest.mark.asyncio
async def test_production_statistics(auth_headers):
    from datetime import date
    async with _client() as ac:
        r = await ac.post("/api/shifts", headers=auth_headers, json={"shift_date": date.today().isoformat()})
        sid = r.json()["id"]
        await ac.put(f"/api/shifts/{sid}/production", headers=auth_headers, json={"product_id": 1, "quantity": 10})
        await ac.put(f"/api/shifts/{sid}/production", headers=auth_headers, json={"product_id": 4, "quantity": 5})
        r = await ac.get("/api/statistics/production", params={"period": "week"}, headers=auth_headers)
        home = (await ac.get("/api/home", headers=auth_headers)).json()
    assert r.json()["total_production"] == 15
    assert r.json()["production_by_category"] == {"Paving": 10, "Blocks": 5}
    assert home["active_shifts_count"] == 1
    assert home["employees_count"] == 4
    assert home["products_count"] == 5
    assert home["recent_shifts"][0]["id"] == sid


# ── Vehicles & trips ──

TRIP = {
    "name": "Kyiv - Bila Tserkva", "trip_date": "2026-05-10", "trip_type": "commerce",
    "start_odometer_km": 0, "end_odometer_km": 100, "fuel_consumption_l_per_100km": 10,
    "fuel_price_uah_per_l": 50, "depreciation_uah_per_km": 2, "days_count": 1,
    "daily_taxes_uah": 150, "freight_uah": 10000, "driver_pay_mode": "per_trip", "driver_pay_uah": 500,
}


async def _vehicle(ac, headers, **extra):
    r = await ac.post("/api/vehicles", headers=headers, json={"name": "Sprinter", "type": "van", **extra})
    assert r.status_code == 200
    return r.json()["id"]


@pytest.mark.asyncio
async def test_vehicle_type_defaults(auth_headers):
    async with _client() as ac:
        vid = await _vehicle(ac, auth_headers)
        r = await ac.post("/api/vehicles", headers=auth_headers, json={"name": "MAN", "type": "truck",
                                                                       "default_fuel_consumption_l_per_100km": "abc"})
        truck = (await ac.get(f"/api/vehicles/{r.json()['id']}", headers=auth_headers)).json()
        van = (await ac.get(f"/api/vehicles/{vid}", headers=auth_headers)).json()
        bad = await ac.post("/api/vehicles", headers=auth_headers, json={"name": "Bus", "type": "bus"})
        blank = await ac.post("/api/vehicles", headers=auth_headers, json={"name": "  ", "type": "van"})
    assert vid.startswith("VH-")
    assert van["default_fuel_consumption_l_per_100km"] == 12
    assert truck["default_fuel_consumption_l_per_100km"] == 30
    assert truck["default_depreciation_uah_per_km"] == 7
    assert bad.status_code == 400
    assert blank.status_code == 400
    assert blank.json()["detail"] == "name: Enter the vehicle name"


@pytest.mark.asyncio
async def test_vehicles_are_scoped_to_user(auth_headers, worker_headers):
    async with _client() as ac:
        vid = await _vehicle(ac, auth_headers)
        r = await ac.get(f"/api/vehicles/{vid}", headers=worker_headers)
        mine = (await ac.get("/api/vehicles", headers=worker_headers)).json()
    assert r.status_code == 404
    assert mine == []


@pytest.mark.asyncio
async def test_trip_metrics_are_stored(auth_headers):
    async with _client() as ac:
        vid = await _vehicle(ac, auth_headers)
        r = await ac.post("/api/trips", headers=auth_headers, json={**TRIP, "vehicle_id": vid})
        assert r.status_code == 200
        tid = r.json()["id"]
        trip = (await ac.get(f"/api/trips/{tid}", headers=auth_headers)).json()
        listing = (await ac.get("/api/trips", headers=auth_headers)).json()
        summary = (await ac.get("/api/trips/summary", headers=auth_headers)).json()
    assert tid.startswith("TR-")
    assert trip["total_costs_uah"] == 1350
    assert trip["profit_uah"] == 8650
    assert trip["profit_per_km_uah"] == 86.5
    assert trip["profit_status"] == "profit"
    assert trip["vehicle_name"] == "Sprinter"
    assert listing[0]["id"] == tid
    assert summary["trips"] == 1
    assert summary["profit_uah"] == 8650


@pytest.mark.asyncio
async def test_trip_uses_vehicle_defaults(auth_headers):
    async with _client() as ac:
        vid = await _vehicle(ac, auth_headers, default_depreciation_uah_per_km=1)
        payload = {**TRIP, "vehicle_id": vid, "fuel_consumption_l_per_100km": "",
                   "depreciation_uah_per_km": None, "daily_taxes_uah": None}
        r = await ac.post("/api/trips/preview", headers=auth_headers, json=payload)
    data = r.json()
    # 12 l/100km * 100 km * 50 + 100 km * 1 + 150 + 500
    assert data["fuel_cost_uah"] == 600
    assert data["depreciation_cost_uah"] == 100
    assert data["total_costs_uah"] == 1350


@pytest.mark.asyncio
async def test_trip_validation(auth_headers):
    async with _client() as ac:
        vid = await _vehicle(ac, auth_headers)
        backwards = await ac.post("/api/trips", headers=auth_headers,
                                  json={**TRIP, "vehicle_id": vid, "start_odometer_km": 500, "end_odometer_km": 100})
        no_name = await ac.post("/api/trips", headers=auth_headers, json={**TRIP, "vehicle_id": vid, "name": " "})
        bad_type = await ac.post("/api/trips", headers=auth_headers,
                                 json={**TRIP, "vehicle_id": vid, "trip_type": "cargo"})
        foreign = await ac.post("/api/trips", headers=auth_headers, json={**TRIP, "vehicle_id": "VH-NOPE"})
    assert backwards.status_code == 400
    assert backwards.json()["detail"] == "end_odometer_km: end_odometer_km cannot be less than start_odometer_km"
    assert no_name.status_code == 400
    assert bad_type.status_code == 400
    assert foreign.status_code == 404


@pytest.mark.asyncio
async def test_trip_update_and_vehicle_delete_guard(auth_headers):
    async with _client() as ac:
        vid = await _vehicle(ac, auth_headers)
        tid = (await ac.post("/api/trips", headers=auth_headers, json={**TRIP, "vehicle_id": vid})).json()["id"]
        r = await ac.put(f"/api/trips/{tid}", headers=auth_headers,
                         json={**TRIP, "vehicle_id": vid, "freight_uah": 1000})
        assert r.json()["metrics"]["status"] == "loss"
        r = await ac.delete(f"/api/vehicles/{vid}", headers=auth_headers)
        assert r.status_code == 400
        r = await ac.delete(f"/api/trips/{tid}", headers=auth_headers)
        assert r.status_code == 200
        r = await ac.delete(f"/api/vehicles/{vid}", headers=auth_headers)
        assert r.status_code == 200


def test_role_helpers():
    from app import has_role_permission, has_any_role
    assert has_role_permission("owner", "admin")
    assert not has_role_permission("worker", "admin")
    assert not has_role_permission(None, "worker")
    assert has_any_role("admin", ["owner", "admin"])
    assert not has_any_role(None, ["worker"])


@pytest.mark.asyncio
async def test_expense_summary_counts_only_completed_shift_wages(auth_headers):
    async with _client() as ac:
        done = await _shift_with_production(ac, auth_headers, [(1, 100)])
        await ac.post(f"/api/shifts/{done}/complete", headers=auth_headers)
        # left open: its output is not a wage expense yet
        await _shift_with_production(ac, auth_headers, [(4, 10)])
        r = await ac.get("/api/expenses/summary", params={"period": "day"}, headers=auth_headers)
    assert r.json()["product_wages"] == 250


@pytest.mark.asyncio
async def test_expense_summary_excludes_future_dates(auth_headers):
    from datetime import date
    next_year = f"{date.today().year + 1}-01-15"
    async with _client() as ac:
        await ac.post("/api/expenses", headers=auth_headers,
                      json={"category_id": 1, "amount": 999, "expense_date": next_year})
        month = (await ac.get("/api/expenses/summary", params={"period": "month"}, headers=auth_headers)).json()
        year = (await ac.get("/api/expenses/summary", params={"period": "year"}, headers=auth_headers)).json()
        custom = (await ac.get("/api/expenses/summary", params={"from": next_year, "to": next_year},
                               headers=auth_headers)).json()
    assert month["expenses_total"] == 0
    assert month["to"] is not None
    assert year["expenses_total"] == 0
    assert year["to"] == f"{date.today().year}-12-31"
    assert custom["expenses_total"] == 999


@pytest.mark.asyncio
async def test_static_files_stay_inside_bundle(tmp_path, monkeypatch):
    import app as app_module
    static = tmp_path / "static"
    static.mkdir()
    (static / "index.html").write_text("INDEX")
    (static / "app.js").write_text("BUNDLE")
    (tmp_path / "secret.txt").write_text("TOPSECRET")
    monkeypatch.setattr(app_module, "STATIC_DIR", str(static))
    async with _client() as ac:
        asset = await ac.get("/app.js")
        escaped = await ac.get("/..%2Fsecret.txt")
    assert asset.text == "BUNDLE"
    assert "TOPSECRET" not in escaped.text
    assert escaped.text == "INDEX"


@pytest.mark.asyncio
async def test_fractional_ids_are_rejected(auth_headers):
    async with _client() as ac:
        r = await ac.post("/api/inventory/adjust", headers=auth_headers, json={"product_id": 1.5, "quantity": 3})
        ok = await ac.post("/api/inventory/adjust", headers=auth_headers, json={"product_id": 1.0, "quantity": 3})
    assert r.status_code == 400
    assert r.json()["detail"] == "product_id must be an integer"
    assert ok.status_code == 200

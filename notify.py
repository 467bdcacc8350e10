"""Telegram notifications for shift reports"""
import os, logging
from html import escape

import httpx

import database
from calc import UNCATEGORIZED

logger = logging.getLogger("shiftdesk")

TELEGRAM_API = "https://api.telegram.org"
TELEGRAM_TIMEOUT = 10


def get_telegram_config():
    """Bot token and chat id from the settings row, falling back to env vars"""
    token = chat_id = None
    db = database.get_db()
    try:
        row = db.execute("SELECT telegram_bot_token, telegram_chat_id FROM settings ORDER BY id LIMIT 1").fetchone()
    finally:
        db.close()
    if row:
        token, chat_id = row["telegram_bot_token"], row["telegram_chat_id"]
    token = token or os.environ.get("TELEGRAM_BOT_TOKEN")
    chat_id = chat_id or os.environ.get("TELEGRAM_CHAT_ID")
    if not token or not chat_id:
        return None
    return {"bot_token": token, "chat_id": chat_id}


def send_telegram_message(message: str) -> bool:
    try:
        config = get_telegram_config()
    except Exception as e:
        logger.error(f"Telegram config lookup failed: {e}")
        return False
    if not config:
        logger.info("Telegram is not configured, skipping notification")
        return False

    try:
        response = httpx.post(
            f"{TELEGRAM_API}/bot{config['bot_token']}/sendMessage",
            json={"chat_id": config["chat_id"], "text": message, "parse_mode": "HTML"},
            timeout=TELEGRAM_TIMEOUT,
        )
    except httpx.TimeoutException:
        logger.error("Telegram notification timed out")
        return False
    except httpx.HTTPError as e:
        logger.error(f"Telegram notification failed: {e}")
        return False

    if response.status_code != 200:
        logger.error(f"Telegram notification failed with status: {response.status_code}")
        return False
    return True


def _qty(value):
    return int(value) if float(value).is_integer() else round(value, 2)


def format_shift_report(shift_id, production, closed_at) -> str:
    """HTML summary of a completed shift: total, per category, per product.

    ``production`` rows carry ``name``, ``quantity`` and ``category_name``.
    """
    by_category = {}
    products_by_category = {}
    total = 0
    for item in production:
        quantity = item.get("quantity") or 0
        if quantity <= 0:
            continue
        category = item.get("category_name") or UNCATEGORIZED
        total += quantity
        by_category[category] = by_category.get(category, 0) + quantity
        products_by_category.setdefault(category, []).append((item.get("name") or "", quantity))

    lines = [
        f"<b>Shift #{shift_id} completed</b>",
        "",
        f"📅 Date: {closed_at.strftime('%d.%m.%Y')}",
        f"⏰ Closed at: {closed_at.strftime('%H:%M:%S')}",
        "",
        f"📦 Total produced: <b>{_qty(total)} pcs</b>",
        "",
        "📊 By category:",
    ]
    lines += [f"• {escape(cat)}: {_qty(qty)} pcs" for cat, qty in by_category.items()]
    lines += ["", "📋 By product:"]
    blocks = []
    for cat, items in products_by_category.items():
        rows = "\n".join(f"  • {escape(name)}: {_qty(qty)} pcs" for name, qty in items)
        blocks.append(f"<b>{escape(cat)}:</b>\n{rows}")
    lines.append("\n\n".join(blocks))
    return "\n".join(lines)

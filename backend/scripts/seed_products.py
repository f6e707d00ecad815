#!/usr/bin/env python3
"""
Seed products (and optionally demo users) into the configured database.

New products get stock_total = stock_available = stock and nothing reserved.
Existing SKUs only get name/price/description refreshed: their counters are
never overwritten because live reservations may depend on them.

Usage:
    python scripts/seed_products.py                     # built-in demo catalogue
    python scripts/seed_products.py --file catalogue.json --users
"""
import argparse
import json
import logging
import os
import sys
from decimal import Decimal

from sqlalchemy import select

from orderflow.db import SessionLocal, init_db
from orderflow.models.product import Product
from orderflow.models.user import User

log = logging.getLogger("seed_products")

DEMO_PRODUCTS = [
    {"sku": "TEA-100", "name": "Tea 100g", "price": "3.00", "stock": 50},
    {"sku": "COF-200", "name": "Coffee 200g", "price": "6.00", "stock": 20},
    {"sku": "CHOC-1", "name": "Dark chocolate", "price": "2.50", "stock": 100},
    {"sku": "MUG-1", "name": "Enamel mug", "price": "12.00", "stock": 5},
]

DEMO_USERS = [
    {"email": "alice@example.com", "name": "Alice", "marketing_consent": True},
    {"email": "bob@example.com", "name": "Bob", "marketing_consent": False},
]


def _normalize_entry(entry):
    """Return {sku, name, price, stock, description} from a loosely shaped entry."""
    sku = entry.get("sku") or entry.get("id") or entry.get("productId")
    if entry.get("price_cents") is not None:
        price = Decimal(str(entry["price_cents"])) / 100
    else:
        price = Decimal(str(entry.get("price", entry.get("amount", 0)) or 0))
    try:
        stock = int(entry.get("stock", entry.get("quantity", 0)) or 0)
    except (TypeError, ValueError):
        stock = 0
    return {
        "sku": str(sku) if sku else None,
        "name": entry.get("name") or entry.get("title") or "",
        "price": price,
        "stock": max(stock, 0),
        "description": entry.get("description") or "",
    }


def load_entries(path):
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data["items"] if isinstance(data.get("items"), list) else list(data.values())
    if not isinstance(data, list):
        raise RuntimeError(f"Unsupported catalogue shape in {path}")
    return [_normalize_entry(e) for e in data]


def seed_products(db, entries):
    created = updated = 0
    for entry in entries:
        if not entry["sku"]:
            continue
        product = db.scalar(select(Product).where(Product.sku == entry["sku"]))
        if product is None:
            db.add(
                Product(
                    sku=entry["sku"],
                    name=entry["name"],
                    description=entry["description"],
                    price=entry["price"],
                    stock_total=entry["stock"],
                    stock_available=entry["stock"],
                    stock_reserved=0,
                    stock_committed=0,
                )
            )
            created += 1
        else:
            product.name = entry["name"] or product.name
            product.description = entry["description"] or product.description
            product.price = entry["price"]
            updated += 1
    return created, updated


def seed_users(db, users):
    created = 0
    for u in users:
        if db.scalar(select(User).where(User.email == u["email"])) is None:
            db.add(User(**u))
            created += 1
    return created


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", "-f", help="Path to a product json (list or {items: [...]})")
    parser.add_argument("--users", action="store_true", help="Also create demo users")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")

    if args.file and not os.path.exists(args.file):
        log.error("File not found: %s", args.file)
        return 1
    entries = load_entries(args.file) if args.file else [_normalize_entry(e) for e in DEMO_PRODUCTS]

    init_db()
    db = SessionLocal()
    try:
        created, updated = seed_products(db, entries)
        users = seed_users(db, DEMO_USERS) if args.users else 0
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    log.info("Seeded products: %d created, %d updated; users created: %d", created, updated, users)
    return 0


if __name__ == "__main__":
    sys.exit(main())

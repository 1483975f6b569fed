"""
stockroom/seed.py

Seed demo users (one per role) and a small stock catalog.

Rules:
- Safe to run multiple times (idempotent).
- Users are matched by username, stock items by serial number.
- Existing users keep their password; their role profile is re-applied.
"""

from __future__ import annotations

from decimal import Decimal

from . import notifications
from .extensions import db
from .models import StockItem, User
from .profiles import apply_profile
from .stock import refresh_alerts


DEMO_USERS = [
    # (username, full name, department, role)
    ("admin", "System Administrator", "IT", "admin"),
    ("stock", "Stock Administrator", "Warehouse", "stock_admin"),
    ("coordinator", "IT Coordinator", "IT", "coordinator"),
    ("manager", "Operations Manager", "Operations", "manager"),
    ("technician", "Field Technician", "IT", "technician"),
    ("analyst", "Systems Analyst", "IT", "analyst"),
    ("intern", "IT Intern", "IT", "intern"),
    ("trainee", "Helpdesk Trainee", "Support", "trainee"),
]

DEMO_STOCK_ITEMS = [
    # (name, serial, category, location, quantity, min quantity, unit value)
    ("Laptop 14\"", "LAP-14-0001", "Computers", "Shelf A1", 8, 3, Decimal("950.00")),
    ("USB-C Dock", "DCK-USBC-0001", "Peripherals", "Shelf A2", 15, 5, Decimal("120.00")),
    ("24\" Monitor", "MON-24-0001", "Displays", "Shelf B1", 6, 2, Decimal("180.00")),
    ("Wireless Mouse", "MSE-WL-0001", "Peripherals", "Shelf C3", 40, 10, Decimal("18.50")),
    ("Mechanical Keyboard", "KBD-MC-0001", "Peripherals", "Shelf C4", 4, 5, Decimal("65.00")),
    ("Network Cable 3m", "CAB-NET-0003", "Cabling", "Drawer D1", 120, 30, Decimal("3.20")),
    ("Headset", "HDS-0001", "Audio", "Shelf C1", 2, 4, Decimal("45.00")),
]


def seed_demo(password: str = "demo1234") -> dict:
    """Create missing demo users and stock items. Returns counts of created rows."""
    created = {"users": 0, "stock_items": 0}

    for username, full_name, department, role in DEMO_USERS:
        user = User.query.filter_by(username=username).first()
        if user is None:
            user = User(
                username=username,
                full_name=full_name,
                department=department,
                email=f"{username}@stockroom.local",
                is_active=True,
            )
            user.set_password(password)
            db.session.add(user)
            created["users"] += 1
        apply_profile(user, role)

    db.session.flush()

    for name, serial, category, location, quantity, min_quantity, unit_value in DEMO_STOCK_ITEMS:
        if StockItem.query.filter_by(serial_number=serial).first():
            continue
        item = StockItem(
            name=name,
            serial_number=serial,
            category=category,
            location=location,
            quantity=quantity,
            min_quantity=min_quantity,
            unit_value=unit_value,
        )
        db.session.add(item)
        db.session.flush()
        refresh_alerts(item)
        created["stock_items"] += 1

    db.session.commit()
    notifications.dispatch_pending()
    return created


def create_admin(username: str, password: str, full_name: str = "Administrator") -> User:
    """Create (or promote) an admin account."""
    user = User.query.filter_by(username=username).first()
    if user is None:
        user = User(username=username, full_name=full_name, is_active=True)
        db.session.add(user)
    user.set_password(password)
    apply_profile(user, "admin")
    db.session.commit()
    return user

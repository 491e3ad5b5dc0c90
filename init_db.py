#!/usr/bin/env python3
"""Create the RPA tables and register the routable portal codes."""

import sys

from rpa_app import create_app
from rpa_app.adapters import PORTAL_ROUTES, UNSUPPORTED_CODES
from rpa_app.extensions import db
from rpa_app.store.records import SqlRecordStore


def init_database() -> bool:
    app = create_app()

    with app.app_context():
        try:
            db.create_all()
            tables = db.inspect(db.engine).get_table_names()
            print(f"Tables: {tables}")

            store = SqlRecordStore(db.session)
            for code, route in PORTAL_ROUTES.items():
                store.ensure_portal(code, name=route.name, enabled=True)
            for code in UNSUPPORTED_CODES:
                store.ensure_portal(code, enabled=False)
            print(f"Portals registered: {len(PORTAL_ROUTES) + len(UNSUPPORTED_CODES)}")
        except Exception as e:  # noqa: BLE001
            print(f"Error creating database: {e}")
            return False

    return True


if __name__ == "__main__":
    sys.exit(0 if init_database() else 1)

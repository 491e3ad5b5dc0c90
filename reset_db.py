#!/usr/bin/env python3
"""
Drop and recreate every RPA table. Destroys visit and run history.
"""
import sys

from rpa_app import create_app
from rpa_app.extensions import db


def main() -> int:
    if "--yes" not in sys.argv[1:]:
        print("Refusing to drop tables without --yes")
        return 2
    app = create_app()

    with app.app_context():
        db.drop_all()
        print("Dropped all tables")
        db.create_all()
        print("Created all tables")
    return 0


if __name__ == "__main__":
    sys.exit(main())

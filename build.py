#!/usr/bin/env python3
"""
Build script for Render deployment.
This script initializes the database and creates necessary tables.
"""
from app import create_app, create_default_superadmin, ensure_school_permissions
from app_models import db


def initialize_database():
    """Initialize database for production deployment."""
    app = create_app()
    with app.app_context():
        print("Creating database tables...")
        db.create_all()

        print("Ensuring every school has feature toggles...")
        created = ensure_school_permissions()
        print(f"Created default feature toggles for {created} school(s).")

        print("Creating default superadmin user...")
        create_default_superadmin()

        print("Database initialization completed successfully!")


if __name__ == "__main__":
    initialize_database()

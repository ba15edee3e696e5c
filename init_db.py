"""
Database Initialization Script
Run this script to recreate all database tables and the default admin user
"""
import sys
from app import create_app, create_default_admin
from models import db


def init_database():
    """Initialize database with tables and the admin account"""

    app = create_app()

    with app.app_context():
        # Drop all tables (use with caution in production!)
        print("Dropping existing tables...")
        db.drop_all()

        # Create all tables
        print("Creating database tables...")
        db.create_all()

    print("Creating default admin user...")
    token = create_default_admin(app)

    print("\n" + "="*50)
    print("Database initialized successfully!")
    print("="*50)
    print("\nAdmin credentials:")
    print(f"  Username:  {app.config['ADMIN_USERNAME']}")
    print(f"  API token: {token}")
    print("\nIMPORTANT: The token is not stored in plain text and will not be shown again!")
    print("="*50 + "\n")


if __name__ == '__main__':
    confirm = input("This will delete all existing data. Continue? (yes/no): ")
    if confirm.lower() != 'yes':
        print("Aborted.")
        sys.exit(0)
    init_database()

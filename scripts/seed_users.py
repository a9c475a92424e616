"""
Create the first staff accounts.

Usage:
    python scripts/seed_users.py --email admin@example.com --name "Admin" --password secret [--role ADMIN]
"""
import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables first
from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import func

from numericalz.db import Base, engine, session_scope
from numericalz.models.models import User
from numericalz.auth.security import ROLES, get_password_hash


def seed_user(email: str, name: str, password: str, role: str = "ADMIN") -> None:
    role = role.upper()
    if role not in ROLES:
        print(f"[ERROR] Unknown role {role}; expected one of {', '.join(ROLES)}")
        sys.exit(1)

    Base.metadata.create_all(bind=engine)
    with session_scope() as db:
        existing = db.query(User).filter(func.lower(User.email) == email.lower()).first()
        if existing:
            existing.role = role
            existing.password_hash = get_password_hash(password)
            existing.is_active = True
            db.commit()
            print(f"[UPDATE] {existing.email} -> {role}")
            return
        user = User(email=email, name=name, role=role, password_hash=get_password_hash(password), is_active=True)
        db.add(user)
        db.commit()
        print(f"[CREATE] {email} ({role})")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create or update a user")
    parser.add_argument("--email", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--role", default="ADMIN")
    args = parser.parse_args()
    seed_user(args.email, args.name, args.password, args.role)

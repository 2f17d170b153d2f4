#!/usr/bin/env python3
"""Create or update a dashboard admin: ADMIN_EMAIL / ADMIN_PASSWORD from the environment (or .env)."""
import os
import sys
import uuid
from datetime import datetime, timezone

from dotenv import load_dotenv


def main():
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    load_dotenv(os.path.join(root, ".env"))
    from werkzeug.security import generate_password_hash
    from sqlalchemy import create_engine, text

    email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
    password = os.getenv("ADMIN_PASSWORD") or ""
    if not email or len(password) < 8:
        print("ADMIN_EMAIL and ADMIN_PASSWORD (8+ characters) are required")
        sys.exit(1)

    db_url = os.getenv("DATABASE_URL", "sqlite:///villa_ops.db")
    if db_url.startswith("sqlite:///"):
        db_path = db_url.replace("sqlite:///", "")
        if not os.path.isabs(db_path):
            db_path = os.path.join(root, db_path)
        db_url = "sqlite:///" + db_path
    engine = create_engine(db_url)
    pw_hash = generate_password_hash(password, method="pbkdf2:sha256")
    with engine.connect() as conn:
        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                email VARCHAR UNIQUE,
                name VARCHAR,
                password_hash VARCHAR,
                role VARCHAR,
                created_at VARCHAR
            )
        """))
        row = conn.execute(text("SELECT id FROM users WHERE email = :email"), {"email": email}).fetchone()
        if row:
            conn.execute(
                text("UPDATE users SET password_hash = :pw, role = 'admin' WHERE email = :email"),
                {"pw": pw_hash, "email": email},
            )
            print(f"Updated {email}: role=admin, password reset")
        else:
            conn.execute(
                text("""
                    INSERT INTO users (id, email, name, password_hash, role, created_at)
                    VALUES (:id, :email, :name, :pw, 'admin', :created)
                """),
                {
                    "id": str(uuid.uuid4()),
                    "email": email,
                    "name": os.getenv("ADMIN_NAME") or None,
                    "pw": pw_hash,
                    "created": datetime.now(timezone.utc).isoformat(),
                },
            )
            print(f"Created {email}: role=admin")
        conn.commit()


if __name__ == "__main__":
    main()

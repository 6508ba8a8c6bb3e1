"""
Manually activate an account whose M-Pesa payment went through but activation failed.
Look up the receipt number in the "[Callback] INCIDENT" server log line first.

Usage: python scripts/activate_user_by_email.py <email> [--name NAME] [--password PASSWORD]
If the user does not exist yet (new registration), --name and --password are required.
"""
import argparse
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.database import Base, SessionLocal, engine
from app.models.user import User
from app.services.auth import get_password_hash


def main():
    parser = argparse.ArgumentParser(description="Mark a user as paid after a confirmed M-Pesa payment.")
    parser.add_argument("email")
    parser.add_argument("--name", default="")
    parser.add_argument("--password", default="")
    args = parser.parse_args()

    email = args.email.strip().lower()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
        if not user:
            if not args.name or not args.password:
                print(f"No user with email {email}. Pass --name and --password to create it.")
                sys.exit(1)
            user = User(name=args.name, email=email, hashed_password=get_password_hash(args.password))
            db.add(user)
            print(f"Creating user: {email}")
        elif user.has_paid:
            print(f"Already active: id={user.id}, email={user.email}")
            return
        user.has_paid = True
        db.commit()
        print(f"Done. {email} is now marked as paid (id={user.id}).")
    except Exception as e:
        db.rollback()
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()

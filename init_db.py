#!/usr/bin/env python3
"""
Database initialization script for the single-use URL service.

Creates the grant table and can generate an RSA key pair for the ``rsa``
signing scheme.
"""
import os

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from config.settings import DevelopmentConfig
from singleuse import create_app
from singleuse.models import db


def init_db(drop_existing=False):
    """
    Initialize the database with tables.

    Args:
        drop_existing: Whether to drop existing tables first
    """
    app = create_app(DevelopmentConfig)

    with app.app_context():
        if drop_existing:
            print("Dropping existing tables...")
            db.drop_all()

        print("Creating database tables...")
        db.create_all()

        print("Database initialized successfully!")


def generate_key_pair(out_dir: str, key_size: int = 2048) -> tuple[str, str]:
    """Write a PEM private/public key pair for URL_SIGNING_SCHEME=rsa.

    Returns:
        (private_key_path, public_key_path)
    """
    os.makedirs(out_dir, exist_ok=True)
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    private_path = os.path.join(out_dir, "url_signing_private.pem")
    public_path = os.path.join(out_dir, "url_signing_public.pem")

    with open(private_path, "wb") as f:
        f.write(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
    os.chmod(private_path, 0o600)

    with open(public_path, "wb") as f:
        f.write(
            private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )
    return private_path, public_path


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize the grant database")
    parser.add_argument(
        "--drop", action="store_true", help="Drop existing tables first"
    )
    parser.add_argument(
        "--generate-keys",
        metavar="DIR",
        help="Write an RSA key pair for URL_SIGNING_SCHEME=rsa into DIR",
    )

    args = parser.parse_args()

    if args.generate_keys:
        priv, pub = generate_key_pair(args.generate_keys)
        print("Key pair written:")
        print(f"  URL_SIGNING_PRIVATE_KEY_PATH={priv}")
        print(f"  URL_SIGNING_PUBLIC_KEY_PATH={pub}")
    else:
        init_db(drop_existing=args.drop)

    print("\nTo start the application:")
    print("  python main.py")
    print("\nTo start the retention sweep:")
    print("  celery -A singleuse.tasks.celery_app worker --beat --loglevel=info")

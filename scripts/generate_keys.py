#!/usr/bin/env python3
"""
Print a fresh ENCRYPTION_KEY master secret for the .env file.

The key encrypts every stored destination token: rotating it makes
existing credentials undecryptable, so destinations must be authorized again.
"""

import secrets
import sys


def generate_secure_key(length: int = 64) -> str:
    return secrets.token_hex(length)


def main():
    print("\nGenerated security key:\n")
    print(f"ENCRYPTION_KEY={generate_secure_key()}")
    print("\nAdd it to your .env file\n")
    return 0


if __name__ == '__main__':
    sys.exit(main())

"""
Helper script to generate a bcrypt password hash for the seeded admin.
Run this script to create a value for ADMIN_PASSWORD_HASH, so the plaintext
password never has to sit in the environment.
"""
import getpass

from db import get_salt_rounds, hash_password


def generate_hash():
    print("=" * 50)
    print("Admin Password Hash Generator")
    print("=" * 50)
    print()

    password = getpass.getpass("Enter admin password: ")
    password_confirm = getpass.getpass("Confirm password: ")

    if password != password_confirm:
        print("\nPasswords don't match. Please try again.")
        return

    if len(password) < 8:
        print("\nWarning: Password is less than 8 characters. Consider using a stronger password.")

    rounds = get_salt_rounds()
    hashed_str = hash_password(password, rounds=rounds)

    print(f"\nHash generated successfully (cost factor {rounds})!")
    print("\n" + "=" * 50)
    print("Add this to your environment or .env file:")
    print("=" * 50)
    print(f"\nADMIN_PASSWORD_HASH='{hashed_str}'")
    print("\nIt only takes effect on a database where the admin seed hasn't run yet.")
    print("\n" + "=" * 50)


if __name__ == "__main__":
    try:
        generate_hash()
    except KeyboardInterrupt:
        print("\n\nOperation cancelled.")

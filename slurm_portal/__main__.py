"""Entry point for running slurm_portal as a module."""

import getpass
import sys

from slurm_portal.app import run_app
from slurm_portal.auth.backends import hash_password
from slurm_portal.config import Config, parse_args


def prompt_password_hash() -> int:
    """Print a users-file hash for a password read from the terminal."""
    password = getpass.getpass("Password: ")
    if not password:
        print("Error: empty password", file=sys.stderr)
        return 1
    if getpass.getpass("Repeat password: ") != password:
        print("Error: passwords do not match", file=sys.stderr)
        return 1
    print(hash_password(password))
    return 0


def main() -> None:
    """Main entry point."""
    args = parse_args()
    if args.hash_password:
        sys.exit(prompt_password_hash())
    config = Config.from_args(args)
    try:
        run_app(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()

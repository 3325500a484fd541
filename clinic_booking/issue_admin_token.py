"""Print a bearer token for the admin schedule API to stdout.

Usage:
    python -m clinic_booking.issue_admin_token <subject> [expires_minutes]
"""
import sys

from clinic_booking.auth.jwt_handler import create_access_token


def main() -> None:
    if len(sys.argv) < 2 or not sys.argv[1].strip():
        print("Usage: python -m clinic_booking.issue_admin_token <subject> [expires_minutes]", file=sys.stderr)
        sys.exit(1)

    expires_minutes = int(sys.argv[2]) if len(sys.argv) > 2 else None
    print(create_access_token(subject=sys.argv[1].strip(), expires_minutes=expires_minutes))


if __name__ == "__main__":
    main()

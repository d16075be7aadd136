"""
Admin utility to grant or revoke a marketplace role.
Usage: python grant_role.py <email> <admin|driver> [--revoke]
"""
import sys

from database import db

ROLE_FLAGS = {
    'admin': 'is_admin',
    'driver': 'is_approved_driver',
}

args = [a for a in sys.argv[1:] if a != '--revoke']
revoke = '--revoke' in sys.argv[1:]

if len(args) != 2 or args[1] not in ROLE_FLAGS:
    print("Usage: python grant_role.py <email> <admin|driver> [--revoke]")
    print("Example: python grant_role.py driver@example.com driver")
    sys.exit(1)

email = args[0].lower()
role = args[1]

# Check if profile exists
profile = db.get_profile_by_email(email)
if not profile:
    print(f"Error: No profile found with email '{email}'")
    sys.exit(1)

db.update_profile_flags(profile['id'], **{ROLE_FLAGS[role]: not revoke})

print(f"{'Revoked' if revoke else 'Granted'} {role} for {email} (profile {profile['id']})")

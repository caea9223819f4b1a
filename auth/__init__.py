"""
auth — User authentication module.

Provides:
  • Signed session token creation & verification
  • Password hashing (bcrypt) and password policy
  • Register / Login / Me API routes (signup accepts pending invitations
    and records UTM attribution)
  • ``get_current_user_id`` / ``get_current_user`` FastAPI dependencies
"""

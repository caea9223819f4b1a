"""
organizations — tenants, memberships, roles and invitations.
"""

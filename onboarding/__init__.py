"""
onboarding — per-user, per-organization getting-started checklist.
"""

"""
Billing — Stripe subscriptions, seat sync, trials and the webhook.
"""

"""Subscription sync from payment-processor webhooks."""

"""Subscription lifecycle and proration."""

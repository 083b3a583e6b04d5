"""Billing: subscription dunning and payment retries."""

"""Async client helpers for the checkout flow."""
from .poller import FINAL_STATES, PaymentPoller, PollerConfig, PollerState

__all__ = ["FINAL_STATES", "PaymentPoller", "PollerConfig", "PollerState"]

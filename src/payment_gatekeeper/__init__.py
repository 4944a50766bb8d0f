"""Payment Gatekeeper - payment-status driven channel access and notifications."""

__version__ = "0.1.0"

"""Monitoring and observability package."""
from .health import HealthCheck
from .logging import mask_email, mask_phone_number, setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging", "mask_email", "mask_phone_number", "HealthCheck"]

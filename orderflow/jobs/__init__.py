"""
Background Jobs Module

Handles scheduled tasks for:
- Delivery auto-confirmation
- Automatic profit settlement
"""

from orderflow.jobs.scheduler import scheduler, start_scheduler, shutdown_scheduler
from orderflow.jobs.order_jobs import auto_confirm_deliveries, settle_delivered_orders

__all__ = [
    "scheduler",
    "start_scheduler",
    "shutdown_scheduler",
    "auto_confirm_deliveries",
    "settle_delivered_orders",
]

"""
Payments app configuration.

This app provides M-Pesa fee payment processing:
- STK push initiation through the M-Pesa gateway adapter
- Callback storage and reconciliation
- Verification sweep for late callbacks
- Exactly-once student balance updates

The gateway is built lazily, once per process, and shut down at exit.
"""

from __future__ import annotations

import atexit
import threading
from typing import TYPE_CHECKING

from django.apps import AppConfig, apps

if TYPE_CHECKING:
    from payments.adapters import MpesaGateway


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"

    def __init__(self, app_name, app_module):
        super().__init__(app_name, app_module)
        self._gateway: MpesaGateway | None = None
        self._gateway_lock = threading.Lock()

    def ready(self):
        """Connect payment_resolved receivers."""
        import payments.signals  # noqa: F401

    def get_gateway(self) -> MpesaGateway:
        """Return this process's MpesaGateway, building it on first use."""
        if self._gateway is None:
            with self._gateway_lock:
                if self._gateway is None:
                    from payments.adapters import MpesaConfig, MpesaGateway

                    gateway = MpesaGateway(MpesaConfig.from_settings()).start()
                    atexit.register(gateway.shutdown)
                    self._gateway = gateway
        return self._gateway

    def set_gateway(self, gateway: MpesaGateway | None) -> None:
        """Replace the process gateway (tests, management commands)."""
        with self._gateway_lock:
            self._gateway = gateway


def get_gateway() -> MpesaGateway:
    return apps.get_app_config("payments").get_gateway()

"""
Callback endpoint view for M-Pesa.

The view:
1. Stores the raw body as a CallbackRecord
2. Queues the record for async reconciliation
3. Returns the acknowledgement Daraja expects

M-Pesa stops retrying once it gets any 2xx, so the body must be
durable before the acknowledgement goes out.

Usage:
    # In urls.py
    from payments.callbacks.views import mpesa_callback

    urlpatterns = [
        path("callback/", mpesa_callback, name="mpesa_callback"),
    ]
"""

from __future__ import annotations

import logging

from django.db import DatabaseError
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from core.helpers import get_client_ip

from payments.callbacks.handlers import CallbackReconciler

logger = logging.getLogger(__name__)

ACCEPTED_RESPONSE = {"ResultCode": 0, "ResultDesc": "Accepted"}


@csrf_exempt
@require_POST
def mpesa_callback(request: HttpRequest) -> JsonResponse:
    """
    Receive and queue an M-Pesa STK callback.

    Every body is stored, even one that is not JSON; the reconciler
    classifies it later. The only non-2xx answer is a storage failure,
    which asks M-Pesa to deliver again.

    Returns:
        JsonResponse with status:
        - 200: Callback stored (new, duplicate or malformed)
        - 503: Callback could not be stored
    """
    try:
        record = CallbackReconciler.store(request.body)
    except DatabaseError:
        logger.critical("Failed to store M-Pesa callback", exc_info=True)
        return JsonResponse(
            {"ResultCode": 1, "ResultDesc": "Temporarily unavailable"},
            status=503,
        )

    try:
        from payments.tasks import process_callback_record

        process_callback_record.delay(str(record.id))
        logger.info(
            "Callback queued for processing",
            extra={
                "callback_record_id": str(record.id),
                "correlation_id": record.correlation_id,
                "client_ip": get_client_ip(request),
            },
        )
    except Exception as e:
        # Stored records are picked up again by retry_failed_callbacks
        logger.error(
            f"Failed to queue callback: {type(e).__name__}",
            extra={"callback_record_id": str(record.id)},
            exc_info=True,
        )

    return JsonResponse(ACCEPTED_RESPONSE)

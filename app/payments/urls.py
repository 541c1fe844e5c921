"""
URL configuration for the payments app.

Routes:
    - GET / - Payment history (own payments for students)
    - POST /initiate/ - Start an M-Pesa STK push
    - POST /callback/ - M-Pesa callback endpoint
    - GET /<id>/ - Payment status
    - POST /<id>/verify/ - Manual verification (operators)
    - POST /<id>/resolve/ - Manual resolution (operators)
    - GET /unresolved/ - Payments awaiting an operator

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.

Usage:
    # In config/urls.py
    api_v1_patterns = [
        path("payments/", include("payments.urls")),
    ]
"""

from django.urls import path

from payments.callbacks.views import mpesa_callback
from payments.views import (
    InitiatePaymentView,
    PaymentDetailView,
    PaymentListView,
    ResolvePaymentView,
    UnresolvedPaymentsView,
    VerifyPaymentView,
)

app_name = "payments"

urlpatterns = [
    path("", PaymentListView.as_view(), name="list"),
    path("initiate/", InitiatePaymentView.as_view(), name="initiate"),
    # M-Pesa callback endpoint
    path("callback/", mpesa_callback, name="mpesa_callback"),
    path("unresolved/", UnresolvedPaymentsView.as_view(), name="unresolved"),
    path("<uuid:payment_id>/", PaymentDetailView.as_view(), name="detail"),
    path("<uuid:payment_id>/verify/", VerifyPaymentView.as_view(), name="verify"),
    path("<uuid:payment_id>/resolve/", ResolvePaymentView.as_view(), name="resolve"),
]

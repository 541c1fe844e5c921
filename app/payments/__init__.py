"""
Payments app for M-Pesa fee payments.

This app handles:
- STK push initiation through the M-Pesa Daraja API
- Callback storage and reconciliation
- Verification of attempts whose callback is late
- Exactly-once student balance updates
- Operator resolution of payments M-Pesa could not confirm

Related apps:
    - students: Student records and outstanding balances

Usage:
    from payments.apps import get_gateway
    from payments.services import InitiatePaymentParams, PaymentOrchestrator

    # Start a payment
    result = PaymentOrchestrator(get_gateway()).initiate_payment(
        InitiatePaymentParams(student_id=student.id, amount=Decimal("2000"))
    )

    # React to resolutions
    from payments.signals import payment_resolved
"""

"""Tests for the payment confirmation state machine."""
import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import update

from app.models import Invoice, Payment, PaymentStatus
from app.services import payments as ledger
from app.services.mpesa import StatusQueryFailed, StkQueryResponse, parse_stk_callback
from app.services.payment_state import (
    GatewayResult,
    apply_gateway_result,
    reconcile_stale_payment,
    resolve_from_callback,
    resolve_from_query,
)
from app.utils.time import utcnow


def _invoice(db_session, invoice_id) -> Invoice:
    db_session.expire_all()
    return db_session.get(Invoice, invoice_id)


def _query(checkout_request_id, code, desc="") -> StkQueryResponse:
    return StkQueryResponse(checkout_request_id=checkout_request_id, result_code=code, result_desc=desc)


def test_success_callback_completes_payment_and_marks_invoice_paid(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice)

    resolution = resolve_from_callback(
        db_session, parse_stk_callback(callback_payload(payment.checkout_request_id, transaction_date=20241219102115))
    )

    assert resolution.applied is True
    assert resolution.status == PaymentStatus.COMPLETED
    stored = ledger.find_by_id(db_session, payment.id)
    assert stored.mpesa_receipt_number == "NLJ7RT61SV"
    assert stored.result_code == "0"
    assert stored.completed_at is not None
    transaction_date = stored.transaction_date.replace(tzinfo=stored.transaction_date.tzinfo or UTC)
    assert transaction_date == datetime(2024, 12, 19, 7, 21, 15, tzinfo=UTC)
    refreshed = _invoice(db_session, invoice.id)
    assert refreshed.is_paid is True
    assert refreshed.paid_at is not None


def test_repeated_callback_is_a_noop(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice)
    callback = parse_stk_callback(callback_payload(payment.checkout_request_id))

    first = resolve_from_callback(db_session, callback)
    paid_at = _invoice(db_session, invoice.id).paid_at
    second = resolve_from_callback(db_session, callback)

    assert first.applied is True
    assert second.applied is False
    assert second.status == PaymentStatus.COMPLETED
    assert second.reason == "already_terminal"
    assert _invoice(db_session, invoice.id).paid_at == paid_at


def test_failure_after_completion_does_not_regress(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice)
    resolve_from_callback(db_session, parse_stk_callback(callback_payload(payment.checkout_request_id)))

    late = resolve_from_callback(
        db_session,
        parse_stk_callback(callback_payload(payment.checkout_request_id, result_code=1, result_desc="Insufficient")),
    )

    assert late.applied is False
    assert ledger.find_by_id(db_session, payment.id).status == PaymentStatus.COMPLETED
    assert _invoice(db_session, invoice.id).is_paid is True


def test_amount_mismatch_fails_payment_and_leaves_invoice_unpaid(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice, amount="10")

    resolution = resolve_from_callback(
        db_session, parse_stk_callback(callback_payload(payment.checkout_request_id, amount=1))
    )

    assert resolution.status == PaymentStatus.FAILED
    assert resolution.reason == "amount_mismatch"
    stored = ledger.find_by_id(db_session, payment.id)
    assert stored.result_desc == "Amount mismatch: expected 10.00, received 1"
    assert _invoice(db_session, invoice.id).is_paid is False


def test_amount_within_tolerance_is_accepted(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice, amount="10")

    resolution = resolve_from_callback(
        db_session, parse_stk_callback(callback_payload(payment.checkout_request_id, amount="10.00"))
    )
    assert resolution.status == PaymentStatus.COMPLETED


def test_cancelled_by_user(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice)

    resolution = resolve_from_callback(
        db_session,
        parse_stk_callback(
            callback_payload(payment.checkout_request_id, result_code=1032, result_desc="Request cancelled by user")
        ),
    )

    assert resolution.status == PaymentStatus.CANCELLED
    stored = ledger.find_by_id(db_session, payment.id)
    assert stored.result_code == "1032"
    assert stored.result_desc == "Request cancelled by user"
    assert _invoice(db_session, invoice.id).is_paid is False


def test_other_codes_fail_with_provider_description(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice)

    resolution = resolve_from_callback(
        db_session,
        parse_stk_callback(
            callback_payload(
                payment.checkout_request_id,
                result_code=2001,
                result_desc="The initiator information is invalid.",
            )
        ),
    )

    assert resolution.status == PaymentStatus.FAILED
    assert ledger.find_by_id(db_session, payment.id).result_code == "2001"


def test_still_processing_query_does_not_mutate(db_session, make_invoice, make_payment):
    invoice = make_invoice()
    payment = make_payment(invoice)

    resolution = resolve_from_query(db_session, payment, _query(payment.checkout_request_id, "1037", "timeout"))

    assert resolution.status == PaymentStatus.PROCESSING
    assert resolution.applied is False
    stored = ledger.find_by_id(db_session, payment.id)
    assert stored.status == PaymentStatus.PROCESSING
    assert stored.result_code is None


def test_query_success_completes_without_amount(db_session, make_invoice, make_payment):
    invoice = make_invoice()
    payment = make_payment(invoice)

    resolution = resolve_from_query(
        db_session, payment, _query(payment.checkout_request_id, "0", "The service request is processed successfully.")
    )

    assert resolution.applied is True
    assert resolution.status == PaymentStatus.COMPLETED
    assert _invoice(db_session, invoice.id).is_paid is True


def test_callback_then_query_race_resolves_once(db_session, make_invoice, make_payment, callback_payload, session_factory):
    invoice = make_invoice()
    payment = make_payment(invoice)

    # The query path loaded the payment before the callback landed.
    query_session = session_factory()
    try:
        stale_view = ledger.find_by_id(query_session, payment.id)
        callback_result = resolve_from_callback(
            db_session, parse_stk_callback(callback_payload(payment.checkout_request_id))
        )
        query_result = resolve_from_query(
            query_session, stale_view, _query(payment.checkout_request_id, "0", "processed")
        )
    finally:
        query_session.close()

    assert callback_result.applied is True
    assert query_result.applied is False
    assert query_result.reason == "already_resolved"
    assert query_result.status == PaymentStatus.COMPLETED
    stored = ledger.find_by_id(db_session, payment.id)
    assert stored.mpesa_receipt_number == "NLJ7RT61SV"


def test_stale_failure_cannot_override_completed(db_session, make_invoice, make_payment, callback_payload, session_factory):
    invoice = make_invoice()
    payment = make_payment(invoice)

    other = session_factory()
    try:
        stale_view = ledger.find_by_id(other, payment.id)
        resolve_from_callback(db_session, parse_stk_callback(callback_payload(payment.checkout_request_id)))
        outcome = apply_gateway_result(
            other,
            stale_view,
            GatewayResult(checkout_request_id=payment.checkout_request_id, result_code="1032", result_desc="cancel"),
            source="query",
        )
    finally:
        other.close()

    assert outcome.applied is False
    assert outcome.status == PaymentStatus.COMPLETED
    assert _invoice(db_session, invoice.id).is_paid is True


def test_unknown_checkout_id_returns_none(db_session, callback_payload):
    assert resolve_from_callback(db_session, parse_stk_callback(callback_payload("ws_CO_unknown"))) is None


def test_gateway_result_normalises_codes():
    result = GatewayResult.from_query(_query("ws_CO_1", " 0 ", "ok"))
    assert result.result_code == "0"
    assert result.amount is None


def _backdate(db_session, payment, minutes=4):
    db_session.execute(
        update(Payment).where(Payment.id == payment.id).values(created_at=utcnow() - timedelta(minutes=minutes))
    )
    db_session.commit()


def test_unreadable_amount_fails_payment_with_reason(db_session, make_invoice, make_payment, callback_payload):
    invoice = make_invoice()
    payment = make_payment(invoice, amount="10")

    resolution = resolve_from_callback(
        db_session, parse_stk_callback(callback_payload(payment.checkout_request_id, amount=None))
    )

    assert resolution.status == PaymentStatus.FAILED
    assert resolution.reason == "amount_mismatch"
    stored = ledger.find_by_id(db_session, payment.id)
    assert stored.result_desc == "Amount mismatch: expected 10.00, received None"
    assert stored.mpesa_receipt_number == "NLJ7RT61SV"
    assert _invoice(db_session, invoice.id).is_paid is False


def test_success_on_failed_payment_is_flagged_for_reconciliation(
    db_session, make_invoice, make_payment, callback_payload, caplog
):
    invoice = make_invoice()
    payment = make_payment(invoice, status=PaymentStatus.FAILED)

    with caplog.at_level(logging.ERROR, logger="app.services.payment_state"):
        resolution = resolve_from_callback(db_session, parse_stk_callback(callback_payload(payment.checkout_request_id)))

    assert resolution.applied is False
    assert resolution.status == PaymentStatus.FAILED
    assert any("manual reconciliation required" in record.getMessage() for record in caplog.records)


def test_repeated_success_on_completed_payment_is_not_flagged(
    db_session, make_invoice, make_payment, callback_payload, caplog
):
    invoice = make_invoice()
    payment = make_payment(invoice)
    callback = parse_stk_callback(callback_payload(payment.checkout_request_id))
    resolve_from_callback(db_session, callback)

    with caplog.at_level(logging.ERROR, logger="app.services.payment_state"):
        resolve_from_callback(db_session, callback)

    assert not [record for record in caplog.records if record.levelno >= logging.ERROR]


def test_reconcile_ignores_recent_payment(db_session, fake_mpesa, make_invoice, make_payment):
    invoice = make_invoice()
    make_payment(invoice)

    assert reconcile_stale_payment(db_session, fake_mpesa, invoice.id, stale_after_seconds=180) is None
    assert fake_mpesa.queries == []


def test_reconcile_completes_stale_payment_approved_late(db_session, fake_mpesa, make_invoice, make_payment):
    invoice = make_invoice()
    payment = make_payment(invoice)
    _backdate(db_session, payment)
    fake_mpesa.query_result_code = "0"
    fake_mpesa.query_result_desc = "The service request is processed successfully."

    resolution = reconcile_stale_payment(db_session, fake_mpesa, invoice.id, stale_after_seconds=180)

    assert fake_mpesa.queries == [payment.checkout_request_id]
    assert resolution.status == PaymentStatus.COMPLETED
    assert _invoice(db_session, invoice.id).is_paid is True


def test_reconcile_keeps_stale_payment_still_processing(db_session, fake_mpesa, make_invoice, make_payment):
    invoice = make_invoice()
    payment = make_payment(invoice)
    _backdate(db_session, payment)

    resolution = reconcile_stale_payment(db_session, fake_mpesa, invoice.id, stale_after_seconds=180)

    assert resolution.status == PaymentStatus.PROCESSING
    assert ledger.find_by_id(db_session, payment.id).status == PaymentStatus.PROCESSING


def test_reconcile_closes_stale_payment_the_provider_failed(db_session, fake_mpesa, make_invoice, make_payment):
    invoice = make_invoice()
    payment = make_payment(invoice)
    _backdate(db_session, payment)
    fake_mpesa.query_result_code = "1032"
    fake_mpesa.query_result_desc = "Request cancelled by user"

    resolution = reconcile_stale_payment(db_session, fake_mpesa, invoice.id, stale_after_seconds=180)

    assert resolution.status == PaymentStatus.CANCELLED
    assert ledger.find_by_id(db_session, payment.id).status == PaymentStatus.CANCELLED


def test_reconcile_leaves_payment_in_flight_when_provider_unreachable(
    db_session, fake_mpesa, make_invoice, make_payment
):
    invoice = make_invoice()
    payment = make_payment(invoice)
    _backdate(db_session, payment)
    fake_mpesa.query_error = StatusQueryFailed("STK query failed: Service Unavailable")

    assert reconcile_stale_payment(db_session, fake_mpesa, invoice.id, stale_after_seconds=180) is None
    assert ledger.find_by_id(db_session, payment.id).status == PaymentStatus.PROCESSING

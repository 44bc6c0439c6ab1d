import threading

import pytest

from donation_payments.adapters.adyen import classify_adyen_error, refusal_error
from donation_payments.adapters.paypal import classify_paypal_error
from donation_payments.adapters.stripe import classify_stripe_error
from donation_payments.claims import ClaimTable
from donation_payments.errors import DECLINE_KINDS, TRANSIENT_KINDS, ErrorKind, PaymentError
from donation_payments.http import default_classifier


class TestPaymentError:
    @pytest.mark.unit
    @pytest.mark.parametrize("kind", sorted(TRANSIENT_KINDS, key=lambda k: k.value))
    def test_transient_kinds_are_retryable(self, kind):
        assert PaymentError(kind, "x").retryable is True

    @pytest.mark.unit
    @pytest.mark.parametrize("kind", sorted(DECLINE_KINDS, key=lambda k: k.value))
    def test_declines_are_not_retryable(self, kind):
        error = PaymentError(kind, "x")
        assert error.retryable is False
        assert error.is_decline is True

    @pytest.mark.unit
    def test_decline_has_donor_message(self):
        error = PaymentError(ErrorKind.INSUFFICIENT_FUNDS, "declined", processor_code="insufficient_funds")
        assert error.user_message == "Insufficient funds. Please try a different payment method."

    @pytest.mark.unit
    @pytest.mark.parametrize("kind", [ErrorKind.INVALID_WEBHOOK_SIGNATURE, ErrorKind.MALFORMED_WEBHOOK])
    def test_webhook_errors_have_no_donor_message(self, kind):
        assert PaymentError(kind, "x").user_message is None

    @pytest.mark.unit
    def test_repr_omits_processor_message(self):
        error = PaymentError(ErrorKind.CARD_DECLINED, "declined", processor_message="card 4242 declined")
        assert "4242" not in repr(error)
        assert "card_declined" in repr(error)


class TestStripeClassification:
    @pytest.mark.unit
    def test_decline_code_refines_card_error(self):
        error = classify_stripe_error(402, {"error": {
            "type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds",
        }})
        assert error.kind is ErrorKind.INSUFFICIENT_FUNDS
        assert error.processor_code == "insufficient_funds"
        assert error.status_code == 402

    @pytest.mark.unit
    def test_generic_decline(self):
        error = classify_stripe_error(402, {"error": {"type": "card_error", "code": "card_declined"}})
        assert error.kind is ErrorKind.CARD_DECLINED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error_type, code, kind",
        [
            ("card_error", "expired_card", ErrorKind.EXPIRED_CARD),
            ("card_error", "incorrect_cvc", ErrorKind.INVALID_CARD),
            ("invalid_request_error", "amount_too_small", ErrorKind.INVALID_AMOUNT),
        ],
    )
    def test_error_codes(self, error_type, code, kind):
        assert classify_stripe_error(402, {"error": {"type": error_type, "code": code}}).kind is kind

    @pytest.mark.unit
    def test_authentication(self):
        assert classify_stripe_error(401, {}).kind is ErrorKind.AUTHENTICATION_FAILED

    @pytest.mark.unit
    def test_idempotency_error(self):
        error = classify_stripe_error(400, {"error": {"type": "idempotency_error"}})
        assert error.kind is ErrorKind.IDEMPOTENCY_KEY_CONFLICT

    @pytest.mark.unit
    def test_invalid_request(self):
        error = classify_stripe_error(400, {"error": {"type": "invalid_request_error", "code": "resource_missing"}})
        assert error.kind is ErrorKind.INVALID_REQUEST

    @pytest.mark.unit
    def test_unrecognized_body(self):
        assert classify_stripe_error(409, {}).kind is ErrorKind.UNKNOWN_PROCESSOR_ERROR


class TestAdyenClassification:
    @pytest.mark.unit
    def test_error_code_wins_over_status(self):
        assert classify_adyen_error(422, {"errorCode": "101", "errorType": "validation"}).kind is ErrorKind.EXPIRED_CARD

    @pytest.mark.unit
    def test_validation_error(self):
        assert classify_adyen_error(422, {"errorCode": "702", "errorType": "validation"}).kind is ErrorKind.INVALID_REQUEST

    @pytest.mark.unit
    def test_unauthorized(self):
        assert classify_adyen_error(401, {"errorCode": "000"}).kind is ErrorKind.AUTHENTICATION_FAILED

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "reason_code, kind",
        [("2", ErrorKind.CARD_DECLINED), ("6", ErrorKind.EXPIRED_CARD), ("12", ErrorKind.INSUFFICIENT_FUNDS), ("99", ErrorKind.CARD_DECLINED)],
    )
    def test_refusal_reasons(self, reason_code, kind):
        error = refusal_error({"pspReference": "PSP1", "resultCode": "Refused", "refusalReasonCode": reason_code})
        assert error.kind is kind


class TestPayPalClassification:
    @pytest.mark.unit
    def test_issue_from_details(self):
        error = classify_paypal_error(422, {
            "name": "UNPROCESSABLE_ENTITY",
            "details": [{"issue": "INSTRUMENT_DECLINED", "description": "The instrument was declined."}],
        })
        assert error.kind is ErrorKind.CARD_DECLINED
        assert error.processor_code == "INSTRUMENT_DECLINED"

    @pytest.mark.unit
    def test_refund_exceeds(self):
        error = classify_paypal_error(422, {"details": [{"issue": "REFUND_AMOUNT_EXCEEDED"}]})
        assert error.kind is ErrorKind.REFUND_EXCEEDS_ORIGINAL

    @pytest.mark.unit
    def test_invalid_client(self):
        assert classify_paypal_error(401, {"error": "invalid_client"}).kind is ErrorKind.AUTHENTICATION_FAILED

    @pytest.mark.unit
    def test_unrecognized_conflict(self):
        assert classify_paypal_error(409, {}).kind is ErrorKind.UNKNOWN_PROCESSOR_ERROR


class TestDefaultClassifier:
    @pytest.mark.unit
    def test_forbidden_is_authentication(self):
        assert default_classifier(403, {}).kind is ErrorKind.AUTHENTICATION_FAILED

    @pytest.mark.unit
    def test_other_client_errors_are_unknown(self):
        assert default_classifier(404, {}).kind is ErrorKind.UNKNOWN_PROCESSOR_ERROR


class TestClaimTable:
    @pytest.mark.unit
    def test_first_caller_owns_the_claim(self):
        table = ClaimTable()
        claim, owner = table.claim("k")
        again, second_owner = table.claim("k")
        assert owner is True
        assert second_owner is False
        assert again is claim

    @pytest.mark.unit
    def test_resolve_wakes_waiters_and_frees_key(self):
        table = ClaimTable()
        claim, _ = table.claim("k")
        results = []
        waiter = threading.Thread(target=lambda: results.append(claim.wait(5)))
        waiter.start()
        table.resolve(claim, result="done")
        waiter.join(5)

        assert results == [True]
        assert claim.result == "done"
        assert not table.in_flight("k")
        assert len(table) == 0

# tests/test_payments.py
import pytest

from errors import NotFoundError, ReplayError, ValidationError, VerificationError
from payments import PaymentVerifier, parse_payment_request
from security_events import SecurityEventLogger
from fakes import (FakeCollectionRepository, FakePaymentRepository, FakeRpc,
                   FakeSecurityEventRepository, transfer_tx)

NOW = 1_760_000_000
TREASURY = 'TreasuryWa11et111111111111111111111111111'
PLATFORM = 'P1atformWa11et11111111111111111111111111'
PAYER = 'PayerWa11etAddress1111111111111111'
SIG = '5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW'
COLLECTION_ID = '4f1c2b7e-8a4d-4c1e-9b2a-3d5e6f708192'
NO_TREASURY_ID = '7d6c5b4a-3f2e-4d1c-9b0a-8f7e6d5c4b3a'


def sol(amount):
    return int(round(amount * 1_000_000_000))


@pytest.fixture
def payments():
    return FakePaymentRepository()


@pytest.fixture
def events():
    return FakeSecurityEventRepository()


@pytest.fixture
def rpc():
    return FakeRpc()


@pytest.fixture
def verifier(payments, events, rpc):
    collections = FakeCollectionRepository(
        {'id': COLLECTION_ID, 'treasury_wallet': TREASURY},
        {'id': NO_TREASURY_ID, 'treasury_wallet': None},
    )
    return PaymentVerifier(payments, collections, rpc, SecurityEventLogger(events),
                           platform_wallet=PLATFORM, max_age_seconds=300, tolerance=0.01,
                           clock=lambda: NOW)


def boost_body(**overrides):
    body = {
        'tx_signature': SIG,
        'payment_wallet_address': PAYER,
        'payment_type': 'boost',
        'expected_amount': 0.5,
    }
    body.update(overrides)
    return body


class TestParsePaymentRequest:
    def test_missing_fields(self):
        with pytest.raises(ValidationError) as exc:
            parse_payment_request({'tx_signature': SIG})
        assert exc.value.message == 'Missing required parameters'
        assert exc.value.status_code == 400

    def test_bad_signature_format(self):
        with pytest.raises(ValidationError) as exc:
            parse_payment_request(boost_body(tx_signature='not a signature!'))
        assert 'signature' in exc.value.message

    def test_signature_with_non_base58_characters(self):
        with pytest.raises(ValidationError):
            parse_payment_request(boost_body(tx_signature='0OIl' * 20))

    def test_unsupported_payment_type(self):
        with pytest.raises(ValidationError):
            parse_payment_request(boost_body(payment_type='tip'))

    @pytest.mark.parametrize('amount', [0, -1, 'abc', 'inf', '1e400', float('inf'), 'nan'])
    def test_invalid_amount(self, amount):
        with pytest.raises(ValidationError):
            parse_payment_request(boost_body(expected_amount=amount))

    def test_mint_fee_requires_collection(self):
        with pytest.raises(ValidationError):
            parse_payment_request(boost_body(payment_type='mint_fee'))

    def test_malformed_collection_id(self):
        with pytest.raises(ValidationError, match='Invalid collection ID'):
            parse_payment_request(boost_body(payment_type='mint_fee', collection_id='abc'))


class TestVerifyPayment:
    def test_boost_payment_verified(self, verifier, rpc, payments, events):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(0.5), NOW - 30)

        result = verifier.verify(boost_body(), 'user-1', '10.0.0.1')

        assert result['verified'] is True
        assert result['payment_id'] == payments.rows[SIG]['id']
        assert result['receipt']['tx_signature'] == SIG
        assert result['receipt']['recipient'] == PLATFORM
        assert result['receipt']['amount'] == 0.5
        stored = payments.rows[SIG]
        assert stored['verified'] is True
        assert stored['wallet_address'] == PAYER
        assert stored['user_id'] == 'user-1'
        assert events.types() == [('payment_verified', 'low')]

    def test_mint_fee_goes_to_collection_treasury(self, verifier, rpc):
        rpc.transactions[SIG] = transfer_tx(TREASURY, sol(1.25), NOW - 10)

        result = verifier.verify(
            boost_body(payment_type='mint_fee', expected_amount=1.25, collection_id=COLLECTION_ID), 'user-1')

        assert result['receipt']['recipient'] == TREASURY
        assert result['receipt']['collection_id'] == COLLECTION_ID

    def test_payment_to_wrong_wallet_rejected(self, verifier, rpc, payments):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(1.25), NOW - 10)

        with pytest.raises(VerificationError) as exc:
            verifier.verify(
                boost_body(payment_type='mint_fee', expected_amount=1.25, collection_id=COLLECTION_ID), 'user-1')
        assert 'Recipient not found' in exc.value.message
        assert payments.rows == {}

    def test_replay_rejected_second_time(self, verifier, rpc, payments, events):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(0.5), NOW - 30)

        first = verifier.verify(boost_body(), 'user-1')
        with pytest.raises(ReplayError) as exc:
            verifier.verify(boost_body(), 'user-1')

        assert first['verified'] is True
        assert exc.value.status_code == 400
        assert 'already been used' in exc.value.message
        assert len(payments.rows) == 1
        assert ('payment_replay_attempt', 'critical') in events.types()

    def test_short_signature_replay(self, verifier, rpc):
        rpc.transactions['abc'] = transfer_tx(PLATFORM, sol(0.5), NOW - 30)

        assert verifier.verify(boost_body(tx_signature='abc'), 'user-1')['verified'] is True
        with pytest.raises(ReplayError, match='already been used'):
            verifier.verify(boost_body(tx_signature='abc'), 'user-1')

    @pytest.mark.parametrize('received', [0.49, 0.5, 0.51])
    def test_amount_within_tolerance(self, verifier, rpc, received):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(received), NOW - 30)
        assert verifier.verify(boost_body(), 'user-1')['verified'] is True

    @pytest.mark.parametrize('received', [0.48, 0.52, 0.0])
    def test_amount_outside_tolerance(self, verifier, rpc, payments, received):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(received), NOW - 30)
        with pytest.raises(VerificationError, match='Amount mismatch'):
            verifier.verify(boost_body(), 'user-1')
        assert payments.rows == {}

    @pytest.mark.parametrize('received', [0.5, 0.3, 2.0])
    def test_old_transaction_rejected_regardless_of_amount(self, verifier, rpc, payments, received):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(received), NOW - 301)
        with pytest.raises(VerificationError, match='too old'):
            verifier.verify(boost_body(), 'user-1')
        assert payments.rows == {}

    def test_exactly_five_minutes_old_accepted(self, verifier, rpc):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(0.5), NOW - 300)
        assert verifier.verify(boost_body(), 'user-1')['verified'] is True

    def test_transaction_not_found(self, verifier, events):
        with pytest.raises(VerificationError, match='Transaction not found'):
            verifier.verify(boost_body(), 'user-1')
        assert events.types() == [('payment_verification_failed', 'medium')]

    def test_failed_transaction_rejected(self, verifier, rpc):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(0.5), NOW - 30,
                                            err={'InstructionError': [0, 'Custom']})
        with pytest.raises(VerificationError, match='failed on-chain'):
            verifier.verify(boost_body(), 'user-1')

    def test_missing_block_time_rejected(self, verifier, rpc):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(0.5), None)
        with pytest.raises(VerificationError):
            verifier.verify(boost_body(), 'user-1')

    def test_versioned_transaction_loaded_address(self, verifier, rpc):
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(0.5), NOW - 30, versioned=True)
        assert verifier.verify(boost_body(), 'user-1')['verified'] is True

    def test_checks_run_in_order(self, verifier, rpc):
        # failed, too old and underpaid: the first failing check wins
        rpc.transactions[SIG] = transfer_tx(PLATFORM, 1, NOW - 3600, err='boom')
        with pytest.raises(VerificationError, match='failed on-chain'):
            verifier.verify(boost_body(), 'user-1')

    def test_unknown_collection_is_not_found(self, verifier, rpc):
        with pytest.raises(NotFoundError) as exc:
            verifier.verify(boost_body(payment_type='mint_fee', collection_id='0b1c2d3e-4f5a-4b6c-8d7e-9f0a1b2c3d4e'), 'user-1')
        assert exc.value.status_code == 404
        assert rpc.calls == []

    def test_infinite_amount_rejected_before_fetch(self, verifier, rpc, events):
        with pytest.raises(ValidationError) as exc:
            verifier.verify(boost_body(expected_amount='1e400'), 'user-1')
        assert exc.value.status_code == 400
        assert rpc.calls == []
        assert events.types() == [('payment_verification_failed', 'medium')]

    def test_collection_without_treasury_is_not_found(self, verifier):
        with pytest.raises(NotFoundError, match='treasury'):
            verifier.verify(boost_body(payment_type='mint_fee', collection_id=NO_TREASURY_ID), 'user-1')

    def test_platform_wallet_not_configured(self, payments, events, rpc):
        verifier = PaymentVerifier(payments, FakeCollectionRepository(), rpc, SecurityEventLogger(events),
                                   platform_wallet='', clock=lambda: NOW)
        with pytest.raises(NotFoundError, match='Platform wallet'):
            verifier.verify(boost_body(), 'user-1')

    def test_validation_failure_is_audited(self, verifier, events, rpc):
        with pytest.raises(ValidationError):
            verifier.verify({'tx_signature': SIG}, 'user-1', '10.0.0.9')
        assert events.types() == [('payment_verification_failed', 'medium')]
        assert events.events[0]['metadata']['ip_address'] == '10.0.0.9'
        assert rpc.calls == []

    def test_audit_storage_failure_does_not_break_verification(self, payments, rpc):
        verifier = PaymentVerifier(payments, FakeCollectionRepository(), rpc,
                                   SecurityEventLogger(FakeSecurityEventRepository(fail=True)),
                                   platform_wallet=PLATFORM, clock=lambda: NOW)
        rpc.transactions[SIG] = transfer_tx(PLATFORM, sol(0.5), NOW - 30)
        assert verifier.verify(boost_body(), 'user-1')['verified'] is True

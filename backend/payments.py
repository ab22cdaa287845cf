"""On-chain payment verification for mint fees and boosts.

The flow for one request:

1. validate the claimed payment and resolve who should have been paid
   (collection treasury for ``mint_fee``, platform wallet for ``boost``);
2. fetch the transaction from a Solana RPC node;
3. check, in order, that it exists, did not fail, is recent enough and
   moved ``expected_amount`` SOL (within tolerance) into the recipient;
4. record the payment. ``payments.tx_signature`` is unique in the database,
   so a second insert of the same signature is a replay attempt.

Nothing is persisted unless every check passes. Each outcome is written to
the security event log.
"""
import logging
import math
import re
import time
from datetime import datetime, timezone

import config
from errors import (ApiError, DuplicateRowError, NotFoundError, ReplayError,
                    ValidationError, VerificationError)
from likes import is_uuid
from solana_rpc import balance_change_lamports

logger = logging.getLogger(__name__)

_BASE58 = '1-9A-HJ-NP-Za-km-z'
SIGNATURE_RE = re.compile(rf'^[{_BASE58}]{{1,88}}$')
ADDRESS_RE = re.compile(r'^\S{1,64}$')

REQUIRED_FIELDS = ('tx_signature', 'payment_wallet_address', 'payment_type', 'expected_amount')


def parse_payment_request(body: dict) -> dict:
    """Validate the request body and return normalized fields."""
    body = body or {}
    if any(body.get(k) in (None, '') for k in REQUIRED_FIELDS):
        raise ValidationError("Missing required parameters")

    tx_signature = str(body['tx_signature']).strip()
    if not SIGNATURE_RE.match(tx_signature):
        raise ValidationError("Invalid transaction signature format")

    wallet = str(body['payment_wallet_address']).strip()
    if not ADDRESS_RE.match(wallet):
        raise ValidationError("Invalid wallet address format")

    payment_type = str(body['payment_type']).strip()
    if payment_type not in config.PAYMENT_TYPES:
        raise ValidationError(f"Unsupported payment type: {payment_type}")

    try:
        amount = float(body['expected_amount'])
    except (TypeError, ValueError):
        raise ValidationError("Expected amount must be a number")
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError("Expected amount must be positive")

    collection_id = body.get('collection_id') or None
    if payment_type == 'mint_fee' and not collection_id:
        raise ValidationError("collection_id is required for mint fee payments")
    if collection_id is not None and not is_uuid(collection_id):
        raise ValidationError("Invalid collection ID")

    return {
        'tx_signature': tx_signature,
        'payment_wallet_address': wallet,
        'payment_type': payment_type,
        'expected_amount': amount,
        'collection_id': collection_id,
    }


class PaymentVerifier:
    def __init__(self, payments, collections, rpc, security, platform_wallet: str = None,
                 max_age_seconds: int = None, tolerance: float = None, clock=time.time):
        self.payments = payments
        self.collections = collections
        self.rpc = rpc
        self.security = security
        self.platform_wallet = config.PLATFORM_WALLET_ADDRESS if platform_wallet is None else platform_wallet
        self.max_age_seconds = config.PAYMENT_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
        self.tolerance = config.PAYMENT_AMOUNT_TOLERANCE if tolerance is None else tolerance
        self.clock = clock

    def resolve_recipient(self, payment_type: str, collection_id: str = None) -> str:
        if payment_type == 'mint_fee':
            collection = self.collections.get(collection_id, 'id, treasury_wallet')
            if not collection:
                raise NotFoundError("Collection not found")
            treasury = collection.get('treasury_wallet')
            if not treasury:
                raise NotFoundError("Collection treasury wallet not configured")
            return treasury
        if payment_type == 'boost':
            if not self.platform_wallet:
                raise NotFoundError("Platform wallet not configured")
            return self.platform_wallet
        raise ValidationError(f"Unsupported payment type: {payment_type}")

    def check_transaction(self, tx: dict, recipient: str, expected_amount: float) -> float:
        """Run the on-chain checks; returns the SOL amount received."""
        if not tx:
            raise VerificationError("Transaction not found")

        meta = tx.get('meta') or {}
        if meta.get('err') is not None:
            raise VerificationError("Transaction failed on-chain")

        block_time = tx.get('blockTime')
        if block_time is None:
            raise VerificationError("Transaction has no block time yet")
        age = self.clock() - float(block_time)
        if age > self.max_age_seconds:
            raise VerificationError(
                f"Transaction is too old ({int(age)}s); payments must be verified within "
                f"{self.max_age_seconds // 60} minutes")

        delta = balance_change_lamports(tx, recipient)
        if delta is None:
            raise VerificationError("Recipient not found in transaction")
        received = delta / config.LAMPORTS_PER_SOL
        expected_lamports = round(expected_amount * config.LAMPORTS_PER_SOL)
        tolerance_lamports = round(self.tolerance * config.LAMPORTS_PER_SOL)
        if abs(delta - expected_lamports) > tolerance_lamports:
            raise VerificationError(
                f"Amount mismatch: expected {expected_amount} SOL, recipient received {received:.9f} SOL")
        return received

    def verify(self, body: dict, user_id: str, ip_address: str = None) -> dict:
        req = None
        try:
            req = parse_payment_request(body)
            recipient = self.resolve_recipient(req['payment_type'], req['collection_id'])
            tx = self.rpc.get_transaction(req['tx_signature'])
            received = self.check_transaction(tx, recipient, req['expected_amount'])
        except ApiError as e:
            self._audit_failure(e, body, req, user_id, ip_address)
            raise

        row = {
            'tx_signature': req['tx_signature'],
            'wallet_address': req['payment_wallet_address'],
            'payment_type': req['payment_type'],
            'amount': req['expected_amount'],
            'recipient': recipient,
            'verified': True,
            'user_id': user_id,
            'collection_id': req['collection_id'],
            'created_at': datetime.now(timezone.utc).isoformat(),
        }
        try:
            payment = self.payments.insert(row)
        except DuplicateRowError:
            logger.error("Replay attempt: signature %s already used (user %s)", req['tx_signature'], user_id)
            self.security.log('payment_replay_attempt', 'critical', user_id=user_id,
                              wallet_address=req['payment_wallet_address'],
                              metadata={'tx_signature': req['tx_signature'], 'payment_type': req['payment_type']},
                              ip_address=ip_address)
            raise ReplayError("Transaction signature has already been used")

        self.security.log('payment_verified', 'low', user_id=user_id,
                          wallet_address=req['payment_wallet_address'],
                          metadata={'tx_signature': req['tx_signature'], 'payment_type': req['payment_type'],
                                    'amount': req['expected_amount'], 'received': received},
                          ip_address=ip_address)
        logger.info("Payment verified: %s %s SOL -> %s", req['tx_signature'], req['expected_amount'], recipient)

        return {
            'verified': True,
            'payment_id': payment.get('id'),
            'receipt': {
                'tx_signature': req['tx_signature'],
                'amount': req['expected_amount'],
                'payment_type': req['payment_type'],
                'recipient': recipient,
                'collection_id': req['collection_id'],
                'verified_at': datetime.now(timezone.utc).isoformat(),
            },
        }

    def _audit_failure(self, error: ApiError, body: dict, req: dict, user_id: str, ip_address: str):
        body = body or {}
        self.security.log('payment_verification_failed', 'medium', user_id=user_id,
                          wallet_address=(req or {}).get('payment_wallet_address') or body.get('payment_wallet_address'),
                          metadata={'reason': error.message, 'code': error.code,
                                    'tx_signature': body.get('tx_signature'),
                                    'payment_type': body.get('payment_type')},
                          ip_address=ip_address)

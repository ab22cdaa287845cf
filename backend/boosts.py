import logging
from datetime import datetime, timezone

from errors import ConflictError, DuplicateRowError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('nftId', 'bidAmount', 'tokenMint', 'txSignature')


class BoostService:
    """Boosted listings, each paid for by a verified ``boost`` payment."""

    def __init__(self, boosts, nfts, payments):
        self.boosts = boosts
        self.nfts = nfts
        self.payments = payments

    def create(self, user_id: str, body: dict) -> dict:
        body = body or {}
        missing = [k for k in REQUIRED_FIELDS if not body.get(k)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        try:
            bid_amount = float(body['bidAmount'])
        except (TypeError, ValueError):
            raise ValidationError("bidAmount must be a number")
        if bid_amount <= 0:
            raise ValidationError("bidAmount must be positive")

        tx_signature = body['txSignature']
        payment = self.payments.find_by_signature(tx_signature)
        if (not payment or not payment.get('verified') or payment.get('payment_type') != 'boost'
                or payment.get('user_id') != user_id):
            raise NotFoundError("No verified boost payment found for this transaction")
        bidder_wallet = payment['wallet_address']

        nft = self.nfts.get(body['nftId'])
        if not nft:
            raise NotFoundError("NFT not found")
        if nft.get('owner_address') != bidder_wallet:
            raise ValidationError("Only the NFT owner can boost this item")

        existing = self.boosts.find_active(body['nftId'])
        if existing:
            ends = f" (ends at {existing['end_time']})" if existing.get('end_time') else ''
            raise ConflictError(f"An active boost already exists for this NFT{ends}")
        if self.boosts.find_by_signature(tx_signature):
            raise ConflictError("This payment has already been used for a boost")

        try:
            boost = self.boosts.insert({
                'nft_id': body['nftId'],
                'bid_amount': bid_amount,
                'token_mint': body['tokenMint'],
                'bidder_wallet': bidder_wallet,
                'tx_signature': tx_signature,
                'is_active': True,
                'start_time': datetime.now(timezone.utc).isoformat(),
            })
        except DuplicateRowError:
            raise ConflictError("This payment has already been used for a boost")
        logger.info("Boost created for NFT %s by %s", body['nftId'], bidder_wallet)
        return {'success': True, 'data': boost}

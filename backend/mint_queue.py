"""Mint job queue: job creation, worker item updates and progress views.

A job owns one item per NFT to mint. Item statuses are the source of truth;
the job-level ``completed_quantity``, ``failed_quantity`` and ``status`` are
recomputed from the items whenever an item changes, so both always agree.
"""
import logging
import math
from datetime import datetime, timezone

import config
from errors import ConflictError, NotFoundError, ValidationError
from likes import is_uuid

logger = logging.getLogger(__name__)

ITEM_STATUSES = ('pending', 'processing', 'completed', 'failed')
TERMINAL_STATUSES = ('completed', 'failed')


def build_job_items(job_id: str, quantity: int, batch_size: int = config.MINT_BATCH_SIZE) -> list:
    total_batches = math.ceil(quantity / batch_size)
    items = []
    for batch in range(total_batches):
        in_batch = min(batch_size, quantity - batch * batch_size)
        for _ in range(in_batch):
            items.append({'mint_job_id': job_id, 'batch_number': batch + 1, 'status': 'pending'})
    return items


def count_items(items: list) -> dict:
    counts = {status: 0 for status in ITEM_STATUSES}
    for item in items:
        status = item.get('status')
        # 'retrying' items are waiting to be picked up again
        if status == 'retrying':
            status = 'pending'
        if status in counts:
            counts[status] += 1
    return counts


def derive_job_state(job: dict, items: list) -> dict:
    """Job-level fields implied by the item statuses."""
    counts = count_items(items)
    total = job.get('total_quantity') or len(items)
    fields = {
        'completed_quantity': counts['completed'],
        'failed_quantity': counts['failed'],
    }
    done = counts['completed'] + counts['failed']
    if items and done >= total:
        if counts['failed']:
            fields['status'] = 'failed'
            fields['error_message'] = f"{counts['failed']} of {total} items failed"
        else:
            fields['status'] = 'completed'
            fields['error_message'] = None
        fields['completed_at'] = datetime.now(timezone.utc).isoformat()
    elif counts['processing'] or done:
        fields['status'] = 'processing'
        if not job.get('started_at'):
            fields['started_at'] = datetime.now(timezone.utc).isoformat()
    else:
        fields['status'] = 'pending'
    return fields


def job_progress(job: dict, items: list) -> dict:
    counts = count_items(items)
    total = job.get('total_quantity') or 0
    if total > 0:
        percentage = max(0.0, min(100.0, counts['completed'] / total * 100))
    else:
        percentage = 0.0

    # job-level counters must agree with the item buckets
    consistent = (
        len(items) == total
        and (job.get('completed_quantity') or 0) == counts['completed']
        and (job.get('failed_quantity') or 0) == counts['failed']
    )

    status = job.get('status')
    return {
        'job': job,
        'items': items,
        'completedItems': counts['completed'],
        'failedItems': counts['failed'],
        'processingItems': counts['processing'],
        'pendingItems': counts['pending'],
        'progressPercentage': percentage,
        'mintAddresses': [i['nft_mint_address'] for i in items
                          if i.get('status') == 'completed' and i.get('nft_mint_address')],
        'errorMessage': job.get('error_message'),
        'isCompleted': status == 'completed',
        'isFailed': status == 'failed',
        'isProcessing': status == 'processing',
        'isConsistent': consistent,
    }


class MintQueue:
    def __init__(self, jobs, collections):
        self.jobs = jobs
        self.collections = collections

    def create_job(self, user_id: str, body: dict) -> dict:
        body = body or {}
        collection_id = body.get('collectionId')
        quantity = body.get('quantity')
        wallet = body.get('walletAddress')
        if not collection_id or not quantity or not wallet:
            raise ValidationError("Missing required fields: collectionId, quantity, walletAddress")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Quantity must be an integer")
        if quantity < 1 or quantity > config.MINT_MAX_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {config.MINT_MAX_QUANTITY}")
        if not is_uuid(collection_id):
            raise NotFoundError("Collection not found")

        collection = self.collections.get(
            collection_id, 'id, name, mint_price, max_supply, items_redeemed, is_live, is_active')
        if not collection:
            raise NotFoundError("Collection not found")
        if not collection.get('is_live') or not collection.get('is_active'):
            raise ValidationError("Collection is not available for minting")

        remaining = (collection.get('max_supply') or 0) - (collection.get('items_redeemed') or 0)
        if quantity > remaining:
            raise ValidationError(f"Only {remaining} NFTs remaining in collection",
                                  details={'remainingSupply': remaining})

        total_cost = float(collection.get('mint_price') or 0) * quantity
        job = self.jobs.create_job({
            'user_id': user_id,
            'wallet_address': wallet,
            'collection_id': collection_id,
            'total_quantity': quantity,
            'completed_quantity': 0,
            'failed_quantity': 0,
            'total_cost': total_cost,
            'status': 'pending',
        })

        items = build_job_items(job['id'], quantity)
        try:
            self.jobs.insert_items(items)
        except Exception:
            logger.exception("Job items creation failed for %s, removing job", job['id'])
            self.jobs.delete_job(job['id'])
            raise

        total_batches = math.ceil(quantity / config.MINT_BATCH_SIZE)
        logger.info("Created mint job %s for %d NFTs in %d batches", job['id'], quantity, total_batches)
        return {
            'success': True,
            'jobId': job['id'],
            'totalQuantity': quantity,
            'totalBatches': total_batches,
            'totalCost': total_cost,
            'collectionName': collection.get('name'),
            'estimatedTime': f"{math.ceil(total_batches * config.MINT_MINUTES_PER_BATCH)} minutes",
        }

    def list_progress(self, user_id: str) -> list:
        jobs = self.jobs.list_jobs(user_id)
        grouped = {}
        for item in self.jobs.items_for_jobs([j['id'] for j in jobs]):
            grouped.setdefault(item['mint_job_id'], []).append(item)
        return [job_progress(job, grouped.get(job['id'], [])) for job in jobs]

    def get_progress(self, user_id: str, job_id: str) -> dict:
        job = self.jobs.get_job(job_id) if is_uuid(job_id) else None
        if not job or job.get('user_id') != user_id:
            raise NotFoundError("Mint job not found")
        return job_progress(job, self.jobs.items_for_jobs([job_id]))

    def record_item_result(self, job_id: str, item_id: str, body: dict) -> dict:
        """Apply a worker's status report for one item and resync the job."""
        body = body or {}
        status = body.get('status')
        if status not in ITEM_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(ITEM_STATUSES)}")
        if status == 'completed' and not body.get('nft_mint_address'):
            raise ValidationError("nft_mint_address is required for completed items")

        job = self.jobs.get_job(job_id) if is_uuid(job_id) else None
        if not job:
            raise NotFoundError("Mint job not found")
        item = self.jobs.get_item(item_id) if is_uuid(item_id) else None
        if not item or item.get('mint_job_id') != job_id:
            raise NotFoundError("Mint job item not found")
        if item.get('status') in TERMINAL_STATUSES:
            raise ConflictError(f"Item already {item['status']}")

        fields = {'status': status}
        for key in ('nft_mint_address', 'transaction_signature', 'error_message'):
            if body.get(key):
                fields[key] = body[key]
        if status in TERMINAL_STATUSES:
            fields['processed_at'] = datetime.now(timezone.utc).isoformat()
        self.jobs.update_item(item_id, fields)

        items = self.jobs.items_for_jobs([job_id])
        job_fields = derive_job_state(job, items)
        job = {**job, **self.jobs.update_job(job_id, job_fields)}
        logger.info("Mint job %s item %s -> %s (job %s)", job_id, item_id, status, job.get('status'))
        return job_progress(job, items)

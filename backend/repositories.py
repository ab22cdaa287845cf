"""Supabase-backed repositories, one per resource.

The services only depend on the small method sets below, so tests swap in
in-memory fakes with the same methods.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from postgrest.exceptions import APIError

from errors import DuplicateRowError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = '23505'


def _first(response) -> Optional[dict]:
    rows = getattr(response, 'data', None) or []
    return rows[0] if rows else None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PaymentRepository:
    table = 'payments'

    def __init__(self, client):
        self.client = client

    def insert(self, row: dict) -> dict:
        try:
            res = self.client.table(self.table).insert(row).execute()
        except APIError as e:
            if getattr(e, 'code', None) == UNIQUE_VIOLATION:
                raise DuplicateRowError(row.get('tx_signature')) from e
            raise
        return _first(res) or row

    def find_by_signature(self, tx_signature: str) -> Optional[dict]:
        res = self.client.table(self.table).select('*').eq('tx_signature', tx_signature).limit(1).execute()
        return _first(res)


class CollectionRepository:
    table = 'collections'

    def __init__(self, client):
        self.client = client

    def get(self, collection_id: str, columns: str = '*') -> Optional[dict]:
        res = self.client.table(self.table).select(columns).eq('id', collection_id).limit(1).execute()
        return _first(res)


class NFTRepository:
    table = 'nfts'

    def __init__(self, client):
        self.client = client

    def get(self, nft_id: str) -> Optional[dict]:
        res = self.client.table(self.table).select('id, owner_address').eq('id', nft_id).limit(1).execute()
        return _first(res)


class LikeRepository:
    """Likes keyed on (user_id, <target_column>), unique on the pair."""

    def __init__(self, client, table: str, target_column: str):
        self.client = client
        self.table = table
        self.target_column = target_column

    def add(self, user_id: str, target_id: str) -> None:
        try:
            self.client.table(self.table).insert({
                'user_id': user_id,
                self.target_column: target_id,
                'created_at': _now_iso(),
            }).execute()
        except APIError as e:
            if getattr(e, 'code', None) == UNIQUE_VIOLATION:
                raise DuplicateRowError(target_id) from e
            raise

    def remove(self, user_id: str, target_id: str) -> None:
        self.client.table(self.table).delete().eq('user_id', user_id).eq(self.target_column, target_id).execute()

    def liked_ids(self, user_id: str) -> list:
        res = self.client.table(self.table).select(self.target_column).eq('user_id', user_id).execute()
        return [row[self.target_column] for row in (res.data or [])]


def nft_likes(client) -> LikeRepository:
    return LikeRepository(client, 'nft_likes', 'nft_id')


def collection_likes(client) -> LikeRepository:
    return LikeRepository(client, 'collection_likes', 'collection_id')


class MintJobRepository:
    jobs_table = 'mint_jobs'
    items_table = 'mint_job_items'

    def __init__(self, client):
        self.client = client

    def create_job(self, row: dict) -> dict:
        res = self.client.table(self.jobs_table).insert(row).execute()
        job = _first(res)
        if not job:
            raise RuntimeError('mint job insert returned no row')
        return job

    def delete_job(self, job_id: str) -> None:
        self.client.table(self.jobs_table).delete().eq('id', job_id).execute()

    def insert_items(self, rows: list) -> None:
        self.client.table(self.items_table).insert(rows).execute()

    def get_job(self, job_id: str) -> Optional[dict]:
        res = self.client.table(self.jobs_table).select('*').eq('id', job_id).limit(1).execute()
        return _first(res)

    def list_jobs(self, user_id: str) -> list:
        res = (self.client.table(self.jobs_table).select('*')
               .eq('user_id', user_id)
               .order('created_at', desc=True)
               .execute())
        return res.data or []

    def items_for_jobs(self, job_ids: list) -> list:
        if not job_ids:
            return []
        res = (self.client.table(self.items_table).select('*')
               .in_('mint_job_id', job_ids)
               .order('batch_number')
               .execute())
        return res.data or []

    def get_item(self, item_id: str) -> Optional[dict]:
        res = self.client.table(self.items_table).select('*').eq('id', item_id).limit(1).execute()
        return _first(res)

    def update_item(self, item_id: str, fields: dict) -> dict:
        fields = {**fields, 'updated_at': _now_iso()}
        res = self.client.table(self.items_table).update(fields).eq('id', item_id).execute()
        return _first(res) or fields

    def update_job(self, job_id: str, fields: dict) -> dict:
        fields = {**fields, 'updated_at': _now_iso()}
        res = self.client.table(self.jobs_table).update(fields).eq('id', job_id).execute()
        return _first(res) or fields


class BoostRepository:
    table = 'boosted_listings'

    def __init__(self, client):
        self.client = client

    def find_active(self, nft_id: str) -> Optional[dict]:
        res = (self.client.table(self.table).select('id, end_time')
               .eq('nft_id', nft_id).eq('is_active', True)
               .limit(1).execute())
        return _first(res)

    def find_by_signature(self, tx_signature: str) -> Optional[dict]:
        res = self.client.table(self.table).select('id').eq('tx_signature', tx_signature).limit(1).execute()
        return _first(res)

    def insert(self, row: dict) -> dict:
        try:
            res = self.client.table(self.table).insert(row).execute()
        except APIError as e:
            if getattr(e, 'code', None) == UNIQUE_VIOLATION:
                raise DuplicateRowError(row.get('tx_signature')) from e
            raise
        return _first(res) or row


class SecurityEventRepository:
    table = 'security_events'

    def __init__(self, client):
        self.client = client

    def insert(self, row: dict) -> None:
        self.client.table(self.table).insert(row).execute()

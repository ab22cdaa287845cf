import logging
import re

from errors import ConflictError, DuplicateRowError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ACTIONS = ('like', 'unlike')
UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$', re.IGNORECASE)


class AlreadyLikedError(ConflictError):
    code = 'ALREADY_LIKED'


def is_uuid(value) -> bool:
    return isinstance(value, str) and bool(UUID_RE.match(value))


class LikeService:
    """Like/unlike for one kind of target (``nft`` or ``collection``)."""

    def __init__(self, kind: str, likes, collections=None):
        if kind not in ('nft', 'collection'):
            raise ValueError(f"Unknown like target kind: {kind}")
        self.kind = kind
        self.likes = likes
        self.collections = collections

    def apply(self, user_id: str, body: dict) -> dict:
        body = body or {}
        target_id = body.get('target_id')
        action = body.get('action')
        if not target_id or not action:
            raise ValidationError("target_id and action are required")
        if action not in ACTIONS:
            raise ValidationError("action must be 'like' or 'unlike'")

        if self.kind == 'collection':
            if not is_uuid(target_id):
                raise ValidationError("Invalid collection ID")
            if self.collections is not None and not self.collections.get(target_id, 'id'):
                raise NotFoundError("Collection not found")

        if action == 'like':
            try:
                self.likes.add(user_id, target_id)
            except DuplicateRowError:
                raise AlreadyLikedError(f"{self.kind.capitalize()} already liked")
        else:
            self.likes.remove(user_id, target_id)

        logger.info("%s %sd: %s by %s", self.kind, action, target_id, user_id)
        return {'success': True, 'action': action, 'target_id': target_id}

    def liked(self, user_id: str) -> list:
        return self.likes.liked_ids(user_id)

# tests/test_likes.py
import pytest

from errors import NotFoundError, ValidationError
from likes import AlreadyLikedError, LikeService, is_uuid
from fakes import FakeCollectionRepository, FakeLikeRepository

COLLECTION_ID = '4f1c2b7e-8a4d-4c1e-9b2a-3d5e6f708192'


@pytest.fixture
def repo():
    return FakeLikeRepository()


class TestNFTLikes:
    def test_like_then_unlike(self, repo):
        service = LikeService('nft', repo)
        assert service.apply('user-1', {'target_id': 'nft-1', 'action': 'like'}) == \
            {'success': True, 'action': 'like', 'target_id': 'nft-1'}
        assert service.liked('user-1') == ['nft-1']

        service.apply('user-1', {'target_id': 'nft-1', 'action': 'unlike'})
        assert service.liked('user-1') == []

    def test_double_like_conflicts(self, repo):
        service = LikeService('nft', repo)
        service.apply('user-1', {'target_id': 'nft-1', 'action': 'like'})
        with pytest.raises(AlreadyLikedError) as exc:
            service.apply('user-1', {'target_id': 'nft-1', 'action': 'like'})
        assert exc.value.status_code == 409
        assert exc.value.code == 'ALREADY_LIKED'

    def test_unlike_without_like_succeeds(self, repo):
        result = LikeService('nft', repo).apply('user-1', {'target_id': 'nft-1', 'action': 'unlike'})
        assert result['success'] is True

    def test_likes_are_per_user(self, repo):
        service = LikeService('nft', repo)
        service.apply('user-1', {'target_id': 'nft-1', 'action': 'like'})
        service.apply('user-2', {'target_id': 'nft-1', 'action': 'like'})
        assert service.liked('user-2') == ['nft-1']

    @pytest.mark.parametrize('body', [{}, {'target_id': 'nft-1'}, {'target_id': 'nft-1', 'action': 'love'}])
    def test_invalid_requests(self, repo, body):
        with pytest.raises(ValidationError):
            LikeService('nft', repo).apply('user-1', body)


class TestCollectionLikes:
    def test_collection_must_exist(self, repo):
        service = LikeService('collection', repo, FakeCollectionRepository())
        with pytest.raises(NotFoundError):
            service.apply('user-1', {'target_id': COLLECTION_ID, 'action': 'like'})

    def test_collection_id_must_be_uuid(self, repo):
        service = LikeService('collection', repo, FakeCollectionRepository())
        with pytest.raises(ValidationError, match='Invalid collection ID'):
            service.apply('user-1', {'target_id': 'col-1', 'action': 'like'})

    def test_like_existing_collection(self, repo):
        service = LikeService('collection', repo, FakeCollectionRepository({'id': COLLECTION_ID}))
        service.apply('user-1', {'target_id': COLLECTION_ID, 'action': 'like'})
        assert service.liked('user-1') == [COLLECTION_ID]


def test_is_uuid():
    assert is_uuid(COLLECTION_ID)
    assert not is_uuid('4f1c2b7e-8a4d-0c1e-9b2a-3d5e6f708192')
    assert not is_uuid(None)

"""Tests for IdempotencyStore claim/release against a mocked Redis client."""
from unittest.mock import MagicMock, patch

from cardshop.services.idempotency import IdempotencyStore
from cardshop.services.webhooks.service import WebhookService


def _store(set_result=True) -> tuple[IdempotencyStore, MagicMock]:
    client = MagicMock()
    client.set.return_value = set_result
    client.eval.return_value = 1
    return IdempotencyStore(client=client), client


class TestIdempotencyStore:
    def test_new_claim(self):
        store, client = _store()

        assert store.check_and_set("notify:T-1", ttl_seconds=30) is True

        args, kwargs = client.set.call_args
        assert args[0] == "cardshop:idem:notify:T-1"
        assert kwargs == {"nx": True, "ex": 30}

    def test_existing_claim(self):
        store, _ = _store(set_result=None)
        assert store.check_and_set("notify:T-1") is False

    def test_release_only_own_claim(self):
        store, client = _store()
        store.check_and_set("notify:T-1")
        token = client.set.call_args.args[1]

        assert store.release("notify:T-1") is True

        _, numkeys, key, sent_token = client.eval.call_args.args
        assert (numkeys, key, sent_token) == (1, "cardshop:idem:notify:T-1", token)

    def test_release_without_claim_is_noop(self):
        store, client = _store(set_result=None)
        store.check_and_set("notify:T-1")

        assert store.release("notify:T-1") is False
        client.eval.assert_not_called()

    def test_ttl_and_redis_url_come_from_config(self, config):
        config = config.model_copy(update={"idempotency_ttl": 42, "redis_url": "redis://cache:6379/3"})

        with patch("cardshop.services.idempotency.redis.Redis.from_url") as from_url:
            store = IdempotencyStore(config=config)
            store.check_and_set("notify:T-1")

        from_url.assert_called_once_with("redis://cache:6379/3", decode_responses=True)
        assert from_url.return_value.set.call_args.kwargs["ex"] == 42

    def test_webhook_service_shares_its_config(self, db, config):
        with patch("cardshop.services.webhooks.service.IdempotencyStore") as store_cls:
            assert WebhookService(db, config=config).idempotency is store_cls.return_value

        store_cls.assert_called_once_with(config=config)

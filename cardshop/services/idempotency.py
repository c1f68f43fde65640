"""
Short-lived claims in Redis for duplicate suppression.

A claim stores a random token; release only deletes the key while it still
holds that token, so a worker whose claim expired cannot drop the claim a
second worker took in the meantime.
"""
import uuid

import redis

from cardshop.core.config import Settings, get_settings

_RELEASE_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class IdempotencyStore:
    def __init__(
        self,
        client: redis.Redis | None = None,
        namespace: str = "cardshop:idem",
        config: Settings | None = None,
    ) -> None:
        self.config = config or get_settings()
        self.client = client or redis.Redis.from_url(self.config.redis_url, decode_responses=True)
        self.namespace = namespace
        self.default_ttl = self.config.idempotency_ttl
        self._tokens: dict[str, str] = {}

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def check_and_set(self, key: str, ttl_seconds: int | None = None) -> bool:
        """True when the claim is new (SET NX EX)."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        token = uuid.uuid4().hex
        created = self.client.set(self._key(key), token, nx=True, ex=ttl)
        if created:
            self._tokens[key] = token
        return bool(created)

    def release(self, key: str) -> bool:
        token = self._tokens.pop(key, None)
        if token is None:
            return False
        return bool(self.client.eval(_RELEASE_IF_OWNER, 1, self._key(key), token))

"""Map a verified Telegram identity to the local identity record."""

import logging
from typing import Optional

from .errors import StoreError
from .storage import IdentityRecord, IdentityStore

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Thin adapter over IdentityStore.upsert_by_platform_id().

    No retries, locks or caching here: atomicity under concurrent requests
    for the same user is the store's job.
    """

    def __init__(self, store: IdentityStore):
        self.store = store

    def resolve(self, platform_user_id: int, username: Optional[str]) -> IdentityRecord:
        username = username or None

        try:
            return self.store.upsert_by_platform_id(platform_user_id, username)
        except StoreError:
            raise
        except Exception as e:
            logger.exception("identity store failure for telegram_id=%s", platform_user_id)
            raise StoreError(f"{type(e).__name__}: {e}") from e

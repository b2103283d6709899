"""
Client identity and per-user storage scoping.

Multiple accounts can share one device, so history caches are namespaced by
the signed-in user. Data written before scoping existed lives under the bare
base key and is promoted into a user's slot at most once.
"""

import json
import logging
import uuid
from typing import Optional

from .models import Keys, record_owner
from .storage import Storage

logger = logging.getLogger(__name__)


def get_or_create_client_id(storage: Storage) -> str:
    """Return the device identifier, minting and persisting it on first use."""
    cid = storage.get(Keys.CLIENT_ID)
    if not cid:
        cid = str(uuid.uuid4())
        storage.set(Keys.CLIENT_ID, cid)
        logger.info(f"Minted device client id {cid}")
    return cid


def scoped_key(base: str, user_id: Optional[str]) -> str:
    """Namespace ``base`` by user; anonymous sessions stay device-scoped."""
    return f"{base}:{user_id}" if user_id else base


def ensure_scoped_from_legacy(storage: Storage, base: str, user_id: Optional[str]) -> bool:
    """
    Promote legacy unscoped data into ``base:user_id``.

    The promotion is skipped entirely when any scoped slot already exists for
    ``base`` (under any user): once one account has claimed the device's data,
    leftovers must never bleed into another account.

    For list-shaped data, records that declare a different owner are filtered
    out. If that filtering would empty a non-empty list whose records are
    user-attributed, nothing is copied and the legacy data is left in place.

    Args:
        storage: Backing store
        base: Unscoped base key (e.g. ``workoutHistory``)
        user_id: Signed-in user

    Returns:
        True if legacy data was promoted
    """
    if not user_id:
        return False

    legacy_raw = storage.get(base)
    if legacy_raw is None:
        return False

    if storage.keys_with_prefix(f"{base}:"):
        logger.debug(f"Scoped data already present for {base}; legacy promotion skipped")
        return False

    try:
        legacy = json.loads(legacy_raw)
    except (TypeError, ValueError):
        legacy = None

    value_raw = legacy_raw
    if isinstance(legacy, list):
        attributed = [r for r in legacy if record_owner(r)]
        kept = [r for r in legacy if record_owner(r) in (None, str(user_id))]
        if legacy and attributed and not kept:
            logger.warning(
                f"Legacy {base} belongs to another account; promotion aborted"
            )
            return False
        if len(kept) != len(legacy):
            logger.info(
                f"Dropped {len(legacy) - len(kept)} foreign records while promoting {base}"
            )
            value_raw = json.dumps(kept)

    storage.set(scoped_key(base, user_id), value_raw)
    storage.remove(base)
    logger.info(f"Promoted legacy {base} to user scope")
    return True

from __future__ import annotations

import logging
import time

from .context import AppContext


logger = logging.getLogger(__name__)

SWEPT_PREFIXES = ("sessions/", "apps/")


def sweep_orphan_blobs(ctx: AppContext, *, grace_seconds: float | None = None, now: float | None = None) -> int:
    """Delete blobs that no asset/object row references.

    Only blobs older than the grace period are touched, so an upload that has
    written its blobs but not yet its metadata batch is left alone.

    Returns the number of deleted blobs.
    """
    grace = ctx.settings.orphan_grace_seconds if grace_seconds is None else grace_seconds
    now = time.time() if now is None else now
    referenced = ctx.store.referenced_object_keys()

    deleted = 0
    for prefix in SWEPT_PREFIXES:
        for info in list(ctx.blobs.list(prefix)):
            if info.key in referenced:
                continue
            if now - info.uploaded_at < grace:
                continue
            if ctx.blobs.delete(info.key):
                deleted += 1
                logger.info("Deleted orphaned blob key=%s size=%d", info.key, info.size)
    return deleted

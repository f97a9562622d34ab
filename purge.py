"""
Storage Budget Enforcement

Deletes the oldest stored decrees until the total extracted-document size is
back under a byte budget. User-edited documents and documents matched by an
active protect rule are never deleted.
"""

import logging
from typing import Any, Dict, Optional

from filters import ProtectionRules
from models import PurgeResult
from storage import Repository


CANDIDATE_BATCH = 50


def enforce_storage_budget(repository: Repository, max_bytes: int, max_deletes_per_run: int = 200) -> PurgeResult:
    """
    Enforce a storage budget by deleting oldest documents until under the limit.

    Args:
        repository: Storage gateway
        max_bytes: Budget for the summed document byte sizes
        max_deletes_per_run: Hard cap on deletions in this call

    Returns:
        PurgeResult with deleted count, freed bytes and the total afterwards
    """
    total = repository.total_document_bytes()
    if total <= max_bytes:
        return PurgeResult(deleted=0, freed_bytes=0, total_after=total)

    protection = ProtectionRules(repository.list_filter_rules(rule_type="protect", active_only=True))
    freed = 0
    deleted = 0
    protected_seen = 0
    cursor = None

    logging.info(f"Storage at {total} bytes exceeds budget of {max_bytes} bytes, purging")

    while total - freed > max_bytes and deleted < max_deletes_per_run:
        batch = repository.list_deletion_candidates(cursor, CANDIDATE_BATCH)
        if not batch:
            break

        for document in batch:
            if protection.is_protected(document):
                protected_seen += 1
                continue
            repository.detach_document(document.id)
            repository.delete_document(document.id)
            freed += document.byte_size or 0
            deleted += 1
            logging.debug(f"Deleted document {document.id} ({document.year}-{document.index}, "
                          f"{document.byte_size} bytes)")
            if deleted >= max_deletes_per_run or total - freed <= max_bytes:
                break

        cursor = (batch[-1].created_at, batch[-1].id)

    total_after = repository.total_document_bytes()
    logging.info(f"Purge deleted {deleted} documents, freed {freed} bytes "
                 f"({protected_seen} protected kept), total now {total_after} bytes")
    return PurgeResult(deleted=deleted, freed_bytes=freed, total_after=total_after)


def storage_overview(repository: Repository, max_bytes: Optional[int] = None) -> Dict[str, Any]:
    """Document count and stored bytes, with budget usage when a budget is given"""
    total = repository.total_document_bytes()
    overview = {
        'documents': repository.count_documents(),
        'total_bytes': total,
    }
    if max_bytes:
        overview['max_bytes'] = max_bytes
        overview['usage_ratio'] = round(total / max_bytes, 4)
    return overview

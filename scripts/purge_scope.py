#!/usr/bin/env python3
"""Delete every memory fragment stored for one owner/avatar/relationship scope.

This is the "delete all my data" path for a single subject. Deleting an empty
scope is not an error.

Usage:
    python scripts/purge_scope.py --owner USER --avatar AVATAR [--token TOKEN] [--dry-run] [--yes]

Environment:
    QDRANT_URL, QDRANT_API_KEY: Qdrant endpoint
    QDRANT_PATH: on-disk embedded Qdrant directory, used when QDRANT_URL is unset
    QDRANT_COLLECTION: collection name (default: memory_fragments)
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from qdrant_client import QdrantClient

from avatarmem.errors import AvatarMemoryError
from avatarmem.scope import resolve_scope
from avatarmem.stores.memory_store import MemoryStore

logger = logging.getLogger("purge_scope")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)


def load_environment() -> None:
    load_dotenv()
    load_dotenv(Path.home() / ".config" / "avatarmem" / ".env")


def purge_scope(
    client: QdrantClient,
    *,
    collection: str,
    dimension: int,
    owner: str,
    avatar: str,
    token: Optional[str],
    dry_run: bool,
) -> int:
    scope = resolve_scope(owner, avatar, token)
    store = MemoryStore(client, collection_name=collection, dimension=dimension, logger=logger)
    if dry_run:
        count = store.count_scope(scope)
        logger.info("[dry run] %d fragments would be deleted for %s", count, scope)
        return count
    deleted = store.delete_scope(scope)
    logger.info("Deleted %d fragments for %s", deleted, scope)
    return deleted


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete all memory fragments for one scope")
    parser.add_argument("--owner", required=True, help="Avatar owner's user id")
    parser.add_argument("--avatar", required=True, help="Avatar id")
    parser.add_argument(
        "--token",
        default=None,
        help="Relationship token of a shared-link visitor (omit for the owner's own scope)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Only count matching fragments")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()

    load_environment()
    url = os.getenv("QDRANT_URL")
    path = os.getenv("QDRANT_PATH")
    if url:
        client = QdrantClient(url=url, api_key=os.getenv("QDRANT_API_KEY"))
    elif path and path != ":memory:":
        client = QdrantClient(path=path)
    else:
        logger.error("Set QDRANT_URL or an on-disk QDRANT_PATH")
        sys.exit(1)
    collection = os.getenv("QDRANT_COLLECTION", "memory_fragments")

    try:
        info = client.get_collection(collection)
    except Exception as exc:
        logger.error("Cannot access collection %s: %s", collection, exc)
        sys.exit(1)
    dimension = info.config.params.vectors.size

    if not args.dry_run and not args.yes:
        scope_label = f"{args.owner}/{args.avatar}/{args.token or 'owner'}"
        answer = input(f"Delete all fragments for {scope_label}? [y/N] ")
        if answer.strip().lower() not in {"y", "yes"}:
            logger.info("Aborted")
            return

    try:
        purge_scope(
            client,
            collection=collection,
            dimension=dimension,
            owner=args.owner,
            avatar=args.avatar,
            token=args.token,
            dry_run=args.dry_run,
        )
    except AvatarMemoryError as exc:
        logger.error("Purge failed: %s (%s)", exc.message, exc.context)
        sys.exit(1)


if __name__ == "__main__":
    main()

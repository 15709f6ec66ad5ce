#!/usr/bin/env python3
"""
Cleanup script to remove test notes created by the live tests
Run this periodically to keep your Trilium instance clean
"""

import asyncio
import sys

from dotenv import load_dotenv

from trilium_client import TriliumClient, TriliumConfig, TriliumError

load_dotenv()

TEST_LABEL = "mcpTest"


async def cleanup_test_notes(dry_run: bool = False) -> bool:
    """Find and delete notes labelled #mcpTest"""
    print(f"🧹 Cleaning up notes labelled #{TEST_LABEL}...")

    try:
        client = TriliumClient(TriliumConfig.from_env())
        results = await client.search_notes(f"#{TEST_LABEL}", limit=1000)
    except TriliumError as e:
        print(f"❌ Failed to search test notes: {e.to_response()['error']}")
        return False

    if not results:
        print("✅ No test notes found")
        return True

    deleted_count = 0
    for note in results:
        print(f"🗑️  Found test note: '{note.title}' ({note.note_id})")
        if dry_run:
            continue
        try:
            await client.delete_note(note.note_id)
            deleted_count += 1
        except TriliumError as e:
            # Children go away with their deleted parent
            print(f"⚠️  Could not delete {note.note_id}: {e.message}")

    if dry_run:
        print(f"Dry run: {len(results)} test notes would be deleted")
    else:
        print(f"✅ Deleted {deleted_count} test notes")
    return True


if __name__ == "__main__":
    ok = asyncio.run(cleanup_test_notes(dry_run="--dry-run" in sys.argv))
    sys.exit(0 if ok else 1)

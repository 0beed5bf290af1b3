"""
Campaign Sync Entry Point

Allows execution via: python -m campaign_sync

Delegates to scheduler for all execution modes (scheduled and RUN_ONCE).
"""

from campaign_sync.scheduler import cli

if __name__ == "__main__":
    cli()

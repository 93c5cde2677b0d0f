#!/usr/bin/env python3
"""
Mail sync and classification runner

Drives the same operations as the API from cron or a shell.

Usage:
    # Sync every active account of a user, then classify what came in
    python3 sync_inbox.py --user alice

    # Sync one account, ignoring the cursor
    python3 sync_inbox.py --account 4f6c...e1 --full-sync --limit 50

    # Classify the newest unclassified emails
    python3 sync_inbox.py --user alice --classify-only --limit 50

    # Recompute reputation (repeat with --resume-after until complete)
    python3 sync_inbox.py --user alice --rebuild-reputation

Options:
    --user ID               User whose accounts are synced
    --account ID            Sync a single account
    --limit N               Messages per account (clamped to SYNC_MAX_LIMIT)
    --full-sync             Ignore the cursor and the recent-sync guard
    --no-classify           Do not classify newly synced mail
    --classify-only         Skip sync, classify unclassified mail
    --rebuild-reputation    Recompute derived reputation for the user
    --resume-after TOKEN    Resume an incomplete rebuild
    --init-db               Create tables before running
"""
import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from mailsift.core.config import configure_logging, get_settings
from mailsift.core.errors import MailsiftError
from mailsift.core.pipeline import MailPipeline

load_dotenv()

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Sync mail accounts and classify new mail'
    )
    parser.add_argument('--user', type=str, default=None,
                        help='User whose active accounts are synced')
    parser.add_argument('--account', type=str, default=None,
                        help='Sync a single account by id')
    parser.add_argument('--limit', type=int, default=None,
                        help='Messages per account (default: SYNC_DEFAULT_LIMIT)')
    parser.add_argument('--full-sync', action='store_true',
                        help='Ignore the cursor and the recent-sync guard')
    parser.add_argument('--no-classify', action='store_true',
                        help='Do not classify newly synced mail')
    parser.add_argument('--classify-only', action='store_true',
                        help='Skip sync and classify unclassified mail of --user')
    parser.add_argument('--rebuild-reputation', action='store_true',
                        help='Recompute derived reputation for --user')
    parser.add_argument('--resume-after', type=str, default=None,
                        help='Resume token from an incomplete rebuild')
    parser.add_argument('--init-db', action='store_true',
                        help='Create database tables before running')
    parser.add_argument('--verbose', action='store_true',
                        help='Log at DEBUG level')
    return parser


async def run(args, pipeline: MailPipeline) -> dict:
    if args.rebuild_reputation:
        return pipeline.rebuild_reputation(args.user, resume_after=args.resume_after).to_dict()

    if args.classify_only:
        return (await pipeline.classify_unclassified(args.user, args.limit)).to_dict()

    if args.account:
        outcome = await pipeline.trigger_sync(args.account, limit=args.limit, full_sync=args.full_sync)
    else:
        outcome = await pipeline.trigger_sync_all(args.user, limit=args.limit, full_sync=args.full_sync)
    return outcome.to_dict()


def main(argv=None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.user and not args.account:
        parser.error('one of --user or --account is required')
    if (args.classify_only or args.rebuild_reputation) and not args.user:
        parser.error('--classify-only and --rebuild-reputation need --user')

    settings = get_settings()
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)
    if args.no_classify:
        settings.classify_after_sync = False

    pipeline = MailPipeline.from_settings(settings)
    try:
        if args.init_db:
            pipeline.store.create_all()
        result = asyncio.run(run(args, pipeline))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 1
    except MailsiftError as e:
        logger.error(f"Run failed: {type(e).__name__}: {e}")
        return 1
    finally:
        pipeline.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())

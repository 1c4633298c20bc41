"""
Main entry point for the Vault Auto-Tagger service.
"""

import argparse
import asyncio
import sys
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .api_server import run_control_server
from .config import Settings, load_settings
from .logging import get_logger, setup_logging
from .scheduler import Scheduler
from .service import AutoTaggerService


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Vault Auto-Tagger - AI-assisted tagging for a Vault media library"
    )

    parser.add_argument(
        "--mode",
        choices=["run", "serve", "scheduler"],
        default="run",
        help="run: process the queue once; serve: control server; scheduler: cron-driven runs (default: run)"
    )

    parser.add_argument(
        "--queue",
        choices=["untagged", "all"],
        help="Queue media before running"
    )

    parser.add_argument(
        "--media-id",
        action="append",
        default=[],
        metavar="MEDIA_ID",
        help="Queue a specific media item (repeatable)"
    )

    parser.add_argument(
        "--tier2",
        action="store_true",
        help="Enable remote vision analysis for this run"
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show queue status and exit"
    )

    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show processing stats and exit"
    )

    parser.add_argument(
        "--check-models",
        action="store_true",
        help="Report which model files are present and exit"
    )

    parser.add_argument(
        "--retry-failed",
        action="store_true",
        help="Requeue failed items and exit"
    )

    parser.add_argument(
        "--clear-failed",
        action="store_true",
        help="Delete failed items from the queue and exit"
    )

    parser.add_argument(
        "--cleanup-tags",
        action="store_true",
        help="Remove nonsensical AI-generated tags from the vocabulary and exit"
    )

    parser.add_argument(
        "--bulk-approve",
        action="store_true",
        help="Approve every pending review item and exit"
    )

    parser.add_argument(
        "--bulk-reject",
        action="store_true",
        help="Reject every pending review item and exit"
    )

    return parser.parse_args(argv)


def run_one_shot_commands(service: AutoTaggerService, args) -> Optional[int]:
    """Handle flags that perform a single operation. Returns an exit code if one ran."""
    logger = get_logger("main")

    if args.check_models:
        report = service.check_models()
        for model in report["models"]:
            marker = "✅" if model["downloaded"] else ("❌" if model["required"] else "➖")
            logger.info(f"{marker} {model['name']} ({model['filename']})")
        return 0 if report["all_ready"] else 1

    if args.status:
        status = service.get_status()
        logger.info(
            f"📊 Queue: {status.total} total, {status.pending} pending, {status.processing} processing, "
            f"{status.completed} completed, {status.failed} failed"
        )
        logger.info(f"🏷️  Untagged media: {service.untagged_count()}")
        return 0

    if args.stats:
        stats = service.get_stats()
        logger.info(
            f"📊 Processed {stats.total_processed} ({stats.tier1_only} Tier 1 only, {stats.tier2_used} with Tier 2), "
            f"avg {stats.avg_processing_time:.2f}s"
        )
        logger.info(f"🏷️  {stats.tags_matched} tags matched, {stats.new_tags_created} new tags on approval")
        return 0

    if args.retry_failed:
        logger.info(f"🔄 Requeued {service.retry_failed()} failed items")
        return 0

    if args.clear_failed:
        logger.info(f"🧹 Cleared {service.clear_failed()} failed items")
        return 0

    if args.cleanup_tags:
        logger.info(f"🧹 Removed {service.cleanup_tags()} invalid tags")
        return 0

    if args.bulk_approve:
        logger.info(f"✅ Approved {service.bulk_approve()} results")
        return 0

    if args.bulk_reject:
        logger.info(f"🚫 Rejected {service.bulk_reject()} results")
        return 0

    return None


async def run_service(service: AutoTaggerService, settings: Settings, args) -> int:
    """Run the selected mode until it finishes or is interrupted."""
    logger = get_logger("main")

    try:
        if args.mode == "serve":
            logger.info("🌐 Running control server")
            await run_control_server(service, settings.api_host, settings.api_port)

        elif args.mode == "scheduler":
            logger.info("⏰ Running in scheduler mode")
            server_task = asyncio.create_task(run_control_server(service, settings.api_host, settings.api_port))
            try:
                await Scheduler(service).start()
            finally:
                server_task.cancel()
                try:
                    await server_task
                except asyncio.CancelledError:
                    pass

        else:
            result = await service.start(enable_tier2=args.tier2 or settings.tier2_enabled)
            if not result.success:
                logger.error(f"❌ Could not start processing: {result.error}")
                return 1
            await service.wait_idle()
            status = service.get_status()
            logger.info(f"🏁 Run finished: {status.completed} completed, {status.failed} failed, {status.pending} pending")
        return 0
    finally:
        await service.close()


def main(argv=None):
    """Main entry point."""
    args = parse_arguments(argv)

    try:
        settings = load_settings()
    except ValidationError as e:
        setup_logging()
        get_logger("main").error(f"❌ Invalid configuration: {e}")
        return 1

    setup_logging(settings.log_level)
    logger = get_logger("main")
    logger.info(f"🚀 Starting Vault Auto-Tagger in {args.mode} mode")

    service = AutoTaggerService(settings)
    try:
        service.initialize()

        exit_code = run_one_shot_commands(service, args)
        if exit_code is not None:
            asyncio.run(service.close())
            return exit_code

        if args.queue == "untagged":
            service.queue_untagged()
        elif args.queue == "all":
            service.queue_all()
        if args.media_id:
            service.queue_specific(args.media_id)

        return asyncio.run(run_service(service, settings, args))

    except KeyboardInterrupt:
        logger.info("⏹️  Service interrupted by user")
        return 0
    except SQLAlchemyError as e:
        logger.error(f"❌ Database error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

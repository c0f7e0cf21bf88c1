"""
Handles command-line interface parsing and actions.
"""
import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, NoReturn, Optional

from rich.console import Console

from . import __version__
from .config import ConfigurationError, load_config, validate_required_env
from .exceptions import ForgeError
from .jobs import GenerationOrchestrator
from .jobs.types import GenerationOptions, JobStatus
from .utils.logging import get_logger, init_logging, shutdown_logging_and_exit

console = Console()

SECRET_MARKERS = ("KEY", "TOKEN", "SECRET")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(prog="forge3d", description="3D generation job service")
    parser.add_argument('--debug', action='store_true', help='Enable debug logging.')
    parser.add_argument('--config-check', action='store_true', help='Validate configuration and exit.')
    parser.add_argument('--version', action='store_true', help='Show version info and exit.')

    sub = parser.add_subparsers(dest="command")

    text = sub.add_parser("text", help="Generate a model from a text prompt and follow it.")
    text.add_argument("prompt")
    text.add_argument("--owner", default="cli")

    image = sub.add_parser("image", help="Generate a model from an image reference and follow it.")
    image.add_argument("image_ref")
    image.add_argument("--owner", default="cli")

    for generate in (text, image):
        generate.add_argument("--format", dest="result_format", help="Output format, e.g. OBJ, GLB, STL.")
        generate.add_argument("--pbr", dest="enable_pbr", action=argparse.BooleanOptionalAction, default=None,
                              help="Request PBR materials.")
        generate.add_argument("--face-count", type=int, help="Target face count.")
        generate.add_argument("--generate-type", help="Provider generation mode.")

    status = sub.add_parser("status", help="Show the status of a job.")
    status.add_argument("job_id")

    listing = sub.add_parser("list", help="List an owner's jobs, newest first.")
    listing.add_argument("owner")
    listing.add_argument("--limit", type=int, default=20)
    listing.add_argument("--offset", type=int, default=0)

    sweep = sub.add_parser("sweep", help="Re-enqueue pending jobs, drive them to completion and prune expired cache entries.")
    sweep.add_argument("--limit", type=int, default=100)

    return parser.parse_args(argv)


def show_version_info() -> None:
    """Display version and system information."""
    print(f"forge3d - Version {__version__}")
    print(f"Python Version: {sys.version}")


def masked_config(config: Dict[str, Any]) -> Dict[str, Any]:
    masked = {}
    for key, value in config.items():
        if any(marker in key for marker in SECRET_MARKERS) and value:
            value = '********'
        masked[key] = str(value) if value is not None else None
    return masked


def validate_configuration_only() -> None:
    """Validate configuration and exit."""
    logger = get_logger(__name__)
    try:
        logger.info("--- Running Configuration-Only Validation ---", extra={'subsys': 'core', 'event': 'config_check_start'})
        validate_required_env()
        config = load_config(refresh=True)
        logger.info("Configuration validation successful. The following settings are active:", extra={'subsys': 'core', 'event': 'config_valid_start'})
        for key, value in masked_config(config).items():
            logger.info(f"  • {key}: {value}", extra={'subsys': 'core', 'event': 'config_valid'})
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}", extra={'subsys': 'core', 'event': 'config_fail'})
        shutdown_logging_and_exit(1)


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def options_from_args(args: argparse.Namespace) -> GenerationOptions:
    return GenerationOptions(
        result_format=getattr(args, "result_format", None),
        enable_pbr=getattr(args, "enable_pbr", None),
        face_count=getattr(args, "face_count", None),
        generate_type=getattr(args, "generate_type", None),
    )


async def follow(orchestrator: GenerationOrchestrator, job_id: str, interval: float) -> None:
    """Print status views until the job is terminal."""
    last_status: Optional[JobStatus] = None
    while True:
        view = await orchestrator.get_job_status(job_id)
        if view.status is not last_status:
            print_json(view.to_dict())
            last_status = view.status
        if view.status.is_terminal:
            return
        await asyncio.sleep(interval)


async def run_command(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    orchestrator = GenerationOrchestrator(config)
    interval = max(1.0, float(config["FORGE_POLL_INTERVAL_S"]))

    try:
        if args.command in ("text", "image"):
            await orchestrator.start()
            options = options_from_args(args)
            if args.command == "text":
                result = await orchestrator.submit_text(args.owner, args.prompt, options)
            else:
                result = await orchestrator.submit_image(args.owner, args.image_ref, options)
            print_json(result.to_dict())
            await follow(orchestrator, result.job_id, interval)
            view = await orchestrator.get_job_status(result.job_id)
            return 0 if view.status is JobStatus.COMPLETED else 2

        if args.command == "status":
            print_json((await orchestrator.get_job_status(args.job_id)).to_dict())
            return 0

        if args.command == "list":
            jobs = await orchestrator.list_jobs(args.owner, limit=args.limit, offset=args.offset)
            print_json([job.to_dict() for job in jobs])
            return 0

        if args.command == "sweep":
            await orchestrator.start()
            admitted = await orchestrator.resume_processing(args.limit)
            admitted += await orchestrator.resubmit_pending(args.limit)
            await orchestrator.pool.drain()
            expired = await orchestrator.cache.cleanup_expired()
            print_json({"admitted": admitted, "cache_expired": expired, **(await orchestrator.stats())})
            return 0

        return 1
    finally:
        await orchestrator.close()


def main(argv: Optional[List[str]] = None) -> NoReturn:
    args = parse_arguments(argv)
    if args.debug:
        os.environ['LOG_LEVEL'] = 'DEBUG'
    init_logging()
    logger = get_logger(__name__)

    if args.version:
        show_version_info()
        shutdown_logging_and_exit(0)

    if args.config_check:
        validate_configuration_only()
        shutdown_logging_and_exit(0)

    if not args.command:
        logger.error("No command given; see --help")
        shutdown_logging_and_exit(1)

    try:
        if args.command in ("text", "image", "sweep"):
            validate_required_env()
        config = load_config()
        exit_code = asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted; in-flight jobs stay in the store for the next sweep.")
        exit_code = 130
    except ForgeError as e:
        logger.error(f"{type(e).__name__}: {e}", extra={'subsys': 'core', 'event': 'command_failed'})
        exit_code = 1

    shutdown_logging_and_exit(exit_code)

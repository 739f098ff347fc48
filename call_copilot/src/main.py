#!/usr/bin/env python3
"""
Call Copilot - operator-assisted phone calls with AI reply suggestions.

Places calls with Telnyx, transcribes the callee with Deepgram, asks Bedrock
for short customer-side replies, and plays operator-selected replies back
into the call.

Usage:
    python -m call_copilot
    python -m call_copilot --to "+821012345678" --intent "오늘 7시 두 명 예약"
"""

import argparse
import asyncio
import logging
import sys

import uvicorn

from .config import load_config
from .call_manager import CallManager
from .websocket_server import app, init_session_manager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Operator-assisted AI phone calls",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run the server; calls are placed from the operator console (POST /calls)
    python -m call_copilot

    # Place a call as soon as the server is up
    python -m call_copilot --to "+821012345678" --intent "오늘 7시 두 명 예약"

    # Run with debug logging
    python -m call_copilot --debug
        """,
    )

    parser.add_argument(
        "--to",
        type=str,
        help="Destination phone number in E.164 format",
    )

    parser.add_argument(
        "--intent",
        type=str,
        default="",
        help="What the call is about (spoken in the opening announcement)",
    )

    parser.add_argument(
        "--host",
        type=str,
        help="Server host (overrides SERVER_HOST env var)",
    )

    parser.add_argument(
        "--port",
        type=int,
        help="Server port (overrides SERVER_PORT env var)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    if args.to and not args.intent:
        parser.error("--intent is required with --to")

    return args


async def run_server(args: argparse.Namespace) -> None:
    """Run the server and optionally place a call."""
    config = load_config()

    host = args.host or config.server.host
    port = args.port or config.server.port

    call_manager = CallManager(config.telnyx, config.server)
    session_manager = init_session_manager(config, call_manager)

    logger.info(f"Starting server on {host}:{port}")
    logger.info(f"Media endpoint: ws://{host}:{port}/media")
    logger.info(f"Operator endpoint: ws://{host}:{port}/operator")
    logger.info(f"PUBLIC_HOST={config.server.public_host}")

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info" if not args.debug else "debug",
    )
    server = uvicorn.Server(server_config)

    server_task = asyncio.create_task(server.serve())

    # Wait a moment for server to start
    await asyncio.sleep(1)

    if args.to:
        try:
            result = await session_manager.place_call(args.to, args.intent)
            logger.info(f"Call placed: {result['callSid']}")
        except Exception as e:
            logger.error(f"Failed to place call: {e}")

    logger.info("Press Ctrl+C to exit")

    try:
        await server_task
    except asyncio.CancelledError:
        logger.info("Server shutdown requested")


def main() -> None:
    """Main entry point."""
    args = parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("deepgram").setLevel(logging.DEBUG)

    try:
        asyncio.run(run_server(args))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
